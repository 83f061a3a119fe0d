"""Shared imaging helpers."""

from __future__ import annotations

from io import BytesIO

from PIL import Image, ImageOps, UnidentifiedImageError


def decode_image(data: bytes, *, max_pixels: int | None = None) -> Image.Image:
    """Open encoded image bytes, honouring EXIF orientation.

    The header size is checked against *max_pixels* before any pixel
    data is decoded. Raises :class:`ValueError` when the stream is not a
    readable image or is too large.
    """

    if not data:
        raise ValueError("Empty image stream")
    try:
        image = Image.open(BytesIO(data))
    except Image.DecompressionBombError as exc:
        raise ValueError("Image dimensions exceed the decoder safety limit") from exc
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError("Unsupported or corrupted image stream") from exc
    width, height = image.size
    if max_pixels and width * height > max_pixels:
        raise ValueError(f"Image is {width} × {height} px; the limit is {max_pixels:,} pixels")
    try:
        image.load()
    except (Image.DecompressionBombError, OSError) as exc:
        raise ValueError("Unsupported or corrupted image stream") from exc
    source_format = image.format
    image = ImageOps.exif_transpose(image)
    if image.format is None:
        image.format = source_format
    return image


def flatten_alpha(image: Image.Image, background: tuple[int, int, int] = (255, 255, 255)) -> Image.Image:
    if image.mode in {"RGBA", "LA"} or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        canvas = Image.new("RGB", image.size, background)
        canvas.paste(rgba, mask=rgba.split()[-1])
        return canvas
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def encoder_available(format: str) -> bool:
    Image.init()
    return format.upper() in Image.SAVE


def image_to_bytes(image: Image.Image, format: str = "PNG", **params) -> bytes:
    buf = BytesIO()
    image.save(buf, format=format, **params)
    return buf.getvalue()


__all__ = ["decode_image", "flatten_alpha", "encoder_available", "image_to_bytes"]

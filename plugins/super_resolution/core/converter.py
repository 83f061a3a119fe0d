"""Encoding of raw engine output into a displayable image."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from PIL import Image

from common.imaging import encoder_available, flatten_alpha, image_to_bytes

from .errors import EncodeError
from .executor import InferenceResult

DEFAULT_QUALITY = 95

_FORMATS = {
    "JPEG": ("image/jpeg", "jpg"),
    "PNG": ("image/png", "png"),
}


@dataclass(frozen=True)
class RenderableOutput:
    data: bytes
    mime: str
    extension: str
    width: int
    height: int
    elapsed_s: float

    @property
    def processing_time(self) -> str:
        return f"{self.elapsed_s:.2f}s"

    def to_dict(self) -> dict[str, object]:
        return {
            "mime": self.mime,
            "width": self.width,
            "height": self.height,
            "elapsed_s": round(self.elapsed_s, 4),
            "processing_time": self.processing_time,
            "size_bytes": len(self.data),
        }


def _to_rgba(pixels: np.ndarray) -> np.ndarray:
    channels = pixels.shape[2]
    if channels == 4:
        return pixels
    height, width = pixels.shape[:2]
    alpha = np.full((height, width, 1), 255, dtype=np.uint8)
    if channels == 3:
        return np.concatenate([pixels, alpha], axis=2)
    if channels == 1:
        return np.concatenate([pixels, pixels, pixels, alpha], axis=2)
    raise EncodeError(f"unsupported channel count {channels}")


class OutputConverter:
    """Paints a raw RGBA raster onto a surface and encodes it."""

    def __init__(self, *, quality: int = DEFAULT_QUALITY, format: str = "JPEG"):
        format = format.upper()
        if format not in _FORMATS:
            raise ValueError(f"Unsupported output format {format!r}")
        self.quality = max(1, min(100, int(quality)))
        self.format = format

    @property
    def mime(self) -> str:
        return _FORMATS[self.format][0]

    def encode(self, result: InferenceResult) -> RenderableOutput:
        raw = result.image
        if raw.width < 1 or raw.height < 1 or raw.channels < 1:
            raise EncodeError(
                f"invalid output dimensions {raw.width}x{raw.height}x{raw.channels}"
            )
        if len(raw.data) != raw.expected_length:
            raise EncodeError(
                f"pixel buffer holds {len(raw.data)} bytes, expected "
                f"{raw.width}x{raw.height}x{raw.channels} = {raw.expected_length}"
            )
        if not encoder_available(self.format):
            raise EncodeError(f"{self.format} encoder is unavailable")

        pixels = np.frombuffer(raw.data, dtype=np.uint8).reshape(
            raw.height, raw.width, raw.channels
        )
        surface = Image.fromarray(np.ascontiguousarray(_to_rgba(pixels)))
        params = {"quality": self.quality} if self.format == "JPEG" else {}
        try:
            encoded = image_to_bytes(flatten_alpha(surface), self.format, **params)
        except (OSError, KeyError, ValueError) as exc:
            raise EncodeError(exc) from exc

        if surface.size != (raw.width, raw.height):
            raise EncodeError(
                f"encoded surface is {surface.width}x{surface.height}, "
                f"expected {raw.width}x{raw.height}"
            )
        mime, extension = _FORMATS[self.format]
        return RenderableOutput(
            data=encoded,
            mime=mime,
            extension=extension,
            width=raw.width,
            height=raw.height,
            elapsed_s=result.elapsed_s,
        )


__all__ = ["DEFAULT_QUALITY", "RenderableOutput", "OutputConverter"]

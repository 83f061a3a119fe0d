"""Single-request inference against a loaded engine."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable

from PIL import Image

from common.imaging import decode_image, flatten_alpha
from common.io import secure_filename
from common.logging import get_logger
from common.tasks import run_blocking

from .engine import RawImage
from .errors import InferenceError, ValidationError
from .loader import EngineHandle

logger = get_logger()


@dataclass(frozen=True)
class SourceImage:
    data: bytes
    width: int
    height: int
    format: str | None = None
    filename: str = "upload"

    @property
    def mime(self) -> str:
        return Image.MIME.get(self.format or "", "application/octet-stream")

    def to_rgb(self) -> Image.Image:
        return flatten_alpha(decode_image(self.data))

    def to_dict(self) -> dict[str, object]:
        return {
            "filename": self.filename,
            "width": self.width,
            "height": self.height,
            "mime": self.mime,
            "size_bytes": len(self.data),
        }


def decode_source_image(
    data: bytes,
    *,
    filename: str | None = None,
    max_pixels: int | None = None,
) -> SourceImage:
    """Validate user-supplied bytes and read their dimensions."""

    try:
        image = decode_image(data, max_pixels=max_pixels)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    width, height = image.size
    if width < 1 or height < 1:
        raise ValidationError("Image has no pixels")
    return SourceImage(
        data=bytes(data),
        width=width,
        height=height,
        format=image.format,
        filename=secure_filename(filename or "", fallback="upload"),
    )


@dataclass(frozen=True)
class InferenceResult:
    image: RawImage
    elapsed_s: float

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def channels(self) -> int:
        return self.image.channels


class InferenceExecutor:
    """Runs one upscaling request and measures its wall-clock latency.

    The caller is responsible for passing the current, valid handle.
    """

    def __init__(
        self,
        *,
        timeout_s: float | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self._timeout = timeout_s if timeout_s and timeout_s > 0 else None
        self._clock = clock

    @property
    def timeout_s(self) -> float | None:
        return self._timeout

    async def run(self, handle: EngineHandle, image: SourceImage) -> InferenceResult:
        started = self._clock()
        try:
            pixels = await self._invoke(handle, image)
        except asyncio.TimeoutError as exc:
            raise InferenceError(f"timed out after {self._timeout:g}s") from exc
        except Exception as exc:
            logger.error("Processing error with %s: %s", handle.descriptor.id, exc)
            raise InferenceError(exc) from exc
        elapsed = self._clock() - started
        if not isinstance(pixels, RawImage):
            raise InferenceError("engine returned no pixel data")
        logger.info(
            "Upscaled %dx%d -> %dx%d with %s in %.2fs",
            image.width,
            image.height,
            pixels.width,
            pixels.height,
            handle.descriptor.id,
            elapsed,
        )
        return InferenceResult(image=pixels, elapsed_s=elapsed)

    async def _invoke(self, handle: EngineHandle, image: SourceImage) -> RawImage:
        def _work() -> RawImage:
            return handle.invoke(image.to_rgb())

        if self._timeout is None:
            return await run_blocking(_work)
        return await asyncio.wait_for(run_blocking(_work), self._timeout)


__all__ = ["SourceImage", "decode_source_image", "InferenceResult", "InferenceExecutor"]

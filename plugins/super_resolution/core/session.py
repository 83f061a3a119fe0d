"""Session controller: model lifecycle and inference orchestration.

The controller owns the current model selection, the single live
:class:`EngineHandle`, the current source image and the current output.
It must only be driven from one event loop thread. Model loads and runs
are spawned as tasks; each captures a generation token when it starts
and its result is discarded if the token is no longer current when it
completes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Coroutine

from common.logging import get_logger
from common.tasks import run_blocking

from .assets import AssetStore
from .converter import OutputConverter, RenderableOutput
from .errors import (
    EncodeError,
    InferenceError,
    ModelLoadError,
    SuperResolutionError,
    ValidationError,
)
from .executor import InferenceExecutor, InferenceResult, SourceImage, decode_source_image
from .loader import EngineHandle, ModelLoader
from .progress import LoadProgress, ProgressChannel
from .registry import ModelDescriptor, ScaleFactor

logger = get_logger()

MODEL_LOADING_MESSAGE = "Model is still loading. Please wait."
NO_MODEL_MESSAGE = "No model is loaded. Select a model first."
NO_IMAGE_MESSAGE = "Please select an image."
BUSY_MESSAGE = "An image is already being upscaled."


class SessionPhase(str, Enum):
    IDLE = "idle"
    LOADING_MODEL = "loading-model"
    READY = "ready"
    RUNNING = "running"
    ERROR = "error"


def download_filename(
    scale: ScaleFactor,
    extension: str = "jpg",
    now: datetime | None = None,
) -> str:
    """``upscaled-<scale>-<YYYY-MM-DDTHH-MM-SS>.<ext>``, UTC, no colons."""

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return f"upscaled-{scale.label}-{now.strftime('%Y-%m-%dT%H-%M-%S')}.{extension}"


@dataclass(frozen=True)
class Download:
    filename: str
    data: bytes
    mime: str


@dataclass(frozen=True)
class SessionSnapshot:
    phase: SessionPhase
    generation: int
    model: ModelDescriptor | None
    handle: EngineHandle | None
    progress: LoadProgress | None
    image: SourceImage | None
    image_asset: str | None
    output: RenderableOutput | None
    output_model: ModelDescriptor | None
    output_asset: str | None
    error: str | None

    @property
    def model_ready(self) -> bool:
        return self.handle is not None and self.phase in {SessionPhase.READY, SessionPhase.ERROR}

    def to_dict(self, asset_url: Callable[[str], str] | None = None) -> dict[str, object]:
        def _url(asset_id: str | None) -> str | None:
            if asset_id is None:
                return None
            return asset_url(asset_id) if asset_url else asset_id

        image = None
        if self.image is not None:
            image = {**self.image.to_dict(), "url": _url(self.image_asset)}
        output = None
        if self.output is not None:
            output = {**self.output.to_dict(), "url": _url(self.output_asset)}
            if self.output_model is not None:
                output["scale"] = self.output_model.scale.label
        handle = self.handle
        return {
            "phase": self.phase.value,
            "generation": self.generation,
            "model": self.model.to_dict() if self.model else None,
            "loaded_model": handle.descriptor.id if handle else None,
            "model_ready": self.model_ready,
            "cached": bool(handle and handle.cached),
            "device": handle.device if handle else None,
            "backend": handle.backend.value if handle else None,
            "progress": self.progress.to_dict() if self.progress else None,
            "image": image,
            "output": output,
            "error": self.error,
        }


class SessionController:
    def __init__(
        self,
        loader: ModelLoader,
        executor: InferenceExecutor,
        converter: OutputConverter,
        *,
        assets: AssetStore | None = None,
        max_input_pixels: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._loader = loader
        self._executor = executor
        self._converter = converter
        self._registry = loader.registry
        self._assets = assets if assets is not None else AssetStore()
        self._max_input_pixels = max_input_pixels
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._phase = SessionPhase.IDLE
        self._selection: ModelDescriptor | None = None
        self._handle: EngineHandle | None = None
        self._generation = 0
        self._run_token = 0
        self._progress: LoadProgress | None = None
        self._image: SourceImage | None = None
        self._image_asset: str | None = None
        self._output: RenderableOutput | None = None
        self._output_model: ModelDescriptor | None = None
        self._output_asset: str | None = None
        self._error: str | None = None
        self._tasks: set[asyncio.Task] = set()
        self._releases: set[asyncio.Task] = set()

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def selection(self) -> ModelDescriptor | None:
        return self._selection

    @property
    def handle(self) -> EngineHandle | None:
        return self._handle

    @property
    def assets(self) -> AssetStore:
        return self._assets

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            phase=self._phase,
            generation=self._generation,
            model=self._selection,
            handle=self._handle,
            progress=self._progress,
            image=self._image,
            image_asset=self._image_asset,
            output=self._output,
            output_model=self._output_model,
            output_asset=self._output_asset,
            error=self._error,
        )

    # Commands

    def request_model(self, model_id: str) -> asyncio.Task:
        """Switch to *model_id* and start loading it in the background."""

        descriptor = self._registry.find(model_id)
        if self._phase is SessionPhase.RUNNING:
            raise ValidationError("Cannot change the model while an image is being upscaled.")

        self._generation += 1
        generation = self._generation
        self._discard_handle()
        self._selection = descriptor
        self._error = None
        self._progress = None
        self._transition(SessionPhase.LOADING_MODEL)
        logger.info("Selected %s (generation %d)", descriptor.name, generation)
        return self._spawn(self._load(descriptor, generation, tuple(self._releases)))

    async def select_model(self, model_id: str) -> SessionSnapshot:
        await self.request_model(model_id)
        return self.snapshot()

    def select_image(self, data: bytes, filename: str | None = None) -> SessionSnapshot:
        if self._phase is SessionPhase.RUNNING:
            raise ValidationError("Cannot change the image while it is being upscaled.")
        image = decode_source_image(data, filename=filename, max_pixels=self._max_input_pixels)

        previous = self._image_asset
        self._image = image
        self._image_asset = self._assets.publish(image.data, image.mime)
        self._assets.revoke(previous)
        self._clear_output()
        self._clear_error()
        logger.info("Selected image %s (%dx%d)", image.filename, image.width, image.height)
        return self.snapshot()

    def request_run(self) -> asyncio.Task:
        """Validate the run preconditions and start the inference task.

        Raises :class:`ValidationError` without changing state when a run
        is in flight, no model is ready or no image is selected.
        """

        if self._phase is SessionPhase.RUNNING:
            raise ValidationError(BUSY_MESSAGE)
        if self._phase is SessionPhase.LOADING_MODEL:
            raise ValidationError(MODEL_LOADING_MESSAGE)
        if self._handle is None:
            raise ValidationError(NO_MODEL_MESSAGE)
        if self._image is None:
            raise ValidationError(NO_IMAGE_MESSAGE)

        self._run_token += 1
        token = (self._generation, self._run_token)
        handle, image = self._handle, self._image
        self._error = None
        self._transition(SessionPhase.RUNNING)
        return self._spawn(self._run(handle, image, token))

    async def run(self) -> SessionSnapshot:
        await self.request_run()
        return self.snapshot()

    def reset(self) -> SessionSnapshot:
        """Clear image, output and error; the loaded engine stays."""

        self._run_token += 1
        self._assets.revoke(self._image_asset)
        self._image = None
        self._image_asset = None
        self._clear_output()
        self._clear_error()
        if self._phase is not SessionPhase.LOADING_MODEL:
            self._progress = None
        return self.snapshot()

    def download_current_output(self) -> Download:
        if self._output is None or self._output_model is None:
            raise ValidationError("There is no upscaled image to download.")
        filename = download_filename(
            self._output_model.scale, self._output.extension, self._clock()
        )
        return Download(filename=filename, data=self._output.data, mime=self._output.mime)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def close(self) -> None:
        self._generation += 1
        self._run_token += 1
        self._discard_handle()
        self._image = None
        self._image_asset = None
        self._output = None
        self._output_model = None
        self._output_asset = None
        self._assets.clear()
        self._transition(SessionPhase.IDLE)

    # Tasks

    async def _load(
        self,
        descriptor: ModelDescriptor,
        generation: int,
        releases: tuple[asyncio.Task, ...] = (),
    ) -> None:
        # The previous engine must be closed before the next one is built.
        if releases:
            await asyncio.gather(*releases)
        channel = ProgressChannel()
        follower = asyncio.create_task(self._follow(channel, generation))
        handle: EngineHandle | None = None
        failure: SuperResolutionError | None = None
        try:
            handle = await self._loader.load(descriptor, channel)
        except SuperResolutionError as exc:
            failure = exc
        except Exception as exc:
            logger.exception("Unexpected error while loading %s", descriptor.id)
            failure = ModelLoadError(descriptor.id, exc)
        finally:
            channel.close()
            await follower

        if generation != self._generation:
            logger.info("Discarding stale load result for %s", descriptor.id)
            if handle is not None:
                await self._release(handle)
            return
        if failure is not None:
            self._progress = None
            self._error = str(failure)
            self._transition(SessionPhase.ERROR)
            return
        self._handle = handle
        self._transition(SessionPhase.READY)

    async def _follow(self, channel: ProgressChannel, generation: int) -> None:
        async for event in channel.events():
            if generation == self._generation:
                self._progress = event
                logger.debug("%s (%s%%)", event.status, event.percent)

    async def _run(self, handle: EngineHandle, image: SourceImage, token: tuple[int, int]) -> None:
        output: RenderableOutput | None = None
        failure: SuperResolutionError | None = None
        try:
            result = await self._executor.run(handle, image)
            self._verify_dimensions(result, image, handle.descriptor)
            output = await run_blocking(self._converter.encode, result)
        except (InferenceError, EncodeError) as exc:
            failure = exc
        except Exception as exc:
            logger.exception("Unexpected error while upscaling %s", image.filename)
            failure = InferenceError(exc)

        if token[0] != self._generation:
            logger.info("Discarding result from a closed session")
            return
        self._transition(SessionPhase.READY)
        if token[1] != self._run_token:
            logger.info("Discarding stale result for %s", image.filename)
            return
        if failure is not None:
            self._error = str(failure)
            self._transition(SessionPhase.ERROR)
            return

        previous = self._output_asset
        self._output = output
        self._output_model = handle.descriptor
        self._output_asset = self._assets.publish(output.data, output.mime)
        self._assets.revoke(previous)

    @staticmethod
    def _verify_dimensions(
        result: InferenceResult, image: SourceImage, descriptor: ModelDescriptor
    ) -> None:
        scale = int(descriptor.scale)
        expected = (image.width * scale, image.height * scale)
        if (result.width, result.height) != expected:
            raise InferenceError(
                f"engine returned {result.width}x{result.height}, expected "
                f"{expected[0]}x{expected[1]} for {descriptor.scale.label}"
            )

    # Helpers

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _transition(self, phase: SessionPhase) -> None:
        if phase is not self._phase:
            logger.info("Session %s -> %s", self._phase.value, phase.value)
        self._phase = phase

    def _discard_handle(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        task = self._spawn(self._release(handle))
        self._releases.add(task)
        task.add_done_callback(self._releases.discard)

    async def _release(self, handle: EngineHandle) -> None:
        try:
            await run_blocking(handle.release)
        except Exception:
            logger.exception("Error while releasing engine for %s", handle.descriptor.id)

    def _clear_output(self) -> None:
        self._assets.revoke(self._output_asset)
        self._output = None
        self._output_model = None
        self._output_asset = None

    def _clear_error(self) -> None:
        self._error = None
        if self._phase is SessionPhase.ERROR:
            self._transition(SessionPhase.READY if self._handle else SessionPhase.IDLE)


__all__ = [
    "SessionPhase",
    "SessionSnapshot",
    "SessionController",
    "Download",
    "download_filename",
]

"""Asynchronous model loading."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock

from PIL import Image

from common.logging import get_logger
from common.tasks import run_blocking

from .engine import (
    AccelerationBackend,
    Engine,
    EngineFactory,
    EngineOptions,
    FULL_PRECISION,
    RawImage,
    artifact_cached,
    construct_engine,
    resolve_backend,
)
from .errors import ModelLoadError, UnknownModelError
from .progress import LoadProgress, ProgressChannel
from .registry import REGISTRY, ModelDescriptor, ModelRegistry

logger = get_logger()


@dataclass(eq=False)
class EngineHandle:
    """A live binding between one loaded engine and its model descriptor.

    Invocations are serialized per handle. Once released the handle can
    no longer be invoked; the engine is closed only after any invocation
    already in flight has returned.
    """

    descriptor: ModelDescriptor
    engine: Engine
    device: str
    backend: AccelerationBackend
    cached: bool = False
    _lock: Lock = field(default_factory=Lock, repr=False)
    _state_lock: Lock = field(default_factory=Lock, repr=False)
    _released: bool = field(default=False, repr=False)

    @property
    def released(self) -> bool:
        return self._released

    def invoke(self, image: Image.Image) -> RawImage:
        with self._lock:
            if self._released:
                raise RuntimeError(f"Engine for {self.descriptor.id} has been released")
            return self.engine(image)

    def release(self) -> None:
        """Refuse new invocations and close the engine. Blocks while one is running."""

        with self._state_lock:
            if self._released:
                return
            self._released = True
        with self._lock:
            close = getattr(self.engine, "close", None)
            if callable(close):
                close()
        logger.info("Released engine for %s", self.descriptor.id)


class ModelLoader:
    """Builds :class:`EngineHandle` instances for registry models."""

    def __init__(
        self,
        construct: EngineFactory = construct_engine,
        *,
        registry: ModelRegistry = REGISTRY,
        device: str = "auto",
        cache_dir: Path | None = None,
        weights_dir: Path | None = None,
        allow_remote: bool = True,
    ):
        self._construct = construct
        self._registry = registry
        self._device = device
        self._cache_dir = cache_dir
        self._weights_dir = weights_dir
        self._allow_remote = allow_remote

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    def options(self, progress: ProgressChannel | None = None) -> EngineOptions:
        backend, device = resolve_backend(self._device)
        kwargs = {}
        if progress is not None:
            kwargs["progress"] = progress.emit
        return EngineOptions(
            backend=backend,
            device=device,
            precision=FULL_PRECISION,
            cache_dir=self._cache_dir,
            weights_dir=self._weights_dir,
            allow_remote=self._allow_remote,
            **kwargs,
        )

    async def load(self, descriptor: ModelDescriptor, progress: ProgressChannel) -> EngineHandle:
        """Construct an engine for *descriptor*.

        Emits ``checking-cache`` first and ``ready`` last on *progress*.
        Raises :class:`UnknownModelError` for descriptors outside the
        registry and :class:`ModelLoadError` when construction fails.
        """

        if not self._registry.contains(descriptor):
            raise UnknownModelError(descriptor.id)

        progress.emit(LoadProgress.checking_cache())
        cached = artifact_cached(descriptor)
        options = self.options(progress)
        logger.info(
            "Loading %s on %s (%s, %s)",
            descriptor.id,
            options.device,
            options.backend.value,
            options.precision,
        )
        try:
            engine = await run_blocking(self._construct, descriptor, options)
        except Exception as exc:
            logger.error("Error initializing engine for %s: %s", descriptor.id, exc)
            raise ModelLoadError(descriptor.id, exc) from exc
        if engine is None or not callable(engine):
            raise ModelLoadError(descriptor.id, "engine construction returned no usable engine")

        progress.emit(LoadProgress.ready())
        logger.info("Engine ready for %s%s", descriptor.id, " (cached)" if cached else "")
        return EngineHandle(
            descriptor=descriptor,
            engine=engine,
            device=options.device,
            backend=options.backend,
            cached=cached,
        )


__all__ = ["EngineHandle", "ModelLoader"]

"""Thread-safe facade that runs a :class:`SessionController` on its own loop."""

from __future__ import annotations

from concurrent.futures import TimeoutError as FutureTimeoutError

from common.logging import get_logger
from common.tasks import BackgroundLoop

from .assets import Asset
from .converter import OutputConverter
from .engine import EngineFactory, construct_engine
from .executor import InferenceExecutor
from .loader import ModelLoader
from .session import Download, SessionController, SessionSnapshot
from .settings import SuperResolutionSettings

logger = get_logger()


class SessionService:
    """Marshals session commands from request threads onto one event loop.

    Model loads and runs continue in the background after the command
    returns; callers poll :meth:`snapshot` for progress.
    """

    def __init__(self, controller_factory, *, default_model: str | None = None, timeout: float = 30.0):
        self._loop = BackgroundLoop()
        self._timeout = timeout
        self._controller: SessionController = self._loop.call(controller_factory, timeout=timeout)
        if default_model:
            self.select_model(default_model)

    @classmethod
    def from_settings(
        cls,
        settings: SuperResolutionSettings,
        *,
        construct: EngineFactory = construct_engine,
    ) -> "SessionService":
        def _build() -> SessionController:
            loader = ModelLoader(
                construct,
                device=settings.device,
                cache_dir=settings.cache_dir,
                weights_dir=settings.weights_dir,
                allow_remote=settings.allow_remote_models,
            )
            return SessionController(
                loader,
                InferenceExecutor(timeout_s=settings.inference_timeout_s),
                OutputConverter(quality=settings.jpeg_quality),
                max_input_pixels=settings.max_input_pixels,
            )

        default_model = settings.default_model if settings.autoload else None
        return cls(_build, default_model=default_model)

    @property
    def controller(self) -> SessionController:
        return self._controller

    def _call(self, func, *args):
        return self._loop.call(func, *args, timeout=self._timeout)

    def snapshot(self) -> SessionSnapshot:
        return self._call(self._controller.snapshot)

    def select_model(self, model_id: str) -> SessionSnapshot:
        def _select() -> SessionSnapshot:
            self._controller.request_model(model_id)
            return self._controller.snapshot()

        return self._call(_select)

    def select_image(self, data: bytes, filename: str | None = None) -> SessionSnapshot:
        return self._call(self._controller.select_image, data, filename)

    def run(self) -> SessionSnapshot:
        def _run() -> SessionSnapshot:
            self._controller.request_run()
            return self._controller.snapshot()

        return self._call(_run)

    def reset(self) -> SessionSnapshot:
        return self._call(self._controller.reset)

    def download(self) -> Download:
        return self._call(self._controller.download_current_output)

    def asset(self, asset_id: str) -> Asset | None:
        return self._controller.assets.get(asset_id)

    def wait_idle(self, timeout: float | None = None) -> SessionSnapshot:
        self._loop.submit(self._controller.wait_idle()).result(timeout)
        return self.snapshot()

    def close(self) -> None:
        if not self._loop.running:
            return
        self._call(self._controller.close)
        try:
            self._loop.submit(self._controller.wait_idle()).result(self._timeout)
        except FutureTimeoutError:
            logger.warning("Background work still running at shutdown")
        self._loop.stop()
        logger.info("Super-resolution session closed")


__all__ = ["SessionService"]

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from plugins.super_resolution.core import (
    REGISTRY,
    InferenceExecutor,
    ModelLoader,
    OutputConverter,
    ScaleFactor,
    SessionController,
    SessionPhase,
    UnknownModelError,
    ValidationError,
    download_filename,
)
from plugins.super_resolution.core.session import (
    BUSY_MESSAGE,
    MODEL_LOADING_MESSAGE,
    NO_IMAGE_MESSAGE,
    NO_MODEL_MESSAGE,
)

MODEL_2X = "caidas/swin2SR-classical-sr-x2-64"
MODEL_4X = "caidas/swin2SR-classical-sr-x4-64"


class GatedEngine:
    """Upscales by two once its gate opens; optionally fails the first call."""

    def __init__(self, fake_engine, *, fail_first=False, scale=2):
        self.gate = threading.Event()
        self.inner = fake_engine(scale)
        self.fail_first = fail_first
        self.calls = 0
        self.events = []

    def __call__(self, image):
        self.calls += 1
        self.gate.wait(5)
        self.events.append("call-end")
        if self.fail_first and self.calls == 1:
            raise RuntimeError("boom")
        return self.inner(image)

    def close(self):
        self.events.append("close")


def _controller(engine, *, timeout_s=5, **kwargs):
    loader = ModelLoader(lambda _descriptor, _options: engine, device="cpu")
    return SessionController(
        loader, InferenceExecutor(timeout_s=timeout_s), OutputConverter(), **kwargs
    )


def test_two_times_upscale_end_to_end(make_controller, image_bytes):
    stamp = datetime(2024, 5, 1, 12, 30, 45, tzinfo=timezone.utc)
    controller = make_controller(clock=lambda: stamp)

    async def scenario():
        loaded = await controller.select_model(MODEL_2X)
        assert loaded.phase is SessionPhase.READY
        assert loaded.model_ready
        assert loaded.progress.percent == 100
        controller.select_image(image_bytes(100, 80), "photo.png")
        return await controller.run()

    snapshot = asyncio.run(scenario())

    assert snapshot.phase is SessionPhase.READY
    assert snapshot.error is None
    assert (snapshot.output.width, snapshot.output.height) == (200, 160)
    assert snapshot.output.elapsed_s > 0
    assert snapshot.output_asset in controller.assets
    download = controller.download_current_output()
    assert download.filename == "upscaled-2x-2024-05-01T12-30-45.jpg"
    assert download.mime == "image/jpeg"
    assert download.data == snapshot.output.data


def test_stale_load_is_discarded_and_released(make_controller, factory):
    factory.gates[MODEL_2X] = threading.Event()
    controller = make_controller()

    async def scenario():
        first = controller.request_model(MODEL_2X)
        second = controller.request_model(MODEL_4X)
        await second
        assert controller.phase is SessionPhase.READY
        assert controller.handle.descriptor.id == MODEL_4X
        factory.gates[MODEL_2X].set()
        await first
        await controller.wait_idle()

    asyncio.run(scenario())

    assert controller.phase is SessionPhase.READY
    assert controller.selection.id == MODEL_4X
    assert controller.handle.descriptor.id == MODEL_4X
    assert not controller.handle.released
    assert all(engine.closed for engine in factory.engines[MODEL_2X])
    assert controller.snapshot().progress.percent == 100


def test_run_is_rejected_while_model_loads(make_controller, factory, image_bytes):
    factory.gates[MODEL_2X] = threading.Event()
    controller = make_controller()

    async def scenario():
        task = controller.request_model(MODEL_2X)
        controller.select_image(image_bytes(), "a.png")
        try:
            with pytest.raises(ValidationError, match=MODEL_LOADING_MESSAGE):
                controller.request_run()
            assert controller.phase is SessionPhase.LOADING_MODEL
        finally:
            factory.gates[MODEL_2X].set()
        await task

    asyncio.run(scenario())
    assert controller.phase is SessionPhase.READY


def test_network_failure_surfaces_error_and_blocks_runs(make_controller, factory, image_bytes):
    factory.failures[MODEL_2X] = ConnectionError("network unreachable")
    controller = make_controller()

    async def scenario():
        snapshot = await controller.select_model(MODEL_2X)
        assert snapshot.phase is SessionPhase.ERROR
        assert "network unreachable" in snapshot.error
        assert snapshot.handle is None
        assert snapshot.progress is None
        assert not snapshot.model_ready

        controller.select_image(image_bytes(), "a.png")
        with pytest.raises(ValidationError, match=NO_MODEL_MESSAGE):
            controller.request_run()

    asyncio.run(scenario())
    assert controller.snapshot().output is None


def test_run_without_image_leaves_state_untouched(make_controller):
    controller = make_controller()

    async def scenario():
        await controller.select_model(MODEL_2X)
        before = controller.snapshot()
        with pytest.raises(ValidationError, match=NO_IMAGE_MESSAGE):
            controller.request_run()
        assert controller.snapshot() == before

    asyncio.run(scenario())


def test_commands_are_rejected_while_running(fake_engine, image_bytes):
    engine = GatedEngine(fake_engine)
    controller = _controller(engine)

    async def scenario():
        await controller.select_model(MODEL_2X)
        controller.select_image(image_bytes(), "a.png")
        task = controller.request_run()
        try:
            assert controller.phase is SessionPhase.RUNNING
            with pytest.raises(ValidationError, match=BUSY_MESSAGE):
                controller.request_run()
            with pytest.raises(ValidationError):
                controller.select_image(image_bytes(4, 4), "b.png")
            with pytest.raises(ValidationError):
                controller.request_model(MODEL_4X)
        finally:
            engine.gate.set()
        await task

    asyncio.run(scenario())

    snapshot = controller.snapshot()
    assert snapshot.phase is SessionPhase.READY
    assert snapshot.image.filename == "a.png"
    assert snapshot.output is not None
    assert engine.calls == 1


def test_reset_keeps_engine_without_reloading(make_controller, factory, image_bytes):
    controller = make_controller()

    async def scenario():
        await controller.select_model(MODEL_2X)
        controller.select_image(image_bytes(), "a.png")
        await controller.run()
        handle = controller.handle
        snapshot = controller.reset()
        return handle, snapshot

    handle, snapshot = asyncio.run(scenario())

    assert snapshot.image is None
    assert snapshot.output is None
    assert snapshot.error is None
    assert snapshot.phase is SessionPhase.READY
    assert snapshot.handle is handle
    assert not handle.released
    assert factory.calls == [MODEL_2X]
    assert len(controller.assets) == 0


def test_reset_during_run_discards_its_result(fake_engine, image_bytes):
    engine = GatedEngine(fake_engine)
    controller = _controller(engine)

    async def scenario():
        await controller.select_model(MODEL_2X)
        controller.select_image(image_bytes(), "a.png")
        task = controller.request_run()
        controller.reset()
        engine.gate.set()
        await task

    asyncio.run(scenario())

    snapshot = controller.snapshot()
    assert snapshot.phase is SessionPhase.READY
    assert snapshot.image is None
    assert snapshot.output is None
    assert len(controller.assets) == 0


def test_inference_failure_keeps_engine_and_allows_retry(fake_engine, image_bytes):
    engine = GatedEngine(fake_engine, fail_first=True)
    engine.gate.set()
    controller = _controller(engine)

    async def scenario():
        await controller.select_model(MODEL_2X)
        controller.select_image(image_bytes(), "a.png")
        failed = await controller.run()
        retried = await controller.run()
        return failed, retried

    failed, retried = asyncio.run(scenario())

    assert failed.phase is SessionPhase.ERROR
    assert failed.error == "Processing failed: boom"
    assert failed.handle is not None
    assert failed.model_ready
    assert failed.output is None
    assert retried.phase is SessionPhase.READY
    assert retried.error is None
    assert retried.output is not None
    assert retried.handle is failed.handle


def test_output_with_wrong_dimensions_is_rejected(fake_engine, image_bytes):
    engine = GatedEngine(fake_engine, scale=3)
    engine.gate.set()
    controller = _controller(engine)

    async def scenario():
        await controller.select_model(MODEL_2X)
        controller.select_image(image_bytes(10, 8), "a.png")
        return await controller.run()

    snapshot = asyncio.run(scenario())

    assert snapshot.phase is SessionPhase.ERROR
    assert "expected 20x16" in snapshot.error
    assert snapshot.output is None


def test_superseded_assets_are_revoked(make_controller, image_bytes):
    controller = make_controller()

    async def scenario():
        await controller.select_model(MODEL_2X)
        first = controller.select_image(image_bytes(), "a.png").image_asset
        second = controller.select_image(image_bytes(6, 6), "b.png").image_asset
        assert first not in controller.assets
        assert second in controller.assets

        output_one = (await controller.run()).output_asset
        output_two = (await controller.run()).output_asset
        assert output_one not in controller.assets
        assert output_two in controller.assets

        third = controller.select_image(image_bytes(), "c.png")
        assert output_two not in controller.assets
        assert third.output is None

    asyncio.run(scenario())
    assert len(controller.assets) == 1


def test_selecting_a_new_model_releases_the_previous_engine(make_controller, factory):
    controller = make_controller()

    async def scenario():
        await controller.select_model(MODEL_2X)
        previous = controller.handle
        task = controller.request_model(MODEL_4X)
        assert controller.handle is None
        assert controller.phase is SessionPhase.LOADING_MODEL
        await task
        assert previous.released

    asyncio.run(scenario())

    assert factory.engines[MODEL_2X][0].closed
    assert controller.handle.descriptor.scale is ScaleFactor.X4


def test_unknown_model_changes_nothing(make_controller, factory):
    controller = make_controller()

    async def scenario():
        before = controller.snapshot()
        with pytest.raises(UnknownModelError):
            controller.request_model("no/such-model")
        assert controller.snapshot() == before

    asyncio.run(scenario())
    assert factory.calls == []


def test_download_requires_an_output(make_controller):
    with pytest.raises(ValidationError):
        make_controller().download_current_output()


def test_close_releases_engine_and_assets(make_controller, factory, image_bytes):
    controller = make_controller()

    async def scenario():
        await controller.select_model(MODEL_2X)
        controller.select_image(image_bytes(), "a.png")
        controller.close()
        await controller.wait_idle()

    asyncio.run(scenario())

    assert controller.phase is SessionPhase.IDLE
    assert controller.handle is None
    assert factory.engines[MODEL_2X][0].closed
    assert len(controller.assets) == 0


def test_download_filename_is_utc_without_colons():
    local = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone(timedelta(hours=2)))
    assert download_filename(ScaleFactor.X4, now=local) == "upscaled-4x-2024-01-02T01-04-05.jpg"
    assert ":" not in download_filename(ScaleFactor.X2)


def test_snapshot_serializes_asset_urls(make_controller, image_bytes):
    controller = make_controller()

    async def scenario():
        await controller.select_model(MODEL_2X)
        controller.select_image(image_bytes(), "a.png")
        return await controller.run()

    payload = asyncio.run(scenario()).to_dict(lambda asset_id: f"/assets/{asset_id}")

    assert payload["phase"] == "ready"
    assert payload["model"]["id"] == MODEL_2X
    assert payload["loaded_model"] == MODEL_2X
    assert payload["backend"] == "fallback-software"
    assert payload["image"]["url"].startswith("/assets/")
    assert payload["output"]["scale"] == "2x"
    assert payload["progress"]["phase"] == "ready"


def test_registry_default_is_the_two_times_model():
    assert REGISTRY.default.id == MODEL_2X


def test_model_switch_after_timeout_waits_for_the_running_call(fake_engine, image_bytes):
    engine = GatedEngine(fake_engine)

    def construct(descriptor, _options):
        engine.events.append(f"construct {descriptor.id}")
        return engine if descriptor.id == MODEL_2X else fake_engine(4)

    controller = SessionController(
        ModelLoader(construct, device="cpu"),
        InferenceExecutor(timeout_s=0.05),
        OutputConverter(),
    )

    async def scenario():
        await controller.select_model(MODEL_2X)
        controller.select_image(image_bytes(), "a.png")
        failed = await controller.run()
        assert failed.phase is SessionPhase.ERROR
        assert "timed out" in failed.error
        assert failed.handle is not None

        task = controller.request_model(MODEL_4X)
        try:
            await asyncio.sleep(0.1)
            assert engine.events == [f"construct {MODEL_2X}"]
            assert controller.phase is SessionPhase.LOADING_MODEL
        finally:
            engine.gate.set()
        await task

    asyncio.run(scenario())

    assert engine.events == [
        f"construct {MODEL_2X}",
        "call-end",
        "close",
        f"construct {MODEL_4X}",
    ]
    assert controller.phase is SessionPhase.READY
    assert controller.handle.descriptor.id == MODEL_4X


def test_output_is_encoded_off_the_event_loop_thread(factory, image_bytes):
    encoder_threads = []

    class RecordingConverter(OutputConverter):
        def encode(self, result):
            encoder_threads.append(threading.get_ident())
            return super().encode(result)

    controller = SessionController(
        ModelLoader(factory, device="cpu"), InferenceExecutor(timeout_s=5), RecordingConverter()
    )

    async def scenario():
        await controller.select_model(MODEL_2X)
        controller.select_image(image_bytes(), "a.png")
        snapshot = await controller.run()
        return snapshot, threading.get_ident()

    snapshot, loop_thread = asyncio.run(scenario())

    assert snapshot.output is not None
    assert encoder_threads and encoder_threads[0] != loop_thread

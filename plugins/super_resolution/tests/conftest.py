import struct
import threading
import zlib
from io import BytesIO

import numpy as np
import pytest
from PIL import Image

from plugins.super_resolution.core import (
    InferenceExecutor,
    LoadProgress,
    ModelLoader,
    OutputConverter,
    RawImage,
    SessionController,
)


class FakeEngine:
    def __init__(self, scale: int):
        self.scale = scale
        self.calls = 0
        self.closed = False

    def __call__(self, image):
        self.calls += 1
        width, height = image.size
        upscaled = image.resize((width * self.scale, height * self.scale), Image.NEAREST)
        return RawImage.from_array(np.asarray(upscaled))

    def close(self):
        self.closed = True


class FakeFactory:
    """Engine construction stand-in; loads can be gated or made to fail."""

    def __init__(self):
        self.calls: list[str] = []
        self.engines: dict[str, list[FakeEngine]] = {}
        self.failures: dict[str, Exception] = {}
        self.gates: dict[str, threading.Event] = {}
        self.options = []

    def __call__(self, descriptor, options):
        self.calls.append(descriptor.id)
        self.options.append(options)
        options.progress(LoadProgress.downloading("model.safetensors", loaded=50, total=100))
        options.progress(LoadProgress.downloading("model.safetensors", fraction=1.0))
        gate = self.gates.get(descriptor.id)
        if gate is not None:
            gate.wait(5)
        failure = self.failures.get(descriptor.id)
        if failure is not None:
            raise failure
        options.progress(LoadProgress.initiating("model weights"))
        engine = FakeEngine(int(descriptor.scale))
        self.engines.setdefault(descriptor.id, []).append(engine)
        return engine


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def make_controller(factory):
    def _make(**kwargs) -> SessionController:
        loader = ModelLoader(factory, device="cpu")
        executor = kwargs.pop("executor", None) or InferenceExecutor(timeout_s=5)
        return SessionController(loader, executor, OutputConverter(quality=95), **kwargs)

    return _make


@pytest.fixture
def image_bytes():
    def _encode(width: int = 10, height: int = 8, *, mode: str = "RGB", format: str = "PNG") -> bytes:
        color = (40, 120, 200, 255)[: len(mode)] if mode != "L" else 128
        buffer = BytesIO()
        Image.new(mode, (width, height), color=color).save(buffer, format=format)
        return buffer.getvalue()

    return _encode


@pytest.fixture
def fake_engine():
    return FakeEngine


@pytest.fixture
def png_header_only():
    """PNG whose header declares the given size but carries no pixel data."""

    def _chunk(kind: bytes, body: bytes) -> bytes:
        crc = zlib.crc32(kind + body) & 0xFFFFFFFF
        return struct.pack(">I", len(body)) + kind + body + struct.pack(">I", crc)

    def _encode(width: int, height: int) -> bytes:
        header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
        return (
            b"\x89PNG\r\n\x1a\n"
            + _chunk(b"IHDR", header)
            + _chunk(b"IDAT", zlib.compress(b""))
            + _chunk(b"IEND", b"")
        )

    return _encode

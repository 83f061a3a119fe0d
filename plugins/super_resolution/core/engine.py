"""Inference engines for the registry models.

Two model families are supported: Swin2SR checkpoints from the Hugging
Face Hub (``transformers``) and Real-ESRGAN weight files (``realesrgan``).
Both stacks are optional; constructing an engine without them raises
:class:`EngineUnavailableError`.
"""

from __future__ import annotations

import urllib.request
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Callable

import numpy as np
from PIL import Image
from tqdm import tqdm

from common.logging import get_logger

from .errors import EngineUnavailableError
from .progress import LoadProgress, ProgressSink
from .registry import ModelDescriptor

TORCH_AVAILABLE = False
SWIN2SR_AVAILABLE = False
REAL_ESRGAN_AVAILABLE = False
IMPORT_ERRORS: dict[str, str] = {}

try:  # Optional dependency (heavy)
    import torch

    TORCH_AVAILABLE = True
except Exception as exc:  # pragma: no cover - exercised in integration
    IMPORT_ERRORS["torch"] = repr(exc)

try:  # Optional dependency (heavy)
    from huggingface_hub import snapshot_download
    from huggingface_hub.utils import LocalEntryNotFoundError
    from transformers import AutoImageProcessor, Swin2SRForImageSuperResolution

    SWIN2SR_AVAILABLE = TORCH_AVAILABLE
except Exception as exc:  # pragma: no cover - exercised in integration
    IMPORT_ERRORS["swin2sr"] = repr(exc)

try:  # Optional dependency (heavy)
    from basicsr.archs.rrdbnet_arch import RRDBNet
    from realesrgan import RealESRGANer

    REAL_ESRGAN_AVAILABLE = TORCH_AVAILABLE
except Exception as exc:  # pragma: no cover - exercised in integration
    IMPORT_ERRORS["realesrgan"] = repr(exc)

logger = get_logger()


class AccelerationBackend(str, Enum):
    PREFERRED_HARDWARE = "preferred-hardware"
    FALLBACK_SOFTWARE = "fallback-software"


FULL_PRECISION = "fp32"


@dataclass(frozen=True)
class RawImage:
    """Uncompressed 8-bit pixel buffer in row-major, channel-last order."""

    data: bytes
    width: int
    height: int
    channels: int

    @classmethod
    def from_array(cls, array: np.ndarray) -> "RawImage":
        array = np.asarray(array)
        if array.ndim == 2:
            array = array[:, :, np.newaxis]
        if array.ndim != 3:
            raise ValueError(f"Expected an HxWxC pixel array, got shape {array.shape}")
        if array.dtype != np.uint8:
            array = np.clip(np.rint(array), 0, 255).astype(np.uint8)
        height, width, channels = array.shape
        return cls(
            data=np.ascontiguousarray(array).tobytes(),
            width=int(width),
            height=int(height),
            channels=int(channels),
        )

    @property
    def expected_length(self) -> int:
        return self.width * self.height * self.channels


def _ignore_progress(_event: LoadProgress) -> None:
    return None


@dataclass(frozen=True)
class EngineOptions:
    backend: AccelerationBackend = AccelerationBackend.FALLBACK_SOFTWARE
    device: str = "cpu"
    precision: str = FULL_PRECISION
    progress: ProgressSink = field(default=_ignore_progress, compare=False)
    cache_dir: Path | None = None
    weights_dir: Path | None = None
    allow_remote: bool = True


Engine = Callable[[Image.Image], RawImage]
EngineFactory = Callable[[ModelDescriptor, EngineOptions], Engine]


def is_available(descriptor: ModelDescriptor | None = None) -> bool:
    if descriptor is None:
        return SWIN2SR_AVAILABLE or REAL_ESRGAN_AVAILABLE
    if descriptor.family == "realesrgan":
        return REAL_ESRGAN_AVAILABLE
    return SWIN2SR_AVAILABLE


def import_error() -> str | None:
    if not IMPORT_ERRORS:
        return None
    return "; ".join(f"{name}: {error}" for name, error in IMPORT_ERRORS.items())


def select_device(preference: str) -> str:
    normalized = (preference or "auto").lower()
    if normalized not in {"auto", "cpu", "cuda", "mps"}:
        normalized = "auto"
    if normalized == "cpu" or not TORCH_AVAILABLE:
        return "cpu"
    if normalized in {"auto", "cuda"} and torch.cuda.is_available():
        return "cuda"
    if normalized in {"auto", "mps"}:
        mps = getattr(torch.backends, "mps", None)
        if mps is not None and mps.is_available():
            return "mps"
    return "cpu"


def resolve_backend(preference: str) -> tuple[AccelerationBackend, str]:
    device = select_device(preference)
    if device == "cpu":
        if (preference or "auto").lower() != "cpu":
            logger.warning(
                "Hardware acceleration is not available (requested %r). "
                "Falling back to CPU.",
                preference,
            )
        return AccelerationBackend.FALLBACK_SOFTWARE, device
    return AccelerationBackend.PREFERRED_HARDWARE, device


_ARTIFACT_CACHE: dict[str, Path] = {}
_ARTIFACT_LOCK = Lock()


def artifact_cached(descriptor: ModelDescriptor) -> bool:
    path = _ARTIFACT_CACHE.get(descriptor.id)
    return path is not None and path.exists()


def clear_artifact_cache() -> None:
    with _ARTIFACT_LOCK:
        _ARTIFACT_CACHE.clear()


def _remember_artifact(descriptor: ModelDescriptor, path: Path) -> Path:
    with _ARTIFACT_LOCK:
        _ARTIFACT_CACHE[descriptor.id] = path
    return path


def _release_torch_memory(device: str) -> None:
    if TORCH_AVAILABLE and device == "cuda":
        torch.cuda.empty_cache()


# Swin2SR (Hugging Face Hub)

_HUB_PATTERNS = ["*.json", "*.safetensors", "*.bin"]


def _hub_progress_bar(sink: ProgressSink, artifact: str) -> type:
    class _HubProgress(tqdm):
        def update(self, n=1):
            displayed = super().update(n)
            if self.total:
                sink(LoadProgress.downloading(artifact, fraction=self.n / self.total))
            return displayed

    return _HubProgress


def _fetch_hub_snapshot(descriptor: ModelDescriptor, options: EngineOptions) -> Path:
    if artifact_cached(descriptor):
        return _ARTIFACT_CACHE[descriptor.id]
    cache_dir = str(options.cache_dir) if options.cache_dir else None
    try:
        path = snapshot_download(
            descriptor.id,
            cache_dir=cache_dir,
            allow_patterns=_HUB_PATTERNS,
            local_files_only=True,
        )
    except LocalEntryNotFoundError:
        if not options.allow_remote:
            raise FileNotFoundError(
                f"{descriptor.id} is not in the local cache and remote models are disabled"
            ) from None
        logger.info("Downloading %s from the Hugging Face Hub", descriptor.id)
        path = snapshot_download(
            descriptor.id,
            cache_dir=cache_dir,
            allow_patterns=_HUB_PATTERNS,
            tqdm_class=_hub_progress_bar(options.progress, descriptor.id),
        )
    return _remember_artifact(descriptor, Path(path))


class Swin2SREngine:
    def __init__(self, descriptor: ModelDescriptor, path: Path, options: EngineOptions):
        self.descriptor = descriptor
        self.device = options.device
        options.progress(LoadProgress.initiating("image processor"))
        self.processor = AutoImageProcessor.from_pretrained(str(path))
        options.progress(LoadProgress.initiating("model weights"))
        model = Swin2SRForImageSuperResolution.from_pretrained(
            str(path), torch_dtype=torch.float32
        )
        self.model = model.to(self.device).eval()
        self.scale = int(getattr(model.config, "upscale", descriptor.scale))

    def __call__(self, image: Image.Image) -> RawImage:
        width, height = image.size
        inputs = self.processor(images=image, return_tensors="pt")
        pixel_values = inputs["pixel_values"].to(self.device)
        with torch.no_grad():
            outputs = self.model(pixel_values=pixel_values)
        reconstruction = outputs.reconstruction.squeeze(0).clamp(0, 1)
        array = reconstruction.mul(255).round().byte().cpu().permute(1, 2, 0).numpy()
        # The processor pads to a multiple of the window size.
        array = array[: height * self.scale, : width * self.scale]
        return RawImage.from_array(array)

    def close(self) -> None:
        self.model = None
        _release_torch_memory(self.device)


def _construct_swin2sr(descriptor: ModelDescriptor, options: EngineOptions) -> Engine:
    if not SWIN2SR_AVAILABLE:
        raise EngineUnavailableError(
            "Swin2SR is unavailable. Install torch and transformers."
        )
    path = _fetch_hub_snapshot(descriptor, options)
    return Swin2SREngine(descriptor, path, options)


# Real-ESRGAN (GitHub release weights)


@dataclass(frozen=True)
class RealESRGANSpec:
    filename: str
    url: str
    num_block: int = 23
    num_feat: int = 64
    num_grow_ch: int = 32


REAL_ESRGAN_SPECS: dict[str, RealESRGANSpec] = {
    "RealESRGAN_x4plus_anime_6B": RealESRGANSpec(
        filename="RealESRGAN_x4plus_anime_6B.pth",
        url="https://github.com/xinntao/Real-ESRGAN/releases/download/v0.2.2.4/RealESRGAN_x4plus_anime_6B.pth",
        num_block=6,
    ),
}


def _download_weights(url: str, target: Path, sink: ProgressSink) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_suffix(target.suffix + ".download")

    def _report(block_num: int, block_size: int, total_size: int) -> None:
        if total_size > 0:
            loaded = min(block_num * block_size, total_size)
            sink(LoadProgress.downloading(target.name, loaded=loaded, total=total_size))
        else:
            sink(LoadProgress.downloading(target.name))

    try:
        urllib.request.urlretrieve(url, tmp_path, reporthook=_report)
        tmp_path.replace(target)
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)


def _fetch_weights(descriptor: ModelDescriptor, spec: RealESRGANSpec, options: EngineOptions) -> Path:
    if artifact_cached(descriptor):
        return _ARTIFACT_CACHE[descriptor.id]
    weights_dir = options.weights_dir or Path("models/super_resolution/weights")
    target = weights_dir / spec.filename
    if not target.exists():
        if not options.allow_remote:
            raise FileNotFoundError(
                f"Missing weights file: {target} (remote models are disabled)"
            )
        logger.info("Downloading %s to %s", spec.url, target)
        _download_weights(spec.url, target, options.progress)
    return _remember_artifact(descriptor, target)


class RealESRGANEngine:
    def __init__(
        self,
        descriptor: ModelDescriptor,
        spec: RealESRGANSpec,
        weights_path: Path,
        options: EngineOptions,
    ):
        self.descriptor = descriptor
        self.device = options.device
        self.scale = int(descriptor.scale)
        options.progress(LoadProgress.initiating(weights_path.name))
        model = RRDBNet(
            num_in_ch=3,
            num_out_ch=3,
            num_feat=spec.num_feat,
            num_block=spec.num_block,
            num_grow_ch=spec.num_grow_ch,
            scale=self.scale,
        )
        self.upsampler: Any = RealESRGANer(
            scale=self.scale,
            model_path=str(weights_path),
            model=model,
            tile=0,
            tile_pad=10,
            pre_pad=0,
            half=options.precision != FULL_PRECISION,
            device=torch.device(self.device),
        )

    def __call__(self, image: Image.Image) -> RawImage:
        rgb = np.asarray(image.convert("RGB"))
        bgr = rgb[:, :, ::-1]
        output, _ = self.upsampler.enhance(bgr, outscale=self.scale)
        return RawImage.from_array(output[:, :, ::-1])

    def close(self) -> None:
        self.upsampler = None
        _release_torch_memory(self.device)


def _construct_realesrgan(descriptor: ModelDescriptor, options: EngineOptions) -> Engine:
    if not REAL_ESRGAN_AVAILABLE:
        raise EngineUnavailableError(
            "Real-ESRGAN is unavailable. Install torch and realesrgan."
        )
    spec = REAL_ESRGAN_SPECS.get(descriptor.id)
    if spec is None:
        raise ValueError(f"No Real-ESRGAN weights are known for {descriptor.id}")
    weights_path = _fetch_weights(descriptor, spec, options)
    return RealESRGANEngine(descriptor, spec, weights_path, options)


_CONSTRUCTORS: dict[str, EngineFactory] = {
    "swin2sr": _construct_swin2sr,
    "realesrgan": _construct_realesrgan,
}


def construct_engine(descriptor: ModelDescriptor, options: EngineOptions) -> Engine:
    """Build an engine for *descriptor*, downloading artifacts if needed.

    Blocking; reports ``downloading`` and ``initiating`` events through
    ``options.progress``.
    """

    constructor = _CONSTRUCTORS.get(descriptor.family)
    if constructor is None:
        raise ValueError(f"Unsupported model family {descriptor.family!r}")
    return constructor(descriptor, options)


__all__ = [
    "AccelerationBackend",
    "FULL_PRECISION",
    "RawImage",
    "EngineOptions",
    "Engine",
    "EngineFactory",
    "RealESRGANSpec",
    "REAL_ESRGAN_SPECS",
    "is_available",
    "import_error",
    "select_device",
    "resolve_backend",
    "artifact_cached",
    "clear_artifact_cache",
    "construct_engine",
]

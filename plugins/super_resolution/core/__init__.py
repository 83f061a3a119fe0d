"""Super resolution core functionality."""

from .assets import Asset, AssetStore
from .converter import OutputConverter, RenderableOutput
from .engine import (
    AccelerationBackend,
    EngineOptions,
    RawImage,
    artifact_cached,
    construct_engine,
    import_error,
    is_available,
    resolve_backend,
    select_device,
)
from .errors import (
    EncodeError,
    EngineUnavailableError,
    InferenceError,
    ModelLoadError,
    SuperResolutionError,
    UnknownModelError,
    ValidationError,
)
from .executor import InferenceExecutor, InferenceResult, SourceImage, decode_source_image
from .loader import EngineHandle, ModelLoader
from .progress import LoadProgress, ProgressChannel, ProgressPhase
from .registry import REGISTRY, ModelDescriptor, ModelRegistry, ScaleFactor, find_model, list_models
from .service import SessionService
from .session import (
    Download,
    SessionController,
    SessionPhase,
    SessionSnapshot,
    download_filename,
)
from .settings import SuperResolutionSettings, load_settings

__all__ = [
    "AccelerationBackend",
    "Asset",
    "AssetStore",
    "Download",
    "EncodeError",
    "EngineHandle",
    "EngineOptions",
    "EngineUnavailableError",
    "InferenceError",
    "InferenceExecutor",
    "InferenceResult",
    "LoadProgress",
    "ModelDescriptor",
    "ModelLoadError",
    "ModelLoader",
    "ModelRegistry",
    "OutputConverter",
    "ProgressChannel",
    "ProgressPhase",
    "REGISTRY",
    "RawImage",
    "RenderableOutput",
    "ScaleFactor",
    "SessionController",
    "SessionPhase",
    "SessionService",
    "SessionSnapshot",
    "SourceImage",
    "SuperResolutionError",
    "SuperResolutionSettings",
    "UnknownModelError",
    "ValidationError",
    "artifact_cached",
    "construct_engine",
    "decode_source_image",
    "download_filename",
    "find_model",
    "import_error",
    "is_available",
    "list_models",
    "load_settings",
    "resolve_backend",
    "select_device",
]

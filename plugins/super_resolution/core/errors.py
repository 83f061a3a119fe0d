"""Error taxonomy for the super-resolution session."""

from __future__ import annotations


class SuperResolutionError(RuntimeError):
    """Base error for super-resolution failures."""

    code = "super_resolution.error"
    status_code = 500


class UnknownModelError(SuperResolutionError):
    """Raised when a model identifier is not in the registry."""

    code = "super_resolution.unknown_model"
    status_code = 400

    def __init__(self, model_id: str):
        super().__init__(f"Unknown model selection: {model_id!r}")
        self.model_id = model_id


class ValidationError(SuperResolutionError):
    """Raised when a command is rejected because its precondition fails."""

    code = "super_resolution.validation"
    status_code = 400


class ModelLoadError(SuperResolutionError):
    """Raised when an engine cannot be constructed for a model."""

    code = "super_resolution.model_load"

    def __init__(self, model_id: str, cause: BaseException | str):
        self.model_id = model_id
        self.cause = cause
        super().__init__(f"Failed to load model: {_describe(cause)}")


class InferenceError(SuperResolutionError):
    """Raised when the engine fails while upscaling an image."""

    code = "super_resolution.inference"

    def __init__(self, cause: BaseException | str):
        self.cause = cause
        super().__init__(f"Processing failed: {_describe(cause)}")


class EncodeError(SuperResolutionError):
    """Raised when raw engine output cannot be encoded for display."""

    code = "super_resolution.encode"

    def __init__(self, cause: BaseException | str):
        self.cause = cause
        super().__init__(f"Processing failed: {_describe(cause)}")


class EngineUnavailableError(SuperResolutionError):
    """Raised when the optional inference stack is not installed."""

    code = "super_resolution.unavailable"
    status_code = 503


def _describe(cause: BaseException | str) -> str:
    if isinstance(cause, BaseException):
        text = str(cause)
        return text or type(cause).__name__
    return cause


__all__ = [
    "SuperResolutionError",
    "UnknownModelError",
    "ValidationError",
    "ModelLoadError",
    "InferenceError",
    "EncodeError",
    "EngineUnavailableError",
]

"""Super resolution API blueprint."""

from __future__ import annotations

import atexit
from pathlib import Path
from threading import Lock

from flask import Blueprint, Response, current_app, request, send_file, url_for

from common.errors import NotFoundAppError, PayloadTooLargeAppError, ValidationAppError
from common.io import buffer_from_bytes
from common.responses import accepted, fail, fail_from, ok
from common.validation import SchemaModel, ValidationError, parse_model, upload_size, validate_mime

from ..core import (
    SessionService,
    SessionSnapshot,
    SuperResolutionError,
    artifact_cached,
    find_model,
    import_error,
    is_available,
    list_models,
    load_settings,
    resolve_backend,
)
from ..core import ValidationError as SessionValidationError

api_bp = Blueprint(
    "super_resolution_api", __name__, url_prefix="/api/v1/super_resolution"
)

EXTENSION_KEY = "super_resolution"
ALLOWED_MIME = {"image/png", "image/jpeg", "image/webp"}
_SERVICE_LOCK = Lock()


class ModelSelection(SchemaModel):
    model: str


def _repo_root() -> Path:
    return Path(current_app.root_path).resolve().parent


def _settings():
    settings = current_app.config.get("PLUGIN_SETTINGS", {}).get("super_resolution", {})
    return load_settings(settings, root=_repo_root())


def _service() -> SessionService:
    service = current_app.extensions.get(EXTENSION_KEY)
    if service is not None:
        return service
    with _SERVICE_LOCK:
        service = current_app.extensions.get(EXTENSION_KEY)
        if service is None:
            service = SessionService.from_settings(_settings())
            current_app.extensions[EXTENSION_KEY] = service
            atexit.register(service.close)
    return service


def _asset_url(asset_id: str) -> str:
    return url_for("super_resolution_api.asset", asset_id=asset_id)


def _state(snapshot: SessionSnapshot, *, status: int = 200) -> Response:
    payload = snapshot.to_dict(_asset_url)
    if status == 202:
        return accepted(payload)
    return ok(payload, status=status)


def _session_failure(exc: SuperResolutionError) -> Response:
    return fail_from(exc, fallback_code="super_resolution.error")


@api_bp.before_request
def _require_enabled():
    if not _settings().enabled:
        return fail(
            NotFoundAppError(
                message="Super-resolution is disabled in config.yml",
                code="super_resolution.disabled",
            )
        )
    return None


@api_bp.get("/health")
def health() -> Response:
    settings = _settings()
    backend, device = resolve_backend(settings.device)
    service = current_app.extensions.get(EXTENSION_KEY)
    snapshot = service.snapshot() if service is not None else None
    handle = snapshot.handle if snapshot is not None else None
    default = find_model(settings.default_model)
    payload = {
        "status": "ok",
        "available": is_available(),
        "import_error": import_error(),
        "device": device,
        "backend": backend.value,
        "model_loaded": handle is not None,
        "model_name": handle.descriptor.name if handle else default.name,
        "cached": artifact_cached(handle.descriptor if handle else default),
    }
    return ok(payload)


@api_bp.get("/models")
def models() -> Response:
    settings = _settings()
    return ok(
        {
            "models": [descriptor.to_dict() for descriptor in list_models()],
            "default_model": settings.default_model,
        }
    )


@api_bp.get("/state")
def state() -> Response:
    return _state(_service().snapshot())


@api_bp.post("/model")
def select_model() -> Response:
    raw = request.get_json(silent=True)
    if raw is None:
        raw = {key: value for key, value in request.form.items()}
    try:
        selection = parse_model(ModelSelection, raw)
    except ValidationError as exc:
        return fail(
            ValidationAppError(
                message=str(exc),
                code="super_resolution.invalid_parameters",
                details={"errors": exc.details} if exc.details else None,
            )
        )
    try:
        snapshot = _service().select_model(selection.model)
    except SuperResolutionError as exc:
        return _session_failure(exc)
    return _state(snapshot, status=202)


@api_bp.post("/image")
def select_image() -> Response:
    settings = _settings()
    file = request.files.get("image")
    if not file:
        return fail(
            ValidationAppError(
                message="Image file is required",
                code="super_resolution.missing_image",
            )
        )

    max_bytes = max(1, settings.max_upload_mb) * 1024 * 1024
    if upload_size(file) > max_bytes:
        return fail(
            PayloadTooLargeAppError(
                message=f"File exceeds {settings.max_upload_mb} MB limit",
                code="super_resolution.too_large",
            )
        )

    try:
        validate_mime([file], ALLOWED_MIME)
    except ValidationError as exc:
        return fail(
            ValidationAppError(
                message=str(exc),
                code="super_resolution.invalid_upload",
            )
        )

    try:
        file.stream.seek(0)
    except (AttributeError, OSError):
        pass
    try:
        snapshot = _service().select_image(file.read(), file.filename)
    except SuperResolutionError as exc:
        return _session_failure(exc)
    return _state(snapshot)


@api_bp.post("/run")
def run() -> Response:
    try:
        snapshot = _service().run()
    except SuperResolutionError as exc:
        return _session_failure(exc)
    return _state(snapshot, status=202)


@api_bp.post("/reset")
def reset() -> Response:
    return _state(_service().reset())


@api_bp.get("/download")
def download() -> Response:
    try:
        artifact = _service().download()
    except SessionValidationError as exc:
        return fail(NotFoundAppError(message=str(exc), code="super_resolution.no_output"))
    return send_file(
        buffer_from_bytes(artifact.data),
        mimetype=artifact.mime,
        as_attachment=True,
        download_name=artifact.filename,
        max_age=0,
    )


@api_bp.get("/assets/<asset_id>")
def asset(asset_id: str) -> Response:
    item = _service().asset(asset_id)
    if item is None:
        return fail(
            NotFoundAppError(
                message="Asset is no longer available",
                code="super_resolution.not_found",
            )
        )
    return send_file(buffer_from_bytes(item.data), mimetype=item.mime, max_age=0)


blueprints = [api_bp]


__all__ = ["blueprints", "health", "models", "state", "select_model", "select_image", "run", "reset", "download", "asset"]

"""Configuration helpers for super-resolution."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .converter import DEFAULT_QUALITY
from .registry import REGISTRY


@dataclass(frozen=True)
class SuperResolutionSettings:
    enabled: bool
    device: str
    allow_remote_models: bool
    cache_dir: Path | None
    weights_dir: Path
    max_upload_mb: int
    max_input_pixels: int
    inference_timeout_s: float | None
    jpeg_quality: int
    default_model: str
    autoload: bool


def _resolve_path(root: Path, value: str) -> Path:
    path = Path(value).expanduser()
    if path.is_absolute():
        return path
    return (root / path).resolve()


def _as_bool(value: object, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _as_number(value: object, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def load_settings(raw: Mapping[str, object] | None, *, root: Path) -> SuperResolutionSettings:
    raw = raw or {}
    enabled = _as_bool(raw.get("enabled"), True)
    device = str(raw.get("device", "auto"))
    allow_remote = _as_bool(raw.get("allow_remote_models"), True)

    max_upload_mb = raw.get("max_upload_mb")
    if max_upload_mb is None:
        upload = raw.get("upload")
        if isinstance(upload, Mapping):
            max_upload_mb = upload.get("max_mb", 20)
        else:
            max_upload_mb = 20
    max_upload_mb = max(1, int(_as_number(max_upload_mb, 20)))
    max_input_pixels = max(1, int(_as_number(raw.get("max_input_pixels"), 2048 * 2048)))

    timeout = _as_number(raw.get("inference_timeout_s"), 300.0)
    inference_timeout_s = timeout if timeout > 0 else None
    jpeg_quality = max(1, min(100, int(_as_number(raw.get("jpeg_quality"), DEFAULT_QUALITY))))

    cache_dir = raw.get("cache_dir")
    weights_dir = _resolve_path(
        root, str(raw.get("weights_dir", "models/super_resolution/weights"))
    )

    default_model = str(raw.get("default_model") or REGISTRY.default.id)
    if default_model not in {descriptor.id for descriptor in REGISTRY}:
        default_model = REGISTRY.default.id

    return SuperResolutionSettings(
        enabled=enabled,
        device=device,
        allow_remote_models=allow_remote,
        cache_dir=_resolve_path(root, str(cache_dir)) if cache_dir else None,
        weights_dir=weights_dir,
        max_upload_mb=max_upload_mb,
        max_input_pixels=max_input_pixels,
        inference_timeout_s=inference_timeout_s,
        jpeg_quality=jpeg_quality,
        default_model=default_model,
        autoload=_as_bool(raw.get("autoload"), True),
    )


__all__ = ["SuperResolutionSettings", "load_settings"]

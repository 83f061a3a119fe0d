"""JSON envelopes shared by every plugin API.

Success bodies are ``{"success": true, "data": ...}``; failures are
``{"success": false, "error": {"code", "message", "details"}}``.
"""

from __future__ import annotations

from typing import Any, Mapping

from flask import Response, jsonify

from .errors import AppError, ensure_app_error


def ok(data: Any, *, status: int = 200) -> Response:
    response = jsonify({"success": True, "data": data})
    response.status_code = status
    return response


def accepted(data: Any) -> Response:
    """Envelope for commands whose work continues in the background."""

    return ok(data, status=202)


def fail(error: AppError | Mapping[str, Any], *, status: int | None = None) -> Response:
    if isinstance(error, AppError):
        body, default_status = error.to_dict(), error.status_code
    else:
        body, default_status = dict(error), 400
    response = jsonify({"success": False, "error": body})
    response.status_code = status or default_status
    return response


def fail_from(exc: Exception, *, fallback_code: str) -> Response:
    """Failure envelope for an exception raised by plugin core code."""

    return fail(ensure_app_error(exc, fallback_code=fallback_code))


__all__ = ["ok", "accepted", "fail", "fail_from"]

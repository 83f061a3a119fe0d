"""Development entry point."""

import os

from app import create_app


def _resolve_port() -> int:
    value = os.getenv("SR_STUDIO_PORT") or os.getenv("PORT") or "5001"
    try:
        return int(value)
    except ValueError as exc:
        raise SystemExit(
            f"Invalid port '{value}'. Set SR_STUDIO_PORT to a number."
        ) from exc


if __name__ == "__main__":
    app = create_app()
    # A single process keeps one session and one loaded model.
    app.run(host="0.0.0.0", port=_resolve_port(), debug=False, threaded=True, use_reloader=False)

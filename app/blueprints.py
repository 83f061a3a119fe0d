"""Blueprint registration helpers."""

from __future__ import annotations

import importlib
import pkgutil
from pathlib import Path
from typing import Iterator

from flask import Blueprint, Flask

from common.logging import get_logger


def _iter_blueprints(package: str = "plugins") -> Iterator[Blueprint]:
    module_path = Path(__file__).resolve().parent.parent / package
    if not module_path.exists():
        return
    for module_info in pkgutil.iter_modules([str(module_path)]):
        if not module_info.ispkg:
            continue
        dotted = f"{package}.{module_info.name}.api"
        try:
            module = importlib.import_module(dotted)
        except ModuleNotFoundError as exc:
            if exc.name != dotted:
                raise
            continue
        yield from getattr(module, "blueprints", None) or ()


def register_plugin_blueprints(app: Flask) -> list[str]:
    names: list[str] = []
    for bp in _iter_blueprints():
        app.register_blueprint(bp)
        names.append(bp.name)
    get_logger().debug("Registered blueprints: %s", ", ".join(names) or "none")
    return names


__all__ = ["register_plugin_blueprints"]

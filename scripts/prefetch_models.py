#!/usr/bin/env python3
"""Download and warm the artifacts for the super-resolution models."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Mapping

import yaml

from plugins.super_resolution.core import (
    REGISTRY,
    ModelLoader,
    ModelLoadError,
    ProgressChannel,
    load_settings,
)


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _load_config(path: Path) -> Mapping[str, object]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _plugin_settings(config: Mapping[str, object]) -> Mapping[str, object]:
    plugins = config.get("plugins", {}) if isinstance(config, Mapping) else {}
    super_res = plugins.get("super_resolution", {}) if isinstance(plugins, Mapping) else {}
    return super_res if isinstance(super_res, Mapping) else {}


async def _print_progress(channel: ProgressChannel, model_id: str) -> None:
    async for event in channel.events():
        percent = f" {event.percent}%" if event.percent is not None else ""
        print(f"[{model_id}] {event.status}{percent}", flush=True)


async def _prefetch(loader: ModelLoader, model_ids: list[str]) -> int:
    failures = 0
    for model_id in model_ids:
        descriptor = loader.registry.find(model_id)
        channel = ProgressChannel()
        printer = asyncio.create_task(_print_progress(channel, model_id))
        try:
            handle = await loader.load(descriptor, channel)
        except ModelLoadError as exc:
            failures += 1
            print(f"[{model_id}] {exc}", file=sys.stderr)
        else:
            handle.release()
        finally:
            channel.close()
            await printer
    return failures


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--config",
        type=Path,
        default=_repo_root() / "config.yml",
        help="Path to config.yml",
    )
    parser.add_argument(
        "--model",
        action="append",
        help="Limit to a model id (repeatable). Defaults to every registry model.",
    )
    parser.add_argument(
        "--device",
        help="Override the device preference (auto, cuda, mps, cpu).",
    )
    args = parser.parse_args()

    settings = load_settings(_plugin_settings(_load_config(args.config)), root=_repo_root())
    model_ids = args.model or [descriptor.id for descriptor in REGISTRY]
    unknown = [model_id for model_id in model_ids if model_id not in {d.id for d in REGISTRY}]
    if unknown:
        raise SystemExit(f"Unknown model(s): {', '.join(unknown)}")

    loader = ModelLoader(
        device=args.device or settings.device,
        cache_dir=settings.cache_dir,
        weights_dir=settings.weights_dir,
        allow_remote=True,
    )
    failures = asyncio.run(_prefetch(loader, model_ids))
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())

"""Revocable in-memory display assets."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from threading import Lock


@dataclass(frozen=True)
class Asset:
    id: str
    data: bytes
    mime: str


class AssetStore:
    """Holds bytes behind opaque ids until they are revoked.

    Reads may come from request threads while the session publishes and
    revokes on its event loop, so access is guarded by a lock.
    """

    def __init__(self):
        self._assets: dict[str, Asset] = {}
        self._lock = Lock()

    def publish(self, data: bytes, mime: str) -> str:
        asset = Asset(id=uuid.uuid4().hex, data=data, mime=mime)
        with self._lock:
            self._assets[asset.id] = asset
        return asset.id

    def get(self, asset_id: str) -> Asset | None:
        with self._lock:
            return self._assets.get(asset_id)

    def revoke(self, asset_id: str | None) -> None:
        if asset_id is None:
            return
        with self._lock:
            self._assets.pop(asset_id, None)

    def clear(self) -> None:
        with self._lock:
            self._assets.clear()

    def __contains__(self, asset_id: object) -> bool:
        with self._lock:
            return asset_id in self._assets

    def __len__(self) -> int:
        with self._lock:
            return len(self._assets)


__all__ = ["Asset", "AssetStore"]

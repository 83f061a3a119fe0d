"""Model load progress events and the channel that carries them."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable


class ProgressPhase(str, Enum):
    CHECKING_CACHE = "checking-cache"
    DOWNLOADING = "downloading"
    INITIATING = "initiating"
    READY = "ready"

    @property
    def rank(self) -> int:
        return _RANKS[self]


_RANKS = {
    ProgressPhase.CHECKING_CACHE: 0,
    ProgressPhase.DOWNLOADING: 1,
    ProgressPhase.INITIATING: 2,
    ProgressPhase.READY: 3,
}


def _percent(
    fraction: float | None = None,
    loaded: int | None = None,
    total: int | None = None,
) -> int | None:
    if fraction is not None:
        value = fraction * 100
    elif loaded is not None and total:
        value = loaded / total * 100
    else:
        return None
    return max(0, min(100, round(value)))


@dataclass(frozen=True)
class LoadProgress:
    phase: ProgressPhase
    percent: int | None = None
    artifact: str | None = None

    @classmethod
    def checking_cache(cls) -> "LoadProgress":
        return cls(ProgressPhase.CHECKING_CACHE)

    @classmethod
    def downloading(
        cls,
        artifact: str | None = None,
        *,
        fraction: float | None = None,
        loaded: int | None = None,
        total: int | None = None,
    ) -> "LoadProgress":
        """Download event from a fractional signal or a loaded/total pair."""

        return cls(
            ProgressPhase.DOWNLOADING,
            percent=_percent(fraction, loaded, total),
            artifact=artifact,
        )

    @classmethod
    def initiating(cls, artifact: str) -> "LoadProgress":
        return cls(ProgressPhase.INITIATING, artifact=artifact)

    @classmethod
    def ready(cls) -> "LoadProgress":
        return cls(ProgressPhase.READY, percent=100)

    @property
    def status(self) -> str:
        if self.phase is ProgressPhase.CHECKING_CACHE:
            return "Checking cache..."
        if self.phase is ProgressPhase.DOWNLOADING:
            return f"Downloading {self.artifact or 'model files'}..."
        if self.phase is ProgressPhase.INITIATING:
            return f"Loading {self.artifact or 'model'}..."
        return "Model ready!"

    def to_dict(self) -> dict[str, object]:
        return {
            "phase": self.phase.value,
            "percent": self.percent,
            "artifact": self.artifact,
            "status": self.status,
        }


ProgressSink = Callable[[LoadProgress], None]


class ProgressChannel:
    """Ordered stream of :class:`LoadProgress` values for one load.

    ``emit`` may be called from any thread; events are accepted on the
    owning event loop in arrival order. Phases never move backwards and
    download percentages never decrease; events that would break either
    rule are dropped. Nothing is accepted after the terminal ``ready``
    event or after :meth:`close`.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue[LoadProgress | None] = asyncio.Queue()
        self._last: LoadProgress | None = None
        self._closed = False

    @property
    def last(self) -> LoadProgress | None:
        return self._last

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: LoadProgress) -> None:
        if self._loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._accept(event)
        else:
            self._loop.call_soon_threadsafe(self._accept, event)

    def _accept(self, event: LoadProgress) -> None:
        if self._closed:
            return
        event = self._in_order(event)
        if event is None:
            return
        self._last = event
        self._queue.put_nowait(event)

    def _in_order(self, event: LoadProgress) -> LoadProgress | None:
        last = self._last
        if last is None:
            return event
        if last.phase is ProgressPhase.READY or event.phase.rank < last.phase.rank:
            return None
        if (
            event.phase is ProgressPhase.DOWNLOADING
            and last.phase is ProgressPhase.DOWNLOADING
            and last.percent is not None
        ):
            if event.percent is None or event.percent < last.percent:
                return LoadProgress(event.phase, last.percent, event.artifact)
        return event

    def close(self) -> None:
        """Stop accepting events and end :meth:`events` once drained."""

        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[LoadProgress]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


__all__ = ["ProgressPhase", "LoadProgress", "ProgressSink", "ProgressChannel"]

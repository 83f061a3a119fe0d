"""Event-loop and thread helpers shared by plugins."""

from __future__ import annotations

import asyncio
import threading
from concurrent.futures import Future
from functools import partial
from typing import Any, Awaitable, Callable, TypeVar


T = TypeVar("T")


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run *func* on the loop's default thread pool and await its result."""

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args, **kwargs))


class BackgroundLoop:
    """An asyncio event loop running forever on a daemon thread.

    Synchronous callers (request handlers, scripts) hand work to the loop
    with :meth:`submit` or :meth:`call`; everything scheduled this way runs
    on the loop thread, one callback at a time.
    """

    def __init__(self, name: str = "sr-studio-loop"):
        self._loop = asyncio.new_event_loop()
        self._ready = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()
        self._ready.wait()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._loop.is_closed()

    def _run(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._ready.set)
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()

    def submit(self, coro: Awaitable[T]) -> "Future[T]":
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def call(self, func: Callable[..., T], *args: Any, timeout: float | None = 30.0) -> T:
        """Run a plain callable on the loop thread and return its result."""

        async def _invoke() -> T:
            return func(*args)

        return self.submit(_invoke()).result(timeout)

    def stop(self, timeout: float | None = 5.0) -> None:
        if not self.running:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout)


__all__ = ["BackgroundLoop", "run_blocking"]

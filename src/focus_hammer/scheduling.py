from __future__ import annotations

import asyncio
import threading
from typing import Callable, Protocol


class Cancellable(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Where cooperative UI-side work runs. Callbacks must be short."""

    def call_soon(self, fn: Callable[[], None]) -> Cancellable:
        ...

    def call_later(self, delay_seconds: float, fn: Callable[[], None]) -> Cancellable:
        ...


class _Handle:
    def __init__(self) -> None:
        self.cancelled = False
        self._inner: asyncio.Handle | None = None
        self._lock = threading.Lock()

    def attach(self, inner: asyncio.Handle) -> None:
        with self._lock:
            if self.cancelled:
                inner.cancel()
            self._inner = inner

    def cancel(self) -> None:
        with self._lock:
            self.cancelled = True
            if self._inner is not None:
                self._inner.cancel()


class PrimaryLoop:
    """An asyncio event loop on its own thread, standing in for the UI main loop.

    Everything scheduled here shares one thread, so a slow callback delays
    every other callback, which is the starvation the heartbeat measures.
    """

    def __init__(self, name: str = "primary-loop") -> None:
        self.name = name
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "PrimaryLoop":
        if self.running:
            return self
        self._ready.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        self._ready.wait(timeout=5.0)
        return self

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._ready.set()
        try:
            loop.run_forever()
        finally:
            loop.close()

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None or self._loop.is_closed():
            raise RuntimeError("primary loop is not running")
        return self._loop

    def call_soon(self, fn: Callable[[], None]) -> Cancellable:
        handle = _Handle()
        loop = self._require_loop()

        def _guarded() -> None:
            if not handle.cancelled:
                fn()

        handle.attach(loop.call_soon_threadsafe(_guarded))
        return handle

    def call_later(self, delay_seconds: float, fn: Callable[[], None]) -> Cancellable:
        handle = _Handle()
        loop = self._require_loop()
        delay = max(0.0, float(delay_seconds))

        def _arm() -> None:
            if not handle.cancelled:
                handle.attach(loop.call_later(delay, _fire))

        def _fire() -> None:
            if not handle.cancelled:
                fn()

        loop.call_soon_threadsafe(_arm)
        return handle

    def stop(self, timeout: float = 5.0) -> None:
        loop = self._loop
        thread = self._thread
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout=timeout)
            if thread.is_alive():
                return
        self._thread = None
        self._loop = None

    def __enter__(self) -> "PrimaryLoop":
        return self.start()

    def __exit__(self, *exc: object) -> None:
        self.stop()

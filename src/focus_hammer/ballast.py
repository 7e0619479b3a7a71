from __future__ import annotations

import resource
import sys
import threading
import time
from typing import Any, Callable


MEGABYTE = 1024 * 1024


class BallastExhausted(RuntimeError):
    pass


def _touch_allocate(nbytes: int) -> bytearray:
    # Filled rather than zeroed so the pages are actually resident.
    return bytearray(b"\x5a") * nbytes


def peak_rss_mb() -> float:
    usage = resource.getrusage(resource.RUSAGE_SELF)
    # ru_maxrss is bytes on macOS and kilobytes elsewhere.
    divisor = MEGABYTE if sys.platform == "darwin" else 1024
    return round(float(usage.ru_maxrss) / divisor, 3)


class MemoryBallast:
    """Deliberately retained memory, grown per stage and released only at teardown."""

    def __init__(
        self,
        *,
        allocate_fn: Callable[[int], Any] | None = None,
        monotonic_fn: Callable[[], float] | None = None,
        chunk_mb: int = 1,
    ) -> None:
        self._allocate = allocate_fn or _touch_allocate
        self._mono = monotonic_fn or time.monotonic
        self.chunk_mb = max(1, int(chunk_mb))
        self._lock = threading.Lock()
        self._chunks: list[Any] = []
        self._total_mb = 0
        self.samples: list[tuple[float, int]] = [(self._mono(), 0)]
        self.released = False

    @property
    def total_mb(self) -> int:
        with self._lock:
            return self._total_mb

    def grow(self, mb: int, *, label: str = "") -> int:
        """Allocate ``mb`` on a helper thread and join it before returning the new total."""
        amount = max(0, int(mb))
        if amount == 0:
            self._sample()
            return self.total_mb
        if self.released:
            raise BallastExhausted("ballast already released")

        failure: list[BaseException] = []

        def _work() -> None:
            remaining = amount
            while remaining > 0:
                step = min(self.chunk_mb, remaining)
                try:
                    chunk = self._allocate(step * MEGABYTE)
                except MemoryError as exc:
                    failure.append(exc)
                    return
                with self._lock:
                    self._chunks.append(chunk)
                    self._total_mb += step
                remaining -= step

        worker = threading.Thread(target=_work, name=f"ballast-{label or 'grow'}", daemon=True)
        worker.start()
        worker.join()
        self._sample()
        if failure:
            raise BallastExhausted(f"allocation failed after {self.total_mb} MB: {failure[0]!r}")
        return self.total_mb

    def _sample(self) -> None:
        with self._lock:
            self.samples.append((self._mono(), self._total_mb))

    def release(self) -> int:
        with self._lock:
            freed = self._total_mb
            self._chunks.clear()
            self.released = True
            return freed

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "total_mb": self._total_mb,
                "chunks": len(self._chunks),
                "samples": len(self.samples),
                "released": self.released,
            }

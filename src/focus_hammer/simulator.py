from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import threading
import time
from typing import Any, Callable

from .interfaces import DispatchObserver, HardwareConfirmationBridge
from .scheduling import Scheduler


@dataclass(frozen=True)
class EngineTuning:
    rows: int = 10
    cols: int = 10
    base_service_ms: float = 2.0
    stall_ms_per_mb: float = 0.25
    stall_ms_per_backlog: float = 0.5
    lockup_backlog: int = 40
    lockup_stall_ms: float = 6000.0
    replay_factor: int = 2
    queue_limit: int = 5000
    max_service_ms: float = 1000.0


class EngineSaturated(RuntimeError):
    pass


_MOVES = {"up": (-1, 0), "down": (1, 0), "left": (0, -1), "right": (0, 1)}


class SimulatedFocusEngine:
    """Grid focus engine that retires commands on the primary loop.

    Each ``send`` is confirmed as a hardware press immediately and queued.
    Retiring a command blocks the primary loop for a service time that grows
    with ballast and backlog. Once the backlog crosses ``lockup_backlog`` the
    engine locks: one long stall, focus freezes, and every later command is
    dispatched ``replay_factor`` times without any new hardware press.
    ``send`` raises ``EngineSaturated`` once ``queue_limit`` commands wait.
    ``close`` drops the queue and cuts any in-progress stall short, so the
    primary loop can stop promptly.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        hardware: HardwareConfirmationBridge,
        dispatch: DispatchObserver,
        *,
        tuning: EngineTuning | None = None,
        ballast_mb_fn: Callable[[], int] | None = None,
        monotonic_fn: Callable[[], float] | None = None,
        busy_fn: Callable[[float], object] | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.hardware = hardware
        self.dispatch = dispatch
        self.tuning = tuning or EngineTuning()
        self._ballast_mb = ballast_mb_fn or (lambda: 0)
        self._mono = monotonic_fn or time.monotonic
        self._closed = threading.Event()
        self._busy = busy_fn or self._closed.wait
        self._lock = threading.Lock()
        self._queue: deque[tuple[str, str]] = deque()
        self._retire_pending = False
        self._row = max(1, self.tuning.rows) // 2
        self._col = max(1, self.tuning.cols) // 2
        self._seq = 0
        self.locked = False
        self.locked_at: float | None = None
        self.sent = 0
        self.retired = 0
        self.replayed = 0
        self.max_backlog = 0
        self.rejected = 0
        self.discarded = 0

    def send(self, direction: str) -> None:
        if direction not in _MOVES:
            raise ValueError(f"unknown direction: {direction}")
        now = self._mono()
        with self._lock:
            if self._closed.is_set():
                raise EngineSaturated("engine closed")
            if len(self._queue) >= self.tuning.queue_limit:
                self.rejected += 1
                raise EngineSaturated(f"backlog at queue_limit={self.tuning.queue_limit}")
            self._seq += 1
            press_id = f"{direction}-{self._seq}"
            self._queue.append((press_id, direction))
            self.sent += 1
            self.max_backlog = max(self.max_backlog, len(self._queue))
            schedule = not self._retire_pending
            self._retire_pending = True
        self.hardware.post(press_id, now)
        if schedule:
            self.scheduler.call_soon(self._retire)

    def current_focus_id(self) -> str:
        with self._lock:
            return f"cell-{self._row}-{self._col}"

    def backlog(self) -> int:
        with self._lock:
            return len(self._queue)

    def _service_seconds(self, backlog: int) -> float:
        t = self.tuning
        ms = t.base_service_ms + t.stall_ms_per_mb * float(self._ballast_mb()) + t.stall_ms_per_backlog * backlog
        return min(max(0.0, ms), max(0.0, t.max_service_ms)) / 1000.0

    def close(self) -> int:
        """Stop retiring; return how many queued commands were dropped."""
        self._closed.set()
        with self._lock:
            dropped = len(self._queue)
            self._queue.clear()
            self.discarded += dropped
            self._retire_pending = False
        return dropped

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _retire(self) -> None:
        with self._lock:
            if self._closed.is_set() or not self._queue:
                self._retire_pending = False
                return
            press_id, direction = self._queue.popleft()
            backlog = len(self._queue)
            lock_now = not self.locked and backlog >= self.tuning.lockup_backlog
            if lock_now:
                self.locked = True
                self.locked_at = self._mono()

        if lock_now:
            self._busy(self.tuning.lockup_stall_ms / 1000.0)
        self._busy(self._service_seconds(backlog))

        if self.locked:
            for copy in range(max(1, self.tuning.replay_factor)):
                self.dispatch.on_dispatch(press_id, self._mono(), direction=direction, replay=copy > 0)
            with self._lock:
                self.replayed += max(0, self.tuning.replay_factor - 1)
        else:
            self.dispatch.on_dispatch(press_id, self._mono(), direction=direction, replay=False)
            self._move(direction)

        with self._lock:
            self.retired += 1
            more = bool(self._queue)
            if not more:
                self._retire_pending = False
        if more:
            self.scheduler.call_soon(self._retire)

    def _move(self, direction: str) -> None:
        dr, dc = _MOVES[direction]
        with self._lock:
            self._row = min(max(0, self._row + dr), max(1, self.tuning.rows) - 1)
            self._col = min(max(0, self._col + dc), max(1, self.tuning.cols) - 1)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "sent": self.sent,
                "retired": self.retired,
                "replayed": self.replayed,
                "backlog": len(self._queue),
                "max_backlog": self.max_backlog,
                "rejected": self.rejected,
                "discarded": self.discarded,
                "locked": self.locked,
                "focus": f"cell-{self._row}-{self._col}",
            }

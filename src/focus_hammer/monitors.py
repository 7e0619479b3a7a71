from __future__ import annotations

import threading
import time
from typing import Any, Callable, Protocol

from .interfaces import FocusSource
from .models import KIND_FOCUS_SAMPLE, normalize_focus_id
from .scheduling import Cancellable, Scheduler
from .stall import StallDetector
from .timeline import EventTimeline


class Pollable(Protocol):
    def poll(self) -> int:
        ...


class _ScheduledMonitor:
    """Recurring callback on the primary scheduler, started and stopped as a scoped resource."""

    name = "monitor"

    def __init__(self, scheduler: Scheduler, interval_seconds: float, monotonic_fn: Callable[[], float] | None) -> None:
        self.scheduler = scheduler
        self.interval_seconds = max(0.001, float(interval_seconds))
        self._mono = monotonic_fn or time.monotonic
        self._lock = threading.Lock()
        self._handle: Cancellable | None = None
        self.active = False
        self.ticks = 0

    def start(self) -> "_ScheduledMonitor":
        with self._lock:
            if self.active:
                return self
            self.active = True
            self._handle = self.scheduler.call_soon(self._tick)
        return self

    def _tick(self) -> None:
        with self._lock:
            if not self.active:
                return
        self.ticks += 1
        self.on_tick(self._mono())
        with self._lock:
            if self.active:
                self._handle = self.scheduler.call_later(self.interval_seconds, self._tick)

    def on_tick(self, now: float) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        with self._lock:
            self.active = False
            handle = self._handle
            self._handle = None
        if handle is not None:
            handle.cancel()

    def __enter__(self) -> "_ScheduledMonitor":
        return self.start()

    def __exit__(self, *exc: object) -> None:
        self.stop()


class HeartbeatMonitor(_ScheduledMonitor):
    name = "heartbeat"

    def __init__(
        self,
        scheduler: Scheduler,
        detector: StallDetector,
        *,
        interval_seconds: float = 0.1,
        monotonic_fn: Callable[[], float] | None = None,
    ) -> None:
        super().__init__(scheduler, interval_seconds, monotonic_fn)
        self.detector = detector

    def on_tick(self, now: float) -> None:
        self.detector.heartbeat(now)


class FrameMonitor(_ScheduledMonitor):
    name = "frame"

    def __init__(
        self,
        scheduler: Scheduler,
        detector: StallDetector,
        *,
        interval_seconds: float = 1.0 / 60.0,
        monotonic_fn: Callable[[], float] | None = None,
    ) -> None:
        super().__init__(scheduler, interval_seconds, monotonic_fn)
        self.detector = detector

    def on_tick(self, now: float) -> None:
        self.detector.frame_tick(now)


class FocusSampler:
    """Polls the focus source and records one ``focus_sample`` per call."""

    def __init__(
        self,
        source: FocusSource,
        timeline: EventTimeline,
        *,
        monotonic_fn: Callable[[], float] | None = None,
    ) -> None:
        self.source = source
        self.timeline = timeline
        self._mono = monotonic_fn or time.monotonic
        self.samples = 0
        self.errors = 0
        self.last_error = ""

    def sample(self) -> str:
        now = self._mono()
        try:
            element = normalize_focus_id(self.source.current_focus_id())
        except Exception as exc:  # noqa: BLE001
            self.errors += 1
            self.last_error = f"focus_source_error:{exc}"
            self.timeline.record_raw("focus_source_error", "", now, {"error": str(exc)})
            return ""
        self.samples += 1
        self.timeline.record_raw(KIND_FOCUS_SAMPLE, element, now)
        return element


class DetectorPump:
    """Pulls pending timeline events through every detector on its own thread."""

    def __init__(self, detectors: list[Pollable], *, interval_seconds: float = 0.05) -> None:
        self.detectors = list(detectors)
        self.interval_seconds = max(0.001, float(interval_seconds))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.active = False
        self.cycles = 0
        self.errors: list[str] = []

    def pump_once(self) -> int:
        flagged = 0
        for detector in self.detectors:
            try:
                flagged += int(detector.poll())
            except Exception as exc:  # noqa: BLE001
                self.errors.append(f"{type(detector).__name__}:{exc}")
        self.cycles += 1
        return flagged

    def _loop(self) -> None:
        while not self._stop.wait(timeout=self.interval_seconds):
            self.pump_once()

    def start(self) -> "DetectorPump":
        if self.active:
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="detector-pump", daemon=True)
        self._thread.start()
        self.active = True
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        if self.active:
            # Drain whatever producers wrote after the last cycle.
            self.pump_once()
        self.active = False

    def stats(self) -> dict[str, Any]:
        return {"cycles": self.cycles, "errors": list(self.errors[-10:])}

    def __enter__(self) -> "DetectorPump":
        return self.start()

    def __exit__(self, *exc: object) -> None:
        self.stop()

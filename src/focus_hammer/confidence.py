from __future__ import annotations

from collections import deque
import math
import threading
import time
from typing import Any, Callable

from .models import (
    DIRECTIONS,
    KIND_FOCUS_SAMPLE,
    KIND_INPUT,
    NO_FOCUS,
    DetectionThresholds,
    TimestampedEvent,
)
from .timeline import EventTimeline

HISTORY_SIZE = 100
# Presses closer together than this are faster than a person can press.
HUMAN_PRESS_FLOOR_SECONDS = 0.025
DECAY_SECONDS = 2.0
WEIGHTS = {"frequency": 0.5, "divergence": 0.3, "cadence": 0.2}


class _Entry:
    __slots__ = ("is_press", "directional", "focus_id", "timestamp")

    def __init__(self, is_press: bool, directional: bool, focus_id: str, timestamp: float) -> None:
        self.is_press = is_press
        self.directional = directional
        self.focus_id = focus_id
        self.timestamp = timestamp


def _press_deltas(entries: list[_Entry], count: int) -> list[float]:
    presses = [e for e in entries if e.is_press][-count:]
    return [b.timestamp - a.timestamp for a, b in zip(presses, presses[1:])]


def frequency_score(entries: list[_Entry]) -> float:
    if sum(1 for e in entries if e.is_press) <= 10:
        return 0.0
    fast = sum(1 for d in _press_deltas(entries, 10) if d < HUMAN_PRESS_FLOOR_SECONDS)
    return fast / 10.0


def divergence_score(entries: list[_Entry]) -> float:
    """High when directional presses keep arriving but focus barely moves."""
    if len(entries) <= 20:
        return 0.0
    recent = entries[-20:]
    presses = sum(1 for e in recent if e.is_press and e.directional)
    if presses <= 10:
        return 0.0
    changes = 0
    last = recent[0].focus_id
    for entry in recent:
        if not entry.is_press and entry.focus_id != last:
            changes += 1
            last = entry.focus_id
    if changes == 0:
        return 1.0
    if changes <= 2:
        return 0.8
    if changes <= 5:
        return 0.6
    ratio = changes / presses
    if ratio < 0.1:
        return 0.4
    if ratio < 0.2:
        return 0.2
    return 0.0


def cadence_score(entries: list[_Entry]) -> float:
    """High when press spacing is machine-regular."""
    if sum(1 for e in entries if e.is_press) <= 15:
        return 0.0
    deltas = _press_deltas(entries, 15)
    mean = sum(deltas) / len(deltas)
    std = math.sqrt(sum((d - mean) ** 2 for d in deltas) / len(deltas))
    if std < 0.001:
        return 1.0
    return 1.0 - min(1.0, std / 0.01)


class ConfidenceScorer:
    """Rolling 0..1 confidence that the focus engine is replaying input on its own.

    Combines three heuristics over the last ``HISTORY_SIZE`` press and focus
    events: press frequency, focus divergence and press cadence. Each event
    rescores the history. ``score(now)`` decays the latest score to zero over
    ``DECAY_SECONDS`` without new evidence. ``on_critical`` fires once, the
    first time a score reaches ``thresholds.confidence_critical_score``.
    """

    def __init__(
        self,
        timeline: EventTimeline,
        thresholds: DetectionThresholds,
        *,
        on_critical: Callable[[dict[str, Any]], None] | None = None,
        monotonic_fn: Callable[[], float] | None = None,
    ) -> None:
        self.timeline = timeline
        self.thresholds = thresholds
        self.on_critical = on_critical
        self._mono = monotonic_fn or time.monotonic
        self._lock = threading.Lock()
        self._cursor = -1
        self._history: deque[_Entry] = deque(maxlen=HISTORY_SIZE)
        self._focus: str = NO_FOCUS
        self._last_score = 0.0
        self._last_ts: float | None = None
        self.peak_score = 0.0
        self.critical_fired = False
        self.events = 0

    def poll(self) -> int:
        """Score every new input and focus event; return how many were consumed."""
        fire: dict[str, Any] | None = None
        with self._lock:
            events = self.timeline.events_after(self._cursor, kinds=(KIND_INPUT, KIND_FOCUS_SAMPLE))
            for event in events:
                self._cursor = max(self._cursor, event.seq)
                if not self._ingest(event):
                    continue
                self._rescore(float(event.timestamp))
                if not self.critical_fired and self._last_score >= float(self.thresholds.confidence_critical_score):
                    self.critical_fired = True
                    fire = self._diagnostics()
        if fire is not None and self.on_critical is not None:
            self.on_critical(fire)
        return len(events)

    def _ingest(self, event: TimestampedEvent) -> bool:
        ts = float(event.timestamp)
        if event.kind == KIND_FOCUS_SAMPLE:
            value = event.id or NO_FOCUS
            # Samples repeat every tick; only movement is evidence.
            if value == self._focus:
                return False
            self._focus = value
            self._history.append(_Entry(False, False, value, ts))
        else:
            direction = str(event.payload.get("direction") or event.id).split("-", 1)[0]
            self._history.append(_Entry(True, direction in DIRECTIONS, self._focus, ts))
        self.events += 1
        return True

    def _components(self) -> dict[str, float]:
        entries = list(self._history)
        return {
            "frequency": frequency_score(entries),
            "divergence": divergence_score(entries),
            "cadence": cadence_score(entries),
        }

    def _rescore(self, ts: float) -> None:
        parts = self._components()
        self._last_score = sum(WEIGHTS[name] * value for name, value in parts.items())
        self._last_ts = ts
        self.peak_score = max(self.peak_score, self._last_score)

    def _diagnostics(self) -> dict[str, Any]:
        return {
            "confidence_score": round(self._last_score, 4),
            "components": {k: round(v, 4) for k, v in self._components().items()},
            "history_tail": [
                {"t": round(e.timestamp, 6), "press": e.is_press, "focus": e.focus_id}
                for e in list(self._history)[-20:]
            ],
        }

    def score(self, now: float | None = None) -> float:
        with self._lock:
            if self._last_ts is None:
                return 0.0
            at = self._mono() if now is None else float(now)
            decay = 1.0 - min(1.0, max(0.0, at - self._last_ts) / DECAY_SECONDS)
            return self._last_score * decay

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "events": self.events,
                "last_score": round(self._last_score, 4),
                "peak_score": round(self.peak_score, 4),
                "critical_fired": self.critical_fired,
            }

from __future__ import annotations

import threading
from typing import Any

from .models import (
    KIND_FOCUS_SAMPLE,
    KIND_STUCK_FOCUS,
    NO_FOCUS,
    DetectionThresholds,
    FocusSample,
    TimestampedEvent,
)
from .timeline import EventTimeline


class StuckFocusDetector:
    def __init__(self, timeline: EventTimeline, thresholds: DetectionThresholds) -> None:
        self.timeline = timeline
        self.threshold = max(1, int(thresholds.stuck_repeat_threshold))
        self._lock = threading.Lock()
        self._cursor = -1
        self._last_id: str | None = None
        self._count = 0
        self._last_ts: float | None = None
        self._unique: set[str] = set()
        self.episodes = 0
        self.samples = 0
        self.excluded = 0

    def observe(self, sample: FocusSample) -> bool:
        """Feed one focus sample; True when this sample completes a stuck episode."""
        with self._lock:
            return self._observe(sample)

    def _observe(self, sample: FocusSample) -> bool:
        ts = float(sample.timestamp)
        if self._last_ts is not None and ts < self._last_ts:
            self.excluded += 1
            return False
        self._last_ts = ts
        self.samples += 1

        element = sample.element_id or NO_FOCUS
        if element == NO_FOCUS:
            self._last_id = None
            self._count = 0
            return False
        self._unique.add(element)
        if element == self._last_id:
            self._count += 1
        else:
            self._last_id = element
            self._count = 1
        if self._count != self.threshold:
            return False

        self.episodes += 1
        self.timeline.record(
            TimestampedEvent(
                kind=KIND_STUCK_FOCUS,
                id=element,
                timestamp=ts,
                payload={"count": self._count, "episode": self.episodes},
            )
        )
        return True

    def poll(self) -> int:
        with self._lock:
            flagged = 0
            for event in self.timeline.events_after(self._cursor, kinds=(KIND_FOCUS_SAMPLE,)):
                self._cursor = max(self._cursor, event.seq)
                if self._observe(FocusSample(element_id=event.id, timestamp=event.timestamp)):
                    flagged += 1
            return flagged

    @property
    def unique_focus_ids(self) -> int:
        with self._lock:
            return len(self._unique)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "episodes": self.episodes,
                "samples": self.samples,
                "unique_focus_ids": len(self._unique),
                "current_id": self._last_id or NO_FOCUS,
                "current_run": self._count,
                "excluded": self.excluded,
            }

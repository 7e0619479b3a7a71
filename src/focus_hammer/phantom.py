from __future__ import annotations

from collections import deque
import threading
from typing import Any

from .input_cache import InputCorrelationCache
from .models import (
    KIND_FOCUS_SAMPLE,
    KIND_INPUT,
    KIND_PHANTOM,
    NO_FOCUS,
    DetectionThresholds,
    TimestampedEvent,
    elapsed_ms,
)
from .timeline import EventTimeline


class PhantomInputDetector:
    """Flags dispatch-level input that has no hardware provenance.

    An input is phantom when the cache holds no hardware confirmation for its
    id inside ``phantom_window_ms`` and focus did not change value inside
    ``focus_divergence_window_ms`` before it. The detector pulls from the
    timeline with a sequence cursor and only ever appends ``phantom`` events.

    Focus samples and inputs come from different producer threads, so within
    one poll every focus sample is taken in timestamp order before any input
    is judged. A sample that lands in a later poll than the input it would
    have exempted is not applied retroactively; the pump interval bounds that
    window.
    """

    def __init__(
        self,
        timeline: EventTimeline,
        cache: InputCorrelationCache,
        thresholds: DetectionThresholds,
    ) -> None:
        self.timeline = timeline
        self.cache = cache
        self.thresholds = thresholds
        self._lock = threading.Lock()
        self._cursor = -1
        self._last_focus: str | None = None
        self._focus_changes: deque[float] = deque(maxlen=4096)
        self._last_input_ts: float | None = None
        self.phantom_count = 0
        self.checked = 0
        self.excluded = 0
        self.exempted_by_focus = 0

    def poll(self) -> int:
        """Process every new timeline event; return the number of phantoms flagged."""
        with self._lock:
            events = self.timeline.events_after(self._cursor, kinds=(KIND_INPUT, KIND_FOCUS_SAMPLE))
            if events:
                self._cursor = max(self._cursor, events[-1].seq)
            samples = sorted((e for e in events if e.kind == KIND_FOCUS_SAMPLE), key=lambda e: (e.timestamp, e.seq))
            for event in samples:
                self._observe_focus(event)
            flagged = 0
            for event in events:
                if event.kind == KIND_INPUT and self._evaluate_input(event):
                    flagged += 1
            return flagged

    def _observe_focus(self, event: TimestampedEvent) -> None:
        value = event.id or NO_FOCUS
        if self._last_focus is not None and value != self._last_focus and value != NO_FOCUS:
            self._focus_changes.append(float(event.timestamp))
        self._last_focus = value

    def _focus_changed_before(self, ts: float) -> bool:
        window = float(self.thresholds.focus_divergence_window_ms)
        for changed_at in reversed(self._focus_changes):
            age = elapsed_ms(changed_at, ts)
            if age < 0:
                continue
            if age <= window:
                return True
            break
        return False

    def _evaluate_input(self, event: TimestampedEvent) -> bool:
        ts = float(event.timestamp)
        if not event.id or (self._last_input_ts is not None and ts < self._last_input_ts):
            self.excluded += 1
            return False
        self._last_input_ts = ts
        self.checked += 1

        if self.cache.recently_active(event.id, self.thresholds.phantom_window_ms, ts):
            return False
        if self._focus_changed_before(ts):
            self.exempted_by_focus += 1
            return False

        self.phantom_count += 1
        self.timeline.record(
            TimestampedEvent(
                kind=KIND_PHANTOM,
                id=event.id,
                timestamp=ts,
                payload={"input_seq": event.seq, "phantom_count": self.phantom_count},
            )
        )
        return True

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "phantom_count": self.phantom_count,
                "checked": self.checked,
                "excluded": self.excluded,
                "exempted_by_focus": self.exempted_by_focus,
            }

from __future__ import annotations

import threading
from typing import Any

from .models import KIND_FRAME_HITCH, KIND_STALL, DetectionThresholds, TimestampedEvent, elapsed_ms
from .timeline import EventTimeline


class StallDetector:
    """Heartbeat and frame-interval stall detection.

    ``heartbeat`` must be driven from the primary scheduling context: only a
    callback that waits its turn on the busy loop can observe that loop being
    starved. ``frame_tick`` is driven by the rendering tick.
    """

    def __init__(
        self,
        timeline: EventTimeline,
        thresholds: DetectionThresholds,
        *,
        expected_frame_interval_ms: float = 1000.0 / 60.0,
    ) -> None:
        self.timeline = timeline
        self.thresholds = thresholds
        self.expected_frame_interval_ms = max(0.001, float(expected_frame_interval_ms))
        self._lock = threading.Lock()
        self._last_beat: float | None = None
        self._last_frame: float | None = None
        self._stalls: list[float] = []
        self._warnings = 0
        self._criticals = 0
        self._hitches = 0
        self.beats = 0
        self.frames = 0
        self.excluded = 0

    def heartbeat(self, now: float) -> str | None:
        """Record one heartbeat. Returns ``"warning"``, ``"critical"`` or ``None``."""
        with self._lock:
            previous = self._last_beat
            if previous is not None and now < previous:
                self.excluded += 1
                self._last_beat = float(now)
                return None
            self._last_beat = float(now)
            self.beats += 1
            if previous is None:
                return None
            delta = elapsed_ms(previous, now)
            return self._classify_delta(delta, float(now))

    def _classify_delta(self, delta: float, now: float) -> str | None:
        if delta > float(self.thresholds.stall_critical_ms):
            severity = "critical"
            self._criticals += 1
        elif delta > float(self.thresholds.stall_warn_ms):
            severity = "warning"
            self._warnings += 1
        else:
            return None
        self._stalls.append(delta)
        self.timeline.record(
            TimestampedEvent(
                kind=KIND_STALL,
                id="heartbeat",
                timestamp=now,
                payload={"severity": severity, "delta_ms": round(delta, 3)},
            )
        )
        return severity

    def frame_tick(self, timestamp: float) -> bool:
        with self._lock:
            previous = self._last_frame
            if previous is not None and timestamp < previous:
                self.excluded += 1
                self._last_frame = float(timestamp)
                return False
            self._last_frame = float(timestamp)
            self.frames += 1
            if previous is None:
                return False
            interval = elapsed_ms(previous, timestamp)
            limit = self.expected_frame_interval_ms * float(self.thresholds.frame_hitch_factor)
            if interval <= limit:
                return False
            self._hitches += 1
            self.timeline.record(
                TimestampedEvent(
                    kind=KIND_FRAME_HITCH,
                    id="frame",
                    timestamp=float(timestamp),
                    payload={
                        "interval_ms": round(interval, 3),
                        "expected_ms": round(self.expected_frame_interval_ms, 3),
                        "dropped_frames": max(0, int(interval / self.expected_frame_interval_ms) - 1),
                    },
                )
            )
            return True

    def max_stall_ms(self) -> float:
        with self._lock:
            return max(self._stalls) if self._stalls else 0.0

    def avg_stall_ms(self) -> float:
        with self._lock:
            return sum(self._stalls) / len(self._stalls) if self._stalls else 0.0

    def critical_count(self) -> int:
        with self._lock:
            return self._criticals

    def warning_count(self) -> int:
        with self._lock:
            return self._warnings

    def stall_count(self) -> int:
        with self._lock:
            return len(self._stalls)

    def hitch_count(self) -> int:
        with self._lock:
            return self._hitches

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "beats": self.beats,
                "frames": self.frames,
                "stalls": len(self._stalls),
                "warnings": self._warnings,
                "criticals": self._criticals,
                "hitches": self._hitches,
                "max_stall_ms": round(max(self._stalls), 3) if self._stalls else 0.0,
                "excluded": self.excluded,
            }

from __future__ import annotations

from collections import deque
import math
import threading
from typing import Any, Iterable

from .models import EVENT_KINDS, KIND_DEGRADED, TimestampedEvent


class EventTimeline:
    """Append-only, lock-guarded event store shared by every producer.

    Retention is a ring buffer: once ``capacity`` events are held the oldest
    are evicted and counted in ``dropped``. Reads copy under the lock and
    return plain lists, so callers never hold the lock while iterating.
    """

    def __init__(self, capacity: int = 50_000) -> None:
        self.capacity = max(1, int(capacity))
        self._lock = threading.Lock()
        self._events: deque[TimestampedEvent] = deque(maxlen=self.capacity)
        self._next_seq = 0
        self._counts: dict[str, int] = {}
        self.dropped = 0
        self.unclassifiable = 0

    def record(self, event: TimestampedEvent) -> TimestampedEvent:
        with self._lock:
            stored = TimestampedEvent(
                kind=event.kind,
                id=event.id,
                timestamp=event.timestamp,
                payload=event.payload,
                seq=self._next_seq,
            )
            self._next_seq += 1
            if len(self._events) == self.capacity:
                self.dropped += 1
            self._events.append(stored)
            self._counts[stored.kind] = self._counts.get(stored.kind, 0) + 1
            return stored

    def record_raw(
        self,
        kind: str,
        id: object,
        timestamp: object,
        payload: dict[str, Any] | None = None,
    ) -> TimestampedEvent:
        """Producer entry point. Never raises; bad data becomes a degraded event."""
        body = dict(payload or {})
        reason = ""
        ts = 0.0
        try:
            ts = float(timestamp)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            reason = f"bad_timestamp:{timestamp!r}"
        else:
            if not math.isfinite(ts) or ts < 0.0:
                reason = f"bad_timestamp:{timestamp!r}"
        if not reason and kind not in EVENT_KINDS:
            reason = f"unknown_kind:{kind}"

        if reason:
            with self._lock:
                self.unclassifiable += 1
            body.update({"reason": reason, "original_kind": str(kind)})
            return self.record(
                TimestampedEvent(
                    kind=KIND_DEGRADED,
                    id="" if id is None else str(id),
                    timestamp=ts if math.isfinite(ts) and ts >= 0.0 else 0.0,
                    payload=body,
                )
            )
        return self.record(TimestampedEvent(kind=kind, id="" if id is None else str(id), timestamp=ts, payload=body))

    def query(self, kind: str, since_time: float = 0.0) -> list[TimestampedEvent]:
        with self._lock:
            snapshot = list(self._events)
        return [e for e in snapshot if e.kind == kind and e.timestamp >= since_time]

    def latest(self, kind: str) -> TimestampedEvent | None:
        with self._lock:
            for event in reversed(self._events):
                if event.kind == kind:
                    return event
        return None

    def events_after(self, seq: int, kinds: Iterable[str] | None = None) -> list[TimestampedEvent]:
        wanted = set(kinds) if kinds is not None else None
        with self._lock:
            snapshot = list(self._events)
        return [e for e in snapshot if e.seq > seq and (wanted is None or e.kind in wanted)]

    def count(self, kind: str) -> int:
        with self._lock:
            return int(self._counts.get(kind, 0))

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "capacity": self.capacity,
                "held": len(self._events),
                "recorded": self._next_seq,
                "dropped": self.dropped,
                "unclassifiable": self.unclassifiable,
                "by_kind": dict(self._counts),
            }

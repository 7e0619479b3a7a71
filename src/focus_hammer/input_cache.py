from __future__ import annotations

from collections import OrderedDict
import math
import threading
from typing import Any

from .models import InputRecord, elapsed_ms


def _valid_time(raw: object) -> float | None:
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value < 0.0:
        return None
    return value


class InputCorrelationCache:
    """Last hardware-confirmed press time per input identifier.

    Both feeds (coarse hardware confirmation and precise HID timestamps) are
    write-if-newer: an older timestamp never replaces a newer one.
    Dispatch-level input does not write here; it goes to the timeline only.
    At most ``max_entries`` ids are held; the least recently written id is
    evicted first and counted in ``evicted``.
    """

    def __init__(self, max_entries: int = 4096) -> None:
        self.max_entries = max(1, int(max_entries))
        self._lock = threading.Lock()
        self._records: OrderedDict[str, InputRecord] = OrderedDict()
        self.rejected = 0
        self.evicted = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def mark_down(self, id: str, timestamp: float) -> bool:
        return self._write(id, timestamp, precise=False)

    def mark_down_precise(self, id: str, timestamp: float) -> bool:
        return self._write(id, timestamp, precise=True)

    def _write(self, id: str, timestamp: float, *, precise: bool) -> bool:
        key = str(id or "").strip()
        ts = _valid_time(timestamp)
        with self._lock:
            if not key or ts is None:
                self.rejected += 1
                return False
            current = self._records.get(key) or InputRecord(id=key)
            if precise:
                if current.last_precise_time is not None and ts <= current.last_precise_time:
                    return False
                self._records[key] = InputRecord(
                    id=key,
                    last_hardware_time=current.last_hardware_time,
                    last_precise_time=ts,
                )
            else:
                if current.last_hardware_time is not None and ts <= current.last_hardware_time:
                    return False
                self._records[key] = InputRecord(
                    id=key,
                    last_hardware_time=ts,
                    last_precise_time=current.last_precise_time,
                )
            self._records.move_to_end(key)
            while len(self._records) > self.max_entries:
                self._records.popitem(last=False)
                self.evicted += 1
            return True

    def recently_active(self, id: str, window_ms: float, now: float) -> bool:
        with self._lock:
            record = self._records.get(str(id or "").strip())
        if record is None:
            return False
        seen = record.last_seen()
        if seen is None:
            return False
        return elapsed_ms(seen, now) < float(window_ms)

    def record(self, id: str) -> InputRecord | None:
        with self._lock:
            return self._records.get(str(id or "").strip())

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {key: rec.to_dict() for key, rec in self._records.items()}

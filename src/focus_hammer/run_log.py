from __future__ import annotations

import json
from pathlib import Path
import threading
from typing import Any

from .models import utc_now_iso


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def read_json(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except Exception:  # noqa: BLE001
        return {}
    return payload if isinstance(payload, dict) else {}


class RunEventLog:
    """JSONL log of run milestones: one ``{ts, phase, event_type, severity, payload}`` row per line."""

    def __init__(self, path: Path, *, run_id: str = "") -> None:
        self.path = Path(path)
        self.run_id = run_id
        self._lock = threading.Lock()
        self.rows_written = 0

    def append(self, *, phase: str, event_type: str, severity: str, payload: dict[str, Any]) -> None:
        row = {
            "ts": utc_now_iso(),
            "phase": phase,
            "event_type": event_type,
            "severity": severity,
            "payload": payload,
        }
        if self.run_id:
            row["run_id"] = self.run_id
        line = json.dumps(row, ensure_ascii=True, default=str) + "\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line)
            self.rows_written += 1

    def tail(self, limit: int = 20) -> list[dict[str, Any]]:
        if limit <= 0 or not self.path.exists():
            return []
        rows: list[dict[str, Any]] = []
        with self._lock:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        for line in lines[-int(limit):]:
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(row, dict):
                rows.append(row)
        return rows

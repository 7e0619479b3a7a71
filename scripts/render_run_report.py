#!/usr/bin/env python3
from __future__ import annotations

import argparse
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from focus_hammer.run_log import read_json


def _fmt(value: Any, digits: int = 0, unit: str = "") -> str:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return "-"
    text = f"{value:.{digits}f}" if digits > 0 else str(int(value))
    return text + unit


def _flag(value: Any) -> str:
    return "YES" if value is True else "no"


def _since(stamp: Any, now: datetime) -> str:
    try:
        then = datetime.fromisoformat(str(stamp).replace("Z", "+00:00"))
    except ValueError:
        return "-"
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    return _fmt(max(0.0, (now - then).total_seconds()), 1, "s ago")


def _lines(report: dict[str, Any], status: dict[str, Any], now: datetime) -> list[str]:
    limits = report.get("thresholds") or {}
    engine = status.get("engine") or {}
    stall = status.get("stall") or {}
    out = [
        f"run        {report.get('preset', '-')}  {report.get('status', '-')}"
        f"  reason={report.get('reason') or '-'}  partial={_flag(report.get('partial'))}",
        f"verdict    possible_reproduction={_flag(report.get('possible_reproduction'))}"
        f"  phantoms {_fmt(report.get('phantom_count'))}/{_fmt(limits.get('phantom_count_threshold'))}"
        f"  max_stall {_fmt(report.get('max_stall_ms'), 1, 'ms')}/{_fmt(limits.get('stall_critical_ms'), 0, 'ms')}",
        f"confidence peak={_fmt(report.get('confidence_score'), 2)}/{_fmt(limits.get('confidence_critical_score'), 2)}"
        f"  critical={_flag(report.get('confidence_critical'))}",
        f"commands   sent={_fmt(report.get('total_commands'))}  send_errors={_fmt(report.get('send_errors'))}"
        f"  ballast={_fmt(report.get('ballast_total_mb'), 0, 'MB')}  peak_rss={_fmt(report.get('peak_rss_mb'), 1, 'MB')}",
        f"stalls     {_fmt(report.get('stall_count'))} (warn {_fmt(report.get('stall_warning_count'))},"
        f" critical {_fmt(report.get('stall_critical_count'))})  avg={_fmt(report.get('avg_stall_ms'), 1, 'ms')}"
        f"  hitches={_fmt(report.get('frame_hitch_count'))}",
        f"focus      stuck_episodes={_fmt(report.get('stuck_focus_episodes'))}"
        f"  unique_ids={_fmt(report.get('unique_focus_ids'))}",
        f"data       unclassifiable={_fmt(report.get('unclassifiable_events'))}"
        f"  excluded_inputs={_fmt(report.get('excluded_inputs'))}  dropped={_fmt(report.get('timeline_dropped'))}",
    ]
    for stage in report.get("stages") or []:
        out.append(
            f"  {stage.get('name', '-'):<9} {_fmt(stage.get('duration_seconds'), 2, 's'):>9}"
            f"  steps={_fmt(stage.get('steps'))}  ballast={_fmt(stage.get('ballast_mb_after_entry'), 0, 'MB')}"
        )
    if status:
        out.append(
            f"live       stage={status.get('stage', '-')}  beats={_fmt(stall.get('beats'))}"
            f"  backlog={_fmt(engine.get('backlog'))}  locked={_flag(engine.get('locked'))}"
        )
    out.append(f"freshness  report {_since(report.get('generated_at'), now)}  status {_since(status.get('ts'), now)}")
    return out


def main() -> int:
    parser = argparse.ArgumentParser(description="Render the latest focus-hammer run report and live status")
    parser.add_argument("--root", default="", help="Project root (defaults to repo root)")
    args = parser.parse_args()

    root = Path(args.root).expanduser().resolve() if str(args.root).strip() else Path(__file__).resolve().parents[1]
    report = read_json(root / "runtime/reports/latest_report.json")
    if not report:
        print(f"no report under {root / 'runtime/reports'}")
        return 1
    status = read_json(root / "runtime/status/run_status.json")
    now = datetime.now(timezone.utc)
    print(f"focus-hammer  {now.isoformat(timespec='seconds')}")
    print("=" * 80)
    print("\n".join(_lines(report, status, now)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

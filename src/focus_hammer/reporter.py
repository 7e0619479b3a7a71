from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .ballast import MemoryBallast, peak_rss_mb
from .confidence import ConfidenceScorer
from .models import DetectionThresholds, RunReport
from .phantom import PhantomInputDetector
from .run_log import RunEventLog, write_json_atomic
from .stage_controller import ControllerOutcome
from .stall import StallDetector
from .stuck_focus import StuckFocusDetector
from .timeline import EventTimeline


def possible_reproduction(phantom_count: int, max_stall_ms: float, thresholds: DetectionThresholds) -> bool:
    """Triage heuristic only: phantom input and a critical stall seen in the same run.

    The co-occurrence was tuned against manual observation logs and is not a
    causal model of the lockup, so both thresholds stay configurable.
    """
    return int(phantom_count) > int(thresholds.phantom_count_threshold) and float(max_stall_ms) > float(
        thresholds.stall_critical_ms
    )


class MetricsReporter:
    def __init__(
        self,
        *,
        thresholds: DetectionThresholds,
        timeline: EventTimeline,
        phantom: PhantomInputDetector,
        stall: StallDetector,
        stuck: StuckFocusDetector,
        ballast: MemoryBallast,
        confidence: ConfidenceScorer | None = None,
    ) -> None:
        self.thresholds = thresholds
        self.timeline = timeline
        self.phantom = phantom
        self.stall = stall
        self.stuck = stuck
        self.ballast = ballast
        self.confidence = confidence

    def build(self, outcome: ControllerOutcome, *, preset: str) -> RunReport:
        """Aggregate whatever has accumulated. Works on aborted runs too (``partial``)."""
        phantom = self.phantom.stats()
        max_stall = self.stall.max_stall_ms()
        status = outcome.status if outcome.status in {"completed", "aborted"} else "aborted"
        return RunReport(
            preset=preset,
            status=status,
            reason=outcome.reason or status,
            partial=status != "completed",
            total_commands=outcome.total_commands,
            send_errors=outcome.send_errors,
            phantom_count=int(phantom["phantom_count"]),
            stall_count=self.stall.stall_count(),
            stall_warning_count=self.stall.warning_count(),
            stall_critical_count=self.stall.critical_count(),
            max_stall_ms=round(max_stall, 3),
            avg_stall_ms=round(self.stall.avg_stall_ms(), 3),
            frame_hitch_count=self.stall.hitch_count(),
            stuck_focus_episodes=self.stuck.episodes,
            unique_focus_ids=self.stuck.unique_focus_ids,
            stages=[s.to_dict() for s in outcome.stages],
            ballast_total_mb=self.ballast.total_mb,
            peak_rss_mb=peak_rss_mb(),
            unclassifiable_events=self.timeline.unclassifiable,
            excluded_inputs=int(phantom["excluded"]) + self.stall.excluded + self.stuck.excluded,
            timeline_dropped=self.timeline.dropped,
            confidence_score=round(self.confidence.peak_score, 4) if self.confidence is not None else 0.0,
            confidence_critical=bool(self.confidence is not None and self.confidence.critical_fired),
            possible_reproduction=possible_reproduction(int(phantom["phantom_count"]), max_stall, self.thresholds),
            thresholds=self.thresholds.to_dict(),
        )


def write_report(
    report: RunReport,
    *,
    latest_file: Path,
    archive_dir: Path | None = None,
    run_log: RunEventLog | None = None,
) -> dict[str, Any]:
    payload = report.to_dict()
    write_json_atomic(latest_file, payload)
    out = {"latest_file": str(latest_file), "archive_file": ""}
    if archive_dir is not None:
        now = datetime.now(timezone.utc)
        archive_file = archive_dir / now.strftime("%Y-%m-%d") / f"run-{now.strftime('%H%M%S')}-{report.preset}.json"
        write_json_atomic(archive_file, payload)
        out["archive_file"] = str(archive_file)
    if run_log is not None:
        run_log.append(
            phase="report",
            event_type="run_report",
            severity="critical" if report.possible_reproduction else "info",
            payload=payload,
        )
    return out

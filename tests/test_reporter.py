from __future__ import annotations

import json
from pathlib import Path
import tempfile
import unittest

from focus_hammer.ballast import MemoryBallast
from focus_hammer.confidence import ConfidenceScorer
from focus_hammer.input_cache import InputCorrelationCache
from focus_hammer.models import KIND_INPUT, DetectionThresholds, FocusSample, StageResult
from focus_hammer.phantom import PhantomInputDetector
from focus_hammer.reporter import MetricsReporter, possible_reproduction, write_report
from focus_hammer.run_log import RunEventLog
from focus_hammer.stage_controller import ControllerOutcome
from focus_hammer.stall import StallDetector
from focus_hammer.stuck_focus import StuckFocusDetector
from focus_hammer.timeline import EventTimeline


class PossibleReproductionTests(unittest.TestCase):
    def test_requires_both_conditions(self) -> None:
        thresholds = DetectionThresholds(phantom_count_threshold=10, stall_critical_ms=5000)
        self.assertTrue(possible_reproduction(11, 6000.0, thresholds))
        self.assertFalse(possible_reproduction(11, 4000.0, thresholds))
        self.assertFalse(possible_reproduction(3, 6000.0, thresholds))
        self.assertFalse(possible_reproduction(0, 0.0, thresholds))

    def test_thresholds_are_strict(self) -> None:
        thresholds = DetectionThresholds(phantom_count_threshold=10, stall_critical_ms=5000)
        self.assertFalse(possible_reproduction(10, 6000.0, thresholds))
        self.assertFalse(possible_reproduction(11, 5000.0, thresholds))


class MetricsReporterTests(unittest.TestCase):
    def _reporter(self, thresholds: DetectionThresholds) -> tuple[MetricsReporter, EventTimeline, StallDetector, StuckFocusDetector, PhantomInputDetector, MemoryBallast]:
        timeline = EventTimeline()
        cache = InputCorrelationCache()
        phantom = PhantomInputDetector(timeline, cache, thresholds)
        stall = StallDetector(timeline, thresholds)
        stuck = StuckFocusDetector(timeline, thresholds)
        ballast = MemoryBallast(allocate_fn=lambda n: b"")
        reporter = MetricsReporter(
            thresholds=thresholds,
            timeline=timeline,
            phantom=phantom,
            stall=stall,
            stuck=stuck,
            ballast=ballast,
        )
        return reporter, timeline, stall, stuck, phantom, ballast

    def test_report_aggregates_detector_output(self) -> None:
        thresholds = DetectionThresholds(phantom_count_threshold=5, stuck_repeat_threshold=3)
        reporter, timeline, stall, stuck, phantom, ballast = self._reporter(thresholds)
        for i in range(8):
            timeline.record_raw(KIND_INPUT, f"up-{i}", 1.0 + i * 0.015)
        phantom.poll()
        for t in (0.0, 1.5, 8.5):
            stall.heartbeat(t)
        for i, element in enumerate(["A", "A", "A", "B", "NONE"]):
            stuck.observe(FocusSample(element_id=element, timestamp=float(i)))
        ballast.grow(7)
        timeline.record_raw(KIND_INPUT, "x", -1.0)

        outcome = ControllerOutcome(status="completed", reason="all_stages_completed", total_commands=8)
        outcome.stages.append(StageResult(name="baseline", started_at=0.0, ended_at=1.5, steps=8, ballast_mb_after_entry=7))
        report = reporter.build(outcome, preset="maxStress")

        self.assertEqual(report.phantom_count, 8)
        self.assertEqual(report.stall_count, 2)
        self.assertEqual(report.stall_critical_count, 1)
        self.assertEqual(report.max_stall_ms, 7000.0)
        self.assertEqual(report.avg_stall_ms, 4250.0)
        self.assertEqual(report.stuck_focus_episodes, 1)
        self.assertEqual(report.unique_focus_ids, 2)
        self.assertEqual(report.ballast_total_mb, 7)
        self.assertEqual(report.unclassifiable_events, 1)
        self.assertEqual(report.stages[0]["duration_seconds"], 1.5)
        self.assertTrue(report.possible_reproduction)
        self.assertFalse(report.partial)

    def test_report_carries_peak_confidence(self) -> None:
        thresholds = DetectionThresholds()
        timeline = EventTimeline()
        confidence = ConfidenceScorer(timeline, thresholds)
        reporter = MetricsReporter(
            thresholds=thresholds,
            timeline=timeline,
            phantom=PhantomInputDetector(timeline, InputCorrelationCache(), thresholds),
            stall=StallDetector(timeline, thresholds),
            stuck=StuckFocusDetector(timeline, thresholds),
            ballast=MemoryBallast(allocate_fn=lambda n: b""),
            confidence=confidence,
        )
        for i in range(21):
            timeline.record_raw(KIND_INPUT, f"up-{i}", 1.0 + i * 0.0078125, {"direction": "up"})
        confidence.poll()
        report = reporter.build(ControllerOutcome(status="completed", reason="ok"), preset="maxStress")
        self.assertEqual(report.confidence_score, 0.95)
        self.assertTrue(report.confidence_critical)
        self.assertEqual(report.to_dict()["confidence_score"], 0.95)

    def test_aborted_outcome_yields_partial_report(self) -> None:
        reporter, *_ = self._reporter(DetectionThresholds())
        outcome = ControllerOutcome(status="aborted", reason="ballast_exhausted")
        report = reporter.build(outcome, preset="heavyReproduction")
        self.assertEqual(report.status, "aborted")
        self.assertTrue(report.partial)
        self.assertEqual(report.reason, "ballast_exhausted")
        self.assertFalse(report.possible_reproduction)

    def test_write_report_targets(self) -> None:
        reporter, *_ = self._reporter(DetectionThresholds())
        report = reporter.build(ControllerOutcome(status="completed", reason="ok"), preset="baseline")
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            log = RunEventLog(root / "events" / "run_events.jsonl")
            paths = write_report(
                report,
                latest_file=root / "reports" / "latest_report.json",
                archive_dir=root / "reports",
                run_log=log,
            )
            latest = json.loads(Path(paths["latest_file"]).read_text(encoding="utf-8"))
            self.assertEqual(latest["preset"], "baseline")
            self.assertTrue(Path(paths["archive_file"]).exists())
            rows = log.tail(5)
            self.assertEqual(rows[-1]["event_type"], "run_report")
            self.assertEqual(rows[-1]["payload"]["status"], "completed")


if __name__ == "__main__":
    unittest.main()

from __future__ import annotations

import unittest

from focus_hammer.input_cache import InputCorrelationCache
from focus_hammer.models import (
    KIND_FOCUS_SAMPLE,
    KIND_FRAME_HITCH,
    KIND_INPUT,
    KIND_PHANTOM,
    KIND_STALL,
    KIND_STUCK_FOCUS,
    NO_FOCUS,
    DetectionThresholds,
    FocusSample,
)
from focus_hammer.phantom import PhantomInputDetector
from focus_hammer.stall import StallDetector
from focus_hammer.stuck_focus import StuckFocusDetector
from focus_hammer.timeline import EventTimeline


class PhantomInputDetectorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.timeline = EventTimeline()
        self.cache = InputCorrelationCache()
        self.detector = PhantomInputDetector(self.timeline, self.cache, DetectionThresholds())

    def test_unconfirmed_inputs_at_fixed_gaps_are_all_phantom(self) -> None:
        for i in range(300):
            self.timeline.record_raw(KIND_INPUT, f"up-{i}", 1.0 + i * 0.015)
        self.assertEqual(self.detector.poll(), 300)
        self.assertEqual(self.detector.phantom_count, 300)
        self.assertEqual(len(self.timeline.query(KIND_PHANTOM)), 300)

    def test_hardware_confirmed_input_is_not_phantom(self) -> None:
        self.cache.mark_down("right-1", 2.0)
        self.timeline.record_raw(KIND_INPUT, "right-1", 2.05)
        self.assertEqual(self.detector.poll(), 0)
        self.assertEqual(self.detector.checked, 1)

    def test_stale_confirmation_does_not_count(self) -> None:
        self.cache.mark_down("right-1", 2.0)
        self.timeline.record_raw(KIND_INPUT, "right-1", 2.5)
        self.assertEqual(self.detector.poll(), 1)

    def test_genuine_focus_change_exempts_unconfirmed_input(self) -> None:
        self.timeline.record_raw(KIND_FOCUS_SAMPLE, "cell-0-0", 3.0)
        self.timeline.record_raw(KIND_FOCUS_SAMPLE, "cell-0-1", 3.95)
        self.timeline.record_raw(KIND_INPUT, "right-9", 4.0)
        self.assertEqual(self.detector.poll(), 0)
        self.assertEqual(self.detector.exempted_by_focus, 1)

    def test_focus_sample_recorded_after_input_still_exempts_it(self) -> None:
        self.timeline.record_raw(KIND_FOCUS_SAMPLE, "cell-0-0", 3.0)
        self.timeline.record_raw(KIND_INPUT, "right-9", 4.0)
        self.timeline.record_raw(KIND_FOCUS_SAMPLE, "cell-0-1", 3.95)
        self.assertEqual(self.detector.poll(), 0)
        self.assertEqual(self.detector.exempted_by_focus, 1)

    def test_focus_change_to_none_is_not_an_exemption(self) -> None:
        self.timeline.record_raw(KIND_FOCUS_SAMPLE, "cell-0-0", 3.0)
        self.timeline.record_raw(KIND_FOCUS_SAMPLE, NO_FOCUS, 3.95)
        self.timeline.record_raw(KIND_INPUT, "right-9", 4.0)
        self.assertEqual(self.detector.poll(), 1)

    def test_old_focus_change_does_not_exempt(self) -> None:
        self.timeline.record_raw(KIND_FOCUS_SAMPLE, "cell-0-0", 3.0)
        self.timeline.record_raw(KIND_FOCUS_SAMPLE, "cell-0-1", 3.5)
        self.timeline.record_raw(KIND_INPUT, "right-9", 4.0)
        self.assertEqual(self.detector.poll(), 1)

    def test_missing_id_and_backwards_time_are_excluded(self) -> None:
        self.timeline.record_raw(KIND_INPUT, "up-1", 5.0)
        self.timeline.record_raw(KIND_INPUT, "", 5.1)
        self.timeline.record_raw(KIND_INPUT, "up-2", 4.0)
        self.assertEqual(self.detector.poll(), 1)
        self.assertEqual(self.detector.excluded, 2)

    def test_poll_only_processes_new_events(self) -> None:
        self.timeline.record_raw(KIND_INPUT, "up-1", 1.0)
        self.assertEqual(self.detector.poll(), 1)
        self.assertEqual(self.detector.poll(), 0)
        self.timeline.record_raw(KIND_INPUT, "up-2", 2.0)
        self.assertEqual(self.detector.poll(), 1)
        self.assertEqual(self.detector.phantom_count, 2)


class StallDetectorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.timeline = EventTimeline()
        self.detector = StallDetector(
            self.timeline,
            DetectionThresholds(stall_warn_ms=1000, stall_critical_ms=5000),
        )

    def test_heartbeat_deltas_classify_warning_and_critical(self) -> None:
        beats = [0.0]
        for delta_ms in [200, 1500, 300, 6000]:
            beats.append(beats[-1] + delta_ms / 1000.0)
        results = [self.detector.heartbeat(t) for t in beats]
        self.assertEqual(results, [None, None, "warning", None, "critical"])
        self.assertEqual(self.detector.warning_count(), 1)
        self.assertEqual(self.detector.critical_count(), 1)
        rows = self.timeline.query(KIND_STALL)
        self.assertEqual([r.payload["severity"] for r in rows], ["warning", "critical"])
        self.assertAlmostEqual(self.detector.max_stall_ms(), 6000.0, places=3)
        self.assertAlmostEqual(self.detector.avg_stall_ms(), 3750.0, places=3)

    def test_gaps_equal_to_thresholds_do_not_escalate(self) -> None:
        results = [self.detector.heartbeat(t) for t in (0.0, 1.0, 6.0)]
        self.assertEqual(results, [None, None, "warning"])
        self.assertEqual(self.detector.stall_count(), 1)
        self.assertEqual(self.detector.warning_count(), 1)
        self.assertEqual(self.detector.critical_count(), 0)

    def test_backwards_heartbeat_is_excluded(self) -> None:
        self.detector.heartbeat(10.0)
        self.assertIsNone(self.detector.heartbeat(9.0))
        self.assertEqual(self.detector.excluded, 1)
        self.assertIsNone(self.detector.heartbeat(9.1))
        self.assertEqual(self.detector.stall_count(), 0)

    def test_frame_hitch_above_two_expected_ticks(self) -> None:
        detector = StallDetector(self.timeline, DetectionThresholds(), expected_frame_interval_ms=10.0)
        self.assertFalse(detector.frame_tick(1.000))
        self.assertFalse(detector.frame_tick(1.010))
        self.assertFalse(detector.frame_tick(1.030))
        self.assertTrue(detector.frame_tick(1.080))
        self.assertEqual(detector.hitch_count(), 1)
        hitch = self.timeline.latest(KIND_FRAME_HITCH)
        self.assertEqual(hitch.payload["dropped_frames"], 4)


class StuckFocusDetectorTests(unittest.TestCase):
    def _feed(self, ids: list[str], threshold: int) -> tuple[StuckFocusDetector, list[bool]]:
        timeline = EventTimeline()
        detector = StuckFocusDetector(timeline, DetectionThresholds(stuck_repeat_threshold=threshold))
        flags = [detector.observe(FocusSample(element_id=e, timestamp=float(i))) for i, e in enumerate(ids)]
        return detector, flags

    def test_flags_exactly_once_at_threshold(self) -> None:
        detector, flags = self._feed(["A"] * 5, threshold=5)
        self.assertEqual(flags, [False, False, False, False, True])
        self.assertEqual(detector.episodes, 1)

    def test_none_resets_the_run(self) -> None:
        detector, flags = self._feed(["A", "A", NO_FOCUS, "A", "A"], threshold=5)
        self.assertFalse(any(flags))
        self.assertEqual(detector.episodes, 0)

    def test_long_run_flags_once_until_reset(self) -> None:
        detector, flags = self._feed(["A"] * 12 + ["B"] + ["A"] * 5, threshold=5)
        self.assertEqual(flags.count(True), 2)
        self.assertEqual(detector.episodes, 2)
        self.assertEqual(detector.unique_focus_ids, 2)

    def test_poll_reads_focus_samples_from_timeline(self) -> None:
        timeline = EventTimeline()
        detector = StuckFocusDetector(timeline, DetectionThresholds(stuck_repeat_threshold=3))
        for i in range(3):
            timeline.record_raw(KIND_FOCUS_SAMPLE, "cell-4-4", float(i))
        self.assertEqual(detector.poll(), 1)
        self.assertEqual(timeline.latest(KIND_STUCK_FOCUS).id, "cell-4-4")


if __name__ == "__main__":
    unittest.main()

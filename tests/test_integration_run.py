from __future__ import annotations

import json
from pathlib import Path
import tempfile
import threading
import time
import unittest
import urllib.request

from focus_hammer.api import ControlBridge
from focus_hammer.config import load_config
from focus_hammer.models import STAGE_ORDER, NavigationProfile, StageConfig
from focus_hammer.presets import Preset
from focus_hammer.session import RunSession, build_preset


_SETTINGS = """
[runtime]
events_file = "runtime/events/run_events.jsonl"
heartbeat_interval_ms = 10
frame_interval_ms = 16
pump_interval_ms = 10
observation_window_seconds = 0.2

[run]
preset = "maxStress"
duration_scale = 0.01
seed = 3

[thresholds]
stall_warn_ms = 100
stall_critical_ms = 200
phantom_count_threshold = 3
stuck_repeat_threshold = 20

[simulator]
base_service_ms = 60.0
stall_ms_per_mb = 0.05
stall_ms_per_backlog = 0.0
lockup_backlog = 3
lockup_stall_ms = 350
replay_factor = 2

[api]
enabled = false
"""


def _write_settings(root: Path, text: str):
    config_dir = root / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "settings.toml").write_text(text, encoding="utf-8")
    return load_config(config_dir / "settings.toml")


class SimulatedRunTests(unittest.TestCase):
    def _cfg(self, root: Path):
        return _write_settings(root, _SETTINGS)

    def test_full_run_against_simulated_engine(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            cfg = self._cfg(root)
            session = RunSession(cfg)
            result = session.run()

            report = result.report
            self.assertEqual(report.status, "completed")
            self.assertEqual([s["name"] for s in report.stages], list(STAGE_ORDER))
            self.assertEqual(report.ballast_total_mb, 40)
            self.assertGreater(report.total_commands, 0)
            self.assertTrue(session.engine.locked)
            self.assertGreaterEqual(report.stall_critical_count, 1)
            self.assertGreater(report.phantom_count, 3)
            self.assertTrue(report.possible_reproduction)

            self.assertFalse(session.heartbeat.active)
            self.assertFalse(session.frames.active)
            self.assertFalse(session.pump.active)
            self.assertTrue(session.ballast.released)

            latest = json.loads((root / "runtime/reports/latest_report.json").read_text(encoding="utf-8"))
            self.assertEqual(latest["preset"], "maxStress")
            self.assertTrue(Path(result.archive_file).exists())
            status = json.loads((root / "runtime/status/run_status.json").read_text(encoding="utf-8"))
            self.assertEqual(status["stage"], "complete")
            events = [
                json.loads(line)
                for line in (root / "runtime/events/run_events.jsonl").read_text(encoding="utf-8").splitlines()
            ]
            started = [e["payload"]["stage"] for e in events if e["event_type"] == "stage_started"]
            self.assertEqual(started, list(STAGE_ORDER))
            self.assertEqual(events[-1]["event_type"], "ballast_released")

    def test_timeout_produces_partial_report_and_releases_monitors(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            cfg = self._cfg(root)
            preset = build_preset(cfg, "heavyReproduction", duration_scale=1.0)
            session = RunSession(cfg, preset=preset, timeout_seconds=0.3)
            result = session.run()

            self.assertEqual(result.report.status, "aborted")
            self.assertEqual(result.report.reason, "timeout")
            self.assertTrue(result.report.partial)
            self.assertEqual(result.outcome.visited, ["baseline"])
            self.assertEqual(result.report.ballast_total_mb, 5)
            self.assertFalse(session.heartbeat.active)
            self.assertFalse(session.frames.active)
            self.assertFalse(session.pump.active)
            self.assertTrue((root / "runtime/reports/latest_report.json").exists())

    def test_bridge_abort_stops_the_run(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            cfg = self._cfg(root)
            preset = build_preset(cfg, "baseline", duration_scale=1.0)
            session = RunSession(cfg, preset=preset)
            session.bridge.request_abort("operator")
            result = session.run()
            self.assertEqual(result.report.status, "aborted")
            self.assertEqual(result.report.reason, "operator")


class _ExternalAdapter:
    """Platform stand-in: confirms every press in hardware and dispatches it once."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.hardware = None
        self.dispatch = None

    def subscribe(self, bridge) -> None:
        self.hardware = bridge

    def send(self, direction: str) -> None:
        now = time.monotonic()
        self.sent.append(direction)
        self.hardware.post(direction, now)
        self.dispatch.on_dispatch(direction, now, direction=direction)

    def current_focus_id(self) -> str:
        return "NO_FOCUS"


class ExternalAdapterRunTests(unittest.TestCase):
    def test_external_adapter_replaces_simulator_and_feeds_hardware(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            cfg = _write_settings(Path(tmp), _SETTINGS)
            adapter = _ExternalAdapter()
            session = RunSession(cfg, sink=adapter, focus_source=adapter, hardware_source=adapter)
            adapter.dispatch = session.dispatch
            self.assertIs(adapter.hardware, session.hardware)
            result = session.run()
            self.assertIsNone(session.engine)
            self.assertEqual(result.report.status, "completed")
            self.assertGreater(result.report.total_commands, 0)
            self.assertEqual(len(adapter.sent), result.report.total_commands)
            self.assertEqual(session.hardware.posted, result.report.total_commands)
            self.assertEqual(session.phantom.checked, result.report.total_commands)
            self.assertEqual(result.report.phantom_count, 0)
            self.assertEqual(result.report.unique_focus_ids, 0)


def _zero_delay_preset() -> Preset:
    profile = NavigationProfile(strategy="overload", base_gap_micros=0)
    stages = [
        StageConfig(name=name, duration_seconds=0.1, memory_delta_mb=0, navigation_profile=profile)
        for name in STAGE_ORDER
    ]
    return Preset(name="zeroDelay", description="back-to-back commands", stages=stages)


class ZeroDelayRunTests(unittest.TestCase):
    def test_flooded_engine_is_bounded_and_leaves_no_loop_thread(self) -> None:
        settings = (
            _SETTINGS.replace("observation_window_seconds = 0.2", "observation_window_seconds = 0.1\ntimeline_capacity = 1000\ninput_cache_entries = 64")
            .replace("stall_ms_per_backlog = 0.0", "stall_ms_per_backlog = 50.0\nqueue_limit = 300\nmax_service_ms = 100")
        )
        with tempfile.TemporaryDirectory() as tmp:
            cfg = _write_settings(Path(tmp), settings)
            session = RunSession(cfg, preset=_zero_delay_preset())
            result = session.run()

            engine = session.engine
            self.assertEqual(result.report.status, "completed")
            self.assertTrue(engine.closed)
            self.assertEqual(engine.backlog(), 0)
            self.assertLessEqual(engine.max_backlog, 300)
            self.assertGreater(engine.rejected, 0)
            self.assertEqual(result.report.send_errors, engine.rejected)
            self.assertGreater(engine.discarded, 0)

            self.assertEqual(len(session.cache), 64)
            self.assertGreater(session.cache.evicted, 0)
            self.assertLessEqual(len(session.timeline), 1000)

            self.assertFalse(session._owned_loop.running)
            alive = [t.name for t in threading.enumerate() if t.name == "primary-loop"]
            self.assertEqual(alive, [])


class ApiDuringRunTests(unittest.TestCase):
    def test_latest_report_is_served_before_the_server_stops(self) -> None:
        served: list[dict] = []
        session_ref: list[RunSession] = []

        class _FetchingBridge(ControlBridge):
            def update_report(self, payload: dict) -> None:
                super().update_report(payload)
                host, port = session_ref[0].api_address
                with urllib.request.urlopen(f"http://{host}:{port}/report/latest", timeout=5) as resp:
                    served.append(json.loads(resp.read().decode("utf-8")))

        settings = _SETTINGS.replace("enabled = false", 'enabled = true\nhost = "127.0.0.1"\nport = 0')
        with tempfile.TemporaryDirectory() as tmp:
            cfg = _write_settings(Path(tmp), settings)
            preset = build_preset(cfg, "baseline", duration_scale=0.005)
            session = RunSession(cfg, preset=preset, bridge=_FetchingBridge())
            session_ref.append(session)
            result = session.run(enable_api=True)

        self.assertEqual(len(served), 1)
        self.assertEqual(served[0]["preset"], "baseline")
        self.assertEqual(served[0]["status"], result.report.status)
        self.assertIn("confidence_score", served[0])


if __name__ == "__main__":
    unittest.main()

from __future__ import annotations

import os
from pathlib import Path
import tempfile
import unittest

from focus_hammer.config import load_config
from focus_hammer.models import STAGE_ORDER
from focus_hammer.presets import PRESETS, customize, get_preset
from focus_hammer.session import build_preset


def _write_config(root: Path, body: str) -> Path:
    config_dir = root / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    path = config_dir / "settings.toml"
    path.write_text(body, encoding="utf-8")
    return path


class ConfigTests(unittest.TestCase):
    def test_defaults_and_project_relative_paths(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            cfg = load_config(_write_config(root, "[run]\npreset = \"maxStress\"\n"))
            self.assertEqual(cfg.project_root, root.resolve())
            self.assertEqual(cfg.run.preset, "maxStress")
            self.assertIsNone(cfg.run.seed)
            self.assertEqual(
                cfg.resolve(cfg.reporting.latest_report_file),
                (root / "runtime/reports/latest_report.json").resolve(),
            )
            self.assertEqual(cfg.runtime.timeline_capacity, 50_000)

    def test_env_vars_expand_in_paths(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            cfg = load_config(_write_config(root, "[reporting]\nstatus_file = \"$FH_TEST_DIR/status.json\"\n"))
            old = os.environ.get("FH_TEST_DIR")
            os.environ["FH_TEST_DIR"] = str(root / "elsewhere")
            try:
                self.assertEqual(cfg.resolve(cfg.reporting.status_file), root / "elsewhere" / "status.json")
            finally:
                if old is None:
                    os.environ.pop("FH_TEST_DIR", None)
                else:
                    os.environ["FH_TEST_DIR"] = old

    def test_values_are_clamped(self) -> None:
        body = """
[runtime]
timeline_capacity = 10
heartbeat_interval_ms = 1

[simulator]
lockup_backlog = 0
replay_factor = 0
"""
        with tempfile.TemporaryDirectory() as tmp:
            cfg = load_config(_write_config(Path(tmp), body))
            self.assertEqual(cfg.runtime.timeline_capacity, 1000)
            self.assertEqual(cfg.runtime.heartbeat_interval_ms, 5.0)
            self.assertEqual(cfg.simulator.lockup_backlog, 1)
            self.assertEqual(cfg.simulator.replay_factor, 1)

    def test_unknown_preset_and_missing_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            with self.assertRaises(ValueError):
                load_config(_write_config(root, "[run]\npreset = \"warpSpeed\"\n"))
            with self.assertRaises(FileNotFoundError):
                load_config(root / "nope.toml")

    def test_threshold_overrides_reach_the_preset(self) -> None:
        body = """
[run]
preset = "heavyReproduction"
duration_scale = 0.5
seed = 9

[thresholds]
stall_critical_ms = 4000
stuck_repeat_threshold = 5
"""
        with tempfile.TemporaryDirectory() as tmp:
            cfg = load_config(_write_config(Path(tmp), body))
            preset = build_preset(cfg)
            self.assertEqual(preset.thresholds.stall_critical_ms, 4000.0)
            self.assertEqual(preset.thresholds.stuck_repeat_threshold, 5)
            self.assertEqual(preset.thresholds.phantom_window_ms, 200.0)
            self.assertEqual(preset.stages[0].duration_seconds, 15.0)
            self.assertTrue(all(s.navigation_profile.seed == 9 for s in preset.stages))


class PresetTests(unittest.TestCase):
    def test_every_preset_has_the_fixed_stage_order(self) -> None:
        for name in PRESETS:
            preset = get_preset(name)
            self.assertEqual(tuple(s.name for s in preset.stages), STAGE_ORDER, name)

    def test_heavy_reproduction_ballast(self) -> None:
        preset = get_preset("heavyReproduction")
        self.assertEqual([s.memory_delta_mb for s in preset.stages], [5, 13, 1, 17])
        self.assertEqual(preset.total_ballast_mb, 36)

    def test_max_stress_critical_stage_reaches_zero_delay(self) -> None:
        critical = get_preset("maxStress").stages[-1].navigation_profile
        self.assertEqual(critical.acceleration.kind, "linear")
        self.assertEqual(critical.acceleration.floor_micros, 0)

    def test_unknown_override_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            customize(get_preset("baseline"), threshold_overrides={"stall_panic_ms": 1})
        with self.assertRaises(ValueError):
            get_preset("nope")


if __name__ == "__main__":
    unittest.main()

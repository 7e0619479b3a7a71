from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import tomllib
from typing import Any

from .presets import PRESETS


@dataclass(frozen=True)
class RuntimeConfig:
    events_file: str
    timeline_capacity: int
    input_cache_entries: int
    heartbeat_interval_ms: float
    frame_interval_ms: float
    pump_interval_ms: float
    observation_window_seconds: float
    run_timeout_seconds: float


@dataclass(frozen=True)
class RunConfig:
    preset: str
    duration_scale: float
    seed: int | None
    threshold_overrides: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReportingConfig:
    report_dir: str
    latest_report_file: str
    status_file: str


@dataclass(frozen=True)
class SimulatorConfig:
    rows: int
    cols: int
    base_service_ms: float
    stall_ms_per_mb: float
    stall_ms_per_backlog: float
    lockup_backlog: int
    lockup_stall_ms: float
    replay_factor: int
    queue_limit: int
    max_service_ms: float


@dataclass(frozen=True)
class ApiConfig:
    enabled: bool
    host: str
    port: int


@dataclass(frozen=True)
class AppConfig:
    project_root: Path
    runtime: RuntimeConfig
    run: RunConfig
    reporting: ReportingConfig
    simulator: SimulatorConfig
    api: ApiConfig

    def resolve(self, rel_or_abs: str) -> Path:
        expanded = os.path.expandvars(str(rel_or_abs))
        path = Path(expanded).expanduser()
        if path.is_absolute():
            return path
        return (self.project_root / path).resolve()


def _detect_project_root(cfg_path: Path) -> Path:
    direct_parent = cfg_path.parent
    if direct_parent.name == "config":
        return direct_parent.parent.resolve()

    for candidate in [direct_parent, *direct_parent.parents]:
        if (candidate / "src" / "focus_hammer").exists():
            return candidate.resolve()
    return direct_parent.resolve()


def _optional_int(raw: object) -> int | None:
    if raw is None or raw == "":
        return None
    return int(raw)  # type: ignore[arg-type]


def load_config(path: str | Path) -> AppConfig:
    cfg_path = Path(path).expanduser().resolve()
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    with cfg_path.open("rb") as fh:
        payload = tomllib.load(fh)

    runtime = payload.get("runtime", {})
    run = payload.get("run", {})
    thresholds = payload.get("thresholds", {})
    reporting = payload.get("reporting", {})
    simulator = payload.get("simulator", {})
    api = payload.get("api", {})

    preset = str(run.get("preset", "heavyReproduction")).strip()
    if preset not in PRESETS:
        raise ValueError(f"unknown preset in {cfg_path}: {preset!r}")

    project_root = _detect_project_root(cfg_path)

    return AppConfig(
        project_root=project_root,
        runtime=RuntimeConfig(
            events_file=str(runtime.get("events_file", "runtime/events/run_events.jsonl")),
            timeline_capacity=max(1000, int(runtime.get("timeline_capacity", 50_000))),
            input_cache_entries=max(64, int(runtime.get("input_cache_entries", 4096))),
            heartbeat_interval_ms=max(5.0, float(runtime.get("heartbeat_interval_ms", 100.0))),
            frame_interval_ms=max(1.0, float(runtime.get("frame_interval_ms", 1000.0 / 60.0))),
            pump_interval_ms=max(5.0, float(runtime.get("pump_interval_ms", 50.0))),
            observation_window_seconds=max(0.0, float(runtime.get("observation_window_seconds", 30.0))),
            run_timeout_seconds=max(0.0, float(runtime.get("run_timeout_seconds", 0.0))),
        ),
        run=RunConfig(
            preset=preset,
            duration_scale=max(0.0, float(run.get("duration_scale", 1.0))),
            seed=_optional_int(run.get("seed")),
            threshold_overrides=dict(thresholds) if isinstance(thresholds, dict) else {},
        ),
        reporting=ReportingConfig(
            report_dir=str(reporting.get("report_dir", "runtime/reports")),
            latest_report_file=str(reporting.get("latest_report_file", "runtime/reports/latest_report.json")),
            status_file=str(reporting.get("status_file", "runtime/status/run_status.json")),
        ),
        simulator=SimulatorConfig(
            rows=max(1, int(simulator.get("rows", 10))),
            cols=max(1, int(simulator.get("cols", 10))),
            base_service_ms=max(0.0, float(simulator.get("base_service_ms", 2.0))),
            stall_ms_per_mb=max(0.0, float(simulator.get("stall_ms_per_mb", 0.25))),
            stall_ms_per_backlog=max(0.0, float(simulator.get("stall_ms_per_backlog", 0.5))),
            lockup_backlog=max(1, int(simulator.get("lockup_backlog", 40))),
            lockup_stall_ms=max(0.0, float(simulator.get("lockup_stall_ms", 6000.0))),
            replay_factor=max(1, int(simulator.get("replay_factor", 2))),
            queue_limit=max(1, int(simulator.get("queue_limit", 5000))),
            max_service_ms=max(0.0, float(simulator.get("max_service_ms", 1000.0))),
        ),
        api=ApiConfig(
            enabled=bool(api.get("enabled", True)),
            host=str(api.get("host", "127.0.0.1")),
            port=int(api.get("port", 8797)),
        ),
    )

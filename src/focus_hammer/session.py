from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import threading
import time
from typing import Any, Callable, Iterator
import uuid

from .api import ControlBridge, start_api_server
from .ballast import MemoryBallast
from .confidence import ConfidenceScorer
from .config import AppConfig
from .input_cache import InputCorrelationCache
from .interfaces import (
    CommandSink,
    DispatchObserver,
    FocusSource,
    HardwareConfirmationBridge,
    HardwareConfirmationSource,
)
from .models import RunReport, utc_now_iso
from .monitors import DetectorPump, FocusSampler, FrameMonitor, HeartbeatMonitor
from .phantom import PhantomInputDetector
from .presets import Preset, customize, get_preset
from .reporter import MetricsReporter, write_report
from .run_log import RunEventLog, write_json_atomic
from .scheduling import PrimaryLoop, Scheduler
from .simulator import EngineTuning, SimulatedFocusEngine
from .stage_controller import ControllerOutcome, StageController
from .stall import StallDetector
from .stuck_focus import StuckFocusDetector
from .timeline import EventTimeline


@dataclass(frozen=True)
class SessionResult:
    run_id: str
    report: RunReport
    outcome: ControllerOutcome
    latest_report_file: str
    archive_file: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.report.status,
            "reason": self.report.reason,
            "possible_reproduction": self.report.possible_reproduction,
            "latest_report_file": self.latest_report_file,
            "archive_file": self.archive_file,
        }


def build_preset(cfg: AppConfig, preset_name: str | None = None, *, duration_scale: float | None = None) -> Preset:
    return customize(
        get_preset(preset_name or cfg.run.preset),
        duration_scale=cfg.run.duration_scale if duration_scale is None else duration_scale,
        seed=cfg.run.seed,
        threshold_overrides=cfg.run.threshold_overrides,
    )


class RunSession:
    """One diagnostic run: shared stores, producers, detectors, controller and report.

    Without an external ``sink``/``focus_source`` pair the run drives the
    in-process ``SimulatedFocusEngine``. A platform adapter supplies both,
    feeds ``dispatch`` itself and is handed ``hardware`` through
    ``hardware_source.subscribe``.
    """

    def __init__(
        self,
        cfg: AppConfig,
        *,
        preset: Preset | None = None,
        sink: CommandSink | None = None,
        focus_source: FocusSource | None = None,
        hardware_source: HardwareConfirmationSource | None = None,
        scheduler: Scheduler | None = None,
        bridge: ControlBridge | None = None,
        timeout_seconds: float | None = None,
        monotonic_fn: Callable[[], float] | None = None,
        sleep_fn: Callable[[float], object] | None = None,
    ) -> None:
        self.cfg = cfg
        self.run_id = uuid.uuid4().hex[:12]
        self.preset = preset or build_preset(cfg)
        self.thresholds = self.preset.thresholds
        self.bridge = bridge or ControlBridge()
        self._mono = monotonic_fn or time.monotonic

        self.run_log = RunEventLog(cfg.resolve(cfg.runtime.events_file), run_id=self.run_id)
        self.timeline = EventTimeline(cfg.runtime.timeline_capacity)
        self.cache = InputCorrelationCache(cfg.runtime.input_cache_entries)
        self.hardware = HardwareConfirmationBridge(self.cache)
        self.dispatch = DispatchObserver(self.timeline)

        self.phantom = PhantomInputDetector(self.timeline, self.cache, self.thresholds)
        self.stall = StallDetector(
            self.timeline,
            self.thresholds,
            expected_frame_interval_ms=cfg.runtime.frame_interval_ms,
        )
        self.stuck = StuckFocusDetector(self.timeline, self.thresholds)
        self.confidence = ConfidenceScorer(
            self.timeline,
            self.thresholds,
            on_critical=self._on_confidence_critical,
            monotonic_fn=self._mono,
        )
        self.ballast = MemoryBallast(monotonic_fn=self._mono)

        self._owned_loop: PrimaryLoop | None = None
        if scheduler is None:
            self._owned_loop = PrimaryLoop()
            scheduler = self._owned_loop
        self.scheduler = scheduler

        self.engine: SimulatedFocusEngine | None = None
        if sink is None or focus_source is None:
            sim = cfg.simulator
            self.engine = SimulatedFocusEngine(
                scheduler,
                self.hardware,
                self.dispatch,
                tuning=EngineTuning(
                    rows=sim.rows,
                    cols=sim.cols,
                    base_service_ms=sim.base_service_ms,
                    stall_ms_per_mb=sim.stall_ms_per_mb,
                    stall_ms_per_backlog=sim.stall_ms_per_backlog,
                    lockup_backlog=sim.lockup_backlog,
                    lockup_stall_ms=sim.lockup_stall_ms,
                    replay_factor=sim.replay_factor,
                    queue_limit=sim.queue_limit,
                    max_service_ms=sim.max_service_ms,
                ),
                ballast_mb_fn=lambda: self.ballast.total_mb,
                monotonic_fn=self._mono,
            )
            sink = self.engine
            focus_source = self.engine
        self.sink = sink
        self.sampler = FocusSampler(focus_source, self.timeline, monotonic_fn=self._mono)

        self.controller = StageController(
            self.preset.stages,
            self.sink,
            self.ballast,
            on_tick=self.sampler.sample,
            run_log=self.run_log,
            observation_window_seconds=cfg.runtime.observation_window_seconds,
            timeout_seconds=cfg.runtime.run_timeout_seconds if timeout_seconds is None else timeout_seconds,
            monotonic_fn=monotonic_fn,
            sleep_fn=sleep_fn,
        )
        self.heartbeat = HeartbeatMonitor(
            scheduler,
            self.stall,
            interval_seconds=cfg.runtime.heartbeat_interval_ms / 1000.0,
            monotonic_fn=self._mono,
        )
        self.frames = FrameMonitor(
            scheduler,
            self.stall,
            interval_seconds=cfg.runtime.frame_interval_ms / 1000.0,
            monotonic_fn=self._mono,
        )
        self.pump = DetectorPump(
            [self.phantom, self.stuck, self.confidence],
            interval_seconds=cfg.runtime.pump_interval_ms / 1000.0,
        )
        self.reporter = MetricsReporter(
            thresholds=self.thresholds,
            timeline=self.timeline,
            phantom=self.phantom,
            stall=self.stall,
            stuck=self.stuck,
            ballast=self.ballast,
            confidence=self.confidence,
        )
        if hardware_source is not None:
            hardware_source.subscribe(self.hardware)
        self.api_address: tuple[str, int] | None = None
        self._status_stop = threading.Event()
        self._started_at = utc_now_iso()

    def monitors(self) -> list[Any]:
        return [self.heartbeat, self.frames, self.pump, self._status_heartbeat()]

    def status_payload(self) -> dict[str, Any]:
        return {
            "ts": utc_now_iso(),
            "run_id": self.run_id,
            "preset": self.preset.name,
            "started_at": self._started_at,
            "stage": self.controller.current_stage,
            "commands": self.controller.outcome.total_commands,
            "send_errors": self.controller.outcome.send_errors,
            "ballast_mb": self.ballast.total_mb,
            "phantom": self.phantom.stats(),
            "stall": self.stall.stats(),
            "stuck_focus": self.stuck.stats(),
            "confidence": self.confidence.stats(),
            "timeline": self.timeline.stats(),
            "engine": self.engine.stats() if self.engine is not None else {},
            "control": self.bridge.snapshot(),
        }

    def _on_confidence_critical(self, diagnostics: dict[str, Any]) -> None:
        self.run_log.append(phase="detect", event_type="confidence_critical", severity="critical", payload=diagnostics)

    def _publish_status(self) -> None:
        payload = self.status_payload()
        self.bridge.update_health(payload)
        try:
            write_json_atomic(self.cfg.resolve(self.cfg.reporting.status_file), payload)
        except OSError as exc:
            self.run_log.append(phase="status", event_type="status_write_failed", severity="warning", payload={"error": str(exc)})

    @contextmanager
    def _status_heartbeat(self, interval_seconds: float = 0.5) -> Iterator[None]:
        def _loop() -> None:
            while not self._status_stop.wait(timeout=interval_seconds):
                if self.bridge.consume_abort():
                    self.controller.abort(self.bridge.abort_reason() or "api_abort")
                self._publish_status()

        self._status_stop.clear()
        thread = threading.Thread(target=_loop, name="status-heartbeat", daemon=True)
        thread.start()
        try:
            yield
        finally:
            self._status_stop.set()
            thread.join(timeout=5.0)

    def abort(self, reason: str = "external_abort") -> None:
        self.controller.abort(reason)

    def run(self, *, enable_api: bool = False) -> SessionResult:
        self.run_log.append(
            phase="bootstrap",
            event_type="run_started",
            severity="info",
            payload={"preset": self.preset.to_dict(), "simulated": self.engine is not None},
        )
        server = None
        if enable_api:
            server, _ = start_api_server(
                self.bridge,
                host=self.cfg.api.host,
                port=self.cfg.api.port,
                events_fn=self.run_log.tail,
            )
            self.api_address = server.server_address[:2]
        try:
            if self._owned_loop is not None:
                self._owned_loop.start()
            try:
                outcome = self.controller.run(self.monitors())
            except Exception as exc:  # noqa: BLE001
                outcome = self.controller.outcome
                outcome.status = "aborted"
                outcome.reason = f"run_error:{exc}"
                self.run_log.append(phase="run", event_type="run_error", severity="critical", payload={"error": str(exc)})
            finally:
                self._shutdown_engine()

            report = self.reporter.build(outcome, preset=self.preset.name)
            paths = write_report(
                report,
                latest_file=self.cfg.resolve(self.cfg.reporting.latest_report_file),
                archive_dir=self.cfg.resolve(self.cfg.reporting.report_dir),
                run_log=self.run_log,
            )
            self.bridge.update_report(report.to_dict())
            self._publish_status()
        finally:
            if server is not None:
                server.shutdown()
                server.server_close()
        freed = self.ballast.release()
        self.run_log.append(phase="teardown", event_type="ballast_released", severity="info", payload={"freed_mb": freed})
        return SessionResult(
            run_id=self.run_id,
            report=report,
            outcome=outcome,
            latest_report_file=paths["latest_file"],
            archive_file=paths["archive_file"],
        )

    def _shutdown_engine(self) -> None:
        if self.engine is not None:
            dropped = self.engine.close()
            if dropped:
                self.run_log.append(
                    phase="teardown",
                    event_type="engine_queue_dropped",
                    severity="warning",
                    payload={"dropped": dropped},
                )
        if self._owned_loop is not None:
            self._owned_loop.stop()
            if self._owned_loop.running:
                self.run_log.append(
                    phase="teardown",
                    event_type="primary_loop_stuck",
                    severity="critical",
                    payload={"thread": self._owned_loop.name},
                )

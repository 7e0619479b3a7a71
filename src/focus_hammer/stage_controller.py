from __future__ import annotations

from contextlib import AbstractContextManager, ExitStack
from dataclasses import dataclass, field
import threading
import time
from typing import Any, Callable

from .ballast import BallastExhausted, MemoryBallast
from .interfaces import CommandSink
from .models import StageConfig, StageResult
from .navigation import next_command
from .presets import validate_stages
from .run_log import RunEventLog


class RunAborted(RuntimeError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass
class ControllerOutcome:
    status: str = "pending"
    reason: str = ""
    visited: list[str] = field(default_factory=list)
    stages: list[StageResult] = field(default_factory=list)
    total_commands: int = 0
    send_errors: int = 0
    last_send_error: str = ""
    ballast_total_mb: int = 0
    started_at: float = 0.0
    ended_at: float = 0.0

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "reason": self.reason,
            "visited": list(self.visited),
            "stages": [s.to_dict() for s in self.stages],
            "total_commands": self.total_commands,
            "send_errors": self.send_errors,
            "last_send_error": self.last_send_error,
            "ballast_total_mb": self.ballast_total_mb,
            "elapsed_seconds": round(max(0.0, self.ended_at - self.started_at), 6),
        }


def estimate_total_steps(stage: StageConfig) -> int:
    gap = max(1000, int(stage.navigation_profile.base_gap_micros))
    return max(1, int(float(stage.duration_seconds) * 1_000_000 / gap))


class StageController:
    """Fixed-order escalation: baseline, level1, level2, critical, then an observation window.

    Transitions are purely time-driven. Detector output never changes when a
    stage starts or ends. One command is in flight at a time and every
    monitor handed to ``run`` is released on every exit path.
    """

    def __init__(
        self,
        stages: list[StageConfig],
        sink: CommandSink,
        ballast: MemoryBallast,
        *,
        on_tick: Callable[[], object] | None = None,
        run_log: RunEventLog | None = None,
        observation_window_seconds: float = 30.0,
        timeout_seconds: float = 0.0,
        monotonic_fn: Callable[[], float] | None = None,
        sleep_fn: Callable[[float], object] | None = None,
    ) -> None:
        validate_stages(stages)
        self.stages = list(stages)
        self.sink = sink
        self.ballast = ballast
        self.on_tick = on_tick
        self.run_log = run_log
        self.observation_window_seconds = max(0.0, float(observation_window_seconds))
        self.timeout_seconds = max(0.0, float(timeout_seconds))
        self._abort = threading.Event()
        self._abort_reason = ""
        self._mono = monotonic_fn or time.monotonic
        self._sleep = sleep_fn or self._abort.wait
        self._deadline: float | None = None
        self.outcome = ControllerOutcome()
        self.current_stage = "idle"

    def abort(self, reason: str = "external_abort") -> None:
        if not self._abort.is_set():
            self._abort_reason = reason
        self._abort.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def _log(self, event_type: str, severity: str, payload: dict[str, Any]) -> None:
        if self.run_log is not None:
            self.run_log.append(phase="stage", event_type=event_type, severity=severity, payload=payload)

    def _check(self) -> None:
        if self._abort.is_set():
            raise RunAborted(self._abort_reason or "external_abort")
        if self._deadline is not None and self._mono() >= self._deadline:
            raise RunAborted("timeout")

    def _pause(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)

    def run(self, monitors: list[AbstractContextManager[Any]] | None = None) -> ControllerOutcome:
        outcome = self.outcome
        outcome.started_at = self._mono()
        if self.timeout_seconds > 0:
            self._deadline = outcome.started_at + self.timeout_seconds
        try:
            with ExitStack() as stack:
                for monitor in monitors or []:
                    stack.enter_context(monitor)
                for stage in self.stages:
                    self._run_stage(stage)
                self._observe()
            outcome.status = "completed"
            outcome.reason = "all_stages_completed"
        except RunAborted as exc:
            outcome.status = "aborted"
            outcome.reason = exc.reason
        except BallastExhausted as exc:
            outcome.status = "aborted"
            outcome.reason = "ballast_exhausted"
            self._log("ballast_exhausted", "critical", {"error": str(exc), "stage": self.current_stage})
        finally:
            outcome.ended_at = self._mono()
            outcome.ballast_total_mb = self.ballast.total_mb
            self.current_stage = "complete" if outcome.status == "completed" else "aborted"
            self._log(
                "run_finished",
                "info" if outcome.completed else "warning",
                {"status": outcome.status, "reason": outcome.reason, "visited": list(outcome.visited)},
            )
        return outcome

    def _run_stage(self, stage: StageConfig) -> None:
        self._check()
        self.current_stage = stage.name
        # Entry is only complete once the ballast helper has been joined.
        total_mb = self.ballast.grow(stage.memory_delta_mb, label=stage.name)
        started = self._mono()
        self.outcome.visited.append(stage.name)
        self._log(
            "stage_started",
            "info",
            {
                "stage": stage.name,
                "memory_delta_mb": stage.memory_delta_mb,
                "ballast_total_mb": total_mb,
                "strategy": stage.navigation_profile.strategy,
                "duration_seconds": stage.duration_seconds,
            },
        )

        profile = stage.navigation_profile
        total_steps = estimate_total_steps(stage)
        step = 0
        try:
            while self._mono() - started < float(stage.duration_seconds):
                self._check()
                command = next_command(profile, step, total_steps)
                self._send(command.direction)
                if self.on_tick is not None:
                    self.on_tick()
                step += 1
                self._pause(command.delay_micros / 1_000_000)
                if stage.checkpoint_every > 0 and step % stage.checkpoint_every == 0:
                    self._pause(float(stage.checkpoint_pause_ms) / 1000.0)
        finally:
            ended = self._mono()
            self.outcome.stages.append(
                StageResult(
                    name=stage.name,
                    started_at=started,
                    ended_at=ended,
                    steps=step,
                    ballast_mb_after_entry=total_mb,
                )
            )
            self._log("stage_finished", "info", {"stage": stage.name, "steps": step, "seconds": round(ended - started, 6)})

    def _send(self, direction: str) -> None:
        try:
            self.sink.send(direction)
        except Exception as exc:  # noqa: BLE001
            self.outcome.send_errors += 1
            self.outcome.last_send_error = f"send_error:{exc}"
            if self.outcome.send_errors <= 5:
                self._log("send_error", "warning", {"stage": self.current_stage, "error": str(exc)})
            return
        self.outcome.total_commands += 1

    def _observe(self) -> None:
        self.current_stage = "observation"
        self._log("observation_started", "info", {"seconds": self.observation_window_seconds})
        started = self._mono()
        slice_seconds = 0.25
        while self._mono() - started < self.observation_window_seconds:
            self._check()
            if self.on_tick is not None:
                self.on_tick()
            remaining = self.observation_window_seconds - (self._mono() - started)
            self._pause(min(slice_seconds, max(0.0, remaining)))

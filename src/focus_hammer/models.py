from __future__ import annotations

from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping


KIND_INPUT = "input"
KIND_FOCUS_SAMPLE = "focus_sample"
KIND_STALL = "stall"
KIND_FRAME_HITCH = "frame_hitch"
KIND_PHANTOM = "phantom"
KIND_STUCK_FOCUS = "stuck_focus"
KIND_DEGRADED = "degraded"

EVENT_KINDS = frozenset(
    {
        KIND_INPUT,
        KIND_FOCUS_SAMPLE,
        KIND_STALL,
        KIND_FRAME_HITCH,
        KIND_PHANTOM,
        KIND_STUCK_FOCUS,
        KIND_DEGRADED,
    }
)

DIRECTIONS = ("up", "down", "left", "right")

NO_FOCUS = "NONE"
_NO_FOCUS_ALIASES = {"", "NONE", "NO_FOCUS", "none", "no_focus"}

STAGE_ORDER = ("baseline", "level1", "level2", "critical")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def elapsed_ms(start: float, end: float) -> float:
    # Rounded to nanoseconds so 1.2 - 1.0 compares as exactly 200 ms.
    return round((float(end) - float(start)) * 1000.0, 6)


def normalize_focus_id(raw: object) -> str:
    if raw is None:
        return NO_FOCUS
    token = str(raw).strip()
    if token in _NO_FOCUS_ALIASES:
        return NO_FOCUS
    return token


@dataclass(frozen=True)
class TimestampedEvent:
    kind: str
    id: str
    timestamp: float
    payload: Mapping[str, Any] = field(default_factory=dict)
    seq: int = -1

    def __post_init__(self) -> None:
        # Payloads are read-only once the event exists.
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.id,
            "timestamp": float(self.timestamp),
            "payload": dict(self.payload),
            "seq": int(self.seq),
        }


@dataclass(frozen=True)
class InputRecord:
    id: str
    last_hardware_time: float | None = None
    last_precise_time: float | None = None

    def last_seen(self) -> float | None:
        seen = [t for t in (self.last_hardware_time, self.last_precise_time) if t is not None]
        return max(seen) if seen else None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FocusSample:
    element_id: str
    timestamp: float

    @property
    def is_none(self) -> bool:
        return self.element_id == NO_FOCUS


@dataclass(frozen=True)
class NavigationCommand:
    direction: str
    delay_micros: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DelayModel:
    """How the inter-command gap evolves across a stage.

    ``fixed`` keeps the base gap. ``linear`` subtracts ``step_micros`` per step
    down to ``floor_micros`` (a floor of 0 is the maximum-rate mode).
    ``progressive`` shrinks the gap by up to 30% over the stage.
    ``random`` draws uniformly from ``[floor_micros, ceiling_micros]``.
    """

    kind: str = "fixed"
    floor_micros: int = 0
    step_micros: int = 0
    ceiling_micros: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class NavigationProfile:
    strategy: str
    base_gap_micros: int
    variant: str = ""
    seed: int | None = None
    acceleration: DelayModel = field(default_factory=DelayModel)
    span: int = 8

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "variant": self.variant,
            "seed": self.seed,
            "base_gap_micros": int(self.base_gap_micros),
            "acceleration": self.acceleration.to_dict(),
            "span": int(self.span),
        }


@dataclass(frozen=True)
class StageConfig:
    name: str
    duration_seconds: float
    memory_delta_mb: int
    navigation_profile: NavigationProfile
    checkpoint_every: int = 0
    checkpoint_pause_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "duration_seconds": float(self.duration_seconds),
            "memory_delta_mb": int(self.memory_delta_mb),
            "navigation_profile": self.navigation_profile.to_dict(),
            "checkpoint_every": int(self.checkpoint_every),
            "checkpoint_pause_ms": float(self.checkpoint_pause_ms),
        }


@dataclass(frozen=True)
class DetectionThresholds:
    phantom_window_ms: float = 200.0
    focus_divergence_window_ms: float = 120.0
    stall_warn_ms: float = 1000.0
    stall_critical_ms: float = 5000.0
    stuck_repeat_threshold: int = 8
    phantom_count_threshold: int = 10
    frame_hitch_factor: float = 2.0
    confidence_critical_score: float = 0.70

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StageResult:
    name: str
    started_at: float
    ended_at: float
    steps: int
    ballast_mb_after_entry: int

    @property
    def duration_seconds(self) -> float:
        return max(0.0, self.ended_at - self.started_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "duration_seconds": round(self.duration_seconds, 6),
            "steps": int(self.steps),
            "ballast_mb_after_entry": int(self.ballast_mb_after_entry),
        }


@dataclass(frozen=True)
class RunReport:
    preset: str
    status: str
    reason: str
    partial: bool
    total_commands: int
    send_errors: int
    phantom_count: int
    stall_count: int
    stall_warning_count: int
    stall_critical_count: int
    max_stall_ms: float
    avg_stall_ms: float
    frame_hitch_count: int
    stuck_focus_episodes: int
    unique_focus_ids: int
    stages: list[dict[str, Any]]
    ballast_total_mb: int
    peak_rss_mb: float
    unclassifiable_events: int
    excluded_inputs: int
    timeline_dropped: int
    confidence_score: float
    confidence_critical: bool
    possible_reproduction: bool
    thresholds: dict[str, Any]
    generated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

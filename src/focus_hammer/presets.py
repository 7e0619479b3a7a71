from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable

from .models import STAGE_ORDER, DelayModel, DetectionThresholds, NavigationProfile, StageConfig


@dataclass(frozen=True)
class Preset:
    name: str
    description: str
    stages: list[StageConfig]
    thresholds: DetectionThresholds = field(default_factory=DetectionThresholds)

    @property
    def total_ballast_mb(self) -> int:
        return sum(int(s.memory_delta_mb) for s in self.stages)

    @property
    def total_duration_seconds(self) -> float:
        return sum(float(s.duration_seconds) for s in self.stages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "stages": [s.to_dict() for s in self.stages],
            "thresholds": self.thresholds.to_dict(),
            "total_ballast_mb": self.total_ballast_mb,
            "total_duration_seconds": self.total_duration_seconds,
        }


def _stage(
    index: int,
    duration_seconds: float,
    memory_delta_mb: int,
    profile: NavigationProfile,
    *,
    checkpoint_every: int = 0,
    checkpoint_pause_ms: float = 0.0,
) -> StageConfig:
    return StageConfig(
        name=STAGE_ORDER[index],
        duration_seconds=duration_seconds,
        memory_delta_mb=memory_delta_mb,
        navigation_profile=profile,
        checkpoint_every=checkpoint_every,
        checkpoint_pause_ms=checkpoint_pause_ms,
    )


def _uniform(strategy: str, variant: str, gap_us: int, deltas: tuple[int, int, int, int], durations: tuple[float, float, float, float], *, span: int = 8, seed: int | None = None) -> list[StageConfig]:
    profile = NavigationProfile(strategy=strategy, variant=variant, base_gap_micros=gap_us, span=span, seed=seed)
    return [_stage(i, durations[i], deltas[i], profile) for i in range(4)]


def _baseline() -> Preset:
    return Preset(
        name="baseline",
        description="Slow snake navigation with no ballast; a control run that should never reproduce.",
        stages=_uniform("snake", "horizontal", 500_000, (0, 0, 0, 0), (15.0, 15.0, 15.0, 15.0)),
    )


def _light_exploration() -> Preset:
    return Preset(
        name="lightExploration",
        description="Snake navigation at 200 ms with light ballast.",
        stages=_uniform("snake", "bidirectional", 200_000, (1, 2, 2, 3), (15.0, 20.0, 20.0, 25.0)),
    )


def _medium_stress() -> Preset:
    return Preset(
        name="mediumStress",
        description="Spiral navigation at 100 ms with moderate ballast.",
        stages=_uniform("spiral", "outward", 100_000, (2, 4, 4, 6), (20.0, 30.0, 30.0, 40.0)),
    )


def _edge_testing() -> Preset:
    return Preset(
        name="edgeTesting",
        description="Edge-pinning navigation at 50 ms across all four edges.",
        stages=_uniform("edge_test", "all", 50_000, (2, 4, 4, 6), (20.0, 30.0, 30.0, 40.0)),
    )


def _heavy_reproduction() -> Preset:
    def profile(up_every: int, floor_ms: int, ceiling_ms: int, seed: int) -> NavigationProfile:
        return NavigationProfile(
            strategy="right_heavy",
            variant="mixed",
            base_gap_micros=ceiling_ms * 1000,
            span=up_every,
            seed=seed,
            acceleration=DelayModel(kind="random", floor_micros=floor_ms * 1000, ceiling_micros=ceiling_ms * 1000),
        )

    return Preset(
        name="heavyReproduction",
        description="Four-stage escalation: 5/13/1/17 MB ballast with right-heavy navigation and backlog pauses.",
        stages=[
            _stage(0, 30.0, 5, profile(0, 400, 800, 11), checkpoint_every=5, checkpoint_pause_ms=1200.0),
            _stage(1, 60.0, 13, profile(8, 300, 600, 12), checkpoint_every=10, checkpoint_pause_ms=1000.0),
            _stage(2, 90.0, 1, profile(6, 250, 500, 13), checkpoint_every=8, checkpoint_pause_ms=800.0),
            _stage(3, 60.0, 17, profile(5, 200, 400, 14), checkpoint_every=5, checkpoint_pause_ms=2100.0),
        ],
    )


def _max_stress() -> Preset:
    return Preset(
        name="maxStress",
        description="Random walk at 25 ms escalating into burst tables and an unthrottled collapse sequence.",
        stages=[
            _stage(
                0,
                20.0,
                4,
                NavigationProfile(strategy="random_walk", base_gap_micros=25_000, seed=7),
            ),
            _stage(
                1,
                30.0,
                8,
                NavigationProfile(
                    strategy="right_heavy",
                    variant="escalating",
                    base_gap_micros=45_000,
                    span=12,
                    acceleration=DelayModel(kind="progressive", floor_micros=30_000),
                ),
                checkpoint_every=120,
                checkpoint_pause_ms=200.0,
            ),
            _stage(
                2,
                30.0,
                12,
                NavigationProfile(
                    strategy="burst",
                    base_gap_micros=40_000,
                    acceleration=DelayModel(kind="linear", floor_micros=15_000, step_micros=50),
                ),
                checkpoint_every=100,
                checkpoint_pause_ms=150.0,
            ),
            _stage(
                3,
                30.0,
                16,
                NavigationProfile(
                    strategy="overload",
                    base_gap_micros=35_000,
                    acceleration=DelayModel(kind="linear", floor_micros=0, step_micros=100),
                ),
            ),
        ],
    )


PRESETS: dict[str, Callable[[], Preset]] = {
    "baseline": _baseline,
    "performanceBaseline": _baseline,
    "lightExploration": _light_exploration,
    "mediumStress": _medium_stress,
    "heavyReproduction": _heavy_reproduction,
    "edgeTesting": _edge_testing,
    "maxStress": _max_stress,
}


def preset_names() -> list[str]:
    return sorted(PRESETS)


def get_preset(name: str) -> Preset:
    key = str(name or "").strip()
    if key not in PRESETS:
        raise ValueError(f"unknown preset: {name!r} (known: {', '.join(preset_names())})")
    return PRESETS[key]()


def validate_stages(stages: list[StageConfig]) -> None:
    names = tuple(s.name for s in stages)
    if names != STAGE_ORDER:
        raise ValueError(f"stages must be {list(STAGE_ORDER)} in order, got {list(names)}")
    for stage in stages:
        if stage.memory_delta_mb < 0:
            raise ValueError(f"stage {stage.name} has negative memory delta")
        if stage.duration_seconds < 0:
            raise ValueError(f"stage {stage.name} has negative duration")


def customize(
    preset: Preset,
    *,
    duration_scale: float = 1.0,
    seed: int | None = None,
    threshold_overrides: dict[str, Any] | None = None,
) -> Preset:
    """Apply run-start overrides. The returned preset is what the run uses, unchanged, until teardown."""
    scale = max(0.0, float(duration_scale))
    stages: list[StageConfig] = []
    for stage in preset.stages:
        profile = stage.navigation_profile
        if seed is not None:
            profile = replace(profile, seed=int(seed))
        stages.append(replace(stage, duration_seconds=stage.duration_seconds * scale, navigation_profile=profile))

    thresholds = preset.thresholds
    overrides = dict(threshold_overrides or {})
    if overrides:
        known = set(thresholds.to_dict())
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"unknown threshold override(s): {', '.join(unknown)}")
        current = thresholds.to_dict()
        coerced = {key: type(current[key])(value) for key, value in overrides.items()}
        thresholds = replace(thresholds, **coerced)

    validate_stages(stages)
    return replace(preset, stages=stages, thresholds=thresholds)

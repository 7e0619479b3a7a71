from __future__ import annotations

import random
from typing import Protocol

from .models import DIRECTIONS, NavigationCommand, NavigationProfile


class Strategy(Protocol):
    name: str

    def direction(self, step_index: int, total_steps: int, seed: int) -> str:
        ...


def _segments_at(segments: list[tuple[str, int]], step_index: int) -> str:
    cycle = sum(count for _, count in segments)
    if cycle <= 0:
        return "right"
    pos = step_index % cycle
    for direction, count in segments:
        if pos < count:
            return direction
        pos -= count
    return segments[-1][0]


class SnakeStrategy:
    name = "snake"

    def __init__(self, variant: str = "horizontal", span: int = 8) -> None:
        self.variant = variant or "horizontal"
        self.span = max(1, int(span))

    def _horizontal(self) -> list[tuple[str, int]]:
        return [("right", self.span), ("down", 1), ("left", self.span), ("down", 1)]

    def _vertical(self) -> list[tuple[str, int]]:
        return [("down", self.span), ("right", 1), ("up", self.span), ("right", 1)]

    def direction(self, step_index: int, total_steps: int, seed: int) -> str:
        if self.variant == "vertical":
            return _segments_at(self._vertical(), step_index)
        if self.variant == "bidirectional":
            return _segments_at(self._horizontal() + self._vertical(), step_index)
        return _segments_at(self._horizontal(), step_index)


class SpiralStrategy:
    name = "spiral"

    def __init__(self, variant: str = "outward", span: int = 8) -> None:
        self.variant = variant or "outward"
        self.span = max(1, int(span))

    def direction(self, step_index: int, total_steps: int, seed: int) -> str:
        turns = ("right", "down", "left", "up")
        lengths = [1 + i // 2 for i in range(2 * self.span)]
        if self.variant == "inward":
            lengths.reverse()
        segments = [(turns[i % 4], n) for i, n in enumerate(lengths)]
        return _segments_at(segments, step_index)


class DiagonalStrategy:
    name = "diagonal"

    def __init__(self, variant: str = "primary", span: int = 8) -> None:
        self.variant = variant or "primary"
        self.span = max(1, int(span))

    def _walk(self, first: str, second: str, back_first: str, back_second: str) -> list[tuple[str, int]]:
        out: list[tuple[str, int]] = []
        for _ in range(self.span):
            out.extend([(first, 1), (second, 1)])
        for _ in range(self.span):
            out.extend([(back_first, 1), (back_second, 1)])
        return out

    def direction(self, step_index: int, total_steps: int, seed: int) -> str:
        primary = self._walk("right", "down", "left", "up")
        secondary = self._walk("left", "down", "right", "up")
        if self.variant == "secondary":
            return _segments_at(secondary, step_index)
        if self.variant == "cross":
            return _segments_at(primary + secondary, step_index)
        return _segments_at(primary, step_index)


class CrossStrategy:
    name = "cross"

    def __init__(self, variant: str = "full", span: int = 8) -> None:
        self.variant = variant or "full"
        self.span = max(1, int(span))

    def direction(self, step_index: int, total_steps: int, seed: int) -> str:
        n = self.span
        vertical = [("up", n), ("down", 2 * n), ("up", n)]
        horizontal = [("left", n), ("right", 2 * n), ("left", n)]
        if self.variant == "vertical":
            return _segments_at(vertical, step_index)
        if self.variant == "horizontal":
            return _segments_at(horizontal, step_index)
        return _segments_at(vertical + horizontal, step_index)


class EdgeTestStrategy:
    """Drives focus into an edge, then sweeps along it while still pressing outward."""

    name = "edge_test"

    _EDGES = {
        "top": ("up", "left", "right"),
        "bottom": ("down", "right", "left"),
        "left": ("left", "up", "down"),
        "right": ("right", "down", "up"),
    }

    def __init__(self, variant: str = "all", span: int = 8) -> None:
        self.variant = variant or "all"
        self.span = max(1, int(span))

    def _edge(self, edge: str) -> list[tuple[str, int]]:
        outward, sweep_a, sweep_b = self._EDGES[edge]
        return [(outward, self.span), (sweep_a, self.span), (outward, 1), (sweep_b, self.span), (outward, 1)]

    def direction(self, step_index: int, total_steps: int, seed: int) -> str:
        if self.variant in self._EDGES:
            return _segments_at(self._edge(self.variant), step_index)
        segments: list[tuple[str, int]] = []
        for edge in ("top", "right", "bottom", "left"):
            segments.extend(self._edge(edge))
        return _segments_at(segments, step_index)


class RandomWalkStrategy:
    name = "random_walk"

    def __init__(self, variant: str = "", span: int = 8) -> None:
        self.variant = variant

    def direction(self, step_index: int, total_steps: int, seed: int) -> str:
        return random.Random(f"{seed}:{step_index}").choice(DIRECTIONS)


# Escalating right/up bursts interleaved with short corrections.
BURST_TABLE: tuple[tuple[str, int], ...] = (
    ("right", 25),
    ("down", 6),
    ("right", 28),
    ("up", 22),
    ("right", 32),
    ("left", 8),
    ("right", 35),
    ("up", 28),
    ("right", 30),
    ("down", 10),
    ("right", 38),
    ("up", 35),
    ("right", 25),
    ("up", 40),
    ("left", 12),
    ("right", 20),
    ("up", 45),
    ("right", 15),
)

# Focus-engine collapse sequence: up/right pairs, a long up run, a full
# direction shuffle, then a closing up run.
COLLAPSE_SEQUENCE: tuple[str, ...] = (
    ("up", "right") * 5
    + ("up",) * 7
    + ("down", "left", "up", "right", "up", "left", "down", "right")
    + ("up",) * 5
)


class BurstStrategy:
    name = "burst"

    def __init__(self, variant: str = "", span: int = 8) -> None:
        self.variant = variant

    def direction(self, step_index: int, total_steps: int, seed: int) -> str:
        return _segments_at(list(BURST_TABLE), step_index)


class ThrashStrategy:
    name = "thrash"

    def __init__(self, variant: str = "horizontal", span: int = 1) -> None:
        self.variant = variant or "horizontal"
        self.span = max(1, int(span))

    def direction(self, step_index: int, total_steps: int, seed: int) -> str:
        pair = ("up", "down") if self.variant == "vertical" else ("right", "left")
        return pair[(step_index // self.span) % 2]


class OverloadStrategy:
    name = "overload"

    def __init__(self, variant: str = "", span: int = 8) -> None:
        self.variant = variant

    def direction(self, step_index: int, total_steps: int, seed: int) -> str:
        return COLLAPSE_SEQUENCE[step_index % len(COLLAPSE_SEQUENCE)]


class RightHeavyStrategy:
    """Mostly-right navigation.

    ``escalating`` (default): right bursts of 20 + 2b presses, each followed
    by a 3 + b//3 correction, over ``span`` bursts. ``mixed``: single presses,
    up every ``span``-th step, down every 4th, right otherwise.
    """

    name = "right_heavy"

    def __init__(self, variant: str = "escalating", span: int = 12) -> None:
        self.variant = variant or "escalating"
        self.bursts = max(1, int(span))

    def direction(self, step_index: int, total_steps: int, seed: int) -> str:
        if self.variant == "mixed":
            if self.bursts > 1 and step_index % self.bursts == self.bursts - 1:
                return "up"
            if step_index % 4 == 3:
                return "down"
            return "right"
        segments: list[tuple[str, int]] = []
        for b in range(self.bursts):
            segments.append(("right", 20 + 2 * b))
            segments.append(("down" if b % 3 == 0 else "left", 3 + b // 3))
        return _segments_at(segments, step_index)


STRATEGIES: dict[str, type] = {
    "snake": SnakeStrategy,
    "spiral": SpiralStrategy,
    "diagonal": DiagonalStrategy,
    "cross": CrossStrategy,
    "edge_test": EdgeTestStrategy,
    "random_walk": RandomWalkStrategy,
    "burst": BurstStrategy,
    "thrash": ThrashStrategy,
    "overload": OverloadStrategy,
    "right_heavy": RightHeavyStrategy,
}


def build_strategy(profile: NavigationProfile) -> Strategy:
    key = str(profile.strategy).strip().lower()
    if key not in STRATEGIES:
        raise ValueError(f"unknown navigation strategy: {profile.strategy}")
    return STRATEGIES[key](variant=profile.variant, span=profile.span)


def compute_delay_micros(profile: NavigationProfile, step_index: int, total_steps: int, seed: int) -> int:
    model = profile.acceleration
    base = max(0, int(profile.base_gap_micros))
    floor = max(0, int(model.floor_micros))
    kind = str(model.kind).strip().lower()
    if kind == "linear":
        return max(floor, base - max(0, int(model.step_micros)) * int(step_index))
    if kind == "progressive":
        # Up to 30% faster by the end of the stage.
        progress = min(1.0, step_index / max(1, total_steps))
        return max(floor, int(round(base * (1.0 - 0.30 * progress))))
    if kind == "random":
        ceiling = max(floor, int(model.ceiling_micros) or base)
        return random.Random(f"{seed}:{step_index}:delay").randint(floor, ceiling)
    return base


def next_command(
    profile: NavigationProfile,
    step_index: int,
    total_steps: int,
    seed: int | None = None,
) -> NavigationCommand:
    """Pure mapping from (profile, step) to the next command and its delay."""
    effective_seed = seed if seed is not None else (profile.seed if profile.seed is not None else 0)
    step = max(0, int(step_index))
    total = max(1, int(total_steps))
    strategy = build_strategy(profile)
    return NavigationCommand(
        direction=strategy.direction(step, total, effective_seed),
        delay_micros=compute_delay_micros(profile, step, total, effective_seed),
    )


def plan(profile: NavigationProfile, total_steps: int, seed: int | None = None) -> list[NavigationCommand]:
    return [next_command(profile, i, total_steps, seed) for i in range(max(0, int(total_steps)))]

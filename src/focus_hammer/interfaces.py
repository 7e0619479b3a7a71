from __future__ import annotations

from typing import Protocol

from .input_cache import InputCorrelationCache
from .models import KIND_INPUT
from .timeline import EventTimeline


class CommandSink(Protocol):
    def send(self, direction: str) -> None:
        ...


class FocusSource(Protocol):
    def current_focus_id(self) -> str:
        ...


class HardwareConfirmationSource(Protocol):
    """Platform side: posts ``(id, timestamp)`` whenever a physical press is confirmed."""

    def subscribe(self, bridge: "HardwareConfirmationBridge") -> None:
        ...


class HardwareConfirmationBridge:
    """Feeds hardware confirmations into the cache. Never raises into the caller."""

    def __init__(self, cache: InputCorrelationCache) -> None:
        self.cache = cache
        self.posted = 0

    def post(self, id: str, timestamp: float, *, precise: bool = False) -> bool:
        self.posted += 1
        if precise:
            return self.cache.mark_down_precise(id, timestamp)
        return self.cache.mark_down(id, timestamp)


class DispatchObserver:
    """Records dispatch-level input (what the focus engine actually received) on the timeline."""

    def __init__(self, timeline: EventTimeline) -> None:
        self.timeline = timeline
        self.observed = 0

    def on_dispatch(self, id: str, timestamp: float, **payload: object) -> None:
        self.observed += 1
        self.timeline.record_raw(KIND_INPUT, id, timestamp, dict(payload))

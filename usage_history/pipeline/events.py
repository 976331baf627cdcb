"""Spike detection over a window's normalized series."""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from usage_history.domain.models import MinuteEvents, ReducedSample
from usage_history.domain.resources import Resources

from .scaling import ScaleContext
from .windows import Window, WindowLayout


def detect_events(
    window_start: int,
    normalized: Sequence[Optional[ReducedSample]],
    slots_per_minute: int,
    slope_threshold: float = 0.25,
    level_threshold: float = 0.8,
) -> List[MinuteEvents]:
    """Find per-minute spikes in a normalized series.

    A resource spikes at sample i when it rose by more than ``slope_threshold``
    since the last known value, or crossed ``level_threshold`` upwards. Missing
    samples are skipped without forgetting the last known value, so slopes
    span gaps.
    """
    minute_events: Dict[int, List[str]] = {}
    for key in Resources.all():
        previous: Optional[float] = None
        for i, sample in enumerate(normalized):
            if sample is None:
                continue
            value = sample.get(key)
            if value is None:
                continue
            if previous is not None and (
                value - previous > slope_threshold
                or (previous < level_threshold <= value)
            ):
                keys = minute_events.setdefault(i // slots_per_minute, [])
                if key not in keys:
                    keys.append(key)
            previous = value

    return [
        MinuteEvents(window_start=window_start, minute=minute, resources=keys)
        for minute, keys in sorted(minute_events.items())
    ]


class EventDetector:
    """Normalizes a window with the current scale and detects its spikes."""

    def __init__(
        self,
        scale: ScaleContext,
        layout: WindowLayout,
        slope_threshold: float = 0.25,
        level_threshold: float = 0.8,
    ):
        self.scale = scale
        self.layout = layout
        self.slope_threshold = slope_threshold
        self.level_threshold = level_threshold

    def normalized(self, window: Window) -> List[Optional[ReducedSample]]:
        return [self.scale.normalize_sample(sample) for sample in window.samples()]

    def detect(self, window: Window) -> List[MinuteEvents]:
        return detect_events(
            window.start,
            self.normalized(window),
            self.layout.slots_per_minute,
            slope_threshold=self.slope_threshold,
            level_threshold=self.level_threshold,
        )

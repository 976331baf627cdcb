"""Dynamic normalization ceilings for unbounded resources.

Ceilings start at a conservative floor so one early outlier cannot flatten
the graphs, and only ever grow. Growth rounds up to the next value whose
digits are all zero except the leading one (3200 -> 4000, 15 -> 20).
"""

from __future__ import annotations

import math
import threading
from typing import Dict, Mapping, Optional

from usage_history.core.config import Settings, settings
from usage_history.core.metrics import SCALE_CEILING
from usage_history.domain.models import ReducedSample
from usage_history.domain.resources import Resources


def scale_for_value(value: float) -> float:
    """Round ``value`` up to its leading digit's next step."""
    if value <= 0:
        raise ValueError(f"scale needs a positive value, got {value}")
    magnitude = 10 ** math.floor(math.log10(value))
    # round off float noise such as 0.07 / 0.01 == 7.000000000000001
    return math.ceil(round(value / magnitude, 9)) * magnitude


def _clip(value: float) -> float:
    return min(max(value, 0.0), 1.0)


class ScaleContext:
    """Process-wide normalization state, updated via atomic max."""

    def __init__(self, floors: Mapping[str, float]):
        for key, floor in floors.items():
            if floor <= 0:
                raise ValueError(f"scale floor for {key} must be positive")
        self._ceilings: Dict[str, float] = dict(floors)
        self._lock = threading.Lock()
        for key, ceiling in self._ceilings.items():
            SCALE_CEILING.labels(resource=key).set(ceiling)

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "ScaleContext":
        return cls(
            {
                Resources.SAT_CPU: config.history_scale_sat_cpu,
                Resources.USE_DISKS: config.history_scale_use_disks,
                Resources.USE_NETWORK: config.history_scale_use_network,
            }
        )

    def ceiling(self, key: str) -> float:
        return self._ceilings[key]

    def observe(self, key: str, value: Optional[float]) -> float:
        """Raise the ceiling for ``key`` to cover ``value``; return the ceiling."""
        if value is None or key not in self._ceilings:
            return self._ceilings.get(key, 1.0)
        with self._lock:
            current = self._ceilings[key]
            if value > current:
                current = max(current, scale_for_value(value))
                self._ceilings[key] = current
                SCALE_CEILING.labels(resource=key).set(current)
            return current

    def normalize(self, key: str, value: Optional[float]) -> Optional[float]:
        """Map a domain value to [0, 1]; bounded resources are only clipped."""
        if value is None:
            return None
        ceiling = self._ceilings.get(key)
        if ceiling is None:
            return _clip(value)
        return _clip(min(value, ceiling) / ceiling)

    def normalize_sample(
        self, sample: Optional[ReducedSample]
    ) -> Optional[ReducedSample]:
        if sample is None:
            return None
        return {key: self.normalize(key, value) for key, value in sample.items()}

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._ceilings)

"""Reduce a decoded tick to the six dashboard resources."""

from __future__ import annotations

from typing import Optional, Sequence

from usage_history.core.config import Settings, settings
from usage_history.domain.models import DecodedTick, MetricSpec, ReducedSample
from usage_history.domain.resources import Resources

from .scaling import ScaleContext

HISTORY_METRICS: tuple[MetricSpec, ...] = (
    # CPU utilization, ms/s summed over all CPUs
    MetricSpec(name="kernel.all.cpu.nice", derive="rate"),
    MetricSpec(name="kernel.all.cpu.user", derive="rate"),
    MetricSpec(name="kernel.all.cpu.sys", derive="rate"),
    # CPU saturation: instances are the 15, 1 and 5 minute averages
    MetricSpec(name="kernel.all.load", instances=3),
    # memory utilization, kB; mem.util.used includes cache so use "available"
    MetricSpec(name="mem.physmem"),
    MetricSpec(name="mem.util.available"),
    # memory saturation, pages/s
    MetricSpec(name="swap.pagesout", derive="rate"),
    # disk utilization, kB/s
    MetricSpec(name="disk.all.total_bytes", derive="rate"),
    # network utilization, B/s per interface
    MetricSpec(
        name="network.interface.total.bytes", derive="rate", omit_instances=("lo",)
    ),
)

CPU_NICE, CPU_USER, CPU_SYS = 0, 1, 2
LOAD_INDEX = 3
LOAD_ONE_MINUTE_INSTANCE = 1
MEM_TOTAL, MEM_AVAILABLE = 4, 5
SWAP_OUT_INDEX = 6
DISK_INDEX = 7
NET_TOTAL_INDEX = 8


def _scalar(value) -> Optional[float]:
    return value if isinstance(value, float) else None


class MetricReducer:
    """Maps decoded ticks of HISTORY_METRICS to reduced samples.

    Every reduced sample is also fed to the scale context so the ceilings of
    unbounded resources track what has been seen.
    """

    def __init__(
        self,
        scale: ScaleContext,
        cpu_count: Optional[int] = None,
        swap_idle_threshold: float = 1.0,
        swap_heavy_threshold: float = 1000.0,
    ):
        self.scale = scale
        self.cpu_count = cpu_count
        self.swap_idle_threshold = swap_idle_threshold
        self.swap_heavy_threshold = swap_heavy_threshold

    @classmethod
    def from_settings(
        cls, scale: ScaleContext, config: Settings = settings
    ) -> "MetricReducer":
        return cls(
            scale,
            cpu_count=config.history_cpu_count,
            swap_idle_threshold=config.history_swap_idle_threshold,
            swap_heavy_threshold=config.history_swap_heavy_threshold,
        )

    @property
    def metrics(self) -> Sequence[MetricSpec]:
        return HISTORY_METRICS

    def reduce(self, tick: DecodedTick) -> Optional[ReducedSample]:
        """Derive all resources; None when no resource has data on this tick."""
        sample: ReducedSample = {
            Resources.USE_CPU: self.use_cpu(tick),
            Resources.SAT_CPU: self.sat_cpu(tick),
            Resources.USE_MEMORY: self.use_memory(tick),
            Resources.SAT_MEMORY: self.sat_memory(tick),
            Resources.USE_DISKS: _scalar(tick[DISK_INDEX]),
            Resources.USE_NETWORK: self.use_network(tick),
        }
        if all(value is None for value in sample.values()):
            return None
        for key in Resources.unbounded():
            self.scale.observe(key, sample[key])
        return sample

    def use_cpu(self, tick: DecodedTick) -> Optional[float]:
        parts = [_scalar(tick[i]) for i in (CPU_NICE, CPU_USER, CPU_SYS)]
        if any(p is None for p in parts):
            return None
        value = sum(parts) / 1000  # type: ignore[arg-type]
        if self.cpu_count:
            value /= self.cpu_count
        return value

    def sat_cpu(self, tick: DecodedTick) -> Optional[float]:
        load = tick[LOAD_INDEX]
        if not isinstance(load, list) or len(load) <= LOAD_ONE_MINUTE_INSTANCE:
            return None
        return load[LOAD_ONE_MINUTE_INSTANCE]

    def use_memory(self, tick: DecodedTick) -> Optional[float]:
        total = _scalar(tick[MEM_TOTAL])
        available = _scalar(tick[MEM_AVAILABLE])
        if total is None or available is None or total <= 0:
            return None
        return 1 - (available / total)

    def sat_memory(self, tick: DecodedTick) -> Optional[float]:
        # mostly 0; categorize into nothing, a little and a lot
        swap_out = _scalar(tick[SWAP_OUT_INDEX])
        if swap_out is None:
            return None
        if swap_out >= self.swap_heavy_threshold:
            return 1.0
        if swap_out > self.swap_idle_threshold:
            return 0.3
        return 0.0

    def use_network(self, tick: DecodedTick) -> Optional[float]:
        interfaces = tick[NET_TOTAL_INDEX]
        if not isinstance(interfaces, list):
            return None
        known = [rate for rate in interfaces if rate is not None]
        if not known:
            return None
        return sum(known)

"""Local host sampler recording psutil counters as history ticks.

Produces ticks in HISTORY_METRICS order and units: CPU in ms/s summed over
all CPUs, load averages as (15, 1, 5) minute instances, memory in kB, swap
out in pages/s, disk throughput in kB/s and per-interface network throughput
in B/s. Rates need two readings, so the first tick reports them unavailable.
"""

from __future__ import annotations

import asyncio
import importlib.util
import mmap
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from usage_history.core.logger import get_logger
from usage_history.domain.errors import MissingDependency
from usage_history.domain.models import SubscriptionSpec
from usage_history.pipeline.reducer import HISTORY_METRICS, NET_TOTAL_INDEX

from .memory import MemorySampleSource, MemorySubscription

logger = get_logger("usage_history.source.psutil")

Reading = Union[float, bool]


@dataclass
class _Counters:
    at: float  # monotonic seconds
    cpu_nice: float
    cpu_user: float
    cpu_sys: float
    swap_out_pages: Optional[float]
    disk_kb: Optional[float]
    net_bytes: Dict[str, float] = field(default_factory=dict)


def _rate(current: Optional[float], previous: Optional[float], seconds: float) -> Reading:
    if current is None or previous is None or seconds <= 0 or current < previous:
        return False
    return (current - previous) / seconds


class PsutilSampler:
    """Turns cumulative psutil counters into raw ticks."""

    def __init__(self, psutil_module: Any, page_size: int = mmap.PAGESIZE):
        self._psutil = psutil_module
        self.page_size = page_size
        self._previous: Optional[_Counters] = None
        self._interfaces: Optional[List[str]] = None
        self._omit = set(HISTORY_METRICS[NET_TOTAL_INDEX].omit_instances)

    @property
    def interfaces(self) -> List[str]:
        return list(self._interfaces or [])

    def sample(self, now: Optional[float] = None) -> list:
        ps = self._psutil
        counters = self._read(time.monotonic() if now is None else now)
        previous, self._previous = self._previous, counters
        seconds = counters.at - previous.at if previous is not None else 0.0

        def rate(name: str, scale: float = 1.0) -> Reading:
            if previous is None:
                return False
            value = _rate(getattr(counters, name), getattr(previous, name), seconds)
            return value if value is False else value * scale

        load = ps.getloadavg()  # 1, 5, 15 minutes
        memory = ps.virtual_memory()

        if self._interfaces is None:
            self._interfaces = sorted(
                nic for nic in counters.net_bytes if nic not in self._omit
            )
        network: List[Reading] = []
        for nic in self._interfaces:
            if previous is None:
                network.append(False)
            else:
                network.append(
                    _rate(
                        counters.net_bytes.get(nic),
                        previous.net_bytes.get(nic),
                        seconds,
                    )
                )

        return [
            rate("cpu_nice", 1000),
            rate("cpu_user", 1000),
            rate("cpu_sys", 1000),
            [float(load[2]), float(load[0]), float(load[1])],
            memory.total // 1024,
            memory.available // 1024,
            rate("swap_out_pages"),
            rate("disk_kb"),
            network,
        ]

    def _read(self, now: float) -> _Counters:
        ps = self._psutil
        cpu = ps.cpu_times()
        swap = ps.swap_memory()
        disk = ps.disk_io_counters()
        nics = ps.net_io_counters(pernic=True) or {}
        return _Counters(
            at=now,
            cpu_nice=float(getattr(cpu, "nice", 0.0)),
            cpu_user=float(cpu.user),
            cpu_sys=float(cpu.system),
            swap_out_pages=float(swap.sout) / self.page_size,
            disk_kb=(
                None
                if disk is None
                else float(disk.read_bytes + disk.write_bytes) / 1024
            ),
            net_bytes={
                nic: float(io.bytes_sent + io.bytes_recv) for nic, io in nics.items()
            },
        )


class PsutilSampleSource:
    """Samples the local host every interval into an in-memory recording."""

    def __init__(
        self,
        interval_ms: int,
        batch_size: int = 60,
        capacity: Optional[int] = None,
    ):
        self.interval_ms = interval_ms
        self.recording = MemorySampleSource(
            interval_ms, batch_size=batch_size, capacity=capacity
        )
        self._task: Optional[asyncio.Task] = None

    @property
    def available(self) -> bool:
        return importlib.util.find_spec("psutil") is not None

    def open(self, spec: SubscriptionSpec) -> MemorySubscription:
        if not self.available:
            raise MissingDependency("psutil is not installed")
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self.recording.open(spec)

    async def close(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.debug("host_sampler_cancelled")
        self._task = None

    async def _run(self) -> None:
        import psutil

        sampler = PsutilSampler(psutil)
        interval_s = self.interval_ms / 1000
        logger.info("host_sampler_started", extra={"interval_ms": self.interval_ms})
        while True:
            timestamp = int(time.time() * 1000) // self.interval_ms * self.interval_ms
            last = self.recording.last_timestamp
            try:
                tick = sampler.sample()
            except Exception as e:  # noqa: BLE001
                # leaves a gap in the recording; subscribers get a new meta
                logger.warning("host_sample_failed", extra={"error": str(e)})
            else:
                if last is None or timestamp > last:
                    self.recording.record(timestamp, tick)
            await asyncio.sleep(interval_s - (time.time() % interval_s))

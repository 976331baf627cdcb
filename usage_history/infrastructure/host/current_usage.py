"""Live snapshot of the local host for the current usage panel.

Unlike the history ticks this reads split counters (disk read and written,
per-interface received and sent, every interface including loopback) and
file system usage per mount, in bytes and B/s.
"""

from __future__ import annotations

import importlib.util
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from usage_history.core.config import Settings, settings
from usage_history.core.logger import get_logger
from usage_history.domain.errors import MissingDependency
from usage_history.domain.models import CurrentUsage, InterfaceIO, MountUsage

logger = get_logger("usage_history.current_usage")

# pseudo file systems that only mirror memory
EXCLUDED_FSTYPES = frozenset({"tmpfs", "devtmpfs"})


@dataclass
class _Reading:
    at: float
    cpu_busy: float  # seconds, nice + user + system over all CPUs
    disk_read: Optional[float]
    disk_written: Optional[float]
    nics: Dict[str, Tuple[float, float]] = field(default_factory=dict)


def _per_second(
    current: Optional[float], previous: Optional[float], seconds: float
) -> Optional[float]:
    if current is None or previous is None or seconds <= 0 or current < previous:
        return None
    return (current - previous) / seconds


class CurrentUsageReader:
    def __init__(
        self,
        psutil_module: Any,
        mounts_refresh_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self._psutil = psutil_module
        self.mounts_refresh_seconds = mounts_refresh_seconds
        self._clock = clock
        self._wall_clock = wall_clock
        self._previous: Optional[_Reading] = None
        self._mounts: List[MountUsage] = []
        self._mounts_at: Optional[float] = None

    @classmethod
    def from_installed(cls, config: Settings = settings) -> "CurrentUsageReader":
        if importlib.util.find_spec("psutil") is None:
            raise MissingDependency("psutil is not installed")
        import psutil

        return cls(
            psutil,
            mounts_refresh_seconds=config.history_current_mounts_refresh_seconds,
        )

    def read(self) -> CurrentUsage:
        """Take one reading; rates cover the time since the previous call."""
        ps = self._psutil
        reading = self._read_counters(self._clock())
        previous, self._previous = self._previous, reading
        seconds = reading.at - previous.at if previous is not None else 0.0

        cpu_count = ps.cpu_count() or 1
        cpu_used = None
        disks_read = disks_written = None
        if previous is not None:
            busy = _per_second(reading.cpu_busy, previous.cpu_busy, seconds)
            if busy is not None:
                cpu_used = round(min(busy / cpu_count, 1.0) * 100)
            disks_read = _per_second(reading.disk_read, previous.disk_read, seconds)
            disks_written = _per_second(
                reading.disk_written, previous.disk_written, seconds
            )

        interfaces = []
        for name in sorted(reading.nics):
            rx = tx = None
            if previous is not None and name in previous.nics:
                recv, sent = reading.nics[name]
                prev_recv, prev_sent = previous.nics[name]
                rx = _per_second(recv, prev_recv, seconds)
                tx = _per_second(sent, prev_sent, seconds)
            interfaces.append(InterfaceIO(name=name, rx=rx, tx=tx))

        memory = ps.virtual_memory()
        return CurrentUsage(
            timestamp=int(self._wall_clock() * 1000),
            cpu_count=cpu_count,
            cpu_used=cpu_used,
            memory_total=memory.total,
            memory_used=memory.total - memory.available,
            memory_available=memory.available,
            disks_read=disks_read,
            disks_written=disks_written,
            interfaces=interfaces,
            mounts=self.mounts(reading.at),
        )

    def mounts(self, now: float) -> List[MountUsage]:
        """File system usage, re-read at most every ``mounts_refresh_seconds``."""
        if (
            self._mounts_at is not None
            and now - self._mounts_at < self.mounts_refresh_seconds
        ):
            return list(self._mounts)
        ps = self._psutil
        mounts = []
        for partition in ps.disk_partitions(all=False):
            if partition.fstype in EXCLUDED_FSTYPES:
                continue
            try:
                usage = ps.disk_usage(partition.mountpoint)
            except OSError as e:
                # unreadable file systems are skipped, the others still count
                logger.debug(
                    "mount_usage_unreadable",
                    extra={"target": partition.mountpoint, "error": str(e)},
                )
                continue
            mounts.append(
                MountUsage(
                    target=partition.mountpoint,
                    size=usage.total,
                    avail=usage.free,
                    use=usage.percent,
                )
            )
        self._mounts, self._mounts_at = mounts, now
        return list(mounts)

    def _read_counters(self, now: float) -> _Reading:
        ps = self._psutil
        cpu = ps.cpu_times()
        disk = ps.disk_io_counters()
        nics = ps.net_io_counters(pernic=True) or {}
        return _Reading(
            at=now,
            cpu_busy=float(getattr(cpu, "nice", 0.0)) + cpu.user + cpu.system,
            disk_read=None if disk is None else float(disk.read_bytes),
            disk_written=None if disk is None else float(disk.write_bytes),
            nics={
                name: (float(io.bytes_recv), float(io.bytes_sent))
                for name, io in nics.items()
            },
        )

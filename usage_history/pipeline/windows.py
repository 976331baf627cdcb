"""Fixed-duration windows of tick slots and the shared window store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from usage_history.core.config import MSEC_PER_MINUTE, Settings, settings
from usage_history.core.logger import get_logger
from usage_history.core.metrics import WINDOWS_CREATED, WINDOWS_EVICTED
from usage_history.domain.models import ReducedSample

logger = get_logger("usage_history.windows")


class _Unknown:
    """Slot never written. Distinct from None, which is a written no-data slot."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "UNKNOWN"

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class WindowLayout:
    tick_interval_ms: int
    window_duration_ms: int

    def __post_init__(self):
        if self.tick_interval_ms <= 0 or self.window_duration_ms <= 0:
            raise ValueError("tick interval and window duration must be positive")
        if MSEC_PER_MINUTE % self.tick_interval_ms:
            raise ValueError("tick interval must divide one minute evenly")
        if self.window_duration_ms % MSEC_PER_MINUTE:
            raise ValueError("window duration must be a whole number of minutes")

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "WindowLayout":
        return cls(config.history_tick_interval_ms, config.history_window_duration_ms)

    @property
    def slots_per_window(self) -> int:
        return self.window_duration_ms // self.tick_interval_ms

    @property
    def slots_per_minute(self) -> int:
        return MSEC_PER_MINUTE // self.tick_interval_ms

    @property
    def minutes_per_window(self) -> int:
        return self.window_duration_ms // MSEC_PER_MINUTE

    def window_start(self, timestamp: int) -> int:
        return (timestamp // self.window_duration_ms) * self.window_duration_ms

    def slot_index(self, timestamp: int) -> int:
        return (timestamp - self.window_start(timestamp)) // self.tick_interval_ms

    def slot_timestamp(self, window_start: int, index: int) -> int:
        return window_start + index * self.tick_interval_ms


class Window:
    """One window worth of slots; each slot goes from UNKNOWN to a value once."""

    __slots__ = ("start", "slots")

    def __init__(self, start: int, size: int):
        self.start = start
        self.slots: List[object] = [UNKNOWN] * size

    def __len__(self) -> int:
        return len(self.slots)

    def is_known(self, index: int) -> bool:
        return self.slots[index] is not UNKNOWN

    def write(self, index: int, sample: Optional[ReducedSample]) -> bool:
        """First writer wins: populated slots (including no-data) are never replaced."""
        if self.slots[index] is not UNKNOWN:
            return False
        self.slots[index] = sample
        return True

    def get(self, index: int) -> Optional[ReducedSample]:
        value = self.slots[index]
        return None if value is UNKNOWN else value  # type: ignore[return-value]

    def samples(self) -> List[Optional[ReducedSample]]:
        return [self.get(i) for i in range(len(self.slots))]

    def populated(self) -> int:
        return sum(1 for slot in self.slots if slot is not UNKNOWN)


class WindowStore:
    """All windows of the process keyed by start timestamp.

    Shared by every fetch session; retention drops the oldest windows.
    """

    def __init__(self, layout: WindowLayout, retention: Optional[int] = None):
        if retention is not None and retention <= 0:
            raise ValueError("retention must be positive")
        self.layout = layout
        self.retention = retention
        self._windows: Dict[int, Window] = {}

    def __len__(self) -> int:
        return len(self._windows)

    def __contains__(self, start: int) -> bool:
        return start in self._windows

    def __iter__(self) -> Iterator[Window]:
        return iter(self.windows())

    def get(self, start: int) -> Optional[Window]:
        return self._windows.get(start)

    @property
    def full(self) -> bool:
        return self.retention is not None and len(self._windows) >= self.retention

    def accepts(self, start: int) -> bool:
        """False when a window at ``start`` would be evicted as soon as created."""
        if not self.full or start in self._windows:
            return True
        return start > min(self._windows)

    def ensure(self, start: int) -> Optional[Window]:
        """Return the window at ``start``, creating it on first use.

        None when the store is full and ``start`` is older than every retained
        window; retention keeps the newest windows.
        """
        if start != self.layout.window_start(start):
            raise ValueError(f"{start} is not aligned to the window duration")
        window = self._windows.get(start)
        if window is None:
            if not self.accepts(start):
                return None
            window = Window(start, self.layout.slots_per_window)
            self._windows[start] = window
            WINDOWS_CREATED.inc()
            self._evict()
        return window

    def starts(self) -> List[int]:
        """Window start timestamps, newest first."""
        return sorted(self._windows, reverse=True)

    def windows(self) -> List[Window]:
        return [self._windows[start] for start in self.starts()]

    def lookup(
        self, window_start: int, minute: int, subslot: int
    ) -> Optional[ReducedSample]:
        """Sample at ``subslot`` of ``minute`` within a window, None if unknown."""
        layout = self.layout
        if not 0 <= minute < layout.minutes_per_window:
            raise ValueError(f"minute {minute} out of range")
        if not 0 <= subslot < layout.slots_per_minute:
            raise ValueError(f"subslot {subslot} out of range")
        window = self._windows.get(window_start)
        if window is None:
            return None
        return window.get(minute * layout.slots_per_minute + subslot)

    def sample_at(self, timestamp: int) -> Optional[ReducedSample]:
        window = self._windows.get(self.layout.window_start(timestamp))
        if window is None:
            return None
        return window.get(self.layout.slot_index(timestamp))

    def _evict(self) -> None:
        if self.retention is None:
            return
        while len(self._windows) > self.retention:
            oldest = min(self._windows)
            del self._windows[oldest]
            WINDOWS_EVICTED.inc()
            logger.debug("window_evicted", extra={"window_start": oldest})

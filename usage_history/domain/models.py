from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .resources import Resources

# One raw entry per metric: a scalar reading, a list of per-instance entries,
# None (omitted: unchanged since the last tick) or False (explicitly
# unavailable).
RawEntry = Union[None, bool, int, float, List[Union[None, bool, int, float]]]
RawTick = Sequence[RawEntry]
Batch = List[RawTick]

# Decoded per-metric value: None until the first reading, a scalar, or a list
# of per-instance values (None for instances never reported).
DecodedValue = Union[None, float, List[Optional[float]]]
DecodedTick = Tuple[DecodedValue, ...]

# resource key -> domain value, None meaning "no data for this resource"
ReducedSample = Dict[str, Optional[float]]


class FetchMode(str, Enum):
    """How a subscription reads the feed."""

    LIVE = "live"  # unbounded, keeps streaming until closed
    ARCHIVE = "archive"  # historical read, ends at the limit or the end of data


class MetricSpec(BaseModel):
    """One subscribed metric; immutable for the lifetime of a subscription."""

    model_config = ConfigDict(frozen=True)

    name: str
    derive: Optional[str] = None  # "rate" for per-second derivatives
    omit_instances: Tuple[str, ...] = ()
    instances: Optional[int] = None  # expected instance count, if fixed


class SubscriptionSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    interval_ms: int
    mode: FetchMode
    start_timestamp: Optional[int] = None
    limit: Optional[int] = None
    metrics: Tuple[MetricSpec, ...]


class Meta(BaseModel):
    """Positions the following batches: the first tick is at ``timestamp`` (ms)."""

    timestamp: int


class CloseResult(BaseModel):
    """How a subscription ended. No problem means a clean end or explicit close."""

    problem: Optional[str] = None
    message: Optional[str] = None


class MinuteEvents(BaseModel):
    """Spike events of all resources within one minute of a window."""

    window_start: int
    minute: int
    resources: List[str]

    @computed_field  # type: ignore[misc]
    @property
    def timestamp(self) -> int:
        return self.window_start + self.minute * 60_000

    @computed_field  # type: ignore[misc]
    @property
    def descriptions(self) -> List[str]:
        return [Resources.event_description(key) for key in self.resources]


class WindowView(BaseModel):
    """Renderer payload for one window; slots ascend in time."""

    start_timestamp: int
    slots: List[Optional[ReducedSample]]
    events: List[MinuteEvents] = Field(default_factory=list)


class SampleView(BaseModel):
    window_start: int
    minute: int
    subslot: int
    timestamp: int
    sample: Optional[ReducedSample]


class HistoryStatus(BaseModel):
    loading: bool
    metrics_available: bool
    capability_missing: bool
    retention_reached: bool = False
    error: Optional[str] = None
    oldest_timestamp: Optional[int] = None
    most_recent: Optional[int] = None
    windows: int = 0
    scale: Dict[str, float] = Field(default_factory=dict)
    # Set when the oldest requested time precedes the oldest window we got.
    no_data_from: Optional[int] = None
    no_data_until: Optional[int] = None


class InterfaceIO(BaseModel):
    name: str
    rx: Optional[float] = None  # B/s received
    tx: Optional[float] = None  # B/s sent


class MountUsage(BaseModel):
    target: str
    size: int  # bytes
    avail: int  # bytes
    use: float  # percent


class CurrentUsage(BaseModel):
    """Live host snapshot; rates are None until a second reading exists."""

    timestamp: int
    cpu_count: int
    cpu_used: Optional[float] = None  # percent of all CPUs
    memory_total: int  # bytes
    memory_used: int
    memory_available: int
    disks_read: Optional[float] = None  # B/s
    disks_written: Optional[float] = None  # B/s
    interfaces: List[InterfaceIO] = Field(default_factory=list)
    mounts: List[MountUsage] = Field(default_factory=list)

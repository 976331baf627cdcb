"""In-process sample source replaying recorded ticks.

Ticks are recorded in absolute form and compressed per subscription on
delivery: an entry equal to the one delivered on the previous tick is
omitted, and trailing omitted entries are dropped. The first tick after every
Meta is sent in full. Recording gaps (missing tick timestamps) produce a new
Meta, like a reconnect.
"""

from __future__ import annotations

import asyncio
import bisect
from typing import AsyncIterator, List, Optional, Set

from usage_history.core.logger import get_logger
from usage_history.domain.models import (
    Batch,
    CloseResult,
    FetchMode,
    Meta,
    RawEntry,
    RawTick,
    SubscriptionSpec,
)

from .base import Message

logger = get_logger("usage_history.source.memory")


def _same(a: RawEntry, b: RawEntry) -> bool:
    # type check keeps 0 and False apart
    return type(a) is type(b) and a == b


def compress(previous: Optional[RawTick], tick: RawTick) -> list:
    """Encode ``tick`` relative to ``previous`` (None: send everything)."""
    if previous is None:
        return [list(e) if isinstance(e, list) else e for e in tick]
    out: list = []
    for index, entry in enumerate(tick):
        before = previous[index] if index < len(previous) else None
        if isinstance(entry, list):
            if not isinstance(before, list):
                out.append(list(entry))
                continue
            instances = [
                None if k < len(before) and _same(before[k], value) else value
                for k, value in enumerate(entry)
            ]
            while instances and instances[-1] is None:
                instances.pop()
            out.append(instances or None)
        else:
            out.append(None if _same(before, entry) else entry)
    while out and out[-1] is None:
        out.pop()
    return out


class MemorySampleSource:
    """Recording of absolute ticks served to archive and live subscriptions."""

    available = True

    def __init__(
        self, interval_ms: int, batch_size: int = 60, capacity: Optional[int] = None
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.interval_ms = interval_ms
        self.batch_size = batch_size
        self.capacity = capacity
        self._timestamps: List[int] = []
        self._ticks: List[list] = []
        self._subscriptions: Set["MemorySubscription"] = set()
        self._fail_next: Optional[CloseResult] = None

    def __len__(self) -> int:
        return len(self._timestamps)

    @property
    def last_timestamp(self) -> Optional[int]:
        return self._timestamps[-1] if self._timestamps else None

    def record(self, timestamp: int, tick: RawTick) -> None:
        if self._timestamps and timestamp <= self._timestamps[-1]:
            raise ValueError(
                f"timestamp {timestamp} is not after {self._timestamps[-1]}"
            )
        if timestamp % self.interval_ms:
            raise ValueError(f"timestamp {timestamp} is not on a tick boundary")
        self._timestamps.append(timestamp)
        self._ticks.append([list(e) if isinstance(e, list) else e for e in tick])
        if self.capacity is not None and len(self._timestamps) > self.capacity:
            excess = len(self._timestamps) - self.capacity
            del self._timestamps[:excess]
            del self._ticks[:excess]
        for subscription in list(self._subscriptions):
            subscription.notify()

    def extend(self, start: int, ticks: List[RawTick]) -> None:
        """Record consecutive ticks starting at ``start``."""
        for i, tick in enumerate(ticks):
            self.record(start + i * self.interval_ms, tick)

    def fail_next(self, problem: str, message: Optional[str] = None) -> None:
        """Make the next opened subscription end immediately with ``problem``."""
        self._fail_next = CloseResult(problem=problem, message=message)

    def open(self, spec: SubscriptionSpec) -> "MemorySubscription":
        failure, self._fail_next = self._fail_next, None
        subscription = MemorySubscription(self, spec, failure)
        self._subscriptions.add(subscription)
        return subscription

    def _discard(self, subscription: "MemorySubscription") -> None:
        self._subscriptions.discard(subscription)

    def _index_from(self, timestamp: int) -> int:
        return bisect.bisect_left(self._timestamps, timestamp)


class MemorySubscription:
    def __init__(
        self,
        source: MemorySampleSource,
        spec: SubscriptionSpec,
        failure: Optional[CloseResult] = None,
    ):
        self.spec = spec
        self.result: Optional[CloseResult] = None
        self._source = source
        self._failure = failure
        self._closed = False
        self._wakeup = asyncio.Event()
        if spec.start_timestamp is not None:
            self._next_timestamp = spec.start_timestamp
        elif spec.mode is FetchMode.LIVE and source.last_timestamp is not None:
            self._next_timestamp = source.last_timestamp + 1
        else:
            self._next_timestamp = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def notify(self) -> None:
        self._wakeup.set()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._wakeup.set()
        self._source._discard(self)

    def __aiter__(self) -> AsyncIterator[Message]:
        return self._messages()

    async def _messages(self) -> AsyncIterator[Message]:
        if self._failure is not None:
            self.result = self._failure
            self._closed = True
            self._source._discard(self)
            return
        source = self._source
        limit = self.spec.limit
        delivered = 0
        expected: Optional[int] = None
        previous: Optional[list] = None
        while not self._closed:
            if limit is not None and delivered >= limit:
                break
            position = source._index_from(self._next_timestamp)
            if position >= len(source):
                if self.spec.mode is FetchMode.ARCHIVE:
                    break
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            timestamp = source._timestamps[position]
            if timestamp != expected:
                previous = None
                yield Meta(timestamp=timestamp)
                if self._closed:
                    break

            batch: Batch = []
            expected = timestamp
            while (
                position < len(source)
                and len(batch) < source.batch_size
                and (limit is None or delivered < limit)
                and source._timestamps[position] == expected
            ):
                tick = source._ticks[position]
                batch.append(compress(previous, tick))
                previous = tick
                position += 1
                delivered += 1
                expected += source.interval_ms
            self._next_timestamp = expected
            yield batch

        if self.result is None:
            self.result = CloseResult()
        self._closed = True
        source._discard(self)
        logger.debug(
            "memory_subscription_finished",
            extra={"mode": self.spec.mode.value, "delivered": delivered},
        )

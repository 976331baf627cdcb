"""Route decoded, reduced ticks into window slots.

Each subscription is consumed through its own FetchSession, which carries the
write cursor and decoder state. All sessions share one WindowStore, and slots
are first-writer-wins, so overlapping backfill and live-tail fetches cannot
overwrite each other's data.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Set

from usage_history.core.config import Settings, settings
from usage_history.core.logger import get_logger
from usage_history.core.metrics import (
    GAP_SLOTS,
    MALFORMED_MESSAGES,
    SLOT_WRITES_REJECTED,
    SLOTS_WRITTEN,
    TICKS_PROCESSED,
)
from usage_history.domain.errors import MalformedMessage
from usage_history.domain.models import (
    Batch,
    CloseResult,
    FetchMode,
    Meta,
    ReducedSample,
)

from .decoder import SampleDecoder
from .reducer import MetricReducer
from .windows import Window, WindowStore

logger = get_logger("usage_history.aggregator")

_fetch_ids = itertools.count(1)


class GapPolicy(str, Enum):
    """What to write into slots the source skipped (agent not running)."""

    LEAVE = "leave"  # keep unknown; a later fetch may still fill them
    NULL = "null"  # explicit no-data
    HOLD = "hold"  # repeat the last sample over short gaps, leave long ones


@dataclass
class FetchSession:
    mode: FetchMode
    decoder: SampleDecoder
    fetch_id: int = field(default_factory=lambda: next(_fetch_ids))
    current_window_start: Optional[int] = None
    slot_index: int = 0
    seen_windows: Set[int] = field(default_factory=set)
    last_sample: Optional[ReducedSample] = None
    ticks: int = 0
    written: int = 0
    closed: bool = False
    problem: Optional[str] = None

    @property
    def positioned(self) -> bool:
        return self.current_window_start is not None


class WindowAggregator:
    def __init__(
        self,
        store: WindowStore,
        reducer: MetricReducer,
        gap_policy: GapPolicy = GapPolicy.LEAVE,
        gap_hold_max_ticks: int = 12,
    ):
        self.store = store
        self.layout = store.layout
        self.reducer = reducer
        self.gap_policy = GapPolicy(gap_policy)
        self.gap_hold_max_ticks = gap_hold_max_ticks

    @classmethod
    def from_settings(
        cls, store: WindowStore, reducer: MetricReducer, config: Settings = settings
    ) -> "WindowAggregator":
        return cls(
            store,
            reducer,
            gap_policy=GapPolicy(config.history_gap_policy),
            gap_hold_max_ticks=config.history_gap_hold_max_ticks,
        )

    def open_session(self, mode: FetchMode) -> FetchSession:
        return FetchSession(mode=mode, decoder=SampleDecoder(self.reducer.metrics))

    def cursor(self, session: FetchSession) -> Optional[int]:
        """Timestamp of the next slot the session writes, None before any meta."""
        if session.current_window_start is None:
            return None
        return self.layout.slot_timestamp(
            session.current_window_start, session.slot_index
        )

    def handle_meta(self, session: FetchSession, meta: Meta) -> None:
        if session.closed:
            return
        timestamp = meta.timestamp
        cursor = self.cursor(session)
        if cursor is not None and timestamp < cursor:
            self._malformed(
                session,
                "meta_order",
                extra={"timestamp": timestamp, "cursor": cursor},
            )
            return
        if cursor is not None:
            tick = self.layout.tick_interval_ms
            gap = timestamp // tick - cursor // tick
            if gap > 0:
                self._fill_gap(session, gap)

        start = self.layout.window_start(timestamp)
        session.current_window_start = start
        session.slot_index = self.layout.slot_index(timestamp)
        self._enter(session, start)
        logger.debug(
            "fetch_positioned",
            extra={
                "fetch_id": session.fetch_id,
                "window_start": start,
                "slot_index": session.slot_index,
            },
        )

    def handle_batch(self, session: FetchSession, batch: Batch) -> int:
        """Decode, reduce and store every tick of ``batch``; return slots written."""
        if session.closed:
            return 0
        if not session.positioned:
            self._malformed(session, "batch_before_meta", extra={"ticks": len(batch)})
            return 0
        written = 0
        for tick in batch:
            TICKS_PROCESSED.inc()
            session.ticks += 1
            try:
                decoded = session.decoder.decode(tick)
            except MalformedMessage as e:
                self._malformed(session, e.reason, extra={"error": str(e)})
                self._advance(session)
                continue
            sample = self.reducer.reduce(decoded)
            if self._write(session, sample):
                written += 1
            if sample is not None:
                session.last_sample = sample
            self._advance(session)
        return written

    def close_session(
        self, session: FetchSession, result: Optional[CloseResult] = None
    ) -> None:
        """Stop further writes; everything already written stays."""
        session.closed = True
        if result is not None and result.problem:
            session.problem = result.problem

    def _enter(self, session: FetchSession, start: int) -> Optional[Window]:
        window = self.store.ensure(start)
        if window is not None:
            session.seen_windows.add(start)
        return window

    def _write(self, session: FetchSession, sample: Optional[ReducedSample]) -> bool:
        window = self._enter(session, session.current_window_start)  # type: ignore[arg-type]
        if window is not None and window.write(session.slot_index, sample):
            SLOTS_WRITTEN.inc()
            session.written += 1
            return True
        SLOT_WRITES_REJECTED.inc()
        return False

    def _advance(self, session: FetchSession) -> None:
        session.slot_index += 1
        if session.slot_index == self.layout.slots_per_window:
            session.current_window_start += self.layout.window_duration_ms  # type: ignore[operator]
            session.slot_index = 0

    def _fill_gap(self, session: FetchSession, slots: int) -> None:
        policy = self.gap_policy
        GAP_SLOTS.labels(policy=policy.value).inc(slots)
        if policy is GapPolicy.NULL:
            fill: Optional[ReducedSample] = None
        elif (
            policy is GapPolicy.HOLD
            and session.last_sample is not None
            and slots <= self.gap_hold_max_ticks
        ):
            fill = session.last_sample
        else:
            return
        for _ in range(slots):
            self._write(session, dict(fill) if fill is not None else None)
            self._advance(session)

    def _malformed(self, session: FetchSession, reason: str, extra: dict) -> None:
        MALFORMED_MESSAGES.labels(reason=reason).inc()
        logger.warning(
            "malformed_message_ignored",
            extra={"fetch_id": session.fetch_id, "reason": reason, **extra},
        )

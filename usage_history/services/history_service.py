"""Fetch orchestration for the usage history.

Owns the shared window store and scale context, opens subscriptions for the
initial load, pagination ("load earlier data") and the recurring live tail,
and keeps the status the renderer shows (loading, unavailable, capability
missing, no-data range).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Set

from usage_history.core.config import Settings, settings
from usage_history.core.logger import get_logger
from usage_history.core.metrics import (
    OPEN_SUBSCRIPTIONS,
    SUBSCRIPTION_FAILURES,
    SUBSCRIPTIONS_OPENED,
)
from usage_history.domain.errors import MissingDependency, TransportProblem
from usage_history.domain.models import (
    CloseResult,
    FetchMode,
    HistoryStatus,
    Meta,
    SampleView,
    SubscriptionSpec,
    WindowView,
)
from usage_history.infrastructure.source.base import SampleSource, Subscription
from usage_history.pipeline.aggregator import FetchSession, WindowAggregator
from usage_history.pipeline.events import EventDetector
from usage_history.pipeline.reducer import MetricReducer
from usage_history.pipeline.scaling import ScaleContext
from usage_history.pipeline.windows import Window, WindowLayout, WindowStore

logger = get_logger("usage_history.service")


@dataclass(eq=False)
class Fetch:
    spec: SubscriptionSpec
    session: FetchSession
    subscription: Subscription
    task: Optional[asyncio.Task] = None


class MetricsHistoryService:
    def __init__(
        self,
        source: SampleSource,
        config: Settings = settings,
        store: Optional[WindowStore] = None,
        scale: Optional[ScaleContext] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.source = source
        self.config = config
        self.clock = clock
        self.layout = store.layout if store else WindowLayout.from_settings(config)
        self.store = store or WindowStore(
            self.layout, config.history_window_retention_count
        )
        self.scale = scale or ScaleContext.from_settings(config)
        self.reducer = MetricReducer.from_settings(self.scale, config)
        self.aggregator = WindowAggregator.from_settings(
            self.store, self.reducer, config
        )
        self.detector = EventDetector(
            self.scale,
            self.layout,
            slope_threshold=config.history_event_slope_threshold,
            level_threshold=config.history_event_level_threshold,
        )

        self.oldest_timestamp: Optional[int] = None
        self.most_recent: Optional[int] = None
        self.metrics_available = True
        self.capability_missing = False
        self.retention_reached = False
        self.error: Optional[str] = None
        self.ready_event = asyncio.Event()

        self._anchor: Optional[int] = None
        self._live: Optional[Fetch] = None
        self._fetches: Set[Fetch] = set()
        self._backfills = 0
        self._tail_task: Optional[asyncio.Task] = None

    # -- lifecycle -----------------------------------------------------------

    async def start(self, now_ms: Optional[int] = None) -> None:
        """Load the initial windows and keep tailing the newest one."""
        if self._tail_task is not None:
            return
        if not self.source.available:
            self._mark_capability_missing("sample provider not installed")
            return
        now = now_ms if now_ms is not None else int(self.clock() * 1000)
        self._anchor = self.layout.window_start(now) - self._page_duration()
        self._extend_oldest(self._anchor)
        logger.info(
            "history_starting",
            extra={"anchor": self._anchor, "windows": self.config.history_initial_windows},
        )
        self._tail_task = asyncio.create_task(self._live_tail_loop())

    async def stop(self) -> None:
        """Stop the live tail and every fetch. Aggregated windows stay."""
        if self._tail_task is not None:
            self._tail_task.cancel()
            try:
                await self._tail_task
            except asyncio.CancelledError:
                logger.debug("live_tail_cancelled")
            self._tail_task = None
        for fetch in list(self._fetches):
            await self._close_fetch(fetch)
        self._live = None
        logger.info("history_stopped", extra={"windows": len(self.store)})

    async def refresh(self) -> Optional[Fetch]:
        """One live-tail cycle: retire the previous live fetch, open the next."""
        if self.capability_missing:
            return None
        previous, self._live = self._live, None
        if previous is not None:
            await self._close_fetch(previous)
        start = self.most_recent if self.most_recent is not None else self._anchor
        self._live = self._open(FetchMode.LIVE, start, None)
        return self._live

    async def load_more(self) -> Optional[FetchSession]:
        """Backfill one page of windows before the oldest requested time."""
        if self.capability_missing:
            raise MissingDependency("sample provider not installed")
        if self.oldest_timestamp is None:
            now = int(self.clock() * 1000)
            self.oldest_timestamp = self.layout.window_start(now)
        start = self.oldest_timestamp - self._page_duration()
        if not self.store.accepts(self.layout.window_start(self.oldest_timestamp - 1)):
            self.retention_reached = True
            logger.warning(
                "load_more_beyond_retention",
                extra={"start": start, "retention": self.store.retention},
            )
            return None
        limit = self.config.history_initial_windows * self.layout.slots_per_window
        self._extend_oldest(start)
        fetch = self._open(FetchMode.ARCHIVE, start, limit)
        if fetch is None:
            return None
        self._backfills += 1
        try:
            await fetch.task  # type: ignore[misc]
        finally:
            self._backfills -= 1
        return fetch.session

    async def _live_tail_loop(self) -> None:
        period = self.config.history_live_tail_period_seconds
        while True:
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001
                self.error = str(e)
                logger.exception("live_tail_refresh_failed")
            if self.capability_missing:
                logger.info("live_tail_stopped", extra={"reason": "capability_missing"})
                return
            await asyncio.sleep(period)

    # -- fetches -------------------------------------------------------------

    def _open(
        self, mode: FetchMode, start: Optional[int], limit: Optional[int]
    ) -> Optional[Fetch]:
        spec = SubscriptionSpec(
            interval_ms=self.layout.tick_interval_ms,
            mode=mode,
            start_timestamp=start,
            limit=limit,
            metrics=tuple(self.reducer.metrics),
        )
        try:
            subscription = self.source.open(spec)
        except MissingDependency as e:
            self._mark_capability_missing(str(e))
            return None
        session = self.aggregator.open_session(mode)
        fetch = Fetch(spec=spec, session=session, subscription=subscription)
        self._fetches.add(fetch)
        SUBSCRIPTIONS_OPENED.labels(mode=mode.value).inc()
        OPEN_SUBSCRIPTIONS.inc()
        logger.info(
            "fetch_opened",
            extra={
                "fetch_id": session.fetch_id,
                "mode": mode.value,
                "start": start,
                "limit": limit,
            },
        )
        fetch.task = asyncio.create_task(self._consume(fetch))
        return fetch

    async def _consume(self, fetch: Fetch) -> None:
        session = fetch.session
        result: Optional[CloseResult] = None
        try:
            async for message in fetch.subscription:
                if isinstance(message, Meta):
                    self.aggregator.handle_meta(session, message)
                    continue
                self.aggregator.handle_batch(session, message)
                self._track_most_recent(session)
                self.metrics_available = True
                self.ready_event.set()
            result = fetch.subscription.result or CloseResult()
        except TransportProblem as e:
            result = CloseResult(problem=e.problem, message=str(e))
        except Exception as e:  # noqa: BLE001
            logger.exception("fetch_failed", extra={"fetch_id": session.fetch_id})
            result = CloseResult(problem="internal-error", message=str(e))
        finally:
            self.aggregator.close_session(session, result)
            self._fetches.discard(fetch)
            OPEN_SUBSCRIPTIONS.dec()
            await fetch.subscription.close()
        self._finish(fetch, result)

    async def _close_fetch(self, fetch: Fetch) -> None:
        await fetch.subscription.close()
        if fetch.task is not None:
            await fetch.task

    def _finish(self, fetch: Fetch, result: CloseResult) -> None:
        session = fetch.session
        if result.problem:
            SUBSCRIPTION_FAILURES.labels(mode=session.mode.value).inc()
            self.metrics_available = False
            logger.warning(
                "metrics_unavailable",
                extra={
                    "fetch_id": session.fetch_id,
                    "mode": session.mode.value,
                    "problem": result.problem,
                    "detail": result.message,
                },
            )
        else:
            self.metrics_available = True
            logger.info(
                "fetch_completed",
                extra={
                    "fetch_id": session.fetch_id,
                    "mode": session.mode.value,
                    "windows": sorted(session.seen_windows),
                    "ticks": session.ticks,
                    "written": session.written,
                },
            )
        self.ready_event.set()

    def _track_most_recent(self, session: FetchSession) -> None:
        cursor = self.aggregator.cursor(session)
        if cursor is None:
            return
        if self.most_recent is None or cursor > self.most_recent:
            self.most_recent = cursor

    def _extend_oldest(self, timestamp: int) -> None:
        if self.oldest_timestamp is None or timestamp < self.oldest_timestamp:
            self.oldest_timestamp = timestamp

    def _page_duration(self) -> int:
        return self.config.history_initial_windows * self.layout.window_duration_ms

    def _mark_capability_missing(self, reason: str) -> None:
        self.capability_missing = True
        self.error = None
        logger.warning("capability_missing", extra={"reason": reason})

    # -- renderer views ------------------------------------------------------

    @property
    def live_fetch(self) -> Optional[Fetch]:
        return self._live

    @property
    def loading(self) -> bool:
        if self.capability_missing or not self.metrics_available:
            return False
        return self._backfills > 0 or (
            self._tail_task is not None and not self.ready_event.is_set()
        )

    def _view(self, window: Window) -> WindowView:
        return WindowView(
            start_timestamp=window.start,
            slots=window.samples(),
            events=self.detector.detect(window),
        )

    def windows(self, limit: Optional[int] = None) -> List[WindowView]:
        """Window views, newest first."""
        windows = self.store.windows()
        if limit is not None:
            windows = windows[:limit]
        return [self._view(window) for window in windows]

    def window(self, start: int) -> Optional[WindowView]:
        window = self.store.get(start)
        return self._view(window) if window is not None else None

    def sample(self, window_start: int, minute: int, subslot: int) -> SampleView:
        sample = self.store.lookup(window_start, minute, subslot)
        return SampleView(
            window_start=window_start,
            minute=minute,
            subslot=subslot,
            timestamp=self.layout.slot_timestamp(
                window_start, minute * self.layout.slots_per_minute + subslot
            ),
            sample=sample,
        )

    def status(self) -> HistoryStatus:
        starts = self.store.starts()
        no_data_from = no_data_until = None
        loading = self.loading
        if (
            not loading
            and starts
            and self.oldest_timestamp is not None
            and self.oldest_timestamp < starts[-1]
        ):
            no_data_from, no_data_until = self.oldest_timestamp, starts[-1]
        return HistoryStatus(
            loading=loading,
            metrics_available=self.metrics_available,
            capability_missing=self.capability_missing,
            retention_reached=self.retention_reached,
            error=self.error,
            oldest_timestamp=self.oldest_timestamp,
            most_recent=self.most_recent,
            windows=len(starts),
            scale=self.scale.snapshot(),
            no_data_from=no_data_from,
            no_data_until=no_data_until,
        )

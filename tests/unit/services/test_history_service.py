import asyncio
import logging
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from tests.helpers.timeline import (
    HOUR_MS,
    HOUR_START,
    SLOTS_PER_WINDOW,
    TICK_MS,
    full_tick,
)
from usage_history.domain.errors import MissingDependency
from usage_history.domain.models import FetchMode
from usage_history.domain.resources import Resources
from usage_history.infrastructure.source import MemorySampleSource
from usage_history.services.history_service import MetricsHistoryService

NOW = HOUR_START + 30 * 60_000
HALF_WINDOW = SLOTS_PER_WINDOW // 2


class UnavailableSource(MemorySampleSource):
    available = False


class BrokenProviderSource(MemorySampleSource):
    opens = 0

    def open(self, spec):
        self.opens += 1
        raise MissingDependency("provider vanished")


@pytest.fixture
def source():
    source = MemorySampleSource(TICK_MS)
    # one older window, then the hour before NOW and half of the current one
    source.extend(HOUR_START - 4 * HOUR_MS, [full_tick()] * SLOTS_PER_WINDOW)
    source.extend(
        HOUR_START - HOUR_MS,
        [full_tick(user=float(i % 7)) for i in range(SLOTS_PER_WINDOW + HALF_WINDOW)],
    )
    return source


@pytest_asyncio.fixture
async def service(source, config):
    service = MetricsHistoryService(source, config, clock=lambda: NOW / 1000)
    yield service
    await service.stop()


class TestStartAndLiveTail:
    @pytest.mark.asyncio
    async def test_initial_load(self, service, eventually):
        await service.start()
        await eventually(lambda: service.most_recent == NOW)

        assert service.oldest_timestamp == HOUR_START - 2 * HOUR_MS
        assert service.store.starts() == [HOUR_START, HOUR_START - HOUR_MS]
        assert service.store.get(HOUR_START - HOUR_MS).populated() == SLOTS_PER_WINDOW
        assert service.store.get(HOUR_START).populated() == HALF_WINDOW
        assert service.ready_event.is_set()
        assert service.live_fetch.session.mode is FetchMode.LIVE

    @pytest.mark.asyncio
    async def test_status_reports_no_data_before_oldest_window(
        self, service, eventually
    ):
        await service.start()
        await eventually(lambda: service.most_recent == NOW)
        status = service.status()
        assert not status.loading
        assert status.metrics_available
        assert status.windows == 2
        assert status.no_data_from == HOUR_START - 2 * HOUR_MS
        assert status.no_data_until == HOUR_START - HOUR_MS
        assert status.scale[Resources.SAT_CPU] == 4.0

    @pytest.mark.asyncio
    async def test_live_fetch_follows_new_ticks(self, service, source, eventually):
        await service.start()
        await eventually(lambda: service.most_recent == NOW)
        source.record(NOW, full_tick(user=500.0))
        await eventually(lambda: service.most_recent == NOW + TICK_MS)
        sample = service.store.sample_at(NOW)
        assert sample[Resources.USE_CPU] == pytest.approx(0.515)

    @pytest.mark.asyncio
    async def test_refresh_replaces_live_fetch(self, service, source, eventually):
        await service.start()
        await eventually(lambda: service.most_recent == NOW)
        first = service.live_fetch
        before = service.store.get(HOUR_START).samples()

        second = await service.refresh()
        assert second is not first
        assert first.task.done()
        assert first.session.closed
        assert second.spec.start_timestamp == NOW

        source.record(NOW, full_tick())
        await eventually(lambda: service.most_recent == NOW + TICK_MS)
        assert service.store.get(HOUR_START).samples()[:HALF_WINDOW] == before[
            :HALF_WINDOW
        ]

    @pytest.mark.asyncio
    async def test_stop_keeps_windows(self, service, eventually):
        await service.start()
        await eventually(lambda: service.most_recent == NOW)
        await service.stop()
        assert service.live_fetch is None
        assert service._fetches == set()
        assert len(service.store) == 2


class TestLoadMore:
    @pytest.mark.asyncio
    async def test_backfills_one_page(self, service, eventually):
        await service.start()
        await eventually(lambda: service.most_recent == NOW)
        previous_hour = service.store.get(HOUR_START - HOUR_MS).samples()

        session = await service.load_more()

        assert session.mode is FetchMode.ARCHIVE
        assert service.oldest_timestamp == HOUR_START - 4 * HOUR_MS
        assert HOUR_START - 4 * HOUR_MS in service.store
        assert service.store.get(HOUR_START - HOUR_MS).samples() == previous_hour
        status = service.status()
        assert status.no_data_from is None
        assert not status.loading

    @pytest.mark.asyncio
    async def test_before_start_uses_clock(self, service):
        session = await service.load_more()
        assert service.oldest_timestamp == HOUR_START - 2 * HOUR_MS
        assert session.seen_windows == {HOUR_START - HOUR_MS, HOUR_START}


class TestFailures:
    @pytest.mark.asyncio
    async def test_transport_problem_marks_metrics_unavailable(
        self, service, source, eventually, caplog
    ):
        caplog.set_level(logging.WARNING)
        source.fail_next("disconnected", "agent went away")
        await service.start()
        await eventually(lambda: not service.metrics_available)
        status = service.status()
        assert not status.loading
        assert not status.metrics_available
        assert any(r.message == "metrics_unavailable" for r in caplog.records)

        await service.refresh()
        await eventually(lambda: service.most_recent == NOW)
        assert service.metrics_available

    @pytest.mark.asyncio
    async def test_missing_provider(self, config):
        service = MetricsHistoryService(UnavailableSource(TICK_MS), config)
        await service.start()
        assert service.capability_missing
        assert service.live_fetch is None
        assert not service.status().loading
        with pytest.raises(MissingDependency):
            await service.load_more()

    @pytest.mark.asyncio
    async def test_provider_missing_on_open(self, config):
        service = MetricsHistoryService(
            BrokenProviderSource(TICK_MS), config, clock=lambda: NOW / 1000
        )
        assert await service.load_more() is None
        assert service.capability_missing
        assert service.status().capability_missing


class TestViews:
    @pytest.mark.asyncio
    async def test_window_and_sample_views(self, service, eventually):
        await service.start()
        await eventually(lambda: service.most_recent == NOW)

        views = service.windows(limit=1)
        assert [v.start_timestamp for v in views] == [HOUR_START]
        assert len(views[0].slots) == SLOTS_PER_WINDOW
        assert views[0].slots[HALF_WINDOW] is None

        assert service.window(HOUR_START + HOUR_MS) is None
        view = service.sample(HOUR_START, 1, 2)
        assert view.timestamp == HOUR_START + 14 * TICK_MS
        assert view.sample[Resources.USE_MEMORY] == pytest.approx(0.25)


class TestLiveTailLoop:
    @pytest.mark.asyncio
    async def test_survives_refresh_errors(self, service, eventually):
        failing = AsyncMock(side_effect=RuntimeError("boom"))
        with patch.object(service, "refresh", failing):
            await service.start()
            await eventually(lambda: service.error == "boom")
        assert failing.await_count == 1
        assert not service._tail_task.done()


class TestMissingProviderNotRetried:
    @pytest.mark.asyncio
    async def test_live_tail_stops_after_missing_provider(self, config):
        config = config.model_copy(update={"history_live_tail_period_seconds": 0.01})
        source = BrokenProviderSource(TICK_MS)
        service = MetricsHistoryService(source, config, clock=lambda: NOW / 1000)
        try:
            await service.start()
            await asyncio.sleep(0.2)

            assert source.opens == 1
            assert service.capability_missing
            assert service._tail_task.done()
            assert await service.refresh() is None
            assert source.opens == 1
        finally:
            await service.stop()


class TestRetention:
    @pytest.mark.asyncio
    async def test_load_more_stops_at_retention(self, source, config, eventually):
        config = config.model_copy(update={"history_window_retention_count": 2})
        service = MetricsHistoryService(source, config, clock=lambda: NOW / 1000)
        try:
            await service.start()
            await eventually(lambda: service.most_recent == NOW)

            assert await service.load_more() is None
            assert service.oldest_timestamp == HOUR_START - 2 * HOUR_MS
            assert service.store.starts() == [HOUR_START, HOUR_START - HOUR_MS]
            assert service.status().retention_reached
        finally:
            await service.stop()


class TestReadiness:
    @pytest.mark.asyncio
    async def test_ready_after_first_batch(self, config, eventually):
        source = MemorySampleSource(TICK_MS)
        service = MetricsHistoryService(source, config, clock=lambda: NOW / 1000)
        try:
            await service.start()
            await asyncio.sleep(0.01)
            assert not service.ready_event.is_set()
            assert service.status().loading

            source.record(NOW, full_tick())
            await eventually(service.ready_event.is_set)
            assert not service.status().loading
            assert service.live_fetch.task is not None
            assert not service.live_fetch.task.done()
        finally:
            await service.stop()

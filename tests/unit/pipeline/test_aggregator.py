import logging

import pytest

from tests.helpers.timeline import HOUR_MS, HOUR_START, SLOTS_PER_WINDOW, TICK_MS
from usage_history.domain.models import FetchMode, Meta
from usage_history.domain.resources import Resources
from usage_history.pipeline.aggregator import GapPolicy, WindowAggregator
from usage_history.pipeline.windows import UNKNOWN, WindowStore


def _ticks(make_tick, count, **kwargs):
    return [make_tick(**kwargs) for _ in range(count)]


class TestWindowAggregator:
    """Routing of metas and batches into shared window slots."""

    def test_fills_one_window(self, aggregator, store, make_tick):
        session = aggregator.open_session(FetchMode.ARCHIVE)
        aggregator.handle_meta(session, Meta(timestamp=HOUR_START))
        written = aggregator.handle_batch(
            session, _ticks(make_tick, SLOTS_PER_WINDOW)
        )
        assert written == SLOTS_PER_WINDOW
        assert store.starts() == [HOUR_START]
        window = store.get(HOUR_START)
        assert window.populated() == SLOTS_PER_WINDOW
        assert aggregator.cursor(session) == HOUR_START + HOUR_MS

    def test_batch_spanning_window_boundary(self, aggregator, store, make_tick):
        session = aggregator.open_session(FetchMode.ARCHIVE)
        start = HOUR_START + (SLOTS_PER_WINDOW - 2) * TICK_MS
        aggregator.handle_meta(session, Meta(timestamp=start))
        aggregator.handle_batch(session, _ticks(make_tick, 5))
        assert store.starts() == [HOUR_START + HOUR_MS, HOUR_START]
        assert store.get(HOUR_START).populated() == 2
        assert store.get(HOUR_START + HOUR_MS).populated() == 3
        assert session.seen_windows == {HOUR_START, HOUR_START + HOUR_MS}

    def test_meta_positions_mid_window(self, aggregator, store, make_tick):
        session = aggregator.open_session(FetchMode.LIVE)
        aggregator.handle_meta(session, Meta(timestamp=HOUR_START + 10 * TICK_MS))
        aggregator.handle_batch(session, _ticks(make_tick, 1))
        window = store.get(HOUR_START)
        assert window.slots[9] is UNKNOWN
        assert window.get(10)[Resources.USE_CPU] == pytest.approx(0.035)

    def test_overlapping_fetch_does_not_overwrite(self, aggregator, store, make_tick):
        first = aggregator.open_session(FetchMode.ARCHIVE)
        aggregator.handle_meta(first, Meta(timestamp=HOUR_START))
        aggregator.handle_batch(first, _ticks(make_tick, 20, user=20.0))
        before = list(store.get(HOUR_START).slots)

        second = aggregator.open_session(FetchMode.LIVE)
        aggregator.handle_meta(second, Meta(timestamp=HOUR_START + 10 * TICK_MS))
        written = aggregator.handle_batch(second, _ticks(make_tick, 15, user=900.0))

        assert written == 5
        window = store.get(HOUR_START)
        assert window.slots[:20] == before[:20]
        assert window.get(24)[Resources.USE_CPU] == pytest.approx(0.915)

    def test_batch_before_meta_is_ignored(self, aggregator, store, make_tick, caplog):
        caplog.set_level(logging.WARNING)
        session = aggregator.open_session(FetchMode.LIVE)
        assert aggregator.handle_batch(session, _ticks(make_tick, 3)) == 0
        assert len(store) == 0
        assert any(r.message == "malformed_message_ignored" for r in caplog.records)

    def test_meta_going_backwards_is_ignored(self, aggregator, make_tick, caplog):
        caplog.set_level(logging.WARNING)
        session = aggregator.open_session(FetchMode.LIVE)
        aggregator.handle_meta(session, Meta(timestamp=HOUR_START + 100 * TICK_MS))
        aggregator.handle_batch(session, _ticks(make_tick, 2))
        aggregator.handle_meta(session, Meta(timestamp=HOUR_START))
        assert aggregator.cursor(session) == HOUR_START + 102 * TICK_MS
        assert any(
            getattr(r, "reason", None) == "meta_order" for r in caplog.records
        )

    def test_oversize_tick_still_advances_cursor(self, aggregator, store, make_tick):
        session = aggregator.open_session(FetchMode.LIVE)
        aggregator.handle_meta(session, Meta(timestamp=HOUR_START))
        bad = make_tick() + [1.0]
        aggregator.handle_batch(session, [bad, make_tick()])
        window = store.get(HOUR_START)
        assert window.slots[0] is UNKNOWN
        assert window.get(1) is not None

    def test_tick_without_data_is_written_as_no_data(self, aggregator, store):
        session = aggregator.open_session(FetchMode.LIVE)
        aggregator.handle_meta(session, Meta(timestamp=HOUR_START))
        assert aggregator.handle_batch(session, [[False, False, False]]) == 1
        window = store.get(HOUR_START)
        assert window.is_known(0)
        assert window.get(0) is None

    def test_closed_session_writes_nothing(self, aggregator, store, make_tick):
        session = aggregator.open_session(FetchMode.LIVE)
        aggregator.handle_meta(session, Meta(timestamp=HOUR_START))
        aggregator.close_session(session)
        assert aggregator.handle_batch(session, _ticks(make_tick, 3)) == 0
        assert store.get(HOUR_START).populated() == 0


class TestGapPolicies:
    def _run_with_gap(self, store, reducer, policy, gap_ticks, make_tick):
        aggregator = WindowAggregator(store, reducer, gap_policy=policy)
        session = aggregator.open_session(FetchMode.ARCHIVE)
        aggregator.handle_meta(session, Meta(timestamp=HOUR_START))
        aggregator.handle_batch(session, _ticks(make_tick, 2))
        resume = HOUR_START + (2 + gap_ticks) * TICK_MS
        aggregator.handle_meta(session, Meta(timestamp=resume))
        aggregator.handle_batch(session, _ticks(make_tick, 1))
        return store.get(HOUR_START)

    def test_leave(self, store, reducer, make_tick):
        window = self._run_with_gap(store, reducer, GapPolicy.LEAVE, 3, make_tick)
        assert [window.is_known(i) for i in range(6)] == [
            True, True, False, False, False, True,
        ]

    def test_null(self, store, reducer, make_tick):
        window = self._run_with_gap(store, reducer, GapPolicy.NULL, 3, make_tick)
        assert all(window.is_known(i) for i in range(6))
        assert window.get(3) is None

    def test_hold_short_gap(self, store, reducer, make_tick):
        window = self._run_with_gap(store, reducer, GapPolicy.HOLD, 3, make_tick)
        assert window.get(3) == window.get(1)

    def test_hold_leaves_long_gap(self, store, reducer, make_tick):
        window = self._run_with_gap(store, reducer, GapPolicy.HOLD, 30, make_tick)
        assert not window.is_known(10)
        assert window.is_known(32)

    def test_from_settings(self, store, reducer, config):
        config = config.model_copy(update={"history_gap_policy": "null"})
        aggregator = WindowAggregator.from_settings(store, reducer, config)
        assert aggregator.gap_policy is GapPolicy.NULL


class TestRetention:
    def test_backfill_past_retention_writes_nothing(self, layout, reducer, make_tick):
        store = WindowStore(layout, retention=2)
        aggregator = WindowAggregator(store, reducer)
        live = aggregator.open_session(FetchMode.LIVE)
        aggregator.handle_meta(live, Meta(timestamp=HOUR_START))
        aggregator.handle_batch(live, _ticks(make_tick, 1))
        aggregator.handle_meta(live, Meta(timestamp=HOUR_START + HOUR_MS))
        aggregator.handle_batch(live, _ticks(make_tick, 1))

        backfill = aggregator.open_session(FetchMode.ARCHIVE)
        aggregator.handle_meta(backfill, Meta(timestamp=HOUR_START - HOUR_MS))
        written = aggregator.handle_batch(backfill, _ticks(make_tick, 10))

        assert written == 0
        assert backfill.written == 0
        assert backfill.seen_windows == set()
        assert store.starts() == [HOUR_START + HOUR_MS, HOUR_START]

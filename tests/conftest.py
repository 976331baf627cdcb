import asyncio
import time

import pytest

from tests.helpers.timeline import HOUR_MS, TICK_MS, full_tick
from usage_history.core.config import Settings
from usage_history.pipeline.aggregator import WindowAggregator
from usage_history.pipeline.reducer import MetricReducer
from usage_history.pipeline.scaling import ScaleContext
from usage_history.pipeline.windows import WindowLayout, WindowStore


@pytest.fixture
def make_tick():
    return full_tick


@pytest.fixture
def config():
    return Settings(
        history_tick_interval_ms=TICK_MS,
        history_window_duration_ms=HOUR_MS,
        history_initial_windows=2,
        history_live_tail_period_seconds=60,
        history_window_retention_count=48,
    )


@pytest.fixture
def layout():
    return WindowLayout(TICK_MS, HOUR_MS)


@pytest.fixture
def scale(config):
    return ScaleContext.from_settings(config)


@pytest.fixture
def reducer(scale):
    return MetricReducer(scale)


@pytest.fixture
def store(layout):
    return WindowStore(layout)


@pytest.fixture
def aggregator(store, reducer):
    return WindowAggregator(store, reducer)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Poll ``predicate`` on the running loop until it holds or time runs out."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    raise TimeoutError(f"condition not met within {timeout}s")


@pytest.fixture
def eventually():
    return wait_until

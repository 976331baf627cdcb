from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from usage_history.api.router import api_router
from usage_history.core.config import settings
from usage_history.core.logger import configure_logging, get_logger
from usage_history.domain.errors import MissingDependency
from usage_history.infrastructure.host.current_usage import CurrentUsageReader
from usage_history.infrastructure.source.base import SampleSource
from usage_history.infrastructure.source.memory import MemorySampleSource
from usage_history.infrastructure.source.psutil_source import PsutilSampleSource
from usage_history.services.history_service import MetricsHistoryService

logger = get_logger("usage_history.main")


def build_source() -> SampleSource:
    capacity = (
        settings.history_window_retention_count
        * settings.history_window_duration_ms
        // settings.history_tick_interval_ms
    )
    if settings.history_source == "memory":
        return MemorySampleSource(
            settings.history_tick_interval_ms,
            batch_size=settings.history_batch_size,
            capacity=capacity,
        )
    return PsutilSampleSource(
        settings.history_tick_interval_ms,
        batch_size=settings.history_batch_size,
        capacity=capacity,
    )


def build_current_usage_reader() -> Optional[CurrentUsageReader]:
    try:
        return CurrentUsageReader.from_installed()
    except MissingDependency as e:
        logger.warning("current_usage_unavailable", extra={"reason": str(e)})
        return None


def create_app(source: Optional[SampleSource] = None, autostart: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info("usage_history_starting", extra={"source": type(app.state.source).__name__})
        if autostart:
            await app.state.history.start()
        try:
            yield
        finally:
            logger.info("usage_history_stopping")
            await app.state.history.stop()
            close = getattr(app.state.source, "close", None)
            if callable(close):
                await close()

    app = FastAPI(title="Resource Usage History", version="0.1.0", lifespan=lifespan)
    app.state.source = source if source is not None else build_source()
    app.state.history = MetricsHistoryService(app.state.source, settings)
    app.state.current_usage = build_current_usage_reader()
    app.include_router(api_router)

    @app.get("/metrics")
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()

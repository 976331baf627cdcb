from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from usage_history.api.dependencies import (
    get_current_usage_reader,
    get_history_service,
)
from usage_history.core.logger import get_logger
from usage_history.domain.errors import MissingDependency
from usage_history.domain.models import (
    CurrentUsage,
    HistoryStatus,
    SampleView,
    WindowView,
)
from usage_history.infrastructure.host.current_usage import CurrentUsageReader
from usage_history.services.history_service import MetricsHistoryService

router = APIRouter(prefix="/history")
logger = get_logger(__name__)


@router.get("/status", response_model=HistoryStatus)
async def status(svc: MetricsHistoryService = Depends(get_history_service)):
    return svc.status()


@router.get("/windows", response_model=List[WindowView])
async def windows(
    limit: int = Query(24, ge=1, le=1000),
    svc: MetricsHistoryService = Depends(get_history_service),
):
    """Windows newest first, each with its per-minute spike events."""
    return svc.windows(limit)


@router.get("/windows/{start}", response_model=WindowView)
async def window(start: int, svc: MetricsHistoryService = Depends(get_history_service)):
    view = svc.window(start)
    if view is None:
        raise HTTPException(status_code=404, detail="Unknown window")
    return view


@router.get("/windows/{start}/samples", response_model=SampleView)
async def sample(
    start: int,
    minute: int = Query(..., ge=0),
    subslot: int = Query(0, ge=0),
    svc: MetricsHistoryService = Depends(get_history_service),
):
    if svc.store.get(start) is None:
        raise HTTPException(status_code=404, detail="Unknown window")
    try:
        return svc.sample(start, minute, subslot)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/load-more", response_model=HistoryStatus)
async def load_more(svc: MetricsHistoryService = Depends(get_history_service)):
    """Backfill the page of windows before the oldest loaded one."""
    try:
        await svc.load_more()
    except MissingDependency as e:
        logger.warning("load_more_rejected", extra={"reason": str(e)})
        raise HTTPException(status_code=409, detail=str(e))
    return svc.status()


@router.get("/current", response_model=CurrentUsage)
async def current(
    reader: Optional[CurrentUsageReader] = Depends(get_current_usage_reader),
):
    """Live host snapshot; rates cover the time since the previous request."""
    if reader is None:
        raise HTTPException(status_code=409, detail="psutil is not installed")
    return reader.read()

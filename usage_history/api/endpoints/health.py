import time

from fastapi import APIRouter, Depends, Response

from usage_history.api.dependencies import get_history_service
from usage_history.services.history_service import MetricsHistoryService

router = APIRouter()
_start_time = time.time()


@router.get("/healthz")
async def healthz(svc: MetricsHistoryService = Depends(get_history_service)):
    return {
        "status": "ok",
        "uptime_s": time.time() - _start_time,
        "metrics_available": svc.metrics_available,
    }


@router.get("/readyz")
async def readyz(svc: MetricsHistoryService = Depends(get_history_service)):
    if svc.ready_event.is_set():
        return {"status": "ready"}
    return Response(status_code=503, content="not ready")

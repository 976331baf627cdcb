from typing import Optional

from fastapi import Request

from usage_history.infrastructure.host.current_usage import CurrentUsageReader
from usage_history.services.history_service import MetricsHistoryService


def get_history_service(request: Request) -> MetricsHistoryService:
    return request.app.state.history  # type: ignore[return-value]


def get_current_usage_reader(request: Request) -> Optional[CurrentUsageReader]:
    return request.app.state.current_usage

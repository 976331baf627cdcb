"""Adapt raw JSON payload streams to the subscription contract.

Transports deliver either a meta object (``{"timestamp": ms, ...}``) or a
JSON array of ticks. Anything else is logged and skipped.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Optional, Union

from pydantic import ValidationError

from usage_history.core.logger import get_logger
from usage_history.core.metrics import MALFORMED_MESSAGES
from usage_history.domain.errors import TransportProblem
from usage_history.domain.models import Batch, CloseResult, Meta

from .base import Message

logger = get_logger("usage_history.source.payloads")


def parse_payload(raw: Union[str, bytes, dict, list, Any]) -> Optional[Message]:
    """Translate one raw payload into a Meta or a batch, None if malformed."""
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            return _reject("invalid_json", error=str(e))
    if isinstance(raw, dict):
        try:
            return Meta.model_validate(raw)
        except ValidationError as e:
            return _reject("invalid_meta", error=str(e))
    if isinstance(raw, list):
        if not all(isinstance(tick, list) for tick in raw):
            return _reject("invalid_batch", error="batch entries must be arrays")
        batch: Batch = raw
        return batch
    return _reject("unknown_payload", error=type(raw).__name__)


def _reject(reason: str, **extra: Any) -> None:
    MALFORMED_MESSAGES.labels(reason=reason).inc()
    logger.warning("payload_ignored", extra={"reason": reason, **extra})
    return None


class PayloadSubscription:
    """Subscription over an async stream of raw payloads.

    ``closer`` tears down the underlying transport; it runs at most once. A
    TransportProblem (or any other exception) raised by the stream ends the
    subscription with a problem result instead of propagating.
    """

    def __init__(
        self,
        payloads: AsyncIterable[Any],
        closer: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.result: Optional[CloseResult] = None
        self._payloads = payloads
        self._closer = closer
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._closer is not None:
            await self._closer()

    def __aiter__(self) -> AsyncIterator[Message]:
        return self._messages()

    async def _messages(self) -> AsyncIterator[Message]:
        try:
            async for raw in self._payloads:
                if self._closed:
                    break
                message = parse_payload(raw)
                if message is not None:
                    yield message
        except TransportProblem as e:
            self.result = CloseResult(problem=e.problem, message=str(e))
        except Exception as e:  # noqa: BLE001
            logger.exception("payload_stream_failed")
            self.result = CloseResult(problem="internal-error", message=str(e))
        if self.result is None:
            self.result = CloseResult()

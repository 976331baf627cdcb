"""Contract between the pipeline and whatever delivers raw samples.

A source opens subscriptions; a subscription is an async iterable of
messages. A Meta always comes first and again after every reconnect or gap;
each following batch holds consecutive ticks starting at the announced
timestamp. When iteration ends, ``result`` tells whether it ended cleanly.
"""

from __future__ import annotations

from typing import AsyncIterator, Optional, Protocol, Union, runtime_checkable

from usage_history.domain.models import Batch, CloseResult, Meta, SubscriptionSpec

Message = Union[Meta, Batch]


@runtime_checkable
class Subscription(Protocol):
    result: Optional[CloseResult]

    def __aiter__(self) -> AsyncIterator[Message]: ...

    async def close(self) -> None:
        """Stop delivery. Safe to call any number of times."""
        ...


@runtime_checkable
class SampleSource(Protocol):
    @property
    def available(self) -> bool:
        """False when the provider behind this source is not installed."""
        ...

    def open(self, spec: SubscriptionSpec) -> Subscription:
        """Start a subscription; raises MissingDependency when unavailable."""
        ...

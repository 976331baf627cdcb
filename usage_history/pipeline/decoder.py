"""Reconstruct absolute readings from the sparse carry-forward encoding.

Sources only send what changed: an omitted entry (None) means "same as last
tick" and False means the reading is unavailable right now. Both keep the
previously stored value. Instance metrics (per interface, per load period)
carry a list whose omitted sub-entries keep their own previous values.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from usage_history.core.logger import get_logger
from usage_history.core.metrics import MALFORMED_MESSAGES
from usage_history.domain.errors import MalformedMessage
from usage_history.domain.models import (
    DecodedTick,
    DecodedValue,
    MetricSpec,
    RawEntry,
    RawTick,
)

logger = get_logger("usage_history.decoder")


@dataclass(frozen=True)
class Present:
    value: float


class _Marker:
    __slots__ = ("name",)

    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return self.name


CARRY_FORWARD = _Marker("CarryForward")
EXPLICITLY_UNAVAILABLE = _Marker("ExplicitlyUnavailable")

Decoded = Union[Present, _Marker]


def classify(entry: RawEntry) -> Decoded:
    """Tag one scalar entry. ``0`` is a reading; only None and False are not."""
    if entry is None:
        return CARRY_FORWARD
    if entry is False:
        return EXPLICITLY_UNAVAILABLE
    if isinstance(entry, bool) or not isinstance(entry, (int, float)):
        raise MalformedMessage("bad_entry", f"unexpected sample entry {entry!r}")
    return Present(float(entry))


class SampleDecoder:
    """Per-subscription decoder state, aligned with the subscribed metrics."""

    def __init__(self, metrics: Sequence[MetricSpec]):
        self.metrics = tuple(metrics)
        self._state: List[DecodedValue] = [None] * len(self.metrics)

    def decode(self, tick: RawTick) -> DecodedTick:
        """Merge ``tick`` into the state and return the full decoded tick.

        A tick shorter than the metric list omits its trailing entries. A
        longer one does not belong to this subscription and is rejected.
        """
        if len(tick) > len(self.metrics):
            raise MalformedMessage(
                "tick_length",
                f"tick has {len(tick)} entries for {len(self.metrics)} metrics",
            )
        for index, entry in enumerate(tick):
            try:
                if isinstance(entry, list):
                    self._merge_instances(index, entry)
                else:
                    self._merge_scalar(index, entry)
            except MalformedMessage as e:
                MALFORMED_MESSAGES.labels(reason=e.reason).inc()
                logger.warning(
                    "malformed_entry_ignored",
                    extra={"metric": self.metrics[index].name, "reason": e.reason},
                )
        return self.snapshot()

    def snapshot(self) -> DecodedTick:
        return tuple(
            list(value) if isinstance(value, list) else value for value in self._state
        )

    def _merge_scalar(self, index: int, entry: RawEntry) -> None:
        result = classify(entry)
        if not isinstance(result, Present):
            return
        if isinstance(self._state[index], list):
            raise MalformedMessage(
                "shape", "scalar reading for an instance metric"
            )
        self._state[index] = result.value

    def _merge_instances(self, index: int, entries: list) -> None:
        stored = self._state[index]
        if stored is not None and not isinstance(stored, list):
            raise MalformedMessage("shape", "instance reading for a scalar metric")

        expected = self.metrics[index].instances
        if expected is not None:
            capacity = expected
        elif stored is not None:
            capacity = len(stored)
        else:
            capacity = len(entries)
        if len(entries) > capacity:
            raise MalformedMessage(
                "instance_length",
                f"{len(entries)} instances where {capacity} are known",
            )

        merged: List[Optional[float]] = (
            list(stored) if stored is not None else [None] * capacity
        )
        for k, entry in enumerate(entries):
            if isinstance(entry, list):
                raise MalformedMessage("bad_entry", "nested instance list")
            result = classify(entry)
            if isinstance(result, Present):
                merged[k] = result.value
        self._state[index] = merged

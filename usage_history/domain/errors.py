"""Failure states of the history pipeline.

None of these is fatal to the process: transport problems and missing
providers are turned into service status flags, malformed messages are
logged and skipped by the aggregator.
"""

from typing import Optional


class HistoryError(Exception):
    """Base class for usage history errors."""


class TransportProblem(HistoryError):
    """A subscription reported a failure."""

    def __init__(self, problem: str, message: Optional[str] = None):
        super().__init__(message or f"sample source problem: {problem}")
        self.problem = problem


class MissingDependency(HistoryError):
    """The provider behind a sample source is not installed."""


class MalformedMessage(HistoryError):
    """A message or tick does not fit the subscribed metric layout."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason

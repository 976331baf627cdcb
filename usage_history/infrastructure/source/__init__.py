from .base import Message, SampleSource, Subscription
from .memory import MemorySampleSource, MemorySubscription
from .payloads import PayloadSubscription, parse_payload
from .psutil_source import PsutilSampler, PsutilSampleSource

__all__ = [
    "Message",
    "SampleSource",
    "Subscription",
    "MemorySampleSource",
    "MemorySubscription",
    "PayloadSubscription",
    "parse_payload",
    "PsutilSampler",
    "PsutilSampleSource",
]

"""Prometheus metrics for the usage history pipeline."""

from shared.metrics import get_counter, get_gauge

_SERVICE = "usage_history"

TICKS_PROCESSED = get_counter(
    "ticks_processed_total", "Raw ticks decoded and reduced", _SERVICE
)
SLOTS_WRITTEN = get_counter(
    "slots_written_total", "Window slots populated (sample or no-data)", _SERVICE
)
SLOT_WRITES_REJECTED = get_counter(
    "slot_writes_rejected_total",
    "Writes dropped because the slot was already populated",
    _SERVICE,
)
GAP_SLOTS = get_counter(
    "gap_slots_total", "Slots skipped between samples", _SERVICE, ("policy",)
)
MALFORMED_MESSAGES = get_counter(
    "malformed_messages_total",
    "Messages or entries ignored as malformed",
    _SERVICE,
    ("reason",),
)
WINDOWS_CREATED = get_counter(
    "windows_created_total", "Windows lazily created", _SERVICE
)
WINDOWS_EVICTED = get_counter(
    "windows_evicted_total", "Windows dropped by retention", _SERVICE
)
SUBSCRIPTIONS_OPENED = get_counter(
    "subscriptions_opened_total", "Sample source subscriptions opened", _SERVICE, ("mode",)
)
SUBSCRIPTION_FAILURES = get_counter(
    "subscription_failures_total",
    "Subscriptions that ended with a transport problem",
    _SERVICE,
    ("mode",),
)
OPEN_SUBSCRIPTIONS = get_gauge(
    "open_subscriptions", "Subscriptions currently being consumed", _SERVICE
)
SCALE_CEILING = get_gauge(
    "scale_ceiling", "Current normalization ceiling", _SERVICE, ("resource",)
)

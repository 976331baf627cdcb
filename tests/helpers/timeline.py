"""Shared timeline constants and tick builders for the unit tests."""

TICK_MS = 5000
HOUR_MS = 3_600_000
# 2024-03-09T16:00:00Z, aligned to the hour
HOUR_START = 1_710_000_000_000 // HOUR_MS * HOUR_MS
SLOTS_PER_WINDOW = HOUR_MS // TICK_MS


def full_tick(
    nice=10.0,
    user=20.0,
    sys=5.0,
    load=(0.5, 1.0, 0.75),
    total=8_000_000,
    available=6_000_000,
    swap=0.0,
    disk=500.0,
    net=(100.0, 200.0),
):
    """Absolute tick in HISTORY_METRICS order (load as 15, 1, 5 minutes)."""
    return [
        nice,
        user,
        sys,
        list(load),
        total,
        available,
        swap,
        disk,
        list(net),
    ]

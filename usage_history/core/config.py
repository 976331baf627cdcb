from typing import Literal, Optional

from pydantic import model_validator

from shared.config import BaseServiceConfig

MSEC_PER_MINUTE = 60_000


class Settings(BaseServiceConfig):
    # Sampling / windowing geometry
    history_tick_interval_ms: int = 5000
    history_window_duration_ms: int = 3_600_000  # one hour
    history_window_retention_count: int = 168  # keep last 168 windows (7d @1h)

    # Fetching
    history_initial_windows: int = 12  # initial load and each "load more" page
    history_live_tail_period_seconds: float = 60.0
    history_batch_size: int = 60  # ticks per batch message from local sources

    # Reduction
    history_cpu_count: Optional[int] = None  # divide CPU use per core when set
    history_swap_idle_threshold: float = 1.0  # pages/s
    history_swap_heavy_threshold: float = 1000.0  # pages/s

    # Dynamic scale floors for unbounded resources
    history_scale_sat_cpu: float = 4.0  # load average
    history_scale_use_disks: float = 10_000.0  # kB/s
    history_scale_use_network: float = 100_000.0  # B/s

    # Spike events
    history_event_slope_threshold: float = 0.25
    history_event_level_threshold: float = 0.8

    # Gaps where the source produced no samples
    history_gap_policy: Literal["leave", "null", "hold"] = "leave"
    history_gap_hold_max_ticks: int = 12

    # Local host sampler
    history_source: Literal["psutil", "memory"] = "psutil"
    history_current_mounts_refresh_seconds: float = 10.0

    # HTTP server
    history_http_host: str = "0.0.0.0"
    history_http_port: int = 8000

    otel_service_name: str = "usage_history"

    @model_validator(mode="after")
    def _check_geometry(self) -> "Settings":
        tick = self.history_tick_interval_ms
        window = self.history_window_duration_ms
        if tick <= 0 or window <= 0:
            raise ValueError("tick interval and window duration must be positive")
        if MSEC_PER_MINUTE % tick:
            raise ValueError(
                f"tick interval {tick}ms does not divide one minute evenly"
            )
        if window % MSEC_PER_MINUTE:
            raise ValueError(
                f"window duration {window}ms is not a whole number of minutes"
            )
        if self.history_window_retention_count <= 0:
            raise ValueError("history_window_retention_count must be positive")
        if self.history_initial_windows <= 0:
            raise ValueError("history_initial_windows must be positive")
        if self.history_live_tail_period_seconds <= 0:
            raise ValueError("history_live_tail_period_seconds must be positive")
        if self.history_cpu_count is not None and self.history_cpu_count <= 0:
            raise ValueError("history_cpu_count must be positive when set")
        return self


settings = Settings()

"""Resource usage history: windowed, normalized time series from a sparse sample feed."""

__version__ = "0.1.0"

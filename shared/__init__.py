"""Shared utilities and components for all services."""

from .config import BaseLoggingConfig, BaseServiceConfig
from .constants import Environment

__all__ = [
    "Environment",
    "BaseServiceConfig",
    "BaseLoggingConfig",
]

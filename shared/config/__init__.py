"""Shared configuration base classes.

Provides the logging settings common to every process in the repository so
service settings only declare what is specific to them.
"""

from pydantic_settings import BaseSettings


class BaseLoggingConfig(BaseSettings):
    """Common logging configuration."""

    app_log_level: str = "INFO"
    app_log_redaction_patterns: list[str] = [
        "password",
        "token",
        "secret",
        "authorization",
        "cookie",
    ]
    app_environment: str = "production"


class BaseServiceConfig(BaseLoggingConfig):
    """Base configuration for a service process.

    Services inherit from this and add their own settings. The
    otel_service_name should be overridden by each service.
    """

    otel_service_name: str = "unknown"  # Should be overridden by service


__all__ = ["BaseLoggingConfig", "BaseServiceConfig"]

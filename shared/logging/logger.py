"""Shared logger utility.

``get_logger`` hands out standard library loggers. When nothing configured
logging yet (library use, ad-hoc scripts) it installs a minimal plain-text
configuration once so early records are not lost.
"""

from __future__ import annotations

import logging

_configured = False


def get_logger(name: str, auto_configure: bool = True) -> logging.Logger:
    """Get a logger, configuring minimal logging on first use.

    Args:
        name: Logger name (usually a dotted component name)
        auto_configure: Whether to install minimal logging if unconfigured

    Returns:
        Logger instance
    """
    global _configured

    if auto_configure and not _configured:
        _configure_minimal_logging()
        _configured = True

    logger = logging.getLogger(name)
    logger.propagate = True
    return logger


def _configure_minimal_logging():
    from shared.logging.json import PLAIN_FORMAT

    logging.basicConfig(level=logging.INFO, format=PLAIN_FORMAT)


def is_configured() -> bool:
    """Check if logging has been configured."""
    return _configured


def mark_configured():
    """Mark logging as configured (called by shared.logging.json.configure_logging)."""
    global _configured
    _configured = True

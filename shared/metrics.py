"""Prometheus metric helpers.

Thin wrappers around prometheus_client primitives adding an optional service
prefix and snake_case name validation. The default registry is used unless a
registry is passed explicitly (tests pass an isolated CollectorRegistry).
"""

from __future__ import annotations

import re

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge

_NAME_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


def _validate(name: str) -> str:
    if not _NAME_RE.match(name):
        raise ValueError(
            f"Invalid metric name '{name}'. Use snake_case alphanumerics/underscores."
        )
    return name


def _prefix(name: str, service: str | None) -> str:
    if service and not name.startswith(service + "_"):
        return f"{service}_{name}"
    return name


def get_counter(
    name: str,
    documentation: str,
    service: str | None = None,
    labelnames: tuple[str, ...] = (),
    registry: CollectorRegistry = REGISTRY,
) -> Counter:
    return Counter(
        _validate(_prefix(name, service)),
        documentation,
        labelnames=labelnames,
        registry=registry,
    )


def get_gauge(
    name: str,
    documentation: str,
    service: str | None = None,
    labelnames: tuple[str, ...] = (),
    registry: CollectorRegistry = REGISTRY,
) -> Gauge:
    return Gauge(
        _validate(_prefix(name, service)),
        documentation,
        labelnames=labelnames,
        registry=registry,
    )


__all__ = ["get_counter", "get_gauge"]

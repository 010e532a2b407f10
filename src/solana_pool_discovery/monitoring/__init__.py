"""Monitoring package exports and helpers."""

from __future__ import annotations

from typing import Optional

from ..config.settings import AppConfig, get_app_config
from .logger import configure_logging, correlation_scope, get_logger
from .metrics import METRICS, MetricsRegistry


def bootstrap_observability(config: Optional[AppConfig] = None) -> MetricsRegistry:
    """Configure logging and return a fresh metrics registry for one service context."""

    app_config = config or get_app_config()
    configure_logging(app_config.monitoring)
    return MetricsRegistry()


__all__ = [
    "bootstrap_observability",
    "configure_logging",
    "correlation_scope",
    "get_logger",
    "METRICS",
    "MetricsRegistry",
]

"""Observability helpers: logging, metrics, and health checks."""

from .logging_config import configure_logging
from .metrics import (
    increment_counter,
    observe_latency,
    timed,
    record_event,
    counter_value,
    get_metrics_snapshot,
    reset_metrics,
)
from .health import check_database_health

__all__ = [
    "configure_logging",
    "increment_counter",
    "observe_latency",
    "timed",
    "record_event",
    "counter_value",
    "get_metrics_snapshot",
    "reset_metrics",
    "check_database_health",
]

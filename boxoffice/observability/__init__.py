"""Structured logging, in-process metrics and health probes."""

from .health import check_database_health, check_integrations_health
from .logging_config import configure_logging, ensure_request_id
from .metrics import (
    get_counter_value,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
    record_event,
    reset_metrics,
    set_gauge,
    timed,
)

__all__ = [
    "check_database_health",
    "check_integrations_health",
    "configure_logging",
    "ensure_request_id",
    "get_counter_value",
    "get_metrics_snapshot",
    "increment_counter",
    "observe_latency",
    "record_event",
    "reset_metrics",
    "set_gauge",
    "timed",
]

"""Observability infrastructure.

Provides structured logging and Prometheus metrics for the device-session
multiplexer, the write-through path and the HTTP/WebSocket boundary.
"""

from mikrops.infra.observability.logging import (
    CorrelationIDFilter,
    JSONFormatter,
    correlation_id_var,
    get_correlation_id,
    set_correlation_id,
    setup_logging,
)
from mikrops.infra.observability.metrics import (
    get_metrics_text,
    get_registry,
    record_auth_check,
    record_broker_publish,
    record_routeros_command,
    record_write_through,
)

__all__ = [
    # Logging
    "correlation_id_var",
    "get_correlation_id",
    "set_correlation_id",
    "CorrelationIDFilter",
    "JSONFormatter",
    "setup_logging",
    # Metrics
    "get_registry",
    "get_metrics_text",
    "record_routeros_command",
    "record_broker_publish",
    "record_write_through",
    "record_auth_check",
]

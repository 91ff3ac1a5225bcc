"""Prometheus metrics for observability.

Provides metrics collection for RouterOS commands, subscription sessions,
subscriber fan-out, the event broker and the write-through path.
"""

import logging

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

# Global registry for metrics
_registry = CollectorRegistry()


# RouterOS Connection Metrics
routeros_commands_total = Counter(
    "mikrops_routeros_commands_total",
    "Total number of RouterOS API commands",
    ["device_id", "command", "status"],
    registry=_registry,
)

routeros_command_duration_seconds = Histogram(
    "mikrops_routeros_command_duration_seconds",
    "Duration of RouterOS API commands in seconds",
    ["device_id", "command"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=_registry,
)

routeros_reconnects_total = Counter(
    "mikrops_routeros_reconnects_total",
    "Total number of RouterOS transport reconnects",
    ["device_id"],
    registry=_registry,
)

# Subscription Session Metrics
subscription_sessions_active = Gauge(
    "mikrops_subscription_sessions_active",
    "Number of live subscription sessions",
    ["kind"],
    registry=_registry,
)

subscription_restarts_total = Counter(
    "mikrops_subscription_restarts_total",
    "Total number of subscription session reopens after a broken stream",
    ["kind"],
    registry=_registry,
)

subscription_terminations_total = Counter(
    "mikrops_subscription_terminations_total",
    "Total number of subscription session terminations",
    ["kind", "reason"],
    registry=_registry,
)

subscribers_active = Gauge(
    "mikrops_subscribers_active",
    "Number of attached stream subscribers",
    ["kind"],
    registry=_registry,
)

subscriber_dropped_total = Counter(
    "mikrops_subscriber_dropped_total",
    "Total number of samples dropped for a full subscriber queue",
    ["kind"],
    registry=_registry,
)

# WebSocket Metrics
websocket_connections_active = Gauge(
    "mikrops_websocket_connections_active",
    "Number of active WebSocket stream connections",
    registry=_registry,
)

websocket_connection_duration_seconds = Histogram(
    "mikrops_websocket_connection_duration_seconds",
    "Duration of WebSocket stream connections in seconds",
    buckets=(1.0, 10.0, 60.0, 300.0, 900.0, 1800.0, 3600.0),
    registry=_registry,
)

# Event Broker Metrics
broker_publishes_total = Counter(
    "mikrops_broker_publishes_total",
    "Total number of event broker publishes",
    ["backend", "status"],
    registry=_registry,
)

# Write-Through Metrics
write_through_total = Counter(
    "mikrops_write_through_total",
    "Total number of write-through transactions",
    ["status"],
    registry=_registry,
)

write_through_compensations_total = Counter(
    "mikrops_write_through_compensations_total",
    "Total number of compensating removes issued",
    ["status"],
    registry=_registry,
)

orphaned_objects_total = Counter(
    "mikrops_orphaned_objects_total",
    "Total number of orphaned RouterOS objects by outcome",
    ["status"],
    registry=_registry,
)

# Auth Metrics
auth_checks_total = Counter(
    "mikrops_auth_checks_total",
    "Total number of authentication checks",
    ["status"],
    registry=_registry,
)


def get_registry() -> CollectorRegistry:
    """Get the metrics registry.

    Returns:
        Prometheus collector registry
    """
    return _registry


def get_metrics_text() -> str:
    """Get metrics in Prometheus text format.

    Returns:
        Metrics in Prometheus exposition format
    """
    return generate_latest(_registry).decode("utf-8")


def record_routeros_command(
    device_id: str,
    command: str,
    status: str,
    duration: float,
) -> None:
    """Record metrics for a RouterOS API command.

    Args:
        device_id: Device identifier
        command: Command path (e.g. /ppp/secret/add)
        status: success or error
        duration: Command duration in seconds
    """
    routeros_commands_total.labels(device_id=device_id, command=command, status=status).inc()
    routeros_command_duration_seconds.labels(device_id=device_id, command=command).observe(
        duration
    )


def record_routeros_reconnect(device_id: str) -> None:
    routeros_reconnects_total.labels(device_id=device_id).inc()


def record_session_started(kind: str) -> None:
    subscription_sessions_active.labels(kind=kind).inc()


def record_session_terminated(kind: str, reason: str) -> None:
    """Record a subscription session leaving the registry.

    Args:
        kind: Stream kind (traffic/log/ping)
        reason: cancelled, complete, max_restarts, failed or terminated
    """
    subscription_sessions_active.labels(kind=kind).dec()
    subscription_terminations_total.labels(kind=kind, reason=reason).inc()


def record_session_restart(kind: str) -> None:
    subscription_restarts_total.labels(kind=kind).inc()


def record_subscriber_attached(kind: str) -> None:
    subscribers_active.labels(kind=kind).inc()


def record_subscriber_detached(kind: str) -> None:
    subscribers_active.labels(kind=kind).dec()


def record_subscriber_drop(kind: str) -> None:
    subscriber_dropped_total.labels(kind=kind).inc()


def record_websocket_connection_start() -> None:
    websocket_connections_active.inc()


def record_websocket_connection_end(duration: float) -> None:
    """Record the end of a WebSocket stream connection.

    Args:
        duration: Connection duration in seconds
    """
    websocket_connections_active.dec()
    websocket_connection_duration_seconds.observe(duration)


def record_broker_publish(backend: str, success: bool) -> None:
    status = "success" if success else "error"
    broker_publishes_total.labels(backend=backend, status=status).inc()


def record_write_through(success: bool) -> None:
    status = "success" if success else "failed"
    write_through_total.labels(status=status).inc()


def record_compensation(success: bool) -> None:
    status = "success" if success else "failed"
    write_through_compensations_total.labels(status=status).inc()


def record_orphan(status: str) -> None:
    """Record an orphaned RouterOS object event.

    Args:
        status: recorded, resolved or retry_failed
    """
    orphaned_objects_total.labels(status=status).inc()


def record_auth_check(success: bool) -> None:
    status = "success" if success else "failed"
    auth_checks_total.labels(status=status).inc()


__all__ = [
    "get_registry",
    "get_metrics_text",
    "record_routeros_command",
    "record_routeros_reconnect",
    "record_session_started",
    "record_session_terminated",
    "record_session_restart",
    "record_subscriber_attached",
    "record_subscriber_detached",
    "record_subscriber_drop",
    "record_websocket_connection_start",
    "record_websocket_connection_end",
    "record_broker_publish",
    "record_write_through",
    "record_compensation",
    "record_orphan",
    "record_auth_check",
]

"""Prometheus metrics for the relay."""

from burrow.observability.metrics import (
    ACTIVE_TUNNELS,
    BYTES_TRANSFERRED,
    HTTP_REQUESTS,
    PENDING_REQUESTS,
    PROTOCOL_ERRORS,
    REQUEST_DURATION,
    TUNNEL_CONNECTIONS,
    generate_metrics,
    get_content_type,
)

__all__ = [
    "ACTIVE_TUNNELS",
    "BYTES_TRANSFERRED",
    "HTTP_REQUESTS",
    "PENDING_REQUESTS",
    "PROTOCOL_ERRORS",
    "REQUEST_DURATION",
    "TUNNEL_CONNECTIONS",
    "generate_metrics",
    "get_content_type",
]

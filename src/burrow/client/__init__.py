"""Tunnel client components."""

from burrow.client.forwarder import ForwarderConfig, LocalForwarder, error_response
from burrow.client.tunnel import ConnectionState, TunnelClient, TunnelOutcome

__all__ = [
    "ConnectionState",
    "ForwarderConfig",
    "LocalForwarder",
    "TunnelClient",
    "TunnelOutcome",
    "error_response",
]

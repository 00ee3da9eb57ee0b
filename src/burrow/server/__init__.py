"""Relay server components."""

from burrow.server.correlator import PendingRequest, RequestCorrelator
from burrow.server.registry import ClientRegistry, ConnectedClient
from burrow.server.relay import RelayServer

__all__ = [
    "ClientRegistry",
    "ConnectedClient",
    "PendingRequest",
    "RelayServer",
    "RequestCorrelator",
]

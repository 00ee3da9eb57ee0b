"""Burrow - expose a local HTTP server through a WebSocket relay."""

__version__ = "0.1.0"

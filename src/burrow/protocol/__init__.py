"""Wire protocol shared by the relay and the tunnel client."""

from .messages import (
    HOP_BY_HOP_HEADERS,
    Register,
    RegisterResponse,
    TunnelMessage,
    TunnelRequest,
    TunnelResponse,
    body_preview,
    encode_message,
    is_textual_content,
    parse_message,
)

__all__ = [
    "HOP_BY_HOP_HEADERS",
    "Register",
    "RegisterResponse",
    "TunnelMessage",
    "TunnelRequest",
    "TunnelResponse",
    "body_preview",
    "encode_message",
    "is_textual_content",
    "parse_message",
]

"""Tunnel message definitions and the JSON text-frame codec.

Every message is a single JSON document carried in one WebSocket text frame.
Bodies travel as base64 strings so binary payloads survive the round trip
unchanged; ``null`` means the message has no body.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from burrow.core.exceptions import ProtocolError

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)


class _TunnelModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        ser_json_bytes="base64",
        val_json_bytes="base64",
    )


class Register(_TunnelModel):
    """Client request to bind a subdomain to its connection."""

    type: Literal["register"] = "register"
    subdomain: str
    client_id: str = Field(alias="clientId")


class RegisterResponse(_TunnelModel):
    """Relay answer to a registration."""

    type: Literal["register_response"] = "register_response"
    success: bool
    message: str = ""
    url: str | None = None


class TunnelRequest(_TunnelModel):
    """Public HTTP request forwarded from the relay to a client."""

    type: Literal["request"] = "request"
    id: str
    method: str
    path: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes | None = None


class TunnelResponse(_TunnelModel):
    """Local server response shipped back from a client to the relay."""

    type: Literal["response"] = "response"
    id: str
    status_code: int = Field(alias="statusCode", ge=100, le=599)
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes | None = None

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        return ""


TunnelMessage = Annotated[
    Register | RegisterResponse | TunnelRequest | TunnelResponse,
    Field(discriminator="type"),
]

_message_adapter: TypeAdapter[Register | RegisterResponse | TunnelRequest | TunnelResponse] = (
    TypeAdapter(TunnelMessage)
)


def encode_message(msg: _TunnelModel) -> str:
    """Serialize a message into the text of one WebSocket frame."""
    return msg.model_dump_json(by_alias=True)


def parse_message(data: str | bytes) -> Register | RegisterResponse | TunnelRequest | TunnelResponse:
    """Parse one text frame into a typed message.

    Raises:
        ProtocolError: If the frame is binary, is not JSON, has an unknown
            ``type`` or does not match the shape for its type.
    """
    if isinstance(data, (bytes, bytearray)):
        raise ProtocolError("Binary frames are not part of the tunnel protocol")

    try:
        return _message_adapter.validate_json(data)
    except ValidationError as e:
        errors = e.errors(include_url=False)
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        detail = first.get("msg", str(e))
        raise ProtocolError(
            f"Malformed tunnel message ({location}: {detail})" if location
            else f"Malformed tunnel message ({detail})"
        ) from e


def is_textual_content(content_type: str) -> bool:
    """Whether a body with this content type is treated as text."""
    lowered = content_type.lower()
    return "json" in lowered or "text" in lowered


def body_preview(body: bytes | None, content_type: str, limit: int = 200) -> str:
    """Short printable rendering of a body for debug logs."""
    if not body:
        return ""
    if is_textual_content(content_type):
        text = body.decode("utf-8", errors="replace")
        return text if len(text) <= limit else text[:limit] + "..."
    return f"<{len(body)} bytes binary>"

"""Exception hierarchy shared by the relay and the tunnel client."""

from __future__ import annotations


class BurrowError(Exception):
    """Base class for all Burrow errors.

    Attributes:
        message: Human readable description, safe to show to the operator.
        code: Short machine readable identifier.
    """

    code = "BURROW_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ProtocolError(BurrowError):
    """A frame could not be decoded into a known tunnel message."""

    code = "PROTOCOL_ERROR"


class SubdomainTakenError(BurrowError):
    """Another live client already holds the requested subdomain."""

    code = "SUBDOMAIN_TAKEN"

    def __init__(self, subdomain: str) -> None:
        super().__init__("Subdomain already taken")
        self.subdomain = subdomain


class InvalidSubdomainError(BurrowError):
    """The requested subdomain can never be routed."""

    code = "INVALID_SUBDOMAIN"

    def __init__(self, subdomain: str) -> None:
        super().__init__("Invalid subdomain")
        self.subdomain = subdomain


class RegistrationRejectedError(BurrowError):
    """The relay answered a registration with success=false."""

    code = "REGISTRATION_REJECTED"

    def __init__(self, subdomain: str, reason: str) -> None:
        super().__init__(f"Registration for '{subdomain}' rejected: {reason}")
        self.subdomain = subdomain
        self.reason = reason


class DeliveryError(BurrowError, ConnectionError):
    """A request could not be written to the tunnel client's connection."""

    code = "DELIVERY_FAILED"


class TunnelDisconnectedError(BurrowError, ConnectionError):
    """The tunnel client went away while a request was pending."""

    code = "TUNNEL_DISCONNECTED"

    def __init__(self, message: str = "Tunnel disconnected") -> None:
        super().__init__(message)


class RequestTimeoutError(BurrowError, TimeoutError):
    """The tunnel client did not answer within the request timeout."""

    code = "REQUEST_TIMEOUT"

    def __init__(self, request_id: str, timeout: float) -> None:
        super().__init__(f"No response for request {request_id} after {timeout}s")
        self.request_id = request_id
        self.timeout = timeout


class LocalServiceError(BurrowError):
    """The local HTTP server could not be reached or did not answer."""

    code = "LOCAL_SERVICE_ERROR"

    def __init__(self, local_url: str, reason: str) -> None:
        super().__init__(f"Cannot reach local service at {local_url}: {reason}")
        self.local_url = local_url
        self.reason = reason


def format_error_for_user(error: BaseException) -> str:
    """Turn an arbitrary exception into a one-line message for the console."""
    if isinstance(error, BurrowError):
        return error.message

    text = str(error) or type(error).__name__
    lowered = text.lower()
    if "refused" in lowered:
        return "Connection refused. Is the relay server running?"
    if "ssl" in lowered or "certificate" in lowered:
        return f"TLS error: {text}"
    if isinstance(error, TimeoutError):
        return "Connection timed out."
    return text

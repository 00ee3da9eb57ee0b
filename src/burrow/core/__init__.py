"""Core."""

from .config import (
    BurrowConfig,
    ClientConfig,
    ReconnectConfig,
    RelayConfig,
    clear_config,
    get_config,
)
from .exceptions import (
    BurrowError,
    DeliveryError,
    InvalidSubdomainError,
    LocalServiceError,
    ProtocolError,
    RegistrationRejectedError,
    RequestTimeoutError,
    SubdomainTakenError,
    TunnelDisconnectedError,
    format_error_for_user,
)

__all__ = [
    # Config
    "BurrowConfig",
    "ClientConfig",
    "ReconnectConfig",
    "RelayConfig",
    "clear_config",
    "get_config",
    # Errors
    "BurrowError",
    "DeliveryError",
    "InvalidSubdomainError",
    "LocalServiceError",
    "ProtocolError",
    "RegistrationRejectedError",
    "RequestTimeoutError",
    "SubdomainTakenError",
    "TunnelDisconnectedError",
    "format_error_for_user",
]

"""Subdomain registry for connected tunnel clients."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog
from aiohttp import web

from burrow.core.exceptions import DeliveryError, InvalidSubdomainError, SubdomainTakenError

logger = structlog.get_logger()

MAX_SUBDOMAIN_LENGTH = 63


@dataclass
class ConnectedClient:
    """A live tunnel connection bound to one subdomain."""

    connection_id: str
    subdomain: str
    client_id: str
    websocket: web.WebSocketResponse
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    request_count: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def send(self, text: str) -> None:
        """Write one text frame to the client.

        Raises:
            DeliveryError: If the socket is closed or the write fails.
        """
        if self.websocket.closed:
            raise DeliveryError(f"Connection to '{self.subdomain}' is closed")
        async with self.send_lock:
            try:
                await self.websocket.send_str(text)
            except (ConnectionError, RuntimeError) as e:
                raise DeliveryError(f"Failed to send to '{self.subdomain}': {e}") from e


class ClientRegistry:
    """Maps subdomains to live tunnel connections.

    A subdomain is bound to at most one connection at a time. All mutations
    happen under a lock so that lookups never see a half-updated map.
    """

    def __init__(
        self,
        base_domain: str = "localhost",
        public_scheme: str = "http",
        public_port: int | None = None,
    ) -> None:
        self.base_domain = base_domain
        self.public_scheme = public_scheme
        self.public_port = public_port
        self._lock = threading.Lock()
        self._by_subdomain: dict[str, ConnectedClient] = {}
        self._by_connection: dict[str, ConnectedClient] = {}

    @staticmethod
    def is_valid_subdomain(subdomain: str) -> bool:
        """Whether ``subdomain`` can be the first label of a host name."""
        if not subdomain or len(subdomain) > MAX_SUBDOMAIN_LENGTH:
            return False
        if subdomain.startswith("-") or subdomain.endswith("-"):
            return False
        return all((c.isascii() and c.isalnum()) or c == "-" for c in subdomain)

    def build_url(self, subdomain: str) -> str:
        url = f"{self.public_scheme}://{subdomain}.{self.base_domain}"
        if self.public_port:
            url = f"{url}:{self.public_port}"
        return url

    def register(
        self,
        connection_id: str,
        subdomain: str,
        client_id: str,
        websocket: web.WebSocketResponse,
    ) -> tuple[ConnectedClient, str]:
        """Bind ``subdomain`` to a connection.

        A connection that registers again gives up its previous subdomain.

        Returns:
            The new client entry and its public URL.

        Raises:
            InvalidSubdomainError: If the subdomain is not a valid host label.
            SubdomainTakenError: If another connection holds the subdomain.
        """
        if not self.is_valid_subdomain(subdomain):
            raise InvalidSubdomainError(subdomain)

        with self._lock:
            holder = self._by_subdomain.get(subdomain)
            if holder is not None and holder.connection_id != connection_id:
                raise SubdomainTakenError(subdomain)

            previous = self._by_connection.pop(connection_id, None)
            if previous is not None:
                self._by_subdomain.pop(previous.subdomain, None)

            client = ConnectedClient(
                connection_id=connection_id,
                subdomain=subdomain,
                client_id=client_id,
                websocket=websocket,
            )
            self._by_subdomain[subdomain] = client
            self._by_connection[connection_id] = client

        logger.info(
            "Subdomain registered",
            subdomain=subdomain,
            connection_id=connection_id,
            client_id=client_id,
        )
        return client, self.build_url(subdomain)

    def lookup(self, subdomain: str) -> ConnectedClient | None:
        with self._lock:
            return self._by_subdomain.get(subdomain)

    def get_by_connection(self, connection_id: str) -> ConnectedClient | None:
        with self._lock:
            return self._by_connection.get(connection_id)

    def remove(self, connection_id: str) -> ConnectedClient | None:
        """Drop the binding owned by a connection. Safe to call repeatedly."""
        with self._lock:
            client = self._by_connection.pop(connection_id, None)
            if client is None:
                return None
            if self._by_subdomain.get(client.subdomain) is client:
                del self._by_subdomain[client.subdomain]

        logger.info(
            "Subdomain released",
            subdomain=client.subdomain,
            connection_id=connection_id,
        )
        return client

    def clients(self) -> list[ConnectedClient]:
        with self._lock:
            return list(self._by_subdomain.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_subdomain)

    def __contains__(self, subdomain: object) -> bool:
        with self._lock:
            return subdomain in self._by_subdomain

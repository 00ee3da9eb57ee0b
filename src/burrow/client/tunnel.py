"""Tunnel client implementation with auto-reconnect and request proxying."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from enum import Enum
from typing import Any
from uuid import uuid4

import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from burrow.client.forwarder import ForwarderConfig, LocalForwarder, error_response
from burrow.core.config import ClientConfig, ReconnectConfig
from burrow.core.exceptions import (
    LocalServiceError,
    ProtocolError,
    RegistrationRejectedError,
    format_error_for_user,
)
from burrow.protocol.messages import (
    Register,
    RegisterResponse,
    TunnelRequest,
    TunnelResponse,
    encode_message,
    parse_message,
)

logger = structlog.get_logger()


class ConnectionState(Enum):
    """Client connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    REGISTERED = "registered"
    CLOSED = "closed"


class TunnelOutcome(Enum):
    """How ``TunnelClient.run`` ended."""

    CLOSED = "closed"
    REJECTED = "rejected"
    EXHAUSTED = "exhausted"


class TunnelClient:
    """Client that keeps one tunnel open to the relay and serves its requests.

    Features:
    - Registration handshake with a fresh client id per connection
    - Linear backoff reconnection bounded by ``max_attempts``
    - Concurrent request proxying to the local service
    - Connection state hooks for monitoring
    - Graceful shutdown
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        reconnect_config: ReconnectConfig | None = None,
        forwarder: LocalForwarder | None = None,
    ) -> None:
        """Initialize tunnel client.

        Args:
            config: Relay URL, subdomain and local service settings.
            reconnect_config: Reconnection behavior configuration.
            forwarder: Local forwarder to use instead of one built from ``config``.
        """
        self.config = config or ClientConfig()
        self.reconnect_config = reconnect_config or ReconnectConfig()
        self.server_url = self.config.server_url
        self.subdomain = self.config.subdomain
        self.forwarder = forwarder or LocalForwarder(
            self.config.local_base_url,
            ForwarderConfig(
                read_timeout=self.config.local_timeout,
                verify_tls=self.config.verify_tls,
            ),
        )

        self._state = ConnectionState.DISCONNECTED
        self._websocket: Any = None
        self._url: str | None = None
        self._client_id: str | None = None
        self._running = False
        self._stop_event = asyncio.Event()
        self._reconnect_attempt = 0
        self._rejection: RegistrationRejectedError | None = None
        self._inflight: set[asyncio.Task] = set()

        self._state_hooks: list[Callable[[ConnectionState], None]] = []

        self._connections = 0
        self._requests_proxied = 0
        self._local_errors = 0

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._state

    @property
    def url(self) -> str | None:
        """Get public URL once registered."""
        return self._url

    @property
    def client_id(self) -> str | None:
        return self._client_id

    @property
    def is_registered(self) -> bool:
        return self._state == ConnectionState.REGISTERED

    @property
    def rejection(self) -> RegistrationRejectedError | None:
        """The rejection that ended the client, if any."""
        return self._rejection

    @property
    def stats(self) -> dict[str, Any]:
        """Get connection statistics."""
        return {
            "state": self._state.value,
            "subdomain": self.subdomain,
            "url": self._url,
            "connections": self._connections,
            "requests_proxied": self._requests_proxied,
            "local_errors": self._local_errors,
            "reconnect_attempts": self._reconnect_attempt,
            "in_flight": len(self._inflight),
        }

    def add_state_hook(self, hook: Callable[[ConnectionState], None]) -> None:
        """Add a hook to be called on state changes."""
        self._state_hooks.append(hook)

    def remove_state_hook(self, hook: Callable[[ConnectionState], None]) -> None:
        """Remove a state change hook."""
        if hook in self._state_hooks:
            self._state_hooks.remove(hook)

    def _set_state(self, state: ConnectionState) -> None:
        """Set state and notify hooks."""
        if self._state != state:
            old_state = self._state
            self._state = state
            logger.debug("State changed", old=old_state.value, new=state.value)
            for hook in self._state_hooks:
                try:
                    hook(state)
                except Exception as e:
                    logger.warning("State hook error", error=str(e))

    async def run(self) -> TunnelOutcome:
        """Connect, register and serve until closed, rejected or out of retries."""
        self._running = True
        self._stop_event.clear()

        try:
            while self._running:
                try:
                    await self._session()
                except RegistrationRejectedError as e:
                    logger.error(
                        "Registration rejected",
                        subdomain=e.subdomain,
                        reason=e.reason,
                    )
                    self._rejection = e
                    return TunnelOutcome.REJECTED
                except (OSError, TimeoutError, WebSocketException) as e:
                    logger.warning(
                        "Connection to relay failed",
                        server=self.server_url,
                        error=format_error_for_user(e),
                    )

                if self._state != ConnectionState.CLOSED:
                    self._set_state(ConnectionState.DISCONNECTED)
                if not self._running:
                    break

                if self._reconnect_attempt >= self.reconnect_config.max_attempts:
                    logger.error(
                        "Max reconnect attempts reached",
                        attempts=self._reconnect_attempt,
                    )
                    return TunnelOutcome.EXHAUSTED

                self._reconnect_attempt += 1
                delay = self.reconnect_config.delay_for(self._reconnect_attempt)
                logger.info(
                    "Reconnecting",
                    attempt=self._reconnect_attempt,
                    max_attempts=self.reconnect_config.max_attempts,
                    delay_sec=round(delay, 2),
                )
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)

            return TunnelOutcome.CLOSED
        finally:
            self._running = False
            self._set_state(ConnectionState.CLOSED)
            await self.forwarder.aclose()

    async def _session(self) -> None:
        """Run one connection from dial to close.

        Raises:
            RegistrationRejectedError: If the relay refuses the subdomain.
        """
        self._set_state(ConnectionState.CONNECTING)
        async with websockets.connect(
            self.server_url,
            open_timeout=self.config.connect_timeout,
            ping_interval=self.config.keepalive_interval,
            max_size=None,
        ) as ws:
            if not self._running:
                logger.debug("Closed while connecting, dropping new connection")
                return

            self._websocket = ws
            self._connections += 1
            self._client_id = str(uuid4())
            try:
                await ws.send(
                    encode_message(Register(subdomain=self.subdomain, client_id=self._client_id))
                )
                logger.debug("Registration sent", subdomain=self.subdomain, client_id=self._client_id)

                async for data in ws:
                    await self._handle_message(ws, data)
            finally:
                self._websocket = None
                await self._cancel_inflight()

        logger.warning("Connection to relay closed")

    async def _cancel_inflight(self) -> None:
        tasks = list(self._inflight)
        self._inflight.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug("Cancelled in-flight requests", count=len(tasks))

    async def _handle_message(self, ws: Any, data: str | bytes) -> None:
        """Handle incoming message from the relay."""
        try:
            message = parse_message(data)
        except ProtocolError as e:
            logger.warning("Dropped malformed frame", error=e.message)
            return

        if isinstance(message, RegisterResponse):
            if not message.success:
                raise RegistrationRejectedError(self.subdomain, message.message)
            self._url = message.url
            self._reconnect_attempt = 0
            self._set_state(ConnectionState.REGISTERED)
            logger.info("Tunnel registered", subdomain=self.subdomain, url=message.url)
        elif isinstance(message, TunnelRequest):
            task = asyncio.create_task(self._handle_request(ws, message))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
        elif isinstance(message, (Register, TunnelResponse)):
            logger.warning("Unexpected message type from relay", type=message.type)

    async def _handle_request(self, ws: Any, request: TunnelRequest) -> None:
        """Proxy one request locally and answer on the connection it came from."""
        if self._state != ConnectionState.REGISTERED:
            logger.warning("Request before registration", request_id=request.id)
            response = error_response(request.id, 503, "Tunnel not registered")
        else:
            try:
                response = await self.forwarder.forward(request)
            except LocalServiceError as e:
                self._local_errors += 1
                logger.error("Local service unavailable", request_id=request.id, error=e.message)
                response = error_response(request.id)
            except Exception:
                self._local_errors += 1
                logger.exception("Failed to proxy request", request_id=request.id)
                response = error_response(request.id)

        try:
            await ws.send(encode_message(response))
        except ConnectionClosed as e:
            logger.warning("Failed to send response", request_id=request.id, error=str(e))
            return

        self._requests_proxied += 1
        logger.info(
            f"{request.method} {request.path} {response.status_code}",
            request_id=request.id,
        )

    async def close(self) -> None:
        """Close the tunnel gracefully."""
        self._running = False
        self._stop_event.set()

        if self._websocket is not None:
            with contextlib.suppress(Exception):
                await self._websocket.close()

        self._set_state(ConnectionState.CLOSED)
        logger.info("Tunnel closed", stats=self.stats)

    async def __aenter__(self) -> TunnelClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
        await self.forwarder.aclose()

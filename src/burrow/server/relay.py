"""Relay server: public HTTP front door and tunnel connection endpoint."""

from __future__ import annotations

import asyncio
import contextlib
import time
import weakref
from uuid import uuid4

import structlog
from aiohttp import WSCloseCode, WSMsgType, web

from burrow.core.config import RelayConfig
from burrow.core.exceptions import (
    DeliveryError,
    InvalidSubdomainError,
    ProtocolError,
    RequestTimeoutError,
    SubdomainTakenError,
)
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
from burrow.protocol.messages import (
    HOP_BY_HOP_HEADERS,
    Register,
    RegisterResponse,
    TunnelRequest,
    TunnelResponse,
    body_preview,
    encode_message,
    parse_message,
)
from burrow.server.correlator import RequestCorrelator
from burrow.server.registry import ClientRegistry

logger = structlog.get_logger()

ADMIN_PREFIX = "/_burrow"

# Age past request_timeout at which the cleanup sweep fails an entry.
STALE_GRACE = 30.0


def _bucket_status(status: int) -> str:
    """Bucket HTTP status to prevent cardinality explosion."""
    if 100 <= status < 600:
        return f"{status // 100}xx"
    return "other"


def _error_response(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _clean_header_text(text: str) -> str:
    """Replace header bytes that are not valid UTF-8 with U+FFFD.

    aiohttp decodes such bytes as lone surrogates, which cannot be written
    into a JSON frame.
    """
    return text.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


class RelayServer:
    """Accepts tunnel clients over WebSocket and routes public HTTP to them.

    Every request to the listening port is one of three things:

    - an admin request under ``/_burrow/`` (health, stats, metrics),
    - a WebSocket upgrade, which opens a tunnel client connection unless it is
      addressed to the host of a live tunnel,
    - a public request, routed by the first label of its ``Host`` header.
    """

    def __init__(self, config: RelayConfig):
        self.config = config
        self.registry = ClientRegistry(
            base_domain=config.base_domain,
            public_scheme=config.public_scheme,
            public_port=config.public_port,
        )
        self.correlator = RequestCorrelator()
        self._runner: web.AppRunner | None = None
        self._websockets: weakref.WeakSet[web.WebSocketResponse] = weakref.WeakSet()
        self._shutdown_event = asyncio.Event()
        self._cleanup_task: asyncio.Task | None = None
        self._started_at = time.time()

    def create_app(self) -> web.Application:
        """Build the aiohttp application serving every route of the relay."""
        app = web.Application(client_max_size=self.config.max_body_size)
        app.router.add_get(f"{ADMIN_PREFIX}/health", self._handle_health_check)
        app.router.add_get(f"{ADMIN_PREFIX}/stats", self._handle_stats)
        app.router.add_get(f"{ADMIN_PREFIX}/metrics", self._handle_metrics)
        app.router.add_route("*", "/{path:.*}", self._dispatch)
        app.on_startup.append(self._on_startup)
        app.on_shutdown.append(self._on_shutdown)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def start(self) -> None:
        """Start listening for tunnel clients and public traffic."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()

        logger.info(
            "Relay server started",
            host=self.config.host,
            port=self.config.port,
            base_domain=self.config.base_domain,
            request_timeout=self.config.request_timeout,
        )

    async def stop(self) -> None:
        """Stop the relay server gracefully."""
        logger.info("Stopping relay server...")
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Relay server stopped")

    async def _on_startup(self, app: web.Application) -> None:
        self._shutdown_event.clear()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def _on_shutdown(self, app: web.Application) -> None:
        self._shutdown_event.set()
        for ws in list(self._websockets):
            with contextlib.suppress(Exception):
                await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Relay shutting down")
        for client in self.registry.clients():
            self.correlator.abandon_all(client.connection_id)
            self.registry.remove(client.connection_id)
        ACTIVE_TUNNELS.set(0)

    async def _on_cleanup(self, app: web.Application) -> None:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        """Periodically fail pending requests that outlived their timeout."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.sleep(self.config.cleanup_interval)
                self.correlator.expire_stale(self.config.request_timeout + STALE_GRACE)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Cleanup error", error=str(e))

    async def _dispatch(self, request: web.Request) -> web.StreamResponse:
        if web.WebSocketResponse().can_prepare(request).ok and not self._is_tunnel_host(request.host):
            return await self._handle_tunnel_connection(request)
        return await self._handle_public_request(request)

    def _is_tunnel_host(self, host: str) -> bool:
        """Whether ``host`` is the public address of a live tunnel.

        Upgrades sent to such a host belong to the tunneled app, so they are
        forwarded like any other public request.
        """
        subdomain = self._extract_subdomain(host)
        if subdomain is None:
            return False
        if host.split(":", 1)[0] != f"{subdomain}.{self.config.base_domain}":
            return False
        return self.registry.lookup(subdomain) is not None

    async def _handle_health_check(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy"})

    async def _handle_stats(self, request: web.Request) -> web.Response:
        tunnels_info = [
            {
                "subdomain": client.subdomain,
                "connection_id": client.connection_id,
                "client_id": client.client_id,
                "connected_at": client.connected_at.isoformat(),
                "request_count": client.request_count,
                "bytes_sent": client.bytes_sent,
                "bytes_received": client.bytes_received,
            }
            for client in self.registry.clients()
        ]
        return web.json_response(
            {
                "total_tunnels": len(tunnels_info),
                "pending_requests": len(self.correlator),
                "uptime": round(time.time() - self._started_at, 1),
                "request_timeout": self.config.request_timeout,
                "tunnels": tunnels_info,
            }
        )

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint."""
        ACTIVE_TUNNELS.set(len(self.registry))
        PENDING_REQUESTS.set(len(self.correlator))
        return web.Response(
            body=generate_metrics(),
            headers={"Content-Type": get_content_type()},
        )

    async def _handle_tunnel_connection(self, request: web.Request) -> web.WebSocketResponse:
        """Serve one tunnel client for the lifetime of its WebSocket."""
        ws = web.WebSocketResponse(
            heartbeat=self.config.heartbeat_interval,
            max_msg_size=self.config.max_message_size,
        )
        await ws.prepare(request)
        self._websockets.add(ws)

        connection_id = str(uuid4())
        logger.info("Tunnel client connected", connection_id=connection_id, peer=request.remote)

        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    await self._handle_tunnel_message(connection_id, ws, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        "Tunnel connection error",
                        connection_id=connection_id,
                        error=str(ws.exception()),
                    )
                    break
        except Exception as e:
            logger.error(
                "Tunnel connection failed",
                connection_id=connection_id,
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            client = self.registry.remove(connection_id)
            abandoned = self.correlator.abandon_all(connection_id)
            ACTIVE_TUNNELS.set(len(self.registry))
            logger.info(
                "Tunnel client disconnected",
                connection_id=connection_id,
                subdomain=client.subdomain if client else None,
                abandoned_requests=abandoned,
            )

        return ws

    async def _handle_tunnel_message(
        self,
        connection_id: str,
        ws: web.WebSocketResponse,
        data: str | bytes,
    ) -> None:
        """Route one frame received from a tunnel client."""
        try:
            message = parse_message(data)
        except ProtocolError as e:
            PROTOCOL_ERRORS.inc()
            logger.warning("Dropped malformed frame", connection_id=connection_id, error=e.message)
            return

        if isinstance(message, Register):
            await self._handle_registration(connection_id, ws, message)
        elif isinstance(message, TunnelResponse):
            client = self.registry.get_by_connection(connection_id)
            if client is not None and message.body:
                client.bytes_received += len(message.body)
            if not self.correlator.resolve(message.id, message, connection_id=connection_id):
                logger.debug(
                    "Discarded unmatched response",
                    connection_id=connection_id,
                    request_id=message.id,
                )
        elif isinstance(message, (RegisterResponse, TunnelRequest)):
            PROTOCOL_ERRORS.inc()
            logger.warning(
                "Unexpected message type from tunnel client",
                connection_id=connection_id,
                type=message.type,
            )

    async def _handle_registration(
        self,
        connection_id: str,
        ws: web.WebSocketResponse,
        message: Register,
    ) -> None:
        try:
            client, url = self.registry.register(
                connection_id, message.subdomain, message.client_id, ws
            )
        except (SubdomainTakenError, InvalidSubdomainError) as e:
            TUNNEL_CONNECTIONS.labels(outcome="rejected").inc()
            logger.warning(
                "Registration rejected",
                connection_id=connection_id,
                subdomain=message.subdomain,
                reason=e.message,
            )
            reply = encode_message(RegisterResponse(success=False, message=e.message))
            existing = self.registry.get_by_connection(connection_id)
            try:
                if existing is not None:
                    await existing.send(reply)
                else:
                    await ws.send_str(reply)
            except ConnectionError as send_error:
                logger.warning("Failed to send registration reply", error=str(send_error))
            return

        TUNNEL_CONNECTIONS.labels(outcome="registered").inc()
        ACTIVE_TUNNELS.set(len(self.registry))
        logger.info("Tunnel registered", subdomain=client.subdomain, url=url)
        try:
            await client.send(
                encode_message(RegisterResponse(success=True, message="Tunnel registered", url=url))
            )
        except ConnectionError as e:
            logger.warning("Failed to send registration reply", error=str(e))

    @staticmethod
    def _extract_subdomain(host: str) -> str | None:
        """First dot-separated label of a Host header, without the port."""
        if not host or host.startswith("["):
            return None
        hostname = host.split(":", 1)[0]
        label = hostname.split(".", 1)[0]
        return label or None

    @staticmethod
    def _build_forward_headers(request: web.Request) -> dict[str, str]:
        headers: dict[str, str] = {}
        for key, value in request.headers.items():
            key, value = _clean_header_text(key), _clean_header_text(value)
            if key in headers:
                headers[key] = f"{headers[key]}, {value}"
            else:
                headers[key] = value

        forwarded_for = request.remote or ""
        for key in list(headers):
            if key.lower() == "x-forwarded-for":
                forwarded_for = f"{headers.pop(key)}, {forwarded_for}"
        headers["X-Forwarded-For"] = forwarded_for.strip(", ")
        headers["X-Forwarded-Proto"] = request.scheme
        headers["X-Forwarded-Host"] = request.host
        return headers

    async def _handle_public_request(self, request: web.Request) -> web.StreamResponse:
        """Forward a public request through its tunnel and relay the answer."""
        request_start = time.time()
        subdomain = self._extract_subdomain(request.host)
        client = self.registry.lookup(subdomain) if subdomain else None

        if client is None:
            logger.debug("No tunnel for host", host=request.host, path=request.path)
            HTTP_REQUESTS.labels(method=request.method, status="4xx").inc()
            return _error_response(404, "Tunnel not found")

        body = await request.read()
        pending = self.correlator.create_pending(client.connection_id)
        client.request_count += 1
        client.bytes_sent += len(body)
        BYTES_TRANSFERRED.labels(direction="in").inc(len(body))

        logger.debug(
            "Forwarding request",
            subdomain=subdomain,
            request_id=pending.request_id,
            method=request.method,
            path=request.path_qs,
        )

        try:
            frame = encode_message(
                TunnelRequest(
                    id=pending.request_id,
                    method=request.method,
                    path=request.path_qs,
                    headers=self._build_forward_headers(request),
                    body=body or None,
                )
            )
            await client.send(frame)
        except ValueError as e:
            self.correlator.fail(
                pending.request_id, DeliveryError(f"Request cannot be encoded: {e}")
            )
        except ConnectionError as e:
            self.correlator.fail(pending.request_id, e)

        try:
            response = await self.correlator.wait(pending, self.config.request_timeout)
        except RequestTimeoutError:
            logger.warning(
                "Request timeout",
                subdomain=subdomain,
                request_id=pending.request_id,
                timeout=self.config.request_timeout,
            )
            REQUEST_DURATION.observe(time.time() - request_start)
            HTTP_REQUESTS.labels(method=request.method, status="5xx").inc()
            return _error_response(504, "Tunnel client did not respond")
        except ConnectionError as e:
            logger.warning(
                "Failed to forward request",
                subdomain=subdomain,
                request_id=pending.request_id,
                error=str(e),
            )
            REQUEST_DURATION.observe(time.time() - request_start)
            HTTP_REQUESTS.labels(method=request.method, status="5xx").inc()
            return _error_response(500, "Failed to forward request")

        response_headers = {
            key: value
            for key, value in response.headers.items()
            if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() != "content-length"
        }
        response_body = response.body or b""

        duration = time.time() - request_start
        REQUEST_DURATION.observe(duration)
        HTTP_REQUESTS.labels(
            method=request.method, status=_bucket_status(response.status_code)
        ).inc()
        BYTES_TRANSFERRED.labels(direction="out").inc(len(response_body))
        logger.debug(
            "Request relayed",
            subdomain=subdomain,
            request_id=pending.request_id,
            status=response.status_code,
            duration_ms=int(duration * 1000),
            body=body_preview(response.body, response.content_type),
        )

        return web.Response(
            status=response.status_code,
            headers=response_headers,
            body=response_body,
        )

"""Replays tunnel requests against the local HTTP server."""

from __future__ import annotations

import json
import urllib.parse
from dataclasses import dataclass

import httpx
import structlog

from burrow.core.exceptions import LocalServiceError
from burrow.protocol.messages import (
    HOP_BY_HOP_HEADERS,
    TunnelRequest,
    TunnelResponse,
    body_preview,
)

logger = structlog.get_logger()


@dataclass
class ForwarderConfig:
    """Configuration for requests to the local service.

    Attributes:
        connect_timeout: Timeout for establishing connection to local service.
        read_timeout: Timeout for reading response from local service.
            None waits indefinitely.
        write_timeout: Timeout for sending request to local service.
        pool_timeout: Timeout for getting connection from pool.
        max_connections: Maximum concurrent connections to local service.
        max_keepalive: Maximum keepalive connections to maintain.
        verify_tls: Verify the certificate of an https local service.
    """

    connect_timeout: float = 5.0
    read_timeout: float | None = 30.0
    write_timeout: float = 5.0
    pool_timeout: float = 5.0
    max_connections: int = 100
    max_keepalive: int = 20
    verify_tls: bool = True


def error_response(
    request_id: str,
    status: int = 500,
    message: str = "Internal server error",
) -> TunnelResponse:
    """Synthesized JSON error answer for a request that could not be served."""
    return TunnelResponse(
        id=request_id,
        status_code=status,
        headers={"Content-Type": "application/json"},
        body=json.dumps({"error": message}).encode(),
    )


class LocalForwarder:
    """Sends tunnel requests to ``base_url`` and packages the answers.

    Bodies are buffered in full in both directions. The response body is read
    undecoded, so a compressed body still matches its Content-Encoding header.
    """

    def __init__(self, base_url: str, config: ForwarderConfig | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.config = config or ForwarderConfig()
        self._host = urllib.parse.urlsplit(self.base_url).netloc
        self._client: httpx.AsyncClient | None = None

    def _create_http_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            connect=self.config.connect_timeout,
            read=self.config.read_timeout,
            write=self.config.write_timeout,
            pool=self.config.pool_timeout,
        )
        limits = httpx.Limits(
            max_connections=self.config.max_connections,
            max_keepalive_connections=self.config.max_keepalive,
        )
        # Redirects go back to the public caller untouched.
        return httpx.AsyncClient(
            timeout=timeout,
            limits=limits,
            follow_redirects=False,
            verify=self.config.verify_tls,
        )

    def _build_headers(self, request: TunnelRequest) -> list[tuple[bytes, bytes]]:
        # httpx encodes str headers as ASCII; pass UTF-8 bytes instead.
        headers = [
            (key.encode("utf-8"), value.encode("utf-8"))
            for key, value in request.headers.items()
            if key.lower() not in HOP_BY_HOP_HEADERS
            and key.lower() not in ("content-length", "host")
        ]
        headers.append((b"Host", self._host.encode("utf-8")))
        return headers

    async def forward(self, request: TunnelRequest) -> TunnelResponse:
        """Replay ``request`` locally and return the local server's answer.

        Raises:
            LocalServiceError: If the local server cannot be reached or
                fails mid-response.
        """
        if self._client is None:
            self._client = self._create_http_client()

        url = f"{self.base_url}{request.path}"
        logger.debug(
            "Proxying request",
            request_id=request.id,
            method=request.method,
            path=request.path,
        )

        try:
            async with self._client.stream(
                method=request.method,
                url=url,
                headers=self._build_headers(request),
                content=request.body,
            ) as resp:
                body = b"".join([chunk async for chunk in resp.aiter_raw()])
                status_code = resp.status_code
                response_headers = {
                    key: value
                    for key, value in resp.headers.items()
                    if key.lower() not in HOP_BY_HOP_HEADERS
                }
        except httpx.RequestError as e:
            reason = str(e) or type(e).__name__
            logger.warning(
                "Local service request failed",
                request_id=request.id,
                url=url,
                error=reason,
            )
            raise LocalServiceError(self.base_url, reason) from e

        response = TunnelResponse(
            id=request.id,
            status_code=status_code,
            headers=response_headers,
            body=body or None,
        )
        logger.debug(
            "Local response",
            request_id=request.id,
            status=status_code,
            body=body_preview(response.body, response.content_type),
        )
        return response

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> LocalForwarder:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

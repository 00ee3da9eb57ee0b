"""Matches forwarded requests to the responses that come back for them."""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from uuid import uuid4

import structlog

from burrow.core.exceptions import RequestTimeoutError, TunnelDisconnectedError
from burrow.protocol.messages import TunnelResponse

logger = structlog.get_logger()


@dataclass
class PendingRequest:
    """A forwarded request waiting for its response."""

    request_id: str
    connection_id: str
    future: asyncio.Future[TunnelResponse]
    created_at: float = field(default_factory=time.monotonic)

    @property
    def age(self) -> float:
        return time.monotonic() - self.created_at


class RequestCorrelator:
    """One-shot completion slots keyed by request id.

    Every pending entry ends exactly once: resolved with a response, failed
    with an error, or expired. Late and duplicate responses are ignored.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[str, PendingRequest] = {}

    def create_pending(self, connection_id: str) -> PendingRequest:
        """Allocate a fresh request id bound to a tunnel connection.

        Must be called from the event loop that will await the result.
        """
        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            request_id=str(uuid4()),
            connection_id=connection_id,
            future=loop.create_future(),
        )
        with self._lock:
            self._pending[pending.request_id] = pending
        return pending

    def _pop(self, request_id: str) -> PendingRequest | None:
        with self._lock:
            return self._pending.pop(request_id, None)

    def resolve(
        self,
        request_id: str,
        response: TunnelResponse,
        connection_id: str | None = None,
    ) -> bool:
        """Complete a pending entry with its response.

        When ``connection_id`` is given, only the connection the request was
        sent to may answer it.

        Returns:
            True if a waiting entry was completed, False otherwise.
        """
        with self._lock:
            pending = self._pending.get(request_id)
            if pending is None:
                logger.debug("Response for unknown request ignored", request_id=request_id)
                return False
            if connection_id is not None and pending.connection_id != connection_id:
                logger.warning(
                    "Response from wrong connection ignored",
                    request_id=request_id,
                    expected=pending.connection_id,
                    actual=connection_id,
                )
                return False
            del self._pending[request_id]

        if pending.future.done():
            return False
        pending.future.set_result(response)
        return True

    def fail(self, request_id: str, error: BaseException) -> bool:
        """Complete a pending entry with an error. No-op for unknown ids."""
        pending = self._pop(request_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_exception(error)
        return True

    def abandon_all(self, connection_id: str, error: BaseException | None = None) -> int:
        """Fail every entry sent over a connection that has gone away.

        Returns:
            Number of entries failed.
        """
        with self._lock:
            doomed = [p for p in self._pending.values() if p.connection_id == connection_id]
            for pending in doomed:
                del self._pending[pending.request_id]

        count = 0
        for pending in doomed:
            if not pending.future.done():
                pending.future.set_exception(error or TunnelDisconnectedError())
                count += 1
        if count:
            logger.info("Abandoned pending requests", connection_id=connection_id, count=count)
        return count

    def expire_stale(self, max_age: float) -> int:
        """Fail entries older than ``max_age`` seconds that nobody is waiting on."""
        with self._lock:
            stale = [p for p in self._pending.values() if p.age > max_age]
            for pending in stale:
                del self._pending[pending.request_id]

        for pending in stale:
            if not pending.future.done():
                pending.future.set_exception(RequestTimeoutError(pending.request_id, max_age))
        if stale:
            logger.warning("Expired stale pending requests", count=len(stale))
        return len(stale)

    async def wait(self, pending: PendingRequest, timeout: float) -> TunnelResponse:
        """Suspend until the entry completes.

        Raises:
            RequestTimeoutError: If no response arrives within ``timeout``.
            TunnelDisconnectedError: If the connection was abandoned.
        """
        try:
            return await asyncio.wait_for(pending.future, timeout)
        except TimeoutError:
            raise RequestTimeoutError(pending.request_id, timeout) from None
        finally:
            self._pop(pending.request_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._pending

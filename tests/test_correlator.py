"""Tests for request/response correlation."""

from __future__ import annotations

import asyncio

import pytest

from burrow.core.exceptions import DeliveryError, RequestTimeoutError, TunnelDisconnectedError
from burrow.protocol.messages import TunnelResponse
from burrow.server.correlator import RequestCorrelator


def _response(request_id: str, status: int = 200) -> TunnelResponse:
    return TunnelResponse(id=request_id, status_code=status, headers={}, body=b"ok")


class TestCreatePending:
    """Test allocation of pending entries."""

    @pytest.mark.asyncio
    async def test_ids_are_unique(self) -> None:
        """Test every pending entry gets its own id."""
        correlator = RequestCorrelator()
        ids = {correlator.create_pending("conn-1").request_id for _ in range(100)}
        assert len(ids) == 100
        assert len(correlator) == 100

    @pytest.mark.asyncio
    async def test_entry_tracked(self) -> None:
        """Test a new entry is pending and bound to its connection."""
        correlator = RequestCorrelator()
        pending = correlator.create_pending("conn-1")
        assert pending.request_id in correlator
        assert pending.connection_id == "conn-1"
        assert not pending.future.done()


class TestResolve:
    """Test one-shot resolution."""

    @pytest.mark.asyncio
    async def test_resolve_completes_waiter(self) -> None:
        """Test resolve hands the response to the waiter and frees the entry."""
        correlator = RequestCorrelator()
        pending = correlator.create_pending("conn-1")

        assert correlator.resolve(pending.request_id, _response(pending.request_id))

        response = await correlator.wait(pending, timeout=1.0)
        assert response.status_code == 200
        assert pending.request_id not in correlator

    @pytest.mark.asyncio
    async def test_second_resolve_is_noop(self) -> None:
        """Test a duplicate response is ignored."""
        correlator = RequestCorrelator()
        pending = correlator.create_pending("conn-1")

        assert correlator.resolve(pending.request_id, _response(pending.request_id, 200))
        assert not correlator.resolve(pending.request_id, _response(pending.request_id, 500))

        assert pending.future.result().status_code == 200

    @pytest.mark.asyncio
    async def test_unknown_id_is_noop(self) -> None:
        """Test a response for an unknown id does not raise."""
        correlator = RequestCorrelator()
        assert not correlator.resolve("nope", _response("nope"))
        assert not correlator.fail("nope", DeliveryError("gone"))

    @pytest.mark.asyncio
    async def test_response_from_other_connection_ignored(self) -> None:
        """Test only the connection that got the request may answer it."""
        correlator = RequestCorrelator()
        pending = correlator.create_pending("conn-1")

        assert not correlator.resolve(
            pending.request_id, _response(pending.request_id), connection_id="conn-2"
        )
        assert pending.request_id in correlator
        assert correlator.resolve(
            pending.request_id, _response(pending.request_id), connection_id="conn-1"
        )

    @pytest.mark.asyncio
    async def test_out_of_order_resolution(self) -> None:
        """Test responses match by id regardless of arrival order."""
        correlator = RequestCorrelator()
        first = correlator.create_pending("conn-1")
        second = correlator.create_pending("conn-1")

        correlator.resolve(second.request_id, _response(second.request_id, 202))
        correlator.resolve(first.request_id, _response(first.request_id, 201))

        assert (await correlator.wait(first, 1.0)).status_code == 201
        assert (await correlator.wait(second, 1.0)).status_code == 202


class TestFailure:
    """Test failing and abandoning entries."""

    @pytest.mark.asyncio
    async def test_fail_raises_in_waiter(self) -> None:
        """Test fail delivers the error to the waiter."""
        correlator = RequestCorrelator()
        pending = correlator.create_pending("conn-1")

        assert correlator.fail(pending.request_id, DeliveryError("socket closed"))

        with pytest.raises(DeliveryError):
            await correlator.wait(pending, timeout=1.0)
        assert len(correlator) == 0

    @pytest.mark.asyncio
    async def test_abandon_all_only_hits_one_connection(self) -> None:
        """Test abandon_all fails the entries of one connection only."""
        correlator = RequestCorrelator()
        doomed = [correlator.create_pending("conn-1") for _ in range(3)]
        survivor = correlator.create_pending("conn-2")

        assert correlator.abandon_all("conn-1") == 3

        for pending in doomed:
            with pytest.raises(TunnelDisconnectedError):
                await correlator.wait(pending, timeout=1.0)
        assert survivor.request_id in correlator
        assert len(correlator) == 1

    @pytest.mark.asyncio
    async def test_abandon_then_resolve_is_noop(self) -> None:
        """Test a late response after abandonment is ignored."""
        correlator = RequestCorrelator()
        pending = correlator.create_pending("conn-1")
        correlator.abandon_all("conn-1")

        assert not correlator.resolve(pending.request_id, _response(pending.request_id))
        with pytest.raises(TunnelDisconnectedError):
            await correlator.wait(pending, timeout=1.0)

    @pytest.mark.asyncio
    async def test_wait_times_out(self) -> None:
        """Test an unanswered entry times out and is freed."""
        correlator = RequestCorrelator()
        pending = correlator.create_pending("conn-1")

        with pytest.raises(RequestTimeoutError) as exc_info:
            await correlator.wait(pending, timeout=0.05)

        assert exc_info.value.request_id == pending.request_id
        assert len(correlator) == 0
        assert not correlator.resolve(pending.request_id, _response(pending.request_id))

    @pytest.mark.asyncio
    async def test_cancelled_waiter_frees_entry(self) -> None:
        """Test cancelling the waiter removes its entry."""
        correlator = RequestCorrelator()
        pending = correlator.create_pending("conn-1")

        task = asyncio.create_task(correlator.wait(pending, timeout=10.0))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(correlator) == 0

    @pytest.mark.asyncio
    async def test_expire_stale(self) -> None:
        """Test entries older than max_age are failed with a timeout."""
        correlator = RequestCorrelator()
        old = correlator.create_pending("conn-1")
        old.created_at -= 120
        fresh = correlator.create_pending("conn-1")

        assert correlator.expire_stale(max_age=60) == 1

        assert old.request_id not in correlator
        assert fresh.request_id in correlator
        assert isinstance(old.future.exception(), RequestTimeoutError)

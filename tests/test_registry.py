"""Tests for the subdomain registry."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from burrow.core.exceptions import DeliveryError, InvalidSubdomainError, SubdomainTakenError
from burrow.server.registry import ClientRegistry


def _fake_websocket(closed: bool = False) -> MagicMock:
    ws = MagicMock()
    ws.closed = closed
    ws.send_str = AsyncMock()
    return ws


class TestRegister:
    """Test binding subdomains to connections."""

    def test_register_returns_public_url(self) -> None:
        """Test a fresh subdomain registers and gets its URL."""
        registry = ClientRegistry(base_domain="example.com")
        client, url = registry.register("conn-1", "myapp", "client-1", _fake_websocket())
        assert url == "http://myapp.example.com"
        assert client.subdomain == "myapp"
        assert client.connection_id == "conn-1"
        assert registry.lookup("myapp") is client

    def test_url_includes_scheme_and_port(self) -> None:
        """Test public scheme and port show up in the URL."""
        registry = ClientRegistry(base_domain="example.com", public_scheme="https", public_port=8443)
        _, url = registry.register("conn-1", "api", "client-1", _fake_websocket())
        assert url == "https://api.example.com:8443"

    def test_duplicate_subdomain_rejected(self) -> None:
        """Test a second connection cannot take a live subdomain."""
        registry = ClientRegistry()
        original, _ = registry.register("conn-1", "myapp", "client-1", _fake_websocket())

        with pytest.raises(SubdomainTakenError) as exc_info:
            registry.register("conn-2", "myapp", "client-2", _fake_websocket())

        assert exc_info.value.message == "Subdomain already taken"
        assert registry.lookup("myapp") is original
        assert registry.get_by_connection("conn-2") is None
        assert len(registry) == 1

    def test_reregister_replaces_previous_binding(self) -> None:
        """Test a connection registering again moves to the new subdomain."""
        registry = ClientRegistry()
        ws = _fake_websocket()
        registry.register("conn-1", "first", "client-1", ws)
        registry.register("conn-1", "second", "client-2", ws)

        assert registry.lookup("first") is None
        assert registry.lookup("second") is not None
        assert len(registry) == 1

    def test_same_connection_same_subdomain(self) -> None:
        """Test re-registering the same subdomain on the same connection succeeds."""
        registry = ClientRegistry()
        ws = _fake_websocket()
        registry.register("conn-1", "myapp", "client-1", ws)
        client, _ = registry.register("conn-1", "myapp", "client-2", ws)
        assert client.client_id == "client-2"
        assert registry.lookup("myapp") is client

    @pytest.mark.parametrize(
        "subdomain",
        ["", "-leading", "trailing-", "has.dot", "under_score", "a" * 64, "ümlaut"],
    )
    def test_invalid_subdomain_rejected(self, subdomain: str) -> None:
        """Test subdomains that cannot be host labels are refused."""
        registry = ClientRegistry()
        with pytest.raises(InvalidSubdomainError):
            registry.register("conn-1", subdomain, "client-1", _fake_websocket())
        assert len(registry) == 0

    @pytest.mark.parametrize("subdomain", ["a", "myapp", "my-app-2", "A1", "x" * 63])
    def test_valid_subdomains(self, subdomain: str) -> None:
        """Test ordinary labels are accepted."""
        assert ClientRegistry.is_valid_subdomain(subdomain)


class TestLookupAndRemove:
    """Test routing lookups and removal."""

    def test_lookup_is_case_sensitive(self) -> None:
        """Test lookups match the label exactly."""
        registry = ClientRegistry()
        registry.register("conn-1", "myapp", "client-1", _fake_websocket())
        assert registry.lookup("MyApp") is None
        assert "myapp" in registry

    def test_lookup_unknown(self) -> None:
        """Test an unknown subdomain is not found."""
        assert ClientRegistry().lookup("ghost") is None

    def test_remove_frees_subdomain(self) -> None:
        """Test removal lets another connection claim the subdomain."""
        registry = ClientRegistry()
        registry.register("conn-1", "myapp", "client-1", _fake_websocket())

        removed = registry.remove("conn-1")

        assert removed is not None
        assert registry.lookup("myapp") is None
        client, _ = registry.register("conn-2", "myapp", "client-2", _fake_websocket())
        assert registry.lookup("myapp") is client

    def test_remove_is_idempotent(self) -> None:
        """Test removing twice, or removing an unknown id, is harmless."""
        registry = ClientRegistry()
        registry.register("conn-1", "myapp", "client-1", _fake_websocket())
        assert registry.remove("conn-1") is not None
        assert registry.remove("conn-1") is None
        assert registry.remove("never-existed") is None
        assert len(registry) == 0

    def test_clients_snapshot(self) -> None:
        """Test clients() lists every live binding."""
        registry = ClientRegistry()
        registry.register("conn-1", "one", "c1", _fake_websocket())
        registry.register("conn-2", "two", "c2", _fake_websocket())
        assert sorted(c.subdomain for c in registry.clients()) == ["one", "two"]


class TestConnectedClientSend:
    """Test writing frames to a connected client."""

    @pytest.mark.asyncio
    async def test_send_writes_text_frame(self) -> None:
        """Test send passes the text to the websocket."""
        registry = ClientRegistry()
        ws = _fake_websocket()
        client, _ = registry.register("conn-1", "myapp", "client-1", ws)

        await client.send('{"type": "request"}')

        ws.send_str.assert_awaited_once_with('{"type": "request"}')

    @pytest.mark.asyncio
    async def test_send_on_closed_socket(self) -> None:
        """Test sending to a closed socket raises DeliveryError."""
        registry = ClientRegistry()
        ws = _fake_websocket(closed=True)
        client, _ = registry.register("conn-1", "myapp", "client-1", ws)

        with pytest.raises(DeliveryError):
            await client.send("{}")
        ws.send_str.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_failure_wrapped(self) -> None:
        """Test transport errors surface as DeliveryError."""
        registry = ClientRegistry()
        ws = _fake_websocket()
        ws.send_str.side_effect = ConnectionResetError("Cannot write to closing transport")
        client, _ = registry.register("conn-1", "myapp", "client-1", ws)

        with pytest.raises(DeliveryError):
            await client.send("{}")

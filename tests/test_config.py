"""Tests for the configuration module."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from burrow.core.config import (
    BurrowConfig,
    ClientConfig,
    ReconnectConfig,
    RelayConfig,
    clear_config,
    flatten_config,
    get_config,
    load_config_from_file,
)


class TestRelayConfig:
    """Test RelayConfig settings."""

    def test_default_values(self) -> None:
        """Test default values."""
        config = RelayConfig()
        assert config.host == "0.0.0.0"
        assert config.port == 8000
        assert config.base_domain == "localhost"
        assert config.public_scheme == "http"
        assert config.public_port is None
        assert config.request_timeout == 30.0
        assert config.max_body_size == 32 * 1024 * 1024

    def test_env_override_request_timeout(self) -> None:
        """Test BURROW_REQUEST_TIMEOUT env var."""
        with patch.dict(os.environ, {"BURROW_REQUEST_TIMEOUT": "5.5"}):
            config = RelayConfig()
            assert config.request_timeout == 5.5

    def test_env_override_domain(self) -> None:
        """Test BURROW_BASE_DOMAIN and BURROW_PUBLIC_PORT env vars."""
        with patch.dict(
            os.environ,
            {"BURROW_BASE_DOMAIN": "tunnels.example.com", "BURROW_PUBLIC_PORT": "8443"},
        ):
            config = RelayConfig()
            assert config.base_domain == "tunnels.example.com"
            assert config.public_port == 8443

    @pytest.mark.parametrize("timeout", [0, -1])
    def test_request_timeout_must_be_positive(self, timeout: float) -> None:
        """Test a non-positive request timeout is refused."""
        with pytest.raises(ValidationError):
            RelayConfig(request_timeout=timeout)

    def test_invalid_port(self) -> None:
        """Test out of range ports are refused."""
        with pytest.raises(ValidationError):
            RelayConfig(port=70000)


class TestClientConfig:
    """Test ClientConfig settings."""

    def test_default_values(self) -> None:
        """Test default values."""
        config = ClientConfig()
        assert config.server_url == "ws://localhost:8000"
        assert config.subdomain == "default"
        assert config.local_port == 3000
        assert config.use_https is False
        assert config.local_url is None

    def test_env_override_subdomain(self) -> None:
        """Test BURROW_SUBDOMAIN env var."""
        with patch.dict(os.environ, {"BURROW_SUBDOMAIN": "myapp"}):
            assert ClientConfig().subdomain == "myapp"

    def test_local_base_url_http(self) -> None:
        """Test the local URL is built from host and port."""
        config = ClientConfig(local_host="127.0.0.1", local_port=5000)
        assert config.local_base_url == "http://127.0.0.1:5000"

    def test_local_base_url_https(self) -> None:
        """Test use_https switches the scheme."""
        config = ClientConfig(local_port=8443, use_https=True)
        assert config.local_base_url == "https://localhost:8443"

    def test_local_url_override(self) -> None:
        """Test an explicit local URL wins over host and port."""
        config = ClientConfig(local_port=5000, local_url="http://app.internal:9000/")
        assert config.local_base_url == "http://app.internal:9000"


class TestReconnectConfig:
    """Test ReconnectConfig settings."""

    def test_default_values(self) -> None:
        """Test default values."""
        config = ReconnectConfig()
        assert config.max_attempts == 10
        assert config.base_delay == 1.0

    def test_env_override_max_attempts(self) -> None:
        """Test BURROW_MAX_ATTEMPTS env var."""
        with patch.dict(os.environ, {"BURROW_MAX_ATTEMPTS": "3"}):
            assert ReconnectConfig().max_attempts == 3

    def test_delay_is_linear(self) -> None:
        """Test attempt N waits base_delay * N."""
        config = ReconnectConfig(base_delay=0.5)
        assert config.delay_for(1) == 0.5
        assert config.delay_for(4) == 2.0

    def test_negative_attempts_refused(self) -> None:
        """Test max_attempts cannot be negative."""
        with pytest.raises(ValidationError):
            ReconnectConfig(max_attempts=-1)


class TestConfigFiles:
    """Test loading YAML and TOML config files."""

    def test_load_yaml(self, tmp_path: Path) -> None:
        """Test a YAML file is parsed into a dict."""
        path = tmp_path / "burrow.yaml"
        path.write_text("client:\n  subdomain: myapp\n  local_port: 4000\n", encoding="utf-8")
        assert load_config_from_file(path) == {"client": {"subdomain": "myapp", "local_port": 4000}}

    def test_load_empty_yaml(self, tmp_path: Path) -> None:
        """Test an empty YAML file gives an empty dict."""
        path = tmp_path / "empty.yml"
        path.write_text("", encoding="utf-8")
        assert load_config_from_file(path) == {}

    def test_load_toml(self, tmp_path: Path) -> None:
        """Test a TOML file is parsed into a dict."""
        path = tmp_path / "burrow.toml"
        path.write_text('[reconnect]\nmax_attempts = 2\nbase_delay = 0.5\n', encoding="utf-8")
        assert load_config_from_file(path) == {"reconnect": {"max_attempts": 2, "base_delay": 0.5}}

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_config_from_file(tmp_path / "nope.yaml")

    def test_unsupported_format(self, tmp_path: Path) -> None:
        """Test unknown suffixes are refused."""
        path = tmp_path / "burrow.ini"
        path.write_text("[client]\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Unsupported config format"):
            load_config_from_file(path)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test broken YAML surfaces as ValueError."""
        path = tmp_path / "broken.yaml"
        path.write_text("client: [unclosed\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config_from_file(path)

    def test_flatten_config(self) -> None:
        """Test nested sections flatten into underscore keys."""
        flat = flatten_config({"client": {"subdomain": "a", "local_port": 1}, "verbose": True})
        assert flat == {"client_subdomain": "a", "client_local_port": 1, "verbose": True}


class TestBurrowConfig:
    """Test BurrowConfig master class."""

    def test_properties(self) -> None:
        """Test config property access."""
        config = BurrowConfig()
        assert isinstance(config.relay, RelayConfig)
        assert isinstance(config.client, ClientConfig)
        assert isinstance(config.reconnect, ReconnectConfig)

    def test_to_display_dict(self) -> None:
        """Test display dict export."""
        display = BurrowConfig().to_display_dict()

        assert set(display) == {"relay", "client", "reconnect"}
        assert display["relay"]["request_timeout"] == 30.0
        assert display["client"]["local_url"] == "http://localhost:3000"
        assert display["reconnect"]["max_attempts"] == 10


class TestGetConfig:
    """Test get_config global function."""

    def test_get_config_caches_instance(self) -> None:
        """Test get_config returns cached instance."""
        clear_config()
        assert get_config() is get_config()

    def test_clear_config_resets_cache(self) -> None:
        """Test clear_config resets cache."""
        clear_config()
        config1 = get_config()
        clear_config()
        assert get_config() is not config1

    def test_get_config_with_env_override(self) -> None:
        """Test get_config respects environment variables."""
        with patch.dict(os.environ, {"BURROW_REQUEST_TIMEOUT": "12"}):
            clear_config()
            assert get_config().relay.request_timeout == 12.0
        clear_config()

"""
Unit tests for proxy configuration.
"""

import pytest
from pydantic import ValidationError

from shared.config import ProxyConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("RPC", "PORT", "CACHE_MAX_AGE", "CACHE_DB_URL", "LOG_LEVEL", "HOST", "ENV", "SHUTDOWN_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)


class TestProxyConfig:
    """Test cases for ProxyConfig."""

    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("RPC", "https://node.example/v1/key")

        config = ProxyConfig()

        assert config.rpc == "https://node.example/v1/key"
        assert config.port == 3000
        assert config.cache_max_age == 10
        assert config.cache_max_age_ms == 10_000
        assert config.cache_db_url is None
        assert config.upstream_max_retries == 10
        assert config.upstream_initial_backoff_ms == 2000
        assert config.is_websocket is False
        assert config.shutdown_timeout == 1.0

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("RPC", "http://localhost:8545")
        monkeypatch.setenv("PORT", "8080")
        monkeypatch.setenv("CACHE_MAX_AGE", "1")
        monkeypatch.setenv("CACHE_DB_URL", "postgres://localhost/rpc")

        config = ProxyConfig()

        assert config.port == 8080
        assert config.cache_max_age_ms == 1000
        assert config.cache_db_url == "postgres://localhost/rpc"

    def test_rpc_required(self):
        with pytest.raises(ValidationError):
            ProxyConfig(_env_file=None)

    @pytest.mark.parametrize("url", ["ws://localhost:8546", "WSS://node.example/ws"])
    def test_websocket_scheme(self, url):
        assert ProxyConfig(rpc=url).is_websocket is True

    def test_unsupported_scheme(self):
        config = ProxyConfig(rpc="ftp://node.example")

        with pytest.raises(ValueError):
            config.is_websocket

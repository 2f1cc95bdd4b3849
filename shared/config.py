"""
Shared configuration management for the RPC cache proxy.
"""

from typing import Optional
from urllib.parse import urlparse

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


HTTP_SCHEMES = ("http", "https")
WEBSOCKET_SCHEMES = ("ws", "wss")


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Listener
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    # Seconds in-flight requests get after a termination signal
    shutdown_timeout: float = Field(default=1.0, gt=0)


class ProxyConfig(BaseConfig):
    """Proxy configuration, read from RPC, PORT, CACHE_MAX_AGE and friends."""

    # Upstream endpoint; the scheme selects http or websocket mode
    rpc: str

    # Cache
    cache_max_age: int = Field(default=10, ge=0)
    cache_db_url: Optional[str] = Field(default=None)

    # Upstream resilience
    upstream_timeout: float = Field(default=30.0, gt=0)
    upstream_max_retries: int = Field(default=10, ge=0)
    upstream_initial_backoff_ms: int = Field(default=2000, ge=0)

    @property
    def upstream_scheme(self) -> str:
        scheme = urlparse(self.rpc).scheme.lower()
        if scheme not in HTTP_SCHEMES + WEBSOCKET_SCHEMES:
            raise ValueError(f"Unsupported RPC url scheme: {scheme or '<none>'}")
        return scheme

    @property
    def is_websocket(self) -> bool:
        return self.upstream_scheme in WEBSOCKET_SCHEMES

    @property
    def cache_max_age_ms(self) -> int:
        return self.cache_max_age * 1000


def get_config(**overrides) -> ProxyConfig:
    """Load proxy configuration from the environment."""
    return ProxyConfig(**overrides)

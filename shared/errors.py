"""
Shared error handling for the RPC cache proxy.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class ProxyError(Exception):
    """Base exception for the proxy."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class UpstreamUnavailableError(ProxyError):
    """The upstream could not be reached after all retries.

    ``details`` carries the classification and serialized form of the last
    observed failure so it can be handed to the client unchanged.
    """

    status_code = 500

    def __init__(self, message: str = "Upstream request permanently failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("UPSTREAM_UNAVAILABLE", message, details)


class CacheStoreError(ProxyError):
    """Durable cache store errors."""

    status_code = 500

    def __init__(self, message: str = "Cache store error", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_STORE_ERROR", message, details)


class RelayError(ProxyError):
    """Websocket relay errors."""

    status_code = 502

    def __init__(self, message: str = "Websocket relay error", details: Optional[Dict[str, Any]] = None):
        super().__init__("RELAY_ERROR", message, details)

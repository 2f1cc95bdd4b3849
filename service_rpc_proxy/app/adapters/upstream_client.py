"""
Upstream JSON-RPC client with exponential backoff.
"""

import json
from typing import Any, Dict, Optional

import httpx

from shared.logging import get_logger
from shared.errors import UpstreamUnavailableError
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, retry_async


DEFAULT_MAX_RETRIES = 10
DEFAULT_INITIAL_TIMEOUT_MS = 2000

REMOTE_ERROR = "remote_error"
NO_RESPONSE = "no_response"
UNCLASSIFIED = "unclassified"


class UpstreamCallError(Exception):
    """A single failed upstream attempt.

    ``kind`` is one of ``remote_error`` (the upstream answered with an error
    status), ``no_response`` (transport failure) or ``unclassified``. The
    classification is diagnostic only; every kind is retried the same way.
    """

    def __init__(self, kind: str, detail: Dict[str, Any]):
        super().__init__(f"{kind}: {json.dumps(detail, default=str)}")
        self.kind = kind
        self.detail = detail


def classify_failure(exc: Exception, payload: Any) -> UpstreamCallError:
    """Turn an httpx/decoding failure into a classified attempt error."""
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        return UpstreamCallError(REMOTE_ERROR, {
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "body": response.text,
        })
    if isinstance(exc, httpx.RequestError):
        return UpstreamCallError(NO_RESPONSE, {
            "error": f"{type(exc).__name__}: {exc}",
            "request": payload,
        })
    return UpstreamCallError(UNCLASSIFIED, {"error": f"{type(exc).__name__}: {exc}"})


class UpstreamClient:
    """Forwards JSON-RPC payloads to the upstream over HTTP.

    One initial attempt is followed by up to ``max_retries`` retries; retry
    ``n`` (0-based) waits ``initial_timeout_ms * 2**n`` first.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_timeout_ms: int = DEFAULT_INITIAL_TIMEOUT_MS,
        timeout: float = 30.0,
        metrics: Optional[MetricsCollector] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.max_retries = max_retries
        self.initial_timeout_ms = initial_timeout_ms
        self.metrics = metrics
        self.logger = get_logger("rpc_proxy.upstream_client")
        self.retry_config = RetryConfig(
            max_attempts=max_retries + 1,
            base_delay=initial_timeout_ms / 1000,
            max_delay=None,
            exponential_base=2.0,
            jitter=False
        )
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self):
        await self._client.aclose()

    async def _attempt(self, payload: Any) -> Any:
        try:
            response = await self._client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            return response.json()
        except Exception as e:
            raise classify_failure(e, payload) from e

    def _on_failure(self, exc: Exception, attempt: int) -> None:
        kind = getattr(exc, "kind", UNCLASSIFIED)
        if kind == REMOTE_ERROR:
            self.logger.error("Upstream error response", attempt=attempt, detail=exc.detail)
        elif kind == NO_RESPONSE:
            self.logger.error("Upstream error, no response", attempt=attempt, error=exc.detail.get("error"))
        else:
            self.logger.error("Upstream error, unclassified", attempt=attempt, error=str(exc))

        if self.metrics:
            self.metrics.increment_counter("rpc_upstream_retries_total", kind=kind)

    async def call(self, payload: Any) -> Any:
        """Forward ``payload`` and return the decoded response body.

        Raises :class:`UpstreamUnavailableError` carrying the last failure
        once all attempts are exhausted.
        """
        if self.metrics is None:
            return await self._call_with_retries(payload)
        with self.metrics.time_operation("rpc_upstream_duration_seconds"):
            return await self._call_with_retries(payload)

    async def _call_with_retries(self, payload: Any) -> Any:
        try:
            return await retry_async(
                lambda: self._attempt(payload),
                self.retry_config,
                (UpstreamCallError,),
                name="upstream_call",
                on_failure=self._on_failure
            )
        except RetryError as e:
            last = e.last_exception
            self.logger.error(
                "Upstream request permanently failed",
                attempts=e.attempts,
                kind=getattr(last, "kind", UNCLASSIFIED),
                error=str(last)
            )
            raise UpstreamUnavailableError(details={
                "kind": getattr(last, "kind", UNCLASSIFIED),
                "attempts": e.attempts,
                "error": getattr(last, "detail", {"error": str(last)}),
            }) from last

"""
Per-request orchestration of duplicate throttling, caching and forwarding.
"""

import asyncio
from typing import Any, Dict, Optional, Set

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..adapters.upstream_client import UpstreamClient
from ..caching.cache_key import make_cache_key
from ..caching.cache_store import CacheStore
from ..caching.method_policy import MethodPolicy
from ..stats.collector import Counters
from ..throttling.duplicate_detector import DuplicateDetector


BATCH_KEY_PREFIX = "batch:"


class RequestCoordinator:
    """Owns the cache, duplicate detector, upstream client and counters.

    One instance per service. All state is mutated between awaits only, so
    no locking is needed on a single event loop.
    """

    def __init__(
        self,
        cache_store: CacheStore,
        duplicate_detector: DuplicateDetector,
        upstream_client: UpstreamClient,
        policy: MethodPolicy,
        *,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.cache_store = cache_store
        self.duplicate_detector = duplicate_detector
        self.upstream_client = upstream_client
        self.policy = policy
        self.metrics = metrics
        self.counters = Counters()
        self.logger = get_logger("rpc_proxy.coordinator")
        self._pending_writes: Set[asyncio.Task] = set()

    async def handle(self, payload: Any) -> Any:
        """Answer one JSON-RPC request, from cache when possible.

        Returns the response body. Raises ``UpstreamUnavailableError`` when the
        upstream could not be reached after all retries.
        """
        try:
            return await self._handle(payload)
        finally:
            self.counters.requests_total += 1

    async def _handle(self, payload: Any) -> Any:
        if isinstance(payload, dict):
            method = payload.get("method")
            params = payload.get("params")
            request_id = payload.get("id")
            cache_key = make_cache_key(str(method), params)
        else:
            # Batches and other shapes are forwarded as-is, never cached
            method = params = request_id = None
            cache_key = BATCH_KEY_PREFIX + make_cache_key("", payload)

        self.logger.info("RPC request", method=method, id=request_id)

        delay_ms = self.duplicate_detector.should_delay(cache_key)
        if delay_ms:
            self._count("rpc_duplicate_delays_total")
            await asyncio.sleep(delay_ms / 1000)

        if self.policy.is_readable(method, params):
            max_age_ms = self.policy.max_age_ms(method)
            cached = await self.cache_store.get(cache_key, max_age_ms)
            if cached is not None:
                self.counters.cache_hits += 1
                self._count("rpc_requests_total", source="cache")
                self.logger.info("RPC cached response", method=method, id=request_id)
                return {"jsonrpc": "2.0", "id": request_id, "result": cached}

        try:
            response = await self.upstream_client.call(payload)
        except Exception:
            self._count("rpc_requests_total", source="error")
            raise

        self.counters.upstream_forwards += 1
        self._count("rpc_requests_total", source="upstream")
        self.logger.info("RPC response", method=method, id=request_id)

        if isinstance(response, dict) and isinstance(payload, dict):
            if response.get("id") != request_id:
                self.logger.warning(
                    "Upstream response id differs from request id",
                    request_id=request_id,
                    response_id=response.get("id")
                )
            if "error" not in response and self.policy.should_write(method, params, response.get("result")):
                self._schedule_write(cache_key, response["result"])

        return response

    def _schedule_write(self, key: str, value: Any) -> None:
        """Write to the cache without holding up the response."""
        task = asyncio.get_running_loop().create_task(self._write(key, value))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _write(self, key: str, value: Any) -> None:
        try:
            await self.cache_store.put(key, value)
        except Exception as e:
            self.logger.error("Cache write failed", key=key, error=str(e))

    async def drain(self) -> None:
        """Wait for background cache writes scheduled so far."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    def _count(self, metric_name: str, **labels) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, **labels)

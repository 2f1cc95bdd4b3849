"""
RPC cache proxy service.

Usage: RPC=<http-url|ws-url> [PORT=<port>] [CACHE_MAX_AGE=<seconds>] rpc-cache-proxy

With an http(s) upstream, JSON-RPC requests posted to ``/`` are answered from
cache where possible, duplicates are throttled, and upstream failures are
retried with exponential backoff. With a ws(s) upstream, a websocket endpoint
at ``/`` relays messages verbatim.
"""

from typing import Any, Callable, Dict, Optional

import httpx
from fastapi import Request, WebSocket
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ProxyConfig
from .adapters.upstream_client import UpstreamClient
from .caching.cache_store import CacheStore, DurableCacheStore, MemoryCacheStore
from .caching.method_policy import MethodPolicy
from .caching.postgres_backend import PostgresCacheBackend
from .domain.request_coordinator import RequestCoordinator
from .stats.collector import StatsCollector
from .throttling.duplicate_detector import DuplicateDetector
from .ws.relay import WebSocketRelay


class RpcProxyService(BaseService):
    """JSON-RPC cache proxy service implementation."""

    def __init__(
        self,
        config: Optional[ProxyConfig] = None,
        *,
        cache_store: Optional[CacheStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        ws_connect: Optional[Callable[..., Any]] = None,
    ):
        super().__init__("rpc_proxy", config)
        self.coordinator: Optional[RequestCoordinator] = None
        self.stats: Optional[StatsCollector] = None
        self.relay: Optional[WebSocketRelay] = None
        self._stats_reported = False

        if self.config.is_websocket:
            relay_kwargs = {"connect": ws_connect} if ws_connect else {}
            self.relay = WebSocketRelay(self.config.rpc, metrics=self.metrics, **relay_kwargs)
            self._setup_websocket_routes()
        else:
            self.cache_store = cache_store or self._build_cache_store()
            upstream_client = UpstreamClient(
                self.config.rpc,
                max_retries=self.config.upstream_max_retries,
                initial_timeout_ms=self.config.upstream_initial_backoff_ms,
                timeout=self.config.upstream_timeout,
                metrics=self.metrics,
                http_client=http_client,
            )
            self.coordinator = RequestCoordinator(
                self.cache_store,
                DuplicateDetector(),
                upstream_client,
                MethodPolicy(self.config.cache_max_age_ms),
                metrics=self.metrics,
            )
            self.stats = StatsCollector(self.coordinator.counters, self.cache_store)
            self._setup_rpc_routes()

        @self.app.on_event("startup")
        async def _startup():
            self.logger.info("init", mode=self._mode, upstream=self.config.rpc)
            if self.relay:
                await self.relay.start()
            else:
                await self.cache_store.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.shutdown()

        # Expose service instance via app state for introspection/testing
        self.app.state.rpc_proxy_service = self

    @property
    def _mode(self) -> str:
        return "websocket" if self.config.is_websocket else "http"

    def _build_cache_store(self) -> CacheStore:
        """Pick the cache backing once, from configuration."""
        if self.config.cache_db_url:
            self.logger.info("Using durable cache backing")
            return DurableCacheStore(PostgresCacheBackend(self.config.cache_db_url))
        return MemoryCacheStore()

    def _setup_rpc_routes(self):
        """Set up JSON-RPC proxy routes."""

        @self.app.post("/")
        async def rpc(request: Request):
            """Proxy a JSON-RPC request."""
            try:
                payload = await request.json()
            except ValueError:
                return JSONResponse(
                    status_code=400,
                    content={"code": "INVALID_JSON", "message": "Request body must be valid JSON", "details": {}}
                )

            response = await self.coordinator.handle(payload)
            return JSONResponse(content=response)

        @self.app.get("/printstats")
        async def print_stats():
            """Log a stats snapshot and return it. Does not stop the service."""
            snapshot = await self.stats.report_full()
            return snapshot.to_dict()

    def _setup_websocket_routes(self):
        """Set up websocket relay route."""

        @self.app.websocket("/")
        async def relay(websocket: WebSocket):
            await self.relay.serve(websocket)

    async def _check_dependencies(self) -> Dict[str, Any]:
        """Report mode and backing status for /health."""
        dependencies: Dict[str, Any] = {"mode": self._mode}
        if self.relay:
            dependencies["upstream_websocket"] = "ok" if self.relay.connected else "disconnected"
        else:
            dependencies["cache_backing"] = self.cache_store.kind
            backend = getattr(self.cache_store, "backend", None)
            if backend is not None and hasattr(backend, "health_check"):
                dependencies["cache_store"] = "ok" if await backend.health_check() else "error"
        return dependencies

    def on_exit_signal(self):
        """Dump stats the moment a termination signal arrives."""
        if self.stats is None or self._stats_reported:
            return
        self._stats_reported = True
        self.stats.report()

    async def shutdown(self):
        """Report stats (unless a signal already did) and release resources."""
        if self.relay:
            await self.relay.stop()
            return

        await self.coordinator.drain()
        if not self._stats_reported:
            self._stats_reported = True
            await self.stats.report_full()
        await self.coordinator.upstream_client.close()
        await self.cache_store.stop()


def create_app():
    """Create RPC proxy application."""
    service = RpcProxyService()
    return service.app


def main():
    service = RpcProxyService()
    service.run()


if __name__ == "__main__":
    main()

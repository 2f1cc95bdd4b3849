"""
RPC cache proxy service package.

The proxy fronts a rate-limited JSON-RPC upstream, reducing forwarded calls:
- Caching: idempotent responses, TTL chosen per method class
- Throttling: duplicate bursts are delayed so they land on a cached result
- Resilience: upstream failures retried with exponential backoff

Structure:
- app.main: FastAPI app, routes, lifecycle and mode selection.
- app.caching: cache keys, method policy and cache stores.
- app.throttling: duplicate detection.
- app.adapters: upstream HTTP client.
- app.domain: request coordination.
- app.stats: counters and reporting.
- app.ws: websocket pass-through relay.
"""

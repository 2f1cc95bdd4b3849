"""
Unit tests for the request coordinator.
"""

import asyncio
import random
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from service_rpc_proxy.app.caching.cache_key import make_cache_key
from service_rpc_proxy.app.caching.cache_store import MemoryCacheStore
from service_rpc_proxy.app.caching.method_policy import MethodPolicy
from service_rpc_proxy.app.domain.request_coordinator import RequestCoordinator
from service_rpc_proxy.app.throttling.duplicate_detector import DuplicateDetector
from shared.errors import UpstreamUnavailableError
from shared.metrics import MetricsCollector


REAL_SLEEP = asyncio.sleep
BLOCK_HASH = "0x" + "cd" * 32


class FakeClock:
    """Millisecond clock shared by the cache and the duplicate detector."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance_seconds(self, seconds: float):
        self.now += int(seconds * 1000)


def rpc(method, params=None, request_id=1):
    return {"jsonrpc": "2.0", "method": method, "params": params if params is not None else [], "id": request_id}


class TestRequestCoordinator:
    """Test cases for RequestCoordinator."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def results(self):
        """Upstream result per method; tests may override."""
        return {
            "eth_chainId": "0x1",
            "net_version": "1",
            "eth_blockNumber": "0x10",
            "eth_call": "0xfeed",
            "eth_getTransactionReceipt": None,
            "eth_sendRawTransaction": "0xtxhash",
        }

    @pytest.fixture
    def upstream(self, results):
        client = MagicMock()
        client.call = AsyncMock(side_effect=lambda payload: {
            "jsonrpc": "2.0",
            "id": payload["id"],
            "result": results[payload["method"]],
        })
        return client

    @pytest.fixture
    def store(self, clock):
        return MemoryCacheStore(clock=clock)

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("rpc_proxy")

    @pytest.fixture
    def coordinator(self, clock, store, upstream, metrics):
        return RequestCoordinator(
            store,
            DuplicateDetector(clock=clock, rng=random.Random(3)),
            upstream,
            MethodPolicy(volatile_max_age_ms=1000),
            metrics=metrics,
        )

    @pytest.fixture
    def delays(self):
        """Patch the throttle sleep; record delays and yield to the loop."""
        recorded = []

        async def fake_sleep(seconds):
            recorded.append(seconds)
            await REAL_SLEEP(0)

        with patch("service_rpc_proxy.app.domain.request_coordinator.asyncio.sleep", side_effect=fake_sleep):
            yield recorded

    @pytest.mark.asyncio
    async def test_miss_forwards_verbatim(self, coordinator, upstream):
        payload = rpc("eth_blockNumber")

        response = await coordinator.handle(payload)

        upstream.call.assert_awaited_once_with(payload)
        assert response == {"jsonrpc": "2.0", "id": 1, "result": "0x10"}
        assert coordinator.counters.upstream_forwards == 1
        assert coordinator.counters.requests_total == 1

    @pytest.mark.asyncio
    async def test_chain_id_twice_in_quick_succession(self, coordinator, upstream, delays):
        """One upstream call, the second answer is delayed and served from cache."""
        first = await coordinator.handle(rpc("eth_chainId", request_id=1))
        await coordinator.drain()
        second = await coordinator.handle(rpc("eth_chainId", request_id=2))

        assert upstream.call.await_count == 1
        assert first["result"] == second["result"] == "0x1"
        assert second == {"jsonrpc": "2.0", "id": 2, "result": "0x1"}
        assert len(delays) == 1
        assert 0.5 <= delays[0] < 1.5
        assert coordinator.counters.cache_hits == 1

    @pytest.mark.asyncio
    async def test_duplicate_burst_reaches_upstream_once(self, coordinator, upstream, delays):
        """N concurrent duplicates: one forward, N-1 delayed cache hits."""
        responses = await asyncio.gather(*[
            coordinator.handle(rpc("eth_chainId", request_id=n)) for n in range(5)
        ])

        assert upstream.call.await_count == 1
        assert [r["id"] for r in responses] == list(range(5))
        assert all(r["result"] == "0x1" for r in responses)
        assert len(delays) == 4
        assert all(0.5 <= d < 1.5 for d in delays)
        assert coordinator.counters.cache_hits == 4
        assert coordinator.counters.requests_total == 5

    @pytest.mark.asyncio
    async def test_immutable_hit_long_after_write(self, coordinator, upstream, clock):
        await coordinator.handle(rpc("net_version"))
        await coordinator.drain()
        clock.advance_seconds(10)  # 10x the configured TTL

        response = await coordinator.handle(rpc("net_version", request_id=9))

        assert upstream.call.await_count == 1
        assert response == {"jsonrpc": "2.0", "id": 9, "result": "1"}

    @pytest.mark.asyncio
    async def test_volatile_entry_expires(self, coordinator, upstream, clock, results):
        """eth_blockNumber with TTL 1s called at t=0 and t=2 hits upstream twice."""
        await coordinator.handle(rpc("eth_blockNumber"))
        await coordinator.drain()
        clock.advance_seconds(2)
        results["eth_blockNumber"] = "0x11"

        response = await coordinator.handle(rpc("eth_blockNumber", request_id=2))

        assert upstream.call.await_count == 2
        assert response["result"] == "0x11"

    @pytest.mark.asyncio
    async def test_volatile_entry_served_within_ttl(self, coordinator, upstream, clock):
        await coordinator.handle(rpc("eth_blockNumber"))
        await coordinator.drain()
        clock.advance_seconds(1)

        await coordinator.handle(rpc("eth_blockNumber", request_id=2))

        assert upstream.call.await_count == 1

    @pytest.mark.asyncio
    async def test_cached_value_matches_forwarded_value(self, coordinator, store, clock, results):
        """The value read back from cache equals what the client first received."""
        results["eth_chainId"] = {"nested": ["0x1", {"a": None}]}
        forwarded = await coordinator.handle(rpc("eth_chainId"))
        await coordinator.drain()
        clock.advance_seconds(5)

        cached = await coordinator.handle(rpc("eth_chainId", request_id=2))

        assert cached["result"] == forwarded["result"]
        assert store.entries()[make_cache_key("eth_chainId", [])].value == forwarded["result"]

    @pytest.mark.asyncio
    async def test_null_receipt_not_cached(self, coordinator, upstream, clock, store):
        params = ["0x" + "11" * 32]
        await coordinator.handle(rpc("eth_getTransactionReceipt", params))
        await coordinator.drain()
        clock.advance_seconds(2)

        await coordinator.handle(rpc("eth_getTransactionReceipt", params, request_id=2))

        assert upstream.call.await_count == 2
        assert store.entries() == {}

    @pytest.mark.asyncio
    async def test_mined_receipt_cached(self, coordinator, upstream, clock, results):
        results["eth_getTransactionReceipt"] = {"status": "0x1"}
        params = ["0x" + "11" * 32]
        await coordinator.handle(rpc("eth_getTransactionReceipt", params))
        await coordinator.drain()
        clock.advance_seconds(3600)

        response = await coordinator.handle(rpc("eth_getTransactionReceipt", params, request_id=2))

        assert upstream.call.await_count == 1
        assert response["result"] == {"status": "0x1"}

    @pytest.mark.asyncio
    async def test_call_pinned_by_block_hash_is_cached(self, coordinator, upstream, clock):
        params = [{"to": "0x1", "data": "0x70a08231"}, {"blockHash": BLOCK_HASH}]
        await coordinator.handle(rpc("eth_call", params))
        await coordinator.drain()
        clock.advance_seconds(2)

        response = await coordinator.handle(rpc("eth_call", params, request_id=2))

        assert upstream.call.await_count == 1
        assert response == {"jsonrpc": "2.0", "id": 2, "result": "0xfeed"}

    @pytest.mark.asyncio
    async def test_call_at_latest_is_not_cached(self, coordinator, upstream, clock):
        params = [{"to": "0x1", "data": "0x70a08231"}, "latest"]
        await coordinator.handle(rpc("eth_call", params))
        await coordinator.drain()
        clock.advance_seconds(2)

        await coordinator.handle(rpc("eth_call", params, request_id=2))

        assert upstream.call.await_count == 2

    @pytest.mark.asyncio
    async def test_uncacheable_method_always_forwarded(self, coordinator, upstream, clock, store):
        await coordinator.handle(rpc("eth_sendRawTransaction", ["0xdead"]))
        await coordinator.drain()
        clock.advance_seconds(2)
        await coordinator.handle(rpc("eth_sendRawTransaction", ["0xdead"], request_id=2))

        assert upstream.call.await_count == 2
        assert store.entries() == {}

    @pytest.mark.asyncio
    async def test_error_response_not_cached(self, coordinator, upstream, clock, store):
        upstream.call = AsyncMock(return_value={
            "jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "header not found"}
        })

        response = await coordinator.handle(rpc("eth_chainId"))
        await coordinator.drain()

        assert response["error"]["code"] == -32000
        assert store.entries() == {}

    @pytest.mark.asyncio
    async def test_upstream_failure_propagates(self, coordinator, upstream, store, metrics):
        upstream.call = AsyncMock(side_effect=UpstreamUnavailableError(details={"kind": "no_response"}))

        with pytest.raises(UpstreamUnavailableError):
            await coordinator.handle(rpc("eth_chainId"))
        await coordinator.drain()

        assert coordinator.counters.requests_total == 1
        assert coordinator.counters.upstream_forwards == 0
        assert store.entries() == {}
        assert metrics.registry.get_sample_value("rpc_requests_total", {"source": "error"}) == 1.0

    @pytest.mark.asyncio
    async def test_differing_upstream_id_forwarded_unchanged(self, coordinator, upstream):
        upstream.call = AsyncMock(return_value={"jsonrpc": "2.0", "id": 99, "result": "0x1"})

        response = await coordinator.handle(rpc("eth_chainId", request_id=1))

        assert response["id"] == 99

    @pytest.mark.asyncio
    async def test_batch_forwarded_uncached(self, coordinator, upstream, store):
        batch = [rpc("eth_chainId", request_id=1), rpc("net_version", request_id=2)]
        upstream.call = AsyncMock(return_value=[{"id": 1, "result": "0x1"}, {"id": 2, "result": "1"}])

        response = await coordinator.handle(batch)
        await coordinator.drain()

        upstream.call.assert_awaited_once_with(batch)
        assert response == [{"id": 1, "result": "0x1"}, {"id": 2, "result": "1"}]
        assert store.entries() == {}

    @pytest.mark.asyncio
    async def test_cache_write_does_not_block_response(self, clock, upstream):
        """The response returns before a slow cache write completes."""
        write_started = asyncio.Event()
        release_write = asyncio.Event()

        class SlowStore(MemoryCacheStore):
            async def put(self, key, value):
                write_started.set()
                await release_write.wait()
                await super().put(key, value)

        store = SlowStore(clock=clock)
        coordinator = RequestCoordinator(
            store, DuplicateDetector(clock=clock), upstream, MethodPolicy(1000)
        )

        response = await coordinator.handle(rpc("eth_chainId"))
        assert response["result"] == "0x1"
        assert store.entries() == {}

        await write_started.wait()
        release_write.set()
        await coordinator.drain()
        assert make_cache_key("eth_chainId", []) in store.entries()

"""
Request counters and stats reporting.
"""

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from shared.logging import get_logger
from ..caching.cache_store import CacheStore


@dataclass
class Counters:
    """Process-lifetime request counters. Only ever incremented."""
    requests_total: int = 0
    upstream_forwards: int = 0
    cache_hits: int = 0


@dataclass
class StatsSnapshot:
    """Point-in-time view of the counters and cache entries."""
    requests_total: int
    upstream_forwards: int
    cache_hits: int
    cache_backing: str
    entries: Dict[str, Dict[str, int]] = field(default_factory=dict)
    entry_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class StatsCollector:
    """Builds and reports snapshots of the coordinator's counters."""

    def __init__(self, counters: Counters, cache_store: CacheStore, entry_count_timeout: float = 2.0):
        self.counters = counters
        self.cache_store = cache_store
        self.entry_count_timeout = entry_count_timeout
        self.logger = get_logger("rpc_proxy.stats")

    def snapshot(self) -> StatsSnapshot:
        """Counters plus per-key read/write counts where the backing has them."""
        entries = {
            key: {"reads": entry.read_count, "writes": entry.write_count}
            for key, entry in self.cache_store.entries().items()
        }
        return StatsSnapshot(
            requests_total=self.counters.requests_total,
            upstream_forwards=self.counters.upstream_forwards,
            cache_hits=self.counters.cache_hits,
            cache_backing=self.cache_store.kind,
            entries=entries,
            entry_count=len(entries) if self.cache_store.kind == "memory" else None,
        )

    async def entry_count(self) -> Optional[int]:
        """Ask the backing for its entry count. Best effort; None on failure."""
        try:
            return await asyncio.wait_for(self.cache_store.entry_count(), timeout=self.entry_count_timeout)
        except Exception as e:
            self.logger.warning("Could not count cache entries", error=str(e) or type(e).__name__)
            return None

    def report(self, snapshot: Optional[StatsSnapshot] = None) -> StatsSnapshot:
        """Log a snapshot and return it."""
        snapshot = snapshot or self.snapshot()
        self.logger.info(
            "stats",
            requests_processed=snapshot.requests_total,
            upstream_responses=snapshot.upstream_forwards,
            cached_responses=snapshot.cache_hits,
            cache_backing=snapshot.cache_backing,
            entry_count=snapshot.entry_count,
        )
        for key, counts in snapshot.entries.items():
            self.logger.info("cache entry stats", key=key, reads=counts["reads"], writes=counts["writes"])
        return snapshot

    async def report_full(self) -> StatsSnapshot:
        """Report including the backing's entry count."""
        snapshot = self.snapshot()
        if snapshot.entry_count is None:
            snapshot.entry_count = await self.entry_count()
        return self.report(snapshot)

"""
Cache stores for JSON-RPC results.

Two backings share one interface and exactly one is chosen at startup:

- :class:`MemoryCacheStore` keeps entries in a dict for the process lifetime
  and tracks per-entry read/write counts.
- :class:`DurableCacheStore` persists entries through a row backend so they
  survive restarts. It keeps no per-entry instrumentation.

Freshness: an entry is served iff ``now - written_at <= max_age_ms``.
A stored ``None`` is never served.
"""

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from shared.logging import get_logger


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CacheEntry:
    """A cached value with its write timestamp (ms) and access counts."""
    value: Any
    written_at: int
    read_count: int = 0
    write_count: int = 1


def is_fresh(written_at: float, max_age_ms: float, now: float) -> bool:
    if max_age_ms == math.inf:
        return True
    return now - written_at <= max_age_ms


class CacheStore(ABC):
    """Interface shared by the cache backings."""

    kind = "abstract"

    @abstractmethod
    async def get(self, key: str, max_age_ms: float) -> Optional[Any]:
        """Return the cached value if present, fresh and not null."""

    @abstractmethod
    async def put(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``, replacing any prior entry."""

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    def entries(self) -> Dict[str, CacheEntry]:
        """Per-key entries, where the backing tracks them."""
        return {}

    async def entry_count(self) -> int:
        return len(self.entries())


class MemoryCacheStore(CacheStore):
    """Process-local dict backing."""

    kind = "memory"

    def __init__(self, clock: Callable[[], float] = now_ms):
        self.clock = clock
        self.logger = get_logger("rpc_proxy.cache.memory")
        self._entries: Dict[str, CacheEntry] = {}

    async def get(self, key: str, max_age_ms: float) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None or entry.value is None:
            return None

        if not is_fresh(entry.written_at, max_age_ms, self.clock()):
            self.logger.debug("Cached entry skipped, too old", key=key, max_age_ms=max_age_ms)
            return None

        entry.read_count += 1
        return entry.value

    async def put(self, key: str, value: Any) -> None:
        previous = self._entries.get(key)
        written_at = int(self.clock())
        if previous is not None:
            # Keep written_at non-decreasing even if the wall clock steps back
            written_at = max(written_at, previous.written_at)

        self._entries[key] = CacheEntry(
            value=value,
            written_at=written_at,
            read_count=previous.read_count if previous else 0,
            write_count=previous.write_count + 1 if previous else 1,
        )
        self.logger.debug("Wrote cache entry", key=key, write_count=self._entries[key].write_count)

    def entries(self) -> Dict[str, CacheEntry]:
        return dict(self._entries)

    async def entry_count(self) -> int:
        return len(self._entries)


class CacheBackend(Protocol):
    """Durable row store contract."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def get(self, key: str) -> Optional[Any]: ...

    async def put(self, key: str, value: Any, written_at: int) -> None: ...

    async def count(self) -> int: ...


class DurableCacheStore(CacheStore):
    """Cache store persisted through a row backend.

    Backend failures are logged and recovered locally: a failed read is a
    miss, a failed write is lost.
    """

    kind = "durable"

    def __init__(self, backend: CacheBackend, clock: Callable[[], float] = now_ms):
        self.backend = backend
        self.clock = clock
        self.logger = get_logger("rpc_proxy.cache.durable")

    async def start(self) -> None:
        await self.backend.start()

    async def stop(self) -> None:
        await self.backend.stop()

    async def get(self, key: str, max_age_ms: float) -> Optional[Any]:
        try:
            row = await self.backend.get(key)
        except Exception as e:
            self.logger.error("Cache read failed, treating as miss", key=key, error=str(e))
            return None

        if row is None or row.value is None:
            return None

        if not is_fresh(row.written_at, max_age_ms, self.clock()):
            self.logger.debug("Cached entry skipped, too old", key=key, max_age_ms=max_age_ms)
            return None

        return row.value

    async def put(self, key: str, value: Any) -> None:
        try:
            await self.backend.put(key, value, int(self.clock()))
        except Exception as e:
            self.logger.error("Cache write failed, entry lost", key=key, error=str(e))

    async def entry_count(self) -> int:
        return await self.backend.count()

"""
PostgreSQL backing for the durable cache store.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional

import asyncpg

from shared.logging import get_logger
from shared.errors import CacheStoreError


@dataclass
class CacheRow:
    """A persisted cache entry."""
    key: str
    value: Any
    written_at: int


class PostgresCacheBackend:
    """Row store for cached RPC results.

    Errors from ``get``/``put``/``count`` propagate; recovering from them is
    the caller's job.
    """

    def __init__(self, dsn: str, table: str = "rpc_cache"):
        self.dsn = dsn
        self.table = table
        self.logger = get_logger("rpc_proxy.cache.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the connection pool and create the table if needed."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=1,
                max_size=10,
                command_timeout=30
            )
            await self._create_tables()
            self.logger.info("PostgreSQL cache backend started", table=self.table)

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL cache backend", error=str(e))
            raise CacheStoreError("Failed to start PostgreSQL cache backend", details={"error": str(e)})

    async def stop(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL cache backend stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    written_at BIGINT NOT NULL
                );
            """)

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise CacheStoreError("PostgreSQL cache backend is not started")
        return self.pool

    async def get(self, key: str) -> Optional[CacheRow]:
        """Fetch the row for ``key``, or None if absent."""
        async with self._require_pool().acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT key, value, written_at FROM {self.table} WHERE key = $1",
                key
            )
        if row is None:
            return None
        return CacheRow(key=row["key"], value=json.loads(row["value"]), written_at=row["written_at"])

    async def put(self, key: str, value: Any, written_at: int) -> None:
        """Insert or replace the row for ``key``; ``written_at`` never moves backwards."""
        async with self._require_pool().acquire() as conn:
            await conn.execute(f"""
                INSERT INTO {self.table} (key, value, written_at)
                VALUES ($1, $2, $3)
                ON CONFLICT (key) DO UPDATE SET
                    value = EXCLUDED.value,
                    written_at = GREATEST({self.table}.written_at, EXCLUDED.written_at)
            """, key, json.dumps(value), written_at)

    async def count(self) -> int:
        """Number of persisted entries."""
        async with self._require_pool().acquire() as conn:
            return await conn.fetchval(f"SELECT COUNT(*) FROM {self.table}")

    async def health_check(self) -> bool:
        try:
            async with self._require_pool().acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception:
            return False

"""
Cache Service

Small TTL key/value store on SQLite (aiosqlite).  Values are JSON; expired
rows read as misses and are deleted on the way.  Writes are INSERT OR
REPLACE, so concurrent writers for the same key simply last-writer-win.

Callers treat the cache as best-effort: every public method may raise
CacheError and the extractor logs and carries on.
"""
import hashlib
import json
import logging
import time
from typing import Any, Optional

import aiosqlite

from db.database import connect, init_db

logger = logging.getLogger("receiptlens.cache")

KEY_PREFIX = "ai:receipt:image"
PURGE_INTERVAL = 3600   # seconds between opportunistic purges from set()


class CacheError(Exception):
    """Raised when the cache store cannot be read or written."""
    pass


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def receipt_cache_key(image_bytes: bytes, locale: str) -> str:
    return f"{KEY_PREFIX}:{locale}:{content_hash(image_bytes)}"


class SQLiteCache:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._initialized = False
        self._last_purge = time.time()

    async def _ensure_schema(self):
        if not self._initialized:
            await init_db(self.db_path)
            self._initialized = True

    async def get(self, key: str) -> Optional[Any]:
        try:
            await self._ensure_schema()
            async with connect(self.db_path) as db:
                async with db.execute(
                    "SELECT value, expires_at FROM cache_entries WHERE key = ?", (key,)
                ) as cur:
                    row = await cur.fetchone()
                if row is None:
                    return None
                value, expires_at = row
                if expires_at <= time.time():
                    await db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                    await db.commit()
                    return None
            return json.loads(value)
        except (aiosqlite.Error, OSError, ValueError) as e:
            raise CacheError(f"cache get failed: {e}") from e

    async def set(self, key: str, value: Any, ttl_seconds: int):
        try:
            payload = json.dumps(value)
            await self._ensure_schema()
            async with connect(self.db_path) as db:
                await db.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, payload, time.time() + ttl_seconds),
                )
                await db.commit()
        except (aiosqlite.Error, OSError, TypeError, ValueError) as e:
            raise CacheError(f"cache set failed: {e}") from e
        if time.time() - self._last_purge >= PURGE_INTERVAL:
            await self.purge_expired()

    async def delete(self, key: str):
        try:
            await self._ensure_schema()
            async with connect(self.db_path) as db:
                await db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                await db.commit()
        except (aiosqlite.Error, OSError) as e:
            raise CacheError(f"cache delete failed: {e}") from e

    async def purge_expired(self) -> int:
        """Delete every expired row; returns how many were removed."""
        self._last_purge = time.time()
        try:
            await self._ensure_schema()
            async with connect(self.db_path) as db:
                cur = await db.execute(
                    "DELETE FROM cache_entries WHERE expires_at <= ?", (time.time(),)
                )
                await db.commit()
                removed = cur.rowcount
        except (aiosqlite.Error, OSError) as e:
            raise CacheError(f"cache purge failed: {e}") from e
        if removed:
            logger.info("Purged %d expired cache entries", removed)
        return removed

import logging
import aiosqlite
import os

logger = logging.getLogger("receiptlens.db")
DB_PATH = os.environ.get("CACHE_DB_PATH", "/data/receiptlens.db")


def connect(db_path: str | None = None) -> aiosqlite.Connection:
    """Open (lazily, on await / async with) a connection to the cache database."""
    return aiosqlite.connect(db_path or DB_PATH)


async def init_db(db_path: str | None = None):
    """Create all tables if they don't exist."""
    path = db_path or DB_PATH
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    async with connect(path) as db:
        await db.executescript(SCHEMA)
        await db.commit()
    logger.info("Initialized at %s", path)


SCHEMA = """
-- ── Extraction cache (content hash → reconciled receipt JSON) ──────────────
CREATE TABLE IF NOT EXISTS cache_entries (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,              -- JSON
    expires_at  REAL NOT NULL,              -- unix epoch seconds
    created_at  TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_cache_entries_expires ON cache_entries(expires_at);
"""

"""SQLite file backing the chart cache and the per-mode bearer tokens.

The chart tables are a cache: everything in them can be fetched again from
the broker. A schema version change therefore drops and recreates them
instead of migrating rows. The credentials table survives version changes so
a restart does not spend a token issuance.
"""

import os
from typing import Self

import aiosqlite

from tickersync.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 2

_CACHE_TABLES = ("chart_points", "chart_entries")

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS credentials (
    mode TEXT PRIMARY KEY,
    token TEXT NOT NULL,
    issued_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS chart_entries (
    symbol TEXT PRIMARY KEY,
    last_updated TEXT NOT NULL,
    base_price TEXT,
    gap_repaired_on TEXT
);

CREATE TABLE IF NOT EXISTS chart_points (
    symbol TEXT NOT NULL REFERENCES chart_entries(symbol) ON DELETE CASCADE,
    trade_date TEXT NOT NULL,
    time_of_day TEXT NOT NULL,
    price TEXT NOT NULL,
    PRIMARY KEY (symbol, trade_date, time_of_day)
);

CREATE INDEX IF NOT EXISTS idx_chart_entries_updated ON chart_entries(last_updated);
"""


class SyncDatabase:
    """Owns the aiosqlite connection.

    Usage:
        async with SyncDatabase("data/tickersync.db") as database:
            store = SyncStore(database)
    """

    def __init__(self, db_path: str = "data/tickersync.db") -> None:
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("SyncDatabase is not open; call connect() first")
        return self._conn

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    async def connect(self) -> None:
        parent = os.path.dirname(self._db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        conn = await aiosqlite.connect(self._db_path)
        # WAL lets API reads proceed while a backfill is writing
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA synchronous=NORMAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute("PRAGMA busy_timeout=5000")
        self._conn = conn

        await self._migrate()
        logger.info("sync_db_connected", db_path=self._db_path, schema=SCHEMA_VERSION)

    async def close(self) -> None:
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None
        logger.info("sync_db_closed", db_path=self._db_path)

    async def _migrate(self) -> None:
        conn = self.db
        await conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
        cursor = await conn.execute("SELECT MAX(version) FROM schema_version")
        row = await cursor.fetchone()
        stored = row[0] if row else None

        if stored is not None and stored != SCHEMA_VERSION:
            for table in _CACHE_TABLES:
                await conn.execute(f"DROP TABLE IF EXISTS {table}")
            logger.warning("chart_cache_schema_reset", old=stored, new=SCHEMA_VERSION)

        await conn.executescript(_SCHEMA_SQL)
        if stored != SCHEMA_VERSION:
            await conn.execute("DELETE FROM schema_version")
            await conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        await conn.commit()

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()

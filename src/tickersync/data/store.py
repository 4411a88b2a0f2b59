"""Typed SQLite read/write abstraction for chart entries and credentials.

All SQL is isolated behind SyncStore. Prices are stored as TEXT and restored
as Decimal on read.
"""

from decimal import Decimal

from tickersync.data.database import SyncDatabase
from tickersync.logging import get_logger
from tickersync.models import ChartCacheEntry, ChartPoint, Credential, TradingMode

logger = get_logger(__name__)


class SyncStore:
    """Async SQLite store for chart cache entries and bearer tokens.

    Implements the credential store protocol used by TokenManager.
    """

    def __init__(self, database: SyncDatabase) -> None:
        self._database = database

    # ──────────────────────────────────────────────
    # Chart entries
    # ──────────────────────────────────────────────

    async def load_entry(self, symbol: str) -> ChartCacheEntry | None:
        """Return the entry with its points in chronological order, or None."""
        cursor = await self._database.db.execute(
            "SELECT last_updated, base_price, gap_repaired_on "
            "FROM chart_entries WHERE symbol = ?",
            (symbol,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        last_updated, base_price, gap_repaired_on = row
        return ChartCacheEntry(
            symbol=symbol,
            last_updated=last_updated,
            base_price=Decimal(base_price) if base_price is not None else None,
            gap_repaired_on=gap_repaired_on,
            points=await self.load_points(symbol),
        )

    async def load_points(self, symbol: str) -> list[ChartPoint]:
        cursor = await self._database.db.execute(
            "SELECT price, trade_date, time_of_day FROM chart_points "
            "WHERE symbol = ? ORDER BY trade_date ASC, time_of_day ASC",
            (symbol,),
        )
        rows = await cursor.fetchall()
        return [ChartPoint(price=Decimal(price), date=date, time=tod) for price, date, tod in rows]

    async def upsert_points(self, symbol: str, points: list[ChartPoint], updated_on: str) -> None:
        """Insert or overwrite points at their keys and touch the entry."""
        db = self._database.db
        await self._touch_entry(symbol, updated_on)
        if points:
            await db.executemany(
                "INSERT OR REPLACE INTO chart_points "
                "(symbol, trade_date, time_of_day, price) VALUES (?, ?, ?, ?)",
                [(symbol, p.date, p.time, str(p.price)) for p in points],
            )
        await db.commit()
        logger.debug("chart_points_upserted", symbol=symbol, count=len(points))

    async def set_base_price(self, symbol: str, price: Decimal, updated_on: str) -> None:
        await self._touch_entry(symbol, updated_on)
        await self._database.db.execute(
            "UPDATE chart_entries SET base_price = ? WHERE symbol = ?",
            (str(price), symbol),
        )
        await self._database.db.commit()

    async def set_gap_repaired(self, symbol: str, trade_date: str) -> None:
        await self._database.db.execute(
            "UPDATE chart_entries SET gap_repaired_on = ? WHERE symbol = ?",
            (trade_date, symbol),
        )
        await self._database.db.commit()

    async def delete_entry(self, symbol: str) -> None:
        # Points go with the entry (ON DELETE CASCADE)
        await self._database.db.execute("DELETE FROM chart_entries WHERE symbol = ?", (symbol,))
        await self._database.db.commit()

    async def purge_entries_before(self, cutoff_date: str) -> int:
        """Delete entries whose last_updated (YYYYMMDD) is older than cutoff_date."""
        cursor = await self._database.db.execute(
            "DELETE FROM chart_entries WHERE last_updated < ?", (cutoff_date,)
        )
        await self._database.db.commit()
        return cursor.rowcount

    async def _touch_entry(self, symbol: str, updated_on: str) -> None:
        await self._database.db.execute(
            "INSERT INTO chart_entries (symbol, last_updated) VALUES (?, ?) "
            "ON CONFLICT(symbol) DO UPDATE SET last_updated = excluded.last_updated",
            (symbol, updated_on),
        )

    # ──────────────────────────────────────────────
    # Credentials
    # ──────────────────────────────────────────────

    async def load_credential(self, mode: TradingMode) -> Credential | None:
        cursor = await self._database.db.execute(
            "SELECT token, issued_at FROM credentials WHERE mode = ?",
            (mode.value,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return Credential(token=row[0], issued_at=row[1])

    async def save_credential(self, mode: TradingMode, credential: Credential) -> None:
        await self._database.db.execute(
            "INSERT OR REPLACE INTO credentials (mode, token, issued_at) VALUES (?, ?, ?)",
            (mode.value, credential.token, credential.issued_at),
        )
        await self._database.db.commit()

    async def delete_credential(self, mode: TradingMode) -> None:
        await self._database.db.execute("DELETE FROM credentials WHERE mode = ?", (mode.value,))
        await self._database.db.commit()

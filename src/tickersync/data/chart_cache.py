"""Persisted per-symbol intraday chart cache.

Each symbol's series is an ordered, duplicate-free set of 1-minute points
keyed by date+time. Points are merged in, never removed one by one; the whole
entry is dropped once it has not been touched within the retention window.

The cache also decides where a backfill should resume. Normally that is the
newest cached key, but if today's regular-session series has a hole (late
first point or a long gap between consecutive points) the resume point is
moved back once per trading day so the backfill can repair it.
"""

from datetime import datetime, timedelta
from decimal import Decimal

from tickersync.config import CacheSettings
from tickersync.data.store import SyncStore
from tickersync.logging import get_logger
from tickersync.market.session import exchange_now, time_of_day, trading_date
from tickersync.models import ChartCacheEntry, ChartPoint

logger = get_logger(__name__)


class ChartCache:
    """Chart cache backed by SyncStore."""

    def __init__(self, store: SyncStore, settings: CacheSettings) -> None:
        self._store = store
        self._settings = settings

    def _retention_cutoff(self, now: datetime | None) -> str:
        return (exchange_now(now) - timedelta(days=self._settings.retention_days)).strftime("%Y%m%d")

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Drop every entry last touched before the retention window."""
        removed = await self._store.purge_entries_before(self._retention_cutoff(now))
        if removed:
            logger.info("chart_cache_purged", entries=removed)
        return removed

    async def _load_fresh_entry(self, symbol: str, now: datetime | None) -> ChartCacheEntry | None:
        entry = await self._store.load_entry(symbol)
        if entry is None:
            return None
        if entry.last_updated < self._retention_cutoff(now):
            await self._store.delete_entry(symbol)
            logger.info("chart_cache_expired", symbol=symbol, last_updated=entry.last_updated)
            return None
        return entry

    async def get_items(self, symbol: str, now: datetime | None = None) -> list[ChartPoint]:
        """Cached points in chronological order; [] when absent or expired."""
        entry = await self._load_fresh_entry(symbol, now)
        return entry.points if entry is not None else []

    async def get_resume_point(self, symbol: str, now: datetime | None = None) -> str | None:
        """Return the date+time key a backfill should page back to, or None."""
        entry = await self._load_fresh_entry(symbol, now)
        if entry is None or not entry.points:
            return None

        today = trading_date(now)
        if entry.gap_repaired_on != today and self._has_gap(entry.points, today, time_of_day(now)):
            await self._store.set_gap_repaired(symbol, today)
            earlier = [p for p in entry.points if p.date < today]
            resume = earlier[-1].key if earlier else today + self._settings.regular_open
            logger.info("chart_gap_detected", symbol=symbol, resume_from=resume)
            return resume

        return entry.points[-1].key

    def _has_gap(self, points: list[ChartPoint], today: str, current_time: str) -> bool:
        settings = self._settings
        session = [
            p
            for p in points
            if p.date == today and settings.regular_open <= p.time <= settings.regular_close
        ]
        if not session:
            return False

        if session[0].time > settings.late_open_cutoff and current_time > settings.late_open_cutoff:
            return True

        for previous, current in zip(session, session[1:]):
            if current.minute_of_day - previous.minute_of_day > settings.max_gap_minutes:
                return True
        return False

    async def merge_items(
        self, symbol: str, items: list[ChartPoint], now: datetime | None = None
    ) -> list[ChartPoint]:
        """Merge points into the cache and return the full sorted series.

        Later items win on a duplicate key. Points with a non-positive price
        are discarded. Merging the same items twice changes nothing.
        """
        await self._load_fresh_entry(symbol, now)
        merged: dict[str, ChartPoint] = {}
        for point in items:
            if point.price > 0:
                merged[point.key] = point
        await self._store.upsert_points(symbol, list(merged.values()), trading_date(now))
        return await self._store.load_points(symbol)

    async def update_base_price(
        self, symbol: str, price: Decimal | None, now: datetime | None = None
    ) -> None:
        if price is None or price <= 0:
            return
        await self._store.set_base_price(symbol, price, trading_date(now))

    async def get_base_price(self, symbol: str) -> Decimal | None:
        entry = await self._store.load_entry(symbol)
        return entry.base_price if entry is not None else None

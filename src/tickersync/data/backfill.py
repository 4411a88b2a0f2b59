"""Intraday chart backfill: backward pagination over today's 1-minute rows.

The provider returns at most 30 rows per chart query, newest first, ending
at an HHMMSS cursor. A full trading day therefore takes many pages. The
engine walks backward from now until it reaches the cache's resume point,
leaves today, passes the start of the chart window, or stops making
progress, then merges the rows into the chart cache.

Venue selection per cursor:
- Inside 09:00-15:30 the main exchange (J) is queried.
- Outside it the alternate venue (NX). ETFs do not trade there, so the engine
  jumps straight to 15:30 from the after-market and stops before 09:00.
- An empty NX page is retried once against J.

Index symbols have a dedicated endpoint returning the whole day in one query.
"""

import asyncio
from datetime import datetime

from tickersync.broker.client import BrokerClient
from tickersync.broker.types import CHART_WINDOW_END, CHART_WINDOW_START, MARKET_KRX, MARKET_NXT, to_decimal
from tickersync.config import CacheSettings
from tickersync.data.chart_cache import ChartCache
from tickersync.data.resample import downsample
from tickersync.exceptions import SyncError
from tickersync.logging import get_logger, log_context
from tickersync.market.session import time_of_day, trading_date
from tickersync.market.symbols import SymbolCatalog, is_index_symbol
from tickersync.models import ChartPoint, TradingMode

logger = get_logger(__name__)


def rows_to_points(rows: list[dict], price_field: str = "stck_prpr") -> list[ChartPoint]:
    """Convert provider chart rows to ChartPoints inside the chart window.

    Rows with a missing or non-positive price are dropped.
    """
    points = []
    for row in rows:
        date = row.get("stck_bsop_date") or ""
        hour = row.get("stck_cntg_hour") or ""
        if not date or not (CHART_WINDOW_START <= hour <= CHART_WINDOW_END):
            continue
        price = to_decimal(row.get(price_field))
        if price > 0:
            points.append(ChartPoint(price=price, date=date, time=hour))
    return points


class BackfillEngine:
    """Fills the chart cache from the broker's intraday chart endpoints.

    Usage:
        engine = BackfillEngine(broker, cache, catalog, settings)
        series = await engine.backfill("005930", TradingMode.LIVE)
    """

    def __init__(
        self,
        broker: BrokerClient,
        cache: ChartCache,
        catalog: SymbolCatalog,
        settings: CacheSettings,
    ) -> None:
        self._broker = broker
        self._cache = cache
        self._catalog = catalog
        self._settings = settings

    async def backfill(
        self, symbol: str, mode: TradingMode, now: datetime | None = None
    ) -> list[ChartPoint]:
        """Fetch missing rows, merge them into the cache, return the downsampled series."""
        with log_context(symbol=symbol, mode=mode.value):
            if is_index_symbol(symbol):
                merged = await self._backfill_index(symbol, mode, now)
            else:
                merged = await self._backfill_paginated(symbol, mode, now)
        return downsample(merged, self._settings.bucket_minutes)

    async def cached_series(self, symbol: str, now: datetime | None = None) -> list[ChartPoint]:
        """Downsampled series from the cache alone, without fetching."""
        return downsample(await self._cache.get_items(symbol, now), self._settings.bucket_minutes)

    async def _backfill_index(
        self, symbol: str, mode: TradingMode, now: datetime | None
    ) -> list[ChartPoint]:
        try:
            rows = await self._broker.fetch_index_chart(mode, symbol)
        except SyncError as exc:
            logger.warning("index_chart_fetch_failed", symbol=symbol, error=str(exc))
            return await self._cache.get_items(symbol, now)

        points = rows_to_points(rows, price_field="bstp_nmix_prpr")
        if not points:
            return await self._cache.get_items(symbol, now)
        merged = await self._cache.merge_items(symbol, points, now)
        logger.info("index_chart_backfilled", symbol=symbol, rows=len(points), total=len(merged))
        return merged

    def _market_for(self, cursor: str) -> str:
        if self._settings.regular_close < cursor <= CHART_WINDOW_END:
            return MARKET_NXT
        if cursor < self._settings.regular_open:
            return MARKET_NXT
        return MARKET_KRX

    async def _fetch_page(
        self, symbol: str, mode: TradingMode, market: str, cursor: str
    ) -> tuple[list[dict], list[ChartPoint]]:
        rows = await self._broker.fetch_chart_page(mode, symbol, market, cursor)
        points = rows_to_points(rows)
        if market == MARKET_NXT and not points:
            rows = await self._broker.fetch_chart_page(mode, symbol, MARKET_KRX, cursor)
            points = rows_to_points(rows)
        return rows, points

    async def _backfill_paginated(
        self, symbol: str, mode: TradingMode, now: datetime | None
    ) -> list[ChartPoint]:
        settings = self._settings
        target = await self._cache.get_resume_point(symbol, now) or ""
        today = trading_date(now)
        cursor = min(time_of_day(now), CHART_WINDOW_END)
        is_etf = self._catalog.is_etf(symbol)

        collected: list[ChartPoint] = []
        pages = 0
        while pages < settings.max_pages:
            market = self._market_for(cursor)
            if market == MARKET_NXT and is_etf:
                if cursor > settings.regular_close:
                    cursor = settings.regular_close
                    pages += 1
                    continue
                break

            try:
                rows, points = await self._fetch_page(symbol, mode, market, cursor)
            except SyncError as exc:
                logger.warning(
                    "chart_page_failed",
                    symbol=symbol,
                    cursor=cursor,
                    market=market,
                    collected=len(collected),
                    error=str(exc),
                )
                break

            if not points:
                break
            collected.extend(points)

            oldest = rows[-1]
            oldest_date = oldest.get("stck_bsop_date", "")
            oldest_time = oldest.get("stck_cntg_hour", "")
            if oldest_date + oldest_time <= target:
                break
            if oldest_date != today or oldest_time < CHART_WINDOW_START:
                break
            if oldest_time == cursor:
                # No progress, history exhausted
                break

            cursor = oldest_time
            pages += 1
            await asyncio.sleep(settings.page_delay)

        if not collected:
            return await self._cache.get_items(symbol, now)

        merged = await self._cache.merge_items(symbol, collected, now)
        logger.info(
            "chart_backfilled",
            symbol=symbol,
            pages=pages + 1,
            rows=len(collected),
            total=len(merged),
        )
        return merged

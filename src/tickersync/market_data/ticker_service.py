"""Shared in-memory price state for the synchronization engine.

Holds the latest snapshot per symbol, the per-source last-update timestamps
used for staleness decisions, the last known base price, and the displayed
chart series. Every fetch path (stream, broker REST, secondary) publishes
through here; listeners (the API hub) receive each published event.

All maps are guarded by one asyncio.Lock. Listeners are called outside it.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal

from tickersync.exceptions import SyncError
from tickersync.logging import get_logger
from tickersync.market.session import time_of_day, trading_date
from tickersync.models import ChartPoint, DataSource, PriceSnapshot

logger = get_logger(__name__)

TickerListener = Callable[[dict], Awaitable[None]]

MAX_CHART_POINTS = 400


class TickerService:
    """Async-safe price cache with per-source staleness tracking."""

    def __init__(self, bucket_minutes: int = 10) -> None:
        self._bucket_minutes = bucket_minutes
        self._snapshots: dict[str, PriceSnapshot] = {}
        self._base_prices: dict[str, Decimal] = {}
        self._charts: dict[str, list[ChartPoint]] = {}
        self._updated_at: dict[DataSource, dict[str, float]] = {source: {} for source in DataSource}
        self._listeners: list[TickerListener] = []
        self._lock = asyncio.Lock()

    def subscribe(self, listener: TickerListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def publish(self, snapshot: PriceSnapshot) -> PriceSnapshot:
        """Store a snapshot, stamp its source and notify listeners.

        A missing base price is filled from the last known one; a present one
        replaces it. Stream ticks also extend the displayed chart series.
        Snapshots without intraday data carry the current chart series.
        """
        async with self._lock:
            symbol = snapshot.symbol
            if snapshot.base_price is not None and snapshot.base_price > 0:
                self._base_prices[symbol] = snapshot.base_price
            else:
                snapshot.base_price = self._base_prices.get(symbol)

            if snapshot.source is DataSource.PRIMARY_STREAM:
                self._append_live_point(symbol, snapshot.price)
            if snapshot.intraday is None:
                snapshot.intraday = list(self._charts.get(symbol, []))

            self._snapshots[symbol] = snapshot
            self._updated_at[snapshot.source][symbol] = snapshot.observed_at

        await self._notify({"type": "ticker", "symbol": snapshot.symbol, "data": snapshot.to_dict()})
        return snapshot

    async def publish_error(self, symbol: str, error: SyncError) -> None:
        """Notify listeners of a per-symbol failure."""
        await self._notify({"type": "ticker_error", "symbol": symbol, "message": str(error)})

    def _append_live_point(self, symbol: str, price: Decimal) -> None:
        point = ChartPoint(price=price, date=trading_date(), time=time_of_day())
        series = self._charts.setdefault(symbol, [])
        if series and series[-1].date == point.date and (
            series[-1].minute_of_day // self._bucket_minutes
            == point.minute_of_day // self._bucket_minutes
        ):
            series[-1] = point
        else:
            series.append(point)
        if len(series) > MAX_CHART_POINTS:
            del series[: len(series) - MAX_CHART_POINTS]

    async def _notify(self, event: dict) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                logger.warning("ticker_listener_failed", event_type=event["type"], exc_info=True)

    async def mark_stream_fresh(self, symbol: str, at: float | None = None) -> None:
        """Stamp a primary-stream update without a price (e.g. on subscribe)."""
        async with self._lock:
            self._updated_at[DataSource.PRIMARY_STREAM][symbol] = time.time() if at is None else at

    async def forget(self, symbol: str) -> None:
        """Drop everything held for a symbol: snapshot, timestamps, base price and chart."""
        async with self._lock:
            for stamps in self._updated_at.values():
                stamps.pop(symbol, None)
            self._snapshots.pop(symbol, None)
            self._base_prices.pop(symbol, None)
            self._charts.pop(symbol, None)

    async def get_age(self, symbol: str, *sources: DataSource) -> float | None:
        """Seconds since the newest update from any of `sources` (all when empty).

        Returns None if none of them ever updated the symbol.
        """
        async with self._lock:
            stamps = [
                self._updated_at[source][symbol]
                for source in (sources or tuple(DataSource))
                if symbol in self._updated_at[source]
            ]
        if not stamps:
            return None
        return time.time() - max(stamps)

    async def is_stale(
        self,
        symbol: str,
        max_age_seconds: float,
        *sources: DataSource,
    ) -> bool:
        """True if the symbol has no update from `sources` or the newest is too old."""
        age = await self.get_age(symbol, *sources)
        if age is None:
            return True
        return age > max_age_seconds

    async def get_snapshot(self, symbol: str) -> PriceSnapshot | None:
        async with self._lock:
            return self._snapshots.get(symbol)

    async def get_all(self) -> list[PriceSnapshot]:
        async with self._lock:
            return list(self._snapshots.values())

    async def get_base_price(self, symbol: str) -> Decimal | None:
        async with self._lock:
            return self._base_prices.get(symbol)

    async def set_base_price(self, symbol: str, price: Decimal) -> None:
        async with self._lock:
            if price > 0:
                self._base_prices[symbol] = price

    async def set_chart(self, symbol: str, points: list[ChartPoint]) -> None:
        async with self._lock:
            self._charts[symbol] = list(points[-MAX_CHART_POINTS:])

    async def get_chart(self, symbol: str) -> list[ChartPoint]:
        async with self._lock:
            return list(self._charts.get(symbol, []))

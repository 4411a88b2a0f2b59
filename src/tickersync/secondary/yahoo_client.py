"""Secondary price provider: public finance chart endpoint.

Used when the brokerage path is disabled, has no credentials, or its
stream has gone stale. Returns the current price together with today's
1-minute close series so the chart can be shown without broker history.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

import httpx

from tickersync.broker.types import to_decimal
from tickersync.config import SecondarySettings
from tickersync.exceptions import TransientFetchError
from tickersync.logging import get_logger
from tickersync.market.session import EXCHANGE_TZ
from tickersync.models import ChartPoint, DataSource, PriceSnapshot, direction_from_prices

logger = get_logger(__name__)

INDEX_TICKERS = {"0001": "^KS11", "1001": "^KQ11"}

_HEADERS = {"User-Agent": "Mozilla/5.0"}


def ticker_for(symbol: str, suffix: str = ".KS") -> str:
    """Map a domestic symbol to the provider's ticker."""
    if symbol in INDEX_TICKERS:
        return INDEX_TICKERS[symbol]
    if len(symbol) == 6 and symbol.isdigit():
        return f"{symbol}{suffix}"
    return symbol


class YahooClient:
    """Async client for the public chart endpoint."""

    def __init__(
        self,
        settings: SecondarySettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            headers=_HEADERS,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch(self, symbol: str) -> PriceSnapshot:
        """Fetch price and today's intraday closes for one symbol.

        Raises:
            TransientFetchError: On network failure, non-2xx status or an
                unusable payload.
        """
        ticker = ticker_for(symbol, self._settings.market_suffix)
        try:
            response = await self._client.get(
                f"/v8/finance/chart/{ticker}",
                params={"interval": "1m", "range": "1d"},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise TransientFetchError(
                f"Chart request for {ticker} failed", status=exc.response.status_code
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise TransientFetchError(f"Chart request for {ticker} failed: {exc}") from exc

        results = (payload.get("chart") or {}).get("result") or []
        if not results:
            raise TransientFetchError(f"No chart result for {ticker}")
        return _parse_result(symbol, results[0])


def _parse_result(symbol: str, result: dict) -> PriceSnapshot:
    meta = result.get("meta") or {}
    previous_close = to_decimal(meta.get("chartPreviousClose"))
    price = to_decimal(meta.get("regularMarketPrice"), default=previous_close)
    if price <= 0:
        raise TransientFetchError(f"No price in chart result for {symbol}")

    base_price = previous_close if previous_close > 0 else None
    change_rate = Decimal("0")
    if base_price is not None:
        change_rate = ((price - base_price) / base_price * 100).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )

    timestamps = result.get("timestamp") or []
    quotes = ((result.get("indicators") or {}).get("quote") or [{}])[0]
    closes = quotes.get("close") or []
    intraday = []
    for ts, close in zip(timestamps, closes):
        value = to_decimal(close)
        if value <= 0:
            continue
        local = datetime.fromtimestamp(ts, EXCHANGE_TZ)
        intraday.append(
            ChartPoint(price=value, date=local.strftime("%Y%m%d"), time=local.strftime("%H%M") + "00")
        )

    logger.debug("secondary_price_fetched", symbol=symbol, price=str(price), points=len(intraday))
    return PriceSnapshot(
        symbol=symbol,
        price=price,
        change_rate=change_rate,
        direction=direction_from_prices(price, base_price),
        source=DataSource.SECONDARY,
        base_price=base_price,
        intraday=intraday,
    )

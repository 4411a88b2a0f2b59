"""Tests for the secondary chart client."""

from decimal import Decimal

import httpx
import pytest

from tickersync.config import SecondarySettings
from tickersync.exceptions import TransientFetchError
from tickersync.models import ChartPoint, DataSource, Direction
from tickersync.secondary.yahoo_client import YahooClient, ticker_for

OPEN_TS = 1705276800  # 2024-01-15 09:00:00 KST


def _chart(price: float | None, previous: float, closes: list) -> dict:
    return {
        "chart": {
            "result": [
                {
                    "meta": {"regularMarketPrice": price, "chartPreviousClose": previous},
                    "timestamp": [OPEN_TS + 60 * i for i in range(len(closes))],
                    "indicators": {"quote": [{"close": closes}]},
                }
            ],
            "error": None,
        }
    }


def _client(handler) -> YahooClient:
    return YahooClient(SecondarySettings(), transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    "symbol,expected",
    [("005930", "005930.KS"), ("0001", "^KS11"), ("1001", "^KQ11"), ("AAPL", "AAPL")],
)
def test_ticker_mapping(symbol: str, expected: str) -> None:
    assert ticker_for(symbol) == expected


def test_ticker_mapping_custom_suffix() -> None:
    assert ticker_for("035720", ".KQ") == "035720.KQ"


@pytest.mark.asyncio
async def test_fetch_parses_price_and_intraday() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_chart(71500, 71000, [71100, None, 71500]))

    client = _client(handler)
    snapshot = await client.fetch("005930")
    await client.close()

    assert seen[0].url.path == "/v8/finance/chart/005930.KS"
    assert seen[0].url.params["interval"] == "1m"
    assert snapshot.source is DataSource.SECONDARY
    assert snapshot.price == Decimal("71500")
    assert snapshot.base_price == Decimal("71000")
    assert snapshot.change_rate == Decimal("0.70")
    assert snapshot.direction is Direction.UP
    # Null closes are skipped, timestamps land in exchange time
    assert snapshot.intraday == [
        ChartPoint(Decimal("71100"), "20240115", "090000"),
        ChartPoint(Decimal("71500"), "20240115", "090200"),
    ]


@pytest.mark.asyncio
async def test_missing_price_falls_back_to_previous_close() -> None:
    client = _client(lambda request: httpx.Response(200, json=_chart(None, 2650.5, [])))

    snapshot = await client.fetch("0001")
    await client.close()

    assert snapshot.price == Decimal("2650.5")
    assert snapshot.direction is Direction.FLAT
    assert snapshot.change_rate == Decimal("0.00")


@pytest.mark.asyncio
async def test_http_error_raises_transient() -> None:
    client = _client(lambda request: httpx.Response(404, json={"chart": {"result": None}}))

    with pytest.raises(TransientFetchError) as exc_info:
        await client.fetch("999999")
    await client.close()

    assert exc_info.value.status == 404


@pytest.mark.asyncio
async def test_empty_result_raises_transient() -> None:
    client = _client(lambda request: httpx.Response(200, json={"chart": {"result": []}}))

    with pytest.raises(TransientFetchError):
        await client.fetch("005930")
    await client.close()


@pytest.mark.asyncio
async def test_network_error_raises_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    client = _client(handler)
    with pytest.raises(TransientFetchError):
        await client.fetch("005930")
    await client.close()

"""Tests for SubscriptionManager using an in-memory fake websocket."""

import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from tickersync.config import AppSettings, ConfigNotifier, SyncConfig
from tickersync.market_data.ticker_service import TickerService
from tickersync.models import DataSource
from tickersync.stream.manager import ConnectionState, SubscriptionManager


class FakeWebSocket:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def feed(self, raw: str) -> None:
        self._incoming.put_nowait(raw)

    def fail(self, exc: Exception) -> None:
        self._incoming.put_nowait(exc)

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    def __init__(self) -> None:
        self.sockets: list[FakeWebSocket] = []
        self.urls: list[str] = []
        self.error: Exception | None = None

    async def __call__(self, url: str, **kwargs) -> FakeWebSocket:
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def _messages(ws: FakeWebSocket) -> list[tuple[str, str, str]]:
    result = []
    for raw in ws.sent:
        data = json.loads(raw)
        if "body" in data:
            body = data["body"]["input"]
            result.append((data["header"]["tr_type"], body["tr_id"], body["tr_key"]))
    return result


@pytest.fixture
def broker() -> AsyncMock:
    broker = AsyncMock()
    broker.issue_approval_key = AsyncMock(return_value="approval-key")
    return broker


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def ticker_service() -> TickerService:
    return TickerService()


@pytest.fixture
def manager(
    mock_settings: AppSettings, broker: AsyncMock, ticker_service: TickerService, connector: FakeConnector
) -> SubscriptionManager:
    config = ConfigNotifier(SyncConfig.from_settings(mock_settings))
    return SubscriptionManager(broker, ticker_service, config, connect=connector)


async def _connected(manager: SubscriptionManager, symbols: list[str]) -> list[str]:
    assert await manager.sync(symbols, enabled=True) == []
    await _settle()
    assert manager.state is ConnectionState.CONNECTED
    return await manager.sync(symbols, enabled=True)


@pytest.mark.asyncio
async def test_connects_then_subscribes(
    manager: SubscriptionManager, connector: FakeConnector, ticker_service: TickerService
) -> None:
    added = await _connected(manager, ["005930", "0001"])

    assert added == ["005930", "0001"]
    assert connector.urls == ["ws://ops.koreainvestment.com:31000"]
    assert _messages(connector.sockets[0]) == [
        ("1", "H0STCNT0", "005930"),
        ("1", "H0NXCNT0", "005930"),
        ("1", "H0STCNI0", "0001"),
    ]
    # Subscribing stamps the stream fresh
    assert await ticker_service.get_age("005930", DataSource.PRIMARY_STREAM) is not None
    # Nothing new on the next reconciliation
    assert await manager.sync(["005930", "0001"], enabled=True) == []
    await manager.close()


@pytest.mark.asyncio
async def test_only_one_connection_attempt_in_flight(
    manager: SubscriptionManager, connector: FakeConnector
) -> None:
    await manager.sync(["005930"], enabled=True)
    await manager.sync(["005930"], enabled=True)
    await _settle()

    assert len(connector.sockets) == 1
    await manager.close()


@pytest.mark.asyncio
async def test_removed_symbols_are_unsubscribed(
    manager: SubscriptionManager, connector: FakeConnector, ticker_service: TickerService
) -> None:
    await _connected(manager, ["005930", "0001"])

    await manager.sync(["005930"], enabled=True)

    assert _messages(connector.sockets[0])[-1] == ("2", "H0STCNI0", "0001")
    assert manager.subscribed == frozenset({"005930"})
    assert await ticker_service.get_age("0001") is None
    await manager.close()


@pytest.mark.asyncio
async def test_keepalive_echoed(manager: SubscriptionManager, connector: FakeConnector) -> None:
    await _connected(manager, ["005930"])
    ping = json.dumps({"header": {"tr_id": "PINGPONG", "datetime": "20240115093000"}})

    connector.sockets[0].feed(ping)
    await _settle()

    assert connector.sockets[0].sent[-1] == ping
    await manager.close()


@pytest.mark.asyncio
async def test_data_frame_published(
    manager: SubscriptionManager, connector: FakeConnector, ticker_service: TickerService
) -> None:
    await _connected(manager, ["005930"])

    connector.sockets[0].feed("0|H0STCNT0|001|005930^093015^71500^2^500^0.70")
    await _settle()

    snapshot = await ticker_service.get_snapshot("005930")
    assert snapshot is not None
    assert snapshot.price == Decimal("71500")
    assert snapshot.source is DataSource.PRIMARY_STREAM
    assert snapshot.base_price == Decimal("71000")
    await manager.close()


@pytest.mark.asyncio
async def test_rejection_surfaced_per_symbol(
    manager: SubscriptionManager, connector: FakeConnector, ticker_service: TickerService
) -> None:
    events: list[dict] = []

    async def listener(event: dict) -> None:
        events.append(event)

    ticker_service.subscribe(listener)
    await _connected(manager, ["999999"])

    def rejection(tr_id: str) -> str:
        return json.dumps(
            {
                "header": {"tr_id": tr_id, "tr_key": "999999"},
                "body": {"rt_cd": "1", "msg_cd": "OPSP0011", "msg1": "invalid tr_key"},
            }
        )

    connector.sockets[0].feed(rejection("H0NXCNT0"))
    connector.sockets[0].feed(rejection("H0STCNT0"))
    await _settle()

    assert events == [{"type": "ticker_error", "symbol": "999999", "message": "999999: invalid tr_key"}]
    await manager.close()


@pytest.mark.asyncio
async def test_malformed_control_frame_keeps_reading(
    manager: SubscriptionManager, connector: FakeConnector, ticker_service: TickerService
) -> None:
    await _connected(manager, ["005930"])

    connector.sockets[0].feed(json.dumps({"header": "x", "body": {}}))
    connector.sockets[0].feed("0|H0STCNT0|001|005930^093015^71500^2^500^0.70")
    await _settle()

    assert manager.state is ConnectionState.CONNECTED
    assert (await ticker_service.get_snapshot("005930")).price == Decimal("71500")
    await manager.close()


@pytest.mark.asyncio
async def test_reader_failure_disconnects_and_reconnects(
    manager: SubscriptionManager, connector: FakeConnector, monkeypatch: pytest.MonkeyPatch
) -> None:
    await _connected(manager, ["005930"])

    def broken(raw: str):
        raise RuntimeError("decoder bug")

    monkeypatch.setattr("tickersync.stream.manager.parse_data_frame", broken)
    connector.sockets[0].feed("0|H0STCNT0|001|005930^093015^71500^2^500^0.70")
    await _settle()

    assert manager.state is ConnectionState.DISCONNECTED
    assert manager.subscribed == frozenset()
    assert connector.sockets[0].closed
    assert "decoder bug" in str(manager.last_error)

    monkeypatch.undo()
    assert await _connected(manager, ["005930"]) == ["005930"]
    assert len(connector.sockets) == 2
    await manager.close()


@pytest.mark.asyncio
async def test_late_frame_for_removed_symbol_ignored(
    manager: SubscriptionManager, connector: FakeConnector, ticker_service: TickerService
) -> None:
    await _connected(manager, ["005930", "0001"])
    await manager.sync(["0001"], enabled=True)

    connector.sockets[0].feed("0|H0STCNT0|001|005930^093015^71500^2^500^0.70")
    await _settle()

    assert await ticker_service.get_snapshot("005930") is None
    assert await ticker_service.get_age("005930") is None
    await manager.close()


@pytest.mark.asyncio
async def test_drop_clears_state_and_reconnects(
    manager: SubscriptionManager, connector: FakeConnector, broker: AsyncMock
) -> None:
    await _connected(manager, ["005930"])

    connector.sockets[0].fail(OSError("connection reset"))
    await _settle()

    assert manager.state is ConnectionState.DISCONNECTED
    assert manager.subscribed == frozenset()
    assert manager.last_error is not None

    added = await _connected(manager, ["005930"])
    assert added == ["005930"]
    assert len(connector.sockets) == 2
    # A fresh approval key for every new connection
    assert broker.issue_approval_key.await_count == 2
    await manager.close()


@pytest.mark.asyncio
async def test_connect_failure_leaves_disconnected(
    manager: SubscriptionManager, connector: FakeConnector
) -> None:
    connector.error = OSError("refused")

    await manager.sync(["005930"], enabled=True)
    await _settle()

    assert manager.state is ConnectionState.DISCONNECTED
    assert manager.last_error is not None


@pytest.mark.asyncio
async def test_disabled_or_empty_closes(manager: SubscriptionManager, connector: FakeConnector) -> None:
    await _connected(manager, ["005930"])

    assert await manager.sync(["005930"], enabled=False) == []

    assert manager.state is ConnectionState.DISCONNECTED
    assert connector.sockets[0].closed
    assert manager.subscribed == frozenset()


@pytest.mark.asyncio
async def test_nothing_desired_never_connects(manager: SubscriptionManager, connector: FakeConnector) -> None:
    await manager.sync([], enabled=True)
    await _settle()

    assert connector.urls == []
    assert manager.state is ConnectionState.DISCONNECTED

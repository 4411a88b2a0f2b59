"""Streaming subscription manager for the shared real-time connection.

One websocket connection carries every symbol's trade feed. The manager owns
its lifecycle as a small state machine:

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED

At most one connection is CONNECTING or CONNECTED at any time. The handshake
needs an approval key, which is discarded whenever the connection closes or
fails. Any close or error also clears the subscribed set, so the next
reconciliation resubscribes everything on a fresh connection.

sync() is called on every orchestrator tick. It connects on demand, closes
when the stream is disabled or nothing is desired, and diffs the desired
symbols against the subscribed ones while connected.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from tickersync.broker.client import BrokerClient
from tickersync.broker.types import STREAM_URLS
from tickersync.config import ConfigNotifier
from tickersync.exceptions import StreamDisconnected, SubscriptionRejected
from tickersync.logging import get_logger
from tickersync.market_data.ticker_service import TickerService
from tickersync.models import DataSource, PriceSnapshot
from tickersync.stream.protocol import (
    PRIMARY_TR_IDS,
    FrameKind,
    build_subscription_message,
    classify_frame,
    parse_control_frame,
    parse_data_frame,
    subscription_tr_ids,
)

logger = get_logger(__name__)

Connector = Callable[..., Awaitable[Any]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SubscriptionManager:
    """Owns the streaming connection and the set of subscribed symbols.

    Args:
        broker: Issues approval keys.
        ticker_service: Receives decoded ticks, freshness stamps and errors.
        config: Runtime config; the trading mode selects the stream URL.
        connect: Websocket connect coroutine (tests inject a fake).
    """

    def __init__(
        self,
        broker: BrokerClient,
        ticker_service: TickerService,
        config: ConfigNotifier,
        connect: Connector = websockets.connect,
    ) -> None:
        self._broker = broker
        self._ticker_service = ticker_service
        self._config = config
        self._connect = connect
        self._state = ConnectionState.DISCONNECTED
        self._ws: Any = None
        self._approval_key: str | None = None
        self._subscribed: set[str] = set()
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self.last_error: StreamDisconnected | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def subscribed(self) -> frozenset[str]:
        return frozenset(self._subscribed)

    async def sync(self, desired: Iterable[str], enabled: bool) -> list[str]:
        """Reconcile the connection and subscriptions; return newly subscribed symbols."""
        wanted = list(dict.fromkeys(desired))
        if not enabled or not wanted:
            if self._state is not ConnectionState.DISCONNECTED:
                await self.close()
            return []

        if self._state is ConnectionState.CONNECTED:
            return await self._reconcile(wanted)

        if self._state is ConnectionState.DISCONNECTED:
            self._state = ConnectionState.CONNECTING
            self._task = asyncio.create_task(self._run_connection())
        return []

    async def close(self) -> None:
        """Close the connection, clear subscriptions and discard the approval key."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.debug("stream_close_error", exc_info=True)
        self._subscribed.clear()
        self._approval_key = None
        if self._state is not ConnectionState.DISCONNECTED:
            self._state = ConnectionState.DISCONNECTED
            logger.info("stream_closed")

    async def reset(self) -> None:
        """Hard reset after a configuration change. The next sync reconnects from scratch."""
        await self.close()
        self.last_error = None

    # -- connection ---------------------------------------------------------

    async def _run_connection(self) -> None:
        mode = self._config.current.mode
        try:
            if self._approval_key is None:
                self._approval_key = await self._broker.issue_approval_key(mode)
            ws = await self._connect(STREAM_URLS[mode], ping_interval=20, ping_timeout=20)
        except asyncio.CancelledError:
            self._state = ConnectionState.DISCONNECTED
            raise
        except Exception as exc:
            self._disconnected(StreamDisconnected(f"Connect failed: {exc}"))
            logger.warning("stream_connect_failed", mode=mode.value, exc_info=True)
            return

        self._ws = ws
        self._subscribed.clear()
        self._state = ConnectionState.CONNECTED
        self.last_error = None
        logger.info("stream_connected", mode=mode.value)

        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                await self._handle_frame(ws, raw)
        except (ConnectionClosed, OSError) as exc:
            error = StreamDisconnected(f"Connection lost: {exc}")
        except Exception as exc:
            logger.error("stream_reader_failed", exc_info=True)
            error = StreamDisconnected(f"Reader failed: {exc}")
            try:
                await ws.close()
            except Exception:
                logger.debug("stream_close_error", exc_info=True)
        else:
            error = StreamDisconnected("Connection closed by server")

        if self._ws is ws:
            self._ws = None
            self._disconnected(error)
            logger.warning("stream_disconnected", reason=str(error))

    def _disconnected(self, error: StreamDisconnected) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._subscribed.clear()
        self._approval_key = None
        self.last_error = error

    # -- subscriptions ------------------------------------------------------

    async def _reconcile(self, desired: list[str]) -> list[str]:
        ws, key = self._ws, self._approval_key
        if ws is None or key is None:
            return []
        added = []
        try:
            for symbol in desired:
                if symbol in self._subscribed:
                    continue
                for tr_id in subscription_tr_ids(symbol):
                    await ws.send(build_subscription_message(key, symbol, tr_id, subscribe=True))
                self._subscribed.add(symbol)
                # Give the stream a full threshold before declaring it stale
                await self._ticker_service.mark_stream_fresh(symbol)
                added.append(symbol)

            wanted = set(desired)
            for symbol in sorted(self._subscribed - wanted):
                for tr_id in subscription_tr_ids(symbol):
                    await ws.send(build_subscription_message(key, symbol, tr_id, subscribe=False))
                self._subscribed.discard(symbol)
                await self._ticker_service.forget(symbol)
        except (ConnectionClosed, OSError):
            logger.warning("stream_send_failed", exc_info=True)

        if added:
            logger.info("stream_subscribed", symbols=added)
        return added

    # -- inbound ------------------------------------------------------------

    async def _handle_frame(self, ws: Any, raw: str) -> None:
        kind = classify_frame(raw)
        if kind is FrameKind.KEEPALIVE:
            await ws.send(raw)
            return

        if kind is FrameKind.DATA:
            try:
                tick = parse_data_frame(raw)
            except ValueError:
                logger.warning("stream_frame_invalid", frame=raw[:60])
                return
            if tick.symbol not in self._subscribed:
                # Late frame for a symbol that was just unsubscribed
                logger.debug("stream_frame_unsubscribed", symbol=tick.symbol)
                return
            await self._ticker_service.publish(
                PriceSnapshot(
                    symbol=tick.symbol,
                    price=tick.price,
                    change_rate=tick.change_rate,
                    direction=tick.direction,
                    source=DataSource.PRIMARY_STREAM,
                    base_price=tick.base_price,
                )
            )
            return

        control = parse_control_frame(raw)
        if control is None:
            logger.debug("stream_frame_unrecognized", frame=raw[:60])
            return
        if (
            control.is_rejection
            and control.tr_id in PRIMARY_TR_IDS
            and control.symbol in self._subscribed
        ):
            error = SubscriptionRejected(control.symbol, control.message or control.msg_cd)
            logger.warning("stream_subscription_rejected", symbol=control.symbol, code=control.msg_cd)
            await self._ticker_service.publish_error(control.symbol, error)
            return
        logger.debug("stream_control", tr_id=control.tr_id, symbol=control.symbol, code=control.msg_cd)

"""Failover orchestrator: keeps every active symbol's price fresh.

Each reconciliation tick (1 s by default):
  1. Tear down symbols that left the active set.
  2. Reconcile the stream subscriptions; newly subscribed symbols get a
     staggered initial REST price load and chart backfill.
  3. Per active symbol, decide whether the primary stream is stale and start
     or stop the symbol's fallback poller accordingly.

Staleness is measured on primary-stream updates only (subscribing stamps a
symbol fresh). The threshold is tighter while the stream is not connected.
A fallback poller polls broker REST when the broker is usable, otherwise the
secondary provider. At most one poller exists per symbol.

Configuration changes arrive as push events. A change of mode, credentials
or enable flags forces a hard reset of pollers, stream and credentials.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from tickersync.broker.client import BrokerClient
from tickersync.broker.rate_limiter import RequestQueues
from tickersync.config import AppSettings, ConfigNotifier, SyncConfig
from tickersync.data.backfill import BackfillEngine
from tickersync.data.chart_cache import ChartCache
from tickersync.data.resample import downsample
from tickersync.exceptions import SyncError
from tickersync.logging import get_logger
from tickersync.market.session import get_session_state
from tickersync.market_data.price_poller import PricePoller
from tickersync.market_data.ticker_service import TickerService
from tickersync.models import DataSource, PriceSnapshot, SessionState, TradingMode
from tickersync.secondary.yahoo_client import YahooClient
from tickersync.stream.manager import ConnectionState, SubscriptionManager

logger = get_logger(__name__)


class FailoverOrchestrator:
    """Runs the reconciliation loop and owns the fallback pollers."""

    def __init__(
        self,
        settings: AppSettings,
        config: ConfigNotifier,
        broker: BrokerClient,
        secondary: YahooClient,
        subscriptions: SubscriptionManager,
        ticker_service: TickerService,
        backfill: BackfillEngine,
        chart_cache: ChartCache,
        queues: RequestQueues,
        clock: Callable[[], SessionState] = get_session_state,
    ) -> None:
        self._settings = settings
        self._config = config
        self._broker = broker
        self._secondary = secondary
        self._subscriptions = subscriptions
        self._ticker_service = ticker_service
        self._backfill = backfill
        self._chart_cache = chart_cache
        self._queues = queues
        self._clock = clock
        self._pollers: dict[str, PricePoller] = {}
        self._initial_loads: dict[str, asyncio.Task] = {}  # type: ignore[type-arg]
        self._tracked: set[str] = set()
        self._session: SessionState | None = None
        self._running = False
        self._cycle_lock = asyncio.Lock()
        self._unsubscribe_config: Callable[[], None] | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def fallback_sources(self) -> dict[str, str]:
        """Active fallback pollers: symbol -> source name."""
        return {symbol: poller.source for symbol, poller in self._pollers.items()}

    async def start(self) -> None:
        """Subscribe to config changes and run the loop until stop()."""
        logger.info(
            "orchestrator_starting",
            mode=self._config.current.mode.value,
            symbols=len(self._config.current.active_symbols),
        )
        self._unsubscribe_config = self._config.subscribe(self._on_config_change)
        self._running = True
        try:
            await self._run_loop()
        finally:
            await self._shutdown()
            logger.info("orchestrator_stopped")

    async def stop(self) -> None:
        logger.info("orchestrator_stopping_gracefully")
        self._running = False

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self._settings.sync.reconcile_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("orchestrator_cycle_error", error=str(e), exc_info=True)
                await asyncio.sleep(self._settings.sync.reconcile_interval)

    async def tick(self) -> None:
        """Run one reconciliation pass."""
        async with self._cycle_lock:
            await self._reconcile()

    async def _reconcile(self) -> None:
        config = self._config.current
        sync = self._settings.sync

        session = self._clock()
        if session is not self._session:
            logger.info("session_changed", session=session.value)
            self._session = session

        active = list(config.active_symbols)
        for symbol in self._tracked - set(active):
            await self._teardown_symbol(symbol)
        self._tracked = set(active)

        added = await self._subscriptions.sync(active, enabled=config.broker_usable)
        for i, symbol in enumerate(added):
            self._schedule_initial_load(symbol, delay=i * 2 * sync.initial_load_spacing)

        if self._subscriptions.state is ConnectionState.CONNECTED:
            threshold = sync.stale_threshold
        else:
            threshold = sync.degraded_stale_threshold

        for symbol in active:
            stale = await self._ticker_service.is_stale(symbol, threshold, DataSource.PRIMARY_STREAM)
            if config.secondary_enabled and (stale or not config.broker_enabled):
                self._start_fallback(symbol, config)
            else:
                self._stop_fallback(symbol)

    # -- fallback pollers ---------------------------------------------------

    def _start_fallback(self, symbol: str, config: SyncConfig) -> None:
        if symbol in self._pollers:
            return
        if config.broker_usable:
            poller = PricePoller(
                symbol,
                lambda: self._poll_primary(symbol),
                self._settings.sync.rest_poll_interval,
                source=DataSource.PRIMARY_REST.value,
            )
        else:
            poller = PricePoller(
                symbol,
                lambda: self._poll_secondary(symbol),
                self._settings.secondary.poll_interval,
                source=DataSource.SECONDARY.value,
            )
        self._pollers[symbol] = poller
        poller.start()

    def _stop_fallback(self, symbol: str) -> None:
        poller = self._pollers.pop(symbol, None)
        if poller is not None:
            poller.cancel()

    async def _poll_primary(self, symbol: str) -> None:
        if not await self._ticker_service.is_stale(symbol, self._settings.sync.rest_skip_if_fresh):
            return
        mode = self._config.current.mode
        try:
            snapshot = await self._broker.fetch_current_price(mode, symbol, self._clock())
        except SyncError as exc:
            logger.warning("primary_poll_failed", symbol=symbol, error=str(exc))
            await self._ticker_service.publish_error(symbol, exc)
            return
        await self._publish(snapshot)

    async def _poll_secondary(self, symbol: str) -> None:
        try:
            snapshot = await self._secondary.fetch(symbol)
        except SyncError as exc:
            logger.warning("secondary_poll_failed", symbol=symbol, error=str(exc))
            await self._ticker_service.publish_error(symbol, exc)
            return

        if self._config.current.broker_enabled and not await self._ticker_service.is_stale(
            symbol,
            self._settings.secondary.primary_fresh_seconds,
            DataSource.PRIMARY_STREAM,
            DataSource.PRIMARY_REST,
        ):
            logger.debug("secondary_update_suppressed", symbol=symbol)
            return

        snapshot.intraday = downsample(snapshot.intraday or [], self._settings.cache.bucket_minutes)
        await self._publish(snapshot)

    async def _publish(self, snapshot: PriceSnapshot) -> None:
        published = await self._ticker_service.publish(snapshot)
        await self._chart_cache.update_base_price(published.symbol, published.base_price)

    # -- initial loads ------------------------------------------------------

    def _schedule_initial_load(self, symbol: str, delay: float) -> None:
        existing = self._initial_loads.pop(symbol, None)
        if existing is not None:
            existing.cancel()
        task = asyncio.create_task(self._initial_load(symbol, delay))
        self._initial_loads[symbol] = task
        task.add_done_callback(lambda done, s=symbol: self._clear_initial_load(s, done))

    def _clear_initial_load(self, symbol: str, task: asyncio.Task) -> None:  # type: ignore[type-arg]
        if self._initial_loads.get(symbol) is task:
            del self._initial_loads[symbol]

    async def _initial_load(self, symbol: str, delay: float) -> None:
        """Load the current price, then the chart one spacing later.

        A base price persisted by an earlier run is restored first so stream
        ticks arriving before the price load already carry it.
        """
        try:
            await asyncio.sleep(delay)
            await self._restore_base_price(symbol)
            mode = self._config.current.mode
            try:
                snapshot = await self._broker.fetch_current_price(mode, symbol, self._clock())
                await self._publish(snapshot)
            except SyncError as exc:
                logger.warning("initial_price_load_failed", symbol=symbol, error=str(exc))
                await self._ticker_service.publish_error(symbol, exc)

            await asyncio.sleep(self._settings.sync.initial_load_spacing)
            await self._load_chart(symbol, mode)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("initial_load_failed", symbol=symbol, exc_info=True)

    async def _restore_base_price(self, symbol: str) -> None:
        if await self._ticker_service.get_base_price(symbol) is not None:
            return
        cached = await self._chart_cache.get_base_price(symbol)
        if cached is not None:
            await self._ticker_service.set_base_price(symbol, cached)
            logger.debug("base_price_restored", symbol=symbol, base_price=str(cached))

    async def _load_chart(self, symbol: str, mode: TradingMode) -> None:
        series = await self._backfill.backfill(symbol, mode)
        if not series and self._config.current.secondary_enabled:
            try:
                snapshot = await self._secondary.fetch(symbol)
            except SyncError as exc:
                logger.warning("secondary_chart_failed", symbol=symbol, error=str(exc))
            else:
                series = downsample(snapshot.intraday or [], self._settings.cache.bucket_minutes)
                logger.info("chart_from_secondary", symbol=symbol, points=len(series))
        await self._ticker_service.set_chart(symbol, series)

    # -- teardown -----------------------------------------------------------

    async def _teardown_symbol(self, symbol: str) -> None:
        self._stop_fallback(symbol)
        task = self._initial_loads.pop(symbol, None)
        if task is not None:
            task.cancel()
        await self._ticker_service.forget(symbol)
        logger.info("symbol_removed", symbol=symbol)

    def _cancel_all(self) -> None:
        for poller in self._pollers.values():
            poller.cancel()
        self._pollers.clear()
        for task in self._initial_loads.values():
            task.cancel()
        self._initial_loads.clear()

    async def _on_config_change(self, old: SyncConfig, new: SyncConfig) -> None:
        if old.connection_fingerprint() == new.connection_fingerprint():
            return
        async with self._cycle_lock:
            logger.info(
                "hard_reset",
                mode=new.mode.value,
                broker_enabled=new.broker_enabled,
                secondary_enabled=new.secondary_enabled,
            )
            self._cancel_all()
            await self._subscriptions.reset()
            if old.mode != new.mode or old.keys_for(new.mode) != new.keys_for(new.mode):
                await self._broker.invalidate_token(new.mode)
            self._queues.set_interval(new.mode, self._settings.broker.min_interval_ms_for(new.mode))

    async def _shutdown(self) -> None:
        if self._unsubscribe_config is not None:
            self._unsubscribe_config()
            self._unsubscribe_config = None
        pollers = list(self._pollers.values())
        self._cancel_all()
        for poller in pollers:
            await poller.stop()
        await self._subscriptions.close()

    def get_status(self) -> dict:
        config = self._config.current
        return {
            "running": self._running,
            "mode": config.mode.value,
            "session": self._clock().value,
            "broker_enabled": config.broker_enabled,
            "secondary_enabled": config.secondary_enabled,
            "stream": self._subscriptions.state.value,
            "stream_error": str(self._subscriptions.last_error) if self._subscriptions.last_error else None,
            "subscribed": sorted(self._subscriptions.subscribed),
            "active_symbols": list(config.active_symbols),
            "fallback": self.fallback_sources,
        }

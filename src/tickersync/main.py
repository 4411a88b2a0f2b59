"""Entry point for the ticker synchronization engine.

Wires all components together, optionally embeds the FastAPI publishing API,
and starts the failover orchestrator. When the API is enabled (default), the
engine and the API share a single asyncio event loop via uvicorn's
programmatic API and FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown.

Component wiring order (in _build_components):
1. SyncDatabase + SyncStore (chart cache and credential persistence)
2. ConfigNotifier (runtime configuration)
3. RequestQueues (per-mode REST pacing)
4. SymbolCatalog (ETF detection)
5. KisClient (broker REST, owns the TokenManager)
6. YahooClient (secondary provider)
7. TickerService (shared price state)
8. SubscriptionManager (streaming connection)
9. ChartCache + BackfillEngine
10. FailoverOrchestrator
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from tickersync.broker.kis_client import KisClient
from tickersync.broker.rate_limiter import RequestQueues
from tickersync.config import AppSettings, ConfigNotifier, SyncConfig
from tickersync.data.backfill import BackfillEngine
from tickersync.data.chart_cache import ChartCache
from tickersync.data.database import SyncDatabase
from tickersync.data.store import SyncStore
from tickersync.logging import get_logger, setup_logging
from tickersync.market.symbols import SymbolCatalog
from tickersync.market_data.ticker_service import TickerService
from tickersync.models import TradingMode
from tickersync.orchestrator import FailoverOrchestrator
from tickersync.secondary.yahoo_client import YahooClient
from tickersync.stream.manager import SubscriptionManager


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build the dependency graph from settings.

    Does NOT open the database or HTTP clients; _start_components does.
    """
    logger = get_logger("tickersync.main")

    database = SyncDatabase(settings.cache.db_path)
    store = SyncStore(database)

    config = ConfigNotifier(SyncConfig.from_settings(settings))
    if config.current.broker_enabled and not config.current.keys_for().present:
        logger.warning(
            "no_app_keys_configured",
            mode=config.current.mode.value,
            note="Broker stream and REST are unavailable; secondary provider only.",
        )

    queues = RequestQueues(
        {mode: settings.broker.min_interval_ms_for(mode) for mode in TradingMode}
    )
    catalog = SymbolCatalog()
    broker = KisClient(settings.broker, config, queues, catalog, store=store)
    secondary = YahooClient(settings.secondary)
    ticker_service = TickerService(bucket_minutes=settings.cache.bucket_minutes)
    subscriptions = SubscriptionManager(broker, ticker_service, config)
    chart_cache = ChartCache(store, settings.cache)
    backfill = BackfillEngine(broker, chart_cache, catalog, settings.cache)

    orchestrator = FailoverOrchestrator(
        settings=settings,
        config=config,
        broker=broker,
        secondary=secondary,
        subscriptions=subscriptions,
        ticker_service=ticker_service,
        backfill=backfill,
        chart_cache=chart_cache,
        queues=queues,
    )

    return {
        "database": database,
        "store": store,
        "config": config,
        "queues": queues,
        "catalog": catalog,
        "broker": broker,
        "secondary": secondary,
        "ticker_service": ticker_service,
        "subscriptions": subscriptions,
        "chart_cache": chart_cache,
        "backfill": backfill,
        "orchestrator": orchestrator,
    }


def _setup_signal_handlers(orchestrator: FailoverOrchestrator) -> None:
    """SIGINT/SIGTERM trigger a graceful stop. Call with the loop running."""
    logger = get_logger("tickersync.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        asyncio.create_task(orchestrator.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def _start_components(components: dict[str, Any]) -> None:
    await components["database"].connect()
    await components["chart_cache"].purge_expired()
    await components["broker"].connect()


async def _stop_components(components: dict[str, Any]) -> None:
    await components["broker"].close()
    await components["secondary"].close()
    await components["queues"].close()
    await components["database"].close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the engine inside the API application's lifetime.

    On startup: stores components on app.state, opens resources, connects the
    API hub to ticker events and starts the orchestrator as a background task.
    On shutdown: stops the orchestrator and releases resources.
    """
    logger = get_logger("tickersync.main")
    components = app.state.components

    app.state.orchestrator = components["orchestrator"]
    app.state.ticker_service = components["ticker_service"]
    app.state.config = components["config"]
    app.state.backfill = components["backfill"]

    _setup_signal_handlers(components["orchestrator"])
    await _start_components(components)
    unsubscribe_hub = components["ticker_service"].subscribe(app.state.hub.broadcast)

    engine_task = asyncio.create_task(components["orchestrator"].start())
    logger.info("lifespan_started", mode=components["config"].current.mode.value)

    yield

    unsubscribe_hub()
    await components["orchestrator"].stop()
    engine_task.cancel()
    try:
        await engine_task
    except asyncio.CancelledError:
        pass

    await _stop_components(components)
    logger.info("ticker_sync_stopped")


async def run() -> None:
    """Run the engine, with the publishing API unless API_ENABLED=false."""
    settings = AppSettings()

    setup_logging(settings.log_level)
    logger = get_logger("tickersync.main")

    components = _build_components(settings)

    if settings.api.enabled:
        from tickersync.api.app import create_app

        app = create_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_api",
            host=settings.api.host,
            port=settings.api.port,
            mode=settings.broker.mode,
        )

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        _setup_signal_handlers(components["orchestrator"])
        logger.info(
            "starting_without_api",
            mode=settings.broker.mode,
            symbols=len(settings.sync.symbols),
        )
        try:
            await _start_components(components)
            await components["orchestrator"].start()
        finally:
            await _stop_components(components)
            logger.info("ticker_sync_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()

"""FastAPI application factory for the snapshot publishing API."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from tickersync.api.routes import tickers, ws
from tickersync.api.routes.ws import TickerHub


def create_app(lifespan: Any = None) -> FastAPI:
    """Create the API application.

    Args:
        lifespan: Optional async context manager for startup/shutdown.
                  main.py uses it to wire the engine components onto app.state.

    Route handlers read these from app.state: ticker_service, orchestrator,
    config, backfill and hub.
    """
    app = FastAPI(title="Ticker Sync", lifespan=lifespan)

    app.state.hub = TickerHub()

    app.include_router(tickers.router, prefix="/api")
    app.include_router(ws.router)

    return app

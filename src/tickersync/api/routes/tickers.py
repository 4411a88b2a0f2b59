"""JSON endpoints: snapshots, charts, engine status and runtime configuration."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from tickersync.config import ConfigNotifier
from tickersync.logging import get_logger
from tickersync.models import TradingMode

logger = get_logger(__name__)

router = APIRouter()


@router.get("/tickers")
async def get_tickers(request: Request) -> JSONResponse:
    """Latest snapshot of every symbol that has published at least once."""
    snapshots = await request.app.state.ticker_service.get_all()
    return JSONResponse(content=[s.to_dict() for s in sorted(snapshots, key=lambda s: s.symbol)])


@router.get("/tickers/{symbol}")
async def get_ticker(request: Request, symbol: str) -> JSONResponse:
    snapshot = await request.app.state.ticker_service.get_snapshot(symbol)
    if snapshot is None:
        return JSONResponse(content={"error": f"No data for {symbol}"}, status_code=404)
    return JSONResponse(content=snapshot.to_dict())


@router.get("/tickers/{symbol}/chart")
async def get_chart(request: Request, symbol: str) -> JSONResponse:
    """Displayed chart series; falls back to the downsampled cache."""
    points = await request.app.state.ticker_service.get_chart(symbol)
    if not points:
        points = await request.app.state.backfill.cached_series(symbol)
    return JSONResponse(
        content={
            "symbol": symbol,
            "points": [{"price": str(p.price), "date": p.date, "time": p.time} for p in points],
        }
    )


@router.get("/status")
async def get_status(request: Request) -> JSONResponse:
    return JSONResponse(content=request.app.state.orchestrator.get_status())


@router.put("/config")
async def put_config(request: Request) -> JSONResponse:
    """Change trading mode and enable flags at runtime.

    Body fields (all optional): mode ("live" | "paper"), broker_enabled,
    secondary_enabled.
    """
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(content={"error": "Invalid JSON body"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse(content={"error": "Body must be an object"}, status_code=400)

    changes: dict = {}
    if "mode" in body:
        try:
            changes["mode"] = TradingMode(body["mode"])
        except ValueError:
            return JSONResponse(content={"error": f"Unknown mode: {body['mode']}"}, status_code=400)
    for flag in ("broker_enabled", "secondary_enabled"):
        if flag in body:
            if not isinstance(body[flag], bool):
                return JSONResponse(content={"error": f"{flag} must be a boolean"}, status_code=400)
            changes[flag] = body[flag]

    config: ConfigNotifier = request.app.state.config
    updated = await config.update(**changes)
    return JSONResponse(
        content={
            "mode": updated.mode.value,
            "broker_enabled": updated.broker_enabled,
            "secondary_enabled": updated.secondary_enabled,
        }
    )


@router.put("/symbols")
async def put_symbols(request: Request) -> JSONResponse:
    """Replace the active symbol set. Body: {"symbols": ["005930", "0001"]}."""
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(content={"error": "Invalid JSON body"}, status_code=400)
    symbols = body.get("symbols") if isinstance(body, dict) else None
    if not isinstance(symbols, list) or not all(isinstance(s, str) and s for s in symbols):
        return JSONResponse(content={"error": "symbols must be a list of strings"}, status_code=400)

    config: ConfigNotifier = request.app.state.config
    updated = await config.update(active_symbols=symbols)
    logger.info("active_symbols_updated", symbols=list(updated.active_symbols))
    return JSONResponse(content={"symbols": list(updated.active_symbols)})

"""Shared price state and fallback polling."""

from tickersync.market_data.price_poller import PricePoller
from tickersync.market_data.ticker_service import TickerService

__all__ = ["PricePoller", "TickerService"]

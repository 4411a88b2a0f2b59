"""Secondary (non-broker) price provider."""

from tickersync.secondary.yahoo_client import YahooClient, ticker_for

__all__ = ["YahooClient", "ticker_for"]

"""Market calendar and symbol classification."""

from tickersync.market.session import exchange_now, get_session_state, time_of_day, trading_date
from tickersync.market.symbols import INDEX_SYMBOLS, SymbolCatalog, is_index_symbol

__all__ = [
    "INDEX_SYMBOLS",
    "SymbolCatalog",
    "exchange_now",
    "get_session_state",
    "is_index_symbol",
    "time_of_day",
    "trading_date",
]

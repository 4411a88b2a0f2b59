"""Symbol classification for the domestic market.

Index codes are a fixed set. ETF/ETN status cannot be derived from the code
alone, so it is learnt from the product-type code returned by price queries
and remembered for the life of the process.
"""

from tickersync.models import SymbolKind

INDEX_SYMBOLS = frozenset({"0001", "1001", "2001"})

# Product-type codes reported by the price endpoint
_ETF_PRODUCT_TYPES = frozenset({"302", "306"})  # 302 = ETF, 306 = ETN


def is_index_symbol(symbol: str) -> bool:
    return symbol in INDEX_SYMBOLS


class SymbolCatalog:
    """Remembers product metadata observed for each symbol.

    A symbol's kind never changes once observed.
    """

    def __init__(self) -> None:
        self._product_types: dict[str, str] = {}

    def record_product_type(self, symbol: str, product_type: str | None) -> None:
        if not product_type or is_index_symbol(symbol):
            return
        self._product_types.setdefault(symbol, product_type)

    def kind(self, symbol: str) -> SymbolKind:
        if is_index_symbol(symbol):
            return SymbolKind.INDEX
        if self._product_types.get(symbol) in _ETF_PRODUCT_TYPES:
            return SymbolKind.ETF
        return SymbolKind.STOCK

    def is_etf(self, symbol: str) -> bool:
        return self.kind(symbol) is SymbolKind.ETF

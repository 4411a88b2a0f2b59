"""Shared data models for the ticker synchronization engine.

All prices use Decimal. Never use float for prices, change rates or base prices.
Chart dates and times are kept in the provider's wire format ("YYYYMMDD" and
"HHMMSS") because their lexicographic order is the chronological order.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class TradingMode(str, Enum):
    """Brokerage account context. Selects base URLs, credentials and rate limits."""

    LIVE = "live"
    PAPER = "paper"


class SessionState(str, Enum):
    """Labeled trading-hours window of the exchange."""

    REGULAR = "regular"
    EXTENDED = "extended"
    CLOSED = "closed"


class SymbolKind(str, Enum):
    """Instrument category derived from the symbol code and product metadata."""

    INDEX = "index"
    ETF = "etf"
    STOCK = "stock"


class Direction(str, Enum):
    """Price direction relative to the prior settlement price."""

    UP = "up"
    DOWN = "down"
    FLAT = "flat"


class DataSource(str, Enum):
    """Fetch path that produced a snapshot."""

    PRIMARY_STREAM = "primary_stream"
    PRIMARY_REST = "primary_rest"
    SECONDARY = "secondary"


@dataclass(frozen=True)
class Credential:
    """Bearer token issued for one trading mode."""

    token: str
    issued_at: float  # Unix seconds

    def is_valid(self, validity_seconds: float, now: float | None = None) -> bool:
        """Return True while the token is younger than the validity window."""
        current = time.time() if now is None else now
        return current - self.issued_at < validity_seconds


@dataclass(frozen=True)
class ChartPoint:
    """A single 1-minute intraday price point."""

    price: Decimal
    date: str  # YYYYMMDD
    time: str  # HHMMSS

    @property
    def key(self) -> str:
        """Unique, chronologically sortable key: YYYYMMDDHHMMSS."""
        return self.date + self.time

    @property
    def minute_of_day(self) -> int:
        return int(self.time[0:2]) * 60 + int(self.time[2:4])


@dataclass
class ChartCacheEntry:
    """Persisted per-symbol intraday chart cache.

    Points are only ever added or overwritten at their key, never removed
    individually. The whole entry is dropped once last_updated falls out of
    the retention window.
    """

    symbol: str
    last_updated: str  # YYYYMMDD
    base_price: Decimal | None = None
    gap_repaired_on: str | None = None  # YYYYMMDD of the last forced re-backfill
    points: list[ChartPoint] = field(default_factory=list)


@dataclass
class PriceSnapshot:
    """Latest known price state of one symbol from one fetch path."""

    symbol: str
    price: Decimal
    change_rate: Decimal  # percent
    direction: Direction
    source: DataSource
    base_price: Decimal | None = None
    observed_at: float = field(default_factory=time.time)
    intraday: list[ChartPoint] | None = None

    def to_dict(self) -> dict:
        """Serialize for the publishing API (Decimal rendered as strings)."""
        return {
            "symbol": self.symbol,
            "price": str(self.price),
            "change_rate": str(self.change_rate),
            "direction": self.direction.value,
            "source": self.source.value,
            "base_price": str(self.base_price) if self.base_price is not None else None,
            "observed_at": self.observed_at,
            "intraday": (
                [{"price": str(p.price), "date": p.date, "time": p.time} for p in self.intraday]
                if self.intraday is not None
                else None
            ),
        }


def direction_from_sign(sign: str | None) -> Direction:
    """Map the provider's prior-day comparison sign code to a Direction.

    1 = upper limit, 2 = up, 3 = unchanged, 4 = lower limit, 5 = down.
    """
    if sign in ("1", "2"):
        return Direction.UP
    if sign in ("4", "5"):
        return Direction.DOWN
    return Direction.FLAT


def direction_from_prices(price: Decimal, base_price: Decimal | None) -> Direction:
    """Derive direction by comparing a price to its base price."""
    if base_price is None or price == base_price:
        return Direction.FLAT
    return Direction.UP if price > base_price else Direction.DOWN

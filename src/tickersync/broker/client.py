"""Abstract brokerage client interface.

The orchestrator, backfill engine and stream manager depend only on this
interface, keeping KIS-specific wire details in the concrete implementation.
"""

from abc import ABC, abstractmethod

from tickersync.models import PriceSnapshot, SessionState, TradingMode


class BrokerClient(ABC):
    """Abstract base class for brokerage API clients."""

    @abstractmethod
    async def connect(self) -> None:
        """Open HTTP resources."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release HTTP resources."""
        ...

    @abstractmethod
    async def issue_approval_key(self, mode: TradingMode) -> str:
        """Issue a one-time approval key for the streaming handshake."""
        ...

    @abstractmethod
    async def invalidate_token(self, mode: TradingMode) -> None:
        """Drop the cached bearer token for a mode."""
        ...

    @abstractmethod
    async def fetch_current_price(
        self, mode: TradingMode, symbol: str, session: SessionState
    ) -> PriceSnapshot:
        """Fetch the current price, choosing the venue from the session state."""
        ...

    @abstractmethod
    async def fetch_chart_page(
        self, mode: TradingMode, symbol: str, market: str, cursor: str
    ) -> list[dict]:
        """Fetch one page of 1-minute rows ending at `cursor` (HHMMSS), newest first.

        Pagination is NOT handled here; see BackfillEngine.
        """
        ...

    @abstractmethod
    async def fetch_index_chart(self, mode: TradingMode, symbol: str) -> list[dict]:
        """Fetch today's intraday rows for an index in a single query."""
        ...

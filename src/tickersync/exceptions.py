"""Custom exceptions for the ticker synchronization engine.

All broker, cache and streaming exceptions live here to avoid circular
imports between modules. Staleness is deliberately absent: it is a derived
condition (see TickerService.is_stale), never raised.
"""


class SyncError(Exception):
    """Base exception for all synchronization errors."""


class AuthFailure(SyncError):
    """Raised when the provider rejects a token or approval-key issuance.

    Carries the HTTP status and the provider's error code so callers can
    decide on their own retry policy.
    """

    def __init__(self, message: str, status: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


class RateLimitRejected(SyncError):
    """Raised when the provider reports its per-second transaction quota was hit."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransientFetchError(SyncError):
    """Raised on a network or HTTP failure of a single REST call."""

    def __init__(self, message: str, status: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


class TokenExpired(TransientFetchError):
    """Raised when the provider reports that the bearer token has expired."""


class StreamDisconnected(SyncError):
    """Raised when the shared streaming connection drops or cannot be opened."""


class SubscriptionRejected(SyncError):
    """Raised (or surfaced) when the stream refuses a subscription for one symbol."""

    def __init__(self, symbol: str, message: str) -> None:
        super().__init__(f"{symbol}: {message}")
        self.symbol = symbol
        self.reason = message

"""Exchange session clock.

Maps wall-clock time to the exchange's trading session. The exchange runs on
a fixed UTC+9 offset with no daylight saving, so a fixed offset is exact.

Windows (start inclusive, end exclusive, checked in order):
  08:00-08:50  EXTENDED  alternate-venue pre-market
  09:00-15:30  REGULAR   main exchange hours
  15:30-20:00  EXTENDED  alternate-venue after-market
Weekends are always CLOSED.
"""

from datetime import datetime, timedelta, timezone

from tickersync.models import SessionState

EXCHANGE_TZ = timezone(timedelta(hours=9))

SESSION_WINDOWS: tuple[tuple[int, int, SessionState], ...] = (
    (8 * 60, 8 * 60 + 50, SessionState.EXTENDED),
    (9 * 60, 15 * 60 + 30, SessionState.REGULAR),
    (15 * 60 + 30, 20 * 60, SessionState.EXTENDED),
)


def exchange_now(now: datetime | None = None) -> datetime:
    """Return `now` (default: current time) expressed in exchange time.

    Naive datetimes are taken to be UTC.
    """
    if now is None:
        return datetime.now(EXCHANGE_TZ)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(EXCHANGE_TZ)


def get_session_state(now: datetime | None = None) -> SessionState:
    """Return the session state at `now`. Pure lookup, no side effects."""
    local = exchange_now(now)
    if local.weekday() >= 5:
        return SessionState.CLOSED

    minute = local.hour * 60 + local.minute
    for start, end, state in SESSION_WINDOWS:
        if start <= minute < end:
            return state
    return SessionState.CLOSED


def trading_date(now: datetime | None = None) -> str:
    """Exchange calendar date as YYYYMMDD."""
    return exchange_now(now).strftime("%Y%m%d")


def time_of_day(now: datetime | None = None) -> str:
    """Exchange time of day as HHMMSS, seconds truncated to zero."""
    return exchange_now(now).strftime("%H%M") + "00"

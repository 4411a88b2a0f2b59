"""Tests for the exchange session clock and symbol classification."""

from datetime import datetime, timedelta, timezone

import pytest

from tickersync.market.session import get_session_state, time_of_day, trading_date
from tickersync.market.symbols import SymbolCatalog, is_index_symbol
from tickersync.models import SessionState, SymbolKind

KST = timezone(timedelta(hours=9))


def _at(hour: int, minute: int, day: int = 15) -> datetime:
    # 2024-01-15 is a Monday
    return datetime(2024, 1, day, hour, minute, tzinfo=KST)


@pytest.mark.parametrize(
    "hour,minute,expected",
    [
        (7, 59, SessionState.CLOSED),
        (8, 0, SessionState.EXTENDED),
        (8, 49, SessionState.EXTENDED),
        (8, 50, SessionState.CLOSED),
        (8, 59, SessionState.CLOSED),
        (9, 0, SessionState.REGULAR),
        (12, 0, SessionState.REGULAR),
        (15, 29, SessionState.REGULAR),
        (15, 30, SessionState.EXTENDED),
        (19, 59, SessionState.EXTENDED),
        (20, 0, SessionState.CLOSED),
        (23, 30, SessionState.CLOSED),
    ],
)
def test_weekday_boundaries(hour: int, minute: int, expected: SessionState) -> None:
    assert get_session_state(_at(hour, minute)) is expected


@pytest.mark.parametrize("day", [13, 14])  # Saturday, Sunday
def test_weekend_is_closed(day: int) -> None:
    assert get_session_state(_at(10, 0, day=day)) is SessionState.CLOSED


def test_utc_input_is_converted_to_exchange_time() -> None:
    # 00:30 UTC == 09:30 KST
    now = datetime(2024, 1, 15, 0, 30, tzinfo=timezone.utc)
    assert get_session_state(now) is SessionState.REGULAR


def test_naive_input_is_treated_as_utc() -> None:
    # 06:45 UTC == 15:45 KST
    assert get_session_state(datetime(2024, 1, 15, 6, 45)) is SessionState.EXTENDED
    assert trading_date(datetime(2024, 1, 15, 16, 0)) == "20240116"


def test_time_of_day_truncates_seconds() -> None:
    now = datetime(2024, 1, 15, 10, 7, 45, tzinfo=KST)
    assert time_of_day(now) == "100700"
    assert trading_date(now) == "20240115"


class TestSymbolCatalog:
    def test_index_symbols(self) -> None:
        catalog = SymbolCatalog()
        for symbol in ("0001", "1001", "2001"):
            assert is_index_symbol(symbol)
            assert catalog.kind(symbol) is SymbolKind.INDEX
        assert not is_index_symbol("005930")

    def test_etf_learnt_from_product_type(self) -> None:
        catalog = SymbolCatalog()
        assert catalog.kind("069500") is SymbolKind.STOCK
        catalog.record_product_type("069500", "302")
        assert catalog.is_etf("069500")

    def test_kind_does_not_change_once_observed(self) -> None:
        catalog = SymbolCatalog()
        catalog.record_product_type("005930", "300")
        catalog.record_product_type("005930", "306")
        assert catalog.kind("005930") is SymbolKind.STOCK

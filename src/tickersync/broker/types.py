"""KIS Open API constants and parsing helpers.

Endpoints, transaction ids (tr_id) and provider error codes in one place so
the REST client, the streaming protocol and the backfill engine agree.
"""

from decimal import Decimal, InvalidOperation

from tickersync.models import TradingMode

REST_BASE_URLS: dict[TradingMode, str] = {
    TradingMode.LIVE: "https://openapi.koreainvestment.com:9443",
    TradingMode.PAPER: "https://openapivts.koreainvestment.com:29443",
}

STREAM_URLS: dict[TradingMode, str] = {
    TradingMode.LIVE: "ws://ops.koreainvestment.com:21000",
    TradingMode.PAPER: "ws://ops.koreainvestment.com:31000",
}

TOKEN_PATH = "/oauth2/tokenP"
APPROVAL_PATH = "/oauth2/Approval"
PRICE_PATH = "/uapi/domestic-stock/v1/quotations/inquire-price"
INDEX_PRICE_PATH = "/uapi/domestic-stock/v1/quotations/inquire-index-price"
CHART_PATH = "/uapi/domestic-stock/v1/quotations/inquire-time-itemchartprice"
INDEX_CHART_PATH = "/uapi/domestic-stock/v1/quotations/inquire-time-indexchartprice"

# REST transaction ids
TR_PRICE = "FHKST01010100"
TR_INDEX_PRICE = "FHPUP02100000"
TR_CHART = "FHKST03010200"
TR_INDEX_CHART = "FHKUP03500200"

# Market division codes
MARKET_KRX = "J"  # main exchange
MARKET_NXT = "NX"  # alternate venue (extended hours)
MARKET_INDEX = "U"

# Provider error codes
TOKEN_EXPIRED_CODE = "EGW00123"
TOKEN_QUOTA_CODE = "EGW00133"  # one issuance per minute
TPS_EXCEEDED_CODE = "EGW00201"

# Intraday chart rows outside this window are ignored
CHART_WINDOW_START = "080000"
CHART_WINDOW_END = "180000"


def to_decimal(value: object, default: Decimal = Decimal("0")) -> Decimal:
    """Parse a provider numeric field. Returns `default` for empty or garbage input."""
    if value is None or value == "":
        return default
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default
    if not result.is_finite():
        return default
    return result

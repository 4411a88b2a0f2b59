"""KIS Open API REST client via httpx.

Every request, token issuance included, goes through the request queue of
its trading mode. Provider error codes are mapped onto the exception
hierarchy: token expiry invalidates the cached credential and retries once,
the per-second quota surfaces as RateLimitRejected, everything else as
TransientFetchError.
"""

import time
from typing import Any

import httpx

from tickersync.broker.client import BrokerClient
from tickersync.broker.rate_limiter import RequestQueues
from tickersync.broker.tokens import CredentialStore, TokenManager
from tickersync.broker.types import (
    APPROVAL_PATH,
    CHART_PATH,
    CHART_WINDOW_END,
    CHART_WINDOW_START,
    INDEX_CHART_PATH,
    INDEX_PRICE_PATH,
    MARKET_INDEX,
    MARKET_KRX,
    MARKET_NXT,
    PRICE_PATH,
    REST_BASE_URLS,
    TOKEN_EXPIRED_CODE,
    TOKEN_PATH,
    TPS_EXCEEDED_CODE,
    TR_CHART,
    TR_INDEX_CHART,
    TR_INDEX_PRICE,
    TR_PRICE,
    to_decimal,
)
from tickersync.config import BrokerSettings, ConfigNotifier
from tickersync.exceptions import (
    AuthFailure,
    RateLimitRejected,
    TokenExpired,
    TransientFetchError,
)
from tickersync.logging import get_logger
from tickersync.market.symbols import SymbolCatalog, is_index_symbol
from tickersync.models import (
    Credential,
    DataSource,
    PriceSnapshot,
    SessionState,
    TradingMode,
    direction_from_sign,
)

logger = get_logger(__name__)


class KisClient(BrokerClient):
    """Concrete KIS Open API client.

    Args:
        settings: Static broker settings (timeouts, token validity).
        config: Runtime config; app keys are read from it on every call.
        queues: Per-mode request queues shared by every REST caller.
        catalog: Receives product types seen in price responses.
        store: Credential store for persisted tokens.
        transport: Optional httpx transport (tests inject a MockTransport).
    """

    def __init__(
        self,
        settings: BrokerSettings,
        config: ConfigNotifier,
        queues: RequestQueues,
        catalog: SymbolCatalog,
        store: CredentialStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._config = config
        self._queues = queues
        self._catalog = catalog
        self._transport = transport
        self._http_clients: dict[TradingMode, httpx.AsyncClient] = {}
        self.tokens = TokenManager(
            self._issue_token,
            store=store,
            validity_seconds=settings.token_validity_hours * 3600,
        )

    async def connect(self) -> None:
        for mode in TradingMode:
            self._http(mode)
        logger.info("kis_client_ready", mode=self._config.current.mode.value)

    async def close(self) -> None:
        for client in self._http_clients.values():
            await client.aclose()
        self._http_clients.clear()
        logger.info("kis_client_closed")

    def _http(self, mode: TradingMode) -> httpx.AsyncClient:
        client = self._http_clients.get(mode)
        if client is None:
            client = httpx.AsyncClient(
                base_url=REST_BASE_URLS[mode],
                timeout=self._settings.request_timeout,
                transport=self._transport,
            )
            self._http_clients[mode] = client
        return client

    # -- credentials -------------------------------------------------------

    def _app_keys(self, mode: TradingMode) -> tuple[str, str]:
        keys = self._config.current.keys_for(mode)
        if not keys.present:
            raise AuthFailure(f"No app key configured for {mode.value} mode")
        return keys.app_key.get_secret_value(), keys.app_secret.get_secret_value()

    async def _issue_token(self, mode: TradingMode) -> Credential:
        app_key, app_secret = self._app_keys(mode)
        body = {"grant_type": "client_credentials", "appkey": app_key, "appsecret": app_secret}
        data = await self._post_auth(mode, TOKEN_PATH, body)
        token = data.get("access_token")
        if not token:
            raise AuthFailure("Token response missing access_token")
        return Credential(token=token, issued_at=time.time())

    async def issue_approval_key(self, mode: TradingMode) -> str:
        app_key, app_secret = self._app_keys(mode)
        body = {"grant_type": "client_credentials", "appkey": app_key, "secretkey": app_secret}
        data = await self._post_auth(mode, APPROVAL_PATH, body)
        key = data.get("approval_key")
        if not key:
            raise AuthFailure("Approval response missing approval_key")
        logger.info("approval_key_issued", mode=mode.value)
        return key

    async def invalidate_token(self, mode: TradingMode) -> None:
        await self.tokens.invalidate(mode)

    async def _post_auth(self, mode: TradingMode, path: str, body: dict) -> dict:
        client = self._http(mode)

        async def _send() -> httpx.Response:
            return await client.post(path, json=body)

        try:
            response = await self._queues.get(mode).enqueue(_send)
        except httpx.HTTPError as exc:
            raise AuthFailure(f"Auth request failed: {exc}") from exc

        data = _json_body(response)
        if not response.is_success:
            code = data.get("error_code") or data.get("msg_cd")
            message = data.get("error_description") or data.get("msg1") or response.reason_phrase
            raise AuthFailure(
                f"Auth request rejected: {message}", status=response.status_code, code=code
            )
        return data

    # -- quotations --------------------------------------------------------

    async def _get(self, mode: TradingMode, path: str, tr_id: str, params: dict) -> dict:
        """Authorized GET through the queue, retrying once on token expiry."""
        credential = await self.tokens.get_token(mode)
        try:
            return await self._send_get(mode, path, tr_id, params, credential)
        except TokenExpired:
            logger.warning("token_expired_retrying", mode=mode.value, tr_id=tr_id)
            await self.tokens.invalidate(mode, credential.token)
            credential = await self.tokens.get_token(mode)
            return await self._send_get(mode, path, tr_id, params, credential)

    async def _send_get(
        self,
        mode: TradingMode,
        path: str,
        tr_id: str,
        params: dict,
        credential: Credential,
    ) -> dict:
        app_key, app_secret = self._app_keys(mode)
        headers = {
            "content-type": "application/json; charset=utf-8",
            "authorization": f"Bearer {credential.token}",
            "appkey": app_key,
            "appsecret": app_secret,
            "tr_id": tr_id,
            "custtype": "P",
        }
        client = self._http(mode)

        async def _send() -> httpx.Response:
            return await client.get(path, params=params, headers=headers)

        try:
            response = await self._queues.get(mode).enqueue(_send)
        except httpx.HTTPError as exc:
            raise TransientFetchError(f"{tr_id} request failed: {exc}") from exc

        data = _json_body(response)
        code = data.get("msg_cd")
        if code == TOKEN_EXPIRED_CODE:
            raise TokenExpired("Access token expired", status=response.status_code, code=code)
        if code == TPS_EXCEEDED_CODE:
            raise RateLimitRejected(data.get("msg1") or "Transaction quota exceeded", code=code)
        if not response.is_success or data.get("rt_cd", "0") != "0":
            raise TransientFetchError(
                f"{tr_id} failed: {data.get('msg1') or response.reason_phrase}",
                status=response.status_code,
                code=code,
            )
        return data

    async def fetch_price(self, mode: TradingMode, symbol: str, market: str) -> PriceSnapshot:
        """Fetch the current price from one venue (J, NX) or the index endpoint."""
        if is_index_symbol(symbol):
            data = await self._get(
                mode,
                INDEX_PRICE_PATH,
                TR_INDEX_PRICE,
                {"fid_cond_mrkt_div_code": MARKET_INDEX, "fid_input_iscd": symbol},
            )
            return _index_snapshot(symbol, data.get("output") or {})

        data = await self._get(
            mode,
            PRICE_PATH,
            TR_PRICE,
            {"fid_cond_mrkt_div_code": market, "fid_input_iscd": symbol},
        )
        output = data.get("output") or {}
        price = to_decimal(output.get("stck_prpr"))
        if price <= 0:
            raise TransientFetchError(f"No {market} price for {symbol}")

        self._catalog.record_product_type(symbol, output.get("prdt_type_cd"))
        base_price = to_decimal(output.get("stck_sdpr"))
        return PriceSnapshot(
            symbol=symbol,
            price=price,
            change_rate=to_decimal(output.get("prdy_ctrt")),
            direction=direction_from_sign(output.get("prdy_vrss_sign")),
            source=DataSource.PRIMARY_REST,
            base_price=base_price if base_price > 0 else None,
        )

    async def fetch_current_price(
        self, mode: TradingMode, symbol: str, session: SessionState
    ) -> PriceSnapshot:
        """Pick the venue from the session; extended hours fall back to the main exchange."""
        if is_index_symbol(symbol) or session is not SessionState.EXTENDED:
            return await self.fetch_price(mode, symbol, MARKET_KRX)
        try:
            return await self.fetch_price(mode, symbol, MARKET_NXT)
        except (TransientFetchError, RateLimitRejected) as exc:
            logger.debug("nxt_price_unavailable", symbol=symbol, error=str(exc))
            return await self.fetch_price(mode, symbol, MARKET_KRX)

    async def fetch_chart_page(
        self, mode: TradingMode, symbol: str, market: str, cursor: str
    ) -> list[dict]:
        data = await self._get(
            mode,
            CHART_PATH,
            TR_CHART,
            {
                "FID_ETC_CLS_CODE": "",
                "FID_COND_MRKT_DIV_CODE": market,
                "FID_INPUT_ISCD": symbol,
                "FID_INPUT_HOUR_1": cursor,
                "FID_PW_DATA_INCU_YN": "N",
                "FID_PW_DATA_INC_CLQL_CODE": "N",
            },
        )
        return list(data.get("output2") or [])

    async def fetch_index_chart(self, mode: TradingMode, symbol: str) -> list[dict]:
        data = await self._get(
            mode,
            INDEX_CHART_PATH,
            TR_INDEX_CHART,
            {
                "FID_COND_MRKT_DIV_CODE": MARKET_INDEX,
                "FID_INPUT_ISCD": symbol,
                "FID_INPUT_HOUR_1": "60",
                "FID_PW_DATA_INCU_YN": "N",
                "FID_ETC_CLS_CODE": "0",
            },
        )
        return [
            row
            for row in data.get("output2") or []
            if CHART_WINDOW_START <= row.get("stck_cntg_hour", "") <= CHART_WINDOW_END
        ]


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _index_snapshot(symbol: str, output: dict) -> PriceSnapshot:
    price = to_decimal(output.get("bstp_nmix_prpr"))
    if price <= 0:
        raise TransientFetchError(f"No index price for {symbol}")
    base_price = to_decimal(output.get("bstp_nmix_prdy_clpr"))
    return PriceSnapshot(
        symbol=symbol,
        price=price,
        change_rate=to_decimal(output.get("bstp_nmix_prdy_ctrt")),
        direction=direction_from_sign(output.get("bstp_nmix_prdy_vrss_sign")),
        source=DataSource.PRIMARY_REST,
        base_price=base_price if base_price > 0 else None,
    )

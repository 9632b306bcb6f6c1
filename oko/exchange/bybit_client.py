"""
Bybit V5 REST client for linear USDT perpetuals.

Handles:
- HMAC-SHA256 request signing (timestamp + api key + recv window + params)
- Alphabetical GET parameter ordering and byte-identical signed POST bodies
- Shared rate limiting (bounded concurrency, minimum spacing)
- Bounded retry with classified errors
- Quantity/price rounding to instrument rules before submission
"""
import asyncio
import hashlib
import hmac
import json
import ssl
import time
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlencode

import aiohttp
import certifi

from oko.constants import (
    BYBIT_CATEGORY,
    BYBIT_MAINNET_URL,
    BYBIT_SETTLE_COIN,
    BYBIT_TESTNET_URL,
    DEFAULT_API_TIMEOUT,
    DEFAULT_RECV_WINDOW_MS,
    INSTRUMENTS_ENDPOINT,
    INSTRUMENT_CACHE_SECONDS,
    MAX_RETRY_ATTEMPTS,
    ORDER_CREATE_ENDPOINT,
    ORDER_LINK_ID_PREFIX,
    POSITION_LIST_ENDPOINT,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_BACKOFF_SECONDS,
    SET_LEVERAGE_ENDPOINT,
    SIGN_TYPE_HMAC,
    TICKERS_ENDPOINT,
    TRADING_STOP_ENDPOINT,
)
from oko.domain.models import Side
from oko.exceptions import APIError, AuthenticationError, RateLimitError
from oko.exchange.base import ExchangeAdapter, OrderAck, RemotePosition
from oko.exchange.error_classifier import ClassifiedError, ErrorType
from oko.exchange.instruments import InstrumentCache, InstrumentRules
from oko.exchange.rate_limiter import RateLimiter
from oko.monitoring.logger import get_logger
from oko.utils.retry import CallResult, call_with_retry

logger = get_logger(__name__)

RATE_LIMIT_CODES = frozenset({"10006", "10018"})
AUTH_CODES = frozenset({"10003", "10004", "10005"})
LEVERAGE_NOT_MODIFIED = "110043"
DUPLICATE_ORDER_LINK_ID = "110072"
MAX_POSITION_PAGES = 10


def _to_decimal(value: Any) -> Optional[Decimal]:
    """Parse a venue numeric string. Empty strings and zero map to None."""
    if value is None or value == "":
        return None
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        return None
    return parsed if parsed != 0 else None


def new_order_link_id() -> str:
    """Client order id for one logical order; reused on every retry of that order."""
    return f"{ORDER_LINK_ID_PREFIX}{uuid.uuid4().hex[:28]}"


def canonical_query(params: Dict[str, Any]) -> str:
    """GET parameters in alphabetical order, URL-encoded. Signed and sent as-is."""
    items = sorted((k, v) for k, v in params.items() if v is not None)
    return urlencode(items)


def canonical_body(params: Dict[str, Any]) -> str:
    """POST body with sorted keys and no whitespace. Signed and sent as-is."""
    return json.dumps({k: v for k, v in params.items() if v is not None}, sort_keys=True, separators=(",", ":"))


def parse_position(raw: Dict[str, Any]) -> Optional[RemotePosition]:
    """Convert one /v5/position/list row; flat rows (size 0 or no side) return None."""
    size = _to_decimal(raw.get("size"))
    side_raw = raw.get("side") or ""
    if size is None or size <= 0 or side_raw not in ("Buy", "Sell"):
        return None
    return RemotePosition(
        symbol=raw["symbol"],
        side=Side.parse(side_raw),
        size=size,
        entry_price=_to_decimal(raw.get("avgPrice")) or Decimal("0"),
        mark_price=_to_decimal(raw.get("markPrice")) or Decimal("0"),
        unrealized_pnl=_to_decimal(raw.get("unrealisedPnl")) or Decimal("0"),
        initial_margin=_to_decimal(raw.get("positionIM")) or Decimal("0"),
        leverage=_to_decimal(raw.get("leverage")) or Decimal("1"),
        stop_loss=_to_decimal(raw.get("stopLoss")),
        take_profit=_to_decimal(raw.get("takeProfit")),
    )


def parse_instrument(raw: Dict[str, Any]) -> InstrumentRules:
    lot = raw.get("lotSizeFilter") or {}
    price = raw.get("priceFilter") or {}
    lev = raw.get("leverageFilter") or {}
    return InstrumentRules(
        symbol=raw["symbol"],
        qty_step=Decimal(str(lot.get("qtyStep") or "0.001")),
        min_qty=Decimal(str(lot.get("minOrderQty") or "0")),
        tick_size=Decimal(str(price.get("tickSize") or "0.01")),
        min_notional=Decimal(str(lot.get("minNotionalValue") or "0")),
        max_leverage=Decimal(str(lev.get("maxLeverage") or "100")),
    )


class BybitClient(ExchangeAdapter):
    """
    Bybit V5 adapter.

    Every call goes through sign_and_send, which funnels each attempt through
    the shared rate limiter and the bounded retry loop.
    """

    name = "bybit"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        use_testnet: bool = False,
        *,
        recv_window_ms: int = DEFAULT_RECV_WINDOW_MS,
        timeout_seconds: float = DEFAULT_API_TIMEOUT,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        base_backoff_seconds: float = RETRY_BASE_DELAY_SECONDS,
        max_backoff_seconds: float = RETRY_MAX_BACKOFF_SECONDS,
        rate_limiter: Optional[RateLimiter] = None,
        instrument_cache_seconds: float = INSTRUMENT_CACHE_SECONDS,
        timestamp_ms: Callable[[], int] = lambda: int(time.time() * 1000),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize Bybit client.

        Args:
            api_key: Bybit API key
            api_secret: Bybit API secret
            use_testnet: Use api-testnet.bybit.com
            recv_window_ms: Receive window sent with and signed into every request
            timeout_seconds: Total timeout per HTTP attempt
            max_attempts: Attempts per call including the first
            rate_limiter: Shared limiter (a private one is created if omitted)
            timestamp_ms: Millisecond clock used for request timestamps
            sleep: Awaitable sleep used between retries
        """
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = BYBIT_TESTNET_URL if use_testnet else BYBIT_MAINNET_URL
        self.recv_window = str(recv_window_ms)
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.rate_limiter = rate_limiter or RateLimiter()
        self.instruments = InstrumentCache(ttl_seconds=instrument_cache_seconds)
        self._timestamp_ms = timestamp_ms
        self._sleep = sleep
        self._session: Optional[aiohttp.ClientSession] = None
        self._ssl_context: Optional[ssl.SSLContext] = None

        logger.info("Bybit client configuration loaded", base_url=self.base_url)

    # ---------- signing ----------

    def _sign(self, payload: str) -> str:
        return hmac.new(
            self.api_secret.encode("utf-8"),
            payload.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def build_request(
        self, method: str, endpoint: str, params: Dict[str, Any], timestamp: str
    ) -> Tuple[str, Dict[str, str], Optional[str]]:
        """
        Build url, headers and body for one attempt.

        The string that is signed is exactly the query string (GET) or body (POST)
        that goes on the wire.
        """
        method = method.upper()
        url = f"{self.base_url}{endpoint}"
        body: Optional[str] = None
        if method == "GET":
            param_str = canonical_query(params)
            if param_str:
                url = f"{url}?{param_str}"
        else:
            param_str = canonical_body(params)
            body = param_str

        signature = self._sign(timestamp + self.api_key + self.recv_window + param_str)
        headers = {
            "X-BAPI-API-KEY": self.api_key,
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-SIGN": signature,
            "X-BAPI-RECV-WINDOW": self.recv_window,
            "X-BAPI-SIGN-TYPE": SIGN_TYPE_HMAC,
        }
        if body is not None:
            headers["Content-Type"] = "application/json"
        return url, headers, body

    # ---------- transport ----------

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(connector=connector, timeout=timeout)
        return self._session

    async def _send(self, method: str, url: str, headers: Dict[str, str], body: Optional[str]) -> Dict[str, Any]:
        """One HTTP round trip. Raises APIError subclasses for HTTP-level failures."""
        session = await self._get_session()
        async with session.request(method, url, headers=headers, data=body) as response:
            if response.status == 429:
                raise RateLimitError("HTTP 429 too many requests", http_status=429)
            if response.status in (401, 403):
                raise AuthenticationError(f"HTTP {response.status}", http_status=response.status)
            if response.status >= 400:
                text = await response.text()
                raise APIError(f"HTTP {response.status}: {text[:200]}", http_status=response.status)
            return await response.json(content_type=None)

    async def _request_once(
        self, method: str, endpoint: str, params: Dict[str, Any], ok_codes: Iterable[str]
    ) -> Dict[str, Any]:
        # Fresh timestamp per attempt so retries never fall outside the recv window
        timestamp = str(self._timestamp_ms())
        url, headers, body = self.build_request(method, endpoint, params, timestamp)
        data = await self._send(method.upper(), url, headers, body)

        ret_code = str(data.get("retCode", "0"))
        if ret_code == "0" or ret_code in ok_codes:
            return data.get("result") or {}

        message = data.get("retMsg") or "unknown error"
        if ret_code in RATE_LIMIT_CODES:
            raise RateLimitError(message, code=ret_code)
        if ret_code in AUTH_CODES:
            raise AuthenticationError(message, code=ret_code)
        raise APIError(message, code=ret_code)

    async def sign_and_send(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        ok_codes: Iterable[str] = (),
    ) -> CallResult[Dict[str, Any]]:
        """Signed, rate-limited, retried request. Returns the `result` object or a classified error."""
        params = dict(params or {})
        ok_codes = frozenset(ok_codes)

        async def attempt() -> Dict[str, Any]:
            return await self.rate_limiter.execute(
                lambda: self._request_once(method, endpoint, params, ok_codes)
            )

        result = await call_with_retry(
            attempt,
            max_attempts=self.max_attempts,
            base_delay=self.base_backoff_seconds,
            max_backoff=self.max_backoff_seconds,
            operation=f"{method.upper()} {endpoint}",
            sleep=self._sleep,
        )
        logger.info(
            "API_CALL",
            method=method.upper(),
            endpoint=endpoint,
            attempts=result.attempts,
            ok=result.ok,
            error_type=result.error.type.value if result.error else None,
        )
        return result

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ---------- reads ----------

    async def get_positions(self) -> CallResult[List[RemotePosition]]:
        positions: List[RemotePosition] = []
        cursor: Optional[str] = None
        attempts = 0
        for _ in range(MAX_POSITION_PAGES):
            params = {"category": BYBIT_CATEGORY, "settleCoin": BYBIT_SETTLE_COIN, "limit": 200, "cursor": cursor}
            result = await self.sign_and_send("GET", POSITION_LIST_ENDPOINT, params)
            attempts += result.attempts
            if not result.ok:
                return CallResult.failure(result.error, attempts)
            for raw in result.value.get("list") or []:
                parsed = parse_position(raw)
                if parsed is not None:
                    positions.append(parsed)
            cursor = result.value.get("nextPageCursor") or None
            if not cursor:
                break
        return CallResult.success(positions, attempts)

    async def get_mark_price(self, symbol: str) -> CallResult[Decimal]:
        result = await self.sign_and_send("GET", TICKERS_ENDPOINT, {"category": BYBIT_CATEGORY, "symbol": symbol})
        if not result.ok:
            return CallResult.failure(result.error, result.attempts)
        rows = result.value.get("list") or []
        price = _to_decimal(rows[0].get("markPrice")) if rows else None
        if price is None:
            return CallResult.failure(
                ClassifiedError(ErrorType.TRADE_FAULT, f"No mark price for {symbol}"), result.attempts
            )
        return CallResult.success(price, result.attempts)

    async def get_instrument(self, symbol: str) -> CallResult[InstrumentRules]:
        cached = self.instruments.get(symbol)
        if cached is not None:
            return CallResult.success(cached, 0)
        result = await self.sign_and_send("GET", INSTRUMENTS_ENDPOINT, {"category": BYBIT_CATEGORY, "symbol": symbol})
        if not result.ok:
            return CallResult.failure(result.error, result.attempts)
        rows = result.value.get("list") or []
        if not rows:
            return CallResult.failure(
                ClassifiedError(ErrorType.TRADE_FAULT, f"instrument not found: {symbol}"), result.attempts
            )
        rules = parse_instrument(rows[0])
        self.instruments.put(rules)
        return CallResult.success(rules, result.attempts)

    # ---------- writes ----------

    async def place_market_order(
        self,
        symbol: str,
        side: Side,
        qty: Decimal,
        reduce_only: bool = False,
        stop_loss: Optional[Decimal] = None,
        take_profit: Optional[Decimal] = None,
    ) -> CallResult[OrderAck]:
        rules_result = await self.get_instrument(symbol)
        if not rules_result.ok:
            return CallResult.failure(rules_result.error, rules_result.attempts)
        rules = rules_result.value

        rounded_qty = rules.round_qty(qty)
        if rounded_qty <= 0 or (not reduce_only and rounded_qty < rules.min_qty):
            return CallResult.failure(
                ClassifiedError(
                    ErrorType.TRADE_FAULT,
                    f"order size {qty} below minimum {rules.min_qty} for {symbol}",
                ),
                rules_result.attempts,
            )

        # Reduce-only orders trade against the held side
        order_side = side.opposite.order_side if reduce_only else side.order_side
        params: Dict[str, Any] = {
            "category": BYBIT_CATEGORY,
            "symbol": symbol,
            "side": order_side,
            "orderType": "Market",
            "qty": str(rounded_qty),
            "positionIdx": 0,
        }
        if reduce_only:
            params["reduceOnly"] = True
        if stop_loss is not None:
            params["stopLoss"] = str(rules.round_price(stop_loss))
        if take_profit is not None:
            params["takeProfit"] = str(rules.round_price(take_profit))
        if stop_loss is not None or take_profit is not None:
            params["tpslMode"] = "Full"
        # Same link id on every attempt: a retry after a lost response is
        # answered with "duplicate" instead of filling a second time
        link_id = new_order_link_id()
        params["orderLinkId"] = link_id

        result = await self.sign_and_send(
            "POST", ORDER_CREATE_ENDPOINT, params, ok_codes=(DUPLICATE_ORDER_LINK_ID,)
        )
        if not result.ok:
            return CallResult.failure(result.error, result.attempts)
        order_id = result.value.get("orderId")
        if not order_id:
            logger.warning("ORDER_ALREADY_ACCEPTED", symbol=symbol, order_link_id=link_id, attempts=result.attempts)
        ack = OrderAck(
            order_id=str(order_id or link_id),
            symbol=symbol,
            side=side,
            qty=rounded_qty,
            reduce_only=reduce_only,
            client_order_id=link_id,
        )
        return CallResult.success(ack, result.attempts)

    async def set_protection(
        self,
        symbol: str,
        stop_loss: Optional[Decimal] = None,
        take_profit: Optional[Decimal] = None,
    ) -> CallResult[Dict[str, Any]]:
        if stop_loss is None and take_profit is None:
            return CallResult.success({}, 0)
        rules_result = await self.get_instrument(symbol)
        if not rules_result.ok:
            return CallResult.failure(rules_result.error, rules_result.attempts)
        rules = rules_result.value

        params: Dict[str, Any] = {
            "category": BYBIT_CATEGORY,
            "symbol": symbol,
            "positionIdx": 0,
            "tpslMode": "Full",
        }
        if stop_loss is not None:
            params["stopLoss"] = str(rules.round_price(stop_loss))
            params["slTriggerBy"] = "MarkPrice"
        if take_profit is not None:
            params["takeProfit"] = str(rules.round_price(take_profit))
            params["tpTriggerBy"] = "MarkPrice"
        return await self.sign_and_send("POST", TRADING_STOP_ENDPOINT, params)

    async def set_leverage(self, symbol: str, leverage: int) -> CallResult[Dict[str, Any]]:
        params = {
            "category": BYBIT_CATEGORY,
            "symbol": symbol,
            "buyLeverage": str(leverage),
            "sellLeverage": str(leverage),
        }
        return await self.sign_and_send("POST", SET_LEVERAGE_ENDPOINT, params, ok_codes=(LEVERAGE_NOT_MODIFIED,))

"""
Tests for the Bybit V5 client: signing, canonical params, parsing, and the
request path through the rate limiter and retry loop (transport patched).
"""
import hashlib
import hmac
import asyncio
import itertools
import json
from decimal import Decimal
from urllib.parse import urlsplit

import pytest

from oko.domain.models import Side
from oko.exchange.bybit_client import (
    BybitClient,
    canonical_body,
    canonical_query,
    parse_instrument,
    parse_position,
)
from oko.exchange.error_classifier import ErrorType
from oko.exchange.rate_limiter import RateLimiter

API_KEY = "test-key"
API_SECRET = "test-secret"

INSTRUMENT_RESPONSE = {
    "retCode": 0,
    "result": {
        "list": [
            {
                "symbol": "BTCUSDT",
                "lotSizeFilter": {"qtyStep": "0.001", "minOrderQty": "0.001", "minNotionalValue": "5"},
                "priceFilter": {"tickSize": "0.10"},
                "leverageFilter": {"maxLeverage": "100"},
            }
        ]
    },
}


def expected_signature(payload: str) -> str:
    return hmac.new(API_SECRET.encode(), payload.encode(), hashlib.sha256).hexdigest()


class FakeTransport:
    """Stands in for BybitClient._send; answers per endpoint path."""

    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    async def __call__(self, method, url, headers, body):
        self.requests.append({"method": method, "url": url, "headers": headers, "body": body})
        answer = self.responses[urlsplit(url).path]
        if isinstance(answer, list):
            answer = answer.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    def bodies(self, path):
        return [json.loads(r["body"]) for r in self.requests if urlsplit(r["url"]).path == path]


async def _no_sleep(_):
    return None


@pytest.fixture
def client():
    return BybitClient(
        API_KEY,
        API_SECRET,
        use_testnet=True,
        rate_limiter=RateLimiter(max_concurrent=5, min_interval_ms=0),
        timestamp_ms=itertools.count(1_700_000_000_000).__next__,
        sleep=_no_sleep,
    )


def install(client, responses) -> FakeTransport:
    transport = FakeTransport(responses)
    client._send = transport
    return transport


class TestSigning:

    def test_canonical_query_sorted_and_skips_none(self):
        assert canonical_query({"symbol": "BTCUSDT", "category": "linear", "cursor": None}) == (
            "category=linear&symbol=BTCUSDT"
        )

    def test_canonical_body_sorted_compact(self):
        assert canonical_body({"qty": "1", "category": "linear", "stopLoss": None}) == (
            '{"category":"linear","qty":"1"}'
        )

    def test_get_request_signs_query_string(self, client):
        url, headers, body = client.build_request(
            "GET", "/v5/position/list", {"settleCoin": "USDT", "category": "linear"}, "1700000000000"
        )
        assert url == "https://api-testnet.bybit.com/v5/position/list?category=linear&settleCoin=USDT"
        assert body is None
        assert headers["X-BAPI-API-KEY"] == API_KEY
        assert headers["X-BAPI-TIMESTAMP"] == "1700000000000"
        assert headers["X-BAPI-RECV-WINDOW"] == "5000"
        assert headers["X-BAPI-SIGN-TYPE"] == "2"
        assert headers["X-BAPI-SIGN"] == expected_signature(
            "1700000000000" + API_KEY + "5000" + "category=linear&settleCoin=USDT"
        )

    def test_post_request_sends_exactly_what_was_signed(self, client):
        params = {"symbol": "BTCUSDT", "category": "linear", "buyLeverage": "10"}
        _, headers, body = client.build_request("POST", "/v5/position/set-leverage", params, "1700000000001")
        assert body == '{"buyLeverage":"10","category":"linear","symbol":"BTCUSDT"}'
        assert headers["Content-Type"] == "application/json"
        assert headers["X-BAPI-SIGN"] == expected_signature("1700000000001" + API_KEY + "5000" + body)


class TestParsing:

    def test_parse_open_position(self):
        remote = parse_position({
            "symbol": "ETHUSDT",
            "side": "Sell",
            "size": "1.5",
            "avgPrice": "3000",
            "markPrice": "2950",
            "unrealisedPnl": "75",
            "positionIM": "450",
            "leverage": "10",
            "stopLoss": "3100",
            "takeProfit": "",
        })
        assert remote.side == Side.SHORT
        assert remote.size == Decimal("1.5")
        assert remote.initial_margin == Decimal("450")
        assert remote.has_stop_loss is True
        assert remote.has_take_profit is False

    def test_zero_protection_is_missing(self):
        remote = parse_position({"symbol": "BTCUSDT", "side": "Buy", "size": "0.1", "stopLoss": "0", "takeProfit": "0"})
        assert remote.stop_loss is None
        assert remote.take_profit is None

    @pytest.mark.parametrize("row", [
        {"symbol": "BTCUSDT", "side": "Buy", "size": "0"},
        {"symbol": "BTCUSDT", "side": "", "size": "0"},
        {"symbol": "BTCUSDT", "side": "None", "size": "1"},
    ])
    def test_flat_rows_skipped(self, row):
        assert parse_position(row) is None

    def test_parse_instrument(self):
        rules = parse_instrument(INSTRUMENT_RESPONSE["result"]["list"][0])
        assert rules.qty_step == Decimal("0.001")
        assert rules.tick_size == Decimal("0.10")
        assert rules.min_notional == Decimal("5")


class TestRequests:

    @pytest.mark.asyncio
    async def test_rate_limited_attempt_retried_with_fresh_timestamp(self, client):
        transport = install(client, {
            "/v5/market/tickers": [
                {"retCode": 10006, "retMsg": "Too many visits!"},
                {"retCode": 0, "result": {"list": [{"symbol": "BTCUSDT", "markPrice": "50123.5"}]}},
            ],
        })

        result = await client.get_mark_price("BTCUSDT")

        assert result.ok
        assert result.value == Decimal("50123.5")
        assert result.attempts == 2
        stamps = [r["headers"]["X-BAPI-TIMESTAMP"] for r in transport.requests]
        assert len(set(stamps)) == 2

    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self, client):
        transport = install(client, {
            "/v5/market/tickers": [{"retCode": 10004, "retMsg": "error sign!"}] * 3,
        })
        result = await client.get_mark_price("BTCUSDT")
        assert result.error.type == ErrorType.TRADE_FAULT
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_leverage_not_modified_is_success(self, client):
        install(client, {"/v5/position/set-leverage": {"retCode": 110043, "retMsg": "leverage not modified"}})
        result = await client.set_leverage("BTCUSDT", 10)
        assert result.ok

    @pytest.mark.asyncio
    async def test_positions_follow_cursor(self, client):
        transport = install(client, {
            "/v5/position/list": [
                {"retCode": 0, "result": {
                    "list": [{"symbol": "BTCUSDT", "side": "Buy", "size": "0.1", "avgPrice": "50000"}],
                    "nextPageCursor": "page2",
                }},
                {"retCode": 0, "result": {
                    "list": [
                        {"symbol": "ETHUSDT", "side": "Sell", "size": "2", "avgPrice": "3000"},
                        {"symbol": "XRPUSDT", "side": "", "size": "0"},
                    ],
                    "nextPageCursor": "",
                }},
            ],
        })

        result = await client.get_positions()

        assert [p.symbol for p in result.value] == ["BTCUSDT", "ETHUSDT"]
        assert "cursor=page2" in transport.requests[1]["url"]

    @pytest.mark.asyncio
    async def test_reduce_only_close_trades_opposite_side(self, client):
        transport = install(client, {
            "/v5/market/instruments-info": INSTRUMENT_RESPONSE,
            "/v5/order/create": {"retCode": 0, "result": {"orderId": "abc-1"}},
        })

        result = await client.close_position("BTCUSDT", Side.LONG, Decimal("0.12345"))

        assert result.ok
        assert result.value.qty == Decimal("0.123")
        body = transport.bodies("/v5/order/create")[0]
        assert body["side"] == "Sell"
        assert body["reduceOnly"] is True
        assert body["qty"] == "0.123"
        assert body["orderType"] == "Market"

    @pytest.mark.asyncio
    async def test_open_order_attaches_rounded_protection(self, client):
        transport = install(client, {
            "/v5/market/instruments-info": INSTRUMENT_RESPONSE,
            "/v5/order/create": {"retCode": 0, "result": {"orderId": "abc-2"}},
        })

        await client.place_market_order(
            "BTCUSDT", Side.LONG, Decimal("0.02"),
            stop_loss=Decimal("49000.04"), take_profit=Decimal("52000.06"),
        )

        body = transport.bodies("/v5/order/create")[0]
        assert body["side"] == "Buy"
        assert Decimal(body["stopLoss"]) == Decimal("49000.0")
        assert Decimal(body["takeProfit"]) == Decimal("52000.1")
        assert body["tpslMode"] == "Full"

    @pytest.mark.asyncio
    async def test_order_below_minimum_rejected_locally(self, client):
        transport = install(client, {"/v5/market/instruments-info": INSTRUMENT_RESPONSE})
        result = await client.place_market_order("BTCUSDT", Side.LONG, Decimal("0.0004"))
        assert result.error.type == ErrorType.TRADE_FAULT
        assert all("/v5/order/create" not in r["url"] for r in transport.requests)

    @pytest.mark.asyncio
    async def test_instrument_rules_cached(self, client):
        transport = install(client, {"/v5/market/instruments-info": INSTRUMENT_RESPONSE})
        await client.get_instrument("BTCUSDT")
        await client.get_instrument("BTCUSDT")
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_set_protection_uses_mark_price_triggers(self, client):
        transport = install(client, {
            "/v5/market/instruments-info": INSTRUMENT_RESPONSE,
            "/v5/position/trading-stop": {"retCode": 0, "result": {}},
        })
        result = await client.set_protection("BTCUSDT", stop_loss=Decimal("49000"))
        assert result.ok
        body = transport.bodies("/v5/position/trading-stop")[0]
        assert body["slTriggerBy"] == "MarkPrice"
        assert "takeProfit" not in body


class TestOrderIdempotency:

    @pytest.mark.asyncio
    async def test_retried_order_reuses_link_id(self, client):
        transport = install(client, {
            "/v5/market/instruments-info": INSTRUMENT_RESPONSE,
            "/v5/order/create": [
                asyncio.TimeoutError(),
                {"retCode": 0, "result": {"orderId": "abc-3"}},
            ],
        })

        result = await client.place_market_order("BTCUSDT", Side.LONG, Decimal("0.02"))

        assert result.ok
        link_ids = [b["orderLinkId"] for b in transport.bodies("/v5/order/create")]
        assert len(link_ids) == 2
        assert link_ids[0] is not None and link_ids[0] == link_ids[1]
        assert result.value.order_id == "abc-3"
        assert result.value.client_order_id == link_ids[0]

    @pytest.mark.asyncio
    async def test_duplicate_link_id_means_already_accepted(self, client):
        transport = install(client, {
            "/v5/market/instruments-info": INSTRUMENT_RESPONSE,
            "/v5/order/create": [
                asyncio.TimeoutError(),
                {"retCode": 110072, "retMsg": "OrderLinkedID is duplicate"},
                {"retCode": 0, "result": {"orderId": "never-sent"}},
            ],
        })

        result = await client.close_position("BTCUSDT", Side.LONG, Decimal("0.05"))

        assert result.ok
        assert len(transport.bodies("/v5/order/create")) == 2
        assert result.value.order_id == result.value.client_order_id

    @pytest.mark.asyncio
    async def test_each_logical_order_gets_its_own_link_id(self, client):
        transport = install(client, {
            "/v5/market/instruments-info": INSTRUMENT_RESPONSE,
            "/v5/order/create": {"retCode": 0, "result": {"orderId": "abc-4"}},
        })

        await client.place_market_order("BTCUSDT", Side.LONG, Decimal("0.02"))
        await client.place_market_order("BTCUSDT", Side.LONG, Decimal("0.02"))

        first, second = (b["orderLinkId"] for b in transport.bodies("/v5/order/create"))
        assert first != second
        assert len(first) <= 36

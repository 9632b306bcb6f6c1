"""
Tests for exchange error classification.
"""
import asyncio

import aiohttp
import pytest

from oko.exceptions import APIError, AuthenticationError, RateLimitError
from oko.exchange.error_classifier import (
    ClassifiedError,
    ErrorType,
    classify_error,
    classify_exception,
)


class TestClassifyError:

    @pytest.mark.parametrize("code", ["10000", "10002", "10006", "10016", "10018"])
    def test_temporary_codes(self, code):
        result = classify_error(code, "whatever")
        assert result.type == ErrorType.API_TEMPORARY
        assert result.should_retry is True
        assert result.retry_after_seconds is not None

    @pytest.mark.parametrize("code", ["10001", "110007", "110017", "110043"])
    def test_trade_fault_codes(self, code):
        result = classify_error(code, "whatever")
        assert result.type == ErrorType.TRADE_FAULT
        assert result.is_permanent is True
        assert result.should_retry is False

    def test_integer_code_accepted(self):
        assert classify_error(10006, "x").type == ErrorType.API_TEMPORARY

    def test_temporary_keywords(self):
        assert classify_error(None, "Service Unavailable").type == ErrorType.API_TEMPORARY
        assert classify_error(None, "request timed out").type == ErrorType.API_TEMPORARY

    def test_trade_fault_keywords(self):
        assert classify_error(None, "Insufficient balance for order").type == ErrorType.TRADE_FAULT
        assert classify_error(None, "position not found: BTCUSDT").type == ErrorType.TRADE_FAULT

    def test_unknown_fallback(self):
        result = classify_error("99999", "something odd happened")
        assert result.type == ErrorType.UNKNOWN
        assert result.should_retry is True
        assert result.code == "99999"

    def test_unknown_relabelled_as_trade_fault(self):
        error = ClassifiedError(ErrorType.UNKNOWN, "odd", "1", 3.0)
        fault = error.as_trade_fault()
        assert fault.type == ErrorType.TRADE_FAULT
        assert fault.message == "odd"
        assert fault.code == "1"


class TestClassifyException:

    def test_timeout_is_temporary(self):
        assert classify_exception(asyncio.TimeoutError()).type == ErrorType.API_TEMPORARY

    def test_client_error_is_temporary(self):
        assert classify_exception(aiohttp.ClientConnectionError("reset")).type == ErrorType.API_TEMPORARY

    def test_rate_limit_is_temporary(self):
        assert classify_exception(RateLimitError("slow down", code="10006")).type == ErrorType.API_TEMPORARY

    def test_authentication_is_trade_fault(self):
        assert classify_exception(AuthenticationError("bad key", code="10003")).type == ErrorType.TRADE_FAULT

    def test_http_5xx_is_temporary(self):
        exc = APIError("HTTP 502: bad gateway", http_status=502)
        assert classify_exception(exc).type == ErrorType.API_TEMPORARY

    def test_api_error_uses_code(self):
        exc = APIError("ab not enough for new order", code="110007")
        assert classify_exception(exc).type == ErrorType.TRADE_FAULT

    def test_plain_exception_classified_by_message(self):
        assert classify_exception(RuntimeError("strange")).type == ErrorType.UNKNOWN

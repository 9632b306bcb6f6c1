"""
Exchange error classification.

Every failed exchange call is sorted into one of three buckets:

    api_temporary  network, rate limit, 5xx. Retried with backoff.
    trade_fault    business rejection (balance, instrument rules, bad params). Never retried.
    unknown        anything else. Retried conservatively, then treated as trade_fault.
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import aiohttp

from oko.exceptions import APIError, AuthenticationError, RateLimitError


class ErrorType(str, Enum):
    API_TEMPORARY = "api_temporary"
    TRADE_FAULT = "trade_fault"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassifiedError:
    """A failure with the category that decides whether it is retried."""
    type: ErrorType
    message: str
    code: Optional[str] = None
    retry_after_seconds: Optional[float] = None

    @property
    def should_retry(self) -> bool:
        return self.type in (ErrorType.API_TEMPORARY, ErrorType.UNKNOWN)

    @property
    def is_permanent(self) -> bool:
        return self.type == ErrorType.TRADE_FAULT

    def as_trade_fault(self) -> "ClassifiedError":
        """Re-label an exhausted unknown error as permanent."""
        return ClassifiedError(ErrorType.TRADE_FAULT, self.message, self.code, None)


# Bybit V5 return codes
TEMPORARY_CODES = frozenset({
    "10000",  # server timeout
    "10002",  # request time exceeds recv window
    "10006",  # too many visits
    "10016",  # server error
    "10018",  # ip rate limit
})

TRADE_FAULT_CODES = frozenset({
    "10001",   # parameter error
    "10003",   # invalid api key
    "10004",   # signature error
    "10005",   # permission denied
    "10029",   # symbol not whitelisted
    "110007",  # insufficient available balance
    "110012",  # insufficient available balance
    "110017",  # reduce-only would increase position
    "110043",  # leverage not modified
})

API_TEMPORARY_KEYWORDS = (
    "rate limit",
    "too many requests",
    "too many visits",
    "timeout",
    "timed out",
    "503",
    "502",
    "504",
    "service unavailable",
    "connection",
    "temporary",
    "try again",
    "retry",
    "network",
    "unavailable",
)

TRADE_FAULT_KEYWORDS = (
    "instrument not found",
    "insufficient balance",
    "insufficient funds",
    "insufficient available",
    "invalid price",
    "already closed",
    "position not found",
    "would trigger immediately",
    "order size",
    "minimum",
    "maximum",
    "invalid parameter",
    "params error",
    "not supported",
    "margin insufficient",
    "leverage",
    "position side",
    "order already",
    "signature",
)

TEMPORARY_RETRY_AFTER_SECONDS = 2.0
UNKNOWN_RETRY_AFTER_SECONDS = 3.0


def classify_error(code: Optional[object], message: str) -> ClassifiedError:
    """Classify a venue error from its return code and message."""
    code_str = str(code) if code is not None else None
    msg_lower = (message or "").lower()

    if code_str in TEMPORARY_CODES:
        return ClassifiedError(ErrorType.API_TEMPORARY, message, code_str, TEMPORARY_RETRY_AFTER_SECONDS)
    if code_str in TRADE_FAULT_CODES:
        return ClassifiedError(ErrorType.TRADE_FAULT, message, code_str)

    if any(keyword in msg_lower for keyword in API_TEMPORARY_KEYWORDS):
        return ClassifiedError(ErrorType.API_TEMPORARY, message, code_str, TEMPORARY_RETRY_AFTER_SECONDS)
    if any(keyword in msg_lower for keyword in TRADE_FAULT_KEYWORDS):
        return ClassifiedError(ErrorType.TRADE_FAULT, message, code_str)

    return ClassifiedError(ErrorType.UNKNOWN, message, code_str, UNKNOWN_RETRY_AFTER_SECONDS)


def classify_exception(exc: BaseException) -> ClassifiedError:
    """Classify an exception raised while talking to the exchange."""
    if isinstance(exc, asyncio.TimeoutError):
        return ClassifiedError(ErrorType.API_TEMPORARY, f"timeout: {exc}", None, TEMPORARY_RETRY_AFTER_SECONDS)
    if isinstance(exc, RateLimitError):
        return ClassifiedError(ErrorType.API_TEMPORARY, exc.message, exc.code, TEMPORARY_RETRY_AFTER_SECONDS)
    if isinstance(exc, AuthenticationError):
        return ClassifiedError(ErrorType.TRADE_FAULT, exc.message, exc.code)
    if isinstance(exc, APIError):
        if exc.http_status is not None and (exc.http_status == 429 or exc.http_status >= 500):
            return ClassifiedError(ErrorType.API_TEMPORARY, exc.message, exc.code, TEMPORARY_RETRY_AFTER_SECONDS)
        return classify_error(exc.code, exc.message)
    if isinstance(exc, aiohttp.ClientError):
        return ClassifiedError(ErrorType.API_TEMPORARY, f"{type(exc).__name__}: {exc}", None, TEMPORARY_RETRY_AFTER_SECONDS)
    return classify_error(None, f"{type(exc).__name__}: {exc}")

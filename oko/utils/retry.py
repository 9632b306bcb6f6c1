import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from oko.constants import (
    MAX_RETRY_ATTEMPTS,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_BACKOFF_SECONDS,
    UNKNOWN_ERROR_BACKOFF_MULTIPLIER,
)
from oko.exceptions import APIError
from oko.exchange.error_classifier import ClassifiedError, ErrorType, classify_exception
from oko.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Programming errors are never retried or wrapped
_NON_RETRYABLE = (TypeError, AttributeError, NameError, SyntaxError)


@dataclass
class CallResult(Generic[T]):
    """Outcome of an exchange call: a value or a classified error, plus how many attempts it took."""
    value: Optional[T] = None
    error: Optional[ClassifiedError] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise APIError carrying the classified error."""
        if self.error is not None:
            raise APIError(self.error.message, code=self.error.code)
        return self.value

    @classmethod
    def success(cls, value: T, attempts: int = 1) -> "CallResult[T]":
        return cls(value=value, attempts=attempts)

    @classmethod
    def failure(cls, error: ClassifiedError, attempts: int = 1) -> "CallResult[T]":
        return cls(error=error, attempts=attempts)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = MAX_RETRY_ATTEMPTS,
    base_delay: float = RETRY_BASE_DELAY_SECONDS,
    max_backoff: float = RETRY_MAX_BACKOFF_SECONDS,
    operation: str = "call",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    classify: Callable[[BaseException], ClassifiedError] = classify_exception,
) -> CallResult[T]:
    """
    Run fn in a bounded retry loop with exponential backoff and jitter.

    trade_fault errors return immediately. unknown errors back off longer and,
    once attempts are exhausted, are reported as trade_fault.

    Args:
        fn: Zero-argument coroutine factory, called once per attempt
        max_attempts: Total attempts including the first
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        operation: Label used in log lines
        sleep: Awaitable sleep (injected in tests)
        classify: Exception classifier

    Returns:
        CallResult with the value, or the final classified error
    """
    max_attempts = max(1, max_attempts)
    backoff = base_delay
    last_error: Optional[ClassifiedError] = None

    for attempt in range(1, max_attempts + 1):
        try:
            value = await fn()
        except _NON_RETRYABLE:
            raise
        except Exception as e:
            last_error = classify(e)
            logger.warning(
                "API_CALL_FAILED",
                operation=operation,
                attempt=attempt,
                max_attempts=max_attempts,
                error_type=last_error.type.value,
                code=last_error.code,
                error=last_error.message,
            )
            if last_error.is_permanent:
                return CallResult.failure(last_error, attempt)
            if attempt >= max_attempts:
                break

            wait = backoff
            if last_error.type == ErrorType.UNKNOWN:
                wait = backoff * UNKNOWN_ERROR_BACKOFF_MULTIPLIER
            wait = min(wait, max_backoff) + random.uniform(0, 0.5)  # Jitter
            await sleep(wait)
            backoff = min(backoff * 2, max_backoff)
            continue

        logger.debug("API_CALL", operation=operation, attempt=attempt, status="ok")
        return CallResult.success(value, attempt)

    assert last_error is not None
    if last_error.type == ErrorType.UNKNOWN:
        last_error = last_error.as_trade_fault()
    logger.error(
        "API_CALL_EXHAUSTED",
        operation=operation,
        attempts=max_attempts,
        error_type=last_error.type.value,
        error=last_error.message,
    )
    return CallResult.failure(last_error, max_attempts)

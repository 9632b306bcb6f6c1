"""
Custom exception hierarchy for the guard engine.

Hierarchy:

    TradingSystemError (base)
    ├── OperationalError   : transient/retryable (exchange, network, timeouts)
    │   └── APIError       : exchange returned an error (code + message)
    │       ├── AuthenticationError
    │       └── RateLimitError
    ├── DataError          : bad data, skip entity
    │   └── LedgerError
    └── InvariantError     : safety violation

Rules:
    - OperationalError: classified and retried by the exchange layer
    - DataError: log, record against the entity, continue the cycle
    - InvariantError: always logged at critical level, never treated as success
    - Everything else (AttributeError, TypeError, etc.): let crash.
"""
from typing import Optional


class TradingSystemError(Exception):
    """Base exception for all guard engine errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(TradingSystemError):
    """Transient/retryable error: exchange API, network, timeouts."""
    pass


class APIError(OperationalError):
    """Exchange returned an error. Carries the venue code so it can be classified."""

    def __init__(self, message: str, code: Optional[str] = None, http_status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status


class AuthenticationError(APIError):
    """Raised when request signing or API authentication fails."""
    pass


class RateLimitError(APIError):
    """Raised when the exchange rate limit is exceeded."""
    pass


# ============ DATA (bad input, skip entity) ============

class DataError(TradingSystemError):
    """Bad data: symbol, precision, invalid instrument."""
    pass


class LedgerError(DataError):
    """Raised when the local ledger cannot be read or written."""
    pass


# ============ INVARIANT (safety violation) ============

class InvariantError(TradingSystemError):
    """Safety invariant violation, e.g. a position quantity that would grow."""
    pass

from typing import Any, Callable, Optional, TypeVar

from oko.exceptions import LedgerError
from oko.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def ledger_write(what: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Optional[T]:
    """
    Run a ledger write, logging LEDGER_WRITE_FAILED instead of raising.

    Used after a remote state change has already happened: a failed local write
    must not abort the cycle or hide that change.
    """
    try:
        return fn(*args, **kwargs)
    except LedgerError as e:
        logger.error("LEDGER_WRITE_FAILED", what=what, error=str(e))
        return None

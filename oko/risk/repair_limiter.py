"""
Bounded retries for repair actions.

Limits how many times a repair (e.g. re-attaching a stop loss) is attempted
per (entity, action) inside a cooldown window, so a persistently rejected
repair escalates instead of burning API calls forever.
"""
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from oko.constants import MAX_RETRY_ATTEMPTS, REPAIR_COOLDOWN_MINUTES
from oko.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class RepairAttempt:
    attempt_count: int
    first_attempt_at: float
    last_attempt_at: float


class RepairAttemptLimiter:
    """Per-engine attempt counter keyed by (entity_id, action)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._attempts: Dict[Tuple[str, str], RepairAttempt] = {}

    def should_attempt(
        self,
        entity_id: str,
        action: str,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        cooldown_minutes: float = REPAIR_COOLDOWN_MINUTES,
    ) -> bool:
        """
        Returns False exactly when max_attempts have already been made inside the
        current cooldown window. The window starts at the first attempt and the
        counter resets once it has elapsed.
        """
        key = (str(entity_id), action)
        now = self._clock()
        with self._lock:
            state = self._attempts.get(key)
            if state is None or now - state.first_attempt_at >= cooldown_minutes * 60:
                self._attempts[key] = RepairAttempt(1, now, now)
                return True

            if state.attempt_count >= max_attempts:
                remaining = cooldown_minutes * 60 - (now - state.first_attempt_at)
                refused_count = state.attempt_count
            else:
                state.attempt_count += 1
                state.last_attempt_at = now
                return True

        logger.warning(
            "REPAIR_ATTEMPT_REFUSED",
            entity_id=key[0],
            action=action,
            attempts=refused_count,
            max_attempts=max_attempts,
            retry_in_seconds=round(remaining, 1),
        )
        return False

    def clear(self, entity_id: str, action: str) -> None:
        """Must be called after a verified repair so old failures do not block future repairs."""
        with self._lock:
            self._attempts.pop((str(entity_id), action), None)

    def attempts(self, entity_id: str, action: str) -> int:
        with self._lock:
            state = self._attempts.get((str(entity_id), action))
            return state.attempt_count if state else 0

    def is_exhausted(
        self,
        entity_id: str,
        action: str,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        cooldown_minutes: float = REPAIR_COOLDOWN_MINUTES,
    ) -> bool:
        """Read-only form of should_attempt (does not count an attempt)."""
        now = self._clock()
        with self._lock:
            state = self._attempts.get((str(entity_id), action))
            if state is None or now - state.first_attempt_at >= cooldown_minutes * 60:
                return False
            return state.attempt_count >= max_attempts

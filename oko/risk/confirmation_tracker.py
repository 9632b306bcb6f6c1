"""
Debounced confirmation of guard detections.

An irreversible action (close) only fires after N consecutive positive
detections of the same (entity, action) inside a debounce window. A single
noisy tick or transient read therefore never closes a position on its own.
"""
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from oko.constants import CONFIRMATION_SWEEP_SECONDS, CONFIRMATION_WINDOW_SECONDS
from oko.monitoring.logger import get_logger

logger = get_logger(__name__)

Key = Tuple[str, str]


@dataclass
class ConfirmationState:
    count: int
    first_seen_at: float
    last_seen_at: float
    last_payload: Any = None


class ConfirmationTracker:
    """Per-engine streak counter keyed by (entity_id, action)."""

    def __init__(
        self,
        window_seconds: float = CONFIRMATION_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._states: Dict[Key, ConfirmationState] = {}

    def confirm(self, entity_id: str, action: str, payload: Any = None, required: int = 1) -> bool:
        """
        Record one positive detection. Returns True when the action may fire.

        required <= 1 fires immediately. Otherwise the streak restarts at 1 when
        the window since its first detection has elapsed, and the key is cleared
        once the streak reaches required.
        """
        key = (str(entity_id), action)
        with self._lock:
            if required <= 1:
                self._states.pop(key, None)
                return True

            now = self._clock()
            state = self._states.get(key)
            if state is None or now - state.first_seen_at > self.window_seconds:
                state = ConfirmationState(count=1, first_seen_at=now, last_seen_at=now)
            else:
                state.count += 1
                state.last_seen_at = now
            state.last_payload = payload

            if state.count >= required:
                self._states.pop(key, None)
                return True
            self._states[key] = state
            count = state.count

        logger.info(
            "GUARD_CONFIRMATION_PENDING",
            entity_id=key[0],
            action=action,
            count=count,
            required=required,
        )
        return False

    def reset(self, entity_id: str, action: str) -> None:
        """Negative detection: the streak starts over from zero."""
        with self._lock:
            self._states.pop((str(entity_id), action), None)

    def reset_entity(self, entity_id: str) -> None:
        entity_id = str(entity_id)
        with self._lock:
            for key in [k for k in self._states if k[0] == entity_id]:
                del self._states[key]

    def count(self, entity_id: str, action: str) -> int:
        with self._lock:
            state = self._states.get((str(entity_id), action))
            return state.count if state else 0

    def sweep(self, max_age_seconds: float = CONFIRMATION_SWEEP_SECONDS) -> int:
        """Drop streaks whose first detection is older than max_age_seconds."""
        now = self._clock()
        with self._lock:
            stale = [k for k, s in self._states.items() if now - s.first_seen_at > max_age_seconds]
            for key in stale:
                del self._states[key]
        if stale:
            logger.debug("CONFIRMATION_SWEEP", removed=len(stale))
        return len(stale)

    def snapshot(self) -> Dict[Key, int]:
        with self._lock:
            return {k: s.count for k, s in self._states.items()}

    def get(self, entity_id: str, action: str) -> Optional[ConfirmationState]:
        with self._lock:
            return self._states.get((str(entity_id), action))

"""
Symbol bans and the capitulation circuit breaker.

Bans are persisted in the ledger and cached in memory for the cycle. The
capitulation counter counts guard-triggered emergency closes and bans the
symbol that tips it over the threshold.
"""
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from oko.domain.models import SymbolBan, utc_now
from oko.domain.protocols import Ledger
from oko.exceptions import LedgerError
from oko.monitoring.logger import get_logger

logger = get_logger(__name__)

CAPITULATION_SETTINGS_KEY = "capitulation_counter"


class SymbolBanBook:
    """In-memory view of active bans backed by the ledger."""

    def __init__(self, ledger: Ledger, clock: Callable[[], datetime] = utc_now):
        self.ledger = ledger
        self._clock = clock
        self._bans: Dict[str, SymbolBan] = {}

    def refresh(self) -> List[SymbolBan]:
        now = self._clock()
        try:
            loaded = self.ledger.load_active_bans()
        except LedgerError as e:
            # Keep the bans we already know about
            logger.error("LEDGER_READ_FAILED", what="bans", error=str(e))
            return list(self._bans.values())
        # Bans set in-process but not yet visible in the ledger stay in effect
        merged = {b.symbol: b for b in self._bans.values() if b.is_active(now)}
        merged.update({b.symbol: b for b in loaded if b.is_active(now)})
        self._bans = merged
        return list(self._bans.values())

    def get(self, symbol: str) -> Optional[SymbolBan]:
        ban = self._bans.get(symbol)
        if ban is None:
            return None
        if not ban.is_active(self._clock()):
            del self._bans[symbol]
            return None
        return ban

    def is_banned(self, symbol: str) -> bool:
        return self.get(symbol) is not None

    def ban(self, symbol: str, reason: str, duration_hours: float) -> SymbolBan:
        try:
            ban = self.ledger.ban_symbol(symbol, reason, duration_hours)
        except LedgerError as e:
            logger.error("LEDGER_WRITE_FAILED", what="ban", symbol=symbol, error=str(e))
            now = self._clock()
            ban = SymbolBan(symbol, now, now + timedelta(hours=duration_hours), reason)
        self._bans[symbol] = ban
        logger.warning(
            "SYMBOL_BANNED",
            symbol=symbol,
            reason=reason,
            duration_hours=duration_hours,
            expires_at=ban.expires_at.isoformat(),
        )
        return ban


class CapitulationCounter:
    """Counts guard-triggered emergency closes; bans at the threshold, then resets."""

    def __init__(self, ledger: Ledger, bans: SymbolBanBook):
        self.ledger = ledger
        self.bans = bans

    @property
    def value(self) -> int:
        try:
            return int(self.ledger.load_settings().get(CAPITULATION_SETTINGS_KEY, 0) or 0)
        except LedgerError as e:
            logger.error("LEDGER_READ_FAILED", what="capitulation_counter", error=str(e))
            return 0

    def _store(self, value: int) -> None:
        try:
            self.ledger.update_settings({CAPITULATION_SETTINGS_KEY: value})
        except LedgerError as e:
            logger.error("LEDGER_WRITE_FAILED", what="capitulation_counter", value=value, error=str(e))

    def record_close(self, symbol: str, action: str, threshold: int, ban_hours: float) -> bool:
        """Count one emergency close. Returns True if this close triggered a ban."""
        counter = self.value + 1
        if counter >= threshold:
            self.bans.ban(symbol, f"capitulation: {counter} guard closes (last: {action})", ban_hours)
            self._store(0)
            logger.warning("CAPITULATION_TRIGGERED", symbol=symbol, counter=counter, threshold=threshold)
            return True
        self._store(counter)
        logger.info("CAPITULATION_COUNTER", symbol=symbol, counter=counter, threshold=threshold)
        return False

    def reset(self) -> None:
        self._store(0)
        logger.info("CAPITULATION_RESET")

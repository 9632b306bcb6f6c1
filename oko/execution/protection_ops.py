"""
Protection repair and verified closes.

Both operations re-read the exchange after acting. A repair only counts once
the re-read shows the protection attached, and a close only counts once the
re-read shows the position gone. "Could not verify" is its own outcome.
"""
import asyncio
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple

from oko.config.config import GuardConfig
from oko.domain.models import HistoryRecord, Position
from oko.domain.protocols import Ledger
from oko.exchange.base import ExchangeAdapter, RemotePosition
from oko.exchange.error_classifier import ClassifiedError, ErrorType
from oko.monitoring.logger import get_logger
from oko.risk.repair_limiter import RepairAttemptLimiter
from oko.utils.ledger_writes import ledger_write

logger = get_logger(__name__)

_HUNDRED = Decimal("100")

STOP_CROSSED_REASON = "stop_crossed"


class RepairOutcome(str, Enum):
    ALREADY_PROTECTED = "already_protected"
    REPAIRED = "repaired"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    # The stop to attach was already crossed; the position was closed instead
    CLOSED = "closed"


class CloseOutcome(str, Enum):
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    FAILED = "failed"


@dataclass(frozen=True)
class RepairReport:
    outcome: RepairOutcome
    error: Optional[ClassifiedError] = None
    attempt: int = 0

    @property
    def protected(self) -> bool:
        return self.outcome in (RepairOutcome.ALREADY_PROTECTED, RepairOutcome.REPAIRED)


@dataclass(frozen=True)
class CloseReport:
    outcome: CloseOutcome
    error: Optional[ClassifiedError] = None
    verify_attempts: int = 0

    @property
    def verified(self) -> bool:
        return self.outcome == CloseOutcome.VERIFIED


def protection_levels(position: Position, config: GuardConfig) -> Tuple[Decimal, Decimal]:
    """Stop and target to attach: recorded levels first, fallback distances from entry otherwise."""
    entry = position.entry_price
    sl_offset = entry * Decimal(str(config.default_sl_pct)) / _HUNDRED
    tp_offset = entry * Decimal(str(config.default_tp_pct)) / _HUNDRED

    stop = position.effective_stop
    if stop is None or stop <= 0:
        stop = entry - sl_offset if position.is_long else entry + sl_offset

    target = position.first_take_profit()
    if target is None:
        target = entry + tp_offset if position.is_long else entry - tp_offset
    return stop, target


def stop_crossed(position: Position, stop: Optional[Decimal], mark: Optional[Decimal]) -> bool:
    """True when the mark already sits on the losing side of stop (long: at or below, short: at or above)."""
    if stop is None or mark is None:
        return False
    return mark <= stop if position.is_long else mark >= stop


class ProtectionOps:
    """Exchange-side protection repair and verified closes for one engine."""

    def __init__(
        self,
        exchange: ExchangeAdapter,
        ledger: Ledger,
        limiter: RepairAttemptLimiter,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.exchange = exchange
        self.ledger = ledger
        self.limiter = limiter
        self._sleep = sleep

    def _history(self, event: str, position: Position, **details: Any) -> None:
        record = HistoryRecord(event=event, symbol=position.symbol, position_id=position.id, details=details)
        ledger_write(event, self.ledger.append_history, record)

    async def ensure_protection(
        self,
        position: Position,
        remote: Optional[RemotePosition],
        config: GuardConfig,
        *,
        action: str = "fix_sltp",
        max_attempts: Optional[int] = None,
        force: bool = False,
    ) -> RepairReport:
        """
        Attach whatever protection is missing on the remote position (both levels when force).

        Every attempt is audited in history. The limiter bounds attempts per
        (position, action); exhaustion is recorded as a diagnostic failure.
        A stop the mark has already crossed is never sent: the position is
        closed through close_and_verify and CLOSED (or FAILED) is returned.
        """
        if not force and remote is not None and remote.has_stop_loss and remote.has_take_profit:
            self.limiter.clear(str(position.id), action)
            return RepairReport(RepairOutcome.ALREADY_PROTECTED)

        stop, target = protection_levels(position, config)
        send_sl = stop if force or remote is None or not remote.has_stop_loss else None
        send_tp = target if force or remote is None or not remote.has_take_profit else None

        mark = remote.mark_price if remote is not None and remote.mark_price is not None else position.mark_price
        if stop_crossed(position, send_sl, mark):
            return await self._close_crossed(position, send_sl, mark, action, config)

        entity_id = str(position.id)
        max_attempts = max_attempts or config.repair_max_attempts
        if not self.limiter.should_attempt(entity_id, action, max_attempts, config.repair_cooldown_minutes):
            return RepairReport(RepairOutcome.EXHAUSTED, attempt=self.limiter.attempts(entity_id, action))
        attempt = self.limiter.attempts(entity_id, action)

        logger.info(
            "PROTECTION_REPAIR_ATTEMPT",
            symbol=position.symbol,
            position_id=position.id,
            action=action,
            attempt=attempt,
            max_attempts=max_attempts,
            stop_loss=str(send_sl) if send_sl is not None else None,
            take_profit=str(send_tp) if send_tp is not None else None,
        )
        result = await self.exchange.set_protection(position.symbol, stop_loss=send_sl, take_profit=send_tp)

        error: Optional[ClassifiedError] = result.error
        if result.ok:
            verify = await self.exchange.get_position(position.symbol, position.side)
            if not verify.ok:
                error = verify.error
            elif verify.value is None or not (verify.value.has_stop_loss and verify.value.has_take_profit):
                error = ClassifiedError(ErrorType.UNKNOWN, "protection not visible on exchange after repair")

        self._history(
            "protection_repair_attempt",
            position,
            action=action,
            attempt=attempt,
            success=error is None,
            error_type=error.type.value if error else None,
            error=error.message if error else None,
        )

        if error is None:
            self.limiter.clear(entity_id, action)
            if position.effective_stop is None and send_sl is not None:
                position.current_stop_loss = send_sl
            logger.info("PROTECTION_REPAIRED", symbol=position.symbol, position_id=position.id, action=action)
            return RepairReport(RepairOutcome.REPAIRED, attempt=attempt)

        logger.warning(
            "PROTECTION_REPAIR_FAILED",
            symbol=position.symbol,
            position_id=position.id,
            action=action,
            attempt=attempt,
            error_type=error.type.value,
            error=error.message,
        )
        if attempt >= max_attempts:
            logger.critical(
                "REPAIR_EXHAUSTED",
                symbol=position.symbol,
                position_id=position.id,
                action=action,
                attempts=attempt,
            )
            self._history(
                "diagnostic_failure",
                position,
                action=action,
                attempts=attempt,
                error_type=error.type.value,
                error=error.message,
            )
        return RepairReport(RepairOutcome.FAILED, error=error, attempt=attempt)

    async def _close_crossed(
        self,
        position: Position,
        stop: Decimal,
        mark: Decimal,
        action: str,
        config: GuardConfig,
    ) -> RepairReport:
        logger.warning(
            "STOP_CROSSED_BEFORE_REPAIR",
            symbol=position.symbol,
            position_id=position.id,
            action=action,
            stop_loss=str(stop),
            mark_price=str(mark),
        )
        self._history("stop_crossed_before_repair", position, action=action, stop_loss=str(stop), mark_price=str(mark))
        report = await self.close_and_verify(position, STOP_CROSSED_REASON, config)
        if report.verified:
            self.limiter.clear(str(position.id), action)
            return RepairReport(RepairOutcome.CLOSED)
        error = report.error or ClassifiedError(ErrorType.UNKNOWN, f"stop-crossed close {report.outcome.value}")
        return RepairReport(RepairOutcome.FAILED, error=error)

    async def close_and_verify(self, position: Position, reason: str, config: GuardConfig) -> CloseReport:
        """
        Market-close the whole remote position and re-read until it is gone.

        Only a VERIFIED close marks the local row closed. UNVERIFIED is logged
        at critical level and leaves the row open for the next cycle.
        """
        current = await self.exchange.get_position(position.symbol, position.side)
        if current.ok and current.value is None:
            self._finish_close(position, reason, close_qty=Decimal("0"))
            return CloseReport(CloseOutcome.VERIFIED)

        qty = current.value.size if current.ok and current.value is not None else position.quantity
        result = await self.exchange.close_position(position.symbol, position.side, qty)
        if not result.ok:
            logger.critical(
                "CLOSE_FAILED",
                symbol=position.symbol,
                position_id=position.id,
                reason=reason,
                error_type=result.error.type.value,
                error=result.error.message,
            )
            self._history("close_failed", position, reason=reason, error=result.error.message)
            return CloseReport(CloseOutcome.FAILED, error=result.error)

        for verify_attempt in range(1, config.close_verify_attempts + 1):
            if config.close_verify_delay_seconds > 0:
                await self._sleep(config.close_verify_delay_seconds)
            check = await self.exchange.get_position(position.symbol, position.side)
            if check.ok and check.value is None:
                self._finish_close(position, reason, close_qty=qty)
                return CloseReport(CloseOutcome.VERIFIED, verify_attempts=verify_attempt)
            logger.warning(
                "CLOSE_VERIFY_PENDING",
                symbol=position.symbol,
                position_id=position.id,
                verify_attempt=verify_attempt,
                read_ok=check.ok,
                remaining_size=str(check.value.size) if check.ok and check.value else None,
            )

        logger.critical(
            "CLOSE_NOT_VERIFIED",
            symbol=position.symbol,
            position_id=position.id,
            reason=reason,
            verify_attempts=config.close_verify_attempts,
        )
        self._history("close_not_verified", position, reason=reason, verify_attempts=config.close_verify_attempts)
        return CloseReport(CloseOutcome.UNVERIFIED, verify_attempts=config.close_verify_attempts)

    def _finish_close(self, position: Position, reason: str, close_qty: Decimal) -> None:
        pnl = position.unrealized_pnl
        exit_price = position.mark_price
        position.mark_closed(reason)
        ledger_write("position", self.ledger.upsert_position, position)
        self._history(
            "position_closed",
            position,
            reason=reason,
            closed_qty=str(close_qty),
            pnl=str(pnl),
            exit_price=str(exit_price) if exit_price is not None else None,
        )
        logger.info("POSITION_CLOSED", symbol=position.symbol, position_id=position.id, reason=reason, pnl=str(pnl))

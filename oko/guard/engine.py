"""
Oko guard engine.

Runs the priority-ordered battery of guard checks for each position (plus one
account-level check per cycle), routes every positive detection through the
confirmation tracker, and enforces the first confirmed action:

    0. ghost position        fix, 1 confirmation, local-only cleanup
    1. protection breach     close, 1 confirmation
    2. P&L emergency         close, 3 confirmations
    3. correlated loss       close, 3 confirmations
    4. time-based exit       close, 3 confirmations (off by default)
    5. missing protection    fix, 1 confirmation
    6. quantity drift        fix, 1 confirmation (only after a TP fired)

A check that evaluates negative resets its streak. Checks below the first
confirmed action are not evaluated that cycle.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from oko.config.config import GuardConfig
from oko.constants import ACCOUNT_ENTITY_ID
from oko.domain.models import GuardActionLogEntry, HistoryRecord, Position, utc_now
from oko.domain.protocols import Ledger
from oko.exceptions import LedgerError
from oko.exchange.base import ExchangeAdapter, RemotePosition
from oko.execution.protection_ops import (
    CloseOutcome,
    ProtectionOps,
    RepairOutcome,
)
from oko.guard import checks
from oko.guard.results import CAPITULATION_ACTIONS, GuardAction, GuardCheckResult
from oko.monitoring.logger import get_logger
from oko.risk.confirmation_tracker import ConfirmationTracker
from oko.risk.repair_limiter import RepairAttemptLimiter
from oko.risk.symbol_bans import CapitulationCounter, SymbolBanBook
from oko.utils.ledger_writes import ledger_write

logger = get_logger(__name__)

CLOSE_ACTIONS = frozenset({
    GuardAction.SL_BREACH,
    GuardAction.PNL_EMERGENCY,
    GuardAction.CORRELATED_LOSS,
    GuardAction.TIME_BASED_EXIT,
    GuardAction.ACCOUNT_DRAWDOWN,
})

_SNAPSHOT_FIELDS = {
    "sl_breach_tolerance_pct",
    "pnl_emergency_threshold_pct",
    "account_drawdown_threshold_pct",
    "close_confirmations",
    "repair_max_attempts",
    "repair_grace_period_seconds",
    "capitulation_threshold",
}


@dataclass
class GuardOutcome:
    """What the engine did for one position in one cycle."""
    position_id: Optional[int]
    symbol: str
    action: GuardAction
    success: bool
    closed: bool = False
    repaired: bool = False
    message: str = ""


class GuardEngine:
    """Guard rule engine. Owns its confirmation tracker and repair limiter."""

    def __init__(
        self,
        exchange: ExchangeAdapter,
        ledger: Ledger,
        config: GuardConfig,
        *,
        tracker: Optional[ConfirmationTracker] = None,
        limiter: Optional[RepairAttemptLimiter] = None,
        bans: Optional[SymbolBanBook] = None,
        protection: Optional[ProtectionOps] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.exchange = exchange
        self.ledger = ledger
        self.config = config
        self.tracker = tracker or ConfirmationTracker(window_seconds=config.confirmation_window_seconds)
        self.limiter = limiter or RepairAttemptLimiter()
        self.bans = bans or SymbolBanBook(ledger)
        self.capitulation = CapitulationCounter(ledger, self.bans)
        self.protection = protection or ProtectionOps(exchange, ledger, self.limiter, sleep=sleep)
        self._clock = clock

    # ---------- configuration ----------

    def effective_config(self) -> GuardConfig:
        """Static config with any ledger setting overrides applied for this cycle."""
        try:
            overrides = self.ledger.load_settings()
        except LedgerError as e:
            logger.error("LEDGER_READ_FAILED", what="settings", error=str(e))
            return self.config
        return self.config.with_overrides(overrides)

    # ---------- evaluation ----------

    def _route(self, entity_id: str, result: GuardCheckResult) -> bool:
        """Feed one check result through the tracker. True when the action may fire now."""
        if not result.triggered:
            self.tracker.reset(entity_id, result.action.value)
            return False
        return self.tracker.confirm(entity_id, result.action.value, result.detail, result.required_confirmations)

    def evaluate_account(self, positions: Sequence[Position], cfg: GuardConfig) -> Optional[GuardCheckResult]:
        result = checks.check_account_drawdown(positions, cfg.account_drawdown_threshold_pct, cfg.close_confirmations)
        if self._route(ACCOUNT_ENTITY_ID, result):
            logger.critical("ACCOUNT_DRAWDOWN_CONFIRMED", reason=result.reason, positions=len(positions))
            return result
        return None

    def evaluate_position(
        self,
        position: Position,
        remote: Optional[RemotePosition],
        price: Optional[Decimal],
        open_positions: Sequence[Position],
        cfg: GuardConfig,
    ) -> Optional[GuardCheckResult]:
        """Run checks in priority order; return the first confirmed one, or None."""
        entity_id = str(position.id)
        now = self._clock()
        battery: List[Callable[[], GuardCheckResult]] = [
            lambda: checks.check_ghost(position, remote),
            lambda: checks.check_protection_breach(position, price, cfg.sl_breach_tolerance_pct),
            lambda: checks.check_pnl_emergency(position, cfg.pnl_emergency_threshold_pct, cfg.close_confirmations),
        ]
        if cfg.correlated_loss_enabled:
            battery.append(lambda: checks.check_correlated_loss(position, open_positions, cfg.close_confirmations))
        battery.extend([
            lambda: checks.check_time_based_exit(
                position, cfg.time_based_exit_enabled, cfg.time_based_exit_hours, cfg.close_confirmations, now
            ),
            lambda: checks.check_missing_protection(position, remote),
            lambda: checks.check_quantity_drift(position, remote, cfg.quantity_drift_tolerance_pct),
        ])

        for check in battery:
            result = check()
            if self._route(entity_id, result):
                return result
        return None

    # ---------- enforcement ----------

    def _log_action(
        self,
        position: Position,
        result: GuardCheckResult,
        cfg: GuardConfig,
        success: bool,
        **details: Any,
    ) -> None:
        entry = GuardActionLogEntry(
            position_id=position.id,
            symbol=position.symbol,
            action=result.action.value,
            reason=result.reason,
            confirmations=max(result.required_confirmations, 1),
            pnl_at_action=position.unrealized_pnl,
            price_at_action=position.mark_price,
            success=success,
            details={**result.to_log_dict(), **details},
            settings_snapshot=cfg.model_dump(include=_SNAPSHOT_FIELDS),
        )
        ledger_write("guard_action_log", self.ledger.append_guard_action_log, entry)

    async def enforce(
        self,
        position: Position,
        result: GuardCheckResult,
        cfg: GuardConfig,
        remote: Optional[RemotePosition] = None,
    ) -> GuardOutcome:
        logger.warning(
            "GUARD_ACTION",
            symbol=position.symbol,
            position_id=position.id,
            **result.to_log_dict(),
        )

        if result.action == GuardAction.GHOST_POSITION_CLEANUP:
            return self._cleanup_ghost(position, result, cfg)
        if result.action in CLOSE_ACTIONS:
            return await self._guard_close(position, result, cfg)
        if result.action == GuardAction.FIX_SLTP:
            return await self._fix_protection(position, result, cfg, remote)
        if result.action == GuardAction.TP1_QUANTITY_FIX:
            return self._sync_quantity(position, result, cfg, remote)

        raise ValueError(f"Unhandled guard action: {result.action}")

    def _cleanup_ghost(self, position: Position, result: GuardCheckResult, cfg: GuardConfig) -> GuardOutcome:
        # Local-only: the exchange already has nothing to close
        position.mark_closed(GuardAction.GHOST_POSITION_CLEANUP.value, self._clock())
        ledger_write("position", self.ledger.upsert_position, position)
        ledger_write(
            "history",
            self.ledger.append_history,
            HistoryRecord(
                event="ghost_position_cleanup",
                symbol=position.symbol,
                position_id=position.id,
                details={"reason": result.reason},
            ),
        )
        self.tracker.reset_entity(str(position.id))
        self._log_action(position, result, cfg, success=True)
        return GuardOutcome(position.id, position.symbol, result.action, success=True, closed=True, message=result.reason)

    async def _guard_close(self, position: Position, result: GuardCheckResult, cfg: GuardConfig) -> GuardOutcome:
        report = await self.protection.close_and_verify(position, result.action.value, cfg)
        self._log_action(position, result, cfg, success=report.verified, close_outcome=report.outcome.value)

        if not report.verified:
            message = (
                f"close not verified after {report.verify_attempts} reads"
                if report.outcome == CloseOutcome.UNVERIFIED
                else f"close failed: {report.error.message if report.error else 'unknown'}"
            )
            return GuardOutcome(position.id, position.symbol, result.action, success=False, message=message)

        self.tracker.reset_entity(str(position.id))
        self.limiter.clear(str(position.id), GuardAction.FIX_SLTP.value)
        if result.action in CAPITULATION_ACTIONS:
            self.capitulation.record_close(
                position.symbol, result.action.value, cfg.capitulation_threshold, cfg.ban_duration_hours
            )
        return GuardOutcome(position.id, position.symbol, result.action, success=True, closed=True, message=result.reason)

    async def _fix_protection(
        self,
        position: Position,
        result: GuardCheckResult,
        cfg: GuardConfig,
        remote: Optional[RemotePosition],
    ) -> GuardOutcome:
        report = await self.protection.ensure_protection(
            position, remote, cfg, action=GuardAction.FIX_SLTP.value, max_attempts=cfg.repair_max_attempts
        )
        if report.protected:
            self._log_action(position, result, cfg, success=True, repair_outcome=report.outcome.value)
            ledger_write("position", self.ledger.upsert_position, position)
            return GuardOutcome(position.id, position.symbol, result.action, success=True, repaired=True, message=result.reason)
        if report.outcome == RepairOutcome.CLOSED:
            self._log_action(position, result, cfg, success=True, repair_outcome=report.outcome.value)
            self.tracker.reset_entity(str(position.id))
            return GuardOutcome(
                position.id, position.symbol, result.action, success=True, closed=True,
                message="stop already crossed, closed instead of repaired",
            )

        exhausted = report.outcome == RepairOutcome.EXHAUSTED or report.attempt >= cfg.repair_max_attempts
        self._log_action(
            position, result, cfg, success=False,
            repair_outcome=report.outcome.value,
            error=report.error.message if report.error else None,
        )
        age = position.age_seconds(self._clock())
        if exhausted and age > cfg.repair_grace_period_seconds:
            return await self.escalate(position, cfg, f"protection repair exhausted after {report.attempt} attempts")

        message = "repair attempts exhausted, within grace period" if exhausted else "repair failed, will retry"
        return GuardOutcome(position.id, position.symbol, result.action, success=False, message=message)

    def _sync_quantity(
        self,
        position: Position,
        result: GuardCheckResult,
        cfg: GuardConfig,
        remote: Optional[RemotePosition],
    ) -> GuardOutcome:
        if remote is None or remote.size >= position.quantity:
            # Local quantity never grows; an upward drift is reported, not applied
            logger.warning(
                "QUANTITY_DRIFT_UPWARD",
                symbol=position.symbol,
                position_id=position.id,
                local_quantity=str(position.quantity),
                remote_quantity=str(remote.size) if remote else None,
            )
            self._log_action(position, result, cfg, success=False, applied=False)
            return GuardOutcome(position.id, position.symbol, result.action, success=False, message="upward drift not applied")

        previous = position.quantity
        position.reduce_quantity(remote.size)
        ledger_write("position", self.ledger.upsert_position, position)
        self._log_action(position, result, cfg, success=True, previous_quantity=str(previous))
        logger.info(
            "QUANTITY_SYNCED",
            symbol=position.symbol,
            position_id=position.id,
            previous=str(previous),
            current=str(position.quantity),
        )
        return GuardOutcome(position.id, position.symbol, result.action, success=True, repaired=True, message=result.reason)

    async def escalate(self, position: Position, cfg: GuardConfig, reason: str) -> GuardOutcome:
        """Force-close an unrepairable position; ban the symbol only once the close is verified."""
        logger.critical("REPAIR_ESCALATION", symbol=position.symbol, position_id=position.id, reason=reason)
        report = await self.protection.close_and_verify(position, GuardAction.REPAIR_ESCALATION.value, cfg)
        escalation = GuardCheckResult(True, False, GuardAction.REPAIR_ESCALATION, reason, 1, None)
        self._log_action(position, escalation, cfg, success=report.verified, close_outcome=report.outcome.value)

        if not report.verified:
            return GuardOutcome(
                position.id, position.symbol, GuardAction.REPAIR_ESCALATION, success=False,
                message=f"escalation close {report.outcome.value}",
            )

        self.limiter.clear(str(position.id), GuardAction.FIX_SLTP.value)
        self.tracker.reset_entity(str(position.id))
        self.bans.ban(position.symbol, f"unprotected position force-closed: {reason}", cfg.ban_duration_hours)
        return GuardOutcome(
            position.id, position.symbol, GuardAction.REPAIR_ESCALATION, success=True, closed=True, message=reason,
        )

    async def close_all(
        self, positions: Sequence[Position], result: GuardCheckResult, cfg: GuardConfig
    ) -> List[GuardOutcome]:
        """Account-level close: every open position, sequentially through the shared limiter."""
        outcomes = []
        for position in positions:
            if not position.is_open:
                continue
            outcomes.append(await self._guard_close(position, result, cfg))
        return outcomes

    # ---------- per-position entry point ----------

    @staticmethod
    def refresh_from_remote(position: Position, remote: Optional[RemotePosition]) -> None:
        if remote is None or remote.side != position.side:
            return
        if remote.mark_price > 0:
            position.mark_price = remote.mark_price
        position.unrealized_pnl = remote.unrealized_pnl
        if remote.initial_margin > 0:
            position.initial_margin = remote.initial_margin

    async def guard_position(
        self,
        position: Position,
        remote: Optional[RemotePosition],
        open_positions: Sequence[Position],
        cfg: Optional[GuardConfig] = None,
    ) -> Optional[GuardOutcome]:
        """Evaluate and, if an action is confirmed, enforce it. None when nothing fired."""
        cfg = cfg or self.effective_config()
        self.refresh_from_remote(position, remote)

        price = position.mark_price
        if (price is None or price <= 0) and remote is not None and remote.side == position.side:
            mark = await self.exchange.get_mark_price(position.symbol)
            if mark.ok:
                price = position.mark_price = mark.value

        if self.bans.is_banned(position.symbol):
            logger.info("GUARD_BANNED_SYMBOL_OPEN", symbol=position.symbol, position_id=position.id)

        result = self.evaluate_position(position, remote, price, open_positions, cfg)
        if result is None:
            return None
        return await self.enforce(position, result, cfg, remote)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "confirmations": {f"{k[0]}:{k[1]}": v for k, v in self.tracker.snapshot().items()},
            "capitulation_counter": self.capitulation.value,
            "banned_symbols": sorted(b.symbol for b in self.bans.refresh()),
        }

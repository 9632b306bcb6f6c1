"""
Guarded position opening for inbound signals.

    ban check -> conflict resolution -> upgrade / reversal close
    -> opening lock -> leverage -> market order with SL/TP -> ledger row
    -> lock released active (closed on any failure)
"""
import asyncio
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import DefaultDict, Optional, Tuple

from oko.config.config import ConflictConfig, ExecutionConfig, GuardConfig
from oko.conflict.resolver import ConflictResolver
from oko.domain.models import (
    Alert,
    ConflictAnalysis,
    HistoryRecord,
    LockStatus,
    Position,
    PositionStatus,
    Resolution,
    Side,
)
from oko.domain.protocols import Ledger
from oko.exceptions import LedgerError
from oko.exchange.base import ExchangeAdapter, OrderAck
from oko.exchange.instruments import InstrumentRules
from oko.execution.protection_ops import ProtectionOps
from oko.monitoring.logger import get_logger
from oko.risk.symbol_bans import SymbolBanBook
from oko.utils.ledger_writes import ledger_write

logger = get_logger(__name__)

_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class OpenResult:
    accepted: bool
    action: str
    reason: str
    position: Optional[Position] = None
    analysis: Optional[ConflictAnalysis] = None


class PositionOpener:
    """Turns an accepted signal into an open, protected, recorded position."""

    def __init__(
        self,
        exchange: ExchangeAdapter,
        ledger: Ledger,
        resolver: ConflictResolver,
        protection: ProtectionOps,
        bans: SymbolBanBook,
        execution: ExecutionConfig,
        guard: GuardConfig,
        symbol_locks: Optional[DefaultDict[str, asyncio.Lock]] = None,
    ):
        self.exchange = exchange
        self.ledger = ledger
        self.resolver = resolver
        self.protection = protection
        self.bans = bans
        self.execution = execution
        self.guard = guard
        # Shared with the monitor so upgrades and reversals never interleave with a guard pass
        self.symbol_locks = symbol_locks if symbol_locks is not None else defaultdict(asyncio.Lock)

    def _reject(self, alert: Alert, reason: str, analysis: Optional[ConflictAnalysis] = None) -> OpenResult:
        logger.info("SIGNAL_REJECTED", alert_id=alert.id, symbol=alert.symbol, side=alert.side.value, reason=reason)
        return OpenResult(False, "rejected", reason, analysis=analysis)

    async def accept_signal(self, alert: Alert, policy: Optional[ConflictConfig] = None) -> OpenResult:
        self.bans.refresh()
        ban = self.bans.get(alert.symbol)
        if ban is not None:
            return self._reject(alert, f"symbol banned until {ban.expires_at.isoformat()}: {ban.reason}")

        async with self.symbol_locks[alert.symbol]:
            return await self._accept(alert, policy)

    async def _accept(self, alert: Alert, policy: Optional[ConflictConfig]) -> OpenResult:
        analysis = self.resolver.resolve(alert, policy)
        if not analysis.should_proceed:
            return self._reject(alert, analysis.reason, analysis)

        if analysis.resolution == Resolution.UPGRADE and analysis.existing_position is not None:
            return await self._upgrade(alert, analysis, policy or self.resolver.config)

        if analysis.resolution == Resolution.CLOSE_AND_OPEN and analysis.existing_position is not None:
            existing = analysis.existing_position
            report = await self.protection.close_and_verify(existing, "reversal", self.guard)
            if not report.verified:
                return self._reject(alert, f"reversal close {report.outcome.value}", analysis)

        return await self._open(alert, analysis)

    async def _upgrade(self, alert: Alert, analysis: ConflictAnalysis, config: ConflictConfig) -> OpenResult:
        existing = analysis.existing_position
        existing.confirmation_count += 1
        targets_changed = False

        if config.same_symbol_behavior == "tier_based" and alert.tier_rank > existing.tier_rank:
            existing.tier = alert.tier
            for level in (1, 2, 3):
                new_price = getattr(alert, f"tp{level}_price")
                if new_price is not None and not existing.is_tp_hit(level):
                    setattr(existing, f"tp{level}_price", new_price)
                    targets_changed = True

        ledger_write("position", self.ledger.upsert_position, existing)
        if targets_changed:
            remote = await self.exchange.get_position(existing.symbol, existing.side)
            await self.protection.ensure_protection(
                existing, remote.value if remote.ok else None, self.guard, force=True
            )

        logger.info(
            "POSITION_UPGRADED",
            position_id=existing.id,
            symbol=existing.symbol,
            tier=existing.tier,
            confirmation_count=existing.confirmation_count,
            targets_changed=targets_changed,
        )
        return OpenResult(True, "upgraded", analysis.reason, position=existing, analysis=analysis)

    def _levels(self, alert: Alert, price: Decimal, rules: InstrumentRules) -> Tuple[Decimal, Decimal]:
        sl_offset = price * Decimal(str(self.guard.default_sl_pct)) / _HUNDRED
        tp_offset = price * Decimal(str(self.guard.default_tp_pct)) / _HUNDRED
        long = alert.side == Side.LONG

        stop = alert.stop_loss
        if stop is None or (long and stop >= price) or (not long and stop <= price):
            stop = price - sl_offset if long else price + sl_offset
        target = alert.tp1_price
        if target is None or (long and target <= price) or (not long and target >= price):
            target = price + tp_offset if long else price - tp_offset
        return rules.round_price(stop), rules.round_price(target)

    async def _open(self, alert: Alert, analysis: ConflictAnalysis) -> OpenResult:
        lock_id = self.ledger.acquire_opening_lock(alert.symbol, alert.side)
        if lock_id is None:
            return self._reject(alert, "opening lock busy for symbol/side", analysis)

        outcome = LockStatus.CLOSED
        position: Optional[Position] = None
        try:
            failure = None
            price_result = await self.exchange.get_mark_price(alert.symbol)
            rules_result = await self.exchange.get_instrument(alert.symbol)
            if not price_result.ok:
                failure = price_result.error.message
            elif not rules_result.ok:
                failure = rules_result.error.message
            if failure:
                return self._reject(alert, failure, analysis)

            price = price_result.value
            rules = rules_result.value
            leverage = alert.leverage or self.execution.default_leverage
            lev_result = await self.exchange.set_leverage(alert.symbol, leverage)
            if not lev_result.ok:
                return self._reject(alert, f"set leverage failed: {lev_result.error.message}", analysis)

            margin = Decimal(str(self.execution.margin_per_trade_usdt))
            qty = rules.round_qty(margin * leverage / price)
            if not rules.is_valid_qty(qty, price):
                return self._reject(alert, f"order size {qty} below instrument minimum {rules.min_qty}", analysis)

            stop, target = self._levels(alert, price, rules)
            order = await self.exchange.place_market_order(
                alert.symbol, alert.side, qty, stop_loss=stop, take_profit=target
            )
            if not order.ok:
                return self._reject(alert, f"order rejected: {order.error.message}", analysis)

            position = Position(
                symbol=alert.symbol,
                side=alert.side,
                entry_price=price,
                quantity=order.value.qty,
                leverage=leverage,
                stop_loss=stop,
                tp1_price=target,
                tp2_price=alert.tp2_price,
                tp3_price=alert.tp3_price,
                initial_margin=order.value.qty * price / leverage,
                status=PositionStatus.OPEN,
                tier=alert.tier,
                mark_price=price,
                alert_id=alert.id,
            )
            # The order is filled from here on: the lock settles active whatever the ledger does
            outcome = LockStatus.ACTIVE
            recorded = self._record(position, order.value)
        finally:
            ledger_write(
                "opening_lock",
                self.ledger.release_opening_lock,
                lock_id,
                outcome,
                position.id if position is not None else None,
            )

        details = {
            "alert_id": alert.id,
            "order_id": order.value.order_id,
            "side": position.side.value,
            "qty": str(position.quantity),
            "entry_price": str(position.entry_price),
            "stop_loss": str(position.stop_loss),
            "take_profit": str(position.tp1_price),
            "resolution": analysis.resolution.value,
        }
        ledger_write(
            "history",
            self.ledger.append_history,
            HistoryRecord(
                event="position_opened" if recorded else "position_open_unrecorded",
                symbol=position.symbol,
                position_id=position.id,
                details=details,
            ),
        )
        logger.info(
            "POSITION_OPENED",
            position_id=position.id,
            symbol=position.symbol,
            side=position.side.value,
            qty=str(position.quantity),
            entry_price=str(position.entry_price),
            recorded=recorded,
        )
        return OpenResult(True, "opened", analysis.reason, position=position, analysis=analysis)

    def _record(self, position: Position, order: OrderAck) -> bool:
        """Persist a freshly filled position. False when the ledger refused the row."""
        try:
            self.ledger.upsert_position(position)
        except LedgerError as e:
            logger.critical(
                "LEDGER_WRITE_FAILED",
                what="position",
                symbol=position.symbol,
                side=position.side.value,
                order_id=order.order_id,
                qty=str(order.qty),
                error=str(e),
            )
            return False
        return True

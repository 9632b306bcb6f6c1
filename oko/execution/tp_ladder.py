"""
Take-profit ladder state machine.

    opening -> active -> tp1_done -> tp2_done -> closed

At most one transition per cycle. Intermediate levels partially close the
remaining quantity, move the stop per policy and then re-verify protection on
the smaller remote position (partial closes can silently drop it). The last
configured level closes the whole remainder.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from oko.config.config import GuardConfig, LadderConfig
from oko.domain.models import HistoryRecord, Position, StopPolicy
from oko.domain.protocols import Ledger
from oko.exchange.base import ExchangeAdapter
from oko.execution.protection_ops import ProtectionOps
from oko.monitoring.logger import get_logger
from oko.risk.symbol_bans import SymbolBanBook
from oko.utils.ledger_writes import ledger_write

logger = get_logger(__name__)

_HUNDRED = Decimal("100")

URGENT_REPAIR_ACTION = "fix_sltp_urgent"


@dataclass(frozen=True)
class LadderResult:
    level: int
    success: bool
    closed: bool = False
    protected: bool = True
    message: str = ""


class TakeProfitLadder:
    """Advances positions through their take-profit levels."""

    def __init__(
        self,
        exchange: ExchangeAdapter,
        ledger: Ledger,
        protection: ProtectionOps,
        bans: SymbolBanBook,
        config: LadderConfig,
    ):
        self.exchange = exchange
        self.ledger = ledger
        self.protection = protection
        self.bans = bans
        self.config = config

    @staticmethod
    def crossed(position: Position, price: Decimal, target: Decimal) -> bool:
        return price >= target if position.is_long else price <= target

    def next_level(self, position: Position) -> Optional[tuple]:
        levels = position.tp_levels()
        for level, target in levels:
            if not position.is_tp_hit(level):
                return level, target, level == levels[-1][0]
        return None

    def close_pct(self, level: int) -> Decimal:
        pct = self.config.tp1_close_pct if level == 1 else self.config.tp2_close_pct
        return Decimal(str(pct))

    def apply_stop_policy(self, position: Position, price: Decimal) -> bool:
        """Move the recorded stop per policy. Only ever tightens. Returns True if it moved."""
        policy = StopPolicy(self.config.stop_policy)
        if policy == StopPolicy.BREAKEVEN:
            return position.tighten_stop(position.entry_price)
        if policy == StopPolicy.TRAILING:
            distance = price * Decimal(str(self.config.trailing_distance_pct)) / _HUNDRED
            new_stop = price - distance if position.is_long else price + distance
            return position.tighten_stop(new_stop)
        return False

    async def advance(self, position: Position, price: Optional[Decimal], guard_cfg: GuardConfig) -> Optional[LadderResult]:
        """Fire at most one ladder transition. None when no level was crossed."""
        if not position.is_open or price is None or price <= 0:
            return None
        upcoming = self.next_level(position)
        if upcoming is None:
            return None
        level, target, is_final = upcoming
        if not self.crossed(position, price, target):
            return None

        logger.info(
            "TP_LEVEL_HIT",
            symbol=position.symbol,
            position_id=position.id,
            level=level,
            target=str(target),
            price=str(price),
            final=is_final,
        )
        if is_final:
            return await self._close_final(position, level, guard_cfg)

        rules = await self.exchange.get_instrument(position.symbol)
        close_qty = position.quantity * self.close_pct(level) / _HUNDRED
        if rules.ok:
            close_qty = rules.value.round_qty(close_qty)
        if close_qty >= position.quantity:
            return await self._close_final(position, level, guard_cfg)
        return await self._partial(position, level, close_qty, price, guard_cfg)

    async def _close_final(self, position: Position, level: int, guard_cfg: GuardConfig) -> LadderResult:
        # Every level up to the final one counts as hit once the remainder is closed
        previous = {lvl: position.is_tp_hit(lvl) for lvl, _ in position.tp_levels()}
        for lvl, _ in position.tp_levels():
            position.mark_tp_hit(lvl)
        report = await self.protection.close_and_verify(position, f"tp{level}", guard_cfg)
        if not report.verified:
            for lvl, was_hit in previous.items():
                setattr(position, f"tp{lvl}_hit", was_hit)
            return LadderResult(level, success=False, message=f"final close {report.outcome.value}")
        return LadderResult(level, success=True, closed=True, message=f"tp{level} final close")

    async def _partial(
        self, position: Position, level: int, close_qty: Decimal, price: Decimal, guard_cfg: GuardConfig
    ) -> LadderResult:
        if close_qty > 0:
            result = await self.exchange.close_position(position.symbol, position.side, close_qty)
            if not result.ok:
                logger.error(
                    "TP_PARTIAL_CLOSE_FAILED",
                    symbol=position.symbol,
                    position_id=position.id,
                    level=level,
                    error_type=result.error.type.value,
                    error=result.error.message,
                )
                return LadderResult(level, success=False, message=result.error.message)
            close_qty = result.value.qty

        position.reduce_quantity(position.quantity - close_qty)
        position.mark_tp_hit(level)
        stop_moved = self.apply_stop_policy(position, price)
        ledger_write("position", self.ledger.upsert_position, position)
        ledger_write(
            "history",
            self.ledger.append_history,
            HistoryRecord(
                event=f"tp{level}_partial_close",
                symbol=position.symbol,
                position_id=position.id,
                details={
                    "closed_qty": str(close_qty),
                    "remaining_qty": str(position.quantity),
                    "price": str(price),
                    "stop_loss": str(position.current_stop_loss) if position.current_stop_loss is not None else None,
                },
            ),
        )
        logger.info(
            "TP_PARTIAL_CLOSED",
            symbol=position.symbol,
            position_id=position.id,
            level=level,
            closed_qty=str(close_qty),
            remaining_qty=str(position.quantity),
            stop_moved=stop_moved,
        )

        if await self._reverify_protection(position, guard_cfg, stop_moved):
            return LadderResult(level, success=True, message=f"tp{level} partial close")
        if not position.is_open:
            # Repair found the new stop already crossed and closed the remainder
            return LadderResult(level, success=False, closed=True, protected=False, message="closed: stop already crossed")

        logger.critical(
            "TP_PROTECTION_LOST",
            symbol=position.symbol,
            position_id=position.id,
            level=level,
        )
        report = await self.protection.close_and_verify(position, "tp_protection_lost", guard_cfg)
        if report.verified:
            self.bans.ban(position.symbol, f"protection lost after tp{level} partial close", guard_cfg.ban_duration_hours)
            return LadderResult(level, success=False, closed=True, protected=False, message="emergency close after protection loss")
        return LadderResult(level, success=False, protected=False, message=f"emergency close {report.outcome.value}")

    async def _reverify_protection(self, position: Position, guard_cfg: GuardConfig, stop_moved: bool) -> bool:
        """Normal repair budget first, then one urgent pass with the higher budget."""
        remote = await self.exchange.get_position(position.symbol, position.side)
        report = await self.protection.ensure_protection(
            position,
            remote.value if remote.ok else None,
            guard_cfg,
            max_attempts=guard_cfg.repair_max_attempts,
            force=stop_moved or not remote.ok,
        )
        if report.protected:
            return True

        logger.warning("TP_PROTECTION_URGENT_RETRY", symbol=position.symbol, position_id=position.id)
        remote = await self.exchange.get_position(position.symbol, position.side)
        urgent = await self.protection.ensure_protection(
            position,
            remote.value if remote.ok else None,
            guard_cfg,
            action=URGENT_REPAIR_ACTION,
            max_attempts=guard_cfg.urgent_repair_max_attempts,
            force=True,
        )
        return urgent.protected

"""
Guard checks.

Pure functions over local and remote state. None of them call the exchange or
the ledger; the engine decides what to do with the result.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from oko.domain.models import Position, utc_now
from oko.exchange.base import RemotePosition
from oko.guard.results import (
    AgeDetail,
    BreachDetail,
    CorrelationDetail,
    DrawdownDetail,
    GhostDetail,
    GuardAction,
    GuardCheckResult,
    PnlDetail,
    ProtectionDetail,
    QuantityDetail,
)

_HUNDRED = Decimal("100")


def _pct(value: float) -> Decimal:
    return Decimal(str(value))


def check_ghost(position: Position, remote: Optional[RemotePosition]) -> GuardCheckResult:
    """Local row is open but the exchange has no position on that side."""
    if remote is not None and remote.is_open and remote.side == position.side:
        return GuardCheckResult.clear(GuardAction.GHOST_POSITION_CLEANUP)

    if remote is None or not remote.is_open:
        reason = f"{position.symbol} {position.side.value} open locally but not found on exchange"
    else:
        reason = f"{position.symbol} open locally as {position.side.value} but exchange holds {remote.side.value}"
    return GuardCheckResult(
        should_close=False,
        should_fix=True,
        action=GuardAction.GHOST_POSITION_CLEANUP,
        reason=reason,
        required_confirmations=1,
        detail=GhostDetail(
            remote_found=remote is not None and remote.is_open,
            remote_side=remote.side.value if remote is not None and remote.is_open else None,
        ),
    )


def check_protection_breach(position: Position, current_price: Decimal, tolerance_pct: float) -> GuardCheckResult:
    """Price is beyond the recorded stop by more than tolerance_pct of the stop."""
    stop = position.effective_stop
    if stop is None or stop <= 0 or current_price is None or current_price <= 0:
        return GuardCheckResult.clear(GuardAction.SL_BREACH, "no stop recorded")

    if position.is_long:
        beyond = stop - current_price
    else:
        beyond = current_price - stop
    if beyond <= 0:
        return GuardCheckResult.clear(GuardAction.SL_BREACH, "stop not breached")

    breach_pct = beyond / stop * _HUNDRED
    tolerance = _pct(tolerance_pct)
    if breach_pct <= tolerance:
        return GuardCheckResult.clear(GuardAction.SL_BREACH, "breach within tolerance")

    return GuardCheckResult(
        should_close=True,
        should_fix=False,
        action=GuardAction.SL_BREACH,
        reason=f"Price breached SL by {breach_pct:.2f}% (>{tolerance}%)",
        required_confirmations=1,
        detail=BreachDetail(current_price, stop, breach_pct, tolerance),
    )


def check_pnl_emergency(position: Position, threshold_pct: float, required: int = 3) -> GuardCheckResult:
    """Unrealized P&L over initial margin at or below -threshold_pct."""
    if not position.initial_margin or position.initial_margin <= 0:
        return GuardCheckResult.clear(GuardAction.PNL_EMERGENCY, "no margin recorded")

    pnl_pct = position.pnl_pct
    threshold = -abs(_pct(threshold_pct))
    if pnl_pct > threshold:
        return GuardCheckResult.clear(GuardAction.PNL_EMERGENCY, "PnL within safe range")

    return GuardCheckResult(
        should_close=True,
        should_fix=False,
        action=GuardAction.PNL_EMERGENCY,
        reason=f"PnL {pnl_pct:.2f}% exceeded threshold {threshold}%",
        required_confirmations=required,
        detail=PnlDetail(position.unrealized_pnl, pnl_pct, threshold, position.mark_price),
    )


def check_correlated_loss(
    position: Position, open_positions: Sequence[Position], required: int = 3
) -> GuardCheckResult:
    """Two or more positions on the same symbol and more than half of them losing."""
    same_symbol = [p for p in open_positions if p.symbol == position.symbol and p.is_open]
    if len(same_symbol) < 2:
        return GuardCheckResult.clear(GuardAction.CORRELATED_LOSS, "single position on symbol")

    losing = sum(1 for p in same_symbol if p.unrealized_pnl < 0)
    if losing * 2 <= len(same_symbol):
        return GuardCheckResult.clear(GuardAction.CORRELATED_LOSS, "majority not losing")

    return GuardCheckResult(
        should_close=True,
        should_fix=False,
        action=GuardAction.CORRELATED_LOSS,
        reason=f"{losing}/{len(same_symbol)} positions on {position.symbol} losing",
        required_confirmations=required,
        detail=CorrelationDetail(position.symbol, len(same_symbol), losing),
    )


def check_time_based_exit(
    position: Position,
    enabled: bool,
    limit_hours: float,
    required: int = 3,
    now: Optional[datetime] = None,
) -> GuardCheckResult:
    """Position older than limit_hours and still losing."""
    if not enabled:
        return GuardCheckResult.clear(GuardAction.TIME_BASED_EXIT, "time-based exit disabled")

    age_hours = position.age_seconds(now or utc_now()) / 3600
    if age_hours < limit_hours or position.unrealized_pnl >= 0:
        return GuardCheckResult.clear(GuardAction.TIME_BASED_EXIT, "position age or PnL OK")

    return GuardCheckResult(
        should_close=True,
        should_fix=False,
        action=GuardAction.TIME_BASED_EXIT,
        reason=f"Position on minus for {age_hours:.1f}h (threshold: {limit_hours}h)",
        required_confirmations=required,
        detail=AgeDetail(round(age_hours, 2), limit_hours, position.unrealized_pnl),
    )


def check_missing_protection(position: Position, remote: Optional[RemotePosition]) -> GuardCheckResult:
    """Remote position exists without a valid stop loss and/or take profit."""
    if remote is None or not remote.is_open:
        return GuardCheckResult.clear(GuardAction.FIX_SLTP, "no remote position")

    missing_sl = not remote.has_stop_loss
    missing_tp = not remote.has_take_profit
    if not missing_sl and not missing_tp:
        return GuardCheckResult.clear(GuardAction.FIX_SLTP, "protection attached")

    missing = " and ".join(name for name, flag in (("SL", missing_sl), ("TP", missing_tp)) if flag)
    return GuardCheckResult(
        should_close=False,
        should_fix=True,
        action=GuardAction.FIX_SLTP,
        reason=f"Missing {missing} on exchange for {position.symbol}",
        required_confirmations=1,
        detail=ProtectionDetail(
            missing_stop_loss=missing_sl,
            missing_take_profit=missing_tp,
            stop_loss=position.effective_stop,
            take_profit=position.first_take_profit(),
        ),
    )


def check_quantity_drift(
    position: Position, remote: Optional[RemotePosition], tolerance_pct: float
) -> GuardCheckResult:
    """After a take-profit fired locally, remote size differs from local beyond rounding."""
    if not position.any_tp_hit:
        return GuardCheckResult.clear(GuardAction.TP1_QUANTITY_FIX, "no take profit hit yet")
    if remote is None or not remote.is_open or position.quantity <= 0:
        return GuardCheckResult.clear(GuardAction.TP1_QUANTITY_FIX, "nothing to compare")

    drift = abs(remote.size - position.quantity)
    drift_pct = drift / position.quantity * _HUNDRED
    if drift_pct <= _pct(tolerance_pct):
        return GuardCheckResult.clear(GuardAction.TP1_QUANTITY_FIX, "quantity in sync")

    return GuardCheckResult(
        should_close=False,
        should_fix=True,
        action=GuardAction.TP1_QUANTITY_FIX,
        reason=f"Quantity drift {drift_pct:.2f}%: local {position.quantity}, exchange {remote.size}",
        required_confirmations=1,
        detail=QuantityDetail(position.quantity, remote.size, drift_pct),
    )


def check_account_drawdown(
    positions: Sequence[Position], threshold_pct: float, required: int = 3
) -> GuardCheckResult:
    """Total unrealized P&L over total margin across open positions at or below -threshold_pct."""
    open_positions = [p for p in positions if p.is_open]
    total_pnl = sum((p.unrealized_pnl for p in open_positions), Decimal("0"))
    total_margin = sum((p.initial_margin for p in open_positions), Decimal("0"))
    if total_margin <= 0:
        return GuardCheckResult.clear(GuardAction.ACCOUNT_DRAWDOWN, "no margin in use")

    drawdown_pct = total_pnl / total_margin * _HUNDRED
    threshold = -abs(_pct(threshold_pct))
    if drawdown_pct > threshold:
        return GuardCheckResult.clear(GuardAction.ACCOUNT_DRAWDOWN, "Account drawdown within safe range")

    return GuardCheckResult(
        should_close=True,
        should_fix=False,
        action=GuardAction.ACCOUNT_DRAWDOWN,
        reason=f"Account drawdown {drawdown_pct:.2f}% exceeded threshold {threshold}%",
        required_confirmations=required,
        detail=DrawdownDetail(total_pnl, total_margin, drawdown_pct, threshold, len(open_positions)),
    )

"""
Guard check results.

Every check returns a GuardCheckResult. The detail field is one of the typed
detail records below, chosen by the action, instead of a free-form dict.
"""
from dataclasses import asdict, dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union


class GuardAction(str, Enum):
    NONE = "none"
    GHOST_POSITION_CLEANUP = "ghost_position_cleanup"
    SL_BREACH = "sl_breach"
    PNL_EMERGENCY = "pnl_emergency"
    CORRELATED_LOSS = "correlated_loss"
    TIME_BASED_EXIT = "time_based_exit"
    FIX_SLTP = "fix_sltp"
    TP1_QUANTITY_FIX = "tp1_quantity_fix"
    ACCOUNT_DRAWDOWN = "account_drawdown"
    REPAIR_ESCALATION = "repair_escalation"


# Guard closes that count toward the capitulation breaker
CAPITULATION_ACTIONS = frozenset({
    GuardAction.SL_BREACH,
    GuardAction.PNL_EMERGENCY,
    GuardAction.CORRELATED_LOSS,
    GuardAction.TIME_BASED_EXIT,
})


@dataclass(frozen=True)
class GhostDetail:
    remote_found: bool
    remote_side: Optional[str] = None


@dataclass(frozen=True)
class BreachDetail:
    current_price: Decimal
    stop_loss: Decimal
    breach_pct: Decimal
    tolerance_pct: Decimal


@dataclass(frozen=True)
class PnlDetail:
    pnl: Decimal
    pnl_pct: Decimal
    threshold_pct: Decimal
    current_price: Optional[Decimal] = None


@dataclass(frozen=True)
class CorrelationDetail:
    symbol: str
    positions: int
    losing: int


@dataclass(frozen=True)
class AgeDetail:
    age_hours: float
    limit_hours: float
    pnl: Decimal


@dataclass(frozen=True)
class ProtectionDetail:
    missing_stop_loss: bool
    missing_take_profit: bool
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None


@dataclass(frozen=True)
class QuantityDetail:
    local_quantity: Decimal
    remote_quantity: Decimal
    drift_pct: Decimal


@dataclass(frozen=True)
class DrawdownDetail:
    total_pnl: Decimal
    total_margin: Decimal
    drawdown_pct: Decimal
    threshold_pct: Decimal
    positions: int


GuardDetail = Union[
    GhostDetail, BreachDetail, PnlDetail, CorrelationDetail, AgeDetail,
    ProtectionDetail, QuantityDetail, DrawdownDetail,
]


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


@dataclass(frozen=True)
class GuardCheckResult:
    should_close: bool
    should_fix: bool
    action: GuardAction
    reason: str
    required_confirmations: int = 1
    detail: Optional[GuardDetail] = None

    @classmethod
    def clear(cls, action: GuardAction, reason: str = "ok") -> "GuardCheckResult":
        """Negative result for a check that did not trigger. action names the check."""
        return cls(False, False, action, reason, 0, None)

    @property
    def triggered(self) -> bool:
        return self.should_close or self.should_fix

    def to_log_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "reason": self.reason,
            "should_close": self.should_close,
            "should_fix": self.should_fix,
            "required_confirmations": self.required_confirmations,
            "detail": _jsonable(asdict(self.detail)) if self.detail is not None else None,
        }

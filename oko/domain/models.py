"""
Domain models for the guard engine.

These are the core business objects shared by the guard, ladder, conflict
resolver and ledgers. All timestamps use UTC timezone-aware datetimes and all
prices, quantities and P&L values are Decimals.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from oko.constants import SIGNAL_TIERS
from oko.exceptions import InvariantError
from oko.exchange.symbols import normalize_symbol


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def tier_rank(tier: Optional[str]) -> int:
    """Ordinal strength of a signal tier (0 for unknown tiers)."""
    if not tier:
        return 0
    for index, name in enumerate(SIGNAL_TIERS):
        if name.lower() == tier.lower():
            return index + 1
    return 0


class Side(str, Enum):
    """Position side."""
    LONG = "long"
    SHORT = "short"

    @property
    def opposite(self) -> "Side":
        return Side.SHORT if self == Side.LONG else Side.LONG

    @property
    def order_side(self) -> str:
        """Venue order side that opens this position side."""
        return "Buy" if self == Side.LONG else "Sell"

    @classmethod
    def parse(cls, value: Any) -> "Side":
        """Accept long/short as well as venue BUY/SELL spellings in any case."""
        if isinstance(value, Side):
            return value
        text = str(value).strip().lower()
        if text in ("long", "buy"):
            return cls.LONG
        if text in ("short", "sell"):
            return cls.SHORT
        raise ValueError(f"Unknown side: {value!r}")


class PositionStatus(str, Enum):
    OPENING = "opening"
    OPEN = "open"
    CLOSED = "closed"


class LadderStage(str, Enum):
    """Take-profit ladder states, in order."""
    OPENING = "opening"
    ACTIVE = "active"
    TP1_DONE = "tp1_done"
    TP2_DONE = "tp2_done"
    CLOSED = "closed"


class StopPolicy(str, Enum):
    BREAKEVEN = "breakeven"
    TRAILING = "trailing"
    NO_CHANGE = "no_change"


class LockStatus(str, Enum):
    OPENING = "opening"
    ACTIVE = "active"
    CLOSED = "closed"


class ConflictType(str, Enum):
    REVERSE = "REVERSE"
    UPGRADE = "UPGRADE"
    SAME_DIRECTION = "SAME_DIRECTION"
    NONE = "NONE"


class Resolution(str, Enum):
    REJECT = "REJECT"
    CLOSE_AND_OPEN = "CLOSE_AND_OPEN"
    IGNORE = "IGNORE"
    UPGRADE = "UPGRADE"


@dataclass
class Position:
    """
    A locally tracked position.

    Invariants:
        quantity never increases while the position is open.
        current_stop_loss only tightens once tp1 has been hit.
    """
    symbol: str
    side: Side
    entry_price: Decimal
    quantity: Decimal
    leverage: int = 1
    stop_loss: Optional[Decimal] = None
    current_stop_loss: Optional[Decimal] = None
    tp1_price: Optional[Decimal] = None
    tp2_price: Optional[Decimal] = None
    tp3_price: Optional[Decimal] = None
    tp1_hit: bool = False
    tp2_hit: bool = False
    tp3_hit: bool = False
    initial_margin: Decimal = Decimal("0")
    unrealized_pnl: Decimal = Decimal("0")
    opened_at: datetime = field(default_factory=utc_now)
    status: PositionStatus = PositionStatus.OPEN
    close_reason: Optional[str] = None
    closed_at: Optional[datetime] = None
    tier: str = "Standard"
    confirmation_count: int = 1
    mark_price: Optional[Decimal] = None
    alert_id: Optional[int] = None
    initial_quantity: Optional[Decimal] = None
    id: Optional[int] = None

    def __post_init__(self):
        self.side = Side.parse(self.side)
        if self.quantity < 0:
            raise ValueError(f"Position quantity cannot be negative: {self.quantity}")
        if self.current_stop_loss is None:
            self.current_stop_loss = self.stop_loss
        if self.initial_quantity is None:
            self.initial_quantity = self.quantity
        if self.opened_at.tzinfo is None:
            raise ValueError("Position opened_at must be timezone-aware (UTC)")

    @property
    def is_long(self) -> bool:
        return self.side == Side.LONG

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def tier_rank(self) -> int:
        return tier_rank(self.tier)

    @property
    def ladder_stage(self) -> LadderStage:
        if self.status == PositionStatus.CLOSED:
            return LadderStage.CLOSED
        if self.status == PositionStatus.OPENING:
            return LadderStage.OPENING
        if self.tp2_hit:
            return LadderStage.TP2_DONE
        if self.tp1_hit:
            return LadderStage.TP1_DONE
        return LadderStage.ACTIVE

    @property
    def effective_stop(self) -> Optional[Decimal]:
        return self.current_stop_loss if self.current_stop_loss is not None else self.stop_loss

    @property
    def pnl_pct(self) -> Decimal:
        """Unrealized P&L as a percentage of initial margin."""
        if not self.initial_margin:
            return Decimal("0")
        return self.unrealized_pnl / self.initial_margin * 100

    @property
    def any_tp_hit(self) -> bool:
        return self.tp1_hit or self.tp2_hit or self.tp3_hit

    def tp_levels(self) -> List[Tuple[int, Decimal]]:
        """Configured (level, price) pairs in ladder order, skipping empty levels."""
        prices = (self.tp1_price, self.tp2_price, self.tp3_price)
        return [(i + 1, p) for i, p in enumerate(prices) if p is not None and p > 0]

    def is_tp_hit(self, level: int) -> bool:
        return bool(getattr(self, f"tp{level}_hit"))

    def mark_tp_hit(self, level: int) -> None:
        setattr(self, f"tp{level}_hit", True)

    def first_take_profit(self) -> Optional[Decimal]:
        """Nearest take-profit level not yet hit."""
        for level, price in self.tp_levels():
            if not self.is_tp_hit(level):
                return price
        return None

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or utc_now()
        return (now - self.opened_at).total_seconds()

    def reduce_quantity(self, new_quantity: Decimal) -> Decimal:
        """Lower the recorded quantity. Returns the amount removed."""
        new_quantity = Decimal(new_quantity)
        if new_quantity < 0:
            raise InvariantError(f"{self.symbol}: quantity cannot go negative ({new_quantity})")
        if new_quantity > self.quantity:
            raise InvariantError(
                f"{self.symbol}: quantity may not increase ({self.quantity} -> {new_quantity})"
            )
        removed = self.quantity - new_quantity
        self.quantity = new_quantity
        return removed

    def tighten_stop(self, new_stop: Decimal) -> bool:
        """Move the stop only in the risk-reducing direction. Returns True if it moved."""
        current = self.effective_stop
        if current is not None:
            if self.is_long and new_stop <= current:
                return False
            if not self.is_long and new_stop >= current:
                return False
        self.current_stop_loss = new_stop
        return True

    def mark_closed(self, reason: str, at: Optional[datetime] = None) -> None:
        self.status = PositionStatus.CLOSED
        self.close_reason = reason
        self.closed_at = at or utc_now()
        self.quantity = Decimal("0")


@dataclass(frozen=True)
class Alert:
    """Inbound directional signal. Immutable once received."""
    id: int
    symbol: str
    side: Side
    tier: str
    strength: float
    entry_price: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    tp1_price: Optional[Decimal] = None
    tp2_price: Optional[Decimal] = None
    tp3_price: Optional[Decimal] = None
    leverage: Optional[int] = None
    received_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if not 0.0 <= float(self.strength) <= 1.0:
            raise ValueError(f"Alert strength must be within [0, 1], got {self.strength}")
        object.__setattr__(self, "side", Side.parse(self.side))
        object.__setattr__(self, "symbol", normalize_symbol(self.symbol))

    @property
    def tier_rank(self) -> int:
        return tier_rank(self.tier)


@dataclass
class OpeningLock:
    """Serializes position creation per (symbol, side)."""
    id: int
    symbol: str
    side: Side
    status: LockStatus = LockStatus.OPENING
    position_id: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class SymbolBan:
    symbol: str
    banned_at: datetime
    expires_at: datetime
    reason: str

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) < self.expires_at


@dataclass(frozen=True)
class ConflictAnalysis:
    has_conflict: bool
    conflict_type: ConflictType
    resolution: Resolution
    reason: str
    should_proceed: bool
    existing_position: Optional[Position] = None


@dataclass(frozen=True)
class HistoryRecord:
    """Append-only audit row (position closes, repair attempts, diagnostics)."""
    event: str
    symbol: str
    position_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class GuardActionLogEntry:
    position_id: Optional[int]
    symbol: str
    action: str
    reason: str
    confirmations: int
    pnl_at_action: Optional[Decimal] = None
    price_at_action: Optional[Decimal] = None
    success: bool = True
    details: Dict[str, Any] = field(default_factory=dict)
    settings_snapshot: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ConflictLogEntry:
    alert_id: int
    existing_position_id: Optional[int]
    symbol: str
    new_side: Side
    existing_side: Optional[Side]
    new_tier: str
    existing_tier: Optional[str]
    conflict_type: ConflictType
    resolution: Resolution
    reason: str
    resolved_at: datetime = field(default_factory=utc_now)

"""
SQLAlchemy-backed ledger.

Provides the Ledger contract over PostgreSQL/SQLite. Opening-lock atomicity is
a single constrained insert: while a lock is opening its lock_key holds
"<symbol>:<side>" under a UNIQUE constraint, and settling the lock sets the
key to NULL so a later open can reuse the pair.
"""
import functools
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from oko.domain.models import (
    ConflictLogEntry,
    GuardActionLogEntry,
    HistoryRecord,
    LockStatus,
    Position,
    PositionStatus,
    Side,
    SymbolBan,
    utc_now,
)
from oko.exceptions import LedgerError
from oko.storage.db import Base, Database


def _naive(dt: Optional[datetime]) -> Optional[datetime]:
    """Store UTC as naive datetimes (SQLite drops tzinfo)."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    return dt.replace(tzinfo=timezone.utc) if dt is not None else None


def _dec(value: Any) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _json(value: Dict[str, Any]) -> str:
    return json.dumps(value, default=str, sort_keys=True)


def _lock_key(symbol: str, side: Side) -> str:
    return f"{symbol}:{Side.parse(side).value}"


class SettingModel(Base):
    """Operator settings and persisted counters (JSON-encoded values)."""
    __tablename__ = "oko_settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)


class PositionModel(Base):
    __tablename__ = "oko_positions"
    __table_args__ = (Index("ix_oko_positions_symbol_status", "symbol", "status"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    entry_price = Column(Numeric(precision=20, scale=8), nullable=False)
    quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    initial_quantity = Column(Numeric(precision=20, scale=8), nullable=True)
    leverage = Column(Integer, nullable=False, default=1)
    stop_loss = Column(Numeric(precision=20, scale=8), nullable=True)
    current_stop_loss = Column(Numeric(precision=20, scale=8), nullable=True)
    tp1_price = Column(Numeric(precision=20, scale=8), nullable=True)
    tp2_price = Column(Numeric(precision=20, scale=8), nullable=True)
    tp3_price = Column(Numeric(precision=20, scale=8), nullable=True)
    tp1_hit = Column(Boolean, nullable=False, default=False)
    tp2_hit = Column(Boolean, nullable=False, default=False)
    tp3_hit = Column(Boolean, nullable=False, default=False)
    initial_margin = Column(Numeric(precision=20, scale=8), nullable=False, default=0)
    unrealized_pnl = Column(Numeric(precision=20, scale=8), nullable=False, default=0)
    mark_price = Column(Numeric(precision=20, scale=8), nullable=True)
    opened_at = Column(DateTime, nullable=False)
    status = Column(String, nullable=False)
    close_reason = Column(String, nullable=True)
    closed_at = Column(DateTime, nullable=True)
    tier = Column(String, nullable=False, default="Standard")
    confirmation_count = Column(Integer, nullable=False, default=1)
    alert_id = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class HistoryModel(Base):
    __tablename__ = "oko_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    position_id = Column(Integer, nullable=True)
    details = Column(Text, nullable=False)  # JSON string
    created_at = Column(DateTime, nullable=False)


class OpeningLockModel(Base):
    __tablename__ = "oko_opening_locks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    status = Column(String, nullable=False)
    position_id = Column(Integer, nullable=True)
    # "<symbol>:<side>" while opening, NULL once settled
    lock_key = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)


class SymbolBanModel(Base):
    __tablename__ = "oko_symbol_bans"

    symbol = Column(String, primary_key=True)
    banned_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    reason = Column(String, nullable=False)


class GuardActionModel(Base):
    __tablename__ = "oko_guard_actions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    position_id = Column(Integer, nullable=True)
    symbol = Column(String, nullable=False)
    action = Column(String, nullable=False)
    reason = Column(Text, nullable=False)
    confirmations = Column(Integer, nullable=False)
    pnl_at_action = Column(Numeric(precision=20, scale=8), nullable=True)
    price_at_action = Column(Numeric(precision=20, scale=8), nullable=True)
    success = Column(Boolean, nullable=False)
    details = Column(Text, nullable=False)  # JSON string
    settings_snapshot = Column(Text, nullable=False)  # JSON string
    created_at = Column(DateTime, nullable=False)


class ConflictLogModel(Base):
    __tablename__ = "oko_conflict_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_id = Column(Integer, nullable=False)
    existing_position_id = Column(Integer, nullable=True)
    symbol = Column(String, nullable=False)
    new_side = Column(String, nullable=False)
    existing_side = Column(String, nullable=True)
    new_tier = Column(String, nullable=False)
    existing_tier = Column(String, nullable=True)
    conflict_type = Column(String, nullable=False)
    resolution = Column(String, nullable=False)
    reason = Column(Text, nullable=False)
    resolved_at = Column(DateTime, nullable=False)


def _to_position(pm: PositionModel) -> Position:
    return Position(
        id=pm.id,
        symbol=pm.symbol,
        side=Side.parse(pm.side),
        entry_price=_dec(pm.entry_price),
        quantity=_dec(pm.quantity),
        initial_quantity=_dec(pm.initial_quantity),
        leverage=pm.leverage,
        stop_loss=_dec(pm.stop_loss),
        current_stop_loss=_dec(pm.current_stop_loss),
        tp1_price=_dec(pm.tp1_price),
        tp2_price=_dec(pm.tp2_price),
        tp3_price=_dec(pm.tp3_price),
        tp1_hit=bool(pm.tp1_hit),
        tp2_hit=bool(pm.tp2_hit),
        tp3_hit=bool(pm.tp3_hit),
        initial_margin=_dec(pm.initial_margin) or Decimal("0"),
        unrealized_pnl=_dec(pm.unrealized_pnl) or Decimal("0"),
        mark_price=_dec(pm.mark_price),
        opened_at=_aware(pm.opened_at),
        status=PositionStatus(pm.status),
        close_reason=pm.close_reason,
        closed_at=_aware(pm.closed_at),
        tier=pm.tier,
        confirmation_count=pm.confirmation_count,
        alert_id=pm.alert_id,
    )


def _apply_position(pm: PositionModel, position: Position) -> None:
    pm.symbol = position.symbol
    pm.side = position.side.value
    pm.entry_price = position.entry_price
    pm.quantity = position.quantity
    pm.initial_quantity = position.initial_quantity
    pm.leverage = position.leverage
    pm.stop_loss = position.stop_loss
    pm.current_stop_loss = position.current_stop_loss
    pm.tp1_price = position.tp1_price
    pm.tp2_price = position.tp2_price
    pm.tp3_price = position.tp3_price
    pm.tp1_hit = position.tp1_hit
    pm.tp2_hit = position.tp2_hit
    pm.tp3_hit = position.tp3_hit
    pm.initial_margin = position.initial_margin
    pm.unrealized_pnl = position.unrealized_pnl
    pm.mark_price = position.mark_price
    pm.opened_at = _naive(position.opened_at)
    pm.status = position.status.value
    pm.close_reason = position.close_reason
    pm.closed_at = _naive(position.closed_at)
    pm.tier = position.tier
    pm.confirmation_count = position.confirmation_count
    pm.alert_id = position.alert_id
    pm.updated_at = datetime.utcnow()


def _ledger_errors(fn):
    """Surface database failures as LedgerError."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except SQLAlchemyError as e:
            raise LedgerError(f"{fn.__name__} failed: {e}") from e
    return wrapper


class SqlLedger:
    """Ledger over a SQLAlchemy Database."""

    def __init__(self, db: Database, clock=utc_now):
        self.db = db
        self._clock = clock

    # ---------- settings ----------

    @_ledger_errors
    def load_settings(self) -> Dict[str, Any]:
        with self.db.get_session() as session:
            return {row.key: json.loads(row.value) for row in session.query(SettingModel).all()}

    @_ledger_errors
    def update_settings(self, values: Dict[str, Any]) -> None:
        with self.db.get_session() as session:
            for key, value in values.items():
                session.merge(SettingModel(key=key, value=json.dumps(value, default=str)))

    # ---------- positions ----------

    @_ledger_errors
    def load_open_positions(self) -> List[Position]:
        with self.db.get_session() as session:
            rows = (
                session.query(PositionModel)
                .filter(PositionModel.status == PositionStatus.OPEN.value)
                .order_by(PositionModel.id)
                .all()
            )
            return [_to_position(pm) for pm in rows]

    @_ledger_errors
    def get_open_position(self, symbol: str) -> Optional[Position]:
        with self.db.get_session() as session:
            pm = (
                session.query(PositionModel)
                .filter(PositionModel.symbol == symbol, PositionModel.status == PositionStatus.OPEN.value)
                .order_by(PositionModel.id)
                .first()
            )
            return _to_position(pm) if pm else None

    @_ledger_errors
    def get_position(self, position_id: int) -> Optional[Position]:
        with self.db.get_session() as session:
            pm = session.get(PositionModel, position_id)
            return _to_position(pm) if pm else None

    @_ledger_errors
    def upsert_position(self, position: Position) -> Position:
        with self.db.get_session() as session:
            pm = session.get(PositionModel, position.id) if position.id is not None else None
            if pm is None:
                pm = PositionModel()
                _apply_position(pm, position)
                session.add(pm)
                session.flush()
                position.id = pm.id
            else:
                _apply_position(pm, position)
        return position

    @_ledger_errors
    def append_history(self, record: HistoryRecord) -> None:
        with self.db.get_session() as session:
            session.add(HistoryModel(
                event=record.event,
                symbol=record.symbol,
                position_id=record.position_id,
                details=_json(record.details),
                created_at=_naive(record.created_at),
            ))

    @_ledger_errors
    def load_history(self, position_id: Optional[int] = None) -> List[HistoryRecord]:
        with self.db.get_session() as session:
            query = session.query(HistoryModel).order_by(HistoryModel.id)
            if position_id is not None:
                query = query.filter(HistoryModel.position_id == position_id)
            return [
                HistoryRecord(
                    event=row.event,
                    symbol=row.symbol,
                    position_id=row.position_id,
                    details=json.loads(row.details),
                    created_at=_aware(row.created_at),
                )
                for row in query.all()
            ]

    # ---------- opening locks ----------

    def acquire_opening_lock(self, symbol: str, side: Side) -> Optional[int]:
        """Single constrained insert. Returns the lock id, or None when the pair is busy."""
        try:
            with self.db.get_session() as session:
                row = OpeningLockModel(
                    symbol=symbol,
                    side=Side.parse(side).value,
                    status=LockStatus.OPENING.value,
                    lock_key=_lock_key(symbol, side),
                    created_at=_naive(self._clock()),
                )
                session.add(row)
                session.flush()
                return row.id
        except IntegrityError:
            return None
        except SQLAlchemyError as e:
            raise LedgerError(f"acquire_opening_lock failed: {e}") from e

    @_ledger_errors
    def is_symbol_opening(self, symbol: str, side: Side) -> bool:
        with self.db.get_session() as session:
            return (
                session.query(OpeningLockModel.id)
                .filter(OpeningLockModel.lock_key == _lock_key(symbol, side))
                .first()
                is not None
            )

    @_ledger_errors
    def release_opening_lock(self, lock_id: int, outcome: LockStatus, position_id: Optional[int] = None) -> None:
        with self.db.get_session() as session:
            row = session.get(OpeningLockModel, lock_id)
            if row is None:
                return
            row.status = LockStatus(outcome).value
            row.position_id = position_id
            row.lock_key = None
            row.completed_at = _naive(self._clock())

    @_ledger_errors
    def cleanup_locks(self, older_than_minutes: float) -> int:
        """Expire opening locks left behind by a crash and delete settled ones."""
        cutoff = _naive(self._clock() - timedelta(minutes=older_than_minutes))
        with self.db.get_session() as session:
            stale = session.query(OpeningLockModel).filter(OpeningLockModel.created_at < cutoff).all()
            for row in stale:
                if row.status == LockStatus.OPENING.value:
                    row.status = LockStatus.CLOSED.value
                    row.lock_key = None
                    row.completed_at = _naive(self._clock())
                else:
                    session.delete(row)
            return len(stale)

    # ---------- bans ----------

    @_ledger_errors
    def load_active_bans(self) -> List[SymbolBan]:
        now = _naive(self._clock())
        with self.db.get_session() as session:
            rows = session.query(SymbolBanModel).filter(SymbolBanModel.expires_at > now).all()
            return [
                SymbolBan(row.symbol, _aware(row.banned_at), _aware(row.expires_at), row.reason)
                for row in rows
            ]

    @_ledger_errors
    def ban_symbol(self, symbol: str, reason: str, duration_hours: float) -> SymbolBan:
        now = self._clock()
        ban = SymbolBan(symbol, now, now + timedelta(hours=duration_hours), reason)
        with self.db.get_session() as session:
            session.merge(SymbolBanModel(
                symbol=symbol,
                banned_at=_naive(ban.banned_at),
                expires_at=_naive(ban.expires_at),
                reason=reason,
            ))
        return ban

    # ---------- audit logs ----------

    @_ledger_errors
    def append_guard_action_log(self, entry: GuardActionLogEntry) -> None:
        with self.db.get_session() as session:
            session.add(GuardActionModel(
                position_id=entry.position_id,
                symbol=entry.symbol,
                action=entry.action,
                reason=entry.reason,
                confirmations=entry.confirmations,
                pnl_at_action=entry.pnl_at_action,
                price_at_action=entry.price_at_action,
                success=entry.success,
                details=_json(entry.details),
                settings_snapshot=_json(entry.settings_snapshot),
                created_at=_naive(entry.created_at),
            ))

    @_ledger_errors
    def append_conflict_log(self, entry: ConflictLogEntry) -> None:
        with self.db.get_session() as session:
            session.add(ConflictLogModel(
                alert_id=entry.alert_id,
                existing_position_id=entry.existing_position_id,
                symbol=entry.symbol,
                new_side=entry.new_side.value,
                existing_side=entry.existing_side.value if entry.existing_side else None,
                new_tier=entry.new_tier,
                existing_tier=entry.existing_tier,
                conflict_type=entry.conflict_type.value,
                resolution=entry.resolution.value,
                reason=entry.reason,
                resolved_at=_naive(entry.resolved_at),
            ))

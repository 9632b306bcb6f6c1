"""
In-memory ledger.

Thread-safe implementation of the Ledger protocol for dry-run mode and tests.
Positions are stored and returned as copies so callers only change stored
state through upsert_position, the same as with the SQL ledger.
"""
import copy
import itertools
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from oko.domain.models import (
    ConflictLogEntry,
    GuardActionLogEntry,
    HistoryRecord,
    LockStatus,
    OpeningLock,
    Position,
    PositionStatus,
    Side,
    SymbolBan,
    utc_now,
)
from oko.exceptions import LedgerError


class InMemoryLedger:
    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._lock_ids = itertools.count(1)
        self.settings: Dict[str, Any] = {}
        self.positions: Dict[int, Position] = {}
        self.history: List[HistoryRecord] = []
        self.guard_actions: List[GuardActionLogEntry] = []
        self.conflicts: List[ConflictLogEntry] = []
        self.locks: Dict[int, OpeningLock] = {}
        self.bans: Dict[str, SymbolBan] = {}
        self.fail_writes = False

    def _check_writable(self) -> None:
        if self.fail_writes:
            raise LedgerError("ledger unavailable")

    # ---------- settings ----------

    def load_settings(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self.settings)

    def update_settings(self, values: Dict[str, Any]) -> None:
        self._check_writable()
        with self._lock:
            self.settings.update(values)

    # ---------- positions ----------

    def load_open_positions(self) -> List[Position]:
        with self._lock:
            return [copy.deepcopy(p) for _, p in sorted(self.positions.items()) if p.status == PositionStatus.OPEN]

    def get_open_position(self, symbol: str) -> Optional[Position]:
        with self._lock:
            for _, p in sorted(self.positions.items()):
                if p.symbol == symbol and p.status == PositionStatus.OPEN:
                    return copy.deepcopy(p)
        return None

    def get_position(self, position_id: int) -> Optional[Position]:
        with self._lock:
            stored = self.positions.get(position_id)
            return copy.deepcopy(stored) if stored else None

    def upsert_position(self, position: Position) -> Position:
        self._check_writable()
        with self._lock:
            if position.id is None:
                position.id = next(self._ids)
            self.positions[position.id] = copy.deepcopy(position)
        return position

    def append_history(self, record: HistoryRecord) -> None:
        self._check_writable()
        with self._lock:
            self.history.append(record)

    # ---------- opening locks ----------

    def acquire_opening_lock(self, symbol: str, side: Side) -> Optional[int]:
        self._check_writable()
        with self._lock:
            for lock in self.locks.values():
                if lock.symbol == symbol and lock.side == side and lock.status == LockStatus.OPENING:
                    return None
            lock_id = next(self._lock_ids)
            self.locks[lock_id] = OpeningLock(lock_id, symbol, side, LockStatus.OPENING, created_at=self._clock())
            return lock_id

    def is_symbol_opening(self, symbol: str, side: Side) -> bool:
        with self._lock:
            return any(
                lock.symbol == symbol and lock.side == side and lock.status == LockStatus.OPENING
                for lock in self.locks.values()
            )

    def release_opening_lock(self, lock_id: int, outcome: LockStatus, position_id: Optional[int] = None) -> None:
        with self._lock:
            lock = self.locks.get(lock_id)
            if lock is None:
                return
            lock.status = outcome
            lock.position_id = position_id
            lock.completed_at = self._clock()

    def cleanup_locks(self, older_than_minutes: float) -> int:
        cutoff = self._clock() - timedelta(minutes=older_than_minutes)
        affected = 0
        with self._lock:
            for lock_id, lock in list(self.locks.items()):
                if lock.created_at >= cutoff:
                    continue
                if lock.status == LockStatus.OPENING:
                    lock.status = LockStatus.CLOSED
                    lock.completed_at = self._clock()
                else:
                    del self.locks[lock_id]
                affected += 1
        return affected

    # ---------- bans ----------

    def load_active_bans(self) -> List[SymbolBan]:
        now = self._clock()
        with self._lock:
            return [b for b in self.bans.values() if b.is_active(now)]

    def ban_symbol(self, symbol: str, reason: str, duration_hours: float) -> SymbolBan:
        self._check_writable()
        now = self._clock()
        ban = SymbolBan(symbol, now, now + timedelta(hours=duration_hours), reason)
        with self._lock:
            self.bans[symbol] = ban
        return ban

    # ---------- audit logs ----------

    def append_guard_action_log(self, entry: GuardActionLogEntry) -> None:
        self._check_writable()
        with self._lock:
            self.guard_actions.append(entry)

    def append_conflict_log(self, entry: ConflictLogEntry) -> None:
        self._check_writable()
        with self._lock:
            self.conflicts.append(entry)

"""
Domain protocols (interfaces) for dependency inversion.

The guard engine, ladder and conflict resolver depend on the Ledger contract
rather than a concrete store, so the same code runs over the in-memory ledger
(dry-run, tests) and the SQLAlchemy ledger (production).
"""
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from oko.domain.models import (
    ConflictLogEntry,
    GuardActionLogEntry,
    HistoryRecord,
    LockStatus,
    Position,
    Side,
    SymbolBan,
)


@runtime_checkable
class Ledger(Protocol):
    """
    Durable record of locally believed state.

    acquire_opening_lock must be atomic insert-if-absent: two concurrent
    callers for the same (symbol, side) can never both receive a lock id.
    """

    def load_settings(self) -> Dict[str, Any]: ...

    def update_settings(self, values: Dict[str, Any]) -> None: ...

    def load_open_positions(self) -> List[Position]: ...

    def get_open_position(self, symbol: str) -> Optional[Position]: ...

    def get_position(self, position_id: int) -> Optional[Position]: ...

    def upsert_position(self, position: Position) -> Position: ...

    def append_history(self, record: HistoryRecord) -> None: ...

    def acquire_opening_lock(self, symbol: str, side: Side) -> Optional[int]: ...

    def is_symbol_opening(self, symbol: str, side: Side) -> bool: ...

    def release_opening_lock(
        self, lock_id: int, outcome: LockStatus, position_id: Optional[int] = None
    ) -> None: ...

    def cleanup_locks(self, older_than_minutes: float) -> int: ...

    def load_active_bans(self) -> List[SymbolBan]: ...

    def ban_symbol(self, symbol: str, reason: str, duration_hours: float) -> SymbolBan: ...

    def append_guard_action_log(self, entry: GuardActionLogEntry) -> None: ...

    def append_conflict_log(self, entry: ConflictLogEntry) -> None: ...

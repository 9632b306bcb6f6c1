"""
Position monitor: one reconciliation cycle across every open position.

    effective config -> ban refresh -> exchange snapshot -> ledger snapshot
    -> account drawdown -> per position: guard, then TP ladder if still open
    -> confirmation sweep -> stale lock cleanup -> MONITOR_CYCLE_SUMMARY

Cycles never overlap; a cycle requested while one is running is skipped.
Each position is re-read under its symbol lock before it is acted on, so a
signal handled between the snapshot and the guard pass is never overwritten.
"""
import asyncio
import time
import uuid
from collections import defaultdict
from contextlib import AsyncExitStack
from dataclasses import asdict, dataclass, field
from typing import DefaultDict, Dict, List, Optional, Sequence

from oko.config.config import ExecutionConfig, GuardConfig
from oko.constants import ACCOUNT_ENTITY_ID
from oko.domain.models import Position, Side
from oko.domain.protocols import Ledger
from oko.exceptions import LedgerError, TradingSystemError
from oko.exchange.base import ExchangeAdapter, RemotePosition
from oko.execution.tp_ladder import TakeProfitLadder
from oko.guard.engine import GuardEngine
from oko.guard.results import GuardAction, GuardCheckResult
from oko.monitoring.logger import bind_cycle_context, clear_cycle_context, get_logger

logger = get_logger(__name__)


@dataclass
class CycleSummary:
    """
    Result of one monitor cycle: {checked, repaired, closed, errors[]} plus
    ladder and ghost counts.

    errors holds one human-readable string per failure (snapshot, ledger,
    per-position guard or ladder). messages holds non-error notes such as the
    account drawdown reason.
    """
    checked: int = 0
    repaired: int = 0
    closed: int = 0
    errors: List[str] = field(default_factory=list)
    tp_hits: int = 0
    ghosts: int = 0
    skipped: bool = False
    messages: List[str] = field(default_factory=list)

    def as_log_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data.pop("messages")
        data["error_count"] = len(self.errors)
        return data


def match_remote(position: Position, remotes: Sequence[RemotePosition]) -> Optional[RemotePosition]:
    """Same symbol and side first; otherwise any open remote on the symbol (a side mismatch)."""
    fallback = None
    for remote in remotes:
        if remote.symbol != position.symbol or not remote.is_open:
            continue
        if remote.side == position.side:
            return remote
        fallback = fallback or remote
    return fallback


class PositionMonitor:
    """Drives the guard engine and the TP ladder once per cycle."""

    def __init__(
        self,
        exchange: ExchangeAdapter,
        ledger: Ledger,
        engine: GuardEngine,
        ladder: TakeProfitLadder,
        execution: ExecutionConfig,
        symbol_locks: Optional[DefaultDict[str, asyncio.Lock]] = None,
    ):
        self.exchange = exchange
        self.ledger = ledger
        self.engine = engine
        self.ladder = ladder
        self.execution = execution
        # Shared with the position opener: one writer per symbol at a time
        self.symbol_locks = symbol_locks if symbol_locks is not None else defaultdict(asyncio.Lock)
        self._cycle_lock = asyncio.Lock()
        self.cycles_run = 0

    async def run_monitor_cycle(self) -> CycleSummary:
        if self._cycle_lock.locked():
            logger.warning("MONITOR_CYCLE_SKIPPED", reason="previous cycle still running")
            return CycleSummary(skipped=True)

        async with self._cycle_lock:
            self.cycles_run += 1
            bind_cycle_context(uuid.uuid4().hex[:12], cycle=self.cycles_run)
            started = time.monotonic()
            summary = CycleSummary()
            try:
                await self._cycle(summary)
            finally:
                logger.info(
                    "MONITOR_CYCLE_SUMMARY",
                    duration_ms=int((time.monotonic() - started) * 1000),
                    **summary.as_log_dict(),
                )
                clear_cycle_context()
            return summary

    async def _cycle(self, summary: CycleSummary) -> None:
        cfg = self.engine.effective_config()
        self.engine.bans.refresh()

        remote_result = await self.exchange.get_positions()
        if not remote_result.ok:
            # Without an exchange snapshot every local row would look like a ghost
            summary.errors.append(f"exchange snapshot failed: {remote_result.error.message}")
            logger.error(
                "MONITOR_SNAPSHOT_FAILED",
                error_type=remote_result.error.type.value,
                error=remote_result.error.message,
            )
            return
        remotes = remote_result.value

        try:
            positions = self.ledger.load_open_positions()
        except LedgerError as e:
            summary.errors.append(f"ledger read failed: {e}")
            logger.error("LEDGER_READ_FAILED", what="open_positions", error=str(e))
            return

        for position in positions:
            self.engine.refresh_from_remote(position, match_remote(position, remotes))

        self._log_untracked(positions, remotes)

        if cfg.enabled and positions:
            account = self.engine.evaluate_account(positions, cfg)
            if account is not None:
                await self._close_account(positions, remotes, account, cfg, summary)
                self._end_of_cycle(cfg)
                return
        elif not cfg.enabled:
            logger.info("GUARD_DISABLED", positions=len(positions))

        for position in positions:
            summary.checked += 1
            try:
                async with self.symbol_locks[position.symbol]:
                    current = self._reload(position, remotes)
                    if current is not None:
                        await self._process(current, match_remote(current, remotes), positions, cfg, summary)
            except TradingSystemError as e:
                summary.errors.append(f"{position.symbol}: {e}")
                logger.error(
                    "MONITOR_POSITION_FAILED",
                    symbol=position.symbol,
                    position_id=position.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        self._end_of_cycle(cfg)

    async def _process(
        self,
        position: Position,
        remote: Optional[RemotePosition],
        open_positions: Sequence[Position],
        cfg: GuardConfig,
        summary: CycleSummary,
    ) -> None:
        if cfg.enabled:
            outcome = await self.engine.guard_position(position, remote, open_positions, cfg)
            if outcome is not None:
                if outcome.action == GuardAction.GHOST_POSITION_CLEANUP:
                    summary.ghosts += 1
                if outcome.closed:
                    summary.closed += 1
                if outcome.repaired:
                    summary.repaired += 1
                if not outcome.success:
                    summary.errors.append(f"{position.symbol}: {outcome.message}")

        if not position.is_open or remote is None or remote.side != position.side:
            return

        result = await self.ladder.advance(position, position.mark_price, cfg)
        if result is None:
            return
        if result.success or result.closed:
            summary.tp_hits += 1
        if result.closed:
            summary.closed += 1
        if not result.success:
            summary.errors.append(f"{position.symbol} tp{result.level}: {result.message}")

    async def _close_account(
        self,
        positions: Sequence[Position],
        remotes: Sequence[RemotePosition],
        account: GuardCheckResult,
        cfg: GuardConfig,
        summary: CycleSummary,
    ) -> None:
        summary.checked = len(positions)
        summary.messages.append(account.reason)
        try:
            async with AsyncExitStack() as stack:
                # Sorted acquisition; the opener only ever holds one symbol
                for symbol in sorted({p.symbol for p in positions}):
                    await stack.enter_async_context(self.symbol_locks[symbol])
                current = [p for p in (self._reload(p, remotes) for p in positions) if p is not None]
                outcomes = await self.engine.close_all(current, account, cfg)
        except LedgerError as e:
            summary.errors.append(f"account close aborted: {e}")
            logger.error("LEDGER_READ_FAILED", what="account_close", error=str(e))
            return
        summary.closed += sum(1 for o in outcomes if o.closed)
        summary.errors.extend(f"{o.symbol}: {o.message}" for o in outcomes if not o.success)

    def _reload(self, position: Position, remotes: Sequence[RemotePosition]) -> Optional[Position]:
        """Latest stored copy of a snapshot row, or None once it is no longer open."""
        current = self.ledger.get_position(position.id)
        if current is None or not current.is_open:
            logger.info("MONITOR_POSITION_CHANGED", symbol=position.symbol, position_id=position.id)
            return None
        self.engine.refresh_from_remote(current, match_remote(current, remotes))
        return current

    def _log_untracked(self, positions: Sequence[Position], remotes: Sequence[RemotePosition]) -> None:
        tracked = {(p.symbol, p.side) for p in positions}
        for remote in remotes:
            if remote.is_open and (remote.symbol, remote.side) not in tracked:
                logger.warning(
                    "UNTRACKED_EXCHANGE_POSITION",
                    symbol=remote.symbol,
                    side=Side(remote.side).value,
                    size=str(remote.size),
                )

    def _end_of_cycle(self, cfg: GuardConfig) -> None:
        swept = self.engine.tracker.sweep(cfg.confirmation_sweep_seconds)
        if swept:
            logger.debug("CONFIRMATIONS_SWEPT", count=swept)
        try:
            cleaned = self.ledger.cleanup_locks(self.execution.stale_lock_minutes)
        except LedgerError as e:
            logger.error("LOCK_CLEANUP_FAILED", error=str(e))
            return
        if cleaned:
            logger.info("STALE_LOCKS_CLEANED", count=cleaned)

    def status(self) -> Dict[str, object]:
        return {
            "cycles_run": self.cycles_run,
            "cycle_running": self._cycle_lock.locked(),
            "account_confirmations": {
                action: count
                for (entity, action), count in self.engine.tracker.snapshot().items()
                if entity == ACCOUNT_ENTITY_ID
            },
        }

"""
Service wiring and the monitor loop.

OkoService builds every component from one Config and is the single object
the CLI (and an embedding application) talks to.
"""
import asyncio
import signal
from collections import defaultdict
from pathlib import Path
from typing import Any, Awaitable, Callable, DefaultDict, Dict, Optional

from oko.config.config import Config, ConflictConfig, load_config
from oko.config.dotenv_loader import load_dotenv_files
from oko.conflict.resolver import ConflictResolver
from oko.domain.models import Alert, ConflictAnalysis
from oko.domain.protocols import Ledger
from oko.exchange.base import ExchangeAdapter
from oko.exchange.bybit_client import BybitClient
from oko.exchange.rate_limiter import RateLimiter
from oko.execution.position_opener import OpenResult, PositionOpener
from oko.execution.protection_ops import ProtectionOps
from oko.execution.tp_ladder import TakeProfitLadder
from oko.guard.engine import GuardEngine
from oko.live.monitor import CycleSummary, PositionMonitor
from oko.monitoring.logger import get_logger, setup_logging
from oko.paper.paper_exchange import PaperExchange
from oko.risk.confirmation_tracker import ConfirmationTracker
from oko.risk.repair_limiter import RepairAttemptLimiter
from oko.risk.symbol_bans import SymbolBanBook
from oko.storage.memory import InMemoryLedger

logger = get_logger(__name__)


def build_exchange(config: Config) -> ExchangeAdapter:
    if config.exchange.name == "paper":
        return PaperExchange()

    ex = config.exchange
    return BybitClient(
        ex.api_key or "",
        ex.api_secret or "",
        use_testnet=ex.use_testnet,
        recv_window_ms=ex.recv_window_ms,
        timeout_seconds=ex.request_timeout_seconds,
        max_attempts=ex.max_retries,
        base_backoff_seconds=ex.base_backoff_seconds,
        max_backoff_seconds=ex.max_backoff_seconds,
        rate_limiter=RateLimiter(ex.rate_limit_max_concurrent, ex.rate_limit_min_interval_ms),
        instrument_cache_seconds=ex.instrument_cache_minutes * 60,
    )


def build_ledger(config: Config) -> Ledger:
    url = config.storage.database_url
    if not url:
        return InMemoryLedger()

    from oko.storage.db import Database
    from oko.storage.repository import SqlLedger

    db = Database(url)
    db.create_all()
    return SqlLedger(db)


class OkoService:
    """All guard components wired from one Config, sharing one limiter, tracker and ban book."""

    def __init__(
        self,
        config: Config,
        *,
        exchange: Optional[ExchangeAdapter] = None,
        ledger: Optional[Ledger] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.exchange = exchange or build_exchange(config)
        self.ledger = ledger or build_ledger(config)

        self.tracker = ConfirmationTracker(window_seconds=config.guard.confirmation_window_seconds)
        self.limiter = RepairAttemptLimiter()
        self.bans = SymbolBanBook(self.ledger)
        self.protection = ProtectionOps(self.exchange, self.ledger, self.limiter, sleep=sleep)
        self.engine = GuardEngine(
            self.exchange,
            self.ledger,
            config.guard,
            tracker=self.tracker,
            limiter=self.limiter,
            bans=self.bans,
            protection=self.protection,
            sleep=sleep,
        )
        self.ladder = TakeProfitLadder(self.exchange, self.ledger, self.protection, self.bans, config.ladder)
        self.resolver = ConflictResolver(self.ledger, config.conflict)
        self.symbol_locks: DefaultDict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.opener = PositionOpener(
            self.exchange,
            self.ledger,
            self.resolver,
            self.protection,
            self.bans,
            config.execution,
            config.guard,
            symbol_locks=self.symbol_locks,
        )
        self.monitor = PositionMonitor(
            self.exchange, self.ledger, self.engine, self.ladder, config.execution, symbol_locks=self.symbol_locks
        )

    async def run_monitor_cycle(self) -> CycleSummary:
        return await self.monitor.run_monitor_cycle()

    def resolve_conflict(self, alert: Alert, policy: Optional[ConflictConfig] = None) -> ConflictAnalysis:
        return self.resolver.resolve(alert, policy)

    async def accept_signal(self, alert: Alert, policy: Optional[ConflictConfig] = None) -> OpenResult:
        return await self.opener.accept_signal(alert, policy)

    def reset_capitulation(self) -> None:
        self.engine.capitulation.reset()

    def status(self) -> Dict[str, Any]:
        return {
            "environment": self.config.environment,
            "dry_run": self.config.system.dry_run,
            "exchange": self.config.exchange.name,
            "monitor": self.monitor.status(),
            **self.engine.snapshot(),
        }

    async def close(self) -> None:
        await self.exchange.close()

    async def run_forever(
        self,
        interval_seconds: Optional[float] = None,
        max_cycles: int = 0,
        stop_event: Optional[asyncio.Event] = None,
    ) -> int:
        """
        Run cycles until stopped. max_cycles > 0 bounds the run (smoke mode). Returns cycles run.

        Cycles start on a fixed cadence (every `interval` seconds from the first
        start), so a slow cycle does not push later detections out of the
        confirmation window. A cycle that overruns its slot starts the next one
        immediately.
        """
        interval = interval_seconds if interval_seconds is not None else self.config.monitoring.monitor_interval_seconds
        stop_event = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        next_start = loop.time()
        cycles = 0

        logger.info(
            "MONITOR_LOOP_STARTED",
            interval_seconds=interval,
            max_cycles=max_cycles,
            dry_run=self.config.system.dry_run,
            exchange=self.config.exchange.name,
        )
        while not stop_event.is_set():
            if max_cycles > 0 and cycles >= max_cycles:
                logger.info("Smoke mode: max cycles reached", max_cycles=max_cycles)
                break
            cycles += 1
            await self.run_monitor_cycle()

            next_start += interval
            delay = next_start - loop.time()
            if delay < 0:
                if interval > 0:
                    logger.warning("MONITOR_CYCLE_OVERRAN", overrun_seconds=round(-delay, 3), interval_seconds=interval)
                next_start = loop.time()
                delay = 0
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        logger.info("MONITOR_LOOP_STOPPED", cycles=cycles)
        return cycles


async def run_service(config: Config, max_cycles: int = 0) -> int:
    service = OkoService(config)
    stop_event = asyncio.Event()

    def _on_signal() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal)

    try:
        return await service.run_forever(max_cycles=max_cycles, stop_event=stop_event)
    finally:
        await service.close()


def main(config_path: Optional[Path] = None, max_cycles: int = 0) -> int:
    load_dotenv_files()
    config = load_config(config_path)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    logger.info(
        "Oko starting",
        environment=config.environment,
        dry_run=config.system.dry_run,
        exchange=config.exchange.name,
        ledger="sql" if config.storage.database_url else "memory",
    )
    return asyncio.run(run_service(config, max_cycles=max_cycles))

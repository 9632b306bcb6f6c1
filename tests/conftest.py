"""
Pytest configuration and shared fixtures.

Everything runs against the paper exchange and the in-memory ledger; time is
driven by fake clocks so confirmation windows and cooldowns are deterministic.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from oko.config.config import GuardConfig, LadderConfig
from oko.domain.models import Position, Side
from oko.execution.protection_ops import ProtectionOps
from oko.guard.engine import GuardEngine
from oko.paper.paper_exchange import PaperExchange
from oko.risk.confirmation_tracker import ConfirmationTracker
from oko.risk.repair_limiter import RepairAttemptLimiter
from oko.risk.symbol_bans import SymbolBanBook
from oko.storage.memory import InMemoryLedger


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUtcClock:
    """Wall clock (UTC datetimes) that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def utc_clock():
    return FakeUtcClock()


@pytest.fixture
def ledger(utc_clock):
    return InMemoryLedger(clock=utc_clock)


@pytest.fixture
def paper():
    return PaperExchange()


@pytest.fixture
def guard_config():
    return GuardConfig(close_verify_delay_seconds=0)


@pytest.fixture
def ladder_config():
    return LadderConfig()


@pytest.fixture
def make_position(utc_clock):
    """
    Position factory. Defaults: BTCUSDT long, entry 50000, qty 0.1, 20x
    (margin 250), stop 49000, tp1 52000, opened one hour before the fake clock.
    """
    def _make(**overrides) -> Position:
        fields = dict(
            symbol="BTCUSDT",
            side=Side.LONG,
            entry_price=Decimal("50000"),
            quantity=Decimal("0.1"),
            leverage=20,
            stop_loss=Decimal("49000"),
            tp1_price=Decimal("52000"),
            initial_margin=Decimal("250"),
            opened_at=utc_clock() - timedelta(hours=1),
        )
        fields.update(overrides)
        return Position(**fields)
    return _make


@pytest.fixture
def open_position(ledger, paper):
    """Persist a position locally and mirror it (protected) on the paper exchange."""
    def _open(position: Position, *, protected: bool = True, mark_price=None) -> Position:
        ledger.upsert_position(position)
        paper.seed_position(
            position.symbol,
            position.side,
            position.quantity,
            position.entry_price,
            leverage=Decimal(position.leverage),
            stop_loss=position.stop_loss if protected else None,
            take_profit=position.first_take_profit() if protected else None,
            mark_price=mark_price,
        )
        return position
    return _open


@pytest.fixture
def tracker(clock):
    return ConfirmationTracker(window_seconds=30, clock=clock)


@pytest.fixture
def limiter(clock):
    return RepairAttemptLimiter(clock=clock)


@pytest.fixture
def bans(ledger, utc_clock):
    return SymbolBanBook(ledger, clock=utc_clock)


@pytest.fixture
def protection(paper, ledger, limiter):
    return ProtectionOps(paper, ledger, limiter, sleep=no_sleep)


@pytest.fixture
def engine(paper, ledger, guard_config, tracker, limiter, bans, protection, utc_clock):
    return GuardEngine(
        paper,
        ledger,
        guard_config,
        tracker=tracker,
        limiter=limiter,
        bans=bans,
        protection=protection,
        clock=utc_clock,
        sleep=no_sleep,
    )

"""
Tests for signal conflict resolution.
"""
from decimal import Decimal

import pytest

from oko.config.config import ConflictConfig
from oko.conflict.resolver import ConflictResolver, determine_conflict_type
from oko.domain.models import Alert, ConflictType, Resolution, Side


def make_alert(side=Side.LONG, tier="Standard", strength=0.8, **fields):
    return Alert(id=fields.pop("id", 101), symbol=fields.pop("symbol", "BTCUSDT"), side=side, tier=tier,
                 strength=strength, **fields)


@pytest.fixture
def resolver(ledger):
    return ConflictResolver(ledger, ConflictConfig())


@pytest.fixture
def existing(ledger, make_position):
    return ledger.upsert_position(make_position(tier="Standard"))


class TestClassification:

    @pytest.mark.parametrize("side,tier,expected", [
        (Side.SHORT, "Standard", ConflictType.REVERSE),
        (Side.LONG, "Premium", ConflictType.UPGRADE),
        (Side.LONG, "Standard", ConflictType.SAME_DIRECTION),
        (Side.LONG, "Quick", ConflictType.SAME_DIRECTION),
    ])
    def test_conflict_type(self, make_position, side, tier, expected):
        assert determine_conflict_type(make_alert(side=side, tier=tier), make_position()) == expected

    def test_no_position_is_none(self):
        assert determine_conflict_type(make_alert(), None) == ConflictType.NONE


class TestResolve:

    def test_no_existing_position_proceeds(self, resolver, ledger):
        analysis = resolver.resolve(make_alert())

        assert analysis.should_proceed is True
        assert analysis.has_conflict is False
        assert analysis.resolution == Resolution.IGNORE
        assert ledger.conflicts[-1].conflict_type == ConflictType.NONE

    def test_opening_in_flight_rejects(self, resolver, ledger):
        ledger.acquire_opening_lock("BTCUSDT", Side.LONG)

        analysis = resolver.resolve(make_alert())

        assert analysis.resolution == Resolution.REJECT
        assert not analysis.should_proceed
        assert "being opened" in analysis.reason

    def test_lock_on_other_side_does_not_block(self, resolver, ledger):
        ledger.acquire_opening_lock("BTCUSDT", Side.SHORT)
        assert resolver.resolve(make_alert()).should_proceed

    def test_strong_opposite_signal_reverses(self, resolver, ledger, existing):
        """Long Standard open; a 0.8 strength short signal arrives under market_reversal."""
        analysis = resolver.resolve(make_alert(side=Side.SHORT))

        assert analysis.conflict_type == ConflictType.REVERSE
        assert analysis.resolution == Resolution.CLOSE_AND_OPEN
        assert analysis.should_proceed
        assert analysis.existing_position.id == existing.id

        entry = ledger.conflicts[-1]
        assert entry.existing_position_id == existing.id
        assert entry.existing_side == Side.LONG
        assert entry.new_side == Side.SHORT
        assert entry.resolution == Resolution.CLOSE_AND_OPEN

    def test_weak_opposite_signal_rejected(self, resolver, existing):
        analysis = resolver.resolve(make_alert(side=Side.SHORT, strength=0.1))
        assert analysis.resolution == Resolution.REJECT
        assert "below minimum" in analysis.reason

    def test_reject_strategy(self, resolver, existing):
        policy = ConflictConfig(opposite_direction_strategy="reject")
        analysis = resolver.resolve(make_alert(side=Side.SHORT), policy)
        assert analysis.resolution == Resolution.REJECT

    def test_policy_argument_overrides_configured(self, ledger, existing):
        resolver = ConflictResolver(ledger, ConflictConfig(opposite_direction_strategy="reject"))
        analysis = resolver.resolve(make_alert(side=Side.SHORT), ConflictConfig())
        assert analysis.resolution == Resolution.CLOSE_AND_OPEN


class TestEmergencyReversal:

    def test_losing_position_blocks_emergency_override(self, resolver, ledger, make_position):
        ledger.upsert_position(make_position(unrealized_pnl=Decimal("-10")))
        analysis = resolver.resolve(make_alert(side=Side.SHORT, tier="Emergency"))
        assert analysis.resolution == Resolution.REJECT
        assert "requires" in analysis.reason

    def test_profitable_position_allows_emergency_override(self, resolver, ledger, make_position):
        ledger.upsert_position(make_position(unrealized_pnl=Decimal("25")))
        analysis = resolver.resolve(make_alert(side=Side.SHORT, tier="Emergency"))
        assert analysis.resolution == Resolution.CLOSE_AND_OPEN

    def test_always_mode_ignores_profit(self, resolver, ledger, make_position):
        ledger.upsert_position(make_position(unrealized_pnl=Decimal("-10")))
        policy = ConflictConfig(emergency_override_mode="always")
        assert resolver.resolve(make_alert(side=Side.SHORT, tier="Emergency"), policy).should_proceed

    def test_emergency_reversal_disabled(self, resolver, ledger, make_position):
        ledger.upsert_position(make_position(unrealized_pnl=Decimal("25")))
        policy = ConflictConfig(emergency_can_reverse=False)
        analysis = resolver.resolve(make_alert(side=Side.SHORT, tier="Emergency"), policy)
        assert analysis.resolution == Resolution.REJECT


class TestSameSymbolPolicies:

    @pytest.mark.parametrize("behavior,resolution,proceed", [
        ("track_confirmations", Resolution.UPGRADE, True),
        ("tier_based", Resolution.UPGRADE, True),
        ("ignore", Resolution.IGNORE, False),
        ("reject_duplicates", Resolution.REJECT, False),
    ])
    def test_higher_tier(self, resolver, existing, behavior, resolution, proceed):
        policy = ConflictConfig(same_symbol_behavior=behavior)
        analysis = resolver.resolve(make_alert(tier="Premium"), policy)
        assert analysis.conflict_type == ConflictType.UPGRADE
        assert analysis.resolution == resolution
        assert analysis.should_proceed is proceed

    @pytest.mark.parametrize("behavior,resolution", [
        ("track_confirmations", Resolution.UPGRADE),
        ("tier_based", Resolution.IGNORE),
        ("ignore", Resolution.IGNORE),
        ("reject_duplicates", Resolution.REJECT),
    ])
    def test_same_tier(self, resolver, existing, behavior, resolution):
        policy = ConflictConfig(same_symbol_behavior=behavior)
        analysis = resolver.resolve(make_alert(tier="Standard"), policy)
        assert analysis.conflict_type == ConflictType.SAME_DIRECTION
        assert analysis.resolution == resolution

    def test_confirmation_count_in_reason(self, resolver, existing):
        analysis = resolver.resolve(make_alert(tier="Standard"))
        assert "from 1 to 2" in analysis.reason

    def test_every_decision_logged(self, resolver, ledger, existing):
        for tier in ("Quick", "Standard", "Premium"):
            resolver.resolve(make_alert(tier=tier))
        assert len(ledger.conflicts) == 3

"""
Tests for the individual guard checks (pure functions).
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from oko.domain.models import Side
from oko.exchange.base import RemotePosition
from oko.guard import checks
from oko.guard.results import GuardAction


def remote_for(position, **overrides):
    fields = dict(
        symbol=position.symbol,
        side=position.side,
        size=position.quantity,
        entry_price=position.entry_price,
        mark_price=position.entry_price,
        stop_loss=Decimal("49000"),
        take_profit=Decimal("52000"),
    )
    fields.update(overrides)
    return RemotePosition(**fields)


class TestGhost:

    def test_matching_remote_is_clear(self, make_position):
        position = make_position()
        assert not checks.check_ghost(position, remote_for(position)).triggered

    def test_missing_remote_is_ghost(self, make_position):
        result = checks.check_ghost(make_position(), None)
        assert result.should_fix and not result.should_close
        assert result.action == GuardAction.GHOST_POSITION_CLEANUP
        assert result.required_confirmations == 1
        assert result.detail.remote_found is False

    def test_opposite_side_remote_is_ghost(self, make_position):
        position = make_position()
        result = checks.check_ghost(position, remote_for(position, side=Side.SHORT))
        assert result.triggered
        assert result.detail.remote_side == "short"


class TestProtectionBreach:

    def test_breach_beyond_tolerance_long(self, make_position):
        # 49000 * 2% = 980; 48000 is 1000 below the stop
        result = checks.check_protection_breach(make_position(), Decimal("48000"), 2.0)
        assert result.should_close
        assert result.action == GuardAction.SL_BREACH
        assert result.required_confirmations == 1

    def test_breach_within_tolerance(self, make_position):
        assert not checks.check_protection_breach(make_position(), Decimal("48500"), 2.0).triggered

    def test_price_above_stop(self, make_position):
        assert not checks.check_protection_breach(make_position(), Decimal("50500"), 2.0).triggered

    def test_short_breach(self, make_position):
        position = make_position(side=Side.SHORT, stop_loss=Decimal("51000"), tp1_price=Decimal("48000"))
        assert checks.check_protection_breach(position, Decimal("52100"), 2.0).should_close
        assert not checks.check_protection_breach(position, Decimal("51500"), 2.0).triggered

    def test_uses_tightened_stop(self, make_position):
        position = make_position(current_stop_loss=Decimal("50000"))
        assert checks.check_protection_breach(position, Decimal("48900"), 2.0).should_close

    def test_no_stop_or_price(self, make_position):
        assert not checks.check_protection_breach(make_position(stop_loss=None), Decimal("1"), 2.0).triggered
        assert not checks.check_protection_breach(make_position(), None, 2.0).triggered


class TestPnlEmergency:

    def test_loss_at_threshold_triggers(self, make_position):
        position = make_position(unrealized_pnl=Decimal("-125"))
        result = checks.check_pnl_emergency(position, 50.0, required=3)
        assert result.should_close
        assert result.required_confirmations == 3
        assert result.detail.pnl_pct == Decimal("-50")

    def test_loss_below_threshold_clear(self, make_position):
        assert not checks.check_pnl_emergency(make_position(unrealized_pnl=Decimal("-100")), 50.0).triggered

    def test_no_margin_clear(self, make_position):
        position = make_position(initial_margin=Decimal("0"), unrealized_pnl=Decimal("-1000"))
        assert not checks.check_pnl_emergency(position, 50.0).triggered


class TestCorrelatedLoss:

    def test_single_position_clear(self, make_position):
        position = make_position(unrealized_pnl=Decimal("-10"))
        assert not checks.check_correlated_loss(position, [position]).triggered

    def test_majority_losing_triggers(self, make_position):
        a = make_position(id=1, unrealized_pnl=Decimal("-10"))
        b = make_position(id=2, unrealized_pnl=Decimal("-5"))
        c = make_position(id=3, unrealized_pnl=Decimal("20"))
        result = checks.check_correlated_loss(a, [a, b, c], required=3)
        assert result.should_close
        assert result.detail.losing == 2
        assert result.detail.positions == 3

    def test_half_losing_clear(self, make_position):
        a = make_position(id=1, unrealized_pnl=Decimal("-10"))
        b = make_position(id=2, unrealized_pnl=Decimal("10"))
        assert not checks.check_correlated_loss(a, [a, b]).triggered

    def test_other_symbols_ignored(self, make_position):
        a = make_position(id=1, unrealized_pnl=Decimal("-10"))
        b = make_position(id=2, symbol="ETHUSDT", unrealized_pnl=Decimal("-10"))
        assert not checks.check_correlated_loss(a, [a, b]).triggered


class TestTimeBasedExit:

    def test_disabled(self, make_position, utc_clock):
        position = make_position(unrealized_pnl=Decimal("-1"), opened_at=utc_clock() - timedelta(hours=48))
        assert not checks.check_time_based_exit(position, False, 24, now=utc_clock()).triggered

    def test_old_losing_position_triggers(self, make_position, utc_clock):
        position = make_position(unrealized_pnl=Decimal("-1"), opened_at=utc_clock() - timedelta(hours=25))
        result = checks.check_time_based_exit(position, True, 24, required=3, now=utc_clock())
        assert result.should_close
        assert result.action == GuardAction.TIME_BASED_EXIT

    def test_old_winning_position_clear(self, make_position, utc_clock):
        position = make_position(unrealized_pnl=Decimal("5"), opened_at=utc_clock() - timedelta(hours=25))
        assert not checks.check_time_based_exit(position, True, 24, now=utc_clock()).triggered


class TestMissingProtection:

    @pytest.mark.parametrize("sl,tp,expected", [
        (Decimal("49000"), Decimal("52000"), False),
        (None, Decimal("52000"), True),
        (Decimal("49000"), None, True),
        (Decimal("0"), Decimal("0"), True),
    ])
    def test_detection(self, make_position, sl, tp, expected):
        position = make_position()
        result = checks.check_missing_protection(position, remote_for(position, stop_loss=sl, take_profit=tp))
        assert result.should_fix is expected

    def test_reason_names_missing_levels(self, make_position):
        position = make_position()
        result = checks.check_missing_protection(position, remote_for(position, stop_loss=None, take_profit=None))
        assert "SL and TP" in result.reason
        assert result.detail.stop_loss == Decimal("49000")

    def test_no_remote_is_not_a_protection_problem(self, make_position):
        assert not checks.check_missing_protection(make_position(), None).triggered


class TestQuantityDrift:

    def test_ignored_before_any_tp(self, make_position):
        position = make_position()
        assert not checks.check_quantity_drift(position, remote_for(position, size=Decimal("0.05")), 1.0).triggered

    def test_drift_after_tp1(self, make_position):
        position = make_position(tp1_hit=True, quantity=Decimal("0.05"))
        result = checks.check_quantity_drift(position, remote_for(position, size=Decimal("0.04")), 1.0)
        assert result.should_fix
        assert result.action == GuardAction.TP1_QUANTITY_FIX
        assert result.detail.remote_quantity == Decimal("0.04")

    def test_rounding_within_tolerance(self, make_position):
        position = make_position(tp1_hit=True, quantity=Decimal("0.050"))
        assert not checks.check_quantity_drift(position, remote_for(position, size=Decimal("0.0502")), 1.0).triggered


class TestAccountDrawdown:

    def test_aggregate_loss_triggers(self, make_position):
        a = make_position(id=1, unrealized_pnl=Decimal("-200"))
        b = make_position(id=2, symbol="ETHUSDT", unrealized_pnl=Decimal("-100"))
        result = checks.check_account_drawdown([a, b], 50.0, required=3)
        assert result.should_close
        assert result.action == GuardAction.ACCOUNT_DRAWDOWN
        assert result.detail.drawdown_pct == Decimal("-60")
        assert result.detail.positions == 2

    def test_within_range(self, make_position):
        a = make_position(id=1, unrealized_pnl=Decimal("-200"))
        b = make_position(id=2, symbol="ETHUSDT", unrealized_pnl=Decimal("100"))
        assert not checks.check_account_drawdown([a, b], 50.0).triggered

    def test_no_positions(self):
        assert not checks.check_account_drawdown([], 50.0).triggered

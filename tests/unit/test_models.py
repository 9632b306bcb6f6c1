"""
Tests for domain models, symbol normalization and instrument rounding.
"""
from datetime import datetime
from decimal import Decimal

import pytest

from oko.domain.models import Alert, LadderStage, Position, PositionStatus, Side, tier_rank
from oko.exceptions import InvariantError
from oko.exchange.instruments import InstrumentCache, InstrumentRules
from oko.exchange.symbols import normalize_symbol


class TestSide:

    @pytest.mark.parametrize("raw,expected", [
        ("long", Side.LONG), ("BUY", Side.LONG), (" Sell ", Side.SHORT), ("short", Side.SHORT),
        (Side.LONG, Side.LONG),
    ])
    def test_parse(self, raw, expected):
        assert Side.parse(raw) == expected

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            Side.parse("flat")

    def test_opposite_and_order_side(self):
        assert Side.LONG.opposite == Side.SHORT
        assert Side.SHORT.order_side == "Sell"


class TestPosition:

    def test_quantity_never_increases(self, make_position):
        position = make_position()
        with pytest.raises(InvariantError):
            position.reduce_quantity(Decimal("0.2"))
        assert position.reduce_quantity(Decimal("0.04")) == Decimal("0.06")

    def test_negative_quantity_rejected(self, make_position):
        with pytest.raises(ValueError):
            make_position(quantity=Decimal("-1"))

    def test_naive_timestamp_rejected(self, make_position):
        with pytest.raises(ValueError):
            make_position(opened_at=datetime(2026, 1, 1))

    def test_stop_only_tightens(self, make_position):
        long = make_position()
        assert long.tighten_stop(Decimal("48000")) is False
        assert long.tighten_stop(Decimal("50000")) is True
        assert long.effective_stop == Decimal("50000")
        assert long.stop_loss == Decimal("49000")

        short = make_position(side=Side.SHORT, stop_loss=Decimal("51000"))
        assert short.tighten_stop(Decimal("52000")) is False
        assert short.tighten_stop(Decimal("50500")) is True

    def test_ladder_stage_and_next_target(self, make_position):
        position = make_position(tp2_price=Decimal("53000"))
        assert position.ladder_stage == LadderStage.ACTIVE
        assert position.first_take_profit() == Decimal("52000")

        position.mark_tp_hit(1)
        assert position.ladder_stage == LadderStage.TP1_DONE
        assert position.first_take_profit() == Decimal("53000")

        position.mark_closed("tp2")
        assert position.ladder_stage == LadderStage.CLOSED
        assert position.status == PositionStatus.CLOSED
        assert position.quantity == Decimal("0")

    def test_pnl_pct(self, make_position):
        assert make_position(unrealized_pnl=Decimal("-150")).pnl_pct == Decimal("-60")
        assert make_position(initial_margin=Decimal("0")).pnl_pct == Decimal("0")

    def test_initial_quantity_defaults(self, make_position):
        position = make_position()
        position.reduce_quantity(Decimal("0.05"))
        assert position.initial_quantity == Decimal("0.1")


class TestAlert:

    def test_symbol_normalized(self):
        alert = Alert(id=1, symbol="btc/usdt", side="buy", tier="Premium", strength=0.5)
        assert alert.symbol == "BTCUSDT"
        assert alert.side == Side.LONG
        assert alert.tier_rank == 3

    @pytest.mark.parametrize("strength", [-0.1, 1.5])
    def test_strength_bounds(self, strength):
        with pytest.raises(ValueError):
            Alert(id=1, symbol="BTCUSDT", side=Side.LONG, tier="Standard", strength=strength)

    def test_tier_rank(self):
        assert tier_rank("quick") == 1
        assert tier_rank("Emergency") == 5
        assert tier_rank("unknown") == 0
        assert tier_rank(None) == 0


@pytest.mark.parametrize("raw,expected", [
    ("btc", "BTCUSDT"),
    ("eth usdt", "ETHUSDT"),
    ("SOL/USDT", "SOLUSDT"),
    ("BTCUSDT.P", "BTCUSDT"),
    ("ethusdt", "ETHUSDT"),
])
def test_normalize_symbol(raw, expected):
    assert normalize_symbol(raw) == expected


def test_normalize_symbol_rejects_blank():
    with pytest.raises(ValueError):
        normalize_symbol("  ")


class TestInstrumentRules:

    rules = InstrumentRules(
        symbol="BTCUSDT",
        qty_step=Decimal("0.001"),
        min_qty=Decimal("0.001"),
        tick_size=Decimal("0.10"),
        min_notional=Decimal("5"),
    )

    def test_quantity_rounds_down(self):
        assert self.rules.round_qty(Decimal("0.12399")) == Decimal("0.123")

    def test_price_rounds_to_tick(self):
        assert self.rules.round_price(Decimal("50000.06")) == Decimal("50000.1")
        assert self.rules.round_price(Decimal("50000.04")) == Decimal("50000.0")

    def test_minimums(self):
        assert not self.rules.is_valid_qty(Decimal("0.0005"))
        assert not self.rules.is_valid_qty(Decimal("0.001"), price=Decimal("1000"))
        assert self.rules.is_valid_qty(Decimal("0.001"), price=Decimal("50000"))


def test_instrument_cache_expires(clock):
    cache = InstrumentCache(ttl_seconds=60, clock=clock)
    rules = InstrumentRules("BTCUSDT", Decimal("0.001"), Decimal("0.001"), Decimal("0.1"))
    cache.put(rules)
    assert cache.get("BTCUSDT") is rules
    clock.advance(61)
    assert cache.get("BTCUSDT") is None

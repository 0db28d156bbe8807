"""
Sizing policy tests - every rule, in order.
"""
from datetime import datetime, timedelta, timezone

import pytest

from arena_trader.config import RiskLimits
from arena_trader.engine.risk_gate import find_position, round_quantity, size_decision
from arena_trader.schemas import (
    CloseDecision,
    ExecutableOrder,
    HoldDecision,
    InstrumentClass,
    MarketQuote,
    OpenDecision,
    Position,
    Rejection,
)

T0 = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)


def btc_quote(price=50000.0):
    return MarketQuote(instrument="BTCUSDT", price=price, quantity_precision=3)


def open_btc(**overrides):
    fields = dict(direction="LONG", instrument="BTCUSDT", stake=60, leverage=10, stop_loss=49000, take_profit=52000)
    fields.update(overrides)
    return OpenDecision(**fields)


def make_position(position_id="p1", instrument="BTCUSDT", opened_at=T0):
    return Position(
        id=position_id,
        agent_id="alpha",
        instrument=instrument,
        direction="LONG",
        quantity=0.012,
        entry_price=50000.0,
        leverage=10,
        collateral=60.0,
        notional=600.0,
        cost_basis=60.0,
        mark_price=50500.0,
        opened_at=opened_at,
    )


def size(decision, balance=500.0, positions=None, quote=None, limits=None):
    return size_decision(
        "alpha",
        decision,
        balance,
        positions or [],
        quote if quote is not None else btc_quote(),
        limits or RiskLimits(),
    )


class TestOpenSizing:

    def test_basic_leveraged_long(self):
        order = size(open_btc())
        assert isinstance(order, ExecutableOrder)
        assert order.notional == pytest.approx(600.0)
        assert order.quantity == pytest.approx(0.012)
        assert order.stake == pytest.approx(60.0)
        assert order.leverage == 10
        assert order.reference_price == 50000.0
        assert order.notes == []

    def test_sub_minimum_rejected_not_upsized(self):
        result = size(open_btc(stake=10, leverage=10))
        assert isinstance(result, Rejection)
        assert result.code == "SUB_MINIMUM_NOTIONAL"
        assert not result.noop

    def test_auto_raise_leverage_when_enabled(self):
        limits = RiskLimits(auto_raise_leverage=True)
        quote = MarketQuote(instrument="BTCUSDT", price=50000.0, quantity_precision=4)
        order = size(open_btc(stake=12, leverage=5), quote=quote, limits=limits)
        assert isinstance(order, ExecutableOrder)
        assert order.leverage == 10
        assert order.notional == pytest.approx(120.0)
        assert any("raised" in note for note in order.notes)

    def test_auto_raise_accounts_for_quantity_rounding(self):
        # 10x-12x all round down to 0.002 BTC ($100); 13x is the first to reach 0.003
        limits = RiskLimits(auto_raise_leverage=True, max_leverage=20)
        order = size(open_btc(stake=12, leverage=5), limits=limits)
        assert isinstance(order, ExecutableOrder)
        assert order.leverage == 13
        assert order.quantity == pytest.approx(0.003)
        assert order.notional == pytest.approx(150.0)

    def test_auto_raise_rejects_when_rounding_defeats_ceiling(self):
        limits = RiskLimits(auto_raise_leverage=True, max_leverage=12)
        result = size(open_btc(stake=12, leverage=5), limits=limits)
        assert isinstance(result, Rejection)
        assert result.code == "SUB_MINIMUM_NOTIONAL"
        assert "Rounded quantity 0.002" in result.message

    def test_auto_raise_never_exceeds_ceiling(self):
        limits = RiskLimits(auto_raise_leverage=True)
        result = size(open_btc(stake=10, leverage=5), limits=limits)
        assert isinstance(result, Rejection)
        assert result.code == "SUB_MINIMUM_NOTIONAL"

    def test_leverage_clamped_to_ceiling(self):
        order = size(open_btc(leverage=25))
        assert order.leverage == 10
        assert any("clamped" in note for note in order.notes)

    def test_default_leverage_used_when_missing(self):
        order = size(open_btc(leverage=None), limits=RiskLimits(default_leverage=5))
        assert order.leverage == 5
        assert order.notional == pytest.approx(300.0)

    def test_stake_capped_by_per_trade_ceiling(self):
        order = size(open_btc(stake=400, leverage=1, stop_loss=40000, take_profit=60000))
        assert order.stake == pytest.approx(250.0)
        assert any("capped" in note for note in order.notes)

    def test_stake_capped_by_balance_fraction(self):
        order = size(open_btc(stake=200, leverage=10), balance=200.0)
        assert order.stake == pytest.approx(140.0)
        assert order.quantity == pytest.approx(0.028)

    def test_default_stake_fraction(self):
        order = size(open_btc(stake=None, leverage=1))
        assert order.stake == pytest.approx(250.0)
        assert order.notes == []

    def test_quantity_rounds_down_and_shrinks_stake(self):
        order = size(open_btc(stake=50, leverage=10, stop_loss=29000, take_profit=31000), quote=btc_quote(30000.0))
        assert order.quantity == pytest.approx(0.016)
        assert order.notional == pytest.approx(480.0)
        assert order.stake == pytest.approx(48.0)
        assert order.notional <= 500.0

    def test_rounding_below_floor_rejected(self):
        quote = MarketQuote(instrument="SOLUSDT", price=150.0, quantity_precision=0)
        decision = open_btc(instrument="SOLUSDT", stake=28, leverage=5, stop_loss=140, take_profit=160)
        result = size(decision, quote=quote)
        assert isinstance(result, Rejection)
        assert result.code == "SUB_MINIMUM_NOTIONAL"

    def test_short_levels_are_inverted(self):
        order = size(open_btc(direction="SHORT", stop_loss=51000, take_profit=48000))
        assert isinstance(order, ExecutableOrder)
        assert order.direction == "SHORT"

    @pytest.mark.parametrize("stop_loss,take_profit", [
        (51000, 52000),
        (49000, 49500),
        (52000, 49000),
    ])
    def test_long_levels_on_wrong_side(self, stop_loss, take_profit):
        result = size(open_btc(stop_loss=stop_loss, take_profit=take_profit))
        assert result.code == "INVALID_PROTECTIVE_LEVELS"

    def test_missing_levels_on_perpetual(self):
        result = size(open_btc(stop_loss=None))
        assert result.code == "MISSING_PROTECTIVE_LEVELS"


class TestRejections:

    def test_max_positions(self):
        positions = [make_position(f"p{i}") for i in range(6)]
        result = size(open_btc(), positions=positions)
        assert result.code == "MAX_POSITIONS_REACHED"

    @pytest.mark.parametrize("balance", [0.0, -5.0, float("nan")])
    def test_non_positive_balance(self, balance):
        result = size(open_btc(), balance=balance)
        assert result.code == "INSUFFICIENT_BALANCE"

    def test_no_quote(self):
        result = size_decision("alpha", open_btc(), 500.0, [], None, RiskLimits())
        assert result.code == "NO_QUOTE"

    def test_zero_price_quote(self):
        result = size(open_btc(), quote=btc_quote(0.0))
        assert result.code == "NO_QUOTE"

    def test_hold_is_noop(self):
        result = size(HoldDecision())
        assert result.noop
        assert result.code == "NOTHING_TO_SIZE"


class TestBinaryInstruments:

    @pytest.fixture
    def binary_quote(self):
        return MarketQuote(instrument="WILL-IT-RAIN", instrument_class=InstrumentClass.BINARY, price=0.4)

    def test_binary_is_unleveraged(self, binary_quote):
        decision = OpenDecision(direction="LONG", instrument="WILL-IT-RAIN", stake=5, leverage=10)
        order = size(decision, quote=binary_quote)
        assert isinstance(order, ExecutableOrder)
        assert order.leverage == 1
        assert order.notional == pytest.approx(5.0)
        assert order.quantity == pytest.approx(12.5)

    def test_binary_short_unsupported(self, binary_quote):
        decision = OpenDecision(direction="SHORT", instrument="WILL-IT-RAIN", stake=5)
        result = size(decision, quote=binary_quote)
        assert result.code == "UNSUPPORTED_DIRECTION"


class TestCloseSizing:

    def test_close_by_id(self):
        position = make_position("abc")
        order = size(CloseDecision(position_ref="abc"), positions=[position])
        assert order.position_id == "abc"
        assert order.quantity == pytest.approx(0.012)
        assert order.reference_price == 50000.0

    def test_close_by_instrument_picks_oldest(self):
        newer = make_position("new", opened_at=T0 + timedelta(minutes=5))
        older = make_position("old", opened_at=T0)
        order = size(CloseDecision(position_ref="btcusdt"), positions=[newer, older])
        assert order.position_id == "old"

    def test_close_unknown_is_noop(self):
        result = size(CloseDecision(position_ref="nope"), positions=[make_position()])
        assert isinstance(result, Rejection)
        assert result.noop
        assert result.code == "POSITION_NOT_FOUND"

    def test_close_without_quote_uses_mark(self):
        position = make_position("abc")
        result = size_decision("alpha", CloseDecision(position_ref="abc"), 500.0, [position], None, RiskLimits())
        assert result.reference_price == 50500.0


class TestPurity:

    def test_inputs_not_mutated(self):
        decision = open_btc(stake=400, leverage=50)
        positions = [make_position()]
        quote = btc_quote()
        limits = RiskLimits()
        before = (decision.model_dump(), [p.model_dump() for p in positions], quote.model_dump(), repr(limits))

        first = size_decision("alpha", decision, 500.0, positions, quote, limits)
        second = size_decision("alpha", decision, 500.0, positions, quote, limits)

        assert (decision.model_dump(), [p.model_dump() for p in positions], quote.model_dump(), repr(limits)) == before
        assert first == second


def test_round_quantity():
    assert round_quantity(0.0166666, 3) == 0.016
    assert round_quantity(12.99, 0) == 12.0
    assert round_quantity(0.1 + 0.2, 1) == 0.3


def test_find_position_prefers_exact_id():
    a = make_position("BTCUSDT", instrument="ETHUSDT")
    b = make_position("x", instrument="BTCUSDT")
    assert find_position([b, a], "BTCUSDT").id == "BTCUSDT"

"""
Position ledger accounting tests.
"""
import pytest

from arena_trader.engine.ledger import PositionLedger, format_holding_time
from arena_trader.errors import InsufficientBalance, MaxPositionsReached, PositionNotFound, SubMinimumNotional
from arena_trader.schemas import Direction, InstrumentClass, OpenSpec


@pytest.fixture
def ledger(config, store, clock):
    ledger = PositionLedger(config, store, clock=clock)
    for profile in config.roster:
        ledger.ensure_agent(profile)
    return ledger


def btc_long(**overrides):
    fields = dict(
        instrument="BTCUSDT",
        direction=Direction.LONG,
        quantity=0.012,
        entry_price=50000.0,
        leverage=10,
        collateral=60.0,
    )
    fields.update(overrides)
    return OpenSpec(**fields)


def assert_invariant(ledger, agent_id):
    agent = ledger.get_agent(agent_id)
    unrealized = sum(p.unrealized_pnl for p in ledger.list_open(agent_id))
    assert agent.account_value == pytest.approx(agent.cash_balance + unrealized)


class TestScenarios:
    """Open, mark and close a 10x BTC long."""

    def test_open_debits_collateral(self, ledger):
        position = ledger.open_position("alpha", btc_long())

        agent = ledger.get_agent("alpha")
        assert position.notional == pytest.approx(600.0)
        assert position.quantity == pytest.approx(0.012)
        assert position.cost_basis == pytest.approx(60.0)
        assert agent.cash_balance == pytest.approx(440.0)
        assert_invariant(ledger, "alpha")

    def test_mark_to_market_updates_account_value(self, ledger):
        position = ledger.open_position("alpha", btc_long())
        marked = ledger.mark_to_market(position.id, 51000.0)

        agent = ledger.get_agent("alpha")
        assert marked.unrealized_pnl == pytest.approx(12.0)
        assert marked.unrealized_pnl_percent == pytest.approx(2.0)
        assert agent.account_value == pytest.approx(452.0)
        assert agent.cash_balance == pytest.approx(440.0)
        assert_invariant(ledger, "alpha")

    def test_close_credits_collateral_plus_pnl(self, ledger):
        position = ledger.open_position("alpha", btc_long())
        ledger.mark_to_market(position.id, 51000.0)
        result = ledger.close_position(position.id, 51000.0)

        agent = ledger.get_agent("alpha")
        assert result.pnl == pytest.approx(12.0)
        assert agent.cash_balance == pytest.approx(512.0)
        assert agent.account_value == pytest.approx(512.0)
        assert ledger.list_open("alpha") == []
        assert agent.total_trades == 1
        assert agent.wins == 1
        assert_invariant(ledger, "alpha")


class TestLedgerProperties:

    def test_mark_is_idempotent(self, ledger):
        position = ledger.open_position("alpha", btc_long())
        first = ledger.mark_to_market(position.id, 49500.0)
        second = ledger.mark_to_market(position.id, 49500.0)
        assert first.unrealized_pnl == second.unrealized_pnl
        assert second.unrealized_pnl == pytest.approx(-6.0)

    def test_mark_never_changes_identity(self, ledger):
        position = ledger.open_position("alpha", btc_long())
        marked = ledger.mark_to_market(position.id, 52000.0)
        assert (marked.id, marked.entry_price, marked.quantity, marked.opened_at) == (
            position.id, position.entry_price, position.quantity, position.opened_at,
        )

    def test_round_trip_at_same_price_is_flat(self, ledger):
        position = ledger.open_position("alpha", btc_long())
        result = ledger.close_position(position.id, 50000.0)
        agent = ledger.get_agent("alpha")
        assert result.pnl == pytest.approx(0.0)
        assert agent.cash_balance == pytest.approx(500.0)
        assert agent.losses == 1

    def test_short_profits_when_price_falls(self, ledger):
        position = ledger.open_position("alpha", btc_long(direction=Direction.SHORT))
        result = ledger.close_position(position.id, 49000.0)
        assert result.pnl == pytest.approx(12.0)
        assert result.pnl_percent == pytest.approx(2.0)

    def test_fees_are_in_cost_basis_not_pnl(self, ledger):
        position = ledger.open_position("alpha", btc_long(fees=0.3))
        assert position.cost_basis == pytest.approx(60.3)
        assert ledger.get_agent("alpha").cash_balance == pytest.approx(439.7)

        result = ledger.close_position(position.id, 50000.0, exit_fee=0.3)
        assert result.pnl == pytest.approx(0.0)
        assert result.fees == pytest.approx(0.6)
        assert ledger.get_agent("alpha").cash_balance == pytest.approx(499.4)

    def test_invariant_across_many_positions(self, ledger):
        positions = [ledger.open_position("alpha", btc_long()) for _ in range(3)]
        for i, position in enumerate(positions):
            ledger.mark_to_market(position.id, 50000.0 + 500 * i)
            assert_invariant(ledger, "alpha")
        ledger.close_position(positions[1].id, 50250.0)
        assert_invariant(ledger, "alpha")

    def test_binary_position_is_unleveraged(self, ledger):
        spec = OpenSpec(
            instrument="WILL-IT-RAIN",
            instrument_class=InstrumentClass.BINARY,
            direction=Direction.LONG,
            quantity=10,
            entry_price=0.4,
            collateral=4.0,
        )
        position = ledger.open_position("alpha", spec)
        ledger.mark_to_market(position.id, 0.55)
        assert ledger.get_position(position.id).unrealized_pnl == pytest.approx(1.5)
        assert_invariant(ledger, "alpha")


class TestLedgerGuards:

    def test_seventh_position_rejected(self, ledger):
        for _ in range(6):
            ledger.open_position("alpha", btc_long())
        with pytest.raises(MaxPositionsReached):
            ledger.open_position("alpha", btc_long())
        assert len(ledger.list_open("alpha")) == 6

    def test_insufficient_balance(self, ledger):
        with pytest.raises(InsufficientBalance):
            ledger.open_position("alpha", btc_long(collateral=600.0, leverage=1))
        assert ledger.get_agent("alpha").cash_balance == pytest.approx(500.0)

    def test_sub_minimum_notional(self, ledger):
        with pytest.raises(SubMinimumNotional):
            ledger.open_position("alpha", btc_long(collateral=10.0, leverage=10, quantity=0.002))

    def test_close_unknown_position(self, ledger):
        with pytest.raises(PositionNotFound):
            ledger.close_position("missing", 50000.0)

    def test_close_twice_is_not_found(self, ledger):
        position = ledger.open_position("alpha", btc_long())
        ledger.close_position(position.id, 50000.0)
        with pytest.raises(PositionNotFound):
            ledger.close_position(position.id, 50000.0)
        assert ledger.get_agent("alpha").total_trades == 1

    def test_mark_unknown_position(self, ledger):
        with pytest.raises(PositionNotFound):
            ledger.mark_to_market("missing", 50000.0)

    def test_agents_are_isolated(self, ledger):
        ledger.open_position("alpha", btc_long())
        assert ledger.list_open("beta") == []
        assert ledger.get_agent("beta").cash_balance == pytest.approx(500.0)


class TestHoldingTime:

    def test_holding_duration_floors_to_minute(self, ledger, clock):
        position = ledger.open_position("alpha", btc_long())
        clock.advance(hours=1, minutes=5, seconds=59)
        result = ledger.close_position(position.id, 50000.0)
        assert result.holding_minutes == 65
        assert result.holding_time == "1H 5M"

    def test_format_holding_time(self):
        assert format_holding_time(0) == "0H 0M"
        assert format_holding_time(125) == "2H 5M"

    def test_expired_positions(self, ledger, clock):
        position = ledger.open_position("alpha", btc_long())
        clock.advance(minutes=45)
        assert ledger.expired_positions("alpha", 45) == []
        clock.advance(seconds=1)
        assert [p.id for p in ledger.expired_positions("alpha", 45)] == [position.id]
        assert ledger.expired_positions("alpha", None) == []


class TestAgentInitialisation:

    def test_new_agent_seeded_with_history(self, ledger, config):
        agent = ledger.get_agent("alpha")
        assert agent.cash_balance == pytest.approx(500.0)
        assert agent.pnl_history == [500.0] * config.pnl_history_length

    def test_existing_agent_not_reset(self, ledger, config):
        ledger.open_position("alpha", btc_long())
        ledger.ensure_agent(config.get_profile("alpha"))
        assert ledger.get_agent("alpha").cash_balance == pytest.approx(440.0)

"""
Tests for the arbitrage data model.

Tests cover:
- Candidate spread arithmetic
- Window pair keys and overlap
- Trade state machine transitions
- Position cost averaging
"""

import pytest

from src.arb.models import (
    LegOrder,
    Outcome,
    Position,
    Trade,
    TradeState,
    TERMINAL_STATES,
)

from tests.fakes import IN_OVERLAP, START_15M, START_5M, make_decision, make_pair


def _trade() -> Trade:
    decision = make_decision()
    spread = decision.spread
    return Trade(
        pair_key=decision.pair.key,
        spread=spread,
        leg_a=LegOrder(token=spread.leg_a, side="BUY", size=10, price=spread.ask_a),
        leg_b=LegOrder(token=spread.leg_b, side="BUY", size=10, price=spread.ask_b),
        shares=10,
    )


# =============================================================================
# Test: Spreads and Pairs
# =============================================================================


class TestCandidateSpread:
    """Tests for CandidateSpread."""

    def test_total_and_edge(self):
        spread = make_decision(ask_a=0.48, ask_b=0.49).spread
        assert spread.total == 0.97
        assert spread.edge == 0.03
        assert spread.below_threshold

    def test_total_at_threshold_not_below(self):
        spread = make_decision(ask_a=0.50, ask_b=0.49).spread
        assert spread.total == 0.99
        assert not spread.below_threshold

    def test_to_dict(self):
        data = make_decision().spread.to_dict()
        assert data["label"] == "15m Up + 5m Down"
        assert data["leg_a_token"] == "up15"
        assert data["leg_b_token"] == "down5"


class TestWindowPair:
    """Tests for WindowPair."""

    def test_key(self):
        assert make_pair().key == f"btc:{START_15M}:{START_5M}"

    def test_token_order(self):
        assert make_pair().token_ids == ["up15", "down15", "up5", "down5"]

    def test_in_overlap(self):
        pair = make_pair()
        assert pair.in_overlap(IN_OVERLAP)
        assert not pair.in_overlap(START_15M + 100)
        assert not pair.in_overlap(START_15M + 900)

    def test_seconds_left(self):
        assert make_pair().seconds_left(START_15M + 890) == 10

    def test_outcome_labels(self):
        pair = make_pair()
        assert pair.up_15m.label == "15m Up"
        assert pair.down_5m.label == "5m Down"
        assert Outcome.UP.opposite is Outcome.DOWN


# =============================================================================
# Test: Trade State Machine
# =============================================================================


class TestTradeTransitions:
    """Tests for Trade.transition() and escalate()."""

    def test_happy_path(self):
        trade = _trade()
        for state in (TradeState.LEGS_SUBMITTING, TradeState.AWAITING_FILLS, TradeState.VERIFYING):
            trade.transition(state)
        trade.transition(TradeState.COMPLETED, "both legs filled")
        assert trade.is_terminal
        assert trade.reason == "both legs filled"
        assert trade.history == [
            "idle->legs_submitting",
            "legs_submitting->awaiting_fills",
            "awaiting_fills->verifying",
            "verifying->completed",
        ]

    def test_illegal_transition_raises(self):
        trade = _trade()
        with pytest.raises(ValueError, match="Illegal transition"):
            trade.transition(TradeState.COMPLETED)

    def test_terminal_states_have_no_exits(self):
        trade = _trade()
        trade.transition(TradeState.LEGS_SUBMITTING)
        trade.transition(TradeState.ABORTED, "rejected")
        with pytest.raises(ValueError):
            trade.transition(TradeState.UNWINDING)

    def test_unwinding_reaches_unwound_or_manual(self):
        trade = _trade()
        trade.transition(TradeState.LEGS_SUBMITTING)
        trade.transition(TradeState.UNWINDING)
        trade.transition(TradeState.UNWOUND)
        assert trade.state in TERMINAL_STATES

    def test_escalate_from_any_open_state(self):
        trade = _trade()
        trade.transition(TradeState.LEGS_SUBMITTING)
        trade.escalate("crashed")
        assert trade.state == TradeState.MANUAL_INTERVENTION
        assert trade.reason == "crashed"

    def test_escalate_terminal_raises(self):
        trade = _trade()
        trade.transition(TradeState.LEGS_SUBMITTING)
        trade.transition(TradeState.ABORTED)
        with pytest.raises(ValueError):
            trade.escalate("late")

    def test_cost_uses_locked_size(self):
        trade = _trade()
        trade.locked_size = 4
        assert trade.cost == pytest.approx((0.48 + 0.49) * 4)

    def test_to_dict(self):
        data = _trade().to_dict()
        assert data["state"] == "idle"
        assert data["leg_a"]["leg"] == "15m Up"
        assert data["leg_b"]["token_id"] == "down5"
        assert data["exits"] == []


class TestLegOrder:
    """Tests for LegOrder helpers."""

    def test_unfilled_size(self):
        leg = _trade().leg_a
        leg.filled_size = 3
        assert leg.has_fill
        assert leg.unfilled_size == 7


# =============================================================================
# Test: Position
# =============================================================================


class TestPosition:
    """Tests for Position."""

    def test_add_averages_cost(self):
        position = Position(condition_id="c", token_id="t", outcome="Up", size=0, avg_cost=0)
        position.add(10, 0.40)
        position.add(10, 0.50)
        assert position.size == 20
        assert position.avg_cost == pytest.approx(0.45)

    def test_round_trip_dict(self):
        position = Position(condition_id="c", token_id="t", outcome="Up", size=5, avg_cost=0.4, redeemable=True)
        assert Position.from_dict(position.to_dict()) == position

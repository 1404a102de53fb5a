"""
Tests for two-leg Trade Execution.

Tests cover:
- Both legs filled (COMPLETED)
- One-sided and partial fills (UNWINDING -> UNWOUND)
- No fills (ABORTED)
- Submission failures, orphan cancels and transient retries
- Unknown fill state routing, including fills seen before verification
- Order records overriding optimistic acknowledgements
- Timed-out submits (late acknowledgement, no acknowledgement)
- Unconfirmed cancels and exhausted exits (MANUAL_INTERVENTION)

IMPORTANT: All tests use a scripted gateway. NO real orders are placed.
"""

import pytest

from src.arb.execution import VERIFICATION_UNKNOWN, TradeExecutor
from src.arb.models import LegState, PriceQuote, TradeState
from src.arb.unwind import UnwindManager
from src.exchanges.base import OrderSide, OrderType, SubmissionError, TransientGatewayError

from tests.fakes import ScriptedGateway, make_decision


def make_executor(config, gateway, quote_lookup=None):
    unwinder = UnwindManager(gateway, config, quote_lookup=quote_lookup, backoff=0)
    return TradeExecutor(gateway, config, unwinder, backoff=0)


# =============================================================================
# Test: Both legs filled
# =============================================================================


class TestCompleted:
    """Tests for trades where both legs fill."""

    @pytest.mark.asyncio
    async def test_both_legs_filled(self, config, pair):
        gateway = ScriptedGateway(fills={"up15": 10, "down5": 10})
        executor = make_executor(config, gateway)

        trade = await executor.execute(make_decision(pair))

        assert trade.state == TradeState.COMPLETED
        assert trade.locked_size == 10
        assert trade.leg_a.state == LegState.FILLED
        assert trade.leg_b.state == LegState.FILLED
        assert trade.exits == []
        assert trade.simulated is False
        assert trade.history == [
            "idle->legs_submitting",
            "legs_submitting->awaiting_fills",
            "awaiting_fills->verifying",
            "verifying->completed",
        ]

    @pytest.mark.asyncio
    async def test_legs_submitted_as_gtc_buys_at_ask(self, config, pair):
        gateway = ScriptedGateway(fills={"up15": 10, "down5": 10})
        executor = make_executor(config, gateway)

        await executor.execute(make_decision(pair, ask_a=0.47, ask_b=0.50))

        assert sorted(gateway.buys()) == sorted(
            [
                ("up15", OrderSide.BUY, 10, 0.47, OrderType.GTC),
                ("down5", OrderSide.BUY, 10, 0.50, OrderType.GTC),
            ]
        )
        assert gateway.cancelled == []

    @pytest.mark.asyncio
    async def test_cost_uses_locked_size(self, config, pair):
        gateway = ScriptedGateway(fills={"up15": 10, "down5": 10})
        trade = await make_executor(config, gateway).execute(make_decision(pair))
        assert trade.cost == pytest.approx(9.7)


# =============================================================================
# Test: One-sided and partial fills
# =============================================================================


class TestOneSided:
    """Tests for fills on only one leg."""

    @pytest.mark.asyncio
    async def test_one_sided_fill_unwinds(self, config, pair):
        gateway = ScriptedGateway(fills={"up15": 10})
        executor = make_executor(config, gateway)

        trade = await executor.execute(make_decision(pair))

        assert trade.state == TradeState.UNWOUND
        assert trade.locked_size == 0
        assert trade.leg_b.state == LegState.CANCELLED
        assert len(trade.exits) == 1
        exit_order = trade.exits[0]
        assert exit_order.side == "SELL"
        assert exit_order.order_type == "FOK"
        assert exit_order.size == 10
        assert exit_order.price == pytest.approx(0.46)
        assert exit_order.state == LegState.FILLED
        assert gateway.sells() == [("up15", OrderSide.SELL, 10, 0.46, OrderType.FOK)]

    @pytest.mark.asyncio
    async def test_exit_priced_off_best_bid(self, config, pair):
        gateway = ScriptedGateway(fills={"up15": 10})
        quotes = {"up15": PriceQuote("up15", ask=0.47, bid=0.45)}
        executor = make_executor(config, gateway, quote_lookup=quotes.get)

        trade = await executor.execute(make_decision(pair))

        assert trade.state == TradeState.UNWOUND
        assert trade.exits[0].price == pytest.approx(0.45)

    @pytest.mark.asyncio
    async def test_partial_fill_locks_matched_size(self, config, pair):
        gateway = ScriptedGateway(fills={"up15": 10, "down5": 6})
        executor = make_executor(config, gateway)

        trade = await executor.execute(make_decision(pair))

        assert trade.state == TradeState.UNWOUND
        assert trade.locked_size == 6
        assert trade.leg_b.state == LegState.PARTIALLY_FILLED
        assert gateway.sells() == [("up15", OrderSide.SELL, 4, 0.46, OrderType.FOK)]

    @pytest.mark.asyncio
    async def test_equal_partial_fills_complete(self, config, pair):
        gateway = ScriptedGateway(fills={"up15": 7, "down5": 7})
        executor = make_executor(config, gateway)

        trade = await executor.execute(make_decision(pair))

        assert trade.state == TradeState.COMPLETED
        assert trade.locked_size == 7
        assert gateway.sells() == []

    @pytest.mark.asyncio
    async def test_no_fills_aborts(self, config, pair):
        gateway = ScriptedGateway()
        executor = make_executor(config, gateway)

        trade = await executor.execute(make_decision(pair))

        assert trade.state == TradeState.ABORTED
        assert trade.locked_size == 0
        assert len(gateway.cancelled) == 2
        assert gateway.sells() == []


# =============================================================================
# Test: Submission failures
# =============================================================================


class TestSubmission:
    """Tests for leg submission failures and retries."""

    @pytest.mark.asyncio
    async def test_rejected_leg_cancels_sibling_and_aborts(self, config, pair):
        gateway = ScriptedGateway(submit_errors={"down5": [SubmissionError("not enough balance")]})
        executor = make_executor(config, gateway)

        trade = await executor.execute(make_decision(pair))

        assert trade.state == TradeState.ABORTED
        assert "submission failed" in trade.reason
        assert trade.leg_b.state == LegState.REJECTED
        assert trade.leg_a.state == LegState.CANCELLED
        assert len(gateway.cancelled) == 1

    @pytest.mark.asyncio
    async def test_orphan_fill_is_unwound(self, config, pair):
        """The surviving leg filled before its cancel landed."""
        gateway = ScriptedGateway(
            fills={"up15": 10}, submit_errors={"down5": [SubmissionError("rejected")]}
        )
        executor = make_executor(config, gateway)

        trade = await executor.execute(make_decision(pair))

        assert trade.state == TradeState.UNWOUND
        assert gateway.sells() == [("up15", OrderSide.SELL, 10, 0.46, OrderType.FOK)]

    @pytest.mark.asyncio
    async def test_both_legs_rejected(self, config, pair):
        gateway = ScriptedGateway(
            submit_errors={"up15": [SubmissionError("a")], "down5": [SubmissionError("b")]}
        )
        trade = await make_executor(config, gateway).execute(make_decision(pair))

        assert trade.state == TradeState.ABORTED
        assert gateway.cancelled == []

    @pytest.mark.asyncio
    async def test_transient_error_retried(self, config, pair):
        gateway = ScriptedGateway(
            fills={"up15": 10, "down5": 10}, submit_errors={"up15": [TransientGatewayError("502")]}
        )
        trade = await make_executor(config, gateway).execute(make_decision(pair))

        assert trade.state == TradeState.COMPLETED
        assert len(gateway.buys()) == 3

    @pytest.mark.asyncio
    async def test_transient_retries_exhausted(self, config, pair):
        errors = [TransientGatewayError("502")] * config.submit_max_attempts
        gateway = ScriptedGateway(submit_errors={"up15": errors})
        trade = await make_executor(config, gateway).execute(make_decision(pair))

        assert trade.state == TradeState.ABORTED
        assert trade.leg_a.state == LegState.REJECTED
        up_submits = [s for s in gateway.buys() if s[0] == "up15"]
        assert len(up_submits) == config.submit_max_attempts

    @pytest.mark.asyncio
    async def test_unexpected_error_escalates(self, config, pair):
        gateway = ScriptedGateway(submit_errors={"up15": [RuntimeError("boom")]})
        trade = await make_executor(config, gateway).execute(make_decision(pair))

        assert trade.state == TradeState.MANUAL_INTERVENTION
        assert "boom" in trade.reason


# =============================================================================
# Test: Unknown fill state
# =============================================================================


class TestVerificationUnknown:
    """Tests for legs whose fill state cannot be determined."""

    @pytest.mark.asyncio
    async def test_unknown_leg_with_filled_sibling_unwinds(self, config, pair):
        gateway = ScriptedGateway(
            fills={"up15": 10}, query_errors={"down5": TransientGatewayError("timeout")}
        )
        trade = await make_executor(config, gateway).execute(make_decision(pair))

        assert trade.state == TradeState.UNWOUND
        assert trade.reason == VERIFICATION_UNKNOWN
        assert len(gateway.sells()) == 1
        assert trade.leg_b.state == LegState.CANCELLED

    @pytest.mark.asyncio
    async def test_unknown_without_fills_aborts(self, config, pair):
        gateway = ScriptedGateway(
            query_errors={"up15": TransientGatewayError("timeout"), "down5": TransientGatewayError("timeout")}
        )
        trade = await make_executor(config, gateway).execute(make_decision(pair))

        assert trade.state == TradeState.ABORTED
        assert trade.reason == VERIFICATION_UNKNOWN
        assert len(gateway.cancelled) == 2
        assert gateway.sells() == []

    @pytest.mark.asyncio
    async def test_leg_matched_at_submit_then_unverifiable_is_exited(self, config, pair):
        """The acknowledgement is fill evidence even when the order record cannot be read."""
        gateway = ScriptedGateway(matched={"up15"}, query_errors={"up15": TransientGatewayError("502")})
        trade = await make_executor(config, gateway).execute(make_decision(pair))

        assert trade.state == TradeState.UNWOUND
        assert trade.reason == VERIFICATION_UNKNOWN
        assert trade.locked_size == 0
        assert trade.leg_b.state == LegState.CANCELLED
        assert gateway.sells() == [("up15", OrderSide.SELL, 10, 0.46, OrderType.FOK)]

    @pytest.mark.asyncio
    async def test_fill_revealed_by_final_query_is_exited(self, config, pair):
        """Both fill watches fail, then the query behind the cancel shows a fill."""
        gateway = ScriptedGateway(fills={"up15": 10}, query_errors={"up15": TransientGatewayError("502")})
        executor = make_executor(config, gateway)
        original_settle = executor.unwinder.settle

        async def settle_after_outage(leg, handle):
            gateway.query_errors.clear()
            return await original_settle(leg, handle)

        executor.unwinder.settle = settle_after_outage
        trade = await executor.execute(make_decision(pair))

        assert trade.state == TradeState.UNWOUND
        assert trade.reason.startswith("one-sided fill")
        assert gateway.sells() == [("up15", OrderSide.SELL, 10, 0.46, OrderType.FOK)]


# =============================================================================
# Test: Acknowledgement vs. order record
# =============================================================================


class TestAcknowledgementOverridden:
    """Tests for verification queries that disagree with the acknowledgement."""

    @pytest.mark.asyncio
    async def test_partial_record_overrides_matched_ack(self, config, pair):
        gateway = ScriptedGateway(matched={"up15"}, fills={"up15": 4, "down5": 10})
        trade = await make_executor(config, gateway).execute(make_decision(pair))

        assert trade.state == TradeState.UNWOUND
        assert trade.locked_size == 4
        assert trade.leg_a.filled_size == 4
        assert trade.leg_a.state == LegState.PARTIALLY_FILLED
        assert len(gateway.cancelled) == 1
        assert gateway.sells() == [("down5", OrderSide.SELL, 6, 0.47, OrderType.FOK)]

    @pytest.mark.asyncio
    async def test_matched_ack_confirmed_by_record(self, config, pair):
        gateway = ScriptedGateway(matched={"up15", "down5"}, fills={"up15": 10, "down5": 10})
        trade = await make_executor(config, gateway).execute(make_decision(pair))

        assert trade.state == TradeState.COMPLETED
        assert trade.locked_size == 10
        assert gateway.cancelled == []


# =============================================================================
# Test: Submit timeouts
# =============================================================================


class TestSubmitTimeout:
    """Tests for submits that outlive api_timeout_secs."""

    @pytest.mark.asyncio
    async def test_late_ack_is_tracked_not_resubmitted(self, config, pair):
        config.api_timeout_secs = 0.05
        config.submit_ack_grace_secs = 1.0
        gateway = ScriptedGateway(fills={"up15": 10, "down5": 10}, submit_delays={"down5": [0.2]})
        trade = await make_executor(config, gateway).execute(make_decision(pair))

        assert trade.state == TradeState.COMPLETED
        assert [s for s in gateway.buys() if s[0] == "down5"] == [
            ("down5", OrderSide.BUY, 10, 0.49, OrderType.GTC)
        ]
        assert trade.leg_b.order_id is not None
        assert gateway.cancelled == []

    @pytest.mark.asyncio
    async def test_missing_ack_escalates(self, config, pair):
        config.api_timeout_secs = 0.05
        config.submit_ack_grace_secs = 0.05
        gateway = ScriptedGateway(submit_delays={"down5": [0.3]})
        trade = await make_executor(config, gateway).execute(make_decision(pair))

        assert trade.state == TradeState.MANUAL_INTERVENTION
        assert "order state unknown" in trade.reason
        assert trade.leg_b.state == LegState.UNKNOWN
        assert len([s for s in gateway.buys() if s[0] == "down5"]) == 1
        assert len(gateway.cancelled) == 1
        assert trade.leg_a.state == LegState.CANCELLED
        assert gateway.sells() == []

    @pytest.mark.asyncio
    async def test_late_rejection_aborts(self, config, pair):
        config.api_timeout_secs = 0.05
        gateway = ScriptedGateway(
            submit_delays={"down5": [0.2]}, submit_errors={"down5": [SubmissionError("not enough balance")]}
        )
        trade = await make_executor(config, gateway).execute(make_decision(pair))

        assert trade.state == TradeState.ABORTED
        assert trade.leg_b.state == LegState.REJECTED
        assert len(gateway.buys()) == 2


# =============================================================================
# Test: Manual intervention
# =============================================================================


class TestManualIntervention:
    """Tests for exposure that cannot be closed automatically."""

    @pytest.mark.asyncio
    async def test_unconfirmed_cancel_with_one_sided_fill(self, config, pair):
        gateway = ScriptedGateway(fills={"up15": 10}, cancel_ok=False)
        trade = await make_executor(config, gateway).execute(make_decision(pair))

        assert trade.state == TradeState.MANUAL_INTERVENTION
        assert "not confirmed" in trade.reason
        assert gateway.sells() == []

    @pytest.mark.asyncio
    async def test_unconfirmed_cancel_without_fills(self, config, pair):
        gateway = ScriptedGateway(cancel_ok=False)
        trade = await make_executor(config, gateway).execute(make_decision(pair))

        assert trade.state == TradeState.MANUAL_INTERVENTION

    @pytest.mark.asyncio
    async def test_exits_exhausted(self, config, pair):
        gateway = ScriptedGateway(fills={"up15": 10}, exit_fills=[0] * config.exit_max_attempts)
        trade = await make_executor(config, gateway).execute(make_decision(pair))

        assert trade.state == TradeState.MANUAL_INTERVENTION
        assert "exposure remains" in trade.reason
        assert [e.price for e in trade.exits] == pytest.approx([0.46, 0.44, 0.42, 0.40])
        assert all(e.state == LegState.REJECTED for e in trade.exits)
        assert trade.history[-1] == "unwinding->manual_intervention"

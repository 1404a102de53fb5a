"""
Two-leg Order Execution for the 15m/5m arbitrage.

Drives one Trade through the execution state machine:

    IDLE -> LEGS_SUBMITTING -> AWAITING_FILLS -> VERIFYING
         -> COMPLETED | UNWINDING | ABORTED
    UNWINDING -> UNWOUND | MANUAL_INTERVENTION

Key Features:
- Both BUY legs dispatched concurrently (asyncio.gather over worker threads)
- Transient transport errors retried with bounded exponential backoff; a
  timed-out submit is never resent, its late acknowledgement is awaited
- Orphan handling when one leg fails to submit (cancel, then check for fills)
- Fill watch up to verify_fill_secs, then one authoritative query per leg
  that overrides the acknowledgement
- Unknown fill state is never guessed: any fill evidence means unwind,
  otherwise abort with both orders cancelled
- Every exchange call bounded by api_timeout_secs

Example:
    >>> executor = TradeExecutor(gateway, config, UnwindManager(gateway, config))
    >>> trade = await executor.execute(decision)
    >>> trade.state
    <TradeState.COMPLETED: 'completed'>
"""

import asyncio
import logging
from typing import Optional

from ..config import ArbConfig
from ..exchanges.base import (
    BaseOrderGateway,
    FillReport,
    GatewayError,
    OrderHandle,
    OrderSide,
    OrderType,
)
from .errors import ManualInterventionRequired
from .models import EnterTrade, LegOrder, LegState, Trade, TradeState
from .policies import CallTimeout, PendingCallTimeout, RetryPolicy, bounded_call, bounded_submit, policy_for
from .unwind import SIZE_EPSILON, UnwindManager

logger = logging.getLogger(__name__)

VERIFICATION_UNKNOWN = "verification_unknown"


class TradeExecutor:
    """
    Executor for placing and verifying both legs of an arbitrage trade.

    Attributes:
        gateway: Order gateway (live or simulated)
        config: Strategy configuration
        unwinder: Unwind manager for one-sided fills
        submit_policy: Retry policy for leg submission
    """

    def __init__(
        self,
        gateway: BaseOrderGateway,
        config: ArbConfig,
        unwinder: UnwindManager,
        backoff: float = 0.5,
    ):
        self.gateway = gateway
        self.config = config
        self.unwinder = unwinder
        self.submit_policy: RetryPolicy = policy_for(config.submit_max_attempts, backoff, never_retry=(CallTimeout,))
        self._prefix = "[SIM]" if gateway.is_simulated else "[LIVE]"

    def new_trade(self, decision: EnterTrade) -> Trade:
        """Build the Trade record for an entry decision."""
        spread = decision.spread
        return Trade(
            pair_key=decision.pair.key,
            spread=spread,
            leg_a=LegOrder(token=spread.leg_a, side="BUY", size=decision.shares, price=spread.ask_a),
            leg_b=LegOrder(token=spread.leg_b, side="BUY", size=decision.shares, price=spread.ask_b),
            shares=decision.shares,
            simulated=self.gateway.is_simulated,
        )

    async def execute(self, decision: EnterTrade, trade: Optional[Trade] = None) -> Trade:
        """
        Run a trade to a terminal state.

        Args:
            decision: Entry decision from the decision engine
            trade: Pre-built trade record (default: built from the decision)

        Returns:
            The trade, always in a terminal state
        """
        trade = trade or self.new_trade(decision)
        try:
            await self._run(trade)
        except ManualInterventionRequired as e:
            self._manual(trade, e.reason)
        except Exception as e:
            logger.critical(f"{self._prefix} Trade {trade.trade_id} crashed in {trade.state}: {e}", exc_info=True)
            self._manual(trade, f"execution error: {e}")
        return trade

    def _manual(self, trade: Trade, reason: str) -> None:
        if trade.state == TradeState.UNWINDING:
            trade.transition(TradeState.MANUAL_INTERVENTION, reason)
        else:
            trade.escalate(reason)
        logger.critical(
            f"{self._prefix} MANUAL INTERVENTION REQUIRED for trade {trade.trade_id} ({trade.pair_key}): {reason}"
        )

    # =========================================================================
    # LegsSubmitting
    # =========================================================================

    async def _submit_once(self, leg: LegOrder) -> OrderHandle:
        return await bounded_submit(
            self.gateway.submit_order,
            leg.token.token_id,
            OrderSide.BUY,
            leg.size,
            leg.price,
            OrderType.GTC,
            timeout=self.config.api_timeout_secs,
            operation="submit_order",
        )

    async def _await_late_ack(self, leg: LegOrder, timeout: PendingCallTimeout) -> Optional[OrderHandle]:
        """
        Wait out a timed-out submit; the exchange may still have accepted it.

        Returns None with the leg REJECTED if the late answer is an error, or
        UNKNOWN if no answer arrives within submit_ack_grace_secs.
        """
        grace = self.config.submit_ack_grace_secs
        logger.warning(f"{self._prefix} {leg.token.label} {timeout}; waiting {grace}s for the acknowledgement")
        try:
            return await asyncio.wait_for(timeout.pending, timeout=grace)
        except asyncio.TimeoutError:
            leg.state = LegState.UNKNOWN
            leg.error = f"{timeout}; no acknowledgement after {grace}s"
        except GatewayError as e:
            leg.state = LegState.REJECTED
            leg.error = str(e)
        logger.warning(f"{self._prefix} {leg.token.label} leg failed: {leg.error}")
        return None

    async def _submit_leg(self, leg: LegOrder) -> Optional[OrderHandle]:
        """Submit one leg with retries. Returns None if it was not accepted."""
        try:
            handle = await self.submit_policy.call(self._submit_once, leg, operation=f"submit {leg.token.label}")
        except PendingCallTimeout as e:
            handle = await self._await_late_ack(leg, e)
            if handle is None:
                return None
            logger.warning(f"{self._prefix} {leg.token.label} acknowledged late as {handle.order_id}")
        except GatewayError as e:
            leg.state = LegState.REJECTED
            leg.error = str(e)
            logger.warning(f"{self._prefix} {leg.token.label} leg failed: {e}")
            return None

        leg.order_id = handle.order_id
        leg.state = LegState.SUBMITTED
        if handle.is_matched:
            leg.filled_size = handle.filled_size or leg.size
            leg.state = LegState.FILLED
        elif handle.filled_size > 0:
            leg.filled_size = handle.filled_size
            leg.state = LegState.PARTIALLY_FILLED
        return handle

    async def _run(self, trade: Trade) -> None:
        trade.transition(TradeState.LEGS_SUBMITTING)
        logger.info(
            f"{self._prefix} Trade {trade.trade_id}: BUY {trade.shares} {trade.leg_a.token.label} @ "
            f"{trade.leg_a.price:.4f} + BUY {trade.shares} {trade.leg_b.token.label} @ {trade.leg_b.price:.4f}"
        )

        handle_a, handle_b = await asyncio.gather(self._submit_leg(trade.leg_a), self._submit_leg(trade.leg_b))

        if handle_a is None or handle_b is None:
            await self._handle_submission_failure(trade, handle_a, handle_b)
            return

        trade.transition(TradeState.AWAITING_FILLS)
        await self._await_fills(trade, handle_a, handle_b)

        trade.transition(TradeState.VERIFYING)
        report_a, report_b = await asyncio.gather(
            self.unwinder.query(handle_a), self.unwinder.query(handle_b)
        )
        self._apply_report(trade.leg_a, report_a)
        self._apply_report(trade.leg_b, report_b)

        await self._route(trade, (trade.leg_a, handle_a, report_a), (trade.leg_b, handle_b, report_b))

    async def _handle_submission_failure(
        self, trade: Trade, handle_a: Optional[OrderHandle], handle_b: Optional[OrderHandle]
    ) -> None:
        """
        Cancel any accepted leg; unwind it if it filled before the cancel landed.

        A leg whose submit outcome is unknown may be resting or filled on the
        exchange, so the trade is escalated once the accepted leg is settled.
        """
        failed = [leg for leg, h in ((trade.leg_a, handle_a), (trade.leg_b, handle_b)) if h is None]
        reason = "; ".join(f"{leg.token.label} submission failed: {leg.error}" for leg in failed)
        unknown = any(leg.state == LegState.UNKNOWN for leg in failed)

        accepted = [(leg, h) for leg, h in ((trade.leg_a, handle_a), (trade.leg_b, handle_b)) if h is not None]
        if not accepted:
            if unknown:
                raise ManualInterventionRequired(trade.trade_id, f"{reason}; order state unknown")
            trade.transition(TradeState.ABORTED, reason)
            return

        leg, handle = accepted[0]
        confirmed = await self.unwinder.settle(leg, handle)
        if unknown:
            raise ManualInterventionRequired(trade.trade_id, f"{reason}; order state unknown", leg.filled_size)
        if leg.has_fill:
            trade.transition(TradeState.UNWINDING, reason)
            await self.unwinder.unwind(trade, leg, leg.filled_size)
            return
        if not confirmed:
            raise ManualInterventionRequired(trade.trade_id, f"{reason}; cancel of {handle.order_id} not confirmed")
        trade.transition(TradeState.ABORTED, reason)

    # =========================================================================
    # AwaitingFills / Verifying
    # =========================================================================

    def _apply_report(self, leg: LegOrder, report: FillReport) -> None:
        """Take a known order record as the leg's fill, overriding the acknowledgement."""
        if report.is_unknown:
            return
        leg.filled_size = report.filled_size
        if leg.filled_size + SIZE_EPSILON >= leg.size:
            leg.state = LegState.FILLED
        elif leg.has_fill:
            leg.state = LegState.PARTIALLY_FILLED
        else:
            leg.state = LegState.SUBMITTED

    async def _await_fills(self, trade: Trade, handle_a: OrderHandle, handle_b: OrderHandle) -> None:
        """Watch fills until both legs fill or verify_fill_secs elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.verify_fill_secs

        while not (trade.leg_a.is_filled and trade.leg_b.is_filled):
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.config.fill_poll_interval_secs, remaining))

            for leg, handle in ((trade.leg_a, handle_a), (trade.leg_b, handle_b)):
                if leg.is_filled:
                    continue
                try:
                    report = await bounded_call(
                        self.gateway.query_fill, handle, timeout=self.config.api_timeout_secs, operation="query_fill"
                    )
                except GatewayError as e:
                    logger.debug(f"{self._prefix} fill poll for {handle.order_id} failed: {e}")
                    continue
                self._apply_report(leg, report)

        if trade.leg_a.is_filled and trade.leg_b.is_filled:
            logger.info(f"{self._prefix} Trade {trade.trade_id}: both legs filled")

    async def _cancel_both(self, *legs: tuple[LegOrder, OrderHandle]) -> bool:
        results = await asyncio.gather(*(self.unwinder.settle(leg, handle) for leg, handle in legs))
        return all(results)

    async def _route(self, trade: Trade, a: tuple, b: tuple) -> None:
        """Decide the outcome from the verified fill reports."""
        leg_a, handle_a, report_a = a
        leg_b, handle_b, report_b = b

        if report_a.is_unknown or report_b.is_unknown:
            await self._route_unknown(trade, a, b)
            return

        if leg_a.is_filled and leg_b.is_filled:
            trade.locked_size = min(leg_a.filled_size, leg_b.filled_size)
            trade.transition(TradeState.COMPLETED, "both legs filled")
            logger.info(
                f"{self._prefix} Trade {trade.trade_id} COMPLETED: locked {trade.locked_size} @ "
                f"{trade.spread.total:.4f} (edge {trade.spread.edge:.4f})"
            )
            return

        # Cancel resting remainders, then settle on final fills
        open_legs = [(leg, h) for leg, h, _ in (a, b) if not leg.is_filled]
        confirmed = await self._cancel_both(*open_legs)
        await self._close_out(trade, confirmed, "no fills within verify window")

    async def _close_out(self, trade: Trade, confirmed: bool, no_fill_reason: str) -> None:
        """After cancels: abort on no fills, complete on equal fills, otherwise unwind the excess."""
        leg_a, leg_b = trade.leg_a, trade.leg_b

        if not leg_a.has_fill and not leg_b.has_fill:
            if not confirmed:
                raise ManualInterventionRequired(trade.trade_id, f"{no_fill_reason}; cancel not confirmed")
            trade.transition(TradeState.ABORTED, no_fill_reason)
            logger.info(f"{self._prefix} Trade {trade.trade_id} ABORTED: {no_fill_reason}")
            return

        trade.locked_size = min(leg_a.filled_size, leg_b.filled_size)
        excess_leg = leg_a if leg_a.filled_size > leg_b.filled_size else leg_b
        excess = abs(leg_a.filled_size - leg_b.filled_size)

        if excess <= SIZE_EPSILON:
            trade.transition(TradeState.COMPLETED, "legs filled equally after cancel")
            return

        if not confirmed:
            trade.transition(TradeState.UNWINDING, "one-sided fill")
            raise ManualInterventionRequired(trade.trade_id, "cancel of resting leg not confirmed", excess)

        reason = (
            f"one-sided fill: {leg_a.token.label}={leg_a.filled_size}, {leg_b.token.label}={leg_b.filled_size}"
        )
        trade.transition(TradeState.UNWINDING, reason)
        logger.warning(f"{self._prefix} Trade {trade.trade_id} UNWINDING {excess} {excess_leg.token.label} ({reason})")
        await self.unwinder.unwind(trade, excess_leg, excess)

    async def _route_unknown(self, trade: Trade, a: tuple, b: tuple) -> None:
        """
        One or both legs unknown: unwind any fill evidence, otherwise abort.

        Fill evidence comes from the acknowledgement, the fill watch or the
        verification query. An unknown leg is treated as possibly filled on
        neither side; the evidenced fill is exited rather than assumed hedged.
        """
        # Legs with a known report first, then legs known only by earlier evidence
        ordered = sorted((a, b), key=lambda entry: entry[2].is_unknown)
        with_fill = [(leg, h) for leg, h, _ in ordered if leg.has_fill]
        if with_fill:
            leg, handle = with_fill[0]
            sibling = next((other, h) for other, h, _ in (a, b) if other is not leg)
            trade.transition(TradeState.UNWINDING, VERIFICATION_UNKNOWN)
            if not leg.is_filled:
                await self.unwinder.settle(leg, handle)
            await self.unwinder.unwind(trade, leg, leg.filled_size, sibling=sibling)
            return

        confirmed = await self._cancel_both(*((leg, h) for leg, h, _ in (a, b)))
        # The final queries behind the cancels may reveal fills
        await self._close_out(trade, confirmed, VERIFICATION_UNKNOWN)

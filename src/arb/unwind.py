"""
Unwind Manager.

Flattens one-sided exposure left by a partially executed trade:
1. Cancel the sibling's resting order and confirm the cancel
2. Sell the unmatched filled size with fill-or-kill orders, each attempt
   crossing exit_price_step further below the best bid (or the entry price
   when no bid is known), floored at the 0.01 tick
3. Partial exit fills reduce the remaining size

If exposure remains after exit_max_attempts, or a sibling cancel cannot be
confirmed, ManualInterventionRequired is raised.
"""

import asyncio
import logging
from typing import Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import ArbConfig
from ..exchanges.base import (
    BaseOrderGateway,
    FillReport,
    GatewayError,
    OrderHandle,
    OrderSide,
    OrderType,
)
from .errors import ExitFailure, ManualInterventionRequired, VerificationUnknown
from .models import LegOrder, LegState, PriceQuote, Trade, TradeState
from .policies import PendingCallTimeout, RetryPolicy, bounded_call, bounded_submit, policy_for

logger = logging.getLogger(__name__)

TICK = 0.01
SIZE_EPSILON = 1e-6

QuoteLookup = Callable[[str], Optional[PriceQuote]]


def exit_price(reference: float, step: float, attempt: int) -> float:
    """Price for exit attempt `attempt` (0-based), floored at the tick."""
    return max(TICK, round(reference - step * attempt, 2))


class UnwindManager:
    """
    Cancels siblings and exits unmatched fills.

    Attributes:
        gateway: Order gateway (live or simulated)
        config: Strategy configuration (exit attempts, price step, timeouts)
        quote_lookup: Latest quote per token id, for the best bid
    """

    def __init__(
        self,
        gateway: BaseOrderGateway,
        config: ArbConfig,
        quote_lookup: Optional[QuoteLookup] = None,
        backoff: float = 0.5,
    ):
        self.gateway = gateway
        self.config = config
        self.quote_lookup = quote_lookup or (lambda token_id: None)
        self.backoff = backoff
        self.cancel_policy: RetryPolicy = policy_for(config.submit_max_attempts, backoff)
        self.query_policy: RetryPolicy = policy_for(2, backoff)
        self._prefix = "[SIM]" if gateway.is_simulated else "[LIVE]"

    async def _cancel_once(self, handle: OrderHandle) -> bool:
        return await bounded_call(
            self.gateway.cancel_order, handle, timeout=self.config.api_timeout_secs, operation="cancel_order"
        )

    async def _query_once(self, handle: OrderHandle) -> FillReport:
        return await bounded_call(
            self.gateway.query_fill, handle, timeout=self.config.api_timeout_secs, operation="query_fill"
        )

    async def verified_fill(self, handle: OrderHandle) -> FillReport:
        """
        Fill query retried once.

        Raises:
            VerificationUnknown: If the fill state cannot be determined
        """
        try:
            report = await self.query_policy.call(self._query_once, handle, operation=f"query_fill {handle.order_id}")
        except GatewayError as e:
            raise VerificationUnknown(handle.order_id, str(e)) from e
        if report.is_unknown:
            raise VerificationUnknown(handle.order_id, report.raw.get("error", "no fill state"))
        return report

    async def query(self, handle: OrderHandle) -> FillReport:
        """Fill query as a typed outcome: unknown state becomes FillStatus.UNKNOWN."""
        try:
            return await self.verified_fill(handle)
        except VerificationUnknown as e:
            logger.warning(f"{self._prefix} {e}")
            return FillReport.unknown(e.reason)

    async def cancel(self, handle: OrderHandle) -> bool:
        """
        Cancel with retries.

        Returns:
            True once the exchange confirms the order no longer rests
        """
        try:
            confirmed = await self.cancel_policy.call(self._cancel_once, handle, operation=f"cancel {handle.order_id}")
        except GatewayError as e:
            logger.error(f"{self._prefix} Cancel of {handle.order_id} failed: {e}")
            return False
        if not confirmed:
            logger.error(f"{self._prefix} Cancel of {handle.order_id} not confirmed")
        return confirmed

    async def settle(self, leg: LegOrder, handle: OrderHandle) -> bool:
        """
        Cancel a leg's resting remainder and record its final filled size.

        A known order record replaces any earlier fill evidence; when the
        record cannot be read the earlier evidence stands.

        Returns:
            True if the cancel was confirmed
        """
        confirmed = await self.cancel(handle)
        report = await self.query(handle)
        if not report.is_unknown:
            leg.filled_size = report.filled_size
        if leg.filled_size + SIZE_EPSILON >= leg.size:
            leg.state = LegState.FILLED
        elif confirmed:
            leg.state = LegState.CANCELLED if not leg.has_fill else LegState.PARTIALLY_FILLED
        else:
            leg.state = LegState.PARTIALLY_FILLED if leg.has_fill else LegState.SUBMITTED
        return confirmed

    def _reference_price(self, leg: LegOrder) -> tuple[float, int]:
        """(reference price, first attempt offset): best bid if known, else entry price one step down."""
        quote = self.quote_lookup(leg.token.token_id)
        if quote is not None and quote.bid is not None:
            return quote.bid, 0
        return leg.price, 1

    async def _await_late_exit(
        self, trade: Trade, exit_order: LegOrder, timeout: PendingCallTimeout, remaining: float
    ) -> OrderHandle:
        """
        Wait out a timed-out exit instead of sending another one.

        Raises:
            ExitFailure: If the late answer is a rejection
            ManualInterventionRequired: If no answer arrives within submit_ack_grace_secs
        """
        grace = self.config.submit_ack_grace_secs
        try:
            return await asyncio.wait_for(timeout.pending, timeout=grace)
        except asyncio.TimeoutError:
            exit_order.state = LegState.UNKNOWN
            exit_order.error = f"{timeout}; no acknowledgement after {grace}s"
            raise ManualInterventionRequired(trade.trade_id, f"exit {exit_order.error}", remaining)
        except GatewayError as e:
            exit_order.state = LegState.REJECTED
            exit_order.error = str(e)
            raise ExitFailure(f"exit @ {exit_order.price} not filled: {e}") from e

    async def _exit_attempt(self, trade: Trade, leg: LegOrder, remaining: float, attempt: int) -> float:
        """
        One FOK exit. Returns the size filled.

        Raises:
            ExitFailure: If the exit filled nothing
        """
        reference, offset = self._reference_price(leg)
        price = exit_price(reference, self.config.exit_price_step, attempt + offset)
        exit_order = LegOrder(token=leg.token, side="SELL", size=remaining, price=price, order_type="FOK")
        trade.exits.append(exit_order)

        logger.warning(
            f"{self._prefix} Unwind {trade.trade_id}: SELL {remaining} {leg.token.label} @ {price} "
            f"(attempt {attempt + 1}/{self.config.exit_max_attempts})"
        )
        try:
            handle = await bounded_submit(
                self.gateway.submit_order,
                leg.token.token_id,
                OrderSide.SELL,
                remaining,
                price,
                OrderType.FOK,
                timeout=self.config.api_timeout_secs,
                operation="exit_order",
            )
        except PendingCallTimeout as e:
            handle = await self._await_late_exit(trade, exit_order, e, remaining)
        except GatewayError as e:
            exit_order.state = LegState.REJECTED
            exit_order.error = str(e)
            raise ExitFailure(f"exit @ {price} not filled: {e}") from e

        exit_order.order_id = handle.order_id
        exit_order.state = LegState.SUBMITTED
        if handle.is_matched:
            filled = remaining
        else:
            report = await self.query(handle)
            filled = 0.0 if report.is_unknown else report.filled_size

        exit_order.filled_size = filled
        if filled + SIZE_EPSILON >= remaining:
            exit_order.state = LegState.FILLED
        elif filled > 0:
            exit_order.state = LegState.PARTIALLY_FILLED
        else:
            exit_order.state = LegState.CANCELLED
            raise ExitFailure(f"exit @ {price} filled nothing")
        return filled

    async def unwind(
        self,
        trade: Trade,
        leg: LegOrder,
        size: float,
        sibling: Optional[tuple[LegOrder, OrderHandle]] = None,
    ) -> None:
        """
        Flatten `size` shares of `leg`, cancelling `sibling` first.

        On success the trade transitions to UNWOUND.

        Raises:
            ManualInterventionRequired: If the sibling cancel is unconfirmed or
                exposure remains after the last exit attempt
        """
        if sibling is not None:
            sibling_leg, sibling_handle = sibling
            if not await self.settle(sibling_leg, sibling_handle):
                raise ManualInterventionRequired(
                    trade.trade_id, f"cancel of sibling {sibling_handle.order_id} not confirmed", size
                )
            # Sibling fills revealed by the final query hedge part of the exposure
            if sibling_leg.has_fill:
                hedged = min(size, sibling_leg.filled_size)
                trade.locked_size = max(trade.locked_size, hedged)
                if sibling_leg.filled_size > size:
                    leg, size = sibling_leg, sibling_leg.filled_size - size
                else:
                    size -= hedged
                logger.info(
                    f"{self._prefix} Trade {trade.trade_id}: sibling filled {sibling_leg.filled_size}, "
                    f"unwinding {size} {leg.token.label}"
                )

        remaining = size
        if remaining <= SIZE_EPSILON:
            trade.transition(TradeState.UNWOUND, reason=trade.reason or "sibling fill hedged exposure")
            return

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.exit_max_attempts),
            wait=wait_exponential(multiplier=self.backoff, min=0, max=self.backoff * 4),
            retry=retry_if_exception_type(ExitFailure),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    index = attempt.retry_state.attempt_number - 1
                    filled = await self._exit_attempt(trade, leg, remaining, index)
                    remaining = max(0.0, remaining - filled)
                    if remaining > SIZE_EPSILON:
                        raise ExitFailure(f"{remaining} shares left after partial exit")
        except ExitFailure as e:
            logger.error(f"{self._prefix} Unwind {trade.trade_id} exits exhausted: {e}")

        if remaining > SIZE_EPSILON:
            raise ManualInterventionRequired(
                trade.trade_id, f"exposure remains after {self.config.exit_max_attempts} exit attempts", remaining
            )

        trade.transition(TradeState.UNWOUND, reason=trade.reason or "unwound one-sided fill")
        logger.warning(f"{self._prefix} Trade {trade.trade_id} unwound {size} {leg.token.label}")

"""
Simulated Order Gateway.

Implements BaseOrderGateway but matches orders against observed quotes
instead of the exchange. Used in simulation mode; the live gateway is never
constructed when this one is in use.

Fill model:
- BUY fills when the best ask is at or below the order price, either at
  submission or on any quote observed afterwards while the order rests
- SELL fills when the best bid is at or above the order price; with no bid
  known, a fill-or-kill SELL at the tick floor is assumed to clear
- FOK/FAK orders that do not cross at submission are killed (SubmissionError)

Quotes arrive via on_quote(), registered as a pair monitor listener.
"""

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from .base import (
    BaseOrderGateway,
    FillReport,
    OrderHandle,
    OrderSide,
    OrderType,
    SubmissionError,
)

if TYPE_CHECKING:
    from ..arb.models import PriceQuote

logger = logging.getLogger(__name__)

TICK_FLOOR = 0.01

# Filled or cancelled orders kept for late fill queries
MAX_CLOSED_ORDERS = 1000


@dataclass
class SimOrder:
    """Order resting in the simulated book."""

    handle: OrderHandle
    filled_size: float = 0.0
    fill_price: Optional[float] = None
    cancelled: bool = False

    @property
    def is_open(self) -> bool:
        return not self.cancelled and self.filled_size < self.handle.size


class SimulatedOrderGateway(BaseOrderGateway):
    """
    Quote-driven order matching for simulation mode.

    Attributes:
        quotes: Latest quote per token id.
        orders: Open orders plus the most recent closed ones, by order id.
    """

    is_simulated = True

    def __init__(self, max_closed_orders: int = MAX_CLOSED_ORDERS) -> None:
        super().__init__()
        self._name = "simulated"
        self.quotes: dict[str, "PriceQuote"] = {}
        self.orders: dict[str, SimOrder] = {}
        self._resting: dict[str, dict[str, SimOrder]] = {}
        self._closed: "OrderedDict[str, None]" = OrderedDict()
        self._max_closed = max_closed_orders
        self._lock = threading.Lock()

    def on_quote(self, quote: "PriceQuote") -> None:
        """Record a quote and fill any resting order it crosses."""
        with self._lock:
            self.quotes[quote.token_id] = quote
            for order in list(self._resting.get(quote.token_id, {}).values()):
                if self._try_fill(order, quote):
                    self._close(order)

    def _close(self, order: SimOrder) -> None:
        """Move an order out of the resting index; evict the oldest closed orders."""
        handle = order.handle
        resting = self._resting.get(handle.token_id)
        if resting is not None:
            resting.pop(handle.order_id, None)
            if not resting:
                del self._resting[handle.token_id]
        self._closed[handle.order_id] = None
        while len(self._closed) > self._max_closed:
            evicted, _ = self._closed.popitem(last=False)
            self.orders.pop(evicted, None)

    def _crosses(self, handle: OrderHandle, quote: Optional["PriceQuote"]) -> bool:
        if handle.side == OrderSide.BUY:
            return quote is not None and quote.ask <= handle.price
        if quote is not None and quote.bid is not None:
            return quote.bid >= handle.price
        return handle.order_type != OrderType.GTC and handle.price <= TICK_FLOOR

    def _try_fill(self, order: SimOrder, quote: Optional["PriceQuote"]) -> bool:
        if not self._crosses(order.handle, quote):
            return False
        order.filled_size = order.handle.size
        order.fill_price = order.handle.price
        order.handle.filled_size = order.filled_size
        order.handle.status = "MATCHED"
        logger.info(
            f"[SIM] Filled {order.handle.side} {order.handle.size} @ {order.handle.price} "
            f"token={order.handle.token_id[:16]} ({order.handle.order_id})"
        )
        return True

    def submit_order(
        self,
        token_id: str,
        side: OrderSide,
        size: float,
        price: float,
        order_type: OrderType = OrderType.GTC,
    ) -> OrderHandle:
        if not TICK_FLOOR <= price <= 0.99:
            raise SubmissionError(f"Price {price} must be between 0.01 and 0.99")
        if size <= 0:
            raise SubmissionError("Size must be positive")

        handle = OrderHandle(
            order_id=f"sim-{uuid.uuid4().hex[:12]}",
            token_id=token_id,
            side=side,
            size=size,
            price=price,
            order_type=order_type,
            status="LIVE",
        )
        order = SimOrder(handle=handle)

        with self._lock:
            filled = self._try_fill(order, self.quotes.get(token_id))
            if not filled and order_type != OrderType.GTC:
                raise SubmissionError(f"[SIM] {order_type} {side} {size} @ {price} killed: no crossing quote")
            self.orders[handle.order_id] = order
            if filled:
                self._close(order)
            else:
                self._resting.setdefault(token_id, {})[handle.order_id] = order

        if not filled:
            logger.info(f"[SIM] Resting {side} {size} @ {price} token={token_id[:16]} ({handle.order_id})")
        return handle

    def cancel_order(self, handle: OrderHandle) -> bool:
        with self._lock:
            order = self.orders.get(handle.order_id)
            if order is None:
                return False
            if order.is_open:
                order.cancelled = True
                handle.status = "CANCELED"
                self._close(order)
                logger.info(f"[SIM] Cancelled {handle.order_id}")
            return True

    def query_fill(self, handle: OrderHandle) -> FillReport:
        with self._lock:
            order = self.orders.get(handle.order_id)
            if order is None:
                return FillReport.unknown(f"order {handle.order_id} not found")
            if order.cancelled:
                status = "CANCELED"
            elif order.is_open:
                status = "LIVE"
            else:
                status = "MATCHED"
            return FillReport.from_sizes(handle.size, order.filled_size, order_status=status)

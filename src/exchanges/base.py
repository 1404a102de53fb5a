"""
Abstract order gateway interface.

This module defines the core abstractions for placing, cancelling and querying
orders on the Polymarket CLOB: order sides and types, order handles, fill
reports, the gateway error taxonomy, and the abstract gateway that both the
live and the simulated implementations inherit from.

Gateway methods are synchronous; the execution engine runs them in worker
threads so both legs of a trade are dispatched concurrently.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class OrderSide(Enum):
    """Order side enumeration."""

    BUY = "BUY"
    SELL = "SELL"

    def __str__(self) -> str:
        return self.value


class OrderType(Enum):
    """Order time-in-force enumeration (CLOB order types)."""

    GTC = "GTC"
    FOK = "FOK"
    FAK = "FAK"

    def __str__(self) -> str:
        return self.value


class FillStatus(Enum):
    """Fill status of a submitted order."""

    FILLED = "filled"
    PARTIALLY_FILLED = "partially_filled"
    UNFILLED = "unfilled"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


@dataclass
class OrderHandle:
    """
    Acknowledgement of an accepted order.

    Attributes:
        order_id: Exchange order id.
        token_id: Outcome token traded.
        side: Buy or sell.
        size: Requested size in shares.
        price: Limit price.
        order_type: Time in force.
        status: Status string from the acknowledgement (e.g. LIVE, MATCHED).
        filled_size: Size reported filled in the acknowledgement.
        submitted_at: Submission timestamp.
        raw: Raw exchange response data.
    """

    order_id: str
    token_id: str
    side: OrderSide
    size: float
    price: float
    order_type: OrderType = OrderType.GTC
    status: str = ""
    filled_size: float = 0.0
    submitted_at: float = field(default_factory=time.time)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_matched(self) -> bool:
        """Check if the acknowledgement already reports a full match."""
        if self.filled_size > 0:
            return self.filled_size + 1e-6 >= self.size
        return self.status.upper() in ("MATCHED", "FILLED")


@dataclass
class FillReport:
    """
    Result of a fill query.

    Attributes:
        status: Filled, partially filled, unfilled, or unknown.
        filled_size: Shares matched so far.
        order_status: Exchange status string, when known.
        raw: Raw exchange response data.
    """

    status: FillStatus
    filled_size: float = 0.0
    order_status: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_filled(self) -> bool:
        return self.status == FillStatus.FILLED

    @property
    def has_fill(self) -> bool:
        """Check if any size is known to be matched."""
        return self.filled_size > 0 and self.status != FillStatus.UNKNOWN

    @property
    def is_unknown(self) -> bool:
        return self.status == FillStatus.UNKNOWN

    @classmethod
    def from_sizes(
        cls, original_size: float, size_matched: float, order_status: str = "", raw: Optional[dict] = None
    ) -> "FillReport":
        """Classify a fill from the requested and matched sizes."""
        if size_matched <= 0:
            status = FillStatus.UNFILLED
        elif size_matched + 1e-9 >= original_size:
            status = FillStatus.FILLED
        else:
            status = FillStatus.PARTIALLY_FILLED
        return cls(status=status, filled_size=size_matched, order_status=order_status, raw=raw or {})

    @classmethod
    def unknown(cls, reason: str = "") -> "FillReport":
        return cls(status=FillStatus.UNKNOWN, raw={"error": reason} if reason else {})


class GatewayError(Exception):
    """Base exception for order gateway errors."""

    pass


class TransientGatewayError(GatewayError):
    """Raised on transport-level failures (timeouts, 5xx, dropped connections). Retryable."""

    pass


class SubmissionError(GatewayError):
    """Raised when an order is rejected or submission retries are exhausted."""

    pass


class BaseOrderGateway(ABC):
    """
    Abstract base class for order gateways.

    Attributes:
        name: Gateway name identifier.
        is_simulated: True for gateways that never reach the exchange.
    """

    is_simulated = False

    def __init__(self) -> None:
        self._name = "base"

    @property
    def name(self) -> str:
        """Gateway name identifier."""
        return self._name

    @abstractmethod
    def submit_order(
        self,
        token_id: str,
        side: OrderSide,
        size: float,
        price: float,
        order_type: OrderType = OrderType.GTC,
    ) -> OrderHandle:
        """
        Submit a limit order.

        Args:
            token_id: Outcome token to trade.
            side: Buy or sell.
            size: Size in shares.
            price: Limit price (0.01 - 0.99).
            order_type: GTC, FOK or FAK.

        Returns:
            OrderHandle for the accepted order.

        Raises:
            SubmissionError: If the order is rejected.
            TransientGatewayError: On transport failures.
        """
        pass

    @abstractmethod
    def cancel_order(self, handle: OrderHandle) -> bool:
        """
        Cancel a resting order.

        Args:
            handle: Handle of the order to cancel.

        Returns:
            True if the exchange confirmed the cancel (or the order is no longer live).

        Raises:
            TransientGatewayError: On transport failures.
        """
        pass

    @abstractmethod
    def query_fill(self, handle: OrderHandle) -> FillReport:
        """
        Query how much of an order has filled.

        Args:
            handle: Handle of the order to query.

        Returns:
            FillReport. Status is UNKNOWN when the exchange cannot say.

        Raises:
            TransientGatewayError: On transport failures.
        """
        pass

    def __repr__(self) -> str:
        mode = "simulated" if self.is_simulated else "live"
        return f"<{self.__class__.__name__} mode={mode}>"

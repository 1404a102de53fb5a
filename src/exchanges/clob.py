"""
Live Order Gateway

Places, cancels and queries orders on the Polymarket CLOB via py-clob-client.

Entry legs are GTC limit BUYs at the quoted ask; unwind exits are FOK SELLs.
Errors from the client are classified so the execution engine can retry
transport failures and abort on rejections:
- timeouts, dropped connections, 5xx, 429 -> TransientGatewayError
- any other API error or an unsuccessful response -> SubmissionError

IMPORTANT: Requires credentials to be configured in .env file:
- POLYMARKET_PRIVATE_KEY: Your wallet private key
- POLYMARKET_FUNDER: Your proxy wallet address (holds funds)
"""
import logging
import time
from typing import Any

import requests
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import OrderArgs, OrderType as ClobOrderType, PartialCreateOrderOptions
from py_clob_client.exceptions import PolyApiException
from py_clob_client.order_builder.constants import BUY, SELL

from ..config import (
    CHAIN_ID,
    CLOB_BASE_URL,
    POLYMARKET_FUNDER,
    POLYMARKET_PRIVATE_KEY,
    POLYMARKET_SIGNATURE_TYPE,
)
from .base import (
    BaseOrderGateway,
    FillReport,
    FillStatus,
    OrderHandle,
    OrderSide,
    OrderType,
    SubmissionError,
    TransientGatewayError,
)

logger = logging.getLogger(__name__)

# HTTP statuses worth retrying
TRANSIENT_STATUS_CODES = {425, 429, 500, 502, 503, 504}

# CLOB order statuses
DONE_STATUSES = {"MATCHED", "FILLED", "CANCELED", "CANCELLED", "CANCELED_MARKET_RESOLVED", "INVALID"}


def build_clob_client(
    private_key: str = POLYMARKET_PRIVATE_KEY,
    funder: str = POLYMARKET_FUNDER,
    signature_type: int = POLYMARKET_SIGNATURE_TYPE,
) -> ClobClient:
    """
    Initialize an L2-authenticated CLOB client.

    Args:
        private_key: Wallet private key (hex, with or without 0x)
        funder: Proxy wallet address that holds funds
        signature_type: 1 = POLY_PROXY, 2 = GNOSIS_SAFE

    Returns:
        ClobClient with API credentials set

    Raises:
        ValueError: If credentials are not configured
    """
    if not private_key or not funder:
        raise ValueError("POLYMARKET_PRIVATE_KEY and POLYMARKET_FUNDER must be set for live trading")

    key = private_key if private_key.startswith("0x") else "0x" + private_key
    client = ClobClient(
        CLOB_BASE_URL,
        key=key,
        chain_id=CHAIN_ID,
        funder=funder,
        signature_type=signature_type,
    )
    client.set_api_creds(client.create_or_derive_api_creds())
    logger.info(f"CLOB client initialized: signer={client.get_address()}, funder={funder}")
    return client


def _classify(error: Exception, operation: str) -> Exception:
    """Map a client exception onto the gateway error taxonomy."""
    if isinstance(error, (requests.Timeout, requests.ConnectionError, TimeoutError, ConnectionError)):
        return TransientGatewayError(f"{operation}: {error}")
    if isinstance(error, PolyApiException):
        status = getattr(error, "status_code", None)
        if status is None or status in TRANSIENT_STATUS_CODES:
            return TransientGatewayError(f"{operation}: {error}")
        return SubmissionError(f"{operation} rejected ({status}): {error}")
    return SubmissionError(f"{operation} failed: {error}")


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _ack_filled_size(response: dict, side: OrderSide, size: float, order_type: OrderType, status: str) -> float:
    """
    Shares matched at submission.

    BUY responses report shares received as takingAmount, SELL responses
    report shares given as makingAmount. A matched FOK without amounts filled
    in full; any other order without amounts reports nothing until queried.
    """
    amount = response.get("takingAmount") if side == OrderSide.BUY else response.get("makingAmount")
    filled = _to_float(amount)
    if filled > 0:
        return min(filled, size)
    if status in ("MATCHED", "FILLED") and order_type == OrderType.FOK:
        return size
    return 0.0


class ClobOrderGateway(BaseOrderGateway):
    """
    Order gateway backed by py-clob-client.

    SECURITY WARNING:
    - Never commit credentials to git
    - Start with small sizes
    - Run in simulation mode first

    Example:
        gateway = ClobOrderGateway(build_clob_client())
        handle = gateway.submit_order("abc123", OrderSide.BUY, 10, 0.48)
        report = gateway.query_fill(handle)
    """

    def __init__(self, client: ClobClient, tick_size: str = "0.01", min_request_interval: float = 0.1):
        super().__init__()
        self._name = "polymarket-clob"
        self._client = client
        self._tick_size = tick_size

        # Rate limiting
        self._last_request_time = 0.0
        self._min_request_interval = min_request_interval

    def _rate_limit(self) -> None:
        now = time.time()
        elapsed = now - self._last_request_time
        if elapsed < self._min_request_interval:
            time.sleep(self._min_request_interval - elapsed)
        self._last_request_time = time.time()

    def submit_order(
        self,
        token_id: str,
        side: OrderSide,
        size: float,
        price: float,
        order_type: OrderType = OrderType.GTC,
    ) -> OrderHandle:
        if not 0.01 <= price <= 0.99:
            raise SubmissionError(f"Price {price} must be between 0.01 and 0.99")
        if size <= 0:
            raise SubmissionError("Size must be positive")

        self._rate_limit()

        order_args = OrderArgs(
            token_id=token_id,
            price=price,
            size=size,
            side=BUY if side == OrderSide.BUY else SELL,
        )
        options = PartialCreateOrderOptions(tick_size=self._tick_size)

        try:
            signed = self._client.create_order(order_args, options)
            response = self._client.post_order(signed, getattr(ClobOrderType, order_type.value))
        except Exception as e:
            raise _classify(e, "submit_order") from e

        if not response or not response.get("success", True) or response.get("errorMsg"):
            message = (response or {}).get("errorMsg") or "empty response"
            raise SubmissionError(f"Order rejected: {message}")

        order_id = response.get("orderID") or response.get("id")
        if not order_id:
            raise SubmissionError(f"Order response missing id: {response}")

        status = str(response.get("status", "")).upper()
        filled = _ack_filled_size(response, side, size, order_type, status)

        logger.info(
            f"[LIVE] {side} {size} @ {price} {order_type} token={token_id[:16]}... -> {order_id} "
            f"({status}, filled {filled})"
        )
        return OrderHandle(
            order_id=order_id,
            token_id=token_id,
            side=side,
            size=size,
            price=price,
            order_type=order_type,
            status=status,
            filled_size=filled,
            raw=response,
        )

    def cancel_order(self, handle: OrderHandle) -> bool:
        self._rate_limit()
        try:
            response = self._client.cancel(handle.order_id)
        except Exception as e:
            raise _classify(e, "cancel_order") from e

        canceled = (response or {}).get("canceled") or []
        if handle.order_id in canceled:
            logger.info(f"[LIVE] Cancelled order {handle.order_id}")
            return True

        not_canceled = (response or {}).get("not_canceled") or {}
        reason = not_canceled.get(handle.order_id, "no confirmation")
        logger.warning(f"[LIVE] Cancel not confirmed for {handle.order_id}: {reason}")

        # The order may already be matched or cancelled; that is not a resting order
        report = self.query_fill(handle)
        return report.order_status.upper() in DONE_STATUSES

    def query_fill(self, handle: OrderHandle) -> FillReport:
        self._rate_limit()
        try:
            order = self._client.get_order(handle.order_id)
        except Exception as e:
            raise _classify(e, "query_fill") from e

        if not order:
            return FillReport.unknown(f"order {handle.order_id} not found")

        status = str(order.get("status", "")).upper()
        original_size = _to_float(order.get("original_size"), handle.size)
        size_matched = _to_float(order.get("size_matched"))

        if status in ("MATCHED", "FILLED") and size_matched <= 0:
            size_matched = original_size

        report = FillReport.from_sizes(original_size, size_matched, order_status=status, raw=order)
        if not status and report.status == FillStatus.UNFILLED:
            return FillReport.unknown(f"order {handle.order_id} has no status")
        return report

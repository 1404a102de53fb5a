"""
Order gateways for the trading system.

This module provides the order gateway abstraction and implementations:
- BaseOrderGateway: Abstract interface (submit, cancel, query fill)
- SimulatedOrderGateway: Quote-driven fill simulation
- ClobOrderGateway: Polymarket CLOB via py-clob-client

Usage:
    from src.exchanges import ClobOrderGateway, OrderSide, OrderType, build_clob_client

    gateway = ClobOrderGateway(build_clob_client())
    handle = gateway.submit_order(token_id, OrderSide.BUY, 10, 0.48, OrderType.GTC)
    report = gateway.query_fill(handle)
"""

from .base import (
    BaseOrderGateway,
    FillReport,
    FillStatus,
    GatewayError,
    OrderHandle,
    OrderSide,
    OrderType,
    SubmissionError,
    TransientGatewayError,
)
from .clob import ClobOrderGateway, build_clob_client
from .paper import SimulatedOrderGateway

__all__ = [
    # Base classes and types
    "BaseOrderGateway",
    "OrderHandle",
    "FillReport",
    "FillStatus",
    "OrderSide",
    "OrderType",
    # Exceptions
    "GatewayError",
    "TransientGatewayError",
    "SubmissionError",
    # Implementations
    "SimulatedOrderGateway",
    "ClobOrderGateway",
    "build_clob_client",
]

"""Error taxonomy for the arbitrage engine."""

from typing import Optional


class ArbError(Exception):
    """Base exception for arbitrage engine errors."""

    pass


class FeedUnavailable(ArbError):
    """Raised when no usable quote can be obtained. Recoverable; pauses the window."""

    pass


class ReferenceUnavailable(ArbError):
    """Raised when a window's price-to-beat could not be captured."""

    def __init__(self, window_key: str, reason: str):
        super().__init__(f"Price-to-beat unavailable for {window_key}: {reason}")
        self.window_key = window_key
        self.reason = reason


class VerificationUnknown(ArbError):
    """Raised when a leg's fill state cannot be determined."""

    def __init__(self, order_id: Optional[str], reason: str = ""):
        super().__init__(f"Fill state unknown for order {order_id}: {reason}")
        self.order_id = order_id
        self.reason = reason


class ExitFailure(ArbError):
    """Raised when a single unwind exit attempt does not flatten the position."""

    pass


class ManualInterventionRequired(ArbError):
    """Raised when exposure remains after every unwind attempt is spent."""

    def __init__(self, trade_id: str, reason: str, remaining_size: float = 0.0):
        super().__init__(
            f"Manual intervention required for trade {trade_id}: {reason} "
            f"(remaining={remaining_size})"
        )
        self.trade_id = trade_id
        self.reason = reason
        self.remaining_size = remaining_size

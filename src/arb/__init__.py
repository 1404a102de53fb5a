"""
15m/5m Up/Down cross-market arbitrage on Polymarket.

This module provides:
- Price-to-beat capture and the pair monitor
- Entry decisions and two-leg execution with automatic unwind
- Simulation and quote replay
- Trade archive, position ledger and resolution
"""

from .decision import EntryDecisionEngine
from .errors import (
    ArbError,
    ExitFailure,
    FeedUnavailable,
    ManualInterventionRequired,
    ReferenceUnavailable,
    VerificationUnknown,
)
from .execution import TradeExecutor
from .ledger import PositionLedger, TradeLedger
from .models import (
    CandidateSpread,
    EnterTrade,
    MarketWindow,
    Outcome,
    OutcomeToken,
    PairSnapshot,
    PriceQuote,
    PriceToBeat,
    Timeframe,
    Trade,
    TradeState,
    WindowPair,
)
from .pair_monitor import PairMonitor
from .price_to_beat import PriceToBeatTracker
from .simulation import QuoteReplay
from .unwind import UnwindManager

__all__ = [
    "EntryDecisionEngine",
    "TradeExecutor",
    "UnwindManager",
    "PairMonitor",
    "PriceToBeatTracker",
    "QuoteReplay",
    "TradeLedger",
    "PositionLedger",
    # Models
    "CandidateSpread",
    "EnterTrade",
    "MarketWindow",
    "Outcome",
    "OutcomeToken",
    "PairSnapshot",
    "PriceQuote",
    "PriceToBeat",
    "Timeframe",
    "Trade",
    "TradeState",
    "WindowPair",
    # Errors
    "ArbError",
    "FeedUnavailable",
    "ReferenceUnavailable",
    "VerificationUnknown",
    "ExitFailure",
    "ManualInterventionRequired",
]

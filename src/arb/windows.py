"""
Window arithmetic for Polymarket Up/Down markets.

Up/Down periods are aligned to US/Eastern wall-clock time. The 15m market's
last five minutes coincide with a 5m market that ends at the same instant;
that stretch is the overlap window the arbitrage trades in.
"""

import time
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from .models import MarketWindow, Timeframe

ET = ZoneInfo("America/New_York")

# The overlap is the last 5 minutes of the 15m window
OVERLAP_START_OFFSET = Timeframe.FIFTEEN_MIN.seconds - Timeframe.FIVE_MIN.seconds


def period_start(ts: int, minutes: int) -> int:
    """
    Round a unix timestamp down to the ET-aligned period start.

    Args:
        ts: Unix timestamp (seconds)
        minutes: Period length in minutes (15 or 5)

    Returns:
        Unix timestamp of the period start
    """
    local = datetime.fromtimestamp(ts, tz=ET)
    floored = local.replace(minute=local.minute - local.minute % minutes, second=0, microsecond=0)
    return int(floored.timestamp())


def current_window(symbol: str, timeframe: Timeframe, now: Optional[float] = None) -> MarketWindow:
    """Window of the given timeframe that contains `now`."""
    ts = int(now if now is not None else time.time())
    start = period_start(ts, timeframe.seconds // 60)
    return MarketWindow(symbol=symbol.lower(), timeframe=timeframe, start=start)


def is_overlap(now: float, start_15m: int) -> bool:
    """True during the last five minutes of the 15m window starting at `start_15m`."""
    elapsed = now - start_15m
    return OVERLAP_START_OFFSET <= elapsed < Timeframe.FIFTEEN_MIN.seconds


def seconds_until_overlap(now: Optional[float] = None) -> float:
    """Seconds until the next overlap window opens (0 if one is open now)."""
    ts = now if now is not None else time.time()
    start_15m = period_start(int(ts), 15)
    if is_overlap(ts, start_15m):
        return 0.0
    overlap_start = start_15m + OVERLAP_START_OFFSET
    if ts < overlap_start:
        return overlap_start - ts
    return start_15m + Timeframe.FIFTEEN_MIN.seconds + OVERLAP_START_OFFSET - ts


def iso_utc(ts: float) -> str:
    """Format a unix timestamp as ISO-8601 UTC with a Z suffix."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

"""
Entry Decision Engine.

Evaluates each PairSnapshot and emits at most one EnterTrade per pair at a
time. A candidate spread qualifies when:
1. its total ask is strictly below sum_threshold
2. both windows have a captured price-to-beat, neither is marked
   non-tradeable, and the two references agree within the symbol tolerance
3. no trade is in flight for the pair
4. the overlap window is open with at least min_seconds_left remaining,
   the per-pair cooldown has elapsed, and the kill switch is off

When both spreads qualify the lower total wins; equal totals go to the first
in evaluation order (15m Up + 5m Down).

The in-flight flag is a per-pair cell changed only through try_acquire() and
release(); it is released when the trade is archived.
"""

import logging
import threading
import time
from typing import Callable, Optional

from ..config import ArbConfig
from .models import CandidateSpread, EnterTrade, PairSnapshot, WindowPair
from .price_to_beat import PriceToBeatTracker

logger = logging.getLogger(__name__)


def select_spread(spreads: list[CandidateSpread]) -> Optional[CandidateSpread]:
    """Lowest total; ties go to the earliest spread in the list."""
    best = None
    for spread in spreads:
        if best is None or spread.total < best.total:
            best = spread
    return best


class EntryDecisionEngine:
    """
    Gatekeeper between the pair monitor and order execution.

    Attributes:
        config: Strategy configuration
        tracker: Price-to-beat tracker holding the frozen references
        last_rejection: Why the most recent evaluation emitted nothing
    """

    def __init__(
        self,
        config: ArbConfig,
        tracker: PriceToBeatTracker,
        kill_switch: Callable[[], bool] = lambda: False,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.tracker = tracker
        self._kill_switch = kill_switch
        self._clock = clock

        self._in_flight: dict[str, bool] = {}
        self._lock = threading.Lock()
        self._last_entry_at: dict[str, float] = {}
        self.last_rejection = ""

    # =========================================================================
    # In-flight cell
    # =========================================================================

    def _compare_and_set(self, pair_key: str, expected: bool, new: bool) -> bool:
        with self._lock:
            if self._in_flight.get(pair_key, False) != expected:
                return False
            self._in_flight[pair_key] = new
            return True

    def try_acquire(self, pair_key: str) -> bool:
        """Mark the pair in flight. False if a trade is already in flight."""
        return self._compare_and_set(pair_key, False, True)

    def release(self, pair_key: str) -> None:
        """Clear the in-flight flag once the pair's trade is archived."""
        if not self._compare_and_set(pair_key, True, False):
            logger.warning(f"Release of {pair_key} with no trade in flight")

    def in_flight(self, pair_key: str) -> bool:
        return self._in_flight.get(pair_key, False)

    # =========================================================================
    # Gates
    # =========================================================================

    def references_match(self, pair: WindowPair) -> tuple[bool, str]:
        """Both windows captured, tradeable, and settling against the same strike."""
        for window in (pair.window_15m, pair.window_5m):
            if not self.tracker.is_tradeable(window.key):
                return False, f"{window.key} non-tradeable"

        ptb_15 = self.tracker.get(pair.window_15m.key)
        ptb_5 = self.tracker.get(pair.window_5m.key)
        if ptb_15 is None or ptb_5 is None:
            return False, (
                f"waiting for price-to-beat 15m={ptb_15.value if ptb_15 else None}, "
                f"5m={ptb_5.value if ptb_5 else None}"
            )

        tolerance = self.config.price_to_beat_tolerance_for(pair.symbol)
        gap = abs(ptb_15.value - ptb_5.value)
        if gap > tolerance:
            return False, f"|15m - 5m| price-to-beat {gap:.6f} > tolerance {tolerance}"
        return True, ""

    def _timing_ok(self, pair: WindowPair, now: float) -> tuple[bool, str]:
        if self._kill_switch():
            return False, "kill switch active"
        if not pair.in_overlap(now):
            return False, "outside overlap window"
        if pair.seconds_left(now) < self.config.min_seconds_left:
            return False, f"{pair.seconds_left(now):.1f}s left < {self.config.min_seconds_left}s"
        last = self._last_entry_at.get(pair.key)
        if last is not None and now - last < self.config.trade_interval_secs:
            return False, "cooldown"
        return True, ""

    def qualifying(self, snapshot: PairSnapshot) -> list[CandidateSpread]:
        """Spreads of `snapshot` below threshold, in evaluation order."""
        return [s for s in snapshot.spreads if s.total < self.config.sum_threshold]

    def evaluate(self, snapshot: Optional[PairSnapshot]) -> Optional[EnterTrade]:
        """
        Decide whether to enter on this snapshot.

        Returns:
            EnterTrade (with the pair marked in flight), or None
        """
        if snapshot is None:
            self.last_rejection = "no snapshot"
            return None

        pair = snapshot.pair
        now = self._clock()

        candidates = self.qualifying(snapshot)
        if not candidates:
            self.last_rejection = "no spread below threshold"
            return None

        checks = (
            (not snapshot.stale, "stale quotes"),
            self.references_match(pair),
            self._timing_ok(pair, now),
            (not self.in_flight(pair.key), "trade in flight"),
        )
        for ok, reason in checks:
            if not ok:
                self.last_rejection = reason
                logger.debug(f"{pair.key}: skip entry ({reason})")
                return None

        spread = select_spread(candidates)
        if not self.try_acquire(pair.key):
            self.last_rejection = "trade in flight"
            return None

        self._last_entry_at[pair.key] = now
        self.last_rejection = ""
        logger.info(
            f"{pair.symbol.upper()} entry: {spread.label} "
            f"{spread.ask_a:.4f} + {spread.ask_b:.4f} = {spread.total:.4f} < {self.config.sum_threshold} "
            f"(edge {spread.edge:.4f})"
        )
        return EnterTrade(pair=pair, spread=spread, shares=self.config.shares)

"""
Pair Monitor.

Holds the latest quote for each of the four outcome tokens of the active
WindowPair and publishes a PairSnapshot (both candidate spreads) on every
accepted quote.

One writer (update), many readers. Readers pull the most recent snapshot
since their previous pull; intermediate snapshots are never buffered.

Example:
    >>> monitor = PairMonitor(sum_threshold=0.99)
    >>> monitor.swap_pair(pair)
    >>> monitor.update(PriceQuote(token_id=pair.up_15m.token_id, ask=0.48))
    >>> async for snapshot in monitor.snapshots():
    ...     decide(snapshot)
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import AsyncIterator, Callable, Optional

from .models import CandidateSpread, OutcomeToken, PairSnapshot, PriceQuote, WindowPair

logger = logging.getLogger(__name__)

QuoteListener = Callable[[PriceQuote], None]


class PairMonitor:
    """
    Latest-value store for the active pair's quotes.

    Attributes:
        sum_threshold: Threshold carried on published spreads
        stale_quote_secs: Snapshot is stale when no quote arrived for this long
    """

    def __init__(
        self,
        sum_threshold: float,
        stale_quote_secs: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.sum_threshold = sum_threshold
        self.stale_quote_secs = stale_quote_secs
        self._clock = clock

        self._pair: Optional[WindowPair] = None
        self._quotes: dict[str, PriceQuote] = {}
        self._last_quote_at: Optional[float] = None
        self._version = 0
        self._latest: Optional[PairSnapshot] = None
        self._changed = asyncio.Event()
        self._listeners: list[QuoteListener] = []

    @property
    def pair(self) -> Optional[WindowPair]:
        return self._pair

    @property
    def version(self) -> int:
        return self._version

    def add_listener(self, listener: QuoteListener) -> None:
        """Observe every accepted quote (called before the snapshot is published)."""
        self._listeners.append(listener)

    def swap_pair(self, pair: Optional[WindowPair]) -> None:
        """Replace the active pair and discard all quotes of the previous one."""
        old = self._pair.key if self._pair else None
        self._pair = pair
        self._quotes = {}
        self._last_quote_at = None
        self._latest = None
        logger.info(f"Pair monitor: {old} -> {pair.key if pair else None}")

    def quote(self, token_id: str) -> Optional[PriceQuote]:
        return self._quotes.get(token_id)

    def update(self, quote: PriceQuote) -> Optional[PairSnapshot]:
        """
        Accept a quote for one of the active pair's tokens.

        Returns:
            The published snapshot, or None if the quote was ignored
        """
        if self._pair is None or quote.token_id not in self._pair.token_ids:
            return None

        self._quotes[quote.token_id] = quote
        self._last_quote_at = self._clock()
        for listener in self._listeners:
            listener(quote)

        self._version += 1
        self._latest = self._build()
        self._publish()
        return self._latest

    def _publish(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    def _spread(self, label: str, leg_a: OutcomeToken, leg_b: OutcomeToken) -> Optional[CandidateSpread]:
        quote_a = self._quotes.get(leg_a.token_id)
        quote_b = self._quotes.get(leg_b.token_id)
        if quote_a is None or quote_b is None:
            return None
        return CandidateSpread(
            label=label,
            leg_a=leg_a,
            leg_b=leg_b,
            ask_a=quote_a.ask,
            ask_b=quote_b.ask,
            threshold=self.sum_threshold,
        )

    def _is_stale(self, now: float) -> bool:
        return self._last_quote_at is None or now - self._last_quote_at > self.stale_quote_secs

    def _build(self) -> PairSnapshot:
        pair = self._pair
        now = self._clock()
        return PairSnapshot(
            pair=pair,
            version=self._version,
            up_down=self._spread("15m Up + 5m Down", pair.up_15m, pair.down_5m),
            down_up=self._spread("15m Down + 5m Up", pair.down_15m, pair.up_5m),
            stale=self._is_stale(now),
            ts=now,
        )

    def latest(self) -> Optional[PairSnapshot]:
        """Most recent snapshot with its staleness re-evaluated now."""
        if self._latest is None:
            return None
        return replace(self._latest, stale=self._is_stale(self._clock()))

    async def next_snapshot(self, after_version: int = 0, timeout: Optional[float] = None) -> Optional[PairSnapshot]:
        """
        Wait for a snapshot newer than `after_version`.

        Returns:
            The latest snapshot, or None if none arrived within `timeout`
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._latest is None or self._latest.version <= after_version:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return None
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return None
        return self.latest()

    async def snapshots(self) -> AsyncIterator[PairSnapshot]:
        """Yield the most recent snapshot each time a newer one exists."""
        seen = 0
        while True:
            snapshot = await self.next_snapshot(seen)
            seen = snapshot.version
            yield snapshot

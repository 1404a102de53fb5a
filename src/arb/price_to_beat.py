"""
Price-to-Beat Tracker.

Captures the frozen reference price of each market window. A window's
reference is polled from window open until the capture delay has elapsed, and
the reading taken at that point (or the last reading observed during the
delay) becomes the window's immutable PriceToBeat.

Each window gets exactly one capture attempt. Concurrent callers for the same
window share it; later callers get the recorded outcome.

Example:
    >>> tracker = PriceToBeatTracker(CryptoPriceClient().get_open_price, delay_secs=30)
    >>> ptb = await tracker.capture(window)  # raises ReferenceUnavailable on failure
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from .errors import ReferenceUnavailable
from .models import Captured, CaptureOutcome, MarketWindow, PriceToBeat, Unavailable

logger = logging.getLogger(__name__)

ReferenceSource = Callable[[MarketWindow], Optional[float]]


class PriceToBeatTracker:
    """
    Per-window reference capture with a bounded polling policy.

    Attributes:
        source: Blocking callable returning the window's reference (or None)
        delay_secs: Seconds after window open at which the reference freezes
        poll_interval_secs: Interval between readings during the delay
        timeout_secs: Bound on each reading
    """

    def __init__(
        self,
        source: ReferenceSource,
        delay_secs: float = 30.0,
        poll_interval_secs: float = 2.0,
        timeout_secs: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.source = source
        self.delay_secs = delay_secs
        self.poll_interval_secs = poll_interval_secs
        self.timeout_secs = timeout_secs
        self._clock = clock

        self._outcomes: dict[str, CaptureOutcome] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._non_tradeable: dict[str, str] = {}

    async def _read(self, window: MarketWindow) -> Optional[float]:
        """One bounded reading; failures count as no reading."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.source, window), timeout=self.timeout_secs)
        except asyncio.TimeoutError:
            logger.warning(f"Price-to-beat reading for {window.key} timed out after {self.timeout_secs}s")
        except Exception as e:
            logger.warning(f"Price-to-beat reading for {window.key} failed: {e}")
        return None

    async def _capture(self, window: MarketWindow) -> CaptureOutcome:
        freeze_at = window.start + self.delay_secs
        last_seen: Optional[float] = None

        if self._clock() < freeze_at:
            logger.info(f"Capturing price-to-beat for {window.key} (freezes in {freeze_at - self._clock():.0f}s)")
            while self._clock() < freeze_at:
                reading = await self._read(window)
                if reading is not None:
                    last_seen = reading
                remaining = freeze_at - self._clock()
                if remaining > 0:
                    await asyncio.sleep(min(self.poll_interval_secs, remaining))

        # Delay elapsed: a single reading, falling back to the last one observed
        reading = await self._read(window)
        value = reading if reading is not None else last_seen
        if value is None:
            return Unavailable(reason="no reading obtained")
        return Captured(PriceToBeat(window_key=window.key, value=value, captured_at=self._clock()))

    async def _run(self, window: MarketWindow) -> CaptureOutcome:
        recorded = self._outcomes.get(window.key)
        if recorded is not None:
            return recorded
        outcome = await self._capture(window)
        self._outcomes[window.key] = outcome
        if isinstance(outcome, Captured):
            logger.info(f"Price-to-beat {window.key} = {outcome.price_to_beat.value}")
        else:
            self.mark_non_tradeable(window.key, f"price-to-beat unavailable: {outcome.reason}")
        return outcome

    def start(self, window: MarketWindow) -> asyncio.Task:
        """Start (or join) the capture for `window` without waiting for it."""
        task = self._tasks.get(window.key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._run(window), name=f"ptb-{window.key}")
            self._tasks[window.key] = task
        return task

    async def capture(self, window: MarketWindow) -> PriceToBeat:
        """
        Frozen reference price for `window`.

        Raises:
            ReferenceUnavailable: If no reading was obtained
        """
        outcome = self._outcomes.get(window.key)
        if outcome is None:
            outcome = await asyncio.shield(self.start(window))
        if isinstance(outcome, Unavailable):
            raise ReferenceUnavailable(window.key, outcome.reason)
        return outcome.price_to_beat

    def record(self, price_to_beat: PriceToBeat) -> None:
        """Store an externally obtained reference (e.g. from a recording). First value wins."""
        if price_to_beat.window_key not in self._outcomes:
            self._outcomes[price_to_beat.window_key] = Captured(price_to_beat)

    def get(self, window_key: str) -> Optional[PriceToBeat]:
        """Captured reference, or None if not (yet) captured."""
        outcome = self._outcomes.get(window_key)
        return outcome.price_to_beat if isinstance(outcome, Captured) else None

    def mark_non_tradeable(self, window_key: str, reason: str) -> None:
        if window_key not in self._non_tradeable:
            logger.warning(f"Window {window_key} marked non-tradeable: {reason}")
            self._non_tradeable[window_key] = reason

    def is_tradeable(self, window_key: str) -> bool:
        return window_key not in self._non_tradeable

    def forget_before(self, ts: float) -> None:
        """Drop state for windows that started before `ts`."""
        for key in list(self._outcomes) + list(self._tasks):
            start = int(key.rsplit("-", 1)[-1])
            if start < ts:
                self._outcomes.pop(key, None)
                task = self._tasks.pop(key, None)
                if task is not None and not task.done():
                    task.cancel()
                self._non_tradeable.pop(key, None)

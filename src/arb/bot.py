"""
Main Bot Runner for the 15m/5m Up/Down Arbitrage.

Integrates the arbitrage components into one monitoring loop that runs in
simulation mode (default) or live mode.

Key Features:
- Simulation by default (live orders only with a live gateway and --live)
- Kill switch file (.kill_switch) halts new entries
- One open trade per pair, each trade on its own task
- REST polling fallback when the websocket stream goes silent
- Clean shutdown on Ctrl+C / SIGTERM

Window cycle:
1. Capture the 15m price-to-beat at its open
2. Wait for the overlap window (last 5 minutes of the 15m window)
3. Capture the 5m price-to-beat, discover both markets
4. Swap the monitor pair and resubscribe the feed
5. Evaluate every snapshot until the 15m window ends
6. Hand locked-in trades to resolution

Example:
    >>> bot = ArbBot(load_config())
    >>> await bot.run()
"""

import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from ..api.clob_rest import ClobRestClient
from ..api.clob_ws import MarketFeed
from ..api.crypto_price import CryptoPriceClient
from ..config import KILL_SWITCH_FILE, POSITIONS_PATH, TRADES_LOG_PATH, ArbConfig
from ..exchanges.base import BaseOrderGateway
from .discovery import MarketDiscovery
from .errors import FeedUnavailable
from .ledger import PositionLedger, TradeLedger
from .models import EnterTrade, PairSnapshot, PriceQuote, Timeframe, Trade, TradeState, WindowPair
from .pair_monitor import PairMonitor
from .price_to_beat import PriceToBeatTracker
from .resolution import ResolutionService
from .simulation import build_simulated_stack, build_stack
from .windows import current_window, seconds_until_overlap

logger = logging.getLogger(__name__)

OVERLAP_POLL_SECS = 5.0
# Reference state older than this is dropped
TRACKER_RETENTION_SECS = 3600


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class BotState:
    """
    Current state of the arbitrage bot.

    Attributes:
        is_running: Whether the bot is currently running.
        simulation_mode: Whether orders go to the simulated gateway.
        windows_monitored: Overlap windows monitored this session.
        trades_opened: Trades started this session.
        outcomes: Terminal trade count per state.
        total_pnl: Resolved PnL this session.
        current_pair: Key of the pair being monitored.
        last_error: Last error message (if any).
    """

    is_running: bool = False
    simulation_mode: bool = True
    windows_monitored: int = 0
    trades_opened: int = 0
    outcomes: Optional[dict[str, int]] = None
    total_pnl: float = 0.0
    current_pair: Optional[str] = None
    last_error: Optional[str] = None
    start_time: Optional[datetime] = None

    def record_outcome(self, state: TradeState) -> None:
        if self.outcomes is None:
            self.outcomes = {}
        self.outcomes[state.value] = self.outcomes.get(state.value, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        """Convert state to dictionary."""
        return {
            "is_running": self.is_running,
            "simulation_mode": self.simulation_mode,
            "windows_monitored": self.windows_monitored,
            "trades_opened": self.trades_opened,
            "outcomes": dict(self.outcomes or {}),
            "total_pnl": round(self.total_pnl, 6),
            "current_pair": self.current_pair,
            "last_error": self.last_error,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "uptime_seconds": (
                int((_utc_now() - self.start_time).total_seconds())
                if self.start_time
                else 0
            ),
        }


class ArbBot:
    """
    Orchestrator for the 15m/5m cross-market arbitrage.

    Attributes:
        config: Strategy configuration
        monitor: Pair monitor (latest quotes, snapshots)
        tracker: Price-to-beat tracker
        engine: Entry decision engine
        executor: Two-leg trade executor
        state: Current bot state
    """

    def __init__(
        self,
        config: ArbConfig,
        gateway: Optional[BaseOrderGateway] = None,
        feed: Optional[MarketFeed] = None,
        rest: Optional[ClobRestClient] = None,
        discovery: Optional[MarketDiscovery] = None,
        tracker: Optional[PriceToBeatTracker] = None,
        trades: Optional[TradeLedger] = None,
        positions: Optional[PositionLedger] = None,
        resolution: Optional[ResolutionService] = None,
        kill_switch_file: Path = KILL_SWITCH_FILE,
        duration_secs: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        backoff: float = 0.5,
    ):
        """
        Initialize the bot.

        Args:
            config: Strategy configuration
            gateway: Live order gateway (required unless config.simulation_mode)
            feed: Websocket market feed (default: MarketFeed())
            rest: CLOB REST client for polling and resolution
            discovery: Market discovery (default: Gamma + CLOB REST)
            tracker: Price-to-beat tracker (default: crypto-price API)
            trades: Trade archive (default: data/arb_trades.jsonl)
            positions: Position ledger (default: data/positions.json)
            resolution: Resolution service (default: built from rest/positions/trades)
            kill_switch_file: Path whose existence halts new entries
            duration_secs: Stop after this many seconds (default: run until stopped)
            clock: Time source
            backoff: Retry backoff multiplier for exchange calls
        """
        if not config.simulation_mode and gateway is None:
            raise ValueError(
                "Live trading requires an order gateway. "
                "Pass gateway=ClobOrderGateway(...) or use simulation_mode=True"
            )

        self.config = config
        self.kill_switch_file = Path(kill_switch_file)
        self.duration_secs = duration_secs
        self._clock = clock

        self.rest = rest or ClobRestClient(timeout=config.api_timeout_secs)
        self.feed = feed or MarketFeed()
        self.discovery = discovery or MarketDiscovery(rest=self.rest)
        self.tracker = tracker or PriceToBeatTracker(
            CryptoPriceClient(timeout=config.api_timeout_secs).get_open_price,
            delay_secs=config.price_to_beat_delay_secs,
            poll_interval_secs=config.price_to_beat_poll_interval_secs,
            timeout_secs=config.api_timeout_secs,
            clock=clock,
        )
        self.monitor = PairMonitor(config.sum_threshold, config.stale_quote_secs, clock=clock)

        if config.simulation_mode:
            stack = build_simulated_stack(
                config, self.tracker, self.monitor, kill_switch=self.kill_switch_active, clock=clock, backoff=backoff
            )
        else:
            stack = build_stack(
                config,
                gateway,
                self.tracker,
                self.monitor,
                kill_switch=self.kill_switch_active,
                clock=clock,
                backoff=backoff,
            )
        self.gateway = stack.gateway
        self.engine = stack.engine
        self.executor = stack.executor

        self.trades = trades or TradeLedger(TRADES_LOG_PATH)
        self.positions = positions or PositionLedger(POSITIONS_PATH)
        self.resolution = resolution or ResolutionService(
            self.rest,
            self.positions,
            self.trades,
            poll_interval_secs=config.resolution_poll_interval_secs,
            max_wait_secs=config.resolution_max_wait_secs,
        )

        self.state = BotState(simulation_mode=config.simulation_mode)
        self._shutdown_event = asyncio.Event()
        self._deadline: Optional[float] = None
        self._trade_tasks: set[asyncio.Task] = set()
        self._resolution_tasks: set[asyncio.Task] = set()
        self._pair_trades: dict[str, list[Trade]] = {}
        self._kill_switch_logged = False

        prefix = "[SIM]" if config.simulation_mode else "[LIVE]"
        logger.info(
            f"{prefix} ArbBot initialized: symbol={config.symbol}, "
            f"sum_threshold={config.sum_threshold}, shares={config.shares}"
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def kill_switch_active(self) -> bool:
        return self.kill_switch_file.exists()

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for clean shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._signal_handler, sig)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform/thread
                logger.debug(f"Cannot install handler for {sig}")

    def _signal_handler(self, signum: int) -> None:
        logger.info(f"Received signal {signum}, initiating shutdown...")
        self.stop()

    def stop(self) -> None:
        """Stop the bot gracefully."""
        logger.info("Stopping ArbBot...")
        self._shutdown_event.set()

    def _should_stop(self) -> bool:
        if self._shutdown_event.is_set():
            return True
        return self._deadline is not None and asyncio.get_running_loop().time() >= self._deadline

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early on shutdown."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        """
        Main bot loop.

        Monitors one overlap window after another until stopped, the duration
        elapses, or the task is cancelled.
        """
        loop = asyncio.get_running_loop()
        self._setup_signal_handlers()
        if self.duration_secs:
            self._deadline = loop.time() + self.duration_secs

        self.feed.add_handler(lambda quote: loop.call_soon_threadsafe(self.monitor.update, quote))
        self.state.is_running = True
        self.state.start_time = _utc_now()
        logger.info(f"Starting ArbBot main loop (simulation_mode={self.config.simulation_mode})")

        try:
            while not self._should_stop():
                try:
                    await self.run_window()
                except Exception as e:
                    logger.error(f"Unexpected error in window cycle: {e}", exc_info=True)
                    self.state.last_error = str(e)
                    await self._sleep(OVERLAP_POLL_SECS)
        except asyncio.CancelledError:
            logger.info("Bot run cancelled")
        finally:
            self.feed.stop()
            await self.drain()
            self.state.is_running = False
            logger.info(f"ArbBot stopped: {self.state.to_dict()}")

    async def drain(self) -> None:
        """Wait for open trades, then cancel pending resolution waits."""
        if self._trade_tasks:
            logger.info(f"Waiting for {len(self._trade_tasks)} open trade(s) to finish")
            await asyncio.gather(*self._trade_tasks, return_exceptions=True)
        for task in list(self._resolution_tasks):
            task.cancel()
        if self._resolution_tasks:
            await asyncio.gather(*self._resolution_tasks, return_exceptions=True)

    # =========================================================================
    # Window cycle
    # =========================================================================

    async def run_window(self) -> Optional[WindowPair]:
        """
        Run one step of the window cycle.

        Returns:
            The pair monitored, or None if no overlap was traded this step
        """
        now = self._clock()
        symbol = self.config.symbol
        self.tracker.forget_before(now - TRACKER_RETENTION_SECS)
        self.tracker.start(current_window(symbol, Timeframe.FIFTEEN_MIN, now))

        wait = seconds_until_overlap(now)
        if wait > 0:
            logger.debug(f"Next overlap window in {wait:.0f}s")
            await self._sleep(min(wait, OVERLAP_POLL_SECS))
            return None

        self.tracker.start(current_window(symbol, Timeframe.FIVE_MIN, now))
        kill_switch = self.kill_switch_active()
        if kill_switch and not self._kill_switch_logged:
            logger.warning("Kill switch active - monitoring only, no new entries")
        self._kill_switch_logged = kill_switch

        pair = await asyncio.to_thread(self.discovery.find_pair, symbol, now)
        if pair is None:
            await self._sleep(OVERLAP_POLL_SECS)
            return None

        self.state.current_pair = pair.key
        self.state.windows_monitored += 1
        self.monitor.swap_pair(pair)
        self.feed.start(pair.token_ids)
        logger.info(f"Monitoring {pair.key} until {pair.window_15m.end} ({pair.seconds_left(now):.0f}s)")

        await self.monitor_pair(pair)
        await self.finish_pair(pair)
        return pair

    async def monitor_pair(self, pair: WindowPair) -> None:
        """Evaluate snapshots of `pair` until its windows end."""
        version = 0
        while not self._should_stop():
            remaining = pair.window_15m.end - self._clock()
            if remaining <= 0:
                break
            snapshot = await self.monitor.next_snapshot(version, timeout=min(self.config.stale_quote_secs, remaining))
            if snapshot is None:
                if self._clock() >= pair.window_15m.end:
                    break
                try:
                    await self.poll_quotes(pair)
                except FeedUnavailable as e:
                    logger.warning(f"Feed unavailable for {pair.key}: {e}")
                    await self._sleep(min(OVERLAP_POLL_SECS, max(0.0, pair.window_15m.end - self._clock())))
                continue
            version = snapshot.version
            self.on_snapshot(snapshot)

    async def poll_quotes(self, pair: WindowPair) -> list[PriceQuote]:
        """
        Refresh all four quotes over REST while the stream is silent.

        Raises:
            FeedUnavailable: If any book could not be fetched
        """
        logger.info(f"No stream quotes for {self.config.stale_quote_secs}s, polling {pair.key} over REST")
        quotes = await asyncio.gather(
            *(asyncio.to_thread(self.rest.current_best_ask, token_id) for token_id in pair.token_ids)
        )
        for quote in quotes:
            self.monitor.update(quote)
        return list(quotes)

    def on_snapshot(self, snapshot: PairSnapshot) -> Optional[asyncio.Task]:
        """Evaluate a snapshot and spawn a trade task on entry."""
        decision = self.engine.evaluate(snapshot)
        if decision is None:
            return None
        self.state.trades_opened += 1
        task = asyncio.get_running_loop().create_task(
            self.execute(decision), name=f"trade-{decision.pair.key}"
        )
        self._trade_tasks.add(task)
        task.add_done_callback(self._on_trade_done)
        return task

    def _on_trade_done(self, task: asyncio.Task) -> None:
        self._trade_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.critical(f"Trade task {task.get_name()} failed: {task.exception()!r}")
            self.state.last_error = str(task.exception())

    async def execute(self, decision: EnterTrade) -> Trade:
        """Run one trade to a terminal state, archive it and release the pair."""
        pair_key = decision.pair.key
        try:
            trade = await self.executor.execute(decision)
            self.trades.archive(trade)
            self.positions.record(trade)
        finally:
            self.engine.release(pair_key)

        self.state.record_outcome(trade.state)
        self._pair_trades.setdefault(pair_key, []).append(trade)
        if trade.state == TradeState.MANUAL_INTERVENTION:
            self.state.last_error = f"trade {trade.trade_id}: {trade.reason}"
        return trade

    async def finish_pair(self, pair: WindowPair) -> None:
        """Wait for the pair's trades, then resolve them in the background."""
        if self._trade_tasks:
            await asyncio.gather(*self._trade_tasks, return_exceptions=True)
        self.monitor.swap_pair(None)
        self.state.current_pair = None

        trades = self._pair_trades.pop(pair.key, [])
        if not any(t.locked_size > 0 for t in trades):
            return
        task = asyncio.get_running_loop().create_task(self.resolve(pair, trades), name=f"resolve-{pair.key}")
        self._resolution_tasks.add(task)
        task.add_done_callback(self._resolution_tasks.discard)

    async def resolve(self, pair: WindowPair, trades: list[Trade]) -> float:
        pnl = await self.resolution.resolve(pair, trades)
        self.state.total_pnl += pnl
        return pnl

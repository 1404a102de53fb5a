"""
Tests for the ArbBot orchestrator.

Tests cover:
- Initialization in simulation and live mode
- Snapshot evaluation, trade tasks, archiving and release
- Kill switch
- REST polling fallback
- Window cycle and hand-off to resolution

IMPORTANT: All tests run in simulation mode with mocked feeds and APIs. NO real
orders are placed.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.arb.bot import ArbBot, BotState
from src.arb.ledger import PositionLedger, TradeLedger
from src.arb.models import PriceQuote, PriceToBeat, TradeState
from src.arb.price_to_beat import PriceToBeatTracker
from src.exchanges.paper import SimulatedOrderGateway

from tests.fakes import IN_OVERLAP, START_15M, make_pair


class Clock:
    def __init__(self, now: float = IN_OVERLAP):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def tracker(pair):
    tracker = PriceToBeatTracker(lambda w: None)
    tracker.record(PriceToBeat(pair.window_15m.key, 97000.0, START_15M + 30))
    tracker.record(PriceToBeat(pair.window_5m.key, 97004.0, START_15M + 630))
    return tracker


@pytest.fixture
def make_bot(config, tracker, clock, tmp_path):
    def _make(**kwargs):
        options = dict(
            feed=MagicMock(),
            rest=MagicMock(),
            discovery=MagicMock(),
            tracker=tracker,
            trades=TradeLedger(tmp_path / "trades.jsonl"),
            positions=PositionLedger(tmp_path / "positions.json"),
            resolution=MagicMock(),
            kill_switch_file=tmp_path / ".kill_switch",
            clock=clock,
            backoff=0,
        )
        options.update(kwargs)
        return ArbBot(config, **options)

    return _make


def feed_quotes(bot, quotes):
    snapshot = None
    for token_id, ask, bid in quotes:
        snapshot = bot.monitor.update(PriceQuote(token_id, ask=ask, bid=bid, ts=IN_OVERLAP))
    return snapshot


ENTRY_QUOTES = [("up15", 0.48, 0.46), ("down5", 0.49, 0.47), ("down15", 0.55, 0.53), ("up5", 0.52, 0.50)]


# =============================================================================
# Test: Initialization
# =============================================================================


class TestInit:
    """Tests for ArbBot initialization."""

    def test_simulation_uses_simulated_gateway(self, make_bot):
        bot = make_bot()
        assert isinstance(bot.gateway, SimulatedOrderGateway)
        assert bot.state.simulation_mode

    def test_live_requires_gateway(self, make_bot, config):
        config.simulation_mode = False
        with pytest.raises(ValueError, match="requires an order gateway"):
            make_bot()

    def test_live_uses_given_gateway(self, make_bot, config):
        config.simulation_mode = False
        gateway = MagicMock()
        gateway.is_simulated = False
        bot = make_bot(gateway=gateway)
        assert bot.gateway is gateway
        assert not bot.state.simulation_mode

    def test_state_to_dict(self):
        state = BotState()
        state.record_outcome(TradeState.COMPLETED)
        state.record_outcome(TradeState.COMPLETED)
        data = state.to_dict()
        assert data["outcomes"] == {"completed": 2}
        assert data["uptime_seconds"] == 0


# =============================================================================
# Test: Snapshot handling
# =============================================================================


class TestSnapshots:
    """Tests for on_snapshot() and execute()."""

    @pytest.mark.asyncio
    async def test_entry_runs_trade_to_completion(self, make_bot, pair):
        bot = make_bot()
        bot.monitor.swap_pair(pair)

        task = bot.on_snapshot(feed_quotes(bot, ENTRY_QUOTES))
        assert task is not None
        trade = await task

        assert trade.state == TradeState.COMPLETED
        assert bot.state.trades_opened == 1
        assert bot.state.outcomes == {"completed": 1}
        assert not bot.engine.in_flight(pair.key)
        assert bot.trades.load()[0]["trade_id"] == trade.trade_id
        assert bot.positions.positions["up15"].size == 10

    @pytest.mark.asyncio
    async def test_no_entry_above_threshold(self, make_bot, pair):
        bot = make_bot()
        bot.monitor.swap_pair(pair)
        quotes = [("up15", 0.52, 0.50), ("down5", 0.49, 0.47)]
        assert bot.on_snapshot(feed_quotes(bot, quotes)) is None
        assert bot.state.trades_opened == 0

    @pytest.mark.asyncio
    async def test_kill_switch_blocks_entry(self, make_bot, pair, tmp_path):
        bot = make_bot()
        bot.monitor.swap_pair(pair)
        (tmp_path / ".kill_switch").touch()

        assert bot.kill_switch_active()
        assert bot.on_snapshot(feed_quotes(bot, ENTRY_QUOTES)) is None

    @pytest.mark.asyncio
    async def test_crashed_trade_releases_pair(self, make_bot, pair):
        bot = make_bot()
        bot.executor.execute = AsyncMock(side_effect=RuntimeError("gateway exploded"))
        bot.monitor.swap_pair(pair)

        task = bot.on_snapshot(feed_quotes(bot, ENTRY_QUOTES))
        with pytest.raises(RuntimeError):
            await task

        assert not bot.engine.in_flight(pair.key)


# =============================================================================
# Test: REST fallback
# =============================================================================


class TestPolling:
    """Tests for the REST polling fallback."""

    @pytest.mark.asyncio
    async def test_poll_quotes_updates_monitor(self, make_bot, pair):
        bot = make_bot()
        bot.monitor.swap_pair(pair)
        asks = {"up15": 0.48, "down15": 0.55, "up5": 0.52, "down5": 0.49}
        bot.rest.current_best_ask.side_effect = lambda token_id: PriceQuote(token_id, ask=asks[token_id])

        quotes = await bot.poll_quotes(pair)

        assert len(quotes) == 4
        snapshot = bot.monitor.latest()
        assert snapshot.up_down.total == pytest.approx(0.97)

    @pytest.mark.asyncio
    async def test_silent_stream_falls_back_to_rest(self, make_bot, pair, config, clock):
        config.stale_quote_secs = 0.01
        bot = make_bot()
        bot.monitor.swap_pair(pair)
        calls = []

        def best_ask(token_id):
            calls.append(token_id)
            if len(calls) == 4:
                clock.now = pair.window_15m.end
            return PriceQuote(token_id, ask=0.60)

        bot.rest.current_best_ask.side_effect = best_ask

        await bot.monitor_pair(pair)

        assert sorted(calls) == sorted(pair.token_ids)
        assert bot.monitor.quote("up15").ask == 0.60


# =============================================================================
# Test: Window cycle
# =============================================================================


class TestWindowCycle:
    """Tests for run_window() and finish_pair()."""

    @pytest.mark.asyncio
    async def test_waits_outside_overlap(self, make_bot, clock):
        clock.now = START_15M + 100
        bot = make_bot()
        bot.stop()

        assert await bot.run_window() is None
        bot.discovery.find_pair.assert_not_called()

    @pytest.mark.asyncio
    async def test_overlap_discovers_and_subscribes(self, make_bot, pair):
        bot = make_bot()
        bot.discovery.find_pair.return_value = pair
        bot.stop()

        assert await bot.run_window() == pair
        bot.feed.start.assert_called_once_with(pair.token_ids)
        assert bot.state.windows_monitored == 1
        assert bot.monitor.pair is None

    @pytest.mark.asyncio
    async def test_no_pair_found(self, make_bot):
        bot = make_bot()
        bot.discovery.find_pair.return_value = None
        bot.stop()

        assert await bot.run_window() is None
        bot.feed.start.assert_not_called()

    @pytest.mark.asyncio
    async def test_locked_trades_handed_to_resolution(self, make_bot, pair):
        resolution = MagicMock()
        resolution.resolve = AsyncMock(return_value=0.3)
        bot = make_bot(resolution=resolution)
        bot.monitor.swap_pair(pair)
        await bot.on_snapshot(feed_quotes(bot, ENTRY_QUOTES))

        await bot.finish_pair(pair)
        for task in list(bot._resolution_tasks):
            await task

        resolution.resolve.assert_awaited_once()
        assert bot.state.total_pnl == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_no_resolution_without_locked_trades(self, make_bot, pair):
        resolution = MagicMock()
        resolution.resolve = AsyncMock()
        bot = make_bot(resolution=resolution)

        await bot.finish_pair(make_pair())
        resolution.resolve.assert_not_called()

"""
Tests for the Pair Monitor.

Tests cover:
- Snapshot publication and both candidate spreads
- Quote filtering and pair swaps
- Staleness
- Latest-value reads (no buffering of intermediate snapshots)
"""

import asyncio

import pytest

from src.arb.models import PriceQuote
from src.arb.pair_monitor import PairMonitor

from tests.fakes import IN_OVERLAP, make_pair


class FakeClock:
    def __init__(self, now: float = IN_OVERLAP):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monitor(clock, pair):
    monitor = PairMonitor(sum_threshold=0.99, stale_quote_secs=10, clock=clock)
    monitor.swap_pair(pair)
    return monitor


def _quote(token_id: str, ask: float, bid: float = None) -> PriceQuote:
    return PriceQuote(token_id=token_id, ask=ask, bid=bid, ts=IN_OVERLAP)


# =============================================================================
# Test: Snapshots
# =============================================================================


class TestSnapshots:
    """Tests for snapshot publication."""

    def test_spreads_missing_until_both_legs_quoted(self, monitor):
        snapshot = monitor.update(_quote("up15", 0.48))
        assert snapshot.up_down is None
        assert snapshot.down_up is None

    def test_both_spreads_computed(self, monitor):
        for token, ask in (("up15", 0.48), ("down15", 0.53), ("up5", 0.50), ("down5", 0.49)):
            snapshot = monitor.update(_quote(token, ask))
        assert snapshot.up_down.label == "15m Up + 5m Down"
        assert snapshot.up_down.total == 0.97
        assert snapshot.down_up.label == "15m Down + 5m Up"
        assert snapshot.down_up.total == 1.03
        assert [s.label for s in snapshot.spreads] == ["15m Up + 5m Down", "15m Down + 5m Up"]

    def test_version_increments(self, monitor):
        first = monitor.update(_quote("up15", 0.48))
        second = monitor.update(_quote("up15", 0.47))
        assert second.version == first.version + 1
        assert monitor.quote("up15").ask == 0.47

    def test_unknown_token_ignored(self, monitor):
        assert monitor.update(_quote("other", 0.10)) is None
        assert monitor.version == 0

    def test_no_pair_ignores_quotes(self, clock):
        monitor = PairMonitor(sum_threshold=0.99, clock=clock)
        assert monitor.update(_quote("up15", 0.48)) is None

    def test_swap_pair_discards_quotes(self, monitor):
        monitor.update(_quote("up15", 0.48))
        monitor.swap_pair(make_pair(start_15m=make_pair().window_15m.start + 900))
        assert monitor.quote("up15") is None
        assert monitor.latest() is None

    def test_listeners_see_accepted_quotes(self, monitor):
        seen = []
        monitor.add_listener(seen.append)
        monitor.update(_quote("up15", 0.48))
        monitor.update(_quote("other", 0.48))
        assert [q.token_id for q in seen] == ["up15"]


class TestStaleness:
    """Tests for stale snapshots."""

    def test_fresh_snapshot(self, monitor):
        assert monitor.update(_quote("up15", 0.48)).stale is False

    def test_latest_turns_stale_without_quotes(self, monitor, clock):
        monitor.update(_quote("up15", 0.48))
        clock.now += 11
        assert monitor.latest().stale is True

    def test_new_quote_refreshes(self, monitor, clock):
        monitor.update(_quote("up15", 0.48))
        clock.now += 11
        assert monitor.update(_quote("down5", 0.49)).stale is False


# =============================================================================
# Test: Readers
# =============================================================================


class TestNextSnapshot:
    """Tests for next_snapshot() and snapshots()."""

    @pytest.mark.asyncio
    async def test_returns_latest_only(self, monitor):
        monitor.update(_quote("up15", 0.48))
        monitor.update(_quote("up15", 0.47))
        snapshot = await monitor.next_snapshot(after_version=0)
        assert snapshot.version == 2

    @pytest.mark.asyncio
    async def test_waits_for_newer_version(self, monitor):
        monitor.update(_quote("up15", 0.48))

        async def publish():
            await asyncio.sleep(0.01)
            monitor.update(_quote("down5", 0.49))

        task = asyncio.create_task(publish())
        snapshot = await monitor.next_snapshot(after_version=1, timeout=1.0)
        await task
        assert snapshot.version == 2
        assert snapshot.up_down.total == 0.97

    @pytest.mark.asyncio
    async def test_timeout_returns_none(self, monitor):
        assert await monitor.next_snapshot(after_version=0, timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_snapshots_iterator(self, monitor):
        monitor.update(_quote("up15", 0.48))
        iterator = monitor.snapshots()
        snapshot = await iterator.__anext__()
        assert snapshot.version == 1
        await iterator.aclose()

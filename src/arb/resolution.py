"""
Resolution and PnL for locked-in trades.

After the pair's windows end, both markets are polled until they are closed
with a winning token. Each trade's PnL is then:

    cost   = (price_a + price_b) * size
    payout = size * (number of winning legs)
    pnl    = payout - cost

Winning legs are flagged redeemable in the position ledger; redemption
itself happens outside this process.
"""

import asyncio
import logging
from typing import Optional

from ..api.clob_rest import ClobRestClient
from .ledger import PositionLedger, TradeLedger
from .models import Trade, WindowPair

logger = logging.getLogger(__name__)

# Markets take at least this long after window end to settle
RESOLUTION_INITIAL_DELAY_SECS = 60.0


def compute_pnl(trade: Trade, winning_tokens: set[str]) -> float:
    """PnL of a trade's locked-in size given the winning token ids."""
    size = trade.locked_size
    cost = (trade.leg_a.price + trade.leg_b.price) * size
    won = sum(1 for leg in trade.legs if leg.token.token_id in winning_tokens)
    return round(size * won - cost, 6)


class ResolutionService:
    """
    Waits for settlement and books PnL.

    Attributes:
        rest: CLOB REST client (market closed flag and winner)
        positions: Position ledger updated with redeemable winners
        trades: Trade archive receiving resolution records
    """

    def __init__(
        self,
        rest: ClobRestClient,
        positions: PositionLedger,
        trades: TradeLedger,
        poll_interval_secs: float = 30.0,
        max_wait_secs: float = 600.0,
        initial_delay_secs: float = RESOLUTION_INITIAL_DELAY_SECS,
    ):
        self.rest = rest
        self.positions = positions
        self.trades = trades
        self.poll_interval_secs = poll_interval_secs
        self.max_wait_secs = max_wait_secs
        self.initial_delay_secs = initial_delay_secs
        self.cumulative_pnl = 0.0

    async def wait_for_winners(self, pair: WindowPair) -> Optional[dict[str, str]]:
        """
        Poll until both markets are closed with a winner.

        Returns:
            condition_id -> winning token id, or None on timeout
        """
        cids = [w.condition_id for w in (pair.window_15m, pair.window_5m)]
        if not all(cids):
            logger.warning(f"{pair.key}: missing condition ids, cannot resolve")
            return None

        await asyncio.sleep(self.initial_delay_secs)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_wait_secs
        while True:
            results = await asyncio.gather(*(asyncio.to_thread(self.rest.get_resolution, cid) for cid in cids))
            if all(r is not None for r in results):
                return {cid: token_id for cid, (token_id, _) in zip(cids, results)}
            if loop.time() >= deadline:
                logger.warning(f"Resolution timeout for {pair.key} after {self.max_wait_secs}s")
                return None
            await asyncio.sleep(self.poll_interval_secs)

    async def resolve(self, pair: WindowPair, trades: list[Trade]) -> float:
        """
        Resolve locked-in trades of a pair.

        Returns:
            Total PnL booked (0 if the markets did not resolve in time)
        """
        locked = [t for t in trades if t.locked_size > 0]
        if not locked:
            return 0.0

        winners = await self.wait_for_winners(pair)
        if winners is None:
            return 0.0

        winning_tokens = set(winners.values())
        total = 0.0
        for trade in locked:
            trade.pnl = compute_pnl(trade, winning_tokens)
            trade.winners = [leg.token.token_id for leg in trade.legs if leg.token.token_id in winning_tokens]
            total += trade.pnl
            self.trades.archive(trade, event="resolved")
            logger.info(
                f"Trade {trade.trade_id} resolved: {len(trade.winners)}/2 legs won, pnl={trade.pnl:+.4f}"
            )

        for cid, token_id in winners.items():
            self.positions.mark_resolved(cid, token_id)

        self.cumulative_pnl += total
        logger.info(f"{pair.key}: round pnl={total:+.4f}, cumulative={self.cumulative_pnl:+.4f}")
        return total

    async def resume_pending(self) -> int:
        """
        Check markets with unresolved positions once (e.g. after a restart).

        Returns:
            Number of markets newly marked resolved
        """
        resolved = 0
        for condition_id in self.positions.unresolved():
            result = await asyncio.to_thread(self.rest.get_resolution, condition_id)
            if result is None:
                logger.info(f"Market {condition_id[:16]}... not resolved yet")
                continue
            token_id, outcome = result
            self.positions.mark_resolved(condition_id, token_id)
            logger.info(f"Market {condition_id[:16]}... resolved {outcome}")
            resolved += 1
        return resolved

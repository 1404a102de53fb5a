"""
Simulation Engine.

Wires the decision engine and execution machine to the SimulatedOrderGateway
and replays recorded quote files through the same components.

The simulated gateway observes every quote the pair monitor accepts, so
resting BUY legs fill as soon as an observed ask crosses their price. The
live ClobOrderGateway is never constructed here.

Recording format (JSON lines, written by scripts/record_quotes.py):
    {"type": "pair", "ts": ..., "symbol": "btc", "start_15m": ..., "start_5m": ...,
     "condition_15m": ..., "condition_5m": ..., "up_15m": ..., "down_15m": ...,
     "up_5m": ..., "down_5m": ...}
    {"type": "price_to_beat", "ts": ..., "window_key": ..., "value": ...}
    {"type": "quote", "ts": ..., "token_id": ..., "bid": ..., "ask": ...}

Example:
    >>> replay = QuoteReplay("data/quotes/btc_20260101.jsonl")
    >>> trades = await replay.run(config, TradeLedger(path))
"""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Union

from ..config import ArbConfig
from ..exchanges.base import BaseOrderGateway
from ..exchanges.paper import SimulatedOrderGateway
from .decision import EntryDecisionEngine
from .execution import TradeExecutor
from .ledger import PositionLedger, TradeLedger
from .models import MarketWindow, Outcome, OutcomeToken, PriceQuote, PriceToBeat, Timeframe, Trade, WindowPair
from .pair_monitor import PairMonitor
from .price_to_beat import PriceToBeatTracker
from .unwind import UnwindManager

logger = logging.getLogger(__name__)

ReplayEvent = Union[WindowPair, PriceToBeat, PriceQuote]


@dataclass
class TradingStack:
    """Gateway, unwinder, executor and decision engine sharing one config."""

    gateway: BaseOrderGateway
    unwinder: UnwindManager
    executor: TradeExecutor
    engine: EntryDecisionEngine


def build_stack(
    config: ArbConfig,
    gateway: BaseOrderGateway,
    tracker: PriceToBeatTracker,
    monitor: PairMonitor,
    kill_switch: Callable[[], bool] = lambda: False,
    clock: Callable[[], float] = time.time,
    backoff: float = 0.5,
) -> TradingStack:
    """Assemble the trading components around `gateway`."""
    unwinder = UnwindManager(gateway, config, quote_lookup=monitor.quote, backoff=backoff)
    executor = TradeExecutor(gateway, config, unwinder, backoff=backoff)
    engine = EntryDecisionEngine(config, tracker, kill_switch=kill_switch, clock=clock)
    return TradingStack(gateway=gateway, unwinder=unwinder, executor=executor, engine=engine)


def build_simulated_stack(
    config: ArbConfig,
    tracker: PriceToBeatTracker,
    monitor: PairMonitor,
    kill_switch: Callable[[], bool] = lambda: False,
    clock: Callable[[], float] = time.time,
    backoff: float = 0.5,
) -> TradingStack:
    """Trading stack on a SimulatedOrderGateway fed by the pair monitor."""
    gateway = SimulatedOrderGateway()
    monitor.add_listener(gateway.on_quote)
    logger.info("[SIM] Simulation mode: orders matched against observed quotes")
    return build_stack(config, gateway, tracker, monitor, kill_switch=kill_switch, clock=clock, backoff=backoff)


# =============================================================================
# Recording format
# =============================================================================


def pair_record(pair: WindowPair, ts: float) -> dict[str, Any]:
    return {
        "type": "pair",
        "ts": ts,
        "symbol": pair.symbol,
        "start_15m": pair.window_15m.start,
        "start_5m": pair.window_5m.start,
        "condition_15m": pair.window_15m.condition_id,
        "condition_5m": pair.window_5m.condition_id,
        "up_15m": pair.up_15m.token_id,
        "down_15m": pair.down_15m.token_id,
        "up_5m": pair.up_5m.token_id,
        "down_5m": pair.down_5m.token_id,
    }


def pair_from_record(record: dict[str, Any]) -> WindowPair:
    symbol = record["symbol"]
    w15 = MarketWindow(symbol, Timeframe.FIFTEEN_MIN, int(record["start_15m"]), record.get("condition_15m"))
    w5 = MarketWindow(symbol, Timeframe.FIVE_MIN, int(record["start_5m"]), record.get("condition_5m"))
    return WindowPair(
        symbol=symbol,
        window_15m=w15,
        window_5m=w5,
        up_15m=OutcomeToken(record["up_15m"], w15, Outcome.UP),
        down_15m=OutcomeToken(record["down_15m"], w15, Outcome.DOWN),
        up_5m=OutcomeToken(record["up_5m"], w5, Outcome.UP),
        down_5m=OutcomeToken(record["down_5m"], w5, Outcome.DOWN),
    )


def quote_record(quote: PriceQuote) -> dict[str, Any]:
    return {"type": "quote", "ts": quote.ts, "token_id": quote.token_id, "bid": quote.bid, "ask": quote.ask}


def price_to_beat_record(ptb: PriceToBeat) -> dict[str, Any]:
    return {"type": "price_to_beat", "ts": ptb.captured_at, "window_key": ptb.window_key, "value": ptb.value}


class ReplayClock:
    """Clock driven by recorded timestamps."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ts: float) -> None:
        self.now = max(self.now, ts)


class QuoteReplay:
    """
    Replays a recorded quote file through the simulated trading stack.

    Attributes:
        path: JSON lines recording
        clock: Replay clock, advanced to each record's timestamp
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.clock = ReplayClock()

    def events(self) -> Iterator[tuple[float, ReplayEvent]]:
        """(timestamp, event) for every record in the file, in file order."""
        with open(self.path) as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                record = json.loads(line)
                kind = record.get("type")
                ts = float(record.get("ts", 0))
                if kind == "pair":
                    yield ts, pair_from_record(record)
                elif kind == "price_to_beat":
                    yield ts, PriceToBeat(record["window_key"], float(record["value"]), ts)
                elif kind == "quote":
                    bid = record.get("bid")
                    yield ts, PriceQuote(
                        token_id=record["token_id"],
                        ask=float(record["ask"]),
                        bid=float(bid) if bid is not None else None,
                        ts=ts,
                    )
                else:
                    logger.warning(f"{self.path}:{line_no}: unknown record type {kind!r}")

    async def run(
        self,
        config: ArbConfig,
        trades: TradeLedger,
        positions: Optional[PositionLedger] = None,
        backoff: float = 0.0,
    ) -> list[Trade]:
        """
        Replay the recording and execute every accepted entry.

        Returns:
            Trades executed during the replay, all terminal
        """
        tracker = PriceToBeatTracker(lambda window: None, clock=self.clock)
        monitor = PairMonitor(config.sum_threshold, config.stale_quote_secs, clock=self.clock)
        stack = build_simulated_stack(config, tracker, monitor, clock=self.clock, backoff=backoff)

        executed: list[Trade] = []
        quotes = 0
        for ts, event in self.events():
            self.clock.advance(ts)
            if isinstance(event, WindowPair):
                monitor.swap_pair(event)
            elif isinstance(event, PriceToBeat):
                tracker.record(event)
            else:
                quotes += 1
                decision = stack.engine.evaluate(monitor.update(event))
                if decision is None:
                    continue
                trade = await stack.executor.execute(decision)
                trades.archive(trade)
                if positions is not None:
                    positions.record(trade)
                stack.engine.release(decision.pair.key)
                executed.append(trade)

        logger.info(f"[SIM] Replay of {self.path.name}: {quotes} quotes, {len(executed)} trades")
        return executed

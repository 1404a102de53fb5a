"""
Trade archive and position ledger.

Terminal trades are appended to a JSON lines archive. Locked-in legs are
aggregated into net positions per outcome token in a JSON file, which the
external redemption process consumes once markets resolve.

Example:
    >>> trades = TradeLedger("data/arb_trades.jsonl")
    >>> positions = PositionLedger("data/positions.json")
    >>> trades.archive(trade)
    >>> positions.record(trade)
    >>> positions.mark_resolved(condition_id, winning_token_id)
    >>> positions.redeemable()
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from .models import Position, Trade, TradeState

logger = logging.getLogger(__name__)

# Terminal states whose trades may hold matched shares on both legs
LOCKING_STATES = (TradeState.COMPLETED, TradeState.UNWOUND, TradeState.MANUAL_INTERVENTION)


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class TradeLedger:
    """
    Append-only JSONL archive of terminal trades.

    Attributes:
        log_path: Archive file path
        trades: Trades archived in this process
    """

    def __init__(self, log_path: Union[str, Path]):
        self.log_path = Path(log_path)
        self.trades: list[Trade] = []

    def archive(self, trade: Trade, event: str = "trade") -> None:
        """
        Archive a terminal trade.

        Raises:
            ValueError: If the trade is not terminal
        """
        if not trade.is_terminal:
            raise ValueError(f"Trade {trade.trade_id} is not terminal ({trade.state})")
        if all(t.trade_id != trade.trade_id for t in self.trades):
            self.trades.append(trade)
        self._write({"timestamp": _utc_now().isoformat(), "event": event, **trade.to_dict()})

    def _write(self, record: dict[str, Any]) -> None:
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a") as f:
                f.write(json.dumps(record) + "\n")
        except OSError as e:
            logger.warning(f"Failed to write to trade log: {e}")

    def load(self) -> list[dict[str, Any]]:
        """All archived records, oldest first."""
        if not self.log_path.exists():
            return []
        records = []
        with open(self.log_path) as f:
            for line in f:
                line = line.strip()
                if line:
                    records.append(json.loads(line))
        return records

    def stats(self) -> dict[str, Any]:
        """Counts by terminal state and realized PnL for this process."""
        by_state: dict[str, int] = {}
        for trade in self.trades:
            by_state[trade.state.value] = by_state.get(trade.state.value, 0) + 1
        realized = sum(t.pnl for t in self.trades if t.pnl is not None)
        return {"trades": len(self.trades), "by_state": by_state, "realized_pnl": realized}


class PositionLedger:
    """
    Net outcome-token positions from locked-in trades.

    Positions are keyed by token id and persisted to JSON on every change.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.positions: dict[str, Position] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        with open(self.path) as f:
            data = json.load(f)
        self.positions = {p["token_id"]: Position.from_dict(p) for p in data.get("positions", [])}
        logger.info(f"Loaded {len(self.positions)} positions from {self.path}")

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "updated_at": _utc_now().isoformat(),
            "positions": [p.to_dict() for p in self.positions.values()],
        }
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(payload, f, indent=2)
        tmp.replace(self.path)

    def record(self, trade: Trade) -> list[Position]:
        """
        Add a trade's locked-in size to the positions of both legs.

        Completed trades, unwound trades with a hedged remainder and trades
        escalated after part of both legs matched carry a locked size.
        """
        if trade.locked_size <= 0 or trade.state not in LOCKING_STATES:
            return []

        updated = []
        for leg in trade.legs:
            window = leg.token.window
            position = self.positions.get(leg.token.token_id)
            if position is None:
                position = Position(
                    condition_id=window.condition_id or "",
                    token_id=leg.token.token_id,
                    outcome=leg.token.outcome.value,
                    size=0.0,
                    avg_cost=0.0,
                    symbol=window.symbol,
                    timeframe=window.timeframe.value,
                    window_start=window.start,
                )
                self.positions[leg.token.token_id] = position
            position.add(trade.locked_size, leg.price)
            updated.append(position)

        self.save()
        return updated

    def mark_resolved(self, condition_id: str, winning_token_id: str) -> None:
        """Mark a market resolved and flag its winning token as redeemable."""
        for position in self.positions.values():
            if position.condition_id == condition_id:
                position.resolved = True
                position.redeemable = position.token_id == winning_token_id
        self.save()

    def redeemable(self, condition_id: Optional[str] = None) -> list[Position]:
        """Positions awaiting redemption, optionally for one market."""
        return [
            p for p in self.positions.values()
            if p.redeemable and p.size > 0 and (condition_id is None or p.condition_id == condition_id)
        ]

    def unresolved(self) -> list[str]:
        """Condition ids with open positions whose market has not been marked resolved."""
        return sorted({p.condition_id for p in self.positions.values() if not p.resolved and p.condition_id})

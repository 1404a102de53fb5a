"""
Data model for the 15m/5m Up/Down arbitrage.

Windows, outcome tokens and quotes are immutable value objects. LegOrder and
Trade are mutable records owned by a single execution task.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Timeframe(Enum):
    """Up/Down market timeframe."""

    FIFTEEN_MIN = "15m"
    FIVE_MIN = "5m"

    @property
    def seconds(self) -> int:
        return 900 if self is Timeframe.FIFTEEN_MIN else 300

    def __str__(self) -> str:
        return self.value


class Outcome(Enum):
    """Binary market outcome."""

    UP = "Up"
    DOWN = "Down"

    @property
    def opposite(self) -> "Outcome":
        return Outcome.DOWN if self is Outcome.UP else Outcome.UP

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class MarketWindow:
    """
    One Up/Down market period.

    Attributes:
        symbol: Lowercase underlying (btc, eth, ...)
        timeframe: 15m or 5m
        start: Unix timestamp of the period start (ET-aligned)
        condition_id: Market condition id once discovered
    """

    symbol: str
    timeframe: Timeframe
    start: int
    condition_id: Optional[str] = None

    @property
    def end(self) -> int:
        return self.start + self.timeframe.seconds

    @property
    def slug(self) -> str:
        return f"{self.symbol}-updown-{self.timeframe.value}-{self.start}"

    @property
    def key(self) -> str:
        return self.slug

    def contains(self, ts: float) -> bool:
        return self.start <= ts < self.end

    def seconds_left(self, ts: float) -> float:
        return max(0.0, self.end - ts)


@dataclass(frozen=True)
class OutcomeToken:
    """An outcome token (Up or Down) of one market window."""

    token_id: str
    window: MarketWindow
    outcome: Outcome

    @property
    def label(self) -> str:
        return f"{self.window.timeframe.value} {self.outcome.value}"


@dataclass(frozen=True)
class PriceQuote:
    """Top-of-book for one token. The latest quote replaces the previous one."""

    token_id: str
    ask: float
    bid: Optional[float] = None
    ts: float = field(default_factory=time.time)

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.ts


@dataclass(frozen=True)
class PriceToBeat:
    """Frozen reference price for one window. At most one per window."""

    window_key: str
    value: float
    captured_at: float


@dataclass(frozen=True)
class Captured:
    """Capture outcome: the reference was frozen."""

    price_to_beat: PriceToBeat


@dataclass(frozen=True)
class Unavailable:
    """Capture outcome: no reading could be obtained."""

    reason: str


CaptureOutcome = Union[Captured, Unavailable]


@dataclass(frozen=True)
class CandidateSpread:
    """
    A pair of complementary legs: one 15m token and one 5m token.

    Attributes:
        label: Human-readable pairing, e.g. "15m Up + 5m Down"
        leg_a: 15m outcome token
        leg_b: 5m outcome token
        ask_a: Best ask of leg A
        ask_b: Best ask of leg B
        threshold: Entry threshold the total is compared to
    """

    label: str
    leg_a: OutcomeToken
    leg_b: OutcomeToken
    ask_a: float
    ask_b: float
    threshold: float

    @property
    def total(self) -> float:
        return round(self.ask_a + self.ask_b, 6)

    @property
    def edge(self) -> float:
        return round(1.0 - self.total, 6)

    @property
    def below_threshold(self) -> bool:
        return self.total < self.threshold

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "leg_a_token": self.leg_a.token_id,
            "leg_b_token": self.leg_b.token_id,
            "ask_a": self.ask_a,
            "ask_b": self.ask_b,
            "total": self.total,
            "edge": self.edge,
            "threshold": self.threshold,
        }


@dataclass(frozen=True)
class WindowPair:
    """The 15m window, the 5m window ending with it, and their four tokens."""

    symbol: str
    window_15m: MarketWindow
    window_5m: MarketWindow
    up_15m: OutcomeToken
    down_15m: OutcomeToken
    up_5m: OutcomeToken
    down_5m: OutcomeToken

    @property
    def key(self) -> str:
        return f"{self.symbol}:{self.window_15m.start}:{self.window_5m.start}"

    @property
    def tokens(self) -> list[OutcomeToken]:
        return [self.up_15m, self.down_15m, self.up_5m, self.down_5m]

    @property
    def token_ids(self) -> list[str]:
        return [t.token_id for t in self.tokens]

    def in_overlap(self, ts: float) -> bool:
        return self.window_15m.contains(ts) and self.window_5m.contains(ts)

    def seconds_left(self, ts: float) -> float:
        return min(self.window_15m.seconds_left(ts), self.window_5m.seconds_left(ts))


@dataclass(frozen=True)
class PairSnapshot:
    """
    Point-in-time view of a WindowPair published by the pair monitor.

    Spreads are in evaluation order: 15m Up + 5m Down, then 15m Down + 5m Up.
    Either may be missing while a leg has no quote yet.
    """

    pair: WindowPair
    version: int
    up_down: Optional[CandidateSpread]
    down_up: Optional[CandidateSpread]
    stale: bool = False
    ts: float = field(default_factory=time.time)

    @property
    def spreads(self) -> list[CandidateSpread]:
        return [s for s in (self.up_down, self.down_up) if s is not None]


@dataclass(frozen=True)
class EnterTrade:
    """Entry decision: buy both legs of `spread` for `shares` each."""

    pair: WindowPair
    spread: CandidateSpread
    shares: float


class LegState(Enum):
    """Lifecycle of one leg order."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    FILLED = "filled"
    PARTIALLY_FILLED = "partially_filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


@dataclass
class LegOrder:
    """
    One order of a trade (an entry leg or an unwind exit).

    Attributes:
        token: Outcome token traded
        side: "BUY" or "SELL"
        size: Requested size in shares
        price: Submitted limit price
        order_type: GTC for entry legs, FOK for exits
        state: Current leg state
        order_id: Exchange order id once accepted
        filled_size: Shares filled so far
        error: Last error message
    """

    token: OutcomeToken
    side: str
    size: float
    price: float
    order_type: str = "GTC"
    state: LegState = LegState.PENDING
    order_id: Optional[str] = None
    filled_size: float = 0.0
    error: str = ""

    @property
    def has_fill(self) -> bool:
        return self.filled_size > 0

    @property
    def is_filled(self) -> bool:
        return self.state == LegState.FILLED

    @property
    def unfilled_size(self) -> float:
        return max(0.0, self.size - self.filled_size)

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_id": self.token.token_id,
            "leg": self.token.label,
            "side": self.side,
            "size": self.size,
            "price": self.price,
            "order_type": self.order_type,
            "state": self.state.value,
            "order_id": self.order_id,
            "filled_size": self.filled_size,
            "error": self.error,
        }


class TradeState(Enum):
    """Execution state of a trade."""

    IDLE = "idle"
    LEGS_SUBMITTING = "legs_submitting"
    AWAITING_FILLS = "awaiting_fills"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    UNWINDING = "unwinding"
    ABORTED = "aborted"
    UNWOUND = "unwound"
    MANUAL_INTERVENTION = "manual_intervention"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    def __str__(self) -> str:
        return self.value


TERMINAL_STATES = frozenset(
    {
        TradeState.COMPLETED,
        TradeState.ABORTED,
        TradeState.UNWOUND,
        TradeState.MANUAL_INTERVENTION,
    }
)

# Legal transitions of the execution state machine
TRANSITIONS: dict[TradeState, frozenset] = {
    TradeState.IDLE: frozenset({TradeState.LEGS_SUBMITTING}),
    TradeState.LEGS_SUBMITTING: frozenset(
        {TradeState.AWAITING_FILLS, TradeState.ABORTED, TradeState.UNWINDING}
    ),
    TradeState.AWAITING_FILLS: frozenset({TradeState.VERIFYING}),
    TradeState.VERIFYING: frozenset(
        {TradeState.COMPLETED, TradeState.UNWINDING, TradeState.ABORTED}
    ),
    TradeState.UNWINDING: frozenset({TradeState.UNWOUND, TradeState.MANUAL_INTERVENTION}),
}


@dataclass
class Trade:
    """
    One two-leg arbitrage attempt.

    Attributes:
        pair_key: WindowPair key the trade belongs to
        spread: Spread that triggered entry
        leg_a: 15m leg order
        leg_b: 5m leg order
        shares: Shares per leg
        simulated: True when executed against the simulated gateway
        state: Current execution state
        reason: Terminal reason (empty until terminal)
        locked_size: Shares held on both legs (the locked-in spread)
        exits: Unwind exit orders issued
        pnl: Realized PnL once resolved
    """

    pair_key: str
    spread: CandidateSpread
    leg_a: LegOrder
    leg_b: LegOrder
    shares: float
    simulated: bool = True
    trade_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: TradeState = TradeState.IDLE
    reason: str = ""
    locked_size: float = 0.0
    exits: list[LegOrder] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)
    history: list[str] = field(default_factory=list)
    pnl: Optional[float] = None
    winners: list[str] = field(default_factory=list)

    @property
    def legs(self) -> tuple[LegOrder, LegOrder]:
        return self.leg_a, self.leg_b

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def cost(self) -> float:
        """Cost of the locked-in size at the entry prices."""
        return (self.leg_a.price + self.leg_b.price) * self.locked_size

    def transition(self, new_state: TradeState, reason: str = "") -> None:
        """
        Move to `new_state`.

        Raises:
            ValueError: If the transition is not part of the state machine
        """
        allowed = TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise ValueError(f"Illegal transition {self.state} -> {new_state} for trade {self.trade_id}")
        self.history.append(f"{self.state.value}->{new_state.value}")
        self.state = new_state
        if reason:
            self.reason = reason
        self.updated_at = _utc_now()

    def escalate(self, reason: str) -> None:
        """Force MANUAL_INTERVENTION from any non-terminal state."""
        if self.is_terminal:
            raise ValueError(f"Trade {self.trade_id} already terminal ({self.state})")
        self.history.append(f"{self.state.value}->{TradeState.MANUAL_INTERVENTION.value}")
        self.state = TradeState.MANUAL_INTERVENTION
        self.reason = reason
        self.updated_at = _utc_now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "pair_key": self.pair_key,
            "simulated": self.simulated,
            "state": self.state.value,
            "reason": self.reason,
            "shares": self.shares,
            "locked_size": self.locked_size,
            "spread": self.spread.to_dict(),
            "leg_a": self.leg_a.to_dict(),
            "leg_b": self.leg_b.to_dict(),
            "exits": [e.to_dict() for e in self.exits],
            "history": list(self.history),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "pnl": self.pnl,
            "winners": list(self.winners),
        }


@dataclass
class Position:
    """
    Net settled outcome-token holding from locked-in trades.

    Consumed by the external redemption process via the position ledger.
    """

    condition_id: str
    token_id: str
    outcome: str
    size: float
    avg_cost: float
    symbol: str = ""
    timeframe: str = ""
    window_start: int = 0
    resolved: bool = False
    redeemable: bool = False

    def add(self, size: float, price: float) -> None:
        total = self.size + size
        if total > 0:
            self.avg_cost = (self.avg_cost * self.size + price * size) / total
        self.size = total

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Position":
        return cls(**data)

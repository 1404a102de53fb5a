"""Configuration management for the 15m/5m Up/Down arbitrage bot."""
import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional, Union

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent

# Data directory
DATA_DIR = PROJECT_ROOT / "data"
LOGS_DIR = PROJECT_ROOT / "logs"

# Polymarket credentials
POLYMARKET_PRIVATE_KEY = os.getenv("POLYMARKET_PRIVATE_KEY", "")
POLYMARKET_FUNDER = os.getenv("POLYMARKET_FUNDER", "")
POLYMARKET_SIGNATURE_TYPE = int(os.getenv("POLYMARKET_SIGNATURE_TYPE", "2"))

# Trading mode: "paper" or "live"
TRADING_MODE = os.getenv("TRADING_MODE", "paper")

# Default strategy config file (overridable with --config)
CONFIG_PATH = Path(os.getenv("ARB_CONFIG_PATH", str(PROJECT_ROOT / "config.json")))

# Trade archive and position ledger
TRADES_LOG_PATH = DATA_DIR / "arb_trades.jsonl"
POSITIONS_PATH = DATA_DIR / "positions.json"

# Kill switch file (create this file to halt new entries)
KILL_SWITCH_FILE = PROJECT_ROOT / ".kill_switch"

# =============================================================================
# API ENDPOINTS
# =============================================================================

CLOB_BASE_URL = "https://clob.polymarket.com"
GAMMA_API_URL = "https://gamma-api.polymarket.com"
WS_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
CRYPTO_PRICE_URL = "https://polymarket.com/api/crypto/crypto-price"

# Chain configuration (Polygon)
CHAIN_ID = 137

# =============================================================================
# STRATEGY DEFAULTS
# =============================================================================

SUPPORTED_SYMBOLS = ["btc", "eth", "sol", "xrp"]

# Max |15m price-to-beat - 5m price-to-beat| (USD) per symbol
DEFAULT_PRICE_TO_BEAT_TOLERANCE = {
    "btc": 10.0,
    "eth": 1.0,
    "sol": 0.05,
    "xrp": 0.0003,
}


def _tolerance_defaults() -> dict[str, float]:
    return dict(DEFAULT_PRICE_TO_BEAT_TOLERANCE)


@dataclass
class ArbConfig:
    """
    Strategy configuration for the 15m vs 5m arbitrage.

    Defaults come from environment variables (via .env); a JSON file passed with
    --config overrides individual keys.

    Attributes:
        symbol: Underlying to trade (btc, eth, sol, xrp).
        sum_threshold: Enter when leg A ask + leg B ask is strictly below this.
        shares: Size in shares per leg.
        verify_fill_secs: How long to wait for both legs to fill.
        fill_poll_interval_secs: Interval between fill queries while waiting.
        simulation_mode: Route orders to the simulated gateway.
        price_to_beat_delay_secs: Delay after window open before the reference freezes.
        price_to_beat_poll_interval_secs: Poll interval while the reference is captured.
        price_to_beat_tolerance: Per-symbol max gap between 15m and 5m references.
        trade_interval_secs: Cooldown between entries on the same window pair.
        min_seconds_left: Refuse entries this close to the window end.
        stale_quote_secs: Quotes older than this pause entries.
        submit_max_attempts: Attempts per leg on transient submission errors.
        exit_max_attempts: Exit orders tried before manual intervention.
        exit_price_step: How far each exit attempt crosses further into the book.
        api_timeout_secs: Bound on every exchange call.
        submit_ack_grace_secs: Extra wait for the acknowledgement of a timed-out submit.
        resolution_poll_interval_secs: Poll interval while waiting for settlement.
        resolution_max_wait_secs: Give up waiting for settlement after this long.
        tick_size: Exchange tick size for order prices.
    """

    symbol: str = os.getenv("ARB_SYMBOL", "btc")
    sum_threshold: float = float(os.getenv("ARB_SUM_THRESHOLD", "0.99"))
    shares: float = float(os.getenv("ARB_SHARES", "10"))
    verify_fill_secs: float = float(os.getenv("ARB_VERIFY_FILL_SECS", "5"))
    fill_poll_interval_secs: float = float(os.getenv("ARB_FILL_POLL_INTERVAL_SECS", "1"))
    simulation_mode: bool = TRADING_MODE.lower() != "live"
    price_to_beat_delay_secs: float = float(os.getenv("ARB_PTB_DELAY_SECS", "30"))
    price_to_beat_poll_interval_secs: float = float(os.getenv("ARB_PTB_POLL_SECS", "2"))
    price_to_beat_tolerance: dict[str, float] = field(default_factory=_tolerance_defaults)
    trade_interval_secs: float = float(os.getenv("ARB_TRADE_INTERVAL_SECS", "60"))
    min_seconds_left: float = float(os.getenv("ARB_MIN_SECONDS_LEFT", "5"))
    stale_quote_secs: float = float(os.getenv("ARB_STALE_QUOTE_SECS", "10"))
    submit_max_attempts: int = int(os.getenv("ARB_SUBMIT_MAX_ATTEMPTS", "3"))
    exit_max_attempts: int = int(os.getenv("ARB_EXIT_MAX_ATTEMPTS", "4"))
    exit_price_step: float = float(os.getenv("ARB_EXIT_PRICE_STEP", "0.02"))
    api_timeout_secs: float = float(os.getenv("ARB_API_TIMEOUT_SECS", "5"))
    submit_ack_grace_secs: float = float(os.getenv("ARB_SUBMIT_ACK_GRACE_SECS", "10"))
    resolution_poll_interval_secs: float = float(os.getenv("ARB_RESOLUTION_POLL_SECS", "30"))
    resolution_max_wait_secs: float = float(os.getenv("ARB_RESOLUTION_MAX_WAIT_SECS", "600"))
    tick_size: str = "0.01"

    def __post_init__(self) -> None:
        self.symbol = self.symbol.lower()
        if self.symbol not in SUPPORTED_SYMBOLS:
            raise ValueError(f"Unsupported symbol {self.symbol!r}; expected one of {SUPPORTED_SYMBOLS}")
        if not 0 < self.sum_threshold <= 1.0:
            raise ValueError(f"sum_threshold {self.sum_threshold} must be in (0, 1]")
        if self.shares <= 0:
            raise ValueError("shares must be positive")
        if self.verify_fill_secs <= 0:
            raise ValueError("verify_fill_secs must be positive")
        if self.submit_max_attempts < 1 or self.exit_max_attempts < 1:
            raise ValueError("retry limits must allow at least one attempt")
        if self.submit_ack_grace_secs < 0:
            raise ValueError("submit_ack_grace_secs must not be negative")

    def apply_live_flag(self, live: bool) -> None:
        """--live forces live trading; without it the configured simulation_mode stands."""
        if live:
            self.simulation_mode = False

    def price_to_beat_tolerance_for(self, symbol: Optional[str] = None) -> float:
        """Price-to-beat tolerance (USD) for the given symbol."""
        return float(self.price_to_beat_tolerance.get((symbol or self.symbol).lower(), 0.0))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArbConfig":
        """Build a config from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {unknown}")
        values = {k: v for k, v in data.items() if k in known}
        if "price_to_beat_tolerance" in values:
            merged = _tolerance_defaults()
            merged.update({k.lower(): float(v) for k, v in values["price_to_beat_tolerance"].items()})
            values["price_to_beat_tolerance"] = merged
        return cls(**values)


def load_config(path: Optional[Union[str, Path]] = None) -> ArbConfig:
    """
    Load strategy config from a JSON file.

    If the file does not exist, the defaults are written to it so the operator
    has a template to edit.

    Args:
        path: Config file path (default: CONFIG_PATH)

    Returns:
        ArbConfig instance
    """
    config_path = Path(path) if path else CONFIG_PATH

    if config_path.exists():
        with open(config_path) as f:
            data = json.load(f)
        config = ArbConfig.from_dict(data)
        logger.info(f"Loaded config from {config_path}")
        return config

    config = ArbConfig()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        json.dump(config.to_dict(), f, indent=2)
    logger.info(f"Config {config_path} not found; wrote defaults")
    return config

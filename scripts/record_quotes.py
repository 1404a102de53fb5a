#!/usr/bin/env python3
"""
Quote recorder for the 15m/5m overlap windows.

Discovers each overlap pair, subscribes to its four outcome tokens over the
CLOB websocket and appends every quote to a JSONL file, together with the
pair definition and both windows' price-to-beat once published. The output
replays with:

    python scripts/run_arb_bot.py --replay data/quotes/btc_20260101.jsonl

Usage:
    python scripts/record_quotes.py --symbol btc --duration 120
"""

import argparse
import json
import logging
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any

import requests

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.api.clob_ws import MarketFeed
from src.api.crypto_price import CryptoPriceClient
from src.arb.discovery import MarketDiscovery
from src.arb.models import PriceToBeat
from src.arb.simulation import pair_record, price_to_beat_record, quote_record
from src.arb.windows import seconds_until_overlap
from src.config import DATA_DIR, SUPPORTED_SYMBOLS

logger = logging.getLogger(__name__)

POLL_SECS = 5


class QuoteWriter:
    """Thread-safe JSONL appender (the feed thread writes quotes)."""

    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.count = 0
        self._lock = threading.Lock()

    def write(self, record: dict[str, Any]) -> None:
        with self._lock:
            with open(self.path, "a") as f:
                f.write(json.dumps(record) + "\n")
            self.count += 1


def record(symbol: str, duration_minutes: int) -> Path:
    """Record overlap windows for `symbol` until the duration elapses (0 = forever)."""
    out = DATA_DIR / "quotes" / f"{symbol}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.jsonl"
    writer = QuoteWriter(out)
    discovery = MarketDiscovery()
    prices = CryptoPriceClient()
    feed = MarketFeed()
    feed.add_handler(lambda quote: writer.write(quote_record(quote)))

    end = time.time() + duration_minutes * 60 if duration_minutes > 0 else None
    current_key = None
    captured: set[str] = set()
    logger.info(f"Recording {symbol.upper()} overlap windows to {out}")

    try:
        while end is None or time.time() < end:
            wait = seconds_until_overlap()
            if wait > 0:
                time.sleep(min(wait, POLL_SECS))
                continue

            pair = discovery.find_pair(symbol)
            if pair is None:
                time.sleep(POLL_SECS)
                continue

            if pair.key != current_key:
                writer.write(pair_record(pair, time.time()))
                feed.start(pair.token_ids)
                current_key = pair.key
                captured = set()
                logger.info(f"Recording {pair.key}")

            for window in (pair.window_15m, pair.window_5m):
                if window.key in captured:
                    continue
                try:
                    value = prices.get_open_price(window)
                except requests.RequestException as e:
                    logger.warning(f"Price-to-beat for {window.key} failed: {e}")
                    continue
                if value is not None:
                    ptb = PriceToBeat(window_key=window.key, value=value, captured_at=time.time())
                    writer.write(price_to_beat_record(ptb))
                    captured.add(window.key)
                    logger.info(f"Price-to-beat {window.key} = {value}")

            time.sleep(POLL_SECS)
    finally:
        feed.stop()

    logger.info(f"Recorded {writer.count} records to {out}")
    return out


def main():
    parser = argparse.ArgumentParser(description="Record 15m/5m overlap quotes for replay")
    parser.add_argument("--symbol", default="btc", choices=SUPPORTED_SYMBOLS, help="Underlying (default: btc)")
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        metavar="MINUTES",
        help="How long to record in minutes (0 = unlimited, default: 0)",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
    logging.getLogger("websocket").setLevel(logging.WARNING)

    try:
        record(args.symbol, args.duration)
    except KeyboardInterrupt:
        print("\nStopped")


if __name__ == "__main__":
    main()

"""CLOB WebSocket price feed for top-of-book quotes."""
import json
import logging
import threading
import time
from queue import Empty, Queue
from typing import Callable, Dict, Iterator, List, Optional, Union

import websocket

from ..arb.models import PriceQuote
from ..config import WS_URL

logger = logging.getLogger(__name__)

RECONNECT_DELAY_SECS = 3.0


def is_placeholder_quote(bid: Optional[float], ask: Optional[float]) -> bool:
    """Empty-book placeholders quote ~0.01 / ~0.99; they carry no price information."""
    if bid is not None and ask is not None:
        return bid < 0.05 and ask > 0.95
    if bid is not None:
        return bid < 0.05
    if ask is not None:
        return ask > 0.95
    return False


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _best(levels: List[Dict], pick: Callable) -> Optional[float]:
    prices = [p for p in (_to_float(level.get("price")) for level in levels or []) if p is not None]
    return pick(prices) if prices else None


class MarketFeed:
    """
    WebSocket client for Polymarket CLOB market data.

    Subscribes to the market channel for a set of token IDs and turns `book`
    and `price_change` events into PriceQuote objects. Runs on a daemon thread
    and reconnects after RECONNECT_DELAY_SECS when the socket drops.

    Quotes are delivered to handlers (called on the feed thread) and, while a
    subscribe() iterator is active, to an internal queue.
    """

    def __init__(self, url: str = WS_URL, reconnect_delay: float = RECONNECT_DELAY_SECS):
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.ws: Optional[websocket.WebSocketApp] = None
        self.token_ids: List[str] = []
        self.handlers: List[Callable[[PriceQuote], None]] = []
        self.quotes: Queue = Queue()
        self.running = False
        self._queue_enabled = False
        self._thread: Optional[threading.Thread] = None
        # token_id -> (bid, ask); book events may carry only one side
        self._last: Dict[str, tuple] = {}

    def add_handler(self, handler: Callable[[PriceQuote], None]):
        """Add a quote handler callback."""
        self.handlers.append(handler)

    def parse_message(self, message: Union[str, Dict, List]) -> List[PriceQuote]:
        """
        Parse one market-channel message into quotes.

        Placeholder quotes are dropped. A side missing from an event keeps its
        last known value.
        """
        if isinstance(message, str):
            if message.strip().upper() == "PONG":
                return []
            try:
                message = json.loads(message)
            except json.JSONDecodeError:
                logger.debug(f"Unparseable message: {message[:200]}")
                return []

        if isinstance(message, list):
            quotes = []
            for item in message:
                quotes.extend(self.parse_message(item))
            return quotes

        if not isinstance(message, dict):
            return []

        event_type = message.get("event_type") or message.get("type")
        updates = []
        if event_type == "book":
            bid = _best(message.get("bids") or message.get("buys"), max)
            ask = _best(message.get("asks") or message.get("sells"), min)
            updates.append((message.get("asset_id"), bid, ask))
        elif event_type == "price_change":
            for change in message.get("price_changes", []):
                updates.append(
                    (change.get("asset_id"), _to_float(change.get("best_bid")), _to_float(change.get("best_ask")))
                )

        now = time.time()
        quotes = []
        for token_id, bid, ask in updates:
            if not token_id or (bid is None and ask is None) or is_placeholder_quote(bid, ask):
                continue
            last_bid, last_ask = self._last.get(token_id, (None, None))
            bid = bid if bid is not None else last_bid
            ask = ask if ask is not None else last_ask
            self._last[token_id] = (bid, ask)
            if ask is None:
                continue
            quotes.append(PriceQuote(token_id=token_id, ask=ask, bid=bid, ts=now))
        return quotes

    def _on_message(self, ws, message):
        """Handle incoming messages."""
        for quote in self.parse_message(message):
            if self._queue_enabled:
                self.quotes.put(quote)
            for handler in self.handlers:
                handler(quote)

    def _on_error(self, ws, error):
        logger.error(f"WebSocket error: {error}")

    def _on_close(self, ws, close_status_code, close_msg):
        logger.info(f"WebSocket closed: {close_status_code} - {close_msg}")

    def _on_open(self, ws):
        """Subscribe to the current token IDs."""
        ws.send(json.dumps({"assets_ids": list(self.token_ids), "type": "market"}))
        logger.info(f"CLOB WebSocket connected, subscribed to {len(self.token_ids)} assets")

    def _run(self):
        while self.running:
            self.ws = websocket.WebSocketApp(
                self.url,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close,
                on_open=self._on_open,
            )
            self.ws.run_forever(ping_interval=20, ping_timeout=10)
            if self.running:
                logger.info(f"Reconnecting in {self.reconnect_delay}s")
                time.sleep(self.reconnect_delay)

    def start(self, token_ids: List[str]):
        """
        Connect in the background and subscribe to `token_ids`.

        Calling start() again with new tokens resubscribes.
        """
        self.token_ids = list(token_ids)
        self._last = {t: v for t, v in self._last.items() if t in self.token_ids}
        if self.running and self._thread and self._thread.is_alive():
            # Reconnect loop picks up the new token list
            if self.ws:
                self.ws.close()
            return
        self.running = True
        self._thread = threading.Thread(target=self._run, name="clob-ws", daemon=True)
        self._thread.start()

    def stop(self):
        """Disconnect WebSocket."""
        self.running = False
        self._queue_enabled = False
        if self.ws:
            self.ws.close()

    def subscribe(self, token_ids: List[str], poll_timeout: float = 1.0) -> Iterator[PriceQuote]:
        """
        Lazy iterator of quotes for `token_ids`.

        Blocks between quotes; ends once stop() is called.
        """
        self._queue_enabled = True
        self.start(token_ids)
        while self.running:
            try:
                yield self.quotes.get(timeout=poll_timeout)
            except Empty:
                continue

"""CLOB REST client for order books and market metadata."""
import logging
import time
from typing import Dict, Optional, Tuple

import requests

from ..arb.errors import FeedUnavailable
from ..arb.models import Outcome, PriceQuote
from ..config import CLOB_BASE_URL

logger = logging.getLogger(__name__)


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def outcome_of(label: str) -> Optional[Outcome]:
    """Map a CLOB token outcome label ("Up", "Down", "1", "0") to an Outcome."""
    upper = (label or "").upper()
    if "UP" in upper or upper == "1":
        return Outcome.UP
    if "DOWN" in upper or upper == "0":
        return Outcome.DOWN
    return None


class ClobRestClient:
    """
    Client for public Polymarket CLOB endpoints.

    Used for:
    - Polling best ask/bid when the websocket feed is unavailable
    - Token ids per outcome for a condition id
    - Resolution status (closed flag and winning token)
    """

    def __init__(self, base_url: str = CLOB_BASE_URL, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _get(self, endpoint: str, params: Optional[Dict] = None) -> Dict:
        response = requests.get(f"{self.base_url}{endpoint}", params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def current_best_ask(self, token_id: str) -> PriceQuote:
        """
        Poll the order book for the current top of book.

        Raises:
            FeedUnavailable: If the book cannot be fetched or has no asks
        """
        try:
            book = self._get("/book", {"token_id": token_id})
        except (requests.RequestException, ValueError) as e:
            raise FeedUnavailable(f"Order book for {token_id[:16]}... unavailable: {e}") from e

        asks = [p for p in (_to_float(a.get("price")) for a in book.get("asks", [])) if p is not None]
        bids = [p for p in (_to_float(b.get("price")) for b in book.get("bids", [])) if p is not None]
        if not asks:
            raise FeedUnavailable(f"Order book for {token_id[:16]}... has no asks")

        return PriceQuote(
            token_id=token_id,
            ask=min(asks),
            bid=max(bids) if bids else None,
            ts=time.time(),
        )

    def get_market(self, condition_id: str) -> Optional[Dict]:
        """Market details by condition id, or None if unavailable."""
        try:
            return self._get(f"/markets/{condition_id}")
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Error fetching market {condition_id}: {e}")
            return None

    def get_market_tokens(self, condition_id: str) -> Tuple[str, str]:
        """
        Token ids (up, down) for a condition id.

        Raises:
            LookupError: If the market or either outcome token is missing
        """
        market = self.get_market(condition_id)
        if not market:
            raise LookupError(f"Market {condition_id} not found")

        up = down = None
        for token in market.get("tokens", []):
            outcome = outcome_of(token.get("outcome", ""))
            if outcome == Outcome.UP:
                up = token.get("token_id")
            elif outcome == Outcome.DOWN:
                down = token.get("token_id")

        if not up or not down:
            raise LookupError(f"Market {condition_id} is missing Up/Down tokens")
        return up, down

    def get_resolution(self, condition_id: str) -> Optional[Tuple[str, Outcome]]:
        """(winning token id, outcome) once the market is closed with a winner, else None."""
        market = self.get_market(condition_id)
        if not market or not market.get("closed"):
            return None
        for token in market.get("tokens", []):
            if token.get("winner"):
                outcome = outcome_of(token.get("outcome", ""))
                if outcome is not None:
                    return token.get("token_id"), outcome
        return None

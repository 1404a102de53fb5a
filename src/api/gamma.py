"""Gamma API client for market discovery."""
import json
import logging
from typing import Dict, Optional

import requests

from ..config import GAMMA_API_URL

logger = logging.getLogger(__name__)


class GammaClient:
    """
    Client for Polymarket Gamma API.

    Used for:
    - Looking up Up/Down events by slug
    - Market metadata (condition id, question, active/closed flags)
    """

    def __init__(self, base_url: str = GAMMA_API_URL, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session_headers = {
            "Accept": "application/json",
            "User-Agent": "TenorArb/1.0",
        }

    def _get(self, endpoint: str, params: Optional[Dict] = None):
        """Make GET request."""
        response = requests.get(
            f"{self.base_url}{endpoint}",
            params=params,
            headers=self.session_headers,
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def get_event_by_slug(self, slug: str) -> Optional[Dict]:
        """Get event (with its markets) by slug, or None if not found."""
        try:
            return self._get(f"/events/slug/{slug}")
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                return None
            raise

    def get_market_by_slug(self, slug: str) -> Optional[Dict]:
        """
        First market of the event with the given slug.

        Returns:
            Normalized market dict, or None if the event does not exist
        """
        event = self.get_event_by_slug(slug)
        if not event:
            return None

        markets = event.get("markets") or []
        if not markets:
            logger.warning(f"Event {slug} has no markets")
            return None
        return self.extract_market_info(markets[0], slug)

    def extract_market_info(self, market: Dict, slug: Optional[str] = None) -> Dict:
        """
        Extract key info from a market object.

        Returns normalized structure.
        """
        token_ids = market.get("clobTokenIds") or []
        if isinstance(token_ids, str):
            token_ids = json.loads(token_ids)
        outcomes = market.get("outcomes") or []
        if isinstance(outcomes, str):
            outcomes = json.loads(outcomes)

        return {
            "condition_id": market.get("conditionId") or market.get("condition_id"),
            "slug": slug or market.get("slug"),
            "question": market.get("question", ""),
            "clob_token_ids": token_ids,
            "outcomes": outcomes,
            "active": bool(market.get("active", False)),
            "closed": bool(market.get("closed", False)),
        }

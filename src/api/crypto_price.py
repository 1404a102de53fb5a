"""Polymarket crypto-price API client (window open prices)."""
import logging
from typing import Optional

import requests

from ..arb.models import MarketWindow, Timeframe
from ..arb.windows import iso_utc
from ..config import CRYPTO_PRICE_URL

logger = logging.getLogger(__name__)

# Variant names used by the crypto-price endpoint
VARIANTS = {
    Timeframe.FIFTEEN_MIN: "fifteen",
    Timeframe.FIVE_MIN: "fiveminute",
}


class CryptoPriceClient:
    """
    Fetches the price-to-beat (openPrice) of an Up/Down window.

    The open price is not published immediately: roughly two minutes after
    open for 15m windows and 30 seconds for 5m windows. Until then the
    endpoint returns an error or no openPrice, and get_open_price() returns None.
    """

    def __init__(self, url: str = CRYPTO_PRICE_URL, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def get_open_price(self, window: MarketWindow) -> Optional[float]:
        """
        Open price for `window`, or None if not yet available.

        Raises:
            requests.RequestException: On transport failures
        """
        params = {
            "symbol": window.symbol.upper(),
            "eventStartTime": iso_utc(window.start),
            "variant": VARIANTS[window.timeframe],
            "endDate": iso_utc(window.end),
        }
        response = requests.get(self.url, params=params, timeout=self.timeout)
        if not response.ok:
            logger.debug(f"crypto-price {window.slug}: HTTP {response.status_code}")
            return None

        open_price = response.json().get("openPrice")
        try:
            return float(open_price) if open_price is not None else None
        except (TypeError, ValueError):
            logger.warning(f"crypto-price {window.slug}: unparseable openPrice {open_price!r}")
            return None

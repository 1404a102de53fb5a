"""
Market Discovery for the 15m/5m pair.

Up/Down markets use a predictable slug built from the ET-aligned period
start:
- {symbol}-updown-15m-{p15}
- {symbol}-updown-5m-{p5}

During the overlap the 5m window containing `now` ends together with the 15m
window. Each slug is looked up on Gamma (inactive or closed markets are
skipped) and the Up/Down token ids come from the CLOB market endpoint.

Example:
    discovery = MarketDiscovery()
    pair = discovery.find_pair("btc")
    if pair:
        print(pair.key, pair.token_ids)
"""

import logging
import time
from dataclasses import replace
from typing import Optional

import requests

from ..api.clob_rest import ClobRestClient, outcome_of
from ..api.gamma import GammaClient
from .models import MarketWindow, Outcome, OutcomeToken, Timeframe, WindowPair
from .windows import current_window

logger = logging.getLogger(__name__)


class MarketDiscovery:
    """
    Finds the active 15m/5m Up/Down markets for a symbol.

    Attributes:
        gamma: Gamma API client (slug lookup)
        rest: CLOB REST client (token ids)
    """

    def __init__(self, gamma: Optional[GammaClient] = None, rest: Optional[ClobRestClient] = None):
        self.gamma = gamma or GammaClient()
        self.rest = rest or ClobRestClient()

    def _tokens_from_gamma(self, info: dict) -> Optional[tuple[str, str]]:
        """Up/Down token ids from Gamma's clobTokenIds/outcomes, if both are present."""
        up = down = None
        for outcome, token_id in zip(info.get("outcomes", []), info.get("clob_token_ids", [])):
            side = outcome_of(outcome)
            if side == Outcome.UP:
                up = token_id
            elif side == Outcome.DOWN:
                down = token_id
        return (up, down) if up and down else None

    def find_window(
        self, symbol: str, timeframe: Timeframe, now: Optional[float] = None
    ) -> Optional[tuple[MarketWindow, OutcomeToken, OutcomeToken]]:
        """
        Look up the market for the window of `timeframe` containing `now`.

        Returns:
            (window with condition id, up token, down token), or None if the
            market does not exist, is not tradeable, or the lookup failed
        """
        window = current_window(symbol, timeframe, now)
        try:
            info = self.gamma.get_market_by_slug(window.slug)
        except requests.RequestException as e:
            logger.warning(f"Gamma lookup for {window.slug} failed: {e}")
            return None

        if info is None:
            logger.info(f"No market for {window.slug}")
            return None
        if not info["active"] or info["closed"]:
            logger.info(f"Skipping {window.slug}: active={info['active']} closed={info['closed']}")
            return None
        if not info["condition_id"]:
            logger.warning(f"Market {window.slug} has no condition id")
            return None

        try:
            up, down = self.rest.get_market_tokens(info["condition_id"])
        except LookupError as e:
            tokens = self._tokens_from_gamma(info)
            if tokens is None:
                logger.warning(f"No Up/Down tokens for {window.slug}: {e}")
                return None
            up, down = tokens

        window = replace(window, condition_id=info["condition_id"])
        logger.debug(f"Found {window.slug} ({window.condition_id[:16]}...)")
        return window, OutcomeToken(up, window, Outcome.UP), OutcomeToken(down, window, Outcome.DOWN)

    def find_pair(self, symbol: str, now: Optional[float] = None) -> Optional[WindowPair]:
        """
        Discover the 15m window and the 5m window ending with it.

        Returns:
            WindowPair, or None if either market is unavailable
        """
        ts = now if now is not None else time.time()
        found_15m = self.find_window(symbol, Timeframe.FIFTEEN_MIN, ts)
        if found_15m is None:
            return None
        found_5m = self.find_window(symbol, Timeframe.FIVE_MIN, ts)
        if found_5m is None:
            return None

        w15, up_15m, down_15m = found_15m
        w5, up_5m, down_5m = found_5m
        if w5.end != w15.end:
            logger.info(f"{w5.slug} does not end with {w15.slug}; not in overlap")
            return None

        pair = WindowPair(
            symbol=symbol.lower(),
            window_15m=w15,
            window_5m=w5,
            up_15m=up_15m,
            down_15m=down_15m,
            up_5m=up_5m,
            down_5m=down_5m,
        )
        logger.info(f"Discovered pair {pair.key}: {w15.slug} + {w5.slug}")
        return pair

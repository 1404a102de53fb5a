"""
Shared fixtures for the arbitrage tests.

IMPORTANT: All tests use fakes or mocks for exchange and API calls. NO real
orders are placed.
"""

import pytest

from src.arb.models import WindowPair
from src.config import ArbConfig

from tests.fakes import make_pair


@pytest.fixture
def pair() -> WindowPair:
    return make_pair()


@pytest.fixture
def config() -> ArbConfig:
    """Config with short waits so execution tests finish quickly."""
    return ArbConfig(
        symbol="btc",
        sum_threshold=0.99,
        shares=10,
        verify_fill_secs=0.05,
        fill_poll_interval_secs=0.01,
        simulation_mode=True,
        price_to_beat_delay_secs=30,
        price_to_beat_poll_interval_secs=0.01,
        trade_interval_secs=60,
        min_seconds_left=5,
        stale_quote_secs=10,
        submit_max_attempts=3,
        exit_max_attempts=4,
        exit_price_step=0.02,
        api_timeout_secs=1.0,
        submit_ack_grace_secs=0.5,
        resolution_poll_interval_secs=0.01,
        resolution_max_wait_secs=0.1,
    )

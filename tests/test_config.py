"""
Tests for strategy configuration.
"""

import json

import pytest

from src.config import DEFAULT_PRICE_TO_BEAT_TOLERANCE, ArbConfig, load_config


class TestArbConfig:
    """Tests for ArbConfig validation and conversion."""

    def test_defaults_valid(self):
        config = ArbConfig(symbol="BTC")
        assert config.symbol == "btc"
        assert config.price_to_beat_tolerance_for() == DEFAULT_PRICE_TO_BEAT_TOLERANCE["btc"]

    def test_unsupported_symbol(self):
        with pytest.raises(ValueError, match="Unsupported symbol"):
            ArbConfig(symbol="doge")

    @pytest.mark.parametrize("threshold", [0, 1.01, -0.5])
    def test_threshold_range(self, threshold):
        with pytest.raises(ValueError, match="sum_threshold"):
            ArbConfig(sum_threshold=threshold)

    def test_shares_positive(self):
        with pytest.raises(ValueError):
            ArbConfig(shares=0)

    def test_retry_limits(self):
        with pytest.raises(ValueError):
            ArbConfig(exit_max_attempts=0)

    def test_from_dict_merges_tolerances(self):
        config = ArbConfig.from_dict({"symbol": "eth", "price_to_beat_tolerance": {"ETH": 2.5}, "bogus": 1})

        assert config.symbol == "eth"
        assert config.price_to_beat_tolerance_for() == 2.5
        assert config.price_to_beat_tolerance_for("btc") == DEFAULT_PRICE_TO_BEAT_TOLERANCE["btc"]

    def test_round_trip_dict(self):
        config = ArbConfig(sum_threshold=0.97, shares=25)
        assert ArbConfig.from_dict(config.to_dict()) == config


class TestLoadConfig:
    """Tests for load_config()."""

    def test_writes_defaults_when_missing(self, tmp_path):
        path = tmp_path / "config.json"
        config = load_config(path)

        assert path.exists()
        assert json.loads(path.read_text())["sum_threshold"] == config.sum_threshold

    def test_loads_overrides(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"sum_threshold": 0.95, "shares": 5}))

        config = load_config(path)
        assert config.sum_threshold == 0.95
        assert config.shares == 5

    def test_config_file_can_select_live(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"simulation_mode": False}))

        config = load_config(path)
        config.apply_live_flag(False)
        assert config.simulation_mode is False


class TestLiveFlag:
    """Tests for the --live override."""

    def test_live_flag_forces_live(self):
        config = ArbConfig(simulation_mode=True)
        config.apply_live_flag(True)
        assert config.simulation_mode is False

    def test_without_flag_config_stands(self):
        config = ArbConfig(simulation_mode=True)
        config.apply_live_flag(False)
        assert config.simulation_mode is True

    def test_negative_ack_grace_rejected(self):
        with pytest.raises(ValueError, match="submit_ack_grace_secs"):
            ArbConfig(submit_ack_grace_secs=-1)

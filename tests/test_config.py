"""
Tests for environment-driven settings.
"""
from dataclasses import FrozenInstanceError
from decimal import Decimal

import pytest

from bridgewatch.config.config import NETWORK_DEFAULTS, Settings
from bridgewatch.errors import ConfigError


class TestSettingsLoad:

    def test_defaults(self, env):
        cfg = Settings.load()
        assert cfg.network == "Testnet"
        assert cfg.explorer_url == NETWORK_DEFAULTS["Testnet"]["explorer_url"]
        assert cfg.source_poll_interval == 5.0
        assert cfg.max_poll_attempts == 300
        assert cfg.amount_tolerance == Decimal("1e-9")
        assert cfg.early_arrival_grace_ms == 0
        assert cfg.reject_ambiguous is True
        assert cfg.metrics_port == 0

    def test_devnet_defaults(self, env):
        env.setenv("BW_NETWORK", "Devnet")
        cfg = Settings.load()
        assert cfg.token_address == NETWORK_DEFAULTS["Devnet"]["token_address"]

    def test_overrides(self, env):
        env.setenv("BW_SOURCE_POLL_SEC", "1.5")
        env.setenv("BW_MAX_POLL_ATTEMPTS", "12")
        env.setenv("BW_REJECT_AMBIGUOUS", "false")
        env.setenv("BW_LOG_LEVEL", "debug")
        cfg = Settings.load()
        assert cfg.source_poll_interval == 1.5
        assert cfg.max_poll_attempts == 12
        assert cfg.reject_ambiguous is False
        assert cfg.log_level == "DEBUG"


class TestSettingsValidation:

    def test_missing_ledger_endpoint(self, env):
        env.delenv("BW_XRPL_URL")
        with pytest.raises(ConfigError, match="BW_XRPL_URL"):
            Settings.load()

    def test_websocket_endpoint_rejected(self, env):
        env.setenv("BW_XRPL_URL", "wss://s.altnet.rippletest.net:51233")
        with pytest.raises(ConfigError):
            Settings.load()

    @pytest.mark.parametrize("key,value", [
        ("BW_NETWORK", "Mainnet"),
        ("BW_SOURCE_POLL_SEC", "0"),
        ("BW_MAX_POLL_ATTEMPTS", "ten"),
        ("BW_AMOUNT_TOLERANCE", "abc"),
        ("BW_EARLY_ARRIVAL_GRACE_MS", "-1"),
        ("BW_AMOUNT_STEP", "0.000000001"),
        ("BW_LOG_LEVEL", "LOUD"),
    ])
    def test_invalid_values(self, env, key, value):
        env.setenv(key, value)
        with pytest.raises(ConfigError):
            Settings.load()

    def test_settings_are_frozen(self, env):
        cfg = Settings.load()
        with pytest.raises(FrozenInstanceError):
            cfg.max_poll_attempts = 1

"""
Tests for configuration: copy-trading config validation and parsing,
application settings from the environment.
"""
import pytest
import os
from unittest.mock import patch

from config import AppSettings, CopyTradingConfig, DerivAPI, mask_token
from errors import ConfigError


class TestMaskToken:

    def test_keeps_first_ten_characters(self):
        assert mask_token("abcdefghijklmnop") == "abcdefghij..."

    def test_short_token(self):
        assert mask_token("abc") == "abc..."


class TestCopyTradingConfigValidate:

    def test_valid(self):
        CopyTradingConfig(trader_tokens=["T1"]).validate()

    def test_no_tokens(self):
        with pytest.raises(ConfigError, match="No trader tokens provided"):
            CopyTradingConfig(trader_tokens=[]).validate()

    def test_mirror_needs_real_token(self):
        with pytest.raises(ConfigError, match="Real account token required"):
            CopyTradingConfig(trader_tokens=["T1"], copy_to_real_account=True).validate()

    def test_mirror_with_token(self):
        CopyTradingConfig(trader_tokens=["T1"], copy_to_real_account=True, real_account_token="R").validate()

    @pytest.mark.parametrize("ratio", [0, -1])
    def test_non_positive_ratio(self, ratio):
        with pytest.raises(ConfigError, match="Copy ratio must be positive"):
            CopyTradingConfig(trader_tokens=["T1"], copy_ratio=ratio).validate()

    def test_min_above_max(self):
        with pytest.raises(ConfigError, match="Minimum stake cannot exceed maximum stake"):
            CopyTradingConfig(trader_tokens=["T1"], min_trade_stake=50, max_trade_stake=10).validate()


class TestCopyTradingConfigParsing:

    def test_from_dict_ignores_unknown_keys(self):
        config = CopyTradingConfig.from_dict({"trader_tokens": ["T1"], "theme": "dark"})
        assert config.trader_tokens == ["T1"]

    def test_empty_allowlists_mean_no_filter(self):
        config = CopyTradingConfig.from_dict({"trader_tokens": ["T1"], "assets": [], "trade_types": []})
        assert config.assets is None
        assert config.trade_types is None

    def test_null_ratio_defaults_to_one(self):
        assert CopyTradingConfig.from_dict({"trader_tokens": ["T1"], "copy_ratio": None}).copy_ratio == 1.0

    def test_real_token_dropped_when_not_mirroring(self):
        config = CopyTradingConfig.from_dict({"trader_tokens": ["T1"], "real_account_token": "REAL-123"})
        assert config.real_account_token is None

    def test_numeric_strings_coerced(self):
        config = CopyTradingConfig.from_dict({
            "trader_tokens": ["T1"],
            "copy_ratio": "2",
            "min_trade_stake": "5",
            "max_trade_stake": "10",
        })

        assert config.copy_ratio == 2.0
        assert config.min_trade_stake == 5.0
        assert config.max_trade_stake == 10.0
        config.validate()

    def test_blank_stake_means_unset(self):
        assert CopyTradingConfig.from_dict({"trader_tokens": ["T1"], "min_trade_stake": ""}).min_trade_stake is None

    @pytest.mark.parametrize("ratio", ["abc", "nan", "inf", True, [2], {"x": 1}])
    def test_bad_ratio_rejected(self, ratio):
        with pytest.raises(ConfigError, match="copy_ratio must be"):
            CopyTradingConfig.from_dict({"trader_tokens": ["T1"], "copy_ratio": ratio})

    def test_tokens_must_be_a_list(self):
        with pytest.raises(ConfigError, match="trader_tokens must be a list"):
            CopyTradingConfig.from_dict({"trader_tokens": "abc"})

    def test_list_entries_must_be_strings(self):
        with pytest.raises(ConfigError, match="assets must only contain strings"):
            CopyTradingConfig.from_dict({"trader_tokens": ["T1"], "assets": ["R_50", 7]})

    def test_mirror_flag_must_be_boolean(self):
        with pytest.raises(ConfigError, match="copy_to_real_account"):
            CopyTradingConfig.from_dict({"trader_tokens": ["T1"], "copy_to_real_account": "yes"})

    def test_validate_rejects_string_ratio(self):
        with pytest.raises(ConfigError, match="copy_ratio must be a number"):
            CopyTradingConfig(trader_tokens=["T1"], copy_ratio="2").validate()

    def test_validate_rejects_string_tokens(self):
        with pytest.raises(ConfigError, match="trader_tokens must be a list"):
            CopyTradingConfig(trader_tokens="T1").validate()

    def test_to_dict_masks_credentials(self):
        config = CopyTradingConfig(
            trader_tokens=["trader-token-123456"],
            copy_to_real_account=True,
            real_account_token="real-token-abcdef",
        )
        d = config.to_dict()

        assert d["trader_tokens"] == ["trader-tok..."]
        assert d["real_account_token"] == "real-token..."

    def test_mode_label(self):
        assert CopyTradingConfig(trader_tokens=["T1"]).mode_label == "SAME ACCOUNT TYPE"
        assert CopyTradingConfig(trader_tokens=["T1"], copy_to_real_account=True).mode_label == "DEMO → REAL"


class TestAppSettings:

    def test_default_endpoint(self):
        assert AppSettings().deriv_ws_url == "wss://ws.derivws.com/websockets/v3?app_id=1089"
        assert DerivAPI.ws_url("777").endswith("app_id=777")

    def test_from_env(self):
        with patch.dict(os.environ, {
            "DERIV_APP_ID": "4242",
            "DERIV_API_TOKEN": "platform-token",
            "TOKEN_DB_PATH": "/tmp/tokens.db",
            "PORT": "9000",
        }):
            settings = AppSettings.from_env()

        assert settings.deriv_ws_url.endswith("app_id=4242")
        assert settings.api_token == "platform-token"
        assert settings.token_db_path == "/tmp/tokens.db"
        assert settings.port == 9000

    def test_explicit_ws_url_wins(self):
        with patch.dict(os.environ, {"DERIV_WS_URL": "wss://example.invalid/ws"}):
            assert AppSettings.from_env().deriv_ws_url == "wss://example.invalid/ws"

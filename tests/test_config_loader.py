import sys
from pathlib import Path

# Ensure project root on sys.path before importing project packages
sys.path.append(str(Path(__file__).resolve().parents[1]))

import math

import pytest
import yaml

from botconfig import ConfigLoader, BotConfig, SignalSettings, ConfirmationSettings, timeframe_minutes
from smcbot.errors import FatalConfigurationError


def test_missing_file_creates_default(tmp_path):
    path = tmp_path / "config" / "bots.yaml"

    config = ConfigLoader(str(path)).load()

    assert path.exists()
    assert {bot.bot_id for bot in config.bots} == {"btc-main", "sol-scalp"}
    assert config.get_enabled_bots() == []
    assert config.exchange == "paper"


def test_saved_config_loads_back(tmp_path):
    path = tmp_path / "bots.yaml"
    loader = ConfigLoader(str(path))
    config = loader.load()
    config.bots[0].enabled = True
    config.bots[0].signals = SignalSettings(min_confluence=2)

    assert loader.save(config)
    reloaded = loader.load()

    bot = reloaded.get_bot_config("btc-main")
    assert bot.enabled
    assert isinstance(bot.signals, SignalSettings)
    assert bot.signals.min_confluence == 2
    assert math.isinf(reloaded.risk_tiers[-1].max_price)


def test_partial_yaml_uses_defaults(tmp_path):
    path = tmp_path / "bots.yaml"
    path.write_text(yaml.safe_dump({
        "exchange": "paper",
        "tick_interval_seconds": 30,
        "bots": [{"bot_id": "eth", "symbol": "eth-usdt", "timeframes": ["5m", "1h"],
                  "signals": {"min_confluence": 0}}],
        "risk_tiers": [
            {"name": "low", "min_price": 0, "max_price": 10, "stop_loss_percentage": 4,
             "take_profit_percentage": 10, "min_risk_reward": 1.5},
            {"name": "high", "min_price": 10, "max_price": 20, "stop_loss_percentage": 2,
             "take_profit_percentage": 5, "min_risk_reward": 1.5},
        ],
    }))

    config = ConfigLoader(str(path)).load()

    bot = config.get_bot_config("eth")
    assert bot.symbol == "ETH-USDT"
    assert bot.leverage == 10
    assert bot.signals.min_confluence == 0
    assert config.tick_interval_seconds == 30
    assert [t.name for t in config.risk_tiers] == ["low", "high"]
    assert math.isinf(config.risk_tiers[-1].max_price)


def test_invalid_symbol_is_fatal(tmp_path):
    path = tmp_path / "bots.yaml"
    path.write_text(yaml.safe_dump({"bots": [{"bot_id": "x", "symbol": "BTCUSDT"}]}))

    with pytest.raises(FatalConfigurationError):
        ConfigLoader(str(path)).load()


def test_unknown_field_is_fatal(tmp_path):
    path = tmp_path / "bots.yaml"
    path.write_text(yaml.safe_dump({"bots": [{"bot_id": "x", "symbol": "BTC-USDT", "colour": "red"}]}))

    with pytest.raises(FatalConfigurationError):
        ConfigLoader(str(path)).load()


def test_unparseable_yaml_is_fatal(tmp_path):
    path = tmp_path / "bots.yaml"
    path.write_text("bots: [\n")

    with pytest.raises(FatalConfigurationError):
        ConfigLoader(str(path)).load()


def test_bot_validation_messages():
    bot = BotConfig(bot_id="v", symbol="BTC-USDT", timeframes=["15m", "15m", "7m"], leverage=200,
                    signals=SignalSettings(min_strength_threshold=0.95, high_strength_requirement=0.9))
    errors = bot.validate()

    assert any("unknown timeframe 7m" in e for e in errors)
    assert any("duplicate timeframes" in e for e in errors)
    assert any("leverage" in e for e in errors)
    assert any("thresholds" in e for e in errors)


def test_timeframe_ordering():
    assert timeframe_minutes("15m") < timeframe_minutes("1h") < timeframe_minutes("1d")
    assert timeframe_minutes("bogus") > timeframe_minutes("1d")


def test_confirmation_settings_from_yaml_and_validation(tmp_path):
    path = tmp_path / "bots.yaml"
    path.write_text(yaml.safe_dump({
        "bots": [{"bot_id": "eth", "symbol": "ETH-USDT",
                  "confirmation": {"enabled": False, "breakout_timeframes": ["5m"]}}],
    }))

    bot = ConfigLoader(str(path)).load().get_bot_config("eth")

    assert isinstance(bot.confirmation, ConfirmationSettings)
    assert not bot.confirmation.enabled
    assert bot.confirmation.timeframes() == ["1h", "30m", "5m"]
    assert bot.software_stop_guard

    bad = BotConfig(bot_id="v", symbol="BTC-USDT",
                    confirmation=ConfirmationSettings(trend_timeframes=["7m"], trend_candles=1,
                                                      consumed_ttl_minutes=-1))
    errors = bad.validate()
    assert any("unknown confirmation timeframe 7m" in e for e in errors)
    assert any("trend_candles" in e for e in errors)
    assert any("consumed_ttl_minutes" in e for e in errors)

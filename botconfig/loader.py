"""
Configuration loader for YAML files
"""
import yaml
import logging
from dataclasses import asdict
from pathlib import Path

from smcbot.errors import FatalConfigurationError
from .models import AppConfig, BotConfig, RiskTier

logger = logging.getLogger(__name__)

_APP_FIELDS = (
    'exchange', 'database_path', 'telegram_token', 'telegram_chat_id',
    'log_level', 'logs_dir', 'tick_interval_seconds', 'tick_lock_ttl_seconds',
    'request_timeout_seconds', 'requests_per_minute', 'max_concurrent_bots',
)


class ConfigLoader:
    """Loads and saves configuration from YAML files"""

    def __init__(self, config_path: str = "config/bots.yaml"):
        self.config_path = Path(config_path)

    def load(self) -> AppConfig:
        """Load configuration from YAML file"""
        if not self.config_path.exists():
            logger.info(f"Config file not found at {self.config_path}, creating default")
            return self._create_default_config()

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise FatalConfigurationError(f"Cannot read config {self.config_path}: {e}") from e

        if not data:
            logger.warning("Empty config file, using defaults")
            return self._create_default_config()

        try:
            config = self._from_dict(data)
        except (TypeError, ValueError) as e:
            raise FatalConfigurationError(f"Malformed config {self.config_path}: {e}") from e

        errors = config.validate()
        if errors:
            logger.error(f"Configuration validation errors: {errors}")
            raise FatalConfigurationError(f"Configuration validation failed: {errors}")

        logger.info(f"Loaded configuration with {len(config.bots)} bots")
        return config

    def save(self, config: AppConfig) -> bool:
        """Save configuration to YAML file"""
        errors = config.validate()
        if errors:
            logger.error(f"Cannot save invalid configuration: {errors}")
            return False

        data = {name: getattr(config, name) for name in _APP_FIELDS}
        data['bots'] = [asdict(bot) for bot in config.bots]
        data['risk_tiers'] = [asdict(tier) for tier in config.risk_tiers]

        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                yaml.dump(data, f, default_flow_style=False, sort_keys=False, indent=2)
        except OSError as e:
            logger.error(f"Failed to save config to {self.config_path}: {e}")
            return False

        logger.info(f"Configuration saved to {self.config_path}")
        return True

    def _from_dict(self, data: dict) -> AppConfig:
        bots = [BotConfig(**bot_data) for bot_data in data.get('bots', [])]

        kwargs = {name: data[name] for name in _APP_FIELDS if name in data}
        config = AppConfig(bots=bots, **kwargs)

        tiers = data.get('risk_tiers')
        if tiers:
            parsed = [RiskTier(**tier) for tier in tiers]
            parsed.sort(key=lambda t: t.min_price)
            # The top band is open-ended
            last = parsed[-1]
            parsed[-1] = RiskTier(
                last.name, last.min_price, float('inf'),
                last.stop_loss_percentage, last.take_profit_percentage,
                last.min_risk_reward,
            )
            config.risk_tiers = parsed

        return config

    def _create_default_config(self) -> AppConfig:
        """Create default configuration"""
        default_bots = [
            BotConfig(bot_id="btc-main", symbol="BTC-USDT", enabled=False, max_position_size=0.01),
            BotConfig(bot_id="sol-scalp", symbol="SOL-USDT", enabled=False, max_position_size=5),
        ]

        config = AppConfig(bots=default_bots)
        self.save(config)

        return config


def load_config(config_path: str = "config/bots.yaml") -> AppConfig:
    """Convenience function to load configuration"""
    loader = ConfigLoader(config_path)
    return loader.load()


def save_config(config: AppConfig, config_path: str = "config/bots.yaml") -> bool:
    """Convenience function to save configuration"""
    loader = ConfigLoader(config_path)
    return loader.save(config)

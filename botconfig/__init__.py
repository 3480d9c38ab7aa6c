"""
Configuration package for the SMC futures trading bot
"""

from .models import (
    AppConfig, BotConfig, SignalSettings, ConfirmationSettings, RiskTier, Candle, OrderResult,
    OrderStatus, Position, Balance, BotStatus, timeframe_minutes
)
from .loader import ConfigLoader, load_config, save_config

__all__ = [
    'AppConfig', 'BotConfig', 'SignalSettings', 'ConfirmationSettings', 'RiskTier', 'Candle',
    'OrderResult', 'OrderStatus', 'Position', 'Balance', 'BotStatus',
    'timeframe_minutes', 'ConfigLoader', 'load_config', 'save_config'
]

"""
Core modules for SMC futures trading bot
"""

from .exchange_gateway import ExchangeGateway, BinanceFuturesGateway, PaperExchangeGateway
from .aggregator import MultiTimeframeAggregator
from .confirmation import EntryConfirmation, ConfirmationResult
from .risk import RiskSizer, SizingResult, ProtectionPlanner, ProtectionPlan
from .trade_store import TradeStore, BotState
from .lifecycle import PositionLifecycleManager, TickResult
from .bot_manager import BotManager, BotWorker

__all__ = [
    'ExchangeGateway', 'BinanceFuturesGateway', 'PaperExchangeGateway',
    'MultiTimeframeAggregator', 'EntryConfirmation', 'ConfirmationResult',
    'RiskSizer', 'SizingResult', 'ProtectionPlanner', 'ProtectionPlan',
    'TradeStore', 'BotState',
    'PositionLifecycleManager', 'TickResult',
    'BotManager', 'BotWorker'
]

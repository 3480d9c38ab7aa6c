"""
Configuration models for the SMC futures trading bot
"""
import re
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone


KNOWN_TIMEFRAMES = {
    '1m': 1, '3m': 3, '5m': 5, '15m': 15, '30m': 30,
    '1h': 60, '2h': 120, '4h': 240, '6h': 360, '12h': 720, '1d': 1440,
}

SYMBOL_PATTERN = re.compile(r'^[A-Z0-9]+-[A-Z0-9]+$')


def timeframe_minutes(timeframe: str) -> int:
    """Length of a timeframe in minutes (unknown timeframes sort last)"""
    return KNOWN_TIMEFRAMES.get(timeframe, 10 ** 6)


@dataclass
class SignalSettings:
    """Signal selection thresholds for one bot"""
    high_strength_requirement: float = 0.90
    min_strength_threshold: float = 0.60
    min_confluence: int = 1
    counter_trend_factor: float = 0.75
    proximity_threshold: float = 0.02
    engulfing_min_body_ratio: float = 0.5


@dataclass
class ConfirmationSettings:
    """Higher timeframe confirmation applied to a selected signal before entry"""
    enabled: bool = True
    level_timeframe: str = '1h'
    trend_timeframes: List[str] = field(default_factory=lambda: ['1h', '30m'])
    breakout_timeframes: List[str] = field(default_factory=lambda: ['15m', '30m'])
    trend_candles: int = 12
    breakout_candles: int = 3
    level_search_pct: float = 2.0
    level_tolerance_pct: float = 0.05
    consumed_ttl_minutes: int = 180
    anchor_take_profit: bool = True
    tp_extension_pct: float = 0.6

    def timeframes(self) -> List[str]:
        """Every timeframe the confirmation reads"""
        ordered = [self.level_timeframe] + self.trend_timeframes + self.breakout_timeframes
        return list(dict.fromkeys(ordered))


@dataclass
class RiskTier:
    """Stop loss / take profit percentages for a price band"""
    name: str
    min_price: float
    max_price: float
    stop_loss_percentage: float
    take_profit_percentage: float
    min_risk_reward: float

    def contains(self, price: float) -> bool:
        return self.min_price <= price < self.max_price


DEFAULT_RISK_TIERS = [
    RiskTier('micro', 0.0, 0.01, 8.0, 20.0, 1.8),
    RiskTier('small', 0.01, 1.0, 6.0, 15.0, 1.6),
    RiskTier('medium', 1.0, 100.0, 5.0, 12.0, 1.5),
    RiskTier('large', 100.0, 10000.0, 2.0, 4.0, 2.0),
    RiskTier('ultra', 10000.0, float('inf'), 2.5, 6.0, 1.0),
]


@dataclass
class BotConfig:
    """Configuration for a single futures trading bot"""
    bot_id: str
    symbol: str
    name: str = ""
    enabled: bool = True
    timeframes: List[str] = field(default_factory=lambda: ['15m', '30m', '1h'])
    risk_percentage: float = 1.0
    leverage: int = 10
    margin_type: str = "isolated"
    position_side: str = "both"
    quote_currency: str = "USDT"
    min_order_notional: float = 5.0
    max_position_size: float = 0.01
    cooldown_minutes: int = 15
    max_trades_per_hour: int = 3
    max_trade_duration_minutes: int = 120
    session_start_hour: int = 0
    session_end_hour: int = 24
    candle_limits: Dict[str, int] = field(default_factory=lambda: {
        '1m': 60, '5m': 48, '15m': 40, '30m': 32, '1h': 30, '4h': 30, '1d': 30
    })
    swing_lookback: int = 3
    trend_window: int = 10
    dynamic_sizing: bool = True
    volatility_adjustment: bool = True
    max_dynamic_risk: float = 3.0
    # Close at market when price crosses SL/TP of a trade missing its protective orders
    software_stop_guard: bool = True

    # Retry budgets
    open_retry_attempts: int = 3
    protection_retry_attempts: int = 5
    close_retry_attempts: int = 6
    retry_base_delay_seconds: float = 1.0

    signals: SignalSettings = field(default_factory=SignalSettings)
    confirmation: ConfirmationSettings = field(default_factory=ConfirmationSettings)

    def __post_init__(self):
        self.symbol = self.symbol.upper()
        self.margin_type = self.margin_type.lower()
        self.position_side = self.position_side.lower()
        if isinstance(self.signals, dict):
            self.signals = SignalSettings(**self.signals)
        if isinstance(self.confirmation, dict):
            self.confirmation = ConfirmationSettings(**self.confirmation)
        if not self.name:
            self.name = self.bot_id

    def candle_limit(self, timeframe: str) -> int:
        return self.candle_limits.get(timeframe, 100)

    def validate(self) -> List[str]:
        """Return list of configuration errors for this bot"""
        errors = []

        if not SYMBOL_PATTERN.match(self.symbol):
            errors.append(f"{self.bot_id}: symbol must be BASE-QUOTE, got {self.symbol}")
        if not self.timeframes:
            errors.append(f"{self.bot_id}: at least one timeframe is required")
        for tf in self.timeframes:
            if tf not in KNOWN_TIMEFRAMES:
                errors.append(f"{self.bot_id}: unknown timeframe {tf}")
        if len(set(self.timeframes)) != len(self.timeframes):
            errors.append(f"{self.bot_id}: duplicate timeframes")
        if not 0 < self.risk_percentage <= 100:
            errors.append(f"{self.bot_id}: risk_percentage must be in (0, 100]")
        if not 1 <= self.leverage <= 125:
            errors.append(f"{self.bot_id}: leverage must be between 1 and 125")
        if self.margin_type not in ('isolated', 'cross'):
            errors.append(f"{self.bot_id}: margin_type must be isolated or cross")
        if self.position_side not in ('long', 'short', 'both'):
            errors.append(f"{self.bot_id}: position_side must be long, short or both")
        if self.max_position_size <= 0:
            errors.append(f"{self.bot_id}: max_position_size must be positive")
        if self.cooldown_minutes < 0 or self.max_trades_per_hour < 1:
            errors.append(f"{self.bot_id}: invalid cooldown / max_trades_per_hour")
        if not 0 <= self.session_start_hour < self.session_end_hour <= 24:
            errors.append(f"{self.bot_id}: invalid session hours")

        s = self.signals
        if not 0 <= s.min_strength_threshold <= s.high_strength_requirement <= 1:
            errors.append(f"{self.bot_id}: signal thresholds must satisfy 0 <= min <= high <= 1")
        if s.min_confluence < 0:
            errors.append(f"{self.bot_id}: min_confluence cannot be negative")

        c = self.confirmation
        for tf in c.timeframes():
            if tf not in KNOWN_TIMEFRAMES:
                errors.append(f"{self.bot_id}: unknown confirmation timeframe {tf}")
        if c.trend_candles < 2 or c.breakout_candles < 1:
            errors.append(f"{self.bot_id}: confirmation needs trend_candles >= 2 and breakout_candles >= 1")
        if c.consumed_ttl_minutes < 0:
            errors.append(f"{self.bot_id}: consumed_ttl_minutes cannot be negative")

        return errors


@dataclass
class AppConfig:
    """Main application configuration"""
    bots: List[BotConfig] = field(default_factory=list)
    exchange: str = "paper"  # 'binance' / 'paper'
    database_path: str = "data/smcbot.db"

    # Global settings
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    log_level: str = "INFO"
    logs_dir: str = "logs"

    # Scheduling and rate limiting
    tick_interval_seconds: int = 60
    tick_lock_ttl_seconds: int = 120
    request_timeout_seconds: float = 15.0
    requests_per_minute: int = 1200
    max_concurrent_bots: int = 10

    risk_tiers: List[RiskTier] = field(default_factory=lambda: list(DEFAULT_RISK_TIERS))

    def get_enabled_bots(self) -> List[BotConfig]:
        """Get list of enabled bots"""
        return [bot for bot in self.bots if bot.enabled]

    def get_bot_config(self, bot_id: str) -> Optional[BotConfig]:
        """Get configuration for specific bot"""
        for bot in self.bots:
            if bot.bot_id == bot_id:
                return bot
        return None

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors"""
        errors = []

        if self.exchange not in ('binance', 'paper'):
            errors.append(f"Unknown exchange: {self.exchange}")

        bot_ids = [bot.bot_id for bot in self.bots]
        if len(bot_ids) != len(set(bot_ids)):
            errors.append("Duplicate bot ids found in configuration")

        if self.tick_interval_seconds <= 0:
            errors.append("tick_interval_seconds must be positive")
        if self.tick_lock_ttl_seconds <= 0:
            errors.append("tick_lock_ttl_seconds must be positive")

        for bot in self.bots:
            errors.extend(bot.validate())

        return errors


@dataclass(frozen=True)
class Candle:
    """Unified candle data structure"""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_binance_kline(cls, kline_data: List) -> 'Candle':
        """Create Candle from Binance kline data"""
        return cls(
            timestamp=datetime.fromtimestamp(kline_data[0] / 1000, tz=timezone.utc),
            open=float(kline_data[1]),
            high=float(kline_data[2]),
            low=float(kline_data[3]),
            close=float(kline_data[4]),
            volume=float(kline_data[5])
        )


@dataclass
class OrderResult:
    """Unified order result structure"""
    order_id: str
    symbol: str
    side: str  # 'BUY' / 'SELL'
    qty: float
    price: float  # average fill price when filled
    status: str  # 'FILLED' / 'PARTIALLY_FILLED' / 'NEW' / 'REJECTED'
    timestamp: datetime
    is_simulation: bool = False
    error_message: Optional[str] = None

    @property
    def is_successful(self) -> bool:
        """Check if order was successful"""
        return self.status == 'FILLED' and self.error_message is None


ORDER_STATUSES = ('FILLED', 'PARTIALLY_FILLED', 'CANCELED', 'REJECTED', 'EXPIRED', 'NEW')


@dataclass(frozen=True)
class OrderStatus:
    """Exchange-reported state of a single order"""
    order_id: str
    status: str  # one of ORDER_STATUSES
    avg_price: Optional[float] = None
    filled_qty: float = 0.0

    @property
    def is_filled(self) -> bool:
        return self.status == 'FILLED'

    @property
    def is_dead(self) -> bool:
        return self.status in ('CANCELED', 'REJECTED', 'EXPIRED')


@dataclass(frozen=True)
class Position:
    """Canonical open position record, normalized by the gateway"""
    symbol: str  # canonical BASE-QUOTE
    side: str  # 'long' / 'short'
    quantity: float
    entry_price: float
    unrealized_pnl: float = 0.0
    leverage: int = 1
    margin_type: str = "isolated"


@dataclass(frozen=True)
class Balance:
    """Canonical balance record, normalized by the gateway"""
    currency: str
    available: float


@dataclass
class BotStatus:
    """Runtime status of a trading bot"""
    bot_id: str
    symbol: str
    enabled: bool
    status: str  # 'starting', 'running', 'error', 'stopped', 'queued', 'inactive'
    current_price: Optional[float] = None
    open_trade_id: Optional[int] = None
    last_action: Optional[str] = None
    last_tick_time: Optional[datetime] = None
    last_error: Optional[str] = None
    ticks: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for status output"""
        return {
            'bot_id': self.bot_id,
            'symbol': self.symbol,
            'enabled': self.enabled,
            'status': self.status,
            'current_price': self.current_price,
            'open_trade_id': self.open_trade_id,
            'last_action': self.last_action,
            'last_tick_time': self.last_tick_time.isoformat() if self.last_tick_time else None,
            'last_error': self.last_error,
            'ticks': self.ticks,
        }

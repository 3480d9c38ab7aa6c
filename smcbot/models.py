"""
Data models for Smart Money Concepts analysis and trade records
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Union

BULLISH = 'bullish'
BEARISH = 'bearish'
NEUTRAL = 'neutral'

LONG = 'long'
SHORT = 'short'

# Signal type tags
OB_SUPPORT = 'OrderBlock_Support'
OB_RESISTANCE = 'OrderBlock_Resistance'
OB_BREAKOUT = 'OrderBlock_Breakout'
BOS = 'BOS'
CHOCH = 'CHoCH'
ENGULFING_BULLISH = 'Engulfing_Bullish'
ENGULFING_BEARISH = 'Engulfing_Bearish'

SIGNAL_TYPES = (
    OB_SUPPORT, OB_RESISTANCE, OB_BREAKOUT, BOS, CHOCH,
    ENGULFING_BULLISH, ENGULFING_BEARISH,
)

# Trade statuses
OPEN = 'open'
CLOSED = 'closed'
CANCELLED = 'cancelled'


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp value into [low, high]; NaN maps to low"""
    if value != value:
        return low
    return max(low, min(high, value))


def direction_to_side(direction: str) -> str:
    return LONG if direction == BULLISH else SHORT


def side_to_direction(side: str) -> str:
    return BULLISH if side == LONG else BEARISH


@dataclass(frozen=True)
class SwingPoint:
    """Represents a fractal pivot point (swing high/low)"""
    index: int
    price: float
    kind: str  # 'H' or 'L'
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SwingPoints:
    """Result of one swing detection pass"""
    highs: List[SwingPoint]
    lows: List[SwingPoint]

    def merged(self) -> List[SwingPoint]:
        """Highs and lows in index order (highs first on ties)"""
        return sorted(self.highs + self.lows, key=lambda s: (s.index, s.kind != 'H'))

    def __len__(self) -> int:
        return len(self.highs) + len(self.lows)


@dataclass(frozen=True)
class OrderBlock:
    """Order Block zone between two consecutive swing points"""
    high_price: float
    low_price: float
    direction: str  # BULLISH / BEARISH
    origin_index: int
    end_index: int
    strength: float = 0.5
    volume_ratio: float = 1.0

    def __post_init__(self):
        if self.high_price < self.low_price:
            raise ValueError(f"OrderBlock high {self.high_price} below low {self.low_price}")
        object.__setattr__(self, 'strength', clamp(self.strength))

    @property
    def midpoint(self) -> float:
        return (self.high_price + self.low_price) / 2


@dataclass(frozen=True)
class FVG:
    """Fair Value Gap structure"""
    index: int
    top: float
    bottom: float
    direction: str  # BULLISH / BEARISH
    size_pct: float


@dataclass(frozen=True)
class EqualLevel:
    """Two swing points at (nearly) the same price"""
    price: float
    kind: str  # 'H' or 'L'
    first_index: int
    second_index: int


@dataclass(frozen=True)
class Level:
    """Support or resistance price level"""
    price: float
    kind: str  # 'support' / 'resistance'
    weight: str  # 'high' / 'medium'


@dataclass(frozen=True)
class Trend:
    """Trend over a trailing window of candles"""
    direction: str  # BULLISH / BEARISH / NEUTRAL
    strength: float
    percent_change: float = 0.0


QualityValue = Union[bool, float]


@dataclass(frozen=True)
class Signal:
    """Trading signal produced by the signal engine"""
    type: str
    direction: str  # BULLISH / BEARISH
    strength: float
    reference_level: float
    timeframe: str = ""
    quality_factors: Dict[str, QualityValue] = field(default_factory=dict)
    confluence: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'strength', clamp(self.strength))

    @property
    def side(self) -> str:
        return direction_to_side(self.direction)

    def to_dict(self) -> Dict:
        return {
            'type': self.type,
            'direction': self.direction,
            'strength': round(self.strength, 4),
            'level': self.reference_level,
            'timeframe': self.timeframe,
            'confluence': self.confluence,
            'quality_factors': dict(self.quality_factors),
        }


@dataclass
class FuturesTrade:
    """Persisted futures trade record"""
    bot_id: str
    symbol: str
    side: str  # LONG / SHORT
    quantity: float
    entry_price: float
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    status: str = OPEN
    exchange_order_id: Optional[str] = None
    stop_loss_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    leverage: int = 1
    margin_type: str = "isolated"
    exit_price: Optional[float] = None
    unrealized_pnl: float = 0.0
    realized_pnl: Optional[float] = None
    close_reason: Optional[str] = None
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def is_long(self) -> bool:
        return self.side == LONG

    @property
    def direction_sign(self) -> int:
        return 1 if self.is_long else -1

    @property
    def is_protected(self) -> bool:
        return bool(self.stop_loss_order_id) and bool(self.take_profit_order_id)

    def pnl_at(self, price: float) -> float:
        """PnL if the whole position were closed at price"""
        return (price - self.entry_price) * self.quantity * self.direction_sign


@dataclass
class SignalRecord:
    """Append-only audit row for a selected signal"""
    bot_id: str
    symbol: str
    signal: Signal
    price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    risk_reward: Optional[float] = None
    executed: bool = False
    trade_id: Optional[int] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None

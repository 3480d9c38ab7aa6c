"""
Higher timeframe confirmation of a selected entry signal
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from botconfig.models import BotConfig, Candle, ConfirmationSettings, SignalSettings
from smcbot.models import Level, BULLISH
from smcbot.signal_generator import SignalEngine
from .exchange_gateway import ExchangeGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfirmationResult:
    ok: bool
    reason: str = ""
    key_level: Optional[float] = None
    target: Optional[float] = None


class EntryConfirmation:
    """
    Gate between signal selection and order placement.

    A signal passes when the higher timeframe trend agrees with it, a
    broken level exists near price on the level timeframe, and the last
    close of every breakout timeframe sits beyond that level. The next
    level past the broken one becomes the take profit target.
    """

    def __init__(self, settings: ConfirmationSettings, swing_lookback: int = 3,
                 trend_window: int = 10, signal_settings: Optional[SignalSettings] = None):
        self.settings = settings
        self.engine = SignalEngine(swing_lookback, trend_window, signal_settings or SignalSettings())

    @classmethod
    def for_bot(cls, bot: BotConfig) -> 'EntryConfirmation':
        return cls(bot.confirmation, bot.swing_lookback, bot.trend_window, bot.signals)

    def candle_limit(self, bot: BotConfig, timeframe: str) -> int:
        s = self.settings
        limits = []
        if timeframe == s.level_timeframe:
            limits.append(bot.candle_limit(timeframe))
        if timeframe in s.trend_timeframes:
            limits.append(s.trend_candles)
        if timeframe in s.breakout_timeframes:
            limits.append(s.breakout_candles)
        return max(limits)

    async def fetch_candles(self, bot: BotConfig, gateway: ExchangeGateway) -> Dict[str, List[Candle]]:
        candles_by_timeframe = {}
        for tf in self.settings.timeframes():
            candles_by_timeframe[tf] = await gateway.fetch_candles(bot.symbol, tf, self.candle_limit(bot, tf))
        return candles_by_timeframe

    def trend_agrees(self, direction: str, candles_by_timeframe: Dict[str, Sequence[Candle]]) -> bool:
        """Every trend timeframe must slope the same way as the signal"""
        for tf in self.settings.trend_timeframes:
            window = list(candles_by_timeframe.get(tf) or [])[-self.settings.trend_candles:]
            if len(window) < 2:
                logger.info(f"trend filter: no candles for {tf}")
                return False
            rising = window[-1].close > window[0].close
            if rising != (direction == BULLISH):
                logger.info(f"trend filter: {tf} disagrees with {direction}")
                return False
        return True

    def _levels(self, candles: Sequence[Candle]) -> List[Level]:
        if not candles:
            return []
        return self.engine.analyze(candles).levels

    def key_level(self, direction: str, current_price: float,
                  candles: Sequence[Candle]) -> Optional[float]:
        """Nearest resistance (bullish) or support (bearish) within the search band around price"""
        band = self.settings.level_search_pct / 100
        levels = self._levels(candles)
        if direction == BULLISH:
            prices = [l.price for l in levels
                      if l.kind == 'resistance' and l.price >= current_price * (1 - band)]
            return min(prices) if prices else None
        prices = [l.price for l in levels
                  if l.kind == 'support' and l.price <= current_price * (1 + band)]
        return max(prices) if prices else None

    def breakout_confirmed(self, level: float, direction: str,
                           candles_by_timeframe: Dict[str, Sequence[Candle]]) -> bool:
        for tf in self.settings.breakout_timeframes:
            candles = candles_by_timeframe.get(tf)
            if not candles:
                logger.info(f"breakout: no candles for {tf}")
                return False
            close = candles[-1].close
            beyond = close > level if direction == BULLISH else close < level
            if not beyond:
                logger.info(f"breakout: {tf} close {close} not beyond {level}")
                return False
        return True

    def next_target(self, level: float, direction: str, candles: Sequence[Candle]) -> float:
        """Next level past the broken one, or a fixed extension when none is visible"""
        extension = self.settings.tp_extension_pct / 100
        levels = self._levels(candles)
        if direction == BULLISH:
            above = [l.price for l in levels if l.kind == 'resistance' and l.price > level]
            return min(above) if above else level * (1 + extension)
        below = [l.price for l in levels if l.kind == 'support' and l.price < level]
        return max(below) if below else level * (1 - extension)

    def evaluate(self, direction: str, current_price: float,
                 candles_by_timeframe: Dict[str, Sequence[Candle]]) -> ConfirmationResult:
        if not self.trend_agrees(direction, candles_by_timeframe):
            return ConfirmationResult(False, 'trend_filter')

        level_candles = candles_by_timeframe.get(self.settings.level_timeframe) or []
        level = self.key_level(direction, current_price, level_candles)
        if level is None:
            return ConfirmationResult(False, 'no_key_level')

        if not self.breakout_confirmed(level, direction, candles_by_timeframe):
            return ConfirmationResult(False, 'breakout_unconfirmed', key_level=level)

        target = self.next_target(level, direction, level_candles)
        logger.info(f"confirmed {direction} breakout of {level}, target {target}")
        return ConfirmationResult(True, key_level=level, target=target)

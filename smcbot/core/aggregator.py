"""
Multi-timeframe signal aggregation and selection
"""
import logging
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from botconfig.models import BotConfig, Candle, SignalSettings, timeframe_minutes
from smcbot.models import Signal, BULLISH, BEARISH, ENGULFING_BULLISH, ENGULFING_BEARISH
from smcbot.signal_generator import SignalEngine
from .exchange_gateway import ExchangeGateway

logger = logging.getLogger(__name__)


def passes_quality_checks(signal: Signal, settings: SignalSettings) -> bool:
    """Reject malformed candidates before ranking"""
    if signal.strength <= 0 or signal.reference_level <= 0:
        return False
    if signal.direction not in (BULLISH, BEARISH):
        return False
    if signal.type in (ENGULFING_BULLISH, ENGULFING_BEARISH):
        body_ratio = signal.quality_factors.get('body_ratio', 0.0)
        if body_ratio < settings.engulfing_min_body_ratio:
            return False
    return True


def allowed_by_position_side(signal: Signal, position_side: str) -> bool:
    if position_side == 'long':
        return signal.direction == BULLISH
    if position_side == 'short':
        return signal.direction == BEARISH
    return True


def with_confluence(signals_by_timeframe: Dict[str, List[Signal]]) -> List[Signal]:
    """Tag every signal with its timeframe and the number of other timeframes agreeing with it"""
    directions = {
        tf: {s.direction for s in signals}
        for tf, signals in signals_by_timeframe.items()
    }

    tagged = []
    for tf, signals in signals_by_timeframe.items():
        for signal in signals:
            confluence = sum(
                1 for other_tf, dirs in directions.items()
                if other_tf != tf and signal.direction in dirs
            )
            tagged.append(replace(signal, timeframe=tf, confluence=confluence))
    return tagged


class MultiTimeframeAggregator:
    """Runs the signal engine per timeframe and picks the best eligible signal"""

    def __init__(self, engine: Optional[SignalEngine] = None):
        self.engine = engine

    def _engine_for(self, bot: BotConfig) -> SignalEngine:
        if self.engine is not None:
            return self.engine
        return SignalEngine(bot.swing_lookback, bot.trend_window, bot.signals)

    def is_eligible(self, signal: Signal, timeframe_count: int, settings: SignalSettings) -> bool:
        if signal.strength >= settings.high_strength_requirement:
            return True
        if signal.strength < settings.min_strength_threshold:
            return False
        # Nothing to corroborate with when only one timeframe is configured
        if timeframe_count <= 1:
            return True
        return signal.confluence >= settings.min_confluence

    def select(self, signals_by_timeframe: Dict[str, List[Signal]], timeframes: Sequence[str],
               settings: SignalSettings, position_side: str = "both") -> Optional[Signal]:
        """
        Pick the best signal from per-timeframe candidates.

        Ranking is (strength, confluence) descending; ties go to the shorter
        timeframe so the bot reacts on the faster chart.

        Returns:
            Selected signal with timeframe and confluence set, or None
        """
        candidates = with_confluence(signals_by_timeframe)
        eligible = [
            s for s in candidates
            if passes_quality_checks(s, settings)
            and allowed_by_position_side(s, position_side)
            and self.is_eligible(s, len(timeframes), settings)
        ]

        logger.debug(f"{len(eligible)} of {len(candidates)} signals eligible across {list(timeframes)}")
        if not eligible:
            return None

        return max(eligible, key=lambda s: (s.strength, s.confluence, -timeframe_minutes(s.timeframe)))

    def best_signal(self, bot: BotConfig, candles_by_timeframe: Dict[str, Sequence[Candle]],
                    current_price: float) -> Optional[Signal]:
        """Analyze every configured timeframe and select the best signal"""
        engine = self._engine_for(bot)
        signals_by_timeframe: Dict[str, List[Signal]] = {}

        for tf in bot.timeframes:
            candles = candles_by_timeframe.get(tf)
            if not candles:
                logger.warning(f"[{bot.bot_id}] no candles for {tf}, skipping timeframe")
                continue
            signals_by_timeframe[tf] = engine.generate_signals(candles, current_price, tf)

        best = self.select(signals_by_timeframe, bot.timeframes, bot.signals, bot.position_side)
        if best:
            logger.info(f"[{bot.bot_id}] best signal {best.type} {best.direction} "
                        f"strength={best.strength:.3f} tf={best.timeframe} confluence={best.confluence}")
        return best

    async def fetch_candles(self, bot: BotConfig, gateway: ExchangeGateway) -> Dict[str, List[Candle]]:
        """Pull the candle window for every configured timeframe"""
        candles_by_timeframe = {}
        for tf in bot.timeframes:
            candles_by_timeframe[tf] = await gateway.fetch_candles(bot.symbol, tf, bot.candle_limit(tf))
        return candles_by_timeframe

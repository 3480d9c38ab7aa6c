"""
Signal generation logic for SMC trading bot
"""
import logging
import pandas as pd
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

from botconfig.models import Candle, SignalSettings
from .models import (
    OrderBlock, Signal, SwingPoints, Trend, FVG, EqualLevel, Level,
    BULLISH, NEUTRAL, OB_SUPPORT, OB_RESISTANCE, OB_BREAKOUT
)
from .smc_detector import (
    candles_to_dataframe, detect_swing_points, build_order_blocks, detect_trend,
    detect_structure_breaks, detect_fvg, detect_equal_levels, support_resistance_levels
)
from .signal_scorer import score_order_block, proximity, detect_engulfing

logger = logging.getLogger(__name__)

CandleInput = Union[pd.DataFrame, Sequence[Candle]]


@dataclass(frozen=True)
class SMCAnalysis:
    """Everything one analysis pass derives from a candle window"""
    swings: SwingPoints
    order_blocks: List[OrderBlock]
    trend: Trend
    fvgs: List[FVG] = field(default_factory=list)
    equal_levels: List[EqualLevel] = field(default_factory=list)
    levels: List[Level] = field(default_factory=list)


def _as_dataframe(candles: CandleInput) -> pd.DataFrame:
    if isinstance(candles, pd.DataFrame):
        return candles.reset_index(drop=True)
    return candles_to_dataframe(candles)


def classify_order_block(block: OrderBlock, current_price: float) -> Optional[tuple]:
    """
    Map price position relative to a block onto a signal type.

    Returns (type, reference_level) or None when price sits on the wrong
    side of the block for its direction.
    """
    if block.direction == BULLISH:
        if current_price > block.high_price:
            return OB_BREAKOUT, block.high_price
        if current_price >= block.low_price:
            return OB_SUPPORT, block.low_price
        return None

    if current_price < block.low_price:
        return OB_BREAKOUT, block.low_price
    if current_price <= block.high_price:
        return OB_RESISTANCE, block.high_price
    return None


class SignalEngine:
    """Runs the SMC pipeline over one candle window and returns candidate signals"""

    def __init__(self, swing_lookback: int = 3, trend_window: int = 10,
                 settings: Optional[SignalSettings] = None):
        self.swing_lookback = swing_lookback
        self.trend_window = trend_window
        self.settings = settings or SignalSettings()

    def analyze(self, candles: CandleInput) -> SMCAnalysis:
        """Structure of the window without any price-dependent scoring"""
        df = _as_dataframe(candles)
        swings = detect_swing_points(df, self.swing_lookback)
        equal_levels = detect_equal_levels(swings)
        return SMCAnalysis(
            swings=swings,
            order_blocks=build_order_blocks(df, swings),
            trend=detect_trend(df, self.trend_window),
            fvgs=detect_fvg(df),
            equal_levels=equal_levels,
            levels=support_resistance_levels(swings, equal_levels),
        )

    def generate_signals(self, candles: CandleInput, current_price: float,
                         timeframe: str = "") -> List[Signal]:
        """
        Generate candidate signals for one timeframe.

        Args:
            candles: Oldest-first candles (list of Candle or OHLCV DataFrame)
            current_price: Latest traded price
            timeframe: Tag copied onto every returned signal

        Returns:
            Flat list of signals; no strength threshold is applied here
        """
        df = _as_dataframe(candles)
        if len(df) < 2 or current_price <= 0:
            return []

        swings = detect_swing_points(df, self.swing_lookback)
        blocks = build_order_blocks(df, swings)
        trend = detect_trend(df, self.trend_window)

        signals = self._order_block_signals(blocks, trend, current_price, timeframe)

        for brk in detect_structure_breaks(df, swings):
            signals.append(Signal(
                type=brk.type,
                direction=brk.direction,
                strength=brk.strength,
                reference_level=brk.reference_level,
                timeframe=timeframe,
                quality_factors=dict(brk.quality_factors),
            ))

        engulfing = detect_engulfing(df)
        if engulfing is not None:
            signals.append(Signal(
                type=engulfing.type,
                direction=engulfing.direction,
                strength=engulfing.strength,
                reference_level=engulfing.reference_level,
                timeframe=timeframe,
                quality_factors=dict(engulfing.quality_factors),
            ))

        logger.debug(f"[{timeframe or '-'}] {len(swings)} swings, {len(blocks)} blocks, "
                     f"trend {trend.direction} ({trend.strength:.2f}), {len(signals)} signals")
        return signals

    def _order_block_signals(self, blocks: List[OrderBlock], trend: Trend,
                             current_price: float, timeframe: str) -> List[Signal]:
        threshold = self.settings.proximity_threshold
        signals = []

        for block in blocks:
            distance = proximity(block, current_price)
            if distance > threshold:
                continue

            classified = classify_order_block(block, current_price)
            if classified is None:
                continue
            signal_type, level = classified

            strength = score_order_block(block, trend, current_price, threshold)
            counter_trend = trend.direction != NEUTRAL and trend.direction != block.direction
            if counter_trend:
                strength *= self.settings.counter_trend_factor

            signals.append(Signal(
                type=signal_type,
                direction=block.direction,
                strength=strength,
                reference_level=float(level),
                timeframe=timeframe,
                quality_factors={
                    'volume_ratio': round(block.volume_ratio, 4),
                    'trend_aligned': trend.direction == block.direction,
                    'counter_trend': counter_trend,
                    'proximity': round(distance, 6),
                },
            ))

        return signals

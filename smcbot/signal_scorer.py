"""
Scoring of order blocks and candle-level engulfing detection
"""
import pandas as pd
from typing import Optional

from .models import (
    OrderBlock, Trend, Signal, clamp,
    BULLISH, BEARISH, NEUTRAL, ENGULFING_BULLISH, ENGULFING_BEARISH
)

DEFAULT_PROXIMITY_THRESHOLD = 0.02
PROXIMITY_BONUS = 0.3
ENGULFING_BASE_STRENGTH = 0.90


def proximity(block: OrderBlock, current_price: float) -> float:
    """Distance from price to the block midpoint, as a fraction of price"""
    if current_price <= 0:
        return float('inf')
    return abs(current_price - block.midpoint) / current_price


def is_nearby(block: OrderBlock, current_price: float,
              threshold: float = DEFAULT_PROXIMITY_THRESHOLD) -> bool:
    return proximity(block, current_price) <= threshold


def trend_bonus(block: OrderBlock, trend: Trend) -> float:
    """+0.1 to +0.2 when the block agrees with the trend, scaled by trend strength"""
    if trend.direction == NEUTRAL or block.direction != trend.direction:
        return 0.0
    return 0.1 + 0.1 * clamp(trend.strength)


def score_order_block(block: OrderBlock, trend: Trend, current_price: float,
                      proximity_threshold: float = DEFAULT_PROXIMITY_THRESHOLD) -> float:
    """
    Score an order block into [0, 1].

    The raw block strength is sanitized first (clamped, NaN becomes 0), then
    the trend alignment bonus and a linear proximity bonus are added. The
    proximity bonus is PROXIMITY_BONUS at the midpoint and zero at or beyond
    ``proximity_threshold``.

    Args:
        block: Order block to score
        trend: Trend of the same candle window
        current_price: Latest traded price
        proximity_threshold: Distance (fraction of price) where the bonus vanishes

    Returns:
        Score in [0, 1]
    """
    score = clamp(block.strength)
    score += trend_bonus(block, trend)

    distance = proximity(block, current_price)
    if proximity_threshold > 0 and distance <= proximity_threshold:
        score += PROXIMITY_BONUS * (1 - distance / proximity_threshold)

    return clamp(score)


def detect_engulfing(df: pd.DataFrame) -> Optional[Signal]:
    """
    Engulfing pattern on the last two candles.

    Bullish: first candle red, second green, second open <= first close and
    second close >= first open. Bearish is the mirror image. Returns None
    when there is no pattern or fewer than two candles.
    """
    if len(df) < 2:
        return None

    first = df.iloc[-2]
    second = df.iloc[-1]

    first_body = abs(first['close'] - first['open'])
    second_body = abs(second['close'] - second['open'])
    second_range = second['high'] - second['low']

    first_red = first['close'] < first['open']
    first_green = first['close'] > first['open']
    second_red = second['close'] < second['open']
    second_green = second['close'] > second['open']

    if first_red and second_green and second['open'] <= first['close'] and second['close'] >= first['open']:
        kind, direction, level = ENGULFING_BULLISH, BULLISH, float(second['low'])
    elif first_green and second_red and second['open'] >= first['close'] and second['close'] <= first['open']:
        kind, direction, level = ENGULFING_BEARISH, BEARISH, float(second['high'])
    else:
        return None

    engulfing_ratio = second_body / first_body if first_body > 0 else 1.0
    body_ratio = second_body / second_range if second_range > 0 else 0.0

    # Fixed high strength, nudged up for decisively larger engulfing bodies
    strength = ENGULFING_BASE_STRENGTH + min(0.1, max(0.0, engulfing_ratio - 1) * 0.05)

    return Signal(
        type=kind,
        direction=direction,
        strength=strength,
        reference_level=level,
        quality_factors={
            'engulfing_ratio': round(float(engulfing_ratio), 4),
            'body_ratio': round(float(body_ratio), 4),
        },
    )

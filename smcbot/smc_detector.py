"""
Smart Money Concepts detection functions
"""
import pandas as pd
import numpy as np
from datetime import datetime
from typing import List, Optional, Sequence

from botconfig.models import Candle
from .models import (
    SwingPoint, SwingPoints, OrderBlock, FVG, EqualLevel, Level, Trend, Signal,
    BULLISH, BEARISH, NEUTRAL, BOS, CHOCH
)


def candles_to_dataframe(candles: Sequence[Candle]) -> pd.DataFrame:
    """Convert candle list to DataFrame for SMC functions (positional index)"""
    df = pd.DataFrame(
        [{
            'timestamp': c.timestamp,
            'open': c.open,
            'high': c.high,
            'low': c.low,
            'close': c.close,
            'volume': c.volume,
        } for c in candles],
        columns=['timestamp', 'open', 'high', 'low', 'close', 'volume'],
    )

    for col in ['open', 'high', 'low', 'close', 'volume']:
        df[col] = pd.to_numeric(df[col], errors='coerce').astype('float64')

    return df


def _timestamp_at(df: pd.DataFrame, i: int) -> Optional[datetime]:
    if 'timestamp' not in df.columns:
        return None
    value = df['timestamp'].iloc[i]
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    return value


def detect_swing_points(df: pd.DataFrame, lookback: int = 3) -> SwingPoints:
    """Detect swing highs/lows with a symmetric lookback window.

    A candle is a swing high when its high is strictly greater than every
    other high in [i - lookback, i + lookback]; swing lows mirror this.
    Candles closer than ``lookback`` to either end are never swing points.
    """
    if lookback < 1:
        raise ValueError(f"lookback must be >= 1, got {lookback}")

    highs = df['high'].to_numpy(dtype=float)
    lows = df['low'].to_numpy(dtype=float)
    n = len(df)

    swing_highs: List[SwingPoint] = []
    swing_lows: List[SwingPoint] = []

    for i in range(lookback, n - lookback):
        high_window = np.delete(highs[i - lookback:i + lookback + 1], lookback)
        low_window = np.delete(lows[i - lookback:i + lookback + 1], lookback)

        if highs[i] > high_window.max():
            swing_highs.append(SwingPoint(i, float(highs[i]), 'H', _timestamp_at(df, i)))

        if lows[i] < low_window.min():
            swing_lows.append(SwingPoint(i, float(lows[i]), 'L', _timestamp_at(df, i)))

    return SwingPoints(highs=swing_highs, lows=swing_lows)


def build_order_blocks(df: pd.DataFrame, swings: SwingPoints) -> List[OrderBlock]:
    """Build one order block per adjacent pair of swing points.

    The zone spans the highest high and lowest low of the candles between
    the two points (inclusive). Strength is left at the 0.5 placeholder;
    the scorer assigns the final value.
    """
    points = swings.merged()
    if len(points) < 2:
        return []

    has_volume = 'volume' in df.columns
    mean_volume = float(df['volume'].mean()) if has_volume else 0.0

    blocks: List[OrderBlock] = []
    for current, nxt in zip(points, points[1:]):
        segment = df.iloc[current.index:nxt.index + 1]

        volume_ratio = 1.0
        if has_volume and mean_volume > 0:
            volume_ratio = float(segment['volume'].mean()) / mean_volume

        blocks.append(OrderBlock(
            high_price=float(segment['high'].max()),
            low_price=float(segment['low'].min()),
            direction=BULLISH if nxt.price > current.price else BEARISH,
            origin_index=current.index,
            end_index=nxt.index,
            volume_ratio=volume_ratio,
        ))

    return blocks


def detect_trend(df: pd.DataFrame, window: int = 10) -> Trend:
    """Trend over the trailing window; a 10% move saturates strength"""
    closes = df['close'].to_numpy(dtype=float)
    window = min(window, len(closes))
    if window < 2:
        return Trend(NEUTRAL, 0.0, 0.0)

    first = closes[-window]
    last = closes[-1]
    if first <= 0:
        return Trend(NEUTRAL, 0.0, 0.0)

    percent_change = (last - first) / first * 100
    if percent_change > 0:
        direction = BULLISH
    elif percent_change < 0:
        direction = BEARISH
    else:
        direction = NEUTRAL

    return Trend(direction, min(1.0, abs(percent_change) / 10), float(percent_change))


def detect_structure_breaks(df: pd.DataFrame, swings: SwingPoints, recent: int = 20) -> List[Signal]:
    """Detect Break of Structure (BOS) and Change of Character (CHoCH).

    Walks the closes in order, tracking the most recent unbroken swing high
    and swing low. A close beyond one of them is a structure break; it is a
    CHoCH when its direction differs from the previous break, else a BOS.
    Only breaks within the last ``recent`` candles are returned.
    """
    closes = df['close'].to_numpy(dtype=float)
    n = len(closes)
    highs = swings.highs
    lows = swings.lows

    hi_ptr = lo_ptr = 0
    active_high: Optional[SwingPoint] = None
    active_low: Optional[SwingPoint] = None
    last_direction = None
    signals: List[Signal] = []

    for i in range(n):
        while hi_ptr < len(highs) and highs[hi_ptr].index < i:
            active_high = highs[hi_ptr]
            hi_ptr += 1
        while lo_ptr < len(lows) and lows[lo_ptr].index < i:
            active_low = lows[lo_ptr]
            lo_ptr += 1

        close = closes[i]
        if active_high is not None and close > active_high.price:
            direction, level = BULLISH, active_high.price
            active_high = None
        elif active_low is not None and close < active_low.price:
            direction, level = BEARISH, active_low.price
            active_low = None
        else:
            continue

        kind = CHOCH if last_direction is not None and last_direction != direction else BOS
        last_direction = direction

        if i < n - recent:
            continue

        penetration_pct = abs(close - level) / level * 100 if level > 0 else 0.0
        base = 0.65 if kind == CHOCH else 0.6
        signals.append(Signal(
            type=kind,
            direction=direction,
            strength=base + min(0.3, penetration_pct * 0.1),
            reference_level=float(level),
            quality_factors={
                'penetration_pct': round(penetration_pct, 4),
                'candles_ago': float(n - 1 - i),
            },
        ))

    return signals


def detect_fvg(df: pd.DataFrame) -> List[FVG]:
    """Detect Fair Value Gaps"""
    fvgs: List[FVG] = []
    highs = df['high'].to_numpy(dtype=float)
    lows = df['low'].to_numpy(dtype=float)

    for i in range(2, len(df)):
        # Bullish FVG: when low[i] > high[i-2] (gap up)
        if lows[i] > highs[i - 2]:
            fvgs.append(FVG(
                index=i - 1,
                top=float(lows[i]),
                bottom=float(highs[i - 2]),
                direction=BULLISH,
                size_pct=float((lows[i] - highs[i - 2]) / highs[i - 2] * 100),
            ))

        # Bearish FVG: when high[i] < low[i-2] (gap down)
        if highs[i] < lows[i - 2]:
            fvgs.append(FVG(
                index=i - 1,
                top=float(lows[i - 2]),
                bottom=float(highs[i]),
                direction=BEARISH,
                size_pct=float((lows[i - 2] - highs[i]) / lows[i - 2] * 100),
            ))

    return fvgs


def detect_equal_levels(swings: SwingPoints, tolerance: float = 0.001) -> List[EqualLevel]:
    """Pairs of swing highs (or lows) within ``tolerance`` of each other"""
    levels: List[EqualLevel] = []

    for points in (swings.highs, swings.lows):
        for a_pos, a in enumerate(points):
            for b in points[a_pos + 1:]:
                if a.price <= 0:
                    continue
                if abs(a.price - b.price) / a.price <= tolerance:
                    levels.append(EqualLevel(
                        price=(a.price + b.price) / 2,
                        kind=a.kind,
                        first_index=a.index,
                        second_index=b.index,
                    ))

    return levels


def support_resistance_levels(swings: SwingPoints, equal_levels: Optional[List[EqualLevel]] = None,
                              recent: int = 5) -> List[Level]:
    """Recent swing highs as resistance, swing lows as support, plus equal levels"""
    if equal_levels is None:
        equal_levels = detect_equal_levels(swings)

    levels = [Level(s.price, 'resistance', 'high') for s in swings.highs[-recent:]]
    levels += [Level(s.price, 'support', 'high') for s in swings.lows[-recent:]]

    for eq in equal_levels:
        kind = 'resistance' if eq.kind == 'H' else 'support'
        levels.append(Level(eq.price, kind, 'medium'))

    return levels


def returns_volatility(df: pd.DataFrame) -> float:
    """Population std-dev of close-to-close returns, in percent"""
    closes = df['close'].astype(float)
    returns = closes.pct_change().dropna() * 100
    if returns.empty:
        return 0.0
    return float(np.std(returns.to_numpy()))


"""
Position sizing, dynamic risk and stop loss / take profit planning
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import List, Optional, Sequence

from botconfig.models import RiskTier, DEFAULT_RISK_TIERS
from smcbot.models import (
    Signal, Level, LONG,
    OB_SUPPORT, OB_RESISTANCE, OB_BREAKOUT, BOS, CHOCH, ENGULFING_BULLISH, ENGULFING_BEARISH
)

logger = logging.getLogger(__name__)

INSUFFICIENT_SIZE = 'insufficient_size'

SIGNAL_TYPE_PRIORITY = {
    ENGULFING_BULLISH: 1.0,
    ENGULFING_BEARISH: 1.0,
    OB_SUPPORT: 0.9,
    OB_RESISTANCE: 0.9,
    OB_BREAKOUT: 0.8,
    BOS: 0.7,
    CHOCH: 0.7,
}


@dataclass(frozen=True)
class SizingResult:
    """Outcome of a sizing attempt; ``ok`` is False for InsufficientSize"""
    quantity: float
    notional: float
    ok: bool
    reason: Optional[str] = None
    detail: str = ""


def round_quantity(quantity: float, precision: int) -> float:
    """Round down to ``precision`` decimals so the order never exceeds its budget"""
    step = Decimal(1).scaleb(-precision)
    return float(Decimal(str(quantity)).quantize(step, rounding=ROUND_DOWN))


class RiskSizer:
    """Converts balance and risk settings into an exchange-valid order quantity"""

    def size(self, balance: float, risk_percentage: float, leverage: int, current_price: float,
             min_order_notional: float, max_position_size: float = float('inf'),
             quantity_precision: int = 3) -> SizingResult:
        """
        Compute order quantity.

        quantity = min(balance * risk% * leverage / price, max_position_size),
        rounded down to the symbol precision. A rounded quantity of zero or a
        notional under ``min_order_notional`` is reported as InsufficientSize
        instead of being sent to the exchange.
        """
        if balance <= 0 or current_price <= 0 or risk_percentage <= 0 or leverage <= 0:
            return SizingResult(0.0, 0.0, False, INSUFFICIENT_SIZE,
                                f"invalid inputs balance={balance} price={current_price} "
                                f"risk={risk_percentage} leverage={leverage}")

        risk_amount = balance * risk_percentage / 100
        position_notional = risk_amount * leverage
        raw_quantity = position_notional / current_price
        quantity = round_quantity(min(raw_quantity, max_position_size), quantity_precision)
        notional = quantity * current_price

        if quantity <= 0:
            return SizingResult(quantity, notional, False, INSUFFICIENT_SIZE,
                                f"quantity {raw_quantity:.8f} rounds to zero at precision {quantity_precision}")
        if notional < min_order_notional:
            return SizingResult(quantity, notional, False, INSUFFICIENT_SIZE,
                                f"notional {notional:.4f} below minimum {min_order_notional}")

        return SizingResult(quantity, notional, True)


def dynamic_risk_percentage(base_risk: float, signal: Optional[Signal], max_risk: float = 3.0) -> float:
    """Scale base risk by signal quality; multiplier stays within [0.5, 2.0]"""
    if signal is None:
        return base_risk

    multiplier = 1.0

    if signal.strength >= 0.95:
        multiplier *= 1.2
    elif signal.strength >= 0.90:
        multiplier *= 1.1
    elif signal.strength < 0.85:
        multiplier *= 0.8

    priority = SIGNAL_TYPE_PRIORITY.get(signal.type, 0.5)
    if priority >= 1.0:
        multiplier *= 1.15
    elif priority >= 0.9:
        multiplier *= 1.05

    if signal.confluence >= 3:
        multiplier *= 1.1
    elif signal.confluence >= 2:
        multiplier *= 1.05

    factors = signal.quality_factors
    if factors:
        total = 0.0
        for value in factors.values():
            if isinstance(value, bool):
                total += 1.0 if value else 0.0
            else:
                total += min(1.0, max(0.0, float(value)))
        if total / len(factors) >= 0.8:
            multiplier *= 1.05

    multiplier = min(2.0, max(0.5, multiplier))
    adjusted = min(base_risk * multiplier, max_risk)

    logger.debug(f"Dynamic risk multiplier {multiplier:.3f}: {base_risk}% -> {adjusted:.3f}%")
    return adjusted


def volatility_multiplier(volatility_pct: Optional[float]) -> float:
    """Position size multiplier from close-to-close return volatility (percent)"""
    if volatility_pct is None:
        return 1.0
    if volatility_pct > 2.0:
        return 0.7
    if volatility_pct > 1.0:
        return 0.85
    if volatility_pct < 0.3:
        return 1.15
    return 1.0


@dataclass(frozen=True)
class ProtectionPlan:
    stop_loss: float
    take_profit: float
    risk_reward: float
    tier: str
    ok: bool = True
    reason: Optional[str] = None
    anchored: bool = False
    tp_anchored: bool = False


class ProtectionPlanner:
    """Stop loss and take profit placement by price tier and SMC levels"""

    def __init__(self, risk_tiers: Optional[Sequence[RiskTier]] = None,
                 level_buffer: float = 0.005, noise_buffer_pct: float = 0.5,
                 min_stop_pct: float = 1.5, target_buffer_pct: float = 5.0):
        self.risk_tiers: List[RiskTier] = sorted(risk_tiers or DEFAULT_RISK_TIERS, key=lambda t: t.min_price)
        self.level_buffer = level_buffer
        self.noise_buffer_pct = noise_buffer_pct
        self.min_stop_pct = min_stop_pct
        self.target_buffer_pct = target_buffer_pct

    def tier_for(self, price: float) -> RiskTier:
        for tier in self.risk_tiers:
            if tier.contains(price):
                return tier
        return self.risk_tiers[-1]

    def _level_target_pct(self, is_long: bool, entry_price: float, tier: RiskTier,
                          levels: Sequence[Level]) -> Optional[float]:
        """Distance to the nearest level in the trade direction, padded when it sits too close"""
        if is_long:
            candidates = [lv.price for lv in levels if lv.kind == 'resistance' and lv.price > entry_price]
            nearest = min(candidates) if candidates else None
        else:
            candidates = [lv.price for lv in levels if lv.kind == 'support' and lv.price < entry_price]
            nearest = max(candidates) if candidates else None
        if nearest is None:
            return None

        distance_pct = abs(nearest - entry_price) / entry_price * 100
        if distance_pct >= tier.take_profit_percentage:
            return distance_pct
        if distance_pct + self.target_buffer_pct >= tier.take_profit_percentage:
            return distance_pct + self.target_buffer_pct
        return None

    def plan(self, side: str, entry_price: float, levels: Sequence[Level] = (),
             target: Optional[float] = None) -> ProtectionPlan:
        """
        Stop loss and take profit for an entry.

        Args:
            side: LONG / SHORT
            entry_price: Expected or actual fill price
            levels: Support/resistance levels of the signal timeframe
            target: Confirmed higher timeframe target; wins over levels when on the profit side
        """
        tier = self.tier_for(entry_price)
        is_long = side == LONG
        sign = 1 if is_long else -1

        stop_loss = None
        anchored = False
        if is_long:
            supports = [lv.price for lv in levels if lv.kind == 'support' and lv.price < entry_price]
            if supports:
                stop_loss = max(supports) * (1 - self.level_buffer)
        else:
            resistances = [lv.price for lv in levels if lv.kind == 'resistance' and lv.price > entry_price]
            if resistances:
                stop_loss = min(resistances) * (1 + self.level_buffer)

        if stop_loss is not None:
            distance_pct = abs(entry_price - stop_loss) / entry_price * 100
            if distance_pct >= tier.stop_loss_percentage:
                anchored = True
            else:
                stop_loss = None

        if stop_loss is None:
            stop_pct = max(tier.stop_loss_percentage + self.noise_buffer_pct, self.min_stop_pct)
            stop_loss = entry_price * (1 - sign * stop_pct / 100)

        stop_pct = abs(entry_price - stop_loss) / entry_price * 100

        anchored_pct = None
        if target is not None and (target - entry_price) * sign > 0:
            anchored_pct = abs(target - entry_price) / entry_price * 100
        elif levels:
            anchored_pct = self._level_target_pct(is_long, entry_price, tier, levels)
        tp_anchored = anchored_pct is not None

        # Target at least the tier's minimum reward for the risk taken
        base_pct = anchored_pct if tp_anchored else tier.take_profit_percentage
        target_pct = max(base_pct, stop_pct * tier.min_risk_reward)
        take_profit = entry_price * (1 + sign * target_pct / 100)

        risk = (entry_price - stop_loss) * sign
        reward = (take_profit - entry_price) * sign
        risk_reward = reward / risk if risk > 0 else 0.0

        if risk <= 0 or stop_loss <= 0 or take_profit <= 0:
            return ProtectionPlan(stop_loss, take_profit, risk_reward, tier.name, False, 'invalid_levels', anchored, tp_anchored)
        if risk_reward < tier.min_risk_reward - 1e-9:
            return ProtectionPlan(stop_loss, take_profit, risk_reward, tier.name, False, 'risk_reward', anchored, tp_anchored)

        logger.debug(f"[{tier.name}] {side} @ {entry_price}: SL {stop_loss:.6f} TP {take_profit:.6f} "
                     f"R/R {risk_reward:.2f}{' (anchored)' if anchored else ''}{' (level target)' if tp_anchored else ''}")
        return ProtectionPlan(stop_loss, take_profit, risk_reward, tier.name, True, None, anchored, tp_anchored)

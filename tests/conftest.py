import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure project root on sys.path before importing project packages
sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from botconfig.models import BotConfig, Candle, ConfirmationSettings
from smcbot.core.exchange_gateway import PaperExchangeGateway
from smcbot.core.trade_store import TradeStore

SYMBOL = "BTC-USDT"
T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_candles(closes, start=T0, minutes=15, wick=0.3, volume=100.0):
    """Candles whose open is the previous close; highs/lows sit ``wick`` off the body"""
    candles = []
    prev = closes[0]
    for i, close in enumerate(closes):
        candles.append(Candle(
            timestamp=start + timedelta(minutes=minutes * i),
            open=prev,
            high=max(prev, close) + wick,
            low=min(prev, close) - wick,
            close=close,
            volume=volume,
        ))
        prev = close
    return candles


def make_bars(closes, start=T0, minutes=60, spread=1.0):
    """Candles with open == close and a fixed high/low spread, so every peak is a strict swing"""
    return [
        Candle(
            timestamp=start + timedelta(minutes=minutes * i),
            open=close,
            high=close + spread,
            low=close - spread,
            close=close,
            volume=100.0,
        )
        for i, close in enumerate(closes)
    ]


def rising_candles(count=30, start_price=45.0, step=0.2):
    """Monotonic uptrend: no swing points, no engulfing pattern"""
    return make_candles([start_price + step * i for i in range(count)])


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def gateway():
    gw = PaperExchangeGateway(initial_balance=10000.0)
    gw.set_candles(SYMBOL, "15m", rising_candles())
    gw.set_price(SYMBOL, 50.0)
    return gw


@pytest.fixture
def store(tmp_path):
    return TradeStore(tmp_path / "smcbot.db")


@pytest.fixture
def bot():
    return BotConfig(
        bot_id="test-bot",
        symbol=SYMBOL,
        timeframes=["15m"],
        max_position_size=2.0,
        cooldown_minutes=30,
        max_trades_per_hour=10,
        dynamic_sizing=False,
        volatility_adjustment=False,
        retry_base_delay_seconds=0.0,
        confirmation=ConfirmationSettings(enabled=False),
    )

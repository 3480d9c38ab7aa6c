"""
Canonical BASE-QUOTE symbol mapping to and from exchange-native forms
"""
import re
from typing import Dict, Tuple

from smcbot.errors import FatalConfigurationError

KNOWN_QUOTES = ('USDT', 'USDC', 'BUSD', 'USD')

# KuCoin futures renames a handful of bases
_KUCOIN_BASE_ALIASES = {'BTC': 'XBT'}
_KUCOIN_BASE_REVERSE = {v: k for k, v in _KUCOIN_BASE_ALIASES.items()}

_CANONICAL = re.compile(r'^([A-Z0-9]+)-([A-Z0-9]+)$')

_KUCOIN_INTERVALS: Dict[str, str] = {
    '1m': '1min', '3m': '3min', '5m': '5min', '15m': '15min', '30m': '30min',
    '1h': '1hour', '2h': '2hour', '4h': '4hour', '6h': '6hour', '12h': '12hour',
    '1d': '1day',
}


def split_symbol(symbol: str) -> Tuple[str, str]:
    """Split canonical BASE-QUOTE into its parts"""
    match = _CANONICAL.match(symbol.upper())
    if not match:
        raise FatalConfigurationError(f"Invalid canonical symbol: {symbol}")
    return match.group(1), match.group(2)


def to_exchange_symbol(symbol: str, exchange: str = 'binance') -> str:
    """BTC-USDT -> BTCUSDT (binance) / XBTUSDTM (kucoin)"""
    base, quote = split_symbol(symbol)
    if exchange == 'kucoin':
        return f"{_KUCOIN_BASE_ALIASES.get(base, base)}{quote}M"
    return f"{base}{quote}"


def from_exchange_symbol(native: str, exchange: str = 'binance') -> str:
    """BTCUSDT / XBTUSDTM -> BTC-USDT"""
    native = native.upper()
    if _CANONICAL.match(native):
        return native

    if exchange == 'kucoin' and native.endswith('M'):
        native = native[:-1]

    for quote in KNOWN_QUOTES:
        if native.endswith(quote) and len(native) > len(quote):
            base = native[:-len(quote)]
            if exchange == 'kucoin':
                base = _KUCOIN_BASE_REVERSE.get(base, base)
            return f"{base}-{quote}"

    raise FatalConfigurationError(f"Cannot map exchange symbol {native} to BASE-QUOTE")


def same_symbol(canonical: str, native: str, exchange: str = 'binance') -> bool:
    """Compare a canonical symbol against an exchange-native one"""
    try:
        return from_exchange_symbol(native, exchange) == canonical.upper()
    except FatalConfigurationError:
        return False


def to_exchange_interval(timeframe: str, exchange: str = 'binance') -> str:
    """15m -> 15m (binance) / 15min (kucoin)"""
    if exchange == 'kucoin':
        try:
            return _KUCOIN_INTERVALS[timeframe]
        except KeyError:
            raise FatalConfigurationError(f"Unsupported timeframe for {exchange}: {timeframe}")
    return timeframe


def from_exchange_interval(interval: str, exchange: str = 'binance') -> str:
    if exchange == 'kucoin':
        for canonical, native in _KUCOIN_INTERVALS.items():
            if native == interval:
                return canonical
        raise FatalConfigurationError(f"Unknown {exchange} interval: {interval}")
    return interval

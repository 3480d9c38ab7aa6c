"""
Unified exchange gateway interfaces for live futures trading and paper trading
"""
import asyncio
import hashlib
import hmac
import json
import logging
import time
import aiohttp
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_UP
from typing import List, Optional, Dict, Any
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode
from aiolimiter import AsyncLimiter

from botconfig.models import Candle, OrderResult, OrderStatus, Position, Balance
from smcbot.errors import ExchangeError, TransientExchangeError, FatalConfigurationError
from .symbols import to_exchange_symbol, from_exchange_symbol, to_exchange_interval

logger = logging.getLogger(__name__)

BUY = 'BUY'
SELL = 'SELL'


def entry_order_side(position_side: str) -> str:
    """Order side that opens a position of the given side"""
    return BUY if position_side == 'long' else SELL


def exit_order_side(position_side: str) -> str:
    """Order side that reduces a position of the given side"""
    return SELL if position_side == 'long' else BUY


@dataclass(frozen=True)
class SymbolFilters:
    """Exchange trading rules for one symbol"""
    tick_size: Decimal
    step_size: Decimal
    quantity_precision: int

    @classmethod
    def from_binance(cls, item: Dict[str, Any]) -> 'SymbolFilters':
        quantity_precision = int(item.get('quantityPrecision', 3))
        tick_size = Decimal(1).scaleb(-int(item.get('pricePrecision', 2)))
        step_size = Decimal(1).scaleb(-quantity_precision)
        for f in item.get('filters', []):
            if f.get('filterType') == 'PRICE_FILTER' and Decimal(str(f.get('tickSize', '0'))) > 0:
                tick_size = Decimal(str(f['tickSize']))
            elif f.get('filterType') == 'LOT_SIZE' and Decimal(str(f.get('stepSize', '0'))) > 0:
                step_size = Decimal(str(f['stepSize']))
        return cls(tick_size, step_size, quantity_precision)


def quantize(value: float, step: Decimal, rounding=ROUND_DOWN) -> Decimal:
    """Snap ``value`` onto a multiple of ``step``"""
    units = (Decimal(str(value)) / step).to_integral_value(rounding=rounding)
    return (units * step).normalize()


def format_decimal(value: Decimal) -> str:
    """Plain positional notation, never scientific"""
    return format(value, 'f')


def protective_rounding(side: str):
    """Rounding for stop/limit prices of an exit order.

    A SELL exit protects a long: rounding down moves the stop away from
    entry and the take profit toward it. A BUY exit mirrors that.
    """
    return ROUND_DOWN if side.upper() == SELL else ROUND_UP


class ExchangeGateway(ABC):
    """Abstract base class for futures exchange gateways.

    All symbols crossing this interface are canonical BASE-QUOTE; mapping to
    exchange-native symbols happens inside implementations.
    """

    @abstractmethod
    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 500) -> List[Candle]:
        """Fetch candlestick data, oldest first"""
        pass

    @abstractmethod
    async def get_current_price(self, symbol: str) -> float:
        """Get current price for symbol"""
        pass

    @abstractmethod
    async def get_balances(self) -> List[Balance]:
        """Get available balances per currency"""
        pass

    @abstractmethod
    async def get_open_positions(self, symbol: Optional[str] = None) -> List[Position]:
        """Get open positions, optionally for one symbol"""
        pass

    @abstractmethod
    async def place_market_order(self, symbol: str, side: str, qty: float,
                                 reduce_only: bool = False) -> OrderResult:
        """Place a market order ('BUY' / 'SELL')"""
        pass

    @abstractmethod
    async def place_stop_order(self, symbol: str, side: str, qty: float, trigger_price: float) -> str:
        """Place a reduce-only stop-market order; returns the order id"""
        pass

    @abstractmethod
    async def place_limit_order(self, symbol: str, side: str, qty: float, price: float) -> str:
        """Place a reduce-only limit order (take profit); returns the order id"""
        pass

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        """Cancel an order; cancelling a filled or already cancelled order is not an error"""
        pass

    @abstractmethod
    async def cancel_all_open_orders(self, symbol: str) -> bool:
        """Cancel every open order for symbol"""
        pass

    @abstractmethod
    async def get_order_status(self, symbol: str, order_id: str) -> OrderStatus:
        """Get exchange-reported status of an order"""
        pass

    @abstractmethod
    async def get_quantity_precision(self, symbol: str) -> int:
        """Number of decimal places allowed for order quantity"""
        pass

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int, margin_type: str = "isolated"):
        """Configure leverage and margin type for symbol"""
        pass

    @property
    @abstractmethod
    def is_live(self) -> bool:
        """Whether this gateway trades real funds"""
        pass

    async def get_account_balance(self, asset: str = "USDT") -> float:
        """Available balance for one asset (0.0 when absent)"""
        for balance in await self.get_balances():
            if balance.currency.upper() == asset.upper():
                return balance.available
        return 0.0

    async def close(self):
        """Release network resources"""
        pass


class BinanceFuturesGateway(ExchangeGateway):
    """Live USDT-M futures gateway using the Binance REST API"""

    BINANCE_STATUSES = {
        'NEW': 'NEW',
        'PARTIALLY_FILLED': 'PARTIALLY_FILLED',
        'FILLED': 'FILLED',
        'CANCELED': 'CANCELED',
        'REJECTED': 'REJECTED',
        'EXPIRED': 'EXPIRED',
        'EXPIRED_IN_MATCH': 'EXPIRED',
    }

    def __init__(self, api_key: Optional[str] = None, api_secret: Optional[str] = None,
                 base_url: str = "https://fapi.binance.com", timeout: float = 15.0,
                 requests_per_minute: int = 1200, recv_window: int = 5000):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.recv_window = recv_window

        # Rate limiter: Binance allows 1200 request weight per minute
        self.limiter = AsyncLimiter(max_rate=requests_per_minute, time_period=60)

        # HTTP session
        self.session: Optional[aiohttp.ClientSession] = None

        # Price cache
        self._price_cache: Dict[str, tuple] = {}
        self._cache_ttl = timedelta(seconds=5)

        self._filters: Dict[str, SymbolFilters] = {}

    async def __aenter__(self):
        """Async context manager entry"""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.close()

    async def _ensure_session(self):
        """Ensure HTTP session is available"""
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key or not self.api_secret:
            raise FatalConfigurationError("Binance API credentials are not configured")

        params = dict(params)
        params['timestamp'] = int(time.time() * 1000)
        params['recvWindow'] = self.recv_window
        query = urlencode(params)
        params['signature'] = hmac.new(
            self.api_secret.encode('utf-8'), query.encode('utf-8'), hashlib.sha256
        ).hexdigest()
        return params

    async def _make_request(self, method: str, endpoint: str, params: Optional[Dict] = None,
                            signed: bool = False, retries: int = 3) -> Any:
        """Make rate-limited HTTP request to Binance API.

        Only GET requests are retried here. Order placement and cancellation
        have ambiguous outcomes on timeout, so they surface
        TransientExchangeError to the caller, which reconciles on the next tick.
        """
        await self._ensure_session()
        url = f"{self.base_url}{endpoint}"
        attempts = retries if method == 'GET' else 1

        for attempt in range(attempts):
            request_params = self._sign(params or {}) if signed else (params or {})
            headers = {'X-MBX-APIKEY': self.api_key} if self.api_key else {}

            try:
                async with self.limiter:
                    async with self.session.request(method, url, params=request_params,
                                                    headers=headers) as response:
                        if response.status == 200:
                            return await response.json()
                        body = await response.text()
                        error = self._map_error(response.status, body)
            except asyncio.TimeoutError:
                error = TransientExchangeError(f"{method} {endpoint} timed out")
            except aiohttp.ClientError as e:
                error = TransientExchangeError(f"{method} {endpoint} failed: {e}")

            if not isinstance(error, TransientExchangeError) or attempt == attempts - 1:
                raise error

            logger.warning(f"{error}, retrying in {2 ** attempt} seconds ({attempt + 1}/{attempts})")
            await asyncio.sleep(2 ** attempt)

    @staticmethod
    def _map_error(status: int, body: str) -> Exception:
        code = None
        message = body[:200]
        try:
            payload = json.loads(body)
            code = payload.get('code')
            message = payload.get('msg', message)
        except ValueError:
            pass

        if status in (429, 418) or status >= 500:
            return TransientExchangeError(f"HTTP {status}: {message}", code)
        if status in (401, 403) or code in (-2014, -2015):
            return FatalConfigurationError(f"Binance rejected credentials: {message}")
        if code == -1121:
            return FatalConfigurationError(f"Invalid symbol: {message}")
        return ExchangeError(f"HTTP {status}: {message}", code)

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 500) -> List[Candle]:
        """Fetch candlestick data from Binance"""
        params = {
            'symbol': to_exchange_symbol(symbol),
            'interval': to_exchange_interval(timeframe),
            'limit': min(limit, 1500)  # Binance limit
        }

        data = await self._make_request('GET', '/fapi/v1/klines', params)
        candles = [Candle.from_binance_kline(kline) for kline in data]

        logger.debug(f"Fetched {len(candles)} candles for {symbol} {timeframe}")
        return candles

    async def get_current_price(self, symbol: str) -> float:
        """Get current price with caching"""
        native = to_exchange_symbol(symbol)
        now = datetime.now()

        # Check cache
        if native in self._price_cache:
            price, timestamp = self._price_cache[native]
            if now - timestamp < self._cache_ttl:
                return price

        data = await self._make_request('GET', '/fapi/v1/ticker/price', {'symbol': native})
        price = float(data['price'])
        self._price_cache[native] = (price, now)

        return price

    async def get_balances(self) -> List[Balance]:
        data = await self._make_request('GET', '/fapi/v2/balance', signed=True)
        return [
            Balance(currency=item['asset'], available=float(item.get('availableBalance', 0)))
            for item in data
        ]

    async def get_open_positions(self, symbol: Optional[str] = None) -> List[Position]:
        params = {'symbol': to_exchange_symbol(symbol)} if symbol else {}
        data = await self._make_request('GET', '/fapi/v2/positionRisk', params, signed=True)

        positions = []
        for item in data:
            amount = float(item.get('positionAmt', 0))
            if amount == 0:
                continue
            positions.append(Position(
                symbol=from_exchange_symbol(item['symbol']),
                side='long' if amount > 0 else 'short',
                quantity=abs(amount),
                entry_price=float(item.get('entryPrice', 0)),
                unrealized_pnl=float(item.get('unRealizedProfit', 0)),
                leverage=int(float(item.get('leverage', 1))),
                margin_type=str(item.get('marginType', 'isolated')).lower(),
            ))
        return positions

    def _order_result(self, symbol: str, side: str, qty: float, data: Dict) -> OrderResult:
        avg_price = float(data.get('avgPrice') or 0) or float(data.get('price') or 0)
        return OrderResult(
            order_id=str(data['orderId']),
            symbol=symbol,
            side=side,
            qty=float(data.get('executedQty') or qty),
            price=avg_price,
            status=self.BINANCE_STATUSES.get(data.get('status'), 'NEW'),
            timestamp=datetime.now(timezone.utc),
        )

    async def _order_quantity(self, symbol: str, qty: float) -> str:
        filters = await self.get_symbol_filters(symbol)
        quantity = quantize(qty, filters.step_size, ROUND_DOWN)
        if quantity <= 0:
            raise ExchangeError(f"Quantity {qty} rounds to zero for {symbol} (step {filters.step_size})")
        return format_decimal(quantity)

    async def _protective_price(self, symbol: str, side: str, price: float) -> str:
        filters = await self.get_symbol_filters(symbol)
        return format_decimal(quantize(price, filters.tick_size, protective_rounding(side)))

    async def place_market_order(self, symbol: str, side: str, qty: float,
                                 reduce_only: bool = False) -> OrderResult:
        params = {
            'symbol': to_exchange_symbol(symbol),
            'side': side.upper(),
            'type': 'MARKET',
            'quantity': await self._order_quantity(symbol, qty),
            'newOrderRespType': 'RESULT',
        }
        if reduce_only:
            params['reduceOnly'] = 'true'

        data = await self._make_request('POST', '/fapi/v1/order', params, signed=True)
        result = self._order_result(symbol, side.upper(), qty, data)
        logger.info(f"Market {side} {params['quantity']} {symbol}: {result.status} @ {result.price}")
        return result

    async def place_stop_order(self, symbol: str, side: str, qty: float, trigger_price: float) -> str:
        params = {
            'symbol': to_exchange_symbol(symbol),
            'side': side.upper(),
            'type': 'STOP_MARKET',
            'quantity': await self._order_quantity(symbol, qty),
            'stopPrice': await self._protective_price(symbol, side, trigger_price),
            'reduceOnly': 'true',
            'workingType': 'MARK_PRICE',
        }
        data = await self._make_request('POST', '/fapi/v1/order', params, signed=True)
        logger.info(f"Stop {side} {params['quantity']} {symbol} @ {params['stopPrice']}")
        return str(data['orderId'])

    async def place_limit_order(self, symbol: str, side: str, qty: float, price: float) -> str:
        params = {
            'symbol': to_exchange_symbol(symbol),
            'side': side.upper(),
            'type': 'LIMIT',
            'timeInForce': 'GTC',
            'quantity': await self._order_quantity(symbol, qty),
            'price': await self._protective_price(symbol, side, price),
            'reduceOnly': 'true',
        }
        data = await self._make_request('POST', '/fapi/v1/order', params, signed=True)
        logger.info(f"Limit {side} {params['quantity']} {symbol} @ {params['price']}")
        return str(data['orderId'])

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        params = {'symbol': to_exchange_symbol(symbol), 'orderId': order_id}
        try:
            await self._make_request('DELETE', '/fapi/v1/order', params, signed=True)
        except ExchangeError as e:
            # -2011: unknown order (already filled, cancelled or expired)
            if e.code == -2011:
                logger.debug(f"Order {order_id} on {symbol} already gone")
                return True
            raise
        return True

    async def cancel_all_open_orders(self, symbol: str) -> bool:
        params = {'symbol': to_exchange_symbol(symbol)}
        await self._make_request('DELETE', '/fapi/v1/allOpenOrders', params, signed=True)
        return True

    async def get_order_status(self, symbol: str, order_id: str) -> OrderStatus:
        params = {'symbol': to_exchange_symbol(symbol), 'orderId': order_id}
        data = await self._make_request('GET', '/fapi/v1/order', params, signed=True)
        avg_price = float(data.get('avgPrice') or 0)
        return OrderStatus(
            order_id=str(data['orderId']),
            status=self.BINANCE_STATUSES.get(data.get('status'), 'NEW'),
            avg_price=avg_price or None,
            filled_qty=float(data.get('executedQty') or 0),
        )

    async def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        """Tick size, step size and quantity precision, cached from exchangeInfo"""
        native = to_exchange_symbol(symbol)
        if native not in self._filters:
            data = await self._make_request('GET', '/fapi/v1/exchangeInfo')
            for item in data.get('symbols', []):
                self._filters[item['symbol']] = SymbolFilters.from_binance(item)
            if native not in self._filters:
                raise FatalConfigurationError(f"Symbol {symbol} ({native}) not listed on Binance futures")
        return self._filters[native]

    async def get_quantity_precision(self, symbol: str) -> int:
        return (await self.get_symbol_filters(symbol)).quantity_precision

    async def set_leverage(self, symbol: str, leverage: int, margin_type: str = "isolated"):
        native = to_exchange_symbol(symbol)
        await self._make_request('POST', '/fapi/v1/leverage',
                                 {'symbol': native, 'leverage': leverage}, signed=True)
        try:
            await self._make_request('POST', '/fapi/v1/marginType',
                                     {'symbol': native, 'marginType': margin_type.upper()}, signed=True)
        except ExchangeError as e:
            # -4046: no need to change margin type
            if e.code != -4046:
                raise

    @property
    def is_live(self) -> bool:
        return True


class PaperExchangeGateway(ExchangeGateway):
    """In-process simulated futures account.

    Market orders fill at the current price against one net position per
    symbol. Protective stop/limit orders rest until ``set_price`` crosses
    them. Prices and candles come from ``set_price``/``set_candles`` or,
    when given, from a ``market_data`` gateway for dry runs on live data.
    """

    def __init__(self, initial_balance: float = 10000.0, quote_currency: str = "USDT",
                 market_data: Optional[ExchangeGateway] = None, quantity_precision: int = 3):
        self.initial_balance = initial_balance
        self.balance = initial_balance
        self.quote_currency = quote_currency
        self.market_data = market_data
        self.quantity_precision = quantity_precision

        self.prices: Dict[str, float] = {}
        self.candles: Dict[str, List[Candle]] = {}  # symbol_timeframe -> candles
        self.positions: Dict[str, Dict[str, Any]] = {}
        self.leverage: Dict[str, int] = {}

        # Simulated orders
        self.orders: List[OrderResult] = []
        self.protective_orders: Dict[str, Dict[str, Any]] = {}
        self._statuses: Dict[str, OrderStatus] = {}
        self.order_counter = 0

        # Failure injection: method name -> queued exceptions
        self._failures: Dict[str, List[Exception]] = {}
        self._lost_responses: Dict[str, List[Exception]] = {}

    def fail_next(self, method: str, times: int = 1, error: Optional[Exception] = None,
                  applied: bool = False):
        """Make the next ``times`` calls of ``method`` raise ``error``.

        With ``applied`` the call takes effect before raising, like a request
        that reached the exchange but whose response timed out.
        """
        error = error or TransientExchangeError(f"simulated {method} failure")
        queue = self._lost_responses if applied else self._failures
        queue.setdefault(method, []).extend([error] * times)

    def _maybe_fail(self, method: str):
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    def _maybe_lose_response(self, method: str):
        queued = self._lost_responses.get(method)
        if queued:
            raise queued.pop(0)

    def _next_order_id(self) -> str:
        self.order_counter += 1
        return f"PAPER_{self.order_counter:06d}"

    def set_candles(self, symbol: str, timeframe: str, candles: List[Candle]):
        self.candles[f"{symbol}_{timeframe}"] = list(candles)

    def set_price(self, symbol: str, price: float):
        """Move the market and fill any protective order the move crosses"""
        self.prices[symbol] = price

        for order_id, order in list(self.protective_orders.items()):
            if order['symbol'] != symbol or self._statuses[order_id].status != 'NEW':
                continue

            if order['type'] == 'STOP':
                hit = price <= order['price'] if order['side'] == SELL else price >= order['price']
            else:
                hit = price >= order['price'] if order['side'] == SELL else price <= order['price']
            if not hit:
                continue

            position = self.positions.get(symbol)
            if position is None or position['side'] != ('long' if order['side'] == SELL else 'short'):
                self._statuses[order_id] = OrderStatus(order_id, 'EXPIRED')
                continue

            qty = min(order['qty'], position['quantity'])
            self._apply_fill(symbol, order['side'], qty, order['price'])
            self._statuses[order_id] = OrderStatus(order_id, 'FILLED', order['price'], qty)
            logger.info(f"Paper {order['type'].lower()} order {order_id} filled at {order['price']}")

    def force_close(self, symbol: str, price: Optional[float] = None):
        """Close a position outside the bot (manual intervention / liquidation)"""
        position = self.positions.get(symbol)
        if position is None:
            return
        fill_price = price if price is not None else self.prices.get(symbol, position['entry_price'])
        self._apply_fill(symbol, exit_order_side(position['side']), position['quantity'], fill_price)

    def open_position(self, symbol: str, side: str, quantity: float, entry_price: float):
        """Seed a position the bot did not open"""
        self.positions[symbol] = {
            'side': side,
            'quantity': quantity,
            'entry_price': entry_price,
            'leverage': self.leverage.get(symbol, 1),
        }

    def _apply_fill(self, symbol: str, side: str, qty: float, price: float):
        fill_side = 'long' if side == BUY else 'short'
        position = self.positions.get(symbol)

        if position is None:
            self.open_position(symbol, fill_side, qty, price)
            return

        if position['side'] == fill_side:
            total = position['quantity'] + qty
            position['entry_price'] = (position['entry_price'] * position['quantity'] + price * qty) / total
            position['quantity'] = total
            return

        closed = min(qty, position['quantity'])
        sign = 1 if position['side'] == 'long' else -1
        self.balance += (price - position['entry_price']) * closed * sign

        remaining = position['quantity'] - closed
        if remaining > 1e-12:
            position['quantity'] = remaining
        else:
            del self.positions[symbol]
            if qty - closed > 1e-12:
                self.open_position(symbol, fill_side, qty - closed, price)

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 500) -> List[Candle]:
        """Fetch candles from stored data or the market data gateway"""
        self._maybe_fail('fetch_candles')
        key = f"{symbol}_{timeframe}"

        if key in self.candles:
            return self.candles[key][-limit:]
        if self.market_data is not None:
            return await self.market_data.fetch_candles(symbol, timeframe, limit)

        logger.warning(f"No candle data for {key}")
        return []

    async def get_current_price(self, symbol: str) -> float:
        self._maybe_fail('get_current_price')
        if symbol in self.prices:
            return self.prices[symbol]
        if self.market_data is not None:
            price = await self.market_data.get_current_price(symbol)
            self.prices[symbol] = price
            return price
        for key, candles in self.candles.items():
            if key.startswith(f"{symbol}_") and candles:
                return candles[-1].close
        raise ExchangeError(f"No price data available for {symbol}")

    async def get_balances(self) -> List[Balance]:
        self._maybe_fail('get_balances')
        return [Balance(currency=self.quote_currency, available=self.balance)]

    async def get_open_positions(self, symbol: Optional[str] = None) -> List[Position]:
        self._maybe_fail('get_open_positions')
        positions = []
        for pos_symbol, position in self.positions.items():
            if symbol and pos_symbol != symbol:
                continue
            price = self.prices.get(pos_symbol, position['entry_price'])
            sign = 1 if position['side'] == 'long' else -1
            positions.append(Position(
                symbol=pos_symbol,
                side=position['side'],
                quantity=position['quantity'],
                entry_price=position['entry_price'],
                unrealized_pnl=(price - position['entry_price']) * position['quantity'] * sign,
                leverage=position['leverage'],
            ))
        return positions

    async def place_market_order(self, symbol: str, side: str, qty: float,
                                 reduce_only: bool = False) -> OrderResult:
        """Simulate market order placement"""
        self._maybe_fail('place_market_order')
        side = side.upper()
        order_id = self._next_order_id()
        price = await self.get_current_price(symbol)

        error_message = None
        position = self.positions.get(symbol)
        if qty <= 0:
            error_message = "Quantity must be positive"
        elif reduce_only and (position is None or position['side'] == ('long' if side == BUY else 'short')):
            error_message = "ReduceOnly Order is rejected"

        if error_message:
            status = 'REJECTED'
            self._statuses[order_id] = OrderStatus(order_id, status)
        else:
            if reduce_only:
                qty = min(qty, position['quantity'])
            self._apply_fill(symbol, side, qty, price)
            status = 'FILLED'
            self._statuses[order_id] = OrderStatus(order_id, status, price, qty)

        result = OrderResult(
            order_id=order_id,
            symbol=symbol,
            side=side,
            qty=qty,
            price=price,
            status=status,
            timestamp=datetime.now(timezone.utc),
            is_simulation=True,
            error_message=error_message,
        )
        self.orders.append(result)
        self._maybe_lose_response('place_market_order')
        return result

    def _rest_order(self, kind: str, symbol: str, side: str, qty: float, price: float) -> str:
        order_id = self._next_order_id()
        self.protective_orders[order_id] = {
            'type': kind, 'symbol': symbol, 'side': side.upper(), 'qty': qty, 'price': price,
        }
        self._statuses[order_id] = OrderStatus(order_id, 'NEW')
        return order_id

    async def place_stop_order(self, symbol: str, side: str, qty: float, trigger_price: float) -> str:
        self._maybe_fail('place_stop_order')
        order_id = self._rest_order('STOP', symbol, side, qty, trigger_price)
        self._maybe_lose_response('place_stop_order')
        return order_id

    async def place_limit_order(self, symbol: str, side: str, qty: float, price: float) -> str:
        self._maybe_fail('place_limit_order')
        order_id = self._rest_order('LIMIT', symbol, side, qty, price)
        self._maybe_lose_response('place_limit_order')
        return order_id

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        self._maybe_fail('cancel_order')
        status = self._statuses.get(order_id)
        if status is not None and status.status == 'NEW':
            self._statuses[order_id] = OrderStatus(order_id, 'CANCELED')
        self._maybe_lose_response('cancel_order')
        return True

    async def cancel_all_open_orders(self, symbol: str) -> bool:
        self._maybe_fail('cancel_all_open_orders')
        for order_id, order in self.protective_orders.items():
            if order['symbol'] == symbol and self._statuses[order_id].status == 'NEW':
                self._statuses[order_id] = OrderStatus(order_id, 'CANCELED')
        return True

    async def get_order_status(self, symbol: str, order_id: str) -> OrderStatus:
        self._maybe_fail('get_order_status')
        if order_id not in self._statuses:
            raise ExchangeError(f"Order {order_id} does not exist", -2013)
        return self._statuses[order_id]

    def open_protective_orders(self, symbol: str) -> List[str]:
        return [
            order_id for order_id, order in self.protective_orders.items()
            if order['symbol'] == symbol and self._statuses[order_id].status == 'NEW'
        ]

    async def get_quantity_precision(self, symbol: str) -> int:
        return self.quantity_precision

    async def set_leverage(self, symbol: str, leverage: int, margin_type: str = "isolated"):
        self._maybe_fail('set_leverage')
        self.leverage[symbol] = leverage

    @property
    def is_live(self) -> bool:
        return False

    async def close(self):
        if self.market_data is not None:
            await self.market_data.close()

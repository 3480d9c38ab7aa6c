import sys
from pathlib import Path

# Ensure project root on sys.path before importing project packages
sys.path.append(str(Path(__file__).resolve().parents[1]))

import hashlib
import hmac
from urllib.parse import urlencode

import pytest

from smcbot.errors import ExchangeError, TransientExchangeError, FatalConfigurationError
from smcbot.core.exchange_gateway import (
    BinanceFuturesGateway, PaperExchangeGateway, BUY, SELL, entry_order_side, exit_order_side
)
from conftest import SYMBOL


def test_order_sides():
    assert entry_order_side('long') == BUY
    assert entry_order_side('short') == SELL
    assert exit_order_side('long') == SELL
    assert exit_order_side('short') == BUY


# Binance error mapping and signing

@pytest.mark.parametrize("status", [429, 418, 500, 503])
def test_rate_limits_and_server_errors_are_transient(status):
    assert isinstance(BinanceFuturesGateway._map_error(status, "busy"), TransientExchangeError)


def test_credential_errors_are_fatal():
    assert isinstance(BinanceFuturesGateway._map_error(401, "{}"), FatalConfigurationError)
    error = BinanceFuturesGateway._map_error(400, '{"code": -2015, "msg": "Invalid API-key"}')
    assert isinstance(error, FatalConfigurationError)


def test_invalid_symbol_is_fatal():
    error = BinanceFuturesGateway._map_error(400, '{"code": -1121, "msg": "Invalid symbol."}')
    assert isinstance(error, FatalConfigurationError)


def test_other_rejections_keep_their_code():
    error = BinanceFuturesGateway._map_error(400, '{"code": -2019, "msg": "Margin is insufficient."}')
    assert type(error) is ExchangeError
    assert error.code == -2019
    assert "Margin is insufficient" in str(error)


def test_sign_requires_credentials():
    with pytest.raises(FatalConfigurationError):
        BinanceFuturesGateway()._sign({'symbol': 'BTCUSDT'})


def test_sign_adds_hmac_signature():
    gateway = BinanceFuturesGateway(api_key="key", api_secret="secret")
    signed = gateway._sign({'symbol': 'BTCUSDT'})

    unsigned = {k: v for k, v in signed.items() if k != 'signature'}
    expected = hmac.new(b"secret", urlencode(unsigned).encode(), hashlib.sha256).hexdigest()
    assert signed['signature'] == expected
    assert 'timestamp' in signed


@pytest.mark.asyncio
async def test_binance_positions_are_normalized(monkeypatch):
    gateway = BinanceFuturesGateway(api_key="key", api_secret="secret")

    async def fake_request(method, endpoint, params=None, signed=False, retries=3):
        assert endpoint == '/fapi/v2/positionRisk'
        assert params == {'symbol': 'BTCUSDT'}
        return [
            {'symbol': 'BTCUSDT', 'positionAmt': '-0.5', 'entryPrice': '50000',
             'unRealizedProfit': '12.5', 'leverage': '10', 'marginType': 'ISOLATED'},
            {'symbol': 'BTCUSDT', 'positionAmt': '0', 'entryPrice': '0'},
        ]

    monkeypatch.setattr(gateway, '_make_request', fake_request)
    positions = await gateway.get_open_positions(SYMBOL)

    assert len(positions) == 1
    position = positions[0]
    assert position.symbol == SYMBOL
    assert position.side == 'short'
    assert position.quantity == 0.5
    assert position.leverage == 10
    assert position.margin_type == 'isolated'


@pytest.mark.asyncio
async def test_binance_cancel_of_unknown_order_is_success(monkeypatch):
    gateway = BinanceFuturesGateway(api_key="key", api_secret="secret")

    async def fake_request(method, endpoint, params=None, signed=False, retries=3):
        raise ExchangeError("Unknown order sent.", -2011)

    monkeypatch.setattr(gateway, '_make_request', fake_request)
    assert await gateway.cancel_order(SYMBOL, "123") is True


EXCHANGE_INFO = {'symbols': [
    {'symbol': 'DOGEUSDT', 'pricePrecision': 6, 'quantityPrecision': 0, 'filters': [
        {'filterType': 'PRICE_FILTER', 'tickSize': '0.000010'},
        {'filterType': 'LOT_SIZE', 'stepSize': '1'},
    ]},
    {'symbol': 'SHIBUSDT', 'pricePrecision': 8, 'quantityPrecision': 0, 'filters': [
        {'filterType': 'PRICE_FILTER', 'tickSize': '0.00000001'},
        {'filterType': 'LOT_SIZE', 'stepSize': '100'},
    ]},
    {'symbol': 'BTCUSDT', 'pricePrecision': 2, 'quantityPrecision': 3, 'filters': [
        {'filterType': 'PRICE_FILTER', 'tickSize': '0.10'},
        {'filterType': 'LOT_SIZE', 'stepSize': '0.001'},
    ]},
]}


def _capturing_gateway(monkeypatch):
    gateway = BinanceFuturesGateway(api_key="key", api_secret="secret")
    sent = []

    async def fake_request(method, endpoint, params=None, signed=False, retries=3):
        if endpoint == '/fapi/v1/exchangeInfo':
            return EXCHANGE_INFO
        sent.append(params)
        return {'orderId': len(sent), 'status': 'FILLED', 'avgPrice': '0.1234', 'executedQty': '123'}

    monkeypatch.setattr(gateway, '_make_request', fake_request)
    return gateway, sent


@pytest.mark.asyncio
async def test_binance_protective_prices_snap_to_tick_size(monkeypatch):
    gateway, sent = _capturing_gateway(monkeypatch)

    # Long protection: stop below entry rounds down, target above entry rounds down
    await gateway.place_stop_order("DOGE-USDT", SELL, 123.7, 0.11537900000000001)
    await gateway.place_limit_order("DOGE-USDT", SELL, 123.7, 0.14190999999999998)
    # Short protection on a micro-priced symbol rounds up
    await gateway.place_stop_order("SHIB-USDT", BUY, 150000.0, 1.1291100000000001e-05)

    assert [p.get('stopPrice') or p.get('price') for p in sent] == ['0.11537', '0.1419', '0.0000113']
    assert [p['quantity'] for p in sent] == ['123', '123', '150000']
    assert all('e' not in value.lower() for p in sent for value in (p['quantity'], p.get('stopPrice', '')))


@pytest.mark.asyncio
async def test_binance_market_quantity_uses_step_size(monkeypatch):
    gateway, sent = _capturing_gateway(monkeypatch)

    await gateway.place_market_order(SYMBOL, BUY, 0.0123456)

    assert sent[0]['quantity'] == '0.012'
    assert await gateway.get_quantity_precision(SYMBOL) == 3


@pytest.mark.asyncio
async def test_binance_quantity_below_step_is_rejected_locally(monkeypatch):
    gateway, sent = _capturing_gateway(monkeypatch)

    with pytest.raises(ExchangeError):
        await gateway.place_limit_order("SHIB-USDT", SELL, 99.0, 0.00002)
    assert sent == []


# Paper gateway

@pytest.mark.asyncio
async def test_paper_market_order_opens_position(gateway):
    order = await gateway.place_market_order(SYMBOL, BUY, 1.5)

    assert order.is_successful
    assert order.is_simulation
    positions = await gateway.get_open_positions(SYMBOL)
    assert [(p.side, p.quantity, p.entry_price) for p in positions] == [('long', 1.5, 50.0)]


@pytest.mark.asyncio
async def test_paper_reduce_only_without_position_is_rejected(gateway):
    order = await gateway.place_market_order(SYMBOL, SELL, 1.0, reduce_only=True)

    assert order.status == 'REJECTED'
    assert not order.is_successful
    assert await gateway.get_open_positions(SYMBOL) == []
    status = await gateway.get_order_status(SYMBOL, order.order_id)
    assert status.is_dead


@pytest.mark.asyncio
async def test_paper_stop_fills_when_crossed_and_books_pnl(gateway):
    await gateway.place_market_order(SYMBOL, BUY, 2.0)
    stop_id = await gateway.place_stop_order(SYMBOL, SELL, 2.0, 48.0)
    tp_id = await gateway.place_limit_order(SYMBOL, SELL, 2.0, 55.0)

    gateway.set_price(SYMBOL, 47.0)

    stop = await gateway.get_order_status(SYMBOL, stop_id)
    assert stop.is_filled
    assert stop.avg_price == 48.0
    assert await gateway.get_open_positions(SYMBOL) == []
    assert await gateway.get_account_balance("USDT") == pytest.approx(10000.0 - 4.0)

    # Take profit can no longer fill once the position is gone
    gateway.set_price(SYMBOL, 56.0)
    assert (await gateway.get_order_status(SYMBOL, tp_id)).status == 'EXPIRED'


@pytest.mark.asyncio
async def test_paper_cancel_is_idempotent(gateway):
    order_id = await gateway.place_stop_order(SYMBOL, SELL, 1.0, 40.0)

    assert await gateway.cancel_order(SYMBOL, order_id)
    assert await gateway.cancel_order(SYMBOL, order_id)
    assert (await gateway.get_order_status(SYMBOL, order_id)).status == 'CANCELED'
    assert gateway.open_protective_orders(SYMBOL) == []


@pytest.mark.asyncio
async def test_paper_unknown_order_status(gateway):
    with pytest.raises(ExchangeError) as exc_info:
        await gateway.get_order_status(SYMBOL, "missing")
    assert exc_info.value.code == -2013


@pytest.mark.asyncio
async def test_paper_failure_injection(gateway):
    gateway.fail_next('get_current_price', times=2)

    for _ in range(2):
        with pytest.raises(TransientExchangeError):
            await gateway.get_current_price(SYMBOL)
    assert await gateway.get_current_price(SYMBOL) == 50.0


@pytest.mark.asyncio
async def test_paper_lost_response_still_applies_the_order(gateway):
    gateway.fail_next('place_market_order', applied=True)
    gateway.fail_next('place_stop_order', applied=True)

    with pytest.raises(TransientExchangeError):
        await gateway.place_market_order(SYMBOL, BUY, 1.0)
    with pytest.raises(TransientExchangeError):
        await gateway.place_stop_order(SYMBOL, SELL, 1.0, 45.0)

    assert len(gateway.orders) == 1
    assert [(p.side, p.quantity) for p in await gateway.get_open_positions(SYMBOL)] == [('long', 1.0)]
    assert len(gateway.open_protective_orders(SYMBOL)) == 1
    # Only the queued calls lose their response
    assert (await gateway.place_market_order(SYMBOL, BUY, 1.0)).is_successful


@pytest.mark.asyncio
async def test_paper_balances_and_unknown_asset(gateway):
    balances = await gateway.get_balances()
    assert [(b.currency, b.available) for b in balances] == [("USDT", 10000.0)]
    assert await gateway.get_account_balance("BTC") == 0.0
    assert not gateway.is_live

import sys
from pathlib import Path

# Ensure project root on sys.path before importing project packages
sys.path.append(str(Path(__file__).resolve().parents[1]))

from dataclasses import replace
from datetime import timedelta

import pytest

from botconfig.models import ConfirmationSettings
from smcbot.errors import FatalConfigurationError
from smcbot.models import FuturesTrade, Signal, BULLISH, OB_SUPPORT, OPEN, CLOSED, CANCELLED
from smcbot.core.aggregator import MultiTimeframeAggregator
from smcbot.core.confirmation import ConfirmationResult
from smcbot.core.exchange_gateway import BUY, SELL
from smcbot.core.lifecycle import (
    PositionLifecycleManager, RECONCILIATION_MISMATCH, PROTECTION_FAILURE, ORPHAN_ADOPTED,
    POSITION_CLOSED, CLOSE_UNCONFIRMED
)
from conftest import SYMBOL, T0, make_bars, rising_candles


class StubEngine:
    """Returns the same candidate signals on every timeframe"""

    def __init__(self, signals=None):
        self.signals = signals if signals is not None else [Signal(OB_SUPPORT, BULLISH, 0.95, 49.0)]

    def generate_signals(self, candles, current_price, timeframe=""):
        return list(self.signals)


class RecordingNotifier:
    def __init__(self):
        self.messages = []

    async def notify(self, text):
        self.messages.append(text)
        return True


def _manager(bot, gateway, store, clock, sleeper, engine=None, notifier=None):
    return PositionLifecycleManager(
        bot, gateway, store,
        aggregator=MultiTimeframeAggregator(engine or StubEngine()),
        notifier=notifier,
        clock=clock,
        sleep=sleeper,
    )


def _open_trades(store):
    return store.get_trades(status=OPEN)


@pytest.mark.asyncio
async def test_tick_opens_protected_position(bot, gateway, store, clock, sleeper):
    notifier = RecordingNotifier()
    manager = _manager(bot, gateway, store, clock, sleeper, notifier=notifier)

    result = await manager.tick()

    assert result.action == 'opened'
    trade = store.get_open_trade(bot.bot_id)
    assert trade.id == result.trade_id
    assert (trade.side, trade.quantity, trade.entry_price) == ('long', 2.0, 50.0)
    assert trade.stop_loss_price == pytest.approx(47.25)
    assert trade.take_profit_price == pytest.approx(56.0)
    assert trade.is_protected
    assert len(gateway.open_protective_orders(SYMBOL)) == 2
    assert gateway.leverage[SYMBOL] == bot.leverage

    [record] = store.get_signals(bot.bot_id)
    assert record.executed
    assert record.trade_id == trade.id
    assert notifier.messages


@pytest.mark.asyncio
async def test_single_position_across_ticks(bot, gateway, store, clock, sleeper):
    manager = _manager(bot, gateway, store, clock, sleeper)

    actions = []
    for _ in range(4):
        actions.append((await manager.tick()).action)
        assert len(_open_trades(store)) <= 1
        clock.advance(minutes=1)

    assert actions == ['opened', 'holding', 'holding', 'holding']
    positions = await gateway.get_open_positions(SYMBOL)
    assert [p.quantity for p in positions] == [2.0]


@pytest.mark.asyncio
async def test_externally_closed_position_converges_next_tick(bot, gateway, store, clock, sleeper):
    manager = _manager(bot, gateway, store, clock, sleeper)
    await manager.tick()

    gateway.set_price(SYMBOL, 53.0)
    gateway.force_close(SYMBOL)
    clock.advance(minutes=1)
    result = await manager.tick()

    assert result.action == 'closed'
    assert POSITION_CLOSED in result.events
    assert _open_trades(store) == []
    [trade] = store.get_trades(bot_id=bot.bot_id)
    assert trade.status == CLOSED
    assert trade.exit_price == 53.0
    assert trade.realized_pnl == pytest.approx(6.0)
    assert trade.close_reason == 'exchange_closed'
    assert gateway.open_protective_orders(SYMBOL) == []


@pytest.mark.asyncio
async def test_take_profit_fill_is_recorded(bot, gateway, store, clock, sleeper):
    manager = _manager(bot, gateway, store, clock, sleeper)
    await manager.tick()

    gateway.set_price(SYMBOL, 57.0)
    result = await manager.tick()

    assert result.action == 'closed'
    [trade] = store.get_trades(bot_id=bot.bot_id)
    assert trade.close_reason == 'take_profit'
    assert trade.exit_price == pytest.approx(56.0)
    assert trade.realized_pnl == pytest.approx(12.0)


@pytest.mark.asyncio
async def test_stop_loss_fill_is_recorded(bot, gateway, store, clock, sleeper):
    manager = _manager(bot, gateway, store, clock, sleeper)
    await manager.tick()

    gateway.set_price(SYMBOL, 47.0)
    await manager.tick()

    [trade] = store.get_trades(bot_id=bot.bot_id)
    assert trade.close_reason == 'stop_loss'
    assert trade.realized_pnl == pytest.approx(-5.5)


@pytest.mark.asyncio
async def test_cooldown_blocks_until_it_expires(bot, gateway, store, clock, sleeper):
    manager = _manager(bot, gateway, store, clock, sleeper)
    await manager.tick()

    clock.advance(minutes=5)
    gateway.force_close(SYMBOL)
    assert (await manager.tick()).action == 'closed'
    closed_at = clock.now

    clock.now = closed_at + timedelta(minutes=29, seconds=59)
    assert (await manager.tick()).action == 'cooldown'
    assert _open_trades(store) == []

    clock.now = closed_at + timedelta(minutes=30, seconds=1)
    assert (await manager.tick()).action == 'opened'


@pytest.mark.asyncio
async def test_hourly_trade_limit(bot, gateway, store, clock, sleeper):
    bot = replace(bot, cooldown_minutes=0, max_trades_per_hour=1)
    manager = _manager(bot, gateway, store, clock, sleeper)
    await manager.tick()

    gateway.force_close(SYMBOL)
    await manager.tick()
    clock.advance(minutes=10)

    assert (await manager.tick()).action == 'rate_limited'


@pytest.mark.asyncio
async def test_outside_session_hours(bot, gateway, store, clock, sleeper):
    bot = replace(bot, session_start_hour=0, session_end_hour=6)
    result = await _manager(bot, gateway, store, clock, sleeper).tick()
    assert result.action == 'outside_session'


@pytest.mark.asyncio
async def test_no_signal(bot, gateway, store, clock, sleeper):
    result = await _manager(bot, gateway, store, clock, sleeper, engine=StubEngine([])).tick()
    assert result.action == 'no_signal'
    assert store.get_signals(bot.bot_id) == []


@pytest.mark.asyncio
async def test_insufficient_size_skips_cycle(bot, gateway, store, clock, sleeper):
    gateway.balance = 0.01

    result = await _manager(bot, gateway, store, clock, sleeper).tick()

    assert result.action == 'insufficient_size'
    assert gateway.orders == []


@pytest.mark.asyncio
async def test_orphan_position_is_adopted_and_protected(bot, gateway, store, clock, sleeper):
    gateway.open_position(SYMBOL, 'short', 0.5, 50.0)

    result = await _manager(bot, gateway, store, clock, sleeper).tick()

    assert ORPHAN_ADOPTED in result.events
    assert result.action == 'holding'
    trade = store.get_open_trade(bot.bot_id)
    assert (trade.side, trade.quantity) == ('short', 0.5)
    assert trade.stop_loss_price == pytest.approx(52.75)
    assert trade.take_profit_price == pytest.approx(44.0)
    assert trade.is_protected


@pytest.mark.asyncio
async def test_exchange_size_overrides_local_record(bot, gateway, store, clock, sleeper):
    manager = _manager(bot, gateway, store, clock, sleeper)
    await manager.tick()
    old = store.get_open_trade(bot.bot_id)

    gateway.positions[SYMBOL]['quantity'] = 3.0
    result = await manager.tick()

    assert RECONCILIATION_MISMATCH in result.events
    trade = store.get_open_trade(bot.bot_id)
    assert trade.quantity == 3.0
    assert trade.is_protected
    assert trade.stop_loss_order_id != old.stop_loss_order_id
    assert (await gateway.get_order_status(SYMBOL, old.stop_loss_order_id)).status == 'CANCELED'
    assert len(gateway.open_protective_orders(SYMBOL)) == 2


@pytest.mark.asyncio
async def test_protection_failure_is_flagged_then_repaired(bot, gateway, store, clock, sleeper):
    notifier = RecordingNotifier()
    manager = _manager(bot, gateway, store, clock, sleeper, notifier=notifier)
    gateway.fail_next('place_stop_order', times=bot.protection_retry_attempts)

    result = await manager.tick()

    assert result.action == 'opened'
    assert PROTECTION_FAILURE in result.events
    assert not store.get_open_trade(bot.bot_id).is_protected
    assert any('UNPROTECTED' in m for m in notifier.messages)
    assert len(sleeper.delays) == bot.protection_retry_attempts - 1

    result = await manager.tick()
    assert result.action == 'holding'
    assert store.get_open_trade(bot.bot_id).is_protected


@pytest.mark.asyncio
async def test_entry_order_retried_after_transient_failure(bot, gateway, store, clock, sleeper):
    gateway.fail_next('place_market_order')

    result = await _manager(bot, gateway, store, clock, sleeper).tick()

    assert result.action == 'opened'
    assert len(gateway.orders) == 1
    assert sleeper.delays == [0.0]


@pytest.mark.asyncio
async def test_manual_close_books_directional_pnl(bot, gateway, store, clock, sleeper):
    manager = _manager(bot, gateway, store, clock, sleeper)
    await manager.tick()

    gateway.set_price(SYMBOL, 55.0)
    result = await manager.close_position('manual')

    assert result.action == 'closed'
    [trade] = store.get_trades(bot_id=bot.bot_id)
    assert trade.exit_price == 55.0
    assert trade.realized_pnl == pytest.approx(10.0)
    assert trade.close_reason == 'manual'
    assert await gateway.get_open_positions(SYMBOL) == []
    assert gateway.orders[-1].side == SELL


@pytest.mark.asyncio
async def test_close_retries_then_reports_failure(bot, gateway, store, clock, sleeper):
    manager = _manager(bot, gateway, store, clock, sleeper)
    await manager.tick()

    gateway.fail_next('place_market_order', times=bot.close_retry_attempts)
    result = await manager.close_position('manual')

    assert result.action == 'close_failed'
    assert CLOSE_UNCONFIRMED in result.events
    assert store.get_open_trade(bot.bot_id) is not None

    # A later command succeeds
    assert (await manager.close_position('manual')).action == 'closed'


@pytest.mark.asyncio
async def test_close_without_position(bot, gateway, store, clock, sleeper):
    result = await _manager(bot, gateway, store, clock, sleeper).close_position()
    assert result.action == 'no_position'


@pytest.mark.asyncio
async def test_max_trade_duration_forces_close(bot, gateway, store, clock, sleeper):
    manager = _manager(bot, gateway, store, clock, sleeper)
    await manager.tick()

    clock.advance(minutes=bot.max_trade_duration_minutes + 1)
    result = await manager.tick()

    assert result.action == 'closed'
    [trade] = store.get_trades(bot_id=bot.bot_id)
    assert trade.close_reason == 'max_duration'
    assert trade.realized_pnl == pytest.approx(0.0)


@pytest.mark.asyncio
async def test_rejected_entry_order_cancels_trade(bot, gateway, store, clock, sleeper):
    rejected = await gateway.place_market_order(SYMBOL, SELL, 1.0, reduce_only=True)
    store.insert_trade(FuturesTrade(bot_id=bot.bot_id, symbol=SYMBOL, side='long', quantity=1.0,
                                    entry_price=50.0, exchange_order_id=rejected.order_id,
                                    opened_at=clock.now))

    result = await _manager(bot, gateway, store, clock, sleeper).tick()

    assert result.action == 'closed'
    [trade] = store.get_trades(bot_id=bot.bot_id)
    assert trade.status == CANCELLED
    assert trade.realized_pnl == 0.0


@pytest.mark.asyncio
async def test_unconfirmed_cancellation_keeps_trade_open_for_one_more_tick(bot, gateway, store, clock, sleeper):
    manager = _manager(bot, gateway, store, clock, sleeper)
    await manager.tick()

    gateway.force_close(SYMBOL)
    gateway.fail_next('cancel_order', times=bot.close_retry_attempts)
    result = await manager.tick()
    assert CLOSE_UNCONFIRMED in result.events
    assert store.get_open_trade(bot.bot_id) is not None

    result = await manager.tick()
    assert result.action == 'closed'
    assert _open_trades(store) == []


@pytest.mark.asyncio
async def test_transient_reconcile_failure_releases_lock(bot, gateway, store, clock, sleeper):
    manager = _manager(bot, gateway, store, clock, sleeper)
    gateway.fail_next('get_open_positions')

    assert (await manager.tick()).action == 'reconcile_failed'
    assert store.get_bot_state(bot.bot_id).lock_owner is None
    assert (await manager.tick()).action == 'opened'


@pytest.mark.asyncio
async def test_fatal_configuration_error_deactivates_bot(bot, gateway, store, clock, sleeper):
    notifier = RecordingNotifier()
    manager = _manager(bot, gateway, store, clock, sleeper, notifier=notifier)
    gateway.fail_next('get_open_positions', error=FatalConfigurationError("invalid API key"))

    result = await manager.tick()

    assert result.action == 'deactivated'
    assert not store.get_bot_state(bot.bot_id).is_active
    assert notifier.messages
    assert (await manager.tick()).action == 'inactive'


@pytest.mark.asyncio
async def test_tick_skipped_while_another_owner_holds_lock(bot, gateway, store, clock, sleeper):
    store.acquire_tick_lock(bot.bot_id, "other-process", 120, clock.now)
    manager = _manager(bot, gateway, store, clock, sleeper)

    assert (await manager.tick()).action == 'locked'

    clock.advance(seconds=121)
    assert (await manager.tick()).action == 'opened'


class StubConfirmation:
    def __init__(self, result):
        self.result = result
        self.calls = 0

    async def fetch_candles(self, bot, gateway):
        return {}

    def evaluate(self, direction, current_price, candles_by_timeframe):
        self.calls += 1
        return self.result


def _confirmed_manager(bot, gateway, store, clock, sleeper, result):
    bot = replace(bot, confirmation=ConfirmationSettings())
    return PositionLifecycleManager(
        bot, gateway, store,
        aggregator=MultiTimeframeAggregator(StubEngine()),
        confirmation=StubConfirmation(result),
        clock=clock,
        sleep=sleeper,
    )


@pytest.mark.asyncio
async def test_unconfirmed_signal_places_no_order(bot, gateway, store, clock, sleeper):
    manager = _confirmed_manager(bot, gateway, store, clock, sleeper,
                                 ConfirmationResult(False, 'breakout_unconfirmed', key_level=49.5))

    result = await manager.tick()

    assert result.action == 'unconfirmed'
    assert result.detail == 'breakout_unconfirmed'
    assert gateway.orders == []
    assert not store.is_level_consumed(bot.bot_id, 49.5, now=clock.now)


@pytest.mark.asyncio
async def test_confirmed_target_sets_take_profit_and_consumes_level(bot, gateway, store, clock, sleeper):
    manager = _confirmed_manager(bot, gateway, store, clock, sleeper,
                                 ConfirmationResult(True, key_level=49.5, target=58.0))

    result = await manager.tick()

    assert result.action == 'opened'
    trade = store.get_open_trade(bot.bot_id)
    assert trade.take_profit_price == pytest.approx(58.0)
    assert trade.stop_loss_price == pytest.approx(47.25)
    assert store.is_level_consumed(bot.bot_id, 49.5, now=clock.now)

    await manager.close_position('manual')
    clock.advance(minutes=bot.cooldown_minutes + 1)
    result = await manager.tick()
    assert result.action == 'level_consumed'
    assert len(gateway.orders) == 2

    clock.advance(minutes=manager.bot.confirmation.consumed_ttl_minutes)
    assert (await manager.tick()).action == 'opened'


@pytest.mark.asyncio
async def test_higher_timeframe_breakout_opens_trade(bot, gateway, store, clock, sleeper):
    hourly = [48, 49, 50, 52, 51, 50, 49, 50, 51, 52.5, 53, 54]
    gateway.set_candles(SYMBOL, '1h', make_bars(hourly))
    gateway.set_candles(SYMBOL, '30m', make_bars([50 + 0.3 * i for i in range(12)], minutes=30))
    gateway.set_candles(SYMBOL, '15m', rising_candles(30, 48.0, 0.2))
    gateway.set_price(SYMBOL, 54.0)
    bot = replace(bot, confirmation=ConfirmationSettings())

    result = await _manager(bot, gateway, store, clock, sleeper).tick()

    assert result.action == 'opened'
    assert store.is_level_consumed(bot.bot_id, 53.0, now=clock.now)


@pytest.mark.asyncio
async def test_missing_higher_timeframe_data_blocks_entry(bot, gateway, store, clock, sleeper):
    bot = replace(bot, confirmation=ConfirmationSettings())

    result = await _manager(bot, gateway, store, clock, sleeper).tick()

    assert result.action == 'unconfirmed'
    assert result.detail == 'trend_filter'
    assert gateway.orders == []


@pytest.mark.asyncio
@pytest.mark.parametrize("price, reason", [(47.0, 'stop_loss_guard'), (57.0, 'take_profit_guard')])
async def test_unprotected_trade_is_closed_when_price_crosses_level(bot, gateway, store, clock, sleeper,
                                                                   price, reason):
    manager = _manager(bot, gateway, store, clock, sleeper)
    gateway.fail_next('place_stop_order', times=bot.protection_retry_attempts * 2)
    await manager.tick()

    gateway.set_price(SYMBOL, price)
    result = await manager.tick()

    assert result.action == 'closed'
    [trade] = store.get_trades(bot_id=bot.bot_id)
    assert trade.close_reason == reason
    assert trade.exit_price == price
    assert await gateway.get_open_positions(SYMBOL) == []


@pytest.mark.asyncio
async def test_unprotected_trade_is_held_when_guard_is_off(bot, gateway, store, clock, sleeper):
    bot = replace(bot, software_stop_guard=False)
    manager = _manager(bot, gateway, store, clock, sleeper)
    gateway.fail_next('place_stop_order', times=bot.protection_retry_attempts * 2)
    await manager.tick()

    gateway.set_price(SYMBOL, 47.0)
    result = await manager.tick()

    assert result.action == 'holding'
    assert PROTECTION_FAILURE in result.events


@pytest.mark.asyncio
async def test_lost_entry_response_is_adopted_without_second_entry(bot, gateway, store, clock, sleeper):
    manager = _manager(bot, gateway, store, clock, sleeper)
    gateway.fail_next('place_market_order', applied=True)

    result = await manager.tick()

    assert result.action == 'open_failed'
    assert result.detail == 'position_exists'
    assert len(gateway.orders) == 1
    assert [(p.side, p.quantity) for p in await gateway.get_open_positions(SYMBOL)] == [('long', 2.0)]
    assert store.get_open_trade(bot.bot_id) is None

    result = await manager.tick()

    assert ORPHAN_ADOPTED in result.events
    assert result.action == 'holding'
    trade = store.get_open_trade(bot.bot_id)
    assert (trade.side, trade.quantity) == ('long', 2.0)
    assert trade.is_protected
    assert len(gateway.orders) == 1


@pytest.mark.asyncio
async def test_side_flip_rebuilds_protection(bot, gateway, store, clock, sleeper):
    manager = _manager(bot, gateway, store, clock, sleeper)
    await manager.tick()
    old = store.get_open_trade(bot.bot_id)

    gateway.open_position(SYMBOL, 'short', 2.0, 51.0)
    result = await manager.tick()

    assert RECONCILIATION_MISMATCH in result.events
    for order_id in (old.stop_loss_order_id, old.take_profit_order_id):
        assert (await gateway.get_order_status(SYMBOL, order_id)).status == 'CANCELED'
    trade = store.get_open_trade(bot.bot_id)
    assert (trade.side, trade.entry_price) == ('short', 51.0)
    assert trade.stop_loss_price == pytest.approx(53.805)
    assert trade.take_profit_price == pytest.approx(44.88)
    assert trade.is_protected
    new_orders = gateway.open_protective_orders(SYMBOL)
    assert sorted(new_orders) == sorted([trade.stop_loss_order_id, trade.take_profit_order_id])
    assert {gateway.protective_orders[oid]['side'] for oid in new_orders} == {BUY}


class ClockAdvancingSleep:
    """Lets time pass during backoff and records whether another process could take the lease"""

    def __init__(self, clock, store, bot_id):
        self.clock = clock
        self.store = store
        self.bot_id = bot_id
        self.stolen = []

    async def __call__(self, delay):
        self.clock.advance(seconds=delay)
        self.stolen.append(self.store.acquire_tick_lock(self.bot_id, 'other-process', 120, self.clock.now))


@pytest.mark.asyncio
async def test_lease_is_renewed_through_long_retry_budgets(bot, gateway, store, clock):
    bot = replace(bot, retry_base_delay_seconds=1.0)
    sleeper = ClockAdvancingSleep(clock, store, bot.bot_id)
    manager = _manager(bot, gateway, store, clock, sleeper)
    await manager.tick()

    gateway.force_close(SYMBOL)
    gateway.fail_next('cancel_order', times=2 * bot.close_retry_attempts)
    result = await manager.tick()

    assert CLOSE_UNCONFIRMED in result.events
    assert len(sleeper.stolen) == 2 * bot.close_retry_attempts
    # Retries ran past the lease TTL without another owner ever getting in
    assert (clock.now - T0).total_seconds() > manager.lock_ttl_seconds
    assert not any(sleeper.stolen)


@pytest.mark.asyncio
async def test_tick_stops_when_lease_is_taken(bot, gateway, store, clock, sleeper):
    manager = _manager(bot, gateway, store, clock, sleeper)
    await manager.tick()

    async def stealing_sleep(delay):
        store.release_tick_lock(bot.bot_id, manager.owner)
        store.acquire_tick_lock(bot.bot_id, 'other-process', 120, clock.now)

    manager.sleep = stealing_sleep
    gateway.fail_next('place_market_order')
    result = await manager.close_position('manual')

    assert result.action == 'lease_lost'
    assert store.get_open_trade(bot.bot_id) is not None
    assert store.get_bot_state(bot.bot_id).lock_owner == 'other-process'

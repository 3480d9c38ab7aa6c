"""
Position lifecycle state machine: Flat -> Opening -> Open -> Closing -> Flat.

Every tick reconciles the local trade against the exchange before any new
entry is considered. The exchange is the source of truth for whether a
position exists and how large it is.
"""
import asyncio
import logging
import math
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from botconfig.models import BotConfig, Candle, Position, timeframe_minutes
from smcbot.errors import ExchangeError, TransientExchangeError, FatalConfigurationError
from smcbot.models import FuturesTrade, Signal, SignalRecord, Level, LONG, CANCELLED
from smcbot.signal_generator import SignalEngine
from smcbot.smc_detector import candles_to_dataframe, returns_volatility
from smcbot.telegram import TelegramNotifier
from .aggregator import MultiTimeframeAggregator
from .confirmation import EntryConfirmation, ConfirmationResult
from .exchange_gateway import ExchangeGateway, entry_order_side, exit_order_side
from .risk import RiskSizer, ProtectionPlanner, dynamic_risk_percentage, volatility_multiplier
from .trade_store import TradeStore, utcnow

logger = logging.getLogger(__name__)

# Tick events
RECONCILIATION_MISMATCH = 'reconciliation_mismatch'
PROTECTION_FAILURE = 'protection_placement_failure'
ORPHAN_ADOPTED = 'orphan_adopted'
POSITION_CLOSED = 'position_closed'
CLOSE_UNCONFIRMED = 'close_unconfirmed'


class TickLeaseLost(Exception):
    """Another owner took the per-bot lease while this tick was running"""


@dataclass
class TickResult:
    """What one tick did"""
    bot_id: str
    action: str = 'idle'
    trade_id: Optional[int] = None
    signal: Optional[Signal] = None
    events: List[str] = field(default_factory=list)
    detail: str = ""


class PositionLifecycleManager:
    """Drives one bot's position through open, protect, monitor and close"""

    def __init__(self, bot: BotConfig, gateway: ExchangeGateway, store: TradeStore,
                 aggregator: Optional[MultiTimeframeAggregator] = None,
                 sizer: Optional[RiskSizer] = None,
                 planner: Optional[ProtectionPlanner] = None,
                 confirmation: Optional[EntryConfirmation] = None,
                 notifier: Optional[TelegramNotifier] = None,
                 lock_ttl_seconds: float = 120,
                 clock: Optional[Callable[[], datetime]] = None,
                 sleep: Optional[Callable[[float], Awaitable]] = None):
        self.bot = bot
        self.gateway = gateway
        self.store = store
        self.aggregator = aggregator or MultiTimeframeAggregator()
        self.sizer = sizer or RiskSizer()
        self.planner = planner or ProtectionPlanner()
        self.confirmation = confirmation or EntryConfirmation.for_bot(bot)
        self.notifier = notifier
        self.lock_ttl_seconds = lock_ttl_seconds
        self.clock = clock or utcnow
        self.sleep = sleep or asyncio.sleep
        self.owner = f"{bot.bot_id}-{uuid.uuid4().hex[:8]}"

    @property
    def bot_id(self) -> str:
        return self.bot.bot_id

    async def tick(self) -> TickResult:
        """Run one reconcile-then-evaluate pass under the per-bot lease"""
        now = self.clock()

        state = self.store.get_bot_state(self.bot_id)
        if not state.is_active:
            logger.debug(f"[{self.bot_id}] inactive, skipping tick")
            return TickResult(self.bot_id, 'inactive')

        if not self.store.acquire_tick_lock(self.bot_id, self.owner, self.lock_ttl_seconds, now):
            logger.info(f"[{self.bot_id}] another tick holds the lock, skipping")
            return TickResult(self.bot_id, 'locked')

        try:
            result = await self._run_tick(now)
            self.store.mark_run(self.bot_id, result.action, now)
        except TickLeaseLost as e:
            logger.error(f"[{self.bot_id}] tick aborted: {e}")
            result = TickResult(self.bot_id, 'lease_lost', detail=str(e))
        except FatalConfigurationError as e:
            logger.error(f"[{self.bot_id}] fatal configuration error, deactivating bot: {e}")
            self.store.set_bot_active(self.bot_id, False, 'fatal_error')
            await self._alert(f"⛔ Bot {self.bot_id} deactivated: {e}")
            result = TickResult(self.bot_id, 'deactivated', detail=str(e))
        finally:
            self.store.release_tick_lock(self.bot_id, self.owner)

        return result

    async def close_position(self, reason: str = 'manual') -> TickResult:
        """Explicit close command for the bot's open trade"""
        now = self.clock()
        if not self.store.acquire_tick_lock(self.bot_id, self.owner, self.lock_ttl_seconds, now):
            return TickResult(self.bot_id, 'locked')

        result = TickResult(self.bot_id)
        try:
            try:
                trade = await self.reconcile(now, result)
            except TransientExchangeError as e:
                logger.error(f"[{self.bot_id}] reconciliation failed, close not attempted: {e}")
                result.action = 'reconcile_failed'
                result.detail = str(e)
                return result
            if trade is None:
                if result.action != 'closed':
                    result.action = 'no_position'
                return result
            if not await self._close(trade, reason, now, result):
                result.action = 'close_failed'
                result.trade_id = trade.id
        except TickLeaseLost as e:
            logger.error(f"[{self.bot_id}] close command aborted: {e}")
            result.action = 'lease_lost'
            result.detail = str(e)
        finally:
            self.store.release_tick_lock(self.bot_id, self.owner)
        return result

    async def _run_tick(self, now: datetime) -> TickResult:
        result = TickResult(self.bot_id)

        try:
            trade = await self.reconcile(now, result)
        except TransientExchangeError as e:
            logger.error(f"[{self.bot_id}] reconciliation aborted, will retry next tick: {e}")
            result.action = 'reconcile_failed'
            result.detail = str(e)
            return result

        if trade is not None:
            result.action = 'holding'
            result.trade_id = trade.id
            return result
        if result.action == 'closed':
            return result

        try:
            await self._evaluate_entry(now, result)
        except TransientExchangeError as e:
            logger.warning(f"[{self.bot_id}] entry evaluation aborted: {e}")
            result.action = 'entry_failed'
            result.detail = str(e)
        except ExchangeError as e:
            logger.error(f"[{self.bot_id}] exchange error during entry evaluation: {e}")
            result.action = 'entry_failed'
            result.detail = str(e)

        return result

    async def reconcile(self, now: datetime, result: TickResult) -> Optional[FuturesTrade]:
        """Align the local open trade with the exchange; returns the trade if still open"""
        trade = self.store.get_open_trade(self.bot_id)
        positions = await self.gateway.get_open_positions(self.bot.symbol)
        position = next((p for p in positions if p.symbol == self.bot.symbol), None)

        if trade is None:
            if position is None:
                return None
            return await self._adopt_orphan(position, now, result)

        if position is None:
            closed = await self._handle_missing_position(trade, now, result)
            return None if closed else trade

        for order_id in self._apply_exchange_truth(trade, position, result):
            if not await self._cancel_with_retry(order_id):
                logger.error(f"[{self.bot_id}] stale protective order {order_id} could not be cancelled")

        trade.unrealized_pnl = position.unrealized_pnl
        self.store.update_trade(trade)

        if not trade.is_protected:
            await self._ensure_protection(trade, result)
            if not trade.is_protected and await self._guard_unprotected(trade, now, result):
                return None

        max_duration = timedelta(minutes=self.bot.max_trade_duration_minutes)
        if trade.opened_at is not None and now - trade.opened_at >= max_duration:
            logger.info(f"[{self.bot_id}] trade {trade.id} exceeded {self.bot.max_trade_duration_minutes} minutes")
            if await self._close(trade, 'max_duration', now, result):
                return None

        return trade

    def _apply_exchange_truth(self, trade: FuturesTrade, position: Position, result: TickResult) -> List[str]:
        """Overwrite local side/size with the exchange position; returns now-stale order ids"""
        same_side = position.side == trade.side
        same_qty = math.isclose(position.quantity, trade.quantity, rel_tol=1e-9, abs_tol=1e-12)
        if same_side and same_qty:
            return []

        logger.warning(f"[{self.bot_id}] reconciliation mismatch on trade {trade.id}: local "
                       f"{trade.side} {trade.quantity}, exchange {position.side} {position.quantity}; "
                       f"adopting exchange state")
        result.events.append(RECONCILIATION_MISMATCH)

        if not same_side:
            # Protective orders sit on the wrong side; rebuild them
            trade.stop_loss_price = None
            trade.take_profit_price = None
        trade.side = position.side
        trade.quantity = position.quantity
        trade.entry_price = position.entry_price
        # Existing protective orders cover the old size
        stale = [oid for oid in (trade.stop_loss_order_id, trade.take_profit_order_id) if oid]
        trade.stop_loss_order_id = None
        trade.take_profit_order_id = None
        return stale

    async def _adopt_orphan(self, position: Position, now: datetime, result: TickResult) -> FuturesTrade:
        logger.warning(f"[{self.bot_id}] exchange reports {position.side} {position.quantity} "
                       f"{position.symbol} with no local trade; adopting it")
        result.events.append(ORPHAN_ADOPTED)

        trade = FuturesTrade(
            bot_id=self.bot_id,
            symbol=self.bot.symbol,
            side=position.side,
            quantity=position.quantity,
            entry_price=position.entry_price,
            leverage=position.leverage,
            margin_type=position.margin_type,
            unrealized_pnl=position.unrealized_pnl,
            opened_at=now,
        )
        self.store.insert_trade(trade)
        await self._ensure_protection(trade, result)
        return trade

    async def _handle_missing_position(self, trade: FuturesTrade, now: datetime, result: TickResult) -> bool:
        """The exchange has no position for an open trade: close it out locally"""
        if trade.exchange_order_id:
            entry = await self._order_status(trade.exchange_order_id)
            if entry is not None and entry.is_dead:
                if not await self._cancel_protection(trade):
                    return False
                self.store.close_trade(trade, None, 0.0, f"entry_{entry.status.lower()}", now, CANCELLED)
                logger.info(f"[{self.bot_id}] trade {trade.id} cancelled: entry order {entry.status}")
                result.action = 'closed'
                result.trade_id = trade.id
                result.events.append(POSITION_CLOSED)
                return True

        exit_price, reason = await self._exit_from_fills(trade)
        if exit_price is None:
            exit_price = trade.exit_price
            reason = trade.close_reason or 'exchange_closed'
        if exit_price is None:
            exit_price = await self.gateway.get_current_price(self.bot.symbol)
            reason = 'exchange_closed'

        if not await self._cancel_protection(trade):
            logger.error(f"[{self.bot_id}] could not confirm cancellation of protective orders "
                         f"for trade {trade.id}; keeping it open until next tick")
            result.events.append(CLOSE_UNCONFIRMED)
            return False

        await self._finish_close(trade, exit_price, reason, now, result)
        return True

    async def _exit_from_fills(self, trade: FuturesTrade):
        for order_id, reason in ((trade.stop_loss_order_id, 'stop_loss'),
                                 (trade.take_profit_order_id, 'take_profit')):
            if not order_id:
                continue
            status = await self._order_status(order_id)
            if status is not None and status.is_filled and status.avg_price:
                return status.avg_price, reason
        return None, None

    async def _order_status(self, order_id: str):
        try:
            return await self.gateway.get_order_status(self.bot.symbol, order_id)
        except TransientExchangeError:
            raise
        except ExchangeError as e:
            logger.warning(f"[{self.bot_id}] order {order_id} status unavailable: {e}")
            return None

    async def _close(self, trade: FuturesTrade, reason: str, now: datetime, result: TickResult) -> bool:
        """Flatten the position with a reduce-only market order, retried aggressively"""
        side = exit_order_side(trade.side)
        attempts = self.bot.close_retry_attempts

        for attempt in range(attempts):
            try:
                order = await self.gateway.place_market_order(self.bot.symbol, side, trade.quantity, reduce_only=True)
            except TransientExchangeError as e:
                logger.warning(f"[{self.bot_id}] close attempt {attempt + 1}/{attempts} failed: {e}")
                if await self._position_gone():
                    break
                await self._backoff(attempt)
                continue
            except ExchangeError as e:
                logger.error(f"[{self.bot_id}] close order rejected for trade {trade.id}: {e}")
                if await self._position_gone():
                    break
                await self._backoff(attempt)
                continue

            if order.status == 'FILLED' and order.price:
                trade.exit_price = order.price
                trade.close_reason = reason
                self.store.update_trade(trade)
                break
            logger.error(f"[{self.bot_id}] close order {order.order_id} not filled: "
                         f"{order.status} {order.error_message or ''}")
            if await self._position_gone():
                break
            await self._backoff(attempt)
        else:
            logger.critical(f"[{self.bot_id}] could not close trade {trade.id} after {attempts} attempts; "
                            f"it stays open and will be retried next tick")
            result.events.append(CLOSE_UNCONFIRMED)
            await self._alert(f"🚨 {self.bot.symbol}: failed to close trade {trade.id} ({reason})")
            return False

        exit_price = trade.exit_price
        if exit_price is None:
            # Position went away on its own while we were retrying
            exit_price, fill_reason = await self._exit_from_fills(trade)
            reason = fill_reason or reason
        if exit_price is None:
            exit_price = await self.gateway.get_current_price(self.bot.symbol)

        if not await self._cancel_protection(trade):
            result.events.append(CLOSE_UNCONFIRMED)
            return False

        await self._finish_close(trade, exit_price, reason, now, result)
        return True

    async def _position_gone(self) -> bool:
        try:
            positions = await self.gateway.get_open_positions(self.bot.symbol)
        except ExchangeError:
            return False
        return not any(p.symbol == self.bot.symbol for p in positions)

    async def _finish_close(self, trade: FuturesTrade, exit_price: float, reason: str,
                            now: datetime, result: TickResult):
        realized_pnl = trade.pnl_at(exit_price)
        self.store.close_trade(trade, exit_price, realized_pnl, reason, now)

        logger.info(f"[{self.bot_id}] trade {trade.id} closed ({reason}) at {exit_price}, "
                    f"PnL {realized_pnl:.4f}")
        result.action = 'closed'
        result.trade_id = trade.id
        result.events.append(POSITION_CLOSED)
        await self._alert(f"✅ {self.bot.symbol} {trade.side.upper()} closed ({reason}) "
                          f"at {exit_price}, PnL {realized_pnl:.4f}")

    async def _cancel_protection(self, trade: FuturesTrade) -> bool:
        """Cancel protective orders; True only when every cancellation is confirmed"""
        confirmed = True
        for order_id in (trade.stop_loss_order_id, trade.take_profit_order_id):
            if order_id and not await self._cancel_with_retry(order_id):
                confirmed = False
        return confirmed

    async def _cancel_with_retry(self, order_id: str) -> bool:
        attempts = self.bot.close_retry_attempts
        for attempt in range(attempts):
            try:
                return await self.gateway.cancel_order(self.bot.symbol, order_id)
            except TransientExchangeError as e:
                logger.warning(f"[{self.bot_id}] cancel {order_id} attempt {attempt + 1}/{attempts} failed: {e}")
                await self._backoff(attempt)
            except ExchangeError as e:
                logger.error(f"[{self.bot_id}] cancel {order_id} rejected: {e}")
                return False
        return False

    async def _evaluate_entry(self, now: datetime, result: TickResult):
        bot = self.bot
        state = self.store.get_bot_state(self.bot_id)

        if state.last_position_closed_at is not None:
            cooldown_ends = state.last_position_closed_at + timedelta(minutes=bot.cooldown_minutes)
            if now < cooldown_ends:
                logger.debug(f"[{self.bot_id}] in cooldown until {cooldown_ends}")
                result.action = 'cooldown'
                return

        if not bot.session_start_hour <= now.hour < bot.session_end_hour:
            result.action = 'outside_session'
            return

        if self.store.count_trades_since(self.bot_id, now - timedelta(hours=1)) >= bot.max_trades_per_hour:
            logger.info(f"[{self.bot_id}] max trades per hour reached ({bot.max_trades_per_hour})")
            result.action = 'rate_limited'
            return

        current_price = await self.gateway.get_current_price(bot.symbol)
        candles_by_timeframe = await self.aggregator.fetch_candles(bot, self.gateway)
        signal = self.aggregator.best_signal(bot, candles_by_timeframe, current_price)
        if signal is None:
            result.action = 'no_signal'
            return
        result.signal = signal

        confirmed = None
        if bot.confirmation.enabled:
            confirmed = await self._confirm(signal, current_price, now, result)
            if confirmed is None:
                return

        quantity = await self._size(signal, current_price, candles_by_timeframe, result)
        if quantity is None:
            return

        levels = self._levels_for(signal, candles_by_timeframe)
        target = confirmed.target if confirmed is not None and bot.confirmation.anchor_take_profit else None
        plan = self.planner.plan(signal.side, current_price, levels, target=target)

        record = SignalRecord(
            bot_id=self.bot_id,
            symbol=bot.symbol,
            signal=signal,
            price=current_price,
            stop_loss=plan.stop_loss,
            take_profit=plan.take_profit,
            risk_reward=plan.risk_reward,
            created_at=now,
        )
        self.store.insert_signal(record)

        if not plan.ok:
            logger.info(f"[{self.bot_id}] {signal.type} rejected by protection plan: {plan.reason} "
                        f"(R/R {plan.risk_reward:.2f}, tier {plan.tier})")
            result.action = 'rejected_plan'
            result.detail = plan.reason or ""
            return

        trade = await self._open(signal, quantity, plan, now, result)
        if trade is None:
            result.action = 'open_failed'
            return

        self.store.attach_signal_to_trade(record.id, trade.id)
        if confirmed is not None:
            self.store.mark_level_consumed(self.bot_id, confirmed.key_level, now,
                                           bot.confirmation.consumed_ttl_minutes)
        result.action = 'opened'
        result.trade_id = trade.id

    async def _confirm(self, signal: Signal, current_price: float, now: datetime,
                       result: TickResult) -> Optional[ConfirmationResult]:
        """Higher timeframe confirmation; None when the entry should be skipped"""
        settings = self.bot.confirmation
        candles_by_timeframe = await self.confirmation.fetch_candles(self.bot, self.gateway)
        confirmed = self.confirmation.evaluate(signal.direction, current_price, candles_by_timeframe)
        if not confirmed.ok:
            logger.info(f"[{self.bot_id}] {signal.type} {signal.direction} not confirmed: {confirmed.reason}")
            result.action = 'unconfirmed'
            result.detail = confirmed.reason
            return None

        if self.store.is_level_consumed(self.bot_id, confirmed.key_level, settings.level_tolerance_pct, now):
            logger.info(f"[{self.bot_id}] level {confirmed.key_level} already traded, skipping")
            result.action = 'level_consumed'
            result.detail = str(confirmed.key_level)
            return None
        return confirmed

    async def _size(self, signal: Signal, current_price: float,
                    candles_by_timeframe: Dict[str, Sequence[Candle]], result: TickResult) -> Optional[float]:
        bot = self.bot
        balance = await self.gateway.get_account_balance(bot.quote_currency)
        precision = await self.gateway.get_quantity_precision(bot.symbol)

        risk = bot.risk_percentage
        if bot.dynamic_sizing:
            risk = dynamic_risk_percentage(risk, signal, bot.max_dynamic_risk)
        if bot.volatility_adjustment:
            risk *= volatility_multiplier(self._volatility(candles_by_timeframe))

        sizing = self.sizer.size(balance, risk, bot.leverage, current_price,
                                 bot.min_order_notional, bot.max_position_size, precision)
        if not sizing.ok:
            logger.info(f"[{self.bot_id}] no trade this cycle: {sizing.detail}")
            result.action = 'insufficient_size'
            result.detail = sizing.detail
            return None
        return sizing.quantity

    def _volatility(self, candles_by_timeframe: Dict[str, Sequence[Candle]]) -> Optional[float]:
        available = [tf for tf in self.bot.timeframes if len(candles_by_timeframe.get(tf) or []) >= 5]
        if not available:
            return None
        shortest = min(available, key=timeframe_minutes)
        recent = list(candles_by_timeframe[shortest])[-12:]
        return returns_volatility(candles_to_dataframe(recent))

    def _levels_for(self, signal: Signal, candles_by_timeframe: Dict[str, Sequence[Candle]]) -> List[Level]:
        candles = candles_by_timeframe.get(signal.timeframe)
        if not candles:
            return []
        engine = SignalEngine(self.bot.swing_lookback, self.bot.trend_window, self.bot.signals)
        return engine.analyze(candles).levels

    async def _open(self, signal: Signal, quantity: float, plan, now: datetime,
                    result: TickResult) -> Optional[FuturesTrade]:
        bot = self.bot
        side = signal.side

        try:
            await self.gateway.set_leverage(bot.symbol, bot.leverage, bot.margin_type)
        except TransientExchangeError as e:
            logger.warning(f"[{self.bot_id}] could not set leverage, continuing: {e}")

        attempts = bot.open_retry_attempts
        for attempt in range(attempts):
            # Re-check the exchange right before submitting
            try:
                positions = await self.gateway.get_open_positions(bot.symbol)
            except TransientExchangeError as e:
                logger.warning(f"[{self.bot_id}] position check failed ({attempt + 1}/{attempts}): {e}")
                await self._backoff(attempt)
                continue
            if any(p.symbol == bot.symbol for p in positions):
                logger.warning(f"[{self.bot_id}] exchange already has a {bot.symbol} position; "
                               f"entry abandoned, next tick reconciles it")
                result.detail = 'position_exists'
                return None

            try:
                order = await self.gateway.place_market_order(bot.symbol, entry_order_side(side), quantity)
            except TransientExchangeError as e:
                logger.warning(f"[{self.bot_id}] entry order attempt {attempt + 1}/{attempts} failed: {e}")
                await self._backoff(attempt)
                continue
            except ExchangeError as e:
                logger.error(f"[{self.bot_id}] entry order rejected: {e}")
                return None

            if order.status == 'REJECTED' or order.error_message:
                logger.error(f"[{self.bot_id}] entry order rejected: {order.error_message or order.status}")
                return None

            entry_price = order.price
            filled_qty = order.qty
            if order.status != 'FILLED':
                status = await self._order_status(order.order_id)
                if status is None or not status.is_filled:
                    logger.warning(f"[{self.bot_id}] entry order {order.order_id} not confirmed filled "
                                   f"({status.status if status else 'unknown'}); next tick reconciles")
                    return None
                entry_price = status.avg_price or entry_price
                filled_qty = status.filled_qty or filled_qty

            trade = FuturesTrade(
                bot_id=self.bot_id,
                symbol=bot.symbol,
                side=side,
                quantity=filled_qty,
                entry_price=entry_price,
                stop_loss_price=plan.stop_loss,
                take_profit_price=plan.take_profit,
                exchange_order_id=order.order_id,
                leverage=bot.leverage,
                margin_type=bot.margin_type,
                opened_at=now,
            )
            try:
                self.store.insert_trade(trade)
            except sqlite3.IntegrityError:
                logger.error(f"[{self.bot_id}] an open trade already exists locally; "
                             f"order {order.order_id} will be reconciled next tick")
                return None

            logger.info(f"[{self.bot_id}] opened {side} {filled_qty} {bot.symbol} @ {entry_price} "
                        f"({signal.type} {signal.timeframe}, strength {signal.strength:.2f})")
            await self._alert(f"📈 {bot.symbol} {side.upper()} {filled_qty} @ {entry_price}\n"
                              f"SL {plan.stop_loss:.6g} TP {plan.take_profit:.6g} ({signal.type})")

            await self._ensure_protection(trade, result)
            return trade

        logger.error(f"[{self.bot_id}] entry abandoned after {attempts} attempts")
        return None

    async def _ensure_protection(self, trade: FuturesTrade, result: TickResult) -> bool:
        """Place whichever protective orders are missing, with exponential backoff"""
        if trade.stop_loss_price is None or trade.take_profit_price is None:
            plan = self.planner.plan(trade.side, trade.entry_price)
            trade.stop_loss_price = trade.stop_loss_price or plan.stop_loss
            trade.take_profit_price = trade.take_profit_price or plan.take_profit

        side = exit_order_side(trade.side)
        attempts = self.bot.protection_retry_attempts
        error = None

        for attempt in range(attempts):
            try:
                if not trade.stop_loss_order_id:
                    trade.stop_loss_order_id = await self.gateway.place_stop_order(
                        self.bot.symbol, side, trade.quantity, trade.stop_loss_price)
                if not trade.take_profit_order_id:
                    trade.take_profit_order_id = await self.gateway.place_limit_order(
                        self.bot.symbol, side, trade.quantity, trade.take_profit_price)
                self.store.update_trade(trade)
                return True
            except ExchangeError as e:
                error = e
                logger.warning(f"[{self.bot_id}] protective order attempt {attempt + 1}/{attempts} "
                               f"for trade {trade.id} failed: {e}")
                self.store.update_trade(trade)
                if attempt < attempts - 1:
                    await self._backoff(attempt)

        logger.critical(f"[{self.bot_id}] UNPROTECTED POSITION: trade {trade.id} {trade.side} "
                        f"{trade.quantity} {self.bot.symbol} has no "
                        f"{'stop loss' if not trade.stop_loss_order_id else 'take profit'} "
                        f"after {attempts} attempts: {error}")
        result.events.append(PROTECTION_FAILURE)
        await self._alert(f"🚨 UNPROTECTED {self.bot.symbol} position (trade {trade.id}): {error}")
        return False

    async def _guard_unprotected(self, trade: FuturesTrade, now: datetime, result: TickResult) -> bool:
        """Close at market when price has crossed a level whose protective order is missing"""
        if not self.bot.software_stop_guard:
            return False

        price = await self.gateway.get_current_price(self.bot.symbol)
        sign = 1 if trade.side == LONG else -1
        reason = None
        if not trade.stop_loss_order_id and (price - trade.stop_loss_price) * sign <= 0:
            reason = 'stop_loss_guard'
        elif not trade.take_profit_order_id and (price - trade.take_profit_price) * sign >= 0:
            reason = 'take_profit_guard'
        if reason is None:
            return False

        logger.warning(f"[{self.bot_id}] price {price} crossed an unprotected level of trade {trade.id}, "
                       f"closing at market ({reason})")
        return await self._close(trade, reason, now, result)

    async def _backoff(self, attempt: int):
        """Sleep between retries while keeping the per-bot lease alive"""
        delay = self.bot.retry_base_delay_seconds * 2 ** attempt
        self._renew_lease(delay)
        await self.sleep(delay)
        self._renew_lease()

    def _renew_lease(self, extra_seconds: float = 0.0):
        if not self.store.acquire_tick_lock(self.bot_id, self.owner,
                                            self.lock_ttl_seconds + extra_seconds, self.clock()):
            raise TickLeaseLost(f"lease for {self.bot_id} is now held by another owner")

    async def _alert(self, text: str):
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(text)
        except Exception as e:
            logger.warning(f"[{self.bot_id}] alert not delivered: {e}")

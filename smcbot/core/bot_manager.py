"""
Bot Manager for running multiple futures bots with concurrency limits
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional, Set
from datetime import datetime, timezone

from botconfig.models import AppConfig, BotConfig, BotStatus
from smcbot.telegram import TelegramNotifier
from .exchange_gateway import ExchangeGateway
from .lifecycle import PositionLifecycleManager, TickResult
from .risk import ProtectionPlanner
from .trade_store import TradeStore

logger = logging.getLogger(__name__)


class BotWorker:
    """Worker that ticks a single bot on a fixed interval"""

    def __init__(self, bot_config: BotConfig, lifecycle: PositionLifecycleManager,
                 interval_seconds: float = 60):
        self.config = bot_config
        self.lifecycle = lifecycle
        self.interval_seconds = interval_seconds
        self.bot_id = bot_config.bot_id

        # State
        self.status = BotStatus(
            bot_id=self.bot_id,
            symbol=bot_config.symbol,
            enabled=bot_config.enabled,
            status='stopped'
        )

        self.task: Optional[asyncio.Task] = None
        self.stop_event = asyncio.Event()

        # Callbacks
        self.status_callbacks: List[Callable[[BotStatus], None]] = []

    async def start(self):
        """Start the bot worker"""
        if self.task and not self.task.done():
            logger.warning(f"Worker for {self.bot_id} is already running")
            return

        logger.info(f"Starting worker for {self.bot_id} ({self.config.symbol})")
        self.stop_event.clear()
        self.status.status = 'starting'
        self._notify_status_callbacks()

        self.task = asyncio.create_task(self._run())

    async def stop(self):
        """Stop the bot worker"""
        if not self.task or self.task.done():
            return

        self.stop_event.set()

        try:
            await asyncio.wait_for(self.task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning(f"Worker for {self.bot_id} didn't stop gracefully, cancelling")
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass

        self.status.status = 'stopped'
        self._notify_status_callbacks()
        logger.info(f"Stopped worker for {self.bot_id}")

    async def run_once(self) -> TickResult:
        """Run a single tick and record its outcome on the status"""
        try:
            result = await self.lifecycle.tick()
        except Exception as e:
            logger.exception(f"Unhandled error in tick for {self.bot_id}: {e}")
            self.status.status = 'error'
            self.status.last_error = str(e)
            self._notify_status_callbacks()
            return TickResult(self.bot_id, 'error', detail=str(e))

        self.status.ticks += 1
        self.status.last_action = result.action
        self.status.last_tick_time = datetime.now(timezone.utc)
        self.status.open_trade_id = result.trade_id if result.action in ('holding', 'opened') else None
        if result.action == 'deactivated':
            self.status.status = 'inactive'
            self.status.last_error = result.detail
            self.stop_event.set()
        elif result.action in ('reconcile_failed', 'entry_failed'):
            self.status.last_error = result.detail
        self._notify_status_callbacks()
        return result

    async def _run(self):
        """Main worker loop; ticks of one bot never overlap"""
        self.status.status = 'running'
        self._notify_status_callbacks()

        try:
            while not self.stop_event.is_set():
                await self.run_once()

                try:
                    await asyncio.wait_for(self.stop_event.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info(f"Worker for {self.bot_id} was cancelled")
            raise

    def add_status_callback(self, callback: Callable[[BotStatus], None]):
        """Add status callback"""
        self.status_callbacks.append(callback)

    def _notify_status_callbacks(self):
        """Notify all status callbacks"""
        for callback in self.status_callbacks:
            try:
                callback(self.status)
            except Exception as e:
                logger.error(f"Error in status callback: {e}")


class BotManager:
    """Manages multiple bot workers with a concurrency limit"""

    def __init__(self, gateway: ExchangeGateway, store: TradeStore, config: AppConfig,
                 notifier: Optional[TelegramNotifier] = None):
        self.gateway = gateway
        self.store = store
        self.config = config
        self.notifier = notifier

        # Workers
        self.workers: Dict[str, BotWorker] = {}
        self.running_workers: Set[str] = set()

        # Callbacks
        self.status_callbacks: List[Callable[[Dict[str, BotStatus]], None]] = []

        logger.info(f"BotManager initialized with max {config.max_concurrent_bots} concurrent bots")

    def _create_worker(self, bot_config: BotConfig) -> BotWorker:
        """Create a worker for a bot"""
        lifecycle = PositionLifecycleManager(
            bot_config,
            self.gateway,
            self.store,
            planner=ProtectionPlanner(self.config.risk_tiers),
            notifier=self.notifier,
            lock_ttl_seconds=self.config.tick_lock_ttl_seconds,
        )
        worker = BotWorker(bot_config, lifecycle, self.config.tick_interval_seconds)
        worker.add_status_callback(self._on_status_update)
        self.workers[bot_config.bot_id] = worker
        return worker

    def _sync_workers(self):
        for bot_config in self.config.bots:
            if bot_config.bot_id not in self.workers:
                self._create_worker(bot_config)

    async def start(self):
        """Start workers for enabled bots"""
        logger.info("Starting BotManager")
        self._sync_workers()
        await self._start_enabled_bots()
        logger.info(f"Running workers: {sorted(self.running_workers)}")

    async def stop(self):
        """Stop all workers"""
        logger.info("Stopping BotManager")

        tasks = [worker.stop() for worker in self.workers.values()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self.workers.clear()
        self.running_workers.clear()

    async def run_once(self) -> List[TickResult]:
        """One tick for every enabled bot, at most max_concurrent_bots at a time"""
        self._sync_workers()
        semaphore = asyncio.Semaphore(self.config.max_concurrent_bots)

        async def _tick(worker: BotWorker) -> TickResult:
            async with semaphore:
                return await worker.run_once()

        enabled = [self.workers[bot.bot_id] for bot in self.config.get_enabled_bots()]
        return list(await asyncio.gather(*(_tick(worker) for worker in enabled)))

    async def apply_config(self, new_config: AppConfig):
        """Apply new configuration hot reload"""
        errors = new_config.validate()
        if errors:
            raise ValueError(f"Invalid configuration: {errors}")

        old_ids = {bot.bot_id for bot in self.config.bots}
        new_ids = {bot.bot_id for bot in new_config.bots}
        self.config = new_config

        for bot_id in old_ids - new_ids:
            await self._remove_bot(bot_id)

        # Recreate workers whose settings changed
        for bot_config in new_config.bots:
            worker = self.workers.get(bot_config.bot_id)
            if worker is not None and worker.config != bot_config:
                await self._remove_bot(bot_config.bot_id)
        self._sync_workers()

        await self._stop_disabled_bots()
        await self._start_enabled_bots()
        self._notify_status_callbacks()

    async def _remove_bot(self, bot_id: str):
        worker = self.workers.pop(bot_id, None)
        if worker is not None:
            await worker.stop()
        self.running_workers.discard(bot_id)
        logger.info(f"Removed worker for {bot_id}")

    async def _start_enabled_bots(self):
        """Start workers for enabled bots"""
        enabled_bots = self.config.get_enabled_bots()
        limit = self.config.max_concurrent_bots

        # Respect concurrent limit
        for bot_config in enabled_bots[:limit]:
            bot_id = bot_config.bot_id
            if bot_id not in self.running_workers:
                await self.workers[bot_id].start()
                self.running_workers.add(bot_id)

        # Queue remaining bots
        for bot_config in enabled_bots[limit:]:
            self.workers[bot_config.bot_id].status.status = 'queued'
            logger.info(f"Queued worker for {bot_config.bot_id}")

    async def _stop_disabled_bots(self):
        """Stop workers for disabled bots"""
        enabled_ids = {bot.bot_id for bot in self.config.get_enabled_bots()}
        for bot_id in list(self.running_workers - enabled_ids):
            if bot_id in self.workers:
                await self.workers[bot_id].stop()
            self.running_workers.discard(bot_id)

    def _on_status_update(self, status: BotStatus):
        self._notify_status_callbacks()

    def _notify_status_callbacks(self):
        """Notify status callbacks with all bot statuses"""
        statuses = self.get_all_statuses()
        for callback in self.status_callbacks:
            try:
                callback(statuses)
            except Exception as e:
                logger.error(f"Error in status callback: {e}")

    def add_status_callback(self, callback: Callable[[Dict[str, BotStatus]], None]):
        """Add status callback"""
        self.status_callbacks.append(callback)

    def get_bot_status(self, bot_id: str) -> Optional[BotStatus]:
        """Get status for a specific bot"""
        worker = self.workers.get(bot_id)
        return worker.status if worker else None

    def get_all_statuses(self) -> Dict[str, BotStatus]:
        """Get all bot statuses"""
        return {bot_id: worker.status for bot_id, worker in self.workers.items()}

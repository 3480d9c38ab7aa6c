#!/usr/bin/env python3
"""
Main entry point for the SMC futures trading bot
"""
import asyncio
import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table
from rich import box

from botconfig import AppConfig, BotConfig, ConfigLoader
from smcbot.errors import FatalConfigurationError
from smcbot.telegram import TelegramNotifier
from smcbot.core import (
    ExchangeGateway, BinanceFuturesGateway, PaperExchangeGateway,
    MultiTimeframeAggregator, PositionLifecycleManager, ProtectionPlanner,
    TradeStore, BotManager
)

console = Console()


def setup_logging(level: str = "INFO", quiet_mode: bool = False, logs_dir: str = "logs"):
    """Setup logging configuration"""
    Path(logs_dir).mkdir(parents=True, exist_ok=True)
    handlers = [logging.FileHandler(Path(logs_dir) / 'smcbot.log')]

    if not quiet_mode:
        handlers.append(logging.StreamHandler(sys.stdout))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )

    # Suppress noisy loggers
    logging.getLogger('asyncio').setLevel(logging.WARNING)
    logging.getLogger('aiohttp').setLevel(logging.WARNING)


def _load_dotenv(path: str = ".env") -> None:
    """Lightweight .env loader. Sets os.environ if not set.

    Supports simple lines: KEY=VALUE, ignores comments and empty lines.
    Strips surrounding single/double quotes from VALUE.
    """
    if not os.path.exists(path):
        return
    with open(path, 'r', encoding='utf-8') as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            key, val = line.split('=', 1)
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            if key and key not in os.environ:
                os.environ[key] = val


def build_gateway(config: AppConfig) -> ExchangeGateway:
    """Binance for live trading; paper account fed by Binance public market data otherwise"""
    market_data = BinanceFuturesGateway(
        api_key=os.getenv('BINANCE_API_KEY'),
        api_secret=os.getenv('BINANCE_API_SECRET'),
        timeout=config.request_timeout_seconds,
        requests_per_minute=config.requests_per_minute,
    )
    if config.exchange == 'binance':
        if not market_data.api_key or not market_data.api_secret:
            raise FatalConfigurationError("BINANCE_API_KEY / BINANCE_API_SECRET must be set for live trading")
        return market_data
    return PaperExchangeGateway(market_data=market_data)


def build_notifier(config: AppConfig) -> TelegramNotifier:
    return TelegramNotifier(
        config.telegram_token or os.getenv('TELEGRAM_BOT_TOKEN'),
        config.telegram_chat_id or os.getenv('TELEGRAM_CHAT_ID'),
    )


def _select_bot(config: AppConfig, bot_id: str) -> BotConfig:
    bot = config.get_bot_config(bot_id)
    if bot is None:
        raise FatalConfigurationError(f"Unknown bot id: {bot_id}")
    return bot


async def cmd_run(config: AppConfig, gateway: ExchangeGateway, store: TradeStore,
                  notifier: TelegramNotifier) -> int:
    manager = BotManager(gateway, store, config, notifier)
    await manager.start()
    if not manager.running_workers:
        console.print("[yellow]No enabled bots in configuration[/yellow]")
        return 1

    console.print(f"🚀 Running {len(manager.running_workers)} bot(s) every "
                  f"{config.tick_interval_seconds}s on {config.exchange}. Press Ctrl+C to stop.")
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await manager.stop()


async def cmd_tick(config: AppConfig, gateway: ExchangeGateway, store: TradeStore,
                   notifier: TelegramNotifier) -> int:
    manager = BotManager(gateway, store, config, notifier)
    results = await manager.run_once()

    table = Table(title="Tick results", box=box.SIMPLE)
    table.add_column("Bot")
    table.add_column("Action")
    table.add_column("Trade")
    table.add_column("Events")
    for result in results:
        table.add_row(result.bot_id, result.action, str(result.trade_id or "-"),
                      ", ".join(result.events) or "-")
    console.print(table)
    return 0


async def cmd_analyze(config: AppConfig, gateway: ExchangeGateway, bot_id: str) -> int:
    """Print every candidate signal and the selection for one bot, without trading"""
    bot = _select_bot(config, bot_id)
    aggregator = MultiTimeframeAggregator()

    price = await gateway.get_current_price(bot.symbol)
    candles = await aggregator.fetch_candles(bot, gateway)
    engine = aggregator._engine_for(bot)

    table = Table(title=f"{bot.symbol} @ {price}", box=box.SIMPLE)
    for column in ("TF", "Type", "Direction", "Strength", "Level"):
        table.add_column(column)

    for tf in bot.timeframes:
        for signal in engine.generate_signals(candles.get(tf, []), price, tf):
            table.add_row(tf, signal.type, signal.direction, f"{signal.strength:.3f}",
                          f"{signal.reference_level:.6g}")
    console.print(table)

    best = aggregator.best_signal(bot, candles, price)
    if best is None:
        console.print("[yellow]No eligible signal[/yellow]")
        return 0

    plan = ProtectionPlanner(config.risk_tiers).plan(best.side, price, engine.analyze(candles[best.timeframe]).levels)
    console.print(f"[green]Selected[/green] {best.type} {best.direction} on {best.timeframe} "
                  f"(strength {best.strength:.3f}, confluence {best.confluence})")
    console.print(f"SL {plan.stop_loss:.6g}  TP {plan.take_profit:.6g}  R/R {plan.risk_reward:.2f}  "
                  f"tier {plan.tier}  {'ok' if plan.ok else plan.reason}")
    return 0


async def cmd_close(config: AppConfig, gateway: ExchangeGateway, store: TradeStore,
                    notifier: TelegramNotifier, bot_id: str) -> int:
    bot = _select_bot(config, bot_id)
    lifecycle = PositionLifecycleManager(
        bot, gateway, store,
        planner=ProtectionPlanner(config.risk_tiers),
        notifier=notifier,
        lock_ttl_seconds=config.tick_lock_ttl_seconds,
    )
    result = await lifecycle.close_position('manual')
    console.print(f"{bot_id}: {result.action} {result.detail}")
    return 0 if result.action in ('closed', 'no_position') else 1


def cmd_trades(store: TradeStore, bot_id: Optional[str], limit: int) -> int:
    table = Table(title="Futures trades", box=box.SIMPLE)
    for column in ("ID", "Bot", "Symbol", "Side", "Qty", "Entry", "Exit", "PnL", "Status", "Reason"):
        table.add_column(column)

    for trade in store.get_trades(bot_id=bot_id, limit=limit):
        pnl = trade.realized_pnl if trade.realized_pnl is not None else trade.unrealized_pnl
        table.add_row(
            str(trade.id), trade.bot_id, trade.symbol, trade.side, f"{trade.quantity:g}",
            f"{trade.entry_price:.6g}", f"{trade.exit_price:.6g}" if trade.exit_price else "-",
            f"{pnl:.4f}", trade.status, trade.close_reason or "-",
        )
    console.print(table)
    return 0


async def main() -> int:
    """Main function with command line argument parsing"""
    parser = argparse.ArgumentParser(
        description='SMC Futures Bot - Smart Money Concepts signals with managed positions',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py run
  python main.py tick --config config/bots.yaml
  python main.py analyze btc-main
  python main.py close btc-main
  python main.py trades --bot btc-main
        """
    )
    parser.add_argument('--config', default='config/bots.yaml', help='Path to bots YAML config')
    parser.add_argument('--log-level', default=None, help='Override configured log level')
    parser.add_argument('--quiet', action='store_true', help='Log to file only')

    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('run', help='Run all enabled bots continuously')
    sub.add_parser('tick', help='Run one tick for every enabled bot and exit')
    analyze = sub.add_parser('analyze', help='Show signals for a bot without trading')
    analyze.add_argument('bot_id')
    close = sub.add_parser('close', help='Close the open position of a bot')
    close.add_argument('bot_id')
    trades = sub.add_parser('trades', help='List recorded trades')
    trades.add_argument('--bot', default=None)
    trades.add_argument('--limit', type=int, default=20)

    args = parser.parse_args()
    _load_dotenv()

    try:
        config = ConfigLoader(args.config).load()
    except FatalConfigurationError as e:
        console.print(f"[red]❌ {e}[/red]")
        return 2

    setup_logging(args.log_level or config.log_level, quiet_mode=args.quiet, logs_dir=config.logs_dir)
    store = TradeStore(config.database_path)

    if args.command == 'trades':
        return cmd_trades(store, args.bot, args.limit)

    gateway = None
    try:
        gateway = build_gateway(config)
        notifier = build_notifier(config)

        if args.command == 'run':
            return await cmd_run(config, gateway, store, notifier)
        if args.command == 'tick':
            return await cmd_tick(config, gateway, store, notifier)
        if args.command == 'analyze':
            return await cmd_analyze(config, gateway, args.bot_id)
        if args.command == 'close':
            return await cmd_close(config, gateway, store, notifier, args.bot_id)
    except FatalConfigurationError as e:
        console.print(f"[red]❌ {e}[/red]")
        logging.error(f"Fatal configuration error: {e}")
        return 2
    finally:
        if gateway is not None:
            await gateway.close()

    return 0


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\n👋 Stopped by user")


if __name__ == '__main__':
    cli()

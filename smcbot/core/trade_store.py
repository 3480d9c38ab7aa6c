"""
SQLite persistence for bot state, futures trades and the signal audit log.

One connection per operation; every state transition is a single
transaction so a crash never leaves a half-closed trade behind.
"""
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from smcbot.models import FuturesTrade, SignalRecord, Signal, OPEN, CLOSED

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS bot_state (
    bot_id TEXT PRIMARY KEY,
    is_active INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'idle',
    last_run_at TEXT,
    last_position_closed_at TEXT,
    lock_owner TEXT,
    lock_expires_at TEXT
);

CREATE TABLE IF NOT EXISTS futures_trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bot_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    quantity REAL NOT NULL,
    entry_price REAL NOT NULL,
    stop_loss_price REAL,
    take_profit_price REAL,
    exit_price REAL,
    status TEXT NOT NULL,
    exchange_order_id TEXT,
    stop_loss_order_id TEXT,
    take_profit_order_id TEXT,
    leverage INTEGER NOT NULL DEFAULT 1,
    margin_type TEXT NOT NULL DEFAULT 'isolated',
    unrealized_pnl REAL NOT NULL DEFAULT 0,
    realized_pnl REAL,
    close_reason TEXT,
    opened_at TEXT NOT NULL,
    closed_at TEXT,
    created_at TEXT NOT NULL
);

-- Single-position policy: at most one open trade per bot
CREATE UNIQUE INDEX IF NOT EXISTS idx_futures_trades_one_open
    ON futures_trades (bot_id) WHERE status = 'open';

CREATE INDEX IF NOT EXISTS idx_futures_trades_bot_opened
    ON futures_trades (bot_id, opened_at);

CREATE TABLE IF NOT EXISTS futures_signals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bot_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    timeframe TEXT,
    direction TEXT NOT NULL,
    signal_type TEXT NOT NULL,
    strength REAL NOT NULL,
    confluence INTEGER NOT NULL DEFAULT 0,
    price REAL NOT NULL,
    stop_loss REAL,
    take_profit REAL,
    risk_reward REAL,
    signal_data TEXT,
    executed INTEGER NOT NULL DEFAULT 0,
    trade_id INTEGER REFERENCES futures_trades (id),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS consumed_levels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bot_id TEXT NOT NULL,
    price REAL NOT NULL,
    consumed_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_consumed_levels_bot
    ON consumed_levels (bot_id, expires_at);
"""

_TRADE_COLUMNS = (
    'bot_id', 'symbol', 'side', 'quantity', 'entry_price', 'stop_loss_price',
    'take_profit_price', 'exit_price', 'status', 'exchange_order_id',
    'stop_loss_order_id', 'take_profit_order_id', 'leverage', 'margin_type',
    'unrealized_pnl', 'realized_pnl', 'close_reason', 'opened_at', 'closed_at',
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string so lexical order matches time order"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


@dataclass
class BotState:
    """Runtime state the lifecycle manager persists per bot"""
    bot_id: str
    is_active: bool = True
    status: str = 'idle'
    last_run_at: Optional[datetime] = None
    last_position_closed_at: Optional[datetime] = None
    lock_owner: Optional[str] = None
    lock_expires_at: Optional[datetime] = None


class TradeStore:
    """SQLite-backed store for bots, trades and signals.

    Args:
        db_path: Path to the SQLite database file; parent directories are created.
    """

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self):
        conn = self._connect()
        try:
            conn.executescript(SCHEMA)
        finally:
            conn.close()

    @staticmethod
    def _ensure_bot(conn: sqlite3.Connection, bot_id: str):
        conn.execute("INSERT OR IGNORE INTO bot_state (bot_id) VALUES (?)", (bot_id,))

    def get_bot_state(self, bot_id: str) -> BotState:
        conn = self._connect()
        try:
            with conn:
                self._ensure_bot(conn, bot_id)
            row = conn.execute("SELECT * FROM bot_state WHERE bot_id = ?", (bot_id,)).fetchone()
        finally:
            conn.close()

        return BotState(
            bot_id=row['bot_id'],
            is_active=bool(row['is_active']),
            status=row['status'],
            last_run_at=from_iso(row['last_run_at']),
            last_position_closed_at=from_iso(row['last_position_closed_at']),
            lock_owner=row['lock_owner'],
            lock_expires_at=from_iso(row['lock_expires_at']),
        )

    def set_bot_active(self, bot_id: str, active: bool, status: Optional[str] = None):
        status = status or ('idle' if active else 'inactive')
        conn = self._connect()
        try:
            with conn:
                self._ensure_bot(conn, bot_id)
                conn.execute(
                    "UPDATE bot_state SET is_active = ?, status = ? WHERE bot_id = ?",
                    (int(active), status, bot_id),
                )
        finally:
            conn.close()
        logger.info(f"Bot {bot_id} marked {'active' if active else 'inactive'} ({status})")

    def mark_run(self, bot_id: str, status: str, now: Optional[datetime] = None):
        conn = self._connect()
        try:
            with conn:
                self._ensure_bot(conn, bot_id)
                conn.execute(
                    "UPDATE bot_state SET last_run_at = ?, status = ? WHERE bot_id = ?",
                    (to_iso(now or utcnow()), status, bot_id),
                )
        finally:
            conn.close()

    def set_last_position_closed_at(self, bot_id: str, closed_at: Optional[datetime]):
        conn = self._connect()
        try:
            with conn:
                self._ensure_bot(conn, bot_id)
                conn.execute(
                    "UPDATE bot_state SET last_position_closed_at = ? WHERE bot_id = ?",
                    (to_iso(closed_at), bot_id),
                )
        finally:
            conn.close()

    def acquire_tick_lock(self, bot_id: str, owner: str, ttl_seconds: float,
                          now: Optional[datetime] = None) -> bool:
        """Take the per-bot tick lease unless another owner holds an unexpired one"""
        now = now or utcnow()
        expires = datetime.fromtimestamp(now.timestamp() + ttl_seconds, tz=timezone.utc)

        conn = self._connect()
        try:
            with conn:
                self._ensure_bot(conn, bot_id)
                cur = conn.execute(
                    """
                    UPDATE bot_state
                    SET lock_owner = ?, lock_expires_at = ?
                    WHERE bot_id = ?
                      AND (lock_owner IS NULL OR lock_owner = ? OR lock_expires_at <= ?)
                    """,
                    (owner, to_iso(expires), bot_id, owner, to_iso(now)),
                )
                return cur.rowcount == 1
        finally:
            conn.close()

    def release_tick_lock(self, bot_id: str, owner: str):
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    UPDATE bot_state SET lock_owner = NULL, lock_expires_at = NULL
                    WHERE bot_id = ? AND lock_owner = ?
                    """,
                    (bot_id, owner),
                )
        finally:
            conn.close()

    @staticmethod
    def _trade_values(trade: FuturesTrade) -> tuple:
        values = []
        for column in _TRADE_COLUMNS:
            value = getattr(trade, column)
            if isinstance(value, datetime):
                value = to_iso(value)
            values.append(value)
        return tuple(values)

    @staticmethod
    def _row_to_trade(row: sqlite3.Row) -> FuturesTrade:
        return FuturesTrade(
            id=row['id'],
            bot_id=row['bot_id'],
            symbol=row['symbol'],
            side=row['side'],
            quantity=row['quantity'],
            entry_price=row['entry_price'],
            stop_loss_price=row['stop_loss_price'],
            take_profit_price=row['take_profit_price'],
            exit_price=row['exit_price'],
            status=row['status'],
            exchange_order_id=row['exchange_order_id'],
            stop_loss_order_id=row['stop_loss_order_id'],
            take_profit_order_id=row['take_profit_order_id'],
            leverage=row['leverage'],
            margin_type=row['margin_type'],
            unrealized_pnl=row['unrealized_pnl'],
            realized_pnl=row['realized_pnl'],
            close_reason=row['close_reason'],
            opened_at=from_iso(row['opened_at']),
            closed_at=from_iso(row['closed_at']),
        )

    def insert_trade(self, trade: FuturesTrade) -> int:
        """Insert a trade and return its id.

        Raises:
            sqlite3.IntegrityError: the bot already has an open trade.
        """
        if trade.opened_at is None:
            trade.opened_at = utcnow()

        placeholders = ', '.join('?' for _ in _TRADE_COLUMNS)
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute(
                    f"INSERT INTO futures_trades ({', '.join(_TRADE_COLUMNS)}, created_at) "
                    f"VALUES ({placeholders}, ?)",
                    self._trade_values(trade) + (to_iso(utcnow()),),
                )
                trade_id = cur.lastrowid
        finally:
            conn.close()

        trade.id = trade_id
        return trade_id

    def update_trade(self, trade: FuturesTrade):
        if trade.id is None:
            raise ValueError("Cannot update a trade that was never inserted")

        assignments = ', '.join(f"{column} = ?" for column in _TRADE_COLUMNS)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f"UPDATE futures_trades SET {assignments} WHERE id = ?",
                    self._trade_values(trade) + (trade.id,),
                )
        finally:
            conn.close()

    def close_trade(self, trade: FuturesTrade, exit_price: Optional[float], realized_pnl: float,
                    reason: str, closed_at: Optional[datetime] = None, status: str = CLOSED):
        """Close a trade and start the bot cooldown in one transaction"""
        closed_at = closed_at or utcnow()
        conn = self._connect()
        try:
            with conn:
                self._ensure_bot(conn, trade.bot_id)
                conn.execute(
                    """
                    UPDATE futures_trades
                    SET status = ?, exit_price = ?, realized_pnl = ?, close_reason = ?,
                        closed_at = ?, unrealized_pnl = 0,
                        stop_loss_order_id = NULL, take_profit_order_id = NULL
                    WHERE id = ?
                    """,
                    (status, exit_price, realized_pnl, reason, to_iso(closed_at), trade.id),
                )
                conn.execute(
                    "UPDATE bot_state SET last_position_closed_at = ? WHERE bot_id = ?",
                    (to_iso(closed_at), trade.bot_id),
                )
        finally:
            conn.close()

        trade.status = status
        trade.exit_price = exit_price
        trade.realized_pnl = realized_pnl
        trade.close_reason = reason
        trade.closed_at = closed_at
        trade.unrealized_pnl = 0.0
        trade.stop_loss_order_id = None
        trade.take_profit_order_id = None

    def get_open_trade(self, bot_id: str) -> Optional[FuturesTrade]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM futures_trades WHERE bot_id = ? AND status = ? ORDER BY id DESC LIMIT 1",
                (bot_id, OPEN),
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_trade(row) if row else None

    def get_trades(self, bot_id: Optional[str] = None, status: Optional[str] = None,
                   limit: int = 50) -> List[FuturesTrade]:
        conditions = []
        params: list = []
        if bot_id:
            conditions.append("bot_id = ?")
            params.append(bot_id)
        if status:
            conditions.append("status = ?")
            params.append(status)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT * FROM futures_trades {where_clause} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_trade(row) for row in rows]

    def count_trades_since(self, bot_id: str, since: datetime) -> int:
        conn = self._connect()
        try:
            return conn.execute(
                "SELECT COUNT(*) FROM futures_trades WHERE bot_id = ? AND opened_at >= ?",
                (bot_id, to_iso(since)),
            ).fetchone()[0]
        finally:
            conn.close()

    def insert_signal(self, record: SignalRecord) -> int:
        """Append a signal audit row and return its id"""
        if record.created_at is None:
            record.created_at = utcnow()

        signal = record.signal
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute(
                    """
                    INSERT INTO futures_signals
                        (bot_id, symbol, timeframe, direction, signal_type, strength,
                         confluence, price, stop_loss, take_profit, risk_reward,
                         signal_data, executed, trade_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.bot_id, record.symbol, signal.timeframe, signal.direction,
                        signal.type, signal.strength, signal.confluence, record.price,
                        record.stop_loss, record.take_profit, record.risk_reward,
                        json.dumps(signal.to_dict()), int(record.executed), record.trade_id,
                        to_iso(record.created_at),
                    ),
                )
                signal_id = cur.lastrowid
        finally:
            conn.close()

        record.id = signal_id
        return signal_id

    def attach_signal_to_trade(self, signal_id: int, trade_id: int):
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "UPDATE futures_signals SET executed = 1, trade_id = ? WHERE id = ?",
                    (trade_id, signal_id),
                )
        finally:
            conn.close()

    def get_signals(self, bot_id: str, limit: int = 50) -> List[SignalRecord]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM futures_signals WHERE bot_id = ? ORDER BY id DESC LIMIT ?",
                (bot_id, limit),
            ).fetchall()
        finally:
            conn.close()

        records = []
        for row in rows:
            data = json.loads(row['signal_data']) if row['signal_data'] else {}
            signal = Signal(
                type=row['signal_type'],
                direction=row['direction'],
                strength=row['strength'],
                reference_level=data.get('level', row['price']),
                timeframe=row['timeframe'] or "",
                quality_factors=data.get('quality_factors', {}),
                confluence=row['confluence'],
            )
            records.append(SignalRecord(
                id=row['id'],
                bot_id=row['bot_id'],
                symbol=row['symbol'],
                signal=signal,
                price=row['price'],
                stop_loss=row['stop_loss'],
                take_profit=row['take_profit'],
                risk_reward=row['risk_reward'],
                executed=bool(row['executed']),
                trade_id=row['trade_id'],
                created_at=from_iso(row['created_at']),
            ))
        return records

    def mark_level_consumed(self, bot_id: str, price: float, now: Optional[datetime] = None,
                            ttl_minutes: int = 180):
        """Remember a traded breakout level so the bot does not re-enter on it before expiry"""
        now = now or utcnow()
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM consumed_levels WHERE bot_id = ? AND expires_at <= ?",
                             (bot_id, to_iso(now)))
                conn.execute(
                    "INSERT INTO consumed_levels (bot_id, price, consumed_at, expires_at) VALUES (?, ?, ?, ?)",
                    (bot_id, price, to_iso(now), to_iso(now + timedelta(minutes=ttl_minutes))),
                )
        finally:
            conn.close()
        logger.info(f"Bot {bot_id} marked level {price} as consumed for {ttl_minutes} minutes")

    def is_level_consumed(self, bot_id: str, price: float, tolerance_pct: float = 0.05,
                          now: Optional[datetime] = None) -> bool:
        """True when an unexpired consumed level lies within tolerance_pct percent of price"""
        if price <= 0:
            return False
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT price FROM consumed_levels WHERE bot_id = ? AND expires_at > ?",
                (bot_id, to_iso(now or utcnow())),
            ).fetchall()
        finally:
            conn.close()
        return any(abs(row['price'] - price) / price * 100 <= tolerance_pct for row in rows)

import sqlite3
from pathlib import Path
from typing import Callable

from beachbot.config import DB_PATH


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    path = Path(db_path) if db_path is not None else Path(DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=10.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def init_db(connection_factory: Callable[[], sqlite3.Connection] = get_connection) -> None:
    with connection_factory() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS app_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS current_prices (
                item_name TEXT PRIMARY KEY,
                display_name TEXT NOT NULL,
                market_price REAL NOT NULL,
                state_value REAL,
                image BLOB,
                image_name TEXT,
                last_updated TEXT NOT NULL,
                updated_by TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS price_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                item_name TEXT NOT NULL,
                display_name TEXT NOT NULL,
                market_price REAL NOT NULL,
                state_value REAL,
                date_added TEXT NOT NULL,
                added_by TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS ix_price_history_item
                ON price_history (item_name, date_added);

            CREATE TABLE IF NOT EXISTS trade_offers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                guild_id INTEGER NOT NULL,
                channel_id INTEGER NOT NULL DEFAULT 0,
                message_id INTEGER NOT NULL DEFAULT 0,
                creator_id INTEGER NOT NULL,
                creator_name TEXT NOT NULL,
                kind TEXT NOT NULL CHECK (kind IN ('sell', 'buy')),
                item_name TEXT NOT NULL,
                display_name TEXT NOT NULL,
                unit_price REAL NOT NULL CHECK (unit_price > 0),
                quantity INTEGER NOT NULL CHECK (quantity >= 1),
                description TEXT,
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK (status IN ('active', 'completed', 'cancelled', 'expired')),
                created_at TEXT NOT NULL,
                expires_at TEXT
            );

            CREATE INDEX IF NOT EXISTS ix_trade_offers_status
                ON trade_offers (status, created_at);

            CREATE TABLE IF NOT EXISTS trade_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                offer_id INTEGER NOT NULL,
                guild_id INTEGER NOT NULL,
                counterparty_id INTEGER NOT NULL,
                seller_id INTEGER NOT NULL,
                buyer_id INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'accepted', 'completed', 'cancelled')),
                channel_id INTEGER,
                agreed_price REAL NOT NULL,
                quantity INTEGER NOT NULL,
                seller_confirmed INTEGER NOT NULL DEFAULT 0,
                buyer_confirmed INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                teardown_at TEXT,
                FOREIGN KEY (offer_id) REFERENCES trade_offers (id)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS ux_trade_sessions_open
                ON trade_sessions (offer_id, counterparty_id)
                WHERE status IN ('pending', 'accepted');

            CREATE INDEX IF NOT EXISTS ix_trade_sessions_channel
                ON trade_sessions (channel_id);
            """
        )
        _ensure_current_prices_columns(conn)
        _ensure_trade_offers_columns(conn)


def _ensure_current_prices_columns(conn: sqlite3.Connection) -> None:
    columns = {
        row["name"]
        for row in conn.execute("PRAGMA table_info(current_prices);").fetchall()
    }
    if "state_value" not in columns:
        conn.execute("ALTER TABLE current_prices ADD COLUMN state_value REAL;")
    if "image" not in columns:
        conn.execute("ALTER TABLE current_prices ADD COLUMN image BLOB;")
    if "image_name" not in columns:
        conn.execute("ALTER TABLE current_prices ADD COLUMN image_name TEXT;")


def _ensure_trade_offers_columns(conn: sqlite3.Connection) -> None:
    columns = {
        row["name"]
        for row in conn.execute("PRAGMA table_info(trade_offers);").fetchall()
    }
    if "description" not in columns:
        conn.execute("ALTER TABLE trade_offers ADD COLUMN description TEXT;")
    if "expires_at" not in columns:
        conn.execute("ALTER TABLE trade_offers ADD COLUMN expires_at TEXT;")

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from beachbot.config import DB_PATH
from beachbot.db.database import get_connection


def get_state_value(
    key: str,
    *,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> str | None:
    with connection_factory() as conn:
        row = conn.execute(
            "SELECT value FROM app_state WHERE key = ?",
            (key,),
        ).fetchone()
        return None if row is None else row["value"]


def set_state_value(
    key: str,
    value: str,
    *,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> None:
    with connection_factory() as conn:
        conn.execute(
            """
            INSERT INTO app_state (key, value)
            VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )


def backup_dir_for(db_path: str | Path | None = None) -> Path:
    return Path(db_path or DB_PATH).parent / "backups"


def create_database_backup(
    *,
    prefix: str = "beachbot",
    db_path: str | Path | None = None,
) -> str:
    source_path = Path(db_path or DB_PATH)
    backup_dir = backup_dir_for(source_path)
    backup_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
    backup_path = backup_dir / f"{prefix}_{stamp}.db"

    with get_connection(source_path) as source_conn, sqlite3.connect(backup_path) as backup_conn:
        source_conn.backup(backup_conn)
    source_conn.close()
    backup_conn.close()

    return str(backup_path)


def prune_backups(
    keep: int,
    *,
    prefix: str = "beachbot",
    db_path: str | Path | None = None,
) -> list[str]:
    backup_dir = backup_dir_for(db_path)
    if not backup_dir.exists():
        return []
    # Stamps sort lexicographically in creation order.
    files = sorted(backup_dir.glob(f"{prefix}_*.db"))
    keep = max(1, int(keep))
    removed: list[str] = []
    for path in files[:-keep]:
        path.unlink(missing_ok=True)
        removed.append(str(path))
    return removed

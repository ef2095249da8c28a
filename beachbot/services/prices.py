from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Callable

from beachbot.db.database import get_connection
from beachbot.services.money import money, profit_vs_state

_CURRENT_COLUMNS = (
    "item_name, display_name, market_price, state_value, image, image_name, last_updated, updated_by"
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_item_name(name: str) -> str:
    return " ".join(str(name or "").split()).lower()


def _clean_display_name(name: str) -> str:
    return " ".join(str(name or "").split())


def get_current_price(
    name: str,
    *,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> dict | None:
    display_name = _clean_display_name(name)
    with connection_factory() as conn:
        row = conn.execute(
            f"""
            SELECT {_CURRENT_COLUMNS}
            FROM current_prices
            WHERE item_name = ? OR display_name = ?
            """,
            (normalize_item_name(name), display_name),
        ).fetchone()
    return None if row is None else dict(row)


def list_current_prices(
    *,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> list[dict]:
    with connection_factory() as conn:
        rows = conn.execute(
            f"""
            SELECT {_CURRENT_COLUMNS}
            FROM current_prices
            ORDER BY market_price DESC, item_name ASC
            """
        ).fetchall()
    return [dict(row) for row in rows]


def search_items(
    needle: str,
    limit: int = 25,
    *,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> list[str]:
    pattern = f"%{normalize_item_name(needle)}%"
    with connection_factory() as conn:
        rows = conn.execute(
            """
            SELECT display_name
            FROM current_prices
            WHERE item_name LIKE ?
            ORDER BY display_name
            LIMIT ?
            """,
            (pattern, max(1, int(limit))),
        ).fetchall()
    return [str(row["display_name"]) for row in rows]


def upsert_current_price(
    display_name: str,
    market_price: float,
    updated_by: str,
    state_value: float | None = None,
    image: bytes | None = None,
    image_name: str | None = None,
    *,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> tuple[dict, bool]:
    """Insert or update the current price of an item.

    A state value or image that is omitted keeps the one already stored.
    Returns the stored row and whether it was newly created.
    """
    display = _clean_display_name(display_name)
    item_name = normalize_item_name(display)
    if not item_name:
        raise ValueError("Item name must not be empty.")
    if float(market_price) <= 0:
        raise ValueError("Market price must be greater than 0.")
    if state_value is not None and float(state_value) <= 0:
        raise ValueError("State value must be greater than 0.")

    with connection_factory() as conn:
        existing = conn.execute(
            "SELECT state_value, image, image_name FROM current_prices WHERE item_name = ?",
            (item_name,),
        ).fetchone()
        final_state = state_value
        final_image = image
        final_image_name = image_name
        if existing is not None:
            if final_state is None:
                final_state = existing["state_value"]
            if final_image is None:
                final_image = existing["image"]
                final_image_name = existing["image_name"]
        conn.execute(
            """
            INSERT INTO current_prices (
                item_name, display_name, market_price, state_value,
                image, image_name, last_updated, updated_by
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(item_name) DO UPDATE SET
                display_name = excluded.display_name,
                market_price = excluded.market_price,
                state_value = excluded.state_value,
                image = excluded.image,
                image_name = excluded.image_name,
                last_updated = excluded.last_updated,
                updated_by = excluded.updated_by
            """,
            (
                item_name,
                display,
                money(market_price),
                None if final_state is None else float(final_state),
                final_image,
                final_image_name,
                _now_iso(),
                str(updated_by),
            ),
        )
        row = conn.execute(
            f"SELECT {_CURRENT_COLUMNS} FROM current_prices WHERE item_name = ?",
            (item_name,),
        ).fetchone()
    return dict(row), existing is None


def append_history(
    display_name: str,
    market_price: float,
    added_by: str,
    state_value: float | None = None,
    *,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> None:
    display = _clean_display_name(display_name)
    with connection_factory() as conn:
        conn.execute(
            """
            INSERT INTO price_history (
                item_name, display_name, market_price, state_value, date_added, added_by
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                normalize_item_name(display),
                display,
                money(market_price),
                None if state_value is None else money(state_value),
                _now_iso(),
                str(added_by),
            ),
        )


def list_history(
    name: str,
    *,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> list[dict]:
    with connection_factory() as conn:
        rows = conn.execute(
            """
            SELECT item_name, display_name, market_price, state_value, date_added, added_by
            FROM price_history
            WHERE item_name = ? OR display_name = ?
            ORDER BY date_added ASC, id ASC
            """,
            (normalize_item_name(name), _clean_display_name(name)),
        ).fetchall()
    return [dict(row) for row in rows]


def record_price(
    display_name: str,
    market_price: float,
    updated_by: str,
    state_value: float | None = None,
    image: bytes | None = None,
    image_name: str | None = None,
    *,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> tuple[dict, bool]:
    row, created = upsert_current_price(
        display_name,
        market_price,
        updated_by,
        state_value=state_value,
        image=image,
        image_name=image_name,
        connection_factory=connection_factory,
    )
    append_history(
        display_name,
        market_price,
        updated_by,
        state_value=state_value,
        connection_factory=connection_factory,
    )
    return row, created


def price_stats(
    name: str,
    *,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> dict | None:
    rows = list_history(name, connection_factory=connection_factory)
    if not rows:
        return None
    market = [float(r["market_price"]) for r in rows]
    avg_market = sum(market) / len(market)
    stats: dict = {
        "display_name": str(rows[-1]["display_name"]),
        "count": len(market),
        "avg_market": avg_market,
        "min_market": min(market),
        "max_market": max(market),
        "spread": max(market) - min(market),
        "variance_pct": ((max(market) - min(market)) / avg_market * 100.0) if avg_market else 0.0,
        "state_count": 0,
    }
    state = [float(r["state_value"]) for r in rows if r["state_value"] is not None]
    if state:
        avg_state = sum(state) / len(state)
        profit = profit_vs_state(avg_market, avg_state)
        stats.update(
            {
                "state_count": len(state),
                "avg_state": avg_state,
                "min_state": min(state),
                "max_state": max(state),
                "avg_profit": profit[0] if profit else 0.0,
                "avg_profit_pct": profit[1] if profit else 0.0,
            }
        )
    return stats

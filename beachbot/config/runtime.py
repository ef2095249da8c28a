from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Callable

from beachbot.config.settings import (
    BACKUP_HOUR,
    BACKUP_RETENTION,
    CANCELLED_TEARDOWN_SECONDS,
    COMPLETED_TEARDOWN_SECONDS,
    DISPLAY_TIMEZONE,
    LOG_CHANNEL_NAME,
    OFFER_TTL_DAYS,
    REQUIRE_KNOWN_ITEM,
    TRADE_CATEGORY_ID,
    TRADER_ROLE_NAMES,
)
from beachbot.db.database import get_connection


@dataclass(frozen=True)
class AppConfigSpec:
    default: Any
    cast: Callable[[str], Any]
    description: str


APP_CONFIG_SPECS: dict[str, AppConfigSpec] = {
    "TRADER_ROLE_NAMES": AppConfigSpec(
        default=",".join(TRADER_ROLE_NAMES),
        cast=str,
        description="Comma separated role names allowed to trade.",
    ),
    "REQUIRE_KNOWN_ITEM": AppConfigSpec(
        default=int(REQUIRE_KNOWN_ITEM),
        cast=int,
        description="1 = offers must reference an item from the price list.",
    ),
    "OFFER_TTL_DAYS": AppConfigSpec(
        default=int(OFFER_TTL_DAYS),
        cast=int,
        description="Days until a posted offer expires.",
    ),
    "COMPLETED_TEARDOWN_SECONDS": AppConfigSpec(
        default=int(COMPLETED_TEARDOWN_SECONDS),
        cast=int,
        description="Seconds a completed trade chat stays open.",
    ),
    "CANCELLED_TEARDOWN_SECONDS": AppConfigSpec(
        default=int(CANCELLED_TEARDOWN_SECONDS),
        cast=int,
        description="Seconds a cancelled trade chat stays open.",
    ),
    "DISPLAY_TIMEZONE": AppConfigSpec(
        default=str(DISPLAY_TIMEZONE),
        cast=str,
        description="Timezone used for display and the backup schedule.",
    ),
    "BACKUP_HOUR": AppConfigSpec(
        default=int(BACKUP_HOUR),
        cast=int,
        description="Local hour (0-23) of the daily database backup.",
    ),
    "BACKUP_RETENTION": AppConfigSpec(
        default=int(BACKUP_RETENTION),
        cast=int,
        description="Number of database backups to keep.",
    ),
    "LOG_CHANNEL_NAME": AppConfigSpec(
        default=str(LOG_CHANNEL_NAME),
        cast=str,
        description="Channel name receiving backup notices; empty disables.",
    ),
    "TRADE_CATEGORY_ID": AppConfigSpec(
        default=int(TRADE_CATEGORY_ID),
        cast=int,
        description="Category ID for trade chats; 0 means none.",
    ),
}


def _state_key(name: str) -> str:
    return f"config:{name}"


def _normalize(name: str, value: Any) -> Any:
    if name == "TRADER_ROLE_NAMES":
        parts = [p.strip() for p in str(value).split(",")]
        text = ",".join(p for p in parts if p)
        return text or ",".join(TRADER_ROLE_NAMES)
    if name == "REQUIRE_KNOWN_ITEM":
        return 1 if int(value) > 0 else 0
    if name == "OFFER_TTL_DAYS":
        return max(1, int(value))
    if name == "COMPLETED_TEARDOWN_SECONDS":
        return max(0, int(value))
    if name == "CANCELLED_TEARDOWN_SECONDS":
        return max(0, int(value))
    if name == "DISPLAY_TIMEZONE":
        text = str(value).strip()
        return text or str(DISPLAY_TIMEZONE)
    if name == "BACKUP_HOUR":
        return max(0, min(23, int(value)))
    if name == "BACKUP_RETENTION":
        return max(1, int(value))
    if name == "LOG_CHANNEL_NAME":
        return str(value).strip()
    if name == "TRADE_CATEGORY_ID":
        return max(0, int(value))
    return value


def _to_string(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.12g}"
    return str(value)


def ensure_app_config_defaults(
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> None:
    with connection_factory() as conn:
        for name, spec in APP_CONFIG_SPECS.items():
            row = conn.execute(
                "SELECT value FROM app_state WHERE key = ?",
                (_state_key(name),),
            ).fetchone()
            if row is None:
                conn.execute(
                    """
                    INSERT INTO app_state (key, value)
                    VALUES (?, ?)
                    """,
                    (_state_key(name), _to_string(_normalize(name, spec.default))),
                )


def get_app_config(
    name: str,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> Any:
    spec = APP_CONFIG_SPECS.get(name)
    if spec is None:
        raise KeyError(f"Unknown app config: {name}")
    with connection_factory() as conn:
        row = conn.execute(
            "SELECT value FROM app_state WHERE key = ?",
            (_state_key(name),),
        ).fetchone()
    if row is None:
        return _normalize(name, spec.default)
    raw = str(row["value"])
    try:
        parsed = spec.cast(raw)
    except (TypeError, ValueError):
        parsed = spec.default
    return _normalize(name, parsed)


def set_app_config(
    name: str,
    value: Any,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> Any:
    spec = APP_CONFIG_SPECS.get(name)
    if spec is None:
        raise KeyError(f"Unknown app config: {name}")
    normalized = _normalize(name, spec.cast(str(value)))
    with connection_factory() as conn:
        conn.execute(
            """
            INSERT INTO app_state (key, value)
            VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (_state_key(name), _to_string(normalized)),
        )
    return normalized


def get_all_app_configs(
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for name, spec in APP_CONFIG_SPECS.items():
        value = get_app_config(name, connection_factory)
        rows.append(
            {
                "name": name,
                "value": value,
                "default": _normalize(name, spec.default),
                "type": spec.cast.__name__,
                "description": spec.description,
            }
        )
    return rows

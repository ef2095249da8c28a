from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from beachbot.core.permissions import can_trade
from beachbot.core.trade_models import Offer, OfferKind
from beachbot.db.database import get_connection
from beachbot.services.errors import NotFoundRejected, PermissionRejected, ValidationRejected
from beachbot.services.money import money
from beachbot.services.prices import get_current_price, normalize_item_name

_OFFER_COLUMNS = (
    "id, guild_id, channel_id, message_id, creator_id, creator_name, kind, item_name, "
    "display_name, unit_price, quantity, description, status, created_at, expires_at"
)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_kind(kind: str | OfferKind) -> OfferKind:
    try:
        return OfferKind(str(getattr(kind, "value", kind)).strip().lower())
    except ValueError as e:
        raise ValidationRejected("Offer kind must be `sell` or `buy`.") from e


def create_offer(
    guild_id: int,
    channel_id: int,
    creator_id: int,
    creator_name: str,
    kind: str | OfferKind,
    item: str,
    unit_price: float,
    quantity: int,
    description: str | None = None,
    *,
    member_roles: Iterable[str] | None,
    allowed_roles: Iterable[str],
    require_known_item: bool = False,
    ttl_days: int = 7,
    now: datetime | None = None,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> Offer:
    if not can_trade(member_roles, allowed_roles):
        raise PermissionRejected(
            "You need one of the trader roles ("
            + ", ".join(f"`{r}`" for r in sorted(allowed_roles))
            + ") to post offers."
        )
    offer_kind = _parse_kind(kind)
    display_name = " ".join(str(item or "").split())
    if not display_name:
        raise ValidationRejected("Item must not be empty.")
    try:
        quantity = int(quantity)
        unit_price = money(unit_price)
    except (TypeError, ValueError, ArithmeticError) as e:
        raise ValidationRejected("Quantity and price must be numbers.") from e
    if quantity < 1:
        raise ValidationRejected("Quantity must be at least 1.")
    if unit_price <= 0:
        raise ValidationRejected("Price per unit must be greater than 0.")

    item_name = normalize_item_name(display_name)
    if require_known_item:
        known = get_current_price(display_name, connection_factory=connection_factory)
        if known is None:
            raise ValidationRejected(
                f"Item \"{display_name}\" is not in the price list. Add it with `/addprice` first."
            )
        item_name = str(known["item_name"])
        display_name = str(known["display_name"])

    created = now or _now()
    expires = created + timedelta(days=max(1, int(ttl_days)))
    text = str(description).strip() if description else None
    with connection_factory() as conn:
        cur = conn.execute(
            """
            INSERT INTO trade_offers (
                guild_id, channel_id, creator_id, creator_name, kind, item_name,
                display_name, unit_price, quantity, description, status, created_at, expires_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
            """,
            (
                int(guild_id),
                int(channel_id),
                int(creator_id),
                str(creator_name),
                offer_kind.value,
                item_name,
                display_name,
                unit_price,
                quantity,
                text or None,
                _iso(created),
                _iso(expires),
            ),
        )
        row = conn.execute(
            f"SELECT {_OFFER_COLUMNS} FROM trade_offers WHERE id = ?",
            (cur.lastrowid,),
        ).fetchone()
    offer = Offer.from_row(row)
    print(f"[offers] created offer={offer.id} kind={offer.kind.value} creator={offer.creator_id}")
    return offer


def get_offer(
    offer_id: int,
    *,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> Offer | None:
    with connection_factory() as conn:
        row = conn.execute(
            f"SELECT {_OFFER_COLUMNS} FROM trade_offers WHERE id = ?",
            (int(offer_id),),
        ).fetchone()
    return None if row is None else Offer.from_row(row)


def get_offer_by_message(
    message_id: int,
    *,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> Offer | None:
    if int(message_id) <= 0:
        return None
    with connection_factory() as conn:
        row = conn.execute(
            f"SELECT {_OFFER_COLUMNS} FROM trade_offers WHERE message_id = ?",
            (int(message_id),),
        ).fetchone()
    return None if row is None else Offer.from_row(row)


def attach_offer_message(
    offer_id: int,
    channel_id: int,
    message_id: int,
    *,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> None:
    with connection_factory() as conn:
        conn.execute(
            "UPDATE trade_offers SET channel_id = ?, message_id = ? WHERE id = ?",
            (int(channel_id), int(message_id), int(offer_id)),
        )


def list_offers_by_creator(
    creator_id: int,
    guild_id: int | None = None,
    active_only: bool = True,
    *,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> list[Offer]:
    clauses = ["creator_id = ?"]
    params: list = [int(creator_id)]
    if guild_id is not None:
        clauses.append("guild_id = ?")
        params.append(int(guild_id))
    if active_only:
        clauses.append("status = 'active'")
    with connection_factory() as conn:
        rows = conn.execute(
            f"""
            SELECT {_OFFER_COLUMNS}
            FROM trade_offers
            WHERE {' AND '.join(clauses)}
            ORDER BY created_at DESC, id DESC
            """,
            params,
        ).fetchall()
    return [Offer.from_row(row) for row in rows]


def _active_filter(
    kind: str | OfferKind | None,
    guild_id: int | None,
    now: datetime | None,
) -> tuple[str, list]:
    clauses = ["status = 'active'", "(expires_at IS NULL OR expires_at > ?)"]
    params: list = [_iso(now or _now())]
    if kind is not None:
        clauses.append("kind = ?")
        params.append(_parse_kind(kind).value)
    if guild_id is not None:
        clauses.append("guild_id = ?")
        params.append(int(guild_id))
    return " AND ".join(clauses), params


def list_active_offers(
    kind: str | OfferKind | None = None,
    guild_id: int | None = None,
    limit: int | None = 20,
    *,
    now: datetime | None = None,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> list[Offer]:
    where, params = _active_filter(kind, guild_id, now)
    sql = f"""
        SELECT {_OFFER_COLUMNS}
        FROM trade_offers
        WHERE {where}
        ORDER BY created_at DESC, id DESC
    """
    if limit is not None:
        sql += " LIMIT ?"
        params.append(max(1, int(limit)))
    with connection_factory() as conn:
        rows = conn.execute(sql, params).fetchall()
    return [Offer.from_row(row) for row in rows]


def count_active_offers(
    kind: str | OfferKind | None = None,
    guild_id: int | None = None,
    *,
    now: datetime | None = None,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> int:
    where, params = _active_filter(kind, guild_id, now)
    with connection_factory() as conn:
        row = conn.execute(f"SELECT COUNT(*) AS n FROM trade_offers WHERE {where}", params).fetchone()
    return int(row["n"])


def withdraw_offer(
    offer_id: int,
    actor_id: int,
    *,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> Offer:
    offer = get_offer(offer_id, connection_factory=connection_factory)
    if offer is None or not offer.is_active:
        raise NotFoundRejected(f"Offer #{offer_id} not found or no longer active.")
    if offer.creator_id != int(actor_id):
        raise PermissionRejected("Only the creator can withdraw this offer.")
    with connection_factory() as conn:
        cur = conn.execute(
            "UPDATE trade_offers SET status = 'cancelled' WHERE id = ? AND status = 'active'",
            (int(offer_id),),
        )
        if cur.rowcount == 0:
            raise NotFoundRejected(f"Offer #{offer_id} not found or no longer active.")
    print(f"[offers] withdrawn offer={offer_id} by={actor_id}")
    return get_offer(offer_id, connection_factory=connection_factory)


def expire_stale_offers(
    *,
    now: datetime | None = None,
    connection_factory: Callable[[], sqlite3.Connection] = get_connection,
) -> list[Offer]:
    now_iso = _iso(now or _now())
    with connection_factory() as conn:
        rows = conn.execute(
            """
            SELECT id
            FROM trade_offers
            WHERE status = 'active' AND expires_at IS NOT NULL AND expires_at <= ?
            """,
            (now_iso,),
        ).fetchall()
        ids = [int(r["id"]) for r in rows]
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        conn.execute(
            f"""
            UPDATE trade_offers
            SET status = 'expired'
            WHERE status = 'active' AND id IN ({placeholders})
            """,
            ids,
        )
        expired_rows = conn.execute(
            f"""
            SELECT {_OFFER_COLUMNS}
            FROM trade_offers
            WHERE status = 'expired' AND id IN ({placeholders})
            """,
            ids,
        ).fetchall()
    return [Offer.from_row(row) for row in expired_rows]

"""Trade negotiation lifecycle.

A counterparty expresses interest in an active offer, which opens a
pending session and a private channel for the two parties. Both sides
confirm (in either order) to complete the trade, or either side cancels.
Terminal sessions have their channel destroyed and their row deleted by
the teardown scheduler after a grace period.

All state changes are guarded SQL statements so that concurrent signals
for the same session or the same (offer, counterparty) pair are resolved
by SQLite rather than by read-then-write checks here. Completing a session
completes its offer and cancels the offer's other open sessions in the
same transaction, so an offer is completed by exactly one session.
"""
from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Protocol

from beachbot.core.permissions import can_trade
from beachbot.core.trade_models import (
    OPEN_SESSION_STATUSES,
    TERMINAL_SESSION_STATUSES,
    Offer,
    SessionStatus,
    TradeSession,
    resolve_roles,
)
from beachbot.db.database import get_connection
from beachbot.services.errors import NotFoundRejected, PermissionRejected, ValidationRejected
from beachbot.services.offers import get_offer
from beachbot.services.teardown import TeardownScheduler


def _sql_tuple(values: Iterable[str]) -> str:
    return "(" + ", ".join(f"'{v}'" for v in values) + ")"


_SESSION_COLUMNS = (
    "id, offer_id, guild_id, counterparty_id, seller_id, buyer_id, status, channel_id, "
    "agreed_price, quantity, seller_confirmed, buyer_confirmed, created_at, updated_at, teardown_at"
)
_OPEN_SQL = _sql_tuple(OPEN_SESSION_STATUSES)
_TERMINAL_SQL = _sql_tuple(TERMINAL_SESSION_STATUSES)
_OFFER_ACTIVE_SQL = (
    "EXISTS (SELECT 1 FROM trade_offers o "
    "WHERE o.id = trade_sessions.offer_id AND o.status = 'active')"
)
TEARDOWN_RETRY_SECONDS = 60
TEARDOWN_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class NotifyTarget:
    kind: str
    id: int

    @classmethod
    def channel(cls, channel_id: int) -> NotifyTarget:
        return cls("channel", int(channel_id))

    @classmethod
    def user(cls, user_id: int) -> NotifyTarget:
        return cls("user", int(user_id))


@dataclass(frozen=True)
class TradeNotice:
    event: str
    offer: Offer | None = None
    session: TradeSession | None = None
    actor_id: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class ScopedSpaces(Protocol):
    async def create_scoped_space(self, offer: Offer, session: TradeSession) -> int: ...

    async def destroy_scoped_space(self, channel_id: int) -> None: ...


class NotificationSink(Protocol):
    async def notify(self, target: NotifyTarget, notice: TradeNotice) -> None: ...


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TradeEngine:
    def __init__(
        self,
        spaces: ScopedSpaces,
        notifier: NotificationSink,
        scheduler: TeardownScheduler | None = None,
        *,
        completed_delay: float = 30.0,
        cancelled_delay: float = 10.0,
        connection_factory: Callable[[], sqlite3.Connection] = get_connection,
    ) -> None:
        self.spaces = spaces
        self.notifier = notifier
        self.scheduler = scheduler or TeardownScheduler()
        self.completed_delay = float(completed_delay)
        self.cancelled_delay = float(cancelled_delay)
        self._connection_factory = connection_factory
        self._teardown_attempts: dict[int, int] = {}

    # -- persistence ---------------------------------------------------

    def _load_session(self, session_id: int) -> TradeSession | None:
        with self._connection_factory() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM trade_sessions WHERE id = ?",
                (int(session_id),),
            ).fetchone()
        return None if row is None else TradeSession.from_row(row)

    def _load_session_for_channel(self, channel_id: int) -> TradeSession | None:
        with self._connection_factory() as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM trade_sessions
                WHERE channel_id = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (int(channel_id),),
            ).fetchone()
        return None if row is None else TradeSession.from_row(row)

    def _load_sessions_for_offer(self, offer_id: int) -> list[TradeSession]:
        with self._connection_factory() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM trade_sessions
                WHERE offer_id = ?
                ORDER BY id ASC
                """,
                (int(offer_id),),
            ).fetchall()
        return [TradeSession.from_row(row) for row in rows]

    def _insert_session(self, offer: Offer, counterparty_id: int) -> tuple[str, int | None]:
        seller_id, buyer_id = resolve_roles(offer, counterparty_id)
        now_iso = _iso(_now())
        with self._connection_factory() as conn:
            try:
                # Insert-if-absent: the partial unique index on open sessions
                # rejects a second open (offer, counterparty) pair, and the
                # SELECT only yields a row while the offer is still active.
                cur = conn.execute(
                    """
                    INSERT INTO trade_sessions (
                        offer_id, guild_id, counterparty_id, seller_id, buyer_id, status,
                        agreed_price, quantity, created_at, updated_at
                    )
                    SELECT id, guild_id, ?, ?, ?, 'pending', unit_price, quantity, ?, ?
                    FROM trade_offers
                    WHERE id = ? AND status = 'active'
                    """,
                    (int(counterparty_id), seller_id, buyer_id, now_iso, now_iso, offer.id),
                )
            except sqlite3.IntegrityError:
                return "duplicate", None
            if cur.rowcount == 0:
                return "inactive", None
            return "created", int(cur.lastrowid)

    def _set_channel(self, session_id: int, channel_id: int) -> None:
        with self._connection_factory() as conn:
            conn.execute(
                "UPDATE trade_sessions SET channel_id = ?, updated_at = ? WHERE id = ?",
                (int(channel_id), _iso(_now()), int(session_id)),
            )

    def _delete_session(self, session_id: int) -> bool:
        with self._connection_factory() as conn:
            cur = conn.execute("DELETE FROM trade_sessions WHERE id = ?", (int(session_id),))
            return cur.rowcount > 0

    def _apply_confirmation(
        self,
        session_id: int,
        side: str,
        delay: float,
        superseded_delay: float,
    ) -> tuple[bool, bool, bool, list[int]]:
        """Set one confirmation flag and complete the session if both are set.

        Completing the session completes its offer and cancels every other
        open session on that offer, all in one transaction. Both updates
        only match while the offer is still active, so at most one session
        per offer can ever complete.

        Returns (flag_newly_set, completed_by_this_call, offer_active,
        superseded_session_ids).
        """
        column = "seller_confirmed" if side == "seller" else "buyer_confirmed"
        now = _now()
        with self._connection_factory() as conn:
            cur = conn.execute(
                f"""
                UPDATE trade_sessions
                SET {column} = 1, updated_at = ?
                WHERE id = ? AND status IN {_OPEN_SQL} AND {column} = 0 AND {_OFFER_ACTIVE_SQL}
                """,
                (_iso(now), int(session_id)),
            )
            newly_set = cur.rowcount > 0
            cur = conn.execute(
                f"""
                UPDATE trade_sessions
                SET status = 'completed', updated_at = ?, teardown_at = ?
                WHERE id = ?
                  AND status IN {_OPEN_SQL}
                  AND seller_confirmed = 1
                  AND buyer_confirmed = 1
                  AND {_OFFER_ACTIVE_SQL}
                """,
                (_iso(now), _iso(now + timedelta(seconds=delay)), int(session_id)),
            )
            completed = cur.rowcount > 0
            superseded: list[int] = []
            if completed:
                conn.execute(
                    """
                    UPDATE trade_offers
                    SET status = 'completed'
                    WHERE status = 'active'
                      AND id = (SELECT offer_id FROM trade_sessions WHERE id = ?)
                    """,
                    (int(session_id),),
                )
                rows = conn.execute(
                    f"""
                    SELECT id
                    FROM trade_sessions
                    WHERE offer_id = (SELECT offer_id FROM trade_sessions WHERE id = ?)
                      AND id != ?
                      AND status IN {_OPEN_SQL}
                    """,
                    (int(session_id), int(session_id)),
                ).fetchall()
                superseded = [int(r["id"]) for r in rows]
                if superseded:
                    placeholders = ",".join("?" for _ in superseded)
                    conn.execute(
                        f"""
                        UPDATE trade_sessions
                        SET status = 'cancelled', updated_at = ?, teardown_at = ?
                        WHERE status IN {_OPEN_SQL} AND id IN ({placeholders})
                        """,
                        (
                            _iso(now),
                            _iso(now + timedelta(seconds=superseded_delay)),
                            *superseded,
                        ),
                    )
            row = conn.execute(
                """
                SELECT o.status AS status
                FROM trade_offers o
                JOIN trade_sessions s ON s.offer_id = o.id
                WHERE s.id = ?
                """,
                (int(session_id),),
            ).fetchone()
            offer_active = row is not None and row["status"] == "active"
        return newly_set, completed, offer_active, superseded

    def _apply_cancellation(self, session_id: int, delay: float) -> bool:
        now = _now()
        with self._connection_factory() as conn:
            cur = conn.execute(
                f"""
                UPDATE trade_sessions
                SET status = 'cancelled', updated_at = ?, teardown_at = ?
                WHERE id = ? AND status IN {_OPEN_SQL}
                """,
                (_iso(now), _iso(now + timedelta(seconds=delay)), int(session_id)),
            )
            return cur.rowcount > 0

    def _load_resumable(self) -> tuple[list[TradeSession], list[TradeSession]]:
        with self._connection_factory() as conn:
            terminal = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM trade_sessions WHERE status IN {_TERMINAL_SQL}"
            ).fetchall()
            orphaned = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM trade_sessions
                WHERE status IN {_OPEN_SQL} AND channel_id IS NULL
                """
            ).fetchall()
        return (
            [TradeSession.from_row(r) for r in terminal],
            [TradeSession.from_row(r) for r in orphaned],
        )

    # -- collaborators -------------------------------------------------

    async def _notify(self, target: NotifyTarget, notice: TradeNotice) -> None:
        try:
            await self.notifier.notify(target, notice)
        except Exception as exc:
            print(f"[notify] failed event={notice.event} target={target.kind}:{target.id}: {exc}")

    def _schedule_teardown(self, session_id: int, delay: float) -> None:
        self.scheduler.schedule(session_id, delay, self.teardown)

    # -- commands ------------------------------------------------------

    async def get_session(self, session_id: int) -> TradeSession | None:
        return await asyncio.to_thread(self._load_session, session_id)

    async def session_for_channel(self, channel_id: int) -> TradeSession | None:
        return await asyncio.to_thread(self._load_session_for_channel, channel_id)

    async def list_sessions_for_offer(self, offer_id: int) -> list[TradeSession]:
        return await asyncio.to_thread(self._load_sessions_for_offer, offer_id)

    async def express_interest(
        self,
        offer_id: int,
        user_id: int,
        *,
        member_roles: Iterable[str] | None,
        allowed_roles: Iterable[str],
    ) -> TradeSession | None:
        """Open a pending session for ``user_id`` on an active offer.

        Returns the new session, or ``None`` when the user already has an
        open session for this offer (idempotent no-op).
        """
        offer = await asyncio.to_thread(
            get_offer,
            offer_id,
            connection_factory=self._connection_factory,
        )
        if offer is None or not offer.is_active or _is_past(offer.expires_at):
            raise NotFoundRejected(f"Offer #{offer_id} not found or no longer active.")
        if offer.creator_id == int(user_id):
            raise ValidationRejected("You cannot trade on your own offer.")
        if not can_trade(member_roles, allowed_roles):
            await self._notify(
                NotifyTarget.user(user_id),
                TradeNotice(
                    "permission_denied",
                    offer=offer,
                    actor_id=int(user_id),
                    extra={"roles": sorted(allowed_roles)},
                ),
            )
            raise PermissionRejected("You need a trader role to trade.")

        outcome, session_id = await asyncio.to_thread(self._insert_session, offer, user_id)
        if outcome == "duplicate":
            print(f"[trade] duplicate interest offer={offer.id} user={user_id}; ignored")
            return None
        if outcome == "inactive":
            raise NotFoundRejected(f"Offer #{offer_id} not found or no longer active.")

        session = await self.get_session(session_id)
        try:
            channel_id = await self.spaces.create_scoped_space(offer, session)
        except Exception:
            await asyncio.to_thread(self._delete_session, session_id)
            print(f"[trade] failed to open trade channel offer={offer.id} session={session_id}")
            raise
        await asyncio.to_thread(self._set_channel, session_id, channel_id)
        session = await self.get_session(session_id)
        print(
            f"[trade] session opened id={session.id} offer={offer.id} "
            f"seller={session.seller_id} buyer={session.buyer_id} channel={channel_id}"
        )
        await self._notify(
            NotifyTarget.channel(channel_id),
            TradeNotice("session_opened", offer=offer, session=session, actor_id=int(user_id)),
        )
        return session

    async def _participant_session(self, session_id: int, user_id: int) -> TradeSession:
        session = await self.get_session(session_id)
        if session is None:
            raise NotFoundRejected(f"Trade #{session_id} not found.")
        if not session.is_participant(user_id):
            raise PermissionRejected("Only the two trade participants can do that.")
        return session

    async def confirm_trade(self, session_id: int, user_id: int) -> TradeSession:
        session = await self._participant_session(session_id, user_id)
        if session.status is SessionStatus.COMPLETED:
            return session
        if session.status is SessionStatus.CANCELLED:
            raise NotFoundRejected(f"Trade #{session_id} was already cancelled.")

        side = "seller" if int(user_id) == session.seller_id else "buyer"
        delay = self.completed_delay
        superseded_delay = self.cancelled_delay
        newly_set, completed, offer_active, superseded = await asyncio.to_thread(
            self._apply_confirmation,
            session.id,
            side,
            delay,
            superseded_delay,
        )
        session = await self.get_session(session.id)
        if session is None:
            raise NotFoundRejected(f"Trade #{session_id} not found.")
        if completed:
            print(f"[trade] session completed id={session.id} offer={session.offer_id}")
            if session.channel_id is not None:
                await self._notify(
                    NotifyTarget.channel(session.channel_id),
                    TradeNotice(
                        "completed",
                        session=session,
                        actor_id=int(user_id),
                        extra={"delay": delay},
                    ),
                )
            self._schedule_teardown(session.id, delay)
            for other_id in superseded:
                await self._close_superseded(other_id, session, superseded_delay)
        elif newly_set and session.is_open and session.channel_id is not None:
            await self._notify(
                NotifyTarget.channel(session.channel_id),
                TradeNotice("confirmation_recorded", session=session, actor_id=int(user_id)),
            )
        elif session.status is SessionStatus.CANCELLED:
            raise NotFoundRejected(f"Trade #{session_id} was already cancelled.")
        elif not offer_active:
            raise NotFoundRejected(f"Offer #{session.offer_id} is no longer active.")
        return session

    async def _close_superseded(self, session_id: int, winner: TradeSession, delay: float) -> None:
        other = await self.get_session(session_id)
        if other is None:
            return
        print(f"[trade] session superseded id={other.id} offer={other.offer_id} by={winner.id}")
        if other.channel_id is not None:
            await self._notify(
                NotifyTarget.channel(other.channel_id),
                TradeNotice("superseded", session=other, extra={"delay": delay, "winner_id": winner.id}),
            )
        self._schedule_teardown(other.id, delay)

    async def cancel_trade(self, session_id: int, user_id: int) -> TradeSession:
        session = await self._participant_session(session_id, user_id)
        if session.status is SessionStatus.CANCELLED:
            return session
        if session.status is SessionStatus.COMPLETED:
            raise NotFoundRejected(f"Trade #{session_id} is already completed.")

        delay = self.cancelled_delay
        cancelled = await asyncio.to_thread(self._apply_cancellation, session.id, delay)
        session = await self.get_session(session.id)
        if session is None:
            raise NotFoundRejected(f"Trade #{session_id} not found.")
        if not cancelled:
            if session.status is SessionStatus.COMPLETED:
                raise NotFoundRejected(f"Trade #{session_id} is already completed.")
            return session
        print(f"[trade] session cancelled id={session.id} by={user_id}")
        if session.channel_id is not None:
            await self._notify(
                NotifyTarget.channel(session.channel_id),
                TradeNotice(
                    "cancelled",
                    session=session,
                    actor_id=int(user_id),
                    extra={"delay": delay},
                ),
            )
        self._schedule_teardown(session.id, delay)
        return session

    async def teardown(self, session_id: int) -> None:
        session = await self.get_session(session_id)
        if session is None:
            self._teardown_attempts.pop(int(session_id), None)
            return
        if session.channel_id is not None:
            try:
                await self.spaces.destroy_scoped_space(session.channel_id)
            except Exception as exc:
                attempts = self._teardown_attempts.get(session.id, 0) + 1
                self._teardown_attempts[session.id] = attempts
                print(
                    f"[teardown] failed to delete channel={session.channel_id} "
                    f"session={session.id} attempt={attempts}: {exc}"
                )
                if attempts < TEARDOWN_MAX_ATTEMPTS:
                    self._schedule_teardown(session.id, TEARDOWN_RETRY_SECONDS)
                    return
        self._teardown_attempts.pop(session.id, None)
        await asyncio.to_thread(self._delete_session, session.id)
        print(f"[teardown] session removed id={session.id} channel={session.channel_id}")

    async def resume_teardowns(self) -> int:
        terminal, orphaned = await asyncio.to_thread(self._load_resumable)
        for session in orphaned:
            await asyncio.to_thread(self._delete_session, session.id)
            print(f"[teardown] dropped session without channel id={session.id}")
        now = _now()
        for session in terminal:
            delay = 0.0
            if session.teardown_at:
                due = datetime.fromisoformat(session.teardown_at)
                delay = max(0.0, (due - now).total_seconds())
            self._schedule_teardown(session.id, delay)
        return len(terminal)

    async def close(self) -> None:
        await self.scheduler.close()


def _is_past(raw: str | None) -> bool:
    if not raw:
        return False
    return datetime.fromisoformat(raw) <= _now()


__all__ = [
    "NotifyTarget",
    "TradeEngine",
    "TradeNotice",
]

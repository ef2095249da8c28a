from __future__ import annotations

import asyncio
import tempfile
import unittest
from pathlib import Path

from beachbot.core.trade_models import OfferStatus, SessionStatus
from beachbot.db.database import get_connection, init_db
from beachbot.services.errors import NotFoundRejected, PermissionRejected, ValidationRejected
from beachbot.services.offers import create_offer, get_offer, withdraw_offer
from beachbot.services.teardown import TeardownScheduler
from beachbot.services.trade_engine import TradeEngine

ROLES = frozenset({"TrustedDealer"})
SELLER = 100
BUYER = 200
STRANGER = 300


class FakeSpaces:
    def __init__(self) -> None:
        self.created: list[tuple[int, int, int, int]] = []
        self.destroyed: list[int] = []
        self.fail_create = False
        self.destroy_failures = 0
        self._next_channel = 5000

    async def create_scoped_space(self, offer, session) -> int:
        await asyncio.sleep(0)
        if self.fail_create:
            raise RuntimeError("missing permissions")
        self._next_channel += 1
        self.created.append((offer.id, session.seller_id, session.buyer_id, self._next_channel))
        return self._next_channel

    async def destroy_scoped_space(self, channel_id: int) -> None:
        if self.destroy_failures > 0:
            self.destroy_failures -= 1
            raise RuntimeError("gateway hiccup")
        if channel_id not in self.destroyed:
            self.destroyed.append(channel_id)


class FakeNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.sent = []
        self.fail = fail

    async def notify(self, target, notice) -> None:
        if self.fail:
            raise RuntimeError("DMs disabled")
        self.sent.append((target, notice))

    def events(self) -> list[str]:
        return [notice.event for _target, notice in self.sent]


class RecordingScheduler:
    def __init__(self) -> None:
        self.calls = []

    def schedule(self, session_id, delay, callback) -> None:
        self.calls.append((session_id, delay, callback))

    async def close(self) -> None:
        return None


class TradeEngineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        path = Path(tmp.name) / "trades.db"
        self.factory = lambda: get_connection(path)
        init_db(self.factory)
        self.spaces = FakeSpaces()
        self.notifier = FakeNotifier()
        self.scheduler = RecordingScheduler()
        self.engine = TradeEngine(
            self.spaces,
            self.notifier,
            self.scheduler,
            completed_delay=30,
            cancelled_delay=10,
            connection_factory=self.factory,
        )

    def _offer(self, kind: str = "sell", creator_id: int = SELLER):
        return create_offer(
            1,
            2,
            creator_id,
            "creator",
            kind,
            "Fish",
            100,
            2,
            member_roles=ROLES,
            allowed_roles=ROLES,
            connection_factory=self.factory,
        )

    async def _interest(self, offer_id: int, user_id: int = BUYER, roles=ROLES):
        return await self.engine.express_interest(
            offer_id,
            user_id,
            member_roles=roles,
            allowed_roles=ROLES,
        )

    def _session_count(self) -> int:
        with self.factory() as conn:
            return int(conn.execute("SELECT COUNT(*) AS n FROM trade_sessions").fetchone()["n"])

    async def test_sell_offer_full_lifecycle(self) -> None:
        offer = self._offer()
        session = await self._interest(offer.id)
        self.assertEqual(session.status, SessionStatus.PENDING)
        self.assertEqual(session.seller_id, SELLER)
        self.assertEqual(session.buyer_id, BUYER)
        self.assertEqual(session.agreed_price, 100.0)
        self.assertEqual(session.quantity, 2)
        self.assertEqual(session.channel_id, self.spaces.created[0][3])
        self.assertEqual(self.notifier.events(), ["session_opened"])

        after_seller = await self.engine.confirm_trade(session.id, SELLER)
        self.assertEqual(after_seller.status, SessionStatus.PENDING)
        self.assertTrue(after_seller.seller_confirmed)
        self.assertEqual(self.scheduler.calls, [])

        done = await self.engine.confirm_trade(session.id, BUYER)
        self.assertEqual(done.status, SessionStatus.COMPLETED)
        self.assertEqual(get_offer(offer.id, connection_factory=self.factory).status, OfferStatus.COMPLETED)
        self.assertEqual([(c[0], c[1]) for c in self.scheduler.calls], [(session.id, 30.0)])
        self.assertEqual(
            self.notifier.events(),
            ["session_opened", "confirmation_recorded", "completed"],
        )

    async def test_buy_offer_swaps_roles(self) -> None:
        offer = self._offer(kind="buy", creator_id=BUYER)
        session = await self._interest(offer.id, user_id=SELLER)
        self.assertEqual(session.seller_id, SELLER)
        self.assertEqual(session.buyer_id, BUYER)
        self.assertEqual(session.counterparty_id, SELLER)

    async def test_confirmation_is_order_independent(self) -> None:
        outcomes = []
        for order in ((SELLER, BUYER), (BUYER, SELLER)):
            offer = self._offer()
            session = await self._interest(offer.id)
            for user_id in order:
                session = await self.engine.confirm_trade(session.id, user_id)
            outcomes.append(
                (session.status, get_offer(offer.id, connection_factory=self.factory).status)
            )
        self.assertEqual(outcomes[0], outcomes[1])
        self.assertEqual(outcomes[0], (SessionStatus.COMPLETED, OfferStatus.COMPLETED))

    async def test_concurrent_confirmations_complete_once(self) -> None:
        offer = self._offer()
        session = await self._interest(offer.id)
        await asyncio.gather(
            self.engine.confirm_trade(session.id, SELLER),
            self.engine.confirm_trade(session.id, BUYER),
        )
        final = await self.engine.get_session(session.id)
        self.assertEqual(final.status, SessionStatus.COMPLETED)
        self.assertEqual(self.notifier.events().count("completed"), 1)
        self.assertEqual(len(self.scheduler.calls), 1)

    async def test_reconfirm_after_completion_is_noop(self) -> None:
        offer = self._offer()
        session = await self._interest(offer.id)
        await self.engine.confirm_trade(session.id, SELLER)
        await self.engine.confirm_trade(session.id, BUYER)
        again = await self.engine.confirm_trade(session.id, BUYER)
        self.assertEqual(again.status, SessionStatus.COMPLETED)
        self.assertEqual(len(self.scheduler.calls), 1)
        self.assertEqual(self.notifier.events().count("completed"), 1)

    async def test_offer_completes_through_one_session_only(self) -> None:
        offer = self._offer()
        first = await self._interest(offer.id, user_id=BUYER)
        second = await self._interest(offer.id, user_id=STRANGER)
        await self.engine.confirm_trade(second.id, STRANGER)

        await self.engine.confirm_trade(first.id, SELLER)
        done = await self.engine.confirm_trade(first.id, BUYER)
        self.assertEqual(done.status, SessionStatus.COMPLETED)
        self.assertEqual(get_offer(offer.id, connection_factory=self.factory).status, OfferStatus.COMPLETED)

        loser = await self.engine.get_session(second.id)
        self.assertEqual(loser.status, SessionStatus.CANCELLED)
        self.assertIsNotNone(loser.teardown_at)
        self.assertEqual(
            sorted((c[0], c[1]) for c in self.scheduler.calls),
            sorted([(first.id, 30.0), (second.id, 10.0)]),
        )
        superseded = [n for t, n in self.notifier.sent if n.event == "superseded"]
        self.assertEqual([n.session.id for n in superseded], [second.id])

        with self.assertRaises(NotFoundRejected):
            await self.engine.confirm_trade(second.id, SELLER)
        statuses = [s.status for s in await self.engine.list_sessions_for_offer(offer.id)]
        self.assertEqual(statuses.count(SessionStatus.COMPLETED), 1)

    async def test_concurrent_completions_on_one_offer(self) -> None:
        offer = self._offer()
        first = await self._interest(offer.id, user_id=BUYER)
        second = await self._interest(offer.id, user_id=STRANGER)
        await self.engine.confirm_trade(first.id, SELLER)
        await self.engine.confirm_trade(second.id, SELLER)
        await asyncio.gather(
            self.engine.confirm_trade(first.id, BUYER),
            self.engine.confirm_trade(second.id, STRANGER),
            return_exceptions=True,
        )
        statuses = sorted(s.status.value for s in await self.engine.list_sessions_for_offer(offer.id))
        self.assertEqual(statuses, ["cancelled", "completed"])
        self.assertEqual(self.notifier.events().count("completed"), 1)
        self.assertEqual(get_offer(offer.id, connection_factory=self.factory).status, OfferStatus.COMPLETED)

    async def test_confirm_after_withdraw_is_rejected(self) -> None:
        offer = self._offer()
        session = await self._interest(offer.id)
        await self.engine.confirm_trade(session.id, BUYER)
        withdraw_offer(offer.id, SELLER, connection_factory=self.factory)
        with self.assertRaises(NotFoundRejected):
            await self.engine.confirm_trade(session.id, SELLER)
        unchanged = await self.engine.get_session(session.id)
        self.assertEqual(unchanged.status, SessionStatus.PENDING)
        self.assertFalse(unchanged.seller_confirmed)
        self.assertEqual(get_offer(offer.id, connection_factory=self.factory).status, OfferStatus.CANCELLED)
        self.assertEqual(self.scheduler.calls, [])
        cancelled = await self.engine.cancel_trade(session.id, SELLER)
        self.assertEqual(cancelled.status, SessionStatus.CANCELLED)

    async def test_duplicate_interest_is_noop(self) -> None:
        offer = self._offer()
        first = await self._interest(offer.id)
        second = await self._interest(offer.id)
        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(self._session_count(), 1)
        self.assertEqual(len(self.spaces.created), 1)

    async def test_concurrent_interest_creates_one_session(self) -> None:
        offer = self._offer()
        results = await asyncio.gather(
            self._interest(offer.id),
            self._interest(offer.id),
        )
        self.assertEqual(sum(1 for r in results if r is not None), 1)
        self.assertEqual(self._session_count(), 1)
        self.assertEqual(len(self.spaces.created), 1)

    async def test_interest_allowed_again_after_cancel(self) -> None:
        offer = self._offer()
        first = await self._interest(offer.id)
        await self.engine.cancel_trade(first.id, BUYER)
        second = await self._interest(offer.id)
        self.assertIsNotNone(second)
        self.assertNotEqual(first.id, second.id)

    async def test_creator_cannot_trade_own_offer(self) -> None:
        offer = self._offer()
        with self.assertRaises(ValidationRejected):
            await self._interest(offer.id, user_id=SELLER)
        self.assertEqual(self._session_count(), 0)
        self.assertEqual(self.spaces.created, [])

    async def test_interest_requires_trader_role(self) -> None:
        offer = self._offer()
        with self.assertRaises(PermissionRejected):
            await self._interest(offer.id, roles={"Member"})
        self.assertEqual(self._session_count(), 0)
        target, notice = self.notifier.sent[0]
        self.assertEqual((target.kind, target.id), ("user", BUYER))
        self.assertEqual(notice.event, "permission_denied")

    async def test_permission_rejection_survives_notifier_failure(self) -> None:
        self.engine.notifier = FakeNotifier(fail=True)
        offer = self._offer()
        with self.assertRaises(PermissionRejected):
            await self._interest(offer.id, roles=None)

    async def test_interest_on_inactive_offer(self) -> None:
        offer = self._offer()
        withdraw_offer(offer.id, SELLER, connection_factory=self.factory)
        with self.assertRaises(NotFoundRejected):
            await self._interest(offer.id)
        with self.assertRaises(NotFoundRejected):
            await self._interest(9999)
        self.assertEqual(self._session_count(), 0)

    async def test_space_failure_rolls_back_session(self) -> None:
        offer = self._offer()
        self.spaces.fail_create = True
        with self.assertRaises(RuntimeError):
            await self._interest(offer.id)
        self.assertEqual(self._session_count(), 0)
        self.spaces.fail_create = False
        self.assertIsNotNone(await self._interest(offer.id))

    async def test_non_participant_changes_nothing(self) -> None:
        offer = self._offer()
        session = await self._interest(offer.id)
        with self.assertRaises(PermissionRejected):
            await self.engine.confirm_trade(session.id, STRANGER)
        with self.assertRaises(PermissionRejected):
            await self.engine.cancel_trade(session.id, STRANGER)
        unchanged = await self.engine.get_session(session.id)
        self.assertEqual(unchanged, session)

    async def test_cancel_keeps_offer_active(self) -> None:
        offer = self._offer()
        session = await self._interest(offer.id)
        cancelled = await self.engine.cancel_trade(session.id, SELLER)
        self.assertEqual(cancelled.status, SessionStatus.CANCELLED)
        self.assertIsNotNone(cancelled.teardown_at)
        self.assertEqual(get_offer(offer.id, connection_factory=self.factory).status, OfferStatus.ACTIVE)
        self.assertEqual([(c[0], c[1]) for c in self.scheduler.calls], [(session.id, 10.0)])

        again = await self.engine.cancel_trade(session.id, BUYER)
        self.assertEqual(again.status, SessionStatus.CANCELLED)
        self.assertEqual(len(self.scheduler.calls), 1)
        with self.assertRaises(NotFoundRejected):
            await self.engine.confirm_trade(session.id, BUYER)

    async def test_cancel_after_completion_is_rejected(self) -> None:
        offer = self._offer()
        session = await self._interest(offer.id)
        await self.engine.confirm_trade(session.id, SELLER)
        await self.engine.confirm_trade(session.id, BUYER)
        with self.assertRaises(NotFoundRejected):
            await self.engine.cancel_trade(session.id, SELLER)

    async def test_notification_failure_does_not_undo_transition(self) -> None:
        offer = self._offer()
        session = await self._interest(offer.id)
        self.engine.notifier = FakeNotifier(fail=True)
        await self.engine.confirm_trade(session.id, SELLER)
        done = await self.engine.confirm_trade(session.id, BUYER)
        self.assertEqual(done.status, SessionStatus.COMPLETED)

    async def test_teardown_is_idempotent(self) -> None:
        offer = self._offer()
        session = await self._interest(offer.id)
        await self.engine.cancel_trade(session.id, BUYER)

        await self.engine.teardown(session.id)
        await self.engine.teardown(session.id)
        await self.spaces.destroy_scoped_space(session.channel_id)

        self.assertEqual(self.spaces.destroyed, [session.channel_id])
        self.assertIsNone(await self.engine.get_session(session.id))
        self.assertIsNone(await self.engine.session_for_channel(session.channel_id))

    async def test_teardown_retries_failed_destroy(self) -> None:
        offer = self._offer()
        session = await self._interest(offer.id)
        await self.engine.cancel_trade(session.id, BUYER)
        self.scheduler.calls.clear()
        self.spaces.destroy_failures = 1

        await self.engine.teardown(session.id)
        self.assertIsNotNone(await self.engine.get_session(session.id))
        self.assertEqual(len(self.scheduler.calls), 1)

        await self.engine.teardown(session.id)
        self.assertIsNone(await self.engine.get_session(session.id))
        self.assertEqual(self.spaces.destroyed, [session.channel_id])

    async def test_lookup_helpers(self) -> None:
        offer = self._offer()
        session = await self._interest(offer.id)
        by_channel = await self.engine.session_for_channel(session.channel_id)
        self.assertEqual(by_channel.id, session.id)
        sessions = await self.engine.list_sessions_for_offer(offer.id)
        self.assertEqual([s.id for s in sessions], [session.id])
        with self.assertRaises(NotFoundRejected):
            await self.engine.confirm_trade(9999, BUYER)

    async def test_resume_teardowns_reschedules_terminal_sessions(self) -> None:
        offer = self._offer()
        open_session = await self._interest(offer.id)
        other_offer = self._offer()
        closed = await self._interest(other_offer.id)
        await self.engine.cancel_trade(closed.id, BUYER)
        with self.factory() as conn:
            conn.execute("UPDATE trade_sessions SET channel_id = NULL WHERE id = ?", (open_session.id,))

        restarted = TradeEngine(
            self.spaces,
            self.notifier,
            RecordingScheduler(),
            connection_factory=self.factory,
        )
        resumed = await restarted.resume_teardowns()
        self.assertEqual(resumed, 1)
        self.assertEqual([c[0] for c in restarted.scheduler.calls], [closed.id])
        self.assertLessEqual(restarted.scheduler.calls[0][1], 10.0)
        self.assertIsNone(await restarted.get_session(open_session.id))

    async def test_real_scheduler_tears_down(self) -> None:
        scheduler = TeardownScheduler()
        self.addAsyncCleanup(scheduler.close)
        self.engine.scheduler = scheduler
        self.engine.cancelled_delay = 0.01
        offer = self._offer()
        session = await self._interest(offer.id)
        await self.engine.cancel_trade(session.id, BUYER)
        for _ in range(100):
            if await self.engine.get_session(session.id) is None:
                break
            await asyncio.sleep(0.02)
        self.assertIsNone(await self.engine.get_session(session.id))
        self.assertEqual(self.spaces.destroyed, [session.channel_id])
        self.assertEqual(scheduler.pending(), set())


if __name__ == "__main__":
    unittest.main()

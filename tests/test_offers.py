import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from beachbot.core.trade_models import OfferKind, OfferStatus
from beachbot.db.database import get_connection, init_db
from beachbot.services.errors import NotFoundRejected, PermissionRejected, ValidationRejected
from beachbot.services.offers import (
    attach_offer_message,
    count_active_offers,
    create_offer,
    expire_stale_offers,
    get_offer,
    get_offer_by_message,
    list_active_offers,
    list_offers_by_creator,
    withdraw_offer,
)
from beachbot.services.prices import record_price

ROLES = frozenset({"TrustedDealer"})
START = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


class OfferTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        path = Path(tmp.name) / "offers.db"
        self.factory = lambda: get_connection(path)
        init_db(self.factory)

    def _create(self, creator_id=1, kind="sell", item="Fish", unit_price=100, quantity=2, **kwargs):
        kwargs.setdefault("member_roles", ROLES)
        kwargs.setdefault("allowed_roles", ROLES)
        kwargs.setdefault("now", START)
        return create_offer(
            10,
            20,
            creator_id,
            f"user{creator_id}",
            kind,
            item,
            unit_price,
            quantity,
            connection_factory=self.factory,
            **kwargs,
        )

    def _complete(self, offer_id: int) -> None:
        with self.factory() as conn:
            conn.execute("UPDATE trade_offers SET status = 'completed' WHERE id = ?", (offer_id,))

    def test_create_offer(self) -> None:
        offer = self._create(description="  fresh today ")
        self.assertEqual(offer.status, OfferStatus.ACTIVE)
        self.assertEqual(offer.kind, OfferKind.SELL)
        self.assertEqual(offer.display_name, "Fish")
        self.assertEqual(offer.total_price, 200.0)
        self.assertEqual(offer.description, "fresh today")
        self.assertEqual(
            datetime.fromisoformat(offer.expires_at),
            START + timedelta(days=7),
        )

    def test_permission_is_checked_before_validation(self) -> None:
        with self.assertRaises(PermissionRejected):
            self._create(quantity=0, member_roles={"Member"})
        with self.assertRaises(PermissionRejected):
            self._create(member_roles=None)
        self.assertEqual(count_active_offers(connection_factory=self.factory, now=START), 0)

    def test_validation_rejections(self) -> None:
        with self.assertRaises(ValidationRejected):
            self._create(quantity=0)
        with self.assertRaises(ValidationRejected):
            self._create(unit_price=0)
        with self.assertRaises(ValidationRejected):
            self._create(unit_price=-5)
        with self.assertRaises(ValidationRejected):
            self._create(kind="trade")
        with self.assertRaises(ValidationRejected):
            self._create(item="   ")

    def test_require_known_item(self) -> None:
        with self.assertRaises(ValidationRejected):
            self._create(item="Pearl", require_known_item=True)
        record_price("Pearl", 900, "alice", connection_factory=self.factory)
        offer = self._create(item="pearl", require_known_item=True)
        self.assertEqual(offer.display_name, "Pearl")
        self.assertEqual(offer.item_name, "pearl")

    def test_listing_is_newest_first_and_filtered(self) -> None:
        first = self._create(item="Fish", now=START)
        second = self._create(item="Shell", kind="buy", now=START + timedelta(minutes=1))
        third = self._create(item="Sand", creator_id=2, now=START + timedelta(minutes=2))
        now = START + timedelta(hours=1)

        rows = list_active_offers(now=now, connection_factory=self.factory)
        self.assertEqual([o.id for o in rows], [third.id, second.id, first.id])
        sells = list_active_offers("sell", now=now, connection_factory=self.factory)
        self.assertEqual([o.id for o in sells], [third.id, first.id])
        self.assertEqual(len(list_active_offers(limit=1, now=now, connection_factory=self.factory)), 1)
        self.assertEqual(count_active_offers(now=now, connection_factory=self.factory), 3)

        mine = list_offers_by_creator(1, 10, connection_factory=self.factory)
        self.assertEqual([o.id for o in mine], [second.id, first.id])

    def test_counts_follow_listing_filters(self) -> None:
        self._create(item="Fish", now=START)
        self._create(item="Shell", kind="buy", now=START)
        old = self._create(item="Sand", now=START - timedelta(days=8))
        withdrawn = self._create(item="Coral", now=START)
        withdraw_offer(withdrawn.id, 1, connection_factory=self.factory)
        now = START + timedelta(hours=1)

        self.assertEqual(count_active_offers(now=now, connection_factory=self.factory), 2)
        self.assertEqual(count_active_offers("sell", now=now, connection_factory=self.factory), 1)
        self.assertEqual(count_active_offers(guild_id=99, now=now, connection_factory=self.factory), 0)
        self.assertNotIn(old.id, [o.id for o in list_active_offers(now=now, connection_factory=self.factory)])

    def test_creator_listing_hides_closed_offers(self) -> None:
        kept = self._create(item="Fish", now=START)
        withdrawn = self._create(item="Shell", now=START + timedelta(minutes=1))
        sold = self._create(item="Sand", now=START + timedelta(minutes=2))
        withdraw_offer(withdrawn.id, 1, connection_factory=self.factory)
        self._complete(sold.id)

        mine = list_offers_by_creator(1, 10, connection_factory=self.factory)
        self.assertEqual([o.id for o in mine], [kept.id])
        everything = list_offers_by_creator(1, 10, active_only=False, connection_factory=self.factory)
        self.assertEqual([o.id for o in everything], [sold.id, withdrawn.id, kept.id])

    def test_message_lookup(self) -> None:
        offer = self._create()
        self.assertIsNone(get_offer_by_message(0, connection_factory=self.factory))
        attach_offer_message(offer.id, 20, 555, connection_factory=self.factory)
        found = get_offer_by_message(555, connection_factory=self.factory)
        self.assertEqual(found.id, offer.id)
        self.assertEqual(found.message_id, 555)

    def test_expiry_is_terminal(self) -> None:
        offer = self._create()
        later = START + timedelta(days=7, seconds=1)
        self.assertEqual(list_active_offers(now=later, connection_factory=self.factory), [])

        expired = expire_stale_offers(now=later, connection_factory=self.factory)
        self.assertEqual([o.id for o in expired], [offer.id])
        self.assertEqual(expired[0].status, OfferStatus.EXPIRED)
        self.assertEqual(expire_stale_offers(now=later, connection_factory=self.factory), [])
        self.assertEqual(get_offer(offer.id, connection_factory=self.factory).status, OfferStatus.EXPIRED)

    def test_unexpired_offers_are_left_alone(self) -> None:
        self._create()
        self.assertEqual(expire_stale_offers(now=START + timedelta(days=1), connection_factory=self.factory), [])

    def test_withdraw_is_creator_only(self) -> None:
        offer = self._create(creator_id=1)
        with self.assertRaises(PermissionRejected):
            withdraw_offer(offer.id, 2, connection_factory=self.factory)
        withdrawn = withdraw_offer(offer.id, 1, connection_factory=self.factory)
        self.assertEqual(withdrawn.status, OfferStatus.CANCELLED)
        with self.assertRaises(NotFoundRejected):
            withdraw_offer(offer.id, 1, connection_factory=self.factory)
        with self.assertRaises(NotFoundRejected):
            withdraw_offer(9999, 1, connection_factory=self.factory)

    def test_completed_offer_stays_completed(self) -> None:
        offer = self._create()
        self._complete(offer.id)
        with self.assertRaises(NotFoundRejected):
            withdraw_offer(offer.id, 1, connection_factory=self.factory)
        later = START + timedelta(days=30)
        self.assertEqual(expire_stale_offers(now=later, connection_factory=self.factory), [])
        self.assertEqual(get_offer(offer.id, connection_factory=self.factory).status, OfferStatus.COMPLETED)


if __name__ == "__main__":
    unittest.main()

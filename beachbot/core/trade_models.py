from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class OfferKind(str, Enum):
    SELL = "sell"
    BUY = "buy"


class OfferStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SessionStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_SESSION_STATUSES = (SessionStatus.PENDING.value, SessionStatus.ACCEPTED.value)
TERMINAL_SESSION_STATUSES = (SessionStatus.COMPLETED.value, SessionStatus.CANCELLED.value)


@dataclass(frozen=True)
class Offer:
    id: int
    guild_id: int
    channel_id: int
    message_id: int
    creator_id: int
    creator_name: str
    kind: OfferKind
    item_name: str
    display_name: str
    unit_price: float
    quantity: int
    description: str | None
    status: OfferStatus
    created_at: str
    expires_at: str | None

    @property
    def total_price(self) -> float:
        return self.unit_price * self.quantity

    @property
    def is_active(self) -> bool:
        return self.status is OfferStatus.ACTIVE

    @classmethod
    def from_row(cls, row) -> Offer:
        return cls(
            id=int(row["id"]),
            guild_id=int(row["guild_id"]),
            channel_id=int(row["channel_id"] or 0),
            message_id=int(row["message_id"] or 0),
            creator_id=int(row["creator_id"]),
            creator_name=str(row["creator_name"]),
            kind=OfferKind(str(row["kind"])),
            item_name=str(row["item_name"]),
            display_name=str(row["display_name"]),
            unit_price=float(row["unit_price"]),
            quantity=int(row["quantity"]),
            description=row["description"],
            status=OfferStatus(str(row["status"])),
            created_at=str(row["created_at"]),
            expires_at=row["expires_at"],
        )


@dataclass(frozen=True)
class TradeSession:
    id: int
    offer_id: int
    guild_id: int
    counterparty_id: int
    seller_id: int
    buyer_id: int
    status: SessionStatus
    channel_id: int | None
    agreed_price: float
    quantity: int
    seller_confirmed: bool
    buyer_confirmed: bool
    created_at: str
    updated_at: str
    teardown_at: str | None

    @property
    def is_open(self) -> bool:
        return self.status.value in OPEN_SESSION_STATUSES

    @property
    def total_price(self) -> float:
        return self.agreed_price * self.quantity

    def is_participant(self, user_id: int) -> bool:
        return int(user_id) in {self.seller_id, self.buyer_id}

    @classmethod
    def from_row(cls, row) -> TradeSession:
        channel_id = row["channel_id"]
        return cls(
            id=int(row["id"]),
            offer_id=int(row["offer_id"]),
            guild_id=int(row["guild_id"]),
            counterparty_id=int(row["counterparty_id"]),
            seller_id=int(row["seller_id"]),
            buyer_id=int(row["buyer_id"]),
            status=SessionStatus(str(row["status"])),
            channel_id=None if channel_id is None else int(channel_id),
            agreed_price=float(row["agreed_price"]),
            quantity=int(row["quantity"]),
            seller_confirmed=bool(row["seller_confirmed"]),
            buyer_confirmed=bool(row["buyer_confirmed"]),
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
            teardown_at=row["teardown_at"],
        )


def resolve_roles(offer: Offer, counterparty_id: int) -> tuple[int, int]:
    """Return (seller_id, buyer_id) for a session between the creator and a counterparty."""
    if offer.kind is OfferKind.SELL:
        return offer.creator_id, int(counterparty_id)
    return int(counterparty_id), offer.creator_id

from __future__ import annotations

from datetime import datetime, timezone

from discord import Embed

from beachbot.config.settings import (
    ERROR_COLOR,
    FOOTER_TEXT,
    OFFER_COLOR,
    OFFER_EMOJI,
    STATS_COLOR,
    SUCCESS_COLOR,
    WARNING_COLOR,
)
from beachbot.core.trade_models import Offer, OfferKind, TradeSession
from beachbot.services.money import format_currency, profit_vs_state
from beachbot.services.trade_engine import TradeNotice


def _epoch(raw: str | None) -> int | None:
    if not raw:
        return None
    dt = datetime.fromisoformat(str(raw))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def kind_label(kind: OfferKind) -> str:
    return "Selling" if kind is OfferKind.SELL else "Buying"


def profit_line(market_price: float, state_value: float | None) -> str | None:
    result = profit_vs_state(market_price, state_value)
    if result is None:
        return None
    profit, pct = result
    arrow = "📈" if profit >= 0 else "📉"
    sign = "+" if profit >= 0 else "-"
    return f"{arrow} {sign}{format_currency(abs(profit))} ({pct:+.1f}%)"


def build_offer_embed(offer: Offer, price_row: dict | None = None) -> Embed:
    embed = Embed(
        title=f"{OFFER_EMOJI} {kind_label(offer.kind)}: {offer.display_name}",
        description=offer.description or None,
        color=OFFER_COLOR,
    )
    embed.add_field(name="Quantity", value=str(offer.quantity), inline=True)
    embed.add_field(name="Price per unit", value=format_currency(offer.unit_price), inline=True)
    embed.add_field(name="Total", value=f"**{format_currency(offer.total_price)}**", inline=True)
    state_value = None if price_row is None else price_row.get("state_value")
    if state_value is not None:
        embed.add_field(name="State value", value=format_currency(state_value), inline=True)
        line = profit_line(offer.unit_price, state_value)
        if line:
            embed.add_field(name="vs. state value", value=line, inline=True)
    role = "Seller" if offer.kind is OfferKind.SELL else "Buyer"
    embed.add_field(name=role, value=f"<@{offer.creator_id}>", inline=True)
    expires = _epoch(offer.expires_at)
    if expires is not None:
        embed.add_field(name="Valid until", value=f"<t:{expires}:f>", inline=True)
    embed.set_footer(text=f"Offer #{offer.id} • React with {OFFER_EMOJI} to start a trade • {FOOTER_TEXT}")
    return embed


def _session_fields(embed: Embed, session: TradeSession, item: str | None = None) -> None:
    if item:
        embed.add_field(name="Item", value=item, inline=True)
    embed.add_field(name="Quantity", value=str(session.quantity), inline=True)
    embed.add_field(name="Price per unit", value=format_currency(session.agreed_price), inline=True)
    embed.add_field(name="Total", value=f"**{format_currency(session.total_price)}**", inline=True)
    embed.add_field(name="Seller", value=f"<@{session.seller_id}>", inline=True)
    embed.add_field(name="Buyer", value=f"<@{session.buyer_id}>", inline=True)


def build_notice_content(notice: TradeNotice) -> str | None:
    session = notice.session
    if session is None:
        return None
    if notice.event == "session_opened":
        return f"<@{session.seller_id}> <@{session.buyer_id}>"
    return None


def build_notice_embed(
    notice: TradeNotice,
    *,
    confirm_emoji: str = "✅",
    cancel_emoji: str = "❌",
) -> Embed:
    session = notice.session
    offer = notice.offer
    actor = f"<@{notice.actor_id}>" if notice.actor_id else "Someone"
    delay = int(notice.extra.get("delay", 0) or 0)

    if notice.event == "session_opened" and session is not None:
        embed = Embed(
            title=f"🤝 Trade #{session.id}",
            description=(
                "This private channel is only visible to the two of you.\n"
                f"{confirm_emoji} confirm the trade (both sides must confirm)\n"
                f"{cancel_emoji} cancel the trade"
            ),
            color=OFFER_COLOR,
        )
        _session_fields(embed, session, offer.display_name if offer else None)
    elif notice.event == "confirmation_recorded" and session is not None:
        waiting = session.buyer_id if session.seller_confirmed else session.seller_id
        embed = Embed(
            title="Confirmation recorded",
            description=f"{actor} confirmed. Waiting for <@{waiting}>.",
            color=WARNING_COLOR,
        )
    elif notice.event == "completed" and session is not None:
        embed = Embed(
            title="✅ Trade completed",
            description=f"Both sides confirmed. This channel is deleted in {delay} seconds.",
            color=SUCCESS_COLOR,
        )
        _session_fields(embed, session)
    elif notice.event == "cancelled" and session is not None:
        embed = Embed(
            title="❌ Trade cancelled",
            description=f"{actor} cancelled the trade. This channel is deleted in {delay} seconds.",
            color=ERROR_COLOR,
        )
    elif notice.event == "superseded" and session is not None:
        embed = Embed(
            title="❌ Offer already traded",
            description=(
                "This offer was completed in another trade. "
                f"This channel is deleted in {delay} seconds."
            ),
            color=ERROR_COLOR,
        )
    elif notice.event == "permission_denied":
        roles = ", ".join(f"`{r}`" for r in notice.extra.get("roles", []))
        item = offer.display_name if offer else "this offer"
        embed = Embed(
            title="No trading permission",
            description=f"You need one of these roles to trade {item}: {roles or 'a trader role'}.",
            color=ERROR_COLOR,
        )
    else:
        embed = Embed(title="Trade update", description=notice.event, color=STATS_COLOR)
    embed.set_footer(text=FOOTER_TEXT)
    return embed


def build_backup_embed(backup_path: str, removed: list[str]) -> Embed:
    embed = Embed(
        title="💾 Database backup",
        description="Daily backup created.",
        color=SUCCESS_COLOR,
        timestamp=datetime.now(timezone.utc),
    )
    embed.add_field(name="File", value=f"`{backup_path.rsplit('/', 1)[-1]}`", inline=False)
    if removed:
        embed.add_field(name="Removed", value=str(len(removed)), inline=True)
    embed.set_footer(text=FOOTER_TEXT)
    return embed

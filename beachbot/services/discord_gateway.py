from __future__ import annotations

import re
from typing import Callable

import discord

from beachbot.config.settings import CANCEL_EMOJI, CONFIRM_EMOJI
from beachbot.core.trade_models import Offer, TradeSession
from beachbot.services.announcements import build_notice_content, build_notice_embed
from beachbot.services.trade_engine import NotifyTarget, TradeNotice

_PARTICIPANT_PERMS = dict(
    view_channel=True,
    send_messages=True,
    add_reactions=True,
    read_message_history=True,
    attach_files=True,
)


def trade_channel_name(item_name: str, session_id: int) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", str(item_name).lower()).strip("-")[:40] or "item"
    return f"trade-{slug}-{int(session_id)}"


async def _resolve_member(guild: discord.Guild, user_id: int) -> discord.Member | None:
    member = guild.get_member(user_id)
    if member is not None:
        return member
    try:
        return await guild.fetch_member(user_id)
    except (discord.NotFound, discord.Forbidden, discord.HTTPException):
        return None


class DiscordSpaces:
    """Private text channels visible to the two trade participants and the bot."""

    def __init__(self, client: discord.Client, category_id: Callable[[], int] | None = None) -> None:
        self.client = client
        self._category_id = category_id or (lambda: 0)

    async def _guild(self, guild_id: int) -> discord.Guild:
        guild = self.client.get_guild(guild_id)
        if guild is None:
            guild = await self.client.fetch_guild(guild_id)
        return guild

    async def create_scoped_space(self, offer: Offer, session: TradeSession) -> int:
        guild = await self._guild(offer.guild_id)
        overwrites: dict = {guild.default_role: discord.PermissionOverwrite(view_channel=False)}
        for user_id in (session.seller_id, session.buyer_id):
            member = await _resolve_member(guild, user_id)
            if member is None:
                raise RuntimeError(f"member {user_id} not found in guild {guild.id}")
            overwrites[member] = discord.PermissionOverwrite(**_PARTICIPANT_PERMS)
        if guild.me is not None:
            overwrites[guild.me] = discord.PermissionOverwrite(manage_channels=True, **_PARTICIPANT_PERMS)

        category = None
        category_id = int(self._category_id() or 0)
        if category_id > 0:
            found = guild.get_channel(category_id)
            if isinstance(found, discord.CategoryChannel):
                category = found
            else:
                print(f"[trade] TRADE_CATEGORY_ID={category_id} is not a category in guild={guild.id}")

        channel = await guild.create_text_channel(
            trade_channel_name(offer.display_name, session.id),
            overwrites=overwrites,
            category=category,
            topic=f"Trade #{session.id} for offer #{offer.id}: {offer.display_name}",
            reason=f"Trade #{session.id}",
        )
        return channel.id

    async def destroy_scoped_space(self, channel_id: int) -> None:
        channel = self.client.get_channel(channel_id)
        try:
            if channel is None:
                channel = await self.client.fetch_channel(channel_id)
            await channel.delete(reason="Trade closed")
        except discord.NotFound:
            # Already gone.
            return


class DiscordNotifier:
    def __init__(
        self,
        client: discord.Client,
        *,
        confirm_emoji: str = CONFIRM_EMOJI,
        cancel_emoji: str = CANCEL_EMOJI,
    ) -> None:
        self.client = client
        self.confirm_emoji = confirm_emoji
        self.cancel_emoji = cancel_emoji

    async def _destination(self, target: NotifyTarget) -> discord.abc.Messageable:
        if target.kind == "user":
            user = self.client.get_user(target.id)
            if user is None:
                user = await self.client.fetch_user(target.id)
            return user
        channel = self.client.get_channel(target.id)
        if channel is None:
            channel = await self.client.fetch_channel(target.id)
        return channel

    async def notify(self, target: NotifyTarget, notice: TradeNotice) -> None:
        embed = build_notice_embed(
            notice,
            confirm_emoji=self.confirm_emoji,
            cancel_emoji=self.cancel_emoji,
        )
        try:
            destination = await self._destination(target)
            message = await destination.send(content=build_notice_content(notice), embed=embed)
            if notice.event == "session_opened":
                await message.add_reaction(self.confirm_emoji)
                await message.add_reaction(self.cancel_emoji)
        except (discord.Forbidden, discord.HTTPException) as exc:
            print(f"[notify] could not deliver event={notice.event} to {target.kind}={target.id}: {exc}")

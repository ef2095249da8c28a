import asyncio
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import discord

from beachbot.commands import setup_commands
from beachbot.commands.common import load_trader_roles, trader_roles
from beachbot.config.runtime import ensure_app_config_defaults, get_app_config
from beachbot.config.settings import CANCEL_EMOJI, CONFIRM_EMOJI, OFFER_EMOJI, TOKEN
from beachbot.core.permissions import member_role_names
from beachbot.db import (
    create_database_backup,
    get_state_value,
    init_db,
    prune_backups,
    set_state_value,
)
from beachbot.services.announcements import build_backup_embed
from beachbot.services.discord_gateway import DiscordNotifier, DiscordSpaces
from beachbot.services.errors import TradeError
from beachbot.services.offers import expire_stale_offers, get_offer_by_message
from beachbot.services.teardown import TeardownScheduler
from beachbot.services.trade_engine import TradeEngine

OFFERS_LOOP_SECONDS = 60
BACKUP_CHECK_SECONDS = 60
BACKUP_PREFIX = "beachbot"


class BeachBot(discord.Client):
    def __init__(self) -> None:
        intents = discord.Intents.default()
        intents.guild_reactions = True
        intents.members = True
        super().__init__(intents=intents)
        self.tree = discord.app_commands.CommandTree(self)
        self.engine: TradeEngine | None = None
        self._synced = False
        self._offers_task: asyncio.Task | None = None
        self._backup_task: asyncio.Task | None = None

    async def setup_hook(self) -> None:
        self.engine = TradeEngine(
            DiscordSpaces(self, lambda: int(get_app_config("TRADE_CATEGORY_ID"))),
            DiscordNotifier(self),
            TeardownScheduler(),
            completed_delay=int(get_app_config("COMPLETED_TEARDOWN_SECONDS")),
            cancelled_delay=int(get_app_config("CANCELLED_TEARDOWN_SECONDS")),
        )
        load_trader_roles()
        setup_commands(self.tree, self.engine, self._on_config_change)

    def _on_config_change(self, name: str, value: object) -> None:
        if name == "TRADER_ROLE_NAMES":
            load_trader_roles()
        if self.engine is None:
            return
        if name == "COMPLETED_TEARDOWN_SECONDS":
            self.engine.completed_delay = float(value)
        elif name == "CANCELLED_TEARDOWN_SECONDS":
            self.engine.cancelled_delay = float(value)

    async def on_ready(self) -> None:
        if self._synced:
            return

        # Per-guild sync makes new commands show up immediately.
        for guild in self.guilds:
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)

        self._synced = True
        resumed = await self.engine.resume_teardowns()
        if resumed:
            print(f"[teardown] resumed {resumed} pending teardown(s)")
        if self._offers_task is None:
            self._offers_task = asyncio.create_task(self._offers_loop())
        if self._backup_task is None:
            self._backup_task = asyncio.create_task(self._backup_loop())

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.close()
        await super().close()

    async def _remove_reaction(self, payload: discord.RawReactionActionEvent) -> None:
        channel = self.get_channel(payload.channel_id)
        if channel is None:
            return
        try:
            message = channel.get_partial_message(payload.message_id)
            await message.remove_reaction(payload.emoji, discord.Object(id=payload.user_id))
        except (discord.Forbidden, discord.HTTPException) as exc:
            print(f"[trade] could not remove reaction channel={payload.channel_id}: {exc}")

    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        if payload.guild_id is None or self.user is None or payload.user_id == self.user.id:
            return
        if self.engine is None:
            return
        emoji = str(payload.emoji)
        if emoji == OFFER_EMOJI:
            await self._handle_interest(payload)
        elif emoji in {CONFIRM_EMOJI, CANCEL_EMOJI}:
            await self._handle_session_reaction(payload, emoji)

    async def _handle_interest(self, payload: discord.RawReactionActionEvent) -> None:
        offer = await asyncio.to_thread(get_offer_by_message, payload.message_id)
        if offer is None:
            return
        try:
            session = await self.engine.express_interest(
                offer.id,
                payload.user_id,
                member_roles=member_role_names(payload.member),
                allowed_roles=trader_roles(),
            )
        except TradeError as exc:
            print(f"[trade] interest rejected offer={offer.id} user={payload.user_id}: {exc}")
            await self._remove_reaction(payload)
            return
        except Exception as exc:
            print(f"[trade] interest failed offer={offer.id} user={payload.user_id}: {exc!r}")
            await self._remove_reaction(payload)
            return
        if session is None:
            await self._remove_reaction(payload)

    async def _handle_session_reaction(self, payload: discord.RawReactionActionEvent, emoji: str) -> None:
        session = await self.engine.session_for_channel(payload.channel_id)
        if session is None:
            return
        if not session.is_participant(payload.user_id):
            await self._remove_reaction(payload)
            return
        try:
            if emoji == CONFIRM_EMOJI:
                await self.engine.confirm_trade(session.id, payload.user_id)
            else:
                await self.engine.cancel_trade(session.id, payload.user_id)
        except TradeError as exc:
            print(f"[trade] reaction rejected session={session.id} user={payload.user_id}: {exc}")

    async def _offers_loop(self) -> None:
        while not self.is_closed():
            try:
                expired = await asyncio.to_thread(expire_stale_offers)
                for offer in expired:
                    print(f"[offers] expired offer={offer.id} creator={offer.creator_id}")
            except Exception as exc:
                print(f"[offers] expiry loop error: {exc}")
            await asyncio.sleep(OFFERS_LOOP_SECONDS)

    async def _backup_loop(self) -> None:
        while not self.is_closed():
            try:
                await self._maybe_run_daily_backup()
            except Exception as exc:
                print(f"[backup] loop error: {exc}")
            await asyncio.sleep(BACKUP_CHECK_SECONDS)

    async def _maybe_run_daily_backup(self) -> None:
        display_timezone = str(get_app_config("DISPLAY_TIMEZONE"))
        backup_hour = int(get_app_config("BACKUP_HOUR"))
        try:
            tz = ZoneInfo(display_timezone)
        except Exception:
            tz = timezone.utc
        now_local = datetime.now(timezone.utc).astimezone(tz)
        if now_local.hour < backup_hour:
            return
        local_date = now_local.strftime("%Y-%m-%d")
        result = await asyncio.to_thread(self._backup_database_if_needed, local_date)
        if result is None:
            return
        backup_path, removed = result
        await self._announce_backup(backup_path, removed)

    def _backup_database_if_needed(self, local_date: str) -> tuple[str, list[str]] | None:
        state_key = "db_backup_date"
        if get_state_value(state_key) == local_date:
            return None
        try:
            backup_path = create_database_backup(prefix=BACKUP_PREFIX)
        except Exception as exc:
            print(f"[backup] failed to create daily backup: {exc}")
            return None
        removed = prune_backups(int(get_app_config("BACKUP_RETENTION")), prefix=BACKUP_PREFIX)
        set_state_value(state_key, local_date)
        print(f"[backup] created {backup_path}; removed {len(removed)} old backup(s)")
        return backup_path, removed

    async def _announce_backup(self, backup_path: str, removed: list[str]) -> None:
        channel_name = str(get_app_config("LOG_CHANNEL_NAME")).strip()
        if not channel_name:
            return
        embed = build_backup_embed(backup_path, removed)
        for guild in self.guilds:
            channel = discord.utils.get(guild.text_channels, name=channel_name)
            if channel is None:
                continue
            try:
                await channel.send(embed=embed)
            except (discord.Forbidden, discord.HTTPException) as exc:
                print(f"[backup] failed to post notice guild={guild.id} channel={channel.id}: {exc}")


def run() -> None:
    init_db()
    ensure_app_config_defaults()
    if not TOKEN:
        raise SystemExit("No bot token: set DISCORD_TOKEN or create a TOKEN file.")
    bot = BeachBot()
    bot.run(TOKEN)

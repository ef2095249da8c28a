from __future__ import annotations

import discord
from discord import Interaction, app_commands

from beachbot.config.runtime import get_app_config
from beachbot.core.permissions import parse_role_names
from beachbot.services.errors import TradeError
from beachbot.services.prices import search_items

GUILD_ONLY_MESSAGE = "Please use this command in a server."
GENERIC_ERROR_MESSAGE = "An error occurred. Please try again later."


_trader_roles: frozenset[str] | None = None


def load_trader_roles() -> frozenset[str]:
    """Resolve the configured trader roles; called at startup and on config change."""
    global _trader_roles
    _trader_roles = parse_role_names(str(get_app_config("TRADER_ROLE_NAMES")))
    return _trader_roles


def trader_roles() -> frozenset[str]:
    if _trader_roles is None:
        return load_trader_roles()
    return _trader_roles


async def send_ephemeral(interaction: Interaction, text: str) -> None:
    if interaction.response.is_done():
        await interaction.followup.send(text, ephemeral=True)
    else:
        await interaction.response.send_message(text, ephemeral=True)


async def item_autocomplete(
    interaction: Interaction,
    current: str,
) -> list[app_commands.Choice[str]]:
    names = search_items(current, limit=25)
    return [app_commands.Choice(name=name[:100], value=name[:100]) for name in names]


async def handle_command_error(
    interaction: Interaction,
    error: app_commands.AppCommandError,
) -> None:
    original = getattr(error, "original", error)
    if isinstance(original, TradeError):
        text = str(original)
    elif isinstance(error, app_commands.MissingPermissions):
        text = "You do not have permission to use this command."
    elif isinstance(error, app_commands.CheckFailure):
        text = "You cannot use this command here."
    else:
        name = interaction.command.qualified_name if interaction.command else "?"
        print(f"[commands] /{name} failed user={interaction.user.id}: {original!r}")
        text = GENERIC_ERROR_MESSAGE
    try:
        await send_ephemeral(interaction, text)
    except discord.HTTPException as exc:
        print(f"[commands] could not report error to user={interaction.user.id}: {exc}")

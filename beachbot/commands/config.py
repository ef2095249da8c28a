from __future__ import annotations

from typing import Callable

import discord
from discord import Interaction, app_commands

from beachbot.config.runtime import APP_CONFIG_SPECS, get_all_app_configs, set_app_config
from beachbot.services.errors import ValidationRejected


def setup_config(
    tree: app_commands.CommandTree,
    on_change: Callable[[str, object], None] | None = None,
) -> None:
    group = app_commands.Group(
        name="config",
        description="Admin: runtime settings.",
        guild_only=True,
        default_permissions=discord.Permissions(manage_guild=True),
    )

    @group.command(name="list", description="Show all runtime settings.")
    @app_commands.checks.has_permissions(manage_guild=True)
    async def config_list(interaction: Interaction) -> None:
        lines = ["Runtime settings:"]
        for row in get_all_app_configs():
            lines.append(f"`{row['name']}` = `{row['value']}` (default `{row['default']}`) · {row['description']}")
        await interaction.response.send_message("\n".join(lines), ephemeral=True)

    @group.command(name="set", description="Change a runtime setting.")
    @app_commands.describe(name="Setting name", value="New value")
    @app_commands.checks.has_permissions(manage_guild=True)
    async def config_set(interaction: Interaction, name: str, value: str) -> None:
        key = name.strip().upper()
        if key not in APP_CONFIG_SPECS:
            raise ValidationRejected(f"Unknown setting `{key}`.")
        try:
            stored = set_app_config(key, value)
        except ValueError as e:
            raise ValidationRejected(f"Invalid value for `{key}`: {value}") from e
        print(f"[config] {key} set to {stored!r} by user={interaction.user.id}")
        if on_change is not None:
            on_change(key, stored)
        await interaction.response.send_message(f"`{key}` is now `{stored}`.", ephemeral=True)

    @config_set.autocomplete("name")
    async def config_set_name_autocomplete(
        interaction: Interaction,
        current: str,
    ) -> list[app_commands.Choice[str]]:
        query = current.strip().upper()
        names = [n for n in APP_CONFIG_SPECS if query in n]
        return [app_commands.Choice(name=n, value=n) for n in names[:25]]

    tree.add_command(group)

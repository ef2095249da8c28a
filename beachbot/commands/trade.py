from __future__ import annotations

from discord import Interaction, app_commands

from beachbot.core.trade_models import SessionStatus
from beachbot.services.errors import NotFoundRejected
from beachbot.services.trade_engine import TradeEngine

NOT_A_TRADE_CHANNEL = "This command only works inside a trade channel."


def setup_trade(tree: app_commands.CommandTree, engine: TradeEngine) -> None:
    group = app_commands.Group(
        name="trade",
        description="Confirm or cancel the trade of this channel.",
        guild_only=True,
    )

    async def _session_id(interaction: Interaction) -> int:
        session = await engine.session_for_channel(interaction.channel_id or 0)
        if session is None:
            raise NotFoundRejected(NOT_A_TRADE_CHANNEL)
        return session.id

    @group.command(name="confirm", description="Confirm your side of the trade.")
    async def trade_confirm(interaction: Interaction) -> None:
        session_id = await _session_id(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)
        session = await engine.confirm_trade(session_id, interaction.user.id)
        if session.status is SessionStatus.COMPLETED:
            await interaction.followup.send("Trade completed.", ephemeral=True)
            return
        await interaction.followup.send("Your confirmation was recorded.", ephemeral=True)

    @group.command(name="cancel", description="Cancel the trade.")
    async def trade_cancel(interaction: Interaction) -> None:
        session_id = await _session_id(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)
        await engine.cancel_trade(session_id, interaction.user.id)
        await interaction.followup.send("Trade cancelled.", ephemeral=True)

    tree.add_command(group)

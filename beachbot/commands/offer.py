from __future__ import annotations

import discord
from discord import Embed, Interaction, SelectOption, app_commands
from discord.ui import Select, View

from beachbot.config.runtime import get_app_config
from beachbot.config.settings import FOOTER_TEXT, OFFER_COLOR, OFFER_EMOJI
from beachbot.commands.common import GUILD_ONLY_MESSAGE, item_autocomplete, trader_roles
from beachbot.core.permissions import member_role_names
from beachbot.core.trade_models import Offer
from beachbot.services.announcements import build_offer_embed, kind_label
from beachbot.services.errors import TradeError
from beachbot.services.money import format_currency
from beachbot.services.offers import (
    attach_offer_message,
    count_active_offers,
    create_offer,
    list_active_offers,
    list_offers_by_creator,
    withdraw_offer,
)
from beachbot.services.prices import get_current_price

OFFERS_SHOWN = 10
OFFERS_FETCHED = 20

KIND_CHOICES = [
    app_commands.Choice(name="sell", value="sell"),
    app_commands.Choice(name="buy", value="buy"),
]


def _offer_line(offer: Offer) -> str:
    return (
        f"`#{offer.id}` {kind_label(offer.kind)} **{offer.display_name}** × {offer.quantity} "
        f"@ {format_currency(offer.unit_price)} · <@{offer.creator_id}>"
    )


class WithdrawOfferView(View):
    def __init__(self, owner_id: int, offers: list[Offer]) -> None:
        super().__init__(timeout=300)
        self._owner_id = owner_id
        picker = Select(
            placeholder="Withdraw an offer",
            min_values=1,
            max_values=1,
            options=[
                SelectOption(
                    label=f"#{o.id} {o.display_name}"[:100],
                    description=f"{o.quantity} × {format_currency(o.unit_price)}"[:100],
                    value=str(o.id),
                )
                for o in offers[:25]
            ],
        )

        async def on_pick(interaction: Interaction) -> None:
            offer_id = int(picker.values[0])
            try:
                withdraw_offer(offer_id, interaction.user.id)
            except TradeError as e:
                await interaction.response.send_message(str(e), ephemeral=True)
                return
            picker.disabled = True
            await interaction.response.edit_message(
                content=f"Offer `#{offer_id}` withdrawn.",
                view=self,
            )

        picker.callback = on_pick
        self.add_item(picker)

    async def interaction_check(self, interaction: Interaction) -> bool:
        if interaction.user.id != self._owner_id:
            await interaction.response.send_message(
                "Only the command user can interact with this selector.",
                ephemeral=True,
            )
            return False
        return True


def setup_offer(tree: app_commands.CommandTree) -> None:
    @tree.command(name="offer", description="Post a buy or sell offer on the market.")
    @app_commands.describe(
        kind="sell or buy",
        item="Item name",
        quantity="Number of units",
        unit_price="Price per unit",
        description="Optional note shown on the offer",
    )
    @app_commands.choices(kind=KIND_CHOICES)
    async def offer(
        interaction: Interaction,
        kind: app_commands.Choice[str],
        item: str,
        quantity: int,
        unit_price: float,
        description: str | None = None,
    ) -> None:
        if interaction.guild is None:
            await interaction.response.send_message(GUILD_ONLY_MESSAGE, ephemeral=True)
            return
        created = create_offer(
            interaction.guild.id,
            interaction.channel_id or 0,
            interaction.user.id,
            interaction.user.display_name,
            kind.value,
            item,
            unit_price,
            quantity,
            description,
            member_roles=member_role_names(interaction.user),
            allowed_roles=trader_roles(),
            require_known_item=bool(int(get_app_config("REQUIRE_KNOWN_ITEM"))),
            ttl_days=int(get_app_config("OFFER_TTL_DAYS")),
        )
        price_row = get_current_price(created.display_name)
        await interaction.response.send_message(embed=build_offer_embed(created, price_row))
        message = await interaction.original_response()
        attach_offer_message(created.id, message.channel.id, message.id)
        try:
            await message.add_reaction(OFFER_EMOJI)
        except discord.HTTPException as exc:
            print(f"[offers] could not react on offer={created.id}: {exc}")

    offer.autocomplete("item")(item_autocomplete)


def setup_myoffers(tree: app_commands.CommandTree) -> None:
    @tree.command(name="myoffers", description="Show and withdraw your offers.")
    async def myoffers(interaction: Interaction) -> None:
        if interaction.guild is None:
            await interaction.response.send_message(GUILD_ONLY_MESSAGE, ephemeral=True)
            return
        rows = list_offers_by_creator(interaction.user.id, interaction.guild.id)
        if not rows:
            await interaction.response.send_message("You have no active offers.", ephemeral=True)
            return
        lines = [_offer_line(o) for o in rows[:OFFERS_SHOWN]]
        if len(rows) > OFFERS_SHOWN:
            lines.append(f"... and {len(rows) - OFFERS_SHOWN} more")
        embed = Embed(title="📋 Your active offers", description="\n".join(lines), color=OFFER_COLOR)
        embed.set_footer(text=FOOTER_TEXT)
        await interaction.response.send_message(
            embed=embed,
            view=WithdrawOfferView(interaction.user.id, rows),
            ephemeral=True,
        )


def setup_offers(tree: app_commands.CommandTree) -> None:
    @tree.command(name="offers", description="Show active market offers.")
    @app_commands.describe(kind="Only show sell or buy offers")
    @app_commands.choices(kind=KIND_CHOICES)
    async def offers(
        interaction: Interaction,
        kind: app_commands.Choice[str] | None = None,
    ) -> None:
        if interaction.guild is None:
            await interaction.response.send_message(GUILD_ONLY_MESSAGE, ephemeral=True)
            return
        kind_value = kind.value if kind is not None else None
        rows = list_active_offers(kind_value, interaction.guild.id, limit=OFFERS_FETCHED)
        if not rows:
            await interaction.response.send_message("No active offers right now.", ephemeral=True)
            return
        total = count_active_offers(kind_value, interaction.guild.id)
        lines = [_offer_line(o) for o in rows[:OFFERS_SHOWN]]
        if total > OFFERS_SHOWN:
            lines.append(f"\nShowing {OFFERS_SHOWN} of {total} offers.")
        embed = Embed(title="🏖️ Active offers", description="\n".join(lines), color=OFFER_COLOR)
        embed.set_footer(text=f"React with {OFFER_EMOJI} on an offer to start a trade • {FOOTER_TEXT}")
        await interaction.response.send_message(embed=embed)

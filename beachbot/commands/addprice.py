from __future__ import annotations

import asyncio
from io import BytesIO

import discord
from discord import Embed, File, Interaction, app_commands

from beachbot.config.settings import FOOTER_TEXT, PRICE_COLOR
from beachbot.commands.common import GUILD_ONLY_MESSAGE, item_autocomplete
from beachbot.services.announcements import profit_line
from beachbot.services.errors import ValidationRejected
from beachbot.services.images import normalize_image
from beachbot.services.money import format_currency
from beachbot.services.prices import get_current_price, record_price


def build_addprice_embed(
    row: dict,
    *,
    created: bool,
    state_kept: bool,
    image_kept: bool,
) -> Embed:
    embed = Embed(
        title=f"💰 Price saved: {row['display_name']}",
        color=PRICE_COLOR,
    )
    embed.add_field(name="Market price", value=f"**{format_currency(row['market_price'])}**", inline=True)
    if row.get("state_value") is not None:
        embed.add_field(name="State value", value=format_currency(row["state_value"]), inline=True)
        line = profit_line(float(row["market_price"]), float(row["state_value"]))
        if line:
            embed.add_field(name="Profit vs. state", value=line, inline=True)
    status = ["🆕 New entry" if created else "🔄 Updated"]
    if state_kept:
        status.append("state value kept")
    if image_kept:
        status.append("image kept")
    embed.add_field(name="Status", value=" • ".join(status), inline=False)
    embed.set_footer(text=f"Updated by {row['updated_by']} • {FOOTER_TEXT}")
    return embed


def setup_addprice(tree: app_commands.CommandTree) -> None:
    @tree.command(name="addprice", description="Record the current market price of an item.")
    @app_commands.describe(
        item="Item name",
        market_price="Current market price per unit",
        state_value="Optional state (NPC) value per unit; omitted keeps the stored one",
        image="Optional item picture; omitted keeps the stored one",
    )
    async def addprice(
        interaction: Interaction,
        item: str,
        market_price: float,
        state_value: float | None = None,
        image: discord.Attachment | None = None,
    ) -> None:
        if interaction.guild is None:
            await interaction.response.send_message(GUILD_ONLY_MESSAGE, ephemeral=True)
            return
        await interaction.response.defer(thinking=True)

        image_bytes = None
        image_name = None
        if image is not None:
            raw = await image.read()
            try:
                image_bytes = await asyncio.to_thread(normalize_image, raw)
            except ValueError as e:
                raise ValidationRejected(str(e)) from e
            image_name = image.filename

        previous = get_current_price(item)
        try:
            row, created = record_price(
                item,
                market_price,
                interaction.user.display_name,
                state_value=state_value,
                image=image_bytes,
                image_name=image_name,
            )
        except ValueError as e:
            raise ValidationRejected(str(e)) from e
        print(f"[prices] {row['item_name']} -> {row['market_price']} by user={interaction.user.id}")

        state_kept = state_value is None and previous is not None and previous.get("state_value") is not None
        image_kept = image is None and previous is not None and previous.get("image") is not None
        embed = build_addprice_embed(row, created=created, state_kept=state_kept, image_kept=image_kept)
        if row.get("image"):
            embed.set_thumbnail(url="attachment://item.png")
            await interaction.followup.send(embed=embed, file=File(BytesIO(row["image"]), filename="item.png"))
        else:
            await interaction.followup.send(embed=embed)

    addprice.autocomplete("item")(item_autocomplete)

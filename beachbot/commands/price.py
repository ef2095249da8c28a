from __future__ import annotations

from datetime import datetime
from io import BytesIO

from discord import Embed, File, Interaction, app_commands

from beachbot.config.settings import FOOTER_TEXT, PRICE_COLOR
from beachbot.commands.common import item_autocomplete
from beachbot.services.announcements import profit_line
from beachbot.services.errors import NotFoundRejected
from beachbot.services.money import format_currency
from beachbot.services.prices import get_current_price, list_current_prices

MAX_DESCRIPTION = 4000


def _updated_epoch(row: dict) -> int | None:
    try:
        return int(datetime.fromisoformat(str(row["last_updated"])).timestamp())
    except (KeyError, TypeError, ValueError):
        return None


def build_price_embed(row: dict) -> Embed:
    embed = Embed(title=f"💰 {row['display_name']}", color=PRICE_COLOR)
    embed.add_field(name="Market price", value=f"**{format_currency(row['market_price'])}**", inline=True)
    if row.get("state_value") is not None:
        embed.add_field(name="State value", value=format_currency(row["state_value"]), inline=True)
        line = profit_line(float(row["market_price"]), float(row["state_value"]))
        if line:
            embed.add_field(name="Profit/loss per unit", value=line, inline=True)
    epoch = _updated_epoch(row)
    if epoch is not None:
        embed.add_field(name="Last update", value=f"<t:{epoch}:R>", inline=True)
    embed.set_footer(text=f"Updated by {row['updated_by']} • {FOOTER_TEXT}")
    return embed


def build_price_list_description(rows: list[dict]) -> str:
    medals = {0: "🥇", 1: "🥈", 2: "🥉"}
    lines: list[str] = []
    for idx, row in enumerate(rows):
        prefix = medals.get(idx, "•")
        line = f"{prefix} **{row['display_name']}**: {format_currency(row['market_price'])}"
        if row.get("state_value") is not None:
            line += f" (🏛️ {format_currency(row['state_value'])})"
        lines.append(line)
    text = "\n".join(lines)
    if len(text) > MAX_DESCRIPTION:
        text = text[: MAX_DESCRIPTION - 4].rsplit("\n", 1)[0] + "\n..."
    return text


def setup_price(tree: app_commands.CommandTree) -> None:
    @tree.command(name="price", description="Show the current price of an item.")
    @app_commands.describe(item="Item name")
    async def price(interaction: Interaction, item: str) -> None:
        row = get_current_price(item)
        if row is None:
            raise NotFoundRejected(f"No price recorded for \"{item}\" yet.")
        embed = build_price_embed(row)
        if row.get("image"):
            embed.set_thumbnail(url="attachment://item.png")
            await interaction.response.send_message(
                embed=embed,
                file=File(BytesIO(row["image"]), filename="item.png"),
            )
            return
        await interaction.response.send_message(embed=embed)

    price.autocomplete("item")(item_autocomplete)


def setup_prices(tree: app_commands.CommandTree) -> None:
    @tree.command(name="prices", description="List all current item prices.")
    async def prices(interaction: Interaction) -> None:
        rows = list_current_prices()
        if not rows:
            await interaction.response.send_message("No prices recorded yet.", ephemeral=True)
            return
        embed = Embed(
            title="📊 Current prices",
            description=build_price_list_description(rows),
            color=PRICE_COLOR,
        )
        embed.set_footer(text=f"{len(rows)} items • {FOOTER_TEXT}")
        await interaction.response.send_message(embed=embed)

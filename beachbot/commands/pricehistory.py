from __future__ import annotations

import asyncio
from io import BytesIO

from discord import Embed, File, Interaction, app_commands
from discord.errors import NotFound

from beachbot.config.runtime import get_app_config
from beachbot.config.settings import FOOTER_TEXT, PRICE_COLOR, STATS_COLOR
from beachbot.commands.common import item_autocomplete
from beachbot.services.charts import history_fallback_lines, render_chart
from beachbot.services.errors import NotFoundRejected
from beachbot.services.money import format_currency
from beachbot.services.prices import list_history, price_stats


def build_stats_embed(stats: dict) -> Embed:
    embed = Embed(title=f"📈 Statistics: {stats['display_name']}", color=STATS_COLOR)
    embed.add_field(name="Entries", value=str(stats["count"]), inline=True)
    embed.add_field(name="Average", value=f"**{format_currency(stats['avg_market'])}**", inline=True)
    embed.add_field(name="Lowest", value=format_currency(stats["min_market"]), inline=True)
    embed.add_field(name="Highest", value=format_currency(stats["max_market"]), inline=True)
    embed.add_field(name="Spread", value=format_currency(stats["spread"]), inline=True)
    embed.add_field(name="Variance", value=f"{stats['variance_pct']:.1f}%", inline=True)
    if stats.get("state_count"):
        embed.add_field(
            name="🏛️ State value",
            value=(
                f"Ø {format_currency(stats['avg_state'])} "
                f"({format_currency(stats['min_state'])} - {format_currency(stats['max_state'])})"
            ),
            inline=False,
        )
        sign = "+" if stats["avg_profit"] >= 0 else "-"
        embed.add_field(
            name="Ø Profit vs. state",
            value=f"{sign}{format_currency(abs(stats['avg_profit']))} ({stats['avg_profit_pct']:+.1f}%)",
            inline=False,
        )
    embed.set_footer(text=FOOTER_TEXT)
    return embed


def setup_pricehistory(tree: app_commands.CommandTree) -> None:
    @tree.command(name="pricehistory", description="Show the price history chart of an item.")
    @app_commands.describe(item="Item name")
    async def pricehistory(interaction: Interaction, item: str) -> None:
        series = list_history(item)
        if not series:
            raise NotFoundRejected(f"No price history for \"{item}\" yet.")
        try:
            await interaction.response.defer(thinking=True)
        except NotFound:
            return

        title = str(series[-1]["display_name"])
        market = [float(r["market_price"]) for r in series]
        embed = Embed(title=f"📈 Price history: {title}", color=PRICE_COLOR)
        embed.add_field(name="Current", value=f"**{format_currency(market[-1])}**", inline=True)
        embed.add_field(name="Highest", value=format_currency(max(market)), inline=True)
        embed.add_field(name="Lowest", value=format_currency(min(market)), inline=True)
        embed.set_footer(text=f"{len(series)} entries • {FOOTER_TEXT}")

        try:
            png = await asyncio.to_thread(
                render_chart,
                series,
                title,
                str(get_app_config("DISPLAY_TIMEZONE")),
            )
        except Exception as exc:
            print(f"[charts] render failed item={title}: {exc}")
            embed.description = "\n".join(history_fallback_lines(series))
            await interaction.followup.send(embed=embed)
            return
        embed.set_image(url="attachment://history.png")
        await interaction.followup.send(embed=embed, file=File(BytesIO(png), filename="history.png"))

    pricehistory.autocomplete("item")(item_autocomplete)


def setup_averageprice(tree: app_commands.CommandTree) -> None:
    @tree.command(name="averageprice", description="Show price statistics of an item.")
    @app_commands.describe(item="Item name")
    async def averageprice(interaction: Interaction, item: str) -> None:
        stats = price_stats(item)
        if stats is None:
            raise NotFoundRejected(f"No price history for \"{item}\" yet.")
        await interaction.response.send_message(embed=build_stats_embed(stats))

    averageprice.autocomplete("item")(item_autocomplete)

from typing import Callable

from discord import app_commands

from beachbot.commands.addprice import setup_addprice
from beachbot.commands.common import handle_command_error
from beachbot.commands.config import setup_config
from beachbot.commands.offer import setup_myoffers, setup_offer, setup_offers
from beachbot.commands.price import setup_price, setup_prices
from beachbot.commands.pricehistory import setup_averageprice, setup_pricehistory
from beachbot.commands.trade import setup_trade
from beachbot.services.trade_engine import TradeEngine


def setup_commands(
    tree: app_commands.CommandTree,
    engine: TradeEngine,
    on_config_change: Callable[[str, object], None] | None = None,
) -> None:
    setup_addprice(tree)
    setup_price(tree)
    setup_prices(tree)
    setup_pricehistory(tree)
    setup_averageprice(tree)
    setup_offer(tree)
    setup_myoffers(tree)
    setup_offers(tree)
    setup_trade(tree, engine)
    setup_config(tree, on_config_change)
    tree.error(handle_command_error)

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

from beachbot.config.settings import CURRENCY_SYMBOL

_CENT = Decimal("0.01")
_UNIT = Decimal("1")


def money(value: float | int | str | Decimal) -> float:
    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def format_currency(value: float | int | str | Decimal) -> str:
    # German grouping, whole euros: 1234.5 -> "1.235 €"
    amount = Decimal(str(value)).quantize(_UNIT, rounding=ROUND_HALF_UP)
    sign = "-" if amount < 0 else ""
    grouped = f"{abs(int(amount)):,}".replace(",", ".")
    return f"{sign}{grouped} {CURRENCY_SYMBOL}"


def profit_vs_state(market_price: float, state_value: float | None) -> tuple[float, float] | None:
    if state_value is None or float(state_value) <= 0:
        return None
    profit = float(market_price) - float(state_value)
    return profit, (profit / float(state_value)) * 100.0

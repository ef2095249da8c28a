from __future__ import annotations

from datetime import datetime, timezone
from io import BytesIO
from zoneinfo import ZoneInfo

import matplotlib

matplotlib.use("Agg")
from matplotlib import pyplot as plt
from matplotlib.ticker import FuncFormatter

from beachbot.services.money import format_currency


def _parse_ts(raw: str) -> datetime:
    dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _zone(display_timezone: str | None):
    if not display_timezone:
        return timezone.utc
    try:
        return ZoneInfo(display_timezone)
    except Exception:
        return timezone.utc


def render_chart(
    series: list[dict],
    title: str,
    display_timezone: str | None = None,
) -> bytes:
    if not series:
        raise ValueError("Cannot render an empty price series.")
    tz = _zone(display_timezone)
    labels = [_parse_ts(row["date_added"]).astimezone(tz).strftime("%d.%m.%Y") for row in series]
    market = [float(row["market_price"]) for row in series]
    state = [
        float(row["state_value"]) if row.get("state_value") is not None else None
        for row in series
    ]
    has_state = any(v is not None for v in state)
    x_values = list(range(len(labels)))

    fig, ax = plt.subplots(figsize=(8.0, 4.0))
    ax.plot(
        x_values,
        market,
        color="#ff6600",
        linewidth=3.0,
        marker="o",
        markersize=6,
        label="Market price",
    )
    ax.fill_between(x_values, market, min(market), color="#ff6600", alpha=0.1)
    if has_state:
        state_x = [x for x, v in zip(x_values, state) if v is not None]
        state_y = [v for v in state if v is not None]
        ax.plot(
            state_x,
            state_y,
            color="#00aa00",
            linewidth=2.0,
            linestyle="--",
            marker="o",
            markersize=4,
            label="State value",
        )
        ax.legend(loc="upper left")
    ax.set_title(f"Price history: {title}", fontsize=14, fontweight="bold")
    ax.set_xlabel("Date", fontsize=12, fontweight="bold")
    ax.set_ylabel("Price (€)", fontsize=12, fontweight="bold")
    ax.yaxis.set_major_formatter(FuncFormatter(lambda value, _pos: format_currency(value)))
    if len(labels) > 1:
        step = max(1, len(labels) // 8)
        ax.set_xticks(x_values[::step])
        ax.set_xticklabels(labels[::step], rotation=30, ha="right")
        ax.set_xlim(0, len(labels) - 1)
    else:
        ax.set_xticks(x_values)
        ax.set_xticklabels(labels)
    ax.grid(True, alpha=0.2)

    buf = BytesIO()
    fig.tight_layout()
    fig.savefig(buf, format="png", dpi=100)
    plt.close(fig)
    return buf.getvalue()


def history_fallback_lines(series: list[dict], limit: int = 10) -> list[str]:
    lines = []
    for row in series[-limit:]:
        epoch = int(_parse_ts(row["date_added"]).timestamp())
        line = f"**{format_currency(row['market_price'])}**"
        if row.get("state_value") is not None:
            line += f" (🏛️ {format_currency(row['state_value'])})"
        line += f" • <t:{epoch}:R>"
        lines.append(line)
    return lines

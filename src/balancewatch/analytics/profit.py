"""Profit/loss analytics over a balance series (AnalyticsWindow).

Runs on the full-resolution filtered series, never on the downsampled one.
Pure Decimal arithmetic; every call is independent, so the total-assets view
and the stablecoin-only view can be computed from the same series.

Volatility is the population standard deviation of the field around its mean.
"""

from collections.abc import Sequence
from decimal import Decimal

from balancewatch.models import ZERO, AnalyticsWindow, HistoryPoint, ValueField

MS_PER_HOUR = Decimal("3600000")


def analyze(
    series: Sequence[HistoryPoint],
    value_field: ValueField = "total_usd",
) -> AnalyticsWindow:
    """Compute P/L statistics for ``value_field`` over ``series``.

    Args:
        series: Filtered history points (any order; sorted by timestamp here).
        value_field: One of total_usd, total_usd_usdt, total_rlb.

    Returns:
        AnalyticsWindow. An empty series yields AnalyticsWindow.empty(); a
        single point yields total_hours == 0 and zero rates.
    """
    if not series:
        return AnalyticsWindow.empty()

    ordered = sorted(series, key=lambda p: p.timestamp_ms)
    first = ordered[0]
    last = ordered[-1]

    values = [point.value(value_field) for point in ordered]
    start_value = values[0]
    end_value = values[-1]

    profit_loss = end_value - start_value
    if start_value != ZERO:
        profit_loss_percent = profit_loss / start_value * Decimal("100")
    else:
        profit_loss_percent = ZERO

    total_hours = Decimal(last.timestamp_ms - first.timestamp_ms) / MS_PER_HOUR
    profit_per_hour = profit_loss / total_hours if total_hours > ZERO else ZERO
    profit_per_day = profit_per_hour * Decimal("24")

    count = Decimal(len(values))
    avg_value = sum(values, ZERO) / count
    variance = sum(((v - avg_value) ** 2 for v in values), ZERO) / count

    return AnalyticsWindow(
        start_time_ms=first.timestamp_ms,
        end_time_ms=last.timestamp_ms,
        total_hours=total_hours,
        start_value=start_value,
        end_value=end_value,
        min_value=min(values),
        max_value=max(values),
        avg_value=avg_value,
        volatility=variance.sqrt(),
        profit_loss=profit_loss,
        profit_loss_percent=profit_loss_percent,
        profit_per_hour=profit_per_hour,
        profit_per_day=profit_per_day,
        data_points=len(ordered),
    )


def format_profit_loss(value: Decimal, include_sign: bool = True) -> str:
    """Format a P/L amount as dollars, e.g. "+$12.50".

    Negative amounts are shown as their absolute value; the consumer colours them.
    """
    sign = "+" if value >= ZERO and include_sign else ""
    return f"{sign}${abs(value):.2f}"


def format_percent(percent: Decimal, include_sign: bool = True) -> str:
    """Format a percentage with two decimals, e.g. "+1.25%"."""
    sign = "+" if percent >= ZERO and include_sign else ""
    return f"{sign}{percent:.2f}%"


def format_duration(hours: Decimal) -> str:
    """Human-readable duration: "45m", "3h 30m", "2d 5h"."""
    hours = Decimal(hours)
    if hours < 1:
        return f"{int(hours * 60)}m"

    if hours < 24:
        whole = int(hours)
        minutes = int((hours - whole) * 60)
        return f"{whole}h {minutes}m" if minutes > 0 else f"{whole}h"

    days = int(hours // 24)
    remaining = int(hours % 24)
    return f"{days}d {remaining}h" if remaining > 0 else f"{days}d"

"""Cumulative trade P&L on a regular time grid, plus win/loss/latency summary.

Two cumulative tracks are built: raw profit (before gas) and net profit
(profit_with_gas_usd). A trade whose profit field is still None is pending and
contributes nothing to that track.

The grid uses the same interval policy as the balance downsampler so the two
charts share an axis. Values are step-interpolated: each tick carries the
cumulative total of every trade at or before it. The last grid point is forced
to the window end so the series always finishes on the true final total.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from balancewatch.models import ZERO, Trade
from balancewatch.series.window import (
    DAY_MS,
    PRESET_INTERVAL_MS,
    WindowSpec,
    filter_series,
    select_interval_ms,
)

MS_PER_HOUR = Decimal("3600000")


@dataclass(frozen=True)
class PnLPoint:
    """Cumulative profit value at one grid tick."""

    time_ms: int
    value: Decimal


@dataclass
class TradeSummary:
    """Summary statistics over the trades of a window (not grid based)."""

    total_net_profit: Decimal = ZERO
    total_raw_profit: Decimal = ZERO
    gas_cost: Decimal = ZERO
    avg_net_profit: Decimal = ZERO
    avg_raw_profit: Decimal = ZERO
    trades_with_profit: int = 0
    trades_with_net_profit: int = 0
    trades_with_raw_profit: int = 0
    profitable_trades: int = 0
    unprofitable_trades: int = 0
    total_gained: Decimal = ZERO
    total_lost: Decimal = ZERO
    avg_gain: Decimal = ZERO
    avg_loss: Decimal = ZERO
    total_hours: Decimal = ZERO
    start_time_ms: int | None = None
    end_time_ms: int | None = None
    net_profit_per_hour: Decimal = ZERO
    net_profit_per_day: Decimal = ZERO
    raw_profit_per_hour: Decimal = ZERO
    raw_profit_per_day: Decimal = ZERO
    net_high: Decimal = ZERO
    net_low: Decimal = ZERO
    net_avg: Decimal = ZERO
    raw_high: Decimal = ZERO
    raw_low: Decimal = ZERO
    raw_avg: Decimal = ZERO
    net_volatility: Decimal = ZERO
    wins: int = 0
    losses: int = 0
    win_rate: Decimal | None = None
    total_trades: int = 0
    avg_api_duration_ms: Decimal | None = None


@dataclass
class TradePnLResult:
    """Output of aggregate(): both grid series, the summary and the grid used."""

    net_series: list[PnLPoint] = field(default_factory=list)
    raw_series: list[PnLPoint] = field(default_factory=list)
    summary: TradeSummary = field(default_factory=TradeSummary)
    start_ms: int = 0
    end_ms: int = 0
    interval_ms: int = 0


def grid_bounds(
    trades: Sequence[Trade],
    window: WindowSpec,
    now_ms: int,
) -> tuple[int, int, int]:
    """Return (start_ms, end_ms, interval_ms) of the grid for ``window``.

    Bounded windows run from their cutoff to ``now_ms``. The "all" window
    starts at the earliest trade; with no trades it falls back to the last
    24 hours at the 24h preset interval.
    """
    cutoff = window.cutoff_ms(now_ms)
    if cutoff is not None:
        return cutoff, now_ms, select_interval_ms(window)

    if not trades:
        return now_ms - DAY_MS, now_ms, PRESET_INTERVAL_MS["24h"]

    start_ms = min(t.timestamp_ms for t in trades)
    return start_ms, now_ms, select_interval_ms(window, now_ms - start_ms)


def build_cumulative_grid(
    trades: Sequence[Trade],
    start_ms: int,
    end_ms: int,
    interval_ms: int,
) -> tuple[list[PnLPoint], list[PnLPoint]]:
    """Walk a regular grid over [start_ms, end_ms] applying trades in time order.

    Returns:
        (net_series, raw_series), one point per tick plus, when the last tick
        falls short of ``end_ms``, a final point at ``end_ms`` reflecting every
        trade up to the window end.
    """
    if interval_ms <= 0:
        raise ValueError(f"interval_ms must be positive, got {interval_ms}")

    ordered = sorted(trades, key=lambda t: t.timestamp_ms)

    # Running totals after each trade
    events: list[tuple[int, Decimal, Decimal]] = []
    cumulative_net = ZERO
    cumulative_raw = ZERO
    for trade in ordered:
        if trade.profit_with_gas_usd is not None:
            cumulative_net += trade.profit_with_gas_usd
        if trade.raw_profit_usd is not None:
            cumulative_raw += trade.raw_profit_usd
        events.append((trade.timestamp_ms, cumulative_net, cumulative_raw))

    net_series: list[PnLPoint] = []
    raw_series: list[PnLPoint] = []
    current_net = ZERO
    current_raw = ZERO
    index = 0

    tick = start_ms
    while tick <= end_ms:
        while index < len(events) and events[index][0] <= tick:
            _, current_net, current_raw = events[index]
            index += 1
        net_series.append(PnLPoint(tick, current_net))
        raw_series.append(PnLPoint(tick, current_raw))
        tick += interval_ms

    # Tail: trades between the last tick and the window end
    while index < len(events) and events[index][0] <= end_ms:
        _, current_net, current_raw = events[index]
        index += 1
    if not net_series or net_series[-1].time_ms < end_ms:
        net_series.append(PnLPoint(end_ms, current_net))
        raw_series.append(PnLPoint(end_ms, current_raw))

    return net_series, raw_series


def _population_std(values: list[Decimal], mean: Decimal) -> Decimal:
    if not values:
        return ZERO
    variance = sum(((v - mean) ** 2 for v in values), ZERO) / Decimal(len(values))
    return variance.sqrt()


def _mean(values: list[Decimal]) -> Decimal:
    return sum(values, ZERO) / Decimal(len(values)) if values else ZERO


def summarize_trades(trades: Sequence[Trade]) -> TradeSummary:
    """Compute profit, period, win/loss and latency statistics for ``trades``.

    Wins are explicit wins or uncontested trades; losses are explicit losses
    against an opponent. Contested trades with an unknown outcome count as
    neither. Latency is averaged over trades that report a duration.
    """
    summary = TradeSummary(total_trades=len(trades))
    if not trades:
        return summary

    summary.wins = sum(1 for t in trades if t.is_win)
    summary.losses = sum(1 for t in trades if t.is_loss)
    decided = summary.wins + summary.losses
    if decided > 0:
        summary.win_rate = Decimal(summary.wins) / Decimal(decided) * Decimal("100")

    durations = [t.api_call_duration_ms for t in trades if t.api_call_duration_ms is not None]
    if durations:
        summary.avg_api_duration_ms = _mean(durations)

    settled = sorted((t for t in trades if t.is_settled), key=lambda t: t.timestamp_ms)
    if not settled:
        return summary

    net_profits = [t.profit_with_gas_usd for t in settled if t.profit_with_gas_usd is not None]
    raw_profits = [t.raw_profit_usd for t in settled if t.raw_profit_usd is not None]

    summary.trades_with_profit = len(settled)
    summary.trades_with_net_profit = len(net_profits)
    summary.trades_with_raw_profit = len(raw_profits)
    summary.total_net_profit = sum(net_profits, ZERO)
    summary.total_raw_profit = sum(raw_profits, ZERO)
    summary.gas_cost = summary.total_raw_profit - summary.total_net_profit
    summary.avg_net_profit = _mean(net_profits)
    summary.avg_raw_profit = _mean(raw_profits)

    gains = [p for p in net_profits if p > ZERO]
    losses = [p for p in net_profits if p < ZERO]
    summary.profitable_trades = len(gains)
    summary.unprofitable_trades = len(losses)
    summary.total_gained = sum(gains, ZERO)
    summary.total_lost = abs(sum(losses, ZERO))
    summary.avg_gain = _mean(gains)
    summary.avg_loss = abs(_mean(losses))

    summary.start_time_ms = settled[0].timestamp_ms
    summary.end_time_ms = settled[-1].timestamp_ms
    summary.total_hours = Decimal(summary.end_time_ms - summary.start_time_ms) / MS_PER_HOUR
    if summary.total_hours > ZERO:
        summary.net_profit_per_hour = summary.total_net_profit / summary.total_hours
        summary.raw_profit_per_hour = summary.total_raw_profit / summary.total_hours
    summary.net_profit_per_day = summary.net_profit_per_hour * Decimal("24")
    summary.raw_profit_per_day = summary.raw_profit_per_hour * Decimal("24")

    cumulative_net: list[Decimal] = []
    cumulative_raw: list[Decimal] = []
    running_net = ZERO
    running_raw = ZERO
    for trade in settled:
        if trade.profit_with_gas_usd is not None:
            running_net += trade.profit_with_gas_usd
            cumulative_net.append(running_net)
        if trade.raw_profit_usd is not None:
            running_raw += trade.raw_profit_usd
            cumulative_raw.append(running_raw)

    if cumulative_net:
        summary.net_high = max(cumulative_net)
        summary.net_low = min(cumulative_net)
        summary.net_avg = _mean(cumulative_net)
        summary.net_volatility = _population_std(cumulative_net, summary.net_avg)
    if cumulative_raw:
        summary.raw_high = max(cumulative_raw)
        summary.raw_low = min(cumulative_raw)
        summary.raw_avg = _mean(cumulative_raw)

    return summary


def aggregate(trades: Sequence[Trade], window: WindowSpec, now_ms: int) -> TradePnLResult:
    """Build the net/raw cumulative grid series and summary for ``window``.

    Trades are filtered to the window (cutoff inclusive, nothing after
    ``now_ms``) and sorted ascending before the grid walk.
    """
    in_window = sorted(
        (t for t in filter_series(trades, window, now_ms) if t.timestamp_ms <= now_ms),
        key=lambda t: t.timestamp_ms,
    )
    start_ms, end_ms, interval_ms = grid_bounds(in_window, window, now_ms)
    net_series, raw_series = build_cumulative_grid(in_window, start_ms, end_ms, interval_ms)

    return TradePnLResult(
        net_series=net_series,
        raw_series=raw_series,
        summary=summarize_trades(in_window),
        start_ms=start_ms,
        end_ms=end_ms,
        interval_ms=interval_ms,
    )

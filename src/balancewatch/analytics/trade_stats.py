"""Store-wide trade statistics for the trades overview.

Pure Decimal aggregation over a list of Trade records. Min/max/avg entries are
None when no trade carries the underlying value.
"""

from collections import Counter
from collections.abc import Sequence
from decimal import Decimal

from balancewatch.models import ZERO, Trade

TRIGGER_CATEGORIES = ("onchain", "onsite")
TRIGGER_TYPES = ("fast_hook", "rollbit_price_update")


def _min_max_avg(values: list[Decimal]) -> tuple[Decimal | None, Decimal | None, Decimal | None]:
    if not values:
        return None, None, None
    return min(values), max(values), sum(values, ZERO) / Decimal(len(values))


def _avg(values: list[Decimal]) -> Decimal | None:
    return _min_max_avg(values)[2]


def trade_statistics(trades: Sequence[Trade]) -> dict:
    """Aggregate counts, volumes, win/loss and latency statistics.

    Returns:
        Dict keyed like the trades API statistics block.
    """
    winning = [t for t in trades if t.is_win]
    losing = [t for t in trades if t.is_loss]

    win_amounts = [t.trade_amount for t in winning]
    loss_amounts = [t.trade_amount for t in losing]
    win_gaps = [
        t.opponent_time_gap_ms
        for t in winning
        if t.opponent and t.opponent_time_gap_ms is not None
    ]
    loss_gaps = [t.opponent_time_gap_ms for t in losing if t.opponent_time_gap_ms is not None]

    min_win, max_win, avg_win = _min_max_avg(win_amounts)
    min_loss, max_loss, avg_loss = _min_max_avg(loss_amounts)
    min_win_gap, max_win_gap, avg_win_gap = _min_max_avg(win_gaps)
    min_loss_gap, max_loss_gap, avg_loss_gap = _min_max_avg(loss_gaps)

    durations = [t.api_call_duration_ms for t in trades if t.api_call_duration_ms is not None]
    min_duration, max_duration, avg_duration = _min_max_avg(durations)

    decided = len(winning) + len(losing)
    win_rate = (
        Decimal(len(winning)) / Decimal(decided) * Decimal("100") if decided > 0 else None
    )

    by_amount = Counter(str(t.trade_amount) for t in trades)

    return {
        "total_trades": len(trades),
        "by_trigger_category": {
            category: sum(1 for t in trades if t.trigger_category == category)
            for category in TRIGGER_CATEGORIES
        },
        "by_trigger_type": {
            trigger: sum(1 for t in trades if t.trigger_type == trigger)
            for trigger in TRIGGER_TYPES
        },
        "by_trade_amount": dict(by_amount),
        "total_volume": sum((t.trade_amount for t in trades), ZERO),
        "with_opponent": sum(1 for t in trades if t.opponent),
        "without_opponent": sum(1 for t in trades if not t.opponent),
        "wins": len(winning),
        "losses": len(losing),
        "win_rate": win_rate,
        "min_win_amount": min_win,
        "max_win_amount": max_win,
        "avg_win_amount": avg_win,
        "total_win_volume": sum(win_amounts, ZERO),
        "min_loss_amount": min_loss,
        "max_loss_amount": max_loss,
        "avg_loss_amount": avg_loss,
        "total_loss_volume": sum(loss_amounts, ZERO),
        "min_win_time_gap_ms": min_win_gap,
        "max_win_time_gap_ms": max_win_gap,
        "avg_win_time_gap_ms": avg_win_gap,
        "min_loss_time_gap_ms": min_loss_gap,
        "max_loss_time_gap_ms": max_loss_gap,
        "avg_loss_time_gap_ms": avg_loss_gap,
        "avg_api_duration_ms": avg_duration,
        "min_api_duration_ms": min_duration,
        "max_api_duration_ms": max_duration,
        "avg_api_duration_by_category": {
            category: _avg([
                t.api_call_duration_ms
                for t in trades
                if t.trigger_category == category and t.api_call_duration_ms is not None
            ])
            for category in TRIGGER_CATEGORIES
        },
        "avg_priority_gwei_with_opponent": _avg(
            [t.priority_gwei for t in trades if t.opponent and t.priority_gwei is not None]
        ),
        "avg_priority_gwei_without_opponent": _avg(
            [t.priority_gwei for t in trades if not t.opponent and t.priority_gwei is not None]
        ),
        "avg_opponent_time_gap_ms": _avg(
            [t.opponent_time_gap_ms for t in trades if t.opponent_time_gap_ms is not None]
        ),
    }

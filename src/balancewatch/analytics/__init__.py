"""Balance and trade analytics: P/L windows, cumulative trade P&L, statistics."""

from balancewatch.analytics.profit import analyze
from balancewatch.analytics.trade_pnl import (
    PnLPoint,
    TradePnLResult,
    TradeSummary,
    aggregate,
    build_cumulative_grid,
    summarize_trades,
)
from balancewatch.analytics.trade_stats import trade_statistics

__all__ = [
    "PnLPoint",
    "TradePnLResult",
    "TradeSummary",
    "aggregate",
    "analyze",
    "build_cumulative_grid",
    "summarize_trades",
    "trade_statistics",
]

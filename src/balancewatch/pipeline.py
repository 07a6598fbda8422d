"""Display pipeline: store fetches, window selection and derived chart data.

Flow per state() call:

    historical + committed live points (SeriesMerger.combined_series)
      -> filter_series(window)
      -> downsample(window)                      -> chart
      -> analyze(total_usd / total_usd_usdt)     -> summary cards
    trades -> aggregate(window)                  -> trade P&L chart + summary

refresh() and set_window() share a generation counter. A refresh records the
generation it started under and drops its results if the counter moved while
its fetches were in flight, so a slow response can never overwrite the data
of a newer window.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from balancewatch.analytics.profit import analyze
from balancewatch.analytics.trade_pnl import TradePnLResult, aggregate
from balancewatch.data.store import HistoryStore, TradeStore
from balancewatch.exceptions import TransientFetchError, ValidationError
from balancewatch.logging import get_logger
from balancewatch.models import AnalyticsWindow, HistoryPoint, Trade
from balancewatch.series.downsample import downsample
from balancewatch.series.merger import SeriesMerger
from balancewatch.series.window import WindowSpec, filter_series, parse_window

logger = get_logger(__name__)


@dataclass
class DisplayState:
    """Everything a consumer needs to render one frame."""

    window: WindowSpec
    now_ms: int
    combined_series: list[HistoryPoint] = field(default_factory=list)
    filtered_series: list[HistoryPoint] = field(default_factory=list)
    downsampled_series: list[HistoryPoint] = field(default_factory=list)
    usd_analytics: AnalyticsWindow = field(default_factory=AnalyticsWindow.empty)
    stable_analytics: AnalyticsWindow = field(default_factory=AnalyticsWindow.empty)
    trade_pnl: TradePnLResult = field(default_factory=TradePnLResult)
    last_error: str | None = None


class DisplayPipeline:
    """Owns the active window, the fetched trades and the SeriesMerger's history.

    Args:
        history_store: Source of the historical balance series.
        trade_store: Source of trades.
        merger: Merger holding the historical series and the live tail.
        window: Initial window (defaults to the 24h preset).
    """

    def __init__(
        self,
        history_store: HistoryStore,
        trade_store: TradeStore,
        merger: SeriesMerger,
        window: WindowSpec | None = None,
    ) -> None:
        self._history_store = history_store
        self._trade_store = trade_store
        self._merger = merger
        self._window = window or WindowSpec()
        self._trades: list[Trade] = []
        self._generation = 0
        self._last_error: str | None = None

    @property
    def window(self) -> WindowSpec:
        return self._window

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def trades(self) -> list[Trade]:
        return list(self._trades)

    @property
    def last_error(self) -> str | None:
        """Message of the last failed refresh, cleared by a successful one."""
        return self._last_error

    def set_window(
        self,
        preset: str | None = None,
        custom_days: str | int | None = None,
    ) -> bool:
        """Switch to a new window.

        Invalid input is logged and ignored; the previous window stays active.

        Returns:
            True if the window changed.
        """
        try:
            window = parse_window(preset, custom_days)
        except ValidationError as exc:
            logger.warning(
                "window_rejected",
                preset=preset,
                custom_days=custom_days,
                error=str(exc),
                active=self._window.label(),
            )
            return False

        self._window = window
        self._generation += 1
        logger.info("window_changed", window=window.label(), generation=self._generation)
        return True

    async def refresh(self) -> bool:
        """Refetch history and trades concurrently.

        Returns:
            True if the results were applied, False if the fetch failed or was
            superseded by a newer refresh or window change.
        """
        self._generation += 1
        token = self._generation

        try:
            history, trades = await asyncio.gather(
                self._history_store.fetch_history(),
                self._trade_store.fetch_trades(),
            )
        except TransientFetchError as exc:
            if token == self._generation:
                self._last_error = str(exc)
            logger.warning("refresh_failed", error=str(exc), generation=token)
            return False

        if token != self._generation:
            logger.info(
                "stale_result_discarded",
                generation=token,
                current_generation=self._generation,
            )
            return False

        self._merger.set_historical(history)
        self._trades = list(trades)
        self._last_error = None
        logger.debug(
            "refresh_applied",
            history_points=len(history),
            trades=len(trades),
            generation=token,
        )
        return True

    def reset_live(self) -> None:
        """Drop the live tail, e.g. after snapshots were purged from the store."""
        self._merger.reset_live()

    def state(self, now_ms: int | None = None) -> DisplayState:
        """Compute the chart series and summaries for the active window."""
        if now_ms is None:
            now_ms = int(time.time() * 1000)

        window = self._window
        combined = self._merger.combined_series()
        filtered = filter_series(combined, window, now_ms)

        return DisplayState(
            window=window,
            now_ms=now_ms,
            combined_series=combined,
            filtered_series=filtered,
            downsampled_series=downsample(filtered, window),
            usd_analytics=analyze(filtered, "total_usd"),
            stable_analytics=analyze(filtered, "total_usd_usdt"),
            trade_pnl=aggregate(self._trades, window, now_ms),
            last_error=self._last_error,
        )

    def trade_pnl(self, window: WindowSpec, now_ms: int | None = None) -> TradePnLResult:
        """Trade P&L for an arbitrary window over the last fetched trades."""
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        return aggregate(self._trades, window, now_ms)


def latest_point(series: Sequence[HistoryPoint]) -> HistoryPoint | None:
    """Most recent point by timestamp, or None for an empty series."""
    if not series:
        return None
    return max(series, key=lambda p: p.timestamp_ms)

"""Series shaping: range filtering, adaptive downsampling and live merging."""

from balancewatch.series.downsample import bucket_points, downsample
from balancewatch.series.merger import AsyncioScheduler, CommitState, SeriesMerger
from balancewatch.series.window import (
    WindowSpec,
    filter_series,
    parse_window,
    select_interval_ms,
)

__all__ = [
    "AsyncioScheduler",
    "CommitState",
    "SeriesMerger",
    "WindowSpec",
    "bucket_points",
    "downsample",
    "filter_series",
    "parse_window",
    "select_interval_ms",
]

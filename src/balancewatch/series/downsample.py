"""Adaptive time-bucket downsampling for chart series.

Each point is assigned to bucket floor(timestamp_ms / interval_ms). A single
left-to-right pass keeps the last point seen per bucket, so when the live tail
arrives slightly out of order the later *arrival* wins, not the later
timestamp. Output is one point per bucket, ascending by timestamp.

Bucket keys are aligned to absolute time, so a series whose first point falls
mid-interval touches one partial bucket more than ceil(span / interval). That
oldest partial bucket is folded into its successor to keep the output within
the bound.
"""

from collections.abc import Sequence

from balancewatch.models import HistoryPoint
from balancewatch.series.window import WindowSpec, select_interval_ms, series_span_ms


def max_buckets(span_ms: int, interval_ms: int) -> int:
    """ceil(span / interval), at least 1."""
    return max(1, -(-span_ms // interval_ms))


def bucket_points(series: Sequence[HistoryPoint], interval_ms: int) -> list[HistoryPoint]:
    """Collapse ``series`` to the last-seen point of each ``interval_ms`` bucket."""
    if interval_ms <= 0:
        raise ValueError(f"interval_ms must be positive, got {interval_ms}")

    # bucket key -> (arrival index, point)
    buckets: dict[int, tuple[int, HistoryPoint]] = {}
    for arrival, point in enumerate(series):
        buckets[point.timestamp_ms // interval_ms] = (arrival, point)

    keys = sorted(buckets)
    limit = max_buckets(series_span_ms(series), interval_ms)
    while len(keys) > limit:
        oldest = keys.pop(0)
        folded = buckets.pop(oldest)
        if folded[0] > buckets[keys[0]][0]:
            buckets[keys[0]] = folded

    return sorted((point for _, point in buckets.values()), key=lambda p: p.timestamp_ms)


def downsample(series: Sequence[HistoryPoint], window: WindowSpec) -> list[HistoryPoint]:
    """Reduce an already-filtered series to a bounded number of points.

    The bucket width comes from the window (see select_interval_ms); for the
    "all" preset it is derived from the span of ``series`` itself.
    """
    if not series:
        return []
    interval_ms = select_interval_ms(window, series_span_ms(series))
    return bucket_points(series, interval_ms)

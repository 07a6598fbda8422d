"""Time windows: range filtering and the shared bucket-interval policy.

A window is either a preset lookback (1h, 6h, 24h, 7d, 30d, all) or an explicit
positive day count, which wins over the preset when both are given.

The interval policy in select_interval_ms is used by the downsampler and by the
trade P&L grid so both charts share the same time axis.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, TypeVar

from balancewatch.exceptions import ValidationError

MINUTE_MS = 60_000
HOUR_MS = 3_600_000
DAY_MS = 86_400_000

PRESET_LOOKBACK_MS: dict[str, int | None] = {
    "1h": HOUR_MS,
    "6h": 6 * HOUR_MS,
    "24h": DAY_MS,
    "7d": 7 * DAY_MS,
    "30d": 30 * DAY_MS,
    "all": None,
}

PRESET_INTERVAL_MS: dict[str, int] = {
    "1h": 30_000,
    "6h": MINUTE_MS,
    "24h": 2 * MINUTE_MS,
    "7d": 5 * MINUTE_MS,
    "30d": 15 * MINUTE_MS,
}


class Timestamped(Protocol):
    timestamp_ms: int


T = TypeVar("T", bound=Timestamped)


@dataclass(frozen=True)
class WindowSpec:
    """Active time window for filtering and interval selection."""

    preset: str = "24h"
    custom_days: int | None = None

    @property
    def is_custom(self) -> bool:
        return self.custom_days is not None

    @property
    def lookback_ms(self) -> int | None:
        """Lookback duration in ms, or None for an unbounded ("all") window."""
        if self.custom_days is not None:
            return self.custom_days * DAY_MS
        return PRESET_LOOKBACK_MS[self.preset]

    def cutoff_ms(self, now_ms: int) -> int | None:
        """Earliest timestamp included in the window (inclusive), None for no cutoff."""
        lookback = self.lookback_ms
        if lookback is None:
            return None
        return now_ms - lookback

    def label(self) -> str:
        return f"{self.custom_days}d" if self.custom_days is not None else self.preset


def parse_window(
    preset: str | None = None,
    custom_days: str | int | None = None,
) -> WindowSpec:
    """Build a WindowSpec from raw user input.

    An empty or missing ``custom_days`` means "use the preset". A present but
    non-integer or non-positive day count is rejected, as is an unknown preset.

    Raises:
        ValidationError: If the input does not describe a valid window.
    """
    if custom_days is not None and str(custom_days).strip() != "":
        try:
            days = int(str(custom_days).strip())
        except ValueError as exc:
            raise ValidationError(f"custom day count must be an integer, got {custom_days!r}") from exc
        if days <= 0:
            raise ValidationError(f"custom day count must be positive, got {days}")
        return WindowSpec(preset=preset if preset in PRESET_LOOKBACK_MS else "24h", custom_days=days)

    preset = preset or "24h"
    if preset not in PRESET_LOOKBACK_MS:
        raise ValidationError(f"unknown range preset {preset!r}")
    return WindowSpec(preset=preset)


def filter_series(series: Sequence[T], window: WindowSpec, now_ms: int) -> list[T]:
    """Return the points of ``series`` inside ``window``, in their original order.

    The cutoff is inclusive (timestamp_ms >= cutoff). The input is not mutated.
    """
    cutoff = window.cutoff_ms(now_ms)
    if cutoff is None:
        return list(series)
    return [point for point in series if point.timestamp_ms >= cutoff]


def interval_for_days(days: float) -> int:
    """Bucket width for a window spanning ``days`` days."""
    if days <= 1:
        return MINUTE_MS
    if days <= 7:
        return 5 * MINUTE_MS
    if days <= 30:
        return 15 * MINUTE_MS
    return HOUR_MS


def series_span_ms(series: Sequence[Timestamped]) -> int:
    """Distance between the earliest and latest timestamps (0 for < 2 points)."""
    if len(series) < 2:
        return 0
    timestamps = [point.timestamp_ms for point in series]
    return max(timestamps) - min(timestamps)


def select_interval_ms(window: WindowSpec, span_ms: int = 0) -> int:
    """Bucket width for ``window``.

    Custom day counts and the "all" preset go through the day-based tiers
    (for "all", ``span_ms`` is the actual span of the data). Other presets
    have one fixed width each.
    """
    if window.custom_days is not None:
        return interval_for_days(window.custom_days)
    if window.preset == "all":
        return interval_for_days(span_ms / DAY_MS)
    return PRESET_INTERVAL_MS[window.preset]

"""High-delta anomaly detection over consecutive balance snapshots.

Each snapshot is compared with its predecessor (ascending time order). A pair
is anomalous when the stablecoin total (onsite USD + onchain USDT) or the token
total (onsite + onchain RLB) moves by more than its threshold.

In fast mode the later snapshot of the pair is reported. Otherwise the
following snapshot decides which side is the outlier: if it comes back to
within ``outlier_return_ratio`` of the delta from the previous level, the
current snapshot was a spike; if not, the previous snapshot is reported.

Range detection takes a different baseline: each snapshot is compared with the
median totals of the whole table, and consecutive outliers are grouped into
time ranges that are purged as a unit.
"""

from collections.abc import Iterable, Sequence
from dataclasses import replace
from decimal import Decimal

from balancewatch.config import AnomalyThresholds
from balancewatch.models import AnomalousRange, AnomalousSnapshot, BalanceSnapshot, Spike


def describe_deltas(
    stable_delta: Decimal,
    token_delta: Decimal,
    stable_hit: bool,
    token_hit: bool,
) -> str:
    """Human-readable reason, e.g. "USDT/USD: ±412.50, RLB: ±1200.00"."""
    reasons: list[str] = []
    if stable_hit:
        reasons.append(f"USDT/USD: ±{stable_delta:.2f}")
    if token_hit:
        reasons.append(f"RLB: ±{token_delta:.2f}")
    return ", ".join(reasons)


class AnomalyScanner:
    """Incremental detector fed with consecutive windows of snapshots.

    The last snapshot of each window is carried over as the predecessor of the
    first snapshot of the next one, so a store can page through its table
    without loading it whole. Each snapshot id is reported at most once and
    scanning stops once ``limit`` candidates are collected.
    """

    def __init__(
        self,
        thresholds: AnomalyThresholds,
        limit: int,
        fast: bool = True,
    ) -> None:
        self._thresholds = thresholds
        self._limit = limit
        self._fast = fast
        self._previous: BalanceSnapshot | None = None
        self._seen: set[str] = set()
        self.candidates: list[AnomalousSnapshot] = []

    @property
    def done(self) -> bool:
        return len(self.candidates) >= self._limit

    def feed(self, window: Sequence[BalanceSnapshot]) -> None:
        """Scan one ascending window of snapshots."""
        for i, current in enumerate(window):
            if self.done:
                break

            previous = window[i - 1] if i > 0 else self._previous
            if previous is None:
                continue

            stable_delta = abs(current.stable_total - previous.stable_total)
            token_delta = abs(current.token_total - previous.token_total)
            stable_hit = stable_delta > self._thresholds.stable_delta
            token_hit = token_delta > self._thresholds.token_delta
            if not stable_hit and not token_hit:
                continue

            flagged = current
            if not self._fast and i + 1 < len(window):
                following = window[i + 1]
                ratio = self._thresholds.outlier_return_ratio
                returns_to_previous = (
                    stable_hit
                    and abs(following.stable_total - previous.stable_total) < stable_delta * ratio
                ) or (
                    token_hit
                    and abs(following.token_total - previous.token_total) < token_delta * ratio
                )
                if not returns_to_previous:
                    flagged = previous

            if flagged.id in self._seen:
                continue
            self._seen.add(flagged.id)
            self.candidates.append(
                AnomalousSnapshot(
                    id=flagged.id,
                    timestamp_ms=flagged.timestamp_ms,
                    stable_delta=stable_delta,
                    token_delta=token_delta,
                    reason=describe_deltas(stable_delta, token_delta, stable_hit, token_hit),
                )
            )

        if window:
            self._previous = window[-1]


def detect_anomalies(
    snapshots: Sequence[BalanceSnapshot],
    thresholds: AnomalyThresholds,
    limit: int = 50,
    fast: bool = True,
) -> list[AnomalousSnapshot]:
    """Detect anomalies in a fully loaded ascending snapshot list."""
    scanner = AnomalyScanner(thresholds, limit=limit, fast=fast)
    scanner.feed(snapshots)
    return scanner.candidates


def find_spikes(
    snapshots: Iterable[BalanceSnapshot],
    thresholds: AnomalyThresholds,
) -> list[Spike]:
    """List every snapshot whose jump from its predecessor exceeds a threshold.

    Meant for manual review, so it always reports the later snapshot and does
    not stop at a page size.
    """
    spikes: list[Spike] = []
    previous: BalanceSnapshot | None = None
    for current in snapshots:
        if previous is not None:
            stable_jump = abs(current.stable_total - previous.stable_total)
            token_jump = abs(current.token_total - previous.token_total)
            stable_hit = stable_jump > thresholds.stable_delta
            token_hit = token_jump > thresholds.token_delta
            if stable_hit or token_hit:
                spikes.append(
                    Spike(
                        id=current.id,
                        timestamp_ms=current.timestamp_ms,
                        stable_total=current.stable_total,
                        token_total=current.token_total,
                        stable_jump=stable_jump,
                        token_jump=token_jump,
                        reason=describe_deltas(stable_jump, token_jump, stable_hit, token_hit),
                    )
                )
        previous = current
    return spikes


def _median(values: list[Decimal]) -> Decimal:
    """Upper median (element n // 2 of the sorted values)."""
    return sorted(values)[len(values) // 2]


def find_anomalous_ranges(
    snapshots: Sequence[BalanceSnapshot],
    thresholds: AnomalyThresholds,
) -> list[AnomalousRange]:
    """Group consecutive snapshots that stray from the median into time ranges.

    A snapshot is anomalous when its stablecoin total differs from the median
    stablecoin total by more than ``thresholds.stable_delta``, or its token
    total from the median token total by more than ``thresholds.token_delta``.
    The reason of a range describes its first snapshot.
    """
    if len(snapshots) < 2:
        return []

    median_stable = _median([s.stable_total for s in snapshots])
    median_token = _median([s.token_total for s in snapshots])

    ranges: list[AnomalousRange] = []
    current: AnomalousRange | None = None
    for snapshot in snapshots:
        stable_diff = abs(snapshot.stable_total - median_stable)
        token_diff = abs(snapshot.token_total - median_token)
        if stable_diff <= thresholds.stable_delta and token_diff <= thresholds.token_delta:
            if current is not None:
                ranges.append(current)
                current = None
            continue

        if current is None:
            current = AnomalousRange(
                start_ms=snapshot.timestamp_ms,
                end_ms=snapshot.timestamp_ms,
                reason=f"USDT diff: {stable_diff:.0f}, RLB diff: {token_diff:.0f}",
                snapshot_count=1,
            )
        else:
            current = replace(
                current,
                end_ms=snapshot.timestamp_ms,
                snapshot_count=current.snapshot_count + 1,
            )

    if current is not None:
        ranges.append(current)
    return ranges

"""Tests for high-delta anomaly detection and the spike listing."""

from decimal import Decimal

from balancewatch.config import AnomalyThresholds
from balancewatch.remediation.detector import (
    AnomalyScanner,
    describe_deltas,
    detect_anomalies,
    find_anomalous_ranges,
    find_spikes,
)
from factories import make_snapshot

THRESHOLDS = AnomalyThresholds()
SPIKE_THRESHOLDS = AnomalyThresholds(stable_delta=Decimal("500"), token_delta=Decimal("5000"))


def _series(*stables: int, token: int = 5000) -> list:
    return [make_snapshot(f"s{i + 1}", (i + 1) * 1000, stable=s, token=token) for i, s in enumerate(stables)]


class TestDescribeDeltas:
    def test_reason_format(self) -> None:
        reason = describe_deltas(Decimal("412.5"), Decimal("1200"), True, True)
        assert reason == "USDT/USD: ±412.50, RLB: ±1200.00"

    def test_only_hit_fields_listed(self) -> None:
        assert describe_deltas(Decimal("10"), Decimal("1200"), False, True) == "RLB: ±1200.00"


class TestDetectAnomalies:
    """Tests for pairwise delta detection."""

    def test_fast_mode_flags_later_snapshot(self) -> None:
        result = detect_anomalies(_series(1000, 1500, 1500), THRESHOLDS)
        assert [a.id for a in result] == ["s2"]
        assert result[0].stable_delta == Decimal("500")
        assert result[0].reason == "USDT/USD: ±500.00"

    def test_threshold_is_strict(self) -> None:
        """A move of exactly the threshold is not an anomaly."""
        assert detect_anomalies(_series(1000, 1300), THRESHOLDS) == []

    def test_token_threshold(self) -> None:
        snapshots = [
            make_snapshot("s1", 1, token=5000),
            make_snapshot("s2", 2, token=6000),
        ]
        result = detect_anomalies(snapshots, THRESHOLDS)
        assert [a.reason for a in result] == ["RLB: ±1000.00"]

    def test_lookahead_flags_spike_that_returns(self) -> None:
        """1000 -> 1500 -> 1000: the middle snapshot is the outlier."""
        result = detect_anomalies(_series(1000, 1500, 1000, 1000), THRESHOLDS, fast=False)
        assert [a.id for a in result] == ["s2"]

    def test_lookahead_flags_previous_on_level_shift(self) -> None:
        """1000 -> 1500 -> 1500: the value stays, so the earlier snapshot is suspect."""
        result = detect_anomalies(_series(1000, 1500, 1500), THRESHOLDS, fast=False)
        assert [a.id for a in result] == ["s1"]

    def test_limit_stops_scan(self) -> None:
        result = detect_anomalies(_series(0, 1000, 0, 1000, 0), THRESHOLDS, limit=2)
        assert [a.id for a in result] == ["s2", "s3"]

    def test_too_few_snapshots(self) -> None:
        assert detect_anomalies(_series(1000), THRESHOLDS) == []
        assert detect_anomalies([], THRESHOLDS) == []


class TestAnomalyScanner:
    """Tests for windowed scanning."""

    def test_previous_carried_across_windows(self) -> None:
        snapshots = _series(1000, 1000, 2000)
        scanner = AnomalyScanner(THRESHOLDS, limit=10)
        scanner.feed(snapshots[:2])
        scanner.feed(snapshots[2:])
        assert [a.id for a in scanner.candidates] == ["s3"]

    def test_done_at_limit(self) -> None:
        scanner = AnomalyScanner(THRESHOLDS, limit=1)
        scanner.feed(_series(0, 1000, 0))
        assert scanner.done
        assert len(scanner.candidates) == 1


class TestFindSpikes:
    """Tests for the manual review listing."""

    def test_lower_sensitivity(self) -> None:
        """A 400 move is an anomaly but not a spike; a 600 move is both."""
        spikes = find_spikes(_series(1000, 1400, 2000), SPIKE_THRESHOLDS)
        assert [s.id for s in spikes] == ["s3"]
        assert spikes[0].stable_jump == Decimal("600")
        assert spikes[0].stable_total == Decimal("2000")

    def test_empty(self) -> None:
        assert find_spikes([], SPIKE_THRESHOLDS) == []


class TestFindAnomalousRanges:
    """Tests for median-baseline range grouping."""

    def test_consecutive_outliers_grouped(self) -> None:
        ranges = find_anomalous_ranges(_series(1000, 1000, 2000, 2000, 1000, 1000, 1000, 3000), THRESHOLDS)

        assert [(r.start_ms, r.end_ms, r.snapshot_count) for r in ranges] == [
            (3000, 4000, 2),
            (8000, 8000, 1),
        ]
        assert ranges[0].reason == "USDT diff: 1000, RLB diff: 0"

    def test_token_deviation(self) -> None:
        snapshots = [
            make_snapshot(f"s{i + 1}", (i + 1) * 1000, token=t)
            for i, t in enumerate((5000, 5000, 6000, 5000))
        ]
        (only,) = find_anomalous_ranges(snapshots, THRESHOLDS)
        assert (only.start_ms, only.end_ms) == (3000, 3000)
        assert only.reason == "USDT diff: 0, RLB diff: 1000"

    def test_threshold_is_strict(self) -> None:
        assert find_anomalous_ranges(_series(1000, 1000, 1300), THRESHOLDS) == []

    def test_too_few_snapshots(self) -> None:
        assert find_anomalous_ranges(_series(9000), THRESHOLDS) == []

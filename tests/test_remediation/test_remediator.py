"""Tests for AnomalyRemediator -- confirm-once purge loop with a safety cap.

Runs against an in-memory HistoryStore so each transition can be observed.
"""

import asyncio
from collections.abc import Sequence
from unittest.mock import AsyncMock

import pytest

from balancewatch.config import AnomalyThresholds
from balancewatch.data.store import HistoryStore
from balancewatch.exceptions import (
    BatchOperationFailure,
    ConfirmationDeclined,
    ConvergenceExceeded,
    RemediationInProgress,
    SnapshotNotFound,
    TransientFetchError,
)
from balancewatch.models import AnomalousRange, AnomalyPage, BalanceSnapshot, HistoryPoint
from balancewatch.remediation.detector import detect_anomalies, find_anomalous_ranges
from balancewatch.remediation.remediator import AnomalyRemediator, RemediationState
from factories import make_snapshot


class InMemoryHistoryStore(HistoryStore):
    """HistoryStore over a list, with optional injected failures."""

    def __init__(self, snapshots: list[BalanceSnapshot]) -> None:
        self.snapshots = list(snapshots)
        self.delete_calls: list[list[str]] = []
        self.fail_delete_on_call: int | None = None
        self.range_calls: list[tuple[int, int]] = []
        self.fail_range_on_call: int | None = None
        self.fail_fetch = False

    async def fetch_history(self, since_ms=None, until_ms=None, limit=None) -> list[HistoryPoint]:
        return [s.to_history_point() for s in self.snapshots]

    async def fetch_anomaly_candidates(
        self, thresholds: AnomalyThresholds, page_size: int
    ) -> AnomalyPage:
        if self.fail_fetch:
            raise TransientFetchError("store offline")
        return AnomalyPage(detect_anomalies(self.snapshots, thresholds, limit=page_size))

    async def batch_delete(self, ids: Sequence[str]) -> int:
        self.delete_calls.append(list(ids))
        if self.fail_delete_on_call == len(self.delete_calls):
            raise BatchOperationFailure(list(ids), "disk I/O error")
        before = len(self.snapshots)
        self.snapshots = [s for s in self.snapshots if s.id not in set(ids)]
        return before - len(self.snapshots)

    async def delete_one(self, snapshot_id: str) -> BalanceSnapshot:
        for snapshot in self.snapshots:
            if snapshot.id == snapshot_id:
                self.snapshots.remove(snapshot)
                return snapshot
        raise SnapshotNotFound(snapshot_id)

    async def fetch_anomalous_ranges(self, thresholds: AnomalyThresholds) -> list[AnomalousRange]:
        if self.fail_fetch:
            raise TransientFetchError("store offline")
        return find_anomalous_ranges(self.snapshots, thresholds)

    async def delete_range(self, start_ms: int, end_ms: int) -> int:
        self.range_calls.append((start_ms, end_ms))
        if self.fail_range_on_call == len(self.range_calls):
            raise BatchOperationFailure([], "disk I/O error", target=f"range {start_ms}..{end_ms}")
        before = len(self.snapshots)
        self.snapshots = [s for s in self.snapshots if not start_ms <= s.timestamp_ms <= end_ms]
        return before - len(self.snapshots)


def _cascade() -> list[BalanceSnapshot]:
    """s2 and s3 are anomalous; once removed, s4 jumps from s1 and is next."""
    return [
        make_snapshot("s1", 1000, stable=1000),
        make_snapshot("s2", 2000, stable=1500),
        make_snapshot("s3", 3000, stable=2000),
        make_snapshot("s4", 4000, stable=2000),
    ]


def _clean() -> list[BalanceSnapshot]:
    return [make_snapshot(f"s{i}", i * 1000, stable=1000 + i) for i in range(5)]


def _plateaus() -> list[BalanceSnapshot]:
    """Median stable total is 1000; s3-s4 and s7 sit far above it."""
    stables = (1000, 1000, 2000, 2000, 1000, 1000, 3000)
    return [make_snapshot(f"s{i + 1}", (i + 1) * 1000, stable=s) for i, s in enumerate(stables)]


def _remediator(store: HistoryStore, confirm=None, **kwargs) -> AnomalyRemediator:
    return AnomalyRemediator(store, confirm, iteration_delay=0, **kwargs)


class TestConvergence:
    """Tests for runs that reach CONVERGED."""

    @pytest.mark.asyncio
    async def test_no_anomalies_skips_confirmation(self) -> None:
        confirm = AsyncMock(return_value=True)
        store = InMemoryHistoryStore(_clean())

        report = await _remediator(store, confirm).run()

        assert report.outcome is RemediationState.CONVERGED
        assert report.removed_count == 0
        assert report.iterations == 0
        assert report.transitions == [RemediationState.DETECTING, RemediationState.CONVERGED]
        confirm.assert_not_awaited()
        assert store.delete_calls == []

    @pytest.mark.asyncio
    async def test_cascade_confirmed_once(self) -> None:
        """Removing s2/s3 exposes s4; the second batch needs no new confirmation."""
        confirm = AsyncMock(return_value=True)
        store = InMemoryHistoryStore(_cascade())

        report = await _remediator(store, confirm).run()

        assert report.outcome is RemediationState.CONVERGED
        assert report.iterations == 2
        assert report.removed_count == 3
        assert store.delete_calls == [["s2", "s3"], ["s4"]]
        assert [s.id for s in store.snapshots] == ["s1"]
        confirm.assert_awaited_once()
        assert confirm.await_args.args[0].ids == ["s2", "s3"]

    @pytest.mark.asyncio
    async def test_second_run_is_noop(self) -> None:
        store = InMemoryHistoryStore(_cascade())
        remediator = _remediator(store, AsyncMock(return_value=True))

        await remediator.run()
        report = await remediator.run()

        assert report.outcome is RemediationState.CONVERGED
        assert report.removed_count == 0

    @pytest.mark.asyncio
    async def test_batches_bounded_by_page_size(self) -> None:
        snapshots = [make_snapshot(f"s{i}", i, stable=1000 if i % 2 == 0 else 2000) for i in range(7)]
        store = InMemoryHistoryStore(snapshots)

        await _remediator(store, AsyncMock(return_value=True), page_size=2).run()

        assert all(len(batch) <= 2 for batch in store.delete_calls)


class TestAbort:
    """Tests for declined, failed and capped runs."""

    @pytest.mark.asyncio
    async def test_declined_deletes_nothing(self) -> None:
        store = InMemoryHistoryStore(_cascade())

        report = await _remediator(store, AsyncMock(return_value=False)).run()

        assert report.outcome is RemediationState.ABORTED
        assert report.declined
        assert report.removed_count == 0
        assert store.delete_calls == []
        report.raise_for_outcome()

    @pytest.mark.asyncio
    async def test_confirmation_declined_exception(self) -> None:
        store = InMemoryHistoryStore(_cascade())
        confirm = AsyncMock(side_effect=ConfirmationDeclined("operator said no"))

        report = await _remediator(store, confirm).run()

        assert report.declined
        assert len(store.snapshots) == 4

    @pytest.mark.asyncio
    async def test_without_confirm_callback_declines(self) -> None:
        report = await _remediator(InMemoryHistoryStore(_cascade())).run()
        assert report.declined

    @pytest.mark.asyncio
    async def test_per_run_callback_overrides_default(self) -> None:
        store = InMemoryHistoryStore(_cascade())
        remediator = _remediator(store, AsyncMock(return_value=False))

        report = await remediator.run(AsyncMock(return_value=True))

        assert report.outcome is RemediationState.CONVERGED
        assert report.removed_count == 3

    @pytest.mark.asyncio
    async def test_cap_exceeded(self) -> None:
        store = InMemoryHistoryStore(_cascade())

        report = await _remediator(
            store, AsyncMock(return_value=True), max_iterations=1
        ).run()

        assert report.outcome is RemediationState.CAP_EXCEEDED
        assert report.iterations == 1
        assert report.removed_count == 2
        assert isinstance(report.error, ConvergenceExceeded)
        with pytest.raises(ConvergenceExceeded):
            report.raise_for_outcome()

    @pytest.mark.asyncio
    async def test_per_run_cap_overrides_default(self) -> None:
        remediator = _remediator(InMemoryHistoryStore(_cascade()), AsyncMock(return_value=True))

        report = await remediator.run(max_iterations=1)

        assert report.outcome is RemediationState.CAP_EXCEEDED
        assert report.iterations == 1

    @pytest.mark.asyncio
    async def test_batch_failure_keeps_prior_batches(self) -> None:
        store = InMemoryHistoryStore(_cascade())
        store.fail_delete_on_call = 2

        report = await _remediator(store, AsyncMock(return_value=True)).run()

        assert report.outcome is RemediationState.ABORTED
        assert isinstance(report.error, BatchOperationFailure)
        assert report.error.ids == ["s4"]
        assert report.removed_count == 2
        assert [s.id for s in store.snapshots] == ["s1", "s4"]

    @pytest.mark.asyncio
    async def test_fetch_failure_aborts(self) -> None:
        store = InMemoryHistoryStore(_cascade())
        store.fail_fetch = True

        report = await _remediator(store, AsyncMock(return_value=True)).run()

        assert report.outcome is RemediationState.ABORTED
        assert isinstance(report.error, TransientFetchError)
        assert not report.declined


class TestSerialization:
    """Tests for one-run-at-a-time enforcement."""

    @pytest.mark.asyncio
    async def test_concurrent_run_rejected(self) -> None:
        release = asyncio.Event()
        entered = asyncio.Event()

        async def slow_confirm(page: AnomalyPage) -> bool:
            entered.set()
            await release.wait()
            return False

        remediator = _remediator(InMemoryHistoryStore(_cascade()), slow_confirm)
        first = asyncio.create_task(remediator.run())
        await entered.wait()

        assert remediator.running
        with pytest.raises(RemediationInProgress):
            await remediator.run()

        release.set()
        report = await first
        assert report.declined
        assert not remediator.running

    @pytest.mark.asyncio
    async def test_range_purge_rejected_during_run(self) -> None:
        release = asyncio.Event()
        entered = asyncio.Event()

        async def slow_confirm(page: AnomalyPage) -> bool:
            entered.set()
            await release.wait()
            return False

        store = InMemoryHistoryStore(_cascade())
        remediator = _remediator(store, slow_confirm)
        first = asyncio.create_task(remediator.run())
        await entered.wait()

        with pytest.raises(RemediationInProgress):
            await remediator.purge_ranges()

        release.set()
        await first
        assert store.range_calls == []


class TestRangePurge:
    """Tests for the median-baseline range purge."""

    @pytest.mark.asyncio
    async def test_every_snapshot_in_range_deleted(self) -> None:
        store = InMemoryHistoryStore(_plateaus())

        report = await _remediator(store).purge_ranges()

        assert store.range_calls == [(3000, 4000), (7000, 7000)]
        assert report.removed_count == 3
        assert report.purged_ranges == 2
        assert report.error is None
        assert [s.id for s in store.snapshots] == ["s1", "s2", "s5", "s6"]

    @pytest.mark.asyncio
    async def test_dry_run_deletes_nothing(self) -> None:
        store = InMemoryHistoryStore(_plateaus())

        report = await _remediator(store).purge_ranges(dry_run=True)

        assert report.dry_run
        assert report.snapshot_count == 3
        assert report.removed_count == 0
        assert store.range_calls == []
        assert len(store.snapshots) == 7

    @pytest.mark.asyncio
    async def test_clean_history_has_no_ranges(self) -> None:
        store = InMemoryHistoryStore(_clean())
        report = await _remediator(store).purge_ranges()
        assert report.ranges == []
        assert store.range_calls == []

    @pytest.mark.asyncio
    async def test_failed_range_keeps_earlier_ranges(self) -> None:
        store = InMemoryHistoryStore(_plateaus())
        store.fail_range_on_call = 2

        report = await _remediator(store).purge_ranges()

        assert isinstance(report.error, BatchOperationFailure)
        assert "range 7000..7000" in str(report.error)
        assert report.removed_count == 2
        assert report.purged_ranges == 1
        assert [s.id for s in store.snapshots] == ["s1", "s2", "s5", "s6", "s7"]

    @pytest.mark.asyncio
    async def test_fetch_failure_recorded(self) -> None:
        store = InMemoryHistoryStore(_plateaus())
        store.fail_fetch = True

        report = await _remediator(store).purge_ranges()

        assert isinstance(report.error, TransientFetchError)
        assert store.range_calls == []

"""Iterative anomaly purge with one-time operator confirmation and a safety cap.

State machine:

    DETECTING --no candidates--------------------------> CONVERGED
    DETECTING --candidates, first pass-----------------> AWAITING_CONFIRMATION
    DETECTING --candidates, confirmed------------------> PURGING
    DETECTING --candidates, cap reached----------------> CAP_EXCEEDED
    AWAITING_CONFIRMATION --declined-------------------> ABORTED (nothing deleted)
    AWAITING_CONFIRMATION --confirmed------------------> PURGING
    PURGING --batch deleted----------------------------> DETECTING
    PURGING --batch failed-----------------------------> ABORTED (prior batches kept)

Deleting one anomaly can expose the next one (the neighbour it was compared
with changes), hence the loop back to DETECTING. Runs against one store are
serialized: starting a second run while one is active raises
RemediationInProgress.

purge_ranges() is the coarser alternative: it deletes whole time ranges of
snapshots that stray from the median level, in a single pass.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING
from uuid import uuid4

import structlog

from balancewatch.config import AnomalyThresholds
from balancewatch.exceptions import (
    BalanceWatchError,
    BatchOperationFailure,
    ConfirmationDeclined,
    ConvergenceExceeded,
    RemediationInProgress,
    TransientFetchError,
)
from balancewatch.logging import get_logger
from balancewatch.models import AnomalousRange, AnomalyPage

if TYPE_CHECKING:
    from balancewatch.data.store import HistoryStore

logger = get_logger(__name__)

ConfirmCallback = Callable[[AnomalyPage], Awaitable[bool]]


class RemediationState(str, Enum):
    """States of a remediation run."""

    DETECTING = "detecting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    PURGING = "purging"
    CONVERGED = "converged"
    ABORTED = "aborted"
    CAP_EXCEEDED = "cap_exceeded"


TERMINAL_STATES = frozenset(
    {RemediationState.CONVERGED, RemediationState.ABORTED, RemediationState.CAP_EXCEEDED}
)


@dataclass
class RemediationRun:
    """Mutable state of one run, threaded through the transitions."""

    run_id: str
    state: RemediationState = RemediationState.DETECTING
    page: AnomalyPage = field(default_factory=AnomalyPage)
    confirm: ConfirmCallback | None = field(default=None, repr=False)
    confirmed: bool = False
    max_iterations: int = 100
    iterations: int = 0
    removed_count: int = 0
    error: BalanceWatchError | None = None
    history: list[RemediationState] = field(default_factory=list)


@dataclass
class RemediationReport:
    """Outcome of a remediation run."""

    outcome: RemediationState
    removed_count: int
    iterations: int
    error: BalanceWatchError | None = None
    transitions: list[RemediationState] = field(default_factory=list)

    @property
    def declined(self) -> bool:
        """Operator declined: aborted without an error and nothing removed."""
        return self.outcome is RemediationState.ABORTED and self.error is None

    def raise_for_outcome(self) -> None:
        """Re-raise the recorded failure (batch failure, fetch failure, cap hit)."""
        if self.error is not None:
            raise self.error


@dataclass
class RangePurgeReport:
    """Outcome of a range purge."""

    dry_run: bool = False
    ranges: list[AnomalousRange] = field(default_factory=list)
    purged_ranges: int = 0
    removed_count: int = 0
    error: BalanceWatchError | None = None

    @property
    def snapshot_count(self) -> int:
        """Snapshots inside the detected ranges."""
        return sum(r.snapshot_count for r in self.ranges)


class AnomalyRemediator:
    """Detect-and-purge loop over a HistoryStore.

    Args:
        store: Store providing the anomaly scans and the batch and range deletes.
        confirm: Default async callback shown the first page of candidates;
            returns True to proceed. It may also raise ConfirmationDeclined.
            Without a callback (here or passed to run()) every run is declined.
        thresholds: Delta thresholds passed to the detector.
        page_size: Candidates requested per detection pass.
        max_iterations: Hard cap on purge batches per run.
        iteration_delay: Seconds to pause between batches.
    """

    def __init__(
        self,
        store: HistoryStore,
        confirm: ConfirmCallback | None = None,
        thresholds: AnomalyThresholds | None = None,
        page_size: int = 100,
        max_iterations: int = 100,
        iteration_delay: float = 0.2,
    ) -> None:
        self._store = store
        self._confirm = confirm
        self._thresholds = thresholds or AnomalyThresholds()
        self._page_size = page_size
        self._max_iterations = max_iterations
        self._iteration_delay = iteration_delay
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run(
        self,
        confirm: ConfirmCallback | None = None,
        max_iterations: int | None = None,
    ) -> RemediationReport:
        """Run the loop to a terminal state and report the outcome.

        Args:
            confirm: Confirmation callback for this run, overriding the default.
            max_iterations: Batch cap for this run, overriding the default.

        Raises:
            RemediationInProgress: If another run on this remediator is active.
        """
        if self._lock.locked():
            raise RemediationInProgress("an anomaly purge is already running")

        async with self._lock:
            run = RemediationRun(
                run_id=uuid4().hex[:12],
                confirm=confirm or self._confirm,
                max_iterations=max_iterations or self._max_iterations,
            )
            with structlog.contextvars.bound_contextvars(remediation_run=run.run_id):
                logger.info(
                    "remediation_started",
                    page_size=self._page_size,
                    max_iterations=run.max_iterations,
                )
                while run.state not in TERMINAL_STATES:
                    run.history.append(run.state)
                    run.state = await self.step(run)
                run.history.append(run.state)

                logger.info(
                    "remediation_finished",
                    outcome=run.state.value,
                    removed_count=run.removed_count,
                    iterations=run.iterations,
                    error=str(run.error) if run.error else None,
                )

        return RemediationReport(
            outcome=run.state,
            removed_count=run.removed_count,
            iterations=run.iterations,
            error=run.error,
            transitions=run.history,
        )

    async def step(self, run: RemediationRun) -> RemediationState:
        """Execute the action of ``run.state`` and return the next state."""
        if run.state is RemediationState.DETECTING:
            return await self._detect(run)
        if run.state is RemediationState.AWAITING_CONFIRMATION:
            return await self._await_confirmation(run)
        if run.state is RemediationState.PURGING:
            return await self._purge(run)
        return run.state

    async def _detect(self, run: RemediationRun) -> RemediationState:
        try:
            run.page = await self._store.fetch_anomaly_candidates(
                self._thresholds, self._page_size
            )
        except TransientFetchError as exc:
            run.error = exc
            logger.error("remediation_detect_failed", error=str(exc))
            return RemediationState.ABORTED

        if not run.page.candidates:
            if run.removed_count == 0:
                logger.info("remediation_no_anomalies")
            else:
                logger.info("remediation_converged", removed_count=run.removed_count)
            return RemediationState.CONVERGED

        if run.iterations >= run.max_iterations:
            run.error = ConvergenceExceeded(run.iterations, run.removed_count)
            logger.warning(
                "remediation_cap_exceeded",
                iterations=run.iterations,
                removed_count=run.removed_count,
                remaining=len(run.page),
            )
            return RemediationState.CAP_EXCEEDED

        if not run.confirmed:
            return RemediationState.AWAITING_CONFIRMATION
        return RemediationState.PURGING

    async def _await_confirmation(self, run: RemediationRun) -> RemediationState:
        accepted = False
        if run.confirm is not None:
            try:
                accepted = await run.confirm(run.page)
            except ConfirmationDeclined:
                accepted = False

        if not accepted:
            logger.info("remediation_declined", candidates=len(run.page))
            return RemediationState.ABORTED

        run.confirmed = True
        logger.info("remediation_confirmed", candidates=len(run.page))
        return RemediationState.PURGING

    async def _purge(self, run: RemediationRun) -> RemediationState:
        ids = run.page.ids
        try:
            deleted = await self._store.batch_delete(ids)
        except BatchOperationFailure as exc:
            run.error = exc
            logger.error(
                "remediation_batch_failed",
                iteration=run.iterations + 1,
                batch_size=len(ids),
                removed_count=run.removed_count,
                error=exc.reason,
            )
            return RemediationState.ABORTED

        run.iterations += 1
        run.removed_count += deleted
        logger.info(
            "remediation_batch_deleted",
            iteration=run.iterations,
            deleted=deleted,
            removed_count=run.removed_count,
        )

        if self._iteration_delay > 0:
            await asyncio.sleep(self._iteration_delay)
        return RemediationState.DETECTING

    async def purge_ranges(self, dry_run: bool = False) -> RangePurgeReport:
        """Delete every snapshot inside the anomalous ranges found against the median.

        One detection pass is made. Ranges are deleted oldest first; a failed
        range stops the purge and keeps the ranges already deleted. With
        ``dry_run`` nothing is deleted and the report lists what would be.

        Raises:
            RemediationInProgress: If another run on this remediator is active.
        """
        if self._lock.locked():
            raise RemediationInProgress("an anomaly purge is already running")

        async with self._lock:
            report = RangePurgeReport(dry_run=dry_run)
            try:
                report.ranges = await self._store.fetch_anomalous_ranges(self._thresholds)
            except TransientFetchError as exc:
                report.error = exc
                logger.error("range_purge_detect_failed", error=str(exc))
                return report

            if dry_run or not report.ranges:
                logger.info(
                    "range_purge_preview",
                    ranges=len(report.ranges),
                    snapshots=report.snapshot_count,
                )
                return report

            for anomalous_range in report.ranges:
                try:
                    deleted = await self._store.delete_range(
                        anomalous_range.start_ms, anomalous_range.end_ms
                    )
                except BatchOperationFailure as exc:
                    report.error = exc
                    logger.error(
                        "range_purge_failed",
                        start_ms=anomalous_range.start_ms,
                        end_ms=anomalous_range.end_ms,
                        removed_count=report.removed_count,
                        error=exc.reason,
                    )
                    break
                report.removed_count += deleted
                report.purged_ranges += 1

            logger.info(
                "range_purge_finished",
                ranges=report.purged_ranges,
                removed_count=report.removed_count,
            )
        return report

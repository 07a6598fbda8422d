"""Destructive endpoints: single snapshot delete, the automatic anomaly purge and the range purge."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from balancewatch.dashboard.serialize import to_jsonable
from balancewatch.exceptions import RemediationInProgress, SnapshotNotFound, TransientFetchError
from balancewatch.models import AnomalyPage
from balancewatch.remediation.remediator import RemediationState

log = structlog.get_logger(__name__)

router = APIRouter()


@router.delete("/balance/high-diff/delete")
async def delete_snapshot(request: Request, snapshotId: str | None = None) -> JSONResponse:  # noqa: N803
    """Permanently delete one snapshot by id."""
    if not snapshotId:
        return JSONResponse(content={"error": "snapshotId is required"}, status_code=400)

    history_store = request.app.state.history_store
    try:
        snapshot = await history_store.delete_one(snapshotId)
    except SnapshotNotFound:
        return JSONResponse(content={"error": "Snapshot not found"}, status_code=404)
    except TransientFetchError as e:
        return JSONResponse(content={"error": str(e)}, status_code=503)

    request.app.state.pipeline.reset_live()
    log.info("snapshot_deleted_via_dashboard", snapshot_id=snapshotId)
    return JSONResponse(content={
        "snapshot_id": snapshot.id,
        "timestamp_ms": snapshot.timestamp_ms,
    })


@router.post("/balance/high-diff/auto-clear")
async def auto_clear(
    request: Request,
    confirm: bool = False,
    dryRun: bool = False,  # noqa: N803
    maxIterations: int | None = None,  # noqa: N803
) -> JSONResponse:
    """Purge anomalies until none remain, the cap is hit, or a batch fails.

    Query params:
        confirm: Operator confirmation. Without it the run stops after the
            first detection pass and reports what would be removed.
        dryRun: Report the first page of candidates without deleting, even
            when confirmed.
        maxIterations: Batch cap for this run.
    """
    if maxIterations is not None and maxIterations <= 0:
        return JSONResponse(content={"error": "maxIterations must be positive"}, status_code=400)

    remediator = request.app.state.remediator
    proceed = confirm and not dryRun
    first_page: list[AnomalyPage] = []

    async def _confirm(page: AnomalyPage) -> bool:
        first_page.append(page)
        return proceed

    try:
        report = await remediator.run(_confirm, max_iterations=maxIterations)
    except RemediationInProgress as e:
        return JSONResponse(content={"error": str(e)}, status_code=409)

    if report.removed_count > 0:
        request.app.state.pipeline.reset_live()

    content = {
        "outcome": report.outcome.value,
        "dry_run": dryRun,
        "removed_count": report.removed_count,
        "iterations": report.iterations,
        "error": str(report.error) if report.error is not None else None,
        "transitions": [state.value for state in report.transitions],
    }
    if report.declined and first_page:
        content["pending"] = to_jsonable(first_page[0].candidates)

    status_code = 200
    if report.outcome is RemediationState.ABORTED and report.error is not None:
        status_code = 500
    log.info(
        "auto_clear_finished",
        outcome=report.outcome.value,
        removed_count=report.removed_count,
        confirmed=proceed,
    )
    return JSONResponse(content=content, status_code=status_code)


@router.get("/balance/high-diff/purge-range")
async def preview_purge_range(request: Request) -> JSONResponse:
    """Anomalous time ranges and how many snapshots each holds."""
    history_store = request.app.state.history_store
    settings = request.app.state.settings

    try:
        ranges = await history_store.fetch_anomalous_ranges(settings.anomaly.thresholds())
    except TransientFetchError as e:
        return JSONResponse(content={"error": str(e)}, status_code=503)

    return JSONResponse(content={
        "range_count": len(ranges),
        "total_snapshots": sum(r.snapshot_count for r in ranges),
        "ranges": to_jsonable(ranges),
    })


@router.post("/balance/high-diff/purge-range")
async def purge_range(request: Request, confirm: bool = False, dryRun: bool = False) -> JSONResponse:  # noqa: N803
    """Delete every snapshot inside the anomalous time ranges.

    Query params:
        confirm: Operator confirmation. Without it nothing is deleted.
        dryRun: Report the ranges without deleting, even when confirmed.
    """
    remediator = request.app.state.remediator
    dry_run = dryRun or not confirm

    try:
        report = await remediator.purge_ranges(dry_run=dry_run)
    except RemediationInProgress as e:
        return JSONResponse(content={"error": str(e)}, status_code=409)

    if report.removed_count > 0:
        request.app.state.pipeline.reset_live()

    content = {
        "dry_run": report.dry_run,
        "range_count": len(report.ranges),
        "purged_ranges": report.purged_ranges,
        "total_snapshots": report.snapshot_count,
        "removed_count": report.removed_count,
        "error": str(report.error) if report.error is not None else None,
        "ranges": to_jsonable(report.ranges),
    }
    status_code = 200
    if isinstance(report.error, TransientFetchError):
        status_code = 503
    elif report.error is not None:
        status_code = 500
    log.info(
        "purge_range_finished",
        dry_run=report.dry_run,
        ranges=len(report.ranges),
        removed_count=report.removed_count,
    )
    return JSONResponse(content=content, status_code=status_code)

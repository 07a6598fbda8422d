"""Exception hierarchy for balancewatch.

Only I/O-touching operations (store reads, deletes, the feed) raise these.
The pure series/analytics functions return neutral results instead.
"""


class BalanceWatchError(Exception):
    """Base exception for all balancewatch errors."""


class TransientFetchError(BalanceWatchError):
    """Raised when the history/trade store or the live feed is unreachable.

    Callers own the retry policy; nothing inside the core retries.
    """


class ValidationError(BalanceWatchError):
    """Raised for malformed window input (unknown preset, non-positive day count)."""


class ConfirmationDeclined(BalanceWatchError):
    """Raised by a confirmation prompt when the operator refuses a destructive run.

    Not a failure: the run ends as a no-op.
    """


class ConvergenceExceeded(BalanceWatchError):
    """Recorded when remediation hits its iteration cap before converging."""

    def __init__(self, iterations: int, removed_count: int) -> None:
        super().__init__(
            f"Stopped after {iterations} iterations with {removed_count} "
            "snapshots removed; anomalies may remain"
        )
        self.iterations = iterations
        self.removed_count = removed_count


class BatchOperationFailure(BalanceWatchError):
    """Raised when a batch delete fails. Prior batches stay applied."""

    def __init__(self, ids: list[str], reason: str, target: str | None = None) -> None:
        target = target or f"{len(ids)} snapshots"
        super().__init__(f"Batch delete of {target} failed: {reason}")
        self.ids = ids
        self.reason = reason


class RemediationInProgress(BalanceWatchError):
    """Raised when a remediation run is started while another is active."""


class SnapshotNotFound(BalanceWatchError):
    """Raised when a single-snapshot delete targets an unknown id."""


class DuplicateTrade(BalanceWatchError):
    """Raised when a trade with the same id or trade number is already stored."""

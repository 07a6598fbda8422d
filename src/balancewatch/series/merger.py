"""Live/historical series merging with a debounced display commit.

Live points are appended to a bounded buffer as soon as they arrive. A
debounce timer commits a snapshot of the whole live buffer into the display
buffer, so a burst of feed events results in a single downstream recompute.

Commit timing is a two-state machine driven by an injectable scheduler:

    IDLE --append--> PENDING_COMMIT(deadline) --append--> PENDING_COMMIT(deadline')
    PENDING_COMMIT --timer fires--> IDLE (display <- live snapshot)

Every append re-arms the timer at now + quantum (trailing debounce). A timer
that fires with an empty live buffer keeps the previous display contents.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from balancewatch.logging import get_logger
from balancewatch.models import HistoryPoint

logger = get_logger(__name__)

CommitListener = Callable[[Sequence[HistoryPoint]], None]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Clock and one-shot timer source for the commit state machine."""

    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class CommitState(str, Enum):
    """Debounce state of the display buffer."""

    IDLE = "idle"
    PENDING_COMMIT = "pending_commit"


@dataclass
class _PendingCommit:
    deadline: float
    handle: TimerHandle


class SeriesMerger:
    """Owns the live buffer and the committed display buffer.

    The merger is inert until subscribe() is called; unsubscribe() cancels any
    pending commit and drops both buffers. combined_series() is the historical
    series followed by the committed live points, concatenated without
    re-sorting.

    Args:
        scheduler: Clock/timer source (AsyncioScheduler in production).
        capacity: Maximum live points kept; the oldest are dropped on overflow.
        debounce_seconds: Commit quantum.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        capacity: int = 200,
        debounce_seconds: float = 2.0,
    ) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._scheduler = scheduler
        self._capacity = capacity
        self._debounce_seconds = debounce_seconds
        self._live: deque[HistoryPoint] = deque(maxlen=capacity)
        self._display: tuple[HistoryPoint, ...] = ()
        self._historical: tuple[HistoryPoint, ...] = ()
        self._pending: _PendingCommit | None = None
        self._listeners: list[CommitListener] = []
        self._subscribed = False
        self._generation = 0

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    def subscribe(self) -> None:
        """Start accepting live points."""
        self._subscribed = True
        logger.info(
            "series_merger_subscribed",
            capacity=self._capacity,
            debounce_seconds=self._debounce_seconds,
        )

    def unsubscribe(self) -> None:
        """Stop accepting live points, cancel any pending commit and drop live state."""
        self._cancel_pending()
        self._live.clear()
        self._display = ()
        self._subscribed = False
        logger.info("series_merger_unsubscribed")

    @property
    def subscribed(self) -> bool:
        return self._subscribed

    def add_listener(self, listener: CommitListener) -> None:
        """Register a callback invoked with the display buffer after each commit."""
        self._listeners.append(listener)

    # ──────────────────────────────────────────────
    # Inputs
    # ──────────────────────────────────────────────

    def append(self, point: HistoryPoint) -> None:
        """Append a live point and (re)arm the commit timer.

        Never blocks; safe to call from a feed handler.
        """
        if not self._subscribed:
            logger.debug("live_point_ignored_unsubscribed", timestamp_ms=point.timestamp_ms)
            return

        overflow = len(self._live) == self._capacity
        self._live.append(point)
        if overflow:
            logger.debug("live_buffer_overflow", capacity=self._capacity)

        self._cancel_pending()
        deadline = self._scheduler.now() + self._debounce_seconds
        handle = self._scheduler.call_later(self._debounce_seconds, self._commit)
        self._pending = _PendingCommit(deadline=deadline, handle=handle)

    def set_historical(self, points: Sequence[HistoryPoint]) -> None:
        """Replace the historical series (e.g. after a store refetch).

        Every live point is persisted before it is fed, so live and display
        points at or before the newest historical timestamp are already part
        of the new history and are dropped from the live tail.
        """
        self._historical = tuple(points)
        if not self._historical:
            return

        newest_ms = max(p.timestamp_ms for p in self._historical)
        live = [p for p in self._live if p.timestamp_ms > newest_ms]
        absorbed = len(self._live) - len(live)
        self._live = deque(live, maxlen=self._capacity)
        self._display = tuple(p for p in self._display if p.timestamp_ms > newest_ms)
        if absorbed:
            logger.debug("live_points_absorbed_by_history", absorbed=absorbed, newest_ms=newest_ms)

    def reset_live(self) -> None:
        """Drop live and display points, keeping the subscription (used after a purge)."""
        self._cancel_pending()
        self._live.clear()
        self._display = ()

    # ──────────────────────────────────────────────
    # Outputs
    # ──────────────────────────────────────────────

    @property
    def state(self) -> CommitState:
        return CommitState.PENDING_COMMIT if self._pending is not None else CommitState.IDLE

    @property
    def deadline(self) -> float | None:
        """Scheduled commit time, or None when idle."""
        return self._pending.deadline if self._pending is not None else None

    @property
    def generation(self) -> int:
        """Number of commits applied so far."""
        return self._generation

    @property
    def live_points(self) -> list[HistoryPoint]:
        return list(self._live)

    @property
    def display_points(self) -> list[HistoryPoint]:
        return list(self._display)

    def combined_series(self) -> list[HistoryPoint]:
        """Historical points followed by committed live points (no re-sort)."""
        return [*self._historical, *self._display]

    # ──────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.handle.cancel()
            self._pending = None

    def _commit(self) -> None:
        self._pending = None
        if not self._live:
            logger.debug("display_commit_skipped_empty")
            return

        self._display = tuple(self._live)
        self._generation += 1
        logger.debug(
            "display_commit",
            points=len(self._display),
            generation=self._generation,
            latest_ms=self._display[-1].timestamp_ms,
        )

        for listener in self._listeners:
            try:
                listener(self._display)
            except Exception:
                logger.warning("commit_listener_error", exc_info=True)

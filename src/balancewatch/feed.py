"""Live balance feed adapter.

Delivers reporter snapshots to the SeriesMerger as HistoryPoints. The handler
only converts and appends; it never awaits I/O, so a burst of events cannot
stall the event loop. Throttling is left to the merger's commit debounce.
"""

from decimal import Decimal

from balancewatch.logging import get_logger
from balancewatch.models import ZERO, BalanceSnapshot, HistoryPoint
from balancewatch.series.merger import SeriesMerger

logger = get_logger(__name__)


class LiveFeed:
    """Connects the snapshot ingestion path to a SeriesMerger.

    Args:
        merger: Merger receiving live points.
        fallback_price: RLB price used until set_price() provides a live one.
    """

    def __init__(self, merger: SeriesMerger, fallback_price: Decimal = ZERO) -> None:
        self._merger = merger
        self._price = fallback_price
        self._connected = False
        self._received = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def price(self) -> Decimal:
        return self._price

    @property
    def received(self) -> int:
        """Snapshots delivered since the last connect()."""
        return self._received

    def connect(self) -> None:
        """Mark the feed connected and start the merger's subscription."""
        if self._connected:
            logger.warning("live_feed_already_connected")
            return
        self._connected = True
        self._received = 0
        self._merger.subscribe()
        logger.info("live_feed_connected")

    def disconnect(self) -> None:
        """Mark the feed disconnected and stop appending.

        The merger keeps its display buffer; tearing it down is left to shutdown.
        """
        if not self._connected:
            return
        self._connected = False
        logger.info("live_feed_disconnected", received=self._received)

    def set_price(self, price: Decimal) -> None:
        """Update the RLB price applied to snapshots that carry none."""
        if price < 0:
            logger.warning("live_feed_price_rejected", price=price)
            return
        self._price = price

    def on_balance_snapshot(self, snapshot: BalanceSnapshot) -> HistoryPoint | None:
        """Handle one reporter snapshot.

        Returns the appended point, or None when the feed is disconnected.
        """
        if not self._connected:
            logger.debug("live_snapshot_dropped_disconnected", snapshot_id=snapshot.id)
            return None

        point = snapshot.to_history_point(self._price)
        self._merger.append(point)
        self._received += 1
        return point

"""History and trade stores: abstract contracts plus the SQLite implementation.

The analytics core depends only on HistoryStore / TradeStore. All SQL is
isolated in the Sqlite* classes.

CRITICAL: All monetary values stored as TEXT in SQLite, restored as Decimal on read.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from uuid import uuid4

import aiosqlite

from balancewatch.config import AnomalyThresholds
from balancewatch.data.database import BalanceDatabase
from balancewatch.exceptions import (
    BatchOperationFailure,
    DuplicateTrade,
    SnapshotNotFound,
    TransientFetchError,
)
from balancewatch.logging import get_logger
from balancewatch.models import (
    ZERO,
    AnomalousRange,
    AnomalyPage,
    BalanceSnapshot,
    HistoryPoint,
    Spike,
    Trade,
)
from balancewatch.remediation.detector import (
    AnomalyScanner,
    find_anomalous_ranges,
    find_spikes,
)

logger = get_logger(__name__)

# SQLite's default bound-parameter limit is 999
_DELETE_CHUNK = 500

_SNAPSHOT_COLUMNS = (
    "id, timestamp_ms, onchain_rlb, onchain_usdt, onsite_rlb, onsite_usd, rlb_price_usd"
)

_TRADE_COLUMNS = (
    "id, trade_number, timestamp_ms, trigger_category, trigger_type, block_number, "
    "trade_amount, raw_profit_usd, profit_with_gas_usd, opponent, win, "
    "opponent_time_gap_ms, api_call_duration_ms, priority_gwei"
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _to_text(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def _to_decimal(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _to_bool(value: int | None) -> bool | None:
    return bool(value) if value is not None else None


def _snapshot_from_row(row: Sequence) -> BalanceSnapshot:
    return BalanceSnapshot(
        id=row[0],
        timestamp_ms=row[1],
        onchain_rlb=Decimal(row[2]),
        onchain_usdt=Decimal(row[3]),
        onsite_rlb=Decimal(row[4]),
        onsite_usd=Decimal(row[5]),
        rlb_price_usd=_to_decimal(row[6]),
    )


def _trade_from_row(row: Sequence) -> Trade:
    return Trade(
        id=row[0],
        trade_number=row[1],
        timestamp_ms=row[2],
        trigger_category=row[3],
        trigger_type=row[4],
        block_number=row[5],
        trade_amount=Decimal(row[6]),
        raw_profit_usd=_to_decimal(row[7]),
        profit_with_gas_usd=_to_decimal(row[8]),
        opponent=bool(row[9]),
        win=_to_bool(row[10]),
        opponent_time_gap_ms=_to_decimal(row[11]),
        api_call_duration_ms=_to_decimal(row[12]),
        priority_gwei=_to_decimal(row[13]),
    )


@dataclass
class TradeFilters:
    """Optional trade query filters. None means "do not filter on this"."""

    trigger_category: str | None = None
    trigger_type: str | None = None
    has_opponent: bool | None = None
    is_win: bool | None = None
    since_ms: int | None = None
    until_ms: int | None = None
    limit: int | None = None
    offset: int = 0


class HistoryStore(ABC):
    """Contract for the balance history store consumed by the core."""

    @abstractmethod
    async def fetch_history(
        self,
        since_ms: int | None = None,
        until_ms: int | None = None,
        limit: int | None = None,
    ) -> list[HistoryPoint]:
        """Return history points in ascending timestamp order."""
        ...

    @abstractmethod
    async def fetch_anomaly_candidates(
        self,
        thresholds: AnomalyThresholds,
        page_size: int,
    ) -> AnomalyPage:
        """Return up to ``page_size`` currently anomalous snapshots with reasons."""
        ...

    @abstractmethod
    async def batch_delete(self, ids: Sequence[str]) -> int:
        """Delete snapshots by id, all or nothing. Returns the deleted count.

        Raises BatchOperationFailure if the deletion could not be applied.
        """
        ...

    @abstractmethod
    async def delete_one(self, snapshot_id: str) -> BalanceSnapshot:
        """Delete a single snapshot and return it.

        Raises SnapshotNotFound for an unknown id and TransientFetchError when
        the store is unreachable.
        """
        ...

    @abstractmethod
    async def fetch_anomalous_ranges(self, thresholds: AnomalyThresholds) -> list[AnomalousRange]:
        """Return runs of consecutive snapshots far from the median balance level."""
        ...

    @abstractmethod
    async def delete_range(self, start_ms: int, end_ms: int) -> int:
        """Delete every snapshot with start_ms <= timestamp_ms <= end_ms.

        Returns the deleted count. Raises BatchOperationFailure.
        """
        ...


class TradeStore(ABC):
    """Contract for the trade store consumed by the core."""

    @abstractmethod
    async def fetch_trades(self, filters: TradeFilters | None = None) -> list[Trade]:
        """Return trades matching ``filters``, newest first."""
        ...


class SqliteHistoryStore(HistoryStore):
    """SQLite-backed balance snapshot store.

    Args:
        database: Connected BalanceDatabase.
        fallback_price: RLB price used for snapshots stored without one.
        scan_window_size: Snapshots loaded per window during anomaly scans.
        fast_mode: Report the later snapshot of an anomalous pair without
            looking ahead to decide which side is the outlier.
    """

    def __init__(
        self,
        database: BalanceDatabase,
        fallback_price: Decimal = ZERO,
        scan_window_size: int = 1000,
        fast_mode: bool = True,
    ) -> None:
        self._database = database
        self.fallback_price = fallback_price
        self._scan_window_size = scan_window_size
        self._fast_mode = fast_mode

    # ──────────────────────────────────────────────
    # Write methods
    # ──────────────────────────────────────────────

    async def insert_snapshot(
        self,
        onchain_rlb: Decimal,
        onchain_usdt: Decimal,
        onsite_rlb: Decimal,
        onsite_usd: Decimal,
        timestamp_ms: int | None = None,
        rlb_price_usd: Decimal | None = None,
    ) -> BalanceSnapshot:
        """Persist a reporter snapshot and return it."""
        snapshot = BalanceSnapshot(
            id=uuid4().hex,
            timestamp_ms=timestamp_ms if timestamp_ms is not None else _now_ms(),
            onchain_rlb=onchain_rlb,
            onchain_usdt=onchain_usdt,
            onsite_rlb=onsite_rlb,
            onsite_usd=onsite_usd,
            rlb_price_usd=rlb_price_usd,
        )
        await self._database.db.execute(
            f"INSERT INTO balance_snapshots ({_SNAPSHOT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                snapshot.id,
                snapshot.timestamp_ms,
                str(snapshot.onchain_rlb),
                str(snapshot.onchain_usdt),
                str(snapshot.onsite_rlb),
                str(snapshot.onsite_usd),
                _to_text(snapshot.rlb_price_usd),
            ),
        )
        await self._database.db.commit()
        logger.debug("snapshot_inserted", snapshot_id=snapshot.id, timestamp_ms=snapshot.timestamp_ms)
        return snapshot

    async def batch_delete(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0

        deleted = 0
        try:
            db = self._database.db
            for start in range(0, len(ids), _DELETE_CHUNK):
                chunk = list(ids[start : start + _DELETE_CHUNK])
                placeholders = ", ".join("?" for _ in chunk)
                cursor = await db.execute(
                    f"DELETE FROM balance_snapshots WHERE id IN ({placeholders})",
                    chunk,
                )
                deleted += cursor.rowcount
            await db.commit()
        except (aiosqlite.Error, RuntimeError) as exc:
            if self._database.connected:
                await self._database.db.rollback()
            raise BatchOperationFailure(list(ids), str(exc)) from exc

        logger.info("snapshots_batch_deleted", requested=len(ids), deleted=deleted)
        return deleted

    async def delete_one(self, snapshot_id: str) -> BalanceSnapshot:
        try:
            db = self._database.db
            cursor = await db.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM balance_snapshots WHERE id = ?",
                (snapshot_id,),
            )
            row = await cursor.fetchone()
            if row is not None:
                await db.execute("DELETE FROM balance_snapshots WHERE id = ?", (snapshot_id,))
                await db.commit()
        except (aiosqlite.Error, RuntimeError) as exc:
            if self._database.connected:
                await self._database.db.rollback()
            raise TransientFetchError(f"snapshot delete failed: {exc}") from exc

        if row is None:
            raise SnapshotNotFound(f"snapshot {snapshot_id} not found")
        logger.info("snapshot_deleted", snapshot_id=snapshot_id)
        return _snapshot_from_row(row)

    async def delete_range(self, start_ms: int, end_ms: int) -> int:
        try:
            db = self._database.db
            cursor = await db.execute(
                "DELETE FROM balance_snapshots WHERE timestamp_ms >= ? AND timestamp_ms <= ?",
                (start_ms, end_ms),
            )
            await db.commit()
        except (aiosqlite.Error, RuntimeError) as exc:
            if self._database.connected:
                await self._database.db.rollback()
            raise BatchOperationFailure([], str(exc), target=f"range {start_ms}..{end_ms}") from exc

        logger.info(
            "snapshots_range_deleted",
            start_ms=start_ms,
            end_ms=end_ms,
            deleted=cursor.rowcount,
        )
        return cursor.rowcount

    async def flush(self) -> int:
        """Delete every snapshot. Returns the number removed."""
        cursor = await self._database.db.execute("DELETE FROM balance_snapshots")
        await self._database.db.commit()
        logger.warning("snapshots_flushed", deleted=cursor.rowcount)
        return cursor.rowcount

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def fetch_snapshots(
        self,
        since_ms: int | None = None,
        until_ms: int | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[BalanceSnapshot]:
        """Raw snapshots in ascending timestamp order."""
        conditions: list[str] = []
        params: list = []

        if since_ms is not None:
            conditions.append("timestamp_ms >= ?")
            params.append(since_ms)
        if until_ms is not None:
            conditions.append("timestamp_ms <= ?")
            params.append(until_ms)

        where = f"WHERE {' AND '.join(conditions)} " if conditions else ""
        query = (
            f"SELECT {_SNAPSHOT_COLUMNS} FROM balance_snapshots {where}"
            "ORDER BY timestamp_ms ASC, id ASC"
        )
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])

        try:
            cursor = await self._database.db.execute(query, params)
            rows = await cursor.fetchall()
        except (aiosqlite.Error, RuntimeError) as exc:
            raise TransientFetchError(f"balance history unavailable: {exc}") from exc
        return [_snapshot_from_row(row) for row in rows]

    async def fetch_history(
        self,
        since_ms: int | None = None,
        until_ms: int | None = None,
        limit: int | None = None,
    ) -> list[HistoryPoint]:
        snapshots = await self.fetch_snapshots(since_ms=since_ms, until_ms=until_ms, limit=limit)
        return [s.to_history_point(self.fallback_price) for s in snapshots]

    async def latest_snapshot(self) -> BalanceSnapshot | None:
        try:
            cursor = await self._database.db.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM balance_snapshots "
                "ORDER BY timestamp_ms DESC, id DESC LIMIT 1"
            )
            row = await cursor.fetchone()
        except (aiosqlite.Error, RuntimeError) as exc:
            raise TransientFetchError(f"balance history unavailable: {exc}") from exc
        return _snapshot_from_row(row) if row is not None else None

    async def count(self) -> int:
        try:
            cursor = await self._database.db.execute("SELECT COUNT(*) FROM balance_snapshots")
            row = await cursor.fetchone()
        except (aiosqlite.Error, RuntimeError) as exc:
            raise TransientFetchError(f"balance history unavailable: {exc}") from exc
        return row[0]

    async def fetch_anomaly_candidates(
        self,
        thresholds: AnomalyThresholds,
        page_size: int,
        fast: bool | None = None,
    ) -> AnomalyPage:
        """Scan snapshots window by window until ``page_size`` candidates are found."""
        total = await self.count()
        if total < 2:
            return AnomalyPage()

        fast = self._fast_mode if fast is None else fast
        scanner = AnomalyScanner(thresholds, limit=page_size, fast=fast)
        offset = 0
        while offset < total and not scanner.done:
            window = await self.fetch_snapshots(limit=self._scan_window_size, offset=offset)
            if not window:
                break
            scanner.feed(window)
            offset += self._scan_window_size

        logger.debug(
            "anomaly_scan_complete",
            scanned=min(offset, total),
            candidates=len(scanner.candidates),
        )
        return AnomalyPage(candidates=scanner.candidates)

    async def find_spikes(self, thresholds: AnomalyThresholds) -> list[Spike]:
        """Lower-sensitivity scan over the whole table for manual review."""
        return find_spikes(await self.fetch_snapshots(), thresholds)

    async def fetch_anomalous_ranges(self, thresholds: AnomalyThresholds) -> list[AnomalousRange]:
        ranges = find_anomalous_ranges(await self.fetch_snapshots(), thresholds)
        logger.debug("anomalous_ranges_found", ranges=len(ranges))
        return ranges


class SqliteTradeStore(TradeStore):
    """SQLite-backed trade store."""

    def __init__(self, database: BalanceDatabase) -> None:
        self._database = database

    async def _write(self, query: str, params: Sequence) -> aiosqlite.Cursor:
        """Execute and commit one write, rolling back on failure."""
        try:
            cursor = await self._database.db.execute(query, params)
            await self._database.db.commit()
        except (aiosqlite.Error, RuntimeError):
            if self._database.connected:
                await self._database.db.rollback()
            raise
        return cursor

    async def insert_trade(self, trade: Trade) -> Trade:
        """Persist a trade record (its id is kept as given).

        Raises:
            DuplicateTrade: If the id or trade number is already stored.
            TransientFetchError: If the store is unreachable.
        """
        try:
            await self._write(
                f"INSERT INTO trades ({_TRADE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    trade.id,
                    trade.trade_number,
                    trade.timestamp_ms,
                    trade.trigger_category,
                    trade.trigger_type,
                    trade.block_number,
                    str(trade.trade_amount),
                    _to_text(trade.raw_profit_usd),
                    _to_text(trade.profit_with_gas_usd),
                    1 if trade.opponent else 0,
                    None if trade.win is None else int(trade.win),
                    _to_text(trade.opponent_time_gap_ms),
                    _to_text(trade.api_call_duration_ms),
                    _to_text(trade.priority_gwei),
                ),
            )
        except aiosqlite.IntegrityError as exc:
            raise DuplicateTrade(f"trade {trade.id} already exists") from exc
        except (aiosqlite.Error, RuntimeError) as exc:
            raise TransientFetchError(f"trade store unavailable: {exc}") from exc
        logger.debug("trade_inserted", trade_id=trade.id)
        return trade

    async def get_trade(self, trade_id: str) -> Trade | None:
        try:
            cursor = await self._database.db.execute(
                f"SELECT {_TRADE_COLUMNS} FROM trades WHERE id = ?", (trade_id,)
            )
            row = await cursor.fetchone()
        except (aiosqlite.Error, RuntimeError) as exc:
            raise TransientFetchError(f"trade store unavailable: {exc}") from exc
        return _trade_from_row(row) if row is not None else None

    async def settle_trade(
        self,
        trade_id: str,
        raw_profit_usd: Decimal,
        profit_with_gas_usd: Decimal,
    ) -> bool:
        """Set the profit fields of a pending trade.

        Returns False when the trade is unknown or already settled; settled
        profits are never overwritten.
        """
        try:
            cursor = await self._write(
                "UPDATE trades SET raw_profit_usd = ?, profit_with_gas_usd = ? "
                "WHERE id = ? AND raw_profit_usd IS NULL AND profit_with_gas_usd IS NULL",
                (str(raw_profit_usd), str(profit_with_gas_usd), trade_id),
            )
        except (aiosqlite.Error, RuntimeError) as exc:
            raise TransientFetchError(f"trade store unavailable: {exc}") from exc
        settled = cursor.rowcount == 1
        if not settled:
            logger.warning("trade_settle_skipped", trade_id=trade_id)
        return settled

    async def delete_trade(self, trade_id: str) -> bool:
        try:
            cursor = await self._write("DELETE FROM trades WHERE id = ?", (trade_id,))
        except (aiosqlite.Error, RuntimeError) as exc:
            raise TransientFetchError(f"trade store unavailable: {exc}") from exc
        return cursor.rowcount == 1

    async def fetch_trades(self, filters: TradeFilters | None = None) -> list[Trade]:
        filters = filters or TradeFilters()
        conditions: list[str] = []
        params: list = []

        if filters.trigger_category is not None:
            conditions.append("trigger_category = ?")
            params.append(filters.trigger_category)
        if filters.trigger_type is not None:
            conditions.append("trigger_type = ?")
            params.append(filters.trigger_type)
        if filters.has_opponent is not None:
            conditions.append("opponent = ?")
            params.append(1 if filters.has_opponent else 0)
        if filters.is_win is not None:
            conditions.append("win = ?")
            params.append(1 if filters.is_win else 0)
        if filters.since_ms is not None:
            conditions.append("timestamp_ms >= ?")
            params.append(filters.since_ms)
        if filters.until_ms is not None:
            conditions.append("timestamp_ms <= ?")
            params.append(filters.until_ms)

        where = f"WHERE {' AND '.join(conditions)} " if conditions else ""
        query = f"SELECT {_TRADE_COLUMNS} FROM trades {where}ORDER BY timestamp_ms DESC"
        if filters.limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([filters.limit, filters.offset])

        try:
            cursor = await self._database.db.execute(query, params)
            rows = await cursor.fetchall()
        except (aiosqlite.Error, RuntimeError) as exc:
            raise TransientFetchError(f"trade store unavailable: {exc}") from exc
        return [_trade_from_row(row) for row in rows]

"""Tests for the SQLite history and trade stores.

Runs against a temporary database file through aiosqlite. All monetary values
must come back as the exact Decimal that was written.
"""

from decimal import Decimal

import pytest

from balancewatch.config import AnomalyThresholds
from balancewatch.data.database import BalanceDatabase
from balancewatch.data.store import SqliteHistoryStore, SqliteTradeStore, TradeFilters
from balancewatch.exceptions import (
    BatchOperationFailure,
    DuplicateTrade,
    SnapshotNotFound,
    TransientFetchError,
)
from factories import make_trade


async def _insert(store: SqliteHistoryStore, ts: int, stable: str = "1000", token: str = "0", price=None):
    half = Decimal(stable) / 2
    token_half = Decimal(token) / 2
    return await store.insert_snapshot(
        onchain_rlb=token_half,
        onchain_usdt=half,
        onsite_rlb=token_half,
        onsite_usd=half,
        timestamp_ms=ts,
        rlb_price_usd=price,
    )


class TestBalanceDatabase:
    """Tests for connection lifecycle."""

    @pytest.mark.asyncio
    async def test_context_manager(self, tmp_path) -> None:
        async with BalanceDatabase(str(tmp_path / "nested" / "db.sqlite")) as db:
            assert db.connected
        assert not db.connected

    def test_db_property_requires_connect(self, tmp_path) -> None:
        with pytest.raises(RuntimeError):
            BalanceDatabase(str(tmp_path / "x.db")).db


class TestHistoryReads:
    """Tests for snapshot persistence and history conversion."""

    @pytest.mark.asyncio
    async def test_history_ascending_with_prices(self, database) -> None:
        store = SqliteHistoryStore(database, fallback_price=Decimal("0.1"))
        await _insert(store, 2000, stable="500", token="1000", price=Decimal("0.2"))
        await _insert(store, 1000, stable="400.25", token="1000")

        history = await store.fetch_history()

        assert [p.timestamp_ms for p in history] == [1000, 2000]
        # Fallback price for the unpriced snapshot, stored price for the other
        assert history[0].total_usd == Decimal("500.25")
        assert history[0].total_usd_usdt == Decimal("400.25")
        assert history[1].total_usd == Decimal("700")
        assert history[1].total_rlb == Decimal("1000")

    @pytest.mark.asyncio
    async def test_history_time_bounds(self, database) -> None:
        store = SqliteHistoryStore(database)
        for ts in (1000, 2000, 3000):
            await _insert(store, ts)

        history = await store.fetch_history(since_ms=2000, until_ms=3000)
        assert [p.timestamp_ms for p in history] == [2000, 3000]

    @pytest.mark.asyncio
    async def test_latest_and_count(self, database) -> None:
        store = SqliteHistoryStore(database)
        assert await store.latest_snapshot() is None

        await _insert(store, 1000)
        newest = await _insert(store, 5000)

        assert (await store.latest_snapshot()).id == newest.id
        assert await store.count() == 2

    @pytest.mark.asyncio
    async def test_closed_database_is_transient(self, tmp_path) -> None:
        store = SqliteHistoryStore(BalanceDatabase(str(tmp_path / "closed.db")))
        with pytest.raises(TransientFetchError):
            await store.fetch_history()


class TestHistoryDeletes:
    """Tests for batch and single deletes."""

    @pytest.mark.asyncio
    async def test_batch_delete_counts_existing_rows(self, database) -> None:
        store = SqliteHistoryStore(database)
        a = await _insert(store, 1000)
        b = await _insert(store, 2000)
        await _insert(store, 3000)

        deleted = await store.batch_delete([a.id, b.id, "missing"])

        assert deleted == 2
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_batch_delete_empty(self, database) -> None:
        assert await SqliteHistoryStore(database).batch_delete([]) == 0

    @pytest.mark.asyncio
    async def test_batch_delete_failure(self, tmp_path) -> None:
        store = SqliteHistoryStore(BalanceDatabase(str(tmp_path / "closed.db")))
        with pytest.raises(BatchOperationFailure) as exc_info:
            await store.batch_delete(["a", "b"])
        assert exc_info.value.ids == ["a", "b"]

    @pytest.mark.asyncio
    async def test_delete_one(self, database) -> None:
        store = SqliteHistoryStore(database)
        snapshot = await _insert(store, 1000)

        removed = await store.delete_one(snapshot.id)

        assert removed == snapshot
        with pytest.raises(SnapshotNotFound):
            await store.delete_one(snapshot.id)

    @pytest.mark.asyncio
    async def test_delete_one_unreachable_is_transient(self, tmp_path) -> None:
        store = SqliteHistoryStore(BalanceDatabase(str(tmp_path / "closed.db")))
        with pytest.raises(TransientFetchError):
            await store.delete_one("a")

    @pytest.mark.asyncio
    async def test_delete_range_inclusive(self, database) -> None:
        store = SqliteHistoryStore(database)
        for ts in (1000, 2000, 3000, 4000):
            await _insert(store, ts)

        assert await store.delete_range(2000, 3000) == 2
        assert [p.timestamp_ms for p in await store.fetch_history()] == [1000, 4000]

    @pytest.mark.asyncio
    async def test_delete_range_failure(self, tmp_path) -> None:
        store = SqliteHistoryStore(BalanceDatabase(str(tmp_path / "closed.db")))
        with pytest.raises(BatchOperationFailure, match="range 1..2"):
            await store.delete_range(1, 2)

    @pytest.mark.asyncio
    async def test_flush(self, database) -> None:
        store = SqliteHistoryStore(database)
        await _insert(store, 1000)
        await _insert(store, 2000)
        assert await store.flush() == 2
        assert await store.count() == 0


class TestAnomalyQueries:
    """Tests for the windowed anomaly scan and spike listing."""

    @pytest.mark.asyncio
    async def test_scan_crosses_window_boundaries(self, database) -> None:
        """Window size 2: the jump between the 2nd and 3rd rows spans two windows."""
        store = SqliteHistoryStore(database, scan_window_size=2)
        await _insert(store, 1000, stable="1000")
        await _insert(store, 2000, stable="1000")
        jump = await _insert(store, 3000, stable="2000")
        await _insert(store, 4000, stable="2000")

        page = await store.fetch_anomaly_candidates(AnomalyThresholds(), 10)

        assert page.ids == [jump.id]
        assert page.reasons == ["USDT/USD: ±1000.00"]

    @pytest.mark.asyncio
    async def test_single_snapshot_has_no_candidates(self, database) -> None:
        store = SqliteHistoryStore(database)
        await _insert(store, 1000)
        page = await store.fetch_anomaly_candidates(AnomalyThresholds(), 10)
        assert len(page) == 0

    @pytest.mark.asyncio
    async def test_page_size_limits_candidates(self, database) -> None:
        store = SqliteHistoryStore(database)
        for i, stable in enumerate(("0", "1000", "0", "1000", "0")):
            await _insert(store, (i + 1) * 1000, stable=stable)

        page = await store.fetch_anomaly_candidates(AnomalyThresholds(), 3)
        assert len(page) == 3

    @pytest.mark.asyncio
    async def test_spikes(self, database) -> None:
        store = SqliteHistoryStore(database)
        await _insert(store, 1000, stable="1000")
        await _insert(store, 2000, stable="1400")
        spike = await _insert(store, 3000, stable="2000")

        spikes = await store.find_spikes(
            AnomalyThresholds(stable_delta=Decimal("500"), token_delta=Decimal("5000"))
        )
        assert [s.id for s in spikes] == [spike.id]


    @pytest.mark.asyncio
    async def test_anomalous_ranges(self, database) -> None:
        store = SqliteHistoryStore(database)
        for i, stable in enumerate(("1000", "1000", "2500", "2500", "1000")):
            await _insert(store, (i + 1) * 1000, stable=stable)

        (only,) = await store.fetch_anomalous_ranges(AnomalyThresholds())

        assert (only.start_ms, only.end_ms, only.snapshot_count) == (3000, 4000, 2)
        assert only.reason == "USDT diff: 1500, RLB diff: 0"


class TestTradeStore:
    """Tests for trade persistence, filters and settlement."""

    @pytest.mark.asyncio
    async def test_round_trip_and_order(self, database) -> None:
        store = SqliteTradeStore(database)
        await store.insert_trade(make_trade("a", 1000, raw="1.5", net="1.25", opponent=True, win=True))
        await store.insert_trade(make_trade("b", 2000))

        trades = await store.fetch_trades()

        assert [t.id for t in trades] == ["b", "a"]
        assert trades[1].raw_profit_usd == Decimal("1.5")
        assert trades[1].profit_with_gas_usd == Decimal("1.25")
        assert trades[1].win is True
        assert trades[0].win is None
        assert trades[0].raw_profit_usd is None

    @pytest.mark.asyncio
    async def test_filters(self, database) -> None:
        store = SqliteTradeStore(database)
        await store.insert_trade(make_trade("a", 1, trigger_category="onchain", opponent=True, win=False))
        await store.insert_trade(make_trade("b", 2, trigger_category="onsite"))
        await store.insert_trade(make_trade("c", 3, trigger_category="onchain", opponent=True, win=True))

        onchain = await store.fetch_trades(TradeFilters(trigger_category="onchain"))
        contested_wins = await store.fetch_trades(TradeFilters(has_opponent=True, is_win=True))
        page = await store.fetch_trades(TradeFilters(limit=1, offset=1))
        recent = await store.fetch_trades(TradeFilters(since_ms=2))

        assert [t.id for t in onchain] == ["c", "a"]
        assert [t.id for t in contested_wins] == ["c"]
        assert [t.id for t in page] == ["b"]
        assert [t.id for t in recent] == ["c", "b"]

    @pytest.mark.asyncio
    async def test_settle_once(self, database) -> None:
        store = SqliteTradeStore(database)
        await store.insert_trade(make_trade("a", 1))

        assert await store.settle_trade("a", Decimal("3"), Decimal("2")) is True
        assert await store.settle_trade("a", Decimal("9"), Decimal("9")) is False

        (trade,) = await store.fetch_trades()
        assert trade.raw_profit_usd == Decimal("3")
        assert trade.profit_with_gas_usd == Decimal("2")

    @pytest.mark.asyncio
    async def test_delete_trade(self, database) -> None:
        store = SqliteTradeStore(database)
        await store.insert_trade(make_trade("a", 1))
        assert await store.delete_trade("a") is True
        assert await store.delete_trade("a") is False

    @pytest.mark.asyncio
    async def test_duplicate_trade_rejected(self, database) -> None:
        store = SqliteTradeStore(database)
        await store.insert_trade(make_trade("a", 1, trade_number=7))

        with pytest.raises(DuplicateTrade):
            await store.insert_trade(make_trade("a", 2))
        with pytest.raises(DuplicateTrade):
            await store.insert_trade(make_trade("b", 3, trade_number=7))
        assert [t.id for t in await store.fetch_trades()] == ["a"]

    @pytest.mark.asyncio
    async def test_get_trade(self, database) -> None:
        store = SqliteTradeStore(database)
        await store.insert_trade(make_trade("a", 1, raw="2", net="1"))

        trade = await store.get_trade("a")

        assert trade.profit_with_gas_usd == Decimal("1")
        assert await store.get_trade("missing") is None

    @pytest.mark.asyncio
    async def test_unreachable_trade_store_is_transient(self, tmp_path) -> None:
        store = SqliteTradeStore(BalanceDatabase(str(tmp_path / "closed.db")))
        with pytest.raises(TransientFetchError):
            await store.insert_trade(make_trade("a", 1))
        with pytest.raises(TransientFetchError):
            await store.settle_trade("a", Decimal("1"), Decimal("1"))

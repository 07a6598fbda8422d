"""Async SQLite database manager for balance snapshots and trades.

Uses aiosqlite for non-blocking database operations with WAL mode
so the dashboard can read while the reporter endpoint writes.
"""

import os
from typing import Self

import aiosqlite

from balancewatch.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS balance_snapshots (
    id TEXT PRIMARY KEY,
    timestamp_ms INTEGER NOT NULL,
    onchain_rlb TEXT NOT NULL,
    onchain_usdt TEXT NOT NULL,
    onsite_rlb TEXT NOT NULL,
    onsite_usd TEXT NOT NULL,
    rlb_price_usd TEXT
);

CREATE TABLE IF NOT EXISTS trades (
    id TEXT PRIMARY KEY,
    trade_number INTEGER UNIQUE,
    timestamp_ms INTEGER NOT NULL,
    trigger_category TEXT NOT NULL DEFAULT '',
    trigger_type TEXT NOT NULL DEFAULT '',
    block_number INTEGER,
    trade_amount TEXT NOT NULL,
    raw_profit_usd TEXT,
    profit_with_gas_usd TEXT,
    opponent INTEGER NOT NULL DEFAULT 0,
    win INTEGER,
    opponent_time_gap_ms TEXT,
    api_call_duration_ms TEXT,
    priority_gwei TEXT
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_snapshots_ts
    ON balance_snapshots(timestamp_ms);

CREATE INDEX IF NOT EXISTS idx_trades_ts
    ON trades(timestamp_ms);
"""


class BalanceDatabase:
    """Async SQLite connection manager.

    Usage:
        async with BalanceDatabase("data/balancewatch.db") as database:
            store = SqliteHistoryStore(database)
    """

    def __init__(self, db_path: str = "data/balancewatch.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open the connection, configure pragmas and create the schema."""
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("balance_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("balance_db_closed", db_path=self._db_path)

    async def _create_tables(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)
        await self._connection.commit()

    async def _ensure_schema_version(self) -> None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT version FROM schema_version LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()

"""Persistence layer for balance snapshots and trades.

Provides the SQLite connection manager, the abstract store contracts the
analytics core depends on, and their SQLite implementations.
"""

from balancewatch.data.database import BalanceDatabase
from balancewatch.data.store import (
    HistoryStore,
    SqliteHistoryStore,
    SqliteTradeStore,
    TradeFilters,
    TradeStore,
)

__all__ = [
    "BalanceDatabase",
    "HistoryStore",
    "SqliteHistoryStore",
    "SqliteTradeStore",
    "TradeFilters",
    "TradeStore",
]

"""Shared test fixtures for balancewatch."""

import pytest
import pytest_asyncio

from balancewatch.config import AnomalySettings, AppSettings, SeriesSettings, StoreSettings
from balancewatch.data.database import BalanceDatabase
from factories import ManualScheduler


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def mock_settings(tmp_path) -> AppSettings:
    """Return AppSettings with test defaults (temp database, no batch delay)."""
    return AppSettings(
        log_level="DEBUG",
        series=SeriesSettings(live_buffer_capacity=200, debounce_seconds=2.0),
        anomaly=AnomalySettings(iteration_delay_seconds=0),
        store=StoreSettings(db_path=str(tmp_path / "test.db")),
    )


@pytest_asyncio.fixture
async def database(tmp_path):
    """Connected BalanceDatabase on a temporary file."""
    db = BalanceDatabase(str(tmp_path / "balances.db"))
    await db.connect()
    yield db
    await db.close()

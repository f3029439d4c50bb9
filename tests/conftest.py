"""Shared test fixtures for tickerwatch."""

import pytest
import pytest_asyncio

from tickerwatch.config import AppSettings, FreshnessSettings, StorageSettings, WatchSettings
from tickerwatch.data.database import CacheDatabase
from tickerwatch.data.store import CacheStore


@pytest.fixture
def mock_settings(tmp_path) -> AppSettings:
    """Return AppSettings with test defaults (two symbols, 5s refresh, temp db)."""
    return AppSettings(
        log_level="DEBUG",
        watch=WatchSettings(
            symbols=["BTCUSDT", "ETHUSDT"],
            refresh_interval=5.0,
            candle_interval="5m",
            candle_limit=50,
            candle_refresh_ticks=1000,
        ),
        freshness=FreshnessSettings(n_recover=2, n_fail=3),
        storage=StorageSettings(db_path=str(tmp_path / "cache.db")),
    )


@pytest_asyncio.fixture
async def database(tmp_path):
    """Connected CacheDatabase on a fresh file, closed after the test."""
    db = CacheDatabase(str(tmp_path / "cache.db"))
    await db.connect()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def store(database: CacheDatabase) -> CacheStore:
    """CacheStore over the fresh database."""
    return CacheStore(database)

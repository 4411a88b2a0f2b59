"""Shared test fixtures for the ticker synchronization engine."""

import pytest
import pytest_asyncio

from tickersync.config import (
    AppSettings,
    BrokerSettings,
    CacheSettings,
    SecondarySettings,
    SyncConfig,
    SyncSettings,
)
from tickersync.data.database import SyncDatabase
from tickersync.data.store import SyncStore


@pytest.fixture
def mock_settings(tmp_path) -> AppSettings:
    """Return AppSettings with test defaults (paper mode, dummy app keys)."""
    return AppSettings(
        log_level="DEBUG",
        broker=BrokerSettings(
            enabled=True,
            mode="paper",
            paper_app_key="test-app-key",  # type: ignore[arg-type]
            paper_app_secret="test-app-secret",  # type: ignore[arg-type]
            live_app_key="live-app-key",  # type: ignore[arg-type]
            live_app_secret="live-app-secret",  # type: ignore[arg-type]
            paper_min_interval_ms=0,
            live_min_interval_ms=0,
        ),
        secondary=SecondarySettings(enabled=True),
        sync=SyncSettings(symbols=["005930", "0001"], initial_load_spacing=0),
        cache=CacheSettings(db_path=str(tmp_path / "test.db"), page_delay=0),
    )


@pytest.fixture
def sync_config(mock_settings: AppSettings) -> SyncConfig:
    return SyncConfig.from_settings(mock_settings)


@pytest_asyncio.fixture
async def database(tmp_path):
    """Connected SyncDatabase in a temporary directory."""
    async with SyncDatabase(str(tmp_path / "sync.db")) as db:
        yield db


@pytest.fixture
def store(database: SyncDatabase) -> SyncStore:
    return SyncStore(database)

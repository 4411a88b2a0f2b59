"""Persistence and chart processing: SQLite store, chart cache, resampling, backfill."""

from tickersync.data.backfill import BackfillEngine
from tickersync.data.chart_cache import ChartCache
from tickersync.data.database import SyncDatabase
from tickersync.data.resample import downsample, forward_fill
from tickersync.data.store import SyncStore

__all__ = [
    "BackfillEngine",
    "ChartCache",
    "SyncDatabase",
    "SyncStore",
    "downsample",
    "forward_fill",
]

"""Storage layer - SQLite roster, append-only snapshots and usage counters."""

from channel_sync.storage.db import DatabaseManager
from channel_sync.storage.models import (
    Channel,
    MetricsSnapshot,
    SyncResult,
    SyncSummary,
    UsageRecord,
)
from channel_sync.storage.usage import UsageAccountant
from channel_sync.storage.writer import MetricsWriter

__all__ = [
    "DatabaseManager",
    "Channel",
    "MetricsSnapshot",
    "SyncResult",
    "SyncSummary",
    "UsageRecord",
    "UsageAccountant",
    "MetricsWriter",
]

"""Per-credential, per-day call accounting."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Callable, List

from channel_sync.errors import PersistenceError
from channel_sync.storage.db import DatabaseManager
from channel_sync.storage.models import UsageRecord

logger = logging.getLogger(__name__)


class UsageAccountant:
    """Keep running totals of provider calls per credential label per UTC day.

    Every increment is a single upsert-and-add statement, so concurrent
    workers and retried runs never lose counts.
    """

    def __init__(
        self,
        db: DatabaseManager,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.db = db
        self._clock = clock

    async def record_usage(self, label: str, date: str, delta: int) -> None:
        if delta < 0:
            raise ValueError(f"Usage delta must be non-negative, got {delta}")
        try:
            await self.db.increment_usage(label, date, delta, self._clock())
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to record usage for {label} on {date}: {e}") from e
        logger.debug("Usage %s %s += %d", label, date, delta)

    async def get_count(self, label: str, date: str) -> int:
        record = await self.db.get_usage(label, date)
        return record.count if record else 0

    async def usage_since(self, date: str) -> List[UsageRecord]:
        return await self.db.get_usage_since(date)

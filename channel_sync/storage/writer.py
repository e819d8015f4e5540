"""Channel metadata updates and append-only metric snapshots."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Optional

from channel_sync.errors import PersistenceError
from channel_sync.storage.db import DatabaseManager
from channel_sync.storage.models import MetricsSnapshot

logger = logging.getLogger(__name__)


class MetricsWriter:
    """Persist sync results.

    The two operations are independent writes: a failure in one never
    rolls back the other.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    async def update_channel_metadata(
        self,
        channel_id: int,
        name: Optional[str],
        thumbnail: Optional[str],
        canonical_url: Optional[str],
        resolved_id: Optional[str],
    ) -> None:
        try:
            await self.db.update_channel_metadata(
                channel_id, name, thumbnail, canonical_url, resolved_id
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"Metadata update failed for channel {channel_id}: {e}") from e

    async def append_snapshot(
        self,
        channel_id: int,
        videos: Optional[int],
        subscribers: Optional[int],
        views: Optional[int],
        last_published_at: Optional[str],
        fetched_at: datetime,
    ) -> bool:
        """Insert one snapshot; never touches an existing row.

        Returns False if the channel already has a snapshot dated the same
        day as ``fetched_at``.
        """
        snapshot = MetricsSnapshot(
            channel_id=channel_id,
            fetched_at=fetched_at,
            videos=videos,
            subscribers=subscribers,
            views=views,
            last_video_at=last_published_at,
        )
        try:
            inserted = await self.db.insert_snapshot(snapshot)
        except sqlite3.Error as e:
            raise PersistenceError(f"Snapshot insert failed for channel {channel_id}: {e}") from e
        if not inserted:
            logger.info(
                "Channel %s already has a snapshot for %s; nothing appended",
                channel_id, snapshot.snapshot_date,
            )
        return inserted

"""Async SQLite store for the channel roster, metric snapshots and key usage."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite

from channel_sync.storage.migrations import apply_migrations
from channel_sync.storage.models import Channel, MetricsSnapshot, UsageRecord

logger = logging.getLogger(__name__)

CHANNEL_COLUMNS = (
    "friend_name",
    "channel_handle",
    "channel_url",
    "override_id",
    "channel_id",
    "resolved_id",
    "channel_name",
    "thumbnail_url",
    "unreachable",
    "active",
)


class DatabaseManager:
    """Async SQLite manager with WAL mode and a single serialized writer.

    Usage:
        db = DatabaseManager("data/channels.db")
        await db.initialize()
        # ... use db ...
        await db.close()
    """

    def __init__(self, db_path: str, cache_size_mb: int = 16):
        self.db_path = db_path
        self.cache_size_mb = cache_size_mb
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create database, apply migrations, and configure pragmas."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        # Apply migrations synchronously (schema changes)
        apply_migrations(self.db_path)

        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute(f"PRAGMA cache_size=-{self.cache_size_mb * 1000}")
        await self._conn.execute("PRAGMA synchronous=NORMAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")

        logger.info("Database initialized: %s", self.db_path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Acquire write lock and begin a transaction."""
        assert self._conn is not None, "Database not initialized"
        async with self._write_lock:
            try:
                # A cancelled BEGIN still runs on the worker thread; the
                # rollback below is queued after it and closes it.
                await self._conn.execute("BEGIN IMMEDIATE")
                yield self._conn
                await self._conn.commit()
            except BaseException:
                await self._conn.rollback()
                raise

    # --- Channels ---

    async def add_channel(self, **fields: Any) -> int:
        """Insert a roster row and return its id. Used by import tooling and tests."""
        unknown = set(fields) - set(CHANNEL_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown channel columns: {sorted(unknown)}")
        columns = list(fields)
        placeholders = ", ".join("?" for _ in columns)
        async with self._transaction() as conn:
            if columns:
                cursor = await conn.execute(
                    f"INSERT INTO channels ({', '.join(columns)}) VALUES ({placeholders})",
                    [fields[c] for c in columns],
                )
            else:
                cursor = await conn.execute("INSERT INTO channels DEFAULT VALUES")
            return cursor.lastrowid or 0

    async def get_channel(self, channel_id: int) -> Optional[Channel]:
        assert self._conn is not None
        cursor = await self._conn.execute(
            "SELECT * FROM channels WHERE id = ?", (channel_id,)
        )
        row = await cursor.fetchone()
        return Channel.from_row(dict(row)) if row else None

    async def get_all_channels(self) -> List[Channel]:
        assert self._conn is not None
        cursor = await self._conn.execute("SELECT * FROM channels ORDER BY id")
        rows = await cursor.fetchall()
        return [Channel.from_row(dict(r)) for r in rows]

    async def get_sync_roster(self) -> List[Channel]:
        """Channels eligible for a sync run.

        NULL flags count as reachable and active: only an explicit
        ``unreachable = 1`` or ``active = 0`` excludes a row.
        """
        assert self._conn is not None
        cursor = await self._conn.execute(
            """SELECT * FROM channels
               WHERE unreachable IS NOT 1 AND active IS NOT 0
               ORDER BY id"""
        )
        rows = await cursor.fetchall()
        return [Channel.from_row(dict(r)) for r in rows]

    async def set_resolved_id(self, channel_id: int, resolved_id: str) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "UPDATE channels SET resolved_id = ?, updated_at = ? WHERE id = ?",
                (resolved_id, datetime.utcnow().isoformat(), channel_id),
            )

    async def update_channel_metadata(
        self,
        channel_id: int,
        name: Optional[str],
        thumbnail: Optional[str],
        canonical_url: Optional[str],
        resolved_id: Optional[str],
    ) -> None:
        """Overwrite the sync-owned metadata columns and clear failure state."""
        async with self._transaction() as conn:
            await conn.execute(
                """UPDATE channels
                   SET channel_name = ?, thumbnail_url = ?, channel_url = ?,
                       resolved_id = ?, channel_id = COALESCE(?, channel_id),
                       failure_count = 0, unreachable = 0, updated_at = ?
                   WHERE id = ?""",
                (
                    name,
                    thumbnail,
                    canonical_url,
                    resolved_id,
                    resolved_id,
                    datetime.utcnow().isoformat(),
                    channel_id,
                ),
            )

    async def record_resolution_failure(self, channel_id: int, threshold: int) -> int:
        """Bump the consecutive failure counter, flagging the channel at ``threshold``.

        Returns the new failure count.
        """
        async with self._transaction() as conn:
            await conn.execute(
                """UPDATE channels
                   SET failure_count = failure_count + 1,
                       unreachable = CASE WHEN failure_count + 1 >= ? THEN 1 ELSE unreachable END,
                       updated_at = ?
                   WHERE id = ?""",
                (threshold, datetime.utcnow().isoformat(), channel_id),
            )
            cursor = await conn.execute(
                "SELECT failure_count FROM channels WHERE id = ?", (channel_id,)
            )
            row = await cursor.fetchone()
        return row[0] if row else 0

    # --- Snapshots ---

    async def insert_snapshot(self, snapshot: MetricsSnapshot) -> bool:
        """Append a snapshot. Returns False when one already exists for that day."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """INSERT OR IGNORE INTO metrics_snapshots
                   (channel_id, fetched_at, snapshot_date, videos, subscribers, views, last_video_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                snapshot.to_row(),
            )
            return cursor.rowcount == 1

    async def get_latest_snapshot(self, channel_id: int) -> Optional[MetricsSnapshot]:
        assert self._conn is not None
        cursor = await self._conn.execute(
            """SELECT * FROM metrics_snapshots WHERE channel_id = ?
               ORDER BY fetched_at DESC LIMIT 1""",
            (channel_id,),
        )
        row = await cursor.fetchone()
        return MetricsSnapshot.from_row(dict(row)) if row else None

    async def get_snapshots(self, channel_id: int) -> List[MetricsSnapshot]:
        assert self._conn is not None
        cursor = await self._conn.execute(
            "SELECT * FROM metrics_snapshots WHERE channel_id = ? ORDER BY fetched_at",
            (channel_id,),
        )
        rows = await cursor.fetchall()
        return [MetricsSnapshot.from_row(dict(r)) for r in rows]

    async def count_snapshots(self, channel_id: Optional[int] = None) -> int:
        assert self._conn is not None
        if channel_id is not None:
            cursor = await self._conn.execute(
                "SELECT COUNT(*) FROM metrics_snapshots WHERE channel_id = ?",
                (channel_id,),
            )
        else:
            cursor = await self._conn.execute("SELECT COUNT(*) FROM metrics_snapshots")
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def get_latest_snapshot_dates(self) -> Dict[int, str]:
        """Map channel id to the date of its most recent snapshot."""
        assert self._conn is not None
        cursor = await self._conn.execute(
            """SELECT channel_id, MAX(snapshot_date) AS latest
               FROM metrics_snapshots GROUP BY channel_id"""
        )
        return {r["channel_id"]: r["latest"] for r in await cursor.fetchall()}

    # --- Usage ---

    async def increment_usage(
        self, key_label: str, date: str, delta: int, used_at: datetime
    ) -> None:
        """Atomically add ``delta`` to the (key_label, date) counter."""
        async with self._transaction() as conn:
            await conn.execute(
                """INSERT INTO usage_records (key_label, date, count, last_used_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(key_label, date) DO UPDATE SET
                       count = count + excluded.count,
                       last_used_at = excluded.last_used_at""",
                (key_label, date, delta, used_at.isoformat()),
            )

    async def get_usage(self, key_label: str, date: str) -> Optional[UsageRecord]:
        assert self._conn is not None
        cursor = await self._conn.execute(
            "SELECT * FROM usage_records WHERE key_label = ? AND date = ?",
            (key_label, date),
        )
        row = await cursor.fetchone()
        return UsageRecord.from_row(dict(row)) if row else None

    async def get_usage_since(self, since: str) -> List[UsageRecord]:
        assert self._conn is not None
        cursor = await self._conn.execute(
            """SELECT * FROM usage_records WHERE date >= ?
               ORDER BY date ASC, key_label ASC""",
            (since,),
        )
        rows = await cursor.fetchall()
        return [UsageRecord.from_row(dict(r)) for r in rows]

    # --- Maintenance ---

    async def get_stats(self) -> Dict[str, Any]:
        """Get database statistics."""
        assert self._conn is not None
        stats: Dict[str, Any] = {}

        for key, sql in (
            ("total_channels", "SELECT COUNT(*) FROM channels"),
            ("unreachable_channels", "SELECT COUNT(*) FROM channels WHERE unreachable = 1"),
            ("total_snapshots", "SELECT COUNT(*) FROM metrics_snapshots"),
            ("total_usage_records", "SELECT COUNT(*) FROM usage_records"),
        ):
            cursor = await self._conn.execute(sql)
            row = await cursor.fetchone()
            stats[key] = row[0] if row else 0

        cursor = await self._conn.execute(
            "SELECT page_count * page_size as size FROM pragma_page_count(), pragma_page_size()"
        )
        row = await cursor.fetchone()
        stats["db_size_bytes"] = row[0] if row else 0

        return stats

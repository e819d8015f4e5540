"""Batch sync orchestrator for the tracked channel roster.

For each eligible channel: skip if already synced today, resolve its
canonical ID, fetch statistics and the latest upload, then persist metadata
and one snapshot. A failing channel is logged and recorded; it never stops
the batch.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from datetime import date, datetime
from typing import Callable, Dict, Optional, Set, Tuple

from channel_sync.connectors.youtube import ChannelDetails, YouTubeAPI
from channel_sync.errors import (
    AllKeysExhausted,
    DeadlineExceeded,
    MissingDataError,
    PersistenceError,
    ResolutionFailure,
)
from channel_sync.pipeline.resolver import ChannelResolver
from channel_sync.storage.db import DatabaseManager
from channel_sync.storage.models import (
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_SKIPPED,
    Channel,
    SyncResult,
    SyncSummary,
    canonical_channel_url,
)
from channel_sync.storage.writer import MetricsWriter

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 1
DEFAULT_UNREACHABLE_AFTER = 3


class SyncScheduler:
    """Drive resolve -> fetch -> persist for every channel in the roster.

    Usage:
        scheduler = SyncScheduler(db, YouTubeAPI(client))
        summary = await scheduler.run()
    """

    def __init__(
        self,
        db: DatabaseManager,
        api: YouTubeAPI,
        resolver: Optional[ChannelResolver] = None,
        writer: Optional[MetricsWriter] = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        run_deadline: Optional[float] = None,
        entity_delay: float = 0.0,
        unreachable_after_failures: int = DEFAULT_UNREACHABLE_AFTER,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.api = api
        self.resolver = resolver or ChannelResolver(api, db)
        self.writer = writer or MetricsWriter(db)
        self.max_concurrent = max(1, max_concurrent)
        self.run_deadline = run_deadline
        self.entity_delay = entity_delay
        self.unreachable_after_failures = unreachable_after_failures
        self._clock = clock
        self._writes: Dict[int, asyncio.Future] = {}

    async def run(self) -> SyncSummary:
        """Sync every eligible channel once. Roster load errors propagate."""
        t0 = time.monotonic()
        run_date = self._clock().date()
        summary = SyncSummary(run_date=run_date)
        self._writes = {}

        channels = await self.db.get_sync_roster()
        logger.info(
            "=== SYNC START === %d channel(s) to process for %s",
            len(channels), run_date.isoformat(),
        )

        sem = asyncio.Semaphore(self.max_concurrent)
        tasks: Dict[asyncio.Task, Channel] = {
            asyncio.ensure_future(self._sync_guarded(ch, run_date, sem)): ch
            for ch in channels
        }

        pending: Set[asyncio.Future] = set()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.run_deadline)
        if pending:
            logger.warning(
                "Run deadline of %ss reached; cancelling %d unfinished channel(s)",
                self.run_deadline, len(pending),
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        unfinished = [w for w in self._writes.values() if not w.done()]
        if unfinished:
            # Let shielded writes finish so no snapshot is left half-written.
            await asyncio.gather(*unfinished, return_exceptions=True)

        for task, channel in tasks.items():
            if task in pending:
                result = self._deadline_result(channel)
            else:
                result = task.result()
            summary.add(result)

        summary.key_failures = len(self.api.client.failures)
        summary.duration_seconds = time.monotonic() - t0
        logger.info(
            "=== SYNC END === %d done, %d skipped, %d failed, %d key failure(s) in %.1fs",
            summary.total_done,
            summary.total_skipped,
            summary.total_failed,
            summary.key_failures,
            summary.duration_seconds,
        )
        return summary

    def _deadline_result(self, channel: Channel) -> SyncResult:
        """Outcome for a channel cancelled by the run deadline.

        A channel whose shielded write had already started is judged by what
        that write committed.
        """
        result = SyncResult(channel_id=channel.id, label=channel.label)
        write = self._writes.get(channel.id)
        if write is None or not write.done() or write.cancelled() or write.exception() is not None:
            result.error_kind = DeadlineExceeded.__name__
            result.error_message = "run deadline exceeded"
            logger.error("Channel %s (%s) failed [DeadlineExceeded]", channel.id, channel.label)
            return result

        written, error = write.result()
        result.snapshot_written = written
        if error is not None:
            result.error_kind = type(error).__name__
            result.error_message = str(error)
            logger.error("Channel %s (%s) failed [PersistenceError]: %s", channel.id, channel.label, error)
        else:
            result.status = STATUS_DONE if written else STATUS_SKIPPED
            logger.info(
                "Channel %s (%s) finished writing after the run deadline (%s)",
                channel.id, channel.label, result.status,
            )
        return result

    async def _sync_guarded(
        self, channel: Channel, run_date: date, sem: asyncio.Semaphore
    ) -> SyncResult:
        async with sem:
            try:
                result = await self.sync_channel(channel, run_date)
            except Exception as e:
                logger.exception("Channel %s (%s) crashed", channel.id, channel.label)
                result = SyncResult(
                    channel_id=channel.id,
                    label=channel.label,
                    status=STATUS_FAILED,
                    error_kind=type(e).__name__,
                    error_message=str(e),
                )
            if self.entity_delay:
                await asyncio.sleep(self.entity_delay)
            return result

    async def sync_channel(self, channel: Channel, run_date: date) -> SyncResult:
        """Run one channel through skip -> resolve -> fetch -> persist."""
        t0 = time.monotonic()
        result = SyncResult(channel_id=channel.id, label=channel.label)

        def finish(status: str, error: Optional[Exception] = None) -> SyncResult:
            result.status = status
            if error is not None:
                result.error_kind = type(error).__name__
                result.error_message = str(error)
            result.duration_seconds = time.monotonic() - t0
            return result

        # Skip
        latest = await self.db.get_latest_snapshot(channel.id)
        if latest is not None and latest.snapshot_date == run_date.isoformat():
            logger.info("Channel %s (%s) skipped: already synced %s", channel.id, channel.label, latest.snapshot_date)
            return finish(STATUS_SKIPPED)

        # Resolving
        try:
            canonical_id = await self.resolver.resolve_channel(channel)
        except ResolutionFailure as e:
            await self._note_resolution_failure(channel)
            logger.error("Channel %s (%s) failed [ResolutionFailure]: %s", channel.id, channel.label, e)
            return finish(STATUS_FAILED, e)
        except AllKeysExhausted as e:
            logger.error("Channel %s (%s) failed [AllKeysExhausted] during resolution: %s", channel.id, channel.label, e)
            return finish(STATUS_FAILED, e)

        # Fetching
        try:
            details, last_published_at = await self._fetch(canonical_id)
        except (AllKeysExhausted, MissingDataError) as e:
            logger.error("Channel %s (%s) failed [%s]: %s", channel.id, channel.label, type(e).__name__, e)
            return finish(STATUS_FAILED, e)

        # Persisting
        write = asyncio.ensure_future(
            self._persist(channel, canonical_id, details, last_published_at)
        )
        self._writes[channel.id] = write
        written, error = await asyncio.shield(write)
        result.snapshot_written = written

        if error is not None:
            logger.error("Channel %s (%s) failed [PersistenceError]: %s", channel.id, channel.label, error)
            return finish(STATUS_FAILED, error)
        if not written:
            return finish(STATUS_SKIPPED)

        logger.info(
            "Channel %s (%s) synced: subs=%s views=%s videos=%s last_video=%s",
            channel.id,
            details.title or channel.label,
            details.subscriber_count,
            details.view_count,
            details.video_count,
            last_published_at,
        )
        return finish(STATUS_DONE)

    async def _fetch(self, canonical_id: str) -> Tuple[ChannelDetails, str]:
        details = await self.api.get_channel_details(canonical_id)
        if not details.uploads_playlist_id:
            raise MissingDataError(f"Channel {canonical_id} has no uploads playlist")
        last_published_at = await self.api.get_latest_upload_at(details.uploads_playlist_id)
        return details, last_published_at

    async def _persist(
        self,
        channel: Channel,
        canonical_id: str,
        details: ChannelDetails,
        last_published_at: str,
    ) -> Tuple[bool, Optional[PersistenceError]]:
        """Both writes are attempted; the first error (if any) is returned."""
        error: Optional[PersistenceError] = None
        written = False

        try:
            await self.writer.update_channel_metadata(
                channel.id,
                details.title,
                details.thumbnail_url,
                canonical_channel_url(canonical_id),
                canonical_id,
            )
        except PersistenceError as e:
            logger.error("Metadata write failed for channel %s: %s", channel.id, e)
            error = e

        try:
            written = await self.writer.append_snapshot(
                channel.id,
                videos=details.video_count,
                subscribers=details.subscriber_count,
                views=details.view_count,
                last_published_at=last_published_at,
                fetched_at=self._clock(),
            )
        except PersistenceError as e:
            logger.error("Snapshot write failed for channel %s: %s", channel.id, e)
            error = error or e

        return written, error

    async def _note_resolution_failure(self, channel: Channel) -> None:
        try:
            count = await self.db.record_resolution_failure(
                channel.id, self.unreachable_after_failures
            )
        except sqlite3.Error as e:
            logger.error("Could not record resolution failure for channel %s: %s", channel.id, e)
            return
        if count >= self.unreachable_after_failures:
            logger.warning(
                "Channel %s (%s) marked unreachable after %d consecutive resolution failures",
                channel.id, channel.label, count,
            )

"""Data models for the channel sync storage layer."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

CHANNEL_ID_PATTERN = re.compile(r"^UC[A-Za-z0-9_-]+$")
FULL_CHANNEL_ID_PATTERN = re.compile(r"^UC[A-Za-z0-9_-]{22}$")

STATUS_DONE = "done"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


def is_canonical_id(value: Optional[str], strict: bool = False) -> bool:
    """True for a well-formed provider channel ID.

    ``strict`` also requires the full 24-character length, for text that may
    just as well be a handle.
    """
    if not value:
        return False
    pattern = FULL_CHANNEL_ID_PATTERN if strict else CHANNEL_ID_PATTERN
    return pattern.match(value) is not None


def canonical_channel_url(channel_id: str) -> str:
    return f"https://www.youtube.com/channel/{channel_id}"


@dataclass
class Channel:
    """A tracked channel in the roster."""

    id: int
    friend_name: Optional[str] = None
    channel_handle: Optional[str] = None
    channel_url: Optional[str] = None
    override_id: Optional[str] = None
    channel_id: Optional[str] = None
    resolved_id: Optional[str] = None
    channel_name: Optional[str] = None
    thumbnail_url: Optional[str] = None
    unreachable: Optional[bool] = None
    active: bool = True
    failure_count: int = 0
    updated_at: Optional[datetime] = None

    @property
    def raw_identifier(self) -> str:
        """The identifier fed to resolution: override, then handle, then URL."""
        for candidate in (self.override_id, self.channel_handle, self.channel_url):
            if candidate and candidate.strip():
                return candidate.strip()
        return ""

    @property
    def cached_id(self) -> Optional[str]:
        """Previously resolved canonical ID, if any."""
        return self.resolved_id or self.channel_id

    @property
    def label(self) -> str:
        return self.channel_name or self.friend_name or self.raw_identifier or f"#{self.id}"

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Channel:
        unreachable = row.get("unreachable")
        active = row.get("active")
        return cls(
            id=row["id"],
            friend_name=row.get("friend_name"),
            channel_handle=row.get("channel_handle"),
            channel_url=row.get("channel_url"),
            override_id=row.get("override_id"),
            channel_id=row.get("channel_id"),
            resolved_id=row.get("resolved_id"),
            channel_name=row.get("channel_name"),
            thumbnail_url=row.get("thumbnail_url"),
            unreachable=None if unreachable is None else bool(unreachable),
            active=True if active is None else bool(active),
            failure_count=row.get("failure_count") or 0,
            updated_at=_parse_ts(row.get("updated_at")),
        )


@dataclass
class MetricsSnapshot:
    """One immutable point-in-time record of a channel's metrics."""

    channel_id: int
    fetched_at: datetime
    videos: Optional[int] = None
    subscribers: Optional[int] = None
    views: Optional[int] = None
    last_video_at: Optional[str] = None
    id: Optional[int] = None

    @property
    def snapshot_date(self) -> str:
        return self.fetched_at.date().isoformat()

    def to_row(self) -> tuple:
        return (
            self.channel_id,
            self.fetched_at.isoformat(),
            self.snapshot_date,
            self.videos,
            self.subscribers,
            self.views,
            _format_ts(self.last_video_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> MetricsSnapshot:
        return cls(
            id=row.get("id"),
            channel_id=row["channel_id"],
            fetched_at=_parse_ts(row["fetched_at"]) or datetime.min,
            videos=row.get("videos"),
            subscribers=row.get("subscribers"),
            views=row.get("views"),
            last_video_at=row.get("last_video_at"),
        )


@dataclass
class UsageRecord:
    """Cumulative call count for one credential on one day."""

    key_label: str
    date: str
    count: int = 0
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> UsageRecord:
        return cls(
            key_label=row["key_label"],
            date=row["date"],
            count=row.get("count") or 0,
            last_used_at=_parse_ts(row.get("last_used_at")),
        )


@dataclass
class SyncResult:
    """Outcome of syncing a single channel."""

    channel_id: int
    label: str = ""
    status: str = STATUS_FAILED
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    snapshot_written: bool = False
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status != STATUS_FAILED


@dataclass
class SyncSummary:
    """Aggregate result from a full sync run."""

    run_date: Optional[date] = None
    results: List[SyncResult] = field(default_factory=list)
    total_done: int = 0
    total_skipped: int = 0
    total_failed: int = 0
    key_failures: int = 0
    duration_seconds: float = 0.0

    def add(self, result: SyncResult) -> None:
        self.results.append(result)
        if result.status == STATUS_DONE:
            self.total_done += 1
        elif result.status == STATUS_SKIPPED:
            self.total_skipped += 1
        else:
            self.total_failed += 1

    @property
    def total(self) -> int:
        return len(self.results)


# --- Helpers ---

def _format_ts(val: Any) -> Optional[str]:
    """Provider timestamps are stored verbatim; datetimes as ISO strings."""
    if val is None or isinstance(val, str):
        return val
    return val.isoformat()


def _parse_ts(val: Any) -> Optional[datetime]:
    """Parse a timestamp string or return None."""
    if val is None:
        return None
    if isinstance(val, datetime):
        return val
    try:
        from dateutil.parser import parse
        return parse(str(val))
    except (ValueError, TypeError, OverflowError):
        return None

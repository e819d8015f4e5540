"""YouTube Data API v3 calls used by a sync: search, channel details, latest upload."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from channel_sync.connectors.rotation import ApiKey, KeyRotationClient, ProviderRequest
from channel_sync.errors import MissingDataError

logger = logging.getLogger(__name__)

THUMBNAIL_PREFERENCE = ("high", "medium", "default")


@dataclass
class CostPolicy:
    """Usage units recorded per successful call."""

    search: int = 1
    details: int = 1
    uploads: int = 1

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> CostPolicy:
        cfg = cfg or {}
        return cls(
            search=int(cfg.get("search", 1)),
            details=int(cfg.get("details", 1)),
            uploads=int(cfg.get("uploads", 1)),
        )


@dataclass
class ChannelDetails:
    """Snippet, content details and statistics for one channel."""

    channel_id: str
    title: Optional[str]
    thumbnail_url: Optional[str]
    uploads_playlist_id: Optional[str]
    video_count: Optional[int]
    subscriber_count: Optional[int]
    view_count: Optional[int]


class YouTubeAPI:
    """Thin request builders and parsers on top of a KeyRotationClient."""

    def __init__(self, client: KeyRotationClient, costs: Optional[CostPolicy] = None) -> None:
        self.client = client
        self.costs = costs or CostPolicy()

    async def search_channel_id(self, handle: str) -> Optional[str]:
        """Best single channel match for a free-text handle."""

        def build(key: ApiKey) -> ProviderRequest:
            return ProviderRequest(
                "search",
                {"part": "snippet", "type": "channel", "q": handle, "maxResults": 1, "key": key.value},
            )

        data = await self.client.fetch(build, self.costs.search, check_items)
        items = data.get("items") or []
        if not items:
            return None
        first = items[0]
        ident = first.get("id")
        if isinstance(ident, dict) and ident.get("channelId"):
            return ident["channelId"]
        return (first.get("snippet") or {}).get("channelId")

    async def get_channel_details(self, channel_id: str) -> ChannelDetails:
        def build(key: ApiKey) -> ProviderRequest:
            return ProviderRequest(
                "channels",
                {"part": "snippet,contentDetails,statistics", "id": channel_id, "key": key.value},
            )

        data = await self.client.fetch(build, self.costs.details, check_items)
        items = data.get("items") or []
        if not items:
            raise MissingDataError(f"No channel data returned for {channel_id}")

        item = items[0]
        snippet = item.get("snippet") or {}
        stats = item.get("statistics")
        if not isinstance(stats, dict):
            raise MissingDataError(f"No statistics returned for {channel_id}")
        if stats.get("viewCount") is None and stats.get("videoCount") is None:
            raise MissingDataError(f"Statistics for {channel_id} carry no view or video count")
        playlists = (item.get("contentDetails") or {}).get("relatedPlaylists") or {}

        return ChannelDetails(
            channel_id=item.get("id") or channel_id,
            title=snippet.get("title"),
            thumbnail_url=_pick_thumbnail(snippet.get("thumbnails")),
            uploads_playlist_id=playlists.get("uploads"),
            video_count=_to_int(stats.get("videoCount")),
            subscriber_count=_to_int(stats.get("subscriberCount")),
            view_count=_to_int(stats.get("viewCount")),
        )

    async def get_latest_upload_at(self, playlist_id: str) -> str:
        """Publish timestamp of the most recent item in an uploads playlist."""

        def build(key: ApiKey) -> ProviderRequest:
            return ProviderRequest(
                "playlistItems",
                {"part": "snippet", "playlistId": playlist_id, "maxResults": 1, "key": key.value},
            )

        data = await self.client.fetch(build, self.costs.uploads, check_items)
        items = data.get("items") or []
        published = (items[0].get("snippet") or {}).get("publishedAt") if items else None
        if not published:
            raise MissingDataError(f"No uploads found in playlist {playlist_id}")
        return published


def check_items(data: Dict[str, Any]) -> Optional[str]:
    """Reject list responses whose ``items`` is not a list of objects."""
    items = data.get("items")
    if items is None:
        return None
    if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
        return "malformed items"
    return None


def _pick_thumbnail(thumbnails: Any) -> Optional[str]:
    if not isinstance(thumbnails, dict):
        return None
    for size in THUMBNAIL_PREFERENCE:
        entry = thumbnails.get(size)
        if isinstance(entry, dict) and entry.get("url"):
            return entry["url"]
    return None


def _to_int(val: Any) -> Optional[int]:
    # Statistics arrive as decimal strings.
    if val is None:
        return None
    try:
        return int(val)
    except (TypeError, ValueError):
        return None

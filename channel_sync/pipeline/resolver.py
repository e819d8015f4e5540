"""Map a raw handle or profile URL to the provider's canonical channel ID."""

from __future__ import annotations

import logging
import re
import sqlite3
from typing import TYPE_CHECKING, Optional

from channel_sync.errors import ResolutionFailure
from channel_sync.storage.models import Channel, is_canonical_id

if TYPE_CHECKING:
    from channel_sync.connectors.youtube import YouTubeAPI
    from channel_sync.storage.db import DatabaseManager

logger = logging.getLogger(__name__)

PROFILE_SEGMENT = "/channel/"
HANDLE_IN_URL = re.compile(r"/(@[^/?#\s]+)")


def extract_profile_id(raw: str) -> Optional[str]:
    """Canonical ID embedded in a ``/channel/<id>`` URL, or a bare canonical ID."""
    if is_canonical_id(raw, strict=True):
        return raw
    if PROFILE_SEGMENT not in raw:
        return None
    tail = raw.split(PROFILE_SEGMENT, 1)[1]
    for sep in ("/", "?", "#"):
        tail = tail.split(sep, 1)[0]
    return tail if is_canonical_id(tail) else None


def handle_query(raw: str) -> str:
    """Search text for a handle: ``@name`` out of a URL, leading marker stripped."""
    match = HANDLE_IN_URL.search(raw)
    candidate = match.group(1) if match else raw
    return candidate.strip().lstrip("@").strip()


class ChannelResolver:
    """Resolve channels cheapest-first: cached ID, profile URL, then one search call.

    A newly resolved ID is written back onto the channel row so later runs
    take the cached path; a cached ID is never replaced by a search result.
    """

    def __init__(self, api: "YouTubeAPI", db: Optional["DatabaseManager"] = None) -> None:
        self.api = api
        self.db = db

    async def resolve(self, raw_identifier: str, cached_id: Optional[str] = None) -> str:
        """Return the canonical ID for a raw identifier.

        Raises ResolutionFailure when the identifier names no channel, and lets
        AllKeysExhausted through when the search itself could not be made.
        """
        if cached_id:
            if is_canonical_id(cached_id):
                return cached_id
            logger.warning("Ignoring malformed cached channel ID %r", cached_id)

        raw = (raw_identifier or "").strip()
        if not raw:
            raise ResolutionFailure("Empty channel identifier")

        profile_id = extract_profile_id(raw)
        if profile_id:
            return profile_id

        query = handle_query(raw)
        if not query:
            raise ResolutionFailure(f"Cannot derive a handle from {raw!r}")

        found = await self.api.search_channel_id(query)
        if not found:
            raise ResolutionFailure(f"No channel found for {query!r}")
        return found

    async def resolve_channel(self, channel: Channel) -> str:
        """Resolve a roster row, persisting a newly obtained ID."""
        cached = channel.cached_id
        resolved = await self.resolve(channel.raw_identifier, cached)
        if resolved != cached:
            logger.info("Resolved %s -> %s", channel.raw_identifier, resolved)
            if self.db is not None:
                try:
                    await self.db.set_resolved_id(channel.id, resolved)
                except sqlite3.Error as e:
                    logger.error("Could not persist resolved ID for channel %s: %s", channel.id, e)
            channel.resolved_id = resolved
        return resolved

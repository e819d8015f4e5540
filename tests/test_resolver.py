"""Tests for canonical channel ID resolution."""

from __future__ import annotations

import pytest

from conftest import FakeTransport, quota_error, search_payload

from channel_sync.connectors.rotation import ApiKey, KeyRotationClient
from channel_sync.connectors.youtube import YouTubeAPI
from channel_sync.errors import AllKeysExhausted, ResolutionFailure
from channel_sync.pipeline.resolver import ChannelResolver, extract_profile_id, handle_query

FULL_ID = "UCabcdefghijklmnopqrstuv"


def make_resolver(transport, db=None, n_keys=2):
    keys = [ApiKey(f"KEY{i}", f"secret{i}") for i in range(1, n_keys + 1)]
    api = YouTubeAPI(KeyRotationClient(keys, transport=transport))
    return ChannelResolver(api, db)


class TestIdentifierParsing:
    def test_extract_profile_id_from_url(self):
        assert extract_profile_id(f"https://www.youtube.com/channel/{FULL_ID}") == FULL_ID
        assert extract_profile_id(f"https://youtube.com/channel/{FULL_ID}/videos?view=0") == FULL_ID
        assert extract_profile_id("https://youtube.com/channel/UC123#about") == "UC123"

    def test_extract_profile_id_bare(self):
        assert extract_profile_id(FULL_ID) == FULL_ID
        assert extract_profile_id("UCsomething") is None

    def test_extract_profile_id_rejects_other_urls(self):
        assert extract_profile_id("https://youtube.com/@someone") is None
        assert extract_profile_id("https://youtube.com/channel/not-an-id") is None

    def test_handle_query(self):
        assert handle_query("@exampleChannel") == "exampleChannel"
        assert handle_query("exampleChannel") == "exampleChannel"
        assert handle_query("https://www.youtube.com/@exampleChannel/videos") == "exampleChannel"
        assert handle_query("https://youtube.com/@someone?si=abc") == "someone"


class TestChannelResolver:
    @pytest.mark.asyncio
    async def test_cached_id_costs_nothing(self):
        transport = FakeTransport()
        resolver = make_resolver(transport)

        assert await resolver.resolve("@ignored", cached_id="UC123") == "UC123"
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_profile_url_costs_nothing(self):
        transport = FakeTransport()
        resolver = make_resolver(transport)

        resolved = await resolver.resolve(f"https://www.youtube.com/channel/{FULL_ID}")
        assert resolved == FULL_ID
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_handle_uses_single_search(self):
        transport = FakeTransport({"search": lambda p: search_payload("UC123")})
        resolver = make_resolver(transport)

        assert await resolver.resolve("@exampleChannel") == "UC123"
        searches = transport.calls_to("search")
        assert len(searches) == 1
        assert searches[0]["q"] == "exampleChannel"
        assert searches[0]["maxResults"] == 1
        assert searches[0]["type"] == "channel"

    @pytest.mark.asyncio
    async def test_handle_url_searches_for_handle(self):
        transport = FakeTransport({"search": lambda p: search_payload("UC999")})
        resolver = make_resolver(transport)

        assert await resolver.resolve("https://www.youtube.com/@someone") == "UC999"
        assert transport.calls_to("search")[0]["q"] == "someone"

    @pytest.mark.asyncio
    async def test_malformed_cached_id_falls_through(self):
        transport = FakeTransport({"search": lambda p: search_payload("UC123")})
        resolver = make_resolver(transport)

        assert await resolver.resolve("@exampleChannel", cached_id="garbage") == "UC123"
        assert len(transport.calls_to("search")) == 1

    @pytest.mark.asyncio
    async def test_no_search_result(self):
        transport = FakeTransport({"search": lambda p: (200, {"items": []})})
        resolver = make_resolver(transport)

        with pytest.raises(ResolutionFailure):
            await resolver.resolve("@nobody")

    @pytest.mark.asyncio
    async def test_search_exhausting_keys(self):
        transport = FakeTransport({"search": lambda p: quota_error()})
        resolver = make_resolver(transport, n_keys=3)

        with pytest.raises(AllKeysExhausted):
            await resolver.resolve("@nobody")
        assert len(transport.calls_to("search")) == 3

    @pytest.mark.asyncio
    async def test_empty_identifier(self):
        transport = FakeTransport()
        resolver = make_resolver(transport)

        with pytest.raises(ResolutionFailure):
            await resolver.resolve("   ")
        assert transport.calls == []


class TestResolveChannel:
    @pytest.mark.asyncio
    async def test_new_id_written_back(self, db):
        cid = await db.add_channel(channel_handle="@exampleChannel")
        transport = FakeTransport({"search": lambda p: search_payload("UC123")})
        resolver = make_resolver(transport, db)

        channel = await db.get_channel(cid)
        assert await resolver.resolve_channel(channel) == "UC123"
        assert channel.resolved_id == "UC123"
        assert (await db.get_channel(cid)).resolved_id == "UC123"

        # The next run takes the cached path.
        channel = await db.get_channel(cid)
        await resolver.resolve_channel(channel)
        assert len(transport.calls_to("search")) == 1

    @pytest.mark.asyncio
    async def test_cached_id_never_overwritten(self, db):
        cid = await db.add_channel(channel_handle="@exampleChannel", channel_id="UCimported")
        transport = FakeTransport({"search": lambda p: search_payload("UCother")})
        resolver = make_resolver(transport, db)

        channel = await db.get_channel(cid)
        assert await resolver.resolve_channel(channel) == "UCimported"
        stored = await db.get_channel(cid)
        assert stored.channel_id == "UCimported"
        assert stored.resolved_id is None
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_override_takes_precedence(self, db):
        cid = await db.add_channel(
            channel_handle="@wrong",
            override_id=f"https://www.youtube.com/channel/{FULL_ID}",
        )
        transport = FakeTransport()
        resolver = make_resolver(transport, db)

        assert await resolver.resolve_channel(await db.get_channel(cid)) == FULL_ID
        assert transport.calls == []

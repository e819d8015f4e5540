"""Tests for key rotation, response classification and per-call usage accounting."""

from __future__ import annotations

import asyncio
from datetime import datetime

import aiohttp
import pytest

from conftest import FakeTransport, details_payload, quota_error

from channel_sync.connectors.rotation import (
    ApiKey,
    KeyCursor,
    KeyRotationClient,
    ProviderRequest,
    classify_response,
    parse_key_pool,
)
from channel_sync.connectors.youtube import YouTubeAPI, check_items
from channel_sync.errors import AllKeysExhausted, ConfigurationError
from channel_sync.storage.usage import UsageAccountant


def build_ping(key: ApiKey) -> ProviderRequest:
    return ProviderRequest("ping", {"part": "id", "key": key.value})


def keys(n: int):
    return [ApiKey(label=f"KEY{i}", value=f"secret{i}") for i in range(1, n + 1)]


def by_key(responses):
    """Handler answering from a {key value: response} map."""
    return lambda params: responses[params["key"]]


class TestKeyPool:
    def test_parse_key_pool_labels_in_order(self):
        pool = parse_key_pool(" a, b ,,c ")
        assert [k.label for k in pool] == ["KEY1", "KEY2", "KEY3"]
        assert [k.value for k in pool] == ["a", "b", "c"]

    def test_parse_key_pool_rejects_empty(self):
        with pytest.raises(ConfigurationError):
            parse_key_pool("")
        with pytest.raises(ConfigurationError):
            parse_key_pool(" , ")
        with pytest.raises(ConfigurationError):
            parse_key_pool(None)

    def test_key_value_not_in_repr(self):
        assert "secret1" not in repr(keys(1)[0])

    def test_cursor_wraps(self):
        cursor = KeyCursor(keys(2))
        assert [cursor.next_key().label for _ in range(5)] == ["KEY1", "KEY2", "KEY1", "KEY2", "KEY1"]
        assert cursor.position == 5

    def test_cursor_requires_keys(self):
        with pytest.raises(ConfigurationError):
            KeyCursor([])


class TestClassifyResponse:
    def test_usable_payload(self):
        assert classify_response(200, {"items": []}) is None

    def test_quota_error_payload(self):
        reason = classify_response(*quota_error())
        assert reason.startswith("HTTP 403 quota:quotaExceeded")

    def test_permission_error_payload(self):
        body = {"error": {"code": 400, "message": "API key not valid.", "errors": [{"reason": "keyInvalid"}]}}
        assert "permission:keyInvalid" in classify_response(400, body)

    def test_error_field_with_200_status(self):
        assert classify_response(200, {"error": {"message": "odd"}}) is not None

    def test_http_error_without_body(self):
        assert classify_response(500, None) == "HTTP 500"

    def test_non_object_body(self):
        assert classify_response(200, None) == "malformed response"
        assert classify_response(200, ["items"]) == "malformed response"


class TestKeyRotationClient:
    @pytest.mark.asyncio
    async def test_first_key_success(self):
        transport = FakeTransport({"ping": lambda p: (200, {"ok": p["key"]})})
        client = KeyRotationClient(keys(3), transport=transport)

        assert await client.fetch(build_ping) == {"ok": "secret1"}
        assert len(transport.calls) == 1
        assert client.failures == []
        assert client.calls == 1

    @pytest.mark.asyncio
    async def test_rotates_past_failing_keys(self):
        transport = FakeTransport({
            "ping": by_key({
                "secret1": quota_error(),
                "secret2": quota_error(429),
                "secret3": (200, {"ok": "third"}),
            })
        })
        client = KeyRotationClient(keys(3), transport=transport)

        assert await client.fetch(build_ping) == {"ok": "third"}
        assert [p["key"] for p in transport.calls_to("ping")] == ["secret1", "secret2", "secret3"]
        assert [f.label for f in client.failures] == ["KEY1", "KEY2"]

    @pytest.mark.asyncio
    async def test_all_keys_exhausted(self):
        transport = FakeTransport({"ping": lambda p: quota_error()})
        client = KeyRotationClient(keys(3), transport=transport)

        with pytest.raises(AllKeysExhausted) as exc_info:
            await client.fetch(build_ping)

        assert len(exc_info.value.failures) == 3
        assert [f.label for f in exc_info.value.failures] == ["KEY1", "KEY2", "KEY3"]
        assert len(exc_info.value.reasons) == 3
        assert len(transport.calls) == 3

    @pytest.mark.asyncio
    async def test_each_key_tried_at_most_once(self):
        transport = FakeTransport({"ping": lambda p: (500, None)})
        client = KeyRotationClient(keys(2), transport=transport)

        with pytest.raises(AllKeysExhausted):
            await client.fetch(build_ping)
        sent = [p["key"] for p in transport.calls_to("ping")]
        assert sorted(sent) == ["secret1", "secret2"]

    @pytest.mark.asyncio
    async def test_cursor_carries_across_calls(self):
        transport = FakeTransport({"ping": lambda p: (200, {"ok": p["key"]})})
        client = KeyRotationClient(keys(3), transport=transport)

        results = [await client.fetch(build_ping) for _ in range(4)]
        assert [r["ok"] for r in results] == ["secret1", "secret2", "secret3", "secret1"]

    @pytest.mark.asyncio
    async def test_transport_exception_rotates(self):
        transport = FakeTransport({
            "ping": by_key({
                "secret1": aiohttp.ClientConnectionError("reset"),
                "secret2": (200, {"ok": True}),
            })
        })
        client = KeyRotationClient(keys(2), transport=transport)

        assert await client.fetch(build_ping) == {"ok": True}
        assert "transport error" in client.failures[0].reason

    @pytest.mark.asyncio
    async def test_malformed_body_rotates(self):
        transport = FakeTransport({
            "ping": by_key({"secret1": (200, None), "secret2": (200, {"ok": True})})
        })
        client = KeyRotationClient(keys(2), transport=transport)

        assert await client.fetch(build_ping) == {"ok": True}
        assert "malformed" in client.failures[0].reason

    @pytest.mark.asyncio
    async def test_timeout_rotates(self):
        async def slow_then_fast(endpoint, params):
            if params["key"] == "secret1":
                await asyncio.sleep(1)
            return 200, {"ok": params["key"]}

        client = KeyRotationClient(keys(2), transport=slow_then_fast, request_timeout=0.05)

        assert await client.fetch(build_ping) == {"ok": "secret2"}
        assert "timed out" in client.failures[0].reason

    @pytest.mark.asyncio
    async def test_one_credential_per_request(self):
        transport = FakeTransport({"ping": lambda p: quota_error()})
        client = KeyRotationClient(keys(2), transport=transport)

        with pytest.raises(AllKeysExhausted):
            await client.fetch(build_ping)
        for _, params in transport.calls:
            assert list(params).count("key") == 1
            assert params["key"] in {"secret1", "secret2"}


class TestUsageRecording:
    @pytest.mark.asyncio
    async def test_usage_recorded_for_successful_key_only(self, db):
        transport = FakeTransport({
            "ping": by_key({"secret1": quota_error(), "secret2": (200, {"ok": True})})
        })
        client = KeyRotationClient(
            keys(2),
            usage=UsageAccountant(db),
            transport=transport,
            clock=lambda: datetime(2024, 1, 1, 12),
        )

        await client.fetch(build_ping, cost_units=1)

        assert await db.get_usage("KEY1", "2024-01-01") is None
        assert (await db.get_usage("KEY2", "2024-01-01")).count == 1

    @pytest.mark.asyncio
    async def test_cost_units_accumulate(self, db):
        transport = FakeTransport({"ping": lambda p: (200, {"ok": True})})
        client = KeyRotationClient(
            keys(1),
            usage=UsageAccountant(db),
            transport=transport,
            clock=lambda: datetime(2024, 1, 1, 12),
        )

        await client.fetch(build_ping, cost_units=100)
        await client.fetch(build_ping, cost_units=1)

        assert (await db.get_usage("KEY1", "2024-01-01")).count == 101

    @pytest.mark.asyncio
    async def test_exhaustion_records_no_usage(self, db):
        transport = FakeTransport({"ping": lambda p: quota_error()})
        client = KeyRotationClient(
            keys(2),
            usage=UsageAccountant(db),
            transport=transport,
            clock=lambda: datetime(2024, 1, 1, 12),
        )

        with pytest.raises(AllKeysExhausted):
            await client.fetch(build_ping)
        assert await db.get_usage_since("2024-01-01") == []


class TestPayloadChecks:
    @pytest.mark.asyncio
    async def test_malformed_items_rotate_to_next_key(self):
        transport = FakeTransport({
            "channels": by_key({
                "secret1": (200, {"items": ["UC123"]}),
                "secret2": details_payload("UC123"),
            })
        })
        api = YouTubeAPI(KeyRotationClient(keys(2), transport=transport))

        details = await api.get_channel_details("UC123")

        assert details.view_count == 9000
        assert len(transport.calls_to("channels")) == 2

    @pytest.mark.asyncio
    async def test_malformed_items_on_every_key(self):
        transport = FakeTransport({"playlistItems": lambda p: (200, {"items": [None]})})
        api = YouTubeAPI(KeyRotationClient(keys(2), transport=transport))

        with pytest.raises(AllKeysExhausted) as exc_info:
            await api.get_latest_upload_at("PL1")
        assert all("malformed items" in r for r in exc_info.value.reasons)

    def test_check_items(self):
        assert check_items({"items": [{"id": "x"}]}) is None
        assert check_items({}) is None
        assert check_items({"items": "nope"}) == "malformed items"
        assert check_items({"items": [{"id": "x"}, 3]}) == "malformed items"

"""Shared fixtures: temporary stores and an in-process provider transport."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Tuple, Union

import pytest

from channel_sync.storage.db import DatabaseManager

Response = Union[Tuple[int, Any], Exception]
Handler = Callable[[Dict[str, Any]], Response]


class FakeTransport:
    """Answer provider calls from per-endpoint handlers and record every request.

    A handler gets the request params and returns ``(status, body)`` or an
    exception instance to raise. Unrouted endpoints answer 404.
    """

    def __init__(self, routes: Dict[str, Handler] | None = None) -> None:
        self.routes: Dict[str, Handler] = dict(routes or {})
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def on(self, endpoint: str, handler: Handler) -> "FakeTransport":
        self.routes[endpoint] = handler
        return self

    async def __call__(self, endpoint: str, params: Dict[str, Any]) -> Tuple[int, Any]:
        self.calls.append((endpoint, dict(params)))
        handler = self.routes.get(endpoint)
        if handler is None:
            return 404, {"error": {"code": 404, "message": "not found", "errors": [{"reason": "notFound"}]}}
        response = handler(params)
        if isinstance(response, Exception):
            raise response
        return response

    def calls_to(self, endpoint: str) -> List[Dict[str, Any]]:
        return [params for ep, params in self.calls if ep == endpoint]


def quota_error(status: int = 403) -> Tuple[int, Any]:
    return status, {
        "error": {
            "code": status,
            "message": "The request cannot be completed because you have exceeded your quota.",
            "errors": [{"reason": "quotaExceeded", "domain": "youtube.quota"}],
        }
    }


def search_payload(channel_id: str) -> Tuple[int, Any]:
    return 200, {
        "kind": "youtube#searchListResponse",
        "items": [{"id": {"kind": "youtube#channel", "channelId": channel_id}, "snippet": {"channelId": channel_id}}],
    }


def details_payload(
    channel_id: str,
    title: str = "Example",
    thumbnail: str = "t.jpg",
    uploads: str | None = "PL1",
    videos: int = 10,
    subscribers: int = 500,
    views: int = 9000,
) -> Tuple[int, Any]:
    content = {"relatedPlaylists": {"uploads": uploads}} if uploads else {}
    return 200, {
        "items": [
            {
                "id": channel_id,
                "snippet": {
                    "title": title,
                    "thumbnails": {"default": {"url": thumbnail}},
                },
                "contentDetails": content,
                "statistics": {
                    "videoCount": str(videos),
                    "subscriberCount": str(subscribers),
                    "viewCount": str(views),
                },
            }
        ]
    }


def uploads_payload(published_at: str = "2024-03-01T00:00:00Z") -> Tuple[int, Any]:
    return 200, {"items": [{"snippet": {"publishedAt": published_at}}]}


@pytest.fixture
def tmp_db(tmp_path):
    """Return a path to a temporary database file."""
    return str(tmp_path / "test.db")


@pytest.fixture
async def db(tmp_db):
    """Return an initialized DatabaseManager."""
    manager = DatabaseManager(tmp_db)
    await manager.initialize()
    yield manager
    await manager.close()

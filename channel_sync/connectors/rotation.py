"""Outbound provider calls rotated across a pool of API keys.

Every attempt takes the next key from a cursor shared by the whole run, so
consecutive calls start on different keys and quota is spread across the
pool. A key that fails (network error, HTTP error, quota/permission error,
malformed body) is logged and the call moves on to the next key; the first
well-formed payload wins.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

import aiohttp
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt

from channel_sync.errors import (
    AllKeysExhausted,
    ConfigurationError,
    KeyFailure,
    PersistenceError,
    TransientFetchError,
)

if TYPE_CHECKING:
    from channel_sync.storage.usage import UsageAccountant

logger = logging.getLogger(__name__)

API_BASE_URL = "https://www.googleapis.com/youtube/v3"
DEFAULT_TIMEOUT = 15.0
DEFAULT_USER_AGENT = "channel-sync/0.1 (+https://developers.google.com/youtube/v3)"

QUOTA_REASONS = {
    "quotaExceeded",
    "dailyLimitExceeded",
    "rateLimitExceeded",
    "userRateLimitExceeded",
}
PERMISSION_REASONS = {
    "forbidden",
    "keyInvalid",
    "keyExpired",
    "accessNotConfigured",
    "ipRefererBlocked",
}


@dataclass(frozen=True)
class ApiKey:
    """A provider credential. ``label`` is what gets logged and accounted."""

    label: str
    value: str = field(repr=False)


@dataclass
class ProviderRequest:
    endpoint: str
    params: Dict[str, Any]


RequestBuilder = Callable[[ApiKey], ProviderRequest]
PayloadCheck = Callable[[Dict[str, Any]], Optional[str]]


class Transport(Protocol):
    """Issue one GET and return (HTTP status, decoded JSON body or None)."""

    def __call__(self, endpoint: str, params: Dict[str, Any]) -> Awaitable[Tuple[int, Any]]:
        ...


def parse_key_pool(raw: Optional[str]) -> List[ApiKey]:
    """Split a comma-separated key list into labelled keys (KEY1..KEYn)."""
    values = [v.strip() for v in (raw or "").split(",")]
    values = [v for v in values if v]
    if not values:
        raise ConfigurationError("No provider API keys configured (YT_API_KEYS is empty)")
    return [ApiKey(label=f"KEY{i}", value=v) for i, v in enumerate(values, 1)]


class KeyCursor:
    """Round-robin position over the key pool, shared by every caller in a run."""

    def __init__(self, keys: Sequence[ApiKey]) -> None:
        if not keys:
            raise ConfigurationError("Key pool must contain at least one key")
        self._keys = list(keys)
        self._position = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def position(self) -> int:
        with self._lock:
            return self._position

    def next_key(self) -> ApiKey:
        with self._lock:
            key = self._keys[self._position % len(self._keys)]
            self._position += 1
            return key


class AiohttpTransport:
    """Default transport: one shared aiohttp session against the Data API."""

    def __init__(self, base_url: str = API_BASE_URL, user_agent: str = DEFAULT_USER_AGENT) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self._session: Optional[aiohttp.ClientSession] = None

    async def __call__(self, endpoint: str, params: Dict[str, Any]) -> Tuple[int, Any]:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"User-Agent": self.user_agent})
        url = f"{self.base_url}/{endpoint}"
        async with self._session.get(url, params=params) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = None
            return resp.status, body

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


def classify_response(status: int, body: Any) -> Optional[str]:
    """Return a failure reason for an unusable response, or None if it is usable."""
    if isinstance(body, dict) and "error" in body:
        return f"HTTP {status} {_describe_api_error(body['error'])}"
    if status >= 400:
        return f"HTTP {status}"
    if not isinstance(body, dict):
        return "malformed response"
    return None


def _describe_api_error(error: Any) -> str:
    if not isinstance(error, dict):
        return str(error)
    reasons = [
        e.get("reason", "")
        for e in error.get("errors") or []
        if isinstance(e, dict)
    ]
    reason = next((r for r in reasons if r), error.get("status") or "error")
    if reason in QUOTA_REASONS:
        kind = "quota"
    elif reason in PERMISSION_REASONS:
        kind = "permission"
    else:
        kind = "api"
    message = error.get("message") or ""
    return f"{kind}:{reason} {message}".strip()


class KeyRotationClient:
    """Fetch provider payloads, rotating keys on every attempt.

    Usage:
        client = KeyRotationClient(parse_key_pool(os.environ["YT_API_KEYS"]), usage=accountant)
        payload = await client.fetch(builder, cost_units=1)
        await client.close()
    """

    def __init__(
        self,
        keys: Sequence[ApiKey],
        usage: Optional["UsageAccountant"] = None,
        transport: Optional[Transport] = None,
        request_timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._cursor = KeyCursor(keys)
        self._usage = usage
        self._owns_transport = transport is None
        self._transport: Transport = transport or AiohttpTransport()
        self.request_timeout = request_timeout
        self._clock = clock
        self.failures: List[KeyFailure] = []
        self.calls = 0

    @property
    def cursor(self) -> KeyCursor:
        return self._cursor

    async def close(self) -> None:
        if self._owns_transport and isinstance(self._transport, AiohttpTransport):
            await self._transport.close()

    async def fetch(
        self,
        build: RequestBuilder,
        cost_units: int = 1,
        check: Optional[PayloadCheck] = None,
    ) -> Dict[str, Any]:
        """Return the first well-formed payload, trying each key at most once.

        ``check`` may reject a payload the generic classification accepts; its
        reason is treated like any other key failure.

        Raises AllKeysExhausted carrying every per-key failure in order.
        """
        failures: List[KeyFailure] = []
        used: Optional[ApiKey] = None
        payload: Dict[str, Any] = {}

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(len(self._cursor)),
                retry=retry_if_exception_type(TransientFetchError),
                reraise=False,
            ):
                with attempt:
                    key = self._cursor.next_key()
                    try:
                        payload = await self._attempt(key, build, check)
                    except TransientFetchError as e:
                        failure = KeyFailure(key.label, e.reason)
                        failures.append(failure)
                        self.failures.append(failure)
                        logger.warning("Key %s failed: %s", key.label, e.reason)
                        raise
                    used = key
        except RetryError:
            raise AllKeysExhausted(failures) from None

        assert used is not None
        self.calls += 1
        await self._report_usage(used, cost_units)
        return payload

    async def _attempt(
        self, key: ApiKey, build: RequestBuilder, check: Optional[PayloadCheck] = None
    ) -> Dict[str, Any]:
        request = build(key)
        try:
            status, body = await asyncio.wait_for(
                self._transport(request.endpoint, request.params),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError:
            raise TransientFetchError(
                f"{request.endpoint} timed out after {self.request_timeout}s"
            ) from None
        except (aiohttp.ClientError, OSError) as e:
            raise TransientFetchError(f"{request.endpoint} transport error: {e}") from e

        reason = classify_response(status, body)
        if not reason and check is not None:
            reason = check(body)
        if reason:
            raise TransientFetchError(f"{request.endpoint} {reason}")
        return body

    async def _report_usage(self, key: ApiKey, cost_units: int) -> None:
        if self._usage is None or cost_units <= 0:
            return
        today = self._clock().date().isoformat()
        try:
            await self._usage.record_usage(key.label, today, cost_units)
        except PersistenceError as e:
            logger.error("Usage accounting failed for %s: %s", key.label, e)

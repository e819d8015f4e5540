"""Provider connectors: key rotation and YouTube Data API calls."""

from channel_sync.connectors.rotation import (
    AiohttpTransport,
    ApiKey,
    KeyCursor,
    KeyRotationClient,
    ProviderRequest,
    parse_key_pool,
)
from channel_sync.connectors.youtube import ChannelDetails, CostPolicy, YouTubeAPI

__all__ = [
    "AiohttpTransport",
    "ApiKey",
    "KeyCursor",
    "KeyRotationClient",
    "ProviderRequest",
    "parse_key_pool",
    "ChannelDetails",
    "CostPolicy",
    "YouTubeAPI",
]

"""Error taxonomy for the channel sync engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence


class SyncError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(SyncError):
    """Required configuration is absent or invalid. Fatal for the process."""


class ResolutionFailure(SyncError):
    """No canonical channel ID could be derived for a raw identifier."""


class TransientFetchError(SyncError):
    """A single credential attempt failed (network, HTTP, quota or malformed body)."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class KeyFailure:
    """One failed credential attempt, in the order it happened."""

    label: str
    reason: str

    def __str__(self) -> str:
        return f"{self.label}: {self.reason}"


class AllKeysExhausted(SyncError):
    """Every credential in the pool failed for one logical call."""

    def __init__(self, failures: Sequence[KeyFailure]) -> None:
        self.failures: List[KeyFailure] = list(failures)
        detail = "; ".join(str(f) for f in self.failures) or "no credentials"
        super().__init__(f"All {len(self.failures)} key(s) exhausted: {detail}")

    @property
    def reasons(self) -> List[str]:
        return [f.reason for f in self.failures]


class MissingDataError(SyncError):
    """A well-formed provider payload lacked the fields a sync step needs."""


class PersistenceError(SyncError):
    """A store write failed."""


class DeadlineExceeded(SyncError):
    """The run deadline expired before this channel finished."""

"""
Token cache abstraction.

TokenManager depends on the TokenCache protocol only. InMemoryTokenCache is
the single-process backend; a second process simply misses and refreshes
again, which costs a round-trip but never correctness.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, FrozenSet, List, Optional, Protocol


@dataclass(frozen=True)
class CredentialPair:
    """Access token plus the (possibly rotated) refresh token it came with."""

    access_token: str
    refresh_token: str
    granted_scopes: FrozenSet[str]
    expires_at: datetime

    def is_usable(self, now: datetime, buffer: timedelta) -> bool:
        return now < self.expires_at - buffer


@dataclass(frozen=True)
class CacheEntry:
    pair: CredentialPair
    client_id: str
    source_refresh_token: str
    last_refreshed_at: datetime
    refresh_token_expires_at: Optional[datetime] = None

    def matches(self, refresh_token: str, client_id: str) -> bool:
        """True when the presented credentials belong to this entry's lineage."""
        if client_id != self.client_id:
            return False
        return refresh_token in (self.source_refresh_token, self.pair.refresh_token)


class TokenCache(Protocol):
    def get(self, key: str) -> Optional[CacheEntry]: ...

    def put(self, key: str, entry: CacheEntry) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...

    def keys(self) -> List[str]: ...


class InMemoryTokenCache:
    """
    Process-local cache.

    Entries are immutable and replaced whole, so a reader sees either the old
    or the new entry, never a partially written one.
    """

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def put(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> List[str]:
        return list(self._entries)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

"""
Access token lifecycle.

Wraps the stateless credential exchanger with expiry tracking, refresh token
rotation, a single bounded retry and a per-mailbox cache.
"""

import asyncio
import logging
import os
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

import httpx

from ..adapters.outlook._auth import exchange_refresh_token, mask_secret, parse_scopes
from ..errors import CredentialExpired, UpstreamAuthError
from .token_cache import CacheEntry, CredentialPair, InMemoryTokenCache, TokenCache, utcnow


# Configuration
IMAP_SCOPE = os.getenv("MAILRELAY_IMAP_SCOPE", "").strip() or None
REFRESH_TOKEN_VALIDITY_DAYS = int(os.getenv("MAILRELAY_REFRESH_TOKEN_DAYS", "90"))

EXPIRY_BUFFER = timedelta(seconds=300)
MAX_RETRIES = 1
RETRY_BASE_DELAY_SECONDS = 1.0
DEFAULT_EXPIRES_IN = 3600

log = logging.getLogger("mailrelay.tokens")


def cache_key(email: str) -> str:
    return email.strip().lower()


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, UpstreamAuthError):
        return exc.is_retryable
    return isinstance(exc, httpx.TransportError)


class TokenManager:
    """
    Hands out access tokens for a mailbox, refreshing only when needed.

    Cached tokens are reused while now < expires_at - 300s. Concurrent
    requests for the same mailbox serialize on a per-key lock so only one
    refresh is in flight per mailbox.
    """

    def __init__(
        self,
        cache: Optional[TokenCache] = None,
        *,
        scope: Optional[str] = IMAP_SCOPE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cache = cache if cache is not None else InMemoryTokenCache()
        self.scope = scope
        self.transport = transport
        self._sleep = sleep
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks.setdefault(key, asyncio.Lock())
        return lock

    def _cached_pair(self, key: str, refresh_token: str, client_id: str) -> Optional[CredentialPair]:
        entry = self.cache.get(key)
        if entry is None or not entry.matches(refresh_token, client_id):
            return None
        if not entry.pair.is_usable(self._clock(), EXPIRY_BUFFER):
            return None
        return entry.pair

    async def get_valid_access_credential(
        self,
        refresh_token: str,
        client_id: str,
        email: str,
        rotated_refresh_token: Optional[str] = None,
    ) -> CredentialPair:
        """
        Return a usable access token for the mailbox.

        Args:
            refresh_token: Refresh token presented by the caller
            client_id: Application (client) ID
            email: Mailbox address, used as the cache key
            rotated_refresh_token: Replacement for refresh_token issued by an
                exchange earlier in the same request (e.g. the Graph capability check)

        Returns:
            CredentialPair whose refresh_token is the newest known one

        Raises:
            CredentialExpired: Provider answered invalid_grant (never retried)
            UpstreamAuthError: Other provider rejections, or a retryable
                failure that persisted past the single retry
            httpx.TransportError: Network failure that persisted past the retry
        """
        key = cache_key(email)
        if rotated_refresh_token == refresh_token:
            rotated_refresh_token = None

        pair = self._cached_pair(key, refresh_token, client_id)
        if pair is not None and rotated_refresh_token in (None, pair.refresh_token):
            log.debug("Token cache hit for %s", key)
            return pair

        async with self._lock_for(key):
            # Another request may have refreshed while we waited for the lock
            pair = self._cached_pair(key, refresh_token, client_id)
            if pair is not None:
                if rotated_refresh_token and rotated_refresh_token != pair.refresh_token:
                    pair = self._store_rotation(key, rotated_refresh_token)
                return pair
            return await self._refresh(key, refresh_token, client_id, rotated_refresh_token)

    def record_rotation(
        self, email: str, client_id: str, refresh_token: str, rotated_refresh_token: Optional[str]
    ) -> None:
        """
        Remember a refresh token rotated by an exchange made outside the manager.

        Only updates an existing entry in the presented token's lineage; without
        one the next refresh is keyed on whatever token the caller presents.
        """
        if not rotated_refresh_token or rotated_refresh_token == refresh_token:
            return
        key = cache_key(email)
        entry = self.cache.get(key)
        if entry is None or not entry.matches(refresh_token, client_id):
            return
        if entry.pair.refresh_token != rotated_refresh_token:
            self._store_rotation(key, rotated_refresh_token)

    def _store_rotation(self, key: str, rotated_refresh_token: str) -> CredentialPair:
        entry = self.cache.get(key)
        pair = replace(entry.pair, refresh_token=rotated_refresh_token)
        self.cache.put(key, replace(entry, pair=pair))
        log.info("Recorded rotated refresh token for %s", key)
        return pair

    async def _refresh(
        self,
        key: str,
        refresh_token: str,
        client_id: str,
        rotated_refresh_token: Optional[str] = None,
    ) -> CredentialPair:
        entry = self.cache.get(key)
        source = refresh_token
        if entry is not None and entry.matches(refresh_token, client_id):
            # Prefer the rotated token; the one presented may already be superseded
            refresh_token = entry.pair.refresh_token
            source = entry.source_refresh_token
        if rotated_refresh_token:
            refresh_token = rotated_refresh_token

        payload = await self._exchange_with_retry(key, refresh_token, client_id)

        now = self._clock()
        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        new_refresh = payload.get("refresh_token") or refresh_token
        pair = CredentialPair(
            access_token=payload["access_token"],
            refresh_token=new_refresh,
            granted_scopes=parse_scopes(payload.get("scope")),
            expires_at=now + timedelta(seconds=expires_in),
        )
        self.cache.put(
            key,
            CacheEntry(
                pair=pair,
                client_id=client_id,
                source_refresh_token=source,
                last_refreshed_at=now,
                refresh_token_expires_at=now + timedelta(days=REFRESH_TOKEN_VALIDITY_DAYS),
            ),
        )
        log.info(
            "Refreshed access token for %s: valid %d min, refresh token %s",
            key,
            expires_in // 60,
            "rotated" if new_refresh != refresh_token else "unchanged",
        )
        return pair

    async def _exchange_with_retry(self, key: str, refresh_token: str, client_id: str) -> dict:
        attempt = 0
        while True:
            try:
                return await exchange_refresh_token(
                    refresh_token, client_id, self.scope, transport=self.transport
                )
            except UpstreamAuthError as e:
                if e.is_invalid_grant:
                    self.cache.delete(key)
                    log.warning(
                        "Refresh token rejected for %s (%s): %s",
                        key,
                        e.error,
                        mask_secret(refresh_token),
                    )
                    raise CredentialExpired() from e
                if not _is_retryable(e) or attempt >= MAX_RETRIES:
                    raise
                failure: Exception = e
            except httpx.TransportError as e:
                if attempt >= MAX_RETRIES:
                    raise
                failure = e

            delay = RETRY_BASE_DELAY_SECONDS * (2 ** attempt)
            attempt += 1
            log.info("Token refresh for %s failed (%s); retry %d in %.1fs", key, failure, attempt, delay)
            await self._sleep(delay)

    def invalidate(self, email: str) -> None:
        key = cache_key(email)
        self.cache.delete(key)
        self._locks.pop(key, None)

    def cache_stats(self) -> dict:
        """Cache statistics for monitoring; contains no secrets."""
        now = self._clock()
        entries = []
        for key in self.cache.keys():
            entry = self.cache.get(key)
            if entry is None:
                continue
            entries.append({
                "email": key,
                "usable": entry.pair.is_usable(now, EXPIRY_BUFFER),
                "expires_at": entry.pair.expires_at.isoformat(),
                "last_refreshed_at": entry.last_refreshed_at.isoformat(),
            })
        return {"cached_mailboxes": len(entries), "entries": entries}

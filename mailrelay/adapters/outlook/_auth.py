"""
Outlook authentication adapter.

Exchanges a long-lived refresh token for a short-lived access token at the
Microsoft identity platform and probes whether the granted token can read
mail through Microsoft Graph.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Union

import httpx

from ...errors import UpstreamAuthError


# Configuration
TOKEN_URL = os.getenv(
    "MAILRELAY_TOKEN_URL",
    "https://login.microsoftonline.com/consumers/oauth2/v2.0/token",
)
TOKEN_TIMEOUT_SECONDS = float(os.getenv("MAILRELAY_TOKEN_TIMEOUT", "10"))

GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"
MAIL_READ_SCOPES = {
    "https://graph.microsoft.com/mail.read",
    "https://graph.microsoft.com/mail.readwrite",
    "mail.read",
    "mail.readwrite",
}

log = logging.getLogger("mailrelay.auth")


def mask_secret(value: Optional[str]) -> str:
    """Loggable stand-in for a token: leading characters plus length."""
    if not value:
        return "<empty>"
    return f"{value[:6]}...({len(value)} chars)"


def parse_scopes(scope: Optional[str]) -> FrozenSet[str]:
    """Split a space-delimited OAuth scope string into a set."""
    if not scope:
        return frozenset()
    return frozenset(part for part in scope.split() if part)


def has_mail_read(scopes: FrozenSet[str]) -> bool:
    return any(scope.lower() in MAIL_READ_SCOPES for scope in scopes)


async def exchange_refresh_token(
    refresh_token: str,
    client_id: str,
    scope: Optional[str] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """
    Exchange a refresh token for an access token.

    Stateless: no caching and no retries. Network errors and timeouts from
    httpx propagate unchanged so the caller can decide whether to retry.

    Args:
        refresh_token: Long-lived refresh token
        client_id: Application (client) ID the token was issued to
        scope: Optional space-delimited scope to request
        transport: Optional httpx transport (tests)

    Returns:
        Raw provider payload with access_token, optional refresh_token,
        scope and expires_in

    Raises:
        UpstreamAuthError: If the provider rejects the request or returns
            an unusable body
    """
    data = {
        "client_id": client_id,
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
    }
    if scope:
        data["scope"] = scope

    async with httpx.AsyncClient(timeout=TOKEN_TIMEOUT_SECONDS, transport=transport) as client:
        response = await client.post(
            TOKEN_URL,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    if response.status_code >= 400:
        error = None
        description = None
        try:
            payload = response.json()
            error = payload.get("error")
            description = payload.get("error_description")
        except ValueError:
            pass
        log.warning(
            "Token exchange rejected: status=%s error=%s client_id=%s refresh_token=%s",
            response.status_code,
            error,
            client_id,
            mask_secret(refresh_token),
        )
        raise UpstreamAuthError(response.status_code, error, description, response.text)

    try:
        payload = response.json()
    except ValueError:
        raise UpstreamAuthError(
            response.status_code, "invalid_response", "Token response is not JSON", response.text
        )
    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise UpstreamAuthError(
            response.status_code, "invalid_response", "Token response has no access_token", response.text
        )
    return payload


@dataclass(frozen=True)
class Capable:
    """Graph token carries a mail-read scope; the primary channel is usable."""

    access_token: str
    granted_scopes: FrozenSet[str] = field(default_factory=frozenset)
    refresh_token: Optional[str] = None

    has_mail_permission = True


@dataclass(frozen=True)
class Incapable:
    """Exchange succeeded but no mail-read scope was granted."""

    granted_scopes: FrozenSet[str] = field(default_factory=frozenset)
    refresh_token: Optional[str] = None

    access_token = ""
    has_mail_permission = False


@dataclass(frozen=True)
class ProbeFailed:
    """Exchange itself failed; kept apart from Incapable for diagnostics."""

    error: BaseException

    access_token = ""
    refresh_token = None
    has_mail_permission = False


CapabilityResult = Union[Capable, Incapable, ProbeFailed]


async def probe_graph_capability(
    refresh_token: str,
    client_id: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> CapabilityResult:
    """
    Request a Graph-scoped token and check it for mail-read permission.

    Never raises for exchange failures: any error becomes ProbeFailed so the
    caller falls through to IMAP instead of failing the whole request.

    Capable and Incapable carry any refresh token the provider rotated during
    the exchange; it supersedes the one passed in.
    """
    try:
        payload = await exchange_refresh_token(
            refresh_token, client_id, GRAPH_DEFAULT_SCOPE, transport=transport
        )
    except Exception as e:
        log.warning("Graph capability probe failed for client_id=%s: %s", client_id, e)
        return ProbeFailed(error=e)

    scopes = parse_scopes(payload.get("scope"))
    if not has_mail_read(scopes):
        log.info("Graph token lacks mail scope (granted: %s)", " ".join(sorted(scopes)) or "<none>")
        return Incapable(granted_scopes=scopes, refresh_token=payload.get("refresh_token"))

    return Capable(
        access_token=payload["access_token"],
        granted_scopes=scopes,
        refresh_token=payload.get("refresh_token"),
    )

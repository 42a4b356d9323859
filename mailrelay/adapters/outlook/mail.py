"""
Outlook mail adapter (Microsoft Graph).

Fetches the newest messages of one or more mail folders over the Graph REST
API and normalizes each into a CanonicalMessage.

Functions:
- fetch_folder_messages(access_token, folder, limit): newest `limit` of one folder
- fetch_folder_latest(access_token, folder): newest message of one folder
- fetch_messages_per_folder(access_token, folders, limit): all folders concurrently
- fetch_latest_per_folder(access_token, folders): newest of each folder
- normalize_graph_message(item, folder): Graph JSON -> CanonicalMessage
"""

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from ...models import CanonicalMessage
from .folders import GRAPH_FOLDERS
from .normalize import (
    EPOCH,
    NO_SUBJECT,
    UNKNOWN_SENDER,
    make_preview,
    parse_iso_datetime,
    text_to_html,
)


# Configuration
GRAPH_API_BASE = os.getenv("MAILRELAY_GRAPH_API_BASE", "https://graph.microsoft.com/v1.0").rstrip("/")
GRAPH_TIMEOUT_SECONDS = float(os.getenv("MAILRELAY_GRAPH_TIMEOUT", "10"))

SELECT_FIELDS = "from,subject,bodyPreview,body,receivedDateTime,createdDateTime"

log = logging.getLogger("mailrelay.graph")


def normalize_graph_message(item: Dict[str, Any], folder: str) -> CanonicalMessage:
    """
    Convert one Graph message resource into a CanonicalMessage.

    Args:
        item: Message JSON as returned by /me/mailFolders/{id}/messages
        folder: Logical folder name the message was found in

    Returns:
        CanonicalMessage
    """
    sender_info = (item.get("from") or {}).get("emailAddress") or {}
    body = item.get("body") or {}
    content = body.get("content") or ""
    if content and (body.get("contentType") or "html").lower() != "html":
        content = text_to_html(content)

    received_at = (
        parse_iso_datetime(item.get("receivedDateTime"))
        or parse_iso_datetime(item.get("createdDateTime"))
        or EPOCH
    )

    return CanonicalMessage(
        sender=sender_info.get("address") or sender_info.get("name") or UNKNOWN_SENDER,
        subject=item.get("subject") or NO_SUBJECT,
        preview_text=make_preview(item.get("bodyPreview") or ""),
        body_html=content,
        received_at=received_at,
        source_folder=folder,
    )


async def fetch_folder_messages(
    access_token: str,
    folder: str,
    limit: int = 1,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[CanonicalMessage]:
    """
    Fetch up to `limit` messages of a single folder, newest first.

    A failed or empty folder is not an error: it returns an empty list so
    sibling folders can still produce a result.

    Args:
        access_token: Graph access token with Mail.Read(Write)
        folder: Logical folder name (inbox, junk, ...)
        limit: Maximum number of messages ($top)
        transport: Optional httpx transport (tests)

    Returns:
        List of CanonicalMessage, possibly empty
    """
    graph_folder = GRAPH_FOLDERS.get(folder, folder)
    url = f"{GRAPH_API_BASE}/me/mailFolders/{graph_folder}/messages"
    params = {
        "$top": str(limit),
        "$orderby": "receivedDateTime desc",
        "$select": SELECT_FIELDS,
    }
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Accept": "application/json",
    }

    try:
        async with httpx.AsyncClient(timeout=GRAPH_TIMEOUT_SECONDS, transport=transport) as client:
            response = await client.get(url, params=params, headers=headers)
    except httpx.TimeoutException:
        log.warning("Graph query for folder %s timed out", graph_folder)
        return []
    except httpx.HTTPError as e:
        log.warning("Graph query for folder %s failed: %s", graph_folder, e)
        return []

    if response.status_code >= 400:
        log.warning(
            "Graph query for folder %s returned %s: %s",
            graph_folder,
            response.status_code,
            response.text[:300],
        )
        return []

    try:
        items = response.json().get("value") or []
    except ValueError:
        log.warning("Graph query for folder %s returned a non-JSON body", graph_folder)
        return []

    return [normalize_graph_message(item, folder) for item in items[:limit]]


async def fetch_folder_latest(
    access_token: str,
    folder: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[CanonicalMessage]:
    """Newest message of a single folder, or None."""
    messages = await fetch_folder_messages(access_token, folder, 1, transport=transport)
    return messages[0] if messages else None


async def fetch_messages_per_folder(
    access_token: str,
    folders: List[str],
    limit: int,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[List[CanonicalMessage]]:
    """
    Query every folder concurrently, one independent request each.

    Returns one list per folder, in the order given; a folder that failed or
    timed out yields an empty list without affecting the others.
    """
    results = await asyncio.gather(
        *(fetch_folder_messages(access_token, folder, limit, transport=transport) for folder in folders),
        return_exceptions=True,
    )
    per_folder: List[List[CanonicalMessage]] = []
    for folder, result in zip(folders, results):
        if isinstance(result, BaseException):
            log.error("Unexpected error reading folder %s: %r", folder, result)
            per_folder.append([])
        else:
            per_folder.append(result)
    return per_folder


async def fetch_latest_per_folder(
    access_token: str,
    folders: List[str],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[Optional[CanonicalMessage]]:
    """Newest message per folder, None where a folder had nothing or failed."""
    per_folder = await fetch_messages_per_folder(access_token, folders, 1, transport=transport)
    return [messages[0] if messages else None for messages in per_folder]

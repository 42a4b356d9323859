"""
Mail retrieval service layer.

Ties the pieces together for one request: validate parameters, probe Graph
capability, fetch from the channel that is usable, and pick the newest
message across the queried folders (or list a folder, newest first).
"""

import asyncio
import logging
import os
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from ..adapters.outlook import imap, mail
from ..adapters.outlook._auth import Capable, probe_graph_capability
from ..adapters.outlook.folders import expand_selector, resolve_folder, supported_folder_names
from ..errors import InvalidParameterFormat, MissingParameter
from ..models import MailRequest, MailResult
from .aggregator import merge_newest_first, pick_latest
from .token_manager import TokenManager


# Configuration
REQUEST_DEADLINE_SECONDS = float(os.getenv("MAILRELAY_REQUEST_DEADLINE", "15"))
LIST_LIMIT_DEFAULT = int(os.getenv("MAILRELAY_LIST_LIMIT", "50"))
LIST_LIMIT_MAX = int(os.getenv("MAILRELAY_LIST_LIMIT_MAX", "500"))

REQUIRED_PARAMS = ["refresh_token", "client_id", "email", "mailbox"]
RESPONSE_TYPES = {"json", "list", "object"}
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_REFRESH_TOKEN_LENGTH = 50
MIN_CLIENT_ID_LENGTH = 10

log = logging.getLogger("mailrelay.service")


def validate_request(params: Mapping[str, Any]) -> MailRequest:
    """
    Check raw request parameters and build a MailRequest.

    Args:
        params: Query parameters or JSON body

    Returns:
        MailRequest with the mailbox resolved to a logical folder name

    Raises:
        MissingParameter: Required fields absent or blank
        InvalidParameterFormat: Malformed address, implausibly short
            credentials, unknown folder or response type
    """
    values = {
        key: str(params.get(key) or "").strip()
        for key in REQUIRED_PARAMS + ["response_type"]
    }

    missing = [key for key in REQUIRED_PARAMS if not values[key]]
    if missing:
        raise MissingParameter(missing)

    if not EMAIL_PATTERN.match(values["email"]):
        raise InvalidParameterFormat("Invalid email address")
    if len(values["refresh_token"]) < MIN_REFRESH_TOKEN_LENGTH:
        raise InvalidParameterFormat("Invalid refresh_token format")
    if len(values["client_id"]) < MIN_CLIENT_ID_LENGTH:
        raise InvalidParameterFormat("Invalid client_id format")

    folder = resolve_folder(values["mailbox"])
    if folder is None:
        raise InvalidParameterFormat(
            f"Unsupported mailbox '{values['mailbox']}'; supported: {', '.join(supported_folder_names())}"
        )

    response_type = values["response_type"].lower() or "json"
    if response_type not in RESPONSE_TYPES:
        raise InvalidParameterFormat(
            f"Unsupported response_type '{response_type}'; supported: {', '.join(sorted(RESPONSE_TYPES))}"
        )

    return MailRequest(
        refresh_token=values["refresh_token"],
        client_id=values["client_id"],
        email=values["email"],
        mailbox=folder,
        response_type=response_type,
    )


def validate_list_request(params: Mapping[str, Any]) -> MailRequest:
    """
    validate_request plus the optional listing size.

    Raises:
        InvalidParameterFormat: limit is not an integer in 1..LIST_LIMIT_MAX
    """
    request = validate_request(params)

    raw = str(params.get("limit") or "").strip()
    if not raw:
        return request.model_copy(update={"limit": LIST_LIMIT_DEFAULT})
    try:
        limit = int(raw)
    except ValueError:
        raise InvalidParameterFormat(f"Invalid limit '{raw}'; expected an integer")
    if not 1 <= limit <= LIST_LIMIT_MAX:
        raise InvalidParameterFormat(f"limit must be between 1 and {LIST_LIMIT_MAX}")
    return request.model_copy(update={"limit": limit})


async def _open_channel(
    request: MailRequest,
    token_manager: TokenManager,
    transport: Optional[httpx.AsyncBaseTransport],
) -> Tuple[str, str]:
    """
    Check Graph capability and return (channel, access_token).

    A refresh token rotated by that exchange is handed to the token manager so
    the provider's replacement is never lost.
    """
    capability = await probe_graph_capability(
        request.refresh_token, request.client_id, transport=transport
    )

    if isinstance(capability, Capable):
        token_manager.record_rotation(
            request.email, request.client_id, request.refresh_token, capability.refresh_token
        )
        log.info("Graph permission granted for %s", request.email)
        return "graph", capability.access_token

    log.info(
        "Falling back to IMAP for %s (%s)", request.email, type(capability).__name__
    )
    pair = await token_manager.get_valid_access_credential(
        request.refresh_token,
        request.client_id,
        request.email,
        rotated_refresh_token=capability.refresh_token,
    )
    return "imap", pair.access_token


async def fetch_latest_mail(
    request: MailRequest,
    *,
    token_manager: TokenManager,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> MailResult:
    """
    Fetch the newest message for the requested folder selector.

    Graph is used when the probe reports mail permission; otherwise the IMAP
    channel is used exactly once. The two channels never run together.

    Raises:
        CredentialExpired, UpstreamAuthError, httpx / imapclient / OS errors
        from the IMAP path; classification is left to the caller.
    """
    folders: List[str] = expand_selector(request.mailbox)
    channel, access_token = await _open_channel(request, token_manager, transport)

    if channel == "graph":
        candidates = await mail.fetch_latest_per_folder(access_token, folders, transport=transport)
    else:
        candidates = await imap.fetch_latest_per_folder(request.email, access_token, folders)
    return MailResult(message=pick_latest(candidates), channel=channel, folders=folders)


async def fetch_all_mail(
    request: MailRequest,
    *,
    token_manager: TokenManager,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> MailResult:
    """
    List up to request.limit messages of the requested folder, newest first.

    Only the named folder is listed; the inbox/junk pairing applies to the
    newest-message lookup alone. Channel selection is the same as
    fetch_latest_mail.
    """
    folders = [request.mailbox]
    limit = request.limit or LIST_LIMIT_DEFAULT
    channel, access_token = await _open_channel(request, token_manager, transport)

    if channel == "graph":
        per_folder = await mail.fetch_messages_per_folder(access_token, folders, limit, transport=transport)
    else:
        per_folder = await imap.fetch_messages_per_folder(request.email, access_token, folders, limit)
    return MailResult(messages=merge_newest_first(per_folder, limit), channel=channel, folders=folders)


async def fetch_latest_mail_with_deadline(
    request: MailRequest,
    *,
    token_manager: TokenManager,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    deadline: float = REQUEST_DEADLINE_SECONDS,
) -> MailResult:
    """
    fetch_latest_mail under an outer deadline.

    On expiry the pending work is cancelled (an IMAP worker thread is left to
    finish on its own) and asyncio's TimeoutError propagates.
    """
    return await asyncio.wait_for(
        fetch_latest_mail(request, token_manager=token_manager, transport=transport),
        timeout=deadline,
    )


async def fetch_all_mail_with_deadline(
    request: MailRequest,
    *,
    token_manager: TokenManager,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    deadline: float = REQUEST_DEADLINE_SECONDS,
) -> MailResult:
    return await asyncio.wait_for(
        fetch_all_mail(request, token_manager=token_manager, transport=transport),
        timeout=deadline,
    )


def build_response(request: MailRequest, result: MailResult) -> Dict[str, Any]:
    """Structured response body for a successful (possibly empty) retrieval."""
    folder_desc = " and ".join(result.folders)
    if result.message is None:
        return {
            "code": 2001,
            "message": f"No mail in {folder_desc}",
            "channel": result.channel,
            "data": None,
        }

    payload = result.message.model_dump(mode="json")
    return {
        "code": 200,
        "message": f"Latest message from {result.message.source_folder}",
        "channel": result.channel,
        "data": payload if request.response_type == "object" else [payload],
    }


def build_list_response(result: MailResult) -> Dict[str, Any]:
    """Structured response body for a folder listing."""
    folder_desc = " and ".join(result.folders)
    if not result.messages:
        return {
            "code": 2001,
            "message": f"No mail in {folder_desc}",
            "channel": result.channel,
            "data": None,
        }

    return {
        "code": 200,
        "message": f"{len(result.messages)} messages from {folder_desc}",
        "channel": result.channel,
        "count": len(result.messages),
        "data": [message.model_dump(mode="json") for message in result.messages],
    }

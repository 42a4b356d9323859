"""
Mail retrieval routes

GET or POST /api/mail returns the newest message of the requested folder;
/api/mail/all lists a folder, newest first.
Every outcome, including failures, is a structured JSON body carrying a
stable numeric code.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ..errors import InternalError, InvalidParameterFormat, classify
from ..services.mail_service import (
    build_list_response,
    build_response,
    fetch_all_mail_with_deadline,
    fetch_latest_mail_with_deadline,
    validate_list_request,
    validate_request,
)
from ..services.token_manager import TokenManager


router = APIRouter(prefix="/api", tags=["Mail"])

log = logging.getLogger("mailrelay.routes")


def get_token_manager(request: Request) -> TokenManager:
    """Process-wide TokenManager attached to the app at startup."""
    return request.app.state.token_manager


async def _read_params(request: Request) -> Dict[str, Any]:
    if request.method == "GET":
        return dict(request.query_params)
    try:
        body = await request.json()
    except ValueError:
        raise InvalidParameterFormat("Request body must be a JSON object")
    if not isinstance(body, dict):
        raise InvalidParameterFormat("Request body must be a JSON object")
    return body


@router.api_route("/mail", methods=["GET", "POST"])
async def get_latest_mail(request: Request):
    """
    Fetch the newest message of a mailbox folder.

    Parameters (query string for GET, JSON body for POST):
        refresh_token, client_id, email, mailbox, response_type

    Returns:
        200 with code 200 and the message, 200 with code 2001 when the
        folders are empty, or the classified error status and body.
    """
    try:
        params = await _read_params(request)
        mail_request = validate_request(params)
        result = await fetch_latest_mail_with_deadline(
            mail_request, token_manager=get_token_manager(request)
        )
    except Exception as e:
        error = classify(e)
        if isinstance(error, InternalError):
            log.exception("Unhandled error while fetching mail")
        else:
            log.warning("Mail request failed: %s (%s)", error.kind, error.message)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    log.info(
        "Mail request for %s served via %s (%s)",
        mail_request.email,
        result.channel,
        "found" if result.message else "empty",
    )
    return JSONResponse(status_code=200, content=build_response(mail_request, result))


@router.api_route("/mail/all", methods=["GET", "POST"])
async def list_mail(request: Request):
    """
    List the messages of one mailbox folder, newest first.

    Parameters as for /api/mail plus an optional limit (default 50).
    response_type is accepted but data is always a list.
    """
    try:
        params = await _read_params(request)
        mail_request = validate_list_request(params)
        result = await fetch_all_mail_with_deadline(
            mail_request, token_manager=get_token_manager(request)
        )
    except Exception as e:
        error = classify(e)
        if isinstance(error, InternalError):
            log.exception("Unhandled error while listing mail")
        else:
            log.warning("Mail listing failed: %s (%s)", error.kind, error.message)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    log.info(
        "Mail listing for %s served via %s (%d messages)",
        mail_request.email,
        result.channel,
        len(result.messages),
    )
    return JSONResponse(status_code=200, content=build_list_response(result))


@router.get("/cache/stats")
def cache_stats(request: Request):
    """Token cache statistics. Contains no token material."""
    return get_token_manager(request).cache_stats()


@router.delete("/cache/{email}")
def evict_cache_entry(email: str, request: Request):
    """Drop the cached credentials for one mailbox."""
    get_token_manager(request).invalidate(email)
    return {"status": "ok", "email": email}

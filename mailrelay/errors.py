"""
Error taxonomy and classifier.

Inner components raise typed failures (UpstreamAuthError, CredentialExpired,
httpx / imapclient / socket errors) or return None. The route layer calls
classify() exactly once to turn whatever escaped into one of the seven
caller-visible kinds, each with a stable code and HTTP status.
"""

import asyncio
import os
import socket
from typing import Iterable, Optional

import httpx
from imapclient.exceptions import IMAPClientAbortError, LoginError


# Configuration
APP_ENV = os.getenv("APP_ENV", "development").strip().lower()


class MailRelayError(Exception):
    """Base class for caller-visible failures."""

    kind = "InternalError"
    code = 5000
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "kind": self.kind, "message": self.message}


class MissingParameter(MailRelayError):
    kind = "MissingParameter"
    code = 4001
    status_code = 400

    def __init__(self, fields: Iterable[str]):
        self.fields = list(fields)
        super().__init__(f"Missing required parameters: {', '.join(self.fields)}")


class InvalidParameterFormat(MailRelayError):
    kind = "InvalidParameterFormat"
    code = 4002
    status_code = 400


class CredentialExpired(MailRelayError):
    kind = "CredentialExpired"
    code = 4011
    status_code = 401

    def __init__(self, message: str = "Refresh token is expired or revoked; re-authorize the mailbox"):
        super().__init__(message)


class InsufficientScope(MailRelayError):
    kind = "InsufficientScope"
    code = 4031
    status_code = 403

    def __init__(self, message: str = "Mail.Read or Mail.ReadWrite permission is required"):
        super().__init__(message)


class UpstreamTimeout(MailRelayError):
    kind = "UpstreamTimeout"
    code = 5041
    status_code = 504

    def __init__(self, message: str = "Upstream mail service timed out"):
        super().__init__(message)


class UpstreamUnavailable(MailRelayError):
    kind = "UpstreamUnavailable"
    code = 5031
    status_code = 503

    def __init__(self, message: str = "Upstream mail service is unreachable"):
        super().__init__(message)


class InternalError(MailRelayError):
    kind = "InternalError"
    code = 5000
    status_code = 500


class UpstreamAuthError(Exception):
    """
    Raised by the credential exchanger when the identity provider rejects a
    token request.

    Carries the provider's HTTP status, the OAuth error code (if the body was
    a JSON error document) and a truncated copy of the raw body.
    """

    def __init__(
        self,
        status_code: int,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        body: str = "",
    ):
        self.status_code = status_code
        self.error = error
        self.error_description = error_description
        self.body = body[:500]
        summary = error or "http_error"
        if error_description:
            summary = f"{summary}: {error_description.splitlines()[0]}"
        super().__init__(f"Token endpoint returned {status_code} ({summary})")

    @property
    def is_invalid_grant(self) -> bool:
        return self.error in TERMINAL_GRANT_ERRORS

    @property
    def is_retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


TERMINAL_GRANT_ERRORS = {"invalid_grant", "interaction_required"}
SCOPE_ERRORS = {"invalid_scope", "consent_required", "unauthorized_client"}
REQUEST_ERRORS = {"invalid_client", "invalid_request"}


def _classify_auth_error(exc: UpstreamAuthError) -> MailRelayError:
    if exc.error in TERMINAL_GRANT_ERRORS:
        return CredentialExpired()
    if exc.error in SCOPE_ERRORS:
        return InsufficientScope()
    if exc.error in REQUEST_ERRORS:
        return InvalidParameterFormat(
            f"Identity provider rejected the client_id or refresh_token ({exc.error})"
        )
    if exc.status_code == 401:
        return CredentialExpired()
    if exc.status_code == 403:
        return InsufficientScope()
    if exc.is_retryable:
        return UpstreamUnavailable(f"Identity provider unavailable (HTTP {exc.status_code})")
    return _internal(exc)


def _internal(exc: BaseException) -> InternalError:
    if APP_ENV == "production":
        return InternalError("Internal server error")
    return InternalError(f"Internal server error: {type(exc).__name__}: {exc}")


def classify(exc: BaseException) -> MailRelayError:
    """
    Map any exception to one of the caller-visible kinds.

    Classification is by exception type and structured fields only.

    Args:
        exc: Exception that escaped the request pipeline

    Returns:
        MailRelayError subclass instance (never raises)
    """
    if isinstance(exc, MailRelayError):
        return exc
    if isinstance(exc, UpstreamAuthError):
        return _classify_auth_error(exc)
    # httpx.TimeoutException is a TransportError, check it first
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException, socket.timeout)):
        return UpstreamTimeout()
    if isinstance(exc, LoginError):
        return InsufficientScope("IMAP server rejected the access token (XOAUTH2)")
    if isinstance(exc, (httpx.TransportError, IMAPClientAbortError, OSError)):
        return UpstreamUnavailable()
    return _internal(exc)

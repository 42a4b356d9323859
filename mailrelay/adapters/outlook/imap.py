"""
Outlook mail adapter (IMAP fallback).

Used when the Graph token lacks mail permission. Authenticates with SASL
XOAUTH2 built from the mailbox address and a plain access token, then visits
folders one at a time over a single connection.

The session is an explicit state machine:

    DISCONNECTED --connect--> IDLE --open_folder--> FOLDER_OPEN
    FOLDER_OPEN --close_folder--> IDLE
    any --end--> CLOSED

Only one folder can be open at a time, which is why folders are visited
sequentially here while the Graph adapter fans out.
"""

import asyncio
import base64
import enum
import logging
import os
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import parsedate_to_datetime
from typing import Dict, List, Optional

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError
from imapclient.imapclient import SocketTimeout

from ...models import CanonicalMessage
from .folders import IMAP_FOLDERS
from .normalize import EPOCH, NO_SUBJECT, UNKNOWN_SENDER, as_utc, make_preview, text_to_html


# Configuration
IMAP_HOST = os.getenv("MAILRELAY_IMAP_HOST", "outlook.office365.com")
IMAP_PORT = int(os.getenv("MAILRELAY_IMAP_PORT", "993"))
IMAP_TIMEOUT_SECONDS = float(os.getenv("MAILRELAY_IMAP_TIMEOUT", "10"))

log = logging.getLogger("mailrelay.imap")


def build_xoauth2_string(email: str, access_token: str) -> str:
    """SASL XOAUTH2 initial client response, before base64 encoding."""
    return f"user={email}\x01auth=Bearer {access_token}\x01\x01"


def encode_xoauth2_string(email: str, access_token: str) -> str:
    """Base64 wire form of the XOAUTH2 response (imaplib applies this encoding itself)."""
    return base64.b64encode(build_xoauth2_string(email, access_token).encode("utf-8")).decode("ascii")


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    IDLE = "idle"
    FOLDER_OPEN = "folder_open"
    CLOSED = "closed"


class IllegalSessionState(RuntimeError):
    """Raised when an operation is attempted from the wrong session state."""


def _decode_part(part: EmailMessage) -> str:
    try:
        return part.get_content()
    except (LookupError, UnicodeDecodeError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def normalize_rfc822(raw: bytes, folder: str, internal_date=None) -> CanonicalMessage:
    """
    Parse a raw RFC 822 message into a CanonicalMessage.

    received_at prefers the server's INTERNALDATE (arrival time) and falls
    back to the Date header.
    """
    message = BytesParser(policy=policy.default).parsebytes(raw)

    text = ""
    plain_part = message.get_body(preferencelist=("plain",))
    if plain_part is not None:
        text = _decode_part(plain_part)

    html_body = ""
    html_part = message.get_body(preferencelist=("html",))
    if html_part is not None:
        html_body = _decode_part(html_part)
    if not html_body:
        html_body = text_to_html(text.strip())

    received_at = as_utc(internal_date) if internal_date is not None else None
    if received_at is None and message.get("Date"):
        try:
            received_at = as_utc(parsedate_to_datetime(str(message["Date"])))
        except (TypeError, ValueError):
            received_at = None

    return CanonicalMessage(
        sender=str(message.get("From") or "") or UNKNOWN_SENDER,
        subject=str(message.get("Subject") or "") or NO_SUBJECT,
        preview_text=make_preview(text),
        body_html=html_body,
        received_at=received_at or EPOCH,
        source_folder=folder,
    )


class ImapSession:
    """
    One authenticated IMAP connection with a single in-flight folder.

    Example:
        with ImapSession(email, token) as session:
            message = session.visit_folder("inbox")
    """

    def __init__(
        self,
        email: str,
        access_token: str,
        host: str = IMAP_HOST,
        port: int = IMAP_PORT,
        timeout: float = IMAP_TIMEOUT_SECONDS,
    ):
        self.email = email
        self.access_token = access_token
        self.host = host
        self.port = port
        self.timeout = timeout
        self.state = SessionState.DISCONNECTED
        self.current_folder: Optional[str] = None
        self._client: Optional[IMAPClient] = None

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise IllegalSessionState(f"IMAP session is {self.state.value}; expected {allowed}")

    def connect(self) -> None:
        """Open the TLS connection and authenticate with XOAUTH2."""
        self._require(SessionState.DISCONNECTED)
        client = IMAPClient(
            self.host,
            port=self.port,
            ssl=True,
            timeout=SocketTimeout(connect=self.timeout, read=self.timeout),
        )
        # Keep INTERNALDATE timezone-aware
        client.normalise_times = False
        self._client = client
        try:
            bridge = build_xoauth2_string(self.email, self.access_token)
            client.sasl_login("XOAUTH2", lambda _challenge: bridge)
        except Exception:
            self._teardown()
            raise
        self.state = SessionState.IDLE
        log.info("IMAP session authenticated for %s", self.email)

    def open_folder(self, path: str) -> None:
        self._require(SessionState.IDLE)
        self._client.select_folder(path, readonly=True)
        self.current_folder = path
        self.state = SessionState.FOLDER_OPEN

    def close_folder(self) -> None:
        self._require(SessionState.FOLDER_OPEN)
        try:
            self._client.close_folder()
        finally:
            self.current_folder = None
            self.state = SessionState.IDLE

    def recent_messages(self, folder: str, limit: int) -> List[CanonicalMessage]:
        """
        Return up to `limit` messages of the open folder, newest first.

        Search order is not guaranteed to be arrival order, so INTERNALDATE
        is fetched for every match and compared; ties go to the highest UID.
        Only the selected message bodies are downloaded.
        """
        self._require(SessionState.FOLDER_OPEN)
        uids = self._client.search("ALL")
        if not uids:
            return []

        dates = self._client.fetch(uids, ["INTERNALDATE"])
        ordered = sorted(uids, key=lambda uid: (_internal_date(dates.get(uid)), uid), reverse=True)
        selected = ordered[:limit]

        fetched = self._client.fetch(selected, ["BODY.PEEK[]", "INTERNALDATE"])
        messages = []
        for uid in selected:
            data = fetched.get(uid) or {}
            raw = data.get(b"BODY[]")
            if raw:
                messages.append(normalize_rfc822(raw, folder, data.get(b"INTERNALDATE")))
        return messages

    def newest_message(self, folder: str) -> Optional[CanonicalMessage]:
        messages = self.recent_messages(folder, 1)
        return messages[0] if messages else None

    def visit_folder(self, folder: str, limit: Optional[int] = None):
        """
        Open a logical folder read-only, read from it, close it.

        Returns the newest message (or None) when limit is None, otherwise a
        list of up to `limit` messages, newest first.
        """
        path = IMAP_FOLDERS.get(folder, folder)
        self.open_folder(path)
        try:
            if limit is None:
                return self.newest_message(folder)
            return self.recent_messages(folder, limit)
        finally:
            if self.state is SessionState.FOLDER_OPEN:
                self.close_folder()

    def end(self) -> None:
        """Log out gracefully. Safe to call more than once."""
        if self.state is SessionState.CLOSED:
            return
        if self._client is not None and self.state is not SessionState.DISCONNECTED:
            try:
                self._client.logout()
            except (IMAPClientError, OSError) as e:
                log.debug("IMAP logout for %s failed: %s", self.email, e)
        self._teardown()

    def _teardown(self) -> None:
        self._client = None
        self.current_folder = None
        self.state = SessionState.CLOSED

    def __enter__(self) -> "ImapSession":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.end()


def _internal_date(data: Optional[Dict]):
    value = (data or {}).get(b"INTERNALDATE")
    if value is None:
        return EPOCH
    return as_utc(value)


def _visit_folders(email: str, access_token: str, folders: List[str], limit: Optional[int]) -> list:
    """
    Visit each folder in order over one session.

    A folder that cannot be opened or read yields its empty value (None, or
    an empty list when listing) and the next folder is tried.
    Connection-level failures end the session and propagate.
    """
    results = []
    with ImapSession(email, access_token) as session:
        for folder in folders:
            try:
                results.append(session.visit_folder(folder, limit))
            except (IMAPClientAbortError, LoginError):
                raise
            except IMAPClientError as e:
                log.warning("IMAP folder %s unavailable for %s: %s", folder, email, e)
                results.append(None if limit is None else [])
    return results


def fetch_latest_per_folder_sync(
    email: str, access_token: str, folders: List[str]
) -> List[Optional[CanonicalMessage]]:
    return _visit_folders(email, access_token, folders, None)


def fetch_messages_per_folder_sync(
    email: str, access_token: str, folders: List[str], limit: int
) -> List[List[CanonicalMessage]]:
    return _visit_folders(email, access_token, folders, limit)


async def fetch_latest_per_folder(
    email: str, access_token: str, folders: List[str]
) -> List[Optional[CanonicalMessage]]:
    """Run the blocking IMAP session in a worker thread."""
    return await asyncio.to_thread(fetch_latest_per_folder_sync, email, access_token, folders)


async def fetch_messages_per_folder(
    email: str, access_token: str, folders: List[str], limit: int
) -> List[List[CanonicalMessage]]:
    """Up to `limit` messages per folder, newest first, in a worker thread."""
    return await asyncio.to_thread(fetch_messages_per_folder_sync, email, access_token, folders, limit)

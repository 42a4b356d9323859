"""
Shared test helpers: credentials, canned token responses and a fake IMAP server.
"""

from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs

import httpx
from imapclient.exceptions import IMAPClientError

from mailrelay.models import CanonicalMessage


REFRESH_TOKEN = "M.C512_BAY." + "x" * 60
CLIENT_ID = "9e5f94bc-e8a4-4e73-b8be-63364c29d753"
EMAIL = "someone@outlook.com"


def form_of(request: httpx.Request) -> Dict[str, str]:
    """Decode a form-encoded token request body into a flat dict."""
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


def token_payload(
    access_token: str = "access-1",
    refresh_token: Optional[str] = None,
    scope: str = "https://outlook.office.com/IMAP.AccessAsUser.All",
    expires_in: int = 3600,
) -> dict:
    payload = {
        "token_type": "Bearer",
        "access_token": access_token,
        "scope": scope,
        "expires_in": expires_in,
    }
    if refresh_token:
        payload["refresh_token"] = refresh_token
    return payload


def make_message(
    subject: str = "Hello",
    received_at: datetime = datetime(2024, 1, 5, 9, 0, tzinfo=timezone.utc),
    folder: str = "inbox",
) -> CanonicalMessage:
    return CanonicalMessage(
        sender="sender@example.com",
        subject=subject,
        preview_text="preview",
        body_html="<p>preview</p>",
        received_at=received_at,
        source_folder=folder,
    )


def build_raw_message(
    subject: str,
    text: str = "Plain body",
    html: Optional[str] = None,
    date: str = "Fri, 05 Jan 2024 09:00:00 +0000",
    sender: str = "sender@example.com",
) -> bytes:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = EMAIL
    message["Subject"] = subject
    message["Date"] = date
    message.set_content(text)
    if html is not None:
        message.add_alternative(html, subtype="html")
    return message.as_bytes()


class FakeIMAPClient:
    """
    Stand-in for imapclient.IMAPClient.

    mailboxes maps a mailbox path to (uid, internaldate, raw message) tuples.
    Subclass per test via the fake_imap fixture; instances are recorded so
    tests can inspect what the adapter did.
    """

    mailboxes: Dict[str, List[Tuple[int, datetime, bytes]]] = {}
    login_error: Optional[Exception] = None
    instances: List["FakeIMAPClient"] = []

    def __init__(self, host, port=None, ssl=True, timeout=None):
        self.host = host
        self.port = port
        self.ssl = ssl
        self.timeout = timeout
        self.normalise_times = True
        self.sasl_calls = []
        self.selected = []
        self.closed_folders = 0
        self.logged_out = False
        self._current = None
        type(self).instances.append(self)

    def sasl_login(self, mech_name, mech_callable):
        self.sasl_calls.append((mech_name, mech_callable(b"")))
        if self.login_error is not None:
            raise self.login_error

    def select_folder(self, folder, readonly=False):
        if folder not in self.mailboxes:
            raise IMAPClientError(f"select failed: mailbox {folder} does not exist")
        self.selected.append((folder, readonly))
        self._current = folder
        return {b"EXISTS": len(self.mailboxes[folder])}

    def search(self, criteria="ALL"):
        return [uid for uid, _, _ in self.mailboxes[self._current]]

    def fetch(self, messages, data):
        response = {}
        for uid, internal_date, raw in self.mailboxes[self._current]:
            if uid not in messages:
                continue
            item = {b"SEQ": uid, b"INTERNALDATE": internal_date}
            if "BODY.PEEK[]" in data:
                item[b"BODY[]"] = raw
            response[uid] = item
        return response

    def close_folder(self):
        self.closed_folders += 1
        self._current = None

    def logout(self):
        self.logged_out = True

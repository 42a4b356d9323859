"""
Request and result models shared by both mail channels.

CanonicalMessage is produced identically by the Graph and IMAP adapters so
the aggregator and callers never need to know which channel fetched it.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CanonicalMessage(BaseModel):
    """Channel-agnostic representation of one mail message."""

    model_config = ConfigDict(frozen=True)

    sender: str = Field(..., description="Sender address (or display text when no address)")
    subject: str
    preview_text: str = Field("", description="Short plain-text preview of the body")
    body_html: str = Field("", description="HTML body; plain-text bodies are escaped into <p>")
    received_at: datetime = Field(..., description="Timezone-aware UTC receive time")
    source_folder: str = Field(..., description="Logical folder name (inbox, junk, ...)")


class MailRequest(BaseModel):
    """Validated request for the newest message of a mailbox."""

    refresh_token: str
    client_id: str
    email: str
    mailbox: str = Field(..., description="Logical folder name after alias resolution")
    response_type: str = "json"
    limit: Optional[int] = Field(None, description="Listing size for /api/mail/all")


class MailResult(BaseModel):
    """Outcome of one retrieval: the newest message (or None), or a listing, and how it was found."""

    message: Optional[CanonicalMessage] = None
    messages: List[CanonicalMessage] = Field(default_factory=list, description="Listing results, newest first")
    channel: str = Field(..., description="graph or imap")
    folders: List[str] = Field(default_factory=list)

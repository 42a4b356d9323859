"""Helpers shared by the Graph and IMAP normalizers."""

import html
import re
from datetime import datetime, timezone
from typing import Optional


# Graph's bodyPreview is capped at 255 characters; IMAP previews match it.
PREVIEW_LENGTH = 255
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
UNKNOWN_SENDER = "Unknown sender"
NO_SUBJECT = "(no subject)"


def text_to_html(text: str) -> str:
    """Escape a plain-text body into a single paragraph with line breaks."""
    if not text:
        return ""
    return "<p>" + html.escape(text).replace("\r\n", "\n").replace("\n", "<br>") + "</p>"


def make_preview(text: str) -> str:
    return " ".join((text or "").split())[:PREVIEW_LENGTH]


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse Graph's ISO-8601 timestamps (with a trailing Z) into UTC."""
    if not value:
        return None
    # fromisoformat only takes up to microseconds
    value = _FRACTION.sub(lambda m: m.group(1)[:7], value.strip())
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


_FRACTION = re.compile(r"(\.\d+)")

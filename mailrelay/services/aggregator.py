"""Pick the newest message across per-folder results."""

from datetime import timezone
from typing import Iterable, List, Optional

from ..models import CanonicalMessage


def _instant(message: CanonicalMessage):
    received = message.received_at
    if received.tzinfo is None:
        return received.replace(tzinfo=timezone.utc)
    return received.astimezone(timezone.utc)


def pick_latest(candidates: Iterable[Optional[CanonicalMessage]]) -> Optional[CanonicalMessage]:
    """
    Return the most recently received message, or None if there is none.

    Missing folders (None) are skipped. On equal timestamps the candidate
    seen first wins.
    """
    latest = None
    for message in candidates:
        if message is None:
            continue
        if latest is None or _instant(message) > _instant(latest):
            latest = message
    return latest


def merge_newest_first(
    per_folder: Iterable[Iterable[CanonicalMessage]], limit: int
) -> List[CanonicalMessage]:
    """
    Merge per-folder listings into one list, newest first, capped at limit.

    Equal timestamps keep folder order, then the order within each folder.
    """
    merged = [message for messages in per_folder for message in (messages or [])]
    merged.sort(key=_instant, reverse=True)
    return merged[:limit]

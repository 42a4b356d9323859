"""
Logical folder names and their per-channel paths.

Graph addresses folders by well-known name; IMAP addresses them by mailbox
path. The two tables are kept separate and keyed by the same logical names.
"""

from typing import Dict, List, Optional


INBOX = "inbox"
JUNK = "junk"
SENT = "sent"
DRAFTS = "drafts"
DELETED = "deleted"

GRAPH_FOLDERS: Dict[str, str] = {
    INBOX: "inbox",
    JUNK: "junkemail",
    SENT: "sentitems",
    DRAFTS: "drafts",
    DELETED: "deleteditems",
}

IMAP_FOLDERS: Dict[str, str] = {
    INBOX: "INBOX",
    JUNK: "Junk",
    SENT: "Sent",
    DRAFTS: "Drafts",
    DELETED: "Deleted",
}

# Names accepted from callers, including Graph well-known names and the
# display names used by existing Chinese-language clients.
FOLDER_ALIASES: Dict[str, str] = {
    "inbox": INBOX,
    "收件箱": INBOX,
    "junk": JUNK,
    "junkemail": JUNK,
    "spam": JUNK,
    "垃圾邮件": JUNK,
    "垃圾箱": JUNK,
    "sent": SENT,
    "sentitems": SENT,
    "已发送": SENT,
    "drafts": DRAFTS,
    "draft": DRAFTS,
    "草稿": DRAFTS,
    "deleted": DELETED,
    "deleteditems": DELETED,
    "删除邮件": DELETED,
}

# Asking for either of these scans both and returns the newest across them.
PAIRED_FOLDERS: List[str] = [INBOX, JUNK]


def resolve_folder(name: str) -> Optional[str]:
    """Return the logical folder for a caller-supplied name, or None if unknown."""
    if not name:
        return None
    return FOLDER_ALIASES.get(name.strip().lower())


def expand_selector(folder: str) -> List[str]:
    """
    Expand a logical folder into the list of folders to query.

    Inbox and junk are always queried together; any other folder is queried
    on its own.
    """
    if folder in PAIRED_FOLDERS:
        return list(PAIRED_FOLDERS)
    return [folder]


def supported_folder_names() -> List[str]:
    return sorted(FOLDER_ALIASES)

"""
Outlook adapter package.

Provides normalized interfaces for Outlook mailbox access:
- _auth: Refresh token exchange and Graph capability probe
- mail: Newest message per folder over Microsoft Graph
- imap: Newest message per folder over IMAP with XOAUTH2
- folders: Logical folder names and per-channel paths
"""

from ._auth import Capable, Incapable, ProbeFailed, exchange_refresh_token, probe_graph_capability
from . import folders, imap, mail

__all__ = [
    "Capable",
    "Incapable",
    "ProbeFailed",
    "exchange_refresh_token",
    "probe_graph_capability",
    "folders",
    "imap",
    "mail",
]

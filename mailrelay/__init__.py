"""Mail relay: newest-message retrieval for Outlook mailboxes over Graph or IMAP."""

__version__ = "0.1.0"

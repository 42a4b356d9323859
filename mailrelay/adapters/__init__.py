"""
Adapters layer for external system integrations.

Adapters wrap the external mail services with normalized interfaces. They
handle authentication and data normalization; orchestration lives in
services/.

Organization:
- outlook/: Microsoft identity platform, Graph mail and Outlook IMAP
"""

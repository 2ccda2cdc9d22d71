"""
Mailbox collaborators: the client interface, the IMAP adapter and the MIME
content extractor.
"""

from .base import FLAGGED, SEEN, MailboxClient, MailItem, SearchCriteria
from .imap_client import ImapMailboxClient
from .parser import ParsedEmail, parse_message

__all__ = [
    "FLAGGED",
    "SEEN",
    "MailboxClient",
    "MailItem",
    "SearchCriteria",
    "ImapMailboxClient",
    "ParsedEmail",
    "parse_message",
]

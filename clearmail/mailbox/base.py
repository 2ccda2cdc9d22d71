"""
Mailbox collaborator interface.

The core only talks to mailboxes through `MailboxClient`; adapters
(`ImapMailboxClient`, test fakes) implement it. Any adapter error is a
`MailboxError`; a lost connection is a `MailboxConnectionError`.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Iterable, List, Optional

FLAGGED = "\\Flagged"
SEEN = "\\Seen"


@dataclass(frozen=True)
class MailItem:
    """
    One fetched message.

    Attributes:
        uid: Identifier unique within the session (IMAP UID)
        source: Raw RFC 822 message bytes
        flags: Flags at fetch time
    """
    uid: str
    source: bytes = b""
    flags: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_flagged(self) -> bool:
        return FLAGGED in self.flags

    @property
    def is_seen(self) -> bool:
        return SEEN in self.flags


@dataclass(frozen=True)
class SearchCriteria:
    """Message selection for one session."""
    since: Optional[datetime] = None
    unseen_only: bool = False


class MailboxClient(ABC):
    """Narrow mailbox interface consumed by the processing core."""

    @abstractmethod
    def connect(self) -> None:
        """Open and authenticate the connection."""

    @abstractmethod
    def list_folders(self) -> List[str]:
        """Return the paths of all existing folders."""

    @abstractmethod
    def create_folder(self, name: str) -> None:
        """Create folder `name`."""

    @abstractmethod
    def open_folder(self, name: str) -> None:
        """Select `name` as the current folder."""

    @abstractmethod
    def search(self, criteria: SearchCriteria) -> List[MailItem]:
        """Fetch all messages of the current folder matching `criteria`."""

    @abstractmethod
    def set_flags(self, uid: str, flags: Iterable[str]) -> None:
        """Add `flags` to message `uid`."""

    @abstractmethod
    def move(self, uid: str, destination: str) -> None:
        """Move message `uid` from the current folder to `destination`."""

    @abstractmethod
    def release_lock(self) -> None:
        """Release the session's hold on the current folder."""

    @abstractmethod
    def logout(self) -> None:
        """Close the connection. Must not raise."""

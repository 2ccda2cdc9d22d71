"""
Applies mailbox actions for a verdict.

- keep: optionally flag as important
- reject: optionally mark read, then move to the category folder (or the
  single rejected folder). A failed move gets exactly one recovery: create
  the destination, reopen the inbox, retry the move once.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from ..errors import MailboxError, MoveError, SessionAbortedError
from ..mailbox.base import FLAGGED, SEEN, MailboxClient
from ..providers.base import Judgment, Verdict

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """What was done to one message."""
    uid: str
    actions: List[str] = field(default_factory=list)
    destination: str = ""
    recovered: bool = False


class ActionApplier:
    """Performs flag/move operations against the mailbox collaborator."""

    def __init__(
        self,
        mailbox: MailboxClient,
        sort_into_category_folders: bool = True,
        rejected_folder_name: str = "AI Rejects",
        mark_rejected_read: bool = True,
        star_kept: bool = False,
        inbox: str = "INBOX",
    ):
        self.mailbox = mailbox
        self.sort_into_category_folders = sort_into_category_folders
        self.rejected_folder_name = rejected_folder_name
        self.mark_rejected_read = mark_rejected_read
        self.star_kept = star_kept
        self.inbox = inbox

    def destination_for(self, verdict: Verdict) -> str:
        if self.sort_into_category_folders and verdict.category:
            return verdict.category
        return self.rejected_folder_name

    def apply(self, uid: str, verdict: Verdict) -> ActionResult:
        """
        Apply the actions for `verdict` to message `uid`.

        Raises:
            MailboxError: If a flag change fails, or the move fails again
                after the folder-creation recovery
        """
        result = ActionResult(uid=uid)
        logger.info(
            f"Processing actions for email #{uid}: judgment={verdict.judgment.value} "
            f"category={verdict.category!r}"
        )

        if verdict.judgment is Judgment.KEEP:
            if self.star_kept:
                # Not retried: a failed flag is an error for this item only
                self.mailbox.set_flags(uid, [FLAGGED])
                result.actions.append("flag")
                logger.info(f"Flagged email #{uid} as important")
            return result

        if verdict.judgment is not Judgment.REJECT:
            return result

        if self.mark_rejected_read:
            self.mailbox.set_flags(uid, [SEEN])
            result.actions.append("mark_read")
            logger.info(f"Marked email #{uid} as read")

        destination = self.destination_for(verdict)
        result.destination = destination
        result.recovered = self._move(uid, destination)
        result.actions.append("move")
        return result

    def _move(self, uid: str, destination: str) -> bool:
        """Move with one folder-creation recovery. Returns True if recovery was needed.

        A lost connection (SessionAbortedError) is re-raised untouched and
        never triggers the recovery.
        """
        try:
            self.mailbox.open_folder(self.inbox)
            self.mailbox.move(uid, destination)
            logger.info(f"Moved email #{uid} to {destination}")
            return False
        except SessionAbortedError:
            raise
        except MailboxError as move_error:
            logger.warning(f"Failed to move email #{uid} to {destination}: {move_error}")

        logger.info(f"Attempting to create folder {destination} and retry move")
        try:
            self.mailbox.create_folder(destination)
        except SessionAbortedError:
            raise
        except MailboxError as e:
            # The folder may already exist; the retry decides
            logger.warning(f"Could not create folder {destination}: {e}")

        try:
            self.mailbox.open_folder(self.inbox)
            self.mailbox.move(uid, destination)
        except SessionAbortedError:
            raise
        except MailboxError as retry_error:
            logger.error(f"Failed to move email #{uid} to {destination} after retry: {retry_error}")
            raise MoveError(f"Could not move email #{uid} to {destination}: {retry_error}") from retry_error

        logger.info(f"Moved email #{uid} to {destination} after creating folder")
        return True

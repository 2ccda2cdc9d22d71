"""
Exception hierarchy for ClearMail.

Backend errors are raised by providers and the backoff executor, mailbox
errors by the mailbox adapters and the action applier. A SessionAbortedError
stops the remaining batches of a processing session.
"""

from typing import Optional


class ClearMailError(Exception):
    """Base class for all ClearMail errors."""


class ConfigError(ClearMailError, ValueError):
    """Invalid or inconsistent configuration."""


# --- Backend -----------------------------------------------------------------


class BackendError(ClearMailError):
    """A classification backend call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(BackendError):
    """The backend rejected the call because of rate limiting (HTTP 429)."""

    def __init__(self, message: str = "Rate limit exceeded", status_code: int = 429):
        super().__init__(message, status_code=status_code)


class AttemptTimeoutError(BackendError):
    """A single attempt did not complete within the per-attempt timeout."""


class RetriesExhaustedError(BackendError):
    """Ordinary retry budget exhausted."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None, attempts: int = 0):
        super().__init__(message, status_code=getattr(last_error, "status_code", None))
        self.last_error = last_error
        self.attempts = attempts


class RateLimitExhaustedError(RetriesExhaustedError):
    """Rate-limit retry budget exhausted."""


# --- Mailbox -----------------------------------------------------------------


class MailboxError(ClearMailError):
    """A mailbox operation failed."""


class FolderError(MailboxError):
    """A folder could not be listed, created or opened."""


class MoveError(MailboxError):
    """A message could not be moved to its destination folder."""


# --- Session -----------------------------------------------------------------


class SessionAbortedError(ClearMailError):
    """Unrecoverable session-level fault; remaining batches are dropped."""


class MailboxConnectionError(MailboxError, SessionAbortedError):
    """The mailbox connection could not be established or was lost."""


class GateTimeoutError(ClearMailError):
    """No concurrency slot became available within the requested timeout."""

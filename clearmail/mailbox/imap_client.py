"""
IMAP adapter for the mailbox interface, built on imaplib.

All commands go through UID variants so message identifiers stay stable
while other messages are moved out of the folder. imaplib connections are
not thread-safe; every command is serialized on an internal lock because a
batch shares one connection across its worker threads.
"""

import imaplib
import logging
import re
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional

from .base import MailboxClient, MailItem, SearchCriteria
from ..errors import FolderError, MailboxConnectionError, MailboxError, MoveError

logger = logging.getLogger(__name__)

_LIST_RE = re.compile(r'\((?P<flags>[^)]*)\)\s+(?P<delim>"[^"]*"|NIL)\s+(?P<name>.+)$')
_UID_RE = re.compile(rb"UID (\d+)")


def quote_mailbox(name: str) -> str:
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _unquote(name: str) -> str:
    name = name.strip()
    if len(name) >= 2 and name[0] == name[-1] == '"':
        name = name[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return name


class ImapMailboxClient(MailboxClient):
    """imaplib-backed mailbox client (IMAP4 over SSL)."""

    def __init__(self, host: str, user: str, password: str, port: int = 993, timeout: float = 60.0):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.timeout = timeout
        self._conn: Optional[imaplib.IMAP4_SSL] = None
        self._lock = threading.RLock()

    @contextmanager
    def _command(self, error_cls=MailboxError) -> Iterator[imaplib.IMAP4_SSL]:
        with self._lock:
            if self._conn is None:
                raise MailboxConnectionError("Not connected to IMAP server")
            try:
                yield self._conn
            except (imaplib.IMAP4.abort, OSError) as e:
                raise MailboxConnectionError(f"IMAP connection lost: {e}") from e
            except imaplib.IMAP4.error as e:
                raise error_cls(str(e)) from e

    @staticmethod
    def _check(typ: str, data, error_cls, what: str) -> None:
        if typ != "OK":
            detail = b" ".join(d for d in data if isinstance(d, bytes)).decode("utf-8", "replace")
            raise error_cls(f"{what} failed: {typ} {detail}".strip())

    def connect(self) -> None:
        logger.info(f"Creating IMAP connection to {self.host}:{self.port} as {self.user}")
        conn = None
        try:
            conn = imaplib.IMAP4_SSL(self.host, self.port, timeout=self.timeout)
            conn.login(self.user, self.password)
        except (imaplib.IMAP4.error, OSError) as e:
            if conn is not None:
                try:
                    conn.logout()
                except (imaplib.IMAP4.error, OSError):
                    pass
            raise MailboxConnectionError(f"IMAP login to {self.host} failed: {e}") from e
        with self._lock:
            self._conn = conn
        logger.info("IMAP connected")

    def list_folders(self) -> List[str]:
        with self._command(FolderError) as conn:
            typ, data = conn.list()
            self._check(typ, data, FolderError, "LIST")

        folders = []
        for line in data:
            if not isinstance(line, bytes):
                continue
            match = _LIST_RE.match(line.decode("utf-8", "replace"))
            if match:
                folders.append(_unquote(match.group("name")))
        return folders

    def create_folder(self, name: str) -> None:
        with self._command(FolderError) as conn:
            typ, data = conn.create(quote_mailbox(name))
            self._check(typ, data, FolderError, f"CREATE {name}")
        logger.info(f"Created folder {name}")

    def open_folder(self, name: str) -> None:
        with self._command(FolderError) as conn:
            typ, data = conn.select(quote_mailbox(name))
            self._check(typ, data, FolderError, f"SELECT {name}")

    def search(self, criteria: SearchCriteria) -> List[MailItem]:
        terms = []
        if criteria.since is not None:
            terms.append(f"SINCE {criteria.since.strftime('%d-%b-%Y')}")
        if criteria.unseen_only:
            terms.append("UNSEEN")
        query = " ".join(terms) or "ALL"

        with self._command() as conn:
            typ, data = conn.uid("SEARCH", None, query)
            self._check(typ, data, MailboxError, f"SEARCH {query}")
            uids = data[0].split() if data and data[0] else []

            items = []
            for uid in uids:
                typ, msg_data = conn.uid("FETCH", uid, "(UID FLAGS BODY.PEEK[])")
                if typ != "OK":
                    logger.warning(f"Could not fetch message UID {uid.decode()}: {typ}")
                    continue
                item = self._to_item(uid, msg_data)
                if item is not None:
                    items.append(item)

        logger.debug(f"IMAP search '{query}' returned {len(items)} messages")
        return items

    @staticmethod
    def _to_item(uid: bytes, msg_data) -> Optional[MailItem]:
        for part in msg_data or []:
            if isinstance(part, tuple) and len(part) == 2:
                header, source = part
                flags = frozenset(f.decode() for f in imaplib.ParseFlags(header))
                match = _UID_RE.search(header)
                return MailItem(
                    uid=(match.group(1) if match else uid).decode(),
                    source=source,
                    flags=flags,
                )
        return None

    def set_flags(self, uid: str, flags: Iterable[str]) -> None:
        flag_list = "(" + " ".join(flags) + ")"
        with self._command() as conn:
            typ, data = conn.uid("STORE", uid, "+FLAGS", flag_list)
            self._check(typ, data, MailboxError, f"STORE {flag_list} on {uid}")

    def move(self, uid: str, destination: str) -> None:
        target = quote_mailbox(destination)
        with self._command(MoveError) as conn:
            if "MOVE" in conn.capabilities:
                typ, data = conn.uid("MOVE", uid, target)
                self._check(typ, data, MoveError, f"MOVE {uid} to {destination}")
                return

            typ, data = conn.uid("COPY", uid, target)
            self._check(typ, data, MoveError, f"COPY {uid} to {destination}")
            typ, data = conn.uid("STORE", uid, "+FLAGS", "(\\Deleted)")
            self._check(typ, data, MoveError, f"STORE \\Deleted on {uid}")
            conn.expunge()

    def release_lock(self) -> None:
        with self._command() as conn:
            if conn.state == "SELECTED":
                conn.close()

    def logout(self) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug(f"IMAP logout failed: {e}")
        logger.info("IMAP disconnected")

import atexit
import faulthandler
import json
import os
import sys
import threading
import time
from email.message import EmailMessage
from typing import Callable, Dict, Iterable, List, Optional, Union

import pytest

from clearmail.errors import FolderError, MailboxConnectionError, MailboxError, MoveError
from clearmail.mailbox.base import SEEN, MailboxClient, MailItem, SearchCriteria
from clearmail.providers.base import LLMProvider
from clearmail.utils.config import Settings


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _start_watchdog(timeout_seconds: int) -> Optional[threading.Timer]:
    if timeout_seconds <= 0:
        return None

    def _kill() -> None:
        try:
            faulthandler.dump_traceback(file=sys.stderr, all_threads=True)
        except Exception:
            pass
        # Hard exit: guarantees CI can't hang forever.
        os._exit(2)

    timer = threading.Timer(timeout_seconds, _kill)
    timer.daemon = True
    timer.start()
    return timer


def pytest_sessionstart(session) -> None:  # noqa: ANN001
    # Always enable faulthandler for better diagnostics on timeouts/hangs.
    try:
        faulthandler.enable(all_threads=True)
    except Exception:
        pass

    # Absolute upper bound for the whole test run.
    # Default: 20 minutes (matches "never hang" requirement but leaves room for CI slowness).
    watchdog_seconds = _env_int("PYTEST_WATCHDOG_TIMEOUT_SECONDS", 20 * 60)
    timer = _start_watchdog(watchdog_seconds)

    if timer is not None:
        atexit.register(timer.cancel)

    # Minor guardrail: if a test suite is extremely slow, at least dump stacks periodically.
    # This doesn't stop execution, but helps debug if the watchdog triggers.
    dump_every = _env_int("PYTEST_DUMP_STACK_EVERY_SECONDS", 0)
    if dump_every > 0:
        _start_periodic_dump(dump_every)


def _start_periodic_dump(every_seconds: int) -> None:
    def _loop() -> None:
        while True:
            time.sleep(every_seconds)
            try:
                faulthandler.dump_traceback(file=sys.stderr, all_threads=True)
            except Exception:
                pass

    t = threading.Thread(target=_loop, daemon=True)
    t.start()


# In-memory collaborators shared by unit and integration tests


def make_message(
    subject: str = "Hello",
    sender: str = "alice@example.com",
    body: str = "Just checking in.",
    date: str = "Mon, 06 May 2024 10:00:00 +0000",
) -> bytes:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = "me@example.com"
    msg["Date"] = date
    msg.set_content(body)
    return msg.as_bytes()


def make_item(uid, flags: Iterable[str] = (), **fields) -> MailItem:
    return MailItem(uid=str(uid), source=make_message(**fields), flags=frozenset(flags))


class FakeMailbox(MailboxClient):
    """
    Thread-safe in-memory mailbox.

    A move to a folder that does not exist fails with MoveError, like a real
    server does.
    """

    def __init__(self, items: Iterable[MailItem] = (), folders: Iterable[str] = ("INBOX",)):
        self._lock = threading.Lock()
        self.items: Dict[str, MailItem] = {item.uid: item for item in items}
        self.folders = set(folders)
        self.flags: Dict[str, set] = {uid: set(item.flags) for uid, item in self.items.items()}
        self.moves: List[tuple] = []
        self.created: List[str] = []
        self.opened: List[str] = []
        self.searches: List[SearchCriteria] = []
        self.connected = False
        self.released = False
        self.logged_out = False
        self.connect_error = None
        self.fail_create = False
        self.fail_flags_for = set()
        self.abort_on_uid = None

    def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def list_folders(self) -> List[str]:
        with self._lock:
            return sorted(self.folders)

    def create_folder(self, name: str) -> None:
        with self._lock:
            if self.fail_create:
                raise FolderError(f"CREATE {name} failed")
            self.created.append(name)
            self.folders.add(name)

    def open_folder(self, name: str) -> None:
        with self._lock:
            if name not in self.folders:
                raise FolderError(f"SELECT {name} failed")
            self.opened.append(name)

    def search(self, criteria: SearchCriteria) -> List[MailItem]:
        with self._lock:
            self.searches.append(criteria)
            items = list(self.items.values())
        if criteria.unseen_only:
            items = [item for item in items if SEEN not in item.flags]
        return items

    def set_flags(self, uid: str, flags: Iterable[str]) -> None:
        if uid == self.abort_on_uid:
            raise MailboxConnectionError("connection reset by peer")
        with self._lock:
            if uid in self.fail_flags_for:
                raise MailboxError(f"STORE on {uid} failed")
            self.flags.setdefault(uid, set()).update(flags)

    def move(self, uid: str, destination: str) -> None:
        if uid == self.abort_on_uid:
            raise MailboxConnectionError("connection reset by peer")
        with self._lock:
            if destination not in self.folders:
                raise MoveError(f"Mailbox doesn't exist: {destination}")
            self.moves.append((uid, destination))

    def release_lock(self) -> None:
        self.released = True

    def logout(self) -> None:
        self.logged_out = True
        self.connected = False


def verdict_json(meets_criteria: bool, category: str = "", explanation: str = "test") -> str:
    return json.dumps({"meets_criteria": meets_criteria, "category": category, "explanation": explanation})


class FakeProvider(LLMProvider):
    """
    Scripted backend.

    `responder` is either a fixed response string, or a callable taking the
    messages and returning a string (or raising).
    """

    def __init__(
        self,
        responder: Union[str, Callable[[list], str]] = None,
        name: str = "openai",
        delay: float = 0.0,
    ):
        self.responder = responder if responder is not None else verdict_json(False, "Newsletters")
        self.name = name
        self.delay = delay
        self.healthy = True
        self.calls = 0
        self.in_flight = 0
        self.peak = 0
        self.closed = False
        self._lock = threading.Lock()

    def invoke(self, messages: list) -> str:
        with self._lock:
            self.calls += 1
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if callable(self.responder):
                return self.responder(messages)
            return self.responder
        finally:
            with self._lock:
                self.in_flight -= 1

    def get_name(self) -> str:
        return self.name

    def parameters(self) -> dict:
        return {"backend": self.name, "model": "fake-1", "temperature": 0.0}

    def health_check(self) -> bool:
        return self.healthy

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_mailbox():
    return FakeMailbox()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def sleeps():
    """Recorded sleep calls; pass `sleeps.append` wherever a sleep is injectable."""
    return []


@pytest.fixture
def settings(tmp_path):
    return Settings(
        batch_size=5,
        batch_delay_ms=10,
        max_emails_to_process_at_once=100,
        timestamp_file_path=str(tmp_path / "lastTimestamp.txt"),
        cache_path=str(tmp_path / "cache" / "verdicts.jsonl"),
        category_folder_names=["Newsletters", "Promotions", "Notifications"],
        rules_keep="Personal messages from real people",
        rules_reject="Marketing and automated notifications",
        user_name="Sam",
    )

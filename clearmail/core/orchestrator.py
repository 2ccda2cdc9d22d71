"""
Orchestrator module - one email processing session.

This module coordinates the flow:
Connect -> Verify folders -> Search INBOX -> (per item) Parse -> Classify -> Act
-> Persist watermark -> Release -> Logout.

All components are built here from `Settings` and injected into each other;
tests pass their own mailbox, provider or sleep function.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from .action_applier import ActionApplier
from .backoff import BackoffExecutor
from .batch_pipeline import BatchPipeline, SessionState
from .concurrency_gate import ConcurrencyGate
from .dispatcher import Dispatcher
from .prompt_engine import PromptEngine
from .result_cache import ResultCache
from ..errors import ConfigError, FolderError, MailboxError
from ..mailbox.base import MailboxClient, MailItem, SearchCriteria
from ..mailbox.imap_client import ImapMailboxClient
from ..mailbox.parser import parse_message
from ..providers.base import LLMProvider, Verdict
from ..providers.factory import ProviderFactory
from ..utils.config import Settings
from ..utils.secrets import get_imap_password
from ..utils.watermark import WatermarkStore, parse_iso

logger = logging.getLogger(__name__)


@dataclass
class SessionResult:
    """Outcome of one session, as reported to the CLI."""
    status_code: int
    message: str
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status_code == 200


def build_mailbox(settings: Settings) -> MailboxClient:
    """Create the IMAP client from the `imap` settings and stored secrets."""
    imap = settings.imap
    user = imap.get("user", "")
    if not imap.get("host") or not user:
        raise ConfigError("imap.host and imap.user must be configured")
    password = get_imap_password(user, imap.get("password_env", "IMAP_PASSWORD"))
    if not password:
        raise ConfigError(
            f"No IMAP password for {user}. Set {imap.get('password_env', 'IMAP_PASSWORD')} "
            "or store it with clearmail.utils.secrets.set_imap_password()"
        )
    return ImapMailboxClient(
        host=imap["host"],
        user=user,
        password=password,
        port=int(imap.get("port", 993)),
    )


def build_provider(settings: Settings) -> LLMProvider:
    config = settings.local_llm if settings.use_local_llm else settings.openai
    return ProviderFactory.create(settings.backend_kind, config)


class Orchestrator:
    """
    Runs processing sessions against one mailbox and one backend.

    Usage:
        orchestrator = Orchestrator(settings)
        result = orchestrator.run_session()
        orchestrator.close()
    """

    def __init__(
        self,
        settings: Settings,
        mailbox: Optional[MailboxClient] = None,
        provider: Optional[LLMProvider] = None,
        cache: Optional[ResultCache] = None,
        watermark: Optional[WatermarkStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        templates_dir: Optional[str] = None,
    ):
        self.settings = settings
        self.inbox = settings.imap.get("inbox", "INBOX")

        self.mailbox = mailbox if mailbox is not None else build_mailbox(settings)
        self.provider = provider if provider is not None else build_provider(settings)
        self.cache = cache if cache is not None else ResultCache(
            path=settings.cache_path, enabled=settings.cache_enabled
        )
        self.watermark = watermark if watermark is not None else WatermarkStore(settings.timestamp_file_path)

        self.gate = ConcurrencyGate(settings.max_concurrent)
        self.executor = BackoffExecutor.from_config(settings.retry, sleep=sleep)
        self.prompt_engine = PromptEngine(
            categories=settings.category_folder_names,
            rules_keep=settings.rules_keep,
            rules_reject=settings.rules_reject,
            user_name=settings.user_name,
            templates_dir=templates_dir,
        )
        self.dispatcher = Dispatcher(self.provider, self.gate, self.cache, self.executor, self.prompt_engine)
        self.applier = ActionApplier(
            self.mailbox,
            sort_into_category_folders=settings.sort_into_category_folders,
            rejected_folder_name=settings.rejected_folder_name,
            mark_rejected_read=settings.mark_all_rejected_emails_read,
            star_kept=settings.star_all_kept_emails,
            inbox=self.inbox,
        )
        self.pipeline = BatchPipeline(
            batch_size=settings.batch_size,
            max_total=settings.max_emails_to_process_at_once,
            batch_delay=settings.batch_delay,
            sleep=sleep,
        )
        self._session_lock = threading.Lock()

    def ensure_folders(self) -> None:
        """Create any configured destination folder that does not exist yet."""
        folders = self.settings.required_folders
        logger.info(f"Verifying IMAP folders: {folders}")
        existing = set(self.mailbox.list_folders())
        for folder in folders:
            if folder in existing:
                continue
            logger.info(f"Creating missing folder: {folder}")
            try:
                self.mailbox.create_folder(folder)
            except FolderError as e:
                logger.error(f"Failed to create folder {folder}: {e}")

    def search_criteria(self, since: Optional[Union[datetime, str]] = None) -> SearchCriteria:
        if isinstance(since, str):
            since = parse_iso(since)
        if since is None and self.settings.use_timestamp_filter:
            since = parse_iso(self.watermark.read())
        return SearchCriteria(since=since, unseen_only=not self.settings.process_read_emails)

    def handle_item(self, item: MailItem) -> Optional[Verdict]:
        """
        Classify one message and apply the resulting actions.

        Returns:
            The verdict, or None when the item was skipped before classification
        """
        if item.is_flagged and not self.settings.process_read_emails:
            logger.info(f"Skipping email #{item.uid}: already flagged")
            return None

        parsed = parse_message(item.source, self.settings.max_email_chars)
        logger.debug(f"Email #{item.uid}: subject={parsed.subject!r} from={parsed.sender!r}")

        verdict = self.dispatcher.classify(parsed.to_request())
        if not verdict.is_actionable:
            logger.info(f"Skipping email #{item.uid}: unknown verdict ({verdict.explanation})")
            return verdict

        self.applier.apply(item.uid, verdict)
        return verdict

    def _persist_watermark(self) -> None:
        self.watermark.write()

    def run_session(self, since: Optional[Union[datetime, str]] = None) -> SessionResult:
        """
        Run one processing session. Never raises.

        Sessions share one mailbox connection, so concurrent callers (the
        HTTP trigger) are served one after the other.

        Args:
            since: Process messages since this time instead of the watermark

        Returns:
            SessionResult with status_code 200, or 500 on a session fault
        """
        with self._session_lock:
            return self._run_session(since)

    def _run_session(self, since: Optional[Union[datetime, str]]) -> SessionResult:
        start = time.monotonic()
        logger.info("Starting email processing session")
        try:
            self.pipeline.begin_fetch()
            self.mailbox.connect()
            if self.settings.verify_imap_folders:
                self.ensure_folders()

            self.mailbox.open_folder(self.inbox)
            criteria = self.search_criteria(since)
            items = self.mailbox.search(criteria)
            status = "read and unread" if self.settings.process_read_emails else "unread"
            logger.info(f"Found {len(items)} {status} messages since {criteria.since or 'the beginning'}")

            report = self.pipeline.run(items, self.handle_item, on_session_end=self._persist_watermark)
            stats = report.to_dict()
            stats["dispatcher"] = self.dispatcher.get_stats()

            if report.state is SessionState.ABORTED:
                return SessionResult(500, f"Email processing aborted: {report.error}", stats)
            return SessionResult(200, "Email processing completed.", stats)
        except Exception as e:
            logger.error(f"Error during email processing: {e}", exc_info=True)
            self.pipeline.abort_fetch()
            return SessionResult(
                500,
                "Error during email processing.",
                {
                    "state": self.pipeline.state.value,
                    "error": str(e),
                    "duration": round(time.monotonic() - start, 3),
                },
            )
        finally:
            self._end_session()

    def _end_session(self) -> None:
        try:
            self.mailbox.release_lock()
        except MailboxError as e:
            logger.warning(f"Could not release mailbox: {e}")
        self.mailbox.logout()

    def close(self) -> None:
        self.executor.shutdown()
        self.provider.close()

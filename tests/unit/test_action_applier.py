"""
Unit tests for mailbox actions.
"""

import pytest

from clearmail.core.action_applier import ActionApplier
from clearmail.errors import MailboxConnectionError, MailboxError, MoveError, SessionAbortedError
from clearmail.mailbox.base import FLAGGED, SEEN
from clearmail.providers.base import Judgment, Verdict

from conftest import FakeMailbox, make_item

REJECT_NEWS = Verdict(Judgment.REJECT, "Newsletters", "digest")
KEEP = Verdict(Judgment.KEEP, "", "personal")


@pytest.fixture
def mailbox():
    return FakeMailbox([make_item(1), make_item(2)], folders=["INBOX", "Newsletters", "AI Rejects"])


class TestActionApplier:
    """Tests for ActionApplier."""

    def test_reject_marks_read_and_moves(self, mailbox):
        result = ActionApplier(mailbox).apply("1", REJECT_NEWS)
        assert mailbox.flags["1"] == {SEEN}
        assert mailbox.moves == [("1", "Newsletters")]
        assert mailbox.opened == ["INBOX"]
        assert result.actions == ["mark_read", "move"]
        assert result.destination == "Newsletters"
        assert result.recovered is False

    def test_reject_without_marking_read(self, mailbox):
        ActionApplier(mailbox, mark_rejected_read=False).apply("1", REJECT_NEWS)
        assert mailbox.flags["1"] == set()
        assert mailbox.moves == [("1", "Newsletters")]

    def test_single_rejected_folder(self, mailbox):
        result = ActionApplier(mailbox, sort_into_category_folders=False).apply("1", REJECT_NEWS)
        assert result.destination == "AI Rejects"
        assert mailbox.moves == [("1", "AI Rejects")]

    def test_keep_flags_when_configured(self, mailbox):
        result = ActionApplier(mailbox, star_kept=True).apply("1", KEEP)
        assert mailbox.flags["1"] == {FLAGGED}
        assert mailbox.moves == []
        assert result.actions == ["flag"]

    def test_keep_without_star_does_nothing(self, mailbox):
        result = ActionApplier(mailbox).apply("1", KEEP)
        assert result.actions == []
        assert mailbox.flags["1"] == set()

    def test_keep_flag_failure_propagates(self, mailbox):
        mailbox.fail_flags_for.add("1")
        with pytest.raises(MailboxError):
            ActionApplier(mailbox, star_kept=True).apply("1", KEEP)

    def test_unknown_is_noop(self, mailbox):
        result = ActionApplier(mailbox, star_kept=True).apply("1", Verdict.unknown("bad json"))
        assert result.actions == []
        assert mailbox.moves == []
        assert mailbox.opened == []

    def test_missing_folder_created_and_moved_once(self):
        mailbox = FakeMailbox([make_item(1)], folders=["INBOX"])
        result = ActionApplier(mailbox).apply("1", Verdict(Judgment.REJECT, "Promotions", "sale"))

        assert mailbox.created == ["Promotions"]
        assert mailbox.moves == [("1", "Promotions")]
        assert mailbox.opened == ["INBOX", "INBOX"]
        assert result.recovered is True

    def test_second_move_failure_propagates(self):
        mailbox = FakeMailbox([make_item(1)], folders=["INBOX"])
        mailbox.fail_create = True
        with pytest.raises(MoveError):
            ActionApplier(mailbox).apply("1", Verdict(Judgment.REJECT, "Promotions", "sale"))
        assert mailbox.moves == []

    def test_lost_connection_during_move_is_not_recovered(self, mailbox):
        mailbox.abort_on_uid = "1"
        with pytest.raises(MailboxConnectionError) as exc:
            ActionApplier(mailbox, mark_rejected_read=False).apply("1", REJECT_NEWS)
        assert isinstance(exc.value, SessionAbortedError)
        assert not isinstance(exc.value, MoveError)
        assert mailbox.created == []
        assert mailbox.opened == ["INBOX"]

    def test_lost_connection_during_retry_keeps_its_type(self):
        mailbox = FakeMailbox([make_item(1)], folders=["INBOX"])
        original_create = mailbox.create_folder

        def create_then_drop(name):
            original_create(name)
            mailbox.abort_on_uid = "1"

        mailbox.create_folder = create_then_drop
        with pytest.raises(MailboxConnectionError):
            ActionApplier(mailbox, mark_rejected_read=False).apply("1", Verdict(Judgment.REJECT, "Promotions", "sale"))
        assert mailbox.moves == []

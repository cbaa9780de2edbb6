"""
Tests for the conversation aggregate.

Tests cover:
- Creating a conversation with its first miv
- Replies: addressing, participant checks, out-of-turn replies
- Archival: terminal, idempotent, re-checked inside the append
- Summaries: latest miv, unread counts, ordering
"""

import pytest

from missiv import conversations, storage
from missiv.errors import (
    ConversationArchived,
    ConversationNotFound,
    InvalidRecipient,
    NotParticipant,
)
from missiv.models import Conversation
from tests.conftest import ALICE, BOB, CAROL


@pytest.fixture
def conversation(db):
    conv, _ = conversations.create_conversation(db, ALICE, BOB, "Lunch?", "Free Friday?")
    db.commit()
    return conv


class TestCreate:

    def test_creates_conversation_and_first_miv(self, db):
        conv, miv = conversations.create_conversation(db, ALICE, BOB, "Lunch?", "Free Friday?")
        db.commit()

        assert conv.subject == "Lunch?"
        assert conv.origin_desk == ALICE
        assert conv.peer_desk == BOB
        assert conv.miv_count == 1
        assert conv.is_archived is False
        assert miv.seq_no == 1
        assert miv.conversation_id == conv.id
        assert miv.subject == "Lunch?"
        assert miv.body == "Free Friday?"

    def test_self_addressed_rejected_without_side_effects(self, db, schema):
        with pytest.raises(InvalidRecipient):
            conversations.create_conversation(db, ALICE, ALICE, "Note", "to self")
        db.rollback()
        assert db.query(Conversation).count() == 0

    def test_encrypted_flag_carried(self, db):
        _, miv = conversations.create_conversation(
            db, ALICE, BOB, "Secret", "b64:Zm9v", is_encrypted=True
        )
        assert miv.is_encrypted is True
        assert miv.body == "b64:Zm9v"


class TestAppendReply:

    def test_reply_goes_to_other_party(self, db, conversation):
        reply = conversations.append_reply(db, conversation.id, BOB, "Yes!")
        assert reply.from_desk == BOB
        assert reply.to_desk == ALICE
        assert reply.seq_no == 2
        assert reply.subject == "Lunch?"

    def test_out_of_turn_replies_accepted(self, db, conversation):
        """The originator may follow up before getting an answer."""
        first = conversations.append_reply(db, conversation.id, ALICE, "Hello?")
        second = conversations.append_reply(db, conversation.id, ALICE, "Anyone?")
        assert (first.seq_no, second.seq_no) == (2, 3)
        assert first.to_desk == BOB and second.to_desk == BOB

    def test_ack_flag(self, db, conversation):
        ack = conversations.append_reply(db, conversation.id, BOB, "Noted", is_ack=True)
        assert ack.is_ack is True

    def test_non_participant_rejected(self, db, conversation):
        with pytest.raises(NotParticipant):
            conversations.append_reply(db, conversation.id, CAROL, "Me too")

    def test_unknown_conversation(self, db, schema):
        with pytest.raises(ConversationNotFound):
            conversations.append_reply(db, "missing", BOB, "hi")

    def test_archived_rejected(self, db, conversation):
        conversations.archive_conversation(db, conversation.id)
        db.commit()
        with pytest.raises(ConversationArchived):
            conversations.append_reply(db, conversation.id, BOB, "late")

    def test_archive_seen_even_with_stale_conversation(self, db, conversation):
        """
        An archive the session has not observed still stops the append,
        because the counter update re-checks is_archived itself.
        """
        loaded = conversations.get_conversation(db, conversation.id)
        db.query(Conversation).filter(Conversation.id == conversation.id).update(
            {Conversation.is_archived: True}, synchronize_session=False
        )
        assert loaded.is_archived is False  # identity map is stale on purpose

        with pytest.raises(ConversationArchived):
            conversations.append_reply(db, conversation.id, BOB, "slipped in?")
        db.rollback()
        assert len(storage.get_conversation_mivs(db, conversation.id)) == 1


class TestArchive:

    def test_archive_sets_flag_and_timestamp(self, db, conversation):
        conversations.archive_conversation(db, conversation.id, BOB)
        db.commit()
        assert conversation.is_archived is True
        assert conversation.archived_at is not None

    def test_archive_twice_is_noop(self, db, conversation):
        conversations.archive_conversation(db, conversation.id)
        db.commit()
        archived_at = conversation.archived_at

        conversations.archive_conversation(db, conversation.id)
        db.commit()
        assert conversation.is_archived is True
        assert conversation.archived_at == archived_at

    def test_archive_by_non_participant_rejected(self, db, conversation):
        with pytest.raises(NotParticipant):
            conversations.archive_conversation(db, conversation.id, CAROL)

    def test_archive_unknown(self, db, schema):
        with pytest.raises(ConversationNotFound):
            conversations.archive_conversation(db, "missing")


class TestSummaries:

    def test_summarize_counts_unread_for_viewer(self, db, conversation):
        conversations.append_reply(db, conversation.id, ALICE, "Or Saturday?")
        db.commit()

        bob = conversations.summarize(db, conversation.id, BOB)
        alice = conversations.summarize(db, conversation.id, ALICE)

        assert bob.unread_count == 2
        assert alice.unread_count == 0
        assert bob.latest_miv.body == "Or Saturday?"

    def test_summarize_after_read(self, db, conversation):
        miv = storage.get_conversation_mivs(db, conversation.id)[0]
        storage.mark_read(db, miv.id, BOB)
        db.commit()
        assert conversations.summarize(db, conversation.id, BOB).unread_count == 0

    def test_summarize_non_participant(self, db, conversation):
        with pytest.raises(NotParticipant):
            conversations.summarize(db, conversation.id, CAROL)

    def test_list_includes_archived_newest_first(self, db, conversation):
        other, _ = conversations.create_conversation(db, BOB, ALICE, "Report", "Attached")
        db.commit()
        conversations.archive_conversation(db, conversation.id)
        db.commit()

        summaries = conversations.list_conversation_summaries(db, ALICE)
        assert [s.conversation.id for s in summaries] == [conversation.id, other.id]
        assert summaries[0].conversation.is_archived is True
        assert summaries[1].unread_count == 1

    def test_list_only_involving_desk(self, db, conversation):
        conversations.create_conversation(db, BOB, CAROL, "Private", "hi")
        db.commit()
        assert [s.conversation.id for s in conversations.list_conversation_summaries(db, ALICE)] == [
            conversation.id
        ]
        assert len(conversations.list_conversation_summaries(db, BOB)) == 2

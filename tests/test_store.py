"""
Tests for the message store.

Tests cover:
- seq_no assignment (1-based, contiguous, serialized under concurrency)
- Self-addressed mivs rejected
- mark_read: recipient only, idempotent, safe under concurrent calls
- mark_forgotten: sender only
- Timestamps follow seq_no when a writer waited on the lock
"""

import threading
import time

import pytest

from missiv import conversations, storage
from missiv.errors import (
    ConversationArchived,
    ConversationNotFound,
    Forbidden,
    InvalidRecipient,
    MessageNotFound,
    NotParticipant,
)
from missiv.models import Conversation
from missiv.storage import SessionLocal
from tests.conftest import ALICE, BOB, CAROL


@pytest.fixture
def conversation(db):
    conv, _ = conversations.create_conversation(db, ALICE, BOB, "Lunch?", "Free Friday?")
    db.commit()
    return conv


class TestAppend:

    def test_first_miv_is_seq_one(self, db, conversation):
        mivs = storage.get_conversation_mivs(db, conversation.id)
        assert [m.seq_no for m in mivs] == [1]
        assert mivs[0].from_desk == ALICE
        assert mivs[0].to_desk == BOB
        assert mivs[0].sent_at == mivs[0].created_at

    def test_seq_no_contiguous_in_insertion_order(self, db, conversation):
        appended = [
            storage.append_miv(db, conversation.id, BOB, ALICE, "Lunch?", "Yes!"),
            storage.append_miv(db, conversation.id, ALICE, BOB, "Lunch?", "Great"),
            storage.append_miv(db, conversation.id, ALICE, BOB, "Lunch?", "Noon?"),
        ]
        db.commit()

        mivs = storage.get_conversation_mivs(db, conversation.id)
        assert [m.seq_no for m in mivs] == [1, 2, 3, 4]
        assert [m.id for m in mivs[1:]] == [m.id for m in appended]

    def test_miv_count_tracks_appends(self, db, conversation):
        storage.append_miv(db, conversation.id, BOB, ALICE, "Lunch?", "Yes!")
        db.commit()
        db.refresh(conversation)
        assert conversation.miv_count == 2

    def test_self_addressed_rejected(self, db, conversation):
        with pytest.raises(InvalidRecipient):
            storage.append_miv(db, conversation.id, ALICE, ALICE, "Lunch?", "me")

    def test_unknown_conversation(self, db, schema):
        with pytest.raises(ConversationNotFound):
            storage.append_miv(db, "nope", ALICE, BOB, "x", "y")

    def test_archived_conversation_rejected(self, db, conversation):
        conversations.archive_conversation(db, conversation.id)
        db.commit()
        with pytest.raises(ConversationArchived):
            storage.append_miv(db, conversation.id, BOB, ALICE, "Lunch?", "late")
        db.rollback()
        assert len(storage.get_conversation_mivs(db, conversation.id)) == 1

    def test_failed_append_consumes_no_seq_no(self, db, conversation):
        """A rolled back append leaves the counter where it was."""
        storage.append_miv(db, conversation.id, BOB, ALICE, "Lunch?", "draft")
        db.rollback()

        miv = storage.append_miv(db, conversation.id, BOB, ALICE, "Lunch?", "Yes!")
        db.commit()
        assert miv.seq_no == 2

    def test_concurrent_appends_get_distinct_contiguous_seq_nos(self, db, conversation):
        """Parallel replies on separate connections never share a seq_no."""
        workers = 8
        barrier = threading.Barrier(workers)
        errors = []

        def reply(i):
            session = SessionLocal()
            try:
                barrier.wait()
                sender, recipient = (ALICE, BOB) if i % 2 else (BOB, ALICE)
                storage.append_miv(session, conversation.id, sender, recipient, "Lunch?", f"r{i}")
                session.commit()
            except Exception as e:  # surfaced by the assertion below
                session.rollback()
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=reply, args=(i,)) for i in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        db.expire_all()
        seq_nos = [m.seq_no for m in storage.get_conversation_mivs(db, conversation.id)]
        assert seq_nos == list(range(1, workers + 2))
        assert db.get(Conversation, conversation.id).miv_count == workers + 1


class TestTimestampsUnderContention:
    """A writer that waited for the lock must not stamp the time it started waiting."""

    def _blocked_behind_holder(self, conversation_id, blocked_call):
        """
        Hold the write lock with an unrelated uncommitted conversation, start
        blocked_call in a thread, append to conversation_id while it waits,
        then commit and let it through.
        """
        holder = SessionLocal()
        errors = []
        try:
            conversations.create_conversation(holder, CAROL, BOB, "Unrelated", "hold")

            def run():
                session = SessionLocal()
                try:
                    blocked_call(session)
                    session.commit()
                except Exception as e:  # surfaced by the assertion below
                    session.rollback()
                    errors.append(e)
                finally:
                    session.close()

            waiter = threading.Thread(target=run)
            waiter.start()
            time.sleep(0.5)

            storage.append_miv(holder, conversation_id, ALICE, BOB, "Lunch?", "holder")
            holder.commit()
            waiter.join()
        finally:
            holder.close()
        assert errors == []

    def test_created_at_follows_seq_no(self, db, conversation):
        self._blocked_behind_holder(
            conversation.id,
            lambda session: storage.append_miv(
                session, conversation.id, BOB, ALICE, "Lunch?", "waited"
            ),
        )

        db.expire_all()
        mivs = storage.get_conversation_mivs(db, conversation.id)
        assert [m.seq_no for m in mivs] == [1, 2, 3]
        assert mivs[2].body == "waited"
        created = [m.created_at for m in mivs]
        assert created == sorted(created)

        stored = db.get(Conversation, conversation.id)
        assert stored.updated_at == mivs[-1].created_at

    def test_archive_stamped_after_waiting(self, db, conversation):
        self._blocked_behind_holder(
            conversation.id,
            lambda session: conversations.archive_conversation(session, conversation.id),
        )

        db.expire_all()
        mivs = storage.get_conversation_mivs(db, conversation.id)
        stored = db.get(Conversation, conversation.id)
        assert stored.is_archived is True
        assert stored.archived_at >= mivs[-1].created_at
        assert stored.updated_at == stored.archived_at


class TestMarkRead:

    def test_recipient_sets_read_at(self, db, conversation):
        miv = storage.get_conversation_mivs(db, conversation.id)[0]
        assert storage.mark_read(db, miv.id, BOB) is True
        db.commit()
        assert miv.read_at is not None

    def test_second_call_is_noop(self, db, conversation):
        miv = storage.get_conversation_mivs(db, conversation.id)[0]
        storage.mark_read(db, miv.id, BOB)
        db.commit()
        first = miv.read_at

        assert storage.mark_read(db, miv.id, BOB) is False
        db.commit()
        assert miv.read_at == first

    def test_sender_read_is_noop(self, db, conversation):
        miv = storage.get_conversation_mivs(db, conversation.id)[0]
        assert storage.mark_read(db, miv.id, ALICE) is False
        assert miv.read_at is None

    def test_third_party_rejected(self, db, conversation):
        miv = storage.get_conversation_mivs(db, conversation.id)[0]
        with pytest.raises(NotParticipant):
            storage.mark_read(db, miv.id, CAROL)

    def test_unknown_miv(self, db, schema):
        with pytest.raises(MessageNotFound):
            storage.mark_read(db, "missing", BOB)

    def test_concurrent_reads_set_once(self, db, conversation):
        miv_id = storage.get_conversation_mivs(db, conversation.id)[0].id
        workers = 6
        barrier = threading.Barrier(workers)
        results = []

        def read():
            session = SessionLocal()
            try:
                barrier.wait()
                results.append(storage.mark_read(session, miv_id, BOB))
                session.commit()
            finally:
                session.close()

        threads = [threading.Thread(target=read) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == workers - 1


class TestMarkForgotten:

    def test_sender_forgets(self, db, conversation):
        miv = storage.get_conversation_mivs(db, conversation.id)[0]
        assert storage.mark_forgotten(db, miv.id, ALICE) is True
        assert miv.is_forgotten is True
        assert storage.mark_forgotten(db, miv.id, ALICE) is False

    @pytest.mark.parametrize("desk", [BOB, CAROL])
    def test_non_sender_forbidden(self, db, conversation, desk):
        miv = storage.get_conversation_mivs(db, conversation.id)[0]
        with pytest.raises(Forbidden):
            storage.mark_forgotten(db, miv.id, desk)
        assert miv.is_forgotten is False

"""
Transactional operations behind the API: create, reply, ack, read, forget, archive.

Each operation runs in the caller's session as one transaction. It commits
when everything succeeded and rolls back on any error, so a failed reply
never leaves a consumed seq_no or an orphan notification behind.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy.orm import Session

from missiv import baskets, conversations, notifications, storage
from missiv.errors import MissivError
from missiv.metrics import record_miv_operation
from missiv.notifications import NotificationSink, NotificationType, get_notification_sink
from missiv.state import Basket

if TYPE_CHECKING:
    from missiv.models import Conversation, Miv

logger = logging.getLogger(__name__)


@dataclass
class ConversationThread:
    conversation: "Conversation"
    mivs: List["Miv"]
    viewer_desk: Optional[str] = None


@contextmanager
def _operation(db: Session, name: str):
    """Commit on success, roll back and re-raise on failure, and count the outcome."""
    try:
        yield
        db.commit()
        record_miv_operation(name, "ok")
    except MissivError as e:
        db.rollback()
        record_miv_operation(name, e.code)
        logger.warning(f"{name} rejected: {e.detail}")
        raise
    except Exception:
        db.rollback()
        record_miv_operation(name, "error")
        logger.exception(f"{name} failed")
        raise


# =============================================================================
# Mutating operations
# =============================================================================

def create_conversation(
    db: Session,
    origin_desk: str,
    to_desk: str,
    subject: str,
    body: str,
    is_encrypted: bool = False,
    sink: Optional[NotificationSink] = None,
):
    """
    Start a conversation and send its first miv.

    Returns:
        Tuple of (conversation, first miv)
    """
    sink = sink or get_notification_sink()
    with _operation(db, "create_conversation"):
        conversation, miv = conversations.create_conversation(
            db, origin_desk, to_desk, subject, body, is_encrypted=is_encrypted
        )
        sink.notify(
            db,
            desk_id=to_desk,
            type=NotificationType.NEW_MIV,
            miv=miv,
            message=f"New message from {origin_desk}: {subject}",
        )
    return conversation, miv


def reply_to_conversation(
    db: Session,
    conversation_id: str,
    from_desk: str,
    body: str,
    is_ack: bool = False,
    is_encrypted: bool = False,
    sink: Optional[NotificationSink] = None,
):
    """
    Reply in a conversation. With ``is_ack`` the reply is an acknowledgment:
    it pauses the thread without asking for an answer, so it never shows in
    the sender's SENT basket. An ACK can itself be answered later with a
    normal reply.
    """
    sink = sink or get_notification_sink()
    with _operation(db, "ack" if is_ack else "reply"):
        miv = conversations.append_reply(
            db, conversation_id, from_desk, body, is_ack=is_ack, is_encrypted=is_encrypted
        )
        kind = "ACK" if is_ack else "Reply"
        sink.notify(
            db,
            desk_id=miv.to_desk,
            type=NotificationType.REPLY,
            miv=miv,
            message=f"{kind} from {from_desk} in: {miv.subject}",
        )
    logger.info(f"{kind} {miv.id} appended to {conversation_id} as seq_no={miv.seq_no}")
    return miv


def _read(db: Session, miv, reader_desk: str, sink: NotificationSink) -> None:
    if storage.mark_read(db, miv.id, reader_desk):
        sink.notify(
            db,
            desk_id=miv.from_desk,
            type=NotificationType.READ_RECEIPT,
            miv=miv,
            message=f"{reader_desk} read: {miv.subject}",
        )


def mark_miv_read(
    db: Session,
    miv_id: str,
    reader_desk: str,
    sink: Optional[NotificationSink] = None,
):
    """Mark a miv read by its recipient. Repeated calls are no-ops."""
    sink = sink or get_notification_sink()
    with _operation(db, "mark_read"):
        miv = storage.get_miv(db, miv_id)
        _read(db, miv, reader_desk, sink)
    return miv


def forget_miv(db: Session, miv_id: str, requestor_desk: str):
    """Stop tracking a sent miv for a reply. Only its sender may do this."""
    with _operation(db, "forget"):
        storage.mark_forgotten(db, miv_id, requestor_desk)
        miv = storage.get_miv(db, miv_id)
    logger.info(f"Miv {miv_id} forgotten by {requestor_desk}")
    return miv


def archive_conversation(db: Session, conversation_id: str, desk_id: Optional[str] = None):
    """Close a conversation for good. Any participant may do it."""
    with _operation(db, "archive"):
        conversation = conversations.archive_conversation(db, conversation_id, desk_id)
    return conversation


def get_conversation(
    db: Session,
    conversation_id: str,
    viewer_desk: Optional[str] = None,
    sink: Optional[NotificationSink] = None,
) -> ConversationThread:
    """
    Fetch a conversation with all its mivs in seq_no order.

    When a viewer is given, every miv addressed to that desk is marked read
    as part of the fetch.
    """
    sink = sink or get_notification_sink()
    with _operation(db, "get_conversation"):
        conversation = conversations.get_conversation(db, conversation_id)
        if viewer_desk is not None:
            conversations.require_participant(conversation, viewer_desk)
            for miv in storage.get_conversation_mivs(db, conversation_id):
                if miv.to_desk == viewer_desk and miv.read_at is None:
                    _read(db, miv, viewer_desk, sink)
    return ConversationThread(
        conversation=conversation,
        mivs=storage.get_conversation_mivs(db, conversation_id),
        viewer_desk=viewer_desk,
    )


def read_notification(db: Session, notification_id: str, desk_id: Optional[str] = None):
    with _operation(db, "read_notification"):
        notification = notifications.mark_notification_read(db, notification_id, desk_id)
    return notification


# =============================================================================
# Read-only operations
# =============================================================================

def list_conversations(db: Session, desk_id: str) -> List[conversations.ConversationSummary]:
    return conversations.list_conversation_summaries(db, desk_id)


def list_basket(db: Session, desk_id: str, basket: Basket) -> baskets.BasketListing:
    return baskets.list_basket(db, desk_id, basket)

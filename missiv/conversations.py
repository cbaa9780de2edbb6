"""
Conversation aggregate: two-party threads of mivs.

Like the store, these functions flush and leave the commit to the caller.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from missiv.errors import (
    ConversationArchived,
    ConversationNotFound,
    InvalidRecipient,
    NotParticipant,
)
from missiv.storage import append_miv, get_conversation_mivs
from missiv.utils import iso_now, new_id

if TYPE_CHECKING:
    from missiv.models import Conversation, Miv

logger = logging.getLogger(__name__)


@dataclass
class ConversationSummary:
    conversation: "Conversation"
    latest_miv: Optional["Miv"]
    unread_count: int


def get_conversation(db: Session, conversation_id: str):
    """
    Raises:
        ConversationNotFound: unknown id
    """
    from missiv.models import Conversation

    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if conversation is None:
        raise ConversationNotFound(f"Conversation not found: {conversation_id}")
    return conversation


def require_participant(conversation, desk_id: str) -> None:
    if not conversation.involves(desk_id):
        raise NotParticipant(
            f"Desk {desk_id} is not a party to conversation {conversation.id}"
        )


def conversations_involving(db: Session, desk_id: str):
    """Query of every conversation the desk takes part in, archived or not."""
    from missiv.models import Conversation

    return db.query(Conversation).filter(
        or_(Conversation.origin_desk == desk_id, Conversation.peer_desk == desk_id)
    )


def create_conversation(
    db: Session,
    origin_desk: str,
    to_desk: str,
    subject: str,
    body: str,
    is_encrypted: bool = False,
):
    """
    Create a conversation together with its first miv (seq_no 1).

    Returns:
        Tuple of (conversation, first miv)

    Raises:
        InvalidRecipient: origin_desk == to_desk
    """
    from missiv.models import Conversation

    if origin_desk == to_desk:
        raise InvalidRecipient(f"Desk {origin_desk} cannot start a conversation with itself")

    now = iso_now()
    conversation = Conversation(
        id=new_id(),
        subject=subject,
        origin_desk=origin_desk,
        peer_desk=to_desk,
        created_at=now,
        updated_at=now,
        miv_count=0,
        is_archived=False,
    )
    db.add(conversation)
    db.flush()

    miv = append_miv(
        db,
        conversation_id=conversation.id,
        from_desk=origin_desk,
        to_desk=to_desk,
        subject=subject,
        body=body,
        is_encrypted=is_encrypted,
    )
    logger.info(f"Created conversation {conversation.id}: {origin_desk} -> {to_desk}")
    return conversation, miv


def append_reply(
    db: Session,
    conversation_id: str,
    from_desk: str,
    body: str,
    is_ack: bool = False,
    is_encrypted: bool = False,
):
    """
    Append a reply from either party, addressed to the other one.

    Turn order is not enforced: both parties may reply concurrently and the
    replies are ordered by arrival.

    Raises:
        ConversationNotFound: unknown conversation
        ConversationArchived: conversation is archived
        NotParticipant: from_desk is not a party to the latest miv
    """
    conversation = get_conversation(db, conversation_id)
    if conversation.is_archived:
        raise ConversationArchived(f"Conversation {conversation_id} is archived")

    mivs = get_conversation_mivs(db, conversation_id)
    latest = mivs[-1]
    if from_desk == latest.from_desk:
        to_desk = latest.to_desk
    elif from_desk == latest.to_desk:
        to_desk = latest.from_desk
    else:
        raise NotParticipant(
            f"Desk {from_desk} is not a party to conversation {conversation_id}"
        )

    # append_miv re-checks is_archived inside its own update, which closes
    # the window between the read above and the write
    return append_miv(
        db,
        conversation_id=conversation_id,
        from_desk=from_desk,
        to_desk=to_desk,
        subject=conversation.subject,
        body=body,
        is_ack=is_ack,
        is_encrypted=is_encrypted,
    )


def archive_conversation(db: Session, conversation_id: str, desk_id: Optional[str] = None):
    """
    Archive a conversation. Irreversible; archiving twice is a no-op.

    Raises:
        ConversationNotFound: unknown conversation
        NotParticipant: desk_id given and not a party
    """
    from missiv.models import Conversation

    conversation = get_conversation(db, conversation_id)
    if desk_id is not None:
        require_participant(conversation, desk_id)

    changed = (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id, Conversation.is_archived.is_(False))
        .update({Conversation.is_archived: True}, synchronize_session="fetch")
    )
    if changed:
        # The row lock is ours now; stamp after taking it
        now = iso_now()
        db.query(Conversation).filter(Conversation.id == conversation_id).update(
            {Conversation.archived_at: now, Conversation.updated_at: now},
            synchronize_session="fetch",
        )
        logger.info(f"Archived conversation {conversation_id}")
    return conversation


def _summarize(conversation, mivs: List, viewer_desk: str) -> ConversationSummary:
    unread = sum(1 for m in mivs if m.to_desk == viewer_desk and m.read_at is None)
    return ConversationSummary(
        conversation=conversation,
        latest_miv=mivs[-1] if mivs else None,
        unread_count=unread,
    )


def summarize(db: Session, conversation_id: str, viewer_desk: str) -> ConversationSummary:
    """
    Latest miv and the number of mivs addressed to viewer_desk still unread.

    Raises:
        ConversationNotFound: unknown conversation
        NotParticipant: viewer is not a party
    """
    conversation = get_conversation(db, conversation_id)
    require_participant(conversation, viewer_desk)
    return _summarize(conversation, get_conversation_mivs(db, conversation_id), viewer_desk)


def list_conversation_summaries(db: Session, desk_id: str) -> List[ConversationSummary]:
    """Summaries of every conversation involving the desk, most recently updated first."""
    from missiv.models import Conversation

    conversations = (
        conversations_involving(db, desk_id)
        .options(selectinload(Conversation.mivs))
        .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
        .all()
    )
    return [_summarize(c, list(c.mivs), desk_id) for c in conversations]

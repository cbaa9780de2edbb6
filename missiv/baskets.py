"""
Basket queries: which mivs a desk currently sees in IN, PENDING, SENT or ARCHIVED.

Counts and listings are produced from the same single SELECT and the same
membership predicate, so for any desk and basket the count always equals
the length of the listing.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from missiv.state import Basket, resolve_basket

if TYPE_CHECKING:
    from missiv.models import Conversation, Miv

logger = logging.getLogger(__name__)


@dataclass
class BasketListing:
    basket: Basket
    mivs: List["Miv"] = field(default_factory=list)
    # Populated for ARCHIVED only, in the same order as the mivs
    conversations: Optional[List["Conversation"]] = None

    @property
    def count(self) -> int:
        return len(self.mivs)


def effective_basket(miv, viewer_desk: str, conversation_archived: bool) -> Optional[Basket]:
    """
    The basket a miv is listed under for a desk.

    Same as ``resolve_basket`` except that a forgotten miv drops out of its
    sender's SENT basket. The recipient's view is unaffected.
    """
    basket = resolve_basket(miv, viewer_desk, conversation_archived)
    if basket is Basket.SENT and miv.is_forgotten:
        return None
    return basket


def _snapshot(db: Session, desk_id: str) -> List:
    """Every (miv, conversation) pair the desk is party to, in one query."""
    from missiv.models import Conversation, Miv

    return (
        db.query(Miv, Conversation)
        .join(Conversation, Miv.conversation_id == Conversation.id)
        .filter(or_(Conversation.origin_desk == desk_id, Conversation.peer_desk == desk_id))
        .filter(or_(Miv.from_desk == desk_id, Miv.to_desk == desk_id))
        .all()
    )


def _select(rows: List, desk_id: str, basket: Basket) -> BasketListing:
    matching = [
        (miv, conversation)
        for miv, conversation in rows
        if effective_basket(miv, desk_id, conversation.is_archived) is basket
    ]

    if basket is Basket.ARCHIVED:
        # Grouped by conversation, most recently updated first, thread order inside
        matching.sort(key=lambda row: row[0].seq_no)
        matching.sort(key=lambda row: (row[1].updated_at, row[1].id), reverse=True)
        conversations = []
        seen = set()
        for _, conversation in matching:
            if conversation.id not in seen:
                seen.add(conversation.id)
                conversations.append(conversation)
        return BasketListing(
            basket=basket,
            mivs=[miv for miv, _ in matching],
            conversations=conversations,
        )

    matching.sort(key=lambda row: (row[0].created_at, row[0].seq_no, row[0].id), reverse=True)
    return BasketListing(basket=basket, mivs=[miv for miv, _ in matching])


def list_basket(db: Session, desk_id: str, basket: Basket) -> BasketListing:
    """
    List the mivs a desk sees in one basket.

    IN, PENDING and SENT are ordered by created_at, newest first. ARCHIVED
    holds every miv of the desk's archived conversations, ordered by the
    conversation's updated_at (newest first) and by seq_no within it.
    """
    basket = Basket(basket)
    listing = _select(_snapshot(db, desk_id), desk_id, basket)
    logger.debug(f"Basket {basket.value} for desk {desk_id}: {listing.count} mivs")
    return listing


def basket_counts(db: Session, desk_id: str) -> Dict[Basket, int]:
    """Counts for all four baskets, computed from one snapshot."""
    rows = _snapshot(db, desk_id)
    return {basket: _select(rows, desk_id, basket).count for basket in Basket}

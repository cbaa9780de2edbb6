"""
State resolution: which basket a miv sits in, as seen by one desk.

Nothing here touches the database. A miv has no stored status; its basket
is recomputed on every read from ``read_at``, ``is_ack`` and the owning
conversation's ``is_archived``, interpreted from the viewer's side. Marking
a miv read is therefore a single timestamp write that moves it from IN to
PENDING for the recipient and leaves the sender's SENT view alone.
"""

import enum
from typing import Optional

from missiv.errors import NotParticipant


class Basket(str, enum.Enum):
    IN = "IN"
    PENDING = "PENDING"
    SENT = "SENT"
    ARCHIVED = "ARCHIVED"


def resolve_basket(miv, viewer_desk: str, conversation_archived: bool) -> Optional[Basket]:
    """
    Derive the basket a miv belongs to for ``viewer_desk``.

    Rules, first match wins:
        1. archived conversation -> ARCHIVED, for every viewer
        2. viewer is the recipient -> IN while unread, PENDING once read
        3. viewer is the sender -> SENT, unless the miv is an ACK (no basket)
        4. anyone else -> NotParticipant

    Args:
        miv: anything with ``from_desk``, ``to_desk``, ``read_at`` and ``is_ack``
        viewer_desk: the desk whose perspective is resolved
        conversation_archived: ``is_archived`` of the owning conversation

    Returns:
        The basket, or None when the miv belongs to no basket for this viewer.
    """
    if conversation_archived:
        return Basket.ARCHIVED

    if viewer_desk == miv.to_desk:
        if miv.read_at is None:
            return Basket.IN
        return Basket.PENDING

    if viewer_desk == miv.from_desk:
        if miv.is_ack:
            return None
        return Basket.SENT

    raise NotParticipant(f"Desk {viewer_desk} is not a party to miv {miv.id}")

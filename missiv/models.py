"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

Basket membership is deliberately absent from these tables: it is derived
per viewing desk from the timestamps and flags below (see state.py).
"""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from missiv.storage import Base


class Conversation(Base):
    """
    A strictly two-party thread of mivs.

    Table: conversations
    ``miv_count`` doubles as the per-conversation seq_no counter.
    ``is_archived`` only ever goes from False to True.
    """
    __tablename__ = "conversations"

    id = Column(String, primary_key=True, index=True)
    subject = Column(String, nullable=False)
    origin_desk = Column(String, nullable=False, index=True)
    peer_desk = Column(String, nullable=False, index=True)
    created_at = Column(String, nullable=False)  # ISO-8601 UTC
    updated_at = Column(String, nullable=False, index=True)
    miv_count = Column(Integer, nullable=False, default=0)
    is_archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(String, nullable=True)

    mivs = relationship(
        "Miv",
        back_populates="conversation",
        order_by="Miv.seq_no",
    )

    def involves(self, desk_id: str) -> bool:
        return desk_id in (self.origin_desk, self.peer_desk)


class Miv(Base):
    """
    An individual message.

    Table: mivs
    Unique: (conversation_id, seq_no)
    """
    __tablename__ = "mivs"
    __table_args__ = (
        UniqueConstraint("conversation_id", "seq_no", name="uq_mivs_conversation_seq"),
    )

    id = Column(String, primary_key=True, index=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False, index=True)
    seq_no = Column(Integer, nullable=False)
    from_desk = Column(String, nullable=False, index=True)
    to_desk = Column(String, nullable=False, index=True)
    subject = Column(String, nullable=False)
    body = Column(Text, nullable=False)  # opaque, possibly encrypted
    is_encrypted = Column(Boolean, nullable=False, default=False)
    is_ack = Column(Boolean, nullable=False, default=False)
    is_forgotten = Column(Boolean, nullable=False, default=False)
    created_at = Column(String, nullable=False)
    sent_at = Column(String, nullable=True)
    received_at = Column(String, nullable=True)
    read_at = Column(String, nullable=True)  # never cleared once set

    conversation = relationship("Conversation", back_populates="mivs")


class Notification(Base):
    """
    An event recorded for a desk (new miv, reply, read receipt).

    Table: notifications
    """
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, index=True)
    desk_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)
    miv_id = Column(String, ForeignKey("mivs.id"), nullable=False)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=True)
    message = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(String, nullable=False)
    read_at = Column(String, nullable=True)

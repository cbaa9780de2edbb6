"""
Notification sink for miv events.

The core only records that something happened for a desk; delivering it
(push, email, polling UI) belongs to whoever reads the notifications table.
"""

import enum
import logging
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from missiv.config import settings
from missiv.errors import NotificationNotFound, NotParticipant
from missiv.utils import iso_now, new_id

logger = logging.getLogger(__name__)


class NotificationType(str, enum.Enum):
    NEW_MIV = "NEW_MIV"
    REPLY = "REPLY"
    READ_RECEIPT = "READ_RECEIPT"


class NotificationSink:
    """Receives events emitted by the reply/ack/forget protocol."""

    def notify(
        self,
        db: Session,
        desk_id: str,
        type: NotificationType,
        miv,
        message: str,
    ) -> None:
        raise NotImplementedError


class NullNotificationSink(NotificationSink):
    def notify(self, db, desk_id, type, miv, message) -> None:
        return None


class DatabaseNotificationSink(NotificationSink):
    """
    Store notifications in the same session as the mutation that caused them,
    so an event exists iff its miv write committed.
    """

    def notify(self, db, desk_id, type, miv, message) -> None:
        from missiv.models import Notification

        notification = Notification(
            id=new_id(),
            desk_id=desk_id,
            type=NotificationType(type).value,
            miv_id=miv.id,
            conversation_id=miv.conversation_id,
            message=message,
            read=False,
            created_at=iso_now(),
        )
        db.add(notification)
        logger.debug(f"Queued {notification.type} notification for desk {desk_id}")


def get_notification_sink() -> NotificationSink:
    if settings.NOTIFICATIONS_ENABLED:
        return DatabaseNotificationSink()
    return NullNotificationSink()


# =============================================================================
# Notification queries
# =============================================================================

def list_notifications(
    db: Session,
    desk_id: str,
    unread_only: bool = False,
) -> Tuple[List, int]:
    """
    List a desk's notifications, newest first.

    Returns:
        Tuple of (notifications, unread count among the returned rows)
    """
    from missiv.models import Notification

    query = db.query(Notification).filter(Notification.desk_id == desk_id)
    if unread_only:
        query = query.filter(Notification.read.is_(False))
    notifications = query.order_by(
        Notification.created_at.desc(), Notification.id.desc()
    ).all()
    unread_count = sum(1 for n in notifications if not n.read)
    return notifications, unread_count


def mark_notification_read(db: Session, notification_id: str, desk_id: Optional[str] = None):
    """
    Mark a notification read. Idempotent; the first read_at is kept.

    Raises:
        NotificationNotFound: unknown id
        NotParticipant: desk_id given and it does not own the notification
    """
    from missiv.models import Notification

    notification = db.query(Notification).filter(Notification.id == notification_id).first()
    if notification is None:
        raise NotificationNotFound(f"Notification not found: {notification_id}")
    if desk_id is not None and notification.desk_id != desk_id:
        raise NotParticipant(f"Notification {notification_id} does not belong to desk {desk_id}")

    if not notification.read:
        notification.read = True
        notification.read_at = iso_now()
        db.flush()
    return notification

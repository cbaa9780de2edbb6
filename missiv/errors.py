"""
Error taxonomy for conversation and miv operations.

Every error is terminal and reported to the caller as-is; nothing in the
core retries. The API layer maps ``status_code`` and ``code`` onto the
HTTP response.
"""


class MissivError(Exception):
    """Base class for all client-reportable errors."""

    code = "missiv_error"
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidRecipient(MissivError):
    """A miv was addressed to its own sender."""

    code = "invalid_recipient"
    status_code = 400


class NotParticipant(MissivError):
    """The acting or viewing desk is not a party to the conversation."""

    code = "not_participant"
    status_code = 403


class Forbidden(MissivError):
    """The desk is a party, but not the one allowed to perform this action."""

    code = "forbidden"
    status_code = 403


class MessageNotFound(MissivError):
    code = "message_not_found"
    status_code = 404


class ConversationNotFound(MissivError):
    code = "conversation_not_found"
    status_code = 404


class NotificationNotFound(MissivError):
    code = "notification_not_found"
    status_code = 404


class ConversationArchived(MissivError):
    """Write attempted on a conversation that has been archived."""

    code = "conversation_archived"
    status_code = 409

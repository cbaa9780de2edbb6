"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
"""

from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator

from missiv.notifications import NotificationType
from missiv.state import Basket
from missiv.utils import is_valid_desk_id


# =============================================================================
# Pydantic Request Models
# =============================================================================

class CreateConversationRequest(BaseModel):
    """
    Body of POST /conversations.

    The sending desk comes from the desk_id query parameter.
    """
    to: str = Field(..., description="Recipient desk id (10 digits)")
    subject: str = Field(..., min_length=1, max_length=255, description="Conversation subject")
    body: str = Field(..., min_length=1, description="Miv body, opaque to the server")
    is_encrypted: bool = Field(False, description="Whether the body is encrypted")

    @field_validator("to")
    @classmethod
    def validate_desk_id(cls, v: str) -> str:
        if not is_valid_desk_id(v):
            raise ValueError("to must be a 10-digit desk id")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"to": "2000000002", "subject": "Lunch?", "body": "Free Friday?"}
            ]
        }
    }


class ReplyRequest(BaseModel):
    """Body of POST /conversations/{conversation_id}/reply."""
    body: str = Field(..., min_length=1, description="Miv body, opaque to the server")
    is_ack: bool = Field(
        False,
        description="Acknowledge without asking for a reply; never counted as SENT",
    )
    is_encrypted: bool = Field(False, description="Whether the body is encrypted")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")
    error: Optional[str] = Field(None, description="Machine-readable error code")


class MivResponse(BaseModel):
    """
    A single miv.

    ``basket`` is only filled in when the request names a viewing desk; it
    is that desk's view, not a stored property of the miv.
    """
    id: str
    conversation_id: str
    seq_no: int = Field(..., ge=1)
    from_desk: str = Field(..., serialization_alias="from", description="Sender desk id")
    to_desk: str = Field(..., serialization_alias="to", description="Recipient desk id")
    subject: str
    body: str
    is_encrypted: bool
    is_ack: bool
    is_forgotten: bool
    created_at: str
    sent_at: Optional[str] = None
    received_at: Optional[str] = None
    read_at: Optional[str] = None
    basket: Optional[Basket] = Field(None, description="Basket as seen by the viewing desk")

    model_config = {"populate_by_name": True}


class ConversationResponse(BaseModel):
    id: str
    subject: str
    desk_id: str = Field(..., description="Desk that started the conversation")
    peer_desk_id: str = Field(..., description="The other party")
    created_at: str
    updated_at: str
    miv_count: int = Field(..., ge=0)
    is_archived: bool
    archived_at: Optional[str] = None


class ConversationThreadResponse(BaseModel):
    """A conversation with every miv in seq_no order."""
    conversation: ConversationResponse
    mivs: list[MivResponse] = Field(default_factory=list)


class ConversationSummaryResponse(BaseModel):
    conversation: ConversationResponse
    latest_miv: Optional[MivResponse] = None
    unread_count: int = Field(..., ge=0, description="Mivs to this desk not yet read")


class ConversationsListResponse(BaseModel):
    conversations: list[ConversationSummaryResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class BasketResponse(BaseModel):
    """
    Contents of one basket for one desk.

    ``count`` is always ``len(mivs)``. For ARCHIVED, ``conversations`` lists
    the archived conversations in the same order as their mivs.
    """
    desk_id: str
    basket: Basket
    count: int = Field(..., ge=0)
    mivs: list[MivResponse] = Field(default_factory=list)
    conversations: Optional[list[ConversationResponse]] = None


class BasketCountsResponse(BaseModel):
    desk_id: str
    counts: Dict[Basket, int]


class NotificationResponse(BaseModel):
    id: str
    desk_id: str
    type: NotificationType
    miv_id: str
    conversation_id: Optional[str] = None
    message: str
    read: bool
    created_at: str
    read_at: Optional[str] = None

    model_config = {"from_attributes": True}


class NotificationsListResponse(BaseModel):
    notifications: list[NotificationResponse] = Field(default_factory=list)
    unread_count: int = Field(..., ge=0)
    total: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")

import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import FastAPI, Response, Request, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from missiv import protocol
from missiv.baskets import basket_counts, effective_basket
from missiv.config import settings
from missiv.errors import MissivError
from missiv.logging_utils import setup_logging, RequestLoggingMiddleware, log_operation
from missiv.metrics import get_metrics, get_metrics_content_type
from missiv.notifications import list_notifications as query_notifications
from missiv.schemas import (
    BasketCountsResponse,
    BasketResponse,
    ConversationResponse,
    ConversationsListResponse,
    ConversationSummaryResponse,
    ConversationThreadResponse,
    CreateConversationRequest,
    ErrorResponse,
    HealthResponse,
    MivResponse,
    NotificationResponse,
    NotificationsListResponse,
    ReplyRequest,
)
from missiv.state import Basket
from missiv.storage import init_db, check_db_health, get_db
from missiv.utils import DESK_ID_PATTERN


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="Missiv API",
    description="Desk-to-desk messaging with per-desk IN / PENDING / SENT / ARCHIVED baskets",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


DeskId = Annotated[str, Query(pattern=DESK_ID_PATTERN, description="Acting desk id (10 digits)")]
OptionalDeskId = Annotated[
    Optional[str],
    Query(pattern=DESK_ID_PATTERN, description="Viewing/acting desk id (10 digits)"),
]

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid recipient"},
    403: {"model": ErrorResponse, "description": "Not a participant / forbidden"},
    404: {"model": ErrorResponse, "description": "Not found"},
    409: {"model": ErrorResponse, "description": "Conversation archived"},
}


@app.exception_handler(MissivError)
async def missiv_error_handler(request: Request, exc: MissivError) -> JSONResponse:
    """Render domain errors as {"detail", "error"} with their HTTP status."""
    log_data = getattr(request.state, "operation_log_data", None)
    if log_data is not None:
        log_data["result"] = exc.code
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": exc.code},
    )


# =============================================================================
# Response builders
# =============================================================================

def _conversation_response(conversation) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        subject=conversation.subject,
        desk_id=conversation.origin_desk,
        peer_desk_id=conversation.peer_desk,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        miv_count=conversation.miv_count,
        is_archived=conversation.is_archived,
        archived_at=conversation.archived_at,
    )


def _miv_response(miv, viewer_desk: Optional[str] = None, archived: bool = False) -> MivResponse:
    basket = None
    if viewer_desk is not None:
        basket = effective_basket(miv, viewer_desk, archived)
    return MivResponse(
        id=miv.id,
        conversation_id=miv.conversation_id,
        seq_no=miv.seq_no,
        from_desk=miv.from_desk,
        to_desk=miv.to_desk,
        subject=miv.subject,
        body=miv.body,
        is_encrypted=miv.is_encrypted,
        is_ack=miv.is_ack,
        is_forgotten=miv.is_forgotten,
        created_at=miv.created_at,
        sent_at=miv.sent_at,
        received_at=miv.received_at,
        read_at=miv.read_at,
        basket=basket,
    )


def _thread_response(conversation, mivs, viewer_desk: Optional[str]) -> ConversationThreadResponse:
    return ConversationThreadResponse(
        conversation=_conversation_response(conversation),
        mivs=[_miv_response(m, viewer_desk, conversation.is_archived) for m in mivs],
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and every
    table exists, otherwise 503.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )
    return HealthResponse(status="ready")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.post(
    "/conversations",
    response_model=ConversationThreadResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
def create_conversation(
    request: Request,
    payload: CreateConversationRequest,
    desk_id: DeskId,
    db: Session = Depends(get_db),
) -> ConversationThreadResponse:
    """
    Start a conversation from desk_id to payload.to with its first miv (seq_no 1).
    """
    log_operation(request, "create_conversation", desk_id=desk_id)
    conversation, miv = protocol.create_conversation(
        db,
        origin_desk=desk_id,
        to_desk=payload.to,
        subject=payload.subject,
        body=payload.body,
        is_encrypted=payload.is_encrypted,
    )
    log_operation(
        request, "create_conversation",
        desk_id=desk_id, conversation_id=conversation.id, miv_id=miv.id,
    )
    return _thread_response(conversation, [miv], desk_id)


@app.get("/conversations", response_model=ConversationsListResponse)
def list_conversations(
    request: Request,
    desk_id: DeskId,
    db: Session = Depends(get_db),
) -> ConversationsListResponse:
    """
    Every conversation the desk takes part in, archived ones included,
    most recently updated first, with the latest miv and unread count.
    """
    log_operation(request, "list_conversations", desk_id=desk_id)
    summaries = protocol.list_conversations(db, desk_id)
    data = [
        ConversationSummaryResponse(
            conversation=_conversation_response(s.conversation),
            latest_miv=(
                _miv_response(s.latest_miv, desk_id, s.conversation.is_archived)
                if s.latest_miv is not None else None
            ),
            unread_count=s.unread_count,
        )
        for s in summaries
    ]
    return ConversationsListResponse(conversations=data, total=len(data))


@app.get(
    "/conversations/{conversation_id}",
    response_model=ConversationThreadResponse,
    responses=ERROR_RESPONSES,
)
def get_conversation(
    request: Request,
    conversation_id: str,
    desk_id: OptionalDeskId = None,
    db: Session = Depends(get_db),
) -> ConversationThreadResponse:
    """
    A conversation with all its mivs in seq_no order.

    With desk_id, every miv addressed to that desk is marked read and each
    miv carries its basket as seen by the desk.
    """
    log_operation(request, "get_conversation", desk_id=desk_id, conversation_id=conversation_id)
    thread = protocol.get_conversation(db, conversation_id, viewer_desk=desk_id)
    return _thread_response(thread.conversation, thread.mivs, thread.viewer_desk)


@app.post(
    "/conversations/{conversation_id}/reply",
    response_model=MivResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
def reply_to_conversation(
    request: Request,
    conversation_id: str,
    payload: ReplyRequest,
    desk_id: DeskId,
    db: Session = Depends(get_db),
) -> MivResponse:
    """Reply (or ACK with is_ack=true) in a conversation that is not archived."""
    operation = "ack" if payload.is_ack else "reply"
    log_operation(request, operation, desk_id=desk_id, conversation_id=conversation_id)
    miv = protocol.reply_to_conversation(
        db,
        conversation_id=conversation_id,
        from_desk=desk_id,
        body=payload.body,
        is_ack=payload.is_ack,
        is_encrypted=payload.is_encrypted,
    )
    log_operation(
        request, operation,
        desk_id=desk_id, conversation_id=conversation_id, miv_id=miv.id,
    )
    return _miv_response(miv, desk_id)


@app.post(
    "/conversations/{conversation_id}/archive",
    response_model=ConversationResponse,
    responses=ERROR_RESPONSES,
)
def archive_conversation(
    request: Request,
    conversation_id: str,
    desk_id: OptionalDeskId = None,
    db: Session = Depends(get_db),
) -> ConversationResponse:
    """Archive a conversation. Terminal: no further replies are accepted."""
    log_operation(request, "archive", desk_id=desk_id, conversation_id=conversation_id)
    conversation = protocol.archive_conversation(db, conversation_id, desk_id)
    return _conversation_response(conversation)


# =============================================================================
# Miv Routes
# =============================================================================

@app.post("/mivs/{miv_id}/read", response_model=MivResponse, responses=ERROR_RESPONSES)
def mark_miv_read(
    request: Request,
    miv_id: str,
    desk_id: DeskId,
    db: Session = Depends(get_db),
) -> MivResponse:
    """Mark a miv read by its recipient. Idempotent."""
    log_operation(request, "mark_read", desk_id=desk_id, miv_id=miv_id)
    miv = protocol.mark_miv_read(db, miv_id, desk_id)
    return _miv_response(miv, desk_id, miv.conversation.is_archived)


@app.post("/mivs/{miv_id}/forget", response_model=MivResponse, responses=ERROR_RESPONSES)
def forget_miv(
    request: Request,
    miv_id: str,
    desk_id: DeskId,
    db: Session = Depends(get_db),
) -> MivResponse:
    """Drop a sent miv from the sender's SENT basket. Sender only."""
    log_operation(request, "forget", desk_id=desk_id, miv_id=miv_id)
    miv = protocol.forget_miv(db, miv_id, desk_id)
    return _miv_response(miv, desk_id, miv.conversation.is_archived)


# =============================================================================
# Basket Routes
# =============================================================================

@app.get("/baskets", response_model=BasketCountsResponse)
def get_basket_counts(
    request: Request,
    desk_id: DeskId,
    db: Session = Depends(get_db),
) -> BasketCountsResponse:
    """Number of mivs in each basket for the desk, from a single snapshot."""
    log_operation(request, "basket_counts", desk_id=desk_id)
    return BasketCountsResponse(desk_id=desk_id, counts=basket_counts(db, desk_id))


@app.get("/baskets/{basket}", response_model=BasketResponse)
def list_basket(
    request: Request,
    basket: Basket,
    desk_id: DeskId,
    db: Session = Depends(get_db),
) -> BasketResponse:
    """
    The mivs the desk currently sees in one basket.

    IN, PENDING and SENT are newest first; ARCHIVED is grouped by
    conversation, most recently updated conversation first.
    """
    log_operation(request, "list_basket", desk_id=desk_id, basket=basket.value)
    listing = protocol.list_basket(db, desk_id, basket)
    archived = basket is Basket.ARCHIVED
    return BasketResponse(
        desk_id=desk_id,
        basket=listing.basket,
        count=listing.count,
        mivs=[_miv_response(m, desk_id, archived) for m in listing.mivs],
        conversations=(
            [_conversation_response(c) for c in listing.conversations]
            if listing.conversations is not None else None
        ),
    )


# =============================================================================
# Notification Routes
# =============================================================================

@app.get("/notifications", response_model=NotificationsListResponse)
def list_notifications(
    request: Request,
    desk_id: DeskId,
    unread_only: bool = False,
    db: Session = Depends(get_db),
) -> NotificationsListResponse:
    """Notifications recorded for the desk, newest first."""
    log_operation(request, "list_notifications", desk_id=desk_id)
    notifications, unread_count = query_notifications(db, desk_id, unread_only=unread_only)
    return NotificationsListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in notifications],
        unread_count=unread_count,
        total=len(notifications),
    )


@app.post(
    "/notifications/{notification_id}/read",
    response_model=NotificationResponse,
    responses=ERROR_RESPONSES,
)
def mark_notification_read(
    request: Request,
    notification_id: str,
    desk_id: OptionalDeskId = None,
    db: Session = Depends(get_db),
) -> NotificationResponse:
    log_operation(request, "read_notification", desk_id=desk_id)
    notification = protocol.read_notification(db, notification_id, desk_id)
    return NotificationResponse.model_validate(notification)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )

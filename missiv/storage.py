import logging
from typing import Generator, List

from sqlalchemy import create_engine, event, text, inspect
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from missiv.config import settings
from missiv.errors import (
    ConversationArchived,
    ConversationNotFound,
    Forbidden,
    InvalidRecipient,
    MessageNotFound,
    NotParticipant,
)
from missiv.utils import iso_now, new_id

logger = logging.getLogger(__name__)


def _engine_connect_args(url: str) -> dict:
    # check_same_thread=False is required for SQLite under FastAPI's threadpool;
    # timeout is how long a writer waits on another writer's lock
    if url.startswith("sqlite"):
        return {
            "check_same_thread": False,
            "timeout": settings.DB_BUSY_TIMEOUT_SECONDS,
        }
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_engine_connect_args(settings.DATABASE_URL),
    echo=False,
)


if settings.DATABASE_URL.startswith("sqlite"):
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        # WAL lets basket reads proceed while an append holds the write lock
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("conversations", "mivs", "notifications")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        import missiv.models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every table exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        existing = set(inspect(engine).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Store
# =============================================================================
#
# These functions flush but never commit: the caller owns the transaction,
# so a conversation and its first miv (or a miv and its notification) land
# together or not at all.


def get_miv(db: Session, miv_id: str):
    """
    Retrieve a miv by its ID.

    Raises:
        MessageNotFound: no miv has this id
    """
    from missiv.models import Miv

    miv = db.query(Miv).filter(Miv.id == miv_id).first()
    if miv is None:
        raise MessageNotFound(f"Miv not found: {miv_id}")
    return miv


def get_conversation_mivs(db: Session, conversation_id: str) -> List:
    """Retrieve all mivs of a conversation ordered by seq_no ascending."""
    from missiv.models import Miv

    return (
        db.query(Miv)
        .filter(Miv.conversation_id == conversation_id)
        .order_by(Miv.seq_no.asc())
        .all()
    )


def append_miv(
    db: Session,
    conversation_id: str,
    from_desk: str,
    to_desk: str,
    subject: str,
    body: str,
    is_ack: bool = False,
    is_encrypted: bool = False,
):
    """
    Append a miv to a conversation, assigning the next seq_no.

    The counter bump is a single conditional UPDATE on the conversation row.
    It takes the row's write lock for the rest of the transaction, so
    concurrent appends to one conversation are serialized, and the
    ``is_archived`` check happens inside the same statement so an archive
    that committed first is always observed. Timestamps are taken after
    that statement returns.

    Raises:
        InvalidRecipient: from_desk == to_desk
        ConversationNotFound: unknown conversation
        ConversationArchived: conversation is archived
    """
    from missiv.models import Conversation, Miv

    if from_desk == to_desk:
        raise InvalidRecipient(f"Desk {from_desk} cannot send a miv to itself")

    claimed = (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id, Conversation.is_archived.is_(False))
        .update(
            {Conversation.miv_count: Conversation.miv_count + 1},
            synchronize_session="fetch",
        )
    )
    if not claimed:
        row = (
            db.query(Conversation.is_archived)
            .filter(Conversation.id == conversation_id)
            .first()
        )
        if row is None:
            raise ConversationNotFound(f"Conversation not found: {conversation_id}")
        raise ConversationArchived(f"Conversation {conversation_id} is archived")

    seq_no = (
        db.query(Conversation.miv_count)
        .filter(Conversation.id == conversation_id)
        .scalar()
    )

    # Stamped only once the lock is held, so created_at follows seq_no
    # and updated_at never moves backwards
    now = iso_now()
    db.query(Conversation).filter(Conversation.id == conversation_id).update(
        {Conversation.updated_at: now},
        synchronize_session="fetch",
    )

    miv = Miv(
        id=new_id(),
        conversation_id=conversation_id,
        seq_no=seq_no,
        from_desk=from_desk,
        to_desk=to_desk,
        subject=subject,
        body=body,
        is_encrypted=is_encrypted,
        is_ack=is_ack,
        is_forgotten=False,
        created_at=now,
        sent_at=now,
        received_at=now,
    )
    db.add(miv)
    db.flush()
    logger.debug(f"Appended miv {miv.id} to {conversation_id} as seq_no={seq_no}")
    return miv


def mark_read(db: Session, miv_id: str, reader_desk: str) -> bool:
    """
    Set read_at on a miv if the reader is its recipient and it is unread.

    Implemented as a conditional update so redundant or concurrent calls
    never overwrite an earlier read_at. A sender "reading" their own miv is
    a no-op.

    Returns:
        True if this call set read_at, False if nothing changed.

    Raises:
        MessageNotFound: unknown miv
        NotParticipant: reader is neither sender nor recipient
    """
    from missiv.models import Miv

    miv = get_miv(db, miv_id)
    if reader_desk != miv.to_desk:
        if reader_desk == miv.from_desk:
            return False
        raise NotParticipant(f"Desk {reader_desk} is not a party to miv {miv_id}")

    updated = (
        db.query(Miv)
        .filter(Miv.id == miv_id, Miv.read_at.is_(None))
        .update({Miv.read_at: iso_now()}, synchronize_session="fetch")
    )
    return updated == 1


def mark_forgotten(db: Session, miv_id: str, requestor_desk: str) -> bool:
    """
    Flag a miv as forgotten on behalf of its sender.

    Returns:
        True if the flag changed, False if it was already set.

    Raises:
        MessageNotFound: unknown miv
        Forbidden: requestor is not the sender
    """
    miv = get_miv(db, miv_id)
    if requestor_desk != miv.from_desk:
        raise Forbidden(f"Only the sender may forget miv {miv_id}")
    if miv.is_forgotten:
        return False
    miv.is_forgotten = True
    db.flush()
    return True

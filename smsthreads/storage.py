import logging
from pathlib import Path
from typing import Iterable, Optional, Union

from sqlalchemy import create_engine, func, or_, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from smsthreads.mappers import to_message_views, to_thread_views
from smsthreads.schemas import CurrentUser, Message, MessageRecord, Thread

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

# Stored in PRAGMA user_version; bump together with a migration
SCHEMA_VERSION = 1


def create_store(db_path: Union[str, Path]) -> sessionmaker:
    """
    Open (and lazily create) the cache file for one account.

    Args:
        db_path: Path of the SQLite file; missing parent directories are created

    Returns:
        Session factory bound to the account's engine
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"Opening message cache: {db_path}")

    # check_same_thread=False lets the HTTP layer and the sync loop share the engine
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
        echo=False,
    )
    init_db(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """
    Create the messages table if needed and stamp the schema version.
    """
    logger.debug(f"Initializing database: {engine.url}")
    try:
        # Import models to register them with Base.metadata
        from smsthreads.models import StoredMessage  # noqa: F401

        Base.metadata.create_all(bind=engine)
        with engine.begin() as conn:
            version = conn.exec_driver_sql("PRAGMA user_version").scalar()
            if not version:
                conn.exec_driver_sql(f"PRAGMA user_version = {SCHEMA_VERSION}")
                logger.debug(f"Schema version set to {SCHEMA_VERSION}")
            elif version != SCHEMA_VERSION:
                logger.warning(f"Cache schema version {version} differs from {SCHEMA_VERSION}")
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_schema_version(engine: Engine) -> int:
    with engine.connect() as conn:
        return conn.exec_driver_sql("PRAGMA user_version").scalar() or 0


def check_db_health(session_factory: sessionmaker) -> bool:
    """
    Check if the cache is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
            result = db.execute(text(
                "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name='messages'"
            )).scalar()
            if result == 0:
                logger.error("Database schema not applied: 'messages' table not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository Functions
# =============================================================================

def upsert_messages(db: Session, records: Iterable[MessageRecord]) -> list[str]:
    """
    Insert or update a batch of messages in one transaction.

    New data wins for every column except isRead, which keeps
    `old OR new` so a re-fetched message never becomes unread again.

    Args:
        db: Database session
        records: Normalized records; a repeated id keeps its last occurrence

    Returns:
        Ids that were not stored before this call, in input order

    Raises:
        SQLAlchemyError: On any storage failure; nothing from the batch is kept
    """
    from smsthreads.models import StoredMessage

    batch = {record.id: record for record in records}
    if not batch:
        return []

    logger.info(f"Upserting {len(batch)} messages")
    try:
        existing = {
            row.id
            for row in db.query(StoredMessage.id).filter(StoredMessage.id.in_(list(batch)))
        }
        rows = [
            {
                "id": record.id,
                "body": record.body,
                "otherParticipant": record.other_participant,
                "isSender": record.is_sender,
                "isRead": record.is_read,
                "timestamp": record.timestamp,
            }
            for record in batch.values()
        ]
        table = StoredMessage.__table__
        stmt = sqlite_insert(table)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.id],
            set_={
                "body": stmt.excluded.body,
                "otherParticipant": stmt.excluded.otherParticipant,
                "isSender": stmt.excluded.isSender,
                "isRead": or_(table.c.isRead, stmt.excluded.isRead),
                "timestamp": stmt.excluded.timestamp,
            },
        )
        db.execute(stmt, rows)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to upsert {len(batch)} messages: {e}")
        raise

    new_ids = [message_id for message_id in batch if message_id not in existing]
    logger.info(f"Upsert complete: {len(new_ids)} new, {len(batch) - len(new_ids)} already stored")
    return new_ids


def get_watermark(db: Session) -> Optional[int]:
    """
    Latest stored timestamp.

    Returns:
        Max timestamp in epoch ms, or None when the cache is empty (the
        next fetch must then pull the whole provider history)
    """
    from smsthreads.models import StoredMessage

    watermark = db.query(func.max(StoredMessage.timestamp)).scalar()
    logger.debug(f"Watermark: {watermark}")
    return watermark


def get_message_by_id(db: Session, message_id: str) -> Optional[MessageRecord]:
    """
    Retrieve a message by its ID.

    Returns:
        The record if found, None otherwise
    """
    from smsthreads.models import StoredMessage

    logger.debug(f"Looking up message by ID: {message_id}")
    row = db.query(StoredMessage).filter(StoredMessage.id == message_id).first()
    logger.debug(f"Message lookup result: {'found' if row else 'not found'}")
    return MessageRecord.model_validate(row) if row else None


def get_all_records(db: Session) -> list[MessageRecord]:
    from smsthreads.models import StoredMessage

    rows = db.query(StoredMessage).order_by(StoredMessage.timestamp.asc(), StoredMessage.id.asc()).all()
    return [MessageRecord.model_validate(row) for row in rows]


def get_thread_records(db: Session, thread_key: str) -> list[MessageRecord]:
    from smsthreads.models import StoredMessage

    rows = (
        db.query(StoredMessage)
        .filter(StoredMessage.other_participant == thread_key)
        .order_by(StoredMessage.timestamp.asc(), StoredMessage.id.asc())
        .all()
    )
    return [MessageRecord.model_validate(row) for row in rows]


def list_threads(db: Session, current_user: CurrentUser, page_limit: Optional[int] = None) -> list[Thread]:
    """
    Derive one thread per distinct counterpart in the cache.

    Threads are recomputed from the flat table on every call, most recently
    active first, each carrying its unread flag and last read message id.
    With a page_limit each thread embeds only its newest messages.
    """
    records = get_all_records(db)
    threads = to_thread_views(records, current_user, page_limit)
    logger.info(f"Listed {len(threads)} threads from {len(records)} messages")
    return threads


def list_messages(
    db: Session,
    thread_key: str,
    current_user: CurrentUser,
    limit: int,
    before_timestamp: Optional[int] = None,
) -> list[Message]:
    """
    Retrieve one page of a thread's messages.

    Args:
        db: Database session
        thread_key: Counterpart phone number
        current_user: The local account
        limit: Maximum number of messages to return
        before_timestamp: Exclude messages at or after this timestamp (cursor)

    Returns:
        The newest `limit` eligible messages, oldest first
    """
    from smsthreads.models import StoredMessage

    logger.debug(f"Querying messages: thread={thread_key}, limit={limit}, before={before_timestamp}")

    query = db.query(StoredMessage).filter(StoredMessage.other_participant == thread_key)
    if before_timestamp is not None:
        query = query.filter(StoredMessage.timestamp < before_timestamp)

    rows = (
        query.order_by(StoredMessage.timestamp.desc(), StoredMessage.id.desc())
        .limit(limit)
        .all()
    )
    rows.reverse()
    logger.info(f"Retrieved {len(rows)} messages for thread {thread_key}")
    return to_message_views((MessageRecord.model_validate(row) for row in rows), current_user)


def mark_read(db: Session, thread_key: str, upto_timestamp: int) -> int:
    """
    Flag every message of a thread up to a timestamp as read. Never unmarks.

    Returns:
        Number of messages that changed from unread to read
    """
    from smsthreads.models import StoredMessage

    try:
        changed = (
            db.query(StoredMessage)
            .filter(
                StoredMessage.other_participant == thread_key,
                StoredMessage.timestamp <= upto_timestamp,
                StoredMessage.is_read.is_(False),
            )
            .update({StoredMessage.is_read: True}, synchronize_session=False)
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to mark thread {thread_key} read: {e}")
        raise

    logger.info(f"Marked {changed} messages read in thread {thread_key} (upto={upto_timestamp})")
    return changed

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy import create_engine, func, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from concierge.history import HISTORY_LIMIT, append_message, new_message
from concierge.locks import KeyedLock
from concierge.result import Result
from concierge.schemas import ChatMessage, MessageRole, SessionRecord

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

SESSIONS_TABLE = "whatsapp_sessions"


def create_db_engine(database_url: str) -> Engine:
    """
    Create the SQLAlchemy engine for the configured database.
    check_same_thread=False lets SQLite connections move between the
    threadpool workers FastAPI runs sync handlers on.
    """
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args, echo=False)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url.render_as_string(hide_password=True)}")
    try:
        # Import models to register them with Base.metadata
        from concierge import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health(session_factory: sessionmaker) -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and the sessions table exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
            if not inspect(db.connection()).has_table(SESSIONS_TABLE):
                logger.error(f"Database schema not applied: '{SESSIONS_TABLE}' table not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def _to_record(row) -> SessionRecord:
    """Translate a loosely-typed session row into a SessionRecord."""
    return SessionRecord.model_validate(
        {
            "phone_number": row.phone_number,
            "client_id": row.client_id,
            "last_messages": row.last_messages or [],
            "message_count": row.message_count or 0,
            "last_interaction": row.last_interaction,
            "booking_context": row.booking_context or {},
            "created_at": row.created_at,
        }
    )


# =============================================================================
# Session Store Adapter
# =============================================================================

class SessionStore:
    """
    Get-or-create and update operations for per-phone conversation sessions.

    Every call opens its own DB session and re-reads the row; nothing is
    cached. Read-modify-write operations are serialized per phone number
    through a KeyedLock.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        locks: Optional[KeyedLock] = None,
        history_limit: int = HISTORY_LIMIT,
    ):
        self._session_factory = session_factory
        self._locks = locks or KeyedLock()
        self.history_limit = history_limit

    def get_or_create(self, phone_number: str) -> Result[SessionRecord]:
        """
        Return the session for `phone_number`, creating it on first contact.

        A concurrent insert for the same number loses on the primary key and
        returns the row the other writer created.
        """
        from concierge.models import WhatsAppSession

        with self._locks.hold(phone_number), self._session_factory() as db:
            try:
                row = db.get(WhatsAppSession, phone_number)
                if row is not None:
                    return Result.success(_to_record(row))

                row = WhatsAppSession(
                    phone_number=phone_number,
                    client_id=None,
                    last_messages=[],
                    message_count=0,
                    booking_context={},
                    created_at=datetime.now(timezone.utc),
                )
                db.add(row)
                db.commit()
                logger.info(f"Session created: {phone_number}")
                return Result.success(_to_record(row))

            except IntegrityError:
                db.rollback()
                logger.info(f"Session already created by a concurrent delivery: {phone_number}")
                try:
                    row = db.get(WhatsAppSession, phone_number)
                except SQLAlchemyError as e:
                    logger.error(f"Failed to re-read session {phone_number} after duplicate insert: {e}")
                    return Result.failure(str(e), "db_error")
                if row is None:
                    return Result.failure(f"Session vanished after duplicate insert: {phone_number}", "db_error")
                return Result.success(_to_record(row))

            except (SQLAlchemyError, ValidationError) as e:
                db.rollback()
                logger.error(f"Failed to get or create session {phone_number}: {e}")
                return Result.failure(str(e), "db_error")

    def get_session(self, phone_number: str) -> Result[Optional[SessionRecord]]:
        from concierge.models import WhatsAppSession

        with self._session_factory() as db:
            try:
                row = db.get(WhatsAppSession, phone_number)
                return Result.success(_to_record(row) if row is not None else None)
            except (SQLAlchemyError, ValidationError) as e:
                logger.error(f"Failed to read session {phone_number}: {e}")
                return Result.failure(str(e), "db_error")

    def link_client(self, phone_number: str, client_id: str) -> Result[bool]:
        """Attach a client record to the session. Linking the same id twice is harmless."""
        from concierge.models import WhatsAppSession

        with self._session_factory() as db:
            try:
                updated = (
                    db.query(WhatsAppSession)
                    .filter(WhatsAppSession.phone_number == phone_number)
                    .update({WhatsAppSession.client_id: client_id}, synchronize_session=False)
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to link client {client_id} to {phone_number}: {e}")
                return Result.failure(str(e), "db_error")

        if not updated:
            return Result.failure(f"Session not found: {phone_number}", "session_not_found")
        logger.info(f"Client {client_id} linked to session {phone_number}")
        return Result.success(True)

    def record_message(self, phone_number: str, role: MessageRole, content: str) -> Result[SessionRecord]:
        """
        Append one message to the session history and persist it.

        History, counter and last_interaction are written in a single update.
        The counter only moves for user messages, so it counts inbound
        messages rather than stored entries. The session must already exist.
        """
        from concierge.models import WhatsAppSession

        role = MessageRole(role)
        with self._locks.hold(phone_number), self._session_factory() as db:
            try:
                row = db.get(WhatsAppSession, phone_number)
                if row is None:
                    logger.error(f"record_message called before session creation: {phone_number}")
                    return Result.failure(f"Session not found: {phone_number}", "session_not_found")

                current = _to_record(row)
                now = datetime.now(timezone.utc)
                history = append_message(
                    current.last_messages,
                    new_message(role, content, now=now),
                    limit=self.history_limit,
                )

                row.last_messages = [message.model_dump(mode="json") for message in history]
                row.message_count = current.message_count + (1 if role is MessageRole.USER else 0)
                row.last_interaction = now
                db.commit()
                logger.debug(f"Recorded {role.value} message for {phone_number}, window={len(history)}")
                return Result.success(_to_record(row))

            except (SQLAlchemyError, ValidationError) as e:
                db.rollback()
                logger.error(f"Failed to record message for {phone_number}: {e}")
                return Result.failure(str(e), "db_error")

    def get_history(self, phone_number: str) -> Result[list[ChatMessage]]:
        """Bounded history for the session, oldest first. Unknown numbers have none."""
        result = self.get_session(phone_number)
        if not result.ok:
            return Result.failure(result.error, result.error_code)
        if result.value is None:
            return Result.success([])
        return Result.success(list(result.value.last_messages))

    # -------------------------------------------------------------------------
    # Booking context
    # -------------------------------------------------------------------------

    def get_booking_context(self, phone_number: str) -> Result[dict[str, Any]]:
        result = self.get_session(phone_number)
        if not result.ok:
            return Result.failure(result.error, result.error_code)
        if result.value is None:
            return Result.failure(f"Session not found: {phone_number}", "session_not_found")
        return Result.success(dict(result.value.booking_context))

    def update_booking_context(self, phone_number: str, context: dict[str, Any]) -> Result[bool]:
        from concierge.models import WhatsAppSession

        with self._locks.hold(phone_number), self._session_factory() as db:
            try:
                updated = (
                    db.query(WhatsAppSession)
                    .filter(WhatsAppSession.phone_number == phone_number)
                    .update({WhatsAppSession.booking_context: dict(context)}, synchronize_session=False)
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to update booking context for {phone_number}: {e}")
                return Result.failure(str(e), "db_error")

        if not updated:
            return Result.failure(f"Session not found: {phone_number}", "session_not_found")
        return Result.success(True)

    def clear_booking_context(self, phone_number: str) -> Result[bool]:
        return self.update_booking_context(phone_number, {})

    # -------------------------------------------------------------------------
    # Inspection queries
    # -------------------------------------------------------------------------

    def list_sessions(
        self,
        limit: int = 50,
        offset: int = 0,
        linked: Optional[bool] = None,
    ) -> Tuple[list[SessionRecord], int]:
        """
        Retrieve sessions with pagination, most recent interaction first.

        Args:
            limit: Maximum number of sessions to return (1-100)
            offset: Number of sessions to skip
            linked: True for sessions with a client, False for anonymous ones

        Returns:
            Tuple of (sessions, total count matching filters)
        """
        from concierge.models import WhatsAppSession

        with self._session_factory() as db:
            query = db.query(WhatsAppSession)
            if linked is True:
                query = query.filter(WhatsAppSession.client_id.isnot(None))
            elif linked is False:
                query = query.filter(WhatsAppSession.client_id.is_(None))

            total = query.count()
            rows = (
                query.order_by(
                    WhatsAppSession.last_interaction.desc().nullslast(),
                    WhatsAppSession.phone_number.asc(),
                )
                .offset(offset)
                .limit(limit)
                .all()
            )
            logger.info(f"Retrieved {len(rows)} of {total} sessions")
            return [_to_record(row) for row in rows], total

    def get_stats(self) -> dict:
        """
        Session statistics for the /stats endpoint.

        Returns:
            Dictionary with total/linked session counts, total inbound
            messages and the first/last interaction times.
        """
        from concierge.models import WhatsAppSession

        with self._session_factory() as db:
            total_sessions = db.query(func.count(WhatsAppSession.phone_number)).scalar() or 0
            linked_sessions = (
                db.query(func.count(WhatsAppSession.phone_number))
                .filter(WhatsAppSession.client_id.isnot(None))
                .scalar()
                or 0
            )
            total_messages = db.query(func.sum(WhatsAppSession.message_count)).scalar() or 0
            first_interaction = db.query(func.min(WhatsAppSession.last_interaction)).scalar()
            last_interaction = db.query(func.max(WhatsAppSession.last_interaction)).scalar()

        logger.info(f"Stats computed: {total_sessions} sessions, {linked_sessions} linked")
        return {
            "total_sessions": total_sessions,
            "linked_sessions": linked_sessions,
            "total_messages": int(total_messages),
            "first_interaction": first_interaction,
            "last_interaction": last_interaction,
        }

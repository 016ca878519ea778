import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import case, create_engine, func, inspect, or_, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from replydesk.config import Settings
from replydesk.errors import PersistenceError
from replydesk.models import Base, ContactRow, MessageRow
from replydesk.schemas import (
    Contact,
    DayCount,
    Direction,
    DirectionTotals,
    Message,
    MessageRecord,
    PeerCount,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Storage Adapter Contract
# =============================================================================

class StorageAdapter(ABC):
    """
    Backend-agnostic persistence for messages and contacts.

    Both implementations must return identical results for identical inputs:
    - get_messages is newest first, created_at desc then id desc
    - upsert_contact is insert-if-absent, the first name written wins
    - top peers are ranked by count, ties go to the peer seen first
    """

    @abstractmethod
    def init(self) -> None:
        """Prepare the backend (create schema, open clients)."""

    def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    def ping(self) -> bool:
        """Return True when the backend is reachable and its schema exists."""

    @abstractmethod
    def save_message(self, record: MessageRecord) -> int:
        """Append a message and return its id."""

    @abstractmethod
    def get_messages(self, limit: int, peer: Optional[str] = None) -> list[Message]:
        """Return up to `limit` messages, newest first, optionally for one peer."""

    @abstractmethod
    def upsert_contact(self, address: str, name: Optional[str] = None) -> int:
        """Insert the contact if absent and return its id."""

    @abstractmethod
    def get_contact(self, address: str) -> Optional[Contact]:
        ...

    @abstractmethod
    def get_totals(self) -> DirectionTotals:
        ...

    @abstractmethod
    def get_counts_by_day(self, days: int) -> list[DayCount]:
        """Per-UTC-day counts for messages created in the trailing `days` window, oldest day first."""

    @abstractmethod
    def get_top_peers(self, limit: int) -> list[PeerCount]:
        ...


# =============================================================================
# SQL Backend (SQLAlchemy, SQLite by default)
# =============================================================================

class SqlStorage(StorageAdapter):
    """
    Local storage backend over SQLAlchemy.

    created_at is assigned here and never goes backwards within a process,
    so insertion order and timestamp order agree.
    """

    def __init__(self, database_url: str, clock: Callable[[], datetime] = utcnow):
        connect_args = {}
        if database_url.startswith("sqlite"):
            # check_same_thread=False is required for SQLite to work with FastAPI's threadpool
            connect_args["check_same_thread"] = False
        self.database_url = database_url
        self.engine = create_engine(database_url, connect_args=connect_args, echo=False)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self._clock = clock
        self._write_lock = threading.Lock()
        self._last_ts: Optional[datetime] = None

    def init(self) -> None:
        logger.debug(f"Initializing database with URL: {self.database_url}")
        try:
            Base.metadata.create_all(bind=self.engine)
            with self.SessionLocal() as db:
                self._last_ts = db.query(func.max(MessageRow.created_at)).scalar()
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            raise PersistenceError(f"database init failed: {e}") from e
        logger.info("Database initialized successfully")

    def close(self) -> None:
        self.engine.dispose()

    def ping(self) -> bool:
        logger.debug("Checking database health...")
        try:
            with self.SessionLocal() as db:
                db.execute(text("SELECT 1"))
            if not inspect(self.engine).has_table(MessageRow.__tablename__):
                logger.error("Database schema not applied: 'messages' table not found")
                return False
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False
        return True

    def _next_timestamp(self) -> datetime:
        # Caller holds _write_lock until its row is committed. Stored as naive UTC.
        now = self._clock().astimezone(timezone.utc).replace(tzinfo=None)
        if self._last_ts is not None and now < self._last_ts:
            now = self._last_ts
        self._last_ts = now
        return now

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def save_message(self, record: MessageRecord) -> int:
        try:
            with self._write_lock, self.SessionLocal() as db:
                row = MessageRow(
                    from_number=record.sender,
                    to_number=record.recipient,
                    direction=record.direction.value,
                    text=record.text,
                    meta=json.dumps(record.meta, default=str),
                    created_at=self._next_timestamp(),
                )
                db.add(row)
                db.commit()
                message_id = row.id
        except SQLAlchemyError as e:
            logger.error(f"Failed to save message: {e}", extra={"direction": record.direction.value})
            raise PersistenceError(f"save_message failed: {e}") from e
        logger.debug(f"Message saved: id={message_id}, direction={record.direction.value}")
        return message_id

    def get_messages(self, limit: int, peer: Optional[str] = None) -> list[Message]:
        try:
            with self.SessionLocal() as db:
                query = db.query(MessageRow)
                if peer:
                    query = query.filter(
                        or_(MessageRow.from_number == peer, MessageRow.to_number == peer)
                    )
                rows = (
                    query.order_by(MessageRow.created_at.desc(), MessageRow.id.desc())
                    .limit(limit)
                    .all()
                )
                return [_message_from_row(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Failed to query messages: {e}")
            raise PersistenceError(f"get_messages failed: {e}") from e

    # -------------------------------------------------------------------------
    # Contacts
    # -------------------------------------------------------------------------

    def upsert_contact(self, address: str, name: Optional[str] = None) -> int:
        try:
            with self._write_lock, self.SessionLocal() as db:
                existing = _find_contact(db, address)
                if existing is not None:
                    return existing.id
                contact = ContactRow(phone=address, name=name, created_at=self._next_timestamp())
                db.add(contact)
                try:
                    db.commit()
                    logger.info("Contact created", extra={"peer": address})
                    return contact.id
                except IntegrityError:
                    # Another writer inserted the same address first
                    db.rollback()
                    return _find_contact(db, address).id
        except SQLAlchemyError as e:
            logger.error(f"Failed to upsert contact: {e}", extra={"peer": address})
            raise PersistenceError(f"upsert_contact failed: {e}") from e

    def get_contact(self, address: str) -> Optional[Contact]:
        try:
            with self.SessionLocal() as db:
                row = _find_contact(db, address)
                if row is None:
                    return None
                return Contact(
                    id=row.id,
                    address=row.phone,
                    name=row.name,
                    created_at=row.created_at.replace(tzinfo=timezone.utc),
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"get_contact failed: {e}") from e

    # -------------------------------------------------------------------------
    # Aggregates
    # -------------------------------------------------------------------------

    def get_totals(self) -> DirectionTotals:
        try:
            with self.SessionLocal() as db:
                rows = (
                    db.query(MessageRow.direction, func.count(MessageRow.id))
                    .group_by(MessageRow.direction)
                    .all()
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"get_totals failed: {e}") from e
        counts = dict(rows)
        return DirectionTotals(
            inbound=counts.get(Direction.IN.value, 0),
            outbound=counts.get(Direction.OUT.value, 0),
        )

    def get_counts_by_day(self, days: int) -> list[DayCount]:
        cutoff = (self._clock() - timedelta(days=days)).astimezone(timezone.utc).replace(tzinfo=None)
        day = func.date(MessageRow.created_at)
        try:
            with self.SessionLocal() as db:
                rows = (
                    db.query(
                        day.label("day"),
                        func.sum(case((MessageRow.direction == Direction.IN.value, 1), else_=0)),
                        func.sum(case((MessageRow.direction == Direction.OUT.value, 1), else_=0)),
                    )
                    .filter(MessageRow.created_at >= cutoff)
                    .group_by(day)
                    .order_by(day.asc())
                    .all()
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"get_counts_by_day failed: {e}") from e
        return [
            DayCount(date=str(d), inbound=inbound or 0, outbound=outbound or 0)
            for d, inbound, outbound in rows
        ]

    def get_top_peers(self, limit: int) -> list[PeerCount]:
        peer = case(
            (MessageRow.direction == Direction.IN.value, MessageRow.from_number),
            else_=MessageRow.to_number,
        )
        count = func.count(MessageRow.id)
        try:
            with self.SessionLocal() as db:
                rows = (
                    db.query(peer.label("peer"), count.label("count"))
                    .group_by(peer)
                    .order_by(count.desc(), func.min(MessageRow.id).asc())
                    .limit(limit)
                    .all()
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"get_top_peers failed: {e}") from e
        return [PeerCount(peer=row.peer, count=row.count) for row in rows]


def _find_contact(db: Session, address: str) -> Optional[ContactRow]:
    return db.query(ContactRow).filter(ContactRow.phone == address).first()


def _message_from_row(row: MessageRow) -> Message:
    try:
        meta = json.loads(row.meta or "{}")
    except ValueError:
        meta = {}
    return Message(
        id=row.id,
        sender=row.from_number,
        recipient=row.to_number,
        direction=Direction(row.direction),
        text=row.text,
        meta=meta if isinstance(meta, dict) else {},
        created_at=row.created_at.replace(tzinfo=timezone.utc),
    )


# =============================================================================
# Backend Selection
# =============================================================================

def create_storage(settings: Settings) -> StorageAdapter:
    """
    Pick the storage backend once per process.

    Supabase is used only when both its URL and service key are configured;
    otherwise the local SQL database is the default.
    """
    if settings.supabase_configured:
        from replydesk.supabase_storage import SupabaseStorage

        logger.info("Using Supabase storage backend")
        return SupabaseStorage(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
    logger.info("Using local SQL storage backend")
    return SqlStorage(settings.DATABASE_URL)

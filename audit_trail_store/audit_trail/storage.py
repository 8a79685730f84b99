"""
Storage backends for the audit log.

Provides the abstract interface and the SQL implementation. The log is
append-only: no backend method updates or deletes a row. Whether an entity
is currently deleted is derived from the rows on every read.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Set, Tuple

from pydantic import ValidationError
from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    and_,
    create_engine,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import Select

from ..config import AuditTrailConfig
from ..exceptions import PersistenceFailure
from .models import AuditAction, LogEntry, parse_payload, utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


class LogEntryDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for audit log entries."""

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Who
    actor_id = Column(String(100), nullable=False, index=True)

    # What
    action = Column(String(20), nullable=False)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(BigInteger().with_variant(Integer, "sqlite"), nullable=False)
    payload = Column(JSON, nullable=False)

    # A DELETE entry can be recovered at most once
    recovers_log_id = Column(
        Integer, ForeignKey("audit_log.id"), nullable=True, unique=True
    )

    # When
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("idx_audit_log_entity", entity_type, entity_id, action, id),
        Index("idx_audit_log_action_created", action, created_at),
    )


def pending_deletions(entity_type: Optional[str] = None) -> Select:
    """
    Select the entities that are currently deleted.

    An entity is deleted when its latest DELETE entry has a higher log id
    than its latest RECOVER entry (or it has never been recovered). Yields
    ``entity_type``, ``entity_id`` and ``last_delete_id`` columns.

    Args:
        entity_type: Restrict to one entity type

    Returns:
        SQLAlchemy select usable as a subquery
    """
    deletes = select(
        LogEntryDB.entity_type,
        LogEntryDB.entity_id,
        func.max(LogEntryDB.id).label("last_delete_id"),
    ).where(LogEntryDB.action == AuditAction.DELETE.value)
    recovers = select(
        LogEntryDB.entity_type,
        LogEntryDB.entity_id,
        func.max(LogEntryDB.id).label("last_recover_id"),
    ).where(LogEntryDB.action == AuditAction.RECOVER.value)

    if entity_type is not None:
        deletes = deletes.where(LogEntryDB.entity_type == entity_type)
        recovers = recovers.where(LogEntryDB.entity_type == entity_type)

    d = deletes.group_by(LogEntryDB.entity_type, LogEntryDB.entity_id).subquery(
        "deletes"
    )
    r = recovers.group_by(LogEntryDB.entity_type, LogEntryDB.entity_id).subquery(
        "recovers"
    )

    return (
        select(d.c.entity_type, d.c.entity_id, d.c.last_delete_id)
        .select_from(
            d.outerjoin(
                r,
                and_(
                    r.c.entity_type == d.c.entity_type,
                    r.c.entity_id == d.c.entity_id,
                ),
            )
        )
        .where(
            or_(
                r.c.last_recover_id.is_(None),
                r.c.last_recover_id < d.c.last_delete_id,
            )
        )
    )


def deleted_ids_select(entity_type: str) -> Select:
    """Select the ids of currently deleted entities of one type."""
    pending = pending_deletions(entity_type).subquery("pending")
    return select(pending.c.entity_id)


class AuditLogStorage(ABC):
    """Abstract base class for audit log storage backends."""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the storage backend."""
        pass

    async def dispose(self) -> None:
        """Release backend resources."""
        pass

    @abstractmethod
    async def append(self, entry: LogEntry) -> LogEntry:
        """
        Append an entry to the log.

        Args:
            entry: Validated entry without id or created_at

        Returns:
            The stored entry with id and created_at assigned

        Raises:
            PersistenceFailure: If the write fails
        """
        pass

    @abstractmethod
    async def append_recovery(self, entry: LogEntry) -> Optional[LogEntry]:
        """
        Append a RECOVER entry unless its DELETE entry was already recovered.

        Args:
            entry: RECOVER entry naming the DELETE it recovers

        Returns:
            The stored entry, or None if another RECOVER for the same DELETE
            already exists

        Raises:
            PersistenceFailure: If the write fails for any other reason
        """
        pass

    @abstractmethod
    async def get_by_id(self, log_id: int) -> Optional[LogEntry]:
        """
        Get a specific log entry by id.

        Args:
            log_id: ID of the entry

        Returns:
            Log entry or None if not found
        """
        pass

    @abstractmethod
    async def recovered_after(
        self, entity_type: str, entity_id: int, log_id: int
    ) -> Optional[LogEntry]:
        """
        Find the first RECOVER entry for an entity appended after ``log_id``.

        Args:
            entity_type: Entity type
            entity_id: Entity id
            log_id: Log id of a DELETE entry

        Returns:
            The RECOVER entry or None
        """
        pass

    @abstractmethod
    async def latest_deletion_id(
        self, entity_type: str, entity_id: int
    ) -> Optional[int]:
        """Log id of the newest DELETE entry for an entity, if any."""
        pass

    @abstractmethod
    async def deleted_ids(self, entity_type: str) -> Set[int]:
        """Ids of the entities of ``entity_type`` that are currently deleted."""
        pass

    @abstractmethod
    async def list_deleted(
        self, entity_type: Optional[str], limit: int, offset: int
    ) -> Tuple[List[LogEntry], int]:
        """
        List the latest DELETE entry of each currently deleted entity.

        Args:
            entity_type: Optional entity type filter
            limit: Maximum entries to return
            offset: Entries to skip

        Returns:
            Page of entries, newest first, and the total number of matches
        """
        pass

    @abstractmethod
    async def list_entries(
        self, entity_type: Optional[str], limit: int, offset: int
    ) -> Tuple[List[LogEntry], int]:
        """
        List all log entries, newest first.

        Args:
            entity_type: Optional entity type filter
            limit: Maximum entries to return
            offset: Entries to skip

        Returns:
            Page of entries and the total number of matches
        """
        pass

    @abstractmethod
    async def history(
        self, entity_type: str, entity_id: int, limit: Optional[int] = None
    ) -> List[LogEntry]:
        """
        Get every entry for one entity, newest first.

        Args:
            entity_type: Entity type
            entity_id: Entity id
            limit: Optional maximum number of entries

        Returns:
            List of entries
        """
        pass


class SQLAuditLogStorage(AuditLogStorage):
    """SQL database storage backend for the audit log."""

    def __init__(self, connection_string: str, **engine_options: Any):
        """
        Initialize SQL audit log storage.

        Args:
            connection_string: Database connection string
            **engine_options: Extra keyword arguments for create_engine
        """
        self.connection_string = connection_string
        self.engine_options = engine_options
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None  # type: ignore[type-arg]

    @classmethod
    def from_config(cls, config: AuditTrailConfig) -> "SQLAuditLogStorage":
        """Build a storage instance from configuration."""
        return cls(config.database_url, **config.engine_options())

    async def initialize(self) -> None:
        """Initialize the database."""
        options = dict(self.engine_options)
        if self.connection_string in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            options.pop("pool_size", None)
            options.pop("max_overflow", None)
            options.setdefault("poolclass", StaticPool)
            options.setdefault("connect_args", {"check_same_thread": False})

        try:
            self.engine = create_engine(self.connection_string, **options)
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Cannot initialize audit log storage: {e}") from e

        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, bind=self.engine
        )

    async def dispose(self) -> None:
        """Release pooled connections."""
        if self.engine is not None:
            self.engine.dispose()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        if self.SessionLocal is None:
            raise PersistenceFailure(
                "Storage not initialized. Call initialize() first."
            )
        try:
            with self.SessionLocal() as session:
                yield session
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Audit log storage error: {e}") from e

    def _entry_to_db(self, entry: LogEntry) -> LogEntryDB:
        """Convert LogEntry to database model."""
        recovers_log_id = None
        if entry.action == AuditAction.RECOVER:
            recovers_log_id = entry.payload.original_log_id

        return LogEntryDB(
            actor_id=entry.actor_id,
            action=entry.action.value,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            payload=entry.payload_json(),
            recovers_log_id=recovers_log_id,
            created_at=utcnow(),
        )

    def _db_to_entry(self, db_entry: LogEntryDB) -> LogEntry:
        """Convert database model to LogEntry."""
        try:
            return LogEntry(
                id=db_entry.id,
                actor_id=db_entry.actor_id,
                action=db_entry.action,
                entity_type=db_entry.entity_type,
                entity_id=db_entry.entity_id,
                payload=parse_payload(db_entry.action, db_entry.payload),
                created_at=db_entry.created_at,
            )
        except (ValueError, ValidationError) as e:
            raise PersistenceFailure(
                f"Corrupt audit log entry {db_entry.id}: {e}", log_id=db_entry.id
            ) from e

    async def append(self, entry: LogEntry) -> LogEntry:
        """Append a single log entry."""
        db_entry = self._entry_to_db(entry)

        with self._session() as session:
            session.add(db_entry)
            session.commit()
            return self._db_to_entry(db_entry)

    async def append_recovery(self, entry: LogEntry) -> Optional[LogEntry]:
        """Append a RECOVER entry, relying on the unique recovers_log_id."""
        if entry.action != AuditAction.RECOVER:
            raise ValueError("append_recovery() only accepts RECOVER entries")

        db_entry = self._entry_to_db(entry)

        with self._session() as session:
            session.add(db_entry)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info(
                    "Log entry %s already recovered by a concurrent writer",
                    db_entry.recovers_log_id,
                )
                return None
            return self._db_to_entry(db_entry)

    async def get_by_id(self, log_id: int) -> Optional[LogEntry]:
        """Get a specific log entry."""
        with self._session() as session:
            db_entry = session.get(LogEntryDB, log_id)

            if db_entry:
                return self._db_to_entry(db_entry)
            return None

    async def recovered_after(
        self, entity_type: str, entity_id: int, log_id: int
    ) -> Optional[LogEntry]:
        """Find the first RECOVER of an entity after a given log id."""
        with self._session() as session:
            db_entry = (
                session.query(LogEntryDB)
                .filter(
                    LogEntryDB.entity_type == entity_type,
                    LogEntryDB.entity_id == entity_id,
                    LogEntryDB.action == AuditAction.RECOVER.value,
                    LogEntryDB.id > log_id,
                )
                .order_by(LogEntryDB.id.asc())
                .first()
            )

            if db_entry:
                return self._db_to_entry(db_entry)
            return None

    async def latest_deletion_id(
        self, entity_type: str, entity_id: int
    ) -> Optional[int]:
        """Find the newest DELETE of an entity."""
        with self._session() as session:
            return (
                session.query(func.max(LogEntryDB.id))
                .filter(
                    LogEntryDB.entity_type == entity_type,
                    LogEntryDB.entity_id == entity_id,
                    LogEntryDB.action == AuditAction.DELETE.value,
                )
                .scalar()
            )

    async def deleted_ids(self, entity_type: str) -> Set[int]:
        """Resolve currently deleted ids in one query."""
        with self._session() as session:
            rows = session.execute(deleted_ids_select(entity_type)).scalars().all()
            return set(rows)

    async def list_deleted(
        self, entity_type: Optional[str], limit: int, offset: int
    ) -> Tuple[List[LogEntry], int]:
        """List the recycle bin."""
        pending = pending_deletions(entity_type).subquery("pending")

        with self._session() as session:
            total = session.query(func.count()).select_from(pending).scalar() or 0

            results = (
                session.query(LogEntryDB)
                .join(pending, LogEntryDB.id == pending.c.last_delete_id)
                .order_by(LogEntryDB.created_at.desc(), LogEntryDB.id.desc())
                .limit(limit)
                .offset(offset)
                .all()
            )
            return [self._db_to_entry(r) for r in results], total

    async def list_entries(
        self, entity_type: Optional[str], limit: int, offset: int
    ) -> Tuple[List[LogEntry], int]:
        """List all entries with an optional entity type filter."""
        with self._session() as session:
            q = session.query(LogEntryDB)
            if entity_type is not None:
                q = q.filter(LogEntryDB.entity_type == entity_type)

            total = q.count()
            results = (
                q.order_by(LogEntryDB.created_at.desc(), LogEntryDB.id.desc())
                .limit(limit)
                .offset(offset)
                .all()
            )
            return [self._db_to_entry(r) for r in results], total

    async def history(
        self, entity_type: str, entity_id: int, limit: Optional[int] = None
    ) -> List[LogEntry]:
        """Get the full history of one entity."""
        with self._session() as session:
            q = (
                session.query(LogEntryDB)
                .filter(
                    LogEntryDB.entity_type == entity_type,
                    LogEntryDB.entity_id == entity_id,
                )
                .order_by(LogEntryDB.created_at.desc(), LogEntryDB.id.desc())
            )
            if limit is not None:
                q = q.limit(limit)

            return [self._db_to_entry(r) for r in q.all()]

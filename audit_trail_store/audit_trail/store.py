"""
Core audit trail store.

Provides the AuditTrailStore class through which every entity handler
records its mutations, soft-deletes and recovers entities, and through which
listing code learns which entities are currently deleted.
"""

import copy
import logging
from datetime import timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from ..access_control import NullUserDirectory, UserDirectory
from ..config import AuditTrailConfig
from ..exceptions import (
    AuditTrailError,
    InvalidActionError,
    LogEntryNotFoundError,
    NotRecoverableError,
    PersistenceFailure,
)
from .models import (
    ActorIdentity,
    AuditAction,
    DeletePayload,
    LogEntry,
    Page,
    RecoveryError,
    RecoveryResult,
    RecycleBinItem,
    build_entry,
    utcnow,
)
from .storage import AuditLogStorage, SQLAuditLogStorage

logger = logging.getLogger(__name__)


class AuditTrailStore:
    """Append-only audit trail with soft delete and recovery.

    One instance is built at process start and passed to every handler that
    writes or reads the trail. The store holds no mutable state of its own
    apart from a counter of dropped writes; every operation is a read or an
    append against the shared storage backend.

    Failure policy:
        * ``record``/``soft_delete`` never raise. A dropped entry is logged
          at ERROR and counted in ``failed_writes``.
        * ``recover`` never raises. It returns a RecoveryResult naming the
          failure.
        * ``deleted_ids``/``list_deleted``/``list_entries``/``history``
          return empty results when the backend fails.

    Deletion state:
        An entity is deleted while its latest DELETE entry is newer than its
        latest RECOVER entry. Log entries are never rewritten; recovering
        appends a RECOVER entry that names the DELETE it undoes.

    Example:
        >>> storage = SQLAuditLogStorage("sqlite:///audit.db")
        >>> await storage.initialize()
        >>> store = AuditTrailStore(storage)
        >>> log_id = await store.soft_delete("Product", 123, {"name": "Widget"}, "7")
        >>> 123 in await store.deleted_ids("Product")
        True
        >>> result = await store.recover(log_id, actor_id="7")
        >>> result.success
        True
    """

    def __init__(
        self,
        storage: AuditLogStorage,
        user_directory: Optional[UserDirectory] = None,
        config: Optional[AuditTrailConfig] = None,
    ):
        """
        Initialize the store.

        Args:
            storage: Initialized storage backend
            user_directory: Resolves actor ids to display identities. If None,
                identities are left unresolved.
            config: Pagination and recovery settings. Defaults apply if None.
        """
        self.storage = storage
        self.user_directory = user_directory or NullUserDirectory()
        self.config = config or AuditTrailConfig.model_validate({})
        self.failed_writes = 0

    @classmethod
    async def from_config(
        cls,
        config: AuditTrailConfig,
        user_directory: Optional[UserDirectory] = None,
    ) -> "AuditTrailStore":
        """Create and initialize SQL storage from configuration."""
        storage = SQLAuditLogStorage.from_config(config)
        await storage.initialize()
        return cls(storage, user_directory=user_directory, config=config)

    # Write path

    async def record(
        self,
        action: Union[str, AuditAction],
        entity_type: str,
        entity_id: Any,
        actor_id: Any,
        payload: Any = None,
    ) -> Optional[int]:
        """
        Append an entry to the audit log.

        Args:
            action: CREATE, UPDATE, DELETE or RECOVER
            entity_type: Label of the business entity kind, e.g. "Product"
            entity_id: Id of the affected row
            actor_id: Id of the acting principal
            payload: Payload model, or a dict of details

        Returns:
            ID of the new log entry, or None if the entry was dropped
        """
        try:
            entry = build_entry(action, entity_type, entity_id, actor_id, payload)
            stored = await self.storage.append(entry)
        except Exception as e:
            # Auditing must never fail the business operation that triggered it
            self._report_dropped(e, action, entity_type, entity_id, actor_id)
            return None

        logger.debug(f"Recorded {stored.to_log_format()}")
        return stored.id

    async def record_create(
        self,
        entity_type: str,
        entity_id: Any,
        actor_id: Any,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        """Record the creation of an entity."""
        return await self.record(
            AuditAction.CREATE, entity_type, entity_id, actor_id, details or {}
        )

    async def record_update(
        self,
        entity_type: str,
        entity_id: Any,
        actor_id: Any,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        """Record a change to an entity."""
        return await self.record(
            AuditAction.UPDATE, entity_type, entity_id, actor_id, details or {}
        )

    async def soft_delete(
        self,
        entity_type: str,
        entity_id: Any,
        snapshot: Optional[Mapping[str, Any]],
        actor_id: Any,
        can_recover: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        """
        Mark an entity as deleted.

        The business row is not touched; the caller keeps it and relies on
        ``deleted_ids`` to hide it.

        Args:
            entity_type: Label of the business entity kind
            entity_id: Id of the deleted row
            snapshot: Complete field snapshot of the row at delete time
            actor_id: Id of the deleting principal
            can_recover: Whether recover() may undo this deletion
            details: Optional extra context

        Returns:
            ID of the DELETE entry, or None if the entry was dropped
        """
        try:
            payload: Dict[str, Any] = {
                "originalData": copy.deepcopy(dict(snapshot or {})),
                "isDeleted": True,
                "deletedAt": utcnow(),
                "deletedBy": None if actor_id is None else str(actor_id),
                "canRecover": can_recover,
                "details": {"type": "soft_delete", **(details or {})},
            }
        except (TypeError, ValueError) as e:
            self._report_dropped(
                InvalidActionError(f"Snapshot is not a mapping: {e}"),
                AuditAction.DELETE,
                entity_type,
                entity_id,
                actor_id,
            )
            return None

        return await self.record(
            AuditAction.DELETE, entity_type, entity_id, actor_id, payload
        )

    def _report_dropped(
        self,
        error: Exception,
        action: Any,
        entity_type: Any,
        entity_id: Any,
        actor_id: Any,
    ) -> None:
        self.failed_writes += 1
        extra = {
            "audit_action": getattr(action, "value", action),
            "entity_type": entity_type,
            "entity_id": entity_id,
            "actor_id": actor_id,
        }
        if isinstance(error, AuditTrailError):
            logger.error(f"Dropped audit log entry: {error}", extra=extra)
        else:
            logger.exception(f"Dropped audit log entry: {error}", extra=extra)

    # Read path

    async def deleted_ids(self, entity_type: str) -> Set[int]:
        """
        Get the ids of currently deleted entities of one type.

        Every query that lists entities of ``entity_type`` must exclude these
        ids (see ``soft_delete.filters.exclude_deleted`` for the SQL form).

        Args:
            entity_type: Label of the business entity kind

        Returns:
            Set of deleted entity ids; empty if the backend fails
        """
        try:
            return await self.storage.deleted_ids(entity_type)
        except PersistenceFailure as e:
            logger.error(f"Cannot load deleted {entity_type} ids: {e}")
            return set()

    async def is_deleted(self, entity_type: str, entity_id: int) -> bool:
        """Check whether one entity is currently deleted."""
        return int(entity_id) in await self.deleted_ids(entity_type)

    async def list_deleted(
        self,
        page: int = 1,
        page_size: Optional[int] = None,
        entity_type: Optional[str] = None,
    ) -> Page[RecycleBinItem]:
        """
        Get one page of the recycle bin.

        Each currently deleted entity appears once, represented by its latest
        DELETE entry, newest first.

        Args:
            page: 1-based page number
            page_size: Items per page; defaults to config.default_page_size
            entity_type: Optional entity type filter

        Returns:
            Page of recycle bin items with the total number of deleted entities

        Raises:
            ValueError: If page or page_size is below 1
        """
        limit, offset = self._paginate(page, page_size)

        try:
            entries, total = await self.storage.list_deleted(entity_type, limit, offset)
        except PersistenceFailure as e:
            logger.error(f"Cannot load recycle bin: {e}")
            return Page[RecycleBinItem]()

        actors = self._resolve_actors(entry.payload.deleted_by for entry in entries)

        items = [
            RecycleBinItem(
                log_id=entry.id,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                original_data=entry.payload.original_data,
                deleted_at=entry.payload.deleted_at,
                deleted_by=entry.payload.deleted_by,
                deleted_by_actor=actors.get(entry.payload.deleted_by),
                can_recover=self._can_recover(entry.payload),
            )
            for entry in entries
        ]
        return Page[RecycleBinItem](items=items, total=total)

    async def list_entries(
        self,
        page: int = 1,
        page_size: Optional[int] = None,
        entity_type: Optional[str] = None,
    ) -> Page[LogEntry]:
        """
        Get one page of the whole audit log, newest first.

        Args:
            page: 1-based page number
            page_size: Entries per page; defaults to config.default_page_size
            entity_type: Optional entity type filter

        Returns:
            Page of log entries with actors resolved
        """
        limit, offset = self._paginate(page, page_size)

        try:
            entries, total = await self.storage.list_entries(entity_type, limit, offset)
        except PersistenceFailure as e:
            logger.error(f"Cannot load audit log: {e}")
            return Page[LogEntry]()

        return Page[LogEntry](items=self._with_actors(entries), total=total)

    async def history(
        self, entity_type: str, entity_id: int, limit: Optional[int] = None
    ) -> List[LogEntry]:
        """
        Get the complete history of one entity, newest first.

        Args:
            entity_type: Label of the business entity kind
            entity_id: Id of the entity
            limit: Optional maximum number of entries

        Returns:
            Log entries with actors resolved; empty if the backend fails
        """
        try:
            entries = await self.storage.history(entity_type, int(entity_id), limit)
        except PersistenceFailure as e:
            logger.error(f"Cannot load history of {entity_type}:{entity_id}: {e}")
            return []

        return self._with_actors(entries)

    # Recover path

    async def recover(self, log_id: int, actor_id: Any) -> RecoveryResult:
        """
        Recover a soft-deleted entity.

        Appends a RECOVER entry for the DELETE entry ``log_id``. Recovering a
        deletion that is already recovered succeeds without appending a
        second RECOVER entry; the unique ``recovers_log_id`` column settles
        concurrent calls for the same entry. Only the entity's newest
        deletion can be recovered.

        Args:
            log_id: ID of the DELETE log entry
            actor_id: Id of the recovering principal

        Returns:
            RecoveryResult; ``error`` names the failure when ``success`` is False
        """
        try:
            entry = await self._recoverable_entry(log_id)

            existing = await self.storage.recovered_after(
                entry.entity_type, entry.entity_id, log_id
            )
            if existing is None:
                latest = await self.storage.latest_deletion_id(
                    entry.entity_type, entry.entity_id
                )
                if latest is not None and latest > log_id:
                    raise NotRecoverableError(
                        log_id, "Deletion was superseded by a newer deletion"
                    )

                recovery = build_entry(
                    AuditAction.RECOVER,
                    entry.entity_type,
                    entry.entity_id,
                    actor_id,
                    {
                        "recoveredBy": None if actor_id is None else str(actor_id),
                        "originalLogId": log_id,
                        "details": {
                            "type": "recovery",
                            "deletedBy": entry.payload.deleted_by,
                        },
                    },
                )
                stored = await self.storage.append_recovery(recovery)
                if stored is not None:
                    logger.info(
                        f"Recovered {entry.entity_type}:{entry.entity_id} "
                        f"(log {log_id}) by {stored.actor_id}"
                    )
                    return RecoveryResult(
                        success=True,
                        message="Item recovered successfully",
                        log_id=log_id,
                        recover_log_id=stored.id,
                    )

                # Lost the race against a concurrent recover of the same entry
                existing = await self.storage.recovered_after(
                    entry.entity_type, entry.entity_id, log_id
                )

        except LogEntryNotFoundError:
            return self._recovery_failed(
                log_id, RecoveryError.NOT_FOUND, "Audit entry not found"
            )
        except NotRecoverableError as e:
            return self._recovery_failed(
                log_id, RecoveryError.NOT_RECOVERABLE, e.reason
            )
        except InvalidActionError as e:
            return self._recovery_failed(log_id, RecoveryError.INVALID_ACTION, str(e))
        except PersistenceFailure as e:
            logger.error(f"Failed to recover log entry {log_id}: {e}")
            return self._recovery_failed(
                log_id, RecoveryError.PERSISTENCE_FAILURE, "Failed to recover item"
            )

        return RecoveryResult(
            success=True,
            message="Item already recovered",
            log_id=log_id,
            recover_log_id=existing.id if existing else None,
        )

    async def _recoverable_entry(self, log_id: int) -> LogEntry:
        """
        Load a DELETE entry that may be recovered.

        Raises:
            LogEntryNotFoundError: No entry with this id
            NotRecoverableError: Not a deletion, flagged unrecoverable, or
                outside the recovery window
        """
        entry = await self.storage.get_by_id(log_id)
        if entry is None:
            raise LogEntryNotFoundError(log_id)

        if entry.action != AuditAction.DELETE:
            raise NotRecoverableError(
                log_id, f"Audit entry is a {entry.action.value} entry, not a deletion"
            )
        if not entry.payload.can_recover:
            raise NotRecoverableError(log_id, "Item cannot be recovered")
        if not self._within_window(entry.payload):
            raise NotRecoverableError(log_id, "Recovery window has expired")

        return entry

    def _recovery_failed(
        self, log_id: int, error: RecoveryError, message: str
    ) -> RecoveryResult:
        logger.warning(f"Recovery of log entry {log_id} refused: {message}")
        return RecoveryResult(
            success=False, message=message, error=error, log_id=log_id
        )

    # Helpers

    def _within_window(self, payload: DeletePayload) -> bool:
        window = self.config.recover_window_days
        if window is None:
            return True

        deleted_at = payload.deleted_at
        if deleted_at.tzinfo is not None:
            deleted_at = deleted_at.astimezone(timezone.utc).replace(tzinfo=None)
        return utcnow() - deleted_at <= timedelta(days=window)

    def _can_recover(self, payload: DeletePayload) -> bool:
        return payload.can_recover and self._within_window(payload)

    def _paginate(self, page: int, page_size: Optional[int]) -> Tuple[int, int]:
        if page < 1:
            raise ValueError("page must be 1 or greater")
        if page_size is None:
            page_size = self.config.default_page_size
        if page_size < 1:
            raise ValueError("page_size must be 1 or greater")

        limit = min(page_size, self.config.max_page_size)
        return limit, (page - 1) * limit

    def _resolve_actors(self, actor_ids: Iterable[str]) -> Dict[str, ActorIdentity]:
        ids = {actor_id for actor_id in actor_ids if actor_id}
        if not ids:
            return {}
        try:
            return self.user_directory.lookup(ids)
        except Exception as e:
            # A missing directory only costs the display names
            logger.warning(f"Cannot resolve actors {sorted(ids)}: {e}")
            return {}

    def _with_actors(self, entries: List[LogEntry]) -> List[LogEntry]:
        actors = self._resolve_actors(entry.actor_id for entry in entries)
        return [
            entry.model_copy(update={"actor": actors.get(entry.actor_id)})
            for entry in entries
        ]

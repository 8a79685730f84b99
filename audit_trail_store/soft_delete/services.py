"""
Service layer for soft-deleting ORM entities.

Entity handlers use SoftDeleteService to snapshot a row, log its deletion
and list only the rows that are still live.
"""

import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import inspect
from sqlalchemy.exc import NoInspectionAvailable

from ..audit_trail.store import AuditTrailStore
from .filters import exclude_deleted

logger = logging.getLogger(__name__)


class SoftDeleteService:
    """
    Soft delete for SQLAlchemy-mapped business entities.

    The service never deletes or updates the business row. The row stays in
    its table and disappears from listings built with ``live_query``.
    Validation of *whether* an entity may be deleted belongs to the caller.
    """

    def __init__(
        self,
        store: AuditTrailStore,
        exclude_fields: Optional[Iterable[str]] = None,
    ):
        """
        Initialize the soft delete service.

        Args:
            store: Audit trail store that records the deletions
            exclude_fields: Column names never copied into snapshots,
                e.g. password hashes
        """
        self.store = store
        self.exclude_fields = set(exclude_fields or ())

    @staticmethod
    def entity_type_of(entity: Any) -> str:
        """Entity type label used in the log: the mapped class name."""
        return entity.__class__.__name__

    def snapshot(self, entity: Any) -> Dict[str, Any]:
        """
        Capture every mapped column of an entity.

        Args:
            entity: SQLAlchemy-mapped instance

        Returns:
            Mapping of column attribute name to current value

        Raises:
            TypeError: If the object is not a mapped instance
        """
        try:
            state = inspect(entity)
        except NoInspectionAvailable:
            raise TypeError(f"{type(entity).__name__} is not a mapped entity")

        return {
            attr.key: getattr(entity, attr.key)
            for attr in state.mapper.column_attrs
            if attr.key not in self.exclude_fields
        }

    async def delete_entity(
        self,
        entity: Any,
        actor_id: Any,
        can_recover: bool = True,
        entity_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Soft delete an entity with full audit trail.

        Args:
            entity: Persisted SQLAlchemy-mapped instance
            actor_id: Id of the deleting principal
            can_recover: Whether the deletion may be recovered
            entity_type: Log label; defaults to the class name
            details: Optional extra context for the log entry

        Returns:
            Dictionary with deletion details

        Raises:
            ValueError: If the entity has no id yet
        """
        entity_type = entity_type or self.entity_type_of(entity)
        entity_id = getattr(entity, "id", None)
        if entity_id is None:
            raise ValueError(f"Cannot delete an unsaved {entity_type}")

        log_id = await self.store.soft_delete(
            entity_type,
            entity_id,
            self.snapshot(entity),
            actor_id,
            can_recover=can_recover,
            details=details,
        )
        if log_id is None:
            logger.warning(f"Deletion of {entity_type}:{entity_id} was not logged")

        return {
            "success": log_id is not None,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "log_id": log_id,
            "can_recover": can_recover,
        }

    async def is_deleted(self, entity_type: str, entity_id: int) -> bool:
        """Check whether an entity is currently deleted."""
        return await self.store.is_deleted(entity_type, entity_id)

    def live_query(
        self, session: Any, model: Any, entity_type: Optional[str] = None
    ) -> Any:
        """
        Query the live rows of a model.

        Args:
            session: SQLAlchemy session bound to the audit log database
            model: Mapped class with an ``id`` column
            entity_type: Log label; defaults to the class name

        Returns:
            ORM query excluding deleted rows
        """
        return exclude_deleted(
            session.query(model), model.id, entity_type or model.__name__
        )

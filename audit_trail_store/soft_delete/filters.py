"""
Query filters that hide soft-deleted rows.

Business tables that live in the same database as the audit log can exclude
deleted rows with an anti-join instead of loading ``deleted_ids`` first.
"""

from typing import Any, TypeVar

from ..audit_trail.storage import deleted_ids_select

Q = TypeVar("Q")


def exclude_deleted(query: Q, id_column: Any, entity_type: str) -> Q:
    """
    Exclude currently deleted entities from a query.

    Args:
        query: ORM Query or Core/ORM Select over the business table
        id_column: Column holding the entity id, e.g. ``Product.id``
        entity_type: Label the rows are logged under, e.g. "Product"

    Returns:
        The filtered query

    Example:
        >>> stmt = exclude_deleted(select(Product), Product.id, "Product")
        >>> live = session.execute(stmt).scalars().all()
    """
    return query.filter(  # type: ignore[attr-defined]
        id_column.not_in(deleted_ids_select(entity_type))
    )


def only_deleted(query: Q, id_column: Any, entity_type: str) -> Q:
    """Restrict a query to currently deleted entities."""
    return query.filter(  # type: ignore[attr-defined]
        id_column.in_(deleted_ids_select(entity_type))
    )

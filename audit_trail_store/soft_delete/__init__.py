"""
Soft Delete Module - hide deleted rows without removing them.

Provides the per-entity delete handler and the query filters every listing
uses to exclude soft-deleted rows.
"""

from .filters import exclude_deleted, only_deleted
from .services import SoftDeleteService

__all__ = [
    # Services
    "SoftDeleteService",
    # Filters
    "exclude_deleted",
    "only_deleted",
]

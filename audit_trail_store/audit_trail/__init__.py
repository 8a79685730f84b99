"""
Audit Trail Module - append-only log of entity mutations.

Provides the log entry models, the storage backends and the AuditTrailStore
that records, soft-deletes, lists and recovers entities.
"""

from .models import (
    ActorIdentity,
    AuditAction,
    CreatePayload,
    DeletePayload,
    LogEntry,
    Page,
    RecoverPayload,
    RecoveryError,
    RecoveryResult,
    RecycleBinItem,
    UpdatePayload,
)
from .storage import (
    AuditLogStorage,
    SQLAuditLogStorage,
    deleted_ids_select,
    pending_deletions,
)
from .store import AuditTrailStore

__all__ = [
    # Store
    "AuditTrailStore",
    # Models
    "AuditAction",
    "LogEntry",
    "CreatePayload",
    "UpdatePayload",
    "DeletePayload",
    "RecoverPayload",
    "ActorIdentity",
    "RecycleBinItem",
    "Page",
    "RecoveryError",
    "RecoveryResult",
    # Storage
    "AuditLogStorage",
    "SQLAuditLogStorage",
    "pending_deletions",
    "deleted_ids_select",
]

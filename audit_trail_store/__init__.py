"""
Audit Trail Store - append-only audit log with soft delete and recovery.

Records every create, update, delete and recover action against arbitrary
business entities in one log, treats deletion as a reversible annotation and
exposes a recycle bin, per-entity history and the set of deleted ids that
listing queries must exclude.

Key Features
------------
* **Audit Log**: One append-only table for every entity type
* **Soft Delete**: Deletion records a snapshot; the business row stays put
* **Recycle Bin**: Paginated listing of currently deleted entities
* **Recovery**: Idempotent, single-step undo of a deletion
* **Listing Filters**: Anti-join helpers that hide deleted rows

Quick Start
-----------
>>> from audit_trail_store import AuditTrailStore, SQLAuditLogStorage
>>>
>>> storage = SQLAuditLogStorage("sqlite:///audit.db")
>>> await storage.initialize()
>>> store = AuditTrailStore(storage)
>>>
>>> log_id = await store.soft_delete("Product", 123, {"name": "Widget"}, "7")
>>> await store.deleted_ids("Product")
{123}
>>> (await store.recover(log_id, actor_id="7")).success
True
"""

__version__ = "1.0.0"

from .audit_trail import (
    ActorIdentity,
    AuditAction,
    AuditLogStorage,
    AuditTrailStore,
    LogEntry,
    Page,
    RecoveryError,
    RecoveryResult,
    RecycleBinItem,
    SQLAuditLogStorage,
)
from .access_control import (
    ActorResolver,
    JWTActorResolver,
    NullUserDirectory,
    StaticUserDirectory,
    UserDirectory,
)
from .config import AuditTrailConfig
from .exceptions import (
    AuditTrailError,
    AuthenticationError,
    ConfigurationError,
    InvalidActionError,
    LogEntryNotFoundError,
    NotRecoverableError,
    PersistenceFailure,
)
from .soft_delete import SoftDeleteService, exclude_deleted, only_deleted

__all__ = [
    # Store
    "AuditTrailStore",
    "AuditLogStorage",
    "SQLAuditLogStorage",
    # Models
    "AuditAction",
    "LogEntry",
    "RecycleBinItem",
    "ActorIdentity",
    "Page",
    "RecoveryError",
    "RecoveryResult",
    # Soft Delete
    "SoftDeleteService",
    "exclude_deleted",
    "only_deleted",
    # Access Control
    "ActorResolver",
    "JWTActorResolver",
    "UserDirectory",
    "StaticUserDirectory",
    "NullUserDirectory",
    # Configuration
    "AuditTrailConfig",
    # Exceptions
    "AuditTrailError",
    "LogEntryNotFoundError",
    "NotRecoverableError",
    "InvalidActionError",
    "PersistenceFailure",
    "AuthenticationError",
    "ConfigurationError",
]

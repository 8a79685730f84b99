"""Exceptions for audit trail and soft delete operations."""

from typing import Optional


class AuditTrailError(Exception):
    """Base exception for audit trail operations."""

    def __init__(self, message: str, log_id: Optional[int] = None):
        self.log_id = log_id
        super().__init__(message)


class LogEntryNotFoundError(AuditTrailError):
    """Raised when a log entry id does not exist."""

    def __init__(self, log_id: int):
        super().__init__(f"Audit log entry {log_id} not found", log_id=log_id)


class NotRecoverableError(AuditTrailError):
    """Raised when a deletion cannot be recovered."""

    def __init__(self, log_id: int, reason: str):
        self.reason = reason
        super().__init__(
            f"Audit log entry {log_id} cannot be recovered: {reason}",
            log_id=log_id,
        )


class InvalidActionError(AuditTrailError):
    """Raised when an entry carries an unknown action or is missing its identity."""


class PersistenceFailure(AuditTrailError):
    """Raised when the log store is unreachable or rejects a write."""


class AuthenticationError(AuditTrailError):
    """Raised when a bearer token cannot be resolved to an actor."""


class ConfigurationError(AuditTrailError):
    """Raised when configuration cannot be loaded."""

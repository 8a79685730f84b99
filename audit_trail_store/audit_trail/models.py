"""
Data models for the audit trail.

Every log entry carries one payload variant per action kind. The persisted
JSON form of a payload uses camelCase keys and is the storage format shared
by every process writing to the same log.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import (
    Annotated,
    Any,
    Dict,
    Generic,
    List,
    Literal,
    Optional,
    Type,
    TypeVar,
    Union,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from ..exceptions import InvalidActionError

T = TypeVar("T")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the log table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AuditAction(str, Enum):
    """Actions recorded against business entities."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    RECOVER = "RECOVER"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )


class CreatePayload(_CamelModel):
    """Free-form description of a created entity."""

    kind: Literal["CREATE"] = "CREATE"
    details: Dict[str, Any] = Field(default_factory=dict)


class UpdatePayload(_CamelModel):
    """Free-form description of a change."""

    kind: Literal["UPDATE"] = "UPDATE"
    details: Dict[str, Any] = Field(default_factory=dict)


class DeletePayload(_CamelModel):
    """Soft deletion of an entity, with the snapshot needed to restore it."""

    kind: Literal["DELETE"] = "DELETE"
    original_data: Dict[str, Any] = Field(
        default_factory=dict, description="Snapshot of the entity at delete time"
    )
    is_deleted: bool = Field(True, description="Always true for a deletion")
    deleted_at: datetime = Field(default_factory=utcnow)
    deleted_by: str = Field(..., min_length=1)
    can_recover: bool = Field(True, description="Whether recover() may undo it")
    details: Dict[str, Any] = Field(default_factory=dict)


class RecoverPayload(_CamelModel):
    """Recovery of a soft-deleted entity."""

    kind: Literal["RECOVER"] = "RECOVER"
    recovered_at: datetime = Field(default_factory=utcnow)
    recovered_by: str = Field(..., min_length=1)
    original_log_id: int = Field(..., description="DELETE entry being recovered")
    details: Dict[str, Any] = Field(default_factory=dict)


Payload = Annotated[
    Union[CreatePayload, UpdatePayload, DeletePayload, RecoverPayload],
    Field(discriminator="kind"),
]

PAYLOAD_TYPES: Dict[AuditAction, Type[BaseModel]] = {
    AuditAction.CREATE: CreatePayload,
    AuditAction.UPDATE: UpdatePayload,
    AuditAction.DELETE: DeletePayload,
    AuditAction.RECOVER: RecoverPayload,
}


def parse_payload(
    action: Union[str, AuditAction], data: Optional[Dict[str, Any]]
) -> Any:
    """Rebuild the payload variant for ``action`` from its stored JSON."""
    payload_type = PAYLOAD_TYPES[AuditAction(action)]
    return payload_type.model_validate(data or {})


class ActorIdentity(_CamelModel):
    """Display identity of an actor, as known to the user directory."""

    id: str
    name: Optional[str] = None
    email: Optional[str] = None


class LogEntry(_CamelModel):
    """
    One immutable row of the audit log.

    ``id`` and ``created_at`` are assigned by the store when the entry is
    appended. ``actor`` is filled in on reads and is never persisted.
    """

    id: Optional[int] = None
    actor_id: str = Field(..., min_length=1, max_length=100)
    action: AuditAction
    entity_type: str = Field(..., min_length=1, max_length=100)
    entity_id: int
    payload: Payload
    created_at: Optional[datetime] = None
    actor: Optional[ActorIdentity] = None

    @field_validator("actor_id", "entity_type")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @model_validator(mode="after")
    def validate_payload_matches_action(self) -> "LogEntry":
        """The payload variant must be the one for this action."""
        if self.payload.kind != self.action.value:
            raise ValueError(
                f"{self.action.value} entry cannot carry a {self.payload.kind} payload"
            )
        return self

    def payload_json(self) -> Dict[str, Any]:
        """Payload in its persisted camelCase form."""
        return self.payload.model_dump(mode="json", by_alias=True)

    def to_log_format(self) -> str:
        """
        Convert to a standardized log format string.

        Returns:
            Formatted log string
        """
        parts = [
            f"[{self.created_at.isoformat() if self.created_at else '-'}]",
            f"USER={self.actor_id}",
            f"ACTION={self.action.value}",
            f"ENTITY={self.entity_type}:{self.entity_id}",
        ]
        if self.id is not None:
            parts.insert(1, f"LOG={self.id}")
        return " ".join(parts)


def build_entry(
    action: Union[str, AuditAction],
    entity_type: str,
    entity_id: Any,
    actor_id: Any,
    payload: Union[BaseModel, Dict[str, Any], None] = None,
) -> LogEntry:
    """
    Validate caller input into a LogEntry.

    ``payload`` may be a payload model, a plain dict (used as the
    ``details`` of a CREATE/UPDATE entry, or as the stored JSON of a
    DELETE/RECOVER entry) or None.

    Raises:
        InvalidActionError: Unknown action, missing actor or entity identity,
            or a payload that does not fit the action
    """
    try:
        action = AuditAction(action)
    except ValueError:
        raise InvalidActionError(f"Unknown audit action: {action!r}")

    if actor_id is None or not str(actor_id).strip():
        raise InvalidActionError("actor_id is required for audit logging")

    try:
        if payload is None or isinstance(payload, dict):
            if action in (AuditAction.CREATE, AuditAction.UPDATE):
                payload = PAYLOAD_TYPES[action](details=payload or {})
            else:
                payload = parse_payload(action, payload)

        return LogEntry(
            actor_id=str(actor_id),
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload,
        )
    except ValidationError as e:
        raise InvalidActionError(f"Invalid {action.value} entry: {e}")


class RecycleBinItem(_CamelModel):
    """A currently soft-deleted entity, as shown in the recycle bin."""

    log_id: int
    entity_type: str
    entity_id: int
    original_data: Dict[str, Any]
    deleted_at: datetime
    deleted_by: str
    deleted_by_actor: Optional[ActorIdentity] = None
    can_recover: bool


class Page(_CamelModel, Generic[T]):
    """One page of results plus the total number of matches."""

    items: List[T] = Field(default_factory=list)
    total: int = 0


class RecoveryError(str, Enum):
    """Reasons a recovery can fail."""

    NOT_FOUND = "not_found"
    NOT_RECOVERABLE = "not_recoverable"
    INVALID_ACTION = "invalid_action"
    PERSISTENCE_FAILURE = "persistence_failure"


class RecoveryResult(_CamelModel):
    """Outcome of a recover() call."""

    success: bool
    message: str
    error: Optional[RecoveryError] = None
    log_id: Optional[int] = None
    recover_log_id: Optional[int] = None

"""
Pydantic models for the Task Mutation Engine.

Provides the task snapshot and audit log models, payload validation for
single-record mutations, and the bulk operation request/result shapes
consumed and produced at the engine boundary.
"""

import json
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .exceptions import BulkValidationError

METADATA_MAX_DEPTH = 3
METADATA_MAX_BYTES = 10240
METADATA_MAX_KEY_LENGTH = 50
TITLE_MAX_LENGTH = 255


class TaskStatus(str, Enum):
    """Lifecycle status of a task."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    def label(self) -> str:
        return self.value.replace("_", " ").title()

    def next_status(self) -> "TaskStatus":
        """Next status in the toggle cycle: pending -> in_progress -> completed -> pending."""
        return _STATUS_CYCLE[self]

    @classmethod
    def values(cls) -> List[str]:
        return [member.value for member in cls]


_STATUS_CYCLE = {
    TaskStatus.PENDING: TaskStatus.IN_PROGRESS,
    TaskStatus.IN_PROGRESS: TaskStatus.COMPLETED,
    TaskStatus.COMPLETED: TaskStatus.PENDING,
}


class TaskPriority(str, Enum):
    """Urgency of a task."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    def sort_order(self) -> int:
        return {"low": 1, "medium": 2, "high": 3}[self.value]

    @classmethod
    def default(cls) -> "TaskPriority":
        return cls.MEDIUM

    @classmethod
    def values(cls) -> List[str]:
        return [member.value for member in cls]


class TaskLogOperation(str, Enum):
    """Operation types recorded in the audit trail."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RESTORE = "restore"
    TOGGLE_STATUS = "toggle_status"

    def past_tense(self) -> str:
        return {
            "create": "created",
            "update": "updated",
            "delete": "deleted",
            "restore": "restored",
            "toggle_status": "changed status",
        }[self.value]

    @classmethod
    def values(cls) -> List[str]:
        return [member.value for member in cls]


class BulkAction(str, Enum):
    """Actions accepted by the bulk operation orchestrator."""

    DELETE = "delete"
    RESTORE = "restore"
    UPDATE_STATUS = "update_status"

    def requires_status(self) -> bool:
        return self is BulkAction.UPDATE_STATUS

    def past_tense(self) -> str:
        return {"delete": "deleted", "restore": "restored", "update_status": "updated"}[self.value]

    @classmethod
    def values(cls) -> List[str]:
        return [member.value for member in cls]


def _metadata_depth(value: Any) -> int:
    if isinstance(value, dict):
        return 1 + max((_metadata_depth(v) for v in value.values()), default=0)
    if isinstance(value, list):
        return 1 + max((_metadata_depth(v) for v in value), default=0)
    return 0


def validate_metadata(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Validate free-form task metadata.

    Metadata must be a JSON object with at most three levels of nesting,
    a serialized size of at most 10KB and non-empty string keys of at most
    50 characters.

    Raises:
        ValueError: When any of the limits is violated
    """
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValueError("metadata must be a JSON object")
    if _metadata_depth(value) > METADATA_MAX_DEPTH:
        raise ValueError(f"metadata cannot have more than {METADATA_MAX_DEPTH} levels of nesting")
    try:
        serialized = json.dumps(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"metadata must be JSON serializable: {e}") from e
    if len(serialized.encode("utf-8")) > METADATA_MAX_BYTES:
        raise ValueError("metadata cannot exceed 10KB in size")
    for key in value:
        if not isinstance(key, str) or not key:
            raise ValueError("metadata contains invalid key format")
        if len(key) > METADATA_MAX_KEY_LENGTH:
            raise ValueError(
                f'metadata key "{key[:20]}..." is too long (max {METADATA_MAX_KEY_LENGTH} characters)'
            )
    return value


def _reject_bools(values: Any, message: str) -> Any:
    # bool is an int subclass and pydantic would coerce True to 1
    if isinstance(values, (list, tuple)) and any(isinstance(v, bool) for v in values):
        raise ValueError(message)
    return values


def normalize_tag_ids(value: List[int]) -> List[int]:
    """Tag ids must be positive; duplicates collapse and order is ascending."""
    if any(tag_id <= 0 for tag_id in value):
        raise ValueError("Tag IDs must be positive integers")
    return sorted(set(value))


class Task(BaseModel):
    """
    Immutable snapshot of one stored task row.

    Snapshots are never mutated in place; every successful write returns a
    fresh snapshot reloaded from storage.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    title: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[date] = None
    user_id: Optional[int] = Field(None, description="Creator reference")
    assigned_to: Optional[int] = Field(None, description="Assignee reference")
    metadata: Optional[Dict[str, Any]] = None
    version: int = Field(1, ge=1)
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    tag_ids: List[int] = Field(default_factory=list)

    @property
    def is_trashed(self) -> bool:
        return self.deleted_at is not None

    def to_storage(self) -> Dict[str, Any]:
        """JSON-friendly values used for audit snapshots and change diffs."""
        return self.model_dump(mode="json")


class TaskCreate(BaseModel):
    """Payload for creating a new task."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = Field(default_factory=TaskPriority.default)
    due_date: Optional[date] = None
    assigned_to: Optional[int] = Field(None, gt=0)
    metadata: Optional[Dict[str, Any]] = None
    tag_ids: List[int] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Strip whitespace; the stripped title must still be non-empty."""
        s = v.strip()
        if not s:
            raise ValueError("title cannot be blank")
        return s

    @field_validator("metadata")
    @classmethod
    def check_metadata(cls, v):
        return validate_metadata(v)

    @field_validator("tag_ids", mode="before")
    @classmethod
    def reject_bool_tag_ids(cls, v):
        return _reject_bools(v, "Tag IDs must be positive integers")

    @field_validator("tag_ids")
    @classmethod
    def check_tag_ids(cls, v: List[int]) -> List[int]:
        return normalize_tag_ids(v)


class TaskUpdate(BaseModel):
    """
    PATCH payload for an existing task.

    All fields are optional; only fields explicitly supplied by the caller
    are applied. Explicitly supplying ``null`` is allowed for nullable
    columns (description, due_date, assigned_to, metadata) only.
    ``tag_ids`` replaces the whole tag set when supplied.
    """

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(None, min_length=1, max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[date] = None
    assigned_to: Optional[int] = Field(None, gt=0)
    metadata: Optional[Dict[str, Any]] = None
    tag_ids: Optional[List[int]] = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: Optional[str]) -> str:
        if v is None:
            raise ValueError("title cannot be null")
        s = v.strip()
        if not s:
            raise ValueError("title cannot be blank")
        return s

    @field_validator("status", "priority")
    @classmethod
    def reject_null_enum(cls, v):
        if v is None:
            raise ValueError("value cannot be null")
        return v

    @field_validator("metadata")
    @classmethod
    def check_metadata(cls, v):
        return validate_metadata(v)

    @field_validator("tag_ids", mode="before")
    @classmethod
    def reject_bool_tag_ids(cls, v):
        return _reject_bools(v, "Tag IDs must be positive integers")

    @field_validator("tag_ids")
    @classmethod
    def check_tag_ids(cls, v: Optional[List[int]]) -> List[int]:
        if v is None:
            raise ValueError("tag_ids cannot be null; send an empty list to detach all tags")
        return normalize_tag_ids(v)

    def supplied_fields(self) -> Dict[str, Any]:
        """Storage-form values of the fields the caller actually supplied."""
        return self.model_dump(mode="json", exclude_unset=True)


class TaskLog(BaseModel):
    """Immutable audit record of one task mutation."""

    model_config = ConfigDict(frozen=True)

    task_id: int
    seq: int
    user_id: Optional[int] = None
    operation_type: TaskLogOperation
    changes: Dict[str, Any] = Field(default_factory=dict)
    old_values: Dict[str, Any] = Field(default_factory=dict)
    new_values: Dict[str, Any] = Field(default_factory=dict)
    performed_at: datetime


class _BoundaryModel(BaseModel):
    """Accepts both snake_case and the camelCase wire names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UpdateTaskRequest(_BoundaryModel):
    """Single update: ``{taskId, expectedVersion, fields}``."""

    task_id: int = Field(..., gt=0)
    expected_version: int = Field(..., ge=1)
    fields: TaskUpdate


class RestoreTaskRequest(_BoundaryModel):
    """Single restore: ``{taskId, expectedVersion}``."""

    task_id: int = Field(..., gt=0)
    expected_version: int = Field(..., ge=1)


class ToggleStatusRequest(_BoundaryModel):
    """Toggle status: ``{taskId}`` with an optional expected version."""

    task_id: int = Field(..., gt=0)
    expected_version: Optional[int] = Field(None, ge=1)


@dataclass(frozen=True)
class DeleteTasks:
    """Soft-delete each task (requires the task to be active)."""

    action = BulkAction.DELETE
    operation = "delete"


@dataclass(frozen=True)
class RestoreTasks:
    """Clear the deletion marker of each task (requires the task to be trashed)."""

    action = BulkAction.RESTORE
    operation = "restore"


@dataclass(frozen=True)
class UpdateTaskStatus:
    """Assign ``status`` to each task."""

    status: TaskStatus
    action = BulkAction.UPDATE_STATUS
    operation = "status update"


BulkActionVariant = Union[DeleteTasks, RestoreTasks, UpdateTaskStatus]

VersionsInput = Union[List[Optional[int]], Dict[int, Optional[int]]]


class BulkOperationRequest(_BoundaryModel):
    """
    Transient bulk request: one action applied to many tasks.

    ``versions`` is either a positional list aligned with ``task_ids`` or a
    mapping keyed by task id. A ``None`` entry means no version check for
    that task. An empty collection means no version checking at all.
    """

    action: BulkAction
    task_ids: List[int]
    status: Optional[TaskStatus] = None
    versions: Optional[VersionsInput] = None

    @field_validator("action", mode="before")
    @classmethod
    def validate_action(cls, v):
        if isinstance(v, BulkAction):
            return v
        if v not in BulkAction.values():
            raise ValueError(f"Action must be one of: {', '.join(BulkAction.values())}")
        return v

    @field_validator("status", mode="before")
    @classmethod
    def validate_status(cls, v):
        if v is None or isinstance(v, TaskStatus):
            return v
        if v not in TaskStatus.values():
            raise ValueError(f"Status must be one of: {', '.join(TaskStatus.values())}")
        return v

    @field_validator("task_ids", mode="before")
    @classmethod
    def reject_bool_task_ids(cls, v):
        return _reject_bools(v, "All task IDs must be positive integers")

    @field_validator("versions", mode="before")
    @classmethod
    def reject_bool_versions(cls, v):
        if isinstance(v, dict):
            if any(isinstance(key, bool) for key in v):
                raise ValueError("All task IDs must be positive integers")
            _reject_bools(list(v.values()), "All versions must be positive integers or null")
            return v
        return _reject_bools(v, "All versions must be positive integers or null")

    @field_validator("task_ids")
    @classmethod
    def validate_task_ids(cls, v: List[int]) -> List[int]:
        if not v:
            raise ValueError("Task IDs cannot be empty")
        if any(task_id <= 0 for task_id in v):
            raise ValueError("All task IDs must be positive integers")
        if len(set(v)) != len(v):
            raise ValueError("Duplicate task IDs are not allowed")
        return v

    @model_validator(mode="after")
    def validate_consistency(self) -> "BulkOperationRequest":
        if self.action.requires_status() and self.status is None:
            raise ValueError("Status is required for update_status action")

        if self.versions:
            if len(self.versions) != len(self.task_ids):
                raise ValueError(
                    "Versions array length must match task IDs array length when provided"
                )
            values = self.versions.values() if isinstance(self.versions, dict) else self.versions
            if any(version is not None and version <= 0 for version in values):
                raise ValueError("All versions must be positive integers or null")
            if isinstance(self.versions, dict):
                unknown = set(self.versions) - set(self.task_ids)
                if unknown:
                    raise ValueError(
                        f"Versions reference unknown task IDs: {', '.join(map(str, sorted(unknown)))}"
                    )
        return self

    def has_versions(self) -> bool:
        return bool(self.versions)

    def version_for(self, task_id: int, index: int) -> Optional[int]:
        """
        Expected version for one task.

        Args:
            task_id: Task id being processed
            index: Position of the task id in ``task_ids``

        Returns:
            The caller-supplied version, or None when no check was requested
        """
        if not self.versions:
            return None
        if isinstance(self.versions, dict):
            return self.versions.get(task_id)
        return self.versions[index]

    def to_action(self) -> BulkActionVariant:
        if self.action is BulkAction.DELETE:
            return DeleteTasks()
        if self.action is BulkAction.RESTORE:
            return RestoreTasks()
        return UpdateTaskStatus(status=self.status)


class BulkOperationResult(_BoundaryModel):
    """
    Aggregated outcome of one bulk call.

    ``errors`` holds one ``Task {id}: ...`` entry per failed task plus, when
    processing stopped early, one memory or deadline notice. ``truncated`` is
    the flag to check for an early stop; tasks in skipped chunks have no
    entry in ``errors``.
    """

    action: BulkAction
    message: str
    processed: int = 0
    total: int = 0
    conflicts: int = 0
    errors: List[str] = Field(default_factory=list)
    conflicted_tasks: List[int] = Field(default_factory=list)
    processing_time_seconds: float = 0.0
    chunks_processed: int = 0
    truncated: bool = False

    def to_response(self) -> Dict[str, Any]:
        """External result shape (camelCase keys)."""
        return self.model_dump(mode="json", by_alias=True)


def parse_bulk_request(payload: Union[BulkOperationRequest, Dict[str, Any]]) -> BulkOperationRequest:
    """
    Validate a raw bulk payload.

    Raises:
        BulkValidationError: With one message per pydantic error
    """
    if isinstance(payload, BulkOperationRequest):
        return payload
    try:
        return BulkOperationRequest.model_validate(payload)
    except ValidationError as e:
        messages = []
        for err in e.errors():
            msg = err["msg"]
            if msg.startswith("Value error, "):
                msg = msg[len("Value error, "):]
            loc = ".".join(str(part) for part in err["loc"])
            messages.append(f"{loc}: {msg}" if loc else msg)
        raise BulkValidationError(messages) from e

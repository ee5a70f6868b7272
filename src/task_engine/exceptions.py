"""
Task Engine Exceptions

Domain errors raised by the mutation engine. Version conflicts are an
expected outcome of optimistic locking and carry enough detail for the
caller to re-fetch and retry explicitly.
"""

from typing import List, Optional, Union


class TaskEngineError(Exception):
    """Base class for all task engine errors."""


class VersionConflictError(TaskEngineError):
    """
    Raised when a conditional write affected zero rows.

    The stored version no longer matches the expected version. The message keeps
    the task id, operation, expected and actual version together so the same
    string can be surfaced in bulk error lists.
    """

    def __init__(
        self,
        task_id: int,
        operation: str,
        expected_version: int,
        actual_version: Optional[int] = None,
    ):
        self.task_id = task_id
        self.operation = operation
        self.expected_version = expected_version
        self.actual_version = actual_version
        found: Union[int, str] = actual_version if actual_version is not None else "unknown"
        super().__init__(
            f"Task {task_id}: Version conflict during {operation}. "
            f"Expected version {expected_version}, but found {found}."
        )


class TaskNotFoundError(TaskEngineError):
    """Task id does not exist or is hidden by trashed filtering."""

    def __init__(self, task_id: int):
        self.task_id = task_id
        super().__init__(f"Task {task_id}: Task not found")


class TaskNotDeletedError(TaskEngineError):
    """Restore requested for a task that is not trashed."""

    def __init__(self, task_id: int):
        self.task_id = task_id
        super().__init__(f"Task {task_id}: Cannot restore - task is not deleted")


class TaskAlreadyDeletedError(TaskEngineError):
    """Delete requested for a task that is already trashed."""

    def __init__(self, task_id: int):
        self.task_id = task_id
        super().__init__(f"Task {task_id}: Cannot delete - task is already deleted")


class UnauthorizedError(TaskEngineError):
    """The authorization oracle denied the action for this task."""

    def __init__(self, task_id: int, action: str):
        self.task_id = task_id
        self.action = action
        super().__init__(f"Task {task_id}: Not authorized to {action} this task")


class BulkValidationError(TaskEngineError, ValueError):
    """
    Malformed bulk request, rejected before any task is touched.

    Args:
        errors: One human-readable message per validation failure
    """

    def __init__(self, errors: Union[str, List[str]]):
        self.errors: List[str] = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors))


class UnknownTagError(TaskEngineError, ValueError):
    """A tag id given for a task does not exist."""

    def __init__(self, missing: List[int]):
        self.missing = list(missing)
        super().__init__("One or more selected tags do not exist.")

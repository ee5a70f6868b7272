"""
Task Service

Entry point for callers that address tasks by id. Resolves the task,
consults the authorization oracle, delegates to the TaskMutator or the
BulkOperationOrchestrator and signals cache invalidation.
"""

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .audit import AuditLogWriter
from .authorization import AllowAll, AuthorizationOracle
from .bulk import BulkOperationOrchestrator
from .config import EngineConfig, load_config
from .database import TaskDatabase
from .exceptions import TaskNotFoundError, UnauthorizedError
from .invalidation import CacheInvalidator, NullCacheInvalidator
from .models import (
    BulkOperationRequest,
    BulkOperationResult,
    RestoreTaskRequest,
    Task,
    TaskCreate,
    TaskLog,
    ToggleStatusRequest,
    UpdateTaskRequest,
)
from .monitoring import PerformanceMonitor
from .mutator import TaskMutator
from .version_store import VersionStore

logger = logging.getLogger(__name__)


class TaskService:
    """
    Facade wiring the engine components together.

    Single-record calls raise TaskNotFoundError, UnauthorizedError,
    VersionConflictError and the delete/restore precondition errors to the
    caller. Bulk calls always return a BulkOperationResult unless the
    request itself is invalid.
    """

    def __init__(
        self,
        database: TaskDatabase,
        config: Optional[EngineConfig] = None,
        oracle: Optional[AuthorizationOracle] = None,
        cache_invalidator: Optional[CacheInvalidator] = None,
        monitor: Optional[PerformanceMonitor] = None,
        memory_reader: Optional[Callable[[], float]] = None,
    ):
        self.db = database
        self.config = config or EngineConfig()
        self.oracle = oracle or AllowAll()
        self.cache_invalidator = cache_invalidator or NullCacheInvalidator()
        self.monitor = monitor or PerformanceMonitor(self.config.slow_bulk_threshold_ms)

        self.audit = AuditLogWriter(database)
        self.mutator = TaskMutator(database, VersionStore(database), self.audit)
        self.bulk = BulkOperationOrchestrator(
            database,
            mutator=self.mutator,
            oracle=self.oracle,
            config=self.config,
            cache_invalidator=self.cache_invalidator,
            memory_reader=memory_reader,
            monitor=self.monitor,
        )

    @classmethod
    def from_config(cls, config: Optional[EngineConfig] = None, **kwargs) -> "TaskService":
        """Open the configured database and build a service around it."""
        config = config or load_config()
        return cls(TaskDatabase(config.database_path), config=config, **kwargs)

    def _load(self, task_id: int, include_trashed: bool = False) -> Task:
        task = self.db.get_task(task_id, include_trashed=include_trashed)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _authorize(self, ability: str, task: Task) -> None:
        if not self.oracle.allows(ability, task):
            logger.info(f"Denied {ability} on task {task.id}")
            raise UnauthorizedError(task.id, ability)

    def _invalidate_assignee(self, *tasks: Task) -> None:
        for user_id in {t.assigned_to for t in tasks if t.assigned_to is not None}:
            self.cache_invalidator.clear_user_stats(user_id)

    def get_task(self, task_id: int, include_trashed: bool = False) -> Task:
        return self._load(task_id, include_trashed)

    def task_history(self, task_id: int, limit: Optional[int] = None) -> List[TaskLog]:
        """Audit entries for a task, oldest first."""
        self._load(task_id, include_trashed=True)
        return self.audit.history(task_id, limit=limit)

    def create_task(self, data: Union[TaskCreate, Mapping[str, Any]], user_id: Optional[int] = None) -> Task:
        task = self.mutator.create(data, user_id=user_id)
        self._invalidate_assignee(task)
        return task

    def update_task(
        self,
        request: Union[UpdateTaskRequest, Mapping[str, Any]],
        user_id: Optional[int] = None,
    ) -> Task:
        """
        Apply a versioned partial update.

        Args:
            request: ``{taskId, expectedVersion, fields}``
            user_id: Acting user

        Returns:
            Post-write task snapshot
        """
        if not isinstance(request, UpdateTaskRequest):
            request = UpdateTaskRequest.model_validate(request)
        task = self._load(request.task_id)
        self._authorize("update", task)
        updated = self.mutator.update(task, request.expected_version, request.fields, user_id=user_id)
        self._invalidate_assignee(task, updated)
        return updated

    def toggle_task_status(
        self,
        request: Union[ToggleStatusRequest, Mapping[str, Any]],
        user_id: Optional[int] = None,
    ) -> Task:
        if not isinstance(request, ToggleStatusRequest):
            request = ToggleStatusRequest.model_validate(request)
        task = self._load(request.task_id)
        self._authorize("update", task)
        updated = self.mutator.toggle_status(task, request.expected_version, user_id=user_id)
        self._invalidate_assignee(updated)
        return updated

    def restore_task(
        self,
        request: Union[RestoreTaskRequest, Mapping[str, Any]],
        user_id: Optional[int] = None,
    ) -> Task:
        if not isinstance(request, RestoreTaskRequest):
            request = RestoreTaskRequest.model_validate(request)
        task = self._load(request.task_id, include_trashed=True)
        self._authorize("restore", task)
        restored = self.mutator.restore(task, request.expected_version, user_id=user_id)
        self._invalidate_assignee(restored)
        return restored

    def delete_task(
        self,
        task_id: int,
        expected_version: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> Task:
        """Soft-delete a task; an already-trashed task fails its precondition."""
        task = self._load(task_id, include_trashed=True)
        self._authorize("delete", task)
        deleted = self.mutator.delete(task, expected_version, user_id=user_id)
        self._invalidate_assignee(deleted)
        return deleted

    def bulk_operation(
        self,
        request: Union[BulkOperationRequest, Dict[str, Any]],
        user_id: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
    ) -> BulkOperationResult:
        return self.bulk.perform(request, actor_id=user_id, deadline_seconds=deadline_seconds)

    def close(self):
        self.db.close()

"""
Bulk Operation Orchestrator

Applies one action to many tasks with partial-failure isolation. Task ids
are split into fixed-size chunks, each chunk runs in its own transaction,
and every task inside a chunk is authorized and mutated individually
through the TaskMutator. Version conflicts, missing tasks, denials and
unexpected per-task errors are recorded without aborting sibling tasks.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from .authorization import AllowAll, AuthorizationOracle
from .config import EngineConfig
from .database import TaskDatabase
from .exceptions import BulkValidationError, TaskEngineError, VersionConflictError
from .invalidation import CacheInvalidator, NullCacheInvalidator
from .models import (
    BulkAction,
    BulkActionVariant,
    BulkOperationRequest,
    BulkOperationResult,
    DeleteTasks,
    RestoreTasks,
    Task,
    UpdateTaskStatus,
    parse_bulk_request,
)
from .monitoring import PerformanceMonitor, get_memory_usage_mb
from .mutator import TaskMutator

logger = logging.getLogger(__name__)

# Ability passed to the authorization oracle for each bulk action
_ABILITIES = {
    BulkAction.DELETE: "delete",
    BulkAction.RESTORE: "restore",
    BulkAction.UPDATE_STATUS: "update",
}


@dataclass
class ChunkOutcome:
    """Per-chunk counters, merged into the batch totals only once the chunk commits."""
    processed: int = 0
    conflicts: int = 0
    errors: List[str] = field(default_factory=list)
    conflicted_tasks: List[int] = field(default_factory=list)


class BulkOperationOrchestrator:
    """
    Chunked, per-task isolated bulk mutations.

    Features:
    - Structural request validation before any task is touched
    - Independent per-request and absolute operation caps
    - One transaction per chunk, never one for the whole batch
    - Single prefetch query per chunk
    - Memory ceiling and optional deadline checked between chunks
    - Cache invalidation signal when anything was processed
    """

    def __init__(
        self,
        database: TaskDatabase,
        mutator: Optional[TaskMutator] = None,
        oracle: Optional[AuthorizationOracle] = None,
        config: Optional[EngineConfig] = None,
        cache_invalidator: Optional[CacheInvalidator] = None,
        memory_reader: Optional[Callable[[], float]] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ):
        self.db = database
        self.mutator = mutator or TaskMutator(database)
        self.oracle = oracle or AllowAll()
        self.config = config or EngineConfig()
        self.cache_invalidator = cache_invalidator or NullCacheInvalidator()
        self.memory_reader = memory_reader or get_memory_usage_mb
        self.monitor = monitor or PerformanceMonitor(self.config.slow_bulk_threshold_ms)

    def _check_limits(self, request: BulkOperationRequest) -> None:
        count = len(request.task_ids)
        errors = []
        if count > self.config.max_tasks_per_request:
            errors.append(
                f"Cannot process more than {self.config.max_tasks_per_request} tasks in a single operation."
            )
        if count > self.config.max_operations:
            errors.append(
                f"Bulk operation exceeds maximum allowed operations ({self.config.max_operations})"
            )
        if errors:
            raise BulkValidationError(errors)

    def perform(
        self,
        request: Union[BulkOperationRequest, Dict],
        actor_id: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
    ) -> BulkOperationResult:
        """
        Run a bulk operation.

        Args:
            request: Validated request or raw payload (snake_case or camelCase keys)
            actor_id: Acting user recorded in audit entries
            deadline_seconds: Optional time budget; remaining chunks are
                skipped once it is exhausted

        Returns:
            Aggregated BulkOperationResult (returned even if every task failed)

        Raises:
            BulkValidationError: If the request is malformed or exceeds a cap
        """
        request = parse_bulk_request(request)
        self._check_limits(request)

        start = time.perf_counter()
        deadline = start + deadline_seconds if deadline_seconds is not None else None
        action = request.to_action()

        size = self.config.chunk_size
        chunks = [request.task_ids[i:i + size] for i in range(0, len(request.task_ids), size)]

        processed = 0
        conflicts = 0
        errors: List[str] = []
        conflicted_tasks: List[int] = []
        chunks_processed = 0
        truncated = False

        for index, chunk in enumerate(chunks):
            offset = index * size
            try:
                outcome = self._process_chunk(chunk, offset, request, action, actor_id)
            except Exception as e:
                logger.error(
                    f"Bulk {request.action.value} chunk {index + 1} failed and was rolled back: {e}",
                    extra={"chunk_index": index, "task_ids": chunk},
                )
                # Every task in the chunk was rolled back, so each gets its own entry
                outcome = ChunkOutcome(errors=[
                    f"Task {task_id}: Chunk {index + 1} failed and was rolled back: {e}"
                    for task_id in chunk
                ])

            processed += outcome.processed
            conflicts += outcome.conflicts
            errors.extend(outcome.errors)
            conflicted_tasks.extend(outcome.conflicted_tasks)
            chunks_processed += 1

            if index == len(chunks) - 1:
                break

            memory_mb = self.memory_reader()
            if memory_mb > self.config.memory_limit_mb:
                warning = f"Memory limit reached, stopping processing at chunk {chunks_processed}"
                logger.warning(f"{warning} ({memory_mb:.1f}MB > {self.config.memory_limit_mb}MB)")
                errors.append(warning)
                truncated = True
                break

            if deadline is not None and time.perf_counter() >= deadline:
                warning = f"Deadline reached, stopping processing at chunk {chunks_processed}"
                logger.warning(warning)
                errors.append(warning)
                truncated = True
                break

        if processed > 0:
            self.cache_invalidator.clear_all_user_stats()

        elapsed = time.perf_counter() - start
        result = BulkOperationResult(
            action=request.action,
            message=self._summary_message(request.action, processed, conflicts, chunks_processed),
            processed=processed,
            total=len(request.task_ids),
            conflicts=conflicts,
            errors=errors,
            conflicted_tasks=conflicted_tasks,
            processing_time_seconds=elapsed,
            chunks_processed=chunks_processed,
            truncated=truncated,
        )

        self.monitor.record_bulk_operation(
            request.action.value,
            elapsed * 1000,
            total=result.total,
            processed=processed,
            conflicts=conflicts,
            errors=len(errors),
            chunks=chunks_processed,
            truncated=truncated,
        )
        logger.info(
            f"Bulk {request.action.value}: {result.message}",
            extra={"processed": processed, "total": result.total, "conflicts": conflicts},
        )
        return result

    def _process_chunk(
        self,
        task_ids: List[int],
        offset: int,
        request: BulkOperationRequest,
        action: BulkActionVariant,
        actor_id: Optional[int],
    ) -> ChunkOutcome:
        """Process one chunk inside its own transaction."""
        outcome = ChunkOutcome()
        # Trashed tasks must be visible for restore and for delete's precondition message
        include_trashed = isinstance(action, (DeleteTasks, RestoreTasks))

        with self.db.transaction():
            tasks = self.db.get_tasks_by_ids(task_ids, include_trashed=include_trashed)

            for position, task_id in enumerate(task_ids):
                task = tasks.get(task_id)
                if task is None:
                    outcome.errors.append(f"Task {task_id}: Task not found")
                    continue

                if not self.oracle.allows(_ABILITIES[action.action], task):
                    outcome.errors.append(
                        f"Task {task_id}: Not authorized to {action.action.value} this task"
                    )
                    continue

                expected_version = request.version_for(task_id, offset + position)
                try:
                    self._dispatch(action, task, expected_version, actor_id)
                    outcome.processed += 1
                except VersionConflictError as e:
                    outcome.conflicts += 1
                    outcome.conflicted_tasks.append(task_id)
                    outcome.errors.append(str(e))
                except TaskEngineError as e:
                    outcome.errors.append(str(e))
                except Exception as e:
                    logger.error(
                        f"Unexpected error during bulk {action.operation} of task {task_id}: {e}",
                        extra={"task_id": task_id},
                    )
                    outcome.errors.append(f"Task {task_id}: {e}")

        return outcome

    def _dispatch(
        self,
        action: BulkActionVariant,
        task: Task,
        expected_version: Optional[int],
        actor_id: Optional[int],
    ) -> Task:
        if isinstance(action, DeleteTasks):
            return self.mutator.delete(task, expected_version, user_id=actor_id, bulk=True)
        if isinstance(action, RestoreTasks):
            return self.mutator.restore(task, expected_version, user_id=actor_id, bulk=True)
        if isinstance(action, UpdateTaskStatus):
            return self.mutator.set_status(
                task, action.status, expected_version, user_id=actor_id, bulk=True
            )
        raise TypeError(f"Unsupported bulk action: {action!r}")

    @staticmethod
    def _summary_message(action: BulkAction, processed: int, conflicts: int, chunks: int) -> str:
        message = f"{processed} tasks {action.past_tense()} successfully"
        if conflicts > 0:
            message += f" ({conflicts} version conflicts encountered)"
        if chunks > 1:
            message += f" (processed in {chunks} chunks)"
        return message

"""
Single-Record Mutator

Applies one versioned mutation to one task: conditional write through the
VersionStore, reload of the authoritative post-write snapshot, then one
audit entry. Used directly for single mutations and as the unit of work
inside bulk chunks.
"""

import logging
from functools import partial
from typing import Any, Callable, Dict, Mapping, Optional, Union

from .audit import AuditLogWriter
from .database import TaskDatabase, utc_now_str
from .exceptions import (
    TaskAlreadyDeletedError,
    TaskNotDeletedError,
    TaskNotFoundError,
    VersionConflictError,
)
from .models import Task, TaskCreate, TaskStatus, TaskUpdate
from .version_store import VersionStore

logger = logging.getLogger(__name__)


class TaskMutator:
    """
    Versioned domain mutations on individual tasks.

    Every successful mutation increments the version by exactly one and
    produces exactly one audit entry. A version mismatch always raises
    VersionConflictError and is never retried here; callers re-fetch and
    retry explicitly if they want to. A row that has disappeared, or was
    trashed under an operation that needs an active task, raises
    TaskNotFoundError instead.

    Transaction scope: the conditional write and the reload share one
    transaction (joining the caller's transaction when one is open, as bulk
    chunks do). The audit entry is written after that scope and may fail
    independently.
    """

    def __init__(
        self,
        database: TaskDatabase,
        version_store: Optional[VersionStore] = None,
        audit: Optional[AuditLogWriter] = None,
    ):
        self.db = database
        self.store = version_store or VersionStore(database)
        self.audit = audit or AuditLogWriter(database)

    def _commit(
        self,
        task: Task,
        expected_version: int,
        fields: Dict[str, Any],
        operation: str,
        emit_audit: Callable[[Task], Any],
        include_trashed: bool = False,
        after_write: Optional[Callable[[], None]] = None,
    ) -> Task:
        """
        Conditional write + reload, then the audit entry.

        This is the only place that decides when an audit entry is written.
        ``after_write`` runs inside the transaction once the version bump has
        succeeded, so related rows (tags) commit or roll back with it.

        Raises:
            TaskNotFoundError: When the row is gone, or trashed and the
                operation only applies to active tasks
            VersionConflictError: When the stored version no longer matches
        """
        with self.db.transaction():
            affected = self.store.conditional_update(
                task.id, expected_version, fields, include_trashed=include_trashed
            )
            if affected == 0:
                state = self.store.current_state(task.id)
                if state is None or (state[1] and not include_trashed):
                    logger.debug(f"Task {task.id} missing or trashed during {operation}")
                    raise TaskNotFoundError(task.id)

                actual = state[0]
                logger.debug(
                    f"Version conflict on task {task.id} during {operation}: "
                    f"expected {expected_version}, found {actual}"
                )
                raise VersionConflictError(task.id, operation, expected_version, actual)

            if after_write is not None:
                after_write()
            fresh = self.db.get_task(task.id, include_trashed=True)

        emit_audit(fresh)
        return fresh

    def create(self, data: Union[TaskCreate, Mapping[str, Any]], user_id: Optional[int] = None) -> Task:
        """
        Insert a new task at version 1 and write its Create audit entry.

        Args:
            data: Creation payload (validated into TaskCreate if a mapping)
            user_id: Creator reference, also recorded as the acting user

        Raises:
            UnknownTagError: If a tag id does not exist (nothing is inserted)
        """
        payload = data if isinstance(data, TaskCreate) else TaskCreate.model_validate(data)
        with self.db.transaction():
            task_id = self.db.insert_task(payload, user_id=user_id)
            if payload.tag_ids:
                self.db.attach_tags(task_id, payload.tag_ids)
            task = self.db.get_task(task_id)
        self.audit.log_create(task, user_id)
        return task

    def update(
        self,
        task: Task,
        expected_version: int,
        changes: Union[TaskUpdate, Mapping[str, Any]],
        user_id: Optional[int] = None,
    ) -> Task:
        """
        Apply a partial update (PATCH semantics).

        Only fields supplied by the caller are written. The audit entry lists
        only supplied fields whose value actually differs from ``task``.
        Supplied ``tag_ids`` replace the task's tag set in the same
        transaction as the version bump.

        Args:
            task: Snapshot the caller read
            expected_version: Version the write is conditional on
            changes: Supplied fields (validated into TaskUpdate if a mapping)
            user_id: Acting user

        Returns:
            Post-write snapshot

        Raises:
            TaskNotFoundError: If the task is missing or trashed
            VersionConflictError: If the stored version no longer matches
            UnknownTagError: If a supplied tag id does not exist
        """
        payload = changes if isinstance(changes, TaskUpdate) else TaskUpdate.model_validate(changes)
        supplied = payload.supplied_fields()
        before_values = task.to_storage()

        diff = {
            field: {"from": before_values.get(field), "to": value}
            for field, value in supplied.items()
            if before_values.get(field) != value
        }

        tag_ids = supplied.pop("tag_ids", None)
        sync_tags = partial(self.db.sync_tags, task.id, tag_ids) if tag_ids is not None else None

        return self._commit(
            task,
            expected_version,
            supplied,
            "update",
            lambda fresh: self.audit.log_update(task, fresh, diff, user_id),
            after_write=sync_tags,
        )

    def toggle_status(
        self,
        task: Task,
        expected_version: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> Task:
        """
        Advance status along pending -> in_progress -> completed -> pending.

        Args:
            task: Snapshot the caller read
            expected_version: Caller-supplied version; when given it is the
                version the write is conditional on, otherwise ``task.version``
            user_id: Acting user
        """
        version = expected_version if expected_version is not None else task.version
        previous = task.status
        target = previous.next_status()

        return self._commit(
            task,
            version,
            {"status": target.value},
            "toggle status",
            lambda fresh: self.audit.log_status_toggle(task, fresh, previous, target, user_id),
        )

    def restore(
        self,
        task: Task,
        expected_version: Optional[int] = None,
        user_id: Optional[int] = None,
        bulk: bool = False,
    ) -> Task:
        """
        Clear the deletion marker of a trashed task.

        Raises:
            TaskNotDeletedError: If the task is not trashed (no write attempted)
            VersionConflictError: If the stored version no longer matches
        """
        if not task.is_trashed:
            raise TaskNotDeletedError(task.id)

        version = expected_version if expected_version is not None else task.version
        return self._commit(
            task,
            version,
            {"deleted_at": None},
            "restore",
            lambda fresh: self.audit.log_restore(task, fresh, user_id, bulk=bulk),
            include_trashed=True,
        )

    def delete(
        self,
        task: Task,
        expected_version: Optional[int] = None,
        user_id: Optional[int] = None,
        bulk: bool = False,
    ) -> Task:
        """
        Soft-delete an active task.

        Raises:
            TaskAlreadyDeletedError: If the task is already trashed (no write attempted)
            VersionConflictError: If the stored version no longer matches
        """
        if task.is_trashed:
            raise TaskAlreadyDeletedError(task.id)

        version = expected_version if expected_version is not None else task.version
        return self._commit(
            task,
            version,
            {"deleted_at": utc_now_str()},
            "delete",
            lambda fresh: self.audit.log_delete(task, fresh, user_id, bulk=bulk),
        )

    def set_status(
        self,
        task: Task,
        status: TaskStatus,
        expected_version: Optional[int] = None,
        user_id: Optional[int] = None,
        bulk: bool = False,
    ) -> Task:
        """Assign ``status`` (bulk update_status); logged as an Update."""
        version = expected_version if expected_version is not None else task.version
        changes: Dict[str, Any] = {"version_updated": True}
        if task.status != status:
            changes["status"] = {"from": task.status.value, "to": status.value}

        return self._commit(
            task,
            version,
            {"status": status.value},
            "status update",
            lambda fresh: self.audit.log_update(task, fresh, changes, user_id, bulk=bulk),
        )

"""
Audit Log Writer

Appends immutable TaskLog entries describing every committed mutation.
Audit writes run after the domain change and are degraded-mode only: a
failure is logged and swallowed, never undoing or failing the mutation.
"""

import logging
from typing import Any, Dict, List, Optional

from .database import TaskDatabase
from .models import Task, TaskLog, TaskLogOperation, TaskStatus

logger = logging.getLogger(__name__)


class AuditLogWriter:
    """
    Writes one audit record per mutation.

    Every public ``log_*`` method returns the sequence number of the new entry,
    or None when the write failed.
    """

    def __init__(self, database: TaskDatabase):
        self.db = database

    def log_operation(
        self,
        task: Task,
        operation: TaskLogOperation,
        user_id: Optional[int] = None,
        changes: Optional[Dict[str, Any]] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        bulk: bool = False,
    ) -> Optional[int]:
        """
        Append a log entry, swallowing and logging any storage failure.

        Args:
            task: Task the entry describes
            operation: Operation type
            user_id: Acting user, None for system/unauthenticated actions
            changes: Field -> {"from", "to"} map (or operation flags)
            old_values: Snapshot before the mutation
            new_values: Snapshot after the mutation
            bulk: Mark the entry as produced by a bulk operation
        """
        changes = dict(changes or {})
        if bulk:
            changes["bulk_operation"] = True

        try:
            return self.db.insert_task_log(
                task.id,
                operation,
                user_id=user_id,
                changes=changes,
                old_values=old_values,
                new_values=new_values,
            )
        except Exception as e:
            logger.error(
                f"Failed to log task {operation.value} for task {task.id}: {e}",
                extra={"task_id": task.id, "operation_type": operation.value},
            )
            return None

    def log_create(self, task: Task, user_id: Optional[int] = None) -> Optional[int]:
        return self.log_operation(
            task, TaskLogOperation.CREATE, user_id, new_values=task.to_storage()
        )

    def log_update(
        self,
        before: Task,
        after: Task,
        changes: Dict[str, Any],
        user_id: Optional[int] = None,
        bulk: bool = False,
    ) -> Optional[int]:
        return self.log_operation(
            after,
            TaskLogOperation.UPDATE,
            user_id,
            changes=changes,
            old_values=before.to_storage(),
            new_values=after.to_storage(),
            bulk=bulk,
        )

    def log_delete(
        self, before: Task, after: Task, user_id: Optional[int] = None, bulk: bool = False
    ) -> Optional[int]:
        return self.log_operation(
            after,
            TaskLogOperation.DELETE,
            user_id,
            changes={"deleted": True},
            old_values=before.to_storage(),
            new_values=after.to_storage(),
            bulk=bulk,
        )

    def log_restore(
        self, before: Task, after: Task, user_id: Optional[int] = None, bulk: bool = False
    ) -> Optional[int]:
        return self.log_operation(
            after,
            TaskLogOperation.RESTORE,
            user_id,
            changes={"restored": True},
            old_values=before.to_storage(),
            new_values=after.to_storage(),
            bulk=bulk,
        )

    def log_status_toggle(
        self,
        before: Task,
        after: Task,
        from_status: TaskStatus,
        to_status: TaskStatus,
        user_id: Optional[int] = None,
    ) -> Optional[int]:
        return self.log_operation(
            after,
            TaskLogOperation.TOGGLE_STATUS,
            user_id,
            changes={"status": {"from": from_status.value, "to": to_status.value}},
            old_values=before.to_storage(),
            new_values=after.to_storage(),
        )

    def history(self, task_id: int, limit: Optional[int] = None) -> List[TaskLog]:
        """Audit entries for a task in chronological order."""
        return self.db.get_task_logs(task_id, limit=limit)

"""
Version Store

Atomic conditional writes keyed by (task id, expected version). A single
UPDATE with the version in its WHERE clause is the only concurrency
control primitive: of two writers expecting the same version, exactly one
sees an affected row.
"""

import json
from typing import Any, Dict, Optional, Tuple

from .database import TaskDatabase, utc_now_str

# Columns a conditional update may set; version and timestamps are managed here
MUTABLE_COLUMNS = frozenset({
    "title",
    "description",
    "status",
    "priority",
    "due_date",
    "assigned_to",
    "user_id",
    "metadata",
    "deleted_at",
})


class VersionStore:
    """Compare-and-swap writes against the tasks table."""

    def __init__(self, database: TaskDatabase):
        self.db = database

    def conditional_update(
        self,
        task_id: int,
        expected_version: int,
        fields: Dict[str, Any],
        include_trashed: bool = False,
    ) -> int:
        """
        Apply ``fields`` and bump the version, only if the version still matches.

        Args:
            task_id: Task to update
            expected_version: Version the caller read
            fields: Column values in storage form (enum values, ISO dates, dicts)
            include_trashed: Allow matching a soft-deleted row (restore)

        Returns:
            Number of affected rows: 1 on success, 0 when the id is missing,
            hidden by the trashed filter, or the version no longer matches

        Raises:
            ValueError: If ``fields`` names a column outside MUTABLE_COLUMNS
        """
        invalid = set(fields) - MUTABLE_COLUMNS
        if invalid:
            raise ValueError(f"Columns not updatable: {', '.join(sorted(invalid))}")

        assignments = []
        params = []
        for column, value in fields.items():
            if column == "metadata" and value is not None:
                value = json.dumps(value)
            assignments.append(f"{column} = ?")
            params.append(value)

        assignments.append("version = ?")
        params.append(expected_version + 1)
        assignments.append("updated_at = ?")
        params.append(utc_now_str())

        query = f"""
            UPDATE tasks
            SET {', '.join(assignments)}
            WHERE id = ? AND version = ?
        """
        params.extend([task_id, expected_version])
        if not include_trashed:
            query += " AND deleted_at IS NULL"

        with self.db._connection_lock:
            cursor = self.db._connection.cursor()
            cursor.execute(query, params)
            return cursor.rowcount

    def current_version(self, task_id: int, include_trashed: bool = True) -> Optional[int]:
        """Stored version for diagnostics, or None if the task does not exist."""
        query = "SELECT version FROM tasks WHERE id = ?"
        if not include_trashed:
            query += " AND deleted_at IS NULL"

        with self.db._connection_lock:
            cursor = self.db._connection.cursor()
            cursor.execute(query, (task_id,))
            row = cursor.fetchone()
            return row[0] if row else None

    def current_state(self, task_id: int) -> Optional[Tuple[int, bool]]:
        """Stored ``(version, is_trashed)``, or None if the task does not exist."""
        with self.db._connection_lock:
            cursor = self.db._connection.cursor()
            cursor.execute("SELECT version, deleted_at FROM tasks WHERE id = ?", (task_id,))
            row = cursor.fetchone()
            return (row[0], row[1] is not None) if row else None

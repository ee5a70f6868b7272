"""
Task Database Layer

Provides SQLite-based storage for tasks and their audit logs, with WAL mode
for concurrent readers, explicit transaction control, and a single shared
connection guarded by a re-entrant lock.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .exceptions import UnknownTagError
from .models import Task, TaskCreate, TaskLog, TaskLogOperation, TaskPriority, TaskStatus

logger = logging.getLogger(__name__)


def utc_now_str() -> str:
    """Current UTC time as an ISO string for database columns."""
    return datetime.now(timezone.utc).isoformat()


def _sql_vocabulary(values: Iterable[str]) -> str:
    return ", ".join(f"'{v}'" for v in values)


class TaskDatabase:
    """
    SQLite database holding tasks and their append-only audit trail.

    Features:
    - WAL mode for concurrent read/write access across processes
    - Autocommit connection with explicit BEGIN IMMEDIATE transactions
    - Re-entrant transactions: nested use joins the outermost transaction
    - Soft-delete aware lookups (trashed rows hidden unless requested)
    - Task logs and tag attachments cascade when a task row is purged
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000):
        """
        Initialize TaskDatabase with SQLite WAL mode configuration.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_ms: How long a writer waits for another connection's lock
        """
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()

    def _initialize_database(self) -> None:
        """Open the connection, configure pragmas and create the schema."""
        try:
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,  # Autocommit; transactions are explicit
                check_same_thread=False,
            )
            self._connection.row_factory = sqlite3.Row

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            cursor.execute("PRAGMA foreign_keys=ON")

            self._create_schema()
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}") from e

    def _create_schema(self) -> None:
        """Create tables and indexes if they do not exist yet."""
        cursor = self._connection.cursor()

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                priority TEXT NOT NULL DEFAULT 'medium',
                due_date TEXT,
                user_id INTEGER,
                assigned_to INTEGER,
                metadata TEXT,
                version INTEGER NOT NULL DEFAULT 1,
                deleted_at TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CONSTRAINT status_vocabulary CHECK (status IN ({_sql_vocabulary(TaskStatus.values())})),
                CONSTRAINT priority_vocabulary CHECK (priority IN ({_sql_vocabulary(TaskPriority.values())})),
                CONSTRAINT positive_version CHECK (version >= 1),
                CONSTRAINT json_metadata CHECK (metadata IS NULL OR (json_valid(metadata) AND json_type(metadata) = 'object'))
            )
        """)

        # Per-task sequence numbers keep log order stable within a task
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS task_logs (
                task_id INTEGER NOT NULL,
                seq INTEGER NOT NULL,
                user_id INTEGER,
                operation_type TEXT NOT NULL,
                changes TEXT NOT NULL DEFAULT '{{}}',
                old_values TEXT NOT NULL DEFAULT '{{}}',
                new_values TEXT NOT NULL DEFAULT '{{}}',
                performed_at TEXT NOT NULL,
                PRIMARY KEY (task_id, seq),
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE,
                CONSTRAINT operation_vocabulary CHECK (operation_type IN ({_sql_vocabulary(TaskLogOperation.values())})),
                CONSTRAINT json_changes CHECK (json_valid(changes) AND json_type(changes) = 'object'),
                CONSTRAINT json_old_values CHECK (json_valid(old_values) AND json_type(old_values) = 'object'),
                CONSTRAINT json_new_values CHECK (json_valid(new_values) AND json_type(new_values) = 'object')
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                color TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS task_tags (
                task_id INTEGER NOT NULL,
                tag_id INTEGER NOT NULL,
                PRIMARY KEY (task_id, tag_id),
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE,
                FOREIGN KEY (tag_id) REFERENCES tags (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_task_tags_reverse
            ON task_tags (tag_id, task_id)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_deleted_at
            ON tasks (deleted_at)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_assigned_active
            ON tasks (assigned_to, status)
            WHERE deleted_at IS NULL
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_task_logs_task_seq
            ON task_logs (task_id, seq)
        """)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Explicit transaction scope.

        Holds the connection lock for the whole scope so statements from other
        threads cannot interleave. When a transaction is already open on this
        connection the call joins it and leaves commit/rollback to the owner.
        """
        with self._connection_lock:
            cursor = self._connection.cursor()
            if self._connection.in_transaction:
                yield cursor
                return

            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
            except BaseException:
                cursor.execute("ROLLBACK")
                raise

            try:
                cursor.execute("COMMIT")
            except sqlite3.Error:
                # A failed COMMIT (e.g. deferred constraint) can leave the transaction open
                if self._connection.in_transaction:
                    cursor.execute("ROLLBACK")
                raise

    def _tag_ids_for(self, task_ids: List[int]) -> Dict[int, List[int]]:
        """Attached tag ids per task, ascending."""
        tags: Dict[int, List[int]] = {task_id: [] for task_id in task_ids}
        if not task_ids:
            return tags

        placeholders = ", ".join("?" for _ in task_ids)
        cursor = self._connection.cursor()
        cursor.execute(f"""
            SELECT task_id, tag_id FROM task_tags
            WHERE task_id IN ({placeholders})
            ORDER BY task_id, tag_id
        """, list(task_ids))
        for row in cursor.fetchall():
            tags[row["task_id"]].append(row["tag_id"])
        return tags

    def _row_to_task(self, row: sqlite3.Row, tag_ids: Optional[List[int]] = None) -> Task:
        metadata = None
        if row["metadata"]:
            try:
                metadata = json.loads(row["metadata"])
            except (ValueError, TypeError):
                logger.warning(f"Invalid metadata JSON stored for task {row['id']}")
                metadata = {"_raw": row["metadata"], "_parse_error": True}

        return Task(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            status=row["status"],
            priority=row["priority"],
            due_date=row["due_date"],
            user_id=row["user_id"],
            assigned_to=row["assigned_to"],
            metadata=metadata,
            version=row["version"],
            deleted_at=row["deleted_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            tag_ids=tag_ids or [],
        )

    def insert_task(self, data: TaskCreate, user_id: Optional[int] = None) -> int:
        """
        Insert a new task at version 1.

        Args:
            data: Validated creation payload
            user_id: Creator reference

        Returns:
            ID of the created task
        """
        now = utc_now_str()
        values = data.model_dump(mode="json")
        metadata_json = None if values["metadata"] is None else json.dumps(values["metadata"])

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO tasks (title, description, status, priority, due_date,
                                   user_id, assigned_to, metadata, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
            """, (
                values["title"], values["description"], values["status"], values["priority"],
                values["due_date"], user_id, values["assigned_to"], metadata_json, now, now,
            ))
            return cursor.lastrowid

    def get_task(self, task_id: int, include_trashed: bool = False) -> Optional[Task]:
        """
        Look up one task.

        Args:
            task_id: Task to fetch
            include_trashed: Also return the task if it is soft-deleted

        Returns:
            Task snapshot, or None if missing (or trashed and not included)
        """
        query = "SELECT * FROM tasks WHERE id = ?"
        if not include_trashed:
            query += " AND deleted_at IS NULL"

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, (task_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_task(row, self._tag_ids_for([task_id])[task_id])

    def get_tasks_by_ids(self, task_ids: List[int], include_trashed: bool = False) -> Dict[int, Task]:
        """
        Fetch many tasks with one query for the rows and one for their tags.

        Returns:
            Dict of task id to snapshot, in ascending id order; missing ids are absent
        """
        if not task_ids:
            return {}

        placeholders = ", ".join("?" for _ in task_ids)
        query = f"SELECT * FROM tasks WHERE id IN ({placeholders})"
        if not include_trashed:
            query += " AND deleted_at IS NULL"
        query += " ORDER BY id ASC"

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, list(task_ids))
            rows = cursor.fetchall()
            tags = self._tag_ids_for([row["id"] for row in rows])
            return {row["id"]: self._row_to_task(row, tags[row["id"]]) for row in rows}

    def create_tag(self, name: str, color: Optional[str] = None) -> int:
        """Insert a tag and return its id."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "INSERT INTO tags (name, color, created_at) VALUES (?, ?, ?)",
                (name, color, utc_now_str()),
            )
            return cursor.lastrowid

    def _require_tags(self, cursor: sqlite3.Cursor, tag_ids: List[int]) -> None:
        if not tag_ids:
            return
        placeholders = ", ".join("?" for _ in tag_ids)
        cursor.execute(f"SELECT id FROM tags WHERE id IN ({placeholders})", list(tag_ids))
        found = {row["id"] for row in cursor.fetchall()}
        missing = sorted(set(tag_ids) - found)
        if missing:
            raise UnknownTagError(missing)

    def attach_tags(self, task_id: int, tag_ids: List[int]) -> None:
        """
        Attach tags to a task, leaving existing attachments in place.

        Raises:
            UnknownTagError: If any tag id does not exist
        """
        with self._connection_lock:
            cursor = self._connection.cursor()
            self._require_tags(cursor, tag_ids)
            cursor.executemany(
                "INSERT OR IGNORE INTO task_tags (task_id, tag_id) VALUES (?, ?)",
                [(task_id, tag_id) for tag_id in tag_ids],
            )

    def sync_tags(self, task_id: int, tag_ids: List[int]) -> None:
        """
        Replace a task's tag set with exactly ``tag_ids``.

        Callers wanting the sync to be atomic with a version bump run it
        inside ``transaction()``.

        Raises:
            UnknownTagError: If any tag id does not exist
        """
        with self._connection_lock:
            cursor = self._connection.cursor()
            self._require_tags(cursor, tag_ids)
            if tag_ids:
                placeholders = ", ".join("?" for _ in tag_ids)
                cursor.execute(
                    f"DELETE FROM task_tags WHERE task_id = ? AND tag_id NOT IN ({placeholders})",
                    [task_id, *tag_ids],
                )
            else:
                cursor.execute("DELETE FROM task_tags WHERE task_id = ?", (task_id,))
            cursor.executemany(
                "INSERT OR IGNORE INTO task_tags (task_id, tag_id) VALUES (?, ?)",
                [(task_id, tag_id) for tag_id in tag_ids],
            )

    def insert_task_log(
        self,
        task_id: int,
        operation_type: TaskLogOperation,
        user_id: Optional[int] = None,
        changes: Optional[Dict[str, Any]] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Append an audit entry with automatic per-task sequence numbering.

        Returns:
            Sequence number assigned to the entry
        """
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT COALESCE(MAX(seq), 0) + 1
                FROM task_logs
                WHERE task_id = ?
            """, (task_id,))
            next_seq = cursor.fetchone()[0]

            cursor.execute("""
                INSERT INTO task_logs (task_id, seq, user_id, operation_type,
                                       changes, old_values, new_values, performed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                task_id,
                next_seq,
                user_id,
                TaskLogOperation(operation_type).value,
                json.dumps(changes or {}),
                json.dumps(old_values or {}),
                json.dumps(new_values or {}),
                utc_now_str(),
            ))
            return next_seq

    def get_task_logs(self, task_id: int, limit: Optional[int] = None) -> List[TaskLog]:
        """
        Get audit entries for a task in chronological order.

        Args:
            task_id: Task to get logs for
            limit: Optional limit (the most recent entries are kept)
        """
        with self._connection_lock:
            cursor = self._connection.cursor()
            if limit:
                cursor.execute("""
                    SELECT * FROM task_logs
                    WHERE task_id = ?
                    ORDER BY seq DESC
                    LIMIT ?
                """, (task_id, limit))
                rows = list(reversed(cursor.fetchall()))
            else:
                cursor.execute("""
                    SELECT * FROM task_logs
                    WHERE task_id = ?
                    ORDER BY seq ASC
                """, (task_id,))
                rows = cursor.fetchall()

        return [
            TaskLog(
                task_id=row["task_id"],
                seq=row["seq"],
                user_id=row["user_id"],
                operation_type=row["operation_type"],
                changes=json.loads(row["changes"]),
                old_values=json.loads(row["old_values"]),
                new_values=json.loads(row["new_values"]),
                performed_at=row["performed_at"],
            )
            for row in rows
        ]

    def count_task_logs(self, task_id: int) -> int:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT COUNT(*) FROM task_logs WHERE task_id = ?", (task_id,))
            return cursor.fetchone()[0] or 0

    def purge_task(self, task_id: int) -> Dict[str, Any]:
        """
        Permanently delete a task row; its logs are removed by CASCADE DELETE.

        Returns:
            Dict with success flag and the number of cascaded log entries
        """
        with self._connection_lock:
            log_count = self.count_task_logs(task_id)
            cursor = self._connection.cursor()
            cursor.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            if cursor.rowcount == 0:
                return {"success": False, "error": f"Task {task_id} not found"}
            return {"success": True, "task_id": task_id, "cascaded_logs": log_count}

    def close(self):
        """Close database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

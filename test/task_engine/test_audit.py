"""
Tests for the audit log writer, including degraded-mode failure handling.
"""

import logging
import sqlite3
from unittest.mock import patch

from task_engine.models import TaskLogOperation, TaskStatus


class TestAuditLogWriter:
    def test_create_entry_records_new_snapshot(self, audit, make_task):
        task = make_task(title="Audited", user_id=9)

        logs = audit.history(task.id)

        assert len(logs) == 1
        assert logs[0].operation_type == TaskLogOperation.CREATE
        assert logs[0].user_id == 9
        assert logs[0].old_values == {}
        assert logs[0].new_values["title"] == "Audited"
        assert logs[0].new_values["version"] == 1

    def test_bulk_flag_added_to_changes(self, audit, make_task):
        task = make_task()

        seq = audit.log_delete(task, task, user_id=None, bulk=True)

        entry = audit.history(task.id)[-1]
        assert seq == entry.seq == 2
        assert entry.user_id is None
        assert entry.changes == {"deleted": True, "bulk_operation": True}

    def test_status_toggle_changes(self, audit, make_task):
        task = make_task()

        audit.log_status_toggle(task, task, TaskStatus.PENDING, TaskStatus.IN_PROGRESS, user_id=2)

        entry = audit.history(task.id)[-1]
        assert entry.operation_type == TaskLogOperation.TOGGLE_STATUS
        assert entry.changes == {"status": {"from": "pending", "to": "in_progress"}}

    def test_history_limit(self, audit, make_task):
        task = make_task()
        for _ in range(3):
            audit.log_update(task, task, {}, user_id=1)

        assert [log.seq for log in audit.history(task.id, limit=2)] == [3, 4]

    def test_storage_failure_is_swallowed(self, audit, make_task, caplog):
        task = make_task()

        with patch.object(audit.db, "insert_task_log", side_effect=sqlite3.OperationalError("disk I/O error")):
            with caplog.at_level(logging.ERROR, logger="task_engine.audit"):
                result = audit.log_restore(task, task, user_id=1)

        assert result is None
        assert "Failed to log task restore" in caplog.text
        assert "disk I/O error" in caplog.text
        assert len(audit.history(task.id)) == 1

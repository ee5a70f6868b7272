"""
Tests for the TaskService facade: lookups, authorization, cache signals and
the camelCase request shapes accepted at the engine boundary.
"""

from unittest.mock import Mock

import pytest

from task_engine.authorization import CallableOracle
from task_engine.config import EngineConfig
from task_engine.exceptions import (
    BulkValidationError,
    TaskAlreadyDeletedError,
    TaskNotFoundError,
    UnauthorizedError,
    VersionConflictError,
)
from task_engine.invalidation import CacheInvalidator
from task_engine.models import TaskLogOperation, TaskStatus
from task_engine.service import TaskService


@pytest.fixture
def invalidator():
    return Mock(spec=CacheInvalidator)


@pytest.fixture
def service(database, config, invalidator):
    return TaskService(database, config=config, cache_invalidator=invalidator)


class TestSingleRecordCalls:
    def test_create_and_get(self, service, invalidator):
        task = service.create_task({"title": "Plan sprint", "assigned_to": 7}, user_id=1)

        assert service.get_task(task.id) == task
        assert task.version == 1
        invalidator.clear_user_stats.assert_called_once_with(7)

    def test_update_task_with_camel_case_request(self, service):
        task = service.create_task({"title": "Draft"}, user_id=1)

        updated = service.update_task(
            {"taskId": task.id, "expectedVersion": 1, "fields": {"title": "Final"}}, user_id=1
        )

        assert updated.title == "Final"
        assert updated.version == 2

    def test_update_invalidates_old_and_new_assignee(self, service, invalidator):
        task = service.create_task({"title": "Handover", "assigned_to": 3})
        invalidator.reset_mock()

        service.update_task({"task_id": task.id, "expected_version": 1, "fields": {"assigned_to": 4}})

        cleared = {call.args[0] for call in invalidator.clear_user_stats.call_args_list}
        assert cleared == {3, 4}

    def test_update_conflict_propagates(self, service):
        task = service.create_task({"title": "Race"})
        service.update_task({"taskId": task.id, "expectedVersion": 1, "fields": {"title": "A"}})

        with pytest.raises(VersionConflictError):
            service.update_task({"taskId": task.id, "expectedVersion": 1, "fields": {"title": "B"}})

    def test_toggle_with_stale_expected_version(self, service):
        """A caller-supplied version is the version the write is conditional on."""
        task = service.create_task({"title": "Toggle"})
        toggled = service.toggle_task_status({"taskId": task.id})
        assert toggled.status is TaskStatus.IN_PROGRESS

        with pytest.raises(VersionConflictError):
            service.toggle_task_status({"taskId": task.id, "expectedVersion": 1})

        assert service.get_task(task.id).version == 2

    def test_delete_and_restore(self, service):
        task = service.create_task({"title": "Bin"})

        trashed = service.delete_task(task.id, expected_version=1)
        with pytest.raises(TaskNotFoundError):
            service.get_task(task.id)
        with pytest.raises(TaskAlreadyDeletedError):
            service.delete_task(task.id)

        restored = service.restore_task({"taskId": task.id, "expectedVersion": trashed.version})
        assert restored.version == 3
        assert not restored.is_trashed

    def test_missing_task(self, service):
        with pytest.raises(TaskNotFoundError) as exc_info:
            service.update_task({"taskId": 404, "expectedVersion": 1, "fields": {}})
        assert str(exc_info.value) == "Task 404: Task not found"

    def test_unauthorized(self, database, config):
        service = TaskService(
            database, config=config, oracle=CallableOracle(lambda ability, task: ability != "delete")
        )
        task = service.create_task({"title": "Protected"})

        with pytest.raises(UnauthorizedError) as exc_info:
            service.delete_task(task.id)

        assert str(exc_info.value) == f"Task {task.id}: Not authorized to delete this task"
        assert service.get_task(task.id).version == 1

    def test_tags_follow_update(self, service, database):
        bug = database.create_tag("bug", "#d73a4a")
        docs = database.create_tag("docs")
        task = service.create_task({"title": "Tagged", "tag_ids": [bug]})

        updated = service.update_task({"taskId": task.id, "expectedVersion": 1, "fields": {"tag_ids": [docs]}})

        assert task.tag_ids == [bug]
        assert updated.tag_ids == [docs]
        assert service.get_task(task.id).tag_ids == [docs]

    def test_history(self, service):
        task = service.create_task({"title": "History"})
        service.toggle_task_status({"taskId": task.id})

        operations = [log.operation_type for log in service.task_history(task.id)]

        assert operations == [TaskLogOperation.CREATE, TaskLogOperation.TOGGLE_STATUS]


class TestBulkThroughService:
    def test_bulk_operation(self, service, invalidator):
        ids = [service.create_task({"title": f"B{i}"}).id for i in range(3)]

        result = service.bulk_operation({"action": "delete", "taskIds": ids}, user_id=9)

        assert result.processed == 3
        assert result.to_response()["message"] == "3 tasks deleted successfully"
        invalidator.clear_all_user_stats.assert_called_once_with()

    def test_bulk_validation_error(self, service):
        with pytest.raises(BulkValidationError):
            service.bulk_operation({"action": "delete", "taskIds": []})


class TestFromConfig:
    def test_opens_configured_database(self, db_path):
        service = TaskService.from_config(EngineConfig(database_path=db_path))
        try:
            task = service.create_task({"title": "Configured"})
            assert service.get_task(task.id).title == "Configured"
        finally:
            service.close()

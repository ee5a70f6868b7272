"""
Tests for pydantic models, enums and bulk request validation.
"""

import pytest
from pydantic import ValidationError

from task_engine.exceptions import BulkValidationError
from task_engine.models import (
    BulkAction,
    BulkOperationRequest,
    BulkOperationResult,
    DeleteTasks,
    RestoreTasks,
    TaskCreate,
    TaskLogOperation,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
    UpdateTaskRequest,
    UpdateTaskStatus,
    parse_bulk_request,
    validate_metadata,
)


class TestEnums:
    """Test enum helpers."""

    def test_status_cycle(self):
        assert TaskStatus.PENDING.next_status() is TaskStatus.IN_PROGRESS
        assert TaskStatus.IN_PROGRESS.next_status() is TaskStatus.COMPLETED
        assert TaskStatus.COMPLETED.next_status() is TaskStatus.PENDING

    def test_status_label(self):
        assert TaskStatus.IN_PROGRESS.label() == "In Progress"

    def test_priority_defaults_and_order(self):
        assert TaskPriority.default() is TaskPriority.MEDIUM
        assert TaskPriority.LOW.sort_order() < TaskPriority.HIGH.sort_order()

    def test_past_tense(self):
        assert BulkAction.DELETE.past_tense() == "deleted"
        assert BulkAction.RESTORE.past_tense() == "restored"
        assert BulkAction.UPDATE_STATUS.past_tense() == "updated"
        assert TaskLogOperation.TOGGLE_STATUS.past_tense() == "changed status"

    def test_only_update_status_requires_status(self):
        assert BulkAction.UPDATE_STATUS.requires_status()
        assert not BulkAction.DELETE.requires_status()


class TestMetadataValidation:
    """Test metadata limits shared by create and update payloads."""

    def test_accepts_three_levels(self):
        value = {"a": {"b": {"c": 1}}}
        assert validate_metadata(value) == value

    def test_rejects_four_levels(self):
        with pytest.raises(ValueError, match="levels of nesting"):
            validate_metadata({"a": {"b": {"c": {"d": 1}}}})

    def test_rejects_oversized(self):
        with pytest.raises(ValueError, match="10KB"):
            validate_metadata({"blob": "x" * 11000})

    def test_rejects_long_key(self):
        with pytest.raises(ValueError, match="too long"):
            validate_metadata({"k" * 51: 1})

    def test_rejects_empty_key(self):
        with pytest.raises(ValueError, match="invalid key"):
            validate_metadata({"": 1})


class TestTaskPayloads:
    """Test create/update payload models."""

    def test_create_strips_title(self):
        assert TaskCreate(title="  Ship it  ").title == "Ship it"

    def test_create_rejects_blank_title(self):
        with pytest.raises(ValidationError):
            TaskCreate(title="   ")

    def test_create_rejects_unknown_fields(self):
        with pytest.raises(ValidationError):
            TaskCreate(title="Task", version=3)

    def test_update_tracks_supplied_fields_only(self):
        payload = TaskUpdate(title="New", due_date=None)
        assert payload.supplied_fields() == {"title": "New", "due_date": None}

    def test_update_serializes_enums_and_dates(self):
        payload = TaskUpdate(status="completed", due_date="2025-03-01")
        assert payload.supplied_fields() == {"status": "completed", "due_date": "2025-03-01"}

    @pytest.mark.parametrize("field", ["title", "status", "priority"])
    def test_update_rejects_null_for_required_columns(self, field):
        with pytest.raises(ValidationError):
            TaskUpdate(**{field: None})

    def test_tag_ids_are_deduplicated_and_sorted(self):
        assert TaskCreate(title="Tagged", tag_ids=[3, 1, 3]).tag_ids == [1, 3]
        assert TaskUpdate(tag_ids=[2, 2]).supplied_fields() == {"tag_ids": [2]}

    @pytest.mark.parametrize("tag_ids", [[0], [-1], [True], None])
    def test_update_rejects_invalid_tag_ids(self, tag_ids):
        with pytest.raises(ValidationError):
            TaskUpdate(tag_ids=tag_ids)

    def test_create_rejects_boolean_tag_ids(self):
        with pytest.raises(ValidationError):
            TaskCreate(title="Tagged", tag_ids=[False])

    def test_update_request_accepts_camel_case(self):
        request = UpdateTaskRequest.model_validate(
            {"taskId": 4, "expectedVersion": 2, "fields": {"priority": "high"}}
        )
        assert request.task_id == 4
        assert request.expected_version == 2
        assert request.fields.supplied_fields() == {"priority": "high"}


class TestBulkOperationRequest:
    """Test bulk request validation and version resolution."""

    def test_valid_request_with_camel_case(self):
        request = parse_bulk_request({"action": "delete", "taskIds": [3, 1, 2]})
        assert request.action is BulkAction.DELETE
        assert request.task_ids == [3, 1, 2]
        assert not request.has_versions()

    @pytest.mark.parametrize(
        "payload, message",
        [
            ({"action": "archive", "task_ids": [1]}, "Action must be one of: delete, restore, update_status"),
            ({"action": "delete", "task_ids": []}, "Task IDs cannot be empty"),
            ({"action": "delete", "task_ids": [1, -2]}, "All task IDs must be positive integers"),
            ({"action": "delete", "task_ids": [1, 1]}, "Duplicate task IDs are not allowed"),
            ({"action": "update_status", "task_ids": [1]}, "Status is required for update_status action"),
            (
                {"action": "delete", "task_ids": [1, 2], "versions": [1]},
                "Versions array length must match task IDs array length when provided",
            ),
            (
                {"action": "delete", "task_ids": [1, 2], "versions": [1, 0]},
                "All versions must be positive integers or null",
            ),
            ({"action": "delete", "task_ids": [True]}, "All task IDs must be positive integers"),
            (
                {"action": "delete", "task_ids": [1, 2], "versions": [1, False]},
                "All versions must be positive integers or null",
            ),
            (
                {"action": "delete", "task_ids": [1], "versions": {1: True}},
                "All versions must be positive integers or null",
            ),
        ],
    )
    def test_structural_validation(self, payload, message):
        with pytest.raises(BulkValidationError) as exc_info:
            parse_bulk_request(payload)
        assert any(message in error for error in exc_info.value.errors)

    def test_invalid_status_value(self):
        with pytest.raises(BulkValidationError) as exc_info:
            parse_bulk_request({"action": "update_status", "task_ids": [1], "status": "done"})
        assert any("Status must be one of" in error for error in exc_info.value.errors)

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_bulk_request({"action": "delete", "task_ids": []})

    def test_version_map_must_reference_requested_ids(self):
        with pytest.raises(BulkValidationError) as exc_info:
            parse_bulk_request({"action": "delete", "task_ids": [1, 2], "versions": {1: 1, 9: 1}})
        assert any("unknown task IDs: 9" in error for error in exc_info.value.errors)

    def test_empty_versions_means_no_check(self):
        request = parse_bulk_request({"action": "delete", "task_ids": [1, 2], "versions": []})
        assert not request.has_versions()
        assert request.version_for(2, 1) is None

    def test_version_for_list_uses_position(self):
        request = parse_bulk_request({"action": "delete", "task_ids": [5, 6, 7], "versions": [3, None, 1]})
        assert request.version_for(5, 0) == 3
        assert request.version_for(6, 1) is None
        assert request.version_for(7, 2) == 1

    def test_version_for_map_uses_task_id(self):
        request = parse_bulk_request({"action": "restore", "task_ids": [5, 6], "versions": {"6": 4, "5": None}})
        assert request.version_for(6, 0) == 4
        assert request.version_for(5, 1) is None

    def test_to_action_variants(self):
        assert isinstance(parse_bulk_request({"action": "delete", "task_ids": [1]}).to_action(), DeleteTasks)
        assert isinstance(parse_bulk_request({"action": "restore", "task_ids": [1]}).to_action(), RestoreTasks)

        variant = parse_bulk_request(
            {"action": "update_status", "task_ids": [1], "status": "completed"}
        ).to_action()
        assert isinstance(variant, UpdateTaskStatus)
        assert variant.status is TaskStatus.COMPLETED
        assert variant.operation == "status update"

    def test_parse_passes_through_validated_request(self):
        request = BulkOperationRequest(action="delete", task_ids=[1])
        assert parse_bulk_request(request) is request


class TestBulkOperationResult:
    def test_response_uses_camel_case(self):
        result = BulkOperationResult(
            action=BulkAction.DELETE,
            message="2 tasks deleted successfully",
            processed=2,
            total=3,
            conflicts=1,
            errors=["Task 2: Version conflict during delete. Expected version 1, but found 5."],
            processing_time_seconds=0.01,
            chunks_processed=1,
        )

        response = result.to_response()

        assert response["processed"] == 2
        assert response["processingTimeSeconds"] == 0.01
        assert response["chunksProcessed"] == 1
        assert response["conflictedTasks"] == []
        assert response["truncated"] is False

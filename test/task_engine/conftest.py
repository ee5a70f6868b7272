"""
Shared fixtures for the task engine test suite.

Every test gets its own temporary SQLite file so WAL files and sequence
numbers never leak between tests.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent.parent / "src"
sys.path.insert(0, str(project_root))

from task_engine.audit import AuditLogWriter
from task_engine.config import EngineConfig
from task_engine.database import TaskDatabase
from task_engine.models import TaskCreate
from task_engine.mutator import TaskMutator
from task_engine.version_store import VersionStore


def _remove_db_files(db_path: str) -> None:
    for suffix in ("", "-wal", "-shm"):
        Path(db_path + suffix).unlink(missing_ok=True)


@pytest.fixture
def db_path():
    """Path to a fresh temporary database file, removed afterwards."""
    with tempfile.NamedTemporaryFile(delete=False, suffix=".db", prefix="test_engine_") as tmp_file:
        path = tmp_file.name
    yield path
    _remove_db_files(path)


@pytest.fixture
def database(db_path):
    db = TaskDatabase(db_path)
    yield db
    db.close()


@pytest.fixture
def store(database):
    return VersionStore(database)


@pytest.fixture
def audit(database):
    return AuditLogWriter(database)


@pytest.fixture
def mutator(database, store, audit):
    return TaskMutator(database, store, audit)


@pytest.fixture
def config():
    """Small limits so chunking paths are exercised with few tasks."""
    return EngineConfig(
        database_path="unused.db",
        chunk_size=10,
        max_operations=1000,
        max_tasks_per_request=1000,
        memory_limit_mb=1024 * 1024,
    )


@pytest.fixture
def make_task(mutator):
    """Create a task through the mutator (version 1, one Create log row)."""

    def _make(title="Task", user_id=1, **fields):
        return mutator.create(TaskCreate(title=title, **fields), user_id=user_id)

    return _make


@pytest.fixture
def make_tasks(make_task):
    def _make_many(count, **fields):
        return [make_task(title=f"Task {i + 1}", **fields) for i in range(count)]

    return _make_many


@pytest.fixture
def clean_env(monkeypatch):
    """Remove engine environment variables for config tests."""
    for name in list(os.environ):
        if name.startswith("BULK_") or name in ("DATABASE_PATH", "TASK_ENGINE_CONFIG"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch

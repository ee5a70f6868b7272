"""
Engine Configuration

Bulk-operation limits and storage location, loaded from environment
variables with an optional YAML file as the base layer. The resulting
EngineConfig is passed explicitly to the components that need it.
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILE_ENV = "TASK_ENGINE_CONFIG"

# Environment variable name for each EngineConfig field
_ENV_VARS = {
    "database_path": "DATABASE_PATH",
    "chunk_size": "BULK_CHUNK_SIZE",
    "max_operations": "BULK_MAX_OPERATIONS",
    "max_tasks_per_request": "BULK_MAX_TASKS_PER_REQUEST",
    "memory_limit_mb": "BULK_MEMORY_LIMIT_MB",
    "slow_bulk_threshold_ms": "BULK_SLOW_THRESHOLD_MS",
}


@dataclass(frozen=True)
class EngineConfig:
    """
    Configuration consumed by the bulk orchestrator and database layer.

    Env vars:
    - DATABASE_PATH: SQLite database file (default 'task_engine.db')
    - BULK_CHUNK_SIZE: task ids per chunk transaction (default 100)
    - BULK_MAX_OPERATIONS: absolute ceiling for one bulk call (default 1000)
    - BULK_MAX_TASKS_PER_REQUEST: per-request task id cap (default 100)
    - BULK_MEMORY_LIMIT_MB: process memory ceiling checked between chunks (default 128)
    - BULK_SLOW_THRESHOLD_MS: bulk duration that triggers a slow-operation warning (default 1000)
    - TASK_ENGINE_CONFIG: optional YAML file providing any of the above keys
    """

    database_path: str = "task_engine.db"
    chunk_size: int = 100
    max_operations: int = 1000
    max_tasks_per_request: int = 100
    memory_limit_mb: int = 128
    slow_bulk_threshold_ms: int = 1000

    def __post_init__(self):
        for f in fields(self):
            if f.type is int:
                value = getattr(self, f.name)
                if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                    raise ValueError(f"{f.name} must be a positive integer, got {value!r}")
        if not self.database_path:
            raise ValueError("database_path cannot be empty")


def _coerce(name: str, raw: Any) -> Any:
    if name == "database_path":
        return str(raw)
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    try:
        return int(str(raw).strip())
    except ValueError as e:
        raise ValueError(f"{name} must be a positive integer, got {raw!r}") from e


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Read the YAML config file; the top level must be a mapping."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    unknown = set(data) - set(_ENV_VARS)
    if unknown:
        logger.warning(f"Ignoring unknown config keys in {path}: {', '.join(sorted(unknown))}")
    return {k: v for k, v in data.items() if k in _ENV_VARS}


def load_config(config_file: Optional[str] = None, **overrides: Any) -> EngineConfig:
    """
    Build the engine configuration.

    Precedence (lowest to highest): defaults, YAML file, environment
    variables, keyword overrides.

    Args:
        config_file: YAML path; defaults to $TASK_ENGINE_CONFIG when set
        **overrides: Explicit field values, mainly for tests

    Returns:
        Validated EngineConfig

    Raises:
        ValueError: For malformed or non-positive values
    """
    values: Dict[str, Any] = {}

    path = config_file or os.getenv(CONFIG_FILE_ENV)
    if path:
        values.update(_load_yaml(Path(path)))

    for name, env_var in _ENV_VARS.items():
        raw = os.getenv(env_var)
        if raw is not None and raw.strip() != "":
            values[name] = raw

    values.update(overrides)
    coerced = {name: _coerce(name, raw) for name, raw in values.items()}
    return replace(EngineConfig(), **coerced)

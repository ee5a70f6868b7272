"""
Cache invalidation seam.

Per-assignee aggregate caches live outside the engine; the engine only
signals when they must be dropped.
"""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class CacheInvalidator(ABC):
    """Receives invalidation signals after committed mutations."""

    @abstractmethod
    def clear_user_stats(self, user_id: int) -> None:
        """Drop cached aggregates for one assignee."""

    @abstractmethod
    def clear_all_user_stats(self) -> None:
        """Drop cached aggregates for every assignee (after bulk changes)."""


class NullCacheInvalidator(CacheInvalidator):
    """No cache configured; signals are only logged at debug level."""

    def clear_user_stats(self, user_id: int) -> None:
        logger.debug(f"No cache configured, skipping stats invalidation for user {user_id}")

    def clear_all_user_stats(self) -> None:
        logger.debug("No cache configured, skipping stats invalidation for all users")

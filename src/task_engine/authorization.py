"""
Authorization seam.

The engine asks a yes/no question per task and action; evaluating roles or
ownership policy belongs to the host application.
"""

from abc import ABC, abstractmethod
from typing import Callable

from .models import Task


class AuthorizationOracle(ABC):
    """Decides whether the acting user may perform ``action`` on ``task``."""

    @abstractmethod
    def allows(self, action: str, task: Task) -> bool:
        ...


class AllowAll(AuthorizationOracle):
    """Grants every request. Default for embedded use and tests."""

    def allows(self, action: str, task: Task) -> bool:
        return True


class CallableOracle(AuthorizationOracle):
    """Adapts a plain ``(action, task) -> bool`` function."""

    def __init__(self, decide: Callable[[str, Task], bool]):
        self._decide = decide

    def allows(self, action: str, task: Task) -> bool:
        return bool(self._decide(action, task))

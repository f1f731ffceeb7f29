"""AI writing actions."""

from .completion import TASK_DESCRIPTIONS, AICompletionClient, Task

__all__ = ["AICompletionClient", "Task", "TASK_DESCRIPTIONS"]

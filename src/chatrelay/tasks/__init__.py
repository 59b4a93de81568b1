"""Per-session task execution: the concurrency guard and the orchestrator."""

from chatrelay.tasks.guard import Killable, TaskGuard
from chatrelay.tasks.orchestrator import (
    CommandBuilder,
    TaskListener,
    TaskOrchestrator,
    TaskResult,
    ToolCall,
)

__all__ = [
    "CommandBuilder",
    "Killable",
    "TaskGuard",
    "TaskListener",
    "TaskOrchestrator",
    "TaskResult",
    "ToolCall",
]

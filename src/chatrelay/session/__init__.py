"""Session registry, eviction sweeper, and JSONL activity recording."""

from chatrelay.session.models import (
    ActivityEndEvent,
    ActivityEvent,
    ActivityStartEvent,
    ApprovalEvent,
    ErrorEvent,
    SessionRecord,
    SessionsEvictedEvent,
    TaskDoneEvent,
    TaskProgressEvent,
    TaskStartEvent,
    ToolCallEvent,
)
from chatrelay.session.recorder import ActivityRecorder, EndReason
from chatrelay.session.registry import SessionRegistry
from chatrelay.session.sweeper import SessionSweeper

__all__ = [
    "ActivityEndEvent",
    "ActivityEvent",
    "ActivityRecorder",
    "ActivityStartEvent",
    "ApprovalEvent",
    "EndReason",
    "ErrorEvent",
    "SessionRecord",
    "SessionRegistry",
    "SessionSweeper",
    "SessionsEvictedEvent",
    "TaskDoneEvent",
    "TaskProgressEvent",
    "TaskStartEvent",
    "ToolCallEvent",
]

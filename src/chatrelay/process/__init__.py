"""Process launcher, stream parser, and stream event models."""

from chatrelay.process.events import (
    AssistantEvent,
    InitEvent,
    ResultEvent,
    StreamEvent,
    TextBlock,
    ToolResultBlock,
    ToolResultEvent,
    ToolUseBlock,
    parse_event,
)
from chatrelay.process.parser import StreamParser, decode_line
from chatrelay.process.runner import (
    CommandSpec,
    ProcessCallbacks,
    ProcessExitError,
    ProcessLauncher,
    StreamReadError,
    TaskHandle,
)

__all__ = [
    "AssistantEvent",
    "CommandSpec",
    "InitEvent",
    "ProcessCallbacks",
    "ProcessExitError",
    "ProcessLauncher",
    "ResultEvent",
    "StreamEvent",
    "StreamParser",
    "StreamReadError",
    "TaskHandle",
    "TextBlock",
    "ToolResultBlock",
    "ToolResultEvent",
    "ToolUseBlock",
    "decode_line",
    "parse_event",
]

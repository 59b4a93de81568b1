"""Pydantic v2 models for the assistant's stream-json output protocol."""

from __future__ import annotations

import logging
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

_BlockT = TypeVar("_BlockT", bound=BaseModel)


class _StreamEventBase(BaseModel):
    """Common fields shared by every stream event.

    The external process emits many more fields than we model; they are
    kept (``extra="allow"``) so consumers can still reach them.
    """

    model_config = ConfigDict(extra="allow")

    session_id: str | None = Field(
        default=None,
        description="External session identifier the event belongs to",
    )


class MessageBody(BaseModel):
    """The ``message`` envelope carried by assistant and user events."""

    model_config = ConfigDict(extra="allow")

    content: list[dict[str, Any]] | str = Field(default_factory=list)

    def blocks(self, block_type: str) -> list[dict[str, Any]]:
        """Return content blocks whose ``type`` equals *block_type*."""
        if isinstance(self.content, str):
            return []
        return [b for b in self.content if b.get("type") == block_type]


class TextBlock(BaseModel):
    """A ``text`` content block from an assistant message."""

    model_config = ConfigDict(extra="allow")

    type: Literal["text"] = "text"
    text: str = ""


class ToolUseBlock(BaseModel):
    """A ``tool_use`` content block from an assistant message."""

    model_config = ConfigDict(extra="allow")

    type: Literal["tool_use"] = "tool_use"
    id: str = ""
    name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """A ``tool_result`` content block echoed back in a user event."""

    model_config = ConfigDict(extra="allow")

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str = ""
    content: str | list[Any] = ""
    is_error: bool = False

    @property
    def text(self) -> str:
        """Flatten list-shaped content into plain text."""
        if isinstance(self.content, str):
            return self.content
        parts = [
            str(item.get("text", "")) if isinstance(item, dict) else str(item)
            for item in self.content
        ]
        return "\n".join(p for p in parts if p)


class InitEvent(_StreamEventBase):
    """``system``/``init`` — the process announced its session."""

    type: Literal["system"] = "system"
    subtype: Literal["init"] = "init"
    cwd: str | None = None
    model: str | None = None
    tools: list[str] = Field(default_factory=list)


class AssistantEvent(_StreamEventBase):
    """``assistant`` — text and tool calls produced by the model."""

    type: Literal["assistant"] = "assistant"
    message: MessageBody

    @property
    def text(self) -> str:
        """First text block in the message, or an empty string."""
        if isinstance(self.message.content, str):
            return self.message.content
        for block in self.message.blocks("text"):
            text = block.get("text")
            if isinstance(text, str) and text:
                return text
        return ""

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return _validate_blocks(ToolUseBlock, self.message.blocks("tool_use"))


class ToolResultEvent(_StreamEventBase):
    """``user`` — tool results fed back to the model."""

    type: Literal["user"] = "user"
    message: MessageBody

    @property
    def results(self) -> list[ToolResultBlock]:
        return _validate_blocks(ToolResultBlock, self.message.blocks("tool_result"))


class ResultEvent(_StreamEventBase):
    """``result`` — terminal event closing a run."""

    type: Literal["result"] = "result"
    subtype: str = Field(description="'success' or an 'error_*' variant")
    num_turns: int = 0
    result: str | None = None
    total_cost_usd: float | None = None
    is_error: bool = False
    duration_ms: int | None = None

    @property
    def success(self) -> bool:
        return self.subtype == "success"


StreamEvent = InitEvent | AssistantEvent | ToolResultEvent | ResultEvent
"""Union of every event type the launcher dispatches."""


def parse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Classify a decoded JSON object by its ``type`` discriminant.

    Returns ``None`` for event kinds we do not dispatch (non-init system
    events, messages without content, unknown types) and for objects that
    fail validation.
    """
    event_type = data.get("type")
    try:
        if event_type == "system":
            if data.get("subtype") != "init":
                return None
            return InitEvent.model_validate(data)
        if event_type == "assistant":
            if not _has_content(data):
                return None
            return AssistantEvent.model_validate(data)
        if event_type == "user":
            if not _has_content(data):
                return None
            return ToolResultEvent.model_validate(data)
        if event_type == "result":
            return ResultEvent.model_validate(data)
    except ValidationError as exc:
        logger.debug("Dropping invalid %s event: %s", event_type, exc)
        return None
    return None


def _validate_blocks(model: type[_BlockT], blocks: list[dict[str, Any]]) -> list[_BlockT]:
    validated: list[_BlockT] = []
    for block in blocks:
        try:
            validated.append(model.model_validate(block))
        except ValidationError:
            logger.debug("Skipping malformed %s block", block.get("type"))
    return validated


def _has_content(data: dict[str, Any]) -> bool:
    message = data.get("message")
    return isinstance(message, dict) and bool(message.get("content"))

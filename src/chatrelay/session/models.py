"""Pydantic v2 models for session records and activity-log events."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag


class SessionRecord(BaseModel):
    """Last known external session for one conversation context."""

    model_config = ConfigDict(frozen=True)

    session_key: str = Field(description="Opaque conversation identifier")
    external_session_id: str = Field(description="Session id reported by the process")
    context_label: str = Field(default="", description="Human-readable context name")
    last_used: float = Field(description="Unix timestamp (seconds) of the last update")


class _EventBase(BaseModel):
    """Common envelope fields shared by every activity event."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    ts: str = Field(description="ISO 8601 timestamp with milliseconds")
    seq: int = Field(ge=0, description="Monotonic sequence number")


class ActivityStartEvent(_EventBase):
    """Emitted once when an activity log is opened."""

    type: Literal["activity_start"] = "activity_start"
    log_id: str = Field(description="Unique activity log identifier")


class ActivityEndEvent(_EventBase):
    """Emitted once when an activity log is closed."""

    type: Literal["activity_end"] = "activity_end"
    reason: Literal["complete", "shutdown", "ctrl_c", "error"] = Field(
        description="Why the log ended",
    )
    duration_ms: int = Field(description="Total lifetime in milliseconds")


class TaskStartEvent(_EventBase):
    """A process was spawned for a session key."""

    type: Literal["task_start"] = "task_start"
    session_key: str
    resume_session_id: str | None = Field(
        default=None,
        description="External session being resumed, if any",
    )
    pid: int | None = None


class TaskProgressEvent(_EventBase):
    """Progress reported by the stream (init, session id updates)."""

    type: Literal["task_progress"] = "task_progress"
    session_key: str
    status: str


class ToolCallEvent(_EventBase):
    """The assistant invoked a tool."""

    type: Literal["tool_call"] = "tool_call"
    session_key: str
    tool: str
    args: dict[str, Any] = Field(default_factory=dict)


class TaskDoneEvent(_EventBase):
    """A task reached its terminal state."""

    type: Literal["task_done"] = "task_done"
    session_key: str
    outcome: Literal["success", "failed", "timeout", "cancelled"]
    num_turns: int | None = None
    cost_usd: float | None = None
    truncated: bool = False


class ApprovalEvent(_EventBase):
    """A tool approval was decided."""

    type: Literal["approval"] = "approval"
    request_id: str | None = None
    tool: str
    behavior: Literal["allow", "deny"]
    via: Literal[
        "safe", "auto", "no_context", "user", "timeout", "send_failure", "shutdown"
    ]


class SessionsEvictedEvent(_EventBase):
    """The eviction sweep removed stale session records."""

    type: Literal["sessions_evicted"] = "sessions_evicted"
    count: int = Field(ge=0)


class ErrorEvent(_EventBase):
    """An error encountered while running a task."""

    type: Literal["error"] = "error"
    session_key: str | None = Field(
        default=None,
        description="Session key that hit the error (null for system-level errors)",
    )
    error: str = Field(description="Error description")
    context: str | None = Field(
        default=None,
        description="Error context: subprocess, approval, config, etc.",
    )


def _event_discriminator(v: Any) -> str:
    """Extract the discriminator value from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


ActivityEvent = Annotated[
    Annotated[ActivityStartEvent, Tag("activity_start")]
    | Annotated[ActivityEndEvent, Tag("activity_end")]
    | Annotated[TaskStartEvent, Tag("task_start")]
    | Annotated[TaskProgressEvent, Tag("task_progress")]
    | Annotated[ToolCallEvent, Tag("tool_call")]
    | Annotated[TaskDoneEvent, Tag("task_done")]
    | Annotated[ApprovalEvent, Tag("approval")]
    | Annotated[SessionsEvictedEvent, Tag("sessions_evicted")]
    | Annotated[ErrorEvent, Tag("error")],
    Discriminator(_event_discriminator),
]
"""Discriminated union of all activity event types."""

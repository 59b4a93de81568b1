"""Approval decisions and pending approval records."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Behavior = Literal["allow", "deny"]


class ApprovalDecision(BaseModel):
    """Final answer for one tool-use request.

    Serializes (``by_alias=True``) to the shape the assistant process
    expects back from its permission prompt tool.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    behavior: Behavior
    updated_input: Any = Field(default=None, alias="updatedInput")
    message: str | None = None

    @classmethod
    def allow(cls, tool_input: Any = None, message: str | None = None) -> ApprovalDecision:
        return cls(behavior="allow", updated_input=tool_input, message=message)

    @classmethod
    def deny(cls, message: str) -> ApprovalDecision:
        return cls(behavior="deny", message=message)

    @property
    def allowed(self) -> bool:
        return self.behavior == "allow"

    def to_payload(self) -> dict[str, Any]:
        """Wire representation with ``None`` fields omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass
class PendingApproval:
    """A tool-use request waiting for a human decision.

    Channels that need to remember where they rendered the prompt (a
    message id to edit later, for example) subclass this and return the
    subclass from ``create_pending_approval``.
    """

    request_id: str
    tool_name: str
    input: Any
    context: Any
    future: asyncio.Future[ApprovalDecision] = field(repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def resolved(self) -> bool:
        return self.future.done()

"""Pydantic v2 models for chatrelay.yaml configuration."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatrelay.constants import DEFAULT_PLATFORM_LIMITS, RESULT_FILENAME


class ApprovalConfig(BaseModel):
    """Human-in-the-loop tool approval settings."""

    model_config = ConfigDict(extra="forbid")

    timeout: float = Field(
        default=300.0,
        ge=0,
        description="Seconds to wait for a human decision (0 waits indefinitely)",
    )
    default_on_timeout: Literal["allow", "deny"] = Field(
        default="deny",
        description="Decision applied when nobody answers in time",
    )
    auto_approve_tools: list[str] = Field(
        default_factory=list,
        description="Tool names approved without asking",
    )

    @field_validator("auto_approve_tools", mode="before")
    @classmethod
    def _split_tool_list(cls, value: object) -> object:
        if isinstance(value, str):
            return [t.strip() for t in value.split(",") if t.strip()]
        return value


class TaskConfig(BaseModel):
    """External process limits."""

    model_config = ConfigDict(extra="forbid")

    timeout: float = Field(
        default=300.0,
        gt=0,
        description="Overall seconds a single task may run",
    )
    kill_grace: float = Field(
        default=5.0,
        ge=0,
        description="Seconds between graceful termination and forced kill",
    )


class SessionConfig(BaseModel):
    """Session registry storage and eviction."""

    model_config = ConfigDict(extra="forbid")

    database: str = Field(
        default="sessions.db",
        description="SQLite database path (':memory:' for a throwaway registry)",
    )
    max_age_days: float = Field(
        default=30.0,
        gt=0,
        description="Sessions unused for longer than this are evicted",
    )
    sweep_interval: float = Field(
        default=3600.0,
        ge=0,
        description="Seconds between eviction sweeps (0 to disable)",
    )


class TruncationConfig(BaseModel):
    """Per-platform output length limits."""

    model_config = ConfigDict(extra="forbid")

    limits: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_PLATFORM_LIMITS),
        description="Maximum characters per platform identifier",
    )
    filename: str = Field(
        default=RESULT_FILENAME,
        description="File that receives the full text when output is truncated",
    )

    @field_validator("limits")
    @classmethod
    def _non_negative_limits(cls, value: dict[str, int]) -> dict[str, int]:
        bad = sorted(name for name, limit in value.items() if limit < 0)
        if bad:
            joined = ", ".join(f"'{n}'" for n in bad)
            msg = f"Platform limits must not be negative (0 disables): {joined}"
            raise ValueError(msg)
        return value

    @field_validator("filename")
    @classmethod
    def _plain_filename(cls, value: str) -> str:
        if not value or "/" in value or "\\" in value or value in (".", ".."):
            msg = f"Invalid result filename {value!r}: must be a bare file name"
            raise ValueError(msg)
        return value


class ActivityConfig(BaseModel):
    """JSONL activity log settings."""

    model_config = ConfigDict(extra="forbid")

    record: bool = Field(default=True, description="Whether to write activity logs")
    directory: str = Field(
        default="activity",
        description="Directory that receives activity JSONL files",
    )


class RelayConfig(BaseModel):
    """Top-level chatrelay.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    tasks: TaskConfig = Field(default_factory=TaskConfig)
    sessions: SessionConfig = Field(default_factory=SessionConfig)
    truncation: TruncationConfig = Field(default_factory=TruncationConfig)
    activity: ActivityConfig = Field(default_factory=ActivityConfig)

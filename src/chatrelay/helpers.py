"""Shared helper functions for the runtime components."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from chatrelay.session.models import ErrorEvent
from chatrelay.session.recorder import ActivityRecorder

logger = logging.getLogger(__name__)

#: A consumer hook; may return an awaitable.
Callback = Callable[..., Awaitable[None] | None]


async def invoke_callback(
    callback: Callback | None, *args: Any, label: str, name: str
) -> None:
    """Call *callback*, awaiting it if needed.  Consumer errors are logged."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("%s: %s callback failed", label, name)


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Extract and format the last N non-empty lines from stderr output."""
    lines = [line for line in stderr_text.split("\n") if line.strip()]
    last = lines[-max_lines:] if len(lines) > max_lines else lines
    return "\n  ".join(last)


def record_error(
    recorder: ActivityRecorder | None,
    session_key: str,
    error_msg: str,
    context: str = "subprocess",
    logger: logging.Logger | None = None,
) -> None:
    """Log and record an error event in one call."""
    if logger:
        logger.error("%s: %s", session_key, error_msg)
    if recorder is None:
        return
    recorder.record(
        ErrorEvent(
            ts="",
            seq=0,
            session_key=session_key,
            error=error_msg,
            context=context,
        )
    )

"""Shared constants and type aliases for the chatrelay runtime."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

#: Read-only tools that never need a human decision.
SAFE_TOOLS = frozenset(
    {
        "Read",
        "Glob",
        "Grep",
        "LS",
        "TodoRead",
        "WebFetch",
        "WebSearch",
    }
)

#: Tools known to mutate the workspace or run commands.
DANGEROUS_TOOLS = frozenset(
    {
        "Bash",
        "Write",
        "Edit",
        "MultiEdit",
        "TodoWrite",
    }
)

#: Maximum characters per outgoing message, keyed by platform identifier.
DEFAULT_PLATFORM_LIMITS: dict[str, int] = {
    "discord": 4000,
    "slack": 3800,
    "line": 1400,
    "telegram": 2900,
    "email": 5000,
    "teams": 900,
}

#: File (inside the task's working directory) holding an untruncated result.
RESULT_FILENAME = ".claude-result.md"

#: Callback type for plain text notifications.
TextCallback = Callable[[str], Awaitable[None]]

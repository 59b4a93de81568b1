"""Tool risk classification and request id allocation."""

from __future__ import annotations

import uuid

from chatrelay.constants import DANGEROUS_TOOLS, SAFE_TOOLS


def is_safe_tool(tool_name: str) -> bool:
    """True for read-only tools that never need approval."""
    return tool_name in SAFE_TOOLS


def is_dangerous_tool(tool_name: str) -> bool:
    """True for tools known to run commands or modify files."""
    return tool_name in DANGEROUS_TOOLS


def requires_approval(tool_name: str) -> bool:
    """Unknown tools are treated like dangerous ones."""
    return not is_safe_tool(tool_name)


def generate_request_id() -> str:
    return f"approval_{uuid.uuid4().hex[:16]}"

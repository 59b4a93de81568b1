"""Bound long results to a platform's message size, saving the full text."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from chatrelay.constants import DEFAULT_PLATFORM_LIMITS, RESULT_FILENAME

logger = logging.getLogger(__name__)

_NOTICE = "\n\n---\n⚠ Response truncated. Full result saved to {filename}"
_SHORT_NOTICE = "…[{filename}]"
_UNSAVED_NOTICE = "\n\n---\n⚠ Response truncated."


@dataclass(frozen=True)
class TruncateResult:
    """Outcome of :func:`bound_and_persist`."""

    text: str
    was_truncated: bool
    saved_path: Path | None = None


def bound_and_persist(
    text: str,
    platform: str,
    persist_dir: str | Path,
    *,
    limits: Mapping[str, int] | None = None,
    filename: str = RESULT_FILENAME,
) -> TruncateResult:
    """Fit *text* within *platform*'s limit.

    Unknown platforms and a limit of 0 mean no limit.  When *text* is
    too long, the full text is written to ``persist_dir/filename``
    (replacing any previous file) and a prefix plus a notice naming that
    file is returned.  The returned text never exceeds the limit.  A
    failed write is logged and reported as ``saved_path=None``; it never
    raises.
    """
    table = DEFAULT_PLATFORM_LIMITS if limits is None else limits
    limit = table.get(platform)
    if not limit or len(text) <= limit:
        return TruncateResult(text=text, was_truncated=False)

    target = Path(persist_dir) / filename
    saved_path: Path | None = target
    try:
        target.write_text(text, encoding="utf-8")
    except OSError as exc:
        logger.error("Failed to save full result to %s: %s", target, exc)
        saved_path = None

    notice = _select_notice(limit, filename if saved_path is not None else None)
    keep = max(0, limit - len(notice))
    bounded = text[:keep] + notice
    return TruncateResult(text=bounded, was_truncated=True, saved_path=saved_path)


def _select_notice(limit: int, filename: str | None) -> str:
    """Longest notice that leaves room for text, clipped to *limit* at worst."""
    if filename is None:
        candidates = [_UNSAVED_NOTICE, "…"]
    else:
        candidates = [
            _NOTICE.format(filename=filename),
            _SHORT_NOTICE.format(filename=filename),
        ]
    for notice in candidates:
        if len(notice) < limit:
            return notice
    return candidates[-1][:limit]

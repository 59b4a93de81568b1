"""Incremental newline-delimited JSON parser for subprocess output."""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

#: Maximum characters buffered for a single unterminated line (8 MB).
_MAX_LINE_CHARS = 8 * 1024 * 1024


class StreamParser:
    """Splits arbitrary stdout chunks into decoded JSON objects.

    A trailing partial line from one chunk is kept and prefixed to the
    next.  Only newline-terminated lines are decoded; whatever is left
    when the stream ends is dropped by :meth:`close`.
    """

    def __init__(self, max_line_chars: int = _MAX_LINE_CHARS) -> None:
        self._buffer = ""
        self._max_line_chars = max_line_chars
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        """Buffered text not yet terminated by a newline."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[dict[str, Any]]:
        """Add *chunk* and return the objects from every completed line."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk

        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        if len(self._buffer) > self._max_line_chars:
            logger.warning(
                "Unterminated line exceeds %d characters, discarding it",
                self._max_line_chars,
            )
            self._buffer = ""

        objects: list[dict[str, Any]] = []
        for line in lines:
            obj = decode_line(line)
            if obj is not None:
                objects.append(obj)
        return objects

    def close(self) -> str:
        """End the stream, returning (and discarding) any unterminated tail."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if tail.strip():
            logger.debug("Dropping unterminated final line (%d chars)", len(tail))
        return tail


def decode_line(line: str) -> dict[str, Any] | None:
    """Decode one protocol line; blank, malformed, or non-object lines yield None."""
    line = line.strip()
    if not line:
        return None
    try:
        obj = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed JSON line: %s", line[:200])
        return None
    if not isinstance(obj, dict):
        return None
    return obj

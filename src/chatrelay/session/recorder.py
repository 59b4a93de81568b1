"""Activity recorder — append-only JSONL writer for runtime events."""

from __future__ import annotations

import threading
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Literal

from chatrelay.session.models import ActivityEndEvent, ActivityEvent, ActivityStartEvent

EndReason = Literal["complete", "shutdown", "ctrl_c", "error"]


class ActivityRecorder:
    """Records activity events to an append-only JSONL file.

    Thread-safe: all writes are serialized through a ``threading.Lock``.
    Crash-safe: the file is flushed after every event.
    """

    def __init__(self, directory: Path | None = None) -> None:
        self._lock = threading.Lock()
        self._seq = 0
        self._closed = False
        self._start_ns = time.monotonic_ns()
        self._log_id = uuid.uuid4().hex[:12]

        if directory is None:
            directory = Path("activity")
        directory.mkdir(parents=True, exist_ok=True)

        date_str = datetime.now(tz=UTC).strftime("%Y-%m-%d")
        self._path = directory / f"{date_str}_{self._log_id}.jsonl"

        self._fh: IO[str] | None = None
        try:
            self._fh = self._path.open("a", encoding="utf-8")
            self.record(ActivityStartEvent(ts="", seq=0, log_id=self._log_id))
        except Exception:
            self._close_handle()
            raise

    @property
    def log_id(self) -> str:
        """Unique activity log identifier (12-char hex)."""
        return self._log_id

    @property
    def path(self) -> Path:
        return self._path

    @property
    def event_count(self) -> int:
        return self._seq

    def record(self, event: ActivityEvent) -> None:
        """Write *event* to the JSONL file.

        Stamps ``ts`` and ``seq`` on every event and flushes to disk.
        Silently drops events after the recorder has been closed.
        """
        with self._lock:
            if self._closed or self._fh is None:
                return
            event.seq = self._seq
            event.ts = _iso_now()
            self._seq += 1
            self._fh.write(event.model_dump_json(by_alias=True) + "\n")
            self._fh.flush()

    def end(self, reason: EndReason) -> None:
        """Write an ``activity_end`` event and close the file.  Idempotent."""
        if self._closed:
            return
        duration_ms = int((time.monotonic_ns() - self._start_ns) / 1_000_000)
        self.record(ActivityEndEvent(ts="", seq=0, reason=reason, duration_ms=duration_ms))
        self.close()

    def close(self) -> None:
        """Close the file **without** writing an ``activity_end`` event."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._close_handle()

    def _close_handle(self) -> None:
        if self._fh is not None and not self._fh.closed:
            self._fh.close()


def _iso_now() -> str:
    """Return the current UTC time as ISO 8601 with milliseconds."""
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"

"""SessionSweeper — periodic age-based eviction of session records."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from chatrelay.session.models import SessionsEvictedEvent
from chatrelay.session.recorder import ActivityRecorder
from chatrelay.session.registry import SessionRegistry

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86_400


class SessionSweeper:
    """Evicts stale sessions every *interval* seconds until shutdown.

    One sweep runs immediately on start so a long-stopped process does
    not resume conversations that should have expired.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        shutdown_event: asyncio.Event,
        max_age_days: float,
        interval: float,
        recorder: ActivityRecorder | None = None,
    ) -> None:
        self._registry = registry
        self._shutdown_event = shutdown_event
        self._max_age = max_age_days * _SECONDS_PER_DAY
        self._interval = interval
        self._recorder = recorder
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the sweep loop (no-op when the interval is 0)."""
        if self._interval <= 0 or self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to finish."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

    def sweep(self) -> int:
        """Run one eviction pass and return the number of removed records."""
        removed = self._registry.evict_older_than(self._max_age)
        if removed and self._recorder is not None:
            self._recorder.record(SessionsEvictedEvent(ts="", seq=0, count=removed))
        return removed

    async def _loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                self.sweep()
            except Exception:
                logger.exception("Session sweep failed")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._interval)

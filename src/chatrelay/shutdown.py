"""ShutdownManager — orchestrates the graceful shutdown sequence."""

from __future__ import annotations

import asyncio
import logging
import time

import click

from chatrelay.approval.engine import ApprovalEngine
from chatrelay.session.recorder import ActivityRecorder, EndReason
from chatrelay.session.sweeper import SessionSweeper
from chatrelay.tasks.orchestrator import TaskOrchestrator

logger = logging.getLogger(__name__)


def _format_duration(seconds: float) -> str:
    """Format a duration as '1m 22s' or '34.2s'."""
    if seconds >= 60:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs:02d}s"
    return f"{seconds:.1f}s"


class ShutdownManager:
    """Orchestrates the 4-step graceful shutdown sequence.

    Steps:
        1. SIGNAL  -- set shutdown flag, stop the eviction sweeper
        2. RESOLVE -- deny every approval still waiting for a human
        3. KILL    -- terminate running tasks and wait for them to exit
        4. CLOSE   -- close the registry, write activity_end, print summary
    """

    KILL_TIMEOUT = 10.0  # seconds

    def __init__(
        self,
        orchestrator: TaskOrchestrator,
        shutdown_event: asyncio.Event,
        approvals: ApprovalEngine | None = None,
        sweeper: SessionSweeper | None = None,
        recorder: ActivityRecorder | None = None,
        quiet: bool = False,
    ) -> None:
        self._orchestrator = orchestrator
        self._shutdown_event = shutdown_event
        self._approvals = approvals
        self._sweeper = sweeper
        self._recorder = recorder
        self._quiet = quiet
        self._start_time = time.monotonic()
        self._done = False

    async def execute(self, reason: EndReason) -> None:
        """Run the full shutdown sequence.  Later calls are no-ops."""
        if self._done:
            return
        self._done = True
        await self._signal()
        resolved = self._resolve()
        killed = await self._kill()
        self._close(reason, resolved, killed)

    # ------------------------------------------------------------------ #
    # Step 1: SIGNAL
    # ------------------------------------------------------------------ #

    async def _signal(self) -> None:
        self._shutdown_event.set()
        if self._sweeper is not None:
            await self._sweeper.stop()

    # ------------------------------------------------------------------ #
    # Step 2: RESOLVE
    # ------------------------------------------------------------------ #

    def _resolve(self) -> int:
        if self._approvals is None:
            return 0
        return self._approvals.cleanup()

    # ------------------------------------------------------------------ #
    # Step 3: KILL
    # ------------------------------------------------------------------ #

    async def _kill(self) -> int:
        try:
            killed = await self._orchestrator.shutdown(timeout=self.KILL_TIMEOUT)
        except Exception:
            logger.exception("Error stopping running tasks")
            return 0
        if killed:
            self._echo(f"Stopped {killed} running task(s).")
        return killed

    # ------------------------------------------------------------------ #
    # Step 4: CLOSE
    # ------------------------------------------------------------------ #

    def _close(self, reason: EndReason, resolved: int, killed: int) -> None:
        try:
            self._orchestrator.registry.close()
        except Exception:
            logger.exception("Error closing session registry")

        summary_parts = [
            f"\nRelay stopped ({reason})",
            _format_duration(time.monotonic() - self._start_time),
            f"{killed} task(s) killed",
            f"{resolved} approval(s) denied",
        ]
        if self._recorder is not None:
            self._recorder.end(reason)
            summary_parts.append(f"{self._recorder.event_count} events")

        self._echo(" | ".join(summary_parts))
        if self._recorder is not None and self._recorder.path is not None:
            self._echo(f"Log: {self._recorder.path}")

    def _echo(self, message: str) -> None:
        if not self._quiet:
            click.echo(message)

"""ApprovalEngine — human-in-the-loop decisions for tool use."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any, Literal

from chatrelay.approval.channel import ApprovalChannel
from chatrelay.approval.models import ApprovalDecision, Behavior, PendingApproval
from chatrelay.approval.tools import generate_request_id, requires_approval
from chatrelay.config.models import ApprovalConfig
from chatrelay.session.models import ApprovalEvent
from chatrelay.session.recorder import ActivityRecorder

logger = logging.getLogger(__name__)

ResolutionSource = Literal[
    "safe", "auto", "no_context", "user", "timeout", "send_failure", "shutdown"
]

_SHUTDOWN_MESSAGE = "Approval engine shutting down"


class ApprovalEngine:
    """Decides whether a tool call may proceed.

    Classification, first match wins:

    1. read-only tools are allowed immediately;
    2. operator auto-approved tools are allowed immediately;
    3. requests without a context are decided by the channel's
       ``handle_no_context``;
    4. everything else waits for a human via the channel, bounded by
       the approval timeout.

    Every pending request is settled exactly once.  The external answer
    (:meth:`resolve`), the timer, send failures and :meth:`cleanup` all go
    through :meth:`_settle`, which removes the entry before resolving, so
    whichever arrives second finds nothing to do.

    The tool input is never inspected; it is passed back unchanged as
    ``updated_input`` on approval.
    """

    def __init__(
        self,
        channel: ApprovalChannel,
        timeout: float = 300.0,
        default_on_timeout: Behavior = "deny",
        auto_approve_tools: Iterable[str] = (),
        recorder: ActivityRecorder | None = None,
    ) -> None:
        self._channel = channel
        self._timeout = timeout
        self._default_on_timeout: Behavior = default_on_timeout
        self._auto_approve = frozenset(auto_approve_tools)
        self._recorder = recorder
        self._pending: dict[str, PendingApproval] = {}
        self._hook_tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def from_config(
        cls,
        channel: ApprovalChannel,
        config: ApprovalConfig,
        recorder: ActivityRecorder | None = None,
    ) -> ApprovalEngine:
        return cls(
            channel,
            timeout=config.timeout,
            default_on_timeout=config.default_on_timeout,
            auto_approve_tools=config.auto_approve_tools,
            recorder=recorder,
        )

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_pending(self, request_id: str) -> PendingApproval | None:
        """Look up an outstanding request (channels use this to authorize responders)."""
        return self._pending.get(request_id)

    # ------------------------------------------------------------------ #
    # Requests
    # ------------------------------------------------------------------ #

    async def request_approval(
        self, tool_name: str, tool_input: Any, context: Any = None
    ) -> ApprovalDecision:
        """Return the decision for one tool call, waiting for a human if needed."""
        if not requires_approval(tool_name):
            decision = ApprovalDecision.allow(tool_input)
            self._record(None, tool_name, decision, "safe")
            return decision

        if tool_name in self._auto_approve:
            decision = ApprovalDecision.allow(tool_input)
            self._record(None, tool_name, decision, "auto")
            return decision

        if context is None:
            decision = await self._channel.handle_no_context(tool_name, tool_input)
            self._record(None, tool_name, decision, "no_context")
            return decision

        return await self._request_interactive(tool_name, tool_input, context)

    async def _request_interactive(
        self, tool_name: str, tool_input: Any, context: Any
    ) -> ApprovalDecision:
        loop = asyncio.get_running_loop()
        request_id = generate_request_id()
        future: asyncio.Future[ApprovalDecision] = loop.create_future()
        pending = self._channel.create_pending_approval(
            request_id, tool_name, tool_input, context, future
        )
        self._pending[request_id] = pending
        if self._timeout > 0:
            pending.timer = loop.call_later(self._timeout, self._handle_timeout, request_id)

        logger.info("Approval %s requested for %s", request_id, tool_name)

        try:
            await self._channel.send_approval_request(pending)
        except Exception as exc:
            logger.error("Failed to send approval request %s: %s", request_id, exc)
            if self._discard(request_id) is not None:
                decision = await self._send_failure_decision(pending, exc)
                self._finish(pending, decision, "send_failure")

        try:
            return await future
        except asyncio.CancelledError:
            self._discard(request_id)
            raise

    async def _send_failure_decision(
        self, pending: PendingApproval, error: Exception
    ) -> ApprovalDecision:
        try:
            return await self._channel.handle_send_failure(pending, error)
        except Exception:
            logger.exception("handle_send_failure failed for %s", pending.request_id)
            return ApprovalDecision.deny("Failed to send approval request")

    # ------------------------------------------------------------------ #
    # Resolution
    # ------------------------------------------------------------------ #

    def resolve(self, request_id: str, approved: bool, message: str | None = None) -> bool:
        """Apply a human answer.  Unknown or already settled ids are ignored.

        Returns True if this call settled the request.
        """
        pending = self._pending.get(request_id)
        if pending is None:
            logger.debug("No pending approval for %s", request_id)
            return False
        if approved:
            decision = ApprovalDecision.allow(pending.input, message)
        else:
            decision = ApprovalDecision.deny(message or "Denied by user")
        return self._settle(request_id, decision, "user")

    def _handle_timeout(self, request_id: str) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        behavior = self._default_on_timeout
        decision = ApprovalDecision(
            behavior=behavior,
            updated_input=pending.input if behavior == "allow" else None,
            message=f"Timed out after {self._timeout:g}s, defaulted to {behavior}",
        )
        if not self._settle(request_id, decision, "timeout"):
            return
        logger.info("Approval %s for %s timed out (%s)", request_id, pending.tool_name, behavior)
        task = asyncio.create_task(self._notify_timeout(pending, decision))
        self._hook_tasks.add(task)
        task.add_done_callback(self._hook_tasks.discard)

    async def _notify_timeout(self, pending: PendingApproval, decision: ApprovalDecision) -> None:
        try:
            await self._channel.on_approval_timeout(pending, decision)
        except Exception:
            logger.exception("Timeout hook failed for %s", pending.request_id)

    def _settle(
        self, request_id: str, decision: ApprovalDecision, source: ResolutionSource
    ) -> bool:
        pending = self._discard(request_id)
        if pending is None:
            return False
        self._finish(pending, decision, source)
        return True

    def _discard(self, request_id: str) -> PendingApproval | None:
        """Remove *request_id* and stop its timer.  Returns the removed entry."""
        pending = self._pending.pop(request_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None
        return pending

    def _finish(
        self, pending: PendingApproval, decision: ApprovalDecision, source: ResolutionSource
    ) -> None:
        if not pending.future.done():
            pending.future.set_result(decision)
        self._record(pending.request_id, pending.tool_name, decision, source)

    def _record(
        self,
        request_id: str | None,
        tool_name: str,
        decision: ApprovalDecision,
        source: ResolutionSource,
    ) -> None:
        if self._recorder is None:
            return
        self._recorder.record(
            ApprovalEvent(
                ts="",
                seq=0,
                request_id=request_id,
                tool=tool_name,
                behavior=decision.behavior,
                via=source,
            )
        )

    # ------------------------------------------------------------------ #
    # Shutdown
    # ------------------------------------------------------------------ #

    def cleanup(self) -> int:
        """Stop all timers, deny every outstanding request and cancel timeout hooks.

        Returns the number of requests that were force-resolved.
        """
        resolved = 0
        for request_id in list(self._pending):
            if self._settle(request_id, ApprovalDecision.deny(_SHUTDOWN_MESSAGE), "shutdown"):
                resolved += 1
        for task in list(self._hook_tasks):
            task.cancel()
        self._hook_tasks.clear()
        if resolved:
            logger.info("Force-resolved %d pending approval(s) at shutdown", resolved)
        return resolved

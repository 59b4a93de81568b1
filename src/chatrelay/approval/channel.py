"""Approval channel capability — how a messaging surface asks a human."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from chatrelay.approval.models import ApprovalDecision, PendingApproval
from chatrelay.approval.tools import is_dangerous_tool

logger = logging.getLogger(__name__)

#: (request_id, tool_name, tool_input, context, dangerous) -> None
ApprovalNotifier = Callable[[str, str, Any, Any, bool], Awaitable[None]]


@runtime_checkable
class ApprovalChannel(Protocol):
    """Capabilities a messaging surface supplies to the approval engine.

    The channel renders a pending request on its medium, checks that the
    person answering is allowed to answer for the request's context, and
    reports the answer back through ``ApprovalEngine.resolve``.
    """

    def create_pending_approval(
        self,
        request_id: str,
        tool_name: str,
        tool_input: Any,
        context: Any,
        future: asyncio.Future[ApprovalDecision],
    ) -> PendingApproval:
        """Build the record the engine stores while waiting."""
        ...

    async def send_approval_request(self, pending: PendingApproval) -> None:
        """Present *pending* to a human.  Raising means delivery failed."""
        ...

    async def handle_send_failure(
        self, pending: PendingApproval, error: Exception
    ) -> ApprovalDecision:
        """Decide on behalf of a request that could not be delivered."""
        ...

    async def handle_no_context(self, tool_name: str, tool_input: Any) -> ApprovalDecision:
        """Decide for a request that arrived without a conversation context."""
        ...

    async def on_approval_timeout(
        self, pending: PendingApproval, decision: ApprovalDecision
    ) -> None:
        """Withdraw or update a prompt nobody answered in time."""
        ...


class BaseApprovalChannel:
    """Conservative defaults: deny whenever no human can be asked.

    Subclasses must implement :meth:`send_approval_request`.
    """

    #: Surface name used in log lines and denial messages.
    name = "channel"

    def create_pending_approval(
        self,
        request_id: str,
        tool_name: str,
        tool_input: Any,
        context: Any,
        future: asyncio.Future[ApprovalDecision],
    ) -> PendingApproval:
        return PendingApproval(
            request_id=request_id,
            tool_name=tool_name,
            input=tool_input,
            context=context,
            future=future,
        )

    async def send_approval_request(self, pending: PendingApproval) -> None:
        raise NotImplementedError

    async def handle_send_failure(
        self, pending: PendingApproval, error: Exception
    ) -> ApprovalDecision:
        return ApprovalDecision.deny(f"Failed to send approval request to {self.name}")

    async def handle_no_context(self, tool_name: str, tool_input: Any) -> ApprovalDecision:
        return ApprovalDecision.deny(f"No {self.name} context available")

    async def on_approval_timeout(
        self, pending: PendingApproval, decision: ApprovalDecision
    ) -> None:
        logger.info(
            "%s: approval %s for %s expired (%s)",
            self.name,
            pending.request_id,
            pending.tool_name,
            decision.behavior,
        )


class NotifierApprovalChannel(BaseApprovalChannel):
    """Forwards pending approvals to an async notifier callable.

    Suits surfaces whose delivery is a single call (push a message, post
    a webhook).  The surface later answers via ``ApprovalEngine.resolve``.
    An optional *on_expired* callable is awaited when a prompt times out.
    """

    def __init__(
        self,
        notifier: ApprovalNotifier,
        name: str = "notifier",
        on_expired: Callable[[PendingApproval, ApprovalDecision], Awaitable[None]]
        | None = None,
    ) -> None:
        self.name = name
        self._notifier = notifier
        self._on_expired = on_expired

    async def send_approval_request(self, pending: PendingApproval) -> None:
        await self._notifier(
            pending.request_id,
            pending.tool_name,
            pending.input,
            pending.context,
            is_dangerous_tool(pending.tool_name),
        )

    async def on_approval_timeout(
        self, pending: PendingApproval, decision: ApprovalDecision
    ) -> None:
        await super().on_approval_timeout(pending, decision)
        if self._on_expired is not None:
            await self._on_expired(pending, decision)

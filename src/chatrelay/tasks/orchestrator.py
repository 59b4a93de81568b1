"""TaskOrchestrator — runs one assistant process per session key.

Wires the registry, the guard and the launcher together: every request
reserves its key, resumes the last known external session, streams the
process's events to an optional :class:`TaskListener`, and on the
terminal event stores the session, bounds the result for the target
platform and frees the key.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from chatrelay.approval.channel import ApprovalChannel
from chatrelay.approval.engine import ApprovalEngine
from chatrelay.approval.models import ApprovalDecision
from chatrelay.config.models import RelayConfig
from chatrelay.constants import RESULT_FILENAME, TextCallback
from chatrelay.helpers import Callback, invoke_callback, record_error
from chatrelay.process.events import AssistantEvent, InitEvent, ResultEvent, ToolResultEvent
from chatrelay.process.runner import (
    DEFAULT_TIMEOUT,
    CommandSpec,
    ProcessCallbacks,
    ProcessLauncher,
    TaskHandle,
)
from chatrelay.session.models import (
    TaskDoneEvent,
    TaskProgressEvent,
    TaskStartEvent,
    ToolCallEvent,
)
from chatrelay.session.recorder import ActivityRecorder
from chatrelay.session.registry import SessionRegistry
from chatrelay.tasks.guard import TaskGuard
from chatrelay.truncation import TruncateResult, bound_and_persist

logger = logging.getLogger(__name__)

CommandBuilder = Callable[[str | None], CommandSpec]
"""Builds the command for a task, given the session id to resume (or None)."""


class ToolCall(BaseModel):
    """One tool invocation seen in the stream."""

    id: str = ""
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class TaskResult(BaseModel):
    """What a finished task produced, ready for a messaging surface."""

    session_key: str
    session_id: str | None = None
    success: bool
    subtype: str
    text: str = Field(description="Result text, bounded for the target platform")
    last_assistant_text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    num_turns: int = 0
    cost_usd: float | None = None
    duration_ms: int | None = None
    was_truncated: bool = False
    saved_path: str | None = None


@dataclass
class TaskListener:
    """Optional per-task hooks for a messaging surface.  Each may be sync or async.

    ``on_failure`` receives a human-readable message for spawn errors,
    stream errors, nonzero exits and timeouts.  ``on_close`` always fires
    last, with the process exit code.
    """

    on_init: Callback | None = None
    on_text: TextCallback | None = None
    on_tool_use: Callback | None = None
    on_tool_result: Callback | None = None
    on_result: Callback | None = None
    on_failure: TextCallback | None = None
    on_stderr: TextCallback | None = None
    on_close: Callback | None = None


class TaskOrchestrator:
    """Single-flight task execution per session key.

    All state lives on the instance.  Construct one per process lifetime
    and hand it to every messaging surface.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        guard: TaskGuard | None = None,
        launcher: ProcessLauncher | None = None,
        *,
        task_timeout: float = DEFAULT_TIMEOUT,
        platform_limits: Mapping[str, int] | None = None,
        result_filename: str = RESULT_FILENAME,
        recorder: ActivityRecorder | None = None,
        approvals: ApprovalEngine | None = None,
    ) -> None:
        self.registry = registry
        self.guard = guard or TaskGuard()
        self._launcher = launcher or ProcessLauncher()
        self._task_timeout = task_timeout
        self._platform_limits = platform_limits
        self._result_filename = result_filename
        self._recorder = recorder
        self._approvals = approvals
        self._handles: set[TaskHandle] = set()

    @classmethod
    def from_config(
        cls,
        config: RelayConfig,
        registry: SessionRegistry,
        recorder: ActivityRecorder | None = None,
        launcher: ProcessLauncher | None = None,
        channel: ApprovalChannel | None = None,
    ) -> TaskOrchestrator:
        """Build an orchestrator; *channel*, if given, gets an approval engine."""
        approvals = None
        if channel is not None:
            approvals = ApprovalEngine.from_config(channel, config.approval, recorder)
        return cls(
            registry,
            launcher=launcher or ProcessLauncher(kill_grace=config.tasks.kill_grace),
            task_timeout=config.tasks.timeout,
            platform_limits=config.truncation.limits,
            result_filename=config.truncation.filename,
            recorder=recorder,
            approvals=approvals,
        )

    @property
    def recorder(self) -> ActivityRecorder | None:
        return self._recorder

    @property
    def approvals(self) -> ApprovalEngine | None:
        return self._approvals

    def is_active(self, session_key: str) -> bool:
        return self.guard.is_active(session_key)

    async def request_approval(
        self, session_key: str, tool_name: str, tool_input: Any
    ) -> ApprovalDecision:
        """Decide whether the task for *session_key* may run *tool_name*.

        The session key is the approval context while a task runs there.
        Requests for an idle key get the channel's no-context decision.
        """
        if self._approvals is None:
            msg = "No approval channel configured"
            raise RuntimeError(msg)
        context = session_key if self.guard.is_active(session_key) else None
        return await self._approvals.request_approval(tool_name, tool_input, context)

    def answer_approval(
        self,
        session_key: str,
        request_id: str,
        approved: bool,
        message: str | None = None,
    ) -> bool:
        """Apply an answer given in *session_key*'s conversation.

        Answers to requests raised for another session key are ignored.
        """
        if self._approvals is None:
            return False
        pending = self._approvals.get_pending(request_id)
        if pending is None:
            return False
        if pending.context != session_key:
            logger.warning(
                "%s: ignoring answer to approval %s raised for %s",
                session_key,
                request_id,
                pending.context,
            )
            return False
        return self._approvals.resolve(request_id, approved, message)

    async def run_task(
        self,
        session_key: str,
        build_command: CommandBuilder,
        *,
        label: str = "",
        listener: TaskListener | None = None,
        platform: str | None = None,
        persist_dir: str | Path | None = None,
        cwd: str | None = None,
        resume: bool = True,
    ) -> TaskHandle:
        """Start a task for *session_key*, preempting any task already running there.

        *build_command* receives the external session id to resume (None
        for a fresh session).  Returns as soon as the process is spawned;
        results arrive through *listener*.
        """
        session_id = self.registry.get(session_key) if resume else None
        generation = self.guard.reserve(session_key, session_id)

        try:
            command = build_command(session_id)
        except Exception:
            self.guard.release(session_key, generation)
            raise

        run = _TaskRun(
            self,
            session_key,
            generation,
            label=label,
            listener=listener or TaskListener(),
            platform=platform,
            persist_dir=Path(persist_dir or cwd or Path.cwd()),
        )
        try:
            handle = await self._launcher.run(
                command,
                run.callbacks(),
                self._task_timeout,
                cwd=cwd,
                label=session_key,
            )
        except BaseException:
            self.guard.release(session_key, generation)
            raise
        # A failed spawn has already released the key through on_error.
        if handle.running:
            self._handles.add(handle)
            run.handle = handle
            self.guard.attach(session_key, handle, generation)

        self._record(
            TaskStartEvent(
                ts="",
                seq=0,
                session_key=session_key,
                resume_session_id=session_id,
                pid=handle.pid,
            )
        )
        return handle

    def cancel(self, session_key: str) -> bool:
        """Kill the task running for *session_key*, if any."""
        cancelled = self.guard.cancel(session_key)
        if cancelled:
            logger.info("%s: task cancelled", session_key)
        return cancelled

    def clear_session(self, session_key: str) -> bool:
        """Cancel any running task and forget the stored external session."""
        self.cancel(session_key)
        return self.registry.clear(session_key)

    async def shutdown(self, timeout: float = 10.0) -> int:
        """Kill every running task and wait up to *timeout* for them to exit.

        Returns the number of tasks that were killed.
        """
        killed = self.guard.kill_all()
        handles = list(self._handles)
        if handles:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(h.wait() for h in handles)),
                    timeout=timeout,
                )
            except TimeoutError:
                logger.warning("%d task(s) still running after %.1fs", len(self._handles), timeout)
        return killed

    def _forget(self, handle: TaskHandle | None) -> None:
        if handle is not None:
            self._handles.discard(handle)

    def _record(self, event: Any) -> None:
        if self._recorder is not None:
            self._recorder.record(event)


class _TaskRun:
    """Per-task state and the callbacks handed to the launcher."""

    def __init__(
        self,
        orchestrator: TaskOrchestrator,
        session_key: str,
        generation: int,
        *,
        label: str,
        listener: TaskListener,
        platform: str | None,
        persist_dir: Path,
    ) -> None:
        self._orch = orchestrator
        self._key = session_key
        self._generation = generation
        self._label = label
        self._listener = listener
        self._platform = platform
        self._persist_dir = persist_dir
        self._started = time.monotonic()

        self.handle: TaskHandle | None = None
        self.session_id: str | None = None
        self.last_text = ""
        self.tool_calls: list[ToolCall] = []
        self._finished = False

    def callbacks(self) -> ProcessCallbacks:
        return ProcessCallbacks(
            on_init=self._on_init,
            on_assistant_message=self._on_assistant_message,
            on_tool_result=self._on_tool_result,
            on_result=self._on_result,
            on_error=self._on_error,
            on_stderr=self._on_stderr,
            on_timeout=self._on_timeout,
            on_close=self._on_close,
        )

    # ------------------------------------------------------------------ #
    # Stream events
    # ------------------------------------------------------------------ #

    async def _on_init(self, event: InitEvent) -> None:
        self._remember_session(event.session_id)
        self._orch._record(
            TaskProgressEvent(ts="", seq=0, session_key=self._key, status="initialized")
        )
        await self._notify("on_init", event)

    async def _on_assistant_message(self, event: AssistantEvent) -> None:
        self._remember_session(event.session_id)
        text = event.text
        if text:
            self.last_text = text
            await self._notify("on_text", text)
        for block in event.tool_uses:
            self.tool_calls.append(ToolCall(id=block.id, name=block.name, input=block.input))
            self._orch._record(
                ToolCallEvent(
                    ts="",
                    seq=0,
                    session_key=self._key,
                    tool=block.name,
                    args=block.input,
                )
            )
            await self._notify("on_tool_use", block)

    async def _on_tool_result(self, event: ToolResultEvent) -> None:
        for block in event.results:
            await self._notify("on_tool_result", block)

    async def _on_result(self, event: ResultEvent) -> None:
        self._remember_session(event.session_id)
        full_text = event.result if event.result is not None else self.last_text
        bounded = self._bound(full_text)

        result = TaskResult(
            session_key=self._key,
            session_id=self.session_id,
            success=event.success,
            subtype=event.subtype,
            text=bounded.text,
            last_assistant_text=self.last_text,
            tool_calls=list(self.tool_calls),
            num_turns=event.num_turns,
            cost_usd=event.total_cost_usd,
            duration_ms=event.duration_ms,
            was_truncated=bounded.was_truncated,
            saved_path=str(bounded.saved_path) if bounded.saved_path else None,
        )
        self._finish(
            "success" if event.success else "failed",
            num_turns=event.num_turns,
            cost_usd=event.total_cost_usd,
            truncated=bounded.was_truncated,
        )
        await self._notify("on_result", result)

    async def _on_error(self, error: Exception) -> None:
        record_error(self._orch.recorder, self._key, str(error), logger=logger)
        self._finish("failed")
        await self._notify("on_failure", str(error))

    async def _on_timeout(self) -> None:
        self._finish("timeout")
        await self._notify("on_failure", "Task timed out")

    async def _on_stderr(self, text: str) -> None:
        logger.debug("%s: stderr: %s", self._key, text.rstrip())
        await self._notify("on_stderr", text)

    async def _on_close(self, returncode: int | None) -> None:
        # No terminal event: either killed by a signal or exited without a result.
        killed = returncode is None or returncode < 0
        self._finish("cancelled" if killed else "failed")
        self._orch._forget(self.handle)
        await self._notify("on_close", returncode)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    @property
    def _current(self) -> bool:
        return self._orch.guard.is_current(self._key, self._generation)

    def _remember_session(self, session_id: str | None) -> None:
        if not session_id:
            return
        self.session_id = session_id
        # A preempted task must not overwrite the session of its replacement.
        if self._current:
            self._orch.registry.set(self._key, session_id, self._label)

    def _bound(self, text: str) -> TruncateResult:
        if self._platform is None:
            return TruncateResult(text=text, was_truncated=False)
        return bound_and_persist(
            text,
            self._platform,
            self._persist_dir,
            limits=self._orch._platform_limits,
            filename=self._orch._result_filename,
        )

    def _finish(
        self,
        outcome: str,
        *,
        num_turns: int | None = None,
        cost_usd: float | None = None,
        truncated: bool = False,
    ) -> None:
        """Release the key and record the outcome.  Only the first call counts."""
        if self._finished:
            return
        self._finished = True
        self._orch.guard.release(self._key, self._generation)
        self._orch._record(
            TaskDoneEvent(
                ts="",
                seq=0,
                session_key=self._key,
                outcome=outcome,
                num_turns=num_turns,
                cost_usd=cost_usd,
                truncated=truncated,
            )
        )
        logger.info("%s: task finished (%s)", self._key, outcome)

    async def _notify(self, name: str, *args: Any) -> None:
        await invoke_callback(
            getattr(self._listener, name), *args, label=self._key, name=name
        )

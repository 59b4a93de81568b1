"""Tests for the task orchestrator: session resumption, single-flight and results."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from chatrelay.approval import ApprovalEngine, BaseApprovalChannel, PendingApproval
from chatrelay.config.models import RelayConfig
from chatrelay.process.events import parse_event
from chatrelay.process.runner import ProcessCallbacks, ProcessExitError, TaskHandle
from chatrelay.session.recorder import ActivityRecorder
from chatrelay.session.registry import SessionRegistry
from chatrelay.tasks import TaskListener, TaskOrchestrator, TaskResult

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


class FakeHandle:
    """A running task whose exit the test controls."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self._exited = asyncio.Event()
        self.kill = MagicMock(side_effect=self._exited.set)

    @property
    def running(self) -> bool:
        return not self._exited.is_set()

    async def wait(self) -> int | None:
        await self._exited.wait()
        return -15


@dataclass
class Launch:
    command: Any
    callbacks: ProcessCallbacks
    timeout: float | None
    handle: FakeHandle


class FakeLauncher:
    """Records launches instead of spawning processes."""

    def __init__(self, fail: bool = False) -> None:
        self.launches: list[Launch] = []
        self._fail = fail

    async def run(
        self,
        command: Any,
        callbacks: ProcessCallbacks,
        timeout: float | None = None,
        *,
        cwd: str | None = None,
        label: str = "task",
    ) -> Any:
        if self._fail:
            await callbacks.on_error(FileNotFoundError("assistant: not found"))
            return TaskHandle()
        handle = FakeHandle(pid=1000 + len(self.launches))
        self.launches.append(Launch(command, callbacks, timeout, handle))
        return handle


class ListenerLog:
    def __init__(self) -> None:
        self.texts: list[str] = []
        self.tools: list[str] = []
        self.results: list[TaskResult] = []
        self.failures: list[str] = []
        self.closed: list[int | None] = []

    def listener(self) -> TaskListener:
        async def on_text(text: str) -> None:
            self.texts.append(text)

        async def on_failure(message: str) -> None:
            self.failures.append(message)

        return TaskListener(
            on_text=on_text,
            on_tool_use=lambda block: self.tools.append(block.name),
            on_result=self.results.append,
            on_failure=on_failure,
            on_close=self.closed.append,
        )


def _init(session_id: str) -> Any:
    return parse_event({"type": "system", "subtype": "init", "session_id": session_id})


def _assistant(session_id: str, text: str = "", tool: str | None = None) -> Any:
    content: list[dict[str, Any]] = []
    if text:
        content.append({"type": "text", "text": text})
    if tool:
        content.append({"type": "tool_use", "id": "tu_1", "name": tool, "input": {"x": 1}})
    return parse_event({"type": "assistant", "session_id": session_id, "message": {"content": content}})


def _result(session_id: str, result: str | None = "done", subtype: str = "success") -> Any:
    data: dict[str, Any] = {
        "type": "result",
        "subtype": subtype,
        "session_id": session_id,
        "num_turns": 2,
        "total_cost_usd": 0.01,
    }
    if result is not None:
        data["result"] = result
    return parse_event(data)


def _make(
    launcher: FakeLauncher | None = None, **kwargs: Any
) -> tuple[TaskOrchestrator, SessionRegistry, FakeLauncher]:
    registry = SessionRegistry()
    launcher = launcher or FakeLauncher()
    orchestrator = TaskOrchestrator(registry, launcher=launcher, **kwargs)  # type: ignore[arg-type]
    return orchestrator, registry, launcher


def _argv(session_id: str | None) -> list[str]:
    argv = ["assistant", "-p", "hello"]
    if session_id:
        argv += ["--resume", session_id]
    return argv


# ------------------------------------------------------------------ #
# Session resumption
# ------------------------------------------------------------------ #


class TestResume:
    async def test_stored_session_is_resumed(self) -> None:
        orchestrator, registry, launcher = _make()
        registry.set("k1", "sess-old")

        await orchestrator.run_task("k1", _argv)

        assert launcher.launches[0].command == ["assistant", "-p", "hello", "--resume", "sess-old"]

    async def test_fresh_session_without_record(self) -> None:
        orchestrator, _registry, launcher = _make()
        await orchestrator.run_task("k1", _argv)
        assert launcher.launches[0].command == ["assistant", "-p", "hello"]

    async def test_resume_disabled(self) -> None:
        orchestrator, registry, launcher = _make()
        registry.set("k1", "sess-old")
        await orchestrator.run_task("k1", _argv, resume=False)
        assert "--resume" not in launcher.launches[0].command

    async def test_task_timeout_passed_to_launcher(self) -> None:
        orchestrator, _registry, launcher = _make(task_timeout=12.5)
        await orchestrator.run_task("k1", _argv)
        assert launcher.launches[0].timeout == 12.5


# ------------------------------------------------------------------ #
# Full task flow
# ------------------------------------------------------------------ #


class TestTaskFlow:
    async def test_events_update_registry_and_listener(self) -> None:
        orchestrator, registry, launcher = _make()
        log = ListenerLog()

        await orchestrator.run_task("k1", _argv, label="#general", listener=log.listener())
        assert orchestrator.is_active("k1")
        cb = launcher.launches[0].callbacks

        await cb.on_init(_init("sess-1"))
        assert registry.get("k1") == "sess-1"
        assert registry.get_record("k1").context_label == "#general"  # type: ignore[union-attr]

        await cb.on_assistant_message(_assistant("sess-1", text="Running ls", tool="Bash"))
        await cb.on_result(_result("sess-2"))

        assert registry.get("k1") == "sess-2"
        assert orchestrator.is_active("k1") is False
        assert log.texts == ["Running ls"]
        assert log.tools == ["Bash"]

        (result,) = log.results
        assert result.success is True
        assert result.text == "done"
        assert result.session_id == "sess-2"
        assert result.num_turns == 2
        assert result.cost_usd == 0.01
        assert result.last_assistant_text == "Running ls"
        assert [t.name for t in result.tool_calls] == ["Bash"]
        assert result.tool_calls[0].input == {"x": 1}

    async def test_result_falls_back_to_last_text(self) -> None:
        orchestrator, _registry, launcher = _make()
        log = ListenerLog()
        await orchestrator.run_task("k1", _argv, listener=log.listener())
        cb = launcher.launches[0].callbacks

        await cb.on_assistant_message(_assistant("s", text="partial answer"))
        await cb.on_result(_result("s", result=None, subtype="error_max_turns"))

        (result,) = log.results
        assert result.success is False
        assert result.subtype == "error_max_turns"
        assert result.text == "partial answer"

    async def test_result_bounded_for_platform(self, tmp_path: Path) -> None:
        orchestrator, _registry, launcher = _make(platform_limits={"chat": 100})
        log = ListenerLog()
        await orchestrator.run_task(
            "k1", _argv, listener=log.listener(), platform="chat", persist_dir=tmp_path
        )
        long_text = "x" * 500
        await launcher.launches[0].callbacks.on_result(_result("s", result=long_text))

        (result,) = log.results
        assert result.was_truncated is True
        assert len(result.text) <= 100
        assert result.saved_path == str(tmp_path / ".claude-result.md")
        assert (tmp_path / ".claude-result.md").read_text(encoding="utf-8") == long_text

    async def test_no_platform_no_truncation(self, tmp_path: Path) -> None:
        orchestrator, _registry, launcher = _make(platform_limits={"chat": 10})
        log = ListenerLog()
        await orchestrator.run_task("k1", _argv, listener=log.listener(), persist_dir=tmp_path)
        await launcher.launches[0].callbacks.on_result(_result("s", result="y" * 50))

        assert log.results[0].was_truncated is False
        assert not (tmp_path / ".claude-result.md").exists()

    async def test_close_after_result_fires_listener(self) -> None:
        orchestrator, _registry, launcher = _make()
        log = ListenerLog()
        await orchestrator.run_task("k1", _argv, listener=log.listener())
        cb = launcher.launches[0].callbacks

        await cb.on_result(_result("s"))
        await cb.on_close(0)
        assert log.closed == [0]


# ------------------------------------------------------------------ #
# Failures
# ------------------------------------------------------------------ #


class TestFailures:
    async def test_error_releases_and_notifies(self) -> None:
        orchestrator, _registry, launcher = _make()
        log = ListenerLog()
        await orchestrator.run_task("k1", _argv, listener=log.listener())

        await launcher.launches[0].callbacks.on_error(ProcessExitError(1, "boom"))

        assert orchestrator.is_active("k1") is False
        assert log.failures == ["Process exited with code 1. Stderr:\n  boom"]

    async def test_timeout_releases_and_notifies(self) -> None:
        orchestrator, _registry, launcher = _make()
        log = ListenerLog()
        await orchestrator.run_task("k1", _argv, listener=log.listener())

        await launcher.launches[0].callbacks.on_timeout()

        assert orchestrator.is_active("k1") is False
        assert log.failures == ["Task timed out"]

    async def test_spawn_failure_frees_key(self) -> None:
        orchestrator, _registry, _launcher = _make(FakeLauncher(fail=True))
        log = ListenerLog()

        handle = await orchestrator.run_task("k1", _argv, listener=log.listener())

        assert handle.pid is None
        assert orchestrator.is_active("k1") is False
        assert log.failures == ["assistant: not found"]

    async def test_command_builder_error_frees_key(self) -> None:
        orchestrator, _registry, launcher = _make()

        def broken(_session_id: str | None) -> list[str]:
            raise ValueError("bad prompt")

        with pytest.raises(ValueError, match="bad prompt"):
            await orchestrator.run_task("k1", broken)
        assert orchestrator.is_active("k1") is False
        assert launcher.launches == []

    async def test_invalid_argv_frees_key(self) -> None:
        orchestrator = TaskOrchestrator(SessionRegistry())
        log = ListenerLog()

        handle = await orchestrator.run_task(
            "k1", lambda _sid: ["ec\0ho"], listener=log.listener()
        )

        assert handle.pid is None
        assert orchestrator.is_active("k1") is False
        assert len(log.failures) == 1

    async def test_launcher_exception_frees_key(self) -> None:
        launcher = FakeLauncher()

        async def explode(*_args: Any, **_kwargs: Any) -> Any:
            raise RuntimeError("launcher bug")

        launcher.run = explode  # type: ignore[method-assign]
        orchestrator, _registry, _launcher = _make(launcher)

        with pytest.raises(RuntimeError, match="launcher bug"):
            await orchestrator.run_task("k1", _argv)
        assert orchestrator.is_active("k1") is False

    async def test_failing_listener_does_not_break_flow(self) -> None:
        orchestrator, registry, launcher = _make()

        def explode(_result: TaskResult) -> None:
            raise RuntimeError("surface bug")

        await orchestrator.run_task("k1", _argv, listener=TaskListener(on_result=explode))
        await launcher.launches[0].callbacks.on_result(_result("sess-9"))

        assert registry.get("k1") == "sess-9"
        assert orchestrator.is_active("k1") is False


# ------------------------------------------------------------------ #
# Single-flight
# ------------------------------------------------------------------ #


class TestSingleFlight:
    async def test_second_task_preempts_first(self) -> None:
        orchestrator, _registry, launcher = _make()
        await orchestrator.run_task("k1", _argv)
        await orchestrator.run_task("k1", _argv)

        first, second = launcher.launches
        first.handle.kill.assert_called_once()
        second.handle.kill.assert_not_called()
        assert orchestrator.is_active("k1")

    async def test_preempted_task_cannot_release_replacement(self) -> None:
        orchestrator, _registry, launcher = _make()
        await orchestrator.run_task("k1", _argv)
        await orchestrator.run_task("k1", _argv)
        first = launcher.launches[0]

        await first.callbacks.on_close(-15)

        assert orchestrator.is_active("k1") is True

    async def test_preempted_task_does_not_overwrite_session(self) -> None:
        orchestrator, registry, launcher = _make()
        await orchestrator.run_task("k1", _argv)
        await orchestrator.run_task("k1", _argv)
        first, second = launcher.launches

        await second.callbacks.on_init(_init("sess-new"))
        await first.callbacks.on_result(_result("sess-stale"))

        assert registry.get("k1") == "sess-new"
        assert orchestrator.is_active("k1") is True

    async def test_keys_run_independently(self) -> None:
        orchestrator, _registry, launcher = _make()
        await orchestrator.run_task("k1", _argv)
        await orchestrator.run_task("k2", _argv)

        assert all(not launch.handle.kill.called for launch in launcher.launches)
        assert orchestrator.is_active("k1") and orchestrator.is_active("k2")


# ------------------------------------------------------------------ #
# Cancel, clear and shutdown
# ------------------------------------------------------------------ #


class TestControl:
    async def test_cancel(self) -> None:
        orchestrator, _registry, launcher = _make()
        await orchestrator.run_task("k1", _argv)

        assert orchestrator.cancel("k1") is True
        launcher.launches[0].handle.kill.assert_called_once()
        assert orchestrator.is_active("k1") is False
        assert orchestrator.cancel("k1") is False

    async def test_clear_session(self) -> None:
        orchestrator, registry, launcher = _make()
        registry.set("k1", "sess-1")
        await orchestrator.run_task("k1", _argv)

        assert orchestrator.clear_session("k1") is True
        assert registry.get("k1") is None
        launcher.launches[0].handle.kill.assert_called_once()

    async def test_shutdown_kills_and_waits(self) -> None:
        orchestrator, _registry, launcher = _make()
        await orchestrator.run_task("k1", _argv)
        await orchestrator.run_task("k2", _argv)

        assert await orchestrator.shutdown(timeout=1.0) == 2
        assert all(launch.handle.kill.call_count == 1 for launch in launcher.launches)
        assert orchestrator.guard.active_keys == []

    async def test_from_config(self) -> None:
        config = RelayConfig.model_validate(
            {"tasks": {"timeout": 7}, "truncation": {"limits": {"chat": 50}}}
        )
        launcher = FakeLauncher()
        orchestrator = TaskOrchestrator.from_config(
            config, SessionRegistry(), launcher=launcher  # type: ignore[arg-type]
        )
        await orchestrator.run_task("k1", _argv)
        assert launcher.launches[0].timeout == 7


# ------------------------------------------------------------------ #
# Activity log
# ------------------------------------------------------------------ #


class TestActivityLog:
    async def test_task_lifecycle_recorded(self, tmp_path: Path) -> None:
        recorder = ActivityRecorder(tmp_path)
        orchestrator, _registry, launcher = _make(recorder=recorder)
        await orchestrator.run_task("k1", _argv)
        cb = launcher.launches[0].callbacks

        await cb.on_init(_init("s1"))
        await cb.on_assistant_message(_assistant("s1", tool="Edit"))
        await cb.on_result(_result("s1"))
        await cb.on_close(0)
        recorder.close()

        events = [json.loads(line) for line in recorder.path.read_text().splitlines()]
        types = [e["type"] for e in events]
        assert types == [
            "activity_start",
            "task_start",
            "task_progress",
            "tool_call",
            "task_done",
        ]
        assert events[1]["pid"] == 1000
        assert events[3]["tool"] == "Edit"
        assert events[4]["outcome"] == "success"
        assert events[4]["num_turns"] == 2

    async def test_error_recorded(self, tmp_path: Path) -> None:
        recorder = ActivityRecorder(tmp_path)
        orchestrator, _registry, launcher = _make(recorder=recorder)
        await orchestrator.run_task("k1", _argv)

        await launcher.launches[0].callbacks.on_error(RuntimeError("pipe broke"))
        recorder.close()

        events = [json.loads(line) for line in recorder.path.read_text().splitlines()]
        error = next(e for e in events if e["type"] == "error")
        assert error["session_key"] == "k1"
        assert error["error"] == "pipe broke"
        done = next(e for e in events if e["type"] == "task_done")
        assert done["outcome"] == "failed"


# ------------------------------------------------------------------ #
# Tool approvals
# ------------------------------------------------------------------ #


class QueueChannel(BaseApprovalChannel):
    """Collects approval requests for the test to answer."""

    name = "queue"

    def __init__(self) -> None:
        self.sent: list[PendingApproval] = []

    async def send_approval_request(self, pending: PendingApproval) -> None:
        self.sent.append(pending)


async def _sent(channel: QueueChannel) -> PendingApproval:
    for _ in range(100):
        if channel.sent:
            return channel.sent[0]
        await asyncio.sleep(0)
    raise AssertionError("approval request was never sent")


class TestApprovals:
    def test_from_config_builds_engine_for_channel(self) -> None:
        config = RelayConfig.model_validate({"approval": {"timeout": 42}})
        orchestrator = TaskOrchestrator.from_config(
            config, SessionRegistry(), channel=QueueChannel()
        )
        assert isinstance(orchestrator.approvals, ApprovalEngine)
        assert TaskOrchestrator.from_config(config, SessionRegistry()).approvals is None

    async def test_running_task_uses_session_key_as_context(self) -> None:
        channel = QueueChannel()
        orchestrator, _registry, _launcher = _make(approvals=ApprovalEngine(channel, timeout=5))
        await orchestrator.run_task("k1", _argv)

        waiting = asyncio.create_task(orchestrator.request_approval("k1", "Bash", {"c": 1}))
        pending = await _sent(channel)
        assert pending.context == "k1"

        assert orchestrator.answer_approval("k1", pending.request_id, approved=True)
        decision = await asyncio.wait_for(waiting, 1.0)
        assert decision.behavior == "allow"
        assert decision.updated_input == {"c": 1}

    async def test_answer_from_other_session_ignored(self) -> None:
        channel = QueueChannel()
        engine = ApprovalEngine(channel, timeout=5)
        orchestrator, _registry, _launcher = _make(approvals=engine)
        await orchestrator.run_task("k1", _argv)

        waiting = asyncio.create_task(orchestrator.request_approval("k1", "Bash", {}))
        pending = await _sent(channel)

        assert orchestrator.answer_approval("k2", pending.request_id, approved=True) is False
        assert engine.pending_count == 1

        assert orchestrator.answer_approval("k1", pending.request_id, approved=False)
        decision = await asyncio.wait_for(waiting, 1.0)
        assert decision.behavior == "deny"

    async def test_idle_key_gets_no_context_decision(self) -> None:
        channel = QueueChannel()
        orchestrator, _registry, _launcher = _make(approvals=ApprovalEngine(channel, timeout=5))

        decision = await orchestrator.request_approval("idle", "Bash", {})

        assert decision.behavior == "deny"
        assert decision.message == "No queue context available"
        assert channel.sent == []

    async def test_without_engine(self) -> None:
        orchestrator, _registry, _launcher = _make()
        with pytest.raises(RuntimeError, match="No approval channel"):
            await orchestrator.request_approval("k1", "Bash", {})
        assert orchestrator.answer_approval("k1", "approval_x", approved=True) is False

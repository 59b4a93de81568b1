"""Process launcher — spawns the assistant process and streams its events."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections import deque
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass
from typing import Any

from chatrelay.helpers import Callback, format_stderr_preview, invoke_callback
from chatrelay.process.events import (
    AssistantEvent,
    InitEvent,
    ResultEvent,
    ToolResultEvent,
    parse_event,
)
from chatrelay.process.parser import StreamParser

logger = logging.getLogger(__name__)

#: Default overall task timeout in seconds.
DEFAULT_TIMEOUT = 300.0

#: Seconds to wait after SIGTERM before SIGKILL.
DEFAULT_KILL_GRACE = 5.0

#: Bytes requested per stdout/stderr read.
_CHUNK_SIZE = 65_536

#: Stderr lines kept for error reporting.
_STDERR_TAIL_LINES = 50

CommandSpec = str | Sequence[str]
"""A pre-built command: a shell string or an argv sequence."""


class ProcessExitError(Exception):
    """The process exited nonzero without emitting a result event."""

    def __init__(self, returncode: int, stderr_tail: str = "") -> None:
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        msg = f"Process exited with code {returncode}"
        if stderr_tail:
            msg += f". Stderr:\n  {stderr_tail}"
        super().__init__(msg)


class StreamReadError(Exception):
    """Reading the process's stdout or stderr failed."""


@dataclass
class ProcessCallbacks:
    """Hooks invoked as the process runs.  Each may be sync or async.

    ``on_init``, ``on_assistant_message``, ``on_tool_result`` and
    ``on_result`` receive the typed event; ``on_error`` receives the
    exception; ``on_stderr`` receives raw text; ``on_close`` receives the
    exit code.
    """

    on_init: Callback | None = None
    on_assistant_message: Callback | None = None
    on_tool_result: Callback | None = None
    on_result: Callback | None = None
    on_error: Callback | None = None
    on_stderr: Callback | None = None
    on_timeout: Callback | None = None
    on_close: Callback | None = None


class TaskHandle:
    """Caller-facing control of one running process.

    ``kill()`` only requests termination; await :meth:`wait` (or the
    ``on_close`` callback) for the actual exit.  Repeated or post-exit
    calls are no-ops.
    """

    def __init__(self, supervisor: _Supervisor | None = None) -> None:
        self._supervisor = supervisor

    @property
    def pid(self) -> int | None:
        if self._supervisor is None:
            return None
        return self._supervisor.pid

    @property
    def running(self) -> bool:
        return self._supervisor is not None and not self._supervisor.closed

    def kill(self) -> None:
        if self._supervisor is not None:
            self._supervisor.kill()

    async def wait(self) -> int | None:
        """Wait for the process to exit and return its exit code."""
        if self._supervisor is None:
            return None
        return await self._supervisor.wait()


class _Supervisor:
    """Owns one subprocess: pumps its pipes, times it out, reports its exit."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        callbacks: ProcessCallbacks,
        timeout: float | None,
        kill_grace: float,
        label: str,
    ) -> None:
        self._proc = proc
        self._callbacks = callbacks
        self._timeout = timeout
        self._kill_grace = kill_grace
        self._label = label
        self._parser = StreamParser()
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

        self._terminal = False
        self._kill_requested = False
        self._returncode: int | None = None
        self.closed = False
        self._done = asyncio.Event()

        self._task: asyncio.Task[None] | None = None
        self._timer: asyncio.Task[None] | None = None
        self._escalation: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())
        if self._timeout is not None and self._timeout > 0:
            self._timer = asyncio.create_task(self._watch_timeout())

    async def wait(self) -> int | None:
        await self._done.wait()
        return self._returncode

    # ------------------------------------------------------------------ #
    # Termination
    # ------------------------------------------------------------------ #

    def kill(self) -> None:
        if self.closed or self._kill_requested:
            return
        self._kill_requested = True
        logger.info("%s: kill requested (pid %s)", self._label, self.pid)
        self._cancel_timer()
        self._terminate()

    def _terminate(self) -> None:
        """SIGTERM now, SIGKILL after the grace period if still alive."""
        if self._proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            self._proc.terminate()
        if self._escalation is None:
            self._escalation = asyncio.create_task(self._escalate())

    async def _escalate(self) -> None:
        await asyncio.sleep(self._kill_grace)
        if self._proc.returncode is None and not self.closed:
            logger.warning(
                "%s: pid %s ignored SIGTERM for %.1fs, sending SIGKILL",
                self._label,
                self.pid,
                self._kill_grace,
            )
            with contextlib.suppress(ProcessLookupError):
                self._proc.kill()

    def _cancel_timer(self) -> None:
        timer = self._timer
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()
        self._timer = None

    async def _watch_timeout(self) -> None:
        assert self._timeout is not None
        await asyncio.sleep(self._timeout)
        if self.closed or self._kill_requested or self._terminal:
            return
        self._terminal = True
        logger.warning("%s: timed out after %.1fs, terminating", self._label, self._timeout)
        await self._fire("on_timeout")
        self._terminate()

    # ------------------------------------------------------------------ #
    # Pipes
    # ------------------------------------------------------------------ #

    async def _run(self) -> None:
        try:
            await asyncio.gather(
                self._guarded(self._pump_stdout(), "stdout"),
                self._guarded(self._pump_stderr(), "stderr"),
            )

            returncode = await self._proc.wait()
            self._returncode = returncode
            self._cancel_timer()
            if self._escalation is not None and not self._escalation.done():
                self._escalation.cancel()

            if returncode != 0 and not self._terminal and not self._kill_requested:
                tail = format_stderr_preview("\n".join(self._stderr_tail))
                logger.error(
                    "%s: process exited with code %s before a result",
                    self._label,
                    returncode,
                )
                await self._fail(ProcessExitError(returncode, tail))
            else:
                logger.info("%s: process exited with code %s", self._label, returncode)

            self.closed = True
            await self._fire("on_close", returncode)
        finally:
            self.closed = True
            self._done.set()

    async def _guarded(self, pump: Awaitable[None], stream: str) -> None:
        try:
            await pump
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("%s: error reading %s: %s", self._label, stream, exc)
            await self._fail(StreamReadError(f"Error reading {stream}: {exc}"))

    async def _pump_stdout(self) -> None:
        stdout = self._proc.stdout
        if stdout is None:
            return
        while True:
            chunk = await stdout.read(_CHUNK_SIZE)
            if not chunk:
                break
            for data in self._parser.feed(chunk):
                await self._dispatch(data)
        self._parser.close()

    async def _pump_stderr(self) -> None:
        stderr = self._proc.stderr
        if stderr is None:
            return
        while True:
            chunk = await stderr.read(_CHUNK_SIZE)
            if not chunk:
                break
            text = chunk.decode(errors="replace")
            self._stderr_tail.extend(line for line in text.splitlines() if line.strip())
            await self._fire("on_stderr", text)

    async def _dispatch(self, data: dict[str, Any]) -> None:
        event = parse_event(data)
        if event is None:
            return
        if isinstance(event, InitEvent):
            await self._fire("on_init", event)
        elif isinstance(event, AssistantEvent):
            await self._fire("on_assistant_message", event)
        elif isinstance(event, ToolResultEvent):
            await self._fire("on_tool_result", event)
        elif isinstance(event, ResultEvent):
            if self._terminal:
                logger.debug("%s: ignoring result after terminal event", self._label)
                return
            self._terminal = True
            self._cancel_timer()
            await self._fire("on_result", event)

    async def _fail(self, error: Exception) -> None:
        """Report *error* once, unless a terminal event already fired."""
        if self._terminal:
            logger.debug("%s: suppressing error after terminal event: %s", self._label, error)
            return
        self._terminal = True
        self._cancel_timer()
        await self._fire("on_error", error)
        if isinstance(error, StreamReadError):
            self._terminate()

    async def _fire(self, name: str, *args: Any) -> None:
        await invoke_callback(getattr(self._callbacks, name), *args, label=self._label, name=name)


class ProcessLauncher:
    """Spawns commands and wires their output into :class:`ProcessCallbacks`."""

    def __init__(
        self,
        kill_grace: float = DEFAULT_KILL_GRACE,
        env: dict[str, str] | None = None,
    ) -> None:
        self._kill_grace = kill_grace
        self._env = env

    async def run(
        self,
        command: CommandSpec,
        callbacks: ProcessCallbacks,
        timeout: float | None = DEFAULT_TIMEOUT,
        *,
        cwd: str | None = None,
        label: str = "task",
    ) -> TaskHandle:
        """Start *command* and return immediately with its handle.

        Events are delivered through *callbacks* from a background task.
        A spawn failure is reported via ``on_error`` and yields a handle
        whose ``kill()`` does nothing.
        """
        process_env = {**os.environ, "SHELL": "/bin/bash"}
        if self._env:
            process_env.update(self._env)

        try:
            argv = _build_argv(command)
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=process_env,
                cwd=cwd,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            # ValueError covers empty commands and arguments with NUL bytes.
            logger.error("%s: failed to spawn %r: %s", label, command, exc)
            await invoke_callback(callbacks.on_error, exc, label=label, name="on_error")
            return TaskHandle()

        logger.info("%s: process spawned with pid %s", label, proc.pid)
        supervisor = _Supervisor(proc, callbacks, timeout, self._kill_grace, label)
        supervisor.start()
        return TaskHandle(supervisor)


def _build_argv(command: CommandSpec) -> list[str]:
    if isinstance(command, str):
        return ["/bin/bash", "-c", command]
    argv = list(command)
    if not argv:
        msg = "Command must not be empty"
        raise ValueError(msg)
    return argv

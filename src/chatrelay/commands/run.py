"""chatrelay run — run one assistant task for a session key."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import click

from chatrelay.approval.channel import NotifierApprovalChannel
from chatrelay.config.models import RelayConfig
from chatrelay.config.parser import ConfigError, load_config
from chatrelay.process.events import ToolUseBlock
from chatrelay.session.recorder import ActivityRecorder, EndReason
from chatrelay.session.registry import SessionRegistry
from chatrelay.session.sweeper import SessionSweeper
from chatrelay.shutdown import ShutdownManager
from chatrelay.tasks.orchestrator import TaskListener, TaskOrchestrator, TaskResult

#: Flag appended, with the stored session id, when resuming a session.
RESUME_FLAG = "--resume"


def build_command(command: Sequence[str], session_id: str | None) -> list[str]:
    """Append ``--resume <id>`` to *command* when there is a session to resume."""
    argv = list(command)
    if session_id:
        argv += [RESUME_FLAG, session_id]
    return argv


@click.command(context_settings={"ignore_unknown_options": True})
@click.argument("session_key")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
@click.option(
    "--resume/--no-resume",
    default=True,
    help="Resume the session stored for SESSION_KEY, if any.",
)
@click.option(
    "--platform",
    type=str,
    default=None,
    help="Bound the result to this platform's message limit.",
)
@click.option(
    "--persist-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Where to save the full result when it is truncated.",
)
@click.option("--label", default="", help="Human-readable context name to store.")
@click.pass_context
def run(
    ctx: click.Context,
    session_key: str,
    command: tuple[str, ...],
    config_file: str | None,
    resume: bool,
    platform: str | None,
    persist_dir: str | None,
    label: str,
) -> None:
    """Run COMMAND for SESSION_KEY and print its streamed output.

    COMMAND must emit the assistant's stream-json protocol on stdout.
    Put it after `--` so its options are not parsed here.
    """
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    verbose = bool((ctx.obj or {}).get("verbose"))
    result = asyncio.run(
        _run_task(
            config,
            session_key,
            command,
            resume=resume,
            platform=platform,
            persist_dir=persist_dir,
            label=label,
            verbose=verbose,
        )
    )
    if result is None or not result.success:
        raise SystemExit(1)


async def _run_task(
    config: RelayConfig,
    session_key: str,
    command: Sequence[str],
    *,
    resume: bool,
    platform: str | None,
    persist_dir: str | None,
    label: str,
    verbose: bool,
) -> TaskResult | None:
    """Wire up the components, run one task, then shut everything down."""
    recorder: ActivityRecorder | None = None
    if config.activity.record:
        recorder = ActivityRecorder(Path(config.activity.directory))

    registry = SessionRegistry(config.sessions.database)
    orchestrator = TaskOrchestrator.from_config(
        config, registry, recorder=recorder, channel=_terminal_channel(config)
    )
    shutdown_event = asyncio.Event()
    sweeper = SessionSweeper(
        registry,
        shutdown_event,
        max_age_days=config.sessions.max_age_days,
        interval=config.sessions.sweep_interval,
        recorder=recorder,
    )
    shutdown = ShutdownManager(
        orchestrator,
        shutdown_event,
        approvals=orchestrator.approvals,
        sweeper=sweeper,
        recorder=recorder,
        quiet=not verbose,
    )

    finished = asyncio.Event()
    outcome: dict[str, TaskResult] = {}
    reason: EndReason = "complete"

    def _on_tool_use(block: ToolUseBlock) -> None:
        click.echo(click.style(f"  → {block.name}", fg="cyan"), err=True)

    def _on_result(result: TaskResult) -> None:
        outcome["result"] = result

    def _on_failure(message: str) -> None:
        click.echo(click.style(f"Error: {message}", fg="red"), err=True)

    def _on_close(_returncode: int | None) -> None:
        finished.set()

    listener = TaskListener(
        on_tool_use=_on_tool_use,
        on_text=_echo_text,
        on_result=_on_result,
        on_failure=_on_failure,
        on_close=_on_close,
    )

    loop = asyncio.get_running_loop()

    def _signal_shutdown(sig_name: str) -> None:
        nonlocal reason
        click.echo(f"\nReceived {sig_name}, stopping...", err=True)
        reason = "ctrl_c" if sig_name == "SIGINT" else "shutdown"
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, _signal_shutdown, sig.name)

    try:
        await sweeper.start()
        handle = await orchestrator.run_task(
            session_key,
            lambda session_id: build_command(command, session_id),
            label=label,
            listener=listener,
            platform=platform,
            persist_dir=persist_dir,
            resume=resume,
        )
        if handle.pid is None:
            # Spawn failed; on_failure already reported it.
            reason = "error"
            finished.set()

        waiters = [
            asyncio.create_task(finished.wait()),
            asyncio.create_task(shutdown_event.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)
        await shutdown.execute(reason)

    result = outcome.get("result")
    if result is not None:
        _print_result(result)
    return result


async def _echo_text(text: str) -> None:
    click.echo(click.style(text, dim=True), err=True)


def _print_result(result: TaskResult) -> None:
    click.echo(result.text)
    if result.was_truncated and result.saved_path:
        click.echo(f"(full result saved to {result.saved_path})", err=True)
    details = [f"{result.num_turns} turn(s)"]
    if result.cost_usd is not None:
        details.append(f"${result.cost_usd:.4f}")
    if result.session_id:
        details.append(f"session {result.session_id}")
    click.echo(" | ".join(details), err=True)


def _terminal_channel(config: RelayConfig) -> NotifierApprovalChannel:
    """Announce approval requests on stderr.

    Nobody answers from the terminal, so each request settles on the
    configured timeout default (or is denied at shutdown).
    """
    default = config.approval.default_on_timeout

    async def announce(
        request_id: str, tool_name: str, _tool_input: Any, context: Any, dangerous: bool
    ) -> None:
        risk = " [dangerous]" if dangerous else ""
        click.echo(
            click.style(
                f"  ? {tool_name}{risk} needs approval for {context} "
                f"({request_id}, defaults to {default})",
                fg="yellow",
            ),
            err=True,
        )

    return NotifierApprovalChannel(announce, name="terminal")

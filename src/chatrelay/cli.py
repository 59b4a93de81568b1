"""Root CLI group, version flag and logging setup."""

import logging
import signal

import click

# Ensure SIGPIPE doesn't silently kill the process when stdout is closed
# while click.echo is writing (e.g. `chatrelay sessions list | head`).
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)

from chatrelay import __version__
from chatrelay.commands.init import init
from chatrelay.commands.run import run
from chatrelay.commands.sessions import sessions

_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="chatrelay")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """chatrelay — run assistant tasks for chat sessions."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=_LOG_FORMAT,
    )


cli.add_command(init)
cli.add_command(run)
cli.add_command(sessions)

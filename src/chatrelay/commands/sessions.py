"""chatrelay sessions — inspect and maintain the session registry."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import click

from chatrelay.config.models import RelayConfig
from chatrelay.config.parser import ConfigError, load_config
from chatrelay.session.registry import SessionRegistry

_SECONDS_PER_DAY = 86_400


def _load(config_file: str | None) -> RelayConfig:
    try:
        return load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc


@click.group()
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
@click.pass_context
def sessions(ctx: click.Context, config_file: str | None) -> None:
    """Inspect and maintain stored sessions."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = _load(config_file)


@sessions.command("list")
@click.pass_context
def list_sessions(ctx: click.Context) -> None:
    """List stored sessions, most recently used first."""
    config: RelayConfig = ctx.obj["config"]
    registry = SessionRegistry(config.sessions.database)
    try:
        records = registry.all()
    finally:
        registry.close()

    if not records:
        click.echo("No stored sessions.")
        return

    key_width = max(len("KEY"), *(len(r.session_key) for r in records))
    click.echo(f"{'KEY':<{key_width}}  {'LAST USED':<19}  SESSION ID  LABEL")
    for record in records:
        last_used = datetime.fromtimestamp(record.last_used).strftime("%Y-%m-%d %H:%M:%S")
        click.echo(
            f"{record.session_key:<{key_width}}  {last_used:<19}  "
            f"{record.external_session_id}  {record.context_label}".rstrip()
        )


@sessions.command("clear")
@click.argument("session_key")
@click.pass_context
def clear_session(ctx: click.Context, session_key: str) -> None:
    """Forget the stored session for SESSION_KEY."""
    config: RelayConfig = ctx.obj["config"]
    registry = SessionRegistry(config.sessions.database)
    try:
        removed = registry.clear(session_key)
    finally:
        registry.close()

    if not removed:
        click.echo(f"No stored session for '{session_key}'.")
        raise SystemExit(1)
    click.echo(f"Cleared session for '{session_key}'.")


@sessions.command("prune")
@click.option(
    "--max-age-days",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Override sessions.max_age_days from the config.",
)
@click.pass_context
def prune_sessions(ctx: click.Context, max_age_days: float | None) -> None:
    """Evict sessions that have not been used recently."""
    config: RelayConfig = ctx.obj["config"]
    days = max_age_days if max_age_days is not None else config.sessions.max_age_days
    registry = SessionRegistry(config.sessions.database)
    try:
        removed = registry.evict_older_than(days * _SECONDS_PER_DAY)
    finally:
        registry.close()
    click.echo(f"Evicted {removed} session(s) older than {days:g} day(s).")

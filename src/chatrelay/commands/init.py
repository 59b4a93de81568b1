"""chatrelay init — write a default configuration file."""

from __future__ import annotations

from pathlib import Path

import click

from chatrelay.config.parser import DEFAULT_CONFIG_NAME

ENV_EXAMPLE_FILENAME = ".env.example"

TEMPLATE_YAML = """\
# chatrelay configuration
# Every key is optional; the values below are the defaults.

approval:
  # Seconds to wait for a human to answer a tool approval (0 waits forever)
  timeout: 300
  # Decision applied when nobody answers in time: allow | deny
  default_on_timeout: deny
  # Tools approved without asking (read-only tools never ask)
  auto_approve_tools: []

tasks:
  # Overall seconds one assistant run may take
  timeout: 300
  # Seconds between SIGTERM and SIGKILL
  kill_grace: 5

sessions:
  # SQLite file remembering the last session per chat (":memory:" to disable)
  database: sessions.db
  # Forget sessions unused for this many days
  max_age_days: 30
  # Seconds between eviction sweeps (0 to disable)
  sweep_interval: 3600

truncation:
  # Maximum characters per message, per platform (0 for no limit)
  limits:
    discord: 4000
    slack: 3800
    line: 1400
    telegram: 2900
    email: 5000
    teams: 900
  # Written to the task's directory when a result is cut short
  filename: .claude-result.md

activity:
  record: true
  directory: activity
"""

TEMPLATE_ENV_EXAMPLE = """\
# Environment overrides for chatrelay.yaml.
# Copy this file to .env and uncomment what you need.

# CHATRELAY_APPROVAL_TIMEOUT=300
# CHATRELAY_DEFAULT_ON_TIMEOUT=deny
# CHATRELAY_AUTO_APPROVE_TOOLS=Edit,Write
# CHATRELAY_TASK_TIMEOUT=300
# CHATRELAY_SESSION_DB=sessions.db
"""


@click.command()
@click.option(
    "--force",
    is_flag=True,
    help=f"Overwrite existing {DEFAULT_CONFIG_NAME} if it exists.",
)
def init(force: bool) -> None:
    """Write a default chatrelay.yaml in the current directory."""
    cwd = Path.cwd()
    config_path = cwd / DEFAULT_CONFIG_NAME
    env_example_path = cwd / ENV_EXAMPLE_FILENAME

    if config_path.exists() and not force:
        raise click.ClickException(
            f"{DEFAULT_CONFIG_NAME} already exists. Use --force to overwrite."
        )

    try:
        config_path.write_text(TEMPLATE_YAML, encoding="utf-8")
    except OSError as exc:
        raise click.ClickException(f"Cannot write {DEFAULT_CONFIG_NAME}: {exc}") from exc
    click.echo(f"  Created {DEFAULT_CONFIG_NAME}")

    if not env_example_path.exists() or force:
        try:
            env_example_path.write_text(TEMPLATE_ENV_EXAMPLE, encoding="utf-8")
        except OSError as exc:
            raise click.ClickException(
                f"Cannot write {ENV_EXAMPLE_FILENAME}: {exc}"
            ) from exc
        click.echo(f"  Created {ENV_EXAMPLE_FILENAME}")
    else:
        click.echo(f"  Skipped {ENV_EXAMPLE_FILENAME} (already exists)")

    click.echo()
    click.echo("Next steps:")
    click.echo(f"  1. Adjust {DEFAULT_CONFIG_NAME} (limits, timeouts, auto-approved tools)")
    click.echo("  2. Run `chatrelay run <session-key> -- <command...>`")

"""Load, validate, and resolve chatrelay.yaml configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from chatrelay.config.models import RelayConfig

DEFAULT_CONFIG_NAME = "chatrelay.yaml"

#: Environment variable -> (section, key) overrides applied after .env loading.
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "CHATRELAY_APPROVAL_TIMEOUT": ("approval", "timeout"),
    "CHATRELAY_DEFAULT_ON_TIMEOUT": ("approval", "default_on_timeout"),
    "CHATRELAY_AUTO_APPROVE_TOOLS": ("approval", "auto_approve_tools"),
    "CHATRELAY_TASK_TIMEOUT": ("tasks", "timeout"),
    "CHATRELAY_SESSION_DB": ("sessions", "database"),
}


class ConfigError(Exception):
    """User-facing configuration error."""


def load_config(path: Path | None = None) -> RelayConfig:
    """Load and validate a chatrelay.yaml file.

    Args:
        path: Explicit config file path. If None, looks for
              chatrelay.yaml in the current directory and falls back
              to defaults when there is none.

    Returns:
        A validated RelayConfig instance.

    Raises:
        ConfigError: On missing explicit file, bad YAML, or validation failure.
    """
    config_path = _resolve_path(path)
    if config_path is None:
        raw: dict[str, Any] = {}
        _load_env(Path.cwd())
    else:
        raw = _read_yaml(config_path)
        _load_env(config_path.parent)
    _apply_env_overrides(raw)
    return _validate(raw)


def _resolve_path(path: Path | None) -> Path | None:
    if path is not None:
        resolved = Path(path)
        if not resolved.is_file():
            msg = f"Config file not found: {resolved}"
            raise ConfigError(msg)
        return resolved

    default = Path.cwd() / DEFAULT_CONFIG_NAME
    if not default.is_file():
        return None
    return default


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read config file: {exc}"
        raise ConfigError(msg) from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        detail = ""
        if hasattr(exc, "problem_mark") and exc.problem_mark is not None:
            mark = exc.problem_mark
            detail = f" (line {mark.line + 1}, column {mark.column + 1})"
        msg = f"Invalid YAML in {path.name}{detail}"
        raise ConfigError(msg) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {path.name}, got {type(data).__name__}"
        raise ConfigError(msg)

    return data


def _load_env(config_dir: Path) -> None:
    env_path = config_dir / ".env"
    if env_path.is_file():
        load_dotenv(env_path)


def _apply_env_overrides(raw: dict[str, Any]) -> None:
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None or value == "":
            continue
        target = raw.setdefault(section, {})
        if not isinstance(target, dict):
            msg = f"Section '{section}' must be a mapping to apply {env_name}"
            raise ConfigError(msg)
        target[key] = value


def _validate(raw: dict[str, Any]) -> RelayConfig:
    try:
        return RelayConfig.model_validate(raw)
    except ValidationError as exc:
        lines = "\n".join(f"  {_describe(err)}" for err in exc.errors())
        raise ConfigError(f"Config validation failed:\n{lines}") from exc


_FRIENDLY_MESSAGES = {
    "missing": "This field is required",
    "extra_forbidden": "Unknown setting",
}


def _describe(err: Any) -> str:
    """One ``location: problem`` line for a pydantic error."""
    loc = " → ".join(str(part) for part in err["loc"]) or "(root)"
    msg = _FRIENDLY_MESSAGES.get(err["type"])
    if msg is None:
        msg = err["msg"]
        if msg.lower().startswith("input should be"):
            msg = f"Invalid value: {msg}"
    return f"{loc}: {msg}"

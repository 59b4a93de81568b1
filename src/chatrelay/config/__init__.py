"""Configuration models and parser for chatrelay.yaml."""

from chatrelay.config.models import (
    ActivityConfig,
    ApprovalConfig,
    RelayConfig,
    SessionConfig,
    TaskConfig,
    TruncationConfig,
)
from chatrelay.config.parser import ConfigError, load_config

__all__ = [
    "ActivityConfig",
    "ApprovalConfig",
    "ConfigError",
    "RelayConfig",
    "SessionConfig",
    "TaskConfig",
    "TruncationConfig",
    "load_config",
]

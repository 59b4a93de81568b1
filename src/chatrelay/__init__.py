"""chatrelay — run a streaming code-assistant process per conversation."""

__version__ = "0.1.0"

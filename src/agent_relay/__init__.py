"""Bridge a CLI coding agent to a Telegram chat."""

__version__ = "0.3.0"

"""round-relay - Telegram relay for autonomous coding agents with multi-advisor round discussions."""

__version__ = "0.1.0"

"""demon - scheduled and chat-triggered Claude Code sessions."""

__version__ = "0.1.0"

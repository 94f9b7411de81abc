"""Result delivery to files and chats."""

from demon.output.router import (
    DeliveryOutcome,
    OutputRouter,
    render_body,
    render_markdown,
)
from demon.output.telegram import ChatSender, TelegramSender, split_message

__all__ = [
    "ChatSender",
    "DeliveryOutcome",
    "OutputRouter",
    "TelegramSender",
    "render_body",
    "render_markdown",
    "split_message",
]

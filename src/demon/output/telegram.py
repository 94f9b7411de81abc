"""Telegram delivery using aiogram."""

import logging
from typing import Protocol

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ChatAction, ParseMode
from aiogram.exceptions import TelegramBadRequest
from aiogram.utils.token import TokenValidationError

from demon.config.models import GatewayConfig
from demon.errors import GatewayUnavailable

logger = logging.getLogger(__name__)

# Telegram caps messages at 4096; markdown escaping can grow a chunk
MAX_SEND_LENGTH = 4000

# Preferred cut points, best first: (separator, characters of it kept on the left)
_SEPARATORS = (("\n\n", 2), ("\n", 1), (". ", 2), (" ", 1))


def _inside_fence(text: str, pos: int) -> bool:
    return text.count("```", 0, pos) % 2 == 1


def _split_point(text: str, max_length: int) -> int:
    """Offset of the best cut within ``text[:max_length]``.

    Cuts never land inside a fenced code block; when no separator
    qualifies the text is hard cut at ``max_length``.
    """
    window = text[:max_length]
    for separator, keep in _SEPARATORS:
        end = len(window)
        while (found := window.rfind(separator, 0, end)) >= 0:
            cut = found + keep
            if cut > 0 and not _inside_fence(text, cut):
                return cut
            end = found
    return max_length


def split_message(text: str, max_length: int = MAX_SEND_LENGTH) -> list[str]:
    """Break ``text`` into chunks of at most ``max_length`` characters."""
    chunks: list[str] = []
    rest = text
    while len(rest) > max_length:
        cut = _split_point(rest, max_length)
        if head := rest[:cut].rstrip():
            chunks.append(head)
        rest = rest[cut:].lstrip()
    if rest or not chunks:
        chunks.append(rest)
    return chunks


class ChatSender(Protocol):
    """Anything that can deliver text to a chat."""

    async def send(self, chat_id: int, text: str) -> int: ...


class TelegramSender:
    """Sends long text to Telegram chats, splitting and falling back to plain text.

    The bot is created lazily so a disabled gateway never touches the network.
    """

    def __init__(self, config: GatewayConfig, bot: Bot | None = None) -> None:
        self._config = config
        self._bot = bot

    @property
    def bot(self) -> Bot:
        """The aiogram bot.

        Raises:
            GatewayUnavailable: If the gateway is disabled or the token is unusable.
        """
        if self._bot is None:
            token = self._config.token
            if not self._config.enabled or token is None:
                raise GatewayUnavailable(
                    "Telegram gateway is disabled or has no bot token"
                )
            try:
                self._bot = Bot(
                    token=token,
                    default=DefaultBotProperties(parse_mode=ParseMode.MARKDOWN),
                )
            except TokenValidationError as e:
                raise GatewayUnavailable(f"Invalid Telegram bot token: {e}") from e
        return self._bot

    async def send(self, chat_id: int, text: str) -> int:
        """Send ``text`` to a chat.

        Returns:
            Number of Telegram messages sent.

        Raises:
            GatewayUnavailable: If the gateway cannot deliver.
        """
        if not self._config.is_available:
            raise GatewayUnavailable("Telegram gateway is disabled or has no bot token")
        bot = self.bot
        chunks = split_message(text or "(empty response)")
        for chunk in chunks:
            await self._send_with_fallback(bot, chat_id, chunk)
        logger.info(
            "chat_message_sent",
            extra={"chat.id": chat_id, "chunks": len(chunks)},
        )
        return len(chunks)

    async def send_typing(self, chat_id: int) -> None:
        await self.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)

    async def close(self) -> None:
        if self._bot is not None:
            await self._bot.session.close()

    async def _send_with_fallback(self, bot: Bot, chat_id: int, text: str) -> None:
        """Send with automatic plain-text fallback on parse errors."""
        try:
            await bot.send_message(
                chat_id=chat_id, text=text, parse_mode=ParseMode.MARKDOWN
            )
        except TelegramBadRequest as e:
            if "can't parse" not in str(e).lower():
                raise
            logger.debug(
                "markdown_rejected", extra={"chat.id": chat_id, "error.message": str(e)}
            )
            await bot.send_message(chat_id=chat_id, text=text, parse_mode=None)

"""Telegram gateway: relays whitelisted chat messages to the assistant.

The listener long-polls ``getUpdates`` itself, so network trouble is handled
in one place: transient errors back off exponentially with jitter and the
delay resets after the next successful poll. Messages from chats outside the
whitelist are dropped silently (no reply, so the bot does not reveal itself).

Each chat keeps its assistant session for ``session_timeout_secs`` after its
last message, and messages within one chat are processed in order.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import aiohttp
from aiogram.exceptions import TelegramAPIError, TelegramNetworkError
from aiogram.types import Update

from demon.config.models import GatewayConfig
from demon.errors import GatewayUnavailable
from demon.executor.claude import ClaudeExecutor
from demon.executor.types import ExecutionResult, ExecutionStatus, InvocationRequest
from demon.jobs.types import ChatDestination
from demon.output.router import OutputRouter
from demon.output.telegram import TelegramSender

logger = logging.getLogger(__name__)

TYPING_INTERVAL = 4.0

NETWORK_ERRORS = (TelegramNetworkError, aiohttp.ClientError, OSError, TimeoutError)


@dataclass
class BackoffConfig:
    """Reconnect backoff for the poll loop."""

    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: float = 0.1


def calculate_delay(attempt: int, config: BackoffConfig) -> float:
    """Calculate delay before next retry with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (1-indexed).
        config: Backoff configuration.

    Returns:
        Delay in seconds.
    """
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)
    jitter_range = delay * config.jitter
    delay += random.uniform(-jitter_range, jitter_range)  # noqa: S311
    return max(0, delay)


@dataclass
class ChatSession:
    """Assistant session remembered for a chat."""

    session_id: str
    last_active: datetime


@dataclass
class GatewayStatus:
    enabled: bool
    configured: bool
    polling: bool
    allowed_chat_ids: list[int]
    in_flight: int = 0
    sessions: int = 0
    last_error: str | None = None
    last_poll_at: datetime | None = None

    @classmethod
    def from_config(cls, config: GatewayConfig) -> GatewayStatus:
        """Status of a gateway that is not running in this process."""
        return cls(
            enabled=config.enabled,
            configured=config.token is not None,
            polling=False,
            allowed_chat_ids=sorted(config.allowed_chat_ids),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "configured": self.configured,
            "polling": self.polling,
            "allowed_chat_ids": list(self.allowed_chat_ids),
            "in_flight": self.in_flight,
            "sessions": self.sessions,
            "last_error": self.last_error,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
        }


@dataclass
class _ChatState:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    session: ChatSession | None = None


class GatewayListener:
    """Polls Telegram and dispatches accepted messages to the executor."""

    def __init__(
        self,
        config: GatewayConfig,
        executor: ClaudeExecutor,
        router: OutputRouter,
        sender: TelegramSender,
        *,
        backoff: BackoffConfig | None = None,
    ) -> None:
        self._config = config
        self._executor = executor
        self._router = router
        self._sender = sender
        self._backoff = backoff or BackoffConfig()
        self._allowed = set(config.allowed_chat_ids)
        self._chats: dict[int, _ChatState] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._poll_task: asyncio.Task[None] | None = None
        self._running = False
        self._offset: int | None = None
        self._last_error: str | None = None
        self._last_poll_at: datetime | None = None

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def is_polling(self) -> bool:
        return self._running and self._poll_task is not None

    def status(self) -> GatewayStatus:
        return GatewayStatus(
            enabled=self._config.enabled,
            configured=self._config.token is not None,
            polling=self.is_polling,
            allowed_chat_ids=sorted(self._allowed),
            in_flight=self.in_flight,
            sessions=sum(1 for c in self._chats.values() if c.session is not None),
            last_error=self._last_error,
            last_poll_at=self._last_poll_at,
        )

    def is_allowed(self, chat_id: int) -> bool:
        return chat_id in self._allowed

    async def start(self) -> None:
        """Start polling.

        Raises:
            GatewayUnavailable: If the gateway is disabled or has no token.
        """
        if self._running:
            return
        if not self._config.is_available:
            raise GatewayUnavailable("Telegram gateway is disabled or has no bot token")
        # Touch the bot now so an invalid token fails here rather than in the loop
        _ = self._sender.bot
        self._running = True
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(
            "gateway_started",
            extra={
                "allowed_chats": len(self._allowed),
                "session_timeout_secs": self._config.session_timeout_secs,
            },
        )

    async def stop(self) -> None:
        """Stop polling. In-flight messages keep running; see drain()."""
        if not self._running:
            return
        self._running = False
        if self._poll_task:
            self._poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None
        logger.info("gateway_stopped", extra={"in_flight": self.in_flight})

    async def drain(self, grace: float) -> bool:
        """Wait for in-flight messages; cancel what remains after ``grace``."""
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(set(self._tasks), timeout=grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return not pending

    async def _poll_loop(self) -> None:
        bot = self._sender.bot
        attempt = 0
        while self._running:
            try:
                updates = await bot.get_updates(
                    offset=self._offset,
                    timeout=self._config.poll_timeout_secs,
                    allowed_updates=["message"],
                )
            except NETWORK_ERRORS as e:
                attempt += 1
                await self._backoff_after(e, attempt, network=True)
                continue
            except TelegramAPIError as e:
                attempt += 1
                await self._backoff_after(e, attempt, network=False)
                continue

            if attempt:
                logger.info("gateway_reconnected", extra={"attempts": attempt})
            attempt = 0
            self._last_error = None
            self._last_poll_at = datetime.now(UTC)
            for update in updates:
                self._offset = update.update_id + 1
                try:
                    self.handle_update(update)
                except Exception:
                    logger.exception(
                        "gateway_update_error", extra={"update.id": update.update_id}
                    )

    async def _backoff_after(self, error: Exception, attempt: int, *, network: bool) -> None:
        delay = calculate_delay(attempt, self._backoff)
        self._last_error = f"{type(error).__name__}: {error}"
        log = logger.warning if network else logger.error
        log(
            "gateway_poll_failed",
            extra={
                "error.type": type(error).__name__,
                "error.message": str(error),
                "retry.attempt": attempt,
                "retry.delay_secs": round(delay, 2),
            },
        )
        await asyncio.sleep(delay)

    def handle_update(self, update: Update) -> bool:
        """Dispatch an update if it passes the filters.

        Returns:
            True if a task was started for it.
        """
        message = update.message
        if message is None:
            return False
        chat_id = message.chat.id
        text = message.text
        if not self._config.is_available:
            logger.debug(f"Gateway unavailable, dropping message from {chat_id}")
            return False
        if not self.is_allowed(chat_id):
            logger.info("gateway_message_rejected", extra={"chat.id": chat_id})
            return False
        if not text or not text.strip():
            logger.debug(f"Ignoring non-text message from {chat_id}")
            return False

        logger.info(
            "gateway_message_received",
            extra={"chat.id": chat_id, "message.length": len(text)},
        )
        task = asyncio.create_task(self._process(chat_id, text), name=f"chat:{chat_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    def _fresh_session(self, state: _ChatState, now: datetime) -> str | None:
        session = state.session
        if session is None:
            return None
        elapsed = (now - session.last_active).total_seconds()
        if elapsed < self._config.session_timeout_secs:
            return session.session_id
        logger.info("gateway_session_expired", extra={"elapsed_secs": int(elapsed)})
        state.session = None
        return None

    def build_request(self, chat_id: int, text: str, resume: str | None) -> InvocationRequest:
        return InvocationRequest(
            ref=f"chat:{chat_id}",
            prompt=text,
            model=self._config.default_model,
            max_turns=self._config.max_turns,
            max_budget_usd=self._config.max_budget_usd,
            allowed_tools=tuple(self._config.allowed_tools),
            disallowed_tools=tuple(self._config.disallowed_tools),
            append_system_prompt=self._config.append_system_prompt,
            resume_session_id=resume,
            persist_session=True,
        )

    async def _process(self, chat_id: int, text: str) -> None:
        state = self._chats.setdefault(chat_id, _ChatState())
        async with state.lock:
            resume = self._fresh_session(state, datetime.now(UTC))
            request = self.build_request(chat_id, text, resume)

            typing_task = None
            if self._config.typing_indicator:
                typing_task = asyncio.create_task(self._keep_typing(chat_id))
            try:
                result = await self._executor.execute(request)
            finally:
                if typing_task is not None:
                    typing_task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await typing_task

            if resume and not result.ok and result.status is ExecutionStatus.PROCESS_ERROR:
                # The stored session may be gone; retry once without it
                logger.warning("gateway_resume_failed", extra={"chat.id": chat_id})
                state.session = None
                result = await self._executor.execute(
                    self.build_request(chat_id, text, None)
                )

            self._remember_session(state, result)
            await self._reply(chat_id, result)

    def _remember_session(self, state: _ChatState, result: ExecutionResult) -> None:
        if result.session_id:
            state.session = ChatSession(result.session_id, datetime.now(UTC))

    async def _reply(self, chat_id: int, result: ExecutionResult) -> None:
        outcomes = await self._router.route(
            result,
            [ChatDestination(chat_id)],
            title=None,
            prompt="",
            output_format="text",
        )
        logger.info(
            "gateway_message_done",
            extra={
                "chat.id": chat_id,
                "status": result.status.value,
                "cost_usd": result.cost_usd,
                "delivered": all(o.ok for o in outcomes),
            },
        )

    async def _keep_typing(self, chat_id: int) -> None:
        while True:
            try:
                await self._sender.send_typing(chat_id)
            except (TelegramAPIError, *NETWORK_ERRORS) as e:
                logger.debug(f"Typing indicator failed for {chat_id}: {e}")
            await asyncio.sleep(TYPING_INTERVAL)

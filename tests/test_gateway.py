"""Tests for the Telegram gateway listener."""

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from aiogram.exceptions import TelegramNetworkError
from aiogram.types import Chat, Message, Update

from demon.config.models import ExecutorConfig, GatewayConfig
from demon.errors import GatewayUnavailable
from demon.executor.claude import ClaudeExecutor
from demon.gateway.listener import (
    BackoffConfig,
    GatewayListener,
    GatewayStatus,
    calculate_delay,
)
from demon.output.router import OutputRouter
from demon.output.telegram import TelegramSender


class RecordingSender:
    def __init__(self) -> None:
        self.sent: list[tuple[int, str]] = []

    async def send(self, chat_id: int, text: str) -> int:
        self.sent.append((chat_id, text))
        return 1


def make_update(chat_id: int, text: str | None, update_id: int = 1) -> Update:
    chat_type = "private" if chat_id > 0 else "group"
    return Update(
        update_id=update_id,
        message=Message(
            message_id=update_id,
            date=datetime.now(UTC),
            chat=Chat(id=chat_id, type=chat_type),
            text=text,
        ),
    )


@pytest.fixture
def replies() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def bot() -> MagicMock:
    return MagicMock()


def make_listener(
    config: GatewayConfig,
    executor_config: ExecutorConfig,
    tmp_path: Path,
    replies: RecordingSender,
    bot: MagicMock,
) -> GatewayListener:
    return GatewayListener(
        config,
        ClaudeExecutor(executor_config),
        OutputRouter(tmp_path / "output", replies),
        TelegramSender(config, bot=bot),
        backoff=BackoffConfig(base_delay=0.01, max_delay=0.05, jitter=0),
    )


@pytest.fixture
def listener(gateway_config, executor_config, tmp_path, replies, bot) -> GatewayListener:
    return make_listener(gateway_config, executor_config, tmp_path, replies, bot)


async def send_and_wait(listener: GatewayListener, chat_id: int, text: str) -> bool:
    accepted = listener.handle_update(make_update(chat_id, text))
    assert await listener.drain(grace=10)
    return accepted


class TestCalculateDelay:
    def test_exponential(self):
        config = BackoffConfig(base_delay=1.0, jitter=0)
        assert [calculate_delay(n, config) for n in (1, 2, 3, 4)] == [1, 2, 4, 8]

    def test_capped(self):
        config = BackoffConfig(base_delay=1.0, max_delay=10.0, jitter=0)
        assert calculate_delay(20, config) == 10.0

    def test_jitter_bounds(self):
        config = BackoffConfig(base_delay=10.0, jitter=0.1)
        for _ in range(50):
            assert 9.0 <= calculate_delay(1, config) <= 11.0


class TestFiltering:
    @pytest.mark.asyncio
    async def test_rejects_unknown_chat(self, listener: GatewayListener, replies):
        assert not listener.handle_update(make_update(7, "hello"))
        assert listener.in_flight == 0
        assert replies.sent == []

    @pytest.mark.asyncio
    async def test_ignores_empty_text(self, listener: GatewayListener):
        assert not listener.handle_update(make_update(42, None))
        assert not listener.handle_update(make_update(42, "   "))

    @pytest.mark.asyncio
    async def test_group_chat_allowed(self, listener: GatewayListener, replies):
        assert await send_and_wait(listener, -100, "hello group")
        assert replies.sent == [(-100, "done: hello group")]

    @pytest.mark.asyncio
    async def test_disabled_gateway_drops(
        self, executor_config, tmp_path, replies, bot
    ):
        config = GatewayConfig(enabled=False, allowed_chat_ids=[42])
        listener = make_listener(config, executor_config, tmp_path, replies, bot)
        assert not listener.handle_update(make_update(42, "hello"))


class TestConversation:
    @pytest.mark.asyncio
    async def test_reply(self, listener: GatewayListener, replies):
        assert await send_and_wait(listener, 42, "hello")
        assert replies.sent == [(42, "done: hello")]
        assert listener.status().sessions == 1

    @pytest.mark.asyncio
    async def test_session_resumed(self, listener: GatewayListener, replies):
        await send_and_wait(listener, 42, "hello")
        await send_and_wait(listener, 42, "echo_args")

        argv = json.loads(replies.sent[1][1])
        assert argv[argv.index("--resume") + 1] == "sess-new"
        assert "--no-session-persistence" not in argv

    @pytest.mark.asyncio
    async def test_sessions_are_per_chat(self, listener: GatewayListener, replies):
        await send_and_wait(listener, 42, "hello")
        await send_and_wait(listener, -100, "echo_args")

        argv = json.loads(replies.sent[1][1])
        assert "--resume" not in argv

    @pytest.mark.asyncio
    async def test_expired_session_starts_fresh(
        self, gateway_config, executor_config, tmp_path, replies, bot
    ):
        config = gateway_config.model_copy(update={"session_timeout_secs": 0})
        listener = make_listener(config, executor_config, tmp_path, replies, bot)
        await send_and_wait(listener, 42, "hello")
        await send_and_wait(listener, 42, "echo_args")

        argv = json.loads(replies.sent[1][1])
        assert "--resume" not in argv

    @pytest.mark.asyncio
    async def test_failed_resume_retries_fresh(self, listener: GatewayListener, replies):
        await send_and_wait(listener, 42, "hello")
        await send_and_wait(listener, 42, "fail_resume")

        assert replies.sent[1] == (42, "done: fail_resume")

    @pytest.mark.asyncio
    async def test_failure_reported(self, listener: GatewayListener, replies):
        await send_and_wait(listener, 42, "fail")
        chat_id, text = replies.sent[0]
        assert chat_id == 42
        assert "process_error" in text
        assert "boom" in text

    @pytest.mark.asyncio
    async def test_messages_in_one_chat_are_ordered(self, listener: GatewayListener, replies):
        listener.handle_update(make_update(42, "first sleep=0.3", update_id=1))
        listener.handle_update(make_update(42, "second", update_id=2))
        assert await listener.drain(grace=10)
        assert [text for _, text in replies.sent] == [
            "done: first sleep=0.3",
            "done: second",
        ]

    def test_build_request(self, listener: GatewayListener, gateway_config):
        request = listener.build_request(42, "hi", None)
        assert request.ref == "chat:42"
        assert request.persist_session
        assert request.resume_session_id is None
        assert request.model == gateway_config.default_model
        assert request.max_turns == gateway_config.max_turns


class TestPolling:
    @pytest.mark.asyncio
    async def test_start_requires_token(self, executor_config, tmp_path, replies, bot):
        config = GatewayConfig(enabled=True, allowed_chat_ids=[42])
        listener = make_listener(config, executor_config, tmp_path, replies, bot)
        with pytest.raises(GatewayUnavailable):
            await listener.start()

    @pytest.mark.asyncio
    async def test_recovers_from_network_error(
        self, listener: GatewayListener, bot: MagicMock, replies
    ):
        calls = 0

        async def get_updates(**kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise TelegramNetworkError(method=MagicMock(), message="connection reset")
            if calls == 2:
                return [make_update(42, "hello", update_id=10)]
            await asyncio.sleep(3600)
            return []

        bot.get_updates = get_updates
        await listener.start()
        assert listener.is_polling
        try:
            for _ in range(200):
                if replies.sent:
                    break
                await asyncio.sleep(0.05)
        finally:
            await listener.stop()
            await listener.drain(grace=10)

        assert replies.sent == [(42, "done: hello")]
        status = listener.status()
        assert not status.polling
        assert status.last_error is None
        assert status.last_poll_at is not None
        assert listener._offset == 11


def test_status_from_config(gateway_config: GatewayConfig):
    status = GatewayStatus.from_config(gateway_config).to_dict()
    assert status["enabled"] is True
    assert status["configured"] is True
    assert status["polling"] is False
    assert status["allowed_chat_ids"] == [-100, 42]

"""Tests for the Claude CLI executor, run against a fake CLI script."""

import asyncio
import json
import sys
from pathlib import Path

import pytest

from demon.config.models import ExecutorConfig
from demon.executor.claude import ClaudeExecutor, StreamMonitor, build_args
from demon.executor.types import ExecutionStatus, InvocationRequest


def request(prompt: str = "hello", **overrides) -> InvocationRequest:
    fields = {
        "ref": "daily",
        "prompt": prompt,
        "model": "sonnet",
        "max_turns": 5,
        "max_budget_usd": 1.0,
    }
    fields.update(overrides)
    return InvocationRequest(**fields)


class TestBuildArgs:
    def test_minimal(self):
        args = build_args(["claude"], request())
        assert args[:5] == ["claude", "-p", "--output-format", "stream-json", "--verbose"]
        assert args[args.index("--model") + 1] == "sonnet"
        assert args[args.index("--max-turns") + 1] == "5"
        assert args[args.index("--max-budget-usd") + 1] == "1.00"
        assert "--no-session-persistence" in args
        # prompt goes on stdin
        assert "hello" not in args

    def test_optional_flags(self):
        args = build_args(
            ["claude"],
            request(
                fallback_model="haiku",
                allowed_tools=("Read", "Grep"),
                disallowed_tools=("Bash",),
                system_prompt="sys",
                append_system_prompt="extra",
                mcp_config=Path("/etc/mcp.json"),
            ),
        )
        assert args[args.index("--fallback-model") + 1] == "haiku"
        assert [args[i + 1] for i, a in enumerate(args) if a == "--allowedTools"] == [
            "Read",
            "Grep",
        ]
        assert args[args.index("--disallowedTools") + 1] == "Bash"
        assert args[args.index("--system-prompt") + 1] == "sys"
        assert args[args.index("--append-system-prompt") + 1] == "extra"
        assert args[args.index("--mcp-config") + 1] == "/etc/mcp.json"

    def test_resume(self):
        args = build_args(["claude"], request(resume_session_id="sess-9"))
        assert args[args.index("--resume") + 1] == "sess-9"
        assert "--no-session-persistence" not in args

    def test_persisted_session(self):
        args = build_args(["claude"], request(persist_session=True))
        assert "--no-session-persistence" not in args
        assert "--resume" not in args


class TestStreamMonitor:
    def _assistant(self, message_id: str, text: str = "hi") -> str:
        return json.dumps(
            {
                "type": "assistant",
                "message": {"id": message_id, "content": [{"type": "text", "text": text}]},
            }
        )

    def test_counts_distinct_messages(self):
        monitor = StreamMonitor(max_turns=5, max_budget_usd=1.0)
        monitor.feed(self._assistant("m1", "a"))
        monitor.feed(self._assistant("m1", "b"))
        monitor.feed(self._assistant("m2", "c"))
        assert monitor.turns == 2
        assert monitor.text == "abc"

    def test_turn_limit(self):
        monitor = StreamMonitor(max_turns=1, max_budget_usd=1.0)
        assert monitor.feed(self._assistant("m1")) is None
        assert monitor.feed(self._assistant("m2")) is ExecutionStatus.TURN_LIMIT_EXCEEDED

    def test_budget_from_result_cost(self):
        monitor = StreamMonitor(max_turns=5, max_budget_usd=0.5)
        line = json.dumps({"type": "result", "total_cost_usd": 0.75, "result": "x"})
        assert monitor.feed(line) is ExecutionStatus.BUDGET_EXCEEDED
        assert monitor.cost_usd == 0.75

    @pytest.mark.parametrize(
        ("subtype", "status"),
        [
            ("error_max_turns", ExecutionStatus.TURN_LIMIT_EXCEEDED),
            ("error_max_budget_usd", ExecutionStatus.BUDGET_EXCEEDED),
        ],
    )
    def test_cli_reported_limits(self, subtype, status):
        monitor = StreamMonitor(max_turns=5, max_budget_usd=1.0)
        assert monitor.feed(json.dumps({"type": "result", "subtype": subtype})) is status

    def test_ignores_noise(self):
        monitor = StreamMonitor(max_turns=5, max_budget_usd=1.0)
        assert monitor.feed("not json") is None
        assert monitor.feed("") is None
        assert monitor.feed("[1, 2]") is None

    def test_result_text_wins(self):
        monitor = StreamMonitor(max_turns=5, max_budget_usd=1.0)
        monitor.feed(self._assistant("m1", "partial"))
        monitor.feed(json.dumps({"type": "result", "result": "final", "session_id": "s"}))
        assert monitor.text == "final"
        assert monitor.session_id == "s"


class TestClaudeExecutor:
    @pytest.mark.asyncio
    async def test_success(self, executor_config: ExecutorConfig):
        executor = ClaudeExecutor(executor_config)
        result = await executor.execute(request("hello turns=2 cost=0.02"))

        assert result.status is ExecutionStatus.SUCCESS
        assert result.output_text == "done: hello turns=2 cost=0.02"
        assert result.cost_usd == pytest.approx(0.02)
        assert result.turns_used == 2
        assert result.session_id == "sess-new"
        assert result.raw_result is not None
        assert result.ended_at >= result.started_at
        assert executor.active_count == 0

    @pytest.mark.asyncio
    async def test_passes_flags_to_cli(self, executor_config: ExecutorConfig):
        executor = ClaudeExecutor(executor_config)
        result = await executor.execute(request("echo_args", resume_session_id="sess-7"))

        argv = json.loads(result.output_text)
        assert argv[argv.index("--resume") + 1] == "sess-7"
        assert result.session_id == "sess-7"

    @pytest.mark.asyncio
    async def test_turn_limit_terminates(self, executor_config: ExecutorConfig):
        executor = ClaudeExecutor(executor_config)
        result = await executor.execute(request("turns=5 sleep=10", max_turns=2))

        assert result.status is ExecutionStatus.TURN_LIMIT_EXCEEDED
        assert "max_turns=2" in result.output_text
        assert result.duration_secs < 8

    @pytest.mark.asyncio
    async def test_budget_exceeded(self, executor_config: ExecutorConfig):
        executor = ClaudeExecutor(executor_config)
        result = await executor.execute(request("cost=2.5", max_budget_usd=1.0))

        assert result.status is ExecutionStatus.BUDGET_EXCEEDED
        assert result.cost_usd == pytest.approx(2.5)
        assert "Budget exceeded" in result.output_text

    @pytest.mark.asyncio
    async def test_timeout(self, fake_claude: Path):
        config = ExecutorConfig(
            command=[sys.executable, str(fake_claude)], timeout_secs=0.5, kill_grace_secs=1
        )
        result = await ClaudeExecutor(config).execute(request("sleep=30"))

        assert result.status is ExecutionStatus.TIMEOUT
        assert result.duration_secs < 5

    @pytest.mark.asyncio
    async def test_process_error_keeps_stderr(self, executor_config: ExecutorConfig):
        result = await ClaudeExecutor(executor_config).execute(request("fail"))

        assert result.status is ExecutionStatus.PROCESS_ERROR
        assert "boom" in result.output_text

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path: Path):
        config = ExecutorConfig(command=[str(tmp_path / "no-such-claude")])
        result = await ClaudeExecutor(config).execute(request())

        assert result.status is ExecutionStatus.PROCESS_ERROR
        assert "Failed to start" in result.output_text

    @pytest.mark.asyncio
    async def test_cancel_all(self, executor_config: ExecutorConfig):
        executor = ClaudeExecutor(executor_config)
        task = asyncio.create_task(executor.execute(request("sleep=30")))
        for _ in range(100):
            if executor.active_count:
                break
            await asyncio.sleep(0.05)

        assert executor.cancel_all() == 1
        result = await asyncio.wait_for(task, timeout=10)

        assert result.status is ExecutionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_concurrent_invocations(self, executor_config: ExecutorConfig):
        executor = ClaudeExecutor(executor_config)
        results = await asyncio.gather(
            executor.execute(request("one sleep=0.3", ref="a")),
            executor.execute(request("two sleep=0.3", ref="b")),
        )
        assert [r.ref for r in results] == ["a", "b"]
        assert all(r.ok for r in results)

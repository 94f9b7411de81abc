"""Claude CLI process executor.

Runs ``claude -p`` with ``--output-format stream-json --verbose`` so turns and
the final result can be observed while the process runs. Each process gets its
own session (process group) so termination reaches any tools it spawned.

Three conditions race to end an invocation and the first one wins:
- the wall-clock deadline passes (TIMEOUT)
- the stream monitor sees a turn or budget breach (limit statuses)
- ``cancel_all()`` is called during shutdown (CANCELLED)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from datetime import UTC, datetime
from typing import Any

from demon.config.models import ExecutorConfig
from demon.executor.types import ExecutionResult, ExecutionStatus, InvocationRequest

logger = logging.getLogger(__name__)

# stream-json lines carry whole messages; the asyncio default of 64 KiB is too small
_STREAM_LIMIT = 16 * 1024 * 1024

_SUBTYPE_STATUS = {
    "error_max_turns": ExecutionStatus.TURN_LIMIT_EXCEEDED,
    "error_max_budget_usd": ExecutionStatus.BUDGET_EXCEEDED,
}


def build_args(command: list[str], request: InvocationRequest) -> list[str]:
    """Build the argv for one invocation. The prompt is sent on stdin."""
    args = [
        *command,
        "-p",
        "--output-format",
        "stream-json",
        "--verbose",
        "--model",
        request.model,
    ]
    if request.fallback_model:
        args.extend(["--fallback-model", request.fallback_model])
    for tool in request.allowed_tools:
        args.extend(["--allowedTools", tool])
    for tool in request.disallowed_tools:
        args.extend(["--disallowedTools", tool])
    if request.system_prompt:
        args.extend(["--system-prompt", request.system_prompt])
    if request.append_system_prompt:
        args.extend(["--append-system-prompt", request.append_system_prompt])
    if request.mcp_config:
        args.extend(["--mcp-config", str(request.mcp_config)])
    args.extend(["--max-turns", str(request.max_turns)])
    args.extend(["--max-budget-usd", f"{request.max_budget_usd:.2f}"])
    if request.resume_session_id:
        args.extend(["--resume", request.resume_session_id])
    elif not request.persist_session:
        args.append("--no-session-persistence")
    return args


class StreamMonitor:
    """Tracks turns, text and the final result from stream-json events."""

    def __init__(self, max_turns: int, max_budget_usd: float) -> None:
        self.max_turns = max_turns
        self.max_budget_usd = max_budget_usd
        self.turns = 0
        self.session_id: str | None = None
        self.result: dict[str, Any] | None = None
        self._message_ids: set[str] = set()
        self._text_parts: list[str] = []

    @property
    def cost_usd(self) -> float | None:
        if self.result is None:
            return None
        cost = self.result.get("total_cost_usd")
        return float(cost) if isinstance(cost, int | float) else None

    @property
    def text(self) -> str:
        if self.result is not None and isinstance(self.result.get("result"), str):
            return self.result["result"]
        return "".join(self._text_parts)

    def feed(self, line: str) -> ExecutionStatus | None:
        """Consume one stream line.

        Returns:
            A limit status if this event breached a limit, else None.
        """
        line = line.strip()
        if not line:
            return None
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Skipping non-JSON line: {line[:100]}")
            return None
        if not isinstance(event, dict):
            return None

        if session_id := event.get("session_id"):
            self.session_id = session_id

        event_type = event.get("type")
        if event_type == "assistant":
            message = event.get("message") or {}
            message_id = message.get("id")
            # One turn may arrive as several events sharing a message id
            if message_id is None or message_id not in self._message_ids:
                if message_id is not None:
                    self._message_ids.add(message_id)
                self.turns += 1
            for block in message.get("content") or []:
                if isinstance(block, dict) and block.get("type") == "text":
                    self._text_parts.append(block.get("text", ""))
            if self.turns > self.max_turns:
                return ExecutionStatus.TURN_LIMIT_EXCEEDED

        elif event_type == "result":
            self.result = event
            if event.get("subtype") in _SUBTYPE_STATUS:
                return _SUBTYPE_STATUS[event["subtype"]]
            cost = self.cost_usd
            if cost is not None and cost > self.max_budget_usd:
                return ExecutionStatus.BUDGET_EXCEEDED

        return None


class ClaudeExecutor:
    """Spawns and supervises assistant CLI processes."""

    def __init__(self, config: ExecutorConfig | None = None) -> None:
        self._config = config or ExecutorConfig()
        self._cancel_events: set[asyncio.Event] = set()

    @property
    def active_count(self) -> int:
        return len(self._cancel_events)

    def cancel_all(self) -> int:
        """Signal every in-flight invocation to stop with CANCELLED.

        Returns:
            Number of invocations signalled.
        """
        for event in self._cancel_events:
            event.set()
        return len(self._cancel_events)

    async def execute(self, request: InvocationRequest) -> ExecutionResult:
        """Run one invocation to a terminal status. Never raises for process failures."""
        started_at = datetime.now(UTC)
        argv = build_args(self._config.command, request)
        timeout = self._config.timeout_for(request.max_turns)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=request.working_dir,
                start_new_session=True,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            logger.error(
                "execution_spawn_failed",
                extra={"ref": request.ref, "error.message": str(e)},
            )
            return ExecutionResult(
                ref=request.ref,
                started_at=started_at,
                ended_at=datetime.now(UTC),
                status=ExecutionStatus.PROCESS_ERROR,
                output_text=f"Failed to start {argv[0]}: {e}",
            )

        logger.info(
            "execution_started",
            extra={
                "ref": request.ref,
                "gen_ai.request.model": request.model,
                "process.pid": proc.pid,
                "timeout_secs": timeout,
            },
        )
        logger.debug(f"argv: {argv}")

        cancel_event = asyncio.Event()
        self._cancel_events.add(cancel_event)
        monitor = StreamMonitor(request.max_turns, request.max_budget_usd)
        try:
            status, stderr_text = await self._supervise(
                proc, request.prompt, monitor, cancel_event, timeout
            )
        finally:
            self._cancel_events.discard(cancel_event)
            await self._terminate(proc)

        result = self._build_result(
            request, started_at, status, monitor, stderr_text, proc.returncode
        )
        log = logger.info if result.ok else logger.warning
        log(
            "execution_finished",
            extra={
                "ref": request.ref,
                "status": result.status.value,
                "cost_usd": result.cost_usd,
                "turns": result.turns_used,
                "duration_secs": round(result.duration_secs, 2),
            },
        )
        return result

    async def _supervise(
        self,
        proc: asyncio.subprocess.Process,
        prompt: str,
        monitor: StreamMonitor,
        cancel_event: asyncio.Event,
        timeout: float,
    ) -> tuple[ExecutionStatus | None, str]:
        """Race the stream, the deadline and cancellation.

        Returns:
            The winning status (None when the process exited on its own) and
            captured stderr.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        assert proc.stdin is not None
        assert proc.stdout is not None
        assert proc.stderr is not None
        stderr_task = asyncio.create_task(proc.stderr.read())
        stream_task = asyncio.create_task(self._watch_stream(proc.stdout, monitor))
        cancel_task = asyncio.create_task(cancel_event.wait())

        status: ExecutionStatus | None = None
        try:
            await self._send_prompt(proc, prompt)

            done, _ = await asyncio.wait(
                {stream_task, cancel_task},
                timeout=max(0.0, deadline - loop.time()),
                return_when=asyncio.FIRST_COMPLETED,
            )
            if cancel_task in done:
                status = ExecutionStatus.CANCELLED
            elif stream_task in done:
                status = stream_task.result()
                if status is None:
                    # stdout closed; give the process the remaining time to exit
                    try:
                        await asyncio.wait_for(
                            proc.wait(), timeout=max(0.0, deadline - loop.time())
                        )
                    except TimeoutError:
                        status = ExecutionStatus.TIMEOUT
            else:
                status = ExecutionStatus.TIMEOUT

            if status is not None:
                logger.warning(
                    "execution_interrupted",
                    extra={"process.pid": proc.pid, "status": status.value},
                )
                await self._terminate(proc)
        finally:
            for task in (stream_task, cancel_task):
                if not task.done():
                    task.cancel()

        try:
            stderr = await asyncio.wait_for(stderr_task, timeout=1.0)
        except TimeoutError:
            stderr = b""
        return status, stderr.decode("utf-8", errors="replace").strip()

    async def _send_prompt(self, proc: asyncio.subprocess.Process, prompt: str) -> None:
        assert proc.stdin is not None
        try:
            proc.stdin.write(prompt.encode("utf-8"))
            await proc.stdin.drain()
            proc.stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            # Process exited before reading its prompt; its exit status tells the story
            pass

    async def _watch_stream(
        self, stdout: asyncio.StreamReader, monitor: StreamMonitor
    ) -> ExecutionStatus | None:
        """Feed stdout lines to the monitor until EOF or a limit breach."""
        while True:
            try:
                line = await stdout.readline()
            except ValueError:
                # Line exceeded the reader limit; drop it and keep going
                logger.warning("stream_line_too_long")
                continue
            if not line:
                return None
            verdict = monitor.feed(line.decode("utf-8", errors="replace"))
            if verdict is not None:
                return verdict

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, escalate to SIGKILL after the grace period."""
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._config.kill_grace_secs)
            return
        except TimeoutError:
            pass
        logger.warning("execution_kill", extra={"process.pid": proc.pid})
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        await proc.wait()

    def _build_result(
        self,
        request: InvocationRequest,
        started_at: datetime,
        status: ExecutionStatus | None,
        monitor: StreamMonitor,
        stderr_text: str,
        returncode: int | None,
    ) -> ExecutionResult:
        result = monitor.result
        if status is None:
            status = self._exit_status(monitor, returncode)

        if status is ExecutionStatus.SUCCESS:
            output_text = monitor.text
        elif status is ExecutionStatus.PROCESS_ERROR:
            output_text = (
                stderr_text
                or monitor.text
                or f"Process exited with code {returncode} and no result"
            )
        else:
            output_text = _limit_message(status, request) + (
                f"\n\n{monitor.text}" if monitor.text else ""
            )

        turns = None
        if result is not None and isinstance(result.get("num_turns"), int):
            turns = result["num_turns"]
        elif monitor.turns:
            turns = monitor.turns

        return ExecutionResult(
            ref=request.ref,
            started_at=started_at,
            ended_at=datetime.now(UTC),
            status=status,
            output_text=output_text,
            cost_usd=monitor.cost_usd,
            turns_used=turns,
            session_id=monitor.session_id,
            raw_result=result,
        )

    @staticmethod
    def _exit_status(monitor: StreamMonitor, returncode: int | None) -> ExecutionStatus:
        result = monitor.result
        if result is None:
            return ExecutionStatus.PROCESS_ERROR
        if result.get("is_error") or returncode not in (0, None):
            return ExecutionStatus.PROCESS_ERROR
        return ExecutionStatus.SUCCESS


def _limit_message(status: ExecutionStatus, request: InvocationRequest) -> str:
    if status is ExecutionStatus.TURN_LIMIT_EXCEEDED:
        return f"Turn limit exceeded (max_turns={request.max_turns})"
    if status is ExecutionStatus.BUDGET_EXCEEDED:
        return f"Budget exceeded (max_budget_usd={request.max_budget_usd:.2f})"
    if status is ExecutionStatus.TIMEOUT:
        return "Timed out"
    return "Cancelled"

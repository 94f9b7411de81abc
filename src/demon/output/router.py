"""Fan execution results out to files and chats.

Every destination is attempted independently: a failing chat send never
prevents the file from being written, and vice versa.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from demon.errors import GatewayUnavailable
from demon.executor.types import ExecutionResult
from demon.jobs.persistence import write_text_atomic
from demon.jobs.types import ChatDestination, FileDestination, OutputDestination
from demon.output.telegram import ChatSender

logger = logging.getLogger(__name__)

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of delivering to one destination."""

    destination: str
    ok: bool
    detail: str = ""
    path: Path | None = None


def _fmt_cost(cost: float | None) -> str:
    return f"${cost:.4f}" if cost is not None else "n/a"


def render_body(result: ExecutionResult, output_format: str) -> str:
    """Render the result for humans.

    ``json`` pretty-prints the final result object; ``text`` is just the text.
    Failures always get a short report.
    """
    if not result.ok:
        lines = [f"**Status:** {result.status.value}"]
        if result.output_text:
            lines.extend(["", result.output_text.strip()])
        return "\n".join(lines)

    if output_format == "json" and result.raw_result is not None:
        pretty = json.dumps(result.raw_result, indent=2, ensure_ascii=False)
        return f"```json\n{pretty}\n```"
    return result.output_text


def render_markdown(
    result: ExecutionResult,
    *,
    title: str,
    prompt: str,
    output_format: str,
) -> str:
    """Full markdown document for a file destination."""
    local_start = result.started_at.astimezone()
    header = [
        f"# Job: {title}",
        "",
        f"Date: {local_start.strftime('%Y-%m-%d %H:%M:%S')}",
        f"Status: {result.status.value}",
        f"Duration: {result.duration_secs:.1f}s",
        f"Cost: {_fmt_cost(result.cost_usd)}",
        f"Turns: {result.turns_used if result.turns_used is not None else 'n/a'}",
        f"Prompt: {prompt}",
        "",
        "---",
        "",
    ]
    return "\n".join(header) + render_body(result, output_format) + "\n"


def render_chat(result: ExecutionResult, *, title: str, output_format: str) -> str:
    """Chat message text: a bold title line and the body."""
    return f"**Job: {title}**\n\n{render_body(result, output_format)}"


class OutputRouter:
    """Delivers results to the configured destinations."""

    def __init__(self, output_dir: Path, sender: ChatSender | None = None) -> None:
        self._output_dir = output_dir
        self._sender = sender

    def output_path(self, ref: str, when: datetime) -> Path:
        """Pick a fresh file path for an execution; suffixes ``-N`` on collision."""
        directory = self._output_dir / _UNSAFE_PATH_CHARS.sub("_", ref)
        stem = when.astimezone().strftime("%Y-%m-%d_%H-%M-%S")
        path = directory / f"{stem}.md"
        n = 1
        while path.exists():
            path = directory / f"{stem}-{n}.md"
            n += 1
        return path

    def write_file(
        self,
        result: ExecutionResult,
        *,
        title: str,
        prompt: str,
        output_format: str,
    ) -> Path:
        path = self.output_path(result.ref, result.started_at)
        content = render_markdown(
            result, title=title, prompt=prompt, output_format=output_format
        )
        write_text_atomic(path, content)
        logger.info(
            "output_saved", extra={"ref": result.ref, "file.path": str(path)}
        )
        return path

    async def send_chat(
        self,
        result: ExecutionResult,
        chat_id: int,
        *,
        title: str | None,
        output_format: str,
    ) -> int:
        """Send to a chat. ``title=None`` sends the bare body (gateway replies).

        Raises:
            GatewayUnavailable: If no sender is configured or it cannot deliver.
        """
        if self._sender is None:
            raise GatewayUnavailable("No chat sender configured")
        if title is None:
            text = render_body(result, output_format)
        else:
            text = render_chat(result, title=title, output_format=output_format)
        return await self._sender.send(chat_id, text)

    async def route(
        self,
        result: ExecutionResult,
        destinations: Sequence[OutputDestination],
        *,
        title: str | None,
        prompt: str,
        output_format: str = "json",
    ) -> list[DeliveryOutcome]:
        """Deliver to each destination; never raises for delivery failures."""
        outcomes: list[DeliveryOutcome] = []
        for destination in destinations:
            label = str(destination)
            try:
                if isinstance(destination, FileDestination):
                    path = self.write_file(
                        result,
                        title=title or result.ref,
                        prompt=prompt,
                        output_format=output_format,
                    )
                    outcomes.append(DeliveryOutcome(label, True, str(path), path))
                elif isinstance(destination, ChatDestination):
                    chunks = await self.send_chat(
                        result,
                        destination.chat_id,
                        title=title,
                        output_format=output_format,
                    )
                    outcomes.append(DeliveryOutcome(label, True, f"{chunks} message(s)"))
                else:
                    outcomes.append(DeliveryOutcome(label, False, "unknown destination"))
            except Exception as e:
                logger.exception(
                    "delivery_failed",
                    extra={"ref": result.ref, "destination": label},
                )
                outcomes.append(DeliveryOutcome(label, False, str(e)))
        return outcomes

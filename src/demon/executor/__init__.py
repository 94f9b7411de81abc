"""Assistant CLI execution."""

from demon.executor.claude import ClaudeExecutor, StreamMonitor, build_args
from demon.executor.types import ExecutionResult, ExecutionStatus, InvocationRequest

__all__ = [
    "ClaudeExecutor",
    "ExecutionResult",
    "ExecutionStatus",
    "InvocationRequest",
    "StreamMonitor",
    "build_args",
]

"""Job definitions and the store that owns them."""

from demon.jobs.store import JobStore
from demon.jobs.types import (
    ChatDestination,
    FileDestination,
    Job,
    JobRunState,
    JobSnapshot,
    OutputDestination,
    ResolvedJob,
    parse_destination,
    parse_once_at,
)

__all__ = [
    "ChatDestination",
    "FileDestination",
    "Job",
    "JobRunState",
    "JobSnapshot",
    "JobStore",
    "OutputDestination",
    "ResolvedJob",
    "parse_destination",
    "parse_once_at",
]

"""Scheduling: due-time computation and the dispatch loop."""

from demon.scheduling.clock import (
    is_due,
    most_recent_instant,
    next_due,
    next_instant,
    validate_cron,
)
from demon.scheduling.loop import SchedulerLoop, request_for

__all__ = [
    "SchedulerLoop",
    "is_due",
    "most_recent_instant",
    "next_due",
    "next_instant",
    "request_for",
    "validate_cron",
]

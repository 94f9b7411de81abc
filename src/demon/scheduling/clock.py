"""Trigger clock: decides when jobs are due.

Cron expressions are evaluated in a local timezone and converted to UTC for
comparison, so "0 8 * * *" fires at 8 AM local time across DST changes.

Five-field expressions are standard cron. Six-field expressions carry a
leading seconds field (``sec min hour dom mon dow``); croniter expects
seconds last, so they are reordered before evaluation.

Recurring jobs coalesce catch-up: if the daemon slept through several
matching instants, the job fires once for the most recent one.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from demon.errors import ValidationError

if TYPE_CHECKING:
    from demon.jobs.types import Job, JobRunState

logger = logging.getLogger(__name__)


def _to_croniter(expr: str) -> tuple[str, bool]:
    """Return the croniter form of ``expr`` and whether it has seconds."""
    fields = expr.split()
    if len(fields) == 5:
        return " ".join(fields), False
    if len(fields) == 6:
        return " ".join(fields[1:] + fields[:1]), True
    raise ValidationError(
        f"Invalid cron expression {expr!r}: expected 5 or 6 fields, got {len(fields)}"
    )


def validate_cron(expr: str) -> str:
    """Check that a cron expression parses.

    Returns:
        The expression, whitespace-normalized.

    Raises:
        ValidationError: If the expression is malformed.
    """
    cron_expr, _ = _to_croniter(expr)
    try:
        croniter(cron_expr, datetime.now(UTC))
    except (ValueError, KeyError) as e:
        raise ValidationError(f"Invalid cron expression {expr!r}: {e}") from e
    return " ".join(expr.split())


def get_zone(timezone: str) -> ZoneInfo:
    """Resolve an IANA zone name, falling back to UTC."""
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("invalid_timezone", extra={"schedule.timezone": timezone})
        return ZoneInfo("UTC")


def most_recent_instant(expr: str, now: datetime, timezone: str = "UTC") -> datetime:
    """Most recent instant matching ``expr`` that is at or before ``now``.

    Returns:
        The instant in UTC.
    """
    cron_expr, has_seconds = _to_croniter(expr)
    local_now = now.astimezone(get_zone(timezone))
    if has_seconds:
        base = local_now.replace(microsecond=0) + timedelta(seconds=1)
    else:
        base = local_now.replace(second=0, microsecond=0) + timedelta(minutes=1)

    it = croniter(cron_expr, base)
    prev = it.get_prev(datetime)
    while prev > local_now:
        prev = it.get_prev(datetime)
    return prev.astimezone(UTC)


def next_instant(expr: str, now: datetime, timezone: str = "UTC") -> datetime:
    """First instant matching ``expr`` strictly after ``now``, in UTC."""
    cron_expr, _ = _to_croniter(expr)
    local_now = now.astimezone(get_zone(timezone))
    return croniter(cron_expr, local_now).get_next(datetime).astimezone(UTC)


def _anchor(state: JobRunState, started_at: datetime) -> datetime:
    if state.last_run_at is not None:
        return state.last_run_at
    return max(started_at, state.created_at)


def is_due(
    job: Job,
    state: JobRunState,
    now: datetime,
    started_at: datetime,
    timezone: str = "UTC",
) -> bool:
    """Check if a job should fire at ``now``.

    Args:
        job: The job definition.
        state: The job's run state.
        now: Current time (timezone-aware).
        started_at: When the daemon started; anchors jobs that never ran.
        timezone: IANA zone for evaluating cron expressions.
    """
    if not job.is_recurring:
        if state.consumed or job.once_at is None:
            return False
        return now >= job.once_at

    if job.schedule is None:
        return False
    try:
        recent = most_recent_instant(job.schedule, now, timezone)
    except (ValidationError, ValueError, KeyError) as e:
        logger.warning(
            "cron_eval_failed",
            extra={"job.id": job.id, "schedule.cron": job.schedule, "error.message": str(e)},
        )
        return False

    due = recent > _anchor(state, started_at)
    logger.debug(
        f"Job {job.id}: cron='{job.schedule}' (tz={timezone}), "
        f"recent={recent.isoformat()}, now={now.isoformat()}, due={due}"
    )
    return due


def next_due(
    job: Job,
    state: JobRunState,
    now: datetime,
    timezone: str = "UTC",
) -> datetime | None:
    """When the job will next fire, for status reporting.

    Returns:
        A UTC datetime, or None for consumed one-shots and unparseable crons.
    """
    if not job.is_recurring:
        if state.consumed or job.once_at is None:
            return None
        return job.once_at.astimezone(UTC)

    if job.schedule is None:
        return None
    try:
        return next_instant(job.schedule, now, timezone)
    except (ValidationError, ValueError, KeyError):
        return None

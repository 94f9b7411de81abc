"""Job store: owns job definitions and their run state.

Definitions live in jobs.toml, run state in state.json. Everything else in
the daemon works on snapshots and requests changes through this class.

A single in-process lock guards memory, and every mutation persists before
the lock is released, so a successful return means the change is durable.
An advisory file lock serializes writers across processes (the daemon and
CLI commands editing the files while no daemon is running).
"""

from __future__ import annotations

import copy
import fcntl
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

from demon.config.paths import DemonPaths
from demon.errors import (
    AlreadyRunning,
    DuplicateId,
    JobNotFound,
    PersistenceError,
    ValidationError,
)
from demon.jobs.persistence import (
    read_jobs_file,
    read_state_file,
    write_jobs_file,
    write_state_file,
)
from demon.jobs.types import Job, JobRunState, JobSnapshot

if TYPE_CHECKING:
    from demon.executor.types import ExecutionResult

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class JobStore:
    """Thread-safe, file-backed storage for jobs."""

    def __init__(self, paths: DemonPaths) -> None:
        self._paths = paths
        self._lock = threading.Lock()
        self._jobs: dict[str, Job] = {}
        self._state: dict[str, JobRunState] = {}

    @property
    def paths(self) -> DemonPaths:
        return self._paths

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Read jobs.toml and state.json.

        Raises:
            PersistenceError: If either file is malformed or a job is invalid.
        """
        with self._lock:
            with self._file_lock():
                jobs = self._read_jobs()
                raw_state = read_state_file(self._paths.state_file)

            state: dict[str, JobRunState] = {}
            for job_id, data in raw_state.items():
                try:
                    state[job_id] = JobRunState.from_dict(data)
                except (TypeError, ValueError) as e:
                    raise PersistenceError(
                        f"Invalid run state for job '{job_id}': {e}"
                    ) from e

            self._jobs = jobs
            self._state = state
            for job_id in jobs:
                self._state.setdefault(job_id, JobRunState())

        logger.info("jobs_loaded", extra={"count": len(jobs)})

    def reload(self) -> None:
        """Re-read jobs.toml, keeping run state and the running set.

        Raises:
            PersistenceError: If the file is malformed; the current jobs are kept.
        """
        with self._lock:
            with self._file_lock():
                jobs = self._read_jobs()
            running = {jid for jid, s in self._state.items() if s.running}
            self._jobs = jobs
            for job_id in jobs:
                self._state.setdefault(job_id, JobRunState())
            # Forget state of removed jobs unless they are still executing
            for job_id in list(self._state):
                if job_id not in jobs and job_id not in running:
                    del self._state[job_id]

        logger.info("jobs_reloaded", extra={"count": len(jobs)})

    def _read_jobs(self) -> dict[str, Job]:
        jobs: dict[str, Job] = {}
        for raw in read_jobs_file(self._paths.jobs_file):
            try:
                job = Job.from_dict(raw)
            except ValidationError as e:
                raise PersistenceError(f"{self._paths.jobs_file}: {e}") from e
            if job.id in jobs:
                raise PersistenceError(
                    f"{self._paths.jobs_file}: duplicate job id '{job.id}'"
                )
            jobs[job.id] = job
        return jobs

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> JobSnapshot:
        """Raises JobNotFound if the id is unknown."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            return JobSnapshot.of(job, self._state[job_id])

    def list(self) -> list[JobSnapshot]:
        with self._lock:
            return [
                JobSnapshot.of(job, self._state[job_id])
                for job_id, job in self._jobs.items()
            ]

    def snapshot_due_candidates(self, now: datetime) -> list[JobSnapshot]:
        """Copies of every job that could fire: enabled, idle and not consumed.

        ``now`` is accepted for symmetry with the clock; filtering by time is
        the clock's job.
        """
        with self._lock:
            return [
                JobSnapshot.of(job, state)
                for job_id, job in self._jobs.items()
                if job.enabled
                and not (state := self._state[job_id]).running
                and not state.consumed
            ]

    # ------------------------------------------------------------------
    # Execution bookkeeping
    # ------------------------------------------------------------------

    def mark_running(self, job_id: str, now: datetime | None = None) -> JobSnapshot:
        """Claim a job for execution.

        One-shot jobs are marked consumed and disabled, and both are persisted
        before returning, so neither a crash mid-run nor a later ``enable`` on
        the still-listed job can fire them again.

        Raises:
            JobNotFound: If the id is unknown.
            AlreadyRunning: If the job is already executing.
        """
        now = now or datetime.now(UTC)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            state = self._state[job_id]
            if state.running:
                raise AlreadyRunning(job_id)

            previous = copy.deepcopy(state)
            state.running = True
            state.last_run_at = now
            if job.is_recurring:
                try:
                    self._persist_state()
                except PersistenceError:
                    self._state[job_id] = previous
                    raise
                return JobSnapshot.of(job, state)

            state.consumed = True
            fired = job.model_copy(update={"enabled": False})
            jobs = {**self._jobs, job_id: fired}
            try:
                with self._file_lock():
                    write_jobs_file(
                        self._paths.jobs_file, [j.to_dict() for j in jobs.values()]
                    )
                    self._write_state()
            except PersistenceError:
                self._state[job_id] = previous
                raise
            self._jobs = jobs
            return JobSnapshot.of(fired, state)

    def mark_finished(self, job_id: str, result: ExecutionResult) -> None:
        """Record the outcome of an execution and release the job."""
        with self._lock:
            state = self._state.get(job_id)
            if state is None:
                logger.warning("finished_unknown_job", extra={"job.id": job_id})
                return
            state.running = False
            state.last_finished_at = result.ended_at
            state.last_status = result.status.value
            state.last_error = None if result.ok else result.error_summary()
            state.run_count += 1
            if job_id not in self._jobs:
                # Removed while running
                del self._state[job_id]
            self._persist_state()

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def add(self, job: Job | dict[str, Any]) -> JobSnapshot:
        """Add a job.

        Raises:
            DuplicateId: If a job with the same id exists.
            ValidationError: If the definition is invalid.
        """
        if not isinstance(job, Job):
            job = Job.from_dict(job)
        new_job = job.model_copy(deep=True)

        def mutate(jobs: dict[str, Job]) -> JobSnapshot:
            if new_job.id in jobs:
                raise DuplicateId(new_job.id)
            jobs[new_job.id] = new_job
            state = self._state.get(new_job.id)
            if state is None or not state.running:
                state = self._state[new_job.id] = JobRunState()
            return JobSnapshot.of(new_job, state)

        snapshot = self._mutate(mutate)
        logger.info("job_added", extra={"job.id": new_job.id})
        return snapshot

    def remove(self, job_id: str) -> None:
        """Raises JobNotFound if the id is unknown."""

        def mutate(jobs: dict[str, Job]) -> None:
            if job_id not in jobs:
                raise JobNotFound(job_id)
            del jobs[job_id]
            state = self._state.get(job_id)
            if state is not None and not state.running:
                del self._state[job_id]

        self._mutate(mutate)
        logger.info("job_removed", extra={"job.id": job_id})

    def set_enabled(self, job_id: str, enabled: bool) -> JobSnapshot:
        """Enable or disable a job. Idempotent.

        A consumed one-shot stays consumed whatever its enabled flag says;
        the clock never considers it due again.

        Raises:
            JobNotFound: If the id is unknown.
        """

        def mutate(jobs: dict[str, Job]) -> JobSnapshot:
            job = jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            job.enabled = enabled
            return JobSnapshot.of(job, self._state[job_id])

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            state = self._state[job_id]
            if job.enabled == enabled:
                return JobSnapshot.of(job, state)

        snapshot = self._mutate(mutate)
        logger.info(
            "job_enabled" if enabled else "job_disabled", extra={"job.id": job_id}
        )
        return snapshot

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        lock_path = self._paths.lock_file
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with lock_path.open("a+") as lockf:
            try:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _mutate(self, mutate: Callable[[dict[str, Job]], _T]) -> _T:
        """Apply ``mutate`` to a working copy and persist; roll back on error."""
        with self._lock:
            jobs = copy.deepcopy(self._jobs)
            state = copy.deepcopy(self._state)
            try:
                result = mutate(jobs)
                with self._file_lock():
                    write_jobs_file(
                        self._paths.jobs_file, [j.to_dict() for j in jobs.values()]
                    )
                    self._write_state()
            except BaseException:
                self._state = state
                raise
            self._jobs = jobs
            return result

    def _persist_state(self) -> None:
        with self._file_lock():
            self._write_state()

    def _write_state(self) -> None:
        write_state_file(
            self._paths.state_file,
            {job_id: s.to_dict() for job_id, s in self._state.items()},
        )

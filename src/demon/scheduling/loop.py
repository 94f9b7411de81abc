"""Scheduler loop: ticks, finds due jobs and dispatches them.

The loop owns the tick task and the set of in-flight execution tasks. All
job data access goes through JobStore; the loop only ever sees snapshots.
Dispatch is fire-and-forget: a slow job never delays the next tick.
"""

import asyncio
import logging
from datetime import UTC, datetime

from demon.config.models import JobDefaults
from demon.errors import AlreadyRunning, DemonError
from demon.executor.claude import ClaudeExecutor
from demon.executor.types import ExecutionResult, ExecutionStatus, InvocationRequest
from demon.jobs.store import JobStore
from demon.jobs.types import JobSnapshot, ResolvedJob
from demon.output.router import OutputRouter
from demon.scheduling import clock

logger = logging.getLogger(__name__)

# Heartbeat every N ticks (~5 min at the default 1s tick)
HEARTBEAT_TICKS = 300

# How long a cancelled execution may spend delivering its report
CANCELLED_ROUTE_TIMEOUT_SECS = 5.0


def request_for(job: ResolvedJob) -> InvocationRequest:
    """Build the executor request for a resolved job."""
    return InvocationRequest(
        ref=job.id,
        prompt=job.prompt,
        model=job.model,
        max_turns=job.max_turns,
        max_budget_usd=job.max_budget_usd,
        fallback_model=job.fallback_model,
        allowed_tools=tuple(job.allowed_tools),
        disallowed_tools=tuple(job.disallowed_tools),
        system_prompt=job.system_prompt,
        append_system_prompt=job.append_system_prompt,
        mcp_config=job.mcp_config,
        working_dir=job.working_dir,
    )


class SchedulerLoop:
    """Drives recurring and one-shot jobs.

    Example:
        loop = SchedulerLoop(store, executor, router, config.defaults)
        await loop.start()
        ...
        await loop.stop()
        await loop.drain(grace=30)
    """

    def __init__(
        self,
        store: JobStore,
        executor: ClaudeExecutor,
        router: OutputRouter,
        defaults: JobDefaults | None = None,
        *,
        tick_secs: float = 1.0,
        timezone: str = "UTC",
        started_at: datetime | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._router = router
        self._defaults = defaults or JobDefaults()
        self._tick_secs = tick_secs
        self._timezone = timezone
        self._started_at = started_at or datetime.now(UTC)
        self._tasks: set[asyncio.Task[ExecutionResult]] = set()
        self._tick_task: asyncio.Task[None] | None = None
        self._running = False
        self._tick_count = 0

    @property
    def started_at(self) -> datetime:
        return self._started_at

    @property
    def timezone(self) -> str:
        return self._timezone

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info(
            "scheduler_started",
            extra={"tick_secs": self._tick_secs, "schedule.timezone": self._timezone},
        )
        self._tick_task = asyncio.create_task(self._tick_loop())

    async def stop(self) -> None:
        """Stop ticking. In-flight executions keep running; see drain()."""
        if not self._running:
            return
        self._running = False
        if self._tick_task:
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
            self._tick_task = None
        logger.info("scheduler_stopped", extra={"in_flight": self.in_flight})

    async def _tick_loop(self) -> None:
        while self._running:
            try:
                self._tick_count += 1
                if self._tick_count % HEARTBEAT_TICKS == 0:
                    logger.info(
                        "scheduler_heartbeat",
                        extra={"tick.count": self._tick_count, "in_flight": self.in_flight},
                    )
                self._tick(datetime.now(UTC))
            except Exception:
                logger.exception("scheduler_tick_error")
            await asyncio.sleep(self._tick_secs)

    def _tick(self, now: datetime) -> list[str]:
        """Dispatch every job due at ``now``.

        Returns:
            Ids of the jobs dispatched.
        """
        dispatched: list[str] = []
        candidates = self._store.snapshot_due_candidates(now)
        for snapshot in candidates:
            if not clock.is_due(
                snapshot.job, snapshot.state, now, self._started_at, self._timezone
            ):
                continue
            try:
                claimed = self._store.mark_running(snapshot.job.id, now)
            except AlreadyRunning:
                logger.debug(f"Job {snapshot.job.id} already running, skipping")
                continue
            except DemonError as e:
                logger.error(
                    "job_claim_failed",
                    extra={"job.id": snapshot.job.id, "error.message": str(e)},
                )
                continue
            logger.info(
                "job_dispatched",
                extra={"job.id": claimed.job.id, "schedule.type": claimed.job.schedule_type},
            )
            self._spawn(claimed)
            dispatched.append(claimed.job.id)
        return dispatched

    def _spawn(self, snapshot: JobSnapshot) -> asyncio.Task[ExecutionResult]:
        task = asyncio.create_task(self._run(snapshot), name=f"job:{snapshot.job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, snapshot: JobSnapshot) -> ExecutionResult:
        """Execute a claimed job, record the outcome and route it."""
        job = snapshot.job
        resolved = job.resolve(self._defaults)
        request = request_for(resolved)
        started_at = datetime.now(UTC)

        try:
            result = await self._executor.execute(request)
        except asyncio.CancelledError:
            result = ExecutionResult(
                ref=job.id,
                started_at=started_at,
                ended_at=datetime.now(UTC),
                status=ExecutionStatus.CANCELLED,
                output_text="Cancelled during shutdown",
            )
            self._finish(job.id, result)
            try:
                await asyncio.wait_for(
                    self._deliver(result, resolved), timeout=CANCELLED_ROUTE_TIMEOUT_SECS
                )
            except (TimeoutError, asyncio.CancelledError):
                logger.warning("job_cancel_report_dropped", extra={"job.id": job.id})
            raise
        except Exception as e:
            logger.exception("job_execution_error", extra={"job.id": job.id})
            result = ExecutionResult(
                ref=job.id,
                started_at=started_at,
                ended_at=datetime.now(UTC),
                status=ExecutionStatus.PROCESS_ERROR,
                output_text=f"Executor error: {e}",
            )

        self._finish(job.id, result)
        log = logger.info if result.ok else logger.warning
        log(
            "job_finished",
            extra={
                "job.id": job.id,
                "status": result.status.value,
                "cost_usd": result.cost_usd,
                "turns": result.turns_used,
            },
        )
        await self._deliver(result, resolved)
        return result

    async def _deliver(self, result: ExecutionResult, resolved: ResolvedJob) -> None:
        outcomes = await self._router.route(
            result,
            resolved.destinations,
            title=resolved.name,
            prompt=resolved.prompt,
            output_format=resolved.output_format,
        )
        for outcome in outcomes:
            if not outcome.ok:
                logger.warning(
                    "job_delivery_failed",
                    extra={
                        "job.id": result.ref,
                        "destination": outcome.destination,
                        "error.message": outcome.detail,
                    },
                )

    def _finish(self, job_id: str, result: ExecutionResult) -> None:
        try:
            self._store.mark_finished(job_id, result)
        except DemonError as e:
            logger.error(
                "job_state_update_failed",
                extra={"job.id": job_id, "error.message": str(e)},
            )

    async def run_now(self, job_id: str, *, wait: bool = True) -> ExecutionResult | None:
        """Run a job immediately, bypassing its schedule.

        Args:
            job_id: The job to run.
            wait: Wait for the execution to finish and return its result.

        Raises:
            JobNotFound: If the id is unknown.
            AlreadyRunning: If the job is executing.
        """
        snapshot = self._store.mark_running(job_id, datetime.now(UTC))
        logger.info("job_run_requested", extra={"job.id": job_id})
        task = self._spawn(snapshot)
        if not wait:
            return None
        # Shield so a disconnecting caller does not cancel the execution
        return await asyncio.shield(task)

    async def drain(self, grace: float, kill_wait: float = 10.0) -> bool:
        """Wait for in-flight executions, cancelling them after ``grace`` seconds.

        Returns:
            True if everything finished within the grace period.
        """
        if not self._tasks:
            return True
        logger.info(
            "scheduler_draining", extra={"in_flight": self.in_flight, "grace_secs": grace}
        )
        _, pending = await asyncio.wait(set(self._tasks), timeout=grace)
        if not pending:
            return True

        cancelled = self._executor.cancel_all()
        logger.warning(
            "scheduler_cancelling", extra={"in_flight": len(pending), "signalled": cancelled}
        )
        _, pending = await asyncio.wait(pending, timeout=kill_wait)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return False

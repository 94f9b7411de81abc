"""Tests for the scheduler loop."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from demon.config.models import ExecutorConfig, JobDefaults
from demon.config.paths import DemonPaths
from demon.errors import AlreadyRunning, JobNotFound
from demon.executor.claude import ClaudeExecutor
from demon.executor.types import ExecutionStatus
from demon.jobs.store import JobStore
from demon.jobs.types import Job
from demon.output.router import OutputRouter
from demon.scheduling.loop import SchedulerLoop, request_for

from .factories import once_job, recurring_job


@pytest.fixture
def scheduler(
    store: JobStore, paths: DemonPaths, executor_config: ExecutorConfig
) -> SchedulerLoop:
    return SchedulerLoop(
        store,
        ClaudeExecutor(executor_config),
        OutputRouter(paths.output_dir),
        JobDefaults(),
        tick_secs=0.05,
        timezone="UTC",
        started_at=datetime.now(UTC) - timedelta(hours=1),
    )


async def wait_for(predicate, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


def test_request_for_resolves_defaults():
    job = Job.from_dict(recurring_job(allowed_tools=["Read"], working_dir="/tmp"))
    request = request_for(job.resolve(JobDefaults(model="haiku", max_turns=4)))
    assert request.ref == "daily"
    assert request.model == "haiku"
    assert request.max_turns == 4
    assert request.allowed_tools == ("Read",)
    assert str(request.working_dir) == "/tmp"


class TestTick:
    @pytest.mark.asyncio
    async def test_dispatches_due_once_job(
        self, scheduler: SchedulerLoop, store: JobStore, paths: DemonPaths
    ):
        store.add(once_job())

        assert scheduler._tick(datetime.now(UTC)) == ["reminder"]
        assert store.get("reminder").state.consumed
        assert await scheduler.drain(grace=10)

        state = store.get("reminder").state
        assert state.last_status == "success"
        assert state.run_count == 1
        assert not state.running
        files = list((paths.output_dir / "reminder").glob("*.md"))
        assert len(files) == 1
        assert "done: Renew the domain" in files[0].read_text()

    @pytest.mark.asyncio
    async def test_skips_jobs_not_due(self, scheduler: SchedulerLoop, store: JobStore):
        store.add(once_job(once_at="2099-01-01T00:00:00+00:00"))
        store.add(recurring_job(schedule="0 0 1 1 *"))
        store.add(once_job("off", enabled=False))

        assert scheduler._tick(datetime.now(UTC)) == []
        assert scheduler.in_flight == 0

    @pytest.mark.asyncio
    async def test_running_job_not_dispatched_twice(
        self, scheduler: SchedulerLoop, store: JobStore
    ):
        store.add(recurring_job(schedule="* * * * * *", prompt="slow sleep=1"))
        now = datetime.now(UTC) + timedelta(seconds=2)

        assert scheduler._tick(now) == ["daily"]
        assert scheduler._tick(now + timedelta(seconds=1)) == []
        assert scheduler.in_flight == 1
        await scheduler.drain(grace=10)

    @pytest.mark.asyncio
    async def test_failure_recorded(self, scheduler: SchedulerLoop, store: JobStore):
        store.add(once_job(prompt="fail"))
        scheduler._tick(datetime.now(UTC))
        await scheduler.drain(grace=10)

        state = store.get("reminder").state
        assert state.last_status == "process_error"
        assert "boom" in state.last_error


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_fires_due_job(self, scheduler: SchedulerLoop, store: JobStore):
        store.add(once_job())
        await scheduler.start()
        try:
            await wait_for(lambda: store.get("reminder").state.run_count == 1)
        finally:
            await scheduler.stop()
        assert not scheduler.is_running
        assert await scheduler.drain(grace=5)

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, scheduler: SchedulerLoop):
        await scheduler.start()
        await scheduler.start()
        await scheduler.stop()
        await scheduler.stop()


class TestRunNow:
    @pytest.mark.asyncio
    async def test_returns_result(self, scheduler: SchedulerLoop, store: JobStore):
        store.add(recurring_job(schedule="0 0 1 1 *"))

        result = await scheduler.run_now("daily")

        assert result.status is ExecutionStatus.SUCCESS
        assert result.output_text == "done: Plan my day"
        state = store.get("daily").state
        assert state.run_count == 1
        assert state.last_run_at is not None

    @pytest.mark.asyncio
    async def test_consumes_once_job(self, scheduler: SchedulerLoop, store: JobStore):
        store.add(once_job(once_at="2099-01-01T00:00:00+00:00"))
        await scheduler.run_now("reminder")
        assert store.get("reminder").state.consumed

    @pytest.mark.asyncio
    async def test_disabled_job_can_run(self, scheduler: SchedulerLoop, store: JobStore):
        store.add(recurring_job(enabled=False))
        result = await scheduler.run_now("daily")
        assert result.ok

    @pytest.mark.asyncio
    async def test_unknown(self, scheduler: SchedulerLoop):
        with pytest.raises(JobNotFound):
            await scheduler.run_now("ghost")

    @pytest.mark.asyncio
    async def test_already_running(self, scheduler: SchedulerLoop, store: JobStore):
        store.add(recurring_job(prompt="slow sleep=1"))
        assert await scheduler.run_now("daily", wait=False) is None
        with pytest.raises(AlreadyRunning):
            await scheduler.run_now("daily")
        await scheduler.drain(grace=10)


class TestDrain:
    @pytest.mark.asyncio
    async def test_nothing_in_flight(self, scheduler: SchedulerLoop):
        assert await scheduler.drain(grace=0)

    @pytest.mark.asyncio
    async def test_waits_for_in_flight(self, scheduler: SchedulerLoop, store: JobStore):
        store.add(once_job(prompt="short sleep=0.5"))
        scheduler._tick(datetime.now(UTC))
        await scheduler.stop()

        assert await scheduler.drain(grace=10)
        assert store.get("reminder").state.last_status == "success"

    @pytest.mark.asyncio
    async def test_cancels_after_grace(self, scheduler: SchedulerLoop, store: JobStore):
        store.add(once_job(prompt="slow sleep=30"))
        scheduler._tick(datetime.now(UTC))
        await asyncio.sleep(0.3)

        assert not await scheduler.drain(grace=0.2, kill_wait=5)

        assert scheduler.in_flight == 0
        state = store.get("reminder").state
        assert state.last_status == "cancelled"
        assert not state.running

    @pytest.mark.asyncio
    async def test_task_cancel_still_writes_report(
        self, scheduler: SchedulerLoop, store: JobStore, paths: DemonPaths
    ):
        store.add(once_job(prompt="slow sleep=30"))
        await scheduler.run_now("reminder", wait=False)
        await asyncio.sleep(0.3)

        task = next(iter(scheduler._tasks))
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert store.get("reminder").state.last_status == "cancelled"
        files = list((paths.output_dir / "reminder").glob("*.md"))
        assert len(files) == 1
        assert "Status: cancelled" in files[0].read_text()


class RecordingSender:
    def __init__(self) -> None:
        self.sent: list[tuple[int, str]] = []

    async def send(self, chat_id: int, text: str) -> int:
        self.sent.append((chat_id, text))
        return 1


class TestLimitReports:
    @pytest.mark.asyncio
    async def test_budget_breach_reaches_every_destination(
        self,
        store: JobStore,
        paths: DemonPaths,
        executor_config: ExecutorConfig,
    ):
        sender = RecordingSender()
        scheduler = SchedulerLoop(
            store,
            ClaudeExecutor(executor_config),
            OutputRouter(paths.output_dir, sender),
            JobDefaults(),
        )
        store.add(
            recurring_job(
                prompt="Plan my day cost=2.5",
                max_budget_usd=1.0,
                output_destinations=["file", "chat:1"],
            )
        )

        result = await scheduler.run_now("daily")

        assert result.status is ExecutionStatus.BUDGET_EXCEEDED
        assert store.get("daily").state.last_status == "budget_exceeded"
        files = list((paths.output_dir / "daily").glob("*.md"))
        assert len(files) == 1
        assert "Status: budget_exceeded" in files[0].read_text()
        assert len(sender.sent) == 1
        chat_id, text = sender.sent[0]
        assert chat_id == 1
        assert "budget_exceeded" in text

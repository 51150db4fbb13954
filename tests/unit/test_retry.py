"""
Unit tests for the retry / backoff governor.
"""
from datetime import datetime, timedelta

import pytest

from hollon_orchestrator.config import BackoffConfig
from hollon_orchestrator.engine import RetryGovernor
from hollon_orchestrator.errors import AlreadyInMergedOrTerminalState, NotFound
from hollon_orchestrator.orchestrator_types import Task, TaskStatus

NOW = datetime(2024, 3, 1, 9, 0)


@pytest.fixture
def governor(store):
    return RetryGovernor(store, BackoffConfig())


class TestBackoffSchedule:

    def test_delays_double_then_cap(self):
        """The delay doubles per failure up to the ceiling."""
        backoff = BackoffConfig()
        assert [backoff.delay_for(n) for n in range(1, 7)] == [300, 600, 1200, 2400, 3600, 3600]

    def test_zero_is_treated_as_first_failure(self):
        """A zero count gets the first delay."""
        assert BackoffConfig().delay_for(0) == 300


class TestRecordFailure:

    async def test_first_failure_blocks_with_backoff(self, store, governor):
        """The first failure blocks the task for the initial delay."""
        await store.save(Task(id="t", title="t", status=TaskStatus.IN_PROGRESS))
        task = await governor.record_failure("t", "boom", now=NOW)

        assert task.status == TaskStatus.BLOCKED
        assert task.consecutive_failures == 1
        assert task.error_message == "boom"
        assert task.last_failed_at == NOW
        assert task.blocked_until == NOW + timedelta(seconds=300)
        assert governor.is_backing_off(task, NOW)
        assert not governor.is_backing_off(task, NOW + timedelta(seconds=301))

    async def test_fourth_failure_fails_the_task(self, store, governor):
        """Failures past the automatic retries fail the task."""
        await store.save(Task(id="t", title="t", status=TaskStatus.IN_PROGRESS))
        statuses = []
        for i in range(4):
            task = await governor.record_failure("t", f"err {i}", now=NOW)
            statuses.append(task.status)
        assert statuses == [TaskStatus.BLOCKED] * 3 + [TaskStatus.FAILED]
        stored = await store.get("t")
        assert stored.consecutive_failures == 4
        assert stored.blocked_until == NOW + timedelta(seconds=2400)

    async def test_terminal_task_rejected(self, store, governor):
        """Finished tasks cannot record failures."""
        await store.save(Task(id="t", title="t", status=TaskStatus.COMPLETED))
        with pytest.raises(AlreadyInMergedOrTerminalState):
            await governor.record_failure("t", "late", now=NOW)

    async def test_missing_task(self, governor):
        """Failures for unknown tasks raise NotFound."""
        with pytest.raises(NotFound):
            await governor.record_failure("ghost", "x")


class TestRetryAndSuccess:

    async def test_retry_failed_task(self, store, governor):
        """A manager retry readies the task and keeps the failure count."""
        await store.save(Task(
            id="t", title="t", status=TaskStatus.FAILED, consecutive_failures=4,
            error_message="boom", blocked_until=NOW,
        ))
        task = await governor.retry("t")
        assert task.status == TaskStatus.READY
        assert task.retry_count == 1
        assert task.error_message is None
        assert task.blocked_until is None
        assert task.consecutive_failures == 4

    async def test_failure_after_retry_is_recorded(self, store, governor):
        """Exhausted auto-retries survive a manual retry, so the next failure is final."""
        await store.save(Task(id="t", title="t", status=TaskStatus.FAILED, consecutive_failures=4))
        await governor.retry("t")
        task = await governor.record_failure("t", "again", now=NOW)
        assert task.status == TaskStatus.FAILED
        assert task.consecutive_failures == 5
        assert task.blocked_until == NOW + timedelta(seconds=3600)

    async def test_retry_requires_failed_or_blocked(self, store, governor):
        """Only failed or blocked tasks can be retried."""
        await store.save(Task(id="t", title="t", status=TaskStatus.IN_PROGRESS))
        with pytest.raises(AlreadyInMergedOrTerminalState):
            await governor.retry("t")

    def test_success_resets_telemetry(self, governor):
        """Success clears every failure field."""
        task = Task(id="t", title="t", consecutive_failures=2, blocked_until=NOW, error_message="x", last_failed_at=NOW)
        governor.record_success(task)
        assert task.consecutive_failures == 0
        assert task.blocked_until is None
        assert task.error_message is None
        assert task.last_failed_at is None


class TestResurfaceDue:

    async def test_expired_backoff_returns_to_ready(self, store, governor):
        """Tasks past their backoff window resurface as ready."""
        await store.save(Task(id="t", title="t", status=TaskStatus.IN_PROGRESS))
        await governor.record_failure("t", "boom", now=NOW)

        assert await governor.resurface_due(now=NOW + timedelta(seconds=10)) == []
        assert await governor.resurface_due(now=NOW + timedelta(seconds=300)) == ["t"]
        task = await store.get("t")
        assert task.status == TaskStatus.READY
        assert task.blocked_until is None

    async def test_waits_for_dependencies(self, store, governor):
        """Expired backoff alone does not release a task with open dependencies."""
        await store.save(Task(id="dep", title="dep", status=TaskStatus.IN_PROGRESS))
        await store.save(Task(
            id="t", title="t", status=TaskStatus.BLOCKED, dependencies=["dep"], blocked_until=NOW,
        ))
        assert await governor.resurface_due(now=NOW + timedelta(hours=1)) == []

"""Unit tests for ExecutionTracker outcome recording and retry decisions."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from almanac.core.errors import ConcurrencyConflict, NotFoundError
from almanac.core.models.retry import RetryPolicy
from almanac.core.models.schedule_task import ExecutionRecord, ScheduleTask
from almanac.core.scheduler.state import InMemoryTaskRepository, version_conflict
from almanac.core.scheduler.tracker import ExecutionTracker
from almanac.core.types.status import ExecutionStatus, ScheduleStatus

NOW = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
NINE = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def _make_task(**overrides: Any) -> ScheduleTask:
    params: dict[str, Any] = {
        'account_id': 'acct-1',
        'name': 'Daily digest',
        'task_type': 'notification',
        'scheduled_time': NOW,
        'recurrence_rule': '0 9 * * *',
        'recurring': True,
        'max_retries': 3,
        'source_module': 'notification',
        'source_entity_id': 'n-1',
        'now': NOW,
    }
    params.update(overrides)
    return ScheduleTask.create(**params)


class _Sink:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.received: list[tuple[ScheduleTask, ExecutionRecord]] = []

    async def emit_execution_result(self, task: ScheduleTask, record: ExecutionRecord) -> None:
        if self.fail:
            raise RuntimeError('producer offline')
        self.received.append((task, record))


class _RacingRepository(InMemoryTaskRepository):
    """Rejects the first ``conflicts`` saves as stale."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts
        self.save_calls = 0

    async def save(self, task: ScheduleTask, expected_version: int) -> None:
        self.save_calls += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            raise version_conflict(task.id, expected_version, expected_version + 1)
        await super().save(task, expected_version)


async def _setup(
    task: ScheduleTask | None = None, **tracker_kwargs: Any
) -> tuple[ExecutionTracker, InMemoryTaskRepository, ScheduleTask]:
    repo = InMemoryTaskRepository()
    task = task or _make_task()
    await repo.add(task)
    tracker_kwargs.setdefault('retry_policy', RetryPolicy.fixed([60], jitter=False))
    return ExecutionTracker(repo, **tracker_kwargs), repo, task


@pytest.mark.unit
class TestSuccess:
    @pytest.mark.asyncio
    async def test_recurring_advances(self) -> None:
        """Success counts the run, resets retries and moves to the next slot."""
        tracker, repo, task = await _setup()
        saved = await tracker.record(
            task.id, ExecutionStatus.SUCCESS, NINE, NINE + timedelta(seconds=2), slot=NINE
        )
        assert saved.status is ScheduleStatus.ACTIVE
        assert saved.execution.execution_count == 1
        assert saved.execution.current_retries == 0
        assert saved.next_execution_time == NINE + timedelta(days=1)

        stored = await repo.get(task.id)
        assert stored is not None
        assert stored.version == saved.version

    @pytest.mark.asyncio
    async def test_daily_advance_across_dst(self) -> None:
        """The next run keeps 09:00 local even though only 23h elapse."""
        ny = ZoneInfo('America/New_York')
        created = datetime(2024, 3, 9, 0, 0, tzinfo=timezone.utc)
        task = _make_task(timezone='America/New_York', scheduled_time=created, now=created)
        tracker, _, _ = await _setup(task)
        slot = task.next_execution_time
        assert slot == datetime(2024, 3, 9, 14, 0, tzinfo=timezone.utc)

        saved = await tracker.record(
            task.id, ExecutionStatus.SUCCESS, slot, slot + timedelta(seconds=1), slot=slot
        )
        next_local = saved.next_execution_time.astimezone(ny)  # type: ignore[union-attr]
        assert (next_local.day, next_local.hour, next_local.minute) == (10, 9, 0)
        assert saved.execution.execution_count == 1
        assert saved.execution.current_retries == 0

    @pytest.mark.asyncio
    async def test_success_after_failures_resets_retries(self) -> None:
        tracker, _, task = await _setup()
        await tracker.record(task.id, ExecutionStatus.FAILED, NINE, NINE, slot=NINE, error='x')
        retry_at = NINE + timedelta(seconds=60)
        saved = await tracker.record(
            task.id, ExecutionStatus.SUCCESS, retry_at, retry_at, slot=retry_at
        )
        assert saved.execution.current_retries == 0
        assert saved.execution.failure_reason is None

    @pytest.mark.asyncio
    async def test_one_shot_completes(self) -> None:
        task = _make_task(recurrence_rule=None, recurring=False, scheduled_time=NINE)
        tracker, _, _ = await _setup(task)
        saved = await tracker.record(task.id, ExecutionStatus.SUCCESS, NINE, NINE, slot=NINE)
        assert saved.status is ScheduleStatus.COMPLETED
        assert saved.next_execution_time is None


@pytest.mark.unit
class TestFailure:
    @pytest.mark.asyncio
    async def test_retry_scheduled_with_backoff(self) -> None:
        tracker, _, task = await _setup()
        finished = NINE + timedelta(seconds=5)
        saved = await tracker.record(
            task.id, ExecutionStatus.FAILED, NINE, finished, slot=NINE, error='smtp down'
        )
        assert saved.status is ScheduleStatus.ACTIVE
        assert saved.execution.current_retries == 1
        assert saved.execution.failure_reason == 'smtp down'
        assert saved.next_execution_time == finished + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_three_failures_with_max_three_fails_task(self) -> None:
        """maxRetries=3: the third consecutive failure is terminal."""
        tracker, _, task = await _setup()
        at = NINE
        saved = task
        for attempt in range(3):
            saved = await tracker.record(
                task.id, ExecutionStatus.FAILED, at, at, slot=at, error=f'fail {attempt}'
            )
            at = saved.next_execution_time or at

        assert saved.status is ScheduleStatus.FAILED
        assert saved.next_execution_time is None
        assert saved.execution.failure_reason == 'fail 2'
        assert saved.can_execute(at + timedelta(days=7)) is False

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self) -> None:
        tracker, _, task = await _setup()
        saved = await tracker.record(task.id, ExecutionStatus.TIMEOUT, NINE, NINE, slot=NINE)
        assert saved.execution.current_retries == 1
        assert saved.execution.timeout_executions == 1
        assert saved.execution.failure_reason == 'execution timeout'

    @pytest.mark.asyncio
    async def test_task_policy_overrides_default(self) -> None:
        task = _make_task(retry_policy=RetryPolicy.fixed([600], jitter=False))
        tracker, _, _ = await _setup(task)
        saved = await tracker.record(task.id, ExecutionStatus.FAILED, NINE, NINE, slot=NINE)
        assert saved.next_execution_time == NINE + timedelta(seconds=600)

    @pytest.mark.asyncio
    async def test_zero_max_retries_fails_immediately(self) -> None:
        task = _make_task(max_retries=0)
        tracker, _, _ = await _setup(task)
        saved = await tracker.record(task.id, ExecutionStatus.FAILED, NINE, NINE, slot=NINE)
        assert saved.status is ScheduleStatus.FAILED


@pytest.mark.unit
class TestSkipped:
    @pytest.mark.asyncio
    async def test_recurring_skip_advances_without_counting(self) -> None:
        tracker, _, task = await _setup()
        saved = await tracker.record(task.id, ExecutionStatus.SKIPPED, NINE, NINE, slot=NINE)
        assert saved.execution.execution_count == 0
        assert saved.execution.skipped_executions == 1
        assert saved.next_execution_time == NINE + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_one_shot_skip_completes(self) -> None:
        task = _make_task(recurrence_rule=None, recurring=False, scheduled_time=NINE)
        tracker, _, _ = await _setup(task)
        saved = await tracker.record(task.id, ExecutionStatus.SKIPPED, NINE, NINE, slot=NINE)
        assert saved.status is ScheduleStatus.COMPLETED


@pytest.mark.unit
class TestInFlightChanges:
    @pytest.mark.asyncio
    async def test_cancelled_while_running_keeps_status(self) -> None:
        """A run that finishes after cancellation only lands in history."""
        tracker, repo, task = await _setup()
        stored = await repo.get(task.id)
        assert stored is not None
        expected = stored.version
        stored.cancel(NINE)
        await repo.save(stored, expected)

        saved = await tracker.record(task.id, ExecutionStatus.SUCCESS, NINE, NINE, slot=NINE)
        assert saved.status is ScheduleStatus.CANCELLED
        assert saved.next_execution_time is None
        assert len(saved.history) == 1
        assert saved.execution.execution_count == 0


@pytest.mark.unit
class TestConcurrency:
    @pytest.mark.asyncio
    async def test_retries_after_version_conflict(self) -> None:
        repo = _RacingRepository(conflicts=1)
        task = _make_task()
        await repo.add(task)
        tracker = ExecutionTracker(repo)
        saved = await tracker.record(task.id, ExecutionStatus.SUCCESS, NINE, NINE, slot=NINE)
        assert repo.save_calls == 2
        assert saved.execution.execution_count == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        repo = _RacingRepository(conflicts=5)
        task = _make_task()
        await repo.add(task)
        tracker = ExecutionTracker(repo, max_save_attempts=2)
        with pytest.raises(ConcurrencyConflict) as exc_info:
            await tracker.record(task.id, ExecutionStatus.SUCCESS, NINE, NINE, slot=NINE)
        assert exc_info.value.retryable is True
        assert repo.save_calls == 2

    @pytest.mark.asyncio
    async def test_unknown_task(self) -> None:
        tracker, _, _ = await _setup()
        with pytest.raises(NotFoundError):
            await tracker.record('missing', ExecutionStatus.SUCCESS, NINE, NINE)


@pytest.mark.unit
class TestResultSink:
    @pytest.mark.asyncio
    async def test_every_attempt_emitted(self) -> None:
        sink = _Sink()
        tracker, _, task = await _setup(result_sink=sink)
        await tracker.record(task.id, ExecutionStatus.FAILED, NINE, NINE, slot=NINE, error='e')
        await tracker.record(task.id, ExecutionStatus.SUCCESS, NINE, NINE, slot=NINE)
        assert [r.status for _, r in sink.received] == [
            ExecutionStatus.FAILED,
            ExecutionStatus.SUCCESS,
        ]
        assert sink.received[0][1].attempt == 1
        assert sink.received[1][1].attempt == 2

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_undo_record(self) -> None:
        tracker, repo, task = await _setup(result_sink=_Sink(fail=True))
        saved = await tracker.record(task.id, ExecutionStatus.SUCCESS, NINE, NINE, slot=NINE)
        stored = await repo.get(task.id)
        assert stored is not None
        assert stored.execution.execution_count == 1
        assert saved.version == stored.version

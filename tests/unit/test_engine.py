"""Unit tests for the ScheduleEngine facade wired with in-memory stores."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from almanac.core.engine import ScheduleEngine
from almanac.core.errors import (
    ErrorCode,
    InvalidTransitionError,
    NotFoundError,
    ScheduleValidationError,
    TranslationError,
)
from almanac.core.gateway.ports import CollectingResultPublisher
from almanac.core.models.config import EngineConfig
from almanac.core.models.retry import RetryPolicy
from almanac.core.models.schedule_entry import ResolutionStrategy
from almanac.core.models.schedule_task import ScheduleTask
from almanac.core.types.status import ExecutionStatus, ScheduleStatus

NOW = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
NINE = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
DAY = 1_704_067_200_000  # 2024-01-01T00:00:00Z
M = 60_000
H = 60 * M


def at(hour: float) -> int:
    return DAY + int(hour * H)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _engine(**config: Any) -> tuple[ScheduleEngine, _Clock, CollectingResultPublisher]:
    clock = _Clock(NOW)
    publisher = CollectingResultPublisher()
    config.setdefault('retry_policy', RetryPolicy.fixed([60], jitter=False))
    engine = ScheduleEngine(EngineConfig(**config), publisher=publisher, clock=clock)
    return engine, clock, publisher


def _event(event_type: str = 'recurrenceCreated', entity: str = 'r-1', **overrides: Any) -> dict[str, Any]:
    event: dict[str, Any] = {
        'type': event_type,
        'sourceModule': 'reminder',
        'sourceEntityId': entity,
        'accountId': 'acct-1',
        'recurrenceSpec': {'kind': 'DAILY', 'hour': 9, 'minute': 0},
    }
    event.update(overrides)
    return event


@pytest.mark.unit
class TestCreateSchedule:
    @pytest.mark.asyncio
    async def test_overlap_reported_on_create(self) -> None:
        """The second entry is stored with its conflict and a move_later to 11:00."""
        engine, _, _ = _engine()
        first = await engine.create_schedule('acct-1', 'Design review', at(10), at(11), 60)
        assert first.conflicts is not None and first.conflicts.has_conflict is False

        second = await engine.create_schedule('acct-1', '1:1', at(10.5), at(11.5), 60)

        assert second.conflicts is not None
        assert second.conflicts.has_conflict is True
        assert second.conflicts.conflicts[0].overlap_duration_minutes == 30
        assert second.conflicts.suggestions[0].type == 'move_later'
        assert second.conflicts.suggestions[0].new_start_time == at(11)
        assert second.schedule.has_conflict is True
        assert second.schedule.conflicting_schedules == [first.schedule.id]

        stored = await engine.get_schedule(second.schedule.id)
        assert stored.has_conflict is True
        assert stored.created_at == DAY + 8 * H

    @pytest.mark.asyncio
    async def test_detection_can_be_skipped(self) -> None:
        engine, _, _ = _engine()
        await engine.create_schedule('acct-1', 'A', at(10), at(11), 60)
        result = await engine.create_schedule(
            'acct-1', 'B', at(10), at(11), 60, auto_detect_conflicts=False
        )
        assert result.conflicts is None
        assert result.schedule.has_conflict is False

    @pytest.mark.asyncio
    async def test_duration_mismatch(self) -> None:
        engine, _, _ = _engine()
        with pytest.raises(ScheduleValidationError) as exc_info:
            await engine.create_schedule('acct-1', 'A', at(10), at(11), 45)
        assert exc_info.value.code == ErrorCode.ENTRY_DURATION_MISMATCH

    @pytest.mark.asyncio
    async def test_inverted_range(self) -> None:
        engine, _, _ = _engine()
        with pytest.raises(ScheduleValidationError) as exc_info:
            await engine.create_schedule('acct-1', 'A', at(11), at(10), 60)
        assert exc_info.value.code == ErrorCode.ENTRY_INVALID_TIME_RANGE

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        'overrides',
        [
            {'title': ''},
            {'title': 'x' * 101},
            {'description': 'd' * 501},
            {'priority': 6},
        ],
    )
    async def test_field_limits(self, overrides: dict[str, Any]) -> None:
        engine, _, _ = _engine()
        kwargs: dict[str, Any] = {'title': 'Focus time'}
        kwargs.update(overrides)
        title = kwargs.pop('title')
        with pytest.raises(ScheduleValidationError) as exc_info:
            await engine.create_schedule('acct-1', title, at(10), at(11), 60, **kwargs)
        assert exc_info.value.code == ErrorCode.ENTRY_INVALID_FIELDS
        assert exc_info.value.notes

    @pytest.mark.asyncio
    async def test_resolve_through_engine(self) -> None:
        engine, _, _ = _engine()
        await engine.create_schedule('acct-1', 'A', at(10), at(11), 60)
        created = await engine.create_schedule('acct-1', 'B', at(10.5), at(11.5), 60)

        outcome = await engine.resolve_conflict(
            created.schedule.id,
            ResolutionStrategy.RESCHEDULE,
            new_start_time=at(11),
            new_end_time=at(12),
        )
        assert outcome.conflicts.has_conflict is False
        assert (await engine.get_schedule(created.schedule.id)).has_conflict is False

    @pytest.mark.asyncio
    async def test_detect_without_storing(self) -> None:
        engine, _, _ = _engine()
        first = await engine.create_schedule('acct-1', 'A', at(10), at(11), 60)

        result = await engine.detect_conflicts('acct-1', at(10.5), at(11.5))
        assert result.has_conflict is True
        assert [c.schedule_id for c in result.conflicts] == [first.schedule.id]

        excluded = await engine.detect_conflicts(
            'acct-1', at(10.5), at(11.5), exclude_schedule_id=first.schedule.id
        )
        assert excluded.has_conflict is False

    @pytest.mark.asyncio
    async def test_unknown_schedule(self) -> None:
        engine, _, _ = _engine()
        with pytest.raises(NotFoundError) as exc_info:
            await engine.get_schedule('ghost')
        assert exc_info.value.code == ErrorCode.ENTRY_NOT_FOUND


@pytest.mark.unit
class TestTaskOperations:
    @pytest.mark.asyncio
    async def test_disable_enable_cancel(self) -> None:
        engine, clock, _ = _engine()
        task = await engine.handle_event(_event())
        assert task is not None

        paused = await engine.disable_task(task.id)
        assert paused.status is ScheduleStatus.PAUSED

        clock.now = NOW + timedelta(days=1)
        resumed = await engine.enable_task(task.id)
        assert resumed.status is ScheduleStatus.ACTIVE
        assert resumed.next_execution_time == datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)

        cancelled = await engine.cancel_task(task.id)
        assert cancelled.status is ScheduleStatus.CANCELLED
        again = await engine.cancel_task(task.id)
        assert again.version == cancelled.version

        with pytest.raises(InvalidTransitionError):
            await engine.enable_task(task.id)

    @pytest.mark.asyncio
    async def test_snooze(self) -> None:
        engine, _, _ = _engine()
        task = await engine.handle_event(_event())
        assert task is not None
        snoozed = await engine.snooze_task(task.id, 15)
        assert snoozed.next_execution_time == NOW + timedelta(minutes=15)

    @pytest.mark.asyncio
    async def test_out_of_range_option_is_typed_error(self) -> None:
        engine, _, _ = _engine()
        with pytest.raises(ScheduleValidationError) as exc_info:
            await engine.handle_event(_event(options={'maxRetries': 50}))
        assert exc_info.value.code == ErrorCode.TASK_INVALID_EVENT
        assert exc_info.value.notes[0].startswith('options.maxRetries')

    @pytest.mark.asyncio
    async def test_producers_use_inbound_port(self) -> None:
        engine, _, _ = _engine()
        task = await engine.events.handle(_event())
        assert task is not None
        assert (await engine.get_task(task.id)).source_entity_id == 'r-1'

    @pytest.mark.asyncio
    async def test_get_unknown_task(self) -> None:
        engine, _, _ = _engine()
        with pytest.raises(NotFoundError) as exc_info:
            await engine.get_task('ghost')
        assert exc_info.value.code == ErrorCode.TASK_NOT_FOUND


@pytest.mark.unit
class TestBatch:
    @pytest.mark.asyncio
    async def test_bad_items_do_not_block_good_ones(self) -> None:
        engine, _, _ = _engine()
        result = await engine.create_tasks_batch(
            [
                _event(entity='r-1'),
                _event(entity='r-2', recurrenceSpec={'kind': 'DAILY', 'hour': 30, 'minute': 0}),
                {'type': 'recurrenceCreated', 'sourceModule': 'reminder'},
                _event(entity='r-3'),
            ]
        )

        assert [t.source_entity_id for t in result.created] == ['r-1', 'r-3']
        assert sorted(result.errors) == [1, 2]
        assert isinstance(result.errors[1], TranslationError)
        assert isinstance(result.errors[2], ScheduleValidationError)
        assert result.errors[2].code == ErrorCode.TASK_INVALID_EVENT


@pytest.mark.unit
class TestDispatchThroughEngine:
    @pytest.mark.asyncio
    async def test_tick_runs_handler_and_reports_result(self) -> None:
        engine, clock, publisher = _engine()
        seen: list[str] = []

        @engine.handler('reminder')
        async def remind(task: ScheduleTask) -> None:
            seen.append(task.id)

        task = await engine.handle_event(_event())
        assert task is not None

        clock.now = NINE
        results = await engine.tick()

        assert [r.status for r in results] == [ExecutionStatus.SUCCESS]
        assert seen == [task.id]
        stored = await engine.get_task(task.id)
        assert stored.execution.execution_count == 1
        assert stored.next_execution_time == NINE + timedelta(days=1)
        assert [e.status for e in publisher.events] == [ExecutionStatus.SUCCESS]
        assert publisher.events[0].source_entity_id == 'r-1'

    @pytest.mark.asyncio
    async def test_failures_until_failed(self) -> None:
        """max_retries=2: two failed ticks leave the task FAILED."""
        engine, clock, publisher = _engine(default_max_retries=2)

        @engine.handler('reminder')
        async def broken(task: ScheduleTask) -> None:
            raise RuntimeError('offline')

        task = await engine.handle_event(_event())
        assert task is not None

        clock.now = NINE
        await engine.tick()
        clock.now = NINE + timedelta(seconds=60)
        await engine.tick()

        stored = await engine.get_task(task.id)
        assert stored.status is ScheduleStatus.FAILED
        assert stored.execution.failure_reason == 'RuntimeError: offline'
        assert [e.status for e in publisher.events] == [
            ExecutionStatus.FAILED,
            ExecutionStatus.FAILED,
        ]

    @pytest.mark.asyncio
    async def test_init_schema_without_store_is_noop(self) -> None:
        engine, _, _ = _engine()
        await engine.init_schema()
        await engine.close()
        assert engine.async_engine is None


@pytest.mark.unit
class TestStatistics:
    @pytest.mark.asyncio
    async def test_counts_by_module(self) -> None:
        engine, clock, _ = _engine()

        @engine.handler('reminder')
        async def remind(task: ScheduleTask) -> None:
            return None

        first = await engine.handle_event(_event(entity='r-1'))
        second = await engine.handle_event(_event(entity='r-2'))
        await engine.handle_event(
            _event(entity='g-1', sourceModule='goal', options={'taskType': 'reminder'})
        )
        await engine.handle_event(_event(entity='x-1', sourceModule='billing'))
        assert first is not None and second is not None
        await engine.disable_task(second.id)

        clock.now = NINE
        await engine.tick()

        stats = await engine.statistics('acct-1')
        assert stats.overall.total_tasks == 4
        assert stats.overall.paused_tasks == 1
        assert stats.by_module['reminder'].total_tasks == 2
        assert stats.by_module['goal'].successful_executions == 1
        assert stats.by_module['other'].total_tasks == 1
        assert stats.by_module['task'].total_tasks == 0
        # billing has no handler: one failure alongside two successes
        assert stats.overall.total_executions == 3
        assert stats.success_rate == pytest.approx(2 / 3)

    @pytest.mark.asyncio
    async def test_other_accounts_excluded(self) -> None:
        engine, _, _ = _engine()
        await engine.handle_event(_event(accountId='acct-2'))
        stats = await engine.statistics('acct-1')
        assert stats.overall.total_tasks == 0
        assert stats.success_rate == 0.0

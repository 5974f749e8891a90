"""Unit tests for the Dispatcher tick: leasing, timeouts and failure isolation."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from almanac.core.models.config import DispatcherConfig
from almanac.core.models.retry import RetryPolicy
from almanac.core.models.schedule_task import ScheduleTask
from almanac.core.scheduler.dispatcher import Dispatcher
from almanac.core.scheduler.handlers import HandlerNotRegistered, HandlerRegistry
from almanac.core.scheduler.lease import InMemoryLeaseStore
from almanac.core.scheduler.state import InMemoryTaskRepository
from almanac.core.scheduler.tracker import ExecutionTracker
from almanac.core.types.status import ExecutionStatus, ScheduleStatus

NOW = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
NINE = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def _make_task(task_type: str = 'reminder', **overrides: Any) -> ScheduleTask:
    params: dict[str, Any] = {
        'account_id': 'acct-1',
        'name': f'{task_type} task',
        'task_type': task_type,
        'scheduled_time': NOW,
        'recurrence_rule': '0 9 * * *',
        'recurring': True,
        'now': NOW,
    }
    params.update(overrides)
    return ScheduleTask.create(**params)


class _Harness:
    def __init__(self) -> None:
        self.repo = InMemoryTaskRepository()
        self.leases = InMemoryLeaseStore()
        self.handlers = HandlerRegistry()
        self.tracker = ExecutionTracker(
            self.repo, retry_policy=RetryPolicy.fixed([60], jitter=False)
        )
        self.dispatcher = Dispatcher(
            self.repo,
            self.leases,
            self.tracker,
            self.handlers,
            config=DispatcherConfig(owner_id='test-owner', poll_interval_seconds=0.05),
            clock=lambda: NINE,
        )

    async def add(self, task: ScheduleTask) -> ScheduleTask:
        await self.repo.add(task)
        return task


@pytest.mark.unit
class TestTick:
    @pytest.mark.asyncio
    async def test_runs_due_task_and_advances(self) -> None:
        h = _Harness()
        calls: list[str] = []

        @h.handlers.register('reminder')
        async def remind(task: ScheduleTask) -> None:
            calls.append(task.id)

        task = await h.add(_make_task())
        results = await h.dispatcher.tick(NINE)

        assert [(r.task_id, r.status) for r in results] == [(task.id, ExecutionStatus.SUCCESS)]
        assert calls == [task.id]
        stored = await h.repo.get(task.id)
        assert stored is not None
        assert stored.status is ScheduleStatus.ACTIVE
        assert stored.next_execution_time == NINE + timedelta(days=1)
        assert await h.leases.get(task.id) is None

    @pytest.mark.asyncio
    async def test_nothing_due(self) -> None:
        h = _Harness()
        await h.add(_make_task())
        assert await h.dispatcher.tick(NOW) == []

    @pytest.mark.asyncio
    async def test_second_tick_does_not_refire(self) -> None:
        h = _Harness()
        calls: list[str] = []
        h.handlers['reminder'] = lambda task: calls.append(task.id)
        await h.add(_make_task())

        await h.dispatcher.tick(NINE)
        assert await h.dispatcher.tick(NINE) == []
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_sync_handler_result_used(self) -> None:
        h = _Harness()
        h.handlers['reminder'] = lambda task: ExecutionStatus.SKIPPED
        task = await h.add(_make_task())

        results = await h.dispatcher.tick(NINE)
        assert results[0].status is ExecutionStatus.SKIPPED
        stored = await h.repo.get(task.id)
        assert stored is not None
        assert stored.execution.skipped_executions == 1

    @pytest.mark.asyncio
    async def test_disabled_task_not_run(self) -> None:
        h = _Harness()
        h.handlers['reminder'] = lambda task: None
        task = _make_task()
        task.disable(NOW)
        await h.add(task)
        assert await h.dispatcher.tick(NINE) == []


@pytest.mark.unit
class TestFailures:
    @pytest.mark.asyncio
    async def test_timeout_recorded(self, monkeypatch: pytest.MonkeyPatch) -> None:
        h = _Harness()

        @h.handlers.register('reminder')
        async def slow(task: ScheduleTask) -> None:
            await asyncio.sleep(5)

        monkeypatch.setattr(h.dispatcher, '_timeout_for', lambda task: 0.05)
        task = await h.add(_make_task())

        results = await h.dispatcher.tick(NINE)
        assert results[0].status is ExecutionStatus.TIMEOUT
        stored = await h.repo.get(task.id)
        assert stored is not None
        assert stored.execution.timeout_executions == 1
        assert stored.execution.current_retries == 1
        assert stored.next_execution_time == NINE + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_batch(self) -> None:
        """A raising handler only fails its own task."""
        h = _Harness()

        @h.handlers.register('reminder')
        async def broken(task: ScheduleTask) -> None:
            raise RuntimeError('boom')

        @h.handlers.register('notification')
        async def fine(task: ScheduleTask) -> None:
            return None

        bad = await h.add(_make_task('reminder'))
        good = await h.add(_make_task('notification'))

        results = {r.task_id: r for r in await h.dispatcher.tick(NINE)}
        assert results[bad.id].status is ExecutionStatus.FAILED
        assert results[bad.id].error == 'RuntimeError: boom'
        assert results[good.id].status is ExecutionStatus.SUCCESS

        stored_bad = await h.repo.get(bad.id)
        assert stored_bad is not None
        assert stored_bad.execution.failure_reason == 'RuntimeError: boom'

    @pytest.mark.asyncio
    async def test_unregistered_type_fails(self) -> None:
        h = _Harness()
        task = await h.add(_make_task('goal'))
        results = await h.dispatcher.tick(NINE)
        assert results[0].status is ExecutionStatus.FAILED
        assert "no handler registered for task type 'goal'" in (results[0].error or '')
        assert await h.leases.get(task.id) is None

    @pytest.mark.asyncio
    async def test_registry_lookup_raises_typed_error(self) -> None:
        registry = HandlerRegistry()
        with pytest.raises(HandlerNotRegistered) as exc_info:
            registry['missing']
        assert exc_info.value.task_type == 'missing'
        assert 'missing' not in registry


@pytest.mark.unit
class TestLeasing:
    @pytest.mark.asyncio
    async def test_held_lease_skips_task(self) -> None:
        h = _Harness()
        calls: list[str] = []
        h.handlers['reminder'] = lambda task: calls.append(task.id)
        task = await h.add(_make_task())
        await h.leases.acquire(task.id, 'other-replica', timedelta(minutes=5), NINE)

        results = await h.dispatcher.tick(NINE)
        assert len(results) == 1
        assert results[0].ran is False
        assert calls == []
        lease = await h.leases.get(task.id)
        assert lease is not None and lease.owner == 'other-replica'

    @pytest.mark.asyncio
    async def test_expired_lease_taken_over(self) -> None:
        h = _Harness()
        h.handlers['reminder'] = lambda task: None
        task = await h.add(_make_task())
        await h.leases.acquire(task.id, 'crashed-replica', timedelta(seconds=1), NOW)

        results = await h.dispatcher.tick(NINE)
        assert results[0].status is ExecutionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_overlapping_ticks_run_once(self) -> None:
        h = _Harness()
        started = asyncio.Event()
        release = asyncio.Event()
        calls: list[str] = []

        @h.handlers.register('reminder')
        async def gated(task: ScheduleTask) -> None:
            calls.append(task.id)
            started.set()
            await release.wait()

        await h.add(_make_task())
        first = asyncio.create_task(h.dispatcher.tick(NINE))
        await started.wait()
        second = await h.dispatcher.tick(NINE)
        release.set()
        await first

        assert [r.ran for r in second] == [False]
        assert len(calls) == 1


@pytest.mark.unit
class TestRunForever:
    @pytest.mark.asyncio
    async def test_stops_on_request(self) -> None:
        h = _Harness()
        calls: list[str] = []
        h.handlers['reminder'] = lambda task: calls.append(task.id)
        await h.add(_make_task())

        loop_task = asyncio.create_task(h.dispatcher.run_forever())
        await asyncio.sleep(0.2)
        h.dispatcher.request_stop()
        await asyncio.wait_for(loop_task, timeout=2)

        assert len(calls) == 1

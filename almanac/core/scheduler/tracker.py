# almanac/core/scheduler/tracker.py
"""Execution outcome recording and the retry policy."""

from __future__ import annotations

import random
from datetime import datetime
from typing import Optional, Protocol

from almanac.core.errors import ConcurrencyConflict, ErrorCode, NotFoundError
from almanac.core.logging import get_logger
from almanac.core.models.retry import RetryPolicy
from almanac.core.models.schedule_task import ExecutionRecord, ScheduleTask
from almanac.core.scheduler.retry import next_retry_at
from almanac.core.scheduler.state import TaskRepository
from almanac.core.types.status import ExecutionStatus
from almanac.core.utils.timeconv import utcnow

logger = get_logger('tracker')


class ExecutionResultSink(Protocol):
    """Receives every recorded attempt (the event gateway implements this)."""

    async def emit_execution_result(
        self, task: ScheduleTask, record: ExecutionRecord
    ) -> None: ...


def apply_outcome(
    task: ScheduleTask,
    record: ExecutionRecord,
    *,
    slot: Optional[datetime],
    default_policy: RetryPolicy,
    history_limit: int,
    now: datetime,
    rng: Optional[random.Random] = None,
) -> None:
    """
    Fold one attempt into the task.

    - success: reset retries, count the run, advance to the next slot
      (recurring) or complete (one-shot)
    - failed/timeout: count a retry; reschedule with backoff while under
      max_retries, otherwise FAILED with the reason retained
    - skipped: advance (recurring) or complete (one-shot) without counting

    A task that was paused or cancelled while the attempt was in flight only
    gets the history entry.
    """
    task.record_execution(record, history_limit)
    if not (task.metadata.enabled and task.status.is_dispatchable):
        return

    execution = task.execution
    recurring = task.scheduling.recurring

    match record.status:
        case ExecutionStatus.SUCCESS:
            execution.current_retries = 0
            execution.failure_reason = None
            execution.execution_count += 1
            if recurring:
                task.advance(slot, now)
            else:
                task.complete(now)

        case ExecutionStatus.FAILED | ExecutionStatus.TIMEOUT:
            execution.current_retries += 1
            reason = record.error or f'execution {record.status.value}'
            if execution.current_retries < execution.max_retries:
                policy = execution.retry_policy or default_policy
                retry_at = next_retry_at(policy, execution.current_retries, now, rng)
                task.schedule_retry(retry_at, reason, now)
            else:
                task.fail(reason, now)

        case ExecutionStatus.SKIPPED:
            if recurring:
                task.advance(slot, now)
            else:
                task.complete(now, reason='skipped')


class ExecutionTracker:
    """
    Records attempts against stored tasks.

    Each record is a load/apply/save cycle guarded by the task version; on a
    ConcurrencyConflict the cycle is repeated on fresh state.
    """

    def __init__(
        self,
        repository: TaskRepository,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        history_limit: int = 20,
        result_sink: Optional[ExecutionResultSink] = None,
        max_save_attempts: int = 3,
        rng: Optional[random.Random] = None,
    ):
        self.repository = repository
        self.retry_policy = retry_policy or RetryPolicy()
        self.history_limit = history_limit
        self.result_sink = result_sink
        self.max_save_attempts = max_save_attempts
        self.rng = rng

    async def record(
        self,
        task_id: str,
        status: ExecutionStatus,
        started_at: datetime,
        finished_at: Optional[datetime] = None,
        *,
        slot: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> ScheduleTask:
        """Record one attempt; returns the task as saved."""
        finished_at = finished_at or utcnow()
        last_conflict: Optional[ConcurrencyConflict] = None

        for _ in range(self.max_save_attempts):
            task = await self.repository.get(task_id)
            if task is None:
                raise NotFoundError(
                    message=f"task '{task_id}' not found",
                    code=ErrorCode.TASK_NOT_FOUND,
                )

            expected_version = task.version
            record = ExecutionRecord(
                status=status,
                started_at=started_at,
                finished_at=finished_at,
                attempt=task.execution.current_retries + 1,
                error=error,
            )
            apply_outcome(
                task,
                record,
                slot=slot,
                default_policy=self.retry_policy,
                history_limit=self.history_limit,
                now=finished_at,
                rng=self.rng,
            )

            try:
                await self.repository.save(task, expected_version)
            except ConcurrencyConflict as e:
                last_conflict = e
                logger.warning(
                    f"Task '{task_id}' changed while recording {status.value}, retrying"
                )
                continue

            for event in task.pull_events():
                logger.info(f"Task '{task_id}' {event.type} {event.data or ''}".rstrip())
            await self._emit(task, record)
            return task

        assert last_conflict is not None
        raise last_conflict

    async def _emit(self, task: ScheduleTask, record: ExecutionRecord) -> None:
        if self.result_sink is None:
            return
        try:
            await self.result_sink.emit_execution_result(task, record)
        except Exception as e:
            # Producers not listening must not undo a recorded outcome
            logger.error(
                f"Failed to emit execution result for task '{task.id}': {e}",
                exc_info=True,
            )

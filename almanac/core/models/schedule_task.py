# almanac/core/models/schedule_task.py
"""The ScheduleTask aggregate and its lifecycle state machine."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Literal, Optional
from uuid import uuid4

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, PrivateAttr

from almanac.core.defaults import DEFAULT_MAX_RETRIES, DEFAULT_SNOOZE_OPTIONS
from almanac.core.errors import (
    ErrorCode,
    InvalidTransitionError,
    SnoozeNotAllowedError,
)
from almanac.core.models.retry import RetryPolicy
from almanac.core.scheduler.calculator import next_run
from almanac.core.types.status import ExecutionStatus, ScheduleStatus
from almanac.core.utils.timeconv import utcnow


class AlertMethod(str, Enum):
    POPUP = 'popup'
    SOUND = 'sound'
    SYSTEM_NOTIFICATION = 'system_notification'
    EMAIL = 'email'
    SMS = 'sms'


TaskPriority = Literal['low', 'normal', 'high', 'urgent']


class _Group(BaseModel):
    model_config = ConfigDict(extra='forbid')


class TaskBasic(_Group):
    name: Annotated[str, Field(min_length=1, max_length=200)]
    description: Optional[str] = None
    task_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_by: str


class TaskScheduling(_Group):
    """When the task fires.

    ``recurrence_rule`` is the canonical cron expression. One-shot tasks fire
    at ``scheduled_time``; their rule (when present) is pinned to a year.
    """

    scheduled_time: AwareDatetime
    recurrence_rule: Optional[str] = None
    recurring: bool = False
    timezone: str = 'UTC'
    priority: TaskPriority = 'normal'
    status: ScheduleStatus = ScheduleStatus.PENDING
    next_execution_time: Optional[AwareDatetime] = None
    end_at: Optional[AwareDatetime] = None
    max_occurrences: Optional[Annotated[int, Field(ge=1)]] = None


class TaskExecution(_Group):
    execution_count: int = 0
    max_retries: Annotated[int, Field(ge=0, le=20)] = DEFAULT_MAX_RETRIES
    current_retries: int = 0
    timeout_seconds: Optional[Annotated[int, Field(ge=1, le=86_400)]] = None
    retry_policy: Optional[RetryPolicy] = None
    catch_up_missed: bool = False
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    timeout_executions: int = 0
    skipped_executions: int = 0
    last_execution_time: Optional[AwareDatetime] = None
    last_status: Optional[ExecutionStatus] = None
    failure_reason: Optional[str] = None


class AlertConfig(_Group):
    methods: list[AlertMethod] = Field(default_factory=lambda: [AlertMethod.POPUP])
    allow_snooze: bool = True
    snooze_options: list[Annotated[int, Field(ge=1, le=1440)]] = Field(
        default_factory=lambda: list(DEFAULT_SNOOZE_OPTIONS)
    )


class TaskLifecycle(_Group):
    created_at: AwareDatetime
    updated_at: AwareDatetime


class TaskMetadata(_Group):
    tags: list[str] = Field(default_factory=list)
    enabled: bool = True
    version: int = 0


class ExecutionRecord(BaseModel):
    """One attempt, as kept in the task's bounded history."""

    model_config = ConfigDict(frozen=True)

    execution_id: str = Field(default_factory=lambda: uuid4().hex)
    status: ExecutionStatus
    started_at: AwareDatetime
    finished_at: AwareDatetime
    attempt: int = 1
    error: Optional[str] = None

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at) / timedelta(milliseconds=1))


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    task_id: str
    occurred_at: AwareDatetime
    data: dict[str, Any] = Field(default_factory=dict)


class ScheduleTask(BaseModel):
    """
    Engine-managed unit of recurring or one-time dispatch work.

    Every mutating method bumps ``metadata.version`` and ``updated_at`` and
    records a domain event. Transitions not in the status table raise
    InvalidTransitionError.
    """

    model_config = ConfigDict(extra='forbid')

    id: str = Field(default_factory=lambda: uuid4().hex)
    account_id: str
    source_module: Optional[str] = None
    source_entity_id: Optional[str] = None
    basic: TaskBasic
    scheduling: TaskScheduling
    execution: TaskExecution = Field(default_factory=TaskExecution)
    alert_config: AlertConfig = Field(default_factory=AlertConfig)
    lifecycle: TaskLifecycle
    metadata: TaskMetadata = Field(default_factory=TaskMetadata)
    history: list[ExecutionRecord] = Field(default_factory=list)

    _events: list[DomainEvent] = PrivateAttr(default_factory=list)

    # --- construction ---

    @classmethod
    def create(
        cls,
        *,
        account_id: str,
        name: str,
        task_type: str,
        scheduled_time: datetime,
        created_by: str = 'system',
        recurrence_rule: Optional[str] = None,
        recurring: bool = False,
        timezone: str = 'UTC',
        payload: Optional[dict[str, Any]] = None,
        description: Optional[str] = None,
        priority: TaskPriority = 'normal',
        max_retries: int = DEFAULT_MAX_RETRIES,
        timeout_seconds: Optional[int] = None,
        catch_up_missed: bool = False,
        retry_policy: Optional[RetryPolicy] = None,
        alert_config: Optional[AlertConfig] = None,
        tags: Optional[list[str]] = None,
        source_module: Optional[str] = None,
        source_entity_id: Optional[str] = None,
        end_at: Optional[datetime] = None,
        max_occurrences: Optional[int] = None,
        task_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> 'ScheduleTask':
        """Build a PENDING task with its first next_execution_time computed."""
        now = now or utcnow()
        task = cls(
            id=task_id or uuid4().hex,
            account_id=account_id,
            source_module=source_module,
            source_entity_id=source_entity_id,
            basic=TaskBasic(
                name=name,
                description=description,
                task_type=task_type,
                payload=payload or {},
                created_by=created_by,
            ),
            scheduling=TaskScheduling(
                scheduled_time=scheduled_time,
                recurrence_rule=recurrence_rule,
                recurring=recurring and recurrence_rule is not None,
                timezone=timezone,
                priority=priority,
                end_at=end_at,
                max_occurrences=max_occurrences,
            ),
            execution=TaskExecution(
                max_retries=max_retries,
                timeout_seconds=timeout_seconds,
                retry_policy=retry_policy,
                catch_up_missed=catch_up_missed,
            ),
            alert_config=alert_config or AlertConfig(),
            lifecycle=TaskLifecycle(created_at=now, updated_at=now),
            metadata=TaskMetadata(tags=list(tags or [])),
        )
        task.scheduling.next_execution_time = task._first_run_after(now)
        task._record_event('created', now, next_execution_time=task.scheduling.next_execution_time)
        if task.scheduling.next_execution_time is None:
            task._set_status(ScheduleStatus.COMPLETED, now)
            task._record_event('completed', now, reason='recurrence has no future runs')
        return task

    # --- read side ---

    @property
    def status(self) -> ScheduleStatus:
        return self.scheduling.status

    @property
    def version(self) -> int:
        return self.metadata.version

    @property
    def next_execution_time(self) -> Optional[datetime]:
        return self.scheduling.next_execution_time

    @property
    def success_rate(self) -> float:
        """Informational only; never consulted by control flow."""
        total = self.execution.total_executions
        if total == 0:
            return 0.0
        return self.execution.successful_executions / total

    def can_execute(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        next_at = self.scheduling.next_execution_time
        return (
            self.metadata.enabled
            and self.status.is_dispatchable
            and next_at is not None
            and next_at <= now
        )

    def pull_events(self) -> list[DomainEvent]:
        """Return and clear domain events recorded since the last pull."""
        events, self._events = self._events, []
        return events

    # --- lifecycle ---

    def activate(self, now: Optional[datetime] = None) -> None:
        """PENDING -> ACTIVE on first dispatch; no-op when already ACTIVE."""
        if self.status is ScheduleStatus.ACTIVE:
            return
        now = now or utcnow()
        self._set_status(ScheduleStatus.ACTIVE, now)

    def disable(self, now: Optional[datetime] = None) -> None:
        """Pause dispatching. An execution already claimed runs to completion."""
        now = now or utcnow()
        if self.status is ScheduleStatus.PAUSED:
            return
        self._set_status(ScheduleStatus.PAUSED, now)
        self.metadata.enabled = False
        self._record_event('paused', now)

    def enable(self, now: Optional[datetime] = None) -> None:
        """Resume a PAUSED task or re-enable a FAILED one.

        Re-enabling from FAILED resets the retry counter and clears the
        failure reason. Both paths recompute next_execution_time.
        """
        now = now or utcnow()
        previous = self.status
        if previous.is_dispatchable and self.metadata.enabled:
            return
        self._set_status(ScheduleStatus.ACTIVE, now)
        self.metadata.enabled = True
        if previous is ScheduleStatus.FAILED:
            self.execution.current_retries = 0
            self.execution.failure_reason = None
        self.scheduling.next_execution_time = self._first_run_after(now)
        self._record_event('resumed', now, previous_status=previous.value)
        if self.scheduling.next_execution_time is None:
            self.complete(now, reason='recurrence has no future runs')

    def cancel(self, now: Optional[datetime] = None) -> bool:
        """Cancel the task. Returns False (and changes nothing) when already cancelled."""
        if self.status is ScheduleStatus.CANCELLED:
            return False
        now = now or utcnow()
        self._set_status(ScheduleStatus.CANCELLED, now)
        self.metadata.enabled = False
        self.scheduling.next_execution_time = None
        self._record_event('cancelled', now)
        return True

    def complete(self, now: Optional[datetime] = None, reason: Optional[str] = None) -> None:
        now = now or utcnow()
        self._set_status(ScheduleStatus.COMPLETED, now)
        self.scheduling.next_execution_time = None
        self._record_event('completed', now, reason=reason)

    def fail(self, reason: str, now: Optional[datetime] = None) -> None:
        """Retries exhausted: FAILED, reason retained, no further runs."""
        now = now or utcnow()
        if self.status is ScheduleStatus.PENDING:
            self._set_status(ScheduleStatus.ACTIVE, now)
        self._set_status(ScheduleStatus.FAILED, now)
        self.execution.failure_reason = reason
        self.scheduling.next_execution_time = None
        self._record_event('failed', now, reason=reason)

    def schedule_retry(
        self, retry_at: datetime, reason: str, now: Optional[datetime] = None
    ) -> None:
        now = now or utcnow()
        self.activate(now)
        self.execution.failure_reason = reason
        self.scheduling.next_execution_time = max(retry_at, self.lifecycle.created_at)
        self._touch(now)
        self._record_event(
            'retry_scheduled',
            now,
            retry_at=retry_at,
            attempt=self.execution.current_retries,
        )

    def advance(self, slot: Optional[datetime], now: Optional[datetime] = None) -> None:
        """Move a recurring task to the slot after ``slot`` (the one just run).

        Completes the task when the recurrence is exhausted or an end
        condition is reached.
        """
        now = now or utcnow()
        self.activate(now)
        max_occurrences = self.scheduling.max_occurrences
        if max_occurrences is not None and self.execution.execution_count >= max_occurrences:
            self.complete(now, reason='max occurrences reached')
            return

        upcoming = self._run_after_slot(slot, now)
        end_at = self.scheduling.end_at
        if upcoming is None or (end_at is not None and upcoming > end_at):
            self.complete(now, reason='recurrence ended')
            return
        self.scheduling.next_execution_time = upcoming
        self._touch(now)

    def snooze(self, minutes: int, now: Optional[datetime] = None) -> datetime:
        """Push the next run ``minutes`` into the future."""
        now = now or utcnow()
        if not self.alert_config.allow_snooze:
            raise SnoozeNotAllowedError(
                message=f"task '{self.id}' does not allow snoozing",
                code=ErrorCode.TASK_SNOOZE_NOT_ALLOWED,
            )
        if minutes not in self.alert_config.snooze_options:
            raise SnoozeNotAllowedError(
                message=f'snooze of {minutes} minutes is not offered',
                code=ErrorCode.TASK_SNOOZE_NOT_ALLOWED,
                notes=[f'allowed: {self.alert_config.snooze_options}'],
            )
        if not (self.metadata.enabled and self.status.is_dispatchable):
            raise self._transition_error('snooze')

        until = now + timedelta(minutes=minutes)
        self.scheduling.next_execution_time = until
        self._touch(now)
        self._record_event('snoozed', now, minutes=minutes, until=until)
        return until

    def reschedule(
        self,
        *,
        scheduled_time: datetime,
        recurrence_rule: Optional[str],
        recurring: bool,
        timezone: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Replace the recurrence. Only tasks that can still run may be rescheduled."""
        now = now or utcnow()
        if self.status.is_terminal:
            raise self._transition_error('reschedule')

        self.scheduling.scheduled_time = scheduled_time
        self.scheduling.recurrence_rule = recurrence_rule
        self.scheduling.recurring = recurring and recurrence_rule is not None
        if timezone is not None:
            self.scheduling.timezone = timezone
        if self.status is not ScheduleStatus.FAILED:
            self.scheduling.next_execution_time = self._first_run_after(now)
        self._touch(now)
        self._record_event('rescheduled', now, recurrence_rule=recurrence_rule)
        if self.status.is_dispatchable and self.scheduling.next_execution_time is None:
            self.complete(now, reason='recurrence has no future runs')

    def record_execution(self, record: ExecutionRecord, history_limit: int) -> None:
        """Append to the bounded history and bump the outcome counters."""
        execution = self.execution
        execution.total_executions += 1
        match record.status:
            case ExecutionStatus.SUCCESS:
                execution.successful_executions += 1
            case ExecutionStatus.FAILED:
                execution.failed_executions += 1
            case ExecutionStatus.TIMEOUT:
                execution.timeout_executions += 1
            case ExecutionStatus.SKIPPED:
                execution.skipped_executions += 1
        execution.last_execution_time = record.finished_at
        execution.last_status = record.status

        self.history.append(record)
        if len(self.history) > history_limit:
            del self.history[: len(self.history) - history_limit]
        self._touch(record.finished_at)

    # --- internals ---

    def _first_run_after(self, now: datetime) -> Optional[datetime]:
        scheduling = self.scheduling
        if scheduling.recurring and scheduling.recurrence_rule:
            return next_run(
                scheduling.recurrence_rule,
                scheduling.timezone,
                max(now, self.lifecycle.created_at),
            )
        # One-shot: due at its scheduled time, or immediately if that has passed
        return max(scheduling.scheduled_time, self.lifecycle.created_at)

    def _run_after_slot(self, slot: Optional[datetime], now: datetime) -> Optional[datetime]:
        scheduling = self.scheduling
        rule = scheduling.recurrence_rule
        if rule is None:
            return None
        base = max(slot or now, self.lifecycle.created_at)
        upcoming = next_run(rule, scheduling.timezone, base)
        if upcoming is not None and upcoming <= now and not self.execution.catch_up_missed:
            upcoming = next_run(rule, scheduling.timezone, now)
        return upcoming

    def _set_status(self, target: ScheduleStatus, now: datetime) -> None:
        if not self.status.can_transition_to(target):
            raise self._transition_error(target.value)
        self.scheduling.status = target
        self._touch(now)

    def _touch(self, now: datetime) -> None:
        self.metadata.version += 1
        self.lifecycle.updated_at = now

    def _record_event(self, event_type: str, now: datetime, **data: Any) -> None:
        self._events.append(
            DomainEvent(type=event_type, task_id=self.id, occurred_at=now, data=data)
        )

    def _transition_error(self, action: str) -> InvalidTransitionError:
        return InvalidTransitionError(
            message=f"cannot {action} task '{self.id}' in status {self.status.value}",
            code=ErrorCode.TASK_INVALID_TRANSITION,
            notes=[
                'allowed from here: '
                + ', '.join(sorted(s.value for s in _allowed(self.status)))
            ],
        )


def _allowed(status: ScheduleStatus) -> list[ScheduleStatus]:
    return [s for s in ScheduleStatus if status.can_transition_to(s)]

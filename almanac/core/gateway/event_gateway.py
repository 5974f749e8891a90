# almanac/core/gateway/event_gateway.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import ValidationError

from almanac.core.errors import ErrorCode, ScheduleValidationError, TranslationError
from almanac.core.gateway.ports import ExecutionResultPublisher
from almanac.core.logging import get_logger
from almanac.core.models.config import EngineConfig
from almanac.core.models.events import (
    ExecutionResultEvent,
    RecurrenceEvent,
)
from almanac.core.models.recurrence import AbsoluteOnce, RecurrenceSpec, is_recurring
from almanac.core.models.schedule_task import ExecutionRecord, ScheduleTask
from almanac.core.scheduler.state import TaskRepository, mutate_task
from almanac.core.scheduler.translator import translate
from almanac.core.utils.timeconv import from_ms, to_ms, utcnow

logger = get_logger('gateway')


class EventGateway:
    """
    Translates producer recurrence events into ScheduleTask operations and
    sends execution results back out.

    One live task is kept per (source_module, source_entity_id):
    - recurrenceCreated: create it (or update it if it already exists)
    - recurrenceChanged: update its recurrence (or create it if missing)
    - recurrenceDeleted: cancel it; repeated deletes are no-ops
    """

    def __init__(
        self,
        repository: TaskRepository,
        publisher: ExecutionResultPublisher,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.publisher = publisher
        self.config = config or EngineConfig()
        self.clock = clock

    # --- inbound ---

    async def handle(
        self, event: Union[RecurrenceEvent, Mapping[str, Any]]
    ) -> Optional[ScheduleTask]:
        """Apply one producer event. Returns the affected task, if any.

        Raises:
            TranslationError: invalid recurrence; no task is created or changed
            ScheduleValidationError: malformed event or out-of-range options
        """
        try:
            if not isinstance(event, RecurrenceEvent):
                event = RecurrenceEvent.model_validate(event)

            match event.type:
                case 'recurrenceCreated':
                    return await self.on_recurrence_created(event)
                case 'recurrenceChanged':
                    return await self.on_recurrence_changed(event)
                case 'recurrenceDeleted':
                    return await self.on_recurrence_deleted(event)
        except ValidationError as e:
            raise _invalid_event(e) from e

    async def on_recurrence_created(self, event: RecurrenceEvent) -> ScheduleTask:
        existing = await self._live_task(event)
        if existing is not None:
            logger.info(
                f'{event.source_module}/{event.source_entity_id} already scheduled '
                f"as '{existing.id}', applying as a change"
            )
            return await self._apply_change(existing.id, event)
        return await self._create(event)

    async def on_recurrence_changed(self, event: RecurrenceEvent) -> ScheduleTask:
        existing = await self._live_task(event)
        if existing is None:
            return await self._create(event)
        return await self._apply_change(existing.id, event)

    async def on_recurrence_deleted(self, event: RecurrenceEvent) -> Optional[ScheduleTask]:
        tasks = await self.repository.find_by_source(event.source_module, event.source_entity_id)
        cancelled: Optional[ScheduleTask] = None
        now = self.clock()
        for task in tasks:
            saved, changed = await mutate_task(
                self.repository, task.id, lambda t: t.cancel(now)
            )
            if changed:
                logger.info(
                    f"Cancelled task '{saved.id}' for "
                    f'{event.source_module}/{event.source_entity_id}'
                )
                cancelled = saved
        return cancelled

    # --- outbound ---

    async def emit_execution_result(
        self, task: ScheduleTask, record: ExecutionRecord
    ) -> None:
        """Send one attempt's outcome back to the producer that owns the task."""
        if task.source_module is None or task.source_entity_id is None:
            return
        await self.publisher.publish(
            ExecutionResultEvent(
                source_module=task.source_module,
                source_entity_id=task.source_entity_id,
                status=record.status,
                timestamp=to_ms(record.finished_at),
                task_id=task.id,
                error=record.error,
            )
        )

    # --- internals ---

    async def _live_task(self, event: RecurrenceEvent) -> Optional[ScheduleTask]:
        tasks = await self.repository.find_by_source(event.source_module, event.source_entity_id)
        live = [task for task in tasks if not task.status.is_terminal]
        return live[-1] if live else None

    def _translate(self, event: RecurrenceEvent, tz: str) -> tuple[RecurrenceSpec, str]:
        spec = event.recurrence_spec
        if spec is None:
            raise TranslationError(
                message=f'{event.type} event for {event.source_module}/'
                f'{event.source_entity_id} carries no recurrence spec',
                code=ErrorCode.RECURRENCE_FIELD_OUT_OF_RANGE,
            )
        try:
            return spec, translate(spec, tz)
        except TranslationError:
            logger.warning(
                f'Rejected {event.type} from {event.source_module}/{event.source_entity_id}: '
                f'invalid {spec.kind} recurrence'
            )
            raise

    def _timezone(self, event: RecurrenceEvent) -> str:
        return event.options.timezone or self.config.default_timezone

    def _scheduled_time(self, spec: RecurrenceSpec, now: datetime) -> datetime:
        if isinstance(spec, AbsoluteOnce):
            return from_ms(spec.timestamp)
        return now

    async def _create(self, event: RecurrenceEvent) -> ScheduleTask:
        tz = self._timezone(event)
        spec, rule = self._translate(event, tz)
        options = event.options
        now = self.clock()

        task = ScheduleTask.create(
            account_id=event.account_id,
            name=options.name
            or str(event.payload.get('name') or f'{event.source_module}:{event.source_entity_id}'),
            description=options.description,
            task_type=options.task_type or event.source_module,
            scheduled_time=self._scheduled_time(spec, now),
            created_by=options.created_by or event.source_module,
            recurrence_rule=rule,
            recurring=is_recurring(spec),
            timezone=tz,
            payload=event.payload,
            priority=options.priority or 'normal',
            max_retries=(
                options.max_retries
                if options.max_retries is not None
                else self.config.default_max_retries
            ),
            timeout_seconds=options.timeout_seconds,
            catch_up_missed=options.catch_up_missed,
            tags=[*options.tags, event.source_module, 'auto-created'],
            source_module=event.source_module,
            source_entity_id=event.source_entity_id,
            end_at=from_ms(options.end_at) if options.end_at is not None else None,
            max_occurrences=options.max_occurrences,
            now=now,
        )
        await self.repository.add(task)
        for domain_event in task.pull_events():
            logger.debug(f"Task '{task.id}' {domain_event.type}")
        logger.info(
            f"Created task '{task.id}' for {event.source_module}/{event.source_entity_id} "
            f"cron='{rule}' tz={tz} next={task.next_execution_time}"
        )
        return task

    async def _apply_change(self, task_id: str, event: RecurrenceEvent) -> ScheduleTask:
        tz = self._timezone(event)
        spec, rule = self._translate(event, tz)
        now = self.clock()

        def change(task: ScheduleTask) -> None:
            if event.payload:
                task.basic.payload = dict(event.payload)
            task.reschedule(
                scheduled_time=self._scheduled_time(spec, now),
                recurrence_rule=rule,
                recurring=is_recurring(spec),
                timezone=tz,
                now=now,
            )

        task, _ = await mutate_task(self.repository, task_id, change)
        logger.info(
            f"Updated task '{task.id}' cron='{rule}' tz={tz} next={task.next_execution_time}"
        )
        return task


def _invalid_event(e: ValidationError) -> ScheduleValidationError:
    return ScheduleValidationError(
        message='invalid recurrence event',
        code=ErrorCode.TASK_INVALID_EVENT,
        notes=[
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ],
    )

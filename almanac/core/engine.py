# almanac/core/engine.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker

from almanac.core.conflicts.detector import ConflictDetector
from almanac.core.conflicts.resolver import ConflictResolver, ResolutionOutcome
from almanac.core.conflicts.store import (
    EntryRepository,
    InMemoryEntryRepository,
    SqlEntryRepository,
)
from almanac.core.errors import (
    AlmanacError,
    ErrorCode,
    NotFoundError,
    ScheduleValidationError,
)
from almanac.core.gateway.event_gateway import EventGateway
from almanac.core.gateway.ports import (
    ExecutionResultPublisher,
    RecurrenceEventPort,
    RoutingResultPublisher,
)
from almanac.core.logging import get_logger
from almanac.core.models.config import EngineConfig
from almanac.core.models.events import RecurrenceEvent
from almanac.core.models.orm import Base
from almanac.core.models.schedule_entry import (
    ConflictDetectionResult,
    ResolutionStrategy,
    ScheduleEntry,
    duration_minutes,
)
from almanac.core.models.schedule_task import ScheduleTask
from almanac.core.models.statistics import ScheduleStatistics
from almanac.core.scheduler.dispatcher import DispatchResult, Dispatcher
from almanac.core.scheduler.handlers import HandlerRegistry, TaskHandler
from almanac.core.scheduler.lease import InMemoryLeaseStore, LeaseStore, SqlLeaseStore
from almanac.core.scheduler.state import (
    InMemoryTaskRepository,
    SqlTaskRepository,
    TaskRepository,
    mutate_task,
)
from almanac.core.scheduler.tracker import ExecutionTracker
from almanac.core.utils.timeconv import to_ms, utcnow

logger = get_logger('engine')


@dataclass
class CreateScheduleResult:
    schedule: ScheduleEntry
    conflicts: Optional[ConflictDetectionResult] = None


@dataclass
class BatchCreateResult:
    """Tasks created from a batch, plus the error for every rejected item by index."""

    created: list[ScheduleTask] = field(default_factory=list)
    errors: dict[int, AlmanacError] = field(default_factory=dict)


class ScheduleEngine:
    """
    Facade over the schedule engine.

    Wires repositories, the lease table, the tracker, the dispatcher, the
    conflict detector/resolver and the event gateway from one EngineConfig.
    Calendar operations take and return Unix milliseconds and minutes.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        task_repository: Optional[TaskRepository] = None,
        entry_repository: Optional[EntryRepository] = None,
        lease_store: Optional[LeaseStore] = None,
        publisher: Optional[ExecutionResultPublisher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or EngineConfig()
        self.clock = clock
        self.async_engine: Optional[AsyncEngine] = None

        if self.config.store is not None and (
            task_repository is None or entry_repository is None or lease_store is None
        ):
            engine_cfg = self.config.store.model_dump(
                exclude={'database_url'}, exclude_none=True
            )
            self.async_engine = create_async_engine(self.config.store.database_url, **engine_cfg)
            session_factory = async_sessionmaker(self.async_engine, expire_on_commit=False)
            task_repository = task_repository or SqlTaskRepository(session_factory)
            entry_repository = entry_repository or SqlEntryRepository(session_factory)
            lease_store = lease_store or SqlLeaseStore(session_factory)

        self.tasks: TaskRepository = task_repository or InMemoryTaskRepository()
        self.entries: EntryRepository = entry_repository or InMemoryEntryRepository()
        self.leases: LeaseStore = lease_store or InMemoryLeaseStore()
        self.publisher: ExecutionResultPublisher = publisher or RoutingResultPublisher()
        self.handlers = HandlerRegistry()

        self.gateway = EventGateway(self.tasks, self.publisher, self.config, clock=clock)
        # Producers hand recurrence events to this port only
        self.events: RecurrenceEventPort = self.gateway
        self.tracker = ExecutionTracker(
            self.tasks,
            retry_policy=self.config.retry_policy,
            history_limit=self.config.history_limit,
            result_sink=self.gateway,
        )
        self.dispatcher = Dispatcher(
            self.tasks,
            self.leases,
            self.tracker,
            self.handlers,
            self.config.dispatcher,
            clock=clock,
        )
        self.detector = ConflictDetector(self.entries, self.config.conflicts)
        self.resolver = ConflictResolver(
            self.entries, self.detector, clock_ms=lambda: to_ms(self.clock())
        )

    # --- lifecycle ---

    async def init_schema(self) -> None:
        """Create the PostgreSQL tables when a store is configured."""
        if self.async_engine is None:
            return
        async with self.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info('Schema initialized')

    async def close(self) -> None:
        self.dispatcher.request_stop()
        if self.async_engine is not None:
            await self.async_engine.dispose()

    def handler(self, task_type: str) -> Callable[[TaskHandler], TaskHandler]:
        """Register the side effect for a task type: ``@engine.handler('reminder')``."""
        return self.handlers.register(task_type)

    async def run_dispatcher(self) -> None:
        await self.init_schema()
        await self.dispatcher.run_forever()

    async def tick(self, now: Optional[datetime] = None) -> list[DispatchResult]:
        """Run one dispatcher pass."""
        return await self.dispatcher.tick(now)

    # --- calendar entries ---

    async def create_schedule(
        self,
        account_id: str,
        title: str,
        start_time: int,
        end_time: int,
        duration: int,
        *,
        description: Optional[str] = None,
        priority: Optional[int] = None,
        location: Optional[str] = None,
        attendees: Optional[list[str]] = None,
        auto_detect_conflicts: bool = True,
    ) -> CreateScheduleResult:
        """
        Create a calendar entry, detecting conflicts first unless disabled.

        Raises:
            ScheduleValidationError: bad range, duration mismatch or field values
        """
        expected = duration_minutes(start_time, end_time)
        if end_time > start_time and duration != expected:
            raise ScheduleValidationError(
                message='duration does not match the time range',
                code=ErrorCode.ENTRY_DURATION_MISMATCH,
                notes=[f'got duration={duration}, range spans {expected} minutes'],
            )

        now_ms = to_ms(self.clock())
        try:
            entry = ScheduleEntry(
                account_id=account_id,
                title=title,
                description=description,
                start_time=start_time,
                end_time=end_time,
                priority=priority,
                location=location,
                attendees=list(attendees or []),
                created_at=now_ms,
                updated_at=now_ms,
            )
        except ValidationError as e:
            raise _validation_error(e) from e

        conflicts: Optional[ConflictDetectionResult] = None
        if auto_detect_conflicts:
            conflicts = await self.detector.detect(account_id, start_time, end_time)
            entry.has_conflict = conflicts.has_conflict
            entry.conflicting_schedules = [c.schedule_id for c in conflicts.conflicts]

        await self.entries.add(entry)
        logger.info(
            f"Created schedule '{entry.id}' for account '{account_id}'"
            + (f' with {len(entry.conflicting_schedules)} conflict(s)' if entry.has_conflict else '')
        )
        return CreateScheduleResult(schedule=entry, conflicts=conflicts)

    async def detect_conflicts(
        self,
        account_id: str,
        start_time: int,
        end_time: int,
        exclude_schedule_id: Optional[str] = None,
    ) -> ConflictDetectionResult:
        return await self.detector.detect(account_id, start_time, end_time, exclude_schedule_id)

    async def resolve_conflict(
        self,
        schedule_id: str,
        strategy: Union[ResolutionStrategy, str],
        *,
        new_start_time: Optional[int] = None,
        new_end_time: Optional[int] = None,
        new_duration: Optional[int] = None,
    ) -> ResolutionOutcome:
        return await self.resolver.resolve(
            schedule_id,
            strategy,
            new_start_time=new_start_time,
            new_end_time=new_end_time,
            new_duration=new_duration,
        )

    async def get_schedule(self, schedule_id: str) -> ScheduleEntry:
        entry = await self.entries.get(schedule_id)
        if entry is None:
            raise NotFoundError(
                message=f"schedule '{schedule_id}' not found",
                code=ErrorCode.ENTRY_NOT_FOUND,
            )
        return entry

    # --- schedule tasks ---

    async def handle_event(
        self, event: Union[RecurrenceEvent, Mapping[str, Any]]
    ) -> Optional[ScheduleTask]:
        return await self.events.handle(event)

    async def create_tasks_batch(
        self, events: Sequence[Union[RecurrenceEvent, Mapping[str, Any]]]
    ) -> BatchCreateResult:
        """Apply several recurrence events; one bad item never blocks the rest."""
        result = BatchCreateResult()
        for index, event in enumerate(events):
            try:
                task = await self.events.handle(event)
            except AlmanacError as e:
                result.errors[index] = e
                continue
            if task is not None:
                result.created.append(task)
        if result.errors:
            logger.warning(
                f'Batch: {len(result.created)} applied, {len(result.errors)} rejected '
                f'(indexes {sorted(result.errors)})'
            )
        return result

    async def get_task(self, task_id: str) -> ScheduleTask:
        task = await self.tasks.get(task_id)
        if task is None:
            raise NotFoundError(
                message=f"task '{task_id}' not found",
                code=ErrorCode.TASK_NOT_FOUND,
            )
        return task

    async def enable_task(self, task_id: str) -> ScheduleTask:
        now = self.clock()
        task, _ = await mutate_task(self.tasks, task_id, lambda t: t.enable(now))
        return task

    async def disable_task(self, task_id: str) -> ScheduleTask:
        now = self.clock()
        task, _ = await mutate_task(self.tasks, task_id, lambda t: t.disable(now))
        return task

    async def cancel_task(self, task_id: str) -> ScheduleTask:
        now = self.clock()
        task, _ = await mutate_task(self.tasks, task_id, lambda t: t.cancel(now))
        return task

    async def snooze_task(self, task_id: str, minutes: int) -> ScheduleTask:
        now = self.clock()
        task, _ = await mutate_task(self.tasks, task_id, lambda t: t.snooze(minutes, now))
        return task

    async def statistics(self, account_id: str) -> ScheduleStatistics:
        tasks = await self.tasks.list_by_account(account_id)
        return ScheduleStatistics.from_tasks(account_id, tasks)


def _validation_error(e: ValidationError) -> ScheduleValidationError:
    return ScheduleValidationError(
        message='invalid input',
        code=ErrorCode.ENTRY_INVALID_FIELDS,
        notes=[
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ],
    )

# almanac/core/scheduler/state.py
from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol, TypeVar

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from almanac.core.errors import ConcurrencyConflict, ErrorCode, NotFoundError
from almanac.core.logging import get_logger
from almanac.core.models.orm import ScheduleTaskModel
from almanac.core.models.schedule_task import ScheduleTask
from almanac.core.types.status import DISPATCHABLE_STATES

logger = get_logger('store')

T = TypeVar('T')


def version_conflict(
    entity_id: str, expected_version: int, actual_version: Optional[int]
) -> ConcurrencyConflict:
    return ConcurrencyConflict(
        message=f"stale version for '{entity_id}'",
        code=ErrorCode.CONCURRENCY_VERSION_MISMATCH,
        notes=[f'expected version {expected_version}, stored version {actual_version}'],
        help_text='re-fetch the record, reapply the change and save again',
        entity_id=entity_id,
        expected_version=expected_version,
        actual_version=actual_version,
    )


def duplicate_id(entity_id: str) -> ConcurrencyConflict:
    return ConcurrencyConflict(
        message=f"'{entity_id}' already exists",
        code=ErrorCode.STORE_DUPLICATE_ID,
        entity_id=entity_id,
    )


class TaskRepository(Protocol):
    async def get(self, task_id: str) -> Optional[ScheduleTask]: ...

    async def add(self, task: ScheduleTask) -> None: ...

    async def save(self, task: ScheduleTask, expected_version: int) -> None: ...

    async def find_due(self, now: datetime, limit: int) -> list[ScheduleTask]: ...

    async def find_by_source(
        self, source_module: str, source_entity_id: str
    ) -> list[ScheduleTask]: ...

    async def list_by_account(self, account_id: str) -> list[ScheduleTask]: ...


def _detached(task: ScheduleTask) -> ScheduleTask:
    copy = task.model_copy(deep=True)
    copy.pull_events()
    return copy


class InMemoryTaskRepository:
    """Task store held in process memory.

    Stored and returned tasks are deep copies, so callers only change stored
    state through save().
    """

    def __init__(self) -> None:
        self._tasks: dict[str, ScheduleTask] = {}

    async def get(self, task_id: str) -> Optional[ScheduleTask]:
        task = self._tasks.get(task_id)
        return _detached(task) if task is not None else None

    async def add(self, task: ScheduleTask) -> None:
        if task.id in self._tasks:
            raise duplicate_id(task.id)
        self._tasks[task.id] = _detached(task)

    async def save(self, task: ScheduleTask, expected_version: int) -> None:
        stored = self._tasks.get(task.id)
        if stored is None or stored.version != expected_version:
            raise version_conflict(
                task.id, expected_version, stored.version if stored else None
            )
        self._tasks[task.id] = _detached(task)

    async def find_due(self, now: datetime, limit: int) -> list[ScheduleTask]:
        due = [
            task
            for task in self._tasks.values()
            if task.metadata.enabled
            and task.status in DISPATCHABLE_STATES
            and task.next_execution_time is not None
            and task.next_execution_time <= now
        ]
        due.sort(key=lambda t: t.next_execution_time or now)
        return [_detached(task) for task in due[:limit]]

    async def find_by_source(
        self, source_module: str, source_entity_id: str
    ) -> list[ScheduleTask]:
        matches = [
            task
            for task in self._tasks.values()
            if task.source_module == source_module
            and task.source_entity_id == source_entity_id
        ]
        matches.sort(key=lambda t: t.lifecycle.created_at)
        return [_detached(task) for task in matches]

    async def list_by_account(self, account_id: str) -> list[ScheduleTask]:
        return [
            _detached(task) for task in self._tasks.values() if task.account_id == account_id
        ]


UPDATE_TASK_SQL = text("""
    UPDATE almanac_schedule_tasks
    SET document = CAST(:document AS JSONB),
        status = :status,
        enabled = :enabled,
        next_execution_time = :next_execution_time,
        version = :version,
        updated_at = :updated_at
    WHERE id = :id AND version = :expected_version
""")

GET_TASK_VERSION_SQL = text("""
    SELECT version FROM almanac_schedule_tasks WHERE id = :id
""")


def _to_row(task: ScheduleTask) -> ScheduleTaskModel:
    return ScheduleTaskModel(
        id=task.id,
        account_id=task.account_id,
        source_module=task.source_module,
        source_entity_id=task.source_entity_id,
        status=task.status.value,
        enabled=task.metadata.enabled,
        next_execution_time=task.next_execution_time,
        version=task.version,
        document=task.model_dump(mode='json'),
        updated_at=task.lifecycle.updated_at,
    )


def _from_row(row: ScheduleTaskModel) -> ScheduleTask:
    return ScheduleTask.model_validate(row.document)


class SqlTaskRepository:
    """
    Task store in PostgreSQL.

    Saves are conditional on the stored version so two writers that loaded
    the same version cannot both commit.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, task_id: str) -> Optional[ScheduleTask]:
        async with self.session_factory() as session:
            row = await session.get(ScheduleTaskModel, task_id)
            return _from_row(row) if row is not None else None

    async def add(self, task: ScheduleTask) -> None:
        async with self.session_factory() as session:
            session.add(_to_row(task))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise duplicate_id(task.id) from e
        logger.debug(f"Stored task '{task.id}' (version {task.version})")

    async def save(self, task: ScheduleTask, expected_version: int) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                UPDATE_TASK_SQL,
                {
                    'id': task.id,
                    'document': task.model_dump_json(),
                    'status': task.status.value,
                    'enabled': task.metadata.enabled,
                    'next_execution_time': task.next_execution_time,
                    'version': task.version,
                    'updated_at': task.lifecycle.updated_at,
                    'expected_version': expected_version,
                },
            )
            if result.rowcount == 0:  # type: ignore[attr-defined]
                await session.rollback()
                current = await session.execute(GET_TASK_VERSION_SQL, {'id': task.id})
                actual = current.scalar_one_or_none()
                raise version_conflict(task.id, expected_version, actual)
            await session.commit()

    async def find_due(self, now: datetime, limit: int) -> list[ScheduleTask]:
        async with self.session_factory() as session:
            stmt = (
                select(ScheduleTaskModel)
                .where(ScheduleTaskModel.enabled.is_(True))
                .where(ScheduleTaskModel.status.in_([s.value for s in DISPATCHABLE_STATES]))
                .where(ScheduleTaskModel.next_execution_time <= now)
                .order_by(ScheduleTaskModel.next_execution_time.asc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_from_row(row) for row in result.scalars()]

    async def find_by_source(
        self, source_module: str, source_entity_id: str
    ) -> list[ScheduleTask]:
        async with self.session_factory() as session:
            stmt = (
                select(ScheduleTaskModel)
                .where(ScheduleTaskModel.source_module == source_module)
                .where(ScheduleTaskModel.source_entity_id == source_entity_id)
            )
            result = await session.execute(stmt)
            tasks = [_from_row(row) for row in result.scalars()]
        tasks.sort(key=lambda t: t.lifecycle.created_at)
        return tasks

    async def list_by_account(self, account_id: str) -> list[ScheduleTask]:
        async with self.session_factory() as session:
            stmt = select(ScheduleTaskModel).where(ScheduleTaskModel.account_id == account_id)
            result = await session.execute(stmt)
            return [_from_row(row) for row in result.scalars()]


async def mutate_task(
    repository: TaskRepository,
    task_id: str,
    change: Callable[[ScheduleTask], T],
    *,
    attempts: int = 3,
) -> tuple[ScheduleTask, T]:
    """
    Load, change and save a task, repeating on ConcurrencyConflict.

    Returns the saved task and whatever ``change`` returned. Raises
    NotFoundError for an unknown id, and the last ConcurrencyConflict when
    every attempt lost the race.
    """
    last_conflict: Optional[ConcurrencyConflict] = None
    for _ in range(attempts):
        task = await repository.get(task_id)
        if task is None:
            raise NotFoundError(
                message=f"task '{task_id}' not found",
                code=ErrorCode.TASK_NOT_FOUND,
            )
        expected_version = task.version
        outcome = change(task)
        if task.version == expected_version:
            # Nothing changed; no write needed
            return task, outcome
        try:
            await repository.save(task, expected_version)
        except ConcurrencyConflict as e:
            last_conflict = e
            logger.debug(f"Task '{task_id}' changed concurrently, reloading")
            continue
        for event in task.pull_events():
            logger.info(f"Task '{task_id}' {event.type}")
        return task, outcome

    assert last_conflict is not None
    raise last_conflict

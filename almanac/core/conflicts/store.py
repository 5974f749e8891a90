# almanac/core/conflicts/store.py
from __future__ import annotations

from typing import Optional, Protocol

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from almanac.core.models.orm import ScheduleEntryModel
from almanac.core.models.schedule_entry import ScheduleEntry
from almanac.core.scheduler.state import duplicate_id, version_conflict


class EntryRepository(Protocol):
    async def get(self, entry_id: str) -> Optional[ScheduleEntry]: ...

    async def add(self, entry: ScheduleEntry) -> None: ...

    async def save(self, entry: ScheduleEntry, expected_version: int) -> None: ...

    async def find_active_in_range(
        self,
        account_id: str,
        start_time: int,
        end_time: int,
        exclude_id: Optional[str] = None,
    ) -> list[ScheduleEntry]: ...


class InMemoryEntryRepository:
    def __init__(self) -> None:
        self._entries: dict[str, ScheduleEntry] = {}

    async def get(self, entry_id: str) -> Optional[ScheduleEntry]:
        entry = self._entries.get(entry_id)
        return entry.model_copy(deep=True) if entry is not None else None

    async def add(self, entry: ScheduleEntry) -> None:
        if entry.id in self._entries:
            raise duplicate_id(entry.id)
        self._entries[entry.id] = entry.model_copy(deep=True)

    async def save(self, entry: ScheduleEntry, expected_version: int) -> None:
        stored = self._entries.get(entry.id)
        if stored is None or stored.version != expected_version:
            raise version_conflict(
                entry.id, expected_version, stored.version if stored else None
            )
        self._entries[entry.id] = entry.model_copy(deep=True)

    async def find_active_in_range(
        self,
        account_id: str,
        start_time: int,
        end_time: int,
        exclude_id: Optional[str] = None,
    ) -> list[ScheduleEntry]:
        matches = [
            entry
            for entry in self._entries.values()
            if entry.account_id == account_id
            and entry.active
            and entry.id != exclude_id
            and entry.overlaps(start_time, end_time)
        ]
        matches.sort(key=lambda e: (e.start_time, e.end_time, e.id))
        return [entry.model_copy(deep=True) for entry in matches]


UPDATE_ENTRY_SQL = text("""
    UPDATE almanac_schedule_entries
    SET document = CAST(:document AS JSONB),
        start_time = :start_time,
        end_time = :end_time,
        active = :active,
        version = :version
    WHERE id = :id AND version = :expected_version
""")

GET_ENTRY_VERSION_SQL = text("""
    SELECT version FROM almanac_schedule_entries WHERE id = :id
""")


def _to_row(entry: ScheduleEntry) -> ScheduleEntryModel:
    return ScheduleEntryModel(
        id=entry.id,
        account_id=entry.account_id,
        start_time=entry.start_time,
        end_time=entry.end_time,
        active=entry.active,
        version=entry.version,
        document=entry.model_dump(mode='json'),
    )


class SqlEntryRepository:
    """Calendar entries in PostgreSQL with version-guarded saves."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, entry_id: str) -> Optional[ScheduleEntry]:
        async with self.session_factory() as session:
            row = await session.get(ScheduleEntryModel, entry_id)
            return ScheduleEntry.model_validate(row.document) if row is not None else None

    async def add(self, entry: ScheduleEntry) -> None:
        async with self.session_factory() as session:
            session.add(_to_row(entry))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise duplicate_id(entry.id) from e

    async def save(self, entry: ScheduleEntry, expected_version: int) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                UPDATE_ENTRY_SQL,
                {
                    'id': entry.id,
                    'document': entry.model_dump_json(),
                    'start_time': entry.start_time,
                    'end_time': entry.end_time,
                    'active': entry.active,
                    'version': entry.version,
                    'expected_version': expected_version,
                },
            )
            if result.rowcount == 0:  # type: ignore[attr-defined]
                await session.rollback()
                current = await session.execute(GET_ENTRY_VERSION_SQL, {'id': entry.id})
                raise version_conflict(entry.id, expected_version, current.scalar_one_or_none())
            await session.commit()

    async def find_active_in_range(
        self,
        account_id: str,
        start_time: int,
        end_time: int,
        exclude_id: Optional[str] = None,
    ) -> list[ScheduleEntry]:
        async with self.session_factory() as session:
            stmt = (
                select(ScheduleEntryModel)
                .where(ScheduleEntryModel.account_id == account_id)
                .where(ScheduleEntryModel.active.is_(True))
                .where(ScheduleEntryModel.start_time < end_time)
                .where(ScheduleEntryModel.end_time > start_time)
                .order_by(ScheduleEntryModel.start_time.asc(), ScheduleEntryModel.end_time.asc())
            )
            if exclude_id is not None:
                stmt = stmt.where(ScheduleEntryModel.id != exclude_id)
            result = await session.execute(stmt)
            return [ScheduleEntry.model_validate(row.document) for row in result.scalars()]

# almanac/core/scheduler/lease.py
"""Per-task leases: a claim on a task id with an expiry.

A dispatcher must hold the lease before running a task. Expired leases can be
taken over, so a crashed dispatcher never blocks a task for longer than its
lease TTL.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from almanac.core.logging import get_logger

logger = get_logger('lease')


@dataclass(frozen=True)
class Lease:
    task_id: str
    owner: str
    expires_at: datetime


class LeaseStore(Protocol):
    async def acquire(
        self, task_id: str, owner: str, ttl: timedelta, now: datetime
    ) -> bool: ...

    async def release(self, task_id: str, owner: str) -> None: ...

    async def get(self, task_id: str) -> Optional[Lease]: ...


class InMemoryLeaseStore:
    """Lease table held in process memory.

    acquire() does not await between check and write, so it is atomic with
    respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._leases: dict[str, Lease] = {}

    async def acquire(
        self, task_id: str, owner: str, ttl: timedelta, now: datetime
    ) -> bool:
        current = self._leases.get(task_id)
        if current is not None and current.expires_at > now:
            return False
        self._leases[task_id] = Lease(task_id=task_id, owner=owner, expires_at=now + ttl)
        return True

    async def release(self, task_id: str, owner: str) -> None:
        current = self._leases.get(task_id)
        if current is not None and current.owner == owner:
            del self._leases[task_id]

    async def get(self, task_id: str) -> Optional[Lease]:
        return self._leases.get(task_id)


ACQUIRE_LEASE_SQL = text("""
    INSERT INTO almanac_task_leases (task_id, owner, expires_at)
    VALUES (:task_id, :owner, :expires_at)
    ON CONFLICT (task_id) DO UPDATE
    SET owner = EXCLUDED.owner,
        expires_at = EXCLUDED.expires_at
    WHERE almanac_task_leases.expires_at <= :now
    RETURNING task_id
""")

RELEASE_LEASE_SQL = text("""
    DELETE FROM almanac_task_leases
    WHERE task_id = :task_id AND owner = :owner
""")

GET_LEASE_SQL = text("""
    SELECT task_id, owner, expires_at
    FROM almanac_task_leases
    WHERE task_id = :task_id
""")


class SqlLeaseStore:
    """Lease table in PostgreSQL, shared by every dispatcher replica.

    The claim is a single upsert that only overwrites an expired row, so two
    replicas (or two overlapping ticks of one replica) can never both win.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def acquire(
        self, task_id: str, owner: str, ttl: timedelta, now: datetime
    ) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                ACQUIRE_LEASE_SQL,
                {
                    'task_id': task_id,
                    'owner': owner,
                    'expires_at': now + ttl,
                    'now': now,
                },
            )
            acquired = result.fetchone() is not None
            await session.commit()

        if not acquired:
            logger.debug(f"Lease for task '{task_id}' is held by another dispatcher")
        return acquired

    async def release(self, task_id: str, owner: str) -> None:
        async with self.session_factory() as session:
            await session.execute(RELEASE_LEASE_SQL, {'task_id': task_id, 'owner': owner})
            await session.commit()

    async def get(self, task_id: str) -> Optional[Lease]:
        async with self.session_factory() as session:
            result = await session.execute(GET_LEASE_SQL, {'task_id': task_id})
            row = result.fetchone()
        if row is None:
            return None
        return Lease(task_id=row[0], owner=row[1], expires_at=row[2])

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class ScheduleTaskModel(Base):
    """Persisted ScheduleTask.

    The aggregate lives in ``document``; the columns beside it exist for
    filtering (due-task polling, producer lookup) and optimistic locking.
    """

    __tablename__ = 'almanac_schedule_tasks'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source_module: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    source_entity_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    next_execution_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    document: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_almanac_tasks_due', 'enabled', 'status', 'next_execution_time'),
        Index('idx_almanac_tasks_source', 'source_module', 'source_entity_id'),
    )


class ScheduleEntryModel(Base):
    """Persisted calendar entry; times are Unix milliseconds."""

    __tablename__ = 'almanac_schedule_entries'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    start_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    document: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)

    __table_args__ = (
        Index('idx_almanac_entries_range', 'account_id', 'active', 'start_time', 'end_time'),
    )


class TaskLeaseModel(Base):
    """Lease table: at most one live claim per task id."""

    __tablename__ = 'almanac_task_leases'

    task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

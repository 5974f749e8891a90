# almanac/core/conflicts/resolver.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Union

from almanac.core.conflicts.detector import ConflictDetector
from almanac.core.conflicts.store import EntryRepository
from almanac.core.defaults import MS_PER_MINUTE
from almanac.core.errors import (
    ConflictPersistsWarning,
    ErrorCode,
    NotFoundError,
    ScheduleValidationError,
)
from almanac.core.logging import get_logger
from almanac.core.models.schedule_entry import (
    ConflictDetectionResult,
    ResolutionRecord,
    ResolutionStrategy,
    ScheduleEntry,
)
from almanac.core.utils.timeconv import from_ms, to_ms, utcnow

logger = get_logger('conflicts')


def _now_ms() -> int:
    return to_ms(utcnow())


def _iso(ms: int) -> str:
    return from_ms(ms).isoformat()


@dataclass
class ResolutionOutcome:
    """Result of one resolution call.

    ``applied`` is always present; it is only persisted on the entry's audit
    trail when the call changed the entry.
    """

    schedule: ScheduleEntry
    conflicts: ConflictDetectionResult
    applied: ResolutionRecord
    warning: Optional[ConflictPersistsWarning] = None
    changed: bool = True


class ConflictResolver:
    """Applies a resolution strategy to an entry and re-validates it."""

    def __init__(
        self,
        repository: EntryRepository,
        detector: ConflictDetector,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self.repository = repository
        self.detector = detector
        self.clock_ms = clock_ms

    async def resolve(
        self,
        schedule_id: str,
        strategy: Union[ResolutionStrategy, str],
        *,
        new_start_time: Optional[int] = None,
        new_end_time: Optional[int] = None,
        new_duration: Optional[int] = None,
    ) -> ResolutionOutcome:
        """
        Apply ``strategy`` to the entry.

        Raises:
            NotFoundError: unknown schedule id
            ScheduleValidationError: strategy fields missing or invalid, or the
                entry is cancelled and the strategy would move it
            ConcurrencyConflict: the entry changed since it was loaded
        """
        strategy = ResolutionStrategy(strategy)
        entry = await self.repository.get(schedule_id)
        if entry is None:
            raise NotFoundError(
                message=f"schedule '{schedule_id}' not found",
                code=ErrorCode.ENTRY_NOT_FOUND,
            )

        if not entry.active and strategy in (
            ResolutionStrategy.RESCHEDULE,
            ResolutionStrategy.ADJUST_DURATION,
        ):
            raise ScheduleValidationError(
                message=f"schedule '{schedule_id}' is cancelled",
                code=ErrorCode.ENTRY_INACTIVE,
                notes=[f'{strategy.value} only applies to active schedules'],
                help_text='create a new schedule instead',
            )

        now = self.clock_ms()
        expected_version = entry.version
        record = ResolutionRecord(
            strategy=strategy,
            previous_start_time=entry.start_time,
            previous_end_time=entry.end_time,
            resolved_at=now,
        )

        match strategy:
            case ResolutionStrategy.RESCHEDULE:
                if new_start_time is None or new_end_time is None:
                    raise _missing_fields(strategy, 'new_start_time and new_end_time')
                entry.set_range(new_start_time, new_end_time, now)
                record.changes.append(
                    f'start time changed from {_iso(record.previous_start_time)} '
                    f'to {_iso(new_start_time)}'
                )
                record.changes.append(
                    f'end time changed from {_iso(record.previous_end_time)} '
                    f'to {_iso(new_end_time)}'
                )
                return await self._revalidate(entry, record, expected_version, now)

            case ResolutionStrategy.ADJUST_DURATION:
                if new_duration is None:
                    raise _missing_fields(strategy, 'new_duration')
                if new_duration < 1:
                    raise ScheduleValidationError(
                        message=f'new_duration must be at least 1 minute, got {new_duration}',
                        code=ErrorCode.ENTRY_INVALID_TIME_RANGE,
                    )
                previous_duration = entry.duration
                entry.set_range(
                    entry.start_time, entry.start_time + new_duration * MS_PER_MINUTE, now
                )
                record.changes.append(
                    f'duration changed from {previous_duration} to {new_duration} minutes'
                )
                return await self._revalidate(entry, record, expected_version, now)

            case ResolutionStrategy.CANCEL:
                if not entry.deactivate(now):
                    logger.debug(f"Schedule '{schedule_id}' already cancelled")
                    return ResolutionOutcome(
                        schedule=entry,
                        conflicts=ConflictDetectionResult.empty(),
                        applied=record,
                        changed=False,
                    )
                record.changes.append('schedule cancelled')
                entry.audit.append(record)
                await self.repository.save(entry, expected_version)
                logger.info(f"Schedule '{schedule_id}' cancelled")
                return ResolutionOutcome(
                    schedule=entry,
                    conflicts=ConflictDetectionResult.empty(),
                    applied=record,
                )

            case ResolutionStrategy.IGNORE:
                conflicts = ConflictDetectionResult.empty()
                if entry.active:
                    conflicts = await self.detector.detect(
                        entry.account_id, entry.start_time, entry.end_time, entry.id
                    )
                record.changes.append('conflicts acknowledged')
                return ResolutionOutcome(
                    schedule=entry,
                    conflicts=conflicts,
                    applied=record,
                    changed=False,
                )

    async def _revalidate(
        self,
        entry: ScheduleEntry,
        record: ResolutionRecord,
        expected_version: int,
        now: int,
    ) -> ResolutionOutcome:
        conflicts = await self.detector.detect(
            entry.account_id, entry.start_time, entry.end_time, entry.id
        )
        entry.mark_conflicts([c.schedule_id for c in conflicts.conflicts], now)
        entry.audit.append(record)
        await self.repository.save(entry, expected_version)

        warning = None
        if conflicts.has_conflict:
            warning = ConflictPersistsWarning(
                message=(
                    f"schedule '{entry.id}' still overlaps "
                    f'{len(conflicts.conflicts)} schedule(s) after {record.strategy.value}'
                ),
                code=ErrorCode.CONFLICT_PERSISTS,
                notes=[c.schedule_title for c in conflicts.conflicts],
                conflict_count=len(conflicts.conflicts),
            )
            logger.warning(warning.message)
        return ResolutionOutcome(
            schedule=entry,
            conflicts=conflicts,
            applied=record,
            warning=warning,
        )


def _missing_fields(strategy: ResolutionStrategy, fields: str) -> ScheduleValidationError:
    return ScheduleValidationError(
        message=f'{strategy.value} requires {fields}',
        code=ErrorCode.RESOLUTION_MISSING_FIELDS,
    )

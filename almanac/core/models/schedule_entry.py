# almanac/core/models/schedule_entry.py
"""Calendar entries, conflict results and resolution audit records.

These objects cross the external boundary, so times are Unix milliseconds
and durations are minutes.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
from typing_extensions import Self

from almanac.core.defaults import MS_PER_MINUTE
from almanac.core.errors import ErrorCode, ScheduleValidationError


class _BoundaryModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


def duration_minutes(start_time: int, end_time: int) -> int:
    """Whole minutes in ``[start_time, end_time)``."""
    return (end_time - start_time) // MS_PER_MINUTE


def check_time_range(start_time: int, end_time: int) -> None:
    if end_time <= start_time:
        raise ScheduleValidationError(
            message='invalid time range: end time must be after start time',
            code=ErrorCode.ENTRY_INVALID_TIME_RANGE,
            notes=[f'start_time={start_time}', f'end_time={end_time}'],
        )


class ScheduleEntry(_BoundaryModel):
    """User-facing calendar item subject to conflict detection."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    account_id: str
    title: Annotated[str, Field(min_length=1, max_length=100)]
    description: Optional[Annotated[str, Field(max_length=500)]] = None
    start_time: int
    end_time: int
    duration: int = 0
    priority: Optional[Annotated[int, Field(ge=1, le=5)]] = None
    location: Optional[str] = None
    attendees: list[str] = Field(default_factory=list)
    has_conflict: bool = False
    conflicting_schedules: list[str] = Field(default_factory=list)
    active: bool = True
    version: int = 0
    created_at: int = 0
    updated_at: int = 0
    audit: list['ResolutionRecord'] = Field(default_factory=list)

    @model_validator(mode='after')
    def validate_range(self) -> Self:
        check_time_range(self.start_time, self.end_time)
        self.duration = duration_minutes(self.start_time, self.end_time)
        return self

    def overlaps(self, start_time: int, end_time: int) -> bool:
        """Half-open overlap: [start_time, end_time) against [self.start, self.end)."""
        return start_time < self.end_time and self.start_time < end_time

    def set_range(self, start_time: int, end_time: int, now: int) -> None:
        check_time_range(start_time, end_time)
        self.start_time = start_time
        self.end_time = end_time
        self.duration = duration_minutes(start_time, end_time)
        self._touch(now)

    def mark_conflicts(self, schedule_ids: list[str], now: int) -> None:
        self.has_conflict = bool(schedule_ids)
        self.conflicting_schedules = list(schedule_ids)
        self._touch(now)

    def deactivate(self, now: int) -> bool:
        """Returns False when the entry was already inactive."""
        if not self.active:
            return False
        self.active = False
        self.has_conflict = False
        self.conflicting_schedules = []
        self._touch(now)
        return True

    def _touch(self, now: int) -> None:
        self.version += 1
        self.updated_at = now


Severity = Literal['minor', 'moderate', 'severe']
SuggestionType = Literal['move_earlier', 'move_later', 'shorten']


class ConflictDetail(_BoundaryModel):
    schedule_id: str
    schedule_title: str
    overlap_start: int
    overlap_end: int
    overlap_duration_minutes: float
    severity: Severity


class ConflictSuggestion(_BoundaryModel):
    type: SuggestionType
    new_start_time: int
    new_end_time: int
    description: Optional[str] = None


class ConflictDetectionResult(_BoundaryModel):
    has_conflict: bool
    conflicts: list[ConflictDetail] = Field(default_factory=list)
    suggestions: list[ConflictSuggestion] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> 'ConflictDetectionResult':
        return cls(has_conflict=False)


class ResolutionStrategy(str, Enum):
    RESCHEDULE = 'RESCHEDULE'
    CANCEL = 'CANCEL'
    ADJUST_DURATION = 'ADJUST_DURATION'
    IGNORE = 'IGNORE'


class ResolutionRecord(_BoundaryModel):
    """Audit record returned by every resolution call."""

    strategy: ResolutionStrategy
    previous_start_time: int
    previous_end_time: int
    changes: list[str] = Field(default_factory=list)
    resolved_at: int = 0


ScheduleEntry.model_rebuild()

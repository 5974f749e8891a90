# core/types/status.py
"""
Lifecycle and outcome enums used throughout the engine.
This module should not import from other application modules.
"""

from enum import Enum


class ScheduleStatus(Enum):
    """ScheduleTask lifecycle status"""

    PENDING = 'pending'  # Created, never dispatched yet.
    ACTIVE = 'active'  # Dispatched at least once, still scheduling runs.
    PAUSED = 'paused'  # Disabled; resumes on enable.
    COMPLETED = 'completed'  # One-shot ran, or recurrence ended.
    FAILED = 'failed'  # Retries exhausted.
    CANCELLED = 'cancelled'  # Explicitly cancelled.

    @property
    def is_terminal(self) -> bool:
        """Whether this status admits no further transition except cancellation."""
        return self in SCHEDULE_TERMINAL_STATES

    @property
    def is_dispatchable(self) -> bool:
        return self in DISPATCHABLE_STATES

    def can_transition_to(self, target: 'ScheduleStatus') -> bool:
        return target in ALLOWED_TRANSITIONS[self]


class ExecutionStatus(Enum):
    """Outcome of a single execution attempt"""

    SUCCESS = 'success'
    FAILED = 'failed'
    TIMEOUT = 'timeout'
    SKIPPED = 'skipped'

    @property
    def is_failure(self) -> bool:
        return self in (ExecutionStatus.FAILED, ExecutionStatus.TIMEOUT)


SCHEDULE_TERMINAL_STATES: frozenset[ScheduleStatus] = frozenset({
    ScheduleStatus.COMPLETED,
    ScheduleStatus.CANCELLED,
})

DISPATCHABLE_STATES: frozenset[ScheduleStatus] = frozenset({
    ScheduleStatus.PENDING,
    ScheduleStatus.ACTIVE,
})

ALLOWED_TRANSITIONS: dict[ScheduleStatus, frozenset[ScheduleStatus]] = {
    ScheduleStatus.PENDING: frozenset({
        ScheduleStatus.ACTIVE,
        ScheduleStatus.PAUSED,
        ScheduleStatus.COMPLETED,
        ScheduleStatus.CANCELLED,
    }),
    ScheduleStatus.ACTIVE: frozenset({
        ScheduleStatus.PAUSED,
        ScheduleStatus.COMPLETED,
        ScheduleStatus.FAILED,
        ScheduleStatus.CANCELLED,
    }),
    ScheduleStatus.PAUSED: frozenset({
        ScheduleStatus.ACTIVE,
        ScheduleStatus.CANCELLED,
    }),
    ScheduleStatus.FAILED: frozenset({
        ScheduleStatus.ACTIVE,
        ScheduleStatus.CANCELLED,
    }),
    ScheduleStatus.COMPLETED: frozenset({ScheduleStatus.CANCELLED}),
    ScheduleStatus.CANCELLED: frozenset({ScheduleStatus.CANCELLED}),
}

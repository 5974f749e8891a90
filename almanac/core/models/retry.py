# almanac/core/models/retry.py
from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.types import PositiveInt
from typing_extensions import Self


class RetryPolicy(BaseModel):
    """
    Backoff configuration applied between failed attempts of a task.

    Two strategies supported:
    1. Fixed: uses intervals in order, repeating the last one
    2. Exponential: uses intervals[0] as base, doubling per attempt

    How many attempts are allowed is a property of the task
    (``execution.max_retries``), not of the policy.

    Fields:
        intervals: delay intervals in seconds between attempts
        backoff_strategy: 'fixed' uses intervals as-is, 'exponential' uses intervals[0] as base
        jitter: whether to add +/-25% randomization to delays
        max_delay_seconds: ceiling applied after backoff and jitter
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    intervals: Annotated[
        list[
            Annotated[
                PositiveInt,
                Field(le=86400, description='Retry interval in seconds (1-86400)'),
            ]
        ],
        Field(min_length=1, max_length=20, description='List of retry intervals'),
    ] = [60]
    backoff_strategy: Literal['fixed', 'exponential'] = 'exponential'
    jitter: bool = True
    max_delay_seconds: Annotated[int, Field(ge=1, le=604_800)] = 86_400

    @model_validator(mode='after')
    def validate_strategy_consistency(self) -> Self:
        if self.backoff_strategy == 'exponential' and len(self.intervals) != 1:
            raise ValueError(
                f'Exponential backoff strategy requires exactly one base interval, '
                f'got {len(self.intervals)} intervals. Use intervals=[base_seconds] for exponential backoff.'
            )
        return self

    @classmethod
    def fixed(cls, intervals: list[int], *, jitter: bool = True) -> 'RetryPolicy':
        """Fixed delays; attempts past the end of the list reuse the last interval."""
        return cls(intervals=intervals, backoff_strategy='fixed', jitter=jitter)

    @classmethod
    def exponential(cls, base_seconds: int = 60, *, jitter: bool = True) -> 'RetryPolicy':
        """base_seconds * 2**(attempt-1) per attempt."""
        return cls(intervals=[base_seconds], backoff_strategy='exponential', jitter=jitter)

# almanac/core/models/recurrence.py
"""Producer-supplied recurrence descriptions.

Each variant carries only the fields it needs; the ``kind`` literal is the
discriminant. Range checks live in the translator so that an out-of-range
field surfaces as a ``TranslationError`` rather than a parse failure.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class _RecurrenceBase(BaseModel):
    model_config = ConfigDict(
        extra='forbid',
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


class Daily(_RecurrenceBase):
    """Every day at hour:minute."""

    kind: Literal['DAILY'] = 'DAILY'
    hour: int
    minute: int


class Weekly(_RecurrenceBase):
    """Every week on ``weekday`` (0=Sunday .. 6=Saturday) at hour:minute."""

    kind: Literal['WEEKLY'] = 'WEEKLY'
    weekday: int
    hour: int
    minute: int


class Monthly(_RecurrenceBase):
    """Every month on ``day``; months without that day are skipped."""

    kind: Literal['MONTHLY'] = 'MONTHLY'
    day: int
    hour: int
    minute: int


class EveryNMinutes(_RecurrenceBase):
    kind: Literal['EVERY_N_MINUTES'] = 'EVERY_N_MINUTES'
    n: int


class EveryNHours(_RecurrenceBase):
    kind: Literal['EVERY_N_HOURS'] = 'EVERY_N_HOURS'
    n: int
    minute_offset: int = 0


class AbsoluteOnce(_RecurrenceBase):
    """Fire once at ``timestamp`` (Unix ms)."""

    kind: Literal['ABSOLUTE_ONCE'] = 'ABSOLUTE_ONCE'
    timestamp: int


class RawCron(_RecurrenceBase):
    kind: Literal['RAW_CRON'] = 'RAW_CRON'
    expression: str


RecurrenceSpec = Annotated[
    Union[Daily, Weekly, Monthly, EveryNMinutes, EveryNHours, AbsoluteOnce, RawCron],
    Field(discriminator='kind'),
]

_recurrence_adapter: TypeAdapter[RecurrenceSpec] = TypeAdapter(RecurrenceSpec)


def parse_recurrence(data: object) -> RecurrenceSpec:
    """Parse a dict (camelCase or snake_case keys) into its variant."""
    return _recurrence_adapter.validate_python(data)


def is_recurring(spec: RecurrenceSpec) -> bool:
    return not isinstance(spec, AbsoluteOnce)

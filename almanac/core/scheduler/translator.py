# almanac/core/scheduler/translator.py
"""Recurrence description -> canonical cron expression.

Pure: no I/O, no clock. The same input always yields the same string.
"""

from __future__ import annotations

from datetime import datetime, timezone

from almanac.core.errors import (
    ErrorCode,
    TranslationError,
)
from almanac.core.models.recurrence import (
    AbsoluteOnce,
    Daily,
    EveryNHours,
    EveryNMinutes,
    Monthly,
    RawCron,
    RecurrenceSpec,
    Weekly,
)
from almanac.core.scheduler.calculator import is_valid_cron, load_timezone

# croniter accepts years in this range for the seventh field
_MIN_YEAR = 1970
_MAX_YEAR = 2099


def translate(spec: RecurrenceSpec, tz_str: str = 'UTC') -> str:
    """
    Translate a recurrence variant into a cron expression.

    Args:
        spec: One RecurrenceSpec variant
        tz_str: Timezone used to pin ABSOLUTE_ONCE to a local wall-clock time

    Raises:
        TranslationError: If any field is out of range, the raw expression is
            invalid, or the timezone is unknown
    """
    match spec:
        case Daily(hour=hour, minute=minute):
            _check_fields(spec, hour=hour, minute=minute)
            return f'{minute} {hour} * * *'

        case Weekly(weekday=weekday, hour=hour, minute=minute):
            _check_fields(spec, weekday=weekday, hour=hour, minute=minute)
            return f'{minute} {hour} * * {weekday}'

        case Monthly(day=day, hour=hour, minute=minute):
            _check_fields(spec, day=day, hour=hour, minute=minute)
            return f'{minute} {hour} {day} * *'

        case EveryNMinutes(n=n):
            _check_fields(spec, n_minutes=n)
            return '* * * * *' if n == 1 else f'*/{n} * * * *'

        case EveryNHours(n=n, minute_offset=minute_offset):
            _check_fields(spec, n_hours=n, minute=minute_offset)
            return f'{minute_offset} * * * *' if n == 1 else f'{minute_offset} */{n} * * *'

        case AbsoluteOnce(timestamp=timestamp):
            return _pin_absolute(spec, timestamp, tz_str)

        case RawCron(expression=expression):
            normalized = ' '.join(expression.split())
            if not normalized or not is_valid_cron(normalized):
                raise TranslationError(
                    message=f"invalid cron expression '{expression}'",
                    code=ErrorCode.RECURRENCE_INVALID_CRON,
                    help_text='expected 5 fields: minute hour day-of-month month day-of-week',
                )
            return normalized

    raise TranslationError(
        message=f'unsupported recurrence kind {type(spec).__name__}',
        code=ErrorCode.RECURRENCE_FIELD_OUT_OF_RANGE,
    )


# field name -> (low, high, label)
_BOUNDS: dict[str, tuple[int, int, str]] = {
    'hour': (0, 23, 'hour'),
    'minute': (0, 59, 'minute'),
    'weekday': (0, 6, 'weekday'),
    'day': (1, 31, 'day'),
    'n_minutes': (1, 59, 'n'),
    'n_hours': (1, 23, 'n'),
}


def _check_fields(spec: RecurrenceSpec, **values: int) -> None:
    notes: list[str] = []
    for key, value in values.items():
        low, high, label = _BOUNDS[key]
        if not low <= value <= high:
            notes.append(f'{label}={value} is outside {low}..{high}')

    if notes:
        raise TranslationError(
            message=f'{spec.kind} recurrence has out-of-range fields',
            code=ErrorCode.RECURRENCE_FIELD_OUT_OF_RANGE,
            notes=notes,
            help_text=_help_for(spec),
        )


def _help_for(spec: RecurrenceSpec) -> str | None:
    if isinstance(spec, EveryNMinutes):
        return 'intervals of an hour or more should use EVERY_N_HOURS'
    if isinstance(spec, EveryNHours):
        return 'intervals of a day or more should use DAILY or RAW_CRON'
    if isinstance(spec, Weekly):
        return 'weekday counts from 0 (Sunday) to 6 (Saturday)'
    return None


def _pin_absolute(spec: AbsoluteOnce, timestamp: int, tz_str: str) -> str:
    tz = load_timezone(tz_str)
    try:
        local = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc).astimezone(tz)
    except (OverflowError, OSError, ValueError) as e:
        raise TranslationError(
            message=f'ABSOLUTE_ONCE timestamp {timestamp} is not representable',
            code=ErrorCode.RECURRENCE_TIMESTAMP_OUT_OF_RANGE,
        ) from e

    if timestamp < 0 or not _MIN_YEAR <= local.year <= _MAX_YEAR:
        raise TranslationError(
            message=f'{spec.kind} timestamp {timestamp} is out of range',
            code=ErrorCode.RECURRENCE_TIMESTAMP_OUT_OF_RANGE,
            notes=[f'supported years are {_MIN_YEAR}..{_MAX_YEAR}'],
        )

    # minute hour day month weekday second year
    return f'{local.minute} {local.hour} {local.day} {local.month} * 0 {local.year}'

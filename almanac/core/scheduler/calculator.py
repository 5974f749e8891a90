# almanac/core/scheduler/calculator.py
"""Cron evaluation in a named timezone.

croniter walks naive wall-clock time in the schedule's timezone; every
candidate is then mapped to a real instant. Wall-clock times that fall in a
spring-forward gap fire at the shifted instant, and times that occur twice on
a fall-back night fire once, at the earliest instant.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterBadDateError, croniter  # type: ignore[import-untyped]

from almanac.core.defaults import MAX_CRON_CANDIDATES
from almanac.core.errors import ErrorCode, TranslationError

# Largest UTC offset change any zone makes in one transition.
_MAX_OFFSET_SHIFT = timedelta(hours=2)


def load_timezone(tz_str: str) -> ZoneInfo:
    """Resolve an IANA timezone name or raise TranslationError."""
    try:
        return ZoneInfo(tz_str)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise TranslationError(
            message=f"invalid timezone '{tz_str}'",
            code=ErrorCode.RECURRENCE_INVALID_TIMEZONE,
            notes=[str(e)],
            help_text='use an IANA name such as "UTC" or "Europe/Berlin"',
        ) from e


def is_valid_cron(expression: str) -> bool:
    return bool(croniter.is_valid(expression))


def next_run(cron: str, tz_str: str, after: datetime) -> Optional[datetime]:
    """
    Calculate the first fire time strictly after ``after``.

    Args:
        cron: Cron expression (5 fields, or 7 with seconds and year)
        tz_str: Timezone the cron fields are evaluated in
        after: Timezone-aware lower bound (exclusive)

    Returns:
        Next fire time as UTC-aware datetime, or None when the expression
        can never fire again (e.g. a pinned year in the past)

    Raises:
        ValueError: If after is naive
        TranslationError: If the cron expression or timezone is invalid
    """
    for instant in _iter_instants(cron, tz_str, after):
        return instant
    return None


def upcoming_runs(
    cron: str, tz_str: str, after: datetime, count: int
) -> list[datetime]:
    """The next ``count`` fire times after ``after``, in order."""
    runs: list[datetime] = []
    if count <= 0:
        return runs
    for instant in _iter_instants(cron, tz_str, after):
        runs.append(instant)
        if len(runs) >= count:
            break
    return runs


def _iter_instants(cron: str, tz_str: str, after: datetime) -> Iterator[datetime]:
    if after.tzinfo is None:
        raise ValueError('after must be timezone-aware')
    if not is_valid_cron(cron):
        raise TranslationError(
            message=f"invalid cron expression '{cron}'",
            code=ErrorCode.RECURRENCE_INVALID_CRON,
        )

    tz = load_timezone(tz_str)
    after_utc = after.astimezone(timezone.utc)

    # Start a full offset shift before the local wall-clock of `after`: a gap
    # slot earlier on the clock can still resolve to an instant after `after`.
    # Candidates at or before `after` are dropped by the instant check below.
    local_start = after_utc.astimezone(tz).replace(tzinfo=None, microsecond=0)
    walker = croniter(cron, local_start - _MAX_OFFSET_SHIFT)

    last_emitted: Optional[datetime] = None
    for _ in range(MAX_CRON_CANDIDATES):
        try:
            wall_clock: datetime = walker.get_next(datetime)
        except CroniterBadDateError:
            return
        instant = _resolve_local_datetime(wall_clock, tz)
        if instant <= after_utc:
            continue
        # Two gap minutes can shift onto the same instant
        if last_emitted is not None and instant <= last_emitted:
            continue
        last_emitted = instant
        yield instant


def _resolve_local_datetime(naive: datetime, tz: ZoneInfo) -> datetime:
    """
    Resolve a local wall-clock datetime into a real UTC instant.

    Nonexistent local times (spring-forward gaps) are shifted forward by the
    gap length. For ambiguous local times (fall-back), returns the earliest
    instant.
    """
    naive = naive.replace(tzinfo=None)
    valid: list[datetime] = []
    for fold in (0, 1):
        candidate = naive.replace(tzinfo=tz, fold=fold)
        roundtrip = candidate.astimezone(timezone.utc).astimezone(tz)
        if roundtrip.replace(tzinfo=None) == naive:
            valid.append(candidate.astimezone(timezone.utc))

    if not valid:
        # fold=0 in a gap applies the pre-transition offset, which lands
        # the same distance past the transition as the wall-clock time
        return naive.replace(tzinfo=tz, fold=0).astimezone(timezone.utc)

    return min(valid)


def should_run_now(next_run_at: Optional[datetime], check_time: datetime) -> bool:
    """True when a task's next run time has been reached."""
    if next_run_at is None:
        return False
    return check_time >= next_run_at

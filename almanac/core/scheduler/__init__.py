# almanac/core/scheduler/__init__.py
"""
Scheduling primitives: recurrence translation and cron evaluation.

Main components:
- translate: RecurrenceSpec -> cron expression
- next_run / upcoming_runs: DST-aware fire times in a task timezone

Example usage:
    from almanac.core.scheduler import translate, next_run

    cron = translate(Daily(hour=9, minute=0))
    when = next_run(cron, 'Europe/Berlin', datetime.now(timezone.utc))

The dispatcher, tracker and repositories live in their own submodules.
"""

from almanac.core.scheduler.calculator import load_timezone, next_run, upcoming_runs
from almanac.core.scheduler.translator import translate

__all__ = [
    'load_timezone',
    'next_run',
    'translate',
    'upcoming_runs',
]

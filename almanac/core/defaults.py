"""Shared default constants for the schedule engine."""

# Lease held on a task id while one dispatcher runs it.
# Bounded so a crashed dispatcher's claims become reclaimable within this window.
DEFAULT_LEASE_TTL_MS: int = 60_000  # 60 seconds

# Extra lease time granted on top of a task's own timeout.
LEASE_GRACE_MS: int = 5_000

# Fallback per-task timeout when a task does not set timeout_seconds.
DEFAULT_TIMEOUT_SECONDS: int = 300

DEFAULT_MAX_RETRIES: int = 3

# Number of recent execution records kept on each task.
DEFAULT_HISTORY_LIMIT: int = 20

# Conflict suggestions only look this far before/after the proposed range.
DEFAULT_LOOKAROUND_HOURS: int = 24

# A shortened calendar entry must keep at least this many minutes.
DEFAULT_MIN_VIABLE_MINUTES: int = 15

DEFAULT_SNOOZE_OPTIONS: tuple[int, ...] = (5, 10, 15, 30)

# Upper bound on cron candidates examined per next-run lookup.
MAX_CRON_CANDIDATES: int = 10_000

MS_PER_MINUTE: int = 60_000

# almanac/core/scheduler/retry.py
from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Optional

from almanac.core.models.retry import RetryPolicy


def calculate_retry_delay(
    policy: RetryPolicy,
    retry_attempt: int,
    rng: Optional[random.Random] = None,
) -> float:
    """Calculate the delay in seconds before retry attempt ``retry_attempt`` (1-based)."""
    intervals = policy.intervals
    attempt = max(1, retry_attempt)

    match policy.backoff_strategy:
        case 'fixed':
            # Attempts past the end of the list reuse the last interval
            base_delay = float(intervals[min(attempt - 1, len(intervals) - 1)])
        case 'exponential':
            base_delay = float(intervals[0] * (2 ** (attempt - 1)))

    # Apply jitter (+/-25% randomization)
    if policy.jitter:
        jitter_range = base_delay * 0.25
        base_delay += (rng or random).uniform(-jitter_range, jitter_range)

    return float(min(policy.max_delay_seconds, max(1.0, base_delay)))


def next_retry_at(
    policy: RetryPolicy,
    retry_attempt: int,
    now: datetime,
    rng: Optional[random.Random] = None,
) -> datetime:
    return now + timedelta(seconds=calculate_retry_delay(policy, retry_attempt, rng))

# almanac/core/conflicts/detector.py
from __future__ import annotations

from typing import Iterable, Optional

from almanac.core.conflicts.store import EntryRepository
from almanac.core.conflicts.suggestions import generate_suggestions
from almanac.core.defaults import MS_PER_MINUTE
from almanac.core.logging import get_logger
from almanac.core.models.config import ConflictConfig
from almanac.core.models.schedule_entry import (
    ConflictDetail,
    ConflictDetectionResult,
    ScheduleEntry,
    Severity,
    check_time_range,
)

logger = get_logger('conflicts')

_MS_PER_HOUR = 60 * MS_PER_MINUTE


def classify_severity(overlap_ms: int, proposed_ms: int) -> Severity:
    """Overlap as a share of the proposed range: <=20% minor, <=60% moderate, else severe."""
    if overlap_ms * 100 <= 20 * proposed_ms:
        return 'minor'
    if overlap_ms * 100 <= 60 * proposed_ms:
        return 'moderate'
    return 'severe'


def find_conflicts(
    start_time: int, end_time: int, others: Iterable[ScheduleEntry]
) -> list[ConflictDetail]:
    """Entries whose [c, d) satisfies start_time < d and c < end_time."""
    proposed_ms = end_time - start_time
    conflicts: list[ConflictDetail] = []
    for other in others:
        if not other.overlaps(start_time, end_time):
            continue
        overlap_start = max(start_time, other.start_time)
        overlap_end = min(end_time, other.end_time)
        overlap_ms = overlap_end - overlap_start
        conflicts.append(
            ConflictDetail(
                schedule_id=other.id,
                schedule_title=other.title,
                overlap_start=overlap_start,
                overlap_end=overlap_end,
                overlap_duration_minutes=overlap_ms / MS_PER_MINUTE,
                severity=classify_severity(overlap_ms, proposed_ms),
            )
        )
    conflicts.sort(key=lambda c: (c.overlap_start, c.schedule_id))
    return conflicts


def evaluate(
    start_time: int,
    end_time: int,
    nearby: list[ScheduleEntry],
    *,
    lookaround_ms: int,
    min_viable_ms: int,
) -> ConflictDetectionResult:
    """Pure detection over entries already filtered to one account."""
    check_time_range(start_time, end_time)
    conflicts = find_conflicts(start_time, end_time, nearby)
    if not conflicts:
        return ConflictDetectionResult.empty()

    by_id = {entry.id: entry for entry in nearby}
    conflict_ranges = [
        (by_id[c.schedule_id].start_time, by_id[c.schedule_id].end_time) for c in conflicts
    ]
    suggestions = generate_suggestions(
        start_time,
        end_time,
        conflict_ranges,
        ((entry.start_time, entry.end_time) for entry in nearby),
        lookaround_ms=lookaround_ms,
        min_viable_ms=min_viable_ms,
    )
    return ConflictDetectionResult(
        has_conflict=True,
        conflicts=conflicts,
        suggestions=suggestions,
    )


class ConflictDetector:
    """Finds overlaps between a proposed range and an account's active entries."""

    def __init__(
        self,
        repository: EntryRepository,
        config: Optional[ConflictConfig] = None,
    ):
        self.repository = repository
        self.config = config or ConflictConfig()

    async def detect(
        self,
        account_id: str,
        start_time: int,
        end_time: int,
        exclude_schedule_id: Optional[str] = None,
    ) -> ConflictDetectionResult:
        check_time_range(start_time, end_time)
        lookaround_ms = self.config.lookaround_hours * _MS_PER_HOUR

        # Pull the whole look-around window so slot search sees every busy range
        nearby = await self.repository.find_active_in_range(
            account_id,
            start_time - lookaround_ms,
            end_time + lookaround_ms,
            exclude_schedule_id,
        )
        result = evaluate(
            start_time,
            end_time,
            nearby,
            lookaround_ms=lookaround_ms,
            min_viable_ms=self.config.min_viable_minutes * MS_PER_MINUTE,
        )
        if result.has_conflict:
            logger.debug(
                f"Account '{account_id}': {len(result.conflicts)} conflict(s), "
                f'{len(result.suggestions)} suggestion(s)'
            )
        return result

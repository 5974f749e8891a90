# almanac/core/conflicts/suggestions.py
"""Free-slot search around a conflicting proposal.

All times are Unix milliseconds and every interval is half-open.
"""

from __future__ import annotations

from typing import Iterable, Optional

from almanac.core.defaults import MS_PER_MINUTE
from almanac.core.models.schedule_entry import ConflictSuggestion, SuggestionType

Interval = tuple[int, int]

# Tie-break when two suggestions move the range by the same amount
_TYPE_ORDER: dict[SuggestionType, int] = {
    'move_earlier': 0,
    'move_later': 1,
    'shorten': 2,
}


def merge_busy(intervals: Iterable[Interval]) -> list[Interval]:
    """Sort and merge overlapping or touching intervals."""
    merged: list[Interval] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def _blocking(busy: list[Interval], start: int, end: int) -> list[Interval]:
    return [b for b in busy if b[0] < end and start < b[1]]


def latest_slot_ending_by(
    busy: list[Interval], length: int, end_bound: int, start_floor: int
) -> Optional[int]:
    """Start of the latest free ``length`` slot with end <= end_bound and start >= start_floor."""
    end = end_bound
    while end - length >= start_floor:
        blockers = _blocking(busy, end - length, end)
        if not blockers:
            return end - length
        end = min(b[0] for b in blockers)
    return None


def earliest_slot_starting_from(
    busy: list[Interval], length: int, start_bound: int, start_ceiling: int
) -> Optional[int]:
    """Start of the earliest free ``length`` slot with start_bound <= start <= start_ceiling."""
    start = start_bound
    while start <= start_ceiling:
        blockers = _blocking(busy, start, start + length)
        if not blockers:
            return start
        start = max(b[1] for b in blockers)
    return None


def free_prefix_end(busy: list[Interval], start: int, end: int) -> Optional[int]:
    """End of the free run that begins at ``start`` inside [start, end), if any."""
    blockers = _blocking(busy, start, end)
    if not blockers or any(b[0] <= start for b in blockers):
        return None
    return min(b[0] for b in blockers)


def _displacement(suggestion: ConflictSuggestion, start: int, end: int) -> int:
    return max(abs(suggestion.new_start_time - start), abs(suggestion.new_end_time - end))


def _minutes(ms: int) -> int:
    return abs(ms) // MS_PER_MINUTE


def generate_suggestions(
    start_time: int,
    end_time: int,
    conflicts: list[Interval],
    busy: Iterable[Interval],
    *,
    lookaround_ms: int,
    min_viable_ms: int,
) -> list[ConflictSuggestion]:
    """
    Suggest ways out of the given conflicts.

    - move_earlier: latest free slot of the same length ending at or before
      the earliest conflict start, no further back than ``lookaround_ms``
    - move_later: earliest free slot starting at or after the latest conflict
      end, no further ahead than ``lookaround_ms``
    - shorten: keep the start, end where the first busy interval begins,
      provided at least ``min_viable_ms`` remains

    Ordered by displacement from the original range.
    """
    if not conflicts:
        return []

    merged = merge_busy(busy)
    length = end_time - start_time
    suggestions: list[ConflictSuggestion] = []

    earlier = latest_slot_ending_by(
        merged,
        length,
        end_bound=min(c[0] for c in conflicts),
        start_floor=start_time - lookaround_ms,
    )
    if earlier is not None:
        suggestions.append(
            ConflictSuggestion(
                type='move_earlier',
                new_start_time=earlier,
                new_end_time=earlier + length,
                description=f'start {_minutes(start_time - earlier)} minutes earlier',
            )
        )

    later = earliest_slot_starting_from(
        merged,
        length,
        start_bound=max(c[1] for c in conflicts),
        start_ceiling=start_time + lookaround_ms,
    )
    if later is not None:
        suggestions.append(
            ConflictSuggestion(
                type='move_later',
                new_start_time=later,
                new_end_time=later + length,
                description=f'start {_minutes(later - start_time)} minutes later',
            )
        )

    trimmed_end = free_prefix_end(merged, start_time, end_time)
    if trimmed_end is not None and trimmed_end - start_time >= min_viable_ms:
        suggestions.append(
            ConflictSuggestion(
                type='shorten',
                new_start_time=start_time,
                new_end_time=trimmed_end,
                description=f'shorten to {_minutes(trimmed_end - start_time)} minutes',
            )
        )

    suggestions.sort(
        key=lambda s: (_displacement(s, start_time, end_time), _TYPE_ORDER[s.type])
    )
    return suggestions

"""Split time bounded filter sets into disjoint intervals."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from .filters import FilterSet

MIN_DATE = datetime.min
MAX_DATE = datetime.max


@dataclass
class FilterInterval:
    """Half-open span ``[start, end)`` with the filter sets active in it.

    A missing bound means the interval is open on that side.
    """
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    ids: List[str] = field(default_factory=list)

    @property
    def lower(self) -> datetime:
        return self.start or MIN_DATE

    @property
    def upper(self) -> datetime:
        return self.end or MAX_DATE

    def contains(self, timestamp: datetime) -> bool:
        return self.lower <= timestamp < self.upper

    def to_dict(self):
        result = {'ids': list(self.ids)}
        if self.start is not None:
            result['from'] = self.start
        if self.end is not None:
            result['to'] = self.end
        return result


def all_time_interval() -> FilterInterval:
    """Interval covering the whole timeline with no active filter sets."""
    return FilterInterval()


def ranges_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and start_b < end_a


def intervalize(filter_sets: Sequence[FilterSet]) -> List[FilterInterval]:
    """Partition the timeline so the active filter sets are constant per interval.

    Args:
        filter_sets: Seed scoped filter sets (never the global set)

    Returns:
        Ordered, contiguous intervals annotated with the ids of the filter
        sets overlapping each of them. Empty when no filter sets are given.
    """
    if not filter_sets:
        return []

    # every bound of every filter set is a breakpoint
    breakpoints = sorted(
        {fs.valid_from or MIN_DATE for fs in filter_sets}
        | {fs.valid_to or MAX_DATE for fs in filter_sets}
    )

    intervals = [
        FilterInterval(
            start=None if lower == MIN_DATE else lower,
            end=None if upper == MAX_DATE else upper,
        )
        for lower, upper in zip(breakpoints, breakpoints[1:])
    ]

    ordered = sorted(filter_sets, key=lambda fs: fs.valid_from or MIN_DATE)
    for filter_set in ordered:
        set_start = filter_set.valid_from or MIN_DATE
        set_end = filter_set.valid_to or MAX_DATE
        for interval in intervals:
            if ranges_overlap(interval.lower, interval.upper, set_start, set_end):
                interval.ids.append(filter_set.id)

    return intervals

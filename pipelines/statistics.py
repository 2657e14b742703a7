"""Per-language statistics over aggregate records.

Aggregate rows of a seed are selected interval by interval, filtered by the
filter sets active in the interval together with the global filters, and
folded per execution into ``{language: {"total": n, "short": m}}``.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from observability.prometheus_metrics import statistics_written
from services.shared.store import DocumentStore, GLOBAL_FILTER_SET_ID

from .filters import Filter, FilterEngine, FilterSet
from .intervals import FilterInterval, all_time_interval, intervalize

logger = logging.getLogger(__name__)

# Texts with fewer words than this count as short
SHORT_TEXT_THRESHOLD = 3500

LanguageCounts = Dict[str, Dict[str, int]]


def is_countable(record: Mapping[str, Any]) -> bool:
    """Records need a detected language and a word count to be counted."""
    return record.get('language') is not None and record.get('wordCount') is not None


def count_record(record: Mapping[str, Any]) -> LanguageCounts:
    """Counts contributed by a single aggregate record."""
    short = 1 if record['wordCount'] < SHORT_TEXT_THRESHOLD else 0
    return {record['language']: {'total': 1, 'short': short}}


def merge_counts(a: Mapping[str, Mapping[str, int]], b: Mapping[str, Mapping[str, int]]) -> LanguageCounts:
    """Merge two partial counts; associative and commutative."""
    merged = {code: dict(counts) for code, counts in a.items()}
    for code, counts in b.items():
        if code in merged:
            merged[code] = {
                'total': merged[code]['total'] + counts['total'],
                'short': merged[code]['short'] + counts['short'],
            }
        else:
            merged[code] = dict(counts)
    return merged


def fold_counts(records: Iterable[Mapping[str, Any]]) -> LanguageCounts:
    result: LanguageCounts = {}
    for record in records:
        result = merge_counts(result, count_record(record))
    return result


def group_by_execution(records: Iterable[Mapping[str, Any]]) -> Dict[str, List[Mapping[str, Any]]]:
    groups: Dict[str, List[Mapping[str, Any]]] = defaultdict(list)
    for record in records:
        groups[record['executionId']].append(record)
    return dict(groups)


def reduce_executions(records: Iterable[Mapping[str, Any]]) -> Dict[str, LanguageCounts]:
    """Fold records into language counts per execution id."""
    return {
        execution_id: fold_counts(group)
        for execution_id, group in group_by_execution(records).items()
    }


@dataclass
class StatisticsRun:
    """Summary of one statistics generation."""
    seeds: int = 0
    intervals: int = 0
    statistics: int = 0
    deleted: int = 0
    skipped_records: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'seeds': self.seeds,
            'intervals': self.intervals,
            'statistics': self.statistics,
            'deleted': self.deleted,
            'skippedRecords': self.skipped_records,
        }


@dataclass
class SeedFilters:
    """Filter sets of one seed partitioned over time."""
    filter_sets: Dict[str, FilterSet] = field(default_factory=dict)
    intervals: List[FilterInterval] = field(default_factory=list)

    def filters_for(self, interval: FilterInterval) -> List[Filter]:
        filters: List[Filter] = []
        for filter_set_id in interval.ids:
            filters.extend(self.filter_sets[filter_set_id].filters)
        return filters


class StatisticsGenerator:
    """Generates statistics rows from the aggregate table."""

    def __init__(self, store: DocumentStore, engine: Optional[FilterEngine] = None,
                 log: Optional[logging.Logger] = None):
        self.store = store
        self.log = log or logger
        self.engine = engine or FilterEngine(self.log)

    async def load_global_filters(self) -> List[Filter]:
        global_set = await self.store.get_filter_set(GLOBAL_FILTER_SET_ID)
        if not global_set:
            return []
        return [Filter.from_dict(f) for f in global_set.get('filters') or []]

    async def load_seed_filters(self, seed_id: str) -> SeedFilters:
        filter_sets = [FilterSet.from_dict(fs) for fs in await self.store.list_filter_sets(seed_id)]
        intervals = intervalize(filter_sets) or [all_time_interval()]
        return SeedFilters({fs.id: fs for fs in filter_sets}, intervals)

    def select_matching(self, records: Iterable[Mapping[str, Any]], filters: List[Filter],
                        run: StatisticsRun) -> List[Mapping[str, Any]]:
        """Keep countable records passing every filter.

        Records lacking a language or word count, and records the filters
        fail to evaluate, are logged and skipped.
        """
        predicate = self.engine.combine(filters)
        matching = []
        for record in records:
            if not is_countable(record):
                run.skipped_records += 1
                self.log.warning(f"Skipping warcId {record.get('warcId')}: missing language or word count")
                continue
            try:
                if predicate(record):
                    matching.append(record)
            except Exception as e:
                run.skipped_records += 1
                self.log.warning(f"Filter evaluation failed for warcId {record.get('warcId')}: {e}")
        return matching

    async def process_interval(self, seed: Mapping[str, Any], job_execution_id: str,
                               interval: FilterInterval, filters: List[Filter],
                               run: StatisticsRun) -> int:
        """Write the statistics of one seed for one interval."""
        records = await self.store.select_aggregates(
            seed['id'], job_execution_id, start=interval.start, end=interval.end
        )
        matching = self.select_matching(records, filters, run)

        statistics = []
        for execution_id, counts in reduce_executions(matching).items():
            row = await self.store.first_aggregate_for_execution(execution_id)
            statistics.append({
                'entityId': seed['entityId'],
                'seedId': seed['id'],
                'executionId': execution_id,
                'jobExecutionId': row['jobExecutionId'],
                'endTime': row['endTime'],
                'statistic': counts,
            })

        written = await self.store.insert_statistics(statistics)
        statistics_written.inc(written)
        self.log.debug(f"Seed {seed['id']} interval {interval.start}..{interval.end}: "
                       f"{len(records)} records, {len(matching)} matching, {written} statistics")
        return written

    async def generate(self, job_execution_id: str, seed_id: Optional[str] = None) -> StatisticsRun:
        """Regenerate statistics for one job execution and one or all seeds."""
        run = StatisticsRun()
        run.deleted = await self.store.delete_statistics(job_execution_id, seed_id)
        if run.deleted:
            self.log.info(f"Deleted {run.deleted} statistics for job execution {job_execution_id}")

        global_filters = await self.load_global_filters()
        seeds = await self.store.list_seeds(seed_id)

        for seed in seeds:
            seed_filters = await self.load_seed_filters(seed['id'])
            # intervals are processed one at a time
            for interval in seed_filters.intervals:
                filters = seed_filters.filters_for(interval) + global_filters
                run.statistics += await self.process_interval(seed, job_execution_id, interval, filters, run)
                run.intervals += 1
            run.seeds += 1

        self.log.info(f"Generated {run.statistics} statistics for {run.seeds} seeds "
                      f"({run.intervals} intervals) in job execution {job_execution_id}")
        return run

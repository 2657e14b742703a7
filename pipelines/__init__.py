"""Pipelines package for the aggregator.

Provides filtering, interval partitioning, statistics, aggregation,
language detection and seed synchronization.
"""

from .filters import Filter, FilterEngine, FilterKind, FilterSet, build_predicate, combine, resolve
from .intervals import FilterInterval, all_time_interval, intervalize
from .statistics import StatisticsGenerator, StatisticsRun, reduce_executions, SHORT_TEXT_THRESHOLD
from .aggregate import AggregatePipeline, build_aggregate_select
from .concurrent import concurrent_map, row_collector
from .language import LanguageDetector, LanguageDetectorClient, LanguageDetectionError
from .sync import SeedSynchronizer, filter_by_labels

__all__ = [
    # Filters
    'Filter',
    'FilterEngine',
    'FilterKind',
    'FilterSet',
    'build_predicate',
    'combine',
    'resolve',

    # Intervals
    'FilterInterval',
    'all_time_interval',
    'intervalize',

    # Statistics
    'StatisticsGenerator',
    'StatisticsRun',
    'reduce_executions',
    'SHORT_TEXT_THRESHOLD',

    # Aggregation
    'AggregatePipeline',
    'build_aggregate_select',

    # Concurrency
    'concurrent_map',
    'row_collector',

    # Language detection
    'LanguageDetector',
    'LanguageDetectorClient',
    'LanguageDetectionError',

    # Sync
    'SeedSynchronizer',
    'filter_by_labels',
]

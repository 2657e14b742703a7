"""Operation handlers wiring the pipelines into guarded operations."""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from config.settings import LanguageServiceConfig
from pipelines.aggregate import AggregatePipeline
from pipelines.language import LanguageDetector, LanguageDetectorClient
from pipelines.statistics import StatisticsGenerator
from pipelines.sync import SeedSynchronizer
from services.shared.errors import NotFoundError
from services.shared.store import DocumentStore

from .jobs import LogEntry, OperationManager, OperationType

logger = logging.getLogger(__name__)

DetectorFactory = Callable[[], LanguageDetectorClient]


class AggregatorService:
    """Entry points for the four long running operations.

    Every method validates its input before taking the operation guard, so
    lookups failing with NotFoundError or FailedPreconditionError never
    produce a log entry.
    """

    def __init__(self, store: DocumentStore, manager: OperationManager,
                 language_service: Optional[LanguageServiceConfig] = None,
                 detector_factory: Optional[DetectorFactory] = None):
        self.store = store
        self.manager = manager
        self.language_service = language_service or LanguageServiceConfig()
        self.detector_factory = detector_factory or self._default_detector
        self.aggregate = AggregatePipeline(store)
        self.statistics = StatisticsGenerator(store)
        self.synchronizer = SeedSynchronizer(store)

    def _default_detector(self) -> LanguageDetectorClient:
        return LanguageDetectorClient(
            self.language_service.url,
            request_timeout=self.language_service.timeout,
            max_connections=self.language_service.concurrency,
        )

    async def detect_languages(self, detect_all: bool = False, wait: bool = False) -> LogEntry:
        """Detect the language of texts lacking one, or of every text."""

        async def body() -> Dict[str, int]:
            async with self.detector_factory() as client:
                detector = LanguageDetector(self.store, client, self.language_service.concurrency)
                return await detector.run(detect_all)

        return await self.manager.run(
            OperationType.LANGUAGE_DETECTION, body,
            meta={'detectAll': detect_all}, wait=wait, result_field='metrics'
        )

    async def sync_seeds_and_entities(self, labels: Optional[Sequence[str]] = None,
                                      wait: bool = False) -> LogEntry:
        """Copy seeds carrying all labels, and their entities, from the crawler."""
        labels = list(labels or [])

        async def body() -> Dict[str, int]:
            return await self.synchronizer.run(labels)

        return await self.manager.run(OperationType.SYNC, body, meta={'labels': labels}, wait=wait)

    async def generate_aggregate(self, job_execution_id: Optional[str] = None,
                                 wait: bool = False) -> LogEntry:
        """Aggregate one job execution, the most recent one by default."""
        job_execution = await self.aggregate.resolve_job_execution(job_execution_id)
        job_execution_id = job_execution['id']

        async def body() -> Dict[str, Any]:
            inserted = await self.aggregate.run(job_execution_id=job_execution_id)
            return {'inserted': inserted}

        return await self.manager.run(
            OperationType.AGGREGATION, body,
            meta={'jobExecutionId': job_execution_id}, wait=wait
        )

    async def generate_aggregate_range(self, start_time: Optional[datetime] = None,
                                       end_time: Optional[datetime] = None,
                                       wait: bool = False) -> LogEntry:
        """Aggregate every execution started in ``[start_time, end_time)``.

        Missing bounds continue from the previous range aggregation and stop
        before the earliest job execution still running.
        """
        lower, upper = await self.aggregate.resolve_bounds(start_time, end_time)

        async def body() -> Dict[str, Any]:
            inserted = await self.aggregate.run(lower_bound=lower, upper_bound=upper)
            return {'inserted': inserted}

        return await self.manager.run(
            OperationType.AGGREGATION, body,
            meta={'lowerBound': lower.isoformat(), 'upperBound': upper.isoformat()}, wait=wait
        )

    async def generate_statistics(self, job_execution_id: str, seed_id: Optional[str] = None,
                                  wait: bool = False) -> LogEntry:
        """Regenerate statistics of a job execution for one or all seeds."""
        if await self.store.get_job_execution(job_execution_id) is None:
            raise NotFoundError(f"Job execution not found: {job_execution_id}")
        if seed_id is not None and not await self.store.list_seeds(seed_id):
            raise NotFoundError(f"Seed not found: {seed_id}")

        async def body() -> Dict[str, int]:
            run = await self.statistics.generate(job_execution_id, seed_id)
            return run.to_dict()

        meta: Dict[str, Any] = {'jobExecutionId': job_execution_id}
        if seed_id is not None:
            meta['seedId'] = seed_id
        return await self.manager.run(OperationType.STATISTICS, body, meta=meta, wait=wait)

    async def generate_latest_statistics(self, wait: bool = False) -> LogEntry:
        """Regenerate statistics of the most recent job execution."""
        job_execution = await self.aggregate.resolve_job_execution()
        return await self.generate_statistics(job_execution['id'], wait=wait)

    async def get_operation(self, log_id: str) -> LogEntry:
        entry = await self.manager.get_log(log_id)
        if entry is None:
            raise NotFoundError(f"Operation not found: {log_id}")
        return entry

    async def list_operations(self, type_: Optional[OperationType] = None, limit: int = 100) -> List[LogEntry]:
        return await self.manager.list_logs(type_, limit)


def register_default_handlers(manager: OperationManager, service: AggregatorService):
    """Register the handlers used for scheduled runs."""
    manager.register_handler(OperationType.LANGUAGE_DETECTION, service.detect_languages)
    manager.register_handler(OperationType.SYNC, service.sync_seeds_and_entities)
    manager.register_handler(OperationType.AGGREGATION, service.generate_aggregate_range)
    manager.register_handler(OperationType.STATISTICS, service.generate_latest_statistics)


def apply_schedules(manager: OperationManager, schedules: Mapping[str, str]) -> List[str]:
    """Schedule operations from ``{operation name: cron expression}``."""
    job_ids = []
    for name, cron_expression in schedules.items():
        try:
            type_ = OperationType.parse(name)
        except ValueError:
            logger.warning(f"Ignoring schedule for unknown operation '{name}'")
            continue
        job_ids.append(manager.schedule(type_, cron_expression))
    return job_ids

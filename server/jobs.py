"""Operation orchestration for the aggregator.

Guarantees that at most one operation of each type runs at a time, records
start, end and error of every run in the operation log, and recovers from
runs that crashed without clearing their in-progress marker. Periodic runs
are scheduled with APScheduler.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR

from observability.logging import operation_context
from observability.prometheus_metrics import (
    operations_rejected,
    operations_started,
    record_operation_metrics,
)
from services.shared.errors import AggregatorError, InProgressError
from services.shared.models import utcnow
from services.shared.store import DocumentStore

logger = logging.getLogger(__name__)

STALE_OPERATION_ERROR = "timed out or crashed"
CANCELLED_OPERATION_ERROR = "cancelled"


class OperationType(str, Enum):
    """Long running operation types; one of each may run at a time."""
    LANGUAGE_DETECTION = "languageDetection"
    AGGREGATION = "aggregation"
    STATISTICS = "statistics"
    SYNC = "sync"

    @classmethod
    def parse(cls, name: str) -> 'OperationType':
        """Parse an operation name ignoring case, dashes and underscores."""
        normalized = re.sub(r'[-_\s]', '', name).lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        raise ValueError(f"Unknown operation type: {name}")


@dataclass
class LogEntry:
    """Log entry for one operation run."""
    id: str
    type: str
    start_time: datetime
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    metrics: Optional[Dict[str, Any]] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def finished(self) -> bool:
        return self.end_time is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'type': self.type,
            'startTime': self.start_time.isoformat() if self.start_time else None,
            'endTime': self.end_time.isoformat() if self.end_time else None,
            'error': self.error,
            'result': self.result,
            'metrics': self.metrics,
            'meta': self.meta,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LogEntry':
        """Create LogEntry from a stored log dictionary."""
        return cls(
            id=data['id'],
            type=data['type'],
            start_time=data['start_time'],
            end_time=data.get('end_time'),
            error=data.get('error'),
            result=data.get('result'),
            metrics=data.get('metrics'),
            meta=data.get('meta') or {},
        )


OperationBody = Callable[[], Awaitable[Any]]


class OperationManager:
    """Runs guarded operations and keeps their log."""

    def __init__(self, store: DocumentStore, operation_timeout: Optional[timedelta] = timedelta(hours=12)):
        self.store = store
        self.operation_timeout = operation_timeout
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.handlers: Dict[OperationType, Callable[[], Awaitable[LogEntry]]] = {}
        self._tasks: Dict[str, Tuple[OperationType, asyncio.Task]] = {}

    async def initialize(self):
        """Create the in-progress markers and start the scheduler."""
        await self.store.ensure_markers(t.value for t in OperationType)

        self.scheduler = AsyncIOScheduler(
            executors={'default': AsyncIOExecutor()},
            job_defaults={'coalesce': True, 'max_instances': 1}
        )
        self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
        self.scheduler.start()
        logger.info("Operation scheduler started")

    async def shutdown(self):
        """Stop the scheduler and cancel detached operations."""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        detached = list(self._tasks.items())
        for _, (_, task) in detached:
            task.cancel()
        if detached:
            await asyncio.gather(*(task for _, (_, task) in detached), return_exceptions=True)
            await self._finish_cancelled(detached)
        logger.info("Operation manager shutdown complete")

    async def _finish_cancelled(self, detached: List[Tuple[str, Tuple[OperationType, asyncio.Task]]]):
        """Close the log entries of detached runs cancelled before they started."""
        for log_id, (type_, _) in detached:
            entry = await self.get_log(log_id)
            if entry is None or entry.finished:
                continue
            await self.log_end(log_id, error=CANCELLED_OPERATION_ERROR)
            await self.set_not_in_progress(type_)
            logger.warning(f"{type_.value} operation {log_id} cancelled before it started")

    # Guard

    async def set_in_progress(self, type_: OperationType) -> datetime:
        """Take the in-progress marker for an operation type.

        Raises:
            InProgressError: if an operation of the type is already running
        """
        now = utcnow()
        if await self.store.compare_and_set_marker(type_.value, None, now):
            return now

        since = await self.store.get_marker(type_.value)
        if since is None:
            # cleared between the two calls
            if await self.store.compare_and_set_marker(type_.value, None, now):
                return now
        elif self._is_stale(since, now) and await self.store.compare_and_set_marker(type_.value, since, now):
            failed = await self.store.fail_unfinished_logs(type_.value, STALE_OPERATION_ERROR, now)
            logger.warning(f"Cleared stale {type_.value} marker set at {since.isoformat()}, "
                           f"marked {failed} unfinished log entries as failed")
            return now

        operations_rejected.labels(operation=type_.value).inc()
        raise InProgressError(f"{type_.value} already in progress")

    def _is_stale(self, since: datetime, now: datetime) -> bool:
        return self.operation_timeout is not None and now - since > self.operation_timeout

    async def set_not_in_progress(self, type_: OperationType):
        await self.store.clear_marker(type_.value)

    # Log

    async def log_start(self, type_: OperationType, meta: Optional[Dict[str, Any]] = None) -> LogEntry:
        data = await self.store.insert_log(type_.value, utcnow(), meta)
        return LogEntry.from_dict(data)

    async def log_end(self, log_id: str, **fields) -> LogEntry:
        data = await self.store.update_log(log_id, end_time=utcnow(), **fields)
        return LogEntry.from_dict(data)

    async def get_log(self, log_id: str) -> Optional[LogEntry]:
        data = await self.store.get_log(log_id)
        return LogEntry.from_dict(data) if data else None

    async def list_logs(self, type_: Optional[OperationType] = None, limit: int = 100) -> List[LogEntry]:
        data = await self.store.list_logs(type_.value if type_ else None, limit)
        return [LogEntry.from_dict(d) for d in data]

    # Execution

    async def run(self, type_: OperationType, body: OperationBody,
                  meta: Optional[Dict[str, Any]] = None, wait: bool = False,
                  result_field: str = 'result') -> LogEntry:
        """Run an operation body under the guard.

        With ``wait`` the finished log entry is returned and a failure is
        re-raised after being recorded. Otherwise the body runs as a
        background task and the fresh log entry is returned at once.
        """
        await self.set_in_progress(type_)
        try:
            entry = await self.log_start(type_, meta)
        except Exception:
            await self.set_not_in_progress(type_)
            raise

        operations_started.labels(operation=type_.value).inc()
        logger.info(f"Started {type_.value} operation {entry.id}")

        if wait:
            return await self._execute(type_, entry, body, result_field, reraise=True)

        task = asyncio.create_task(self._execute(type_, entry, body, result_field, reraise=False))
        self._tasks[entry.id] = (type_, task)
        task.add_done_callback(lambda _: self._tasks.pop(entry.id, None))
        return entry

    async def _execute(self, type_: OperationType, entry: LogEntry, body: OperationBody,
                       result_field: str, reraise: bool) -> LogEntry:
        started = time.monotonic()
        try:
            try:
                with operation_context(type_.value, entry.id):
                    value = await body()
            except asyncio.CancelledError:
                await self.log_end(entry.id, error=CANCELLED_OPERATION_ERROR)
                logger.warning(f"{type_.value} operation {entry.id} cancelled")
                raise
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.error(f"{type_.value} operation {entry.id} failed: {error}")
                finished = await self.log_end(entry.id, error=error)
                record_operation_metrics(type_.value, time.monotonic() - started, error=error)
                if reraise:
                    raise
                return finished

            finished = await self.log_end(entry.id, **{result_field: value})
            record_operation_metrics(type_.value, time.monotonic() - started)
            logger.info(f"Finished {type_.value} operation {entry.id}")
            return finished
        finally:
            await self.set_not_in_progress(type_)

    async def wait_for(self, log_id: str) -> Optional[LogEntry]:
        """Wait for a detached operation to finish and return its log entry."""
        detached = self._tasks.get(log_id)
        if detached is not None:
            await asyncio.gather(detached[1], return_exceptions=True)
        return await self.get_log(log_id)

    # Scheduling

    def register_handler(self, type_: OperationType, handler: Callable[[], Awaitable[LogEntry]]):
        """Register the handler used for scheduled runs of an operation type."""
        self.handlers[type_] = handler
        logger.info(f"Registered handler for operation type: {type_.value}")

    def schedule(self, type_: OperationType, cron_expression: str) -> str:
        """Schedule periodic runs of an operation using a cron expression."""
        if self.scheduler is None:
            raise RuntimeError("Operation manager not initialized")
        if type_ not in self.handlers:
            raise ValueError(f"No handler registered for operation type: {type_.value}")

        cron_parts = cron_expression.split()
        if len(cron_parts) != 5:
            raise ValueError("Cron expression must have 5 parts: minute hour day month day_of_week")
        minute, hour, day, month, day_of_week = cron_parts

        job_id = f"periodic_{type_.value}"
        self.scheduler.add_job(
            self._run_scheduled,
            'cron',
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            args=[type_],
            id=job_id,
            replace_existing=True
        )
        logger.info(f"Scheduled periodic {type_.value} with cron: {cron_expression}")
        return job_id

    async def _run_scheduled(self, type_: OperationType):
        try:
            entry = await self.handlers[type_]()
        except InProgressError:
            logger.info(f"Skipping scheduled {type_.value}: already in progress")
            return
        except AggregatorError as e:
            logger.warning(f"Skipping scheduled {type_.value}: {e.message}")
            return
        logger.info(f"Scheduled {type_.value} started as operation {entry.id}")

    def _job_executed(self, event):
        logger.debug(f"Scheduler job {event.job_id} executed")

    def _job_error(self, event):
        logger.error(f"Scheduler job {event.job_id} failed: {event.exception}")

"""Document store used by the aggregator operations.

Wraps a SQLAlchemy session factory behind the small set of capabilities the
operations need: point lookups, indexed queries, paginated row streams,
replace-on-conflict upserts and the atomic compare-and-set used by the
operation guard.

Sessions are synchronous; every call runs in the store's thread pool so
long queries never block the event loop.
"""

import asyncio
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.orm import Session, sessionmaker

from .models import (
    Aggregate,
    ConfigSeed,
    CrawlEntity,
    Entity,
    ExtractedText,
    FilterSetRecord,
    InProgress,
    JobExecution,
    Seed,
    StatisticRecord,
    SystemLog,
)

logger = logging.getLogger(__name__)

GLOBAL_FILTER_SET_ID = 'global'

T = TypeVar('T')


def _log_to_dict(log: SystemLog) -> Dict[str, Any]:
    return {
        'id': log.id,
        'type': log.type,
        'start_time': log.start_time,
        'end_time': log.end_time,
        'error': log.error,
        'result': log.result,
        'metrics': log.metrics,
        'meta': log.meta or {},
    }


class DocumentStore:
    """Store adapter with a unified async interface.

    ``max_workers`` bounds the threads that hold sessions at the same time.
    Keep it at 1 for SQLite, where all sessions share one connection.
    """

    def __init__(self, session_factory: sessionmaker, max_workers: int = 1):
        self.session_factory = session_factory
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='store')

    def _session(self) -> Session:
        return self.session_factory()

    async def _run(self, work: Callable[[], T]) -> T:
        return await asyncio.get_event_loop().run_in_executor(self._executor, work)

    def close(self):
        self._executor.shutdown(wait=True)

    # Operation guard

    async def ensure_markers(self, types: Iterable[str]):
        """Create an empty in-progress marker for every operation type."""
        types = list(types)

        def work():
            with self._session() as session, session.begin():
                existing = set(session.scalars(select(InProgress.type)))
                for type_ in types:
                    if type_ not in existing:
                        session.add(InProgress(type=type_, since=None))

        await self._run(work)

    async def get_marker(self, type_: str) -> Optional[datetime]:
        """Return the in-progress timestamp for an operation type."""
        def work():
            with self._session() as session:
                return session.scalar(select(InProgress.since).where(InProgress.type == type_))

        return await self._run(work)

    async def compare_and_set_marker(self, type_: str, expected: Optional[datetime],
                                     value: Optional[datetime]) -> bool:
        """Atomically replace the marker if it still holds ``expected``.

        Returns True when this call performed the update.
        """
        condition = InProgress.since.is_(None) if expected is None else InProgress.since == expected
        stmt = update(InProgress).where(InProgress.type == type_, condition).values(since=value)

        def work():
            with self._session() as session, session.begin():
                return session.execute(stmt).rowcount == 1

        return await self._run(work)

    async def clear_marker(self, type_: str):
        def work():
            with self._session() as session, session.begin():
                session.execute(update(InProgress).where(InProgress.type == type_).values(since=None))

        await self._run(work)

    # Operation log

    async def insert_log(self, type_: str, start_time: datetime,
                         meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Insert a log entry and return it."""
        log = SystemLog(id=str(uuid.uuid4()), type=type_, start_time=start_time, meta=meta or {})

        def work():
            with self._session() as session, session.begin():
                session.add(log)
                session.flush()
                return _log_to_dict(log)

        return await self._run(work)

    async def update_log(self, log_id: str, **fields) -> Optional[Dict[str, Any]]:
        """Update columns of a log entry and return the stored entry."""
        def work():
            with self._session() as session, session.begin():
                log = session.get(SystemLog, log_id)
                if log is None:
                    return None
                for key, value in fields.items():
                    setattr(log, key, value)
                session.flush()
                return _log_to_dict(log)

        return await self._run(work)

    async def get_log(self, log_id: str) -> Optional[Dict[str, Any]]:
        def work():
            with self._session() as session:
                log = session.get(SystemLog, log_id)
                return _log_to_dict(log) if log else None

        return await self._run(work)

    async def list_logs(self, type_: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """List log entries, newest first."""
        stmt = select(SystemLog).order_by(SystemLog.start_time.desc()).limit(limit)
        if type_:
            stmt = stmt.where(SystemLog.type == type_)

        def work():
            with self._session() as session:
                return [_log_to_dict(log) for log in session.scalars(stmt)]

        return await self._run(work)

    async def last_finished_log(self, type_: str, meta_key: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Most recently started log entry of a type that completed without error.

        With ``meta_key`` only entries whose meta carries that key are considered.
        """
        stmt = (
            select(SystemLog)
            .where(SystemLog.type == type_, SystemLog.end_time.is_not(None), SystemLog.error.is_(None))
            .order_by(SystemLog.start_time.desc())
        )

        def work():
            with self._session() as session:
                for log in session.scalars(stmt):
                    if meta_key is None or (log.meta or {}).get(meta_key) is not None:
                        return _log_to_dict(log)
            return None

        return await self._run(work)

    async def fail_unfinished_logs(self, type_: str, error: str, end_time: datetime) -> int:
        """Mark every log entry of a type lacking an end time as failed."""
        stmt = (
            update(SystemLog)
            .where(SystemLog.type == type_, SystemLog.end_time.is_(None))
            .values(end_time=end_time, error=error)
        )

        def work():
            with self._session() as session, session.begin():
                return session.execute(stmt).rowcount

        return await self._run(work)

    # Extracted text

    async def iter_extracted_texts(self, missing_language_only: bool = False,
                                   page_size: int = 100) -> AsyncIterator[Dict[str, Any]]:
        """Stream ``{warcId, text}`` rows ordered by warc id.

        Rows are fetched page by page so no session stays open while the
        consumer awaits other work.
        """
        last_id = None
        while True:
            stmt = select(ExtractedText.warc_id, ExtractedText.text).order_by(ExtractedText.warc_id).limit(page_size)
            if missing_language_only:
                stmt = stmt.where(ExtractedText.language.is_(None))
            if last_id is not None:
                stmt = stmt.where(ExtractedText.warc_id > last_id)
            rows = await self._run(lambda: self._fetch_all(stmt))
            if not rows:
                return
            for warc_id, text in rows:
                yield {'warcId': warc_id, 'text': text}
            last_id = rows[-1][0]
            if len(rows) < page_size:
                return

    def _fetch_all(self, stmt) -> list:
        with self._session() as session:
            return session.execute(stmt).all()

    async def update_language(self, warc_id: str, code: str):
        stmt = update(ExtractedText).where(ExtractedText.warc_id == warc_id).values(language=code)

        def work():
            with self._session() as session, session.begin():
                session.execute(stmt)

        await self._run(work)

    # Crawler configuration and local copies

    async def list_config_seeds(self) -> List[Dict[str, Any]]:
        def work():
            with self._session() as session:
                return [seed.to_record() for seed in session.scalars(select(ConfigSeed))]

        return await self._run(work)

    async def get_crawl_entities(self, ids: Sequence[str]) -> List[Dict[str, Any]]:
        if not ids:
            return []
        stmt = select(CrawlEntity).where(CrawlEntity.id.in_(list(ids)))

        def work():
            with self._session() as session:
                return [entity.to_record() for entity in session.scalars(stmt)]

        return await self._run(work)

    async def upsert_entities(self, entities: Iterable[Dict[str, Any]]) -> int:
        """Insert entities, replacing those that already exist."""
        rows = [Entity(id=entity['id'], meta=entity.get('meta') or {}) for entity in entities]

        def work():
            with self._session() as session, session.begin():
                for row in rows:
                    session.merge(row)
            return len(rows)

        return await self._run(work)

    async def upsert_seeds(self, seeds: Iterable[Dict[str, Any]]) -> int:
        """Insert seeds, replacing those that already exist."""
        rows = [Seed(id=seed['id'], entity_id=seed['entityId'], meta=seed.get('meta') or {}) for seed in seeds]

        def work():
            with self._session() as session, session.begin():
                for row in rows:
                    session.merge(row)
            return len(rows)

        return await self._run(work)

    async def list_seeds(self, seed_id: Optional[str] = None) -> List[Dict[str, Any]]:
        stmt = select(Seed).order_by(Seed.id)
        if seed_id is not None:
            stmt = stmt.where(Seed.id == seed_id)

        def work():
            with self._session() as session:
                return [seed.to_record() for seed in session.scalars(stmt)]

        return await self._run(work)

    # Filter sets

    async def get_filter_set(self, filter_set_id: str) -> Optional[Dict[str, Any]]:
        def work():
            with self._session() as session:
                record = session.get(FilterSetRecord, filter_set_id)
                return record.to_record() if record else None

        return await self._run(work)

    async def list_filter_sets(self, seed_id: str) -> List[Dict[str, Any]]:
        """Filter sets scoped to one seed, excluding the global set."""
        stmt = (
            select(FilterSetRecord)
            .where(FilterSetRecord.seed_id == seed_id, FilterSetRecord.id != GLOBAL_FILTER_SET_ID)
            .order_by(FilterSetRecord.id)
        )

        def work():
            with self._session() as session:
                return [record.to_record() for record in session.scalars(stmt)]

        return await self._run(work)

    # Job executions

    async def get_job_execution(self, job_execution_id: str) -> Optional[Dict[str, Any]]:
        def work():
            with self._session() as session:
                job_execution = session.get(JobExecution, job_execution_id)
                return job_execution.to_record() if job_execution else None

        return await self._run(work)

    async def latest_job_execution(self) -> Optional[Dict[str, Any]]:
        stmt = select(JobExecution).order_by(JobExecution.start_time.desc()).limit(1)

        def work():
            with self._session() as session:
                job_execution = session.scalars(stmt).first()
                return job_execution.to_record() if job_execution else None

        return await self._run(work)

    async def earliest_running_job_execution_start(self) -> Optional[datetime]:
        stmt = select(func.min(JobExecution.start_time)).where(JobExecution.state == 'RUNNING')

        def work():
            with self._session() as session:
                return session.scalar(stmt)

        return await self._run(work)

    # Aggregate

    async def insert_aggregate_from(self, columns: Sequence[str], source) -> int:
        """Run ``INSERT INTO aggregate (columns) <source select>``."""
        stmt = insert(Aggregate).from_select(list(columns), source)

        def work():
            with self._session() as session, session.begin():
                return session.execute(stmt).rowcount

        return await self._run(work)

    async def select_aggregates(self, seed_id: str, job_execution_id: Optional[str] = None,
                                start: Optional[datetime] = None,
                                end: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Aggregate rows of one seed with ``start <= startTime < end``."""
        stmt = select(Aggregate).where(Aggregate.seed_id == seed_id).order_by(Aggregate.id)
        if job_execution_id is not None:
            stmt = stmt.where(Aggregate.job_execution_id == job_execution_id)
        if start is not None:
            stmt = stmt.where(Aggregate.start_time >= start)
        if end is not None:
            stmt = stmt.where(Aggregate.start_time < end)

        def work():
            with self._session() as session:
                return [row.to_record() for row in session.scalars(stmt)]

        return await self._run(work)

    async def first_aggregate_for_execution(self, execution_id: str) -> Optional[Dict[str, Any]]:
        stmt = select(Aggregate).where(Aggregate.execution_id == execution_id).order_by(Aggregate.id).limit(1)

        def work():
            with self._session() as session:
                row = session.scalars(stmt).first()
                return row.to_record() if row else None

        return await self._run(work)

    # Statistics

    async def delete_statistics(self, job_execution_id: str, seed_id: Optional[str] = None) -> int:
        stmt = delete(StatisticRecord).where(StatisticRecord.job_execution_id == job_execution_id)
        if seed_id is not None:
            stmt = stmt.where(StatisticRecord.seed_id == seed_id)

        def work():
            with self._session() as session, session.begin():
                return session.execute(stmt).rowcount

        return await self._run(work)

    async def insert_statistics(self, statistics: Iterable[Dict[str, Any]]) -> int:
        rows = [
            StatisticRecord(
                entity_id=statistic['entityId'],
                seed_id=statistic['seedId'],
                execution_id=statistic['executionId'],
                job_execution_id=statistic['jobExecutionId'],
                end_time=statistic.get('endTime'),
                statistic=statistic['statistic'],
            )
            for statistic in statistics
        ]

        def work():
            with self._session() as session, session.begin():
                session.add_all(rows)
            return len(rows)

        return await self._run(work)

    async def list_statistics(self, job_execution_id: Optional[str] = None,
                              seed_id: Optional[str] = None) -> List[Dict[str, Any]]:
        stmt = select(StatisticRecord).order_by(StatisticRecord.id)
        if job_execution_id is not None:
            stmt = stmt.where(StatisticRecord.job_execution_id == job_execution_id)
        if seed_id is not None:
            stmt = stmt.where(StatisticRecord.seed_id == seed_id)

        def work():
            with self._session() as session:
                return [record.to_record() for record in session.scalars(stmt)]

        return await self._run(work)

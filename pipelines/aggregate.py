"""Aggregation pipeline.

Joins executions, job executions, crawl log entries and extracted texts into
the denormalized ``aggregate`` table. Runs as a single ``INSERT ... SELECT``
so the join never leaves the store.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import Select, func, select

from observability.prometheus_metrics import aggregate_rows
from services.shared.errors import FailedPreconditionError, NotFoundError
from services.shared.models import (
    Aggregate,
    CrawlLogEntry,
    Execution,
    ExtractedText,
    JobExecution,
    Seed,
    utcnow,
)
from services.shared.store import DocumentStore

logger = logging.getLogger(__name__)

# Executions and job executions in these states have not finished
NON_TERMINAL_EXECUTION_STATES = ('CREATED', 'FETCHING', 'SLEEPING')
NON_TERMINAL_JOB_EXECUTION_STATES = ('CREATED', 'RUNNING')

EPOCH = datetime(1970, 1, 1)

AGGREGATE_COLUMNS = (
    'warc_id',
    'seed_id',
    'execution_id',
    'job_execution_id',
    'start_time',
    'end_time',
    'word_count',
    'sentence_count',
    'long_word_count',
    'lix',
    'character_count',
    'requested_uri',
    'discovery_path',
    'content_type',
    'record_type',
    'size',
    'time_stamp',
    'language',
)


def build_aggregate_select(job_execution_id: Optional[str] = None,
                           lower_bound: Optional[datetime] = None,
                           upper_bound: Optional[datetime] = None) -> Select:
    """Select the aggregate rows, in ``AGGREGATE_COLUMNS`` order.

    Only executions of known seeds in a terminal state, belonging to a
    terminal job execution, are included. Revisit records are joined to the
    text of the record they refer to. Texts without a detected language and
    executions already present in the aggregate are left out.
    """
    text_key = func.coalesce(CrawlLogEntry.warc_refers_to, CrawlLogEntry.warc_id)

    stmt = (
        select(
            CrawlLogEntry.warc_id,
            Execution.seed_id,
            Execution.id,
            Execution.job_execution_id,
            Execution.start_time,
            Execution.end_time,
            ExtractedText.word_count,
            ExtractedText.sentence_count,
            ExtractedText.long_word_count,
            ExtractedText.lix,
            ExtractedText.character_count,
            CrawlLogEntry.requested_uri,
            CrawlLogEntry.discovery_path,
            CrawlLogEntry.content_type,
            CrawlLogEntry.record_type,
            CrawlLogEntry.size,
            CrawlLogEntry.time_stamp,
            ExtractedText.language,
        )
        .select_from(Execution)
        .join(JobExecution, JobExecution.id == Execution.job_execution_id)
        .join(CrawlLogEntry, CrawlLogEntry.execution_id == Execution.id)
        .join(ExtractedText, ExtractedText.warc_id == text_key)
        .where(
            Execution.seed_id.in_(select(Seed.id)),
            Execution.state.not_in(NON_TERMINAL_EXECUTION_STATES),
            JobExecution.state.not_in(NON_TERMINAL_JOB_EXECUTION_STATES),
            ExtractedText.language.is_not(None),
            Execution.id.not_in(select(Aggregate.execution_id)),
        )
    )

    if job_execution_id is not None:
        stmt = stmt.where(Execution.job_execution_id == job_execution_id)
    if lower_bound is not None:
        stmt = stmt.where(Execution.start_time >= lower_bound)
    if upper_bound is not None:
        stmt = stmt.where(Execution.start_time < upper_bound)

    return stmt


class AggregatePipeline:
    """Builds aggregate rows from the crawler's tables."""

    def __init__(self, store: DocumentStore, log: Optional[logging.Logger] = None):
        self.store = store
        self.log = log or logger

    async def resolve_job_execution(self, job_execution_id: Optional[str] = None) -> Dict[str, Any]:
        """Look up a job execution, defaulting to the most recent one."""
        if job_execution_id:
            job_execution = await self.store.get_job_execution(job_execution_id)
            if job_execution is None:
                raise NotFoundError(f"Job execution not found: {job_execution_id}")
            return job_execution

        job_execution = await self.store.latest_job_execution()
        if job_execution is None:
            raise NotFoundError("No job executions found")
        return job_execution

    async def find_lower_bound(self) -> datetime:
        """Upper bound of the last completed aggregation, or the epoch."""
        last = await self.store.last_finished_log('aggregation', meta_key='upperBound')
        if last:
            return datetime.fromisoformat(last['meta']['upperBound'])
        return EPOCH

    async def find_upper_bound(self) -> datetime:
        """Start of the earliest job execution still running, or now."""
        running_since = await self.store.earliest_running_job_execution_start()
        return running_since or utcnow()

    async def resolve_bounds(self, lower_bound: Optional[datetime] = None,
                             upper_bound: Optional[datetime] = None) -> Tuple[datetime, datetime]:
        lower = lower_bound or await self.find_lower_bound()
        upper = upper_bound or await self.find_upper_bound()
        if lower >= upper:
            raise FailedPreconditionError(
                f"Lower bound {lower.isoformat()} must be before upper bound {upper.isoformat()}"
            )
        return lower, upper

    async def run(self, job_execution_id: Optional[str] = None,
                  lower_bound: Optional[datetime] = None,
                  upper_bound: Optional[datetime] = None) -> int:
        """Insert aggregate rows and return how many were inserted."""
        stmt = build_aggregate_select(job_execution_id, lower_bound, upper_bound)
        inserted = await self.store.insert_aggregate_from(AGGREGATE_COLUMNS, stmt)
        aggregate_rows.inc(max(inserted, 0))
        self.log.info(f"Inserted {inserted} aggregate rows "
                      f"(jobExecutionId={job_execution_id}, bounds={lower_bound}..{upper_bound})")
        return inserted

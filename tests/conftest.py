"""Shared fixtures: an in-memory document store and crawl data builders."""

from datetime import datetime
from typing import Any, Dict, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from config.database import DatabaseConfig, create_db_engine
from services.shared.models import (
    Aggregate,
    Base,
    ConfigSeed,
    CrawlEntity,
    CrawlLogEntry,
    Execution,
    ExtractedText,
    FilterSetRecord,
    JobExecution,
    Seed,
)
from services.shared.store import DocumentStore

OPERATION_TYPES = ['languageDetection', 'aggregation', 'statistics', 'sync']


@pytest.fixture
def session_factory():
    engine = create_db_engine(DatabaseConfig(url='sqlite://'))
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    store = DocumentStore(session_factory)
    yield store
    store.close()


class CrawlData:
    """Writes rows into the crawler and aggregator tables."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def add(self, *rows):
        with self.session_factory() as session, session.begin():
            session.add_all(rows)

    def seed(self, seed_id: str, entity_id: str = 'entity-1', meta: Optional[Dict[str, Any]] = None):
        self.add(Seed(id=seed_id, entity_id=entity_id, meta=meta or {}))

    def job_execution(self, job_execution_id: str, state: str = 'FINISHED',
                      start_time: Optional[datetime] = None, end_time: Optional[datetime] = None):
        self.add(JobExecution(id=job_execution_id, state=state, start_time=start_time, end_time=end_time))

    def execution(self, execution_id: str, seed_id: str, job_execution_id: str,
                  state: str = 'FINISHED', start_time: Optional[datetime] = None,
                  end_time: Optional[datetime] = None):
        self.add(Execution(id=execution_id, seed_id=seed_id, job_execution_id=job_execution_id,
                           state=state, start_time=start_time, end_time=end_time))

    def crawl_log(self, warc_id: str, execution_id: str, warc_refers_to: Optional[str] = None,
                  requested_uri: str = 'https://example.no/', content_type: str = 'text/html'):
        self.add(CrawlLogEntry(warc_id=warc_id, execution_id=execution_id, warc_refers_to=warc_refers_to,
                               requested_uri=requested_uri, discovery_path='L', content_type=content_type,
                               record_type='response', size=1024))

    def text(self, warc_id: str, text: str = 'Hei verda', language: Optional[str] = None,
             word_count: int = 100):
        self.add(ExtractedText(warc_id=warc_id, text=text, language=language, word_count=word_count,
                               sentence_count=10, long_word_count=5, lix=30.0,
                               character_count=word_count * 5))

    def aggregate(self, warc_id: str, seed_id: str, execution_id: str, job_execution_id: str,
                  start_time: datetime, language: Optional[str], word_count: Optional[int] = 100,
                  end_time: Optional[datetime] = None, content_type: str = 'text/html'):
        self.add(Aggregate(warc_id=warc_id, seed_id=seed_id, execution_id=execution_id,
                           job_execution_id=job_execution_id, start_time=start_time,
                           end_time=end_time or start_time, word_count=word_count, language=language,
                           requested_uri='https://example.no/', content_type=content_type,
                           record_type='response', discovery_path='L', lix=30.0))

    def filter_set(self, filter_set_id: str, seed_id: str, filters, valid_from: Optional[datetime] = None,
                   valid_to: Optional[datetime] = None):
        self.add(FilterSetRecord(id=filter_set_id, seed_id=seed_id, filters=filters,
                                 valid_from=valid_from, valid_to=valid_to))

    def config_seed(self, seed_id: str, entity_id: str, labels=None):
        self.add(ConfigSeed(id=seed_id, entity_id=entity_id, meta={'name': seed_id, 'label': labels or []}))

    def crawl_entity(self, entity_id: str, name: str = ''):
        self.add(CrawlEntity(id=entity_id, meta={'name': name or entity_id}))


@pytest.fixture
def crawl_data(session_factory):
    return CrawlData(session_factory)


@pytest.fixture
async def markers(store):
    await store.ensure_markers(OPERATION_TYPES)
    return store

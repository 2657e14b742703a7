"""Shared database models for crawl metadata, aggregates and statistics."""
from datetime import datetime, timezone
from typing import Dict, Any
from sqlalchemy import Column, Integer, String, Text, DateTime, Float, JSON, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Tables owned by the crawler. The aggregator only reads them, except for
# the language column of extracted_text.

class CrawlEntity(Base):
    """Crawl entity as configured in the crawler."""
    __tablename__ = 'config_crawl_entities'

    id = Column(String(64), primary_key=True)
    meta = Column(JSON, nullable=False, default=dict)

    def to_record(self) -> Dict[str, Any]:
        return {'id': self.id, 'meta': self.meta or {}}


class ConfigSeed(Base):
    """Seed as configured in the crawler."""
    __tablename__ = 'config_seeds'

    id = Column(String(64), primary_key=True)
    entity_id = Column(String(64), nullable=False)
    meta = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index('idx_config_seeds_entity_id', 'entity_id'),
    )

    def to_record(self) -> Dict[str, Any]:
        return {'id': self.id, 'entityId': self.entity_id, 'meta': self.meta or {}}


class JobExecution(Base):
    """One run of a scheduled crawl job."""
    __tablename__ = 'job_executions'

    id = Column(String(64), primary_key=True)
    state = Column(String(32), nullable=False)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_job_executions_start_time', 'start_time'),
    )

    def to_record(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'state': self.state,
            'startTime': self.start_time,
            'endTime': self.end_time,
        }


class Execution(Base):
    """One crawl of one seed within a job execution."""
    __tablename__ = 'executions'

    id = Column(String(64), primary_key=True)
    seed_id = Column(String(64), nullable=False)
    job_execution_id = Column(String(64), nullable=False)
    state = Column(String(32), nullable=False)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_executions_seed_id', 'seed_id'),
        Index('idx_executions_job_execution_id', 'job_execution_id'),
    )


class CrawlLogEntry(Base):
    """Crawl log entry for one fetched (or revisited) record."""
    __tablename__ = 'crawl_log'

    warc_id = Column(String(64), primary_key=True)
    execution_id = Column(String(64), nullable=False)
    job_execution_id = Column(String(64), nullable=True)
    warc_refers_to = Column(String(64), nullable=True)
    requested_uri = Column(Text, nullable=True)
    discovery_path = Column(String(64), nullable=True)
    content_type = Column(String(255), nullable=True)
    record_type = Column(String(32), nullable=True)
    size = Column(Integer, nullable=True)
    time_stamp = Column(DateTime, nullable=True)

    # High volume fields not carried into the aggregate
    fetch_time_ms = Column(Integer, nullable=True)
    fetch_time_stamp = Column(DateTime, nullable=True)
    ip_address = Column(String(64), nullable=True)
    block_digest = Column(String(128), nullable=True)
    payload_digest = Column(String(128), nullable=True)
    status_code = Column(Integer, nullable=True)
    storage_ref = Column(String(255), nullable=True)
    surt = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_crawl_log_execution_id', 'execution_id'),
    )


class ExtractedText(Base):
    """Text extracted from a WARC record together with its text metrics."""
    __tablename__ = 'extracted_text'

    warc_id = Column(String(64), primary_key=True)
    text = Column(Text, nullable=False, default='')
    language = Column(String(16), nullable=True)
    word_count = Column(Integer, nullable=True)
    sentence_count = Column(Integer, nullable=True)
    long_word_count = Column(Integer, nullable=True)
    lix = Column(Float, nullable=True)
    character_count = Column(Integer, nullable=True)

    __table_args__ = (
        Index('idx_extracted_text_language', 'language'),
    )


# Tables owned by the aggregator

class Entity(Base):
    """Organisational owner of one or more seeds."""
    __tablename__ = 'entities'

    id = Column(String(64), primary_key=True)
    meta = Column(JSON, nullable=False, default=dict)

    def to_record(self) -> Dict[str, Any]:
        return {'id': self.id, 'meta': self.meta or {}}


class Seed(Base):
    """Seed followed by the aggregator."""
    __tablename__ = 'seeds'

    id = Column(String(64), primary_key=True)
    entity_id = Column(String(64), nullable=False)
    meta = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index('idx_seeds_entity_id', 'entity_id'),
    )

    def to_record(self) -> Dict[str, Any]:
        return {'id': self.id, 'entityId': self.entity_id, 'meta': self.meta or {}}


class FilterSetRecord(Base):
    """Time bounded bundle of filters for one seed, or for every seed."""
    __tablename__ = 'filter_sets'

    id = Column(String(64), primary_key=True)
    seed_id = Column(String(64), nullable=False)
    valid_from = Column(DateTime, nullable=True)
    valid_to = Column(DateTime, nullable=True)
    filters = Column(JSON, nullable=False, default=list)

    __table_args__ = (
        Index('idx_filter_sets_seed_id', 'seed_id'),
    )

    def to_record(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'seedId': self.seed_id,
            'validFrom': self.valid_from,
            'validTo': self.valid_to,
            'filters': self.filters or [],
        }


class Aggregate(Base):
    """Denormalized extracted text occurrence within one execution."""
    __tablename__ = 'aggregate'

    id = Column(Integer, primary_key=True, autoincrement=True)
    warc_id = Column(String(64), nullable=False)
    seed_id = Column(String(64), nullable=False)
    execution_id = Column(String(64), nullable=False)
    job_execution_id = Column(String(64), nullable=False)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    word_count = Column(Integer, nullable=True)
    sentence_count = Column(Integer, nullable=True)
    long_word_count = Column(Integer, nullable=True)
    lix = Column(Float, nullable=True)
    character_count = Column(Integer, nullable=True)
    requested_uri = Column(Text, nullable=True)
    discovery_path = Column(String(64), nullable=True)
    content_type = Column(String(255), nullable=True)
    record_type = Column(String(32), nullable=True)
    size = Column(Integer, nullable=True)
    time_stamp = Column(DateTime, nullable=True)
    language = Column(String(16), nullable=True)

    __table_args__ = (
        Index('idx_aggregate_seed_id', 'seed_id'),
        Index('idx_aggregate_execution_id', 'execution_id'),
        Index('idx_aggregate_job_execution_id', 'job_execution_id'),
        Index('idx_aggregate_start_time', 'start_time'),
    )

    def to_record(self) -> Dict[str, Any]:
        """Record view keyed by the attribute names filters refer to."""
        return {
            'warcId': self.warc_id,
            'seedId': self.seed_id,
            'executionId': self.execution_id,
            'jobExecutionId': self.job_execution_id,
            'startTime': self.start_time,
            'endTime': self.end_time,
            'wordCount': self.word_count,
            'sentenceCount': self.sentence_count,
            'longWordCount': self.long_word_count,
            'lix': self.lix,
            'characterCount': self.character_count,
            'requestedUri': self.requested_uri,
            'discoveryPath': self.discovery_path,
            'contentType': self.content_type,
            'recordType': self.record_type,
            'size': self.size,
            'timeStamp': self.time_stamp,
            'language': self.language,
        }


class StatisticRecord(Base):
    """Per language text counts for one execution of one seed."""
    __tablename__ = 'statistics'

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_id = Column(String(64), nullable=False)
    seed_id = Column(String(64), nullable=False)
    execution_id = Column(String(64), nullable=False)
    job_execution_id = Column(String(64), nullable=False)
    end_time = Column(DateTime, nullable=True)
    statistic = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index('idx_statistics_seed_id', 'seed_id'),
        Index('idx_statistics_execution_id', 'execution_id'),
        Index('idx_statistics_job_execution_id', 'job_execution_id'),
    )

    def to_record(self) -> Dict[str, Any]:
        return {
            'entityId': self.entity_id,
            'seedId': self.seed_id,
            'executionId': self.execution_id,
            'jobExecutionId': self.job_execution_id,
            'endTime': self.end_time,
            'statistic': self.statistic or {},
        }


class SystemLog(Base):
    """Log entry for one run of a long running operation."""
    __tablename__ = 'system_log'

    id = Column(String(36), primary_key=True)
    type = Column(String(32), nullable=False)
    start_time = Column(DateTime, nullable=False, default=utcnow)
    end_time = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    metrics = Column(JSON, nullable=True)
    meta = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index('idx_system_log_type', 'type'),
        Index('idx_system_log_start_time', 'start_time'),
    )


class InProgress(Base):
    """Mutual exclusion marker, one row per operation type."""
    __tablename__ = 'in_progress'

    type = Column(String(32), primary_key=True)
    since = Column(DateTime, nullable=True)

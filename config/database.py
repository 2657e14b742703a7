"""Database configuration and factory for the aggregator.

Provides a unified document store on top of SQLAlchemy, backed by SQLite
for development and tests or PostgreSQL in production.
"""

import os
import logging
from typing import Iterable, Optional
from pydantic import BaseModel, Field
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from services.shared.models import Base
from services.shared.store import DocumentStore

logger = logging.getLogger(__name__)


class DatabaseConfig(BaseModel):
    """Database configuration."""
    url: str = Field(default="sqlite:///maalfrid.db", description="SQLAlchemy database URL")

    # Connection settings
    pool_size: int = Field(default=10, description="Connection pool size")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    echo: bool = Field(default=False, description="Log every SQL statement")

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith('sqlite')

    @property
    def is_memory(self) -> bool:
        return self.is_sqlite and (self.url in ('sqlite://', 'sqlite:///:memory:'))

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        """Create configuration from environment variables."""
        return cls(
            url=os.getenv('AGGREGATOR_DATABASE_URL', 'sqlite:///maalfrid.db'),
            pool_size=int(os.getenv('DB_POOL_SIZE', '10')),
            pool_timeout=int(os.getenv('DB_POOL_TIMEOUT', '30')),
            echo=os.getenv('DB_ECHO', 'false').lower() in ('1', 'true', 'yes'),
        )


def create_db_engine(config: DatabaseConfig) -> Engine:
    """Create an engine suited to the configured backend."""
    if config.is_memory:
        # one shared connection, otherwise every session sees an empty database
        return create_engine(
            config.url,
            echo=config.echo,
            connect_args={'check_same_thread': False},
            poolclass=StaticPool,
        )
    if config.is_sqlite:
        return create_engine(config.url, echo=config.echo, connect_args={'check_same_thread': False})
    return create_engine(
        config.url,
        echo=config.echo,
        pool_size=config.pool_size,
        pool_timeout=config.pool_timeout,
        pool_pre_ping=True,
    )


class DatabaseFactory:
    """Factory for creating the document store."""

    _instance: Optional['DatabaseFactory'] = None
    _engine: Optional[Engine] = None
    _store: Optional[DocumentStore] = None
    _config: Optional[DatabaseConfig] = None

    def __new__(cls) -> 'DatabaseFactory':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(self, config: Optional[DatabaseConfig] = None,
                         operation_types: Iterable[str] = ()):
        """Create the engine, the schema and the operation markers."""
        if config is None:
            config = DatabaseConfig.from_env()

        self._config = config
        self._engine = create_db_engine(config)
        Base.metadata.create_all(self._engine)

        session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        # SQLite takes one writer at a time
        workers = 1 if config.is_sqlite else config.pool_size
        self._store = DocumentStore(session_factory, max_workers=workers)
        await self._store.ensure_markers(operation_types)

        logger.info(f"Document store initialized: {self._engine.url.render_as_string(hide_password=True)}")

    async def close(self):
        """Close database connections."""
        if self._store:
            self._store.close()
        if self._engine:
            self._engine.dispose()
            self._engine = None
            self._store = None
            logger.info("Database connections closed")

    def get_store(self) -> DocumentStore:
        """Get the current document store."""
        if self._store is None:
            raise RuntimeError("Document store not initialized. Call initialize() first.")
        return self._store

    def get_config(self) -> DatabaseConfig:
        """Get the current database configuration."""
        if self._config is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._config


# Global database factory instance
db_factory = DatabaseFactory()


async def get_store() -> DocumentStore:
    """Get document store instance."""
    return db_factory.get_store()


async def initialize_database(config: Optional[DatabaseConfig] = None,
                              operation_types: Iterable[str] = ()):
    """Initialize database with configuration."""
    await db_factory.initialize(config, operation_types)


async def close_database():
    """Close database connections."""
    await db_factory.close()

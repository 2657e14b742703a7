"""Configuration module for the aggregator.

Provides configuration management for the document store, the language
detector, logging and the HTTP server.
"""

from .database import (
    DatabaseConfig,
    DatabaseFactory,
    db_factory,
    get_store,
    initialize_database,
    close_database
)
from .settings import (
    Settings,
    LanguageServiceConfig,
    LoggingConfig,
    ServerConfig
)

__all__ = [
    'DatabaseConfig',
    'DatabaseFactory',
    'db_factory',
    'get_store',
    'initialize_database',
    'close_database',
    'Settings',
    'LanguageServiceConfig',
    'LoggingConfig',
    'ServerConfig'
]

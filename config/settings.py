"""Service settings read from the environment."""

import os
from typing import Dict, Optional
from pydantic import BaseModel, Field

from .database import DatabaseConfig

SCHEDULE_PREFIX = 'SCHEDULE_'


def _parse_timeout_hours(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return 12.0
    if raw.strip().lower() in ('', '0', 'none', 'off'):
        return None
    return float(raw)


class LanguageServiceConfig(BaseModel):
    """Remote language detector."""
    url: str = Field(default="http://localhost:8672", description="Base URL of the language detector")
    timeout: int = Field(default=30, description="Request timeout in seconds")
    concurrency: int = Field(default=10, ge=1, description="Detections in flight at once")


class LoggingConfig(BaseModel):
    level: str = "INFO"
    use_json: bool = False
    log_file: Optional[str] = None


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3011


class Settings(BaseModel):
    """Aggregator settings."""
    service_name: str = "maalfrid-aggregator"
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    language_service: LanguageServiceConfig = Field(default_factory=LanguageServiceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    # Stale in-progress markers older than this are cleared; None disables
    operation_timeout_hours: Optional[float] = Field(default=12.0)

    # Operation type -> cron expression
    schedules: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_env(cls) -> 'Settings':
        """Create settings from environment variables."""
        schedules = {}
        for key, value in os.environ.items():
            if key.startswith(SCHEDULE_PREFIX) and value.strip():
                schedules[key[len(SCHEDULE_PREFIX):].lower()] = value.strip()

        return cls(
            database=DatabaseConfig.from_env(),
            language_service=LanguageServiceConfig(
                url=os.getenv('LANGUAGE_SERVICE_URL', 'http://localhost:8672'),
                timeout=int(os.getenv('LANGUAGE_SERVICE_TIMEOUT', '30')),
                concurrency=int(os.getenv('LANGUAGE_DETECTION_CONCURRENCY', '10')),
            ),
            logging=LoggingConfig(
                level=os.getenv('LOG_LEVEL', 'INFO'),
                use_json=os.getenv('LOG_JSON', 'false').lower() in ('1', 'true', 'yes'),
                log_file=os.getenv('LOG_FILE') or None,
            ),
            server=ServerConfig(
                host=os.getenv('HOST', '0.0.0.0'),
                port=int(os.getenv('PORT', '3011')),
            ),
            operation_timeout_hours=_parse_timeout_hours(os.getenv('OPERATION_TIMEOUT_HOURS')),
            schedules=schedules,
        )

"""HTTP front end for the aggregator operations."""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from config.database import close_database, get_store, initialize_database
from config.settings import Settings
from observability.logging import setup_logging
from observability.prometheus_metrics import setup_prometheus_metrics
from services.shared.errors import ErrorCode, error_code

from .job_handlers import AggregatorService, apply_schedules, register_default_handlers
from .jobs import OperationManager, OperationType

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    ErrorCode.IN_PROGRESS: 503,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.FAILED_PRECONDITION: 400,
    ErrorCode.INTERNAL: 500,
}


INTERNAL_ERROR_DETAIL = "Internal error"


def to_http_exception(error: Exception) -> HTTPException:
    """Map an operation failure to an HTTP error carrying only its message.

    Internal errors are logged in full and answered with a generic detail.
    """
    code = error_code(error)
    if code is ErrorCode.INTERNAL:
        logger.error(f"Request failed: {type(error).__name__}: {error}")
        return HTTPException(status_code=STATUS_BY_CODE[code], detail=INTERNAL_ERROR_DETAIL)
    return HTTPException(status_code=STATUS_BY_CODE[code], detail=str(error) or type(error).__name__)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class LanguageDetectionRequest(BaseModel):
    detect_all: bool = False
    wait: bool = False


class SyncRequest(BaseModel):
    labels: List[str] = Field(default_factory=list)
    wait: bool = False


class AggregationRequest(BaseModel):
    job_execution_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    wait: bool = False

    @field_validator('start_time', 'end_time')
    @classmethod
    def to_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class StatisticsRequest(BaseModel):
    job_execution_id: str
    seed_id: Optional[str] = None
    wait: bool = False


def create_app(settings: Optional[Settings] = None,
               service: Optional[AggregatorService] = None) -> FastAPI:
    """Create the FastAPI application.

    A prebuilt ``service`` skips database and scheduler setup on startup.
    """
    settings = settings or Settings.from_env()
    app = FastAPI(title="Maalfrid Aggregator", version="1.0.0")
    app.state.settings = settings
    app.state.service = service
    app.state.owns_service = service is None

    setup_prometheus_metrics(app)

    @app.on_event("startup")
    async def startup_event():
        """Initialize the store, the operation manager and the schedules."""
        if not app.state.owns_service:
            return

        setup_logging(
            level=settings.logging.level,
            service_name=settings.service_name,
            log_file=settings.logging.log_file,
            use_json=settings.logging.use_json,
        )
        try:
            await initialize_database(settings.database, [t.value for t in OperationType])
            store = await get_store()

            timeout = None
            if settings.operation_timeout_hours is not None:
                timeout = timedelta(hours=settings.operation_timeout_hours)
            manager = OperationManager(store, operation_timeout=timeout)
            await manager.initialize()

            app.state.service = AggregatorService(store, manager, settings.language_service)
            register_default_handlers(manager, app.state.service)
            apply_schedules(manager, settings.schedules)
            logger.info("Aggregator initialized")
        except Exception as e:
            logger.error(f"Failed to initialize application: {e}")
            raise

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop running operations and close the store."""
        if not app.state.owns_service or app.state.service is None:
            return
        await app.state.service.manager.shutdown()
        await close_database()

    def get_service(request: Request) -> AggregatorService:
        if request.app.state.service is None:
            raise HTTPException(status_code=500, detail="Service not initialized")
        return request.app.state.service

    @app.get("/")
    async def root():
        return {
            "service": settings.service_name,
            "operations": [t.value for t in OperationType],
        }

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    @app.post("/operations/language-detection")
    async def detect_languages(req: LanguageDetectionRequest,
                               service: AggregatorService = Depends(get_service)):
        """Detect languages of extracted texts."""
        try:
            entry = await service.detect_languages(req.detect_all, wait=req.wait)
        except Exception as e:
            raise to_http_exception(e) from e
        return entry.to_dict()

    @app.post("/operations/sync")
    async def sync(req: SyncRequest, service: AggregatorService = Depends(get_service)):
        """Synchronize seeds and entities from the crawler configuration."""
        try:
            entry = await service.sync_seeds_and_entities(req.labels, wait=req.wait)
        except Exception as e:
            raise to_http_exception(e) from e
        return entry.to_dict()

    @app.post("/operations/aggregation")
    async def aggregate(req: AggregationRequest, service: AggregatorService = Depends(get_service)):
        """Aggregate a job execution, or a time range when no job execution is given."""
        try:
            if req.job_execution_id:
                entry = await service.generate_aggregate(req.job_execution_id, wait=req.wait)
            else:
                entry = await service.generate_aggregate_range(req.start_time, req.end_time, wait=req.wait)
        except Exception as e:
            raise to_http_exception(e) from e
        return entry.to_dict()

    @app.post("/operations/statistics")
    async def statistics(req: StatisticsRequest, service: AggregatorService = Depends(get_service)):
        """Regenerate statistics of a job execution."""
        try:
            entry = await service.generate_statistics(req.job_execution_id, req.seed_id, wait=req.wait)
        except Exception as e:
            raise to_http_exception(e) from e
        return entry.to_dict()

    @app.get("/operations/{log_id}")
    async def get_operation(log_id: str, service: AggregatorService = Depends(get_service)):
        try:
            entry = await service.get_operation(log_id)
        except Exception as e:
            raise to_http_exception(e) from e
        return entry.to_dict()

    @app.get("/operations")
    async def list_operations(type: Optional[str] = None, limit: int = 100,
                              service: AggregatorService = Depends(get_service)):
        """List operation log entries, newest first."""
        type_ = None
        if type:
            try:
                type_ = OperationType.parse(type)
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Invalid operation type: {type}")

        try:
            entries = await service.list_operations(type_, limit)
        except Exception as e:
            raise to_http_exception(e) from e
        return {
            "operations": [entry.to_dict() for entry in entries],
            "total": len(entries),
        }

    return app

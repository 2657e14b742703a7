"""Prometheus metrics for the aggregator service."""

from prometheus_client import Counter, Histogram, Info, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.core import CollectorRegistry
from fastapi import FastAPI, Request, Response
import re
import time
from typing import Optional
import logging
import os

logger = logging.getLogger(__name__)

# Custom registry for aggregator metrics
aggregator_registry = CollectorRegistry()

# Request metrics
request_count = Counter(
    'maalfrid_aggregator_http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=aggregator_registry
)

request_duration = Histogram(
    'maalfrid_aggregator_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=aggregator_registry
)

# Operation metrics
operations_started = Counter(
    'maalfrid_aggregator_operations_started_total',
    'Number of operations started',
    ['operation'],
    registry=aggregator_registry
)

operations_finished = Counter(
    'maalfrid_aggregator_operations_finished_total',
    'Number of operations finished',
    ['operation', 'status'],
    registry=aggregator_registry
)

operations_rejected = Counter(
    'maalfrid_aggregator_operations_rejected_total',
    'Number of operations rejected because one was already in progress',
    ['operation'],
    registry=aggregator_registry
)

operation_duration = Histogram(
    'maalfrid_aggregator_operation_duration_seconds',
    'Operation duration in seconds',
    ['operation'],
    buckets=[1, 5, 15, 60, 300, 900, 3600, 4 * 3600, 12 * 3600],
    registry=aggregator_registry
)

# Pipeline metrics
language_detections = Counter(
    'maalfrid_aggregator_language_detections_total',
    'Number of language detections',
    ['status'],
    registry=aggregator_registry
)

aggregate_rows = Counter(
    'maalfrid_aggregator_aggregate_rows_total',
    'Number of aggregate rows inserted',
    registry=aggregator_registry
)

statistics_written = Counter(
    'maalfrid_aggregator_statistics_written_total',
    'Number of statistics rows written',
    registry=aggregator_registry
)

app_info = Info(
    'maalfrid_aggregator_app_info',
    'Aggregator application information',
    registry=aggregator_registry
)

class PrometheusMiddleware:
    """Middleware to collect Prometheus metrics for HTTP requests."""

    def __init__(self, app: FastAPI):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        method = request.method
        endpoint = self._normalize_endpoint(request.url.path)

        start_time = time.time()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            request_count.labels(
                method=method,
                endpoint=endpoint,
                status_code=str(status_code)
            ).inc()
            request_duration.labels(method=method, endpoint=endpoint).observe(time.time() - start_time)

    def _normalize_endpoint(self, path: str) -> str:
        """Normalize endpoint path to reduce cardinality."""
        return re.sub(r'/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}', '/{id}', path)

def setup_prometheus_metrics(app: FastAPI) -> None:
    """Setup Prometheus metrics collection for FastAPI app."""
    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(aggregator_registry), media_type=CONTENT_TYPE_LATEST)

    app_info.info({
        'version': os.getenv('APP_VERSION', 'unknown'),
        'environment': os.getenv('ENVIRONMENT', 'development')
    })

    logger.info("Prometheus metrics configured")

def record_operation_metrics(operation: str, duration: float, error: Optional[str] = None) -> None:
    """Record the outcome of one operation run."""
    status = "error" if error else "success"
    operations_finished.labels(operation=operation, status=status).inc()
    operation_duration.labels(operation=operation).observe(duration)

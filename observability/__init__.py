"""Observability package for the aggregator."""

from .logging import setup_logging, operation_context, OperationContextFilter
from .prometheus_metrics import (
    setup_prometheus_metrics,
    record_operation_metrics,
    PrometheusMiddleware,
    aggregator_registry
)

__all__ = [
    'setup_logging',
    'operation_context',
    'OperationContextFilter',
    'setup_prometheus_metrics',
    'record_operation_metrics',
    'PrometheusMiddleware',
    'aggregator_registry'
]

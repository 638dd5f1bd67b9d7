"""Observability package for contextdocs."""

from .logging import setup_logging, get_subject_logger, SubjectLogger
from .prometheus_metrics import (
    setup_prometheus_metrics,
    record_ranking_metrics,
    update_system_metrics,
    get_metrics_summary,
    PrometheusMiddleware,
    contextdocs_registry
)

__all__ = [
    'setup_logging',
    'get_subject_logger',
    'SubjectLogger',
    'setup_prometheus_metrics',
    'record_ranking_metrics',
    'update_system_metrics',
    'get_metrics_summary',
    'PrometheusMiddleware',
    'contextdocs_registry'
]

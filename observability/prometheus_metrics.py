"""Prometheus metrics integration for the contextdocs API."""

from prometheus_client import Counter, Histogram, Gauge, Info, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.core import CollectorRegistry
from fastapi import FastAPI, Request, Response
import re
import time
from typing import Optional, Dict, Any
import logging
import psutil
import os

logger = logging.getLogger(__name__)

# Dedicated registry so tests can build several apps in one process
contextdocs_registry = CollectorRegistry()

# Request metrics
request_count = Counter(
    'contextdocs_http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=contextdocs_registry
)

request_duration = Histogram(
    'contextdocs_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=contextdocs_registry
)

# Context and ranking metrics
context_events = Counter(
    'contextdocs_context_events_total',
    'Context events received, by kind',
    ['kind'],
    registry=contextdocs_registry
)

ranking_duration = Histogram(
    'contextdocs_ranking_duration_seconds',
    'Time spent ranking one context event',
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=contextdocs_registry
)

oracle_failures = Counter(
    'contextdocs_oracle_failures_total',
    'Search-index queries that failed or timed out',
    ['reason'],
    registry=contextdocs_registry
)

suggestions_generated = Counter(
    'contextdocs_suggestions_generated_total',
    'Suggestions returned to callers, by type',
    ['suggestion_type'],
    registry=contextdocs_registry
)

cache_requests = Counter(
    'contextdocs_cache_requests_total',
    'Suggestion cache lookups, by result',
    ['result'],
    registry=contextdocs_registry
)

feedback_count = Counter(
    'contextdocs_feedback_total',
    'Feedback verdicts recorded',
    ['verdict'],
    registry=contextdocs_registry
)

# Real-time distribution
realtime_sessions = Gauge(
    'contextdocs_realtime_sessions',
    'Connected real-time sessions',
    registry=contextdocs_registry
)

realtime_dropped = Counter(
    'contextdocs_realtime_dropped_messages_total',
    'Real-time messages dropped on backpressure or disconnect',
    ['event'],
    registry=contextdocs_registry
)

job_queue_depth = Gauge(
    'contextdocs_job_queue_depth',
    'Jobs waiting in the suggestion work queue',
    registry=contextdocs_registry
)

# System metrics
system_memory_usage = Gauge(
    'contextdocs_system_memory_usage_bytes',
    'System memory usage in bytes',
    registry=contextdocs_registry
)

system_cpu_usage = Gauge(
    'contextdocs_system_cpu_usage_percent',
    'System CPU usage percentage',
    registry=contextdocs_registry
)

app_info = Info(
    'contextdocs_app_info',
    'contextdocs application information',
    registry=contextdocs_registry
)

error_count = Counter(
    'contextdocs_errors_total',
    'Total number of errors',
    ['error_type', 'component'],
    registry=contextdocs_registry
)


class PrometheusMiddleware:
    """Middleware to collect Prometheus metrics for HTTP requests."""

    def __init__(self, app):
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
        except Exception as e:
            logger.error(f"Request processing error: {e}")
            error_count.labels(error_type=type(e).__name__, component="http").inc()
            raise
        finally:
            request_count.labels(
                method=method,
                endpoint=endpoint,
                status_code=str(status_code)
            ).inc()
            request_duration.labels(method=method, endpoint=endpoint).observe(time.time() - start_time)

    def _normalize_endpoint(self, path: str) -> str:
        """Normalize endpoint path to reduce cardinality."""
        path = re.sub(r'/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}', '/{uuid}', path)
        path = re.sub(r'/\d+', '/{id}', path)
        path = re.sub(r'/(history|current|activity|analytics|realtime)/[^/]+', r'/\1/{subject}', path)
        path = re.sub(r'/documentation/search/[^/]+', '/documentation/search/{query}', path)
        return path


def setup_prometheus_metrics(app: FastAPI) -> None:
    """Add the request middleware and the /metrics endpoint."""
    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        update_system_metrics()
        return Response(generate_latest(contextdocs_registry), media_type=CONTENT_TYPE_LATEST)

    app_info.info({
        'version': os.getenv('APP_VERSION', 'unknown'),
        'environment': os.getenv('ENVIRONMENT', 'development')
    })

    logger.info("Prometheus metrics configured")


def record_ranking_metrics(duration: float, suggestion_types: Dict[str, int],
                           oracle_error: Optional[str] = None) -> None:
    """Record the outcome of one ranking pass."""
    ranking_duration.observe(duration)
    for suggestion_type, count in suggestion_types.items():
        suggestions_generated.labels(suggestion_type=suggestion_type).inc(count)
    if oracle_error:
        oracle_failures.labels(reason=oracle_error).inc()
        error_count.labels(error_type="oracle_error", component="ranker").inc()


def update_system_metrics() -> None:
    """Update system-level metrics."""
    try:
        system_memory_usage.set(psutil.virtual_memory().used)
        system_cpu_usage.set(psutil.cpu_percent(interval=None))
    except Exception as e:
        logger.error(f"Error updating system metrics: {e}")
        error_count.labels(error_type="system_metrics_error", component="monitoring").inc()


def get_metrics_summary() -> Dict[str, Any]:
    """Counters worth showing on the detailed health endpoint."""
    def total(metric) -> float:
        return sum(
            sample.value
            for family in metric.collect()
            for sample in family.samples
            if sample.name.endswith('_total')
        )

    return {
        "context_events_total": total(context_events),
        "suggestions_generated_total": total(suggestions_generated),
        "oracle_failures_total": total(oracle_failures),
        "feedback_total": total(feedback_count),
        "realtime_dropped_total": total(realtime_dropped),
    }

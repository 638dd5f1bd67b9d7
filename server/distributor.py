"""Context distribution: the glue between the store, cache, ranker and real-time hub."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from config.settings import Settings
from indexer.sqlite_adapter import SQLiteAdapter
from observability.logging import get_subject_logger
from observability.prometheus_metrics import context_events, feedback_count
from pipelines.ranker import RelevanceRanker
from server.caching import SuggestionCache, fingerprint
from server.jobs import JobManager
from server.realtime import ConnectionHub
from services.shared.errors import (
    InvalidContextError,
    InvalidFeedbackError,
    QueueFullError,
    SuggestionNotFoundError,
)
from services.shared.models import ContextEvent, FeedbackVerdict

logger = logging.getLogger(__name__)

GENERATE_JOB = "generate_suggestions"

PERIODS = {
    '1d': 1,
    '7d': 7,
    '30d': 30,
    '90d': 90,
}


def period_days(period: Optional[str]) -> int:
    """Map an analytics period like ``30d`` to days; unknown periods mean 7."""
    return PERIODS.get(period or '7d', 7)


def timestamp_ms() -> int:
    return int(datetime.utcnow().timestamp() * 1000)


class ContextDistributor:
    """Accepts context events and turns them into stored, cached and pushed suggestions."""

    def __init__(self, store: SQLiteAdapter, cache: SuggestionCache, ranker: RelevanceRanker,
                 hub: ConnectionHub, jobs: JobManager, settings: Optional[Settings] = None):
        self.store = store
        self.cache = cache
        self.ranker = ranker
        self.hub = hub
        self.jobs = jobs
        self.settings = settings or Settings()
        self.jobs.register_handler(GENERATE_JOB, self._generate_job)

    async def submit(self, subject_id: Optional[str], event: ContextEvent,
                     origin_session: Optional[str] = None) -> int:
        """Record, cache, index and publish one context event.

        Suggestion generation is queued; when the queue is full the event
        is still recorded but no suggestions are pushed for it.
        """
        subject_id = subject_id or event.subject_id
        if not subject_id:
            raise InvalidContextError("subject_id is required")
        log = get_subject_logger(__name__, subject_id, context_type=event.type)

        context_events.labels(kind=event.kind.value if event.kind else "unknown").inc()

        activity_id = await self.store.record_activity(subject_id, event)
        payload = event.payload()
        await self.cache.set_live_context(subject_id, payload)
        await self.store.index_context(subject_id, event, activity_id)

        self.hub.publish_context(payload, subject_id, origin_session)

        try:
            self.jobs.enqueue_job(GENERATE_JOB, {'subject_id': subject_id, 'event': payload})
        except (QueueFullError, RuntimeError) as e:
            log.warning(f"Suggestion generation skipped: {e}")

        log.info(f"Context activity {activity_id} recorded")
        return activity_id

    async def generate_suggestions(self, subject_id: Optional[str], event: ContextEvent,
                                   include_unfiltered: bool = False) -> Dict[str, Any]:
        """Ranked suggestions for ``event``, served from cache when possible."""
        subject_id = subject_id or event.subject_id
        if not subject_id:
            raise InvalidContextError("subject_id is required")

        fp = fingerprint(event)
        if not include_unfiltered:
            cached = await self.cache.get(subject_id, fp)
            if cached is not None:
                return {**cached, 'cached': True, 'timestamp': timestamp_ms()}

        analysis = await self.ranker.analyze_context(event, subject_id, include_unfiltered=include_unfiltered)
        await self.store.record_suggestions(subject_id, event, analysis.suggestions)

        payload = analysis.to_dict()
        if not include_unfiltered:
            await self.cache.put(subject_id, fp, payload)

        response = {**payload, 'cached': False, 'timestamp': timestamp_ms()}
        if include_unfiltered:
            response['all_suggestions'] = [s.to_dict() for s in analysis.all_suggestions or []]
        return response

    async def feedback(self, suggestion_id: str, verdict: Any,
                       subject_id: Optional[str] = None) -> Dict[str, Any]:
        """Record a verdict on a stored suggestion."""
        try:
            verdict = FeedbackVerdict(verdict)
        except ValueError:
            raise InvalidFeedbackError(f"Invalid feedback value: {verdict!r}")

        if not await self.store.update_feedback(suggestion_id, verdict):
            raise SuggestionNotFoundError(f"Suggestion {suggestion_id} not found")

        record = {
            'suggestion_id': suggestion_id,
            'subject_id': subject_id,
            'feedback': verdict.value,
            'timestamp': timestamp_ms()
        }
        await self.cache.store_feedback(suggestion_id, record)
        feedback_count.labels(verdict=verdict.value).inc()
        get_subject_logger(__name__, subject_id).info(f"Feedback {verdict.value} for suggestion {suggestion_id}")
        return record

    async def current_context(self, subject_id: str) -> Optional[Dict[str, Any]]:
        return await self.cache.get_live_context(subject_id)

    async def realtime_suggestions(self, subject_id: str) -> Dict[str, Any]:
        """Rank the subject's live context without touching the store or cache."""
        context = await self.cache.get_live_context(subject_id)
        if context is None:
            return {'suggestions': [], 'message': 'No recent context available'}

        analysis = await self.ranker.analyze_context(ContextEvent.model_validate(context), subject_id)
        return {
            'suggestions': [s.to_dict() for s in analysis.suggestions],
            'context': context,
            'timestamp': timestamp_ms()
        }

    async def analytics(self, days: int = 7) -> Dict[str, Any]:
        return await self.store.suggestion_analytics(days)

    async def activity(self, subject_id: str, limit: int = 100, offset: int = 0,
                       activity_type: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.store.list_activity(subject_id, limit=limit, offset=offset,
                                              activity_type=activity_type)

    async def activity_analytics(self, subject_id: str, period: Optional[str] = None) -> Dict[str, Any]:
        return await self.store.activity_analytics(subject_id, period_days(period))

    async def search_context(self, query: str, subject_id: Optional[str] = None,
                             activity_type: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        if not query or not query.strip():
            raise InvalidContextError("Search query is required")
        return await self.store.search_context(query, subject_id=subject_id,
                                               activity_type=activity_type, limit=limit)

    async def history(self, subject_id: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        return await self.store.suggestion_history(subject_id, limit=limit, offset=offset)

    async def _generate_job(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        subject_id = parameters['subject_id']
        event = ContextEvent.model_validate(parameters['event'])
        result = await self.generate_suggestions(subject_id, event)
        delivered = self.hub.publish_suggestions(subject_id, result['suggestions'])
        return {
            'suggestion_count': len(result['suggestions']),
            'cached': result['cached'],
            'delivered': delivered
        }

"""Hybrid relevance ranking of documentation for one context event.

The search index supplies candidate documents and a raw score for each.
Every candidate is re-scored against the weighted context vector and the
rule engine's fixed suggestions are merged in before the final cut.
"""

import asyncio
import logging
import time
import uuid
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from indexer.oracle import SearchHit, SearchOracle
from observability.prometheus_metrics import record_ranking_metrics
from pipelines.keywords import KeywordExtractor
from pipelines.rules import RuleEngine
from pipelines.vectorizer import ContextVectorizer
from services.shared.errors import OracleUnavailableError
from services.shared.models import ContextAnalysis, ContextEvent, Suggestion, SuggestionType

logger = logging.getLogger(__name__)

# Share of a keyword's weight earned per matching document field
FIELD_FACTORS = {
    'keywords': 0.4,
    'tags': 0.3,
    'title': 0.2,
    'content': 0.1,
}

EXCERPT_LENGTH = 300


def field_matches(keyword: str, hit: SearchHit) -> List[str]:
    """Names of the document fields that ``keyword`` matches."""
    matched = []
    if keyword in hit.keywords:
        matched.append('keywords')
    if keyword in hit.tags:
        matched.append('tags')
    if hit.title and keyword in hit.title.lower():
        matched.append('title')
    if hit.content and keyword in hit.content.lower():
        matched.append('content')
    return matched


def relevance_score(context_vector: Dict[str, int], hit: SearchHit) -> Tuple[float, List[str]]:
    """Score one hit against the context vector.

    Returns the score in [0, 1] and the vector keywords that matched any
    field of the document.
    """
    if not context_vector:
        return 0.0, []

    score = 0.0
    matches = 0
    matched_keywords = []
    for keyword, weight in context_vector.items():
        fields = field_matches(keyword, hit)
        if not fields:
            continue
        matched_keywords.append(keyword)
        for name in fields:
            score += weight * FIELD_FACTORS[name]
            matches += 1

    normalized = (score * matches * hit.score) / 100
    final = normalized / len(context_vector)
    return max(0.0, min(final, 1.0)), matched_keywords


def excerpt(content: str, length: int = EXCERPT_LENGTH) -> str:
    return content[:length] + '...'


class RelevanceRanker:
    """Combines keyword extraction, search-index hits and rules into a ranked list."""

    def __init__(self,
                 oracle: Optional[SearchOracle],
                 rule_engine: Optional[RuleEngine] = None,
                 extractor: Optional[KeywordExtractor] = None,
                 vectorizer: Optional[ContextVectorizer] = None,
                 threshold: float = 0.7,
                 max_results: int = 10,
                 oracle_timeout: float = 5.0,
                 max_hits: int = 10):
        self.oracle = oracle
        self.rule_engine = rule_engine or RuleEngine()
        self.extractor = extractor or KeywordExtractor()
        self.vectorizer = vectorizer or ContextVectorizer()
        self.threshold = threshold
        self.max_results = max_results
        self.oracle_timeout = oracle_timeout
        self.max_hits = max_hits

    async def analyze_context(self, event: ContextEvent, subject_id: Optional[str] = None,
                              include_unfiltered: bool = False) -> ContextAnalysis:
        """Run ``event`` through extraction, vectorization and ranking."""
        start_time = time.time()
        subject_id = subject_id or event.subject_id

        keywords = self.extractor.extract(event)
        context_vector = self.vectorizer.vectorize(keywords)

        ranked, oracle_error = await self.rank(event, context_vector, subject_id)
        suggestions = [s for s in ranked if s.relevance_score >= self.threshold]

        record_ranking_metrics(
            time.time() - start_time,
            dict(Counter(s.type.value for s in suggestions)),
            oracle_error
        )
        logger.info(
            f"Ranked context {event.type} for {subject_id}: "
            f"{len(keywords)} keywords, {len(ranked)} candidates, {len(suggestions)} above threshold"
        )

        return ContextAnalysis(
            keywords=sorted(keywords),
            context_vector=context_vector,
            suggestions=suggestions,
            all_suggestions=ranked if include_unfiltered else None,
            oracle_available=oracle_error is None
        )

    async def rank(self, event: ContextEvent, context_vector: Dict[str, int],
                   subject_id: Optional[str] = None) -> Tuple[List[Suggestion], Optional[str]]:
        """Ranked, truncated but unfiltered suggestions plus any oracle failure reason."""
        hits, oracle_error = await self._query_oracle(context_vector)
        snapshot = event.payload()

        suggestions = [self._hit_to_suggestion(hit, context_vector, subject_id, snapshot) for hit in hits]
        suggestions.extend(self.rule_engine.evaluate(event, subject_id))

        # sorted() is stable, so equal scores keep oracle order before rules
        suggestions = sorted(suggestions, key=lambda s: s.relevance_score, reverse=True)
        return suggestions[:self.max_results], oracle_error

    async def _query_oracle(self, context_vector: Dict[str, int]) -> Tuple[List[SearchHit], Optional[str]]:
        if self.oracle is None or not context_vector:
            return [], None

        query = ' '.join(context_vector.keys())
        try:
            hits = await asyncio.wait_for(
                self.oracle.search(query, limit=self.max_hits),
                timeout=self.oracle_timeout
            )
            return list(hits), None
        except asyncio.TimeoutError:
            logger.warning(f"Search index timed out after {self.oracle_timeout}s, using rules only")
            return [], "timeout"
        except OracleUnavailableError as e:
            logger.warning(f"Search index unavailable, using rules only: {e}")
            return [], "unavailable"
        except Exception as e:
            logger.error(f"Search index query failed, using rules only: {e}")
            return [], type(e).__name__

    @staticmethod
    def _hit_to_suggestion(hit: SearchHit, context_vector: Dict[str, int],
                           subject_id: Optional[str], snapshot: dict) -> Suggestion:
        score, matched_keywords = relevance_score(context_vector, hit)
        return Suggestion(
            id=str(uuid.uuid4()),
            subject_id=subject_id,
            relevance_score=score,
            type=SuggestionType.DOCUMENTATION,
            title=hit.title,
            content=excerpt(hit.content or ''),
            documentation_id=hit.id,
            source=hit.source,
            category=hit.category,
            tags=list(hit.tags),
            matched_keywords=matched_keywords,
            oracle_score=hit.score,
            context_snapshot=snapshot,
            created_at=datetime.utcnow()
        )

"""Pipelines package for contextdocs.

Keyword extraction, context vectors, rules and relevance ranking.
"""

from .keywords import KeywordExtractor
from .vectorizer import ContextVectorizer
from .rules import Rule, RuleEngine, DEFAULT_RULES, serialize_event
from .ranker import RelevanceRanker, relevance_score

__all__ = [
    'KeywordExtractor',
    'ContextVectorizer',
    'Rule',
    'RuleEngine',
    'DEFAULT_RULES',
    'serialize_event',
    'RelevanceRanker',
    'relevance_score',
]

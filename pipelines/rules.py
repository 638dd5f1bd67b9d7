"""Rule-based suggestions for well-known operational patterns.

Each rule is plain data: a tuple of keyword groups that must all appear
in the serialized event (any keyword of a group is enough) and the fixed
suggestion it produces. New rules are added to the catalogue; the ranker
never needs to change.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from services.shared.models import ContextEvent, Suggestion, SuggestionType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Rule:
    """A predicate over the serialized event and the suggestion it emits."""
    id: str
    title: str
    content: str
    category: str
    score: float
    conditions: Tuple[Tuple[str, ...], ...]
    tags: Tuple[str, ...] = field(default_factory=tuple)
    matched_keywords: Tuple[str, ...] = field(default_factory=tuple)
    source: str = "built-in"

    def matches(self, serialized_event: str) -> bool:
        """True when every keyword group has at least one hit."""
        haystack = serialized_event.lower()
        return all(
            any(keyword.lower() in haystack for keyword in group)
            for group in self.conditions
        )

    def to_suggestion(self, subject_id: Optional[str], snapshot: dict) -> Suggestion:
        return Suggestion(
            id=str(uuid.uuid4()),
            subject_id=subject_id,
            relevance_score=self.score,
            type=SuggestionType.RULE_BASED,
            title=self.title,
            content=self.content,
            rule_id=self.id,
            source=self.source,
            category=self.category,
            tags=list(self.tags),
            matched_keywords=list(self.matched_keywords),
            context_snapshot=snapshot,
            created_at=datetime.utcnow()
        )


DEFAULT_RULES: Tuple[Rule, ...] = (
    Rule(
        id="rule-k8s-troubleshooting",
        title="Kubernetes Troubleshooting Guide",
        content="Common Kubernetes debugging commands and troubleshooting steps...",
        category="troubleshooting",
        score=0.9,
        conditions=(("kubectl", "kubernetes", "k8s"),),
        tags=("kubernetes", "kubectl", "debugging"),
        matched_keywords=("kubernetes", "kubectl"),
    ),
    Rule(
        id="rule-docker-errors",
        title="Docker Common Errors and Solutions",
        content="Solutions for common Docker build and runtime errors...",
        category="troubleshooting",
        score=0.85,
        conditions=(("docker",), ("error", "failed")),
        tags=("docker", "errors", "troubleshooting"),
        matched_keywords=("docker", "error"),
    ),
    Rule(
        id="rule-ssh-connection",
        title="SSH Connection Troubleshooting",
        content="Steps to diagnose and fix SSH connection problems...",
        category="networking",
        score=0.8,
        conditions=(("ssh",), ("connection", "refused", "timeout")),
        tags=("ssh", "connection", "networking"),
        matched_keywords=("ssh", "connection"),
    ),
)


def serialize_event(event: ContextEvent) -> str:
    """Canonical JSON form of the fields the producer set."""
    return json.dumps(event.payload(), sort_keys=True, default=str)


class RuleEngine:
    """Evaluates every rule independently and returns the union."""

    def __init__(self, rules: Iterable[Rule] = DEFAULT_RULES):
        self.rules: Tuple[Rule, ...] = tuple(rules)
        ids = [rule.id for rule in self.rules]
        if len(ids) != len(set(ids)):
            raise ValueError("Rule ids must be unique")

    def evaluate(self, event: ContextEvent, subject_id: Optional[str] = None) -> List[Suggestion]:
        serialized = serialize_event(event)
        snapshot = event.payload()
        fired = [rule for rule in self.rules if rule.matches(serialized)]
        if fired:
            logger.debug(f"Rules fired: {[rule.id for rule in fired]}")
        return [rule.to_suggestion(subject_id, snapshot) for rule in fired]

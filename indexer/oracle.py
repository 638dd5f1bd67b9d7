"""Search-index oracle contract used by the relevance ranker."""

from dataclasses import dataclass, field
from typing import List, Optional, Protocol, runtime_checkable


@dataclass
class SearchHit:
    """One ranked documentation hit and the oracle's score for it."""
    id: str
    score: float
    title: str = ""
    content: str = ""
    tags: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    category: Optional[str] = None
    priority: int = 0
    source: Optional[str] = None


@runtime_checkable
class SearchOracle(Protocol):
    """Full-text search over the documentation corpus.

    Implementations must return an empty list for empty ``query_terms``
    instead of raising, and raise ``OracleUnavailableError`` when the
    index cannot answer. Hits come back best match first.
    """

    async def search(self, query_terms: str, limit: int = 10) -> List[SearchHit]:
        ...

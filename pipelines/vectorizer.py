"""Weighted context vectors built from keyword sets."""

from typing import Dict, Iterable, Mapping
from types import MappingProxyType

from config.catalogues import DOMAIN_WEIGHTS


class ContextVectorizer:
    """Maps keywords to domain weights; anything unknown weighs 1."""

    def __init__(self, weights: Mapping[str, int] = DOMAIN_WEIGHTS, default_weight: int = 1):
        # Weights below 1 would let a keyword vanish from scoring
        self.weights = MappingProxyType({k: max(int(v), 1) for k, v in weights.items()})
        self.default_weight = max(int(default_weight), 1)

    def weight(self, keyword: str) -> int:
        return self.weights.get(keyword, self.default_weight)

    def vectorize(self, keywords: Iterable[str]) -> Dict[str, int]:
        """Build the context vector, keys in sorted order."""
        return {keyword: self.weight(keyword) for keyword in sorted(set(keywords))}

"""Keyword extraction for context events.

Turns one context event into a set of normalized keywords: stemmed word
tokens from free text plus literal tool names, path segments, process
names and failure markers.
"""

import logging
import re
from typing import Iterable, FrozenSet, List, Optional, Pattern, Set

from nltk.stem import PorterStemmer
from nltk.tokenize import RegexpTokenizer

from config.catalogues import STOP_WORDS, TOOL_PATTERNS, FAILURE_PATTERNS, FAILURE_KEYWORDS
from services.shared.models import ContextEvent

logger = logging.getLogger(__name__)

PATH_SEPARATORS = re.compile(r"[/\\]")


class KeywordExtractor:
    """Derives a keyword set from a single context event."""

    def __init__(self,
                 stop_words: Iterable[str] = STOP_WORDS,
                 tool_patterns: Iterable[Pattern[str]] = TOOL_PATTERNS,
                 failure_patterns: Iterable[Pattern[str]] = FAILURE_PATTERNS,
                 failure_keywords: Iterable[str] = FAILURE_KEYWORDS,
                 min_token_length: int = 3):
        """Initialize extractor.

        Args:
            stop_words: Tokens dropped before stemming
            tool_patterns: Literal tool/technology patterns matched against raw text
            failure_patterns: Log-line patterns that mark a failure
            failure_keywords: Keywords emitted when a failure pattern matches
            min_token_length: Shortest token kept from free text
        """
        self.stop_words = frozenset(word.lower() for word in stop_words)
        self.tool_patterns = tuple(tool_patterns)
        self.failure_patterns = tuple(failure_patterns)
        self.failure_keywords = tuple(failure_keywords)
        self.min_token_length = min_token_length
        self.tokenizer = RegexpTokenizer(r"\w+")
        self.stemmer = PorterStemmer()

    def extract(self, event: ContextEvent) -> FrozenSet[str]:
        """Extract the keyword set for ``event``."""
        if event.kind is None:
            logger.debug(f"Unknown context type {event.type!r}, no keywords extracted")
            return frozenset()

        keywords: Set[str] = set()

        for text in self._free_text(event):
            keywords.update(self.tokenize(text))
            keywords.update(self.match_tools(text))

        for path in event.file_paths():
            keywords.update(self.path_keywords(path))

        for process in event.processes:
            name = self.process_name(process.command)
            if name:
                keywords.add(name)

        if any(self.is_failure(entry.message) for entry in event.entries if entry.message):
            keywords.update(self.failure_keywords)

        return frozenset(keywords)

    def tokenize(self, text: str) -> List[str]:
        """Lower-case, filter and stem the word tokens of ``text``."""
        tokens = []
        for token in self.tokenizer.tokenize(text.lower()):
            if len(token) < self.min_token_length or token in self.stop_words:
                continue
            tokens.append(self.stemmer.stem(token))
        return tokens

    def match_tools(self, text: str) -> List[str]:
        matches = []
        for pattern in self.tool_patterns:
            matches.extend(match.lower() for match in pattern.findall(text))
        return matches

    @staticmethod
    def path_keywords(path: str) -> List[str]:
        """Path segments plus the extension of any dotted segment."""
        keywords = []
        for segment in PATH_SEPARATORS.split(path):
            if not segment:
                continue
            if '.' in segment:
                extension = segment.rsplit('.', 1)[-1].lower()
                if extension:
                    keywords.append(extension)
            keywords.append(segment.lower())
        return keywords

    @staticmethod
    def process_name(command: Optional[str]) -> Optional[str]:
        if not command:
            return None
        parts = command.split()
        return parts[0].lower() if parts else None

    def is_failure(self, message: str) -> bool:
        return any(pattern.search(message) for pattern in self.failure_patterns)

    @staticmethod
    def _free_text(event: ContextEvent) -> List[str]:
        texts = list(event.commands) + list(event.recent_commands)
        texts.extend(entry.message for entry in event.entries if entry.message)
        return texts

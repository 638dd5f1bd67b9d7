"""Shared domain models for context events and suggestions."""
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Union
from dataclasses import dataclass, field, asdict

from pydantic import BaseModel, ConfigDict, Field


class ContextKind(str, Enum):
    """Kinds of context events emitted by host-side watchers."""
    COMMAND_EXECUTION = "command_execution"
    FILE_MODIFICATION = "file_modification"
    PROCESS_ANALYSIS = "process_analysis"
    NETWORK_ACTIVITY = "network_activity"
    LOG_UPDATE = "log_update"
    CONTEXT_SUMMARY = "context_summary"


class FeedbackVerdict(str, Enum):
    """Usefulness verdicts a subject can give a suggestion."""
    HELPFUL = "helpful"
    NOT_HELPFUL = "not_helpful"
    IRRELEVANT = "irrelevant"


class SuggestionType(str, Enum):
    DOCUMENTATION = "documentation"
    RULE_BASED = "rule-based"


class ProcessInfo(BaseModel):
    model_config = ConfigDict(extra='allow', frozen=True)

    command: Optional[str] = None
    user: Optional[str] = None
    pid: Optional[Union[int, str]] = None
    cpu: Optional[Union[float, str]] = None
    mem: Optional[Union[float, str]] = None


class ConnectionInfo(BaseModel):
    model_config = ConfigDict(extra='allow', frozen=True, populate_by_name=True)

    protocol: Optional[str] = None
    local_address: Optional[str] = Field(default=None, alias="localAddress")
    state: Optional[str] = None


class LogEntry(BaseModel):
    model_config = ConfigDict(extra='allow', frozen=True)

    message: Optional[str] = None
    source: Optional[str] = None
    timestamp: Optional[Union[float, str]] = None


class ContextEvent(BaseModel):
    """A single observation about a monitored subject.

    Watchers may send any ``type``; unknown kinds are accepted and simply
    yield no keywords. Unrecognised fields are kept so the serialized
    event still reflects what the producer sent.
    """
    model_config = ConfigDict(extra='allow', frozen=True, populate_by_name=True)

    type: str = Field(default="unknown", description="Context event kind")
    subject_id: Optional[str] = None
    timestamp: Optional[Union[float, str]] = None
    source: Optional[str] = None

    commands: List[str] = Field(default_factory=list)
    recent_commands: List[str] = Field(default_factory=list, alias="recentCommands")
    file: Optional[str] = None
    files: List[str] = Field(default_factory=list)
    processes: List[ProcessInfo] = Field(default_factory=list)
    connections: List[ConnectionInfo] = Field(default_factory=list)
    entries: List[LogEntry] = Field(default_factory=list)
    log_file: Optional[str] = Field(default=None, alias="logFile")

    @property
    def kind(self) -> Optional[ContextKind]:
        """The recognised kind, or ``None`` for an unknown type."""
        try:
            return ContextKind(self.type)
        except ValueError:
            return None

    def file_paths(self) -> List[str]:
        paths = list(self.files)
        if self.file:
            paths.insert(0, self.file)
        return paths

    def payload(self, include_time: bool = True) -> Dict[str, Any]:
        """JSON-ready dict of the fields the producer actually set."""
        exclude = None if include_time else {'timestamp'}
        return self.model_dump(mode="json", exclude_defaults=True, exclude=exclude)


@dataclass
class Suggestion:
    """A ranked documentation pointer for a subject's context."""
    id: str
    subject_id: Optional[str]
    relevance_score: float
    type: SuggestionType
    title: str
    content: str = ""
    documentation_id: Optional[str] = None
    rule_id: Optional[str] = None
    source: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    matched_keywords: List[str] = field(default_factory=list)
    oracle_score: Optional[float] = None
    context_snapshot: Dict[str, Any] = field(default_factory=dict)
    feedback: Optional[FeedbackVerdict] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def target_id(self) -> Optional[str]:
        return self.documentation_id or self.rule_id

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['type'] = self.type.value
        data['feedback'] = self.feedback.value if self.feedback else None
        data['created_at'] = self.created_at.isoformat() + "Z"
        return data


@dataclass
class ContextAnalysis:
    """Result of running one context event through the ranking pipeline."""
    keywords: List[str]
    context_vector: Dict[str, int]
    suggestions: List[Suggestion]
    all_suggestions: Optional[List[Suggestion]] = None
    oracle_available: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'suggestions': [s.to_dict() for s in self.suggestions],
            'keywords': list(self.keywords),
            'context_vector': dict(self.context_vector),
        }


class DocumentationEntry(BaseModel):
    """Documentation article as stored in the corpus."""
    id: Optional[str] = None
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1)
    source_url: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    priority: int = 5


class DocumentationUpdate(BaseModel):
    """Partial update of a documentation article; unset fields are left alone."""
    title: Optional[str] = Field(None, min_length=1)
    content: Optional[str] = Field(None, min_length=1)
    source_url: Optional[str] = None
    tags: Optional[List[str]] = None
    keywords: Optional[List[str]] = None
    category: Optional[str] = None
    priority: Optional[int] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude_none=True)

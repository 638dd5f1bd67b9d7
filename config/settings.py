"""Runtime settings for the contextdocs service."""

import os
import logging
from enum import Enum
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class PublishScope(str, Enum):
    """Who receives a ``new-context`` event besides its originating session."""
    SUBJECT = "subject"
    BROADCAST = "broadcast"


class Settings(BaseModel):
    """Service configuration."""

    # Storage
    sqlite_path: str = Field(default="contextdocs.db", description="SQLite database path")
    redis_url: str = Field(default="", description="Redis URL; empty keeps the cache in memory")

    # Ranking
    suggestion_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_suggestions: int = Field(default=10, gt=0)
    oracle_timeout: float = Field(default=5.0, gt=0, description="Seconds to wait for the search index")
    oracle_max_hits: int = Field(default=10, gt=0)

    # Cache TTLs (seconds)
    suggestion_cache_ttl: int = 300
    live_context_ttl: int = 300
    feedback_ttl: int = 86400
    cache_sweep_interval: int = 300
    max_memory_cache_size: int = 1000

    # Distribution
    publish_scope: PublishScope = PublishScope.SUBJECT
    job_queue_size: int = Field(default=100, gt=0)
    job_workers: int = Field(default=2, gt=0)
    subscriber_queue_size: int = Field(default=50, gt=0)

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
    log_file: str = ""

    @classmethod
    def from_env(cls) -> 'Settings':
        """Create settings from environment variables."""
        return cls(
            sqlite_path=os.getenv('CONTEXTDOCS_SQLITE_PATH', 'contextdocs.db'),
            redis_url=os.getenv('REDIS_URL', ''),
            suggestion_threshold=float(os.getenv('SUGGESTION_THRESHOLD', '0.7')),
            max_suggestions=int(os.getenv('MAX_SUGGESTIONS', '10')),
            oracle_timeout=float(os.getenv('ORACLE_TIMEOUT', '5.0')),
            oracle_max_hits=int(os.getenv('ORACLE_MAX_HITS', '10')),
            suggestion_cache_ttl=int(os.getenv('SUGGESTION_CACHE_TTL', '300')),
            live_context_ttl=int(os.getenv('LIVE_CONTEXT_TTL', '300')),
            feedback_ttl=int(os.getenv('FEEDBACK_TTL', '86400')),
            cache_sweep_interval=int(os.getenv('CACHE_SWEEP_INTERVAL', '300')),
            publish_scope=PublishScope(os.getenv('PUBLISH_SCOPE', 'subject').lower()),
            job_queue_size=int(os.getenv('JOB_QUEUE_SIZE', '100')),
            job_workers=int(os.getenv('JOB_WORKERS', '2')),
            subscriber_queue_size=int(os.getenv('SUBSCRIBER_QUEUE_SIZE', '50')),
            log_level=os.getenv('LOG_LEVEL', 'INFO'),
            log_json=os.getenv('LOG_JSON', 'false').lower() in ('1', 'true', 'yes'),
            log_file=os.getenv('LOG_FILE', ''),
        )

"""Configuration module for contextdocs.

Provides runtime settings and the immutable keyword catalogues.
"""

from .settings import Settings, PublishScope
from .catalogues import (
    STOP_WORDS,
    TOOL_PATTERNS,
    FAILURE_PATTERNS,
    FAILURE_KEYWORDS,
    DOMAIN_WEIGHTS
)

__all__ = [
    'Settings',
    'PublishScope',
    'STOP_WORDS',
    'TOOL_PATTERNS',
    'FAILURE_PATTERNS',
    'FAILURE_KEYWORDS',
    'DOMAIN_WEIGHTS'
]

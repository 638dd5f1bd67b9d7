"""Immutable catalogues used by the keyword pipeline.

The extractor and vectorizer receive these at construction time so tests
can substitute their own catalogues.
"""

import re
from types import MappingProxyType
from typing import Mapping, Pattern, Tuple

STOP_WORDS = frozenset({
    'the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for',
    'of', 'with', 'by', 'is', 'are', 'was', 'were', 'be', 'been', 'have',
    'has', 'had', 'do', 'does', 'did', 'will', 'would', 'could', 'should'
})

# Literal tool/technology names, matched verbatim against raw text
TOOL_PATTERNS: Tuple[Pattern[str], ...] = tuple(
    re.compile(name) for name in (
        'kubectl', 'docker', 'terraform', 'ansible', 'jenkins',
        'nginx', 'apache', 'mysql', 'postgres', 'redis',
        'kubernetes', 'k8s', 'aws', 'azure', 'gcp',
        'git', 'ssh', 'systemctl', 'service', 'cron',
    )
)

FAILURE_PATTERNS: Tuple[Pattern[str], ...] = tuple(
    re.compile(phrase, re.IGNORECASE) for phrase in (
        'error', 'failed', 'exception', 'timeout',
        'connection refused', 'permission denied',
        'not found', 'cannot', 'unable',
    )
)

FAILURE_KEYWORDS = ('error', 'troubleshooting')

DOMAIN_WEIGHTS: Mapping[str, int] = MappingProxyType({
    # Orchestration, containers and provisioning
    'kubernetes': 3, 'k8s': 3, 'kubectl': 3, 'docker': 3,
    'terraform': 3, 'ansible': 3, 'helm': 3,

    # Cloud providers
    'aws': 2, 'azure': 2, 'gcp': 2, 'ec2': 2, 's3': 2,

    # Databases
    'mysql': 2, 'postgres': 2, 'redis': 2, 'mongodb': 2,

    # Web servers
    'nginx': 2, 'apache': 2, 'haproxy': 2,

    # CI/CD
    'jenkins': 2, 'gitlab': 2, 'github': 2, 'actions': 2,

    # Monitoring
    'prometheus': 2, 'grafana': 2, 'elk': 2, 'splunk': 2,

    # System administration
    'systemctl': 2, 'service': 2, 'cron': 2, 'ssh': 2,

    # Failure signals
    'troubleshooting': 3, 'error': 2, 'debug': 2, 'fix': 2,
})

"""
Remediation matching: classify an error, then find resolved failures that looked like it.
"""

from typing import Any, Dict, List, Optional

from ..models.core import ItemType, RemediationMatch, RemediationResult
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import config
from ..utils.exceptions import CollaboratorUnavailable, ValidationError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError

logger = get_logger(__name__)

UNKNOWN = 'unknown'

# First match wins; matching is case-sensitive substring search
PATTERN_RULES = [
    ('database_error', ('database', 'SQL', 'query', 'pgx', 'gorm')),
    ('connection_error', ('connection', 'timeout', 'ECONNREFUSED', 'dial tcp')),
    ('resource_exhaustion', ('memory', 'OOM', 'OutOfMemory', 'out of memory')),
    ('authentication_error', ('401', '403', 'Unauthorized', 'Forbidden')),
    ('not_found', ('404', 'NotFound', 'not found')),
    ('server_error', ('500', '502', '503', 'Internal Server Error')),
    ('runtime_panic', ('panic', 'runtime error', 'nil pointer')),
]

SEVERITY = {
    'resource_exhaustion': 'critical',
    'runtime_panic': 'critical',
    'database_error': 'high',
    'connection_error': 'high',
    'server_error': 'high',
    'authentication_error': 'medium',
    'performance': 'medium',
    'not_found': 'low',
}

DEFAULT_SEVERITY = 'medium'

PATTERN_ACTIONS = {
    'database_error': [
        'Check database connection settings',
        'Verify database is running and accessible',
        'Check for connection pool exhaustion',
        'Review recent schema migrations',
    ],
    'connection_error': [
        'Check connection pool settings',
        'Verify network connectivity',
        'Check firewall rules and security groups',
        'Review timeout configurations',
    ],
    'resource_exhaustion': [
        'Check memory usage and limits',
        'Review resource quotas',
        'Scale up resources if needed',
        'Check for memory leaks',
    ],
    'authentication_error': [
        'Verify credentials are correct',
        'Check token expiration',
        'Review permission settings',
        'Verify authentication service is running',
    ],
    'not_found': [
        'Verify the resource exists',
        'Check for typos in identifiers',
        'Review routing configuration',
        'Check if resource was deleted',
    ],
    'server_error': [
        'Check application logs for details',
        'Review recent deployments',
        'Check upstream service health',
        'Verify configuration settings',
    ],
    'runtime_panic': [
        'Review stack trace for nil pointer access',
        'Check for unsafe type assertions',
        'Add defensive nil checks',
        'Review error handling patterns',
    ],
    'performance': [
        'Check for N+1 queries',
        'Review database indexes',
        'Check for resource bottlenecks',
        'Consider caching strategies',
    ],
    UNKNOWN: [
        'Review full error message and context',
        'Check recent changes to the system',
        'Consult documentation',
        'Escalate to on-call engineer',
    ],
}


def classify_pattern(message: Optional[str], stack_trace: Optional[str] = None) -> str:
    """
    Classify an error by keyword, checking the stack trace and message together.

    This is the only classifier in the system; event ingestion uses it too.

    Args:
        message: Error message or title
        stack_trace: Optional stack trace

    Returns:
        Pattern name, 'unknown' when no rule matches
    """
    text = f"{stack_trace or ''} {message or ''}"
    for pattern, keywords in PATTERN_RULES:
        if any(keyword in text for keyword in keywords):
            return pattern
    return UNKNOWN


def classify_severity(pattern: Optional[str]) -> str:
    return SEVERITY.get(pattern, DEFAULT_SEVERITY)


def suggested_actions(pattern: Optional[str]) -> List[str]:
    return list(PATTERN_ACTIONS.get(pattern, PATTERN_ACTIONS[UNKNOWN]))


def _to_match(hit: Dict[str, Any]) -> RemediationMatch:
    doc = hit['document']
    details = doc.get('details') or {}
    prevention = details.get('prevention') or []
    if isinstance(prevention, str):
        prevention = [prevention]
    return RemediationMatch(id=doc.get('id', hit['id']),
                            title=doc.get('title', ''),
                            root_cause=details.get('root_cause', ''),
                            resolution=details.get('resolution', ''),
                            prevention=list(prevention),
                            similarity=round(1.0 - hit['distance'], 2),
                            incident_date=doc.get('date'))


class RemediationMatcher:
    """Finds resolved failures similar to an incoming error via the embedding service and k-NN search."""

    def __init__(self, store: Optional[OpenSearchClient] = None, embed: Optional[BedrockEmbed] = None):
        self.store = store if store is not None else OpenSearchClient(config.opensearch)
        self.embed = embed if embed is not None else BedrockEmbed(config.bedrock_embed)

    def remediate(self,
                  message: Optional[str],
                  stack_trace: Optional[str] = None,
                  pattern: Optional[str] = None,
                  top_k: Optional[int] = None) -> RemediationResult:
        """
        Classify an error and retrieve the closest resolved failures.

        Args:
            message: Error message
            stack_trace: Optional stack trace
            pattern: Pattern override; skips classification
            top_k: Number of matches (config default when None)

        Returns:
            RemediationResult with pattern, severity, matches and the pattern's checklist

        Raises:
            ValidationError: If both message and stack trace are empty, or top_k is not positive
            CollaboratorUnavailable: If the embedding service or the store fails; no partial result is returned
        """
        top_k = config.remediation.top_k if top_k is None else int(top_k)
        if top_k <= 0:
            raise ValidationError(f'top_k must be positive, got {top_k}')

        context_text = ' '.join(part for part in (message, stack_trace) if part)
        if not context_text.strip():
            raise ValidationError('An error message or stack trace is required')

        pattern = pattern or classify_pattern(message, stack_trace)
        severity = classify_severity(pattern)

        try:
            vector = self.embed.embed_query(context_text)
        except BedrockEmbedError as e:
            logger.error(f'Embedding failed during remediation: {e}')
            raise CollaboratorUnavailable(f'Embedding service unavailable: {e}')

        filters: Dict[str, Any] = {'type': ItemType.FAILURE.value, 'status': 'resolved'}
        if pattern != UNKNOWN:
            filters['pattern'] = pattern

        try:
            hits = self.store.knn_search('item', vector, top_k, filters=filters)
        except OpenSearchError as e:
            logger.error(f'Similarity search failed during remediation: {e}')
            raise CollaboratorUnavailable(f'Knowledge store unavailable: {e}')

        matches = [_to_match(hit) for hit in hits[:top_k]]
        logger.info(f'Remediation for {pattern} ({severity}) found {len(matches)} similar incidents')
        return RemediationResult(pattern=pattern,
                                 severity=severity,
                                 similar_incidents=matches,
                                 suggested_actions=suggested_actions(pattern))

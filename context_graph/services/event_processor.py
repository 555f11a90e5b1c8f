"""
Event ingestion: turns error, metric and deploy events from external applications into knowledge items.
"""

import uuid
from typing import Any, Dict, List, Optional

from ..models.core import ItemType, KnowledgeItem
from ..utils.exceptions import ValidationError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import parse_event_date
from .knowledge_service import KnowledgeService
from .remediation_matcher import classify_pattern, classify_severity

logger = get_logger(__name__)

ROOT_CAUSE_MARKERS = ('Error', 'Exception', 'panic')
UNKNOWN_ROOT_CAUSE = 'Unknown, needs investigation'


def build_error_title(params: Dict[str, Any]) -> str:
    title = params.get('title') or 'Unknown error'
    app = params.get('app_name')
    return f'{title} in {app}' if app else title


def extract_error_line(stack_trace: str) -> str:
    """First stack line naming an error, exception or panic; otherwise the head of the trace."""
    for line in stack_trace.split('\n'):
        if any(marker in line for marker in ROOT_CAUSE_MARKERS):
            return line.strip()
    return stack_trace[:200]


def extract_root_cause(params: Dict[str, Any]) -> str:
    if params.get('root_cause'):
        return params['root_cause']
    if params.get('stack_trace'):
        return extract_error_line(params['stack_trace'])
    if params.get('message'):
        return params['message']
    return params.get('title') or UNKNOWN_ROOT_CAUSE


def build_impact(params: Dict[str, Any]) -> str:
    app, environment = params.get('app_name'), params.get('environment')
    if app and environment:
        return f'{app} in {environment}'
    if app:
        return f'Affected application: {app}'
    if environment:
        return f'Environment: {environment}'
    return 'Impact unknown'


def _event_pattern(params: Dict[str, Any]) -> str:
    message = ' '.join(part for part in (params.get('message'), params.get('title')) if part)
    return classify_pattern(message, params.get('stack_trace'))


def _unique(values: List[Optional[str]]) -> List[str]:
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


class EventProcessor:
    """Converts application events into failures and snapshots through the KnowledgeService."""

    def __init__(self, knowledge: Optional[KnowledgeService] = None):
        self.knowledge = knowledge if knowledge is not None else KnowledgeService()

    def process_error_event(self, params: Dict[str, Any]) -> KnowledgeItem:
        """
        Record an error event as an investigating failure.

        Args:
            params: title, app_name, stack_trace, message, severity, timestamp, environment, root_cause

        Returns:
            The created failure
        """
        if not (params.get('title') or params.get('message') or params.get('stack_trace')):
            raise ValidationError('Error events need a title, message or stack_trace')

        pattern = _event_pattern(params)
        fields = {
            'title': build_error_title(params),
            'incident_date': parse_event_date(params.get('timestamp')),
            'severity': params.get('severity') or classify_severity(pattern),
            'root_cause': extract_root_cause(params),
            'symptoms': params.get('stack_trace') or params.get('message') or params.get('title'),
            'impact': build_impact(params),
            'status': 'investigating',
            'pattern': pattern,
            'tags': _unique(['auto-captured', params.get('app_name'), params.get('environment'), pattern]),
            'author': 'system',
        }
        if params.get('metadata'):
            fields['metadata'] = params['metadata']

        failure = self.knowledge.create_item(ItemType.FAILURE.value, fields)
        logger.info(f'Captured error event as {failure.id} ({pattern}, {fields["severity"]})')
        return failure

    def process_metric_event(self, params: Dict[str, Any]) -> Optional[KnowledgeItem]:
        """
        Record a performance failure when a metric exceeds its threshold.

        Returns:
            The created failure, or None when the value is within the threshold

        Raises:
            ValidationError: If value or threshold is missing or not numeric
        """
        value, threshold = params.get('value'), params.get('threshold')
        if value is None or threshold is None:
            raise ValidationError('value and threshold are required')
        try:
            value, threshold = float(value), float(threshold)
        except (TypeError, ValueError):
            raise ValidationError('value and threshold must be numeric')

        metric = params.get('metric_name')
        if value <= threshold:
            logger.debug(f'Metric {metric} at {value:g} is within threshold {threshold:g}')
            return None

        fields = {
            'title': f'Performance threshold exceeded: {metric}',
            'incident_date': parse_event_date(params.get('timestamp')),
            'severity': params.get('severity') or 'medium',
            'root_cause': f'Metric {metric} = {value:g} (threshold: {threshold:g})',
            'symptoms': f'{metric} at {value:g}, threshold is {threshold:g}',
            'impact': build_impact(params),
            'status': 'investigating',
            'pattern': 'performance',
            'tags': _unique(['performance', 'auto-captured', params.get('app_name'), metric]),
            'author': 'system',
        }
        failure = self.knowledge.create_item(ItemType.FAILURE.value, fields)
        logger.info(f'Captured metric breach {metric} as {failure.id}')
        return failure

    def process_deploy_event(self, params: Dict[str, Any]) -> KnowledgeItem:
        """Record a deployment as a snapshot."""
        if not params.get('app_name'):
            raise ValidationError('app_name is required')

        header = ' '.join(part for part in ('Deploy', params['app_name'], params.get('version')) if part)
        changes = params.get('changes')
        message = f"{header}: {'; '.join(changes)}" if isinstance(changes, list) and changes else header

        fields = {
            'message': message,
            'commit_hash': params.get('commit_hash') or f'deploy-{uuid.uuid4().hex[:12]}',
            'author': params.get('deployer') or 'system',
            'date': parse_event_date(params.get('timestamp')),
        }
        if params.get('environment'):
            fields['environment'] = params['environment']

        snapshot = self.knowledge.create_item(ItemType.SNAPSHOT.value, fields)
        logger.info(f'Captured deploy of {params["app_name"]} as {snapshot.id}')
        return snapshot


class LogParser:
    """Filters structured log entries down to error levels and records each as an error event."""

    ERROR_LEVELS = frozenset({'ERROR', 'CRITICAL', 'FATAL', 'PANIC'})
    CRITICAL_LEVELS = frozenset({'CRITICAL', 'FATAL', 'PANIC'})

    def __init__(self, processor: Optional[EventProcessor] = None):
        self.processor = processor if processor is not None else EventProcessor()

    @classmethod
    def is_error(cls, log: Dict[str, Any]) -> bool:
        return str(log.get('level') or '').upper() in cls.ERROR_LEVELS

    @classmethod
    def severity_for(cls, level: Optional[str]) -> str:
        level = str(level or '').upper()
        if level in cls.CRITICAL_LEVELS:
            return 'critical'
        if level == 'ERROR':
            return 'high'
        return 'medium'

    @staticmethod
    def extract_title(log: Dict[str, Any]) -> str:
        message = log.get('message') or ''
        return message.split('\n', 1)[0][:120]

    def to_error_event(self, log: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'title': self.extract_title(log),
            'stack_trace': log.get('message'),
            'app_name': log.get('app') or log.get('app_name') or log.get('service') or 'unknown',
            'timestamp': log.get('timestamp'),
            'severity': self.severity_for(log.get('level')),
        }

    def process_batch(self, logs: List[Dict[str, Any]]) -> List[KnowledgeItem]:
        """
        Record every error-level entry of a batch.

        Returns:
            The failures created, in log order
        """
        if not isinstance(logs, list):
            raise ValidationError('logs must be a list of log entries')

        errors = [log for log in logs if isinstance(log, dict) and self.is_error(log)]
        logger.info(f'Log batch: {len(errors)} of {len(logs)} entries are errors')
        return [self.processor.process_error_event(self.to_error_event(log)) for log in errors]

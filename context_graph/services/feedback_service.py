"""
Agent feedback on delivered context, and the aggregate stats used to tune what gets bundled.
"""

import uuid
from collections import Counter
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from ..models.core import Feedback
from ..utils.config import config
from ..utils.exceptions import CollaboratorUnavailable, NotFoundError, ValidationError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import to_iso, utc_now, utc_today

logger = get_logger(__name__)

MIN_RATING = 1
MAX_RATING = 5
DEFAULT_LIST_LIMIT = 50
STATS_TOP_N = 10

ID_LIST_FIELDS = ('items_helpful', 'items_not_helpful', 'items_used')


def _id_list(fields: Dict[str, Any], name: str) -> List[str]:
    value = fields.get(name)
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ValidationError(f'{name} must be a list of item ids')
    return [str(item_id) for item_id in value]


class FeedbackService:
    """Stores feedback records and summarizes them over a trailing window."""

    def __init__(self, store: Optional[OpenSearchClient] = None):
        self.store = store if store is not None else OpenSearchClient(config.opensearch)

    def _call(self, operation: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except OpenSearchError as e:
            logger.error(f'Store failure during {operation}: {e}')
            raise CollaboratorUnavailable(f'{operation} failed: {e}')

    def create_feedback(self, fields: Dict[str, Any]) -> Feedback:
        """
        Record feedback for a query.

        Args:
            fields: query_id, query_text, overall_rating (1-5, optional), items_helpful, items_not_helpful,
                items_used, missing_context, agent_id, session_id, metadata

        Raises:
            ValidationError: If the rating is outside 1-5 or an item list is not a list
            CollaboratorUnavailable: If the store fails
        """
        fields = dict(fields or {})
        rating = fields.get('overall_rating')
        if rating is not None:
            if isinstance(rating, bool) or not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
                raise ValidationError(f'overall_rating must be between {MIN_RATING} and {MAX_RATING}, got {rating!r}')

        metadata = fields.get('metadata') or {}
        if not isinstance(metadata, dict):
            raise ValidationError('metadata must be an object')

        feedback = Feedback(id=str(uuid.uuid4()),
                            query_id=fields.get('query_id'),
                            query_text=fields.get('query_text'),
                            overall_rating=rating,
                            missing_context=fields.get('missing_context') or None,
                            agent_id=fields.get('agent_id'),
                            session_id=fields.get('session_id'),
                            metadata=metadata,
                            created_at=utc_now(),
                            **{name: _id_list(fields, name) for name in ID_LIST_FIELDS})
        self._call('create feedback', self.store.create_document, 'feedback', feedback.id, feedback.to_document())
        logger.info(f'Recorded feedback {feedback.id} for query {feedback.query_id} (rating {rating})')
        return feedback

    def get_feedback(self, feedback_id: str) -> Feedback:
        doc = self._call('get feedback', self.store.get_document, 'feedback', feedback_id)
        if doc is None:
            raise NotFoundError(f'Feedback {feedback_id} not found')
        return Feedback.from_document(doc)

    def list_feedback(self, agent_id: Optional[str] = None, limit: int = DEFAULT_LIST_LIMIT) -> List[Feedback]:
        """Newest feedback first, optionally for one agent."""
        filters = {'agent_id': agent_id} if agent_id else None
        docs = self._call('list feedback',
                          self.store.search_documents,
                          'feedback',
                          filters=filters,
                          sort=[('created_at', 'desc')],
                          size=limit)
        return [Feedback.from_document(doc) for doc in docs]

    def feedback_stats(self, days_back: int = 30) -> Dict[str, Any]:
        """
        Summary of feedback recorded since midnight UTC, days_back days ago.

        Returns:
            total_feedback, avg_rating (None without rated feedback), the ten most_helpful_items by
            helpful_count, the ten most common_missing_context texts, and days_back
        """
        if days_back < 0:
            raise ValidationError(f'days_back must be >= 0, got {days_back}')
        since = datetime.combine(utc_today() - timedelta(days=days_back), time.min, tzinfo=timezone.utc)

        total = 0
        ratings = []
        helpful: Counter = Counter()
        missing: Counter = Counter()
        docs = self.store.scan_documents('feedback', ranges={'created_at': {'gte': to_iso(since)}})
        try:
            for doc in docs:
                total += 1
                if doc.get('overall_rating') is not None:
                    ratings.append(int(doc['overall_rating']))
                helpful.update(item_id for item_id in doc.get('items_helpful') or [] if item_id)
                if doc.get('missing_context'):
                    missing[doc['missing_context']] += 1
        except OpenSearchError as e:
            logger.error(f'Store failure during feedback stats: {e}')
            raise CollaboratorUnavailable(f'feedback stats failed: {e}')

        return {
            'total_feedback': total,
            'avg_rating': round(sum(ratings) / len(ratings), 2) if ratings else None,
            'most_helpful_items': [{
                'id': item_id,
                'helpful_count': count
            } for item_id, count in helpful.most_common(STATS_TOP_N)],
            'common_missing_context': [{
                'text': text,
                'count': count
            } for text, count in missing.most_common(STATS_TOP_N)],
            'days_back': days_back,
        }

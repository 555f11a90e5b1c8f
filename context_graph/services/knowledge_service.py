"""
Knowledge Service for item ingestion: ids, tags, embeddings, storage and auto-linking.
"""

import json
import threading
from datetime import date
from typing import Any, Dict, List, Optional

from ..models.core import DEFAULT_STATUSES, ItemType, KnowledgeItem
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import config
from ..utils.exceptions import CollaboratorUnavailable, ConcurrencyConflict, NotFoundError, ValidationError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import parse_date, utc_today
from .relationship_graph import RelationshipGraph

logger = get_logger(__name__)

TAG_KEYWORDS = {
    'database': ['database', 'db', 'postgresql', 'postgres', 'mysql', 'sql', 'query', 'migration', 'schema', 'table',
                 'index'],
    'performance': ['performance', 'slow', 'latency', 'throughput', 'bottleneck', 'optimization', 'cache', 'load'],
    'infrastructure': ['infrastructure', 'deploy', 'deployment', 'server', 'container', 'docker', 'kubernetes', 'k8s',
                       'aws', 'cloud'],
    'security': ['security', 'auth', 'authentication', 'authorization', 'vulnerability', 'xss', 'csrf', 'injection'],
    'frontend': ['frontend', 'ui', 'ux', 'component', 'react', 'liveview', 'template', 'css', 'javascript',
                 'browser'],
    'api': ['api', 'endpoint', 'rest', 'graphql', 'http', 'request', 'response', 'json'],
    'testing': ['test', 'testing', 'spec', 'unit', 'integration', 'e2e', 'coverage'],
    'monitoring': ['monitoring', 'alert', 'logging', 'metric', 'observability', 'tracing'],
    'caching': ['cache', 'caching', 'redis', 'memcached', 'ttl', 'invalidation', 'stampede'],
    'incident': ['incident', 'outage', 'downtime', 'failure', 'crash', 'error', 'exception'],
}

# Fields that feed the embedding, per item type
EMBEDDING_FIELDS = {
    ItemType.ADR: ('title', 'decision', 'context'),
    ItemType.FAILURE: ('title', 'root_cause', 'symptoms', 'resolution'),
    ItemType.MEETING: ('title', 'decisions'),
    ItemType.SNAPSHOT: ('message', 'commit_hash'),
}

TAG_SOURCE_FIELDS = ('title', 'decision', 'context', 'root_cause', 'symptoms', 'resolution', 'decisions', 'message')


def auto_tags(text: Optional[str]) -> List[str]:
    """Sorted keyword-bucket tags for a piece of text (case-insensitive substring match)."""
    if not text:
        return []
    lower = text.lower()
    return sorted(tag for tag, keywords in TAG_KEYWORDS.items() if any(keyword in lower for keyword in keywords))


def _as_text(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


class KnowledgeService:
    """Creates and reads knowledge items; the ingestion side of the graph."""

    def __init__(self,
                 store: Optional[OpenSearchClient] = None,
                 embed: Optional[BedrockEmbed] = None,
                 graph: Optional[RelationshipGraph] = None):
        self.store = store if store is not None else OpenSearchClient(config.opensearch)
        self.embed = embed if embed is not None else BedrockEmbed(config.bedrock_embed)
        self.graph = graph if graph is not None else RelationshipGraph(store=self.store)
        self._id_lock = threading.Lock()

    def next_id(self, item_type: str) -> str:
        """
        Next sequential id for a type, e.g. 'ADR-004' when ADR-003 is the highest.

        The highest numeric suffix comes from a max aggregation over the stored ``sequence`` field.

        Returns:
            PREFIX-NNN, starting at PREFIX-001
        """
        parsed = ItemType.parse(item_type, 'item type')
        try:
            highest = self.store.max_value('item', 'sequence', filters={'type': parsed.value})
        except OpenSearchError as e:
            raise CollaboratorUnavailable(f'Could not allocate an id: {e}')
        return f'{parsed.id_prefix}-{int(highest or 0) + 1:03d}'

    def _item_date(self, fields: Dict[str, Any]) -> date:
        raw = fields.pop('date', None) or fields.pop('incident_date', None) or fields.pop('created_date', None)
        try:
            return parse_date(raw) or utc_today()
        except (TypeError, ValueError):
            raise ValidationError(f'Invalid date: {raw!r}')

    def create_item(self, item_type: str, fields: Dict[str, Any]) -> KnowledgeItem:
        """
        Create a knowledge item.

        Assigns the next id when none is given, adds keyword tags when none are given, stores the item
        with its embedding and auto-links every item id mentioned in its text (meetings excepted).

        Args:
            item_type: adr, failure, meeting or snapshot
            fields: Item fields; anything beyond the common projection is kept in details

        Returns:
            The stored KnowledgeItem

        Raises:
            ValidationError: On an unknown type or status, a bad date, missing text or a duplicate id
            CollaboratorUnavailable: If embedding, storage or linking fails
        """
        parsed = ItemType.parse(item_type, 'item type')
        fields = dict(fields or {})
        fields.pop('type', None)

        if parsed == ItemType.MEETING and 'meeting_title' in fields:
            fields.setdefault('title', fields.pop('meeting_title'))
        if parsed == ItemType.SNAPSHOT:
            fields.setdefault('title', fields.get('message', ''))

        status = fields.pop('status', None) or DEFAULT_STATUSES[parsed]
        if status not in parsed.statuses:
            raise ValidationError(f"Invalid status '{status}' for {parsed.value}: must be one of "
                                  f"{', '.join(sorted(parsed.statuses))}")

        item_date = self._item_date(fields)
        text = ' '.join(_as_text(fields.get(name)) for name in EMBEDDING_FIELDS[parsed])
        if not text.strip():
            raise ValidationError(f'{parsed.value} has no text to index')

        tags = fields.pop('tags', None)
        if tags is None:
            tags = auto_tags(' '.join(_as_text(fields.get(name)) for name in TAG_SOURCE_FIELDS))
            if parsed == ItemType.SNAPSHOT:
                tags = ['git-snapshot'] + tags

        try:
            vector = self.embed.embed_document(text)
        except BedrockEmbedError as e:
            logger.error(f'Embedding failed for new {parsed.value}: {e}')
            raise CollaboratorUnavailable(f'Embedding service unavailable: {e}')

        with self._id_lock:
            item_id = fields.pop('id', None) or self.next_id(parsed.value)
            item = KnowledgeItem(id=item_id,
                                 type=parsed,
                                 status=status,
                                 title=str(fields.pop('title', '') or ''),
                                 date=item_date,
                                 tags=list(tags),
                                 access_count_30d=int(fields.pop('access_count_30d', 0) or 0),
                                 reference_count=int(fields.pop('reference_count', 0) or 0),
                                 pattern=fields.pop('pattern', None),
                                 details=fields)
            document = item.to_document()
            document['embedding'] = vector
            try:
                self.store.create_document('item', item_id, document)
            except ConcurrencyConflict:
                raise ValidationError(f'{item_id} already exists')
            except OpenSearchError as e:
                logger.error(f'Failed to store {item_id}: {e}')
                raise CollaboratorUnavailable(f'Knowledge store unavailable: {e}')

        logger.info(f'Created {parsed.value} {item_id}')

        if parsed != ItemType.MEETING:
            self.graph.auto_link_item(item_id, parsed.value, text)
        return item

    def get_item(self, item_id: str) -> KnowledgeItem:
        """
        Raises:
            NotFoundError: If no item has this id
        """
        try:
            doc = self.store.get_document('item', item_id)
        except OpenSearchError as e:
            raise CollaboratorUnavailable(f'Knowledge store unavailable: {e}')
        if doc is None:
            raise NotFoundError(f'Item {item_id} not found')
        return KnowledgeItem.from_document(doc)

    def list_items(self, item_type: Optional[str] = None, status: Optional[str] = None,
                   limit: int = 100) -> List[KnowledgeItem]:
        """Items newest first, optionally filtered by type and status."""
        filters: Dict[str, Any] = {}
        if item_type:
            filters['type'] = ItemType.parse(item_type, 'item type').value
        if status:
            filters['status'] = status
        try:
            documents = self.store.search_documents('item', filters=filters, sort=[('date', 'desc')], size=limit)
        except OpenSearchError as e:
            raise CollaboratorUnavailable(f'Knowledge store unavailable: {e}')
        return [KnowledgeItem.from_document(doc) for doc in documents]

    def record_access(self, item_id: str) -> int:
        """Atomically bump access_count_30d and return the new value."""
        try:
            count = self.store.increment_counter('item', item_id, 'access_count_30d')
        except OpenSearchError as e:
            raise CollaboratorUnavailable(f'Knowledge store unavailable: {e}')
        if count is None:
            raise NotFoundError(f'Item {item_id} not found')
        return count

    def update_status(self, item_id: str, status: str) -> KnowledgeItem:
        """
        Move an item to another status of its own type.

        Raises:
            ValidationError: If the status does not belong to the item's type
            NotFoundError: If no item has this id
        """
        item = self.get_item(item_id)
        if status not in item.type.statuses:
            raise ValidationError(f"Invalid status '{status}' for {item.type.value}: must be one of "
                                  f"{', '.join(sorted(item.type.statuses))}")
        try:
            updated = self.store.update_document('item', item_id, {'status': status})
        except OpenSearchError as e:
            raise CollaboratorUnavailable(f'Knowledge store unavailable: {e}')
        if not updated:
            raise NotFoundError(f'Item {item_id} not found')

        logger.info(f'{item_id} status {item.status} -> {status}')
        item.status = status
        return item

    def timeline(self, date_from: Any, date_to: Any) -> List[KnowledgeItem]:
        """Every item dated within [date_from, date_to], oldest first."""
        try:
            start, end = parse_date(date_from), parse_date(date_to)
        except (TypeError, ValueError) as e:
            raise ValidationError(f'Invalid timeline range: {e}')
        if start is None or end is None:
            raise ValidationError('Both date_from and date_to are required')

        try:
            documents = list(
                self.store.scan_documents('item',
                                          ranges={'date': {
                                              'gte': start.isoformat(),
                                              'lte': end.isoformat()
                                          }},
                                          sort=[('date', 'asc')]))
        except OpenSearchError as e:
            raise CollaboratorUnavailable(f'Knowledge store unavailable: {e}')

        items = [KnowledgeItem.from_document(doc) for doc in documents]
        items.sort(key=lambda item: item.date or start)
        return items

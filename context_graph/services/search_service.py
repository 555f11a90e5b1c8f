"""
Semantic search over every item type, with optional tag, date and type filters.
"""

import json
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from ..models.core import ARCHIVED, ItemType, SearchResult
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import config
from ..utils.exceptions import CollaboratorUnavailable, ValidationError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import parse_date

logger = get_logger(__name__)

# Meetings are searched only while active; the other types while not archived
SEARCH_SCOPE = {
    ItemType.ADR: ({'type': ItemType.ADR.value}, {'status': ARCHIVED}),
    ItemType.FAILURE: ({'type': ItemType.FAILURE.value}, {'status': ARCHIVED}),
    ItemType.MEETING: ({'type': ItemType.MEETING.value, 'status': 'active'}, None),
    ItemType.SNAPSHOT: ({'type': ItemType.SNAPSHOT.value}, {'status': ARCHIVED}),
}


def _content(doc: Dict[str, Any], item_type: ItemType) -> str:
    details = doc.get('details') or {}
    if item_type == ItemType.ADR:
        return str(details.get('decision') or '')
    if item_type == ItemType.FAILURE:
        return str(details.get('root_cause') or '')
    if item_type == ItemType.MEETING:
        return json.dumps(details.get('decisions') or {}, sort_keys=True, default=str)
    return str(details.get('message') or doc.get('title') or '')


def result_from_document(doc: Dict[str, Any], similarity: float) -> SearchResult:
    """Project a stored item onto the search result shape."""
    item_type = ItemType.parse(doc.get('type'), 'item type')
    return SearchResult(id=doc['id'],
                        type=item_type.value,
                        title=doc.get('title') or '',
                        content=_content(doc, item_type),
                        tags=list(doc.get('tags') or []),
                        created_date=parse_date(doc.get('date')),
                        similarity=similarity)


def parse_types(types: Optional[Iterable[str]]) -> List[ItemType]:
    if not types:
        return list(ItemType)
    return [ItemType.parse(item_type, 'type') for item_type in types]


class SearchService:
    """Embeds a query once and runs one filtered k-NN search per item type."""

    def __init__(self, store: Optional[OpenSearchClient] = None, embed: Optional[BedrockEmbed] = None):
        self.store = store if store is not None else OpenSearchClient(config.opensearch)
        self.embed = embed if embed is not None else BedrockEmbed(config.bedrock_embed)

    def semantic_search(self, query: str, top_k: Optional[int] = None,
                        types: Optional[Iterable[str]] = None) -> List[SearchResult]:
        """
        Items most similar to the query across the requested types.

        Args:
            query: Free-text query
            top_k: Number of results overall, and per type before merging (config default when None)
            types: Item types to search; all types when empty

        Returns:
            SearchResults ordered by descending similarity, at most top_k

        Raises:
            ValidationError: On an empty query, an unknown type or a non-positive top_k
            CollaboratorUnavailable: If the embedding service or the store fails
        """
        if not query or not query.strip():
            raise ValidationError('query is required')
        top_k = config.search.top_k if top_k is None else int(top_k)
        if top_k <= 0:
            raise ValidationError(f'top_k must be positive, got {top_k}')
        item_types = parse_types(types)

        try:
            vector = self.embed.embed_query(query)
        except BedrockEmbedError as e:
            logger.error(f'Embedding failed during search: {e}')
            raise CollaboratorUnavailable(f'Embedding service unavailable: {e}')

        results: List[SearchResult] = []
        for item_type in item_types:
            filters, exclude = SEARCH_SCOPE[item_type]
            try:
                hits = self.store.knn_search('item', vector, top_k, filters=filters, exclude=exclude)
            except OpenSearchError as e:
                logger.error(f'Similarity search over {item_type.value} items failed: {e}')
                raise CollaboratorUnavailable(f'Knowledge store unavailable: {e}')
            results.extend(result_from_document(hit['document'], round(1.0 - hit['distance'], 4)) for hit in hits)

        results.sort(key=lambda result: result.similarity, reverse=True)
        logger.debug(f'Semantic search over {len(item_types)} types returned {len(results)} candidates')
        return results[:top_k]

    def filtered_search(self,
                        query: str,
                        tags: Optional[Iterable[str]] = None,
                        date_from: Any = None,
                        date_to: Any = None,
                        types: Optional[Iterable[str]] = None,
                        top_k: Optional[int] = None) -> List[SearchResult]:
        """
        Semantic search narrowed after retrieval.

        A result is kept when it carries any of the given tags and its date lies within the inclusive
        [date_from, date_to] range. Undated results are dropped once either bound is set. Filtering
        happens after the top_k cut, so fewer than top_k results may come back.
        """
        try:
            start, end = parse_date(date_from), parse_date(date_to)
        except (TypeError, ValueError) as e:
            raise ValidationError(f'Invalid date filter: {e}')
        wanted = set(tags or [])

        results = self.semantic_search(query, top_k=top_k, types=types)
        if wanted:
            results = [result for result in results if wanted.intersection(result.tags)]
        if start is not None or end is not None:
            results = [result for result in results if _within(result.created_date, start, end)]
        return results


def _within(value: Optional[date], start: Optional[date], end: Optional[date]) -> bool:
    if value is None:
        return False
    return (start is None or value >= start) and (end is None or value <= end)

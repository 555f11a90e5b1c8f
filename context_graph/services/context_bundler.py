"""
Context bundling for agents: semantic search, one hop of graph expansion, ranking and a character budget.
"""

import uuid
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from ..models.core import ContextBundle, ItemType, SearchResult
from ..utils.config import config
from ..utils.exceptions import CollaboratorUnavailable, ValidationError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import age_in_days, utc_today
from .relationship_graph import RelationshipGraph
from .search_service import result_from_document, SearchService

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4
GRAPH_SIMILARITY = 0.5

RECENCY_WEIGHT = 0.3
RELEVANCE_WEIGHT = 0.5
IMPORTANCE_WEIGHT = 0.2

# (max age in days, recency score), first match wins
RECENCY_STEPS = ((30, 1.0), (90, 0.8), (180, 0.6), (365, 0.4))
OLDEST_RECENCY = 0.2
UNDATED_RECENCY = 0.5

IMPORTANCE = {
    ItemType.ADR.value: 0.9,
    ItemType.FAILURE.value: 0.8,
    ItemType.MEETING.value: 0.6,
    ItemType.SNAPSHOT.value: 0.5,
}
PRIORITY_TAGS = ('critical', 'high-priority')

# Share of the character budget per type; meetings and snapshots together form recent_changes
BUDGET_SHARES = (
    (ItemType.ADR.value, 0.4),
    (ItemType.FAILURE.value, 0.3),
    (ItemType.MEETING.value, 0.2),
    (ItemType.SNAPSHOT.value, 0.2),
)


def recency_score(created: Optional[date], today: date) -> float:
    if created is None:
        return UNDATED_RECENCY
    age = age_in_days(created, today)
    for max_age, score in RECENCY_STEPS:
        if age <= max_age:
            return score
    return OLDEST_RECENCY


def importance_score(result: SearchResult) -> float:
    base = IMPORTANCE.get(result.type, 0.5)
    if any(tag in PRIORITY_TAGS for tag in result.tags):
        return min(base + 0.1, 1.0)
    return base


def rank(results: List[SearchResult], today: date) -> List[SearchResult]:
    """Set each result's composite score and order them best first."""
    for result in results:
        result.score = round(RECENCY_WEIGHT * recency_score(result.created_date, today) +
                             RELEVANCE_WEIGHT * result.similarity + IMPORTANCE_WEIGHT * importance_score(result), 4)
    return sorted(results, key=lambda result: result.score, reverse=True)


def take_within_budget(ranked: List[SearchResult], item_type: str, budget: float) -> List[SearchResult]:
    """Best-ranked items of one type, in order, stopping at the first one whose content no longer fits."""
    taken = []
    remaining = budget
    for result in ranked:
        if result.type != item_type:
            continue
        size = len(result.content or '')
        if size > remaining:
            break
        taken.append(result)
        remaining -= size
    return taken


class ContextBundler:
    """Builds the ranked, size-limited context an agent receives for a query."""

    def __init__(self,
                 search: Optional[SearchService] = None,
                 graph: Optional[RelationshipGraph] = None,
                 store: Optional[OpenSearchClient] = None):
        self.store = store if store is not None else OpenSearchClient(config.opensearch)
        self.search = search if search is not None else SearchService(store=self.store)
        self.graph = graph if graph is not None else RelationshipGraph(store=self.store)

    def _hydrate(self, item_id: str) -> Optional[SearchResult]:
        try:
            doc = self.store.get_document('item', item_id)
        except OpenSearchError as e:
            raise CollaboratorUnavailable(f'Knowledge store unavailable: {e}')
        if doc is None:
            logger.debug(f'Related item {item_id} is not in the store, skipping')
            return None
        return result_from_document(doc, GRAPH_SIMILARITY)

    def _expand(self, results: List[SearchResult]) -> List[SearchResult]:
        found = {result.id for result in results}
        seen = set()
        expanded = []
        for result in results:
            candidates: List[Tuple[str, Optional[SearchResult]]] = [(result.id, result)]
            for related in self.graph.find_related(result.id, result.type, depth=1):
                if related.id not in found:
                    candidates.append((related.id, None))
            for item_id, candidate in candidates:
                if item_id in seen:
                    continue
                if candidate is None:
                    candidate = self._hydrate(item_id)
                    if candidate is None:
                        continue
                seen.add(item_id)
                expanded.append(candidate)
        return expanded

    def bundle_context(self,
                       query: str,
                       max_tokens: Optional[int] = None,
                       domains: Optional[Iterable[str]] = None,
                       today: Optional[date] = None) -> ContextBundle:
        """
        Curated context for one query.

        The top semantic matches are expanded with their direct graph neighbours (scored with a fixed
        similarity of 0.5), optionally narrowed to items tagged with one of the domains, ranked by
        0.3 x recency + 0.5 x similarity + 0.2 x importance and cut to a character budget of
        max_tokens x 4, split 40/30/20/20 between ADRs, failures, meetings and snapshots.

        Args:
            query: Free-text query
            max_tokens: Token budget (config default when None)
            domains: Tags an item must carry at least one of; no filtering when empty
            today: Reference date for recency (UTC today by default)

        Returns:
            ContextBundle with a fresh query_id

        Raises:
            ValidationError: On an empty query or a non-positive max_tokens
            CollaboratorUnavailable: If search, the graph or the store fails
        """
        max_tokens = config.search.bundle_max_tokens if max_tokens is None else int(max_tokens)
        if max_tokens <= 0:
            raise ValidationError(f'max_tokens must be positive, got {max_tokens}')
        today = today or utc_today()

        results = self._expand(self.search.semantic_search(query, top_k=config.search.top_k))

        wanted = set(domains or [])
        if wanted:
            results = [result for result in results if wanted.intersection(result.tags)]

        ranked = rank(results, today)
        max_chars = max_tokens * CHARS_PER_TOKEN
        sections: Dict[str, List[SearchResult]] = {
            item_type: take_within_budget(ranked, item_type, max_chars * share)
            for item_type, share in BUDGET_SHARES
        }

        bundle = ContextBundle(query_id=str(uuid.uuid4()),
                               key_decisions=sections[ItemType.ADR.value],
                               known_issues=sections[ItemType.FAILURE.value],
                               recent_changes=sections[ItemType.MEETING.value] + sections[ItemType.SNAPSHOT.value])
        logger.info(f'Bundled {bundle.total_items} of {len(ranked)} candidate items for query {bundle.query_id}')
        return bundle

"""
Relationship graph: typed edges between knowledge items, traversal, auto-linking and export.
"""

import re
from typing import Any, Dict, List, Optional, Set, Tuple

from ..models.core import ARCHIVED, ItemType, RelatedItem, Relationship
from ..utils.config import config
from ..utils.exceptions import CollaboratorUnavailable, ValidationError
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient, NeptuneError
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError

logger = get_logger(__name__)

REFERENCES = 'references'

# Case-sensitive id references, scanned in this order
ID_REFERENCE_PATTERNS = [
    (re.compile(r'ADR-\d+'), ItemType.ADR),
    (re.compile(r'FAIL-\d+'), ItemType.FAILURE),
    (re.compile(r'MEET-\d+'), ItemType.MEETING),
    (re.compile(r'SNAP-\d+'), ItemType.SNAPSHOT),
]


def find_id_references(content: str) -> List[Tuple[str, ItemType]]:
    """List every item id mentioned in the text, repeats included, grouped by type."""
    references = []
    for pattern, item_type in ID_REFERENCE_PATTERNS:
        references.extend((match, item_type) for match in pattern.findall(content or ''))
    return references


class RelationshipGraph:
    """Typed directed edges between items, stored in Neptune; item projections come from the knowledge store."""

    def __init__(self, neptune: Optional[NeptuneClient] = None, store: Optional[OpenSearchClient] = None):
        self.neptune = neptune if neptune is not None else NeptuneClient(config.neptune)
        self.store = store if store is not None else OpenSearchClient(config.opensearch)

    def create_relationship(self,
                            from_id: str,
                            from_type: str,
                            to_id: str,
                            to_type: str,
                            relationship_type: str,
                            strength: float = 1.0) -> Relationship:
        """Insert a new edge. There is no deduplication: parallel edges between the same pair are allowed.

        Args:
            from_id: Source item id
            from_type: Source item type (adr, failure, meeting, snapshot)
            to_id: Target item id
            to_type: Target item type
            relationship_type: Free-form label such as references, implements, fixes
            strength: Edge weight, default 1.0

        Returns:
            The created Relationship

        Raises:
            ValidationError: On an unknown endpoint type or missing id/label
            CollaboratorUnavailable: If the graph store fails
        """
        source_type = ItemType.parse(from_type, 'from_type')
        target_type = ItemType.parse(to_type, 'to_type')
        if not from_id or not to_id:
            raise ValidationError('from_id and to_id are required')
        if not relationship_type or not relationship_type.strip():
            raise ValidationError('relationship_type is required')
        try:
            strength = float(strength)
        except (TypeError, ValueError):
            raise ValidationError(f'Invalid strength: {strength!r}')

        try:
            relationship = self.neptune.create_relationship_edge(from_id, source_type.value, to_id, target_type.value,
                                                                 relationship_type, strength)
        except NeptuneError as e:
            logger.error(f'Failed to create relationship {from_id} -> {to_id}: {e}')
            raise CollaboratorUnavailable(f'Relationship creation failed: {e}')

        logger.debug(f'Created relationship {from_id} -[{relationship_type}]-> {to_id}')
        return relationship

    def find_related(self, item_id: str, item_type: str, depth: Optional[int] = None) -> List[RelatedItem]:
        """Depth-first expansion over outgoing edges.

        Each node is expanded at most once per call. Expanding a node appends all of its direct
        outgoing edges to the result, then each discovered neighbour is expanded with depth - 1
        before moving on to the next sibling. Uses an explicit stack, so cycles and deep graphs
        cannot exhaust the interpreter stack.

        Args:
            item_id: Starting item id
            item_type: Starting item type
            depth: Maximum expansion depth (config default when None)

        Returns:
            RelatedItem entries in discovery order; empty for unknown items or items without edges

        Raises:
            ValidationError: On an unknown item type or negative depth
            CollaboratorUnavailable: If the graph store fails
        """
        start_type = ItemType.parse(item_type, 'item type')
        depth = config.graph.default_depth if depth is None else int(depth)
        if depth < 0:
            raise ValidationError(f'depth must be >= 0, got {depth}')

        visited: Set[Tuple[str, str]] = set()
        results: List[RelatedItem] = []
        stack: List[Tuple[str, str, int]] = [(item_id, start_type.value, depth)]

        while stack:
            node_id, node_type, remaining = stack.pop()
            if remaining <= 0 or (node_id, node_type) in visited:
                continue

            try:
                edges = self.neptune.get_outgoing_relationships(node_id, node_type)
            except NeptuneError as e:
                logger.error(f'Traversal failed at {node_type} {node_id}: {e}')
                raise CollaboratorUnavailable(f'Relationship traversal failed: {e}')
            visited.add((node_id, node_type))

            discovered = [
                RelatedItem(id=edge.to_id,
                            type=edge.to_type.value,
                            relationship=edge.relationship_type,
                            strength=edge.strength) for edge in edges
            ]
            results.extend(discovered)

            # Reversed so the first neighbour is expanded first
            for neighbour in reversed(discovered):
                stack.append((neighbour.id, neighbour.type, remaining - 1))

        logger.debug(f'find_related({item_id}, {start_type.value}, depth={depth}) visited {len(visited)} nodes, '
                     f'returned {len(results)} entries')
        return results

    def auto_link_item(self, item_id: str, item_type: str, content: str) -> List[Relationship]:
        """Create a 'references' edge for every id mentioned in the content, except the item's own id.

        Repeated mentions create repeated edges.

        Returns:
            The created relationships, in scan order
        """
        source_type = ItemType.parse(item_type, 'item type')
        created = []
        for referenced_id, referenced_type in find_id_references(content):
            if referenced_id == item_id:
                continue
            created.append(self.create_relationship(item_id, source_type.value, referenced_id, referenced_type.value,
                                                    REFERENCES))

        if created:
            logger.info(f'Auto-linked {item_id} to {len(created)} referenced items')
        return created

    def _collect_nodes(self, item_type: ItemType, include_archived: bool, limit: int) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {'type': item_type.value}
        exclude = None
        if not include_archived:
            # ADRs and failures have several live statuses; meetings and snapshots only show when active
            if item_type in (ItemType.ADR, ItemType.FAILURE):
                exclude = {'status': ARCHIVED}
            else:
                filters['status'] = 'active'

        documents = self.store.search_documents('item', filters=filters, exclude=exclude, size=limit)
        return [{
            'id': doc['id'],
            'type': item_type.value,
            'title': doc.get('title', ''),
            'status': doc.get('status', ''),
            'tags': doc.get('tags') or [],
            'created_date': doc.get('date'),
            'reference_count': doc.get('reference_count') or 0,
        } for doc in documents]

    def export_graph(self, include_archived: bool = False, max_nodes: Optional[int] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Export items and every edge for visualization.

        Args:
            include_archived: Include archived items
            max_nodes: Overall node budget, split evenly across the four item types

        Returns:
            {'nodes': [...], 'edges': [...]}

        Raises:
            CollaboratorUnavailable: If either store fails
        """
        max_nodes = config.graph.max_nodes if max_nodes is None else int(max_nodes)
        if max_nodes < 0:
            raise ValidationError(f'max_nodes must be >= 0, got {max_nodes}')
        per_type = max_nodes // len(ItemType)

        try:
            nodes = []
            if per_type > 0:
                for item_type in ItemType:
                    nodes.extend(self._collect_nodes(item_type, include_archived, per_type))
            edges = [relationship.to_dict() for relationship in self.neptune.get_all_relationships()]
        except (OpenSearchError, NeptuneError) as e:
            logger.error(f'Graph export failed: {e}')
            raise CollaboratorUnavailable(f'Graph export failed: {e}')

        logger.info(f'Exported graph with {len(nodes)} nodes and {len(edges)} edges')
        return {'nodes': nodes, 'edges': edges}

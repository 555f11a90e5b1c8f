"""
Amazon Neptune client for relationship edges, using the Gremlin Python driver with AWS SigV4 authentication.
"""

import uuid
from functools import wraps
from typing import Any, Dict, List

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __

from ..models.core import ItemType, Relationship
from .config import NeptuneConfig
from .logging_config import get_logger
from .timestamp_utils import parse_datetime, to_iso

logger = get_logger(__name__)

EDGE_LABEL = 'relationship'


class NeptuneError(Exception):
    """Custom exception for Neptune errors."""
    pass


def translate_neptune_errors(func):
    """Decorator that turns driver failures into NeptuneError.

    A closed transport triggers a reconnect so the next call can succeed; the failed call itself is not retried.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except NeptuneError:
            raise
        except Exception as e:
            logger.error(f'Error in {func.__name__}: {e}')
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning('Neptune transport closed, reconnecting for subsequent calls')
                self.close()
                self._connect()
            raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _first(data: Dict[Any, Any], key: str, default: Any = None) -> Any:
    """value_map returns vertex properties as lists and edge properties as scalars."""
    value = data.get(key, default)
    if isinstance(value, list):
        return value[0] if value else default
    return value


class NeptuneClient:
    """Amazon Neptune client holding one vertex per knowledge item and one edge per relationship."""

    def __init__(self, config: NeptuneConfig):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
        """
        self.config = config
        self.connection = None
        self.g = None
        self._connect()

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = Session().region_name or self.config.region or 'us-east-1'

        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=request.headers.items(),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))

        # Every traversal is bounded server-side
        self.g = traversal().with_remote(self.connection).with_('evaluationTimeout', self.config.timeout_ms)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()

    def _item_vertex(self, item_id: str, item_type: str):
        """Traversal that finds the item vertex or creates it."""
        return __.V().has(item_type, 'item_id', item_id).fold()\
            .coalesce(__.unfold(), __.addV(item_type).property('item_id', item_id))

    @translate_neptune_errors
    def create_relationship_edge(self,
                                 from_id: str,
                                 from_type: str,
                                 to_id: str,
                                 to_type: str,
                                 relationship_type: str,
                                 strength: float = 1.0) -> Relationship:
        """
        Add a relationship edge, creating either endpoint vertex if needed.

        Edges are never merged: calling this twice produces two parallel edges.

        Returns:
            The created Relationship
        """
        edge_id = str(uuid.uuid4())
        created_at = to_iso()

        self.g.V().has(from_type, 'item_id', from_id).fold()\
            .coalesce(__.unfold(), __.addV(from_type).property('item_id', from_id))\
            .addE(EDGE_LABEL).to(self._item_vertex(to_id, to_type))\
            .property('edge_id', edge_id)\
            .property('from_id', from_id)\
            .property('from_type', from_type)\
            .property('to_id', to_id)\
            .property('to_type', to_type)\
            .property('relationship_type', relationship_type)\
            .property('strength', float(strength))\
            .property('created_at', created_at)\
            .next()

        logger.debug(f'Created {relationship_type} edge {from_id} -> {to_id}')
        return Relationship(from_id=from_id,
                            from_type=ItemType(from_type),
                            to_id=to_id,
                            to_type=ItemType(to_type),
                            relationship_type=relationship_type,
                            strength=float(strength),
                            id=edge_id,
                            created_at=parse_datetime(created_at))

    def _to_relationship(self, data: Dict[Any, Any]) -> Relationship:
        return Relationship(from_id=_first(data, 'from_id'),
                            from_type=ItemType(_first(data, 'from_type')),
                            to_id=_first(data, 'to_id'),
                            to_type=ItemType(_first(data, 'to_type')),
                            relationship_type=_first(data, 'relationship_type', ''),
                            strength=float(_first(data, 'strength', 1.0)),
                            id=_first(data, 'edge_id'),
                            created_at=parse_datetime(_first(data, 'created_at')))

    @translate_neptune_errors
    def get_outgoing_relationships(self, item_id: str, item_type: str) -> List[Relationship]:
        """
        Direct outgoing edges of one item, in creation order.

        Returns:
            List of Relationship objects, empty for an unknown item
        """
        edges = self.g.V().has(item_type, 'item_id', item_id)\
            .out_e(EDGE_LABEL)\
            .order().by('created_at')\
            .value_map().to_list()

        relationships = [self._to_relationship(data) for data in edges]
        logger.debug(f'Found {len(relationships)} outgoing edges for {item_type} {item_id}')
        return relationships

    @translate_neptune_errors
    def get_all_relationships(self) -> List[Relationship]:
        """
        Every relationship edge in the graph.

        Returns:
            List of Relationship objects
        """
        edges = self.g.E().has_label(EDGE_LABEL).order().by('created_at').value_map().to_list()
        return [self._to_relationship(data) for data in edges]

    @translate_neptune_errors
    def cleanup(self) -> bool:
        """
        Clean up all data from Neptune (vertices and edges).

        Returns:
            True if cleanup was successful
        """
        logger.info('Deleting all edges from Neptune...')
        self.g.E().drop().iterate()
        logger.info('Deleting all vertices from Neptune...')
        self.g.V().drop().iterate()
        return True

    @translate_neptune_errors
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy
        """
        self.g.V().limit(1).count().next()
        return True

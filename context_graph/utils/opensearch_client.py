"""
OpenSearch client wrapper acting as the knowledge store: items, debates and k-NN search.
"""

from typing import Any, Dict, Iterator, List, Optional, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import ConflictError, NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .exceptions import ConcurrencyConflict
from .logging_config import get_logger

logger = get_logger(__name__)

INDEX_TYPES = ('item', 'debate', 'debate_message', 'debate_judgment', 'feedback')

SCAN_PAGE_SIZE = 500

# nmslib applies the bool filter after the k nearest neighbours are found, so more candidates are fetched
KNN_CANDIDATE_FACTOR = 10
KNN_MAX_CANDIDATES = 10000


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


def _keyword(*names: str) -> Dict[str, Dict[str, str]]:
    return {name: {'type': 'keyword'} for name in names}


class OpenSearchClient:
    """OpenSearch client with AWS authentication, bounded timeouts and no client-side retries."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config

        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
        endpoint = config.endpoint
        if '://' in endpoint:
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=True,
                                 verify_certs=True,
                                 connection_class=RequestsHttpConnection,
                                 timeout=config.timeout,
                                 max_retries=0,
                                 retry_on_timeout=False)

        logger.info(f'Initialized OpenSearch knowledge store for endpoint: {config.endpoint}')

    def index_name(self, index_type: str) -> str:
        if index_type not in INDEX_TYPES:
            raise OpenSearchError(f'Unknown index type: {index_type}')
        return f'{self.config.index_prefix}_{index_type}'

    def _mapping(self, index_type: str) -> Dict[str, Any]:
        if index_type == 'item':
            properties = {
                **_keyword('id', 'type', 'status', 'tags', 'pattern'),
                'title': {
                    'type': 'text'
                },
                'date': {
                    'type': 'date'
                },
                'sequence': {
                    'type': 'integer'
                },
                'access_count_30d': {
                    'type': 'integer'
                },
                'reference_count': {
                    'type': 'integer'
                },
                'details': {
                    'type': 'object',
                    'enabled': False
                },
                'embedding': {
                    'type': 'knn_vector',
                    'dimension': self.config.dimension,
                    'method': {
                        'name': 'hnsw',
                        'space_type': 'cosinesimil',
                        'engine': 'nmslib'
                    }
                }
            }
            return {'mappings': {'properties': properties}, 'settings': {'index': {'knn': True, 'knn.algo_param.ef_search': 100}}}

        if index_type == 'debate':
            properties = {
                **_keyword('id', 'resource_id', 'resource_type', 'status'),
                'message_count': {
                    'type': 'integer'
                },
                'judge_triggered_at': {
                    'type': 'date'
                },
                'created_at': {
                    'type': 'date'
                }
            }
        elif index_type == 'debate_message':
            properties = {
                **_keyword('id', 'debate_id', 'contributor_id', 'contributor_type', 'stance'),
                'argument': {
                    'type': 'text'
                },
                'created_at': {
                    'type': 'date'
                }
            }
        elif index_type == 'feedback':
            properties = {
                **_keyword('id', 'query_id', 'agent_id', 'session_id', 'items_helpful', 'items_not_helpful',
                           'items_used'),
                'query_text': {
                    'type': 'text'
                },
                'overall_rating': {
                    'type': 'integer'
                },
                'missing_context': {
                    'type': 'keyword'
                },
                'metadata': {
                    'type': 'object',
                    'enabled': False
                },
                'created_at': {
                    'type': 'date'
                }
            }
        else:
            properties = {
                **_keyword('id', 'debate_id', 'judge_agent_id', 'suggested_action'),
                'score': {
                    'type': 'integer'
                },
                'confidence': {
                    'type': 'float'
                },
                'summary': {
                    'type': 'text'
                },
                'action_reason': {
                    'type': 'text'
                },
                'created_at': {
                    'type': 'date'
                }
            }
        return {'mappings': {'properties': properties}}

    def create_indices_if_not_exist(self) -> Dict[str, str]:
        """
        Create every index the store needs.

        Returns:
            Mapping of index name to 'exists' or 'created'
        """
        results = {}
        for index_type in INDEX_TYPES:
            index_name = self.index_name(index_type)
            try:
                if self.client.indices.exists(index=index_name):
                    logger.debug(f'Index {index_name} already exists')
                    results[index_name] = 'exists'
                    continue

                self.client.indices.create(index=index_name, body=self._mapping(index_type))
                logger.info(f'Created index {index_name}')
                results[index_name] = 'created'
            except OpenSearchException as e:
                logger.error(f'Error creating index {index_name}: {e}')
                raise OpenSearchError(f'Failed to create index {index_name}: {e}')
        return results

    def create_document(self, index_type: str, doc_id: str, document: Dict[str, Any]) -> bool:
        """
        Insert a document under an explicit id, failing if the id is taken.

        Args:
            index_type: One of INDEX_TYPES
            doc_id: Document id, which doubles as the uniqueness key
            document: Document body

        Returns:
            True once the document is created

        Raises:
            ConcurrencyConflict: If a document with this id already exists
            OpenSearchError: On any other store failure
        """
        index_name = self.index_name(index_type)
        try:
            self.client.create(index=index_name, id=doc_id, body=document, refresh='wait_for')
            logger.debug(f'Created document {doc_id} in {index_name}')
            return True
        except ConflictError:
            logger.debug(f'Document {doc_id} already exists in {index_name}')
            raise ConcurrencyConflict(f'{index_type} {doc_id} already exists')
        except OpenSearchException as e:
            logger.error(f'Error creating document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to create document: {e}')

    def get_document(self, index_type: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a document by id.

        Returns:
            Document source without the embedding, or None if absent
        """
        index_name = self.index_name(index_type)
        try:
            response = self.client.get(index=index_name, id=doc_id, _source_excludes='embedding')
            return response['_source']
        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id} from {index_name}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')

    def update_document(self, index_type: str, doc_id: str, fields: Dict[str, Any]) -> bool:
        """
        Partially update a document.

        Returns:
            True if the document was updated, False if it does not exist
        """
        index_name = self.index_name(index_type)
        try:
            response = self.client.update(index=index_name, id=doc_id, body={'doc': fields}, refresh='wait_for')
            return response.get('result') in ('updated', 'noop')
        except NotFoundError:
            logger.warning(f'Document {doc_id} not found for update in {index_name}')
            return False
        except OpenSearchException as e:
            logger.error(f'Error updating document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to update document: {e}')

    def compare_and_update(self, index_type: str, doc_id: str, fields: Dict[str, Any], expected: Dict[str, Any]) -> bool:
        """
        Set fields only while the document still holds the expected values, in one server-side step.

        Args:
            index_type: One of INDEX_TYPES
            doc_id: Document id
            fields: Fields to set
            expected: Field values the document must hold for the update to apply

        Returns:
            True if the update applied, False if the document is missing or no longer matches
        """
        index_name = self.index_name(index_type)
        body = {
            'script': {
                'source': ('boolean matches = true;'
                           ' for (entry in params.expected.entrySet()) {'
                           ' if (ctx._source[entry.getKey()] != entry.getValue()) { matches = false; } }'
                           ' if (matches) {'
                           ' for (entry in params.fields.entrySet()) { ctx._source[entry.getKey()] = entry.getValue(); }'
                           ' } else { ctx.op = \'noop\'; }'),
                'lang': 'painless',
                'params': {
                    'expected': expected,
                    'fields': fields
                }
            }
        }
        try:
            response = self.client.update(index=index_name, id=doc_id, body=body, refresh='wait_for',
                                          retry_on_conflict=5)
            applied = response.get('result') == 'updated'
            if not applied:
                logger.debug(f'Conditional update of {doc_id} in {index_name} skipped, expected {expected}')
            return applied
        except NotFoundError:
            logger.warning(f'Document {doc_id} not found for conditional update in {index_name}')
            return False
        except OpenSearchException as e:
            logger.error(f'Error conditionally updating document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to update document: {e}')

    def delete_document(self, index_type: str, doc_id: str) -> bool:
        """
        Delete a document by id.

        Returns:
            True if the document was deleted, False if it did not exist
        """
        index_name = self.index_name(index_type)
        try:
            self.client.delete(index=index_name, id=doc_id, refresh='wait_for')
            return True
        except NotFoundError:
            return False
        except OpenSearchException as e:
            logger.error(f'Error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to delete document: {e}')

    def increment_counter(self, index_type: str, doc_id: str, field: str, amount: int = 1) -> Optional[int]:
        """
        Atomically increment a numeric field with a stored script.

        Returns:
            The value after the increment, or None if the document does not exist
        """
        index_name = self.index_name(index_type)
        body = {
            'script': {
                'source': f'ctx._source.{field} = (ctx._source.{field} == null ? 0 : ctx._source.{field}) + params.amount',
                'lang': 'painless',
                'params': {
                    'amount': amount
                }
            }
        }
        try:
            response = self.client.update(index=index_name,
                                          id=doc_id,
                                          body=body,
                                          refresh='wait_for',
                                          retry_on_conflict=5,
                                          _source=True)
            return int(response['get']['_source'][field])
        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error incrementing {field} on {doc_id}: {e}')
            raise OpenSearchError(f'Failed to increment {field}: {e}')

    def _filter_clauses(self, filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        clauses = []
        for name, value in (filters or {}).items():
            if isinstance(value, (list, tuple, set, frozenset)):
                clauses.append({'terms': {name: list(value)}})
            else:
                clauses.append({'term': {name: value}})
        return clauses

    def _bool_query(self,
                    filters: Optional[Dict[str, Any]],
                    exclude: Optional[Dict[str, Any]],
                    ranges: Optional[Dict[str, Dict[str, Any]]]) -> Dict[str, Any]:
        bool_query: Dict[str, Any] = {'filter': self._filter_clauses(filters)}
        for name, bounds in (ranges or {}).items():
            bool_query['filter'].append({'range': {name: bounds}})
        if exclude:
            bool_query['must_not'] = self._filter_clauses(exclude)
        return {'bool': bool_query}

    def search_documents(self,
                         index_type: str,
                         filters: Optional[Dict[str, Any]] = None,
                         exclude: Optional[Dict[str, Any]] = None,
                         ranges: Optional[Dict[str, Dict[str, Any]]] = None,
                         sort: Optional[List[Tuple[str, str]]] = None,
                         size: int = 100) -> List[Dict[str, Any]]:
        """
        Filtered, ordered search.

        Args:
            index_type: One of INDEX_TYPES
            filters: Exact-match filters; list values match any element
            exclude: Exact-match exclusions
            ranges: Range bounds per field, e.g. {'message_count': {'gte': 3}}
            sort: (field, 'asc'|'desc') pairs
            size: Maximum number of documents

        Returns:
            List of document sources without embeddings
        """
        index_name = self.index_name(index_type)
        search_body = {
            'size': size,
            'query': self._bool_query(filters, exclude, ranges),
            '_source': {
                'excludes': ['embedding']
            }
        }
        if sort:
            search_body['sort'] = [{name: {'order': order}} for name, order in sort]

        try:
            response = self.client.search(index=index_name, body=search_body)
            documents = [hit['_source'] for hit in response['hits']['hits']]
            logger.debug(f'Search on {index_name} returned {len(documents)} documents')
            return documents
        except OpenSearchException as e:
            logger.error(f'Error searching {index_name}: {e}')
            raise OpenSearchError(f'Search failed: {e}')

    def scan_documents(self,
                       index_type: str,
                       filters: Optional[Dict[str, Any]] = None,
                       exclude: Optional[Dict[str, Any]] = None,
                       ranges: Optional[Dict[str, Dict[str, Any]]] = None,
                       sort: Optional[List[Tuple[str, str]]] = None,
                       page_size: int = SCAN_PAGE_SIZE) -> Iterator[Dict[str, Any]]:
        """
        Iterate over every matching document, page by page with search_after.

        Pages are ordered by the requested sort with the document id as tiebreaker, so documents that
        stop matching between pages (e.g. archived by the caller) do not shift later pages.

        Yields:
            Document sources without embeddings
        """
        index_name = self.index_name(index_type)
        order = [{name: {'order': direction}} for name, direction in (sort or [])]
        order.append({'id': {'order': 'asc'}})
        search_body: Dict[str, Any] = {
            'size': page_size,
            'query': self._bool_query(filters, exclude, ranges),
            'sort': order,
            '_source': {
                'excludes': ['embedding']
            }
        }

        pages = 0
        while True:
            try:
                response = self.client.search(index=index_name, body=search_body)
            except OpenSearchException as e:
                logger.error(f'Error scanning {index_name}: {e}')
                raise OpenSearchError(f'Scan failed: {e}')

            hits = response['hits']['hits']
            pages += 1
            for hit in hits:
                yield hit['_source']
            if len(hits) < page_size:
                logger.debug(f'Scan of {index_name} finished after {pages} pages')
                return
            search_body['search_after'] = hits[-1]['sort']

    def max_value(self, index_type: str, field: str, filters: Optional[Dict[str, Any]] = None) -> Optional[float]:
        """
        Largest value of a numeric field among matching documents.

        Returns:
            The maximum, or None when no matching document has the field
        """
        index_name = self.index_name(index_type)
        search_body = {
            'size': 0,
            'query': self._bool_query(filters, None, None),
            'aggs': {
                'max_value': {
                    'max': {
                        'field': field
                    }
                }
            }
        }
        try:
            response = self.client.search(index=index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error aggregating {field} on {index_name}: {e}')
            raise OpenSearchError(f'Aggregation failed: {e}')
        return response['aggregations']['max_value']['value']

    def knn_search(self,
                   index_type: str,
                   query_vector: List[float],
                   top_k: int,
                   filters: Optional[Dict[str, Any]] = None,
                   exclude: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Nearest-neighbour search ordered by ascending cosine distance.

        The knn clause sits in bool.must with the filters as a sibling bool.filter, which the nmslib
        engine supports. The cosinesimil space scores hits as 1 / (1 + distance), which is inverted here.

        Returns:
            List of {'id', 'distance', 'document'} dicts, at most top_k
        """
        index_name = self.index_name(index_type)
        query = self._bool_query(filters, exclude, None)
        query['bool']['must'] = [{
            'knn': {
                'embedding': {
                    'vector': query_vector,
                    'k': min(max(top_k * KNN_CANDIDATE_FACTOR, top_k), KNN_MAX_CANDIDATES)
                }
            }
        }]
        search_body = {
            'size': top_k,
            'query': query,
            '_source': {
                'excludes': ['embedding']
            }
        }

        try:
            response = self.client.search(index=index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing vector search on {index_name}: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')

        results = []
        for hit in response['hits']['hits']:
            score = hit['_score'] or 0.0
            distance = (1.0 / score - 1.0) if score > 0 else 1.0
            results.append({'id': hit['_id'], 'distance': distance, 'document': hit['_source']})

        results.sort(key=lambda result: result['distance'])
        logger.debug(f'Vector search returned {len(results)} results from {index_name}')
        return results

    def cleanup(self) -> bool:
        """
        Delete every index owned by the store.

        Returns:
            True if cleanup was successful
        """
        try:
            for index_type in INDEX_TYPES:
                index_name = self.index_name(index_type)
                if self.client.indices.exists(index=index_name):
                    self.client.indices.delete(index=index_name)
                    logger.info(f'Deleted index: {index_name}')
            return True
        except OpenSearchException as e:
            logger.error(f'Error during OpenSearch cleanup: {e}')
            raise OpenSearchError(f'Failed to cleanup OpenSearch: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name('item'))
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False

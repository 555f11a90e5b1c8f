"""In-memory stand-ins for the OpenSearch, Neptune and Bedrock collaborators."""

import copy
import functools
import math
import threading
import uuid
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone

import pytest

from context_graph.models.core import id_sequence, ItemType, Relationship
from context_graph.services.debate_arbiter import DebateArbiter, HeuristicJudge
from context_graph.services.knowledge_service import KnowledgeService
from context_graph.services.relationship_graph import RelationshipGraph
from context_graph.utils.bedrock_embed import BedrockEmbedError
from context_graph.utils.exceptions import ConcurrencyConflict
from context_graph.utils.neptune_client import NeptuneError
from context_graph.utils.opensearch_client import INDEX_TYPES, OpenSearchError, SCAN_PAGE_SIZE


def _matches(doc, filters):
    for name, expected in (filters or {}).items():
        value = doc.get(name)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def _in_range(value, bounds):
    if value is None:
        return False
    checks = {
        'gte': lambda bound: value >= bound,
        'gt': lambda bound: value > bound,
        'lte': lambda bound: value <= bound,
        'lt': lambda bound: value < bound,
    }
    return all(checks[op](bound) for op, bound in bounds.items())


def _cosine_distance(a, b):
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return 1.0 - dot / norm if norm else 1.0


def _compare(a, b, order):
    for name, direction in order:
        left, right = a.get(name), b.get(name)
        if left == right:
            continue
        if left is None or right is None:
            return 1 if left is None else -1
        result = -1 if left < right else 1
        return result if direction == 'asc' else -result
    return 0


class FakeStore:
    """Thread-safe OpenSearchClient stand-in with create-if-absent semantics."""

    def __init__(self):
        self.indices = {index_type: {} for index_type in INDEX_TYPES}
        self.lock = threading.RLock()
        self.fail = False
        self.create_calls = []
        self.page_size = SCAN_PAGE_SIZE
        self.scan_pages = 0

    def _check(self):
        if self.fail:
            raise OpenSearchError('store unavailable')

    @staticmethod
    def _public(doc):
        doc = copy.deepcopy(doc)
        doc.pop('embedding', None)
        return doc

    def create_document(self, index_type, doc_id, document):
        self._check()
        with self.lock:
            self.create_calls.append((index_type, doc_id))
            if doc_id in self.indices[index_type]:
                raise ConcurrencyConflict(f'{index_type} {doc_id} already exists')
            self.indices[index_type][doc_id] = copy.deepcopy(document)
        return True

    def get_document(self, index_type, doc_id):
        self._check()
        with self.lock:
            doc = self.indices[index_type].get(doc_id)
            return self._public(doc) if doc is not None else None

    def update_document(self, index_type, doc_id, fields):
        self._check()
        with self.lock:
            if doc_id not in self.indices[index_type]:
                return False
            self.indices[index_type][doc_id].update(copy.deepcopy(fields))
            return True

    def compare_and_update(self, index_type, doc_id, fields, expected):
        self._check()
        with self.lock:
            doc = self.indices[index_type].get(doc_id)
            if doc is None or any(doc.get(name) != value for name, value in expected.items()):
                return False
            doc.update(copy.deepcopy(fields))
            return True

    def delete_document(self, index_type, doc_id):
        self._check()
        with self.lock:
            return self.indices[index_type].pop(doc_id, None) is not None

    def increment_counter(self, index_type, doc_id, field, amount=1):
        self._check()
        with self.lock:
            doc = self.indices[index_type].get(doc_id)
            if doc is None:
                return None
            doc[field] = (doc.get(field) or 0) + amount
            return doc[field]

    def search_documents(self, index_type, filters=None, exclude=None, ranges=None, sort=None, size=100):
        self._check()
        with self.lock:
            docs = [doc for doc in self.indices[index_type].values() if _matches(doc, filters)]
        if exclude:
            docs = [doc for doc in docs if not any(_matches(doc, {name: value}) for name, value in exclude.items())]
        for name, bounds in (ranges or {}).items():
            docs = [doc for doc in docs if _in_range(doc.get(name), bounds)]
        for name, order in reversed(sort or []):
            docs.sort(key=lambda doc: (doc.get(name) is None, '' if doc.get(name) is None else doc.get(name)),
                      reverse=order == 'desc')
        return [self._public(doc) for doc in docs[:size]]

    def scan_documents(self, index_type, filters=None, exclude=None, ranges=None, sort=None, page_size=None):
        """Pages like search_after: each page re-queries and resumes strictly after the last hit."""
        order = list(sort or []) + [('id', 'asc')]
        page_size = page_size or self.page_size
        last = None
        while True:
            docs = self.search_documents(index_type, filters, exclude, ranges, size=len(self.indices[index_type]))
            docs.sort(key=functools.cmp_to_key(lambda a, b: _compare(a, b, order)))
            if last is not None:
                docs = [doc for doc in docs if _compare(doc, last, order) > 0]
            page = docs[:page_size]
            self.scan_pages += 1
            for doc in page:
                yield doc
            if len(page) < page_size:
                return
            last = page[-1]

    def max_value(self, index_type, field, filters=None):
        self._check()
        with self.lock:
            values = [doc.get(field) for doc in self.indices[index_type].values() if _matches(doc, filters)]
        values = [value for value in values if value is not None]
        return max(values) if values else None

    def knn_search(self, index_type, query_vector, top_k, filters=None, exclude=None):
        self._check()
        with self.lock:
            docs = [doc for doc in self.indices[index_type].values() if _matches(doc, filters) and doc.get('embedding')]
        if exclude:
            docs = [doc for doc in docs if not any(_matches(doc, {name: value}) for name, value in exclude.items())]
        hits = [{
            'id': doc['id'],
            'distance': _cosine_distance(query_vector, doc['embedding']),
            'document': self._public(doc)
        } for doc in docs]
        hits.sort(key=lambda hit: hit['distance'])
        return hits[:top_k]

    def put_item(self, item_id, item_type, status, title='', date=None, embedding=None, **extra):
        """Seed an item directly, bypassing KnowledgeService."""
        doc = {
            'id': item_id,
            'type': item_type,
            'status': status,
            'title': title,
            'date': date,
            'sequence': id_sequence(item_id),
            'tags': extra.pop('tags', []),
            'access_count_30d': extra.pop('access_count_30d', 0),
            'reference_count': extra.pop('reference_count', 0),
            'pattern': extra.pop('pattern', None),
            'details': extra.pop('details', {}),
        }
        if embedding is not None:
            doc['embedding'] = embedding
        self.indices['item'][item_id] = doc
        return doc


class FakeGraphStore:
    """NeptuneClient stand-in keeping edges in insertion order."""

    def __init__(self):
        self.edges = []
        self.outgoing_calls = []
        self.fail = False
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _check(self):
        if self.fail:
            raise NeptuneError('graph unavailable')

    def create_relationship_edge(self, from_id, from_type, to_id, to_type, relationship_type, strength=1.0):
        self._check()
        self._clock += timedelta(seconds=1)
        relationship = Relationship(from_id=from_id,
                                    from_type=ItemType(from_type),
                                    to_id=to_id,
                                    to_type=ItemType(to_type),
                                    relationship_type=relationship_type,
                                    strength=float(strength),
                                    id=str(uuid.uuid4()),
                                    created_at=self._clock)
        self.edges.append(relationship)
        return relationship

    def get_outgoing_relationships(self, item_id, item_type):
        self._check()
        self.outgoing_calls.append((item_id, item_type))
        return [edge for edge in self.edges if edge.from_id == item_id and edge.from_type.value == item_type]

    def get_all_relationships(self):
        self._check()
        return list(self.edges)


class FakeEmbedder:
    """Deterministic embeddings; vectors can be pinned per text."""

    def __init__(self, dimension=4):
        self.dimension = dimension
        self.vectors = {}
        self.fail = False
        self.calls = []

    def _embed(self, text):
        self.calls.append(text)
        if self.fail:
            raise BedrockEmbedError('embedding service unavailable')
        if text in self.vectors:
            return list(self.vectors[text])
        return [1.0] + [0.0] * (self.dimension - 1)

    def embed_document(self, text):
        return self._embed(text)

    def embed_query(self, text):
        return self._embed(text)


class SyncDispatcher:
    """Runs judge jobs inline so tests can observe their effect immediately."""

    def __init__(self):
        self.dispatched = []

    def dispatch(self, func, debate_id):
        self.dispatched.append(debate_id)
        future = Future()
        try:
            future.set_result(func(debate_id))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait=True):
        pass


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def graph_store():
    return FakeGraphStore()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def dispatcher():
    return SyncDispatcher()


@pytest.fixture
def relationship_graph(graph_store, store):
    return RelationshipGraph(neptune=graph_store, store=store)


@pytest.fixture
def knowledge_service(store, embedder, relationship_graph):
    return KnowledgeService(store=store, embed=embedder, graph=relationship_graph)


@pytest.fixture
def arbiter(store, dispatcher):
    return DebateArbiter(store=store, dispatcher=dispatcher, judge=HeuristicJudge(), threshold=3)

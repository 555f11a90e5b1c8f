"""Tests for context bundling: graph expansion, ranking and the size budget."""

from datetime import date, timedelta

import pytest

from context_graph.models.core import SearchResult
from context_graph.services.context_bundler import ContextBundler, importance_score, rank, recency_score
from context_graph.services.search_service import SearchService
from context_graph.utils.exceptions import CollaboratorUnavailable, ValidationError

TODAY = date(2025, 6, 1)


def _days_ago(days):
    return (TODAY - timedelta(days=days)).isoformat()


def _result(item_type='adr', tags=(), created=None, similarity=1.0, content=''):
    return SearchResult(id=f'{item_type}-1',
                        type=item_type,
                        title='t',
                        content=content,
                        tags=list(tags),
                        created_date=created,
                        similarity=similarity)


@pytest.fixture
def bundler(store, embedder, relationship_graph):
    return ContextBundler(search=SearchService(store=store, embed=embedder), graph=relationship_graph, store=store)


@pytest.fixture
def seeded(store, graph_store):
    store.put_item('ADR-001', 'adr', 'active', 'Choose PostgreSQL', _days_ago(10), embedding=[1.0, 0.0, 0.0, 0.0],
                   tags=['database'], details={'decision': 'Use PostgreSQL'})
    store.put_item('FAIL-001', 'failure', 'resolved', 'Pool exhaustion', _days_ago(100),
                   embedding=[1.0, 1.0, 0.0, 0.0], tags=['database'], details={'root_cause': 'Pool too small'})
    store.put_item('ADR-009', 'adr', 'active', 'Shard orders', _days_ago(400), tags=['critical'],
                   details={'decision': 'Shard the orders table'})
    store.put_item('SNAP-001', 'snapshot', 'active', 'Raise pool size', _days_ago(1), embedding=[0.0, 1.0, 0.0, 0.0],
                   details={'message': 'Raise pool size'})
    graph_store.create_relationship_edge('FAIL-001', 'failure', 'ADR-009', 'adr', 'caused_by')
    graph_store.create_relationship_edge('FAIL-001', 'failure', 'ADR-404', 'adr', 'references')
    graph_store.create_relationship_edge('SNAP-001', 'snapshot', 'ADR-001', 'adr', 'references')


class TestScoring:
    @pytest.mark.parametrize('age, expected', [(0, 1.0), (30, 1.0), (31, 0.8), (90, 0.8), (180, 0.6), (365, 0.4),
                                               (366, 0.2)])
    def test_recency_steps(self, age, expected):
        assert recency_score(TODAY - timedelta(days=age), TODAY) == expected

    def test_undated_items_get_middle_recency(self):
        assert recency_score(None, TODAY) == 0.5

    def test_priority_tags_raise_importance(self):
        assert importance_score(_result('failure')) == 0.8
        assert importance_score(_result('failure', tags=['high-priority'])) == pytest.approx(0.9)
        assert importance_score(_result('adr', tags=['critical'])) == pytest.approx(1.0)
        assert importance_score(_result('snapshot')) == 0.5

    def test_rank_orders_by_composite_score(self):
        fresh = _result('meeting', created=TODAY, similarity=0.4)
        relevant = _result('adr', created=TODAY - timedelta(days=400), similarity=0.9)

        ranked = rank([fresh, relevant], TODAY)

        assert ranked == [relevant, fresh]
        assert relevant.score == pytest.approx(0.3 * 0.2 + 0.5 * 0.9 + 0.2 * 0.9)
        assert fresh.score == pytest.approx(0.3 * 1.0 + 0.5 * 0.4 + 0.2 * 0.6)


class TestBundleContext:
    def test_sections_include_graph_neighbours(self, bundler, seeded, graph_store):
        bundle = bundler.bundle_context('database pool', today=TODAY)

        assert [result.id for result in bundle.key_decisions] == ['ADR-001', 'ADR-009']
        assert [result.id for result in bundle.known_issues] == ['FAIL-001']
        assert [result.id for result in bundle.recent_changes] == ['SNAP-001']
        assert bundle.total_items == 4
        assert bundle.key_decisions[1].similarity == 0.5
        assert bundle.key_decisions[0].score == pytest.approx(0.98)
        assert sorted(call[0] for call in graph_store.outgoing_calls) == ['ADR-001', 'FAIL-001', 'SNAP-001']

        data = bundle.to_dict()
        assert data['total_items'] == 4
        assert data['query_id'] == bundle.query_id
        assert data['key_decisions'][0]['created_date'] == _days_ago(10)

    def test_budget_stops_at_first_item_that_does_not_fit(self, bundler, seeded):
        # 10 tokens -> 40 characters: 16 for ADRs, 12 for failures
        bundle = bundler.bundle_context('database pool', max_tokens=10, today=TODAY)

        assert [result.id for result in bundle.key_decisions] == ['ADR-001']
        assert bundle.known_issues == []

    def test_domains_filter_by_tag(self, bundler, seeded):
        assert bundler.bundle_context('database pool', domains=['critical'], today=TODAY).total_items == 1
        assert bundler.bundle_context('database pool', domains=['frontend'], today=TODAY).total_items == 0

    def test_each_call_gets_a_new_query_id(self, bundler, seeded):
        first = bundler.bundle_context('database pool', today=TODAY)
        second = bundler.bundle_context('database pool', today=TODAY)

        assert first.query_id != second.query_id

    def test_invalid_budget(self, bundler):
        with pytest.raises(ValidationError):
            bundler.bundle_context('database pool', max_tokens=0)

    def test_graph_failure_is_collaborator_unavailable(self, bundler, seeded, graph_store):
        graph_store.fail = True

        with pytest.raises(CollaboratorUnavailable):
            bundler.bundle_context('database pool', today=TODAY)

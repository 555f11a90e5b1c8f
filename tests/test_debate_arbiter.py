"""Tests for the debate lifecycle, heuristic and LLM judges, and judge dispatch."""

import logging
import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from context_graph.models.core import (ContributorType, Debate, DebateMessage, DebateStatus, ItemType, Stance,
                                       SuggestedAction)
from context_graph.services.debate_arbiter import (DebateArbiter, DEFAULT_SUMMARY, HeuristicJudge, JudgeDispatcher,
                                                   LLMJudge, LOCK_STRIPES)
from context_graph.utils.bedrock_llm import BedrockLLMError
from context_graph.utils.opensearch_client import OpenSearchError
from context_graph.utils.exceptions import CollaboratorUnavailable, NotFoundError, ValidationError

ARGUMENT = 'This decision still holds for our workload.'


def _messages(*stances):
    return [
        DebateMessage(id=str(i),
                      debate_id='adr:ADR-1',
                      contributor_id=f'agent-{i}',
                      contributor_type=ContributorType.AGENT,
                      stance=Stance(stance),
                      argument=ARGUMENT,
                      created_at=datetime(2024, 1, 1, 0, 0, i, tzinfo=timezone.utc)) for i, stance in enumerate(stances)
    ]


def _debate():
    return Debate(id='adr:ADR-1', resource_id='ADR-1', resource_type=ItemType.ADR)


class TestHeuristicJudge:
    @pytest.mark.parametrize('stances, score, action', [
        (['agree', 'disagree', 'agree'], 4, SuggestedAction.REVIEW),
        (['agree', 'agree', 'agree', 'agree', 'disagree'], 5, SuggestedAction.NONE),
        (['agree', 'disagree'], 3, SuggestedAction.REVIEW),
        (['agree', 'agree', 'disagree', 'disagree', 'disagree'], 3, SuggestedAction.REVIEW),
        (['agree', 'disagree', 'disagree', 'disagree', 'disagree'], 2, SuggestedAction.UPDATE),
        (['disagree', 'disagree', 'disagree'], 1, SuggestedAction.UPDATE),
        (['agree', 'agree', 'agree', 'disagree', 'neutral', 'question'], 4, SuggestedAction.NONE),
    ])
    def test_ratio_thresholds(self, stances, score, action):
        fields = HeuristicJudge().evaluate(_debate(), _messages(*stances), None)

        assert fields['score'] == score
        assert fields['suggested_action'] == action
        assert fields['confidence'] == 0.5
        assert fields['accuracy_score'] == fields['relevance_score'] == 3
        assert fields['completeness_score'] == fields['clarity_score'] == 3

    def test_no_agree_or_disagree_gives_default(self):
        fields = HeuristicJudge().evaluate(_debate(), _messages('neutral', 'question', 'neutral'), None)

        assert fields['score'] == 3
        assert fields['suggested_action'] == SuggestedAction.REVIEW
        assert fields['summary'] == DEFAULT_SUMMARY
        assert fields['action_reason'] == 'Debate exists for this resource - human review recommended.'


class TestDebateLifecycle:
    def test_third_message_judges_once(self, arbiter, store, dispatcher):
        for stance in ('agree', 'disagree', 'agree'):
            debate = arbiter.contribute('ADR-1', 'adr', 'agent-a', 'agent', stance, ARGUMENT)

        assert debate.message_count == 3
        assert dispatcher.dispatched == ['adr:ADR-1']

        judged = arbiter.get_debate('adr:ADR-1')
        assert judged.status == DebateStatus.JUDGED
        assert judged.judge_triggered_at is not None
        assert judged.judgment.score == 4
        assert judged.judgment.suggested_action == SuggestedAction.REVIEW
        assert judged.judgment.judge_agent_id == 'judge-worker'
        assert [message.stance.value for message in judged.messages] == ['agree', 'disagree', 'agree']

        arbiter.contribute('ADR-1', 'adr', 'agent-b', 'human', 'disagree', ARGUMENT)

        assert dispatcher.dispatched == ['adr:ADR-1']
        assert len(store.indices['debate_judgment']) == 1
        assert arbiter.get_debate('adr:ADR-1').message_count == 4

    def test_judge_is_a_no_op_unless_open(self, arbiter, store):
        debate = arbiter.get_or_create_debate('FAIL-1', 'failure')
        for _ in range(2):
            arbiter.add_message(debate.id, 'a', 'agent', 'agree', ARGUMENT)

        assert arbiter.judge(debate.id) is not None
        assert arbiter.judge(debate.id) is None
        assert len(store.indices['debate_judgment']) == 1

    def test_judge_missing_debate_returns_none(self, arbiter):
        assert arbiter.judge('adr:ADR-404') is None

    def test_invalid_message_writes_nothing(self, arbiter, store):
        with pytest.raises(ValidationError):
            arbiter.contribute('ADR-1', 'adr', 'a', 'agent', 'maybe', ARGUMENT)
        with pytest.raises(ValidationError):
            arbiter.contribute('ADR-1', 'adr', 'a', 'robot', 'agree', ARGUMENT)
        with pytest.raises(ValidationError):
            arbiter.contribute('ADR-1', 'adr', 'a', 'agent', 'agree', 'too short')

        assert store.indices['debate'] == {}
        assert store.indices['debate_message'] == {}

    def test_argument_length_bounds(self, arbiter):
        debate = arbiter.get_or_create_debate('ADR-1', 'adr')

        arbiter.add_message(debate.id, 'a', 'agent', 'neutral', 'x' * 10)
        arbiter.add_message(debate.id, 'a', 'agent', 'neutral', 'x' * 5000)
        with pytest.raises(ValidationError):
            arbiter.add_message(debate.id, 'a', 'agent', 'neutral', 'x' * 5001)

    def test_unknown_resource_type_rejected(self, arbiter):
        with pytest.raises(ValidationError):
            arbiter.get_or_create_debate('X-1', 'ticket')

    def test_add_message_to_missing_debate(self, arbiter):
        with pytest.raises(NotFoundError):
            arbiter.add_message('adr:ADR-404', 'a', 'agent', 'agree', ARGUMENT)

    def test_get_debate_missing(self, arbiter):
        with pytest.raises(NotFoundError):
            arbiter.get_debate('adr:ADR-404')
        assert arbiter.get_debate_by_resource('ADR-404', 'adr') is None

    def test_store_failure_surfaces_as_collaborator_unavailable(self, arbiter, store):
        store.fail = True
        with pytest.raises(CollaboratorUnavailable):
            arbiter.contribute('ADR-1', 'adr', 'a', 'agent', 'agree', ARGUMENT)

    def test_close_debate_is_terminal(self, arbiter):
        debate = arbiter.get_or_create_debate('ADR-1', 'adr')

        closed = arbiter.close_debate(debate.id)

        assert closed.status == DebateStatus.CLOSED
        assert arbiter.judge(debate.id) is None
        assert arbiter.get_debate(debate.id).judgment is None

    def test_close_during_evaluation_wins(self, store, dispatcher):
        class ClosingJudge(HeuristicJudge):
            def evaluate(self, debate, messages, resource):
                arbiter.close_debate(debate.id)
                return super().evaluate(debate, messages, resource)

        arbiter = DebateArbiter(store=store, dispatcher=dispatcher, judge=ClosingJudge(), threshold=3)
        for stance in ('agree', 'disagree', 'agree'):
            arbiter.contribute('ADR-1', 'adr', 'a', 'agent', stance, ARGUMENT)

        debate = arbiter.get_debate('adr:ADR-1')
        assert dispatcher.dispatched == ['adr:ADR-1']
        assert debate.status == DebateStatus.CLOSED
        assert debate.judge_triggered_at is None
        assert debate.judgment is None
        assert store.indices['debate_judgment'] == {}

    def test_concurrent_messages_dispatch_one_judgment(self, arbiter, store, dispatcher):
        debate = arbiter.get_or_create_debate('ADR-1', 'adr')
        barrier = threading.Barrier(8)
        errors = []

        def post():
            barrier.wait()
            try:
                arbiter.add_message(debate.id, 'a', 'agent', 'agree', ARGUMENT)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=post) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert dispatcher.dispatched == [debate.id]
        assert len(store.indices['debate_judgment']) == 1
        assert len(store.indices['debate_message']) == 8
        assert arbiter.get_debate(debate.id).message_count == 8

    def test_failed_increment_withdraws_message(self, arbiter, store):
        debate = arbiter.get_or_create_debate('ADR-1', 'adr')
        store.increment_counter = MagicMock(side_effect=OpenSearchError('write rejected'))

        with pytest.raises(CollaboratorUnavailable):
            arbiter.add_message(debate.id, 'a', 'agent', 'agree', ARGUMENT)

        assert store.indices['debate_message'] == {}
        assert store.indices['debate'][debate.id]['message_count'] == 0

    def test_debate_deleted_before_increment_withdraws_message(self, arbiter, store):
        debate = arbiter.get_or_create_debate('ADR-1', 'adr')
        store.increment_counter = MagicMock(return_value=None)

        with pytest.raises(NotFoundError):
            arbiter.add_message(debate.id, 'a', 'agent', 'agree', ARGUMENT)

        assert store.indices['debate_message'] == {}


class TestGetOrCreate:
    def test_concurrent_callers_share_one_debate(self, arbiter, store):
        barrier = threading.Barrier(8)
        results = []

        def open_debate():
            barrier.wait()
            results.append(arbiter.get_or_create_debate('ADR-7', 'adr').id)

        threads = [threading.Thread(target=open_debate) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results == ['adr:ADR-7'] * 8
        assert list(store.indices['debate']) == ['adr:ADR-7']

    def test_lock_pool_does_not_grow_with_debates(self, arbiter, store):
        for i in range(500):
            arbiter.get_or_create_debate(f'ADR-{i}', 'adr')

        assert len(store.indices['debate']) == 500
        assert len(arbiter._locks) == LOCK_STRIPES

    def test_conflict_from_another_writer_refetches(self, arbiter, store):
        winner = Debate(id='adr:ADR-8', resource_id='ADR-8', resource_type=ItemType.ADR, message_count=2)
        store.indices['debate'][winner.id] = winner.to_document()
        real_get = store.get_document
        misses = []

        def stale_get(index_type, doc_id):
            if index_type == 'debate' and not misses:
                misses.append(doc_id)
                return None
            return real_get(index_type, doc_id)

        store.get_document = stale_get

        debate = arbiter.get_or_create_debate('ADR-8', 'adr')

        assert debate.message_count == 2
        assert ('debate', 'adr:ADR-8') in store.create_calls
        assert len(store.indices['debate']) == 1


class TestAdministration:
    @pytest.fixture
    def idle_dispatcher(self):
        return MagicMock()

    @pytest.fixture
    def idle_arbiter(self, store, idle_dispatcher):
        return DebateArbiter(store=store, dispatcher=idle_dispatcher, judge=HeuristicJudge(), threshold=3)

    def test_pending_judgments_and_manual_trigger(self, idle_arbiter, idle_dispatcher):
        for stance in ('agree', 'agree', 'agree'):
            idle_arbiter.contribute('ADR-1', 'adr', 'a', 'agent', stance, ARGUMENT)
        idle_arbiter.contribute('ADR-2', 'adr', 'a', 'agent', 'agree', ARGUMENT)

        pending = idle_arbiter.list_pending_judgments()

        assert [debate.id for debate in pending] == ['adr:ADR-1']
        assert len(pending[0].messages) == 3

        idle_arbiter.trigger_judge('adr:ADR-1')
        assert idle_dispatcher.dispatch.call_count == 2

        with pytest.raises(NotFoundError):
            idle_arbiter.trigger_judge('adr:ADR-404')

    def test_list_debates_by_status(self, idle_arbiter):
        idle_arbiter.get_or_create_debate('ADR-1', 'adr')
        second = idle_arbiter.get_or_create_debate('FAIL-1', 'failure')
        idle_arbiter.close_debate(second.id)

        assert [debate.id for debate in idle_arbiter.list_debates(status='closed')] == ['failure:FAIL-1']
        assert len(idle_arbiter.list_debates()) == 2
        with pytest.raises(ValidationError):
            idle_arbiter.list_debates(status='pending')


class TestJudgeDispatcher:
    def test_failed_job_is_logged_not_raised(self, store, caplog):
        failing_judge = MagicMock()
        failing_judge.evaluate.side_effect = RuntimeError('judge crashed')
        dispatcher = JudgeDispatcher(max_workers=1)
        arbiter = DebateArbiter(store=store, dispatcher=dispatcher, judge=failing_judge, threshold=1)

        with caplog.at_level(logging.ERROR):
            debate = arbiter.contribute('ADR-1', 'adr', 'a', 'agent', 'agree', ARGUMENT)
            dispatcher.shutdown(wait=True)

        assert debate.message_count == 1
        assert arbiter.get_debate('adr:ADR-1').status == DebateStatus.OPEN
        assert 'judge crashed' in caplog.text

    def test_dispatch_after_shutdown_is_dropped(self):
        dispatcher = JudgeDispatcher(max_workers=1)
        dispatcher.shutdown()

        assert dispatcher.dispatch(MagicMock(), 'adr:ADR-1') is None

    def test_dispatch_runs_job(self):
        dispatcher = JudgeDispatcher(max_workers=1)
        job = MagicMock(return_value='done')

        future = dispatcher.dispatch(job, 'adr:ADR-1')

        assert future.result(timeout=5) == 'done'
        job.assert_called_once_with('adr:ADR-1')
        dispatcher.shutdown()


class TestLLMJudge:
    def _judge(self, response):
        llm = MagicMock()
        llm.complete.return_value = response
        return LLMJudge(llm=llm), llm

    def test_parses_fenced_json(self):
        judge, llm = self._judge('```json\n{"score": 2, "accuracy_score": 2, "relevance_score": 4, '
                                 '"completeness_score": 3, "clarity_score": 5, "confidence": 0.9, '
                                 '"summary": "Mostly outdated.", "suggested_action": "deprecate", '
                                 '"action_reason": "Replaced by ADR-9."}\n```')
        resource = {'id': 'ADR-1', 'title': 'Use Redis', 'details': {'decision': 'Cache sessions in Redis'}}

        fields = judge.evaluate(_debate(), _messages('agree', 'disagree'), resource)

        assert fields['score'] == 2
        assert fields['suggested_action'] == SuggestedAction.DEPRECATE
        assert fields['confidence'] == 0.9
        prompt = llm.complete.call_args[0][0]
        assert 'ID: ADR-1' in prompt
        assert 'Decision: Cache sessions in Redis' in prompt
        assert f'[AGREE] agent: {ARGUMENT}\n\n[DISAGREE] agent: {ARGUMENT}' in prompt

    @pytest.mark.parametrize('response', [
        'not json at all',
        '{"score": 7, "accuracy_score": 3, "relevance_score": 3, "completeness_score": 3, "clarity_score": 3, '
        '"confidence": 0.5, "suggested_action": "review"}',
        '{"score": 3, "accuracy_score": 3, "relevance_score": 3, "completeness_score": 3, "clarity_score": 3, '
        '"confidence": 1.5, "suggested_action": "review"}',
        '{"score": 3, "accuracy_score": 3, "relevance_score": 3, "completeness_score": 3, "clarity_score": 3, '
        '"confidence": 0.5, "suggested_action": "escalate"}',
    ])
    def test_rejects_out_of_domain_output(self, response):
        judge, _ = self._judge(response)

        with pytest.raises(ValidationError):
            judge.evaluate(_debate(), _messages('agree'), None)

    def test_llm_failure_is_collaborator_unavailable(self):
        llm = MagicMock()
        llm.complete.side_effect = BedrockLLMError('throttled')

        with pytest.raises(CollaboratorUnavailable):
            LLMJudge(llm=llm).evaluate(_debate(), _messages('agree'), None)

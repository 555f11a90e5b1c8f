"""
Debate arbitration: per-resource discussion threads that are judged once they reach the message threshold.
"""

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from ..models.core import (ContributorType, Debate, DebateJudgment, DebateMessage, DebateStatus, ItemType, Stance,
                           SuggestedAction)
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import config
from ..utils.exceptions import CollaboratorUnavailable, ConcurrencyConflict, NotFoundError, ValidationError
from ..utils.json_utils import parse_json_object
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import to_iso, utc_now

logger = get_logger(__name__)

MIN_ARGUMENT_LENGTH = 10
MAX_ARGUMENT_LENGTH = 5000
MAX_MESSAGES = 1000
JUDGE_AGENT_ID = 'judge-worker'

# Per-debate critical sections share a fixed pool of re-entrant locks
LOCK_STRIPES = 64

DEFAULT_SUMMARY = 'Auto-generated judgment based on debate content.'
DEFAULT_ACTION_REASON = 'Debate exists for this resource - human review recommended.'

JUDGE_SYSTEM_PROMPT = 'You are an impartial reviewer of engineering knowledge. Respond with a single JSON object only.'

JUDGE_PROMPT = """You are a judge evaluating a debate about a {resource_type}.

RESOURCE:
ID: {resource_id}
{resource_content}

DEBATE MESSAGES:
{messages}

Evaluate this resource based on the debate. Respond with JSON only:
{{
  "score": <1-5>,
  "accuracy_score": <1-5>,
  "relevance_score": <1-5>,
  "completeness_score": <1-5>,
  "clarity_score": <1-5>,
  "confidence": <0.0-1.0>,
  "summary": "<2-3 sentence summary of the debate>",
  "suggested_action": "<none|review|update|deprecate>",
  "action_reason": "<why this action is suggested>"
}}"""


def debate_id_for(resource_id: str, resource_type: ItemType) -> str:
    """Debates are keyed by their resource, so the id doubles as the uniqueness constraint."""
    return f'{resource_type.value}:{resource_id}'


def default_judgment_fields() -> Dict[str, Any]:
    return {
        'score': 3,
        'accuracy_score': 3,
        'relevance_score': 3,
        'completeness_score': 3,
        'clarity_score': 3,
        'confidence': 0.5,
        'summary': DEFAULT_SUMMARY,
        'suggested_action': SuggestedAction.REVIEW,
        'action_reason': DEFAULT_ACTION_REASON,
    }


def score_for_ratio(ratio: float) -> int:
    if ratio >= 0.8:
        return 5
    if ratio >= 0.6:
        return 4
    if ratio >= 0.4:
        return 3
    if ratio >= 0.2:
        return 2
    return 1


def action_for_ratio(ratio: float) -> SuggestedAction:
    if ratio >= 0.7:
        return SuggestedAction.NONE
    if ratio >= 0.4:
        return SuggestedAction.REVIEW
    return SuggestedAction.UPDATE


class HeuristicJudge:
    """Scores a debate from the share of agreeing stances; argument text is ignored."""

    def evaluate(self, debate: Debate, messages: List[DebateMessage], resource: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        fields = default_judgment_fields()
        agree = sum(1 for message in messages if message.stance == Stance.AGREE)
        disagree = sum(1 for message in messages if message.stance == Stance.DISAGREE)
        total = agree + disagree
        if total == 0:
            return fields

        ratio = agree / total
        fields['score'] = score_for_ratio(ratio)
        fields['suggested_action'] = action_for_ratio(ratio)
        fields['action_reason'] = f'{agree} agree / {disagree} disagree ({ratio:.0%} agreement)'
        return fields


def format_resource_content(resource: Optional[Dict[str, Any]], resource_type: ItemType) -> str:
    if not resource:
        return 'Resource not found'
    details = resource.get('details') or {}
    if resource_type == ItemType.ADR:
        return (f"Title: {resource.get('title', '')}\nDecision: {details.get('decision', '')}\n"
                f"Context: {details.get('context') or 'N/A'}")
    if resource_type == ItemType.FAILURE:
        return (f"Title: {resource.get('title', '')}\nRoot Cause: {details.get('root_cause', '')}\n"
                f"Resolution: {details.get('resolution') or 'N/A'}")
    if resource_type == ItemType.MEETING:
        return f"Title: {resource.get('title', '')}\nDecisions: {details.get('decisions') or []}"
    return f"Message: {details.get('message', resource.get('title', ''))}\nCommit: {details.get('commit_hash', '')}"


def format_messages(messages: List[DebateMessage]) -> str:
    return '\n\n'.join(f'[{message.stance.value.upper()}] {message.contributor_type.value}: {message.argument}'
                       for message in messages)


def _bounded_int(data: Dict[str, Any], key: str, low: int, high: int) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise ValidationError(f'Judge returned a non-integer {key}: {value!r}')
    if not low <= value <= high:
        raise ValidationError(f'Judge returned {key}={value}, expected {low}-{high}')
    return int(value)


class LLMJudge:
    """Asks a Bedrock model for the judgment and validates every field before it is stored."""

    def __init__(self, llm: Optional[BedrockLLM] = None):
        self.llm = llm if llm is not None else BedrockLLM(config.bedrock_llm)

    def build_prompt(self, debate: Debate, messages: List[DebateMessage], resource: Optional[Dict[str, Any]]) -> str:
        return JUDGE_PROMPT.format(resource_type=debate.resource_type.value,
                                   resource_id=debate.resource_id,
                                   resource_content=format_resource_content(resource, debate.resource_type),
                                   messages=format_messages(messages))

    def evaluate(self, debate: Debate, messages: List[DebateMessage], resource: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Raises:
            CollaboratorUnavailable: If the model call fails
            ValidationError: If the response is not a well-formed judgment
        """
        try:
            response = self.llm.complete(self.build_prompt(debate, messages, resource), JUDGE_SYSTEM_PROMPT)
        except BedrockLLMError as e:
            raise CollaboratorUnavailable(f'LLM judge unavailable: {e}')

        try:
            data = parse_json_object(response)
        except ValueError as e:
            raise ValidationError(f'Judge response is not a JSON object: {e}')

        confidence = data.get('confidence')
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not 0.0 <= confidence <= 1.0:
            raise ValidationError(f'Judge returned confidence {confidence!r}, expected 0.0-1.0')

        return {
            'score': _bounded_int(data, 'score', 1, 5),
            'accuracy_score': _bounded_int(data, 'accuracy_score', 1, 5),
            'relevance_score': _bounded_int(data, 'relevance_score', 1, 5),
            'completeness_score': _bounded_int(data, 'completeness_score', 1, 5),
            'clarity_score': _bounded_int(data, 'clarity_score', 1, 5),
            'confidence': float(confidence),
            'summary': str(data.get('summary') or DEFAULT_SUMMARY),
            'suggested_action': SuggestedAction.parse(data.get('suggested_action'), 'suggested_action'),
            'action_reason': str(data.get('action_reason') or ''),
        }


class JudgeDispatcher:
    """Fire-and-forget executor for judge jobs; failures are logged, never raised to the dispatcher's caller."""

    def __init__(self, max_workers: Optional[int] = None):
        self._executor = ThreadPoolExecutor(max_workers=max_workers or config.debate.judge_workers,
                                            thread_name_prefix='debate-judge')
        self._shutdown = False
        self._lock = threading.Lock()

    @staticmethod
    def _log_outcome(job_name: str) -> Callable[[Future], None]:

        def callback(future: Future):
            if future.cancelled():
                logger.warning(f'Judge job {job_name} was cancelled')
                return
            error = future.exception()
            if error is not None:
                logger.error(f'Judge job {job_name} failed: {error}')

        return callback

    def dispatch(self, func: Callable[..., Any], debate_id: str) -> Optional[Future]:
        """
        Schedule func(debate_id) on the pool.

        Returns:
            The job's Future, or None if the dispatcher has been shut down
        """
        with self._lock:
            if self._shutdown:
                logger.warning(f'Dispatcher is shut down, dropping judge job for {debate_id}')
                return None
            future = self._executor.submit(func, debate_id)
        future.add_done_callback(self._log_outcome(debate_id))
        logger.debug(f'Dispatched judge job for {debate_id}')
        return future

    def shutdown(self, wait: bool = True):
        """Stop accepting jobs; in-flight jobs are allowed to finish."""
        with self._lock:
            self._shutdown = True
        self._executor.shutdown(wait=wait)


class DebateArbiter:
    """Owns the debate lifecycle: open on first contribution, judged once at the threshold, closed by an admin."""

    def __init__(self,
                 store: Optional[OpenSearchClient] = None,
                 dispatcher: Optional[JudgeDispatcher] = None,
                 judge: Optional[Any] = None,
                 threshold: Optional[int] = None):
        self.store = store if store is not None else OpenSearchClient(config.opensearch)
        self.dispatcher = dispatcher if dispatcher is not None else JudgeDispatcher()
        if judge is None:
            judge = LLMJudge() if config.debate.judge_mode == 'llm' else HeuristicJudge()
        self.judge_impl = judge
        self.threshold = config.debate.judge_threshold if threshold is None else threshold

        self._locks = [threading.RLock() for _ in range(LOCK_STRIPES)]

    def _lock_for(self, debate_id: str) -> threading.RLock:
        return self._locks[hash(debate_id) % LOCK_STRIPES]

    def _store_call(self, operation: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return func(*args, **kwargs)
        except OpenSearchError as e:
            logger.error(f'Store failure during {operation}: {e}')
            raise CollaboratorUnavailable(f'{operation} failed: {e}')

    def _fetch_debate(self, debate_id: str) -> Optional[Debate]:
        doc = self._store_call('get debate', self.store.get_document, 'debate', debate_id)
        return Debate.from_document(doc) if doc else None

    def _require_debate(self, debate_id: str) -> Debate:
        debate = self._fetch_debate(debate_id)
        if debate is None:
            raise NotFoundError(f'Debate {debate_id} not found')
        return debate

    def _load_messages(self, debate_id: str) -> List[DebateMessage]:
        docs = self._store_call('list debate messages',
                                self.store.search_documents,
                                'debate_message',
                                filters={'debate_id': debate_id},
                                sort=[('created_at', 'asc')],
                                size=MAX_MESSAGES)
        messages = [DebateMessage.from_document(doc) for doc in docs]
        messages.sort(key=lambda message: message.created_at)
        return messages

    def _load_judgment(self, debate_id: str) -> Optional[DebateJudgment]:
        doc = self._store_call('get judgment', self.store.get_document, 'debate_judgment', debate_id)
        return DebateJudgment.from_document(doc) if doc else None

    def _hydrate(self, debate: Debate) -> Debate:
        debate.messages = self._load_messages(debate.id)
        debate.judgment = self._load_judgment(debate.id)
        return debate

    @staticmethod
    def validate_message(contributor_type: Any, stance: Any, argument: Any):
        """
        Check a contribution before anything is written.

        Raises:
            ValidationError: On an unknown contributor type or stance, or an argument outside 10-5000 characters
        """
        ContributorType.parse(contributor_type, 'contributor_type')
        Stance.parse(stance, 'stance')
        if not isinstance(argument, str):
            raise ValidationError('argument must be a string')
        if not MIN_ARGUMENT_LENGTH <= len(argument) <= MAX_ARGUMENT_LENGTH:
            raise ValidationError(f'argument must be between {MIN_ARGUMENT_LENGTH} and {MAX_ARGUMENT_LENGTH} '
                                  f'characters, got {len(argument)}')

    def get_or_create_debate(self, resource_id: str, resource_type: str) -> Debate:
        """
        Return the debate for a resource, creating it on first use.

        Callers in this process are serialized by a per-resource lock; callers in other processes are
        caught by the store's create-if-absent semantics, and the loser refetches the winner's row.

        Raises:
            ValidationError: On an unknown resource type or empty resource id
            CollaboratorUnavailable: If the store fails
        """
        item_type = ItemType.parse(resource_type, 'resource_type')
        if not resource_id:
            raise ValidationError('resource_id is required')
        debate_id = debate_id_for(resource_id, item_type)

        with self._lock_for(debate_id):
            existing = self._fetch_debate(debate_id)
            if existing is not None:
                return existing

            debate = Debate(id=debate_id, resource_id=resource_id, resource_type=item_type, created_at=utc_now())
            try:
                self._store_call('create debate', self.store.create_document, 'debate', debate_id,
                                 debate.to_document())
                logger.info(f'Opened debate {debate_id}')
                return debate
            except ConcurrencyConflict:
                logger.warning(f'Debate {debate_id} was created concurrently, refetching')

            existing = self._fetch_debate(debate_id)
            if existing is None:
                raise CollaboratorUnavailable(f'Debate {debate_id} conflicted on create but could not be read back')
            return existing

    def add_message(self, debate_id: str, contributor_id: str, contributor_type: str, stance: str,
                    argument: str) -> Debate:
        """
        Append a message and dispatch judgment when the count first reaches the threshold.

        The message is written before message_count is incremented. If the increment fails, the message is
        deleted again so the stored messages and the count stay in step.

        Returns:
            The debate with its updated message_count

        Raises:
            ValidationError: If the message is invalid
            NotFoundError: If the debate does not exist
            CollaboratorUnavailable: If the store fails
        """
        self.validate_message(contributor_type, stance, argument)
        debate = self._require_debate(debate_id)

        message = DebateMessage(id=str(uuid.uuid4()),
                                debate_id=debate_id,
                                contributor_id=contributor_id or '',
                                contributor_type=ContributorType.parse(contributor_type),
                                stance=Stance.parse(stance),
                                argument=argument,
                                created_at=utc_now())
        self._store_call('add debate message', self.store.create_document, 'debate_message', message.id,
                         message.to_document())

        try:
            count = self._store_call('increment message count', self.store.increment_counter, 'debate', debate_id,
                                     'message_count')
            if count is None:
                raise NotFoundError(f'Debate {debate_id} not found')
        except (CollaboratorUnavailable, NotFoundError):
            self._withdraw_message(message)
            raise
        debate.message_count = count
        logger.debug(f'Debate {debate_id} now has {count} messages')

        # Only the increment that lands exactly on the threshold dispatches, so concurrent adds trigger once
        if count == self.threshold:
            logger.info(f'Debate {debate_id} reached {count} messages, dispatching judge')
            self.dispatcher.dispatch(self.judge, debate_id)

        return debate

    def _withdraw_message(self, message: DebateMessage):
        try:
            self.store.delete_document('debate_message', message.id)
            logger.warning(f'Withdrew message {message.id} from debate {message.debate_id}, count was not updated')
        except OpenSearchError as e:
            logger.error(f'Message {message.id} on debate {message.debate_id} is stored but not counted: {e}')

    def contribute(self, resource_id: str, resource_type: str, contributor_id: str, contributor_type: str,
                   stance: str, argument: str) -> Debate:
        """Validate a contribution, then open the resource's debate if needed and append to it."""
        self.validate_message(contributor_type, stance, argument)
        debate = self.get_or_create_debate(resource_id, resource_type)
        return self.add_message(debate.id, contributor_id, contributor_type, stance, argument)

    def judge(self, debate_id: str) -> Optional[DebateJudgment]:
        """
        Judge an open debate exactly once.

        A debate that is missing or no longer open is left untouched. The open -> judged transition is a
        conditional update on the stored status, and only the caller that wins it writes the judgment, so a
        debate closed while the judge was evaluating stays closed and gets no judgment. Judging and closing
        the same debate in this process share one lock.

        Returns:
            The new DebateJudgment, or None when nothing was judged
        """
        with self._lock_for(debate_id):
            debate = self._fetch_debate(debate_id)
            if debate is None:
                logger.warning(f'Judge requested for missing debate {debate_id}')
                return None
            if debate.status != DebateStatus.OPEN:
                logger.debug(f'Debate {debate_id} is {debate.status.value}, skipping judgment')
                return None

            messages = self._load_messages(debate_id)
            resource = self._store_call('get resource', self.store.get_document, 'item', debate.resource_id)
            fields = self.judge_impl.evaluate(debate, messages, resource)

            now = utc_now()
            marked = self._store_call('mark debate judged', self.store.compare_and_update, 'debate', debate_id, {
                'status': DebateStatus.JUDGED.value,
                'judge_triggered_at': to_iso(now)
            }, {'status': DebateStatus.OPEN.value})
            if not marked:
                logger.warning(f'Debate {debate_id} left the open state during judgment, discarding the result')
                return None

            judgment = DebateJudgment(id=debate_id,
                                      debate_id=debate_id,
                                      judge_agent_id=JUDGE_AGENT_ID,
                                      created_at=now,
                                      **fields)
            try:
                self._store_call('create judgment', self.store.create_document, 'debate_judgment', debate_id,
                                 judgment.to_document())
            except ConcurrencyConflict:
                logger.warning(f'Debate {debate_id} already has a judgment')
                return None

        logger.info(f'Judged debate {debate_id}: score {judgment.score}, action {judgment.suggested_action.value}')
        return judgment

    def get_debate(self, debate_id: str) -> Debate:
        """
        Raises:
            NotFoundError: If the debate does not exist
        """
        return self._hydrate(self._require_debate(debate_id))

    def get_debate_by_resource(self, resource_id: str, resource_type: str) -> Optional[Debate]:
        item_type = ItemType.parse(resource_type, 'resource_type')
        debate = self._fetch_debate(debate_id_for(resource_id, item_type))
        return self._hydrate(debate) if debate else None

    def list_debates(self, status: Optional[str] = None, limit: int = 50) -> List[Debate]:
        """Most recent debates first, optionally filtered by status."""
        filters = {'status': DebateStatus.parse(status, 'status').value} if status else None
        docs = self._store_call('list debates',
                                self.store.search_documents,
                                'debate',
                                filters=filters,
                                sort=[('created_at', 'desc')],
                                size=limit)
        return [self._hydrate(Debate.from_document(doc)) for doc in docs]

    def list_pending_judgments(self) -> List[Debate]:
        """Open debates that have reached the threshold but were never judged."""
        docs = self._store_call('list pending judgments',
                                self.store.search_documents,
                                'debate',
                                filters={'status': DebateStatus.OPEN.value},
                                ranges={'message_count': {
                                    'gte': self.threshold
                                }},
                                sort=[('created_at', 'asc')])
        return [self._hydrate(Debate.from_document(doc)) for doc in docs]

    def trigger_judge(self, debate_id: str) -> Optional[Future]:
        """
        Manually dispatch a judge job.

        Raises:
            NotFoundError: If the debate does not exist
        """
        self._require_debate(debate_id)
        logger.info(f'Manual judge requested for debate {debate_id}')
        return self.dispatcher.dispatch(self.judge, debate_id)

    def close_debate(self, debate_id: str) -> Debate:
        """Administrative transition to the terminal closed state; serialized with judge() on the same debate."""
        with self._lock_for(debate_id):
            debate = self._require_debate(debate_id)
            if debate.status == DebateStatus.CLOSED:
                return debate
            self._store_call('close debate', self.store.update_document, 'debate', debate_id,
                             {'status': DebateStatus.CLOSED.value})
            debate.status = DebateStatus.CLOSED
        logger.info(f'Closed debate {debate_id}')
        return debate



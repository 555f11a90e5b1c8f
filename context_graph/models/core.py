"""
Core data models for the organizational knowledge graph.
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.exceptions import ValidationError
from ..utils.timestamp_utils import parse_date, parse_datetime, to_iso


class _ClosedEnum(str, Enum):
    """String enum that rejects unknown values with a ValidationError."""

    @classmethod
    def parse(cls, value: Any, field_name: Optional[str] = None):
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            allowed = ', '.join(member.value for member in cls)
            raise ValidationError(f"Invalid {field_name or cls.__name__} '{value}': must be one of {allowed}")


class ItemType(_ClosedEnum):
    ADR = 'adr'
    FAILURE = 'failure'
    MEETING = 'meeting'
    SNAPSHOT = 'snapshot'

    @property
    def id_prefix(self) -> str:
        return ID_PREFIXES[self]

    @property
    def statuses(self) -> frozenset:
        return ITEM_STATUSES[self]


ID_PREFIXES = {
    ItemType.ADR: 'ADR',
    ItemType.FAILURE: 'FAIL',
    ItemType.MEETING: 'MEET',
    ItemType.SNAPSHOT: 'SNAP',
}

ARCHIVED = 'archived'

ITEM_STATUSES = {
    ItemType.ADR: frozenset({'active', 'superseded', ARCHIVED}),
    ItemType.FAILURE: frozenset({'investigating', 'resolved', 'recurring', ARCHIVED}),
    ItemType.MEETING: frozenset({'active', 'completed', 'cancelled', ARCHIVED}),
    ItemType.SNAPSHOT: frozenset({'active', ARCHIVED}),
}

DEFAULT_STATUSES = {
    ItemType.ADR: 'active',
    ItemType.FAILURE: 'resolved',
    ItemType.MEETING: 'active',
    ItemType.SNAPSHOT: 'active',
}


_ID_SUFFIX = re.compile(r'(\d+)$')


def id_sequence(item_id: Optional[str]) -> Optional[int]:
    """Numeric suffix of an item id ('FAIL-042' -> 42), None when there is none."""
    match = _ID_SUFFIX.search(item_id or '')
    return int(match.group(1)) if match else None


class DebateStatus(_ClosedEnum):
    OPEN = 'open'
    JUDGED = 'judged'
    CLOSED = 'closed'


class ContributorType(_ClosedEnum):
    AGENT = 'agent'
    HUMAN = 'human'


class Stance(_ClosedEnum):
    AGREE = 'agree'
    DISAGREE = 'disagree'
    NEUTRAL = 'neutral'
    QUESTION = 'question'


class SuggestedAction(_ClosedEnum):
    NONE = 'none'
    REVIEW = 'review'
    UPDATE = 'update'
    DEPRECATE = 'deprecate'


@dataclass
class KnowledgeItem:
    """Projection of an ADR, Failure, Meeting or Snapshot as held in the knowledge store.

    Variant-specific text (decision, root_cause, resolution, ...) lives in ``details``.
    """
    id: str
    type: ItemType
    status: str
    title: str
    date: Optional[date]
    tags: List[str] = field(default_factory=list)
    access_count_30d: int = 0
    reference_count: int = 0
    pattern: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'KnowledgeItem':
        return cls(id=doc['id'],
                   type=ItemType.parse(doc.get('type'), 'item type'),
                   status=doc.get('status', ''),
                   title=doc.get('title', ''),
                   date=parse_date(doc.get('date')),
                   tags=list(doc.get('tags') or []),
                   access_count_30d=int(doc.get('access_count_30d') or 0),
                   reference_count=int(doc.get('reference_count') or 0),
                   pattern=doc.get('pattern'),
                   details=dict(doc.get('details') or {}))

    def to_document(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'status': self.status,
            'title': self.title,
            'date': self.date.isoformat() if self.date else None,
            'sequence': id_sequence(self.id),
            'tags': list(self.tags),
            'access_count_30d': self.access_count_30d,
            'reference_count': self.reference_count,
            'pattern': self.pattern,
            'details': dict(self.details),
        }


@dataclass
class Relationship:
    """Typed directed edge between two knowledge items. Never updated once created."""
    from_id: str
    from_type: ItemType
    to_id: str
    to_type: ItemType
    relationship_type: str
    strength: float = 1.0
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'from': self.from_id,
            'from_type': self.from_type.value,
            'to': self.to_id,
            'to_type': self.to_type.value,
            'type': self.relationship_type,
            'strength': self.strength,
        }


@dataclass
class RelatedItem:
    """One entry of a find_related result: the target of an outgoing edge."""
    id: str
    type: str
    relationship: str
    strength: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DebateMessage:
    id: str
    debate_id: str
    contributor_id: str
    contributor_type: ContributorType
    stance: Stance
    argument: str
    created_at: datetime

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'DebateMessage':
        return cls(id=doc['id'],
                   debate_id=doc['debate_id'],
                   contributor_id=doc.get('contributor_id', ''),
                   contributor_type=ContributorType.parse(doc.get('contributor_type', 'agent')),
                   stance=Stance.parse(doc.get('stance')),
                   argument=doc.get('argument', ''),
                   created_at=parse_datetime(doc.get('created_at')))

    def to_document(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'debate_id': self.debate_id,
            'contributor_id': self.contributor_id,
            'contributor_type': self.contributor_type.value,
            'stance': self.stance.value,
            'argument': self.argument,
            'created_at': to_iso(self.created_at),
        }


@dataclass
class DebateJudgment:
    """The single evaluation recorded when a debate moves from open to judged."""
    id: str
    debate_id: str
    score: int
    accuracy_score: int
    relevance_score: int
    completeness_score: int
    clarity_score: int
    confidence: float
    summary: str
    suggested_action: SuggestedAction
    action_reason: str
    judge_agent_id: str = 'judge-worker'
    created_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'DebateJudgment':
        return cls(id=doc['id'],
                   debate_id=doc['debate_id'],
                   score=int(doc['score']),
                   accuracy_score=int(doc.get('accuracy_score', 3)),
                   relevance_score=int(doc.get('relevance_score', 3)),
                   completeness_score=int(doc.get('completeness_score', 3)),
                   clarity_score=int(doc.get('clarity_score', 3)),
                   confidence=float(doc.get('confidence', 0.5)),
                   summary=doc.get('summary', ''),
                   suggested_action=SuggestedAction.parse(doc.get('suggested_action', 'review')),
                   action_reason=doc.get('action_reason', ''),
                   judge_agent_id=doc.get('judge_agent_id', 'judge-worker'),
                   created_at=parse_datetime(doc.get('created_at')))

    def to_document(self) -> Dict[str, Any]:
        doc = asdict(self)
        doc['suggested_action'] = self.suggested_action.value
        doc['created_at'] = to_iso(self.created_at)
        return doc


@dataclass
class Debate:
    """Discussion thread about one knowledge item; unique per (resource_id, resource_type)."""
    id: str
    resource_id: str
    resource_type: ItemType
    status: DebateStatus = DebateStatus.OPEN
    message_count: int = 0
    judge_triggered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    messages: List[DebateMessage] = field(default_factory=list)
    judgment: Optional[DebateJudgment] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'Debate':
        return cls(id=doc['id'],
                   resource_id=doc['resource_id'],
                   resource_type=ItemType.parse(doc['resource_type'], 'resource type'),
                   status=DebateStatus.parse(doc.get('status', 'open')),
                   message_count=int(doc.get('message_count') or 0),
                   judge_triggered_at=parse_datetime(doc.get('judge_triggered_at')),
                   created_at=parse_datetime(doc.get('created_at')))

    def to_document(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'resource_id': self.resource_id,
            'resource_type': self.resource_type.value,
            'status': self.status.value,
            'message_count': self.message_count,
            'judge_triggered_at': to_iso(self.judge_triggered_at) if self.judge_triggered_at else None,
            'created_at': to_iso(self.created_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_document()
        data['messages'] = [message.to_document() for message in self.messages]
        data['judgment'] = self.judgment.to_document() if self.judgment else None
        return data


@dataclass
class RemediationMatch:
    """A resolved failure similar to the incoming error."""
    id: str
    title: str
    root_cause: str
    resolution: str
    prevention: List[str]
    similarity: float
    incident_date: Optional[str]


@dataclass
class RemediationResult:
    pattern: str
    severity: str
    similar_incidents: List[RemediationMatch]
    suggested_actions: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DecayReport:
    """Outcome of one decay sweep."""
    evaluated: int = 0
    archived: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)  # item id or sweep name -> error

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SearchResult:
    """A knowledge item as returned by semantic search and context bundling."""
    id: str
    type: str
    title: str
    content: str
    tags: List[str]
    created_date: Optional[date]
    similarity: float
    score: Optional[float] = None  # composite rank, set by the bundler

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_date'] = self.created_date.isoformat() if self.created_date else None
        return data


@dataclass
class ContextBundle:
    """Ranked, size-limited context for one agent query."""
    query_id: str
    key_decisions: List[SearchResult] = field(default_factory=list)
    known_issues: List[SearchResult] = field(default_factory=list)
    recent_changes: List[SearchResult] = field(default_factory=list)

    @property
    def total_items(self) -> int:
        return len(self.key_decisions) + len(self.known_issues) + len(self.recent_changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'query_id': self.query_id,
            'key_decisions': [result.to_dict() for result in self.key_decisions],
            'known_issues': [result.to_dict() for result in self.known_issues],
            'recent_changes': [result.to_dict() for result in self.recent_changes],
            'total_items': self.total_items,
        }


@dataclass
class Feedback:
    """An agent's rating of the context it was given for a query."""
    id: str
    query_id: Optional[str] = None
    query_text: Optional[str] = None
    overall_rating: Optional[int] = None
    items_helpful: List[str] = field(default_factory=list)
    items_not_helpful: List[str] = field(default_factory=list)
    items_used: List[str] = field(default_factory=list)
    missing_context: Optional[str] = None
    agent_id: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'Feedback':
        rating = doc.get('overall_rating')
        return cls(id=doc['id'],
                   query_id=doc.get('query_id'),
                   query_text=doc.get('query_text'),
                   overall_rating=int(rating) if rating is not None else None,
                   items_helpful=list(doc.get('items_helpful') or []),
                   items_not_helpful=list(doc.get('items_not_helpful') or []),
                   items_used=list(doc.get('items_used') or []),
                   missing_context=doc.get('missing_context'),
                   agent_id=doc.get('agent_id'),
                   session_id=doc.get('session_id'),
                   metadata=dict(doc.get('metadata') or {}),
                   created_at=parse_datetime(doc.get('created_at')))

    def to_document(self) -> Dict[str, Any]:
        doc = asdict(self)
        doc['created_at'] = to_iso(self.created_at)
        return doc

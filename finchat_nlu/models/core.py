"""
Core data models for conversational query understanding and the learning loop.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


class ValidationError(ValueError):
    """Raised when an internal API receives invalid input."""
    pass


@dataclass
class ConversationTurn:
    """One resolved exchange between the user and the assistant."""
    query: str
    intent: Optional[str]
    entities: Dict[str, Any]
    response: str
    timestamp: datetime


@dataclass
class DirectRoute:
    """Classification shortcut produced by a high-confidence rewrite rule."""
    intent: str
    action: Optional[str]
    entities: Dict[str, Any] = field(default_factory=dict)

    @property
    def handler_keys(self) -> List[str]:
        """Handler registry keys to try, most specific first."""
        keys = [f'{self.intent}:{self.action}'] if self.action else []
        keys.append(self.intent)
        return keys


@dataclass
class RewriteResult:
    """Outcome of rewriting one utterance against the conversation state."""
    rewritten_query: str
    confidence: float  # 0 when no rule matched
    reason: str
    direct_route: Optional[DirectRoute] = None


@dataclass
class IntentMatch:
    """One embedding search hit against the intent exemplars."""
    intent_id: str
    similarity: float
    example_query: str


@dataclass
class ActiveContext:
    """Read-only snapshot of a session's conversation state."""
    last_intent: Optional[str]
    last_query: Optional[str]
    entities: Dict[str, Any]
    pending_actions: List[str]
    is_follow_up: bool
    history: List[ConversationTurn] = field(default_factory=list)
    last_query_log_id: Optional[str] = None  # For implicit feedback on the previous turn
    last_pattern_id: Optional[str] = None


@dataclass
class QueryPattern:
    """A learned natural-language query to decomposition mapping.

    Patterns are deduplicated by the hash of their normalized text, evolve through
    usage and feedback, and are soft-deactivated (never deleted) when merged.
    """
    id: str
    natural_query: str
    decomposed_query: Any
    entities: Dict[str, Any]
    intent: Optional[str]
    query_hash: str
    embedding: Optional[List[float]] = None
    success_rate: float = 1.0
    usage_count: int = 0
    confidence: float = 0.8
    user_satisfaction: Optional[float] = None
    average_response_time_ms: Optional[float] = None
    variations: List[str] = field(default_factory=list)
    version: int = 1
    is_active: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_used_at: Optional[str] = None
    last_improved_at: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        """Convert to a stored document (the id is held by the store)."""
        document = asdict(self)
        document.pop('id')
        return document

    @classmethod
    def from_document(cls, doc_id: str, document: Dict[str, Any]) -> 'QueryPattern':
        """Build a pattern from a stored document, ignoring unknown fields."""
        known = {name: document[name] for name in cls.__dataclass_fields__ if name != 'id' and name in document}
        known.setdefault('natural_query', '')
        known.setdefault('decomposed_query', None)
        known.setdefault('entities', {})
        known.setdefault('intent', None)
        known.setdefault('query_hash', '')
        return cls(id=doc_id, **known)


@dataclass
class FeedbackEvent:
    """One implicit or explicit usage signal, stored append-only."""
    query_log_id: str
    feedback_type: str  # 'implicit' or 'explicit'
    pattern_id: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    feedback_subtype: Optional[str] = None
    rating: Optional[int] = None
    helpful: Optional[bool] = None
    correction_text: Optional[str] = None
    feedback_data: Dict[str, Any] = field(default_factory=dict)
    status: str = 'pending'  # pending -> processing -> processed | failed
    created_at: Optional[str] = None
    claimed_at: Optional[str] = None  # When the current processing claim was taken
    processed_at: Optional[str] = None
    id: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        document = asdict(self)
        document.pop('id')
        return document

    @classmethod
    def from_document(cls, doc_id: str, document: Dict[str, Any]) -> 'FeedbackEvent':
        known = {name: document[name] for name in cls.__dataclass_fields__ if name != 'id' and name in document}
        known.setdefault('query_log_id', '')
        known.setdefault('feedback_type', 'explicit')
        return cls(id=doc_id, **known)


@dataclass
class QueryLogEntry:
    """Audit record of one resolved query."""
    query: str
    query_hash: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    matched_intent: Optional[str] = None
    similarity_score: Optional[float] = None
    entities: Any = None
    structured_query: Any = None
    decomposition_method: Optional[str] = None
    pattern_id: Optional[str] = None
    response_time_ms: Optional[float] = None
    success: bool = True
    error_message: Optional[str] = None
    result_count: int = 0
    created_at: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PatternMatch:
    """A stored pattern judged similar to an incoming query."""
    pattern: QueryPattern
    similarity: float
    method: str  # 'vector' or 'text'

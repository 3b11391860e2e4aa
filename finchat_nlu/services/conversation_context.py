"""
Per-session conversation state: a sliding window of turns, active entity bindings and
offered follow-up actions, held in a registry that serializes access per session.
"""

import re
import threading
import time
from collections import OrderedDict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..models.core import ActiveContext, ConversationTurn
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_datetime
from .slot_filling import SlotFillingState

logger = get_logger(__name__)

# Calls to action in assistant responses, in detection order
CTA_PATTERNS = [
    (re.compile(r'compare all strategies', re.IGNORECASE), 'compare_strategies'),
    (re.compile(r'show.*alternatives', re.IGNORECASE), 'show_alternatives'),
    (re.compile(r'why not use', re.IGNORECASE), 'explain_rejection'),
    (re.compile(r'see full analysis', re.IGNORECASE), 'full_analysis'),
    (re.compile(r'detailed plan', re.IGNORECASE), 'detailed_plan'),
]

_FOLLOW_UP_STARTERS = re.compile(r'^(compare|show|explain|why|what about|how about|tell me|yes|ok|sure|do it|go ahead)')
_CONTEXT_REFERENCES = re.compile(r'\b(that|this|it|the same|those|these|all strategies|alternatives)\b')
_GREETING_STARTERS = re.compile(r'^(hi|hello|hey|thanks|bye)')


class ConversationContext:
    """Sliding window of recent turns plus the entities and actions currently in focus.

    Callers must hold the owning session's lock while mutating (see ConversationContextRegistry).
    """

    def __init__(self, max_history_size: Optional[int] = None):
        self.max_history_size = max_history_size or config.context.max_history_size
        self.history: deque = deque(maxlen=self.max_history_size)
        self.active_entities: Dict[str, Any] = {}
        self.pending_actions: List[str] = []
        self.last_query_log_id: Optional[str] = None
        self.last_pattern_id: Optional[str] = None

    def add_turn(self, query: str, intent: Optional[str], entities: Optional[Dict[str, Any]] = None, response: str = '') -> None:
        """Append a turn, evicting the oldest past the window, and merge its entities.

        Entity bindings are override-additive: keys present in the new turn replace the
        stored value, all other keys are kept.
        """
        entities = dict(entities or {})
        self.history.append(ConversationTurn(query=query, intent=intent, entities=entities, response=response or '',
                                             timestamp=to_datetime()))
        self.active_entities.update(entities)
        self._extract_pending_actions(response)

        logger.debug(f'Added turn (intent={intent}, entities={len(entities)}, history={len(self.history)})')

    def _extract_pending_actions(self, response: Optional[str]) -> None:
        if not response or not isinstance(response, str):
            return
        for pattern, action in CTA_PATTERNS:
            if pattern.search(response) and action not in self.pending_actions:
                self.pending_actions.append(action)

    def is_follow_up(self, query: str) -> bool:
        """Whether query likely continues the previous turn.

        Checked in order: a continuation starter, an anaphoric reference word, then a
        short (three words or fewer) query that is not a greeting or farewell.
        """
        if not self.history:
            return False

        lower_query = (query or '').lower().strip()

        if _FOLLOW_UP_STARTERS.search(lower_query):
            return True
        if _CONTEXT_REFERENCES.search(lower_query):
            return True
        if len(lower_query.split()) <= 3 and not _GREETING_STARTERS.search(lower_query):
            return True

        return False

    def get_last_intent(self) -> Optional[str]:
        return self.history[-1].intent if self.history else None

    def get_last_n_intents(self, n: int = 3) -> List[str]:
        return [turn.intent for turn in list(self.history)[-n:] if turn.intent]

    def get_active_context(self, query: Optional[str] = None) -> ActiveContext:
        """Snapshot of the current state; never mutates.

        Args:
            query: Incoming query used to compute the follow-up flag. Without it the flag
                only says whether any history exists.
        """
        last_turn = self.history[-1] if self.history else None
        return ActiveContext(last_intent=last_turn.intent if last_turn else None,
                             last_query=last_turn.query if last_turn else None,
                             entities=dict(self.active_entities),
                             pending_actions=list(self.pending_actions),
                             is_follow_up=self.is_follow_up(query) if query is not None else bool(self.history),
                             history=list(self.history),
                             last_query_log_id=self.last_query_log_id,
                             last_pattern_id=self.last_pattern_id)

    def has_pending_action(self, action: str) -> bool:
        return action in self.pending_actions

    def clear_pending_action(self, action: str) -> None:
        self.pending_actions = [pending for pending in self.pending_actions if pending != action]

    def clear_entities(self) -> None:
        self.active_entities = {}

    def reset(self) -> None:
        """Forget the whole conversation."""
        self.history.clear()
        self.active_entities = {}
        self.pending_actions = []
        self.last_query_log_id = None
        self.last_pattern_id = None

    def get_summary(self) -> Dict[str, Any]:
        return {
            'history_size': len(self.history),
            'last_intent': self.get_last_intent(),
            'active_entities': list(self.active_entities),
            'pending_actions': list(self.pending_actions)
        }


@dataclass
class SessionState:
    """Everything the cascade keeps for one chat session."""
    session_id: str
    context: ConversationContext
    slot_filling: SlotFillingState
    lock: threading.RLock = field(default_factory=threading.RLock)
    last_used: float = 0.0
    in_use: int = 0  # Turns currently holding the session


class ConversationContextRegistry:
    """
    Owns one SessionState per session id and serializes turns within a session.

    Sessions are kept in least-recently-used order. Whenever a new session is created,
    sessions idle for longer than idle_timeout are evicted, and the oldest are dropped
    while the registry is at max_sessions. A session with a turn in progress is never evicted.
    """

    def __init__(self,
                 max_history_size: Optional[int] = None,
                 idle_timeout: Optional[float] = None,
                 max_sessions: Optional[int] = None,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the registry.

        Args:
            max_history_size: Turns kept per session (defaults to config)
            idle_timeout: Seconds without a turn before a session may be evicted (defaults to config)
            max_sessions: Upper bound on live sessions (defaults to config)
            clock: Time source in unix seconds
        """
        settings = config.context
        self.max_history_size = max_history_size
        self.idle_timeout = settings.session_idle_timeout if idle_timeout is None else idle_timeout
        self.max_sessions = settings.max_sessions if max_sessions is None else max_sessions
        self._clock = clock
        self._sessions: 'OrderedDict[str, SessionState]' = OrderedDict()
        self._lock = threading.Lock()

    def _touch(self, session_id: str) -> SessionState:
        now = self._clock()
        state = self._sessions.get(session_id)
        if state is None:
            self._evict(now)
            state = SessionState(session_id=session_id,
                                 context=ConversationContext(self.max_history_size),
                                 slot_filling=SlotFillingState())
            self._sessions[session_id] = state
            logger.debug(f'Created conversation state for session {session_id}')
        else:
            self._sessions.move_to_end(session_id)
        state.last_used = now
        return state

    def _evict(self, now: float) -> int:
        evicted = []
        for session_id, state in list(self._sessions.items()):
            idle = now - state.last_used >= self.idle_timeout
            if not idle and len(self._sessions) < self.max_sessions:
                break
            if state.in_use:
                continue
            del self._sessions[session_id]
            evicted.append(session_id)

        if evicted:
            logger.info(f'Evicted {len(evicted)} conversation sessions, {len(self._sessions)} remain')
        return len(evicted)

    def evict_idle(self) -> int:
        """Evict idle sessions now; returns how many were dropped."""
        with self._lock:
            return self._evict(self._clock())

    def get(self, session_id: str) -> SessionState:
        """Get or create the state for session_id (no session lock taken)."""
        with self._lock:
            return self._touch(session_id)

    @contextmanager
    def session(self, session_id: str) -> Iterator[SessionState]:
        """Hold the session lock for the duration of one turn."""
        with self._lock:
            state = self._touch(session_id)
            state.in_use += 1
        try:
            with state.lock:
                yield state
        finally:
            with self._lock:
                state.in_use -= 1
                state.last_used = self._clock()

    def reset(self, session_id: str) -> None:
        with self.session(session_id) as state:
            state.context.reset()
            state.slot_filling.clear()

    def drop(self, session_id: str) -> bool:
        """Forget a session entirely; returns False if it was not known."""
        with self._lock:
            dropped = self._sessions.pop(session_id, None) is not None
        if dropped:
            logger.debug(f'Dropped conversation state for session {session_id}')
        return dropped

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

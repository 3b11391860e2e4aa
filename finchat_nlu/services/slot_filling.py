"""
Slot-filling dialog state: a pending question the assistant asked and the answers collected for it.
"""

import re
import time
from typing import Any, Callable, Dict, List, Optional

from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.text_extraction import extract_amount

logger = get_logger(__name__)

BUDGET_AMOUNT = 'budget_amount'
PAYMENT_AMOUNT = 'payment_amount'
CARD_SELECTION = 'card_selection'
STRATEGY_PREFERENCE = 'strategy_preference'
CONFIRMATION = 'confirmation'
MEMORY_TAG = 'memory_tag'

QUESTION_TYPES = (BUDGET_AMOUNT, PAYMENT_AMOUNT, CARD_SELECTION, STRATEGY_PREFERENCE, CONFIRMATION, MEMORY_TAG)

_STRATEGIES = [
    ('avalanche', ['avalanche', 'highest apr', 'highest interest', 'minimize interest']),
    ('snowball', ['snowball', 'smallest balance', 'smallest first', 'quick wins']),
    ('balanced', ['balanced', 'mix', 'combination', 'both']),
]

_CARD_SELECTION = re.compile(r'(?:card )?#?(\d+)|([a-z\s]+(?:card|rewards|cash))', re.IGNORECASE)
_YES = re.compile(r"^(yes|yeah|yep|sure|ok|okay|do it|go ahead|sounds good|let'?s do it)$", re.IGNORECASE)
_NO = re.compile(r'^(no|nope|nah|cancel|never mind|not now)$', re.IGNORECASE)
_TAG_PREFIX = re.compile(r'^tag(?:ged)?(?:\s+it)?(?:\s+(?:as|with))?\s+', re.IGNORECASE)


def normalize_tags(raw: str) -> List[str]:
    """Split a free-text tag answer into clean lowercase tags."""
    tags = []
    for part in re.split(r',|\band\b|&', raw.lower()):
        tag = re.sub(r'\s+', ' ', re.sub(r'[^a-z0-9\s\-]', '', part).strip())
        if tag and tag not in tags:
            tags.append(tag)
    return tags


class SlotFillingState:
    """Pending question plus the slots collected so far for one session.

    A question expires after the configured timeout so the dialog can never stay stuck.
    """

    def __init__(self, timeout: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout if timeout is not None else config.context.slot_question_timeout
        self._clock = clock
        self.pending_question: Optional[str] = None
        self.target_intent: Optional[str] = None
        self.slots: Dict[str, Any] = {}
        self.required_slots: List[str] = []
        self.asked_at: Optional[float] = None

    def ask_question(self,
                     question_type: str,
                     target_intent: str,
                     required_slots: Optional[List[str]] = None,
                     existing_slots: Optional[Dict[str, Any]] = None) -> None:
        """Record that the assistant asked a question whose answer fills a slot of target_intent."""
        self.pending_question = question_type
        self.target_intent = target_intent
        self.required_slots = list(required_slots or [])
        self.slots = dict(existing_slots or {})
        self.asked_at = self._clock()
        logger.debug(f'Asked {question_type} for {target_intent}, required slots: {self.required_slots}')

    def has_pending_question(self) -> bool:
        if not self.pending_question:
            return False

        if self._clock() - self.asked_at > self.timeout:
            logger.debug(f'Pending {self.pending_question} question timed out')
            self.clear()
            return False

        return True

    def extract_answer(self, query: str) -> Optional[Dict[str, Any]]:
        """Interpret query as the answer to the pending question.

        Returns:
            Dict with slot_name, value and confidence, or None when the query is not an answer
        """
        if not self.has_pending_question():
            return None

        lower_query = (query or '').lower().strip()

        if self.pending_question == BUDGET_AMOUNT:
            return self._extract_budget_amount(lower_query)
        if self.pending_question == PAYMENT_AMOUNT:
            return self._extract_payment_amount(lower_query)
        if self.pending_question == CARD_SELECTION:
            return self._extract_card_selection(lower_query)
        if self.pending_question == STRATEGY_PREFERENCE:
            return self._extract_strategy_preference(lower_query)
        if self.pending_question == CONFIRMATION:
            return self._extract_confirmation(lower_query)
        if self.pending_question == MEMORY_TAG:
            return self._extract_memory_tag(query or '')
        return None

    def _extract_budget_amount(self, query: str) -> Optional[Dict[str, Any]]:
        amount = extract_amount(query, min_digits=1, allow_k=True)
        if not amount:
            return None

        # Bare numbers are the most certain answers
        if re.match(r'^\$?[\d,]+$', query):
            confidence = 0.98
        elif re.match(r"^(?:it'?s |about |around )?\$?[\d,]+$", query, re.IGNORECASE):
            confidence = 0.95
        else:
            confidence = 0.90

        return {'slot_name': 'budget', 'value': amount, 'confidence': confidence}

    def _extract_payment_amount(self, query: str) -> Optional[Dict[str, Any]]:
        amount = extract_amount(query, min_digits=1, allow_k=True)
        if not amount:
            return None
        return {'slot_name': 'amount', 'value': amount, 'confidence': 0.85}

    def _extract_card_selection(self, query: str) -> Optional[Dict[str, Any]]:
        match = _CARD_SELECTION.search(query)
        if not match:
            return None
        return {'slot_name': 'card_name', 'value': (match.group(1) or match.group(2)).strip(), 'confidence': 0.80}

    def _extract_strategy_preference(self, query: str) -> Optional[Dict[str, Any]]:
        for strategy, phrases in _STRATEGIES:
            if any(phrase in query for phrase in phrases):
                return {'slot_name': 'strategy', 'value': strategy, 'confidence': 0.90}
        return None

    def _extract_confirmation(self, query: str) -> Optional[Dict[str, Any]]:
        if _YES.match(query):
            return {'slot_name': 'confirmed', 'value': True, 'confidence': 0.95}
        if _NO.match(query):
            return {'slot_name': 'confirmed', 'value': False, 'confidence': 0.95}
        return None

    def _extract_memory_tag(self, raw_query: str) -> Optional[Dict[str, Any]]:
        cleaned = re.sub(r"^it's\s+", '', _TAG_PREFIX.sub('', raw_query.strip()), flags=re.IGNORECASE).strip()
        tags = normalize_tags(cleaned or raw_query)
        if not tags:
            return None
        return {'slot_name': 'tags', 'value': tags, 'confidence': 0.9}

    def fill_slot(self, slot_name: str, value: Any) -> None:
        self.slots[slot_name] = value

    def all_slots_filled(self) -> bool:
        return all(slot in self.slots for slot in self.required_slots)

    def get_ready_intent(self) -> Optional[Dict[str, Any]]:
        """Return {intent, slots} once every required slot is filled, clearing the state."""
        if not self.all_slots_filled():
            return None

        ready = {'intent': self.target_intent, 'slots': dict(self.slots)}
        self.clear()
        return ready

    def clear(self) -> None:
        self.pending_question = None
        self.target_intent = None
        self.slots = {}
        self.required_slots = []
        self.asked_at = None

    def get_summary(self) -> Dict[str, Any]:
        return {
            'has_pending': self.has_pending_question(),
            'question_type': self.pending_question,
            'target_intent': self.target_intent,
            'filled_slots': list(self.slots),
            'required_slots': list(self.required_slots),
            'all_filled': self.all_slots_filled()
        }

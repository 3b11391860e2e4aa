"""
Category gate: coarse TASK / GUIDANCE / CHAT classification ahead of intent search.
"""

import json
import re
from typing import Optional

from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import config
from ..utils.json_utils import clean_json_response
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

CATEGORIES = ('TASK', 'GUIDANCE', 'CHAT')
DEFAULT_CATEGORY = 'TASK'

# Payment-schedule questions are always tasks; no model call needed
QUICK_TASK_PATTERNS = [
    re.compile(pattern) for pattern in (r'payment due', r'due dates?', r'when.*payment', r'payment schedule', r'payment reminders?',
                                        r'bill due', r'next payment', r'statement close', r'statement dates?')
]

MEMORY_PATTERN = re.compile(r'\b(memory|memories|remember|tag|tags|note|log|save)\b', re.IGNORECASE)

CLASSIFIER_PROMPT = """You are a query classifier. Classify the user's query into exactly ONE category:

TASK - User wants to perform a specific action with their credit cards:
- Choose which card to use for a purchase
- Compare cards or compare strategies for a purchase
- View card information, balances, or payments
- Split payments across cards
- Add or remove cards
- Navigate to a specific screen
- Get card recommendations

GUIDANCE - User wants financial advice or education (NOT purchase-related):
- How to reduce debt or pay off balances
- Credit score improvement tips
- Understanding credit concepts (APR, utilization, grace periods)
- General financial coaching or best practices
- Debt payoff strategies

CHAT - Casual conversation:
- Greetings (hi, hello, hey)
- Thanks or affirmations
- Small talk

Respond with ONLY a JSON object of the form {"category": "TASK"} using TASK, GUIDANCE, or CHAT."""


class CategoryClassifier:
    """Classify a query into TASK, GUIDANCE or CHAT with a keyword shortcut and one cheap model call."""

    def __init__(self, llm: Optional[BedrockLLM] = None, model_id: Optional[str] = None):
        """
        Initialize the classifier.

        Args:
            llm: Completion client (a BedrockLLM built from config when None)
            model_id: Model used for classification (config classifier model when None)
        """
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        self.model_id = model_id or config.bedrock_llm.classifier_model_id

    def classify(self, query: str) -> str:
        """Classify query; never raises and defaults to TASK."""
        normalized = re.sub(r'\s+', ' ', (query or '').lower()).strip()

        if any(pattern.search(normalized) for pattern in QUICK_TASK_PATTERNS):
            logger.debug('Keyword heuristic matched TASK')
            return 'TASK'

        messages = [{'role': 'system', 'content': CLASSIFIER_PROMPT}, {'role': 'user', 'content': query}]

        try:
            raw = self.llm.complete(messages, temperature=0.0, max_tokens=20, model_id=self.model_id)
        except BedrockLLMError as e:
            logger.error(f'Error classifying category: {e}')
            return DEFAULT_CATEGORY
        except Exception as e:
            logger.error(f'Unexpected error classifying category: {e}')
            return DEFAULT_CATEGORY

        category = self._parse(raw)
        if category not in CATEGORIES:
            logger.warning(f'Invalid category returned: {raw!r} - defaulting to TASK')
            return DEFAULT_CATEGORY

        logger.debug(f'Category classified: {category}')
        return category

    @staticmethod
    def _parse(raw: Optional[str]) -> Optional[str]:
        if not raw:
            return None
        cleaned = clean_json_response(raw)
        try:
            parsed = json.loads(cleaned)
            if isinstance(parsed, dict):
                return str(parsed.get('category', '')).strip().upper()
            return str(parsed).strip().upper()
        except json.JSONDecodeError:
            return cleaned.strip().strip('"').upper()

    def gate(self, query: str) -> str:
        """Classify, then promote CHAT to TASK when the query talks about saving notes or memories."""
        category = self.classify(query)
        if category == 'CHAT' and MEMORY_PATTERN.search(query or ''):
            logger.debug('Memory wording upgraded CHAT to TASK')
            category = 'TASK'
        return category

"""
Conversation engine: the classification cascade behind every chat turn.

Stages, in order:
    1. Slot-fill check: answer a pending question if the query is one
    2. Context rewrite, with a direct route for confident follow-ups
    3. Category gate (TASK / GUIDANCE / CHAT)
    4. Embedding search over intent exemplars of the gated category
    5. Confidence band: local handler (verbatim for critical intents, otherwise
       reworded by the LLM) or LLM fallback with only the intent hint
    6. Context update, analytics and deferred learning
"""

import json
import re
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Tuple

from ..models.catalog import CRITICAL_INTENTS, INTENT_CATEGORIES, category_for_intent
from ..models.core import ActiveContext, IntentMatch, RewriteResult
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from ..utils.similarity import word_overlap
from .category_classifier import CategoryClassifier
from .conversation_context import ConversationContextRegistry, SessionState
from .entity_extraction import EntityExtractor, format_entities_for_log
from .feedback_loop import FeedbackLoop
from .intent_search import IntentSearchService
from .learning_worker import LearningWorker
from .llm_fallback import CompletionFallback
from .pattern_learner import PatternLearner
from .query_analytics import QueryAnalytics
from .query_rewriter import QueryRewriter

logger = get_logger(__name__)

# (entities, user_data, raw_query) -> text or {'response': text, ...}
Handler = Callable[[Dict[str, Any], Dict[str, Any], str], Any]

APOLOGY_RESPONSE = "I'm having trouble understanding that. Could you rephrase your question?"
SLOT_EXECUTION_ERROR = "I understood your answer, but I'm having trouble processing it. Could you try rephrasing?"
SLOT_ACKNOWLEDGEMENT = "I've received your information. Let me process that..."
MISSING_TAG_RESPONSE = "I still need a short tag like 'tag travel' so I can store that note."

_SAVE_WORDS = re.compile(r'\b(save|remember|log|note|track)\b')
_RETRIEVAL_WORDS = re.compile(r'\b(show|list|find|see|display|what|which|any)\b')
_DATA_QUERY_PATTERNS = [
    re.compile(r'\b(lowest|highest|smallest|largest|maximum|minimum)\s+(balance|apr|interest|rate|limit|utilization)\b'),
    re.compile(r'\b(balance|apr|interest|rate|limit|utilization).*(lowest|highest|smallest|largest|maximum|minimum)\b'),
    re.compile(r'\b(show|list|find|give me|tell me|what is).*(balance|apr|interest|rate|limit|utilization)\b'),
]
_NETWORK_ISSUER_PATTERNS = [
    re.compile(r'\b(visa|mastercard|amex|discover|american express)\s+card'),
    re.compile(r'\b(chase|citi|capital one|american express|bank of america|wells fargo)\s+card'),
    re.compile(r'\bmaster\s*card'),
]


class ConversationEngineError(Exception):
    """Custom exception for conversation engine errors."""
    pass


def apply_intent_heuristics(query: str, match: Optional[IntentMatch]) -> Optional[IntentMatch]:
    """
    Correct known embedding confusions on the top match.

    Save wording without retrieval wording means remember_memory; a recommendation match
    that is really a data lookup (extremes of balance/APR, network or issuer filters)
    means query_card_data.
    """
    if match is None or not query:
        return match

    lower_query = query.lower()
    cascade = config.cascade

    wants_to_save = bool(_SAVE_WORDS.search(lower_query))
    retrieval = bool(_RETRIEVAL_WORDS.search(lower_query))
    if wants_to_save and not retrieval and match.intent_id != 'remember_memory':
        logger.debug(f'Heuristic: {match.intent_id} -> remember_memory')
        return replace(match, intent_id='remember_memory', similarity=max(match.similarity, cascade.medium_confidence + 0.01))

    if match.intent_id == 'card_recommendation':
        is_data_query = any(pattern.search(lower_query) for pattern in _DATA_QUERY_PATTERNS)
        has_filter = any(pattern.search(lower_query) for pattern in _NETWORK_ISSUER_PATTERNS)
        if is_data_query or has_filter:
            logger.debug(f'Heuristic: card_recommendation -> query_card_data '
                         f'({"data_query_pattern" if is_data_query else "network_issuer_filter"})')
            return replace(match, intent_id='query_card_data', similarity=max(match.similarity, cascade.high_confidence))

    return match


def _unwrap(result: Any) -> Tuple[Any, Dict[str, Any]]:
    """Split a handler result into its response and the metadata that rides along with it."""
    if isinstance(result, dict) and 'response' in result:
        meta = {key: value for key, value in result.items() if key != 'response'}
        return result['response'], meta
    return result, {}


def _as_text(response: Any) -> str:
    if isinstance(response, str):
        return response
    return json.dumps(response, default=str)


class ConversationEngine:
    """Resolve chat turns into responses, one session at a time."""

    def __init__(self,
                 handlers: Optional[Dict[str, Handler]] = None,
                 registry: Optional[ConversationContextRegistry] = None,
                 extractor: Optional[EntityExtractor] = None,
                 rewriter: Optional[QueryRewriter] = None,
                 classifier: Optional[CategoryClassifier] = None,
                 intent_search: Optional[IntentSearchService] = None,
                 completion: Optional[CompletionFallback] = None,
                 analytics: Optional[QueryAnalytics] = None,
                 learner: Optional[PatternLearner] = None,
                 feedback: Optional[FeedbackLoop] = None,
                 worker: Optional[LearningWorker] = None,
                 store: Optional[OpenSearchClient] = None,
                 embed: Optional[BedrockEmbed] = None,
                 llm: Optional[BedrockLLM] = None):
        """
        Initialize the engine. Collaborators not given are built from config.

        Args:
            handlers: Local handlers keyed by "intent" or "intent:action"
            registry: Per-session conversation state
            extractor: Entity extractor
            rewriter: Context rewriter
            classifier: Category gate
            intent_search: Exemplar embedding search
            completion: LLM fallback
            analytics: Query log
            learner: Pattern learner
            feedback: Feedback loop
            worker: Background worker for learning updates
            store: OpenSearch client shared by the default collaborators
            embed: Embedding client shared by the default collaborators
            llm: Completion client shared by the default collaborators
        """
        self.handlers: Dict[str, Handler] = dict(handlers or {})
        self._store, self._embed, self._llm = store, embed, llm

        self.registry = registry or ConversationContextRegistry()
        self.extractor = extractor or EntityExtractor()
        self.rewriter = rewriter or QueryRewriter()
        self.classifier = classifier or CategoryClassifier(llm=self._shared_llm())
        self.intent_search = intent_search or IntentSearchService(store=self._shared_store(), embed=self._shared_embed())
        self.completion = completion or CompletionFallback(llm=self._shared_llm())
        self.analytics = analytics or QueryAnalytics(store=self._shared_store())
        self.worker = worker or LearningWorker()
        self.learner = learner or PatternLearner(store=self._shared_store(), embed=self._shared_embed())
        self.feedback = feedback or FeedbackLoop(store=self._shared_store(), learner=self.learner, worker=self.worker)
        self.thresholds = config.cascade

        logger.info(f'Initialized ConversationEngine with {len(self.handlers)} handlers')

    # Shared clients are only built for collaborators that were not injected
    def _shared_store(self) -> OpenSearchClient:
        if self._store is None:
            self._store = OpenSearchClient(config.opensearch)
        return self._store

    def _shared_embed(self) -> BedrockEmbed:
        if self._embed is None:
            self._embed = BedrockEmbed(config.bedrock_embed)
        return self._embed

    def _shared_llm(self) -> BedrockLLM:
        if self._llm is None:
            self._llm = BedrockLLM(config.bedrock_llm)
        return self._llm

    def register_handler(self, key: str, handler: Handler) -> None:
        """Register a local handler for "intent" or "intent:action"."""
        self.handlers[key] = handler

    def reset_session(self, session_id: str) -> None:
        self.registry.reset(session_id)

    def process_query(self, query: str, user_data: Optional[Dict[str, Any]] = None, session_id: str = 'default') -> str:
        """
        Resolve one user query into a response. Never raises.

        Turns of one session are serialized; different sessions run concurrently.

        Args:
            query: Raw user query
            user_data: Wallet data for handlers and prompts (cards, user_id, ...)
            session_id: Conversation session

        Returns:
            Response text
        """
        user_data = user_data or {}
        started = time.perf_counter()

        with self.registry.session(session_id) as state:
            try:
                return self._process(query, user_data, state, started)
            except Exception as e:
                logger.error(f'Error processing query: {e}', exc_info=True)
                self.analytics.track_query(query,
                                           user_id=user_data.get('user_id'),
                                           session_id=session_id,
                                           response_time_ms=self._elapsed_ms(started),
                                           success=False,
                                           error_message=str(e),
                                           decomposition_method='error')
                return APOLOGY_RESPONSE

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 2)

    def _process(self, query: str, user_data: Dict[str, Any], state: SessionState, started: float) -> str:
        context = state.context

        slot_response = self._handle_slot_answer(query, user_data, state, started)
        if slot_response is not None:
            return slot_response

        self._detect_reformulation(query, user_data, state)

        active = context.get_active_context()
        rewrite = self.rewriter.rewrite(query, active)
        if rewrite.confidence > 0:
            logger.debug(f'Rewrote "{query}" -> "{rewrite.rewritten_query}" ({rewrite.confidence:.2f}, {rewrite.reason})')

        if self.rewriter.should_direct_route(rewrite):
            return self._handle_direct_route(query, rewrite, user_data, state, active, started)

        query_to_classify = rewrite.rewritten_query if rewrite.confidence >= self.thresholds.rewrite_classify_confidence else query
        category = self.classifier.gate(query_to_classify)
        allowed_intents = INTENT_CATEGORIES.get(category, [])
        logger.debug(f'Category {category} for "{query_to_classify}"')

        # The raw query is embedded, not the rewrite
        query_vector = self.intent_search.embed_query(query)
        matches = []
        if query_vector is None:
            logger.warning('Embedding failed, using completion fallback')
        else:
            matches = self.intent_search.search(query_vector,
                                                floor=self.thresholds.low_confidence,
                                                top_k=self.thresholds.top_k,
                                                allowed_intents=allowed_intents)

        if not matches:
            response = self.completion.respond(query, user_data, active, category=category)
            entities = self.extractor.extract(query)
            context.add_turn(query, 'gpt_fallback', entities, response)
            self._track(query, user_data, state, started, intent='gpt_fallback', entities=entities, method='gpt')
            return response

        top_match = apply_intent_heuristics(query, matches[0])
        logger.info(f'Top intent {top_match.intent_id} ({top_match.similarity:.3f}) in {category}')

        if top_match.similarity >= self.thresholds.medium_confidence:
            return self._handle_confident_match(query, top_match, category, user_data, state, active, started)

        response = self.completion.respond(query, user_data, active, top_match=top_match, category=category)
        entities = self.extractor.extract(query)
        context.add_turn(query, 'gpt_fallback', entities, response)
        self._track(query, user_data, state, started,
                    intent='gpt_fallback', similarity=top_match.similarity, entities=entities, method='gpt')
        return response

    def _handle_confident_match(self, query: str, match: IntentMatch, category: str, user_data: Dict[str, Any],
                                state: SessionState, active: ActiveContext, started: float) -> str:
        band = 'high' if match.similarity >= self.thresholds.high_confidence else 'medium'
        entities = self.extractor.extract(query)
        logger.debug(f'{band} confidence {match.intent_id}, entities: {format_entities_for_log(entities)}')

        local_response, meta = None, {}
        handler = self.handlers.get(match.intent_id)
        if handler is None:
            logger.warning(f'No local handler for {match.intent_id}')
        else:
            try:
                local_response, meta = self._run_handler(handler, entities, user_data, query, state)
            except Exception as e:
                logger.error(f'Handler for {match.intent_id} failed: {e}')

        if local_response is not None and match.intent_id in CRITICAL_INTENTS:
            response = _as_text(local_response)
        else:
            response = self.completion.respond(query, user_data, active,
                                               top_match=match,
                                               local_response=_as_text(local_response) if local_response is not None else None,
                                               category=category)

        state.context.add_turn(query, match.intent_id, entities, response)
        self._track(query, user_data, state, started,
                    intent=match.intent_id, similarity=match.similarity, entities=entities, method='vector', meta=meta)
        self._schedule_learning(query, match.intent_id, entities, meta, started)
        return response

    def _run_handler(self, handler: Handler, entities: Dict[str, Any], user_data: Dict[str, Any], raw_query: str,
                     state: SessionState) -> Tuple[Any, Dict[str, Any]]:
        response, meta = _unwrap(handler(entities, user_data, raw_query))

        question = meta.get('slot_question')
        if question:
            state.slot_filling.ask_question(question['type'],
                                            question['target_intent'],
                                            question.get('required_slots'),
                                            question.get('existing_slots'))
        return response, meta

    def _handle_direct_route(self, query: str, rewrite: RewriteResult, user_data: Dict[str, Any], state: SessionState,
                             active: ActiveContext, started: float) -> str:
        route = rewrite.direct_route
        rewritten = rewrite.rewritten_query
        handler_key = next((key for key in route.handler_keys if key in self.handlers), None)
        logger.info(f'Direct route {route.intent}:{route.action} via {handler_key or "completion"}')

        meta: Dict[str, Any] = {}
        try:
            if handler_key is None:
                response = self.completion.respond(rewritten, user_data, active, category=category_for_intent(route.intent))
            else:
                local_response, meta = self._run_handler(self.handlers[handler_key], route.entities, user_data, rewritten, state)
                response = _as_text(local_response)
        except Exception as e:
            logger.error(f'Direct route handler {handler_key} failed: {e}')
            response = self.completion.respond(rewritten, user_data, active, category='TASK')
            self._track(query, user_data, state, started, intent=route.intent, similarity=rewrite.confidence,
                        entities=route.entities, method='direct_route', success=False, error=str(e))
            return response

        context = state.context
        if route.action and context.has_pending_action(route.action):
            context.clear_pending_action(route.action)
        elif route.intent == 'split_payment' and context.has_pending_action('detailed_plan'):
            context.clear_pending_action('detailed_plan')

        context.add_turn(rewritten, route.intent, route.entities, response)
        self._track(query, user_data, state, started,
                    intent=route.intent, similarity=rewrite.confidence, entities=route.entities, method='direct_route', meta=meta)
        self._schedule_learning(rewritten, route.intent, route.entities, meta, started)
        return response

    def _handle_slot_answer(self, query: str, user_data: Dict[str, Any], state: SessionState, started: float) -> Optional[str]:
        slots = state.slot_filling
        if not slots.has_pending_question():
            return None

        answer = slots.extract_answer(query)
        if not answer or answer['confidence'] < self.thresholds.slot_answer_confidence:
            logger.debug('Query is not an answer to the pending question; clearing it')
            slots.clear()
            return None

        slots.fill_slot(answer['slot_name'], answer['value'])

        if not slots.all_slots_filled():
            response = f"Got it! I've recorded {', '.join(slots.slots)}. What else would you like to know?"
            self._track(query, user_data, state, started,
                        intent=slots.target_intent, entities=dict(slots.slots), method='slot_filled')
            return response

        ready = slots.get_ready_intent()
        response = self._execute_with_slots(ready, user_data, query, state)
        state.context.add_turn(query, ready['intent'], ready['slots'], response)
        self._track(query, user_data, state, started, intent=ready['intent'], entities=ready['slots'], method='slot_filled')
        return response

    def _execute_with_slots(self, ready: Dict[str, Any], user_data: Dict[str, Any], query: str, state: SessionState) -> str:
        intent, slots = ready['intent'], ready['slots']

        try:
            if intent == 'split_payment':
                handler = self.handlers.get('split_payment')
                if handler is None:
                    raise ConversationEngineError('No handler registered for split_payment')
                response, _ = self._run_handler(handler, {'amount': slots.get('budget')}, user_data, query, state)
                return _as_text(response)

            if intent == 'remember_memory':
                draft = slots.get('memory_draft') or {}
                tags = slots.get('tags')
                if not draft or not isinstance(tags, list) or not tags:
                    state.slot_filling.clear()
                    return MISSING_TAG_RESPONSE
                handler = self.handlers.get('remember_memory')
                if handler is None:
                    raise ConversationEngineError('No handler registered for remember_memory')
                entities = {'tags': tags, 'memory_draft': draft}
                response, _ = self._run_handler(handler, entities, user_data, draft.get('natural_text') or query, state)
                return _as_text(response)

            return SLOT_ACKNOWLEDGEMENT

        except Exception as e:
            logger.error(f'Error executing {intent} with slots: {e}')
            return SLOT_EXECUTION_ERROR

    def _detect_reformulation(self, query: str, user_data: Dict[str, Any], state: SessionState) -> None:
        """Record implicit feedback when the query rephrases the previous one."""
        context = state.context
        log_id = context.last_query_log_id
        if not log_id or not context.history or context.is_follow_up(query):
            return

        previous = context.history[-1].query
        if word_overlap(query, previous) < self.thresholds.reformulation_overlap:
            return

        logger.debug(f'Query looks like a reformulation of "{previous}"')
        self.worker.submit(self.feedback.record_implicit_feedback,
                           log_id,
                           'reformulation',
                           pattern_id=context.last_pattern_id,
                           user_id=user_data.get('user_id'),
                           session_id=state.session_id,
                           new_query=query)

    def _track(self,
               query: str,
               user_data: Dict[str, Any],
               state: SessionState,
               started: float,
               intent: Optional[str] = None,
               similarity: Optional[float] = None,
               entities: Any = None,
               method: str = 'direct',
               meta: Optional[Dict[str, Any]] = None,
               success: bool = True,
               error: Optional[str] = None) -> None:
        meta = meta or {}
        log_id = self.analytics.track_query(query,
                                            entities=entities,
                                            structured_query=meta.get('structured_query'),
                                            result=meta.get('result'),
                                            user_id=user_data.get('user_id'),
                                            session_id=state.session_id,
                                            intent=intent,
                                            similarity_score=similarity,
                                            response_time_ms=self._elapsed_ms(started),
                                            success=success,
                                            error_message=error,
                                            pattern_id=meta.get('pattern_id'),
                                            decomposition_method=method)
        state.context.last_query_log_id = log_id
        state.context.last_pattern_id = meta.get('pattern_id')

    def _schedule_learning(self, query: str, intent: str, entities: Dict[str, Any], meta: Dict[str, Any], started: float) -> None:
        structured_query = meta.get('structured_query')
        if structured_query is not None:
            self.worker.submit(self.learner.learn_pattern, query, entities, structured_query, meta.get('result'), intent)

        pattern_id = meta.get('pattern_id')
        if pattern_id:
            self.worker.submit(self.learner.record_pattern_usage, pattern_id, self._elapsed_ms(started))

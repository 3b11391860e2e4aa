"""
Context-aware query rewriting.

An ordered list of rules turns a context-dependent follow-up ("compare all strategies",
"what about dining") into a self-contained query, optionally with a direct route that
lets the cascade skip classification. The first rule that produces a result wins, so
the order of REWRITE_RULES is part of the contract.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from ..models.core import ActiveContext, DirectRoute, RewriteResult
from ..utils.config import config
from ..utils.logging_config import get_logger
from .entity_extraction import format_entities_for_log

logger = get_logger(__name__)


@dataclass(frozen=True)
class RewriteRule:
    """One rewrite rule: fires when the last intent is allowed and the pattern matches.

    build may still return None to let later rules try.
    """
    name: str
    pattern: re.Pattern
    build: Callable[[re.Match, str, ActiveContext], Optional[RewriteResult]]
    last_intents: Optional[Tuple[str, ...]] = None  # None means any last intent


def _compact(entities: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in entities.items() if value is not None}


def _purchase_entities(context: ActiveContext) -> Dict[str, Any]:
    entities = context.entities
    return _compact({'merchant': entities.get('merchant'), 'category': entities.get('category'), 'amount': entities.get('amount')})


def _for_target(context: ActiveContext) -> str:
    target = context.entities.get('merchant') or context.entities.get('category')
    return f' for {target}' if target else ''


def _compare_strategies(match, query, context):
    rewritten = 'compare all card strategies' + _for_target(context)
    amount = context.entities.get('amount')
    if amount:
        rewritten += f' (${amount})'
    return RewriteResult(rewritten_query=rewritten,
                         confidence=0.98,
                         reason='Follow-up: compare strategies after recommendation',
                         direct_route=DirectRoute('card_recommendation', 'compare_strategies', _purchase_entities(context)))


def _show_alternatives(match, query, context):
    return RewriteResult(rewritten_query='show alternative cards' + _for_target(context),
                         confidence=0.90,
                         reason='Follow-up: requesting alternatives',
                         direct_route=DirectRoute('card_recommendation', 'show_alternatives', _purchase_entities(context)))


def _explain_rejection(match, query, context):
    card_name = match.group(2).strip()
    entities = _compact({
        'merchant': context.entities.get('merchant'),
        'category': context.entities.get('category'),
        'rejected_card': card_name
    })
    return RewriteResult(rewritten_query=f'explain why {card_name} is not recommended' + _for_target(context),
                         confidence=0.85,
                         reason='Follow-up: questioning recommendation',
                         direct_route=DirectRoute('card_recommendation', 'explain_rejection', entities))


def _resolve_pronoun(match, query, context):
    if context.last_intent == 'card_recommendation':
        return RewriteResult(rewritten_query='explain the card recommendation strategy',
                             confidence=0.80,
                             reason='Pronoun resolution: referring to recommendation',
                             direct_route=DirectRoute('card_recommendation', 'explain_strategy', dict(context.entities)))
    if context.last_intent == 'debt_guidance':
        return RewriteResult(rewritten_query='explain the debt payoff strategy',
                             confidence=0.80,
                             reason='Pronoun resolution: referring to debt strategy')
    return None


def _affirmative(match, query, context):
    if 'compare_strategies' in context.pending_actions:
        return RewriteResult(rewritten_query='compare all strategies',
                             confidence=0.75,
                             reason='Affirmative response to pending action',
                             direct_route=DirectRoute('card_recommendation', 'compare_strategies', dict(context.entities)))
    if 'detailed_plan' in context.pending_actions:
        return RewriteResult(rewritten_query='show detailed payment plan',
                             confidence=0.75,
                             reason='Affirmative response to detailed plan offer',
                             direct_route=DirectRoute('split_payment', None, dict(context.entities)))
    return None


def _repeat(match, query, context):
    return RewriteResult(rewritten_query=context.last_query or query,
                         confidence=0.70,
                         reason='Repeat last query',
                         direct_route=DirectRoute(context.last_intent, None, dict(context.entities)))


def _substitute_entity(match, query, context):
    new_entity = match.group(1).strip()
    if not new_entity:
        return None
    return RewriteResult(rewritten_query=f'which card for {new_entity}',
                         confidence=0.75,
                         reason='Implicit follow-up with new entity',
                         direct_route=DirectRoute('card_recommendation', None, {'merchant': new_entity}))


def _debt_plan(match, query, context):
    return RewriteResult(rewritten_query='create detailed debt payoff plan',
                         confidence=0.85,
                         reason='Follow-up: requesting detailed debt plan',
                         direct_route=DirectRoute('split_payment', 'debt_payoff_plan', dict(context.entities)))


def _debt_payment_amounts(match, query, context):
    return RewriteResult(rewritten_query='calculate optimal payment amounts',
                         confidence=0.80,
                         reason='Follow-up: requesting payment amounts',
                         direct_route=DirectRoute('split_payment', 'calculate_payments', dict(context.entities)))


def _debt_snowball(match, query, context):
    return RewriteResult(rewritten_query='show snowball method for debt payoff',
                         confidence=0.85,
                         reason='Follow-up: requesting snowball strategy',
                         direct_route=DirectRoute('debt_guidance', 'snowball_method', dict(context.entities)))


def _coaching_more_detail(match, query, context):
    return RewriteResult(rewritten_query='provide more details about ' + (context.last_query or 'credit card management'),
                         confidence=0.75,
                         reason='Follow-up: requesting more details')


def _coaching_topic(match, query, context):
    topic = match.group(1)
    return RewriteResult(rewritten_query=f'explain {topic} in credit cards',
                         confidence=0.80,
                         reason='Follow-up: asking about specific topic',
                         direct_route=DirectRoute('money_coaching', None, {'topic': topic}))


def _split_avalanche(match, query, context):
    return RewriteResult(rewritten_query='split payment using avalanche method',
                         confidence=0.85,
                         reason='Follow-up: requesting avalanche strategy',
                         direct_route=DirectRoute('split_payment', 'avalanche', dict(context.entities)))


def _split_what_if(match, query, context):
    amount = match.group(1) or match.group(2)
    entities = dict(context.entities)
    entities['amount'] = float(amount)
    return RewriteResult(rewritten_query=f'split ${amount} between cards',
                         confidence=0.85,
                         reason='Follow-up: what-if scenario',
                         direct_route=DirectRoute('split_payment', None, entities))


def _split_recalculate(match, query, context):
    return RewriteResult(rewritten_query='recalculate payment split',
                         confidence=0.75,
                         reason='Follow-up: recalculation request',
                         direct_route=DirectRoute('split_payment', None, dict(context.entities)))


def _card_details_for(match, query, context):
    card_name = match.group(1).strip()
    return RewriteResult(rewritten_query=f'show details for {card_name}',
                         confidence=0.80,
                         reason='Follow-up: asking about specific card',
                         direct_route=DirectRoute('query_card_data', None, {'card_name': card_name}))


def _card_more_info(match, query, context):
    return RewriteResult(rewritten_query='show detailed card information',
                         confidence=0.75,
                         reason='Follow-up: requesting more details',
                         direct_route=DirectRoute('query_card_data', None, dict(context.entities)))


def _conjunction_passthrough(match, query, context):
    if not context.is_follow_up:
        return None
    merchant = context.entities.get('merchant')
    prefix = f'for {merchant}, ' if merchant else ''
    return RewriteResult(rewritten_query=prefix + query, confidence=0.50, reason='Generic follow-up - added context prefix')


def _rule(name, pattern, build, last_intents=None):
    intents = (last_intents, ) if isinstance(last_intents, str) else last_intents
    return RewriteRule(name=name, pattern=re.compile(pattern, re.IGNORECASE), build=build, last_intents=intents)


REWRITE_RULES = (
    _rule('compare_strategies', r'compare.*(all|different)?.*(strateg|option|approach)', _compare_strategies, 'card_recommendation'),
    _rule('show_alternatives', r'show.*(alternative|other|more)|other.*(card|option)|what.*else', _show_alternatives,
          'card_recommendation'),
    _rule('explain_rejection', r'why not (use )?([a-z\s]+)', _explain_rejection, 'card_recommendation'),
    _rule('pronoun_resolution', r'^(explain|show|tell me about|what is|what are) (it|that|this|those|these)$', _resolve_pronoun),
    _rule('affirmative', r"^(yes|yeah|yep|ok|okay|sure|do it|go ahead|sounds good|let's do it)$", _affirmative),
    _rule('repeat', r'the same|same (thing|one)|repeat|again', _repeat),
    _rule('entity_substitution', r'(?:what|how) about ([a-z\s]+)', _substitute_entity, 'card_recommendation'),
    _rule('debt_plan', r'show.*(plan|strategy)|create.*plan|give me.*plan|detailed.*plan', _debt_plan, 'debt_guidance'),
    _rule('debt_payment_amounts', r'how much.*(pay|should)|what.*(pay|amount)', _debt_payment_amounts, 'debt_guidance'),
    _rule('debt_snowball', r'snowball|smallest.*balance.*first', _debt_snowball, 'debt_guidance'),
    _rule('coaching_more_detail', r'explain more|tell me more|more detail|elaborate', _coaching_more_detail, 'money_coaching'),
    _rule('coaching_topic', r'(?:what|how) about (balance transfer|grace period|apr|utilization|credit score)', _coaching_topic,
          'money_coaching'),
    _rule('split_avalanche', r'avalanche|highest.*apr.*first|minimize.*interest', _split_avalanche, 'split_payment'),
    _rule('split_what_if', r'what if.*?\$?(\d+)|if.*?pay.*?\$?(\d+)', _split_what_if, 'split_payment'),
    _rule('split_recalculate', r'recalculate|try again|redo|different.*amount', _split_recalculate, 'split_payment'),
    _rule('card_details_for', r'(?:what about|tell me about|show me) ([a-z\s]+card|chase|amex|discover|capital one)',
          _card_details_for, 'query_card_data'),
    _rule('card_more_info', r'show.*detail|more.*info|full.*info|complete.*info', _card_more_info, 'query_card_data'),
    _rule('conjunction_passthrough', r'^(and|also|plus|additionally)', _conjunction_passthrough),
)


class QueryRewriter:
    """Apply REWRITE_RULES to a query against a conversation snapshot."""

    def __init__(self, rules=REWRITE_RULES, direct_route_confidence: Optional[float] = None):
        self.rules = tuple(rules)
        self.direct_route_confidence = (direct_route_confidence
                                        if direct_route_confidence is not None else config.cascade.direct_route_confidence)

    def rewrite(self, query: str, context: Optional[ActiveContext]) -> RewriteResult:
        """Rewrite query with context.

        Args:
            query: Raw user query
            context: Snapshot from ConversationContext.get_active_context()

        Returns:
            RewriteResult; confidence 0 and the query unchanged when nothing applies
        """
        if context is None or not context.last_intent:
            return RewriteResult(rewritten_query=query, confidence=0.0, reason='No conversation context')

        text = (query or '').strip()
        for rule in self.rules:
            if rule.last_intents is not None and context.last_intent not in rule.last_intents:
                continue
            match = rule.pattern.search(text)
            if not match:
                continue
            result = rule.build(match, text, context)
            if result is not None:
                logger.debug(f'Rewrite rule {rule.name}: "{query}" -> "{result.rewritten_query}" ({result.confidence:.2f}), '
                             f'entities: {format_entities_for_log(result.direct_route.entities if result.direct_route else None)}')
                return result

        return RewriteResult(rewritten_query=query, confidence=0.0, reason='No context match - using original query')

    def should_direct_route(self, result: RewriteResult) -> bool:
        """True iff the rewrite is confident enough and names a route."""
        return result.confidence >= self.direct_route_confidence and result.direct_route is not None


_default_rewriter = QueryRewriter()


def rewrite_query_with_context(query: str, context: Optional[ActiveContext]) -> RewriteResult:
    return _default_rewriter.rewrite(query, context)


def should_direct_route(result: RewriteResult) -> bool:
    return _default_rewriter.should_direct_route(result)

"""
Completion fallback: turns a query (and any local handler output) into a conversational
answer with the Bedrock LLM, and produces a canned answer when the model is unavailable.
"""

from typing import Any, Dict, List, Optional

from ..models.catalog import SCREEN_REGISTRY, format_intents_for_prompt
from ..models.core import ActiveContext, IntentMatch
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import config
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

BASE_SYSTEM_PROMPT = """You are FinChat, a friendly and helpful credit card wallet assistant.

Your capabilities:
- Help users find the best credit card to use for specific purchases
- Show card balances, payment due dates, and credit utilization
- Recommend payment optimization strategies
- Navigate users to different screens in the app
- Answer questions about rewards, APR, and spending

Context: The user has a wallet with credit cards. You can access their card data, payment information, and spending patterns.

Guidelines:
- Be concise and actionable
- Provide specific recommendations based on rewards, APR, and credit availability
- Use markdown for formatting responses
- Include deep links when relevant: [Screen Name](finchat://navigate/screen_path)
- If you need more information, ask clarifying questions
- Be friendly but professional

Available screens:
{screens}

Response format: Provide direct, helpful answers. Use bullet points for lists. Include actionable next steps when appropriate.
After every response, if appropriate, suggest 1-2 simple next steps that the user might take, written naturally.
Example: "Would you like me to show your other cards?" or "Would you like to set a reminder?\""""

CATEGORY_GUIDANCE = {
    'GUIDANCE': """GUIDANCE MODE: The user is seeking financial advice or strategy.
- Focus on education, best practices, and actionable steps
- Be empathetic and supportive (debt can be stressful)
- Provide concrete numbers and examples using their card data
- Keep responses concise (max 5-6 bullets)
- Don't recommend specific cards unless they ask
- Prioritize: strategy > tactics > specific actions""",
    'CHAT': """CHAT MODE: The user is making casual conversation.
- Be friendly, warm, and brief
- Acknowledge their message naturally
- Offer to help if appropriate
- Keep it short (1-2 sentences)""",
    'TASK': """TASK MODE: The user wants to perform a specific action.
- Be direct and action-oriented
- Provide clear next steps
- Use their card data for personalized recommendations"""
}

CLOSING_INSTRUCTIONS = """IMPORTANT:
- If the user's query clearly matches one of the intents above, help them with that specific task
- If the query is conversational or unclear, respond naturally and ask clarifying questions
- Always be helpful, friendly, and conversational
- Use the user's card data to provide personalized responses"""

LOCAL_RESPONSE_NOTE = ("\n\n[System: The system has this data to answer the user's query. Please use this EXACT response, "
                       "preserving all markdown tables and formatting. You may add a brief conversational intro "
                       "(1 sentence max) before the data:\n{local_response}\n]")

INTENT_GUESS_FALLBACK = ("I think you're asking about {intent}. However, I need more information to help you properly. "
                         "Could you rephrase your question?\n\n"
                         'For now, try:\n'
                         '• "What cards do I have?"\n'
                         '• "Which card for groceries?"\n'
                         '• "When are my payments due?"')

GENERIC_FALLBACK = """I'm not sure I understand. I can help you with:

- **Card information**: "What cards do I have?", "Show my balances"
- **Recommendations**: "Which card for Costco?", "Best card for gas"
- **Payments**: "When are my payments due?", "Split $1500 between cards"
- **Navigation**: "Take me to my wallet"

What would you like to know?"""


def _format_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def summarize_user_data(user_data: Optional[Dict[str, Any]]) -> str:
    """One-line wallet summary for the completion prompt."""
    cards = (user_data or {}).get('cards') or []
    if not cards:
        return 'User has no cards in wallet yet.'

    parts = []
    for card in cards:
        balance = card.get('current_balance') or 0
        limit = card.get('credit_limit') or 0
        utilization = round(balance / limit * 100) if limit else 0
        name = card.get('nickname') or card.get('card_name') or 'Card'
        parts.append(f'{name}: ${_format_number(balance)}/{_format_number(limit)} ({utilization}% util), '
                     f'APR {_format_number(card.get("apr"))}%')

    return f'{len(cards)} cards - ' + '; '.join(parts)


def fallback_response(top_match: Optional[IntentMatch]) -> str:
    """Canned answer used when the completion service fails."""
    if top_match and top_match.similarity > config.cascade.low_confidence:
        return INTENT_GUESS_FALLBACK.format(intent=top_match.intent_id.replace('_', ' ', 1))
    return GENERIC_FALLBACK


def build_system_prompt(category: str) -> str:
    screens = '\n'.join(f"- {screen['screen_path']}: {screen['screen_name']}" for screen in SCREEN_REGISTRY)
    return '\n\n---\n\n'.join([
        BASE_SYSTEM_PROMPT.format(screens=screens),
        format_intents_for_prompt(),
        CATEGORY_GUIDANCE.get(category, CATEGORY_GUIDANCE['TASK']) + '\n\n' + CLOSING_INSTRUCTIONS
    ])


class CompletionFallback:
    """Ask the LLM for a conversational answer, never raising."""

    def __init__(self, llm: Optional[BedrockLLM] = None, history_turns: Optional[int] = None):
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        self.history_turns = history_turns or config.cascade.history_turns

    def build_messages(self,
                       query: str,
                       user_data: Optional[Dict[str, Any]],
                       context: Optional[ActiveContext],
                       top_match: Optional[IntentMatch] = None,
                       local_response: Optional[str] = None,
                       category: str = 'TASK') -> List[Dict[str, str]]:
        """
        Compose the completion request.

        The system prompt carries the assistant persona, the intent catalogue and the
        category guidance. Recent turns are replayed as user/assistant pairs. Local
        handler output is embedded with a preserve-verbatim instruction; without it a
        matched intent is passed only as a hint.
        """
        messages = [{'role': 'system', 'content': build_system_prompt(category)}]

        history = context.history if context else []
        for turn in history[-self.history_turns:]:
            if not turn.query or not turn.response:
                continue
            messages.append({'role': 'user', 'content': turn.query})
            messages.append({'role': 'assistant', 'content': turn.response})

        contextual_query = query
        if local_response:
            contextual_query += LOCAL_RESPONSE_NOTE.format(local_response=local_response)
        elif top_match:
            contextual_query += (f'\n\n[System note: This might be related to "{top_match.intent_id}" '
                                 f'({top_match.similarity * 100:.0f}% confidence)]')
        contextual_query += f"\n\n[User's wallet data: {summarize_user_data(user_data)}]"

        messages.append({'role': 'user', 'content': contextual_query})
        return messages

    def respond(self,
                query: str,
                user_data: Optional[Dict[str, Any]],
                context: Optional[ActiveContext],
                top_match: Optional[IntentMatch] = None,
                local_response: Optional[str] = None,
                category: str = 'TASK') -> str:
        """
        Generate a conversational answer.

        Returns:
            Model output, or a canned fallback when the completion service fails
        """
        messages = self.build_messages(query, user_data, context, top_match, local_response, category)
        logger.debug(f'Calling completion service ({category}, local_response={local_response is not None}, '
                     f'history={len(messages) - 2})')

        try:
            text = self.llm.complete(messages,
                                     temperature=config.bedrock_llm.temperature,
                                     max_tokens=config.bedrock_llm.max_tokens)
        except BedrockLLMError as e:
            logger.error(f'Completion service failed: {e}')
            return fallback_response(top_match)

        if not text or not text.strip():
            logger.warning('Completion service returned an empty response')
            return fallback_response(top_match)

        return text

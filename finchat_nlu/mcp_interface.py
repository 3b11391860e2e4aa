"""
MCP Interface Layer using fastmcp for chat hosts.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from finchat_nlu.models.core import ValidationError
from finchat_nlu.services.conversation_engine import ConversationEngine
from finchat_nlu.services.feedback_loop import FeedbackLoopError
from finchat_nlu.utils.config import config
from finchat_nlu.utils.health_check import get_health_status
from finchat_nlu.utils.logging_config import get_logger
from finchat_nlu.utils.opensearch_client import INDEX_TYPES

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('FinChat NLU')
engine = ConversationEngine()


@mcp.tool()
def process_query(session_id: str, user_id: str, query: str, cards: Optional[List[Dict[str, Any]]] = None) -> str:
    """Answer one chat message.

    Args:
        session_id: Conversation session ID
        user_id: User ID
        query: The user's message
        cards: Wallet cards (card_name, nickname, current_balance, credit_limit, apr, ...)

    Returns:
        Assistant response text
    """
    if not session_id or not session_id.strip():
        raise ValueError('Session ID is required')

    if not query or not query.strip():
        return ''

    user_data = {'user_id': user_id, 'cards': cards or []}
    return engine.process_query(query, user_data, session_id=session_id)


@mcp.tool()
def record_feedback(query_log_id: str,
                    user_id: str,
                    rating: Optional[int] = None,
                    helpful: Optional[bool] = None,
                    comment: Optional[str] = None,
                    correction_text: Optional[str] = None,
                    pattern_id: Optional[str] = None,
                    session_id: Optional[str] = None) -> str:
    """Record explicit feedback on an answer.

    Args:
        query_log_id: Query log ID of the answer
        user_id: User ID
        rating: 1-5 rating
        helpful: Thumbs up or down
        comment: Free-text comment
        correction_text: What the answer should have been
        pattern_id: Pattern that produced the answer
        session_id: Conversation session ID

    Returns:
        Feedback ID

    Raises:
        Exception: If the feedback is invalid or cannot be stored
    """
    try:
        return engine.feedback.record_explicit_feedback(query_log_id,
                                                        rating=rating,
                                                        helpful=helpful,
                                                        comment=comment,
                                                        correction_text=correction_text,
                                                        user_id=user_id,
                                                        session_id=session_id,
                                                        pattern_id=pattern_id)

    except ValidationError as e:
        logger.warning(f'Invalid feedback in MCP record_feedback: {e}')
        raise Exception(f'Invalid feedback: {e}')
    except FeedbackLoopError as e:
        logger.error(f'Feedback loop error in MCP record_feedback: {e}')
        raise Exception(f'Recording feedback failed: {e}')


@mcp.tool()
def end_session(session_id: str) -> Dict[str, Any]:
    """Discard the conversation state of a session once the chat is closed.

    Args:
        session_id: Conversation session ID

    Returns:
        Dict with the session ID and whether any state was held for it
    """
    if not session_id or not session_id.strip():
        raise ValueError('Session ID is required')

    dropped = engine.registry.drop(session_id)
    logger.info(f'MCP ended session {session_id} (state dropped: {dropped})')
    return {'session_id': session_id, 'dropped': dropped}


@mcp.tool()
def query_stats(time_range: str = '7d', intent: Optional[str] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Aggregate statistics over the query log.

    Args:
        time_range: Window such as 7d, 2w, 3m or 1y (default: 7d)
        intent: Only count queries resolved to this intent
        user_id: Only count queries of this user

    Returns:
        Statistics dictionary
    """
    return engine.analytics.get_query_stats(time_range, {'intent': intent, 'user_id': user_id})


@mcp.tool()
def setup_indices() -> Dict[str, Any]:
    """Create the OpenSearch indices and seed the intent exemplars.

    Returns:
        Index creation results and the number of exemplars indexed
    """
    store = engine.intent_search.store
    indices = {index_type: store.create_index_if_not_exists(index_type) for index_type in INDEX_TYPES}
    indexed = engine.intent_search.index_intent_examples()

    logger.info(f'MCP setup created indices {indices} and indexed {indexed} exemplars')
    return {'indices': indices, 'exemplars_indexed': indexed}


@mcp.tool()
def health() -> Dict[str, Any]:
    """Health of the Bedrock and OpenSearch dependencies."""
    return get_health_status()


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)

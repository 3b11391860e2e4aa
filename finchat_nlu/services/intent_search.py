"""
Embedding search over intent exemplar queries stored in OpenSearch.
"""

from typing import Dict, Iterable, List, Optional

from ..models.catalog import INTENT_EXAMPLES, category_for_intent
from ..models.core import IntentMatch
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.similarity import cosine
from ..utils.timestamp_utils import to_iso

logger = get_logger(__name__)

INTENT_INDEX = 'intent'


class IntentSearchService:
    """Embed queries and find the closest intent exemplars."""

    def __init__(self, store: Optional[OpenSearchClient] = None, embed: Optional[BedrockEmbed] = None):
        """
        Initialize the intent search service.

        Args:
            store: OpenSearch client (built from config when None)
            embed: Embedding client (built from config when None)
        """
        self.store = store or OpenSearchClient(config.opensearch)
        self.embed = embed or BedrockEmbed(config.bedrock_embed)

        logger.info('Initialized IntentSearchService')

    def embed_query(self, query: str) -> Optional[List[float]]:
        """Embed a user query, returning None when the embedding service fails."""
        try:
            return self.embed.embed_query(query)
        except BedrockEmbedError as e:
            logger.error(f'Failed to embed query: {e}')
            return None

    def search(self,
               query_vector: List[float],
               floor: Optional[float] = None,
               top_k: Optional[int] = None,
               allowed_intents: Optional[Iterable[str]] = None) -> List[IntentMatch]:
        """
        Find exemplars similar to query_vector.

        Similarity is the cosine between the query vector and each stored exemplar vector,
        so the score does not depend on how the index scales k-NN scores.

        Args:
            query_vector: Query embedding
            floor: Minimum similarity (config low confidence when None)
            top_k: Maximum number of matches (config top-k when None)
            allowed_intents: Restrict matches to these intent ids

        Returns:
            Matches sorted by descending similarity; empty on failure
        """
        floor = floor if floor is not None else config.cascade.low_confidence
        top_k = top_k or config.cascade.top_k
        allowed = list(allowed_intents) if allowed_intents else None

        try:
            hits = self.store.vector_search(query_vector,
                                            INTENT_INDEX,
                                            top_k=top_k,
                                            filters={'intent_id': allowed} if allowed else None,
                                            include_embedding=True)
        except OpenSearchError as e:
            logger.error(f'Intent search failed: {e}')
            return []

        matches = []
        for hit in hits:
            document = hit['document']
            similarity = cosine(query_vector, document.get('embedding') or [])
            if similarity < floor:
                continue
            matches.append(IntentMatch(intent_id=document['intent_id'],
                                       similarity=similarity,
                                       example_query=document.get('example_query', '')))

        matches.sort(key=lambda match: match.similarity, reverse=True)
        logger.debug(f'Intent search returned {len(matches)} matches above {floor}')
        return matches[:top_k]

    def index_intent_examples(self, examples: Optional[Dict[str, List[str]]] = None) -> int:
        """
        Embed and index the exemplar table.

        Document ids are derived from the intent and position, so re-running overwrites
        rather than duplicates.

        Args:
            examples: intent id -> exemplar queries (the built-in table when None)

        Returns:
            Number of exemplars indexed
        """
        examples = examples or INTENT_EXAMPLES
        self.store.create_index_if_not_exists(INTENT_INDEX)

        indexed = 0
        for intent_id, queries in examples.items():
            for position, example in enumerate(queries):
                try:
                    embedding = self.embed.embed_document(example)
                    self.store.index_document(
                        {
                            'intent_id': intent_id,
                            'category': category_for_intent(intent_id),
                            'example_query': example,
                            'embedding': embedding,
                            'created_at': to_iso()
                        },
                        INTENT_INDEX,
                        doc_id=f'{intent_id}-{position}')
                    indexed += 1
                except (BedrockEmbedError, OpenSearchError) as e:
                    logger.error(f'Failed to index exemplar "{example}" for {intent_id}: {e}')

        logger.info(f'Indexed {indexed} intent exemplars across {len(examples)} intents')
        return indexed

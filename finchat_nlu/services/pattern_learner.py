"""
Pattern learning service.

Stores reusable natural-language query -> decomposition mappings in OpenSearch, matches
new queries against them by embedding or word overlap, and evolves their statistics
from usage and feedback.
"""

from typing import Any, Dict, List, Optional

from ..models.core import PatternMatch, QueryPattern, ValidationError
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import config
from ..utils.json_utils import safe_serialize
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.similarity import cosine, entity_key_overlap, word_overlap
from ..utils.text_extraction import normalize_query, query_hash
from ..utils.timestamp_utils import to_iso

logger = get_logger(__name__)

PATTERN_INDEX = 'pattern'

# Text fallback only looks at the most used candidates
TEXT_FALLBACK_CANDIDATES = 10


class PatternLearnerError(Exception):
    """Custom exception for pattern learning errors."""
    pass


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class PatternLearner:
    """Learn, match and evolve query patterns."""

    def __init__(self, store: Optional[OpenSearchClient] = None, embed: Optional[BedrockEmbed] = None):
        """
        Initialize the pattern learner.

        Args:
            store: OpenSearch client (built from config when None)
            embed: Embedding client (built from config when None)
        """
        self.store = store or OpenSearchClient(config.opensearch)
        self.embed = embed or BedrockEmbed(config.bedrock_embed)
        self.settings = config.learning

        logger.info('Initialized PatternLearner')

    def learn_pattern(self,
                      query: str,
                      entities: Optional[Dict[str, Any]],
                      structured_query: Any,
                      result: Any = None,
                      intent: Optional[str] = None) -> QueryPattern:
        """
        Learn from a successfully resolved query.

        A near-duplicate of an existing pattern becomes a variation of it; anything else
        creates a new pattern (or updates the one with the same normalized text).

        Args:
            query: Natural-language query
            entities: Entities extracted from the query
            structured_query: Decomposition the query resolved to
            result: Execution result (only logged)
            intent: Resolved intent

        Returns:
            The created or updated pattern

        Raises:
            ValidationError: If query or structured_query is missing
            PatternLearnerError: If the store fails
        """
        if not query or not query.strip():
            raise ValidationError('Query is required to learn a pattern')
        if structured_query is None:
            raise ValidationError('Structured query is required to learn a pattern')

        logger.debug(f'Learning pattern for "{query}" (intent={intent}, has_result={result is not None})')

        existing = self.find_matching_pattern(query, intent=intent)
        if existing and existing.similarity >= self.settings.similarity_threshold:
            logger.info(f'Updating pattern {existing.pattern.id} (similarity {existing.similarity:.2f})')
            return self._update_pattern(existing.pattern, query)

        return self._create_pattern(query, entities, structured_query, intent)

    def find_matching_pattern(self,
                              query: str,
                              intent: Optional[str] = None,
                              entities: Optional[Dict[str, Any]] = None,
                              threshold: Optional[float] = None,
                              max_results: Optional[int] = None,
                              min_confidence: Optional[float] = None) -> Optional[PatternMatch]:
        """
        Find the best stored pattern for a query.

        Vector similarity is tried first; when it finds nothing (or the embedding or search
        fails) the word-overlap fallback runs. A match whose entity keys overlap the query's
        entities by less than the entity threshold is rejected even if the text is close.

        Args:
            query: Natural-language query
            intent: Restrict to patterns of this intent
            entities: Entities of the query, used to validate the match
            threshold: Minimum vector similarity
            max_results: Number of vector candidates to consider
            min_confidence: Minimum pattern confidence

        Returns:
            Best PatternMatch, or None
        """
        threshold = threshold if threshold is not None else self.settings.similarity_threshold
        max_results = max_results or self.settings.max_patterns
        min_confidence = min_confidence if min_confidence is not None else self.settings.confidence_threshold

        match = self._find_by_vector(query, intent, threshold, max_results, min_confidence)
        if match is None:
            match = self._find_by_text(query, intent, min_confidence)
        if match is None:
            return None

        if entities:
            overlap = entity_key_overlap(entities, match.pattern.entities)
            if overlap < self.settings.entity_similarity_threshold:
                logger.debug(f'Rejected pattern {match.pattern.id}: entity overlap {overlap:.2f}')
                return None

        logger.debug(f'Matched pattern {match.pattern.id} by {match.method} ({match.similarity:.2f})')
        return match

    def _active_filters(self, intent: Optional[str]) -> Dict[str, Any]:
        filters: Dict[str, Any] = {'is_active': True}
        if intent:
            filters['intent'] = intent
        return filters

    def _find_by_vector(self, query: str, intent: Optional[str], threshold: float, max_results: int,
                        min_confidence: float) -> Optional[PatternMatch]:
        try:
            query_vector = self.embed.embed_query(query)
            hits = self.store.vector_search(query_vector,
                                            PATTERN_INDEX,
                                            top_k=max_results,
                                            filters=self._active_filters(intent),
                                            include_embedding=True)
        except (BedrockEmbedError, OpenSearchError) as e:
            logger.warning(f'Vector pattern search failed, using text fallback: {e}')
            return None

        best = None
        for hit in hits:
            pattern = QueryPattern.from_document(hit['id'], hit['document'])
            if pattern.confidence < min_confidence:
                continue
            similarity = cosine(query_vector, pattern.embedding or [])
            if similarity >= threshold and (best is None or similarity > best.similarity):
                best = PatternMatch(pattern=pattern, similarity=similarity, method='vector')
        return best

    def _find_by_text(self, query: str, intent: Optional[str], min_confidence: float) -> Optional[PatternMatch]:
        try:
            hits = self.store.search_documents(PATTERN_INDEX,
                                               filters=self._active_filters(intent),
                                               range_filters={'confidence': {'gte': min_confidence}},
                                               sort=[{'usage_count': {'order': 'desc'}}],
                                               size=TEXT_FALLBACK_CANDIDATES)
        except OpenSearchError as e:
            logger.error(f'Error finding similar pattern: {e}')
            return None

        lower_query = query.lower()
        best = None
        for hit in hits:
            pattern = QueryPattern.from_document(hit['id'], hit['document'])
            similarity = word_overlap(lower_query, pattern.natural_query.lower())
            if similarity >= self.settings.text_similarity_threshold and (best is None or similarity > best.similarity):
                best = PatternMatch(pattern=pattern, similarity=similarity, method='text')
        return best

    def get_pattern(self, pattern_id: str) -> Optional[QueryPattern]:
        """Load a pattern by id; None when it does not exist."""
        try:
            stored = self.store.get_document(pattern_id, PATTERN_INDEX)
        except OpenSearchError as e:
            raise PatternLearnerError(f'Failed to load pattern {pattern_id}: {e}')
        if stored is None:
            return None
        return QueryPattern.from_document(stored['id'], stored['document'])

    def _require_pattern(self, pattern_id: str) -> QueryPattern:
        if not pattern_id:
            raise ValidationError('Pattern id is required')
        pattern = self.get_pattern(pattern_id)
        if pattern is None:
            raise PatternLearnerError(f'Pattern {pattern_id} not found')
        return pattern

    def _save(self, pattern_id: str, fields: Dict[str, Any]) -> None:
        try:
            self.store.update_document(pattern_id, fields, PATTERN_INDEX)
        except OpenSearchError as e:
            raise PatternLearnerError(f'Failed to update pattern {pattern_id}: {e}')

    def _create_pattern(self, query: str, entities: Optional[Dict[str, Any]], structured_query: Any,
                        intent: Optional[str]) -> QueryPattern:
        pattern_hash = query_hash(query)

        # The hash is the document id, so the same normalized text always lands on one pattern
        existing = self.get_pattern(pattern_hash)
        if existing is not None:
            logger.debug(f'Pattern with hash {pattern_hash[:12]} already exists')
            return self._update_pattern(existing, query)

        try:
            embedding = self.embed.embed_document(query)
        except BedrockEmbedError as e:
            logger.warning(f'Storing pattern without embedding: {e}')
            embedding = None

        now = to_iso()
        max_depth = config.analytics.max_serialize_depth
        pattern = QueryPattern(id=pattern_hash,
                               natural_query=query,
                               decomposed_query=safe_serialize(structured_query, max_depth),
                               entities=safe_serialize(entities, max_depth) or {},
                               intent=intent,
                               query_hash=pattern_hash,
                               embedding=embedding,
                               created_at=now,
                               updated_at=now)

        try:
            self.store.index_document(pattern.to_document(), PATTERN_INDEX, doc_id=pattern.id)
        except OpenSearchError as e:
            raise PatternLearnerError(f'Failed to create pattern: {e}')

        logger.info(f'Created pattern {pattern.id[:12]} for intent {intent}')
        return pattern

    def _update_pattern(self, pattern: QueryPattern, query: str) -> QueryPattern:
        variations = list(pattern.variations)
        if query not in variations and query != pattern.natural_query:
            variations.append(query)

        now = to_iso()
        fields: Dict[str, Any] = {
            'variations': variations[-self.settings.max_variations:],
            'updated_at': now,
            'last_improved_at': now,
            'version': (pattern.version or 1) + 1
        }

        # Re-embed when the wording moved away from the stored text
        if normalize_query(query) != normalize_query(pattern.natural_query):
            try:
                fields['embedding'] = self.embed.embed_document(query)
            except BedrockEmbedError as e:
                logger.warning(f'Keeping previous embedding for pattern {pattern.id}: {e}')

        self._save(pattern.id, fields)
        for name, value in fields.items():
            setattr(pattern, name, value)
        return pattern

    def record_pattern_usage(self, pattern_id: str, response_time_ms: Optional[float] = None) -> QueryPattern:
        """
        Count one use of a pattern and fold its response time into the running mean.

        Args:
            pattern_id: Pattern id
            response_time_ms: Response time of this use

        Returns:
            The updated pattern
        """
        pattern = self._require_pattern(pattern_id)

        usage_count = pattern.usage_count or 0
        fields: Dict[str, Any] = {'usage_count': usage_count + 1, 'last_used_at': to_iso()}

        if response_time_ms is not None:
            previous = pattern.average_response_time_ms
            if previous is None or usage_count == 0:
                fields['average_response_time_ms'] = float(response_time_ms)
            else:
                fields['average_response_time_ms'] = (previous * usage_count + response_time_ms) / (usage_count + 1)

        self._save(pattern_id, fields)
        for name, value in fields.items():
            setattr(pattern, name, value)
        return pattern

    def update_pattern_feedback(self, pattern_id: str, feedback: Dict[str, Any]) -> QueryPattern:
        """
        Fold one feedback sample into a pattern's statistics.

        Args:
            pattern_id: Pattern id
            feedback: Dict with success (bool), optional rating (1-5), helpful (bool)
                and correction_text

        Returns:
            The updated pattern
        """
        pattern = self._require_pattern(pattern_id)

        success = 1.0 if feedback.get('success') else 0.0
        rating = feedback.get('rating')
        helpful = feedback.get('helpful')
        usage_count = pattern.usage_count or 0
        old_success_rate = pattern.success_rate if pattern.success_rate is not None else 1.0

        if usage_count > 0:
            success_rate = (old_success_rate * usage_count + success) / (usage_count + 1)
        else:
            success_rate = success

        fields: Dict[str, Any] = {'success_rate': _clamp(success_rate)}

        if rating is not None:
            normalized = (rating - 1) / 4
            previous = pattern.user_satisfaction if pattern.user_satisfaction is not None else 0.5
            satisfaction = (previous * usage_count + normalized) / (usage_count + 1) if usage_count > 0 else normalized
            fields['user_satisfaction'] = _clamp(satisfaction)
            fields['confidence'] = _clamp(0.6 * success_rate + 0.4 * satisfaction)
        elif helpful is not None:
            fields['confidence'] = _clamp(0.7 * old_success_rate + 0.3 * (0.8 if helpful else 0.2))

        correction = feedback.get('correction_text')
        if correction:
            fields['variations'] = (list(pattern.variations) + [correction])[-self.settings.max_variations:]

        now = to_iso()
        fields['version'] = (pattern.version or 1) + 1
        fields['updated_at'] = now
        fields['last_improved_at'] = now

        self._save(pattern_id, fields)
        for name, value in fields.items():
            setattr(pattern, name, value)

        logger.info(f'Updated pattern {pattern_id} feedback: success_rate={pattern.success_rate:.3f}, '
                    f'confidence={pattern.confidence:.3f}')
        return pattern

    def merge_patterns(self, pattern_ids: List[str]) -> QueryPattern:
        """
        Merge similar patterns into the most used one.

        The survivor gets the union of variations, the summed usage and the
        usage-weighted success rate; the others are deactivated, never deleted.

        Args:
            pattern_ids: At least two pattern ids

        Returns:
            The surviving pattern
        """
        unique_ids = list(dict.fromkeys(pattern_ids or []))
        if len(unique_ids) < 2:
            raise ValidationError('At least two patterns are required to merge')

        patterns = []
        for pattern_id in unique_ids:
            pattern = self.get_pattern(pattern_id)
            if pattern is None:
                raise PatternLearnerError(f'Pattern {pattern_id} not found')
            patterns.append(pattern)

        patterns.sort(key=lambda p: p.usage_count or 0, reverse=True)
        base, others = patterns[0], patterns[1:]

        variations = list(base.variations)
        for other in others:
            for text in [other.natural_query] + list(other.variations):
                if text not in variations and text != base.natural_query:
                    variations.append(text)

        total_usage = sum(p.usage_count or 0 for p in patterns)
        if total_usage > 0:
            success_rate = sum((p.success_rate if p.success_rate is not None else 1.0) * (p.usage_count or 0)
                               for p in patterns) / total_usage
        else:
            success_rate = base.success_rate

        now = to_iso()
        fields = {
            'variations': variations[:self.settings.max_merged_variations],
            'usage_count': total_usage,
            'success_rate': _clamp(success_rate),
            'version': (base.version or 1) + 1,
            'updated_at': now,
            'last_improved_at': now
        }
        self._save(base.id, fields)
        for name, value in fields.items():
            setattr(base, name, value)

        for other in others:
            self._save(other.id, {'is_active': False, 'updated_at': now})

        logger.info(f'Merged {len(others)} patterns into {base.id}')
        return base

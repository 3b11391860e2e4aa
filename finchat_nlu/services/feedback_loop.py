"""
Feedback loop service.

Collects implicit (behavioural) and explicit (rating, thumbs) feedback, stores it
append-only and folds it into pattern statistics through the PatternLearner.

Each feedback row moves pending -> processing -> processed (or failed). The move to
processing is an optimistic-concurrency claim on the row, so two workers or two
instances never apply the same feedback twice; an in-process set of in-flight ids
short-circuits duplicates before touching the store. A claim carries claimed_at and
expires after the claim lease, so a row left in processing by a crashed instance is
picked up again.
"""

import threading
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from ..models.core import FeedbackEvent, ValidationError
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchConflictError, OpenSearchError
from ..utils.timestamp_utils import parse_iso, to_iso
from .learning_worker import LearningWorker
from .pattern_learner import PatternLearner

logger = get_logger(__name__)

FEEDBACK_INDEX = 'feedback'
QUERY_LOG_INDEX = 'query_log'

# Implicit signal -> (rating, helpful)
IMPLICIT_FEEDBACK_SIGNALS = {
    'abandonment': (1, False),
    'correction': (2, False),
    'reformulation': (3, False),
    'navigation': (4, True),
    'timeout': (None, None),
}

CLAIMABLE_STATUSES = ('pending', 'failed')


class FeedbackLoopError(Exception):
    """Custom exception for feedback loop errors."""
    pass


class FeedbackLoop:
    """Record feedback and apply it to learned patterns."""

    def __init__(self,
                 store: Optional[OpenSearchClient] = None,
                 learner: Optional[PatternLearner] = None,
                 worker: Optional[LearningWorker] = None,
                 enable_processing: Optional[bool] = None,
                 auto_update_patterns: Optional[bool] = None,
                 processing_delay: Optional[float] = None,
                 claim_lease: Optional[float] = None,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the feedback loop.

        Args:
            store: OpenSearch client (built from config when None)
            learner: Pattern learner sharing the same store when None
            worker: Background worker for deferred processing
            enable_processing: Process feedback automatically after recording it
            auto_update_patterns: Allow automatic processing to update patterns
            processing_delay: Seconds to wait before processing new feedback
            claim_lease: Seconds after which an unfinished processing claim may be taken over
            clock: Wall-clock source for claim timestamps
        """
        settings = config.learning
        self.store = store or OpenSearchClient(config.opensearch)
        self.learner = learner or PatternLearner(store=self.store)
        self.worker = worker or LearningWorker()
        self.enable_processing = settings.enable_processing if enable_processing is None else enable_processing
        self.auto_update_patterns = settings.auto_update_patterns if auto_update_patterns is None else auto_update_patterns
        self.processing_delay = settings.processing_delay if processing_delay is None else processing_delay
        self.claim_lease = settings.claim_lease_seconds if claim_lease is None else claim_lease
        self._clock = clock

        self._in_flight: set = set()
        self._in_flight_lock = threading.Lock()

        logger.info('Initialized FeedbackLoop')

    def record_implicit_feedback(self,
                                 query_log_id: str,
                                 feedback_type: str,
                                 pattern_id: Optional[str] = None,
                                 user_id: Optional[str] = None,
                                 session_id: Optional[str] = None,
                                 correction_text: Optional[str] = None,
                                 new_query: Optional[str] = None,
                                 metadata: Optional[Dict[str, Any]] = None) -> str:
        """
        Record feedback inferred from user behaviour.

        Args:
            query_log_id: Query log entry the feedback is about
            feedback_type: abandonment, correction, reformulation, navigation or timeout
            pattern_id: Pattern that produced the answer, if any
            user_id: User id
            session_id: Session id
            correction_text: What the user said instead (for corrections)
            new_query: The reformulated query (for reformulations)
            metadata: Extra data stored with the feedback

        Returns:
            Feedback id
        """
        if not query_log_id or not feedback_type:
            raise ValidationError('query_log_id and feedback_type are required')
        if feedback_type not in IMPLICIT_FEEDBACK_SIGNALS:
            raise ValidationError(f'Invalid feedback type {feedback_type!r}. '
                                  f'Must be one of: {", ".join(IMPLICIT_FEEDBACK_SIGNALS)}')

        rating, helpful = IMPLICIT_FEEDBACK_SIGNALS[feedback_type]
        event = FeedbackEvent(query_log_id=query_log_id,
                              feedback_type='implicit',
                              pattern_id=pattern_id,
                              user_id=user_id,
                              session_id=session_id,
                              feedback_subtype=feedback_type,
                              rating=rating,
                              helpful=helpful,
                              correction_text=correction_text or None,
                              feedback_data={'new_query': new_query, **(metadata or {})},
                              created_at=to_iso())

        return self._store_and_schedule(event)

    def record_explicit_feedback(self,
                                 query_log_id: str,
                                 rating: Optional[int] = None,
                                 helpful: Optional[bool] = None,
                                 comment: Optional[str] = None,
                                 correction_text: Optional[str] = None,
                                 user_id: Optional[str] = None,
                                 session_id: Optional[str] = None,
                                 pattern_id: Optional[str] = None,
                                 metadata: Optional[Dict[str, Any]] = None) -> str:
        """
        Record feedback the user gave directly.

        Args:
            query_log_id: Query log entry the feedback is about
            rating: 1-5 rating
            helpful: Thumbs up (True) or down (False)
            comment: Free-text comment
            correction_text: Correction of the answer
            user_id: User id
            session_id: Session id
            pattern_id: Pattern that produced the answer, if any
            metadata: Extra data stored with the feedback

        Returns:
            Feedback id
        """
        if not query_log_id:
            raise ValidationError('query_log_id is required')
        if rating is not None and (isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5):
            raise ValidationError('Rating must be an integer between 1 and 5')

        if rating is not None:
            subtype = 'rating'
        elif helpful is not None:
            subtype = 'thumbs_up' if helpful else 'thumbs_down'
        else:
            subtype = None

        event = FeedbackEvent(query_log_id=query_log_id,
                              feedback_type='explicit',
                              pattern_id=pattern_id,
                              user_id=user_id,
                              session_id=session_id,
                              feedback_subtype=subtype,
                              rating=rating,
                              helpful=helpful,
                              correction_text=correction_text or None,
                              feedback_data={'comment': comment, **(metadata or {})},
                              created_at=to_iso())

        return self._store_and_schedule(event)

    def _store_and_schedule(self, event: FeedbackEvent) -> str:
        try:
            feedback_id = self.store.index_document(event.to_document(), FEEDBACK_INDEX)
        except OpenSearchError as e:
            logger.error(f'Error recording {event.feedback_type} feedback: {e}')
            raise FeedbackLoopError(f'Failed to record feedback: {e}')

        logger.info(f'Recorded {event.feedback_type} feedback {feedback_id} ({event.feedback_subtype}) '
                    f'for query log {event.query_log_id}')

        if self.enable_processing and self.auto_update_patterns and event.pattern_id:
            self.worker.schedule(f'feedback:{feedback_id}', self.process_feedback, self.processing_delay, feedback_id)

        return feedback_id

    def process_feedback(self, feedback_id: str) -> Dict[str, Any]:
        """
        Apply one feedback row to its pattern, at most once.

        Args:
            feedback_id: Feedback id

        Returns:
            Dict with processed flag, and either the reason it was skipped or the
            pattern id and updated pattern

        Raises:
            ValidationError: If feedback_id is missing
            FeedbackLoopError: If the feedback does not exist or the update failed
        """
        if not feedback_id:
            raise ValidationError('feedback_id is required')

        with self._in_flight_lock:
            if feedback_id in self._in_flight:
                logger.debug(f'Feedback {feedback_id} is already being processed')
                return {'processed': False, 'feedback_id': feedback_id, 'reason': 'already_processing'}
            self._in_flight.add(feedback_id)

        try:
            return self._process_claimed(feedback_id)
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(feedback_id)

    def _is_claimable(self, event: FeedbackEvent) -> bool:
        if event.status in CLAIMABLE_STATUSES:
            return True
        if event.status != 'processing':
            return False
        # A processing row past its lease was left behind by a worker that died
        if not event.claimed_at:
            return True
        return self._clock() - parse_iso(event.claimed_at).timestamp() >= self.claim_lease

    def _process_claimed(self, feedback_id: str) -> Dict[str, Any]:
        try:
            stored = self.store.get_document(feedback_id, FEEDBACK_INDEX)
        except OpenSearchError as e:
            raise FeedbackLoopError(f'Failed to load feedback {feedback_id}: {e}')
        if stored is None:
            raise FeedbackLoopError(f'Feedback not found: {feedback_id}')

        event = FeedbackEvent.from_document(stored['id'], stored['document'])
        if not self._is_claimable(event):
            logger.debug(f'Feedback {feedback_id} already {event.status}')
            return {'processed': False, 'feedback_id': feedback_id, 'reason': f'already_{event.status}'}
        if event.status == 'processing':
            logger.warning(f'Claim on feedback {feedback_id} from {event.claimed_at} expired, taking it over')

        try:
            claim = {'status': 'processing', 'claimed_at': to_iso(self._clock())}
            self.store.update_document(feedback_id,
                                       claim,
                                       FEEDBACK_INDEX,
                                       if_seq_no=stored['seq_no'],
                                       if_primary_term=stored['primary_term'])
        except OpenSearchConflictError:
            logger.info(f'Feedback {feedback_id} was claimed by another worker')
            return {'processed': False, 'feedback_id': feedback_id, 'reason': 'claimed_elsewhere'}
        except OpenSearchError as e:
            raise FeedbackLoopError(f'Failed to claim feedback {feedback_id}: {e}')

        try:
            return self._apply(feedback_id, event)
        except Exception as e:
            logger.error(f'Error processing feedback {feedback_id}: {e}')
            self._set_status(feedback_id, 'failed')
            raise FeedbackLoopError(f'Failed to apply feedback {feedback_id}: {e}')

    def _apply(self, feedback_id: str, event: FeedbackEvent) -> Dict[str, Any]:
        pattern_id = event.pattern_id or self._pattern_id_from_log(event.query_log_id)
        if not pattern_id:
            self._set_status(feedback_id, 'processed')
            return {'processed': False, 'feedback_id': feedback_id, 'reason': 'no_pattern_id'}

        if event.rating is not None:
            success = event.rating >= 4
        else:
            success = event.helpful

        if success is None and not event.correction_text:
            self._set_status(feedback_id, 'processed')
            return {'processed': False, 'feedback_id': feedback_id, 'reason': 'no_signal'}

        updated = self.learner.update_pattern_feedback(pattern_id, {
            'success': bool(success),
            'rating': event.rating,
            'helpful': event.helpful,
            'correction_text': event.correction_text
        })

        self._set_status(feedback_id, 'processed')
        logger.info(f'Processed feedback {feedback_id} for pattern {pattern_id}')
        return {'processed': True, 'feedback_id': feedback_id, 'pattern_id': pattern_id, 'updated_pattern': updated}

    def _pattern_id_from_log(self, query_log_id: Optional[str]) -> Optional[str]:
        if not query_log_id:
            return None
        try:
            stored = self.store.get_document(query_log_id, QUERY_LOG_INDEX)
        except OpenSearchError as e:
            logger.warning(f'Could not load query log {query_log_id}: {e}')
            return None
        return stored['document'].get('pattern_id') if stored else None

    def _set_status(self, feedback_id: str, status: str) -> None:
        fields = {'status': status}
        if status == 'processed':
            fields['processed_at'] = to_iso()
        try:
            self.store.update_document(feedback_id, fields, FEEDBACK_INDEX)
        except OpenSearchError as e:
            logger.error(f'Failed to mark feedback {feedback_id} as {status}: {e}')

    def process_pending_feedback(self, limit: int = 50) -> Dict[str, Any]:
        """
        Drain unprocessed feedback that is attached to a pattern, oldest first.

        Args:
            limit: Maximum number of rows to look at

        Returns:
            Dict with processed, failed and skipped counts, total rows and per-row results
        """
        try:
            rows = self.store.search_documents(FEEDBACK_INDEX,
                                               filters={'status': list(CLAIMABLE_STATUSES)},
                                               exists=['pattern_id'],
                                               sort=[{'created_at': {'order': 'asc'}}],
                                               size=limit)
            # Claims older than the lease belong to a worker that never finished
            expired = self.store.search_documents(FEEDBACK_INDEX,
                                                  filters={'status': 'processing'},
                                                  range_filters={'claimed_at': {'lte': to_iso(self._clock() - self.claim_lease)}},
                                                  exists=['pattern_id'],
                                                  sort=[{'created_at': {'order': 'asc'}}],
                                                  size=limit)
        except OpenSearchError as e:
            raise FeedbackLoopError(f'Failed to load pending feedback: {e}')
        rows = sorted(rows + expired, key=lambda row: row['document'].get('created_at') or '')[:limit]

        results = []
        processed = failed = skipped = 0

        for row in rows:
            feedback_id = row['id']
            with self._in_flight_lock:
                busy = feedback_id in self._in_flight
            if busy:
                skipped += 1
                continue

            try:
                result = self.process_feedback(feedback_id)
            except FeedbackLoopError as e:
                logger.error(f'Error processing feedback {feedback_id}: {e}')
                failed += 1
                continue

            results.append(result)
            if result['processed']:
                processed += 1
            else:
                skipped += 1

        logger.info(f'Processed pending feedback: {processed} processed, {failed} failed, {skipped} skipped of {len(rows)}')
        return {'processed': processed, 'failed': failed, 'skipped': skipped, 'total': len(rows), 'results': results}

    def _feedback_for_pattern(self, pattern_id: str, size: int) -> List[Dict[str, Any]]:
        rows = self.store.search_documents(FEEDBACK_INDEX,
                                           filters={'pattern_id': pattern_id},
                                           sort=[{'created_at': {'order': 'desc'}}],
                                           size=size)
        return [row['document'] for row in rows]

    def identify_problem_patterns(self, threshold: float = 0.7, min_usage_count: int = 5) -> List[Dict[str, Any]]:
        """
        Find active, well-used patterns whose success rate is below threshold.

        Args:
            threshold: Success rate below which a pattern needs attention
            min_usage_count: Ignore patterns used fewer times than this

        Returns:
            Patterns ordered by ascending success rate, with recent negative-feedback rates
        """
        try:
            rows = self.store.search_documents('pattern',
                                               filters={'is_active': True},
                                               range_filters={
                                                   'usage_count': {'gte': min_usage_count},
                                                   'success_rate': {'lt': threshold}
                                               },
                                               sort=[{'success_rate': {'order': 'asc'}}],
                                               size=50)

            problems = []
            for row in rows:
                pattern = row['document']
                recent = self._feedback_for_pattern(row['id'], 10)
                negative = [f for f in recent if (f.get('rating') is not None and f['rating'] < 3) or f.get('helpful') is False]
                problems.append({
                    'id': row['id'],
                    'natural_query': pattern.get('natural_query'),
                    'intent': pattern.get('intent'),
                    'success_rate': float(pattern.get('success_rate') or 0),
                    'usage_count': pattern.get('usage_count') or 0,
                    'confidence': float(pattern.get('confidence') or 0),
                    'last_used_at': pattern.get('last_used_at'),
                    'recent_feedback_count': len(recent),
                    'negative_feedback_count': len(negative),
                    'recent_negative_rate': len(negative) / len(recent) * 100 if recent else 0,
                    'needs_attention': True
                })

        except OpenSearchError as e:
            logger.error(f'Error identifying problem patterns: {e}')
            raise FeedbackLoopError(f'Failed to identify problem patterns: {e}')

        logger.info(f'Found {len(problems)} patterns needing attention')
        return problems

    def get_pattern_feedback_stats(self, pattern_id: str) -> Dict[str, Any]:
        """Aggregate all feedback recorded for one pattern."""
        if not pattern_id:
            raise ValidationError('pattern_id is required')

        try:
            feedback = self._feedback_for_pattern(pattern_id, 1000)
        except OpenSearchError as e:
            raise FeedbackLoopError(f'Failed to load feedback for pattern {pattern_id}: {e}')

        explicit = [f for f in feedback if f.get('feedback_type') == 'explicit']
        implicit = [f for f in feedback if f.get('feedback_type') == 'implicit']
        ratings = [f['rating'] for f in explicit if f.get('rating')]
        helpful_count = sum(1 for f in feedback if f.get('helpful') is True)
        corrections = [f['correction_text'] for f in feedback if f.get('correction_text')]
        rating_counts = Counter(r for r in ratings if 1 <= r <= 5)

        return {
            'pattern_id': pattern_id,
            'total_feedback': len(feedback),
            'explicit_feedback': len(explicit),
            'implicit_feedback': len(implicit),
            'average_rating': sum(ratings) / len(ratings) if ratings else None,
            'rating_distribution': [{'rating': r, 'count': rating_counts.get(r, 0)} for r in range(1, 6)],
            'helpful_count': helpful_count,
            'not_helpful_count': sum(1 for f in feedback if f.get('helpful') is False),
            'helpful_rate': helpful_count / len(feedback) * 100 if feedback else 0,
            'feedback_types': [{
                'type': subtype,
                'count': count
            } for subtype, count in Counter(f.get('feedback_subtype') or 'unknown' for f in feedback).items()],
            'corrections_count': len(corrections),
            'recent_corrections': corrections[:5],
            'recent_feedback': feedback[:10],
            'first_feedback_at': feedback[-1].get('created_at') if feedback else None,
            'last_feedback_at': feedback[0].get('created_at') if feedback else None
        }

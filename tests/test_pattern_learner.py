"""Tests for learning, matching and evolving query patterns."""

import pytest

from conftest import unit
from finchat_nlu.models.core import ValidationError
from finchat_nlu.services.pattern_learner import PatternLearnerError
from finchat_nlu.utils.text_extraction import query_hash


class TestLearnPattern:

    def test_creates_pattern_keyed_by_query_hash(self, learner, store):
        pattern = learner.learn_pattern('Best card for gas', {'category': 'gas'}, {'intent': 'card_recommendation'},
                                        intent='card_recommendation')

        assert pattern.id == query_hash('best card for gas')
        stored = store.get_document(pattern.id, 'pattern')['document']
        assert stored['natural_query'] == 'Best card for gas'
        assert stored['decomposed_query'] == {'intent': 'card_recommendation'}
        assert stored['usage_count'] == 0
        assert stored['confidence'] == 0.8
        assert stored['version'] == 1
        assert stored['is_active'] is True
        assert stored['embedding'] is not None

    def test_same_query_updates_instead_of_duplicating(self, learner, store):
        learner.learn_pattern('best card for gas', {}, {'intent': 'card_recommendation'}, intent='card_recommendation')
        pattern = learner.learn_pattern('best card for gas', {}, {'intent': 'card_recommendation'}, intent='card_recommendation')

        assert len(store.docs('pattern')) == 1
        assert pattern.version == 2
        assert pattern.variations == []

    def test_paraphrase_becomes_variation(self, learner, store, embed):
        embed.pin('best card for gas', unit(1.0))
        embed.pin('which card is best for gas', unit(0.9))
        first = learner.learn_pattern('best card for gas', {}, {'intent': 'card_recommendation'}, intent='card_recommendation')
        second = learner.learn_pattern('which card is best for gas', {}, {'intent': 'card_recommendation'},
                                       intent='card_recommendation')

        assert second.id == first.id
        assert second.variations == ['which card is best for gas']
        assert store.get_document(first.id, 'pattern')['document']['version'] == 2

    def test_distant_query_creates_new_pattern(self, learner, store, embed):
        embed.pin('best card for gas', unit(1.0))
        embed.pin('show my balances', unit(0.2))
        learner.learn_pattern('best card for gas', {}, {'intent': 'card_recommendation'}, intent='card_recommendation')
        learner.learn_pattern('show my balances', {}, {'intent': 'query_card_data'}, intent='query_card_data')

        assert len(store.docs('pattern')) == 2

    def test_embedding_failure_stores_pattern_without_vector(self, learner, store, embed):
        embed.fail = True
        pattern = learner.learn_pattern('best card for gas', {}, {'intent': 'card_recommendation'})

        assert pattern.embedding is None
        assert store.get_document(pattern.id, 'pattern')['document']['embedding'] is None

    def test_circular_structured_query_is_serialized(self, learner, store):
        structured = {'intent': 'card_recommendation'}
        structured['self'] = structured
        pattern = learner.learn_pattern('best card for gas', {}, structured)

        assert store.get_document(pattern.id, 'pattern')['document']['decomposed_query']['self'] == '[Circular]'

    @pytest.mark.parametrize('query,structured', [('', {'intent': 'x'}), ('   ', {'intent': 'x'}), ('best card', None)])
    def test_validation(self, learner, query, structured):
        with pytest.raises(ValidationError):
            learner.learn_pattern(query, {}, structured)

    def test_store_failure_raises(self, learner, store):
        store.fail = True
        with pytest.raises(PatternLearnerError):
            learner.learn_pattern('best card for gas', {}, {'intent': 'card_recommendation'})


class TestFindMatchingPattern:

    def test_vector_match(self, learner, make_pattern, embed):
        make_pattern('p1', 'best card for gas', embedding=unit(0.95))
        embed.pin('gas card please', unit(1.0))

        match = learner.find_matching_pattern('gas card please')
        assert match.pattern.id == 'p1'
        assert match.method == 'vector'
        assert match.similarity == pytest.approx(0.95)

    def test_text_fallback_when_embedding_fails(self, learner, make_pattern, embed):
        make_pattern('p1', 'best card for gas at costco', usage_count=3)
        embed.fail = True

        match = learner.find_matching_pattern('best card for gas at costco today')
        assert match.pattern.id == 'p1'
        assert match.method == 'text'
        assert match.similarity == pytest.approx(6 / 7)

    def test_low_confidence_patterns_are_ignored(self, learner, make_pattern, embed):
        make_pattern('p1', 'best card for gas', confidence=0.5, embedding=unit(1.0))
        embed.pin('best card for gas', unit(1.0))

        assert learner.find_matching_pattern('best card for gas') is None

    def test_inactive_patterns_are_ignored(self, learner, make_pattern, embed):
        make_pattern('p1', 'best card for gas', is_active=False, embedding=unit(1.0))
        embed.pin('best card for gas', unit(1.0))

        assert learner.find_matching_pattern('best card for gas') is None

    def test_intent_filter(self, learner, make_pattern, embed):
        make_pattern('p1', 'best card for gas', intent='card_recommendation', embedding=unit(1.0))
        embed.pin('best card for gas', unit(1.0))

        assert learner.find_matching_pattern('best card for gas', intent='query_card_data') is None
        assert learner.find_matching_pattern('best card for gas', intent='card_recommendation').pattern.id == 'p1'

    def test_entity_mismatch_rejects_match(self, learner, make_pattern, embed):
        make_pattern('p1', 'best card for gas at costco', entities={'merchant': 'costco', 'category': 'gas'}, embedding=unit(1.0))
        embed.pin('best card for gas at costco', unit(1.0))

        assert learner.find_matching_pattern('best card for gas at costco', entities={'amount': 50.0, 'timeframe': 'today'}) is None
        match = learner.find_matching_pattern('best card for gas at costco', entities={'merchant': 'target', 'category': 'gas'})
        assert match.pattern.id == 'p1'


class TestPatternStatistics:

    def test_success_rate_running_mean(self, learner, make_pattern):
        make_pattern('p1', 'best card for gas', success_rate=0.8, usage_count=4)
        pattern = learner.update_pattern_feedback('p1', {'success': True})

        assert pattern.success_rate == pytest.approx(0.84)
        assert pattern.version == 2

    def test_rating_updates_satisfaction_and_confidence(self, learner, make_pattern, store):
        make_pattern('p1', 'best card for gas', success_rate=0.8, usage_count=4)
        learner.update_pattern_feedback('p1', {'success': True, 'rating': 5})

        stored = store.get_document('p1', 'pattern')['document']
        assert stored['user_satisfaction'] == pytest.approx(0.6)
        assert stored['confidence'] == pytest.approx(0.6 * 0.84 + 0.4 * 0.6)

    def test_helpful_flag_uses_previous_success_rate(self, learner, make_pattern):
        make_pattern('p1', 'best card for gas', success_rate=0.8, usage_count=4)
        pattern = learner.update_pattern_feedback('p1', {'success': False, 'helpful': False, 'correction_text': 'gas at shell'})

        assert pattern.success_rate == pytest.approx(0.64)
        assert pattern.confidence == pytest.approx(0.7 * 0.8 + 0.3 * 0.2)
        assert pattern.variations == ['gas at shell']

    def test_first_sample_replaces_success_rate(self, learner, make_pattern):
        make_pattern('p1', 'best card for gas', success_rate=1.0, usage_count=0)
        assert learner.update_pattern_feedback('p1', {'success': False}).success_rate == 0.0

    def test_missing_pattern(self, learner):
        with pytest.raises(PatternLearnerError):
            learner.update_pattern_feedback('missing', {'success': True})
        with pytest.raises(ValidationError):
            learner.record_pattern_usage('')

    def test_usage_tracks_mean_response_time(self, learner, make_pattern, store):
        make_pattern('p1', 'best card for gas', usage_count=2, average_response_time_ms=100.0)
        learner.record_pattern_usage('p1', 150.0)

        stored = store.get_document('p1', 'pattern')['document']
        assert stored['usage_count'] == 3
        assert stored['average_response_time_ms'] == pytest.approx(350 / 3)
        assert stored['last_used_at'] is not None

    def test_merge_patterns(self, learner, make_pattern, store):
        make_pattern('p1', 'best card for gas', usage_count=10, success_rate=0.9, variations=['gas card'])
        make_pattern('p2', 'which card for gas', usage_count=5, success_rate=0.6, variations=['gas card', 'card for fuel'])
        make_pattern('p3', 'card for gas', usage_count=0, success_rate=1.0)

        merged = learner.merge_patterns(['p2', 'p1', 'p3'])

        assert merged.id == 'p1'
        assert merged.usage_count == 15
        assert merged.success_rate == pytest.approx((0.9 * 10 + 0.6 * 5) / 15)
        assert merged.variations == ['gas card', 'which card for gas', 'card for fuel', 'card for gas']
        assert store.get_document('p2', 'pattern')['document']['is_active'] is False
        assert store.get_document('p3', 'pattern')['document']['is_active'] is False
        assert store.get_document('p1', 'pattern')['document']['is_active'] is True

    @pytest.mark.parametrize('ids', [[], ['p1'], ['p1', 'p1']])
    def test_merge_needs_two_distinct_patterns(self, learner, make_pattern, ids):
        make_pattern('p1', 'best card for gas')
        with pytest.raises(ValidationError):
            learner.merge_patterns(ids)

    def test_merge_missing_pattern(self, learner, make_pattern):
        make_pattern('p1', 'best card for gas')
        with pytest.raises(PatternLearnerError):
            learner.merge_patterns(['p1', 'missing'])

"""Tests for query logging and the aggregate statistics computed over it."""

import time

import pytest

from finchat_nlu.models.core import ValidationError
from finchat_nlu.services.query_analytics import QueryAnalytics, QueryAnalyticsError, infer_result_count, parse_time_range
from finchat_nlu.utils.timestamp_utils import to_iso


class FakeClock:

    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def add_log(store, seconds_ago=0.0, **fields):
    document = {
        'query': 'best card for gas',
        'matched_intent': 'card_recommendation',
        'decomposition_method': 'vector',
        'success': True,
        'response_time_ms': 100.0,
        'result_count': 0,
        'created_at': to_iso(time.time() - seconds_ago)
    }
    document.update(fields)
    return store.index_document(document, 'query_log')


class TestTracking:

    def test_track_query_stores_entry(self, analytics, store):
        log_id = analytics.track_query('Best card for gas',
                                       entities={'category': 'gas'},
                                       user_id='u1',
                                       session_id='s1',
                                       intent='card_recommendation',
                                       similarity_score=0.91,
                                       response_time_ms=120.5,
                                       decomposition_method='vector')

        stored = store.get_document(log_id, 'query_log')['document']
        assert stored['matched_intent'] == 'card_recommendation'
        assert stored['entities'] == {'category': 'gas'}
        assert stored['similarity_score'] == 0.91
        assert stored['success'] is True
        assert stored['created_at'] is not None

    def test_intent_taken_from_structured_query(self, analytics, store):
        log_id = analytics.track_query('show balances', structured_query={'intent': 'query_card_data'})
        assert store.get_document(log_id, 'query_log')['document']['matched_intent'] == 'query_card_data'

    def test_unknown_intent_default(self, analytics, store):
        log_id = analytics.track_query('hmm')
        assert store.get_document(log_id, 'query_log')['document']['matched_intent'] == 'unknown'

    def test_error_message_is_truncated(self, analytics, store):
        log_id = analytics.track_query('best card', success=False, error_message='x' * 2000)
        assert len(store.get_document(log_id, 'query_log')['document']['error_message']) == 500

    def test_circular_entities_are_marked(self, analytics, store):
        entities = {'merchant': 'costco'}
        entities['self'] = entities
        log_id = analytics.track_query('best card for costco', entities=entities)

        assert log_id is not None
        assert store.get_document(log_id, 'query_log')['document']['entities']['merchant'] == 'costco'
        assert store.get_document(log_id, 'query_log')['document']['entities']['self'] == '[Circular]'

    def test_tracking_never_raises(self, analytics, store):
        entities = {'merchant': 'costco'}
        entities['self'] = entities
        store.fail = True

        assert analytics.track_query('best card for costco', entities=entities) is None

    def test_tracking_disabled(self, store):
        analytics = QueryAnalytics(store=store, enable_tracking=False)
        assert analytics.track_query('best card for gas') is None
        assert store.docs('query_log') == []

    @pytest.mark.parametrize('result,expected', [
        ([1, 2, 3], 3),
        ({'total': 7, 'results': [1]}, 7),
        ({'results': [1, 2]}, 2),
        ({'values': [1]}, 1),
        ({'results': {'card': 'amex'}}, 1),
        ('text', None),
    ])
    def test_infer_result_count(self, result, expected):
        assert infer_result_count(result) == expected


@pytest.mark.parametrize('time_range,days', [('7d', 7), ('2w', 14), ('3m', 90), ('1y', 365), ('bogus', 7), (None, 7)])
def test_parse_time_range(time_range, days):
    assert parse_time_range(time_range) == days


class TestQueryStats:

    def test_aggregates(self, analytics, store):
        for latency in (100.0, 200.0, 300.0):
            add_log(store, response_time_ms=latency, pattern_id='p1')
        add_log(store, response_time_ms=400.0, success=False, error_message='boom', decomposition_method='gpt',
                matched_intent='gpt_fallback')

        stats = analytics.get_query_stats('7d')

        assert stats['total_queries'] == 4
        assert stats['successful_queries'] == 3
        assert stats['failed_queries'] == 1
        assert stats['success_rate'] == 75.0
        assert stats['avg_response_time'] == 250.0
        assert stats['median_response_time'] == 250.0
        assert stats['p95_response_time'] == 400.0
        assert stats['pattern_usage_count'] == 3
        assert stats['intent_distribution'][0] == {'intent': 'card_recommendation', 'count': 3, 'percentage': 75.0}
        assert stats['errors_by_method'] == {'gpt': 1}
        assert stats['top_errors'] == [{'message': 'boom', 'count': 1}]
        assert stats['trends'] is None

    def test_window_excludes_old_logs(self, analytics, store):
        add_log(store)
        add_log(store, seconds_ago=20 * 86400)

        assert analytics.get_query_stats('7d')['total_queries'] == 1
        assert analytics.get_query_stats('1m')['total_queries'] == 2

    def test_filters(self, analytics, store):
        add_log(store, user_id='u1')
        add_log(store, user_id='u2', matched_intent='query_card_data')

        assert analytics.get_query_stats('7d', {'user_id': 'u1'})['total_queries'] == 1
        assert analytics.get_query_stats('7d', {'intent': 'query_card_data'})['total_queries'] == 1
        assert analytics.get_query_stats('7d', {'intent': None})['total_queries'] == 2

    def test_trends_need_seven_logs(self, analytics, store):
        for _ in range(7):
            add_log(store)

        trends = analytics.get_query_stats('7d')['trends']
        assert sum(day['count'] for day in trends) == 7

    def test_empty_and_failing_store(self, analytics, store):
        assert analytics.get_query_stats('7d')['total_queries'] == 0

        store.fail = True
        assert analytics.get_query_stats('30d')['total_queries'] == 0

    def test_cached_until_next_write(self, analytics, store):
        add_log(store)
        assert analytics.get_query_stats('7d')['total_queries'] == 1

        add_log(store)
        assert analytics.get_query_stats('7d')['total_queries'] == 1

        analytics.track_query('best card for gas')
        assert analytics.get_query_stats('7d')['total_queries'] == 3

    def test_cache_expires(self, store):
        clock = FakeClock()
        analytics = QueryAnalytics(store=store, enable_caching=True, cache_ttl=60, cache_size=5, clock=clock)
        add_log(store)
        analytics.get_query_stats('7d')

        add_log(store)
        clock.now += 61
        assert analytics.get_query_stats('7d')['total_queries'] == 2


class TestUserAndPatternAnalytics:

    def test_user_analytics(self, analytics, store):
        add_log(store, seconds_ago=900, user_id='u1', query='Best card for gas')
        add_log(store, seconds_ago=780, user_id='u1', query='best card for gas')
        add_log(store, seconds_ago=60, user_id='u1', query='show my balances', matched_intent='query_card_data')
        add_log(store, user_id='u2')

        result = analytics.get_user_analytics('u1')

        assert result['total_queries_by_user'] == 3
        patterns = result['patterns']
        assert patterns['most_frequent_queries'][0] == {'query': 'best card for gas', 'count': 2}
        assert patterns['follow_up_patterns']['total_follow_ups'] == 1
        assert patterns['follow_up_patterns']['same_intent_follow_ups'] == 1
        assert sum(hour['count'] for hour in patterns['peak_usage_times']['distribution']) == 3

    def test_user_id_required(self, analytics):
        with pytest.raises(ValidationError):
            analytics.get_user_analytics('')

    def test_pattern_metrics(self, analytics, store, make_pattern):
        make_pattern('p1', 'best card for gas', usage_count=3)
        make_pattern('p2', 'show my balances', usage_count=9)
        add_log(store, pattern_id='p1', response_time_ms=100.0)
        add_log(store, pattern_id='p1', response_time_ms=300.0, success=False)

        metrics = analytics.get_pattern_metrics('p1')
        assert metrics['pattern']['natural_query'] == 'best card for gas'
        assert metrics['performance']['total_uses'] == 2
        assert metrics['performance']['success_rate'] == 50.0
        assert metrics['performance']['avg_response_time'] == 200.0

        assert [summary['id'] for summary in analytics.get_pattern_metrics()] == ['p2', 'p1']

    def test_missing_pattern_metrics(self, analytics):
        with pytest.raises(QueryAnalyticsError):
            analytics.get_pattern_metrics('missing')

"""
Query analytics service.

Append-only logging of every resolved query plus aggregate reporting over the log.
Tracking never raises: analytics must not break the chat path.
"""

import json
import math
import re
import threading
import time
from collections import Counter, OrderedDict
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models.core import QueryLogEntry, ValidationError
from ..utils.config import config
from ..utils.json_utils import safe_serialize, truncate
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.text_extraction import query_hash
from ..utils.timestamp_utils import days_ago_iso, parse_iso, to_datetime, to_iso

logger = get_logger(__name__)

QUERY_LOG_INDEX = 'query_log'
PATTERN_INDEX = 'pattern'

MAX_ERROR_LENGTH = 500
MAX_LOGS = 10000
FOLLOW_UP_WINDOW = timedelta(minutes=5)

_TIME_RANGE = re.compile(r'^(\d+)([dwmy])$')
_UNIT_DAYS = {'d': 1, 'w': 7, 'm': 30, 'y': 365}


class QueryAnalyticsError(Exception):
    """Custom exception for query analytics errors."""
    pass


def parse_time_range(time_range: Optional[str]) -> int:
    """Convert '7d', '2w', '3m' or '1y' into days; anything else means 7."""
    match = _TIME_RANGE.match((time_range or '').strip().lower())
    if not match:
        return 7
    return int(match.group(1)) * _UNIT_DAYS[match.group(2)]


def infer_result_count(result: Any) -> Optional[int]:
    """Count results from whichever result shape is present."""
    if isinstance(result, list):
        return len(result)
    if not isinstance(result, dict):
        return None
    if result.get('total') is not None:
        return result['total']
    results = result.get('results')
    if isinstance(results, list):
        return len(results)
    if isinstance(result.get('values'), list):
        return len(result['values'])
    if isinstance(results, dict):
        return 1
    return None


def _numbers(logs: List[Dict[str, Any]], field: str) -> List[float]:
    return [log[field] for log in logs if isinstance(log.get(field), (int, float)) and not isinstance(log.get(field), bool)]


def _average(values: List[float]) -> Optional[float]:
    return round(sum(values) / len(values), 2) if values else None


def _median(values: List[float]) -> Optional[float]:
    if not values:
        return None
    ordered = sorted(values)
    mid = len(ordered) // 2
    return ordered[mid] if len(ordered) % 2 else (ordered[mid - 1] + ordered[mid]) / 2


def _percentile(values: List[float], pct: float) -> Optional[float]:
    if not values:
        return None
    ordered = sorted(values)
    index = min(len(ordered) - 1, max(0, math.ceil(pct / 100 * len(ordered)) - 1))
    return ordered[index]


def _distribution(logs: List[Dict[str, Any]], field: str, default: str, label: str) -> List[Dict[str, Any]]:
    counts = Counter(log.get(field) or default for log in logs)
    return [{label: value, 'count': count, 'percentage': count / len(logs) * 100} for value, count in counts.most_common()]


class QueryAnalytics:
    """Track queries and compute windowed statistics with a small TTL cache."""

    def __init__(self,
                 store: Optional[OpenSearchClient] = None,
                 enable_tracking: Optional[bool] = None,
                 enable_caching: Optional[bool] = None,
                 cache_ttl: Optional[float] = None,
                 cache_size: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize query analytics.

        Args:
            store: OpenSearch client (built from config when None)
            enable_tracking: Write query logs
            enable_caching: Cache computed statistics
            cache_ttl: Seconds a cached statistic stays valid
            cache_size: Maximum cached entries (oldest evicted first)
            clock: Monotonic clock for cache expiry
        """
        settings = config.analytics
        self.store = store or OpenSearchClient(config.opensearch)
        self.enable_tracking = settings.enable_tracking if enable_tracking is None else enable_tracking
        self.enable_caching = settings.enable_caching if enable_caching is None else enable_caching
        self.cache_ttl = settings.cache_ttl if cache_ttl is None else cache_ttl
        self.cache_size = cache_size or settings.cache_size
        self.max_depth = settings.max_serialize_depth
        self._clock = clock

        self._cache: 'OrderedDict[Tuple[str, str], Tuple[float, Dict[str, Any]]]' = OrderedDict()
        self._cache_lock = threading.Lock()

    def track_query(self,
                    query: str,
                    entities: Any = None,
                    structured_query: Any = None,
                    result: Any = None,
                    user_id: Optional[str] = None,
                    session_id: Optional[str] = None,
                    intent: Optional[str] = None,
                    similarity_score: Optional[float] = None,
                    response_time_ms: Optional[float] = None,
                    success: bool = True,
                    error_message: Optional[str] = None,
                    pattern_id: Optional[str] = None,
                    decomposition_method: str = 'direct',
                    result_count: Optional[int] = None) -> Optional[str]:
        """
        Append one query to the log.

        Payloads are serialized with cycle detection and a depth cap. A circular payload
        does not abort tracking: each back reference is stored as the string '[Circular]'
        and the entry is still written, so a log id is returned rather than None. Any
        other failure is logged and swallowed.

        Returns:
            Query log id, or None when tracking is off, the query is empty or the write failed
        """
        if not self.enable_tracking:
            return None
        if not query:
            logger.warning('Query is required for tracking')
            return None

        try:
            structured = safe_serialize(structured_query, self.max_depth)
            if not intent and isinstance(structured, dict):
                intent = structured.get('intent')

            entry = QueryLogEntry(query=query,
                                  query_hash=query_hash(query),
                                  user_id=user_id,
                                  session_id=session_id,
                                  matched_intent=intent or 'unknown',
                                  similarity_score=similarity_score,
                                  entities=safe_serialize(entities, self.max_depth) or {},
                                  structured_query=structured,
                                  decomposition_method=decomposition_method,
                                  pattern_id=pattern_id,
                                  response_time_ms=response_time_ms,
                                  success=success,
                                  error_message=truncate(error_message, MAX_ERROR_LENGTH) if error_message else None,
                                  result_count=result_count if result_count is not None else (infer_result_count(result) or 0),
                                  created_at=to_iso())

            log_id = self.store.index_document(entry.to_document(), QUERY_LOG_INDEX)

        except Exception as e:
            logger.error(f'Error tracking query: {e}')
            return None

        if self.enable_caching:
            self.clear_cache()

        logger.debug(f'Tracked query {log_id} (intent={entry.matched_intent}, method={decomposition_method})')
        return log_id

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def _cache_get(self, key: Tuple[str, str]) -> Optional[Dict[str, Any]]:
        with self._cache_lock:
            cached = self._cache.get(key)
            if cached is None:
                return None
            stored_at, value = cached
            if self._clock() - stored_at >= self.cache_ttl:
                del self._cache[key]
                return None
            return value

    def _cache_set(self, key: Tuple[str, str], value: Dict[str, Any]) -> None:
        with self._cache_lock:
            self._cache[key] = (self._clock(), value)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)

    def _load_logs(self, days: int, filters: Dict[str, Any], newest_first: bool = False) -> List[Dict[str, Any]]:
        rows = self.store.search_documents(QUERY_LOG_INDEX,
                                           filters=filters or None,
                                           range_filters={'created_at': {'gte': days_ago_iso(days)}},
                                           sort=[{'created_at': {'order': 'desc' if newest_first else 'asc'}}],
                                           size=MAX_LOGS)
        return [row['document'] for row in rows]

    def get_query_stats(self, time_range: str = '7d', filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Aggregate the query log over a time window.

        Args:
            time_range: '7d', '2w', '3m', '1y'
            filters: Optional intent, user_id and decomposition_method

        Returns:
            Statistics dict; empty statistics when there are no logs or the store fails
        """
        filters = {key: value for key, value in (filters or {}).items() if value is not None}
        cache_key = (time_range, json.dumps(filters, sort_keys=True, default=str))

        if self.enable_caching:
            cached = self._cache_get(cache_key)
            if cached is not None:
                return cached

        days = parse_time_range(time_range)
        term_filters = {}
        if filters.get('intent'):
            term_filters['matched_intent'] = filters['intent']
        if filters.get('user_id'):
            term_filters['user_id'] = filters['user_id']
        if filters.get('decomposition_method'):
            term_filters['decomposition_method'] = filters['decomposition_method']

        try:
            logs = self._load_logs(days, term_filters)
        except OpenSearchError as e:
            logger.error(f'Error getting query stats: {e}')
            return self._empty_stats(time_range)

        if not logs:
            return self._empty_stats(time_range)

        total = len(logs)
        successful = sum(1 for log in logs if log.get('success') is not False)
        failed = [log for log in logs if log.get('success') is False]
        with_pattern = sum(1 for log in logs if log.get('pattern_id'))
        latencies = _numbers(logs, 'response_time_ms')
        result_counts = _numbers(logs, 'result_count')
        top_errors = Counter(log['error_message'] for log in failed if log.get('error_message'))

        stats = {
            'time_range': time_range,
            'start_date': days_ago_iso(days),
            'end_date': to_iso(),
            'total_queries': total,
            'successful_queries': successful,
            'failed_queries': len(failed),
            'success_rate': successful / total * 100,
            'avg_response_time': _average(latencies),
            'min_response_time': min(latencies) if latencies else None,
            'max_response_time': max(latencies) if latencies else None,
            'median_response_time': _median(latencies),
            'p95_response_time': _percentile(latencies, 95),
            'intent_distribution': _distribution(logs, 'matched_intent', 'unknown', 'intent'),
            'method_distribution': _distribution(logs, 'decomposition_method', 'direct', 'method'),
            'avg_result_count': _average(result_counts),
            'total_results_returned': int(sum(result_counts)),
            'pattern_usage_count': with_pattern,
            'pattern_usage_rate': with_pattern / total * 100,
            'errors_by_method': dict(Counter(log.get('decomposition_method') or 'unknown' for log in failed)),
            'top_errors': [{'message': message, 'count': count} for message, count in top_errors.most_common(10)],
            'trends': self._trends(logs) if total >= 7 else None,
            'calculated_at': to_iso()
        }

        if self.enable_caching:
            self._cache_set(cache_key, stats)
        return stats

    @staticmethod
    def _empty_stats(time_range: str) -> Dict[str, Any]:
        return {
            'time_range': time_range,
            'total_queries': 0,
            'successful_queries': 0,
            'failed_queries': 0,
            'success_rate': 0,
            'avg_response_time': None,
            'median_response_time': None,
            'intent_distribution': [],
            'method_distribution': [],
            'avg_result_count': None,
            'pattern_usage_count': 0,
            'pattern_usage_rate': 0,
            'trends': None
        }

    @staticmethod
    def _trends(logs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        days: Dict[str, Dict[str, Any]] = {}
        for log in logs:
            day = parse_iso(log['created_at']).date().isoformat()
            bucket = days.setdefault(day, {'count': 0, 'success': 0, 'latencies': []})
            bucket['count'] += 1
            if log.get('success') is not False:
                bucket['success'] += 1
            if log.get('response_time_ms'):
                bucket['latencies'].append(log['response_time_ms'])

        return [{
            'date': day,
            'count': bucket['count'],
            'success_rate': bucket['success'] / bucket['count'] * 100,
            'avg_response_time': _average(bucket['latencies'])
        } for day, bucket in sorted(days.items())]

    def get_user_analytics(self, user_id: str, time_range: str = '30d') -> Dict[str, Any]:
        """Statistics for one user plus their usage habits."""
        if not user_id:
            raise ValidationError('user_id is required')

        stats = self.get_query_stats(time_range, {'user_id': user_id})

        try:
            logs = self._load_logs(parse_time_range(time_range), {'user_id': user_id})
        except OpenSearchError as e:
            raise QueryAnalyticsError(f'Failed to load logs for user {user_id}: {e}')

        query_counts = Counter(log['query'].lower().strip() for log in logs if log.get('query'))
        intent_counts = Counter(log.get('matched_intent') or 'unknown' for log in logs)

        return {
            **stats,
            'user_id': user_id,
            'patterns': {
                'most_frequent_queries': [{'query': q, 'count': c} for q, c in query_counts.most_common(10)],
                'most_frequent_intents': [{'intent': i, 'count': c} for i, c in intent_counts.most_common(10)],
                'query_frequency': self._query_frequency(logs),
                'peak_usage_times': self._peak_usage(logs),
                'follow_up_patterns': self._follow_ups(logs)
            },
            'total_queries_by_user': len(logs)
        }

    @staticmethod
    def _query_frequency(logs: List[Dict[str, Any]]) -> str:
        if not logs:
            return 'No queries'
        oldest = parse_iso(logs[0]['created_at'])
        days = max(1, -(-(to_datetime() - oldest).total_seconds() // 86400))
        per_day = len(logs) / days
        if per_day >= 1:
            return f'{round(per_day, 1)} queries/day'
        return f'{round(per_day * 7, 1)} queries/week'

    @staticmethod
    def _peak_usage(logs: List[Dict[str, Any]]) -> Dict[str, Any]:
        hours = [0] * 24
        for log in logs:
            hours[parse_iso(log['created_at']).hour] += 1
        peak = max(hours)
        return {
            'peak_hours': [hour for hour, count in enumerate(hours) if count == peak] if peak else [],
            'distribution': [{'hour': hour, 'count': count} for hour, count in enumerate(hours)]
        }

    @staticmethod
    def _follow_ups(logs: List[Dict[str, Any]]) -> Dict[str, Any]:
        follow_ups = same_intent = 0
        for previous, current in zip(logs, logs[1:]):
            if parse_iso(current['created_at']) - parse_iso(previous['created_at']) < FOLLOW_UP_WINDOW:
                follow_ups += 1
                if current.get('matched_intent') == previous.get('matched_intent'):
                    same_intent += 1
        return {
            'total_follow_ups': follow_ups,
            'same_intent_follow_ups': same_intent,
            'follow_up_rate': follow_ups / len(logs) * 100 if logs else 0
        }

    def get_pattern_metrics(self, pattern_id: Optional[str] = None) -> Any:
        """
        Metrics for one pattern, or the 50 most used active patterns.

        Args:
            pattern_id: Pattern id (all patterns when None)

        Returns:
            Dict with pattern and performance for one pattern, else a list of pattern summaries
        """
        try:
            if pattern_id is None:
                rows = self.store.search_documents(PATTERN_INDEX,
                                                   filters={'is_active': True},
                                                   sort=[{'usage_count': {'order': 'desc'}}],
                                                   size=50)
                return [self._pattern_summary(row['id'], row['document']) for row in rows]

            stored = self.store.get_document(pattern_id, PATTERN_INDEX)
            if stored is None:
                raise QueryAnalyticsError(f'Pattern not found: {pattern_id}')

            rows = self.store.search_documents(QUERY_LOG_INDEX,
                                               filters={'pattern_id': pattern_id},
                                               sort=[{'created_at': {'order': 'desc'}}],
                                               size=100)
        except OpenSearchError as e:
            logger.error(f'Error getting pattern metrics: {e}')
            raise QueryAnalyticsError(f'Failed to get pattern metrics: {e}')

        logs = [row['document'] for row in rows]
        return {
            'pattern': self._pattern_summary(stored['id'], stored['document']),
            'performance': {
                'total_uses': len(logs),
                'success_rate': sum(1 for log in logs if log.get('success') is not False) / len(logs) * 100 if logs else 100,
                'avg_response_time': _average(_numbers(logs, 'response_time_ms')),
                'avg_result_count': _average(_numbers(logs, 'result_count'))
            }
        }

    @staticmethod
    def _pattern_summary(pattern_id: str, document: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'id': pattern_id,
            'natural_query': document.get('natural_query'),
            'intent': document.get('intent'),
            'success_rate': float(document.get('success_rate') or 0),
            'usage_count': document.get('usage_count') or 0,
            'confidence': float(document.get('confidence') or 0),
            'last_used_at': document.get('last_used_at')
        }

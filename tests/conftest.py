"""Shared fixtures for the finchat_nlu test suite.

Design principles:
- No network: OpenSearch, Bedrock embeddings and the Bedrock LLM are replaced by
  in-memory fakes with the same method signatures as the real clients
- Real services: every service under test is the production class wired to the fakes
- Deterministic embeddings: unknown texts hash to stable vectors, tests pin the rest
"""

import copy
import hashlib
import math
import threading
from typing import Any, Dict, List, Optional

import pytest

from finchat_nlu.services.conversation_engine import ConversationEngine
from finchat_nlu.services.feedback_loop import FeedbackLoop
from finchat_nlu.services.learning_worker import LearningWorker
from finchat_nlu.services.pattern_learner import PatternLearner
from finchat_nlu.services.query_analytics import QueryAnalytics
from finchat_nlu.utils.bedrock_embed import BedrockEmbedError
from finchat_nlu.utils.bedrock_llm import BedrockLLMError
from finchat_nlu.utils.opensearch_client import OpenSearchConflictError, OpenSearchError
from finchat_nlu.utils.similarity import cosine
from finchat_nlu.utils.text_extraction import normalize_query

EMBED_DIMENSION = 64


def unit(similarity: float) -> List[float]:
    """Unit vector whose cosine with [1, 0, 0, ...] is `similarity`."""
    return [similarity, math.sqrt(max(0.0, 1 - similarity**2))] + [0.0] * (EMBED_DIMENSION - 2)


QUERY_AXIS = unit(1.0)


class FakeStore:
    """In-memory stand-in for OpenSearchClient.

    Documents carry seq_no/primary_term so optimistic-concurrency updates behave like
    the real cluster: a stale if_seq_no raises OpenSearchConflictError.
    """

    def __init__(self):
        self.indices: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.fail = False
        self.get_barrier: Optional[threading.Barrier] = None
        self._lock = threading.RLock()
        self._seq_no = 0
        self._next_id = 0

    def _check(self):
        if self.fail:
            raise OpenSearchError('cluster unavailable')

    def _index(self, index_type: str) -> Dict[str, Dict[str, Any]]:
        return self.indices.setdefault(index_type, {})

    def docs(self, index_type: str) -> List[Dict[str, Any]]:
        """All stored documents of an index (test helper)."""
        with self._lock:
            return [copy.deepcopy(entry['document']) for entry in self._index(index_type).values()]

    def index_name(self, index_type: str) -> str:
        return f'test_{index_type}'

    def create_index_if_not_exists(self, index_type: str) -> str:
        self._check()
        with self._lock:
            if index_type in self.indices:
                return 'exists'
            self.indices[index_type] = {}
            return 'created'

    def index_document(self, document: Dict[str, Any], index_type: str, doc_id: Optional[str] = None) -> str:
        self._check()
        with self._lock:
            if doc_id is None:
                self._next_id += 1
                doc_id = f'{index_type}-{self._next_id}'
            self._seq_no += 1
            self._index(index_type)[doc_id] = {'document': copy.deepcopy(document), 'seq_no': self._seq_no, 'primary_term': 1}
            return doc_id

    def get_document(self, doc_id: str, index_type: str) -> Optional[Dict[str, Any]]:
        self._check()
        barrier = self.get_barrier if index_type == 'feedback' else None
        if barrier is not None:
            barrier.wait(timeout=5)
            self.get_barrier = None
        with self._lock:
            entry = self._index(index_type).get(doc_id)
            if entry is None:
                return None
            return {
                'id': doc_id,
                'document': copy.deepcopy(entry['document']),
                'seq_no': entry['seq_no'],
                'primary_term': entry['primary_term']
            }

    def update_document(self,
                        doc_id: str,
                        fields: Dict[str, Any],
                        index_type: str,
                        if_seq_no: Optional[int] = None,
                        if_primary_term: Optional[int] = None) -> bool:
        self._check()
        with self._lock:
            entry = self._index(index_type).get(doc_id)
            if entry is None:
                raise OpenSearchError(f'document {doc_id} missing')
            if if_seq_no is not None and (entry['seq_no'] != if_seq_no or entry['primary_term'] != if_primary_term):
                raise OpenSearchConflictError(f'version conflict on {doc_id}')
            entry['document'].update(copy.deepcopy(fields))
            self._seq_no += 1
            entry['seq_no'] = self._seq_no
            return True

    @staticmethod
    def _matches(document: Dict[str, Any], filters, range_filters, exists) -> bool:
        for field, value in (filters or {}).items():
            if isinstance(value, (list, tuple, set)):
                if document.get(field) not in value:
                    return False
            elif document.get(field) != value:
                return False
        for field, bounds in (range_filters or {}).items():
            current = document.get(field)
            if current is None:
                return False
            if 'gte' in bounds and not current >= bounds['gte']:
                return False
            if 'gt' in bounds and not current > bounds['gt']:
                return False
            if 'lte' in bounds and not current <= bounds['lte']:
                return False
            if 'lt' in bounds and not current < bounds['lt']:
                return False
        for field in exists or []:
            if document.get(field) is None:
                return False
        return True

    def search_documents(self, index_type, filters=None, range_filters=None, exists=None, sort=None, size=100):
        self._check()
        with self._lock:
            hits = [{
                'id': doc_id,
                'document': copy.deepcopy(entry['document'])
            } for doc_id, entry in self._index(index_type).items()
                    if self._matches(entry['document'], filters, range_filters, exists)]

        for clause in reversed(sort or []):
            field, options = next(iter(clause.items()))
            descending = options.get('order') == 'desc'
            present = [hit for hit in hits if hit['document'].get(field) is not None]
            missing = [hit for hit in hits if hit['document'].get(field) is None]
            present.sort(key=lambda hit: hit['document'][field], reverse=descending)
            hits = present + missing

        for hit in hits:
            hit['document'].pop('embedding', None)
        return hits[:size]

    def vector_search(self, query_vector, index_type, top_k=10, filters=None, include_embedding=False):
        # Filters restrict the candidate set before the top_k cut, as the lucene k-NN engine does
        self._check()
        with self._lock:
            hits = [{
                'id': doc_id,
                'score': cosine(query_vector, entry['document'].get('embedding') or []),
                'document': copy.deepcopy(entry['document'])
            } for doc_id, entry in self._index(index_type).items() if self._matches(entry['document'], filters, None, None)]

        hits.sort(key=lambda hit: hit['score'], reverse=True)
        if not include_embedding:
            for hit in hits:
                hit['document'].pop('embedding', None)
        return hits[:top_k]


class FakeEmbed:
    """Deterministic embeddings: pinned vectors for known texts, hash vectors otherwise."""

    def __init__(self):
        self.vectors: Dict[str, List[float]] = {}
        self.fail = False
        self.calls: List[str] = []

    def pin(self, text: str, vector: List[float]) -> None:
        self.vectors[normalize_query(text)] = list(vector)

    def _vector(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise BedrockEmbedError('embedding service unavailable')
        pinned = self.vectors.get(normalize_query(text))
        if pinned is not None:
            return list(pinned)
        digest = hashlib.sha256(normalize_query(text).encode('utf-8')).digest() * 2
        return [(byte - 127.5) / 127.5 for byte in digest[:EMBED_DIMENSION]]

    def embed_query(self, text: str) -> List[float]:
        return self._vector(text)

    def embed_document(self, text: str) -> List[float]:
        return self._vector(text)


class FakeLLM:
    """Records every completion request and answers with canned text.

    Classification requests (those passing a model_id) get a JSON category; all other
    requests are conversational completions.
    """

    def __init__(self, category: str = 'TASK', answer: str = 'LLM answer'):
        self.category = category
        self.answer = answer
        self.fail = False
        self.calls: List[Dict[str, Any]] = []

    def complete(self, messages, temperature=None, max_tokens=None, model_id=None, stop_sequences=None):
        self.calls.append({'messages': messages, 'temperature': temperature, 'max_tokens': max_tokens, 'model_id': model_id})
        if self.fail:
            raise BedrockLLMError('model unavailable')
        if model_id is not None:
            return f'{{"category": "{self.category}"}}'
        return self.answer

    @property
    def classification_calls(self) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call['model_id'] is not None]

    @property
    def completion_calls(self) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call['model_id'] is None]


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def embed():
    return FakeEmbed()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def worker():
    """Worker without a thread; tests run queued tasks with drain()."""
    return LearningWorker(retry_attempts=2, retry_delay=0.0, autostart=False)


@pytest.fixture
def learner(store, embed):
    return PatternLearner(store=store, embed=embed)


@pytest.fixture
def feedback_loop(store, learner, worker):
    return FeedbackLoop(store=store,
                        learner=learner,
                        worker=worker,
                        enable_processing=True,
                        auto_update_patterns=True,
                        processing_delay=0.0)


@pytest.fixture
def analytics(store):
    return QueryAnalytics(store=store, enable_tracking=True, enable_caching=True, cache_ttl=300, cache_size=10)


@pytest.fixture
def engine(store, embed, llm, worker):
    return ConversationEngine(store=store, embed=embed, llm=llm, worker=worker)


@pytest.fixture
def seed_intent(store, embed):
    """Store one intent exemplar at a chosen cosine similarity to QUERY_AXIS."""

    def _seed(intent_id: str, similarity: float, example_query: Optional[str] = None) -> None:
        store.index_document(
            {
                'intent_id': intent_id,
                'category': 'TASK',
                'example_query': example_query or f'{intent_id} example',
                'embedding': unit(similarity)
            },
            'intent',
            doc_id=f'{intent_id}-0')

    return _seed


@pytest.fixture
def make_pattern(store):
    """Insert a stored pattern document directly."""

    def _make(pattern_id: str, natural_query: str, **fields) -> str:
        document = {
            'natural_query': natural_query,
            'query_hash': pattern_id,
            'intent': 'card_recommendation',
            'decomposed_query': {'intent': 'card_recommendation'},
            'entities': {},
            'embedding': None,
            'success_rate': 1.0,
            'usage_count': 0,
            'confidence': 0.8,
            'user_satisfaction': None,
            'average_response_time_ms': None,
            'variations': [],
            'version': 1,
            'is_active': True,
            'created_at': '2026-01-01T00:00:00+00:00',
            'updated_at': '2026-01-01T00:00:00+00:00'
        }
        document.update(fields)
        return store.index_document(document, 'pattern', doc_id=pattern_id)

    return _make

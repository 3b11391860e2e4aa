"""Tests for the request bodies the OpenSearch client sends."""

from unittest.mock import patch

import pytest
from opensearchpy.exceptions import ConflictError, NotFoundError

from finchat_nlu.utils.config import OpenSearchConfig
from finchat_nlu.utils.opensearch_client import OpenSearchClient, OpenSearchConflictError, _index_properties


@pytest.fixture
def client():
    settings = OpenSearchConfig(endpoint='https://search-test.us-east-1.es.amazonaws.com',
                                port=443,
                                region='us-east-1',
                                service='es',
                                index_prefix='finchat',
                                dimension=4)
    with patch('finchat_nlu.utils.opensearch_client.boto3'), \
            patch('finchat_nlu.utils.opensearch_client.AWS4Auth'), \
            patch('finchat_nlu.utils.opensearch_client.OpenSearch') as opensearch:
        opensearch.return_value.search.return_value = {'hits': {'hits': []}}
        yield OpenSearchClient(settings)


def sent_body(client):
    return client.client.search.call_args.kwargs['body']


class TestConnection:

    def test_protocol_is_stripped_from_endpoint(self, client):
        with patch('finchat_nlu.utils.opensearch_client.boto3'), \
                patch('finchat_nlu.utils.opensearch_client.AWS4Auth'), \
                patch('finchat_nlu.utils.opensearch_client.OpenSearch') as opensearch:
            OpenSearchClient(client.config)

        hosts = opensearch.call_args.kwargs['hosts']
        assert hosts == [{'host': 'search-test.us-east-1.es.amazonaws.com', 'port': 443}]

    def test_index_name_uses_prefix(self, client):
        assert client.index_name('intent') == 'finchat_intent'


class TestVectorSearch:

    def test_filters_sit_inside_knn_clause(self, client):
        client.vector_search([0.1, 0.2, 0.3, 0.4], 'intent', top_k=5, filters={'intent_id': ['debt_guidance', 'help']})

        body = sent_body(client)
        knn = body['query']['knn']['embedding']
        assert knn['k'] == 5
        assert knn['filter'] == {'bool': {'filter': [{'terms': {'intent_id': ['debt_guidance', 'help']}}]}}
        assert set(body['query']) == {'knn'}
        assert 'post_filter' not in body

    def test_unfiltered_search_has_no_filter(self, client):
        client.vector_search([0.1, 0.2, 0.3, 0.4], 'pattern', top_k=3)

        knn = sent_body(client)['query']['knn']['embedding']
        assert 'filter' not in knn
        assert sent_body(client)['_source'] == {'excludes': ['embedding']}

    def test_include_embedding_keeps_source(self, client):
        client.vector_search([0.1, 0.2, 0.3, 0.4], 'pattern', include_embedding=True)
        assert '_source' not in sent_body(client)

    def test_hits_are_mapped(self, client):
        client.client.search.return_value = {'hits': {'hits': [{'_id': 'i1', '_score': 0.92, '_source': {'intent_id': 'help'}}]}}

        results = client.vector_search([0.1, 0.2, 0.3, 0.4], 'intent')
        assert results == [{'id': 'i1', 'score': 0.92, 'document': {'intent_id': 'help'}}]


class TestSearchDocuments:

    def test_filter_range_and_exists_clauses(self, client):
        client.search_documents('feedback',
                                filters={'status': 'processing'},
                                range_filters={'claimed_at': {'lte': '2026-01-01T00:00:00+00:00'}},
                                exists=['pattern_id'],
                                sort=[{'created_at': {'order': 'asc'}}],
                                size=7)

        body = sent_body(client)
        assert body['query']['bool']['filter'] == [{
            'term': {
                'status': 'processing'
            }
        }, {
            'range': {
                'claimed_at': {
                    'lte': '2026-01-01T00:00:00+00:00'
                }
            }
        }, {
            'exists': {
                'field': 'pattern_id'
            }
        }]
        assert body['sort'] == [{'created_at': {'order': 'asc'}}]
        assert body['size'] == 7

    def test_missing_index_returns_nothing(self, client):
        client.client.search.side_effect = NotFoundError(404, 'index_not_found_exception', {})
        assert client.search_documents('feedback') == []


class TestMappingsAndUpdates:

    @pytest.mark.parametrize('index_type', ['intent', 'pattern'])
    def test_vector_fields_use_filterable_engine(self, index_type):
        method = _index_properties(index_type, 4)['embedding']['method']
        assert method['engine'] == 'lucene'
        assert method['space_type'] == 'cosinesimil'

    def test_feedback_mapping_has_claim_time(self):
        assert _index_properties('feedback', 4)['claimed_at'] == {'type': 'date'}

    def test_knn_setting_on_vector_indices(self, client):
        client.client.indices.exists.return_value = False
        client.client.indices.create.return_value = {'acknowledged': True}

        assert client.create_index_if_not_exists('intent') == 'created'
        body = client.client.indices.create.call_args.kwargs['body']
        assert body['settings'] == {'index': {'knn': True}}

    def test_guarded_update_conflict(self, client):
        client.client.update.side_effect = ConflictError(409, 'version_conflict_engine_exception', {})

        with pytest.raises(OpenSearchConflictError):
            client.update_document('fb-1', {'status': 'processing'}, 'feedback', if_seq_no=3, if_primary_term=1)

        kwargs = client.client.update.call_args.kwargs
        assert kwargs['if_seq_no'] == 3
        assert kwargs['if_primary_term'] == 1

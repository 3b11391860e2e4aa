"""
OpenSearch client wrapper backing intent exemplars, learned patterns, query logs and feedback.
"""

from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import ConflictError, NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)

INDEX_TYPES = ('intent', 'pattern', 'query_log', 'feedback')


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchConflictError(OpenSearchError):
    """Raised when an optimistic-concurrency update loses the race."""
    pass


# lucene applies filters during the k-NN search, so filtered queries still return k hits
def _knn_field(dimension: int) -> Dict[str, Any]:
    return {
        'type': 'knn_vector',
        'dimension': dimension,
        'method': {
            'name': 'hnsw',
            'space_type': 'cosinesimil',
            'engine': 'lucene',
            'parameters': {
                'ef_construction': 128,
                'm': 16
            }
        }
    }


def _index_properties(index_type: str, dimension: int) -> Dict[str, Any]:
    keyword = {'type': 'keyword'}
    opaque = {'type': 'object', 'enabled': False}

    if index_type == 'intent':
        return {
            'intent_id': keyword,
            'category': keyword,
            'example_query': {'type': 'text'},
            'embedding': _knn_field(dimension),
            'created_at': {'type': 'date'}
        }
    if index_type == 'pattern':
        return {
            'natural_query': {'type': 'text'},
            'query_hash': keyword,
            'intent': keyword,
            'decomposed_query': opaque,
            'entities': opaque,
            'embedding': _knn_field(dimension),
            'success_rate': {'type': 'float'},
            'usage_count': {'type': 'integer'},
            'confidence': {'type': 'float'},
            'user_satisfaction': {'type': 'float'},
            'average_response_time_ms': {'type': 'float'},
            'variations': keyword,
            'version': {'type': 'integer'},
            'is_active': {'type': 'boolean'},
            'created_at': {'type': 'date'},
            'updated_at': {'type': 'date'},
            'last_used_at': {'type': 'date'},
            'last_improved_at': {'type': 'date'}
        }
    if index_type == 'query_log':
        return {
            'user_id': keyword,
            'session_id': keyword,
            'query': {'type': 'text', 'fields': {'raw': {'type': 'keyword', 'ignore_above': 512}}},
            'query_hash': keyword,
            'matched_intent': keyword,
            'similarity_score': {'type': 'float'},
            'decomposition_method': keyword,
            'entities': opaque,
            'structured_query': opaque,
            'pattern_id': keyword,
            'response_time_ms': {'type': 'float'},
            'success': {'type': 'boolean'},
            'error_message': {'type': 'keyword', 'ignore_above': 512},
            'result_count': {'type': 'integer'},
            'created_at': {'type': 'date'}
        }
    if index_type == 'feedback':
        return {
            'query_log_id': keyword,
            'pattern_id': keyword,
            'user_id': keyword,
            'session_id': keyword,
            'feedback_type': keyword,
            'feedback_subtype': keyword,
            'rating': {'type': 'integer'},
            'helpful': {'type': 'boolean'},
            'correction_text': {'type': 'text'},
            'feedback_data': opaque,
            'status': keyword,
            'created_at': {'type': 'date'},
            'claimed_at': {'type': 'date'},
            'processed_at': {'type': 'date'}
        }
    raise OpenSearchError(f'Unknown index type: {index_type}')


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config

        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)

        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{'host': endpoint, 'port': config.port}],
                                 http_auth=auth,
                                 use_ssl=True,
                                 verify_certs=True,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_name(self, index_type: str) -> str:
        """Physical index name for a logical index type."""
        return f'{self.config.index_prefix}_{index_type}'

    def create_index_if_not_exists(self, index_type: str) -> str:
        """
        Create the index for index_type if it doesn't exist.

        Args:
            index_type: One of intent, pattern, query_log, feedback

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_name(index_type)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            index_body: Dict[str, Any] = {'mappings': {'properties': _index_properties(index_type, self.config.dimension)}}
            if index_type in ('intent', 'pattern'):
                index_body['settings'] = {'index': {'knn': True}}

            response = self.client.indices.create(index=index_name, body=index_body)
            if response.get('acknowledged', False):
                logger.info(f'Created index {index_name}')
                return 'created'
            return 'failed'

        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def index_document(self, document: Dict[str, Any], index_type: str, doc_id: Optional[str] = None) -> str:
        """
        Index a document.

        Args:
            document: Document body
            index_type: Logical index type
            doc_id: Explicit document id (generated by OpenSearch if None)

        Returns:
            The stored document id
        """
        index_name = self.index_name(index_type)

        try:
            kwargs = {'index': index_name, 'body': document}
            if doc_id is not None:
                kwargs['id'] = doc_id
            response = self.client.index(**kwargs)

            if response.get('result') not in ('created', 'updated'):
                logger.warning(f'Unexpected result indexing document: {response}')

            logger.debug(f'Indexed document {response.get("_id")} in {index_name}')
            return response['_id']

        except OpenSearchException as e:
            logger.error(f'Error indexing document in {index_name}: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')

    def get_document(self, doc_id: str, index_type: str) -> Optional[Dict[str, Any]]:
        """
        Get a document by id together with its concurrency-control tokens.

        Args:
            doc_id: Document id
            index_type: Logical index type

        Returns:
            Dict with id, document, seq_no and primary_term, or None if missing
        """
        index_name = self.index_name(index_type)

        try:
            response = self.client.get(index=index_name, id=doc_id)
            if not response.get('found', True):
                return None
            return {
                'id': response['_id'],
                'document': response['_source'],
                'seq_no': response.get('_seq_no'),
                'primary_term': response.get('_primary_term')
            }

        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id} from {index_name}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')

    def update_document(self,
                        doc_id: str,
                        fields: Dict[str, Any],
                        index_type: str,
                        if_seq_no: Optional[int] = None,
                        if_primary_term: Optional[int] = None) -> bool:
        """
        Partially update a document, optionally guarded by optimistic concurrency.

        Args:
            doc_id: Document id
            fields: Fields to overwrite
            index_type: Logical index type
            if_seq_no: Expected sequence number
            if_primary_term: Expected primary term

        Returns:
            True if the document was updated

        Raises:
            OpenSearchConflictError: If the guarded update lost a race
            OpenSearchError: On any other failure
        """
        index_name = self.index_name(index_type)

        try:
            kwargs: Dict[str, Any] = {'index': index_name, 'id': doc_id, 'body': {'doc': fields}}
            if if_seq_no is not None and if_primary_term is not None:
                kwargs['if_seq_no'] = if_seq_no
                kwargs['if_primary_term'] = if_primary_term

            response = self.client.update(**kwargs)
            return response.get('result') in ('updated', 'noop')

        except ConflictError as e:
            logger.debug(f'Version conflict updating {doc_id} in {index_name}')
            raise OpenSearchConflictError(f'Version conflict on {doc_id}: {e}')
        except OpenSearchException as e:
            logger.error(f'Error updating document {doc_id} in {index_name}: {e}')
            raise OpenSearchError(f'Failed to update document: {e}')

    @staticmethod
    def _filter_clauses(filters: Optional[Dict[str, Any]],
                        range_filters: Optional[Dict[str, Dict[str, Any]]],
                        exists: Optional[List[str]]) -> List[Dict[str, Any]]:
        clauses = []
        for field, value in (filters or {}).items():
            if isinstance(value, (list, tuple, set)):
                clauses.append({'terms': {field: list(value)}})
            else:
                clauses.append({'term': {field: value}})
        for field, bounds in (range_filters or {}).items():
            clauses.append({'range': {field: bounds}})
        for field in exists or []:
            clauses.append({'exists': {'field': field}})
        return clauses

    def search_documents(self,
                         index_type: str,
                         filters: Optional[Dict[str, Any]] = None,
                         range_filters: Optional[Dict[str, Dict[str, Any]]] = None,
                         exists: Optional[List[str]] = None,
                         sort: Optional[List[Dict[str, Any]]] = None,
                         size: int = 100) -> List[Dict[str, Any]]:
        """
        Filtered search without scoring.

        Args:
            index_type: Logical index type
            filters: field -> value (term) or list of values (terms)
            range_filters: field -> {'gte': ..., 'lt': ...}
            exists: Fields that must be present
            sort: OpenSearch sort clauses
            size: Maximum number of hits

        Returns:
            List of dicts with id and document
        """
        index_name = self.index_name(index_type)

        try:
            search_body: Dict[str, Any] = {
                'size': size,
                'query': {
                    'bool': {
                        'filter': self._filter_clauses(filters, range_filters, exists)
                    }
                },
                '_source': {
                    'excludes': ['embedding']
                }
            }
            if sort:
                search_body['sort'] = sort

            response = self.client.search(index=index_name, body=search_body)

            results = [{'id': hit['_id'], 'document': hit['_source']} for hit in response['hits']['hits']]
            logger.debug(f'Search on {index_name} returned {len(results)} documents')
            return results

        except NotFoundError:
            logger.warning(f'Index {index_name} not found during search')
            return []
        except OpenSearchException as e:
            logger.error(f'Error searching {index_name}: {e}')
            raise OpenSearchError(f'Search failed: {e}')

    def vector_search(self,
                      query_vector: List[float],
                      index_type: str,
                      top_k: int = 10,
                      filters: Optional[Dict[str, Any]] = None,
                      include_embedding: bool = False) -> List[Dict[str, Any]]:
        """
        Perform k-NN similarity search restricted by term filters.

        Filters are applied inside the knn clause, so the k nearest neighbours are taken
        among matching documents only.

        Args:
            query_vector: Query vector for similarity search
            index_type: Logical index type (intent or pattern)
            top_k: Number of results to return
            filters: field -> value (term) or list of values (terms)
            include_embedding: Return the stored vector in each document

        Returns:
            List of dicts with id, score and document
        """
        index_name = self.index_name(index_type)

        try:
            knn_query: Dict[str, Any] = {'vector': query_vector, 'k': top_k}
            clauses = self._filter_clauses(filters, None, None)
            if clauses:
                knn_query['filter'] = {'bool': {'filter': clauses}}

            search_body: Dict[str, Any] = {'size': top_k, 'query': {'knn': {'embedding': knn_query}}}
            if not include_embedding:
                search_body['_source'] = {'excludes': ['embedding']}

            response = self.client.search(index=index_name, body=search_body)

            results = [{'id': hit['_id'], 'score': hit['_score'], 'document': hit['_source']} for hit in response['hits']['hits']]
            logger.debug(f'Vector search on {index_name} returned {len(results)} results')
            return results

        except OpenSearchException as e:
            logger.error(f'Error performing vector search on {index_name}: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name('intent'))
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False

"""
OpenSearch client wrapper for vector-bearing records (flat memories and graph entities).
"""

import uuid
from typing import Any, Dict, List, Optional, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger
from .timestamp_utils import now_iso

logger = get_logger(__name__)

KEYWORD = {'type': 'keyword'}
DATE = {'type': 'date'}

# Required properties per record kind; 'embedding' is added with the configured dimension
INDEX_PROPERTIES = {
    'memory': {
        'id': KEYWORD,
        'content': {'type': 'text'},
        'hash': KEYWORD,
        'user_id': KEYWORD,
        'agent_id': KEYWORD,
        'run_id': KEYWORD,
        'actor_id': KEYWORD,
        'role': KEYWORD,
        'memory_type': KEYWORD,
        'metadata': {'type': 'object', 'enabled': False},
        'created_at': DATE,
        'updated_at': DATE,
    },
    'entity': {
        'id': KEYWORD,
        'name': KEYWORD,
        'entity_type': KEYWORD,
        'user_id': KEYWORD,
        'created_at': DATE,
        'updated_at': DATE,
    },
}

FILTER_FIELDS = ('user_id', 'agent_id', 'run_id', 'actor_id', 'role')

OWNER_DOC_ID = 'owner'
WRITE_REFRESH = 'wait_for'


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


class SchemaError(OpenSearchError):
    """Raised at initialization when an index does not have the expected shape."""
    pass


class OpenSearchClient:
    """CRUD and cosine-similarity search over one index of vector-bearing records."""

    def __init__(self, config: OpenSearchConfig, kind: str = 'memory', client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            kind: Record kind, 'memory' or 'entity'
            client: Pre-built OpenSearch client (optional)
        """
        if kind not in INDEX_PROPERTIES:
            raise ValueError(f'Unknown record kind: {kind}')

        self.config = config
        self.kind = kind
        self.index_name = f'{config.index_prefix}_{kind}'
        self.migrations_index = f'{config.index_prefix}_migrations'

        if client is None:
            client = self._build_client(config)
        self.client = client

        logger.info(f'Initialized OpenSearch client for index {self.index_name} at {config.endpoint}')

    @staticmethod
    def _build_client(config: OpenSearchConfig) -> OpenSearch:
        auth = None
        if config.use_aws_auth:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)

        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        return OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                          http_auth=auth,
                          use_ssl=True,
                          verify_certs=True,
                          connection_class=RequestsHttpConnection)

    def _expected_properties(self) -> Dict[str, Dict[str, Any]]:
        properties = dict(INDEX_PROPERTIES[self.kind])
        properties['embedding'] = {
            'type': 'knn_vector',
            'dimension': self.config.dimension,
            'method': {
                'name': 'hnsw',
                'space_type': 'cosinesimil',
                'engine': 'lucene'
            }
        }
        return properties

    def _index_body(self) -> Dict[str, Any]:
        return {
            'mappings': {
                'properties': self._expected_properties()
            },
            'settings': {
                'index': {
                    'knn': True
                }
            }
        }

    def initialize(self) -> None:
        """
        Ensure the index exists (when auto creation is enabled) and validate its mapping.

        Raises:
            SchemaError: If the index is missing or does not have the expected properties
            OpenSearchError: If the cluster cannot be reached
        """
        try:
            exists = self.client.indices.exists(index=self.index_name)
            if not exists and self.config.auto_create_indexes:
                self.client.indices.create(index=self.index_name, body=self._index_body())
                logger.info(f'Created index {self.index_name}')
                exists = True
            if not exists:
                raise SchemaError(f'Index {self.index_name} does not exist; expected a knn index with properties '
                                  f'{sorted(self._expected_properties())}')

            mapping = self.client.indices.get_mapping(index=self.index_name)
        except OpenSearchError:
            raise
        except OpenSearchException as e:
            logger.error(f'Error initializing index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to initialize index {self.index_name}: {e}') from e

        self._validate_mapping(mapping)
        logger.info(f'Validated mapping of index {self.index_name}')

    def _validate_mapping(self, mapping: Dict[str, Any]) -> None:
        """Compare the live mapping against the expected properties, failing on the first difference."""
        index_mapping = mapping.get(self.index_name)
        if index_mapping is None and mapping:
            # The index may be addressed through an alias
            index_mapping = next(iter(mapping.values()))
        properties = ((index_mapping or {}).get('mappings') or {}).get('properties') or {}

        for name, expected in self._expected_properties().items():
            if name not in properties:
                raise SchemaError(f'Index {self.index_name} is missing property "{name}"; '
                                  f'expected type "{expected["type"]}"')

            actual_type = properties[name].get('type', 'object')
            if actual_type != expected['type']:
                raise SchemaError(f'Property "{name}" of index {self.index_name} has type "{actual_type}"; '
                                  f'expected type "{expected["type"]}"')

            if expected['type'] == 'knn_vector':
                dimension = properties[name].get('dimension')
                if dimension != self.config.dimension:
                    raise SchemaError(f'Property "{name}" of index {self.index_name} has dimension {dimension}; '
                                      f'expected knn_vector of dimension {self.config.dimension}')

    @staticmethod
    def _filter_clauses(filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        clauses = []
        for key, value in (filters or {}).items():
            if value is None:
                continue
            if key not in FILTER_FIELDS:
                raise ValueError(f'Unsupported filter field: {key}')
            clauses.append({'term': {key: value}})
        return clauses

    def _filter_query(self, filters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        clauses = self._filter_clauses(filters)
        if not clauses:
            return {'match_all': {}}
        return {'bool': {'filter': clauses}}

    @staticmethod
    def _hit_to_record(hit: Dict[str, Any]) -> Dict[str, Any]:
        return {'id': hit['_id'], 'document': hit.get('_source', {})}

    def insert(self, vectors: List[List[float]], ids: List[str], payloads: List[Dict[str, Any]]) -> None:
        """
        Bulk insert records.

        Args:
            vectors: Embeddings, one per record
            ids: Document ids
            payloads: Record fields, one per record

        Raises:
            ValueError: If the three lists differ in length
            OpenSearchError: If any document fails to index
        """
        if not vectors:
            return
        if not (len(vectors) == len(ids) == len(payloads)):
            raise ValueError(f'Length mismatch: {len(vectors)} vectors, {len(ids)} ids, {len(payloads)} payloads')

        now = now_iso()
        body = []
        for vector, doc_id, payload in zip(vectors, ids, payloads):
            document = dict(payload)
            document['id'] = doc_id
            document['embedding'] = vector
            document.setdefault('created_at', now)
            body.append({'index': {'_index': self.index_name, '_id': doc_id}})
            body.append(document)

        try:
            response = self.client.bulk(body=body, refresh=WRITE_REFRESH)
        except OpenSearchException as e:
            logger.error(f'Error inserting {len(ids)} documents into {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to insert documents: {e}') from e

        if response.get('errors'):
            failed = [item['index'] for item in response.get('items', []) if item.get('index', {}).get('error')]
            logger.error(f'Bulk insert into {self.index_name} had {len(failed)} failures')
            raise OpenSearchError(f'Failed to insert documents: {failed[0] if failed else response}')

        logger.debug(f'Inserted {len(ids)} documents into {self.index_name}')

    def search(self,
               vector: List[float],
               limit: int = 100,
               filters: Optional[Dict[str, Any]] = None,
               min_similarity: Optional[float] = None) -> List[Dict[str, Any]]:
        """
        Exact cosine similarity search restricted by equality filters.

        Args:
            vector: Query embedding
            limit: Maximum number of results
            filters: Equality predicates on scope fields (user_id, agent_id, run_id, actor_id, role)
            min_similarity: Drop results below this cosine similarity (optional)

        Returns:
            List of {'id', 'similarity', 'document'} ordered by descending similarity
        """
        body = {
            'size': limit,
            'query': {
                'script_score': {
                    'query': self._filter_query(filters),
                    'script': {
                        'source': 'knn_score',
                        'lang': 'knn',
                        'params': {
                            'field': 'embedding',
                            'query_value': vector,
                            'space_type': 'cosinesimil'
                        }
                    }
                }
            },
            '_source': {
                'excludes': ['embedding']
            }
        }
        if min_similarity is not None:
            # knn_score with cosinesimil scores documents as 1 + cosine
            body['min_score'] = 1.0 + min_similarity

        try:
            response = self.client.search(index=self.index_name, body=body)
        except OpenSearchException as e:
            logger.error(f'Error performing vector search on {self.index_name}: {e}')
            raise OpenSearchError(f'Vector search failed: {e}') from e

        results = []
        for hit in response['hits']['hits']:
            record = self._hit_to_record(hit)
            record['similarity'] = hit['_score'] - 1.0
            results.append(record)

        logger.debug(f'Vector search on {self.index_name} returned {len(results)} results')
        return results

    def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        """
        Point lookup by document id.

        Returns:
            {'id', 'document'} if found, None otherwise
        """
        try:
            response = self.client.get(index=self.index_name, id=doc_id, _source_excludes=['embedding'])
        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id} from {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}') from e

        if not response.get('found', True):
            return None
        return self._hit_to_record(response)

    def update(self, doc_id: str, vector: Optional[List[float]] = None, payload: Optional[Dict[str, Any]] = None) -> None:
        """
        Partial update: only the supplied fields change, updated_at is always refreshed.

        Raises:
            OpenSearchError: If the document does not exist or the update fails
        """
        doc = dict(payload or {})
        if vector is not None:
            doc['embedding'] = vector
        doc['updated_at'] = now_iso()

        try:
            self.client.update(index=self.index_name, id=doc_id, body={'doc': doc}, refresh=WRITE_REFRESH)
        except NotFoundError as e:
            raise OpenSearchError(f'Document {doc_id} not found in {self.index_name}') from e
        except OpenSearchException as e:
            logger.error(f'Error updating document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to update document: {e}') from e

        logger.debug(f'Updated document {doc_id} in {self.index_name}')

    def upsert(self,
               doc_id: str,
               vector: List[float],
               insert_payload: Dict[str, Any],
               update_payload: Optional[Dict[str, Any]] = None) -> str:
        """
        Insert the document if absent, else apply a partial update, in one request.

        Args:
            doc_id: Document id
            vector: Embedding, written on both paths
            insert_payload: Fields for a new document
            update_payload: Fields changed on an existing document (updated_at is always set)

        Returns:
            'created' or 'updated'
        """
        now = now_iso()
        document = dict(insert_payload)
        document.update({'id': doc_id, 'embedding': vector, 'created_at': document.get('created_at', now)})
        changes = dict(update_payload or {})
        changes.update({'embedding': vector, 'updated_at': now})

        try:
            response = self.client.update(index=self.index_name,
                                          id=doc_id,
                                          body={
                                              'doc': changes,
                                              'upsert': document
                                          },
                                          refresh=WRITE_REFRESH,
                                          retry_on_conflict=3)
        except OpenSearchException as e:
            logger.error(f'Error upserting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to upsert document: {e}') from e

        result = 'created' if response.get('result') == 'created' else 'updated'
        logger.debug(f'Upserted document {doc_id} in {self.index_name}: {result}')
        return result

    def delete(self, doc_id: str) -> bool:
        """
        Delete a document.

        Returns:
            True if it was deleted, False if it did not exist
        """
        try:
            response = self.client.delete(index=self.index_name, id=doc_id, refresh=WRITE_REFRESH)
        except NotFoundError:
            logger.warning(f'Document {doc_id} not found for deletion')
            return False
        except OpenSearchException as e:
            logger.error(f'Error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to delete document: {e}') from e

        return response.get('result') == 'deleted'

    def delete_all(self, filters: Optional[Dict[str, Any]] = None) -> int:
        """
        Delete every document matching the filters (all documents when None).

        Returns:
            Number of deleted documents
        """
        try:
            response = self.client.delete_by_query(index=self.index_name,
                                                   body={'query': self._filter_query(filters)},
                                                   refresh=True,
                                                   conflicts='proceed')
        except OpenSearchException as e:
            logger.error(f'Error deleting documents from {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to delete documents: {e}') from e

        deleted = response.get('deleted', 0)
        logger.debug(f'Deleted {deleted} documents from {self.index_name}')
        return deleted

    def reset(self) -> None:
        """Drop and recreate the index."""
        try:
            if self.client.indices.exists(index=self.index_name):
                self.client.indices.delete(index=self.index_name)
                logger.info(f'Deleted index {self.index_name}')
            self.client.indices.create(index=self.index_name, body=self._index_body())
        except OpenSearchException as e:
            logger.error(f'Error resetting index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to reset index: {e}') from e

        logger.info(f'Recreated index {self.index_name}')

    def list(self, filters: Optional[Dict[str, Any]] = None, limit: int = 100) -> Tuple[List[Dict[str, Any]], int]:
        """
        List documents newest first.

        Returns:
            Tuple of ([{'id', 'document'}], total number of matching documents)
        """
        body = {
            'size': limit,
            'query': self._filter_query(filters),
            'sort': [{
                'created_at': {
                    'order': 'desc'
                }
            }],
            'track_total_hits': True,
            '_source': {
                'excludes': ['embedding']
            }
        }

        try:
            response = self.client.search(index=self.index_name, body=body)
        except OpenSearchException as e:
            logger.error(f'Error listing documents from {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to list documents: {e}') from e

        records = [self._hit_to_record(hit) for hit in response['hits']['hits']]
        total = response['hits'].get('total', {}).get('value', len(records))
        return records, total

    def get_owner_id(self) -> str:
        """
        Return the anonymous telemetry id held by the singleton migration record, creating it if absent.
        """
        try:
            response = self.client.get(index=self.migrations_index, id=OWNER_DOC_ID)
            owner_id = response.get('_source', {}).get('user_id')
            if owner_id:
                return owner_id
        except NotFoundError:
            pass
        except OpenSearchException as e:
            logger.error(f'Error reading owner id: {e}')
            raise OpenSearchError(f'Failed to read owner id: {e}') from e

        owner_id = str(uuid.uuid4())
        self.set_owner_id(owner_id)
        return owner_id

    def set_owner_id(self, owner_id: str) -> None:
        """Replace the singleton migration record."""
        try:
            self.client.index(index=self.migrations_index,
                              id=OWNER_DOC_ID,
                              body={
                                  'user_id': owner_id,
                                  'updated_at': now_iso()
                              },
                              refresh=WRITE_REFRESH)
        except OpenSearchException as e:
            logger.error(f'Error writing owner id: {e}')
            raise OpenSearchError(f'Failed to write owner id: {e}') from e

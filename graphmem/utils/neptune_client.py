"""
Amazon Neptune graph database client with Gremlin Python driver and AWS SigV4 authentication.
"""

import json
from functools import wraps
from typing import Any, Dict, List, Optional, Tuple

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.traversal import T

from ..models.core import Relation
from .config import NeptuneConfig
from .graph_queries import GraphQueries
from .logging_config import get_logger
from .timestamp_utils import now_iso

logger = get_logger(__name__)


class NeptuneError(Exception):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to reconnect once on a closed transport and wrap driver errors into NeptuneError."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except NeptuneError:
            raise
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}') from retry_e
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}') from e

    return wrapper


def _first(value: Any) -> Any:
    """value_map returns vertex properties as lists; unwrap them."""
    if isinstance(value, list):
        return value[0] if value else None
    return value


def relation_from_value_map(data: Dict[Any, Any]) -> Relation:
    """Build a Relation from an edge value_map(True) entry."""
    raw_metadata = _first(data.get('metadata'))
    try:
        metadata = json.loads(raw_metadata) if raw_metadata else {}
    except (TypeError, ValueError):
        logger.warning(f'Ignoring unreadable metadata on relation {data.get(T.id)}')
        metadata = {}

    return Relation(id=str(_first(data.get(T.id, data.get('id')))),
                    source=_first(data.get('source_name')),
                    source_id=_first(data.get('source_id')),
                    relationship=_first(data.get('relationship_type')),
                    destination=_first(data.get('destination_name')),
                    destination_id=_first(data.get('destination_id')),
                    user_id=_first(data.get('user_id')),
                    metadata=metadata,
                    created_at=_first(data.get('created_at')),
                    updated_at=_first(data.get('updated_at')))


class NeptuneClient:
    """Amazon Neptune client using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig, g=None):
        """
        Initialize Neptune client. The connection is opened by initialize().

        Args:
            config: NeptuneConfig instance with connection parameters
            g: Pre-built graph traversal source (optional)
        """
        self.config = config
        self.connection = None
        self.g = g
        self.queries = GraphQueries(g) if g is not None else None

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        headers = None
        if self.config.use_iam_auth:
            credentials = Session().get_credentials()
            if credentials is None:
                raise NeptuneError('No AWS credentials found')
            creds = credentials.get_frozen_credentials()
            region = self.config.region or Session().region_name or 'us-east-1'

            # Sign the WebSocket upgrade request
            request = AWSRequest(method='GET', url=conn_string, data=None)
            SigV4Auth(creds, 'neptune-db', region).add_auth(request)
            headers = dict(request.headers.items())

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=headers,
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)
        self.queries = GraphQueries(self.g)

    def initialize(self) -> None:
        """
        Connect (if needed) and run a probe query.

        Raises:
            NeptuneError: If the cluster cannot be reached
        """
        try:
            if self.g is None:
                self._connect()
            self.queries.probe().next()
        except NeptuneError:
            raise
        except Exception as e:
            logger.error(f'Neptune probe failed: {e}')
            raise NeptuneError(f'Cannot reach Neptune at {self.config.endpoint}: {e}') from e

        logger.info(f'Connected to Neptune at {self.config.endpoint}')

    def _require_connection(self) -> GraphQueries:
        if self.queries is None:
            raise NeptuneError('Neptune client is not initialized')
        return self.queries

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()
            self.connection = None

    @retry_on_connection_error
    def upsert_entity(self, entity_id: str, user_id: str, name: str, entity_type: str) -> bool:
        """
        Create an entity vertex, or refresh updated_at when it already exists.

        Args:
            entity_id: Deterministic entity identifier
            user_id: Owner of the entity
            name: Normalized entity name
            entity_type: Type label, only written on creation

        Returns:
            True if the vertex was created, False if it already existed
        """
        created = self._require_connection().upsert_entity(entity_id, user_id, name, entity_type, now_iso()).next()
        logger.debug(f'{"Created" if created else "Refreshed"} entity vertex {name} ({entity_id})')
        return bool(created)

    @retry_on_connection_error
    def upsert_relation(self,
                        relation_id: str,
                        user_id: str,
                        source_id: str,
                        source_name: str,
                        relationship: str,
                        destination_id: str,
                        destination_name: str,
                        metadata: Optional[Dict[str, Any]] = None) -> bool:
        """
        Create a relation edge between two entity vertices of the same owner, or refresh updated_at.

        Returns:
            True if the edge was created, False if it already existed

        Raises:
            NeptuneError: If either endpoint does not exist for this owner
        """
        result = self._require_connection().upsert_relation(relation_id, user_id, source_id, source_name, relationship,
                                                             destination_id, destination_name, metadata or {},
                                                             now_iso()).to_list()
        if not result:
            raise NeptuneError(f'Cannot create relation {source_name} -- {relationship} -- {destination_name}: '
                               f'endpoint not found for user {user_id}')

        logger.debug(f'Upserted relation {source_name} -- {relationship} -- {destination_name}')
        return bool(result[0])

    @retry_on_connection_error
    def delete_relation(self, relation_id: str, user_id: str) -> int:
        """
        Delete one relation owned by user_id.

        Returns:
            Number of relations removed (0 when nothing matched)
        """
        queries = self._require_connection()
        count = int(queries.count_relation(relation_id, user_id).next())
        if count:
            queries.delete_relation(relation_id, user_id).iterate()
        logger.debug(f'Deleted {count} relation(s) with id {relation_id}')
        return count

    @retry_on_connection_error
    def get_entity_relations(self, entity_id: str, user_id: str) -> List[Relation]:
        """Incoming and outgoing relations of an entity."""
        data = self._require_connection().entity_relations(entity_id, user_id).to_list()
        return [relation_from_value_map(item) for item in data]

    @retry_on_connection_error
    def get_all_relations(self, user_id: str, limit: int = 100) -> List[Relation]:
        """Outgoing relations of every entity owned by user_id."""
        data = self._require_connection().owner_relations(user_id, limit).to_list()
        return [relation_from_value_map(item) for item in data]

    @retry_on_connection_error
    def delete_all(self, user_id: str) -> Tuple[int, int]:
        """
        Remove every relation and then every entity owned by user_id.

        Dropping a vertex also drops edges other owners attached to it, so foreign edges never block deletion.

        Returns:
            Tuple of (relations deleted, entities deleted)
        """
        queries = self._require_connection()

        relation_count = int(queries.owner_relation_edges(user_id).count().next())
        queries.owner_relation_edges(user_id).drop().iterate()

        entity_count = int(queries.owner_entities(user_id).count().next())
        queries.owner_entities(user_id).drop().iterate()

        logger.info(f'Deleted {relation_count} relations and {entity_count} entities for user {user_id}')
        return relation_count, entity_count

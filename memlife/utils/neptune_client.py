"""
Amazon Neptune graph database client with Gremlin Python driver and AWS SigV4 authentication.

Entities are vertices labelled ``Entity``; relations between them are ``RELATES_TO`` edges.
"""

import json
import uuid
from functools import wraps
from typing import Any, Dict, List, Optional, Sequence

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Cardinality, Order, P

from ..models.core import Entity, EntityRelation, EntityType
from .config import NeptuneConfig
from .logging_config import get_logger
from .timestamp_utils import from_iso, to_iso, utc_now

logger = get_logger(__name__)

ENTITY_LABEL = 'Entity'
RELATION_LABEL = 'RELATES_TO'
NAME_MATCH_SIMILARITY = 0.5
SEARCH_SCAN_LIMIT = 1000


class NeptuneError(Exception):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations on connection errors."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _value(data: Dict[str, Any], key: str, default=None):
    """Unwrap a value_map entry, which Gremlin returns as a single-element list."""
    value = data.get(key, default)
    if isinstance(value, list):
        return value[0] if value else default
    return value


def entity_from_row(row: Dict[str, Any]) -> Entity:
    """Build an Entity from a projected row of vertex properties and outgoing relations."""
    props = row['props']
    attributes = _value(props, 'attributes', '{}')
    relations = [
        EntityRelation(target_name=rel['target_name'],
                       relation=rel.get('relation') or 'related_to',
                       target_type=EntityType(rel['target_type']) if rel.get('target_type') else None)
        for rel in row.get('relations', [])
    ]
    return Entity(id=_value(props, 'id'),
                  user_id=_value(props, 'user_id', ''),
                  type=EntityType(_value(props, 'type', EntityType.TOPIC.value)),
                  name=_value(props, 'name', ''),
                  description=_value(props, 'description') or None,
                  attributes=json.loads(attributes) if attributes else {},
                  relations=relations,
                  created_at=from_iso(_value(props, 'created_at')) or utc_now(),
                  updated_at=from_iso(_value(props, 'updated_at')) or utc_now())


def name_matches(entity: Entity, query: str) -> bool:
    """Case-insensitive match of a query against an entity's name and description, in either direction."""
    needle = query.strip().lower()
    if not needle:
        return False
    name = entity.name.lower()
    description = (entity.description or '').lower()
    return needle in name or bool(name and name in needle) or needle in description


class NeptuneClient:
    """Amazon Neptune client using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig, g=None):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
            g: Optional pre-built graph traversal source
        """
        self.config = config
        self.connection = None
        self.g = g
        if g is None:
            self._connect()

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        # Build WebSocket connection string
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        # Get AWS credentials
        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = self.config.region or Session().region_name or 'us-east-1'

        # Create signed request for WebSocket connection
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=request.headers.items(),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()
            self.connection = None

    def _entity_rows(self, vertices):
        """Project vertices into property maps plus outgoing relation summaries."""
        return vertices.project('props', 'relations')\
            .by(__.value_map())\
            .by(__.out_e(RELATION_LABEL).project('relation', 'target_name', 'target_type')
                .by('relation')
                .by(__.in_v().values('name'))
                .by(__.in_v().values('type'))
                .fold())

    def _upsert_vertex(self, user_id: str, entity_type: str, name: str, description: Optional[str],
                       attributes: Optional[Dict[str, Any]]) -> str:
        now = to_iso(utc_now())
        new_id = uuid.uuid4().hex

        create = __.add_v(ENTITY_LABEL)\
            .property('id', new_id)\
            .property('user_id', user_id)\
            .property('type', entity_type)\
            .property('name', name)\
            .property('created_at', now)\
            .property('attributes', '{}')

        vertex = self.g.V().has_label(ENTITY_LABEL)\
            .has('user_id', user_id)\
            .has('type', entity_type)\
            .has('name', name)\
            .fold()\
            .coalesce(__.unfold(), create)\
            .property(Cardinality.single, 'updated_at', now)

        if description:
            vertex = vertex.property(Cardinality.single, 'description', description)

        entity_id = vertex.values('id').next()

        if attributes:
            stored = self.g.V().has(ENTITY_LABEL, 'id', entity_id).values('attributes').to_list()
            merged = json.loads(stored[0]) if stored and stored[0] else {}
            merged.update(attributes)
            self.g.V().has(ENTITY_LABEL, 'id', entity_id)\
                .property(Cardinality.single, 'attributes', json.dumps(merged, ensure_ascii=False))\
                .iterate()

        return entity_id

    @retry_on_connection_error
    def upsert_entity(self, entity: Entity) -> Entity:
        """
        Create or update an entity keyed on (user_id, type, name).

        The description is replaced when given, attributes are merged, and each relation is
        added as a ``RELATES_TO`` edge unless an identical one already exists. Relation targets
        that do not exist yet are created with the relation's target type, or the entity's own type.

        Args:
            entity: Entity to store

        Returns:
            The stored entity with its id
        """
        entity_id = self._upsert_vertex(entity.user_id, entity.type.value, entity.name, entity.description,
                                        entity.attributes)

        for relation in entity.relations:
            target_type = (relation.target_type or entity.type).value
            existing = self.g.V().has_label(ENTITY_LABEL)\
                .has('user_id', entity.user_id)\
                .has('name', relation.target_name)\
                .values('id').limit(1).to_list()
            target_id = existing[0] if existing else self._upsert_vertex(entity.user_id, target_type,
                                                                          relation.target_name, None, None)

            self.g.V().has(ENTITY_LABEL, 'id', entity_id).as_('source')\
                .V().has(ENTITY_LABEL, 'id', target_id)\
                .coalesce(__.in_e(RELATION_LABEL).where(__.out_v().as_('source')).has('relation', relation.relation),
                          __.add_e(RELATION_LABEL).from_('source').property('relation', relation.relation))\
                .iterate()

        rows = self._entity_rows(self.g.V().has(ENTITY_LABEL, 'id', entity_id)).to_list()
        logger.debug(f'Upserted entity {entity.type.value}:{entity.name} for user {entity.user_id}')
        return entity_from_row(rows[0]) if rows else entity

    @retry_on_connection_error
    def get_entities(self, user_id: str, types: Optional[Sequence[EntityType]] = None, limit: int = 50) -> List[Entity]:
        """
        List a user's entities, most recently updated first.

        Args:
            user_id: Owner
            types: Optional entity types to keep
            limit: Maximum results

        Returns:
            List of Entity objects
        """
        vertices = self.g.V().has_label(ENTITY_LABEL).has('user_id', user_id)
        if types:
            vertices = vertices.has('type', P.within(*[EntityType(t).value for t in types]))
        vertices = vertices.order().by('updated_at', Order.desc).limit(limit)

        return [entity_from_row(row) for row in self._entity_rows(vertices).to_list()]

    def search_entities(self, user_id: str, query: str, limit: int = 5) -> List[Entity]:
        """
        Find a user's entities whose name or description matches the query text.

        Gremlin text predicates are case-sensitive, so matching happens client-side over
        the user's most recently updated entities.

        Args:
            user_id: Owner
            query: Free text, typically the current message
            limit: Maximum results

        Returns:
            Matching entities with a fixed similarity of 0.5
        """
        matches = []
        for entity in self.get_entities(user_id, limit=SEARCH_SCAN_LIMIT):
            if name_matches(entity, query):
                entity.similarity = NAME_MATCH_SIMILARITY
                matches.append(entity)
                if len(matches) >= limit:
                    break

        logger.debug(f'Entity search matched {len(matches)} entities for user {user_id}')
        return matches

    @retry_on_connection_error
    def count_entities(self, user_id: str) -> int:
        """Number of entities owned by a user."""
        return int(self.g.V().has_label(ENTITY_LABEL).has('user_id', user_id).count().next())

    @retry_on_connection_error
    def delete_entity(self, entity_id: str, user_id: str) -> bool:
        """
        Delete an entity vertex and its relation edges.

        Args:
            entity_id: Entity ID to delete
            user_id: User ID for security check

        Returns:
            True once the drop has been issued
        """
        self.g.V().has(ENTITY_LABEL, 'id', entity_id).has('user_id', user_id).drop().iterate()
        logger.debug(f'Deleted entity: {entity_id}')
        return True

    @retry_on_connection_error
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy, False otherwise
        """
        # Simple query to test connectivity
        self.g.V().limit(1).count().next()
        return True

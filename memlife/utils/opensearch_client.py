"""
OpenSearch client wrapper: memory store with vector similarity search, plus the
message, preference and lock indices.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import ConflictError, NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import Memory, MemoryType, Message, UserPreferences
from .config import OpenSearchConfig
from .logging_config import get_logger
from .timestamp_utils import from_iso, to_iso, utc_now

logger = get_logger(__name__)

KEYWORD_MATCH_SIMILARITY = 0.5


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


class StaleMemoryError(OpenSearchError):
    """Raised when an optimistic-concurrency update loses to a concurrent write."""
    pass


def memory_to_document(memory: Memory) -> Dict[str, Any]:
    """Serialize a Memory into an OpenSearch document."""
    document = {
        'id': memory.id,
        'user_id': memory.user_id,
        'type': memory.type.value,
        'category': memory.category,
        'content': memory.content,
        'importance': memory.importance,
        'access_count': memory.access_count,
        'last_accessed_at': to_iso(memory.last_accessed_at),
        'metadata': memory.metadata or {},
        'expires_at': to_iso(memory.expires_at),
        'created_at': to_iso(memory.created_at),
        'updated_at': to_iso(memory.updated_at)
    }
    # knn_vector fields reject empty arrays; memories without a vector simply omit it
    if memory.embedding:
        document['embedding'] = memory.embedding
    return document


def memory_from_hit(hit: Dict[str, Any], similarity: Optional[float] = None) -> Memory:
    """Build a Memory from a search hit or get response."""
    doc = hit['_source']
    return Memory(id=doc.get('id') or hit['_id'],
                  user_id=doc.get('user_id', ''),
                  type=MemoryType(doc.get('type', MemoryType.FACT.value)),
                  category=doc.get('category'),
                  content=doc.get('content', ''),
                  importance=float(doc.get('importance', 0.5)),
                  access_count=int(doc.get('access_count') or 0),
                  last_accessed_at=from_iso(doc.get('last_accessed_at')),
                  embedding=doc.get('embedding') or [],
                  metadata=doc.get('metadata') or {},
                  expires_at=from_iso(doc.get('expires_at')),
                  created_at=from_iso(doc.get('created_at')) or utc_now(),
                  updated_at=from_iso(doc.get('updated_at')) or utc_now(),
                  similarity=similarity,
                  seq_no=hit.get('_seq_no'),
                  primary_term=hit.get('_primary_term'))


def build_memory_filters(user_id: Optional[str] = None,
                         types: Optional[Sequence[MemoryType]] = None,
                         categories: Optional[Sequence[str]] = None,
                         min_importance: Optional[float] = None,
                         importance_gt: Optional[float] = None,
                         importance_lt: Optional[float] = None,
                         created_after: Optional[datetime] = None,
                         created_before: Optional[datetime] = None,
                         max_access_count: Optional[int] = None,
                         expires_before: Optional[datetime] = None,
                         not_expired_at: Optional[datetime] = None,
                         metadata_flag: Optional[str] = None,
                         exclude_metadata_flag: Optional[str] = None,
                         missing_embedding: bool = False) -> Tuple[List[Dict], List[Dict]]:
    """Translate memory filter arguments into bool query (filter, must_not) clauses.

    Returns:
        Tuple of (filter clauses, must_not clauses)
    """
    filters: List[Dict[str, Any]] = []
    must_not: List[Dict[str, Any]] = []

    if user_id:
        filters.append({'term': {'user_id': user_id}})
    if types:
        filters.append({'terms': {'type': [MemoryType(t).value for t in types]}})
    if categories:
        filters.append({'terms': {'category': list(categories)}})

    importance_range: Dict[str, float] = {}
    if min_importance is not None:
        importance_range['gte'] = min_importance
    if importance_gt is not None:
        importance_range['gt'] = importance_gt
    if importance_lt is not None:
        importance_range['lt'] = importance_lt
    if importance_range:
        filters.append({'range': {'importance': importance_range}})

    created_range: Dict[str, str] = {}
    if created_after is not None:
        created_range['gte'] = to_iso(created_after)
    if created_before is not None:
        created_range['lt'] = to_iso(created_before)
    if created_range:
        filters.append({'range': {'created_at': created_range}})

    if max_access_count is not None:
        filters.append({'range': {'access_count': {'lt': max_access_count}}})
    if expires_before is not None:
        filters.append({'range': {'expires_at': {'lt': to_iso(expires_before)}}})
    if not_expired_at is not None:
        # Either no expiry or expiry in the future
        must_not.append({'range': {'expires_at': {'lte': to_iso(not_expired_at)}}})
    if metadata_flag:
        filters.append({'term': {f'metadata.{metadata_flag}': True}})
    if exclude_metadata_flag:
        must_not.append({'exists': {'field': f'metadata.{exclude_metadata_flag}'}})
    if missing_embedding:
        must_not.append({'exists': {'field': 'embedding'}})

    return filters, must_not


def _escape_wildcard(text: str) -> str:
    return text.replace('\\', '\\\\').replace('*', '\\*').replace('?', '\\?')


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Optional pre-built OpenSearch client
        """
        self.config = config

        if client is not None:
            self.client = client
        else:
            # Get AWS credentials and create auth
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)
            # Parse endpoint to get host and port
            endpoint = config.endpoint
            if '://' in endpoint:
                # Remove protocol if present
                endpoint = endpoint.split('://', 1)[1]

            # Create OpenSearch client
            self.client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                     http_auth=auth,
                                     use_ssl=True,
                                     verify_certs=True,
                                     connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_for(self, index_type: str) -> str:
        """Index name for 'memory', 'message', 'preference' or 'lock'."""
        return f'{self.config.index_name}_{index_type}'

    # ==================== Index management ====================

    def _index_body(self, index_type: str) -> Dict[str, Any]:
        if index_type == 'memory':
            return {
                'mappings': {
                    'properties': {
                        'id': {
                            'type': 'keyword'
                        },
                        'user_id': {
                            'type': 'keyword'
                        },
                        'type': {
                            'type': 'keyword'
                        },
                        'category': {
                            'type': 'keyword'
                        },
                        'content': {
                            'type': 'text',
                            'fields': {
                                'raw': {
                                    'type': 'keyword',
                                    'ignore_above': 8191
                                }
                            }
                        },
                        'importance': {
                            'type': 'float'
                        },
                        'access_count': {
                            'type': 'integer'
                        },
                        'last_accessed_at': {
                            'type': 'date'
                        },
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.config.dimension,
                            'method': {
                                'name': 'hnsw',
                                'space_type': 'cosinesimil',
                                'engine': 'nmslib'
                            }
                        },
                        'metadata': {
                            'type': 'object',
                            'dynamic': False,
                            'properties': {
                                'dedupe_key': {
                                    'type': 'keyword'
                                },
                                'rule_key': {
                                    'type': 'keyword'
                                },
                                'conversation_id': {
                                    'type': 'keyword'
                                },
                                'archived': {
                                    'type': 'boolean'
                                },
                                'pending_conflict': {
                                    'type': 'boolean'
                                },
                                'merged': {
                                    'type': 'boolean'
                                },
                                'summarized': {
                                    'type': 'boolean'
                                }
                            }
                        },
                        'expires_at': {
                            'type': 'date'
                        },
                        'created_at': {
                            'type': 'date'
                        },
                        'updated_at': {
                            'type': 'date'
                        }
                    }
                },
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }
        if index_type == 'message':
            return {
                'mappings': {
                    'properties': {
                        'id': {
                            'type': 'keyword'
                        },
                        'user_id': {
                            'type': 'keyword'
                        },
                        'conversation_id': {
                            'type': 'keyword'
                        },
                        'role': {
                            'type': 'keyword'
                        },
                        'content': {
                            'type': 'text'
                        },
                        'created_at': {
                            'type': 'date'
                        }
                    }
                }
            }
        if index_type == 'preference':
            return {'mappings': {'dynamic': False, 'properties': {'user_id': {'type': 'keyword'}}}}
        return {
            'mappings': {
                'properties': {
                    'token': {
                        'type': 'keyword'
                    },
                    'expires_at': {
                        'type': 'date'
                    }
                }
            }
        }

    def create_index_if_not_exists(self, index_type: str = 'memory') -> str:
        """
        Create index if it doesn't exist.

        Args:
            index_type: Type of index (memory, message, preference or lock)

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_for(index_type)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=self._index_body(index_type))
            logger.info(f'Created index {index_name}')
            return 'created' if response.get('acknowledged', False) else 'failed'

        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def create_indices(self) -> Dict[str, str]:
        """Create all indices used by the engine."""
        return {index_type: self.create_index_if_not_exists(index_type) for index_type in ('memory', 'message', 'preference', 'lock')}

    # ==================== Memory CRUD ====================

    def create_memory(self, memory: Memory) -> Memory:
        """
        Persist a new memory.

        Args:
            memory: Memory to store; an id is assigned if missing

        Returns:
            The stored memory
        """
        memory.id = memory.id or uuid.uuid4().hex

        try:
            response = self.client.index(index=self.index_for('memory'), id=memory.id, body=memory_to_document(memory))
            memory.seq_no = response.get('_seq_no')
            memory.primary_term = response.get('_primary_term')
            logger.debug(f'Created memory {memory.id} for user {memory.user_id}')
            return memory

        except OpenSearchException as e:
            logger.error(f'Error creating memory: {e}')
            raise OpenSearchError(f'Failed to create memory: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating memory: {e}')
            raise OpenSearchError(f'Unexpected error creating memory: {e}')

    def get_memory(self, memory_id: str) -> Optional[Memory]:
        """
        Get a memory by id.

        Args:
            memory_id: Memory id

        Returns:
            Memory if found, None otherwise
        """
        try:
            response = self.client.get(index=self.index_for('memory'), id=memory_id)
            if not response.get('found', True):
                return None
            return memory_from_hit(response)

        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting memory {memory_id}: {e}')
            raise OpenSearchError(f'Failed to get memory: {e}')
        except Exception as e:
            logger.error(f'Unexpected error getting memory {memory_id}: {e}')
            raise OpenSearchError(f'Unexpected error getting memory: {e}')

    def update_memory(self,
                      memory_id: str,
                      changes: Dict[str, Any],
                      if_seq_no: Optional[int] = None,
                      if_primary_term: Optional[int] = None) -> Optional[Memory]:
        """
        Partially update a memory. Nested metadata keys are merged into the stored metadata.

        Args:
            memory_id: Memory id
            changes: Field changes using Memory attribute names
            if_seq_no: Optional expected sequence number for optimistic concurrency
            if_primary_term: Optional expected primary term for optimistic concurrency

        Returns:
            Updated memory, or None if it does not exist

        Raises:
            StaleMemoryError: If the expected version no longer matches
        """
        doc = dict(changes)
        for field_name in ('last_accessed_at', 'expires_at', 'created_at', 'updated_at'):
            if isinstance(doc.get(field_name), datetime):
                doc[field_name] = to_iso(doc[field_name])
        if 'type' in doc and isinstance(doc['type'], MemoryType):
            doc['type'] = doc['type'].value
        if 'embedding' in doc and not doc['embedding']:
            del doc['embedding']
        doc.setdefault('updated_at', to_iso(utc_now()))

        params: Dict[str, Any] = {}
        if if_seq_no is not None and if_primary_term is not None:
            params = {'if_seq_no': if_seq_no, 'if_primary_term': if_primary_term}

        try:
            self.client.update(index=self.index_for('memory'), id=memory_id, body={'doc': doc}, **params)
            logger.debug(f'Updated memory {memory_id}')
            return self.get_memory(memory_id)

        except ConflictError as e:
            raise StaleMemoryError(f'Memory {memory_id} changed concurrently: {e}')
        except NotFoundError:
            logger.warning(f'Memory {memory_id} not found for update')
            return None
        except OpenSearchException as e:
            logger.error(f'Error updating memory {memory_id}: {e}')
            raise OpenSearchError(f'Failed to update memory: {e}')
        except Exception as e:
            logger.error(f'Unexpected error updating memory {memory_id}: {e}')
            raise OpenSearchError(f'Unexpected error updating memory: {e}')

    def delete_memory(self, memory_id: str) -> bool:
        """
        Delete a memory.

        Args:
            memory_id: Memory id

        Returns:
            True if deletion was successful, False if not found
        """
        try:
            response = self.client.delete(index=self.index_for('memory'), id=memory_id)

            success = response.get('result') == 'deleted'
            if success:
                logger.debug(f'Deleted memory {memory_id}')
            return success

        except NotFoundError:
            logger.warning(f'Memory {memory_id} not found for deletion')
            return False
        except OpenSearchException as e:
            logger.error(f'Error deleting memory {memory_id}: {e}')
            raise OpenSearchError(f'Failed to delete memory: {e}')
        except Exception as e:
            logger.error(f'Unexpected error deleting memory {memory_id}: {e}')
            raise OpenSearchError(f'Unexpected error deleting memory: {e}')

    def delete_memories(self, memory_ids: Sequence[str]) -> int:
        """Delete several memories by id. Returns the number deleted."""
        if not memory_ids:
            return 0
        return self._delete_by_query({'bool': {'filter': [{'terms': {'id': list(memory_ids)}}]}})

    # ==================== Memory queries ====================

    def _search(self, index_type: str, body: Dict[str, Any], operation: str) -> Dict[str, Any]:
        try:
            return self.client.search(index=self.index_for(index_type), body=body)
        except OpenSearchException as e:
            logger.error(f'Error performing {operation}: {e}')
            raise OpenSearchError(f'{operation} failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in {operation}: {e}')
            raise OpenSearchError(f'Unexpected error in {operation}: {e}')

    def _delete_by_query(self, query: Dict[str, Any]) -> int:
        try:
            response = self.client.delete_by_query(index=self.index_for('memory'), body={'query': query}, conflicts='proceed')
            return int(response.get('deleted', 0))
        except OpenSearchException as e:
            logger.error(f'Error deleting memories by query: {e}')
            raise OpenSearchError(f'Delete by query failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error deleting memories by query: {e}')
            raise OpenSearchError(f'Unexpected error in delete by query: {e}')

    def vector_search(self,
                      query_vector: List[float],
                      user_id: str,
                      top_k: int = 10,
                      types: Optional[Sequence[MemoryType]] = None,
                      categories: Optional[Sequence[str]] = None,
                      min_similarity: float = 0.0,
                      not_expired_at: Optional[datetime] = None) -> List[Memory]:
        """
        Perform vector similarity search over a user's memories.

        Args:
            query_vector: Query vector for similarity search
            user_id: User ID to filter results
            top_k: Number of results to return
            types: Optional memory types to keep
            categories: Optional categories to keep
            min_similarity: Cosine similarity floor
            not_expired_at: Exclude memories expired at this time

        Returns:
            Memories ordered by similarity, with ``similarity`` set
        """
        filters, must_not = build_memory_filters(user_id=user_id, types=types, categories=categories, not_expired_at=not_expired_at)
        search_body = {
            'size': top_k,
            'seq_no_primary_term': True,
            'query': {
                'bool': {
                    'must': [{
                        'knn': {
                            'embedding': {
                                'vector': query_vector,
                                # Filters apply after the kNN step, so over-fetch
                                'k': top_k * 4
                            }
                        }
                    }],
                    'filter': filters,
                    'must_not': must_not
                }
            },
            '_source': {
                'excludes': ['embedding']  # Don't return embedding in results
            }
        }

        response = self._search('memory', search_body, 'vector search')

        results = []
        for hit in response['hits']['hits']:
            # cosinesimil scores are (1 + cos) / 2
            similarity = 2 * float(hit['_score']) - 1
            if similarity >= min_similarity:
                results.append(memory_from_hit(hit, similarity=similarity))

        logger.debug(f'Vector search returned {len(results)} results for user {user_id}')
        return results[:top_k]

    def keyword_search(self,
                       query_text: str,
                       user_id: str,
                       top_k: int = 10,
                       types: Optional[Sequence[MemoryType]] = None,
                       categories: Optional[Sequence[str]] = None,
                       not_expired_at: Optional[datetime] = None) -> List[Memory]:
        """Case-insensitive substring search on content, ordered by importance.

        Used when no query vector is available. Every result gets a fixed similarity of 0.5.

        Args:
            query_text: Text that must appear in the content
            user_id: User ID to filter results
            top_k: Number of results to return
            types: Optional memory types to keep
            categories: Optional categories to keep
            not_expired_at: Exclude memories expired at this time

        Returns:
            Matching memories
        """
        filters, must_not = build_memory_filters(user_id=user_id, types=types, categories=categories, not_expired_at=not_expired_at)
        search_body = {
            'size': top_k,
            'seq_no_primary_term': True,
            'query': {
                'bool': {
                    'must': [{
                        'wildcard': {
                            'content.raw': {
                                'value': f'*{_escape_wildcard(query_text)}*',
                                'case_insensitive': True
                            }
                        }
                    }],
                    'filter': filters,
                    'must_not': must_not
                }
            },
            'sort': [{
                'importance': 'desc'
            }],
            '_source': {
                'excludes': ['embedding']
            }
        }

        response = self._search('memory', search_body, 'keyword search')
        results = [memory_from_hit(hit, similarity=KEYWORD_MATCH_SIMILARITY) for hit in response['hits']['hits']]

        logger.debug(f'Keyword search returned {len(results)} results for user {user_id}')
        return results

    def find_memory_by_metadata(self, user_id: str, memory_type: MemoryType, key: str, value: str) -> Optional[Memory]:
        """Find a user's memory of a type whose ``metadata.<key>`` equals value."""
        filters, _ = build_memory_filters(user_id=user_id, types=[memory_type])
        filters.append({'term': {f'metadata.{key}': value}})
        search_body = {'size': 1, 'seq_no_primary_term': True, 'query': {'bool': {'filter': filters}}}

        response = self._search('memory', search_body, 'metadata lookup')
        hits = response['hits']['hits']
        return memory_from_hit(hits[0]) if hits else None

    def find_exact_memory(self, user_id: str, memory_type: MemoryType, content: str) -> Optional[Memory]:
        """Find a user's memory of a type with identical content."""
        filters, _ = build_memory_filters(user_id=user_id, types=[memory_type])
        filters.append({'term': {'content.raw': content}})
        search_body = {'size': 1, 'seq_no_primary_term': True, 'query': {'bool': {'filter': filters}}}

        response = self._search('memory', search_body, 'exact match lookup')
        hits = response['hits']['hits']
        return memory_from_hit(hits[0]) if hits else None

    def query_memories(self,
                       limit: int = 10,
                       offset: int = 0,
                       sort: Optional[List[Tuple[str, str]]] = None,
                       include_embedding: bool = False,
                       **filters) -> List[Memory]:
        """
        Attribute-filtered memory query.

        Args:
            limit: Maximum results
            offset: Results to skip
            sort: List of (field, 'asc'|'desc'); defaults to importance desc, created_at desc
            include_embedding: Whether to return stored vectors
            **filters: Arguments accepted by ``build_memory_filters``

        Returns:
            Matching memories
        """
        filter_clauses, must_not = build_memory_filters(**filters)
        sort = sort or [('importance', 'desc'), ('created_at', 'desc')]
        search_body = {
            'from': offset,
            'size': limit,
            'seq_no_primary_term': True,
            'query': {
                'bool': {
                    'filter': filter_clauses,
                    'must_not': must_not
                }
            },
            'sort': [{
                field_name: order
            } for field_name, order in sort]
        }
        if not include_embedding:
            search_body['_source'] = {'excludes': ['embedding']}

        response = self._search('memory', search_body, 'memory query')
        return [memory_from_hit(hit) for hit in response['hits']['hits']]

    def scan_memories(self,
                      batch_size: int = 100,
                      max_items: int = 100000,
                      include_embedding: bool = False,
                      **filters) -> Iterator[List[Memory]]:
        """
        Page through memories in creation order with search_after.

        Args:
            batch_size: Page size
            max_items: Hard cap on items yielded
            include_embedding: Whether to return stored vectors
            **filters: Arguments accepted by ``build_memory_filters``

        Yields:
            Pages of memories
        """
        filter_clauses, must_not = build_memory_filters(**filters)
        search_after = None
        seen = 0

        while seen < max_items:
            search_body = {
                'size': min(batch_size, max_items - seen),
                'seq_no_primary_term': True,
                'query': {
                    'bool': {
                        'filter': filter_clauses,
                        'must_not': must_not
                    }
                },
                'sort': [{
                    'created_at': 'asc'
                }, {
                    'id': 'asc'
                }]
            }
            if not include_embedding:
                search_body['_source'] = {'excludes': ['embedding']}
            if search_after is not None:
                search_body['search_after'] = search_after

            hits = self._search('memory', search_body, 'memory scan')['hits']['hits']
            if not hits:
                return

            seen += len(hits)
            search_after = hits[-1]['sort']
            yield [memory_from_hit(hit) for hit in hits]

            if len(hits) < batch_size:
                return

    def count_memories(self, **filters) -> int:
        """Count memories matching filters."""
        filter_clauses, must_not = build_memory_filters(**filters)
        try:
            response = self.client.count(index=self.index_for('memory'),
                                         body={'query': {
                                             'bool': {
                                                 'filter': filter_clauses,
                                                 'must_not': must_not
                                             }
                                         }})
            return int(response.get('count', 0))
        except OpenSearchException as e:
            logger.error(f'Error counting memories: {e}')
            raise OpenSearchError(f'Memory count failed: {e}')

    def memory_type_counts(self, user_id: str) -> Dict[str, int]:
        """Number of memories per type for a user."""
        search_body = {
            'size': 0,
            'query': {
                'term': {
                    'user_id': user_id
                }
            },
            'aggs': {
                'by_type': {
                    'terms': {
                        'field': 'type',
                        'size': len(MemoryType)
                    }
                }
            }
        }
        response = self._search('memory', search_body, 'type aggregation')
        return {bucket['key']: bucket['doc_count'] for bucket in response['aggregations']['by_type']['buckets']}

    def average_importance(self, **filters) -> float:
        """Average importance of memories matching filters (0.0 when none)."""
        filter_clauses, must_not = build_memory_filters(**filters)
        search_body = {
            'size': 0,
            'query': {
                'bool': {
                    'filter': filter_clauses,
                    'must_not': must_not
                }
            },
            'aggs': {
                'avg_importance': {
                    'avg': {
                        'field': 'importance'
                    }
                }
            }
        }
        response = self._search('memory', search_body, 'importance aggregation')
        return float(response['aggregations']['avg_importance'].get('value') or 0.0)

    def users_over_count(self, max_count: int, limit: int = 100) -> List[str]:
        """User ids owning more than ``max_count`` memories, largest first."""
        search_body = {
            'size': 0,
            'aggs': {
                'by_user': {
                    'terms': {
                        'field': 'user_id',
                        'size': limit,
                        'min_doc_count': max_count + 1,
                        'order': {
                            '_count': 'desc'
                        }
                    }
                }
            }
        }
        response = self._search('memory', search_body, 'user aggregation')
        return [bucket['key'] for bucket in response['aggregations']['by_user']['buckets']]

    def archive_memories(self, importance_lt: float, created_before: datetime, archived_at: datetime) -> int:
        """
        Flag low-importance old memories as archived. Already archived memories are left untouched.

        Returns:
            Number of memories archived
        """
        filters, must_not = build_memory_filters(importance_lt=importance_lt,
                                                 created_before=created_before,
                                                 exclude_metadata_flag='archived')
        body = {
            'query': {
                'bool': {
                    'filter': filters,
                    'must_not': must_not
                }
            },
            'script': {
                'lang': 'painless',
                'source': ('if (ctx._source.metadata == null) { ctx._source.metadata = [:]; } '
                           'ctx._source.metadata.archived = true; '
                           'ctx._source.metadata.archived_at = params.now; '
                           'ctx._source.updated_at = params.now;'),
                'params': {
                    'now': to_iso(archived_at)
                }
            }
        }
        try:
            response = self.client.update_by_query(index=self.index_for('memory'), body=body, conflicts='proceed')
            return int(response.get('updated', 0))
        except OpenSearchException as e:
            logger.error(f'Error archiving memories: {e}')
            raise OpenSearchError(f'Archive failed: {e}')

    def delete_memories_where(self, **filters) -> int:
        """Delete every memory matching filters. Returns the number deleted."""
        filter_clauses, must_not = build_memory_filters(**filters)
        if not filter_clauses:
            raise OpenSearchError('Refusing to delete memories without a filter')
        return self._delete_by_query({'bool': {'filter': filter_clauses, 'must_not': must_not}})

    # ==================== Messages ====================

    def add_message(self, message: Message) -> Message:
        """Persist a chat message."""
        document = {
            'id': message.id,
            'user_id': message.user_id,
            'conversation_id': message.conversation_id,
            'role': message.role,
            'content': message.content,
            'created_at': to_iso(message.created_at)
        }
        try:
            self.client.index(index=self.index_for('message'), id=message.id, body=document)
            return message
        except OpenSearchException as e:
            logger.error(f'Error adding message: {e}')
            raise OpenSearchError(f'Failed to add message: {e}')

    def get_messages(self, conversation_id: str, limit: int = 50) -> List[Message]:
        """Most recent messages of a conversation, oldest first."""
        search_body = {'size': limit, 'query': {'term': {'conversation_id': conversation_id}}, 'sort': [{'created_at': 'desc'}]}
        hits = self._search('message', search_body, 'message query')['hits']['hits']
        messages = [
            Message(id=hit['_source'].get('id') or hit['_id'],
                    user_id=hit['_source'].get('user_id', ''),
                    conversation_id=hit['_source'].get('conversation_id', conversation_id),
                    role=hit['_source'].get('role', 'user'),
                    content=hit['_source'].get('content', ''),
                    created_at=from_iso(hit['_source'].get('created_at')) or utc_now()) for hit in hits
        ]
        messages.reverse()
        return messages

    def message_stats(self, user_id: str, since: datetime) -> Dict[str, int]:
        """Message and conversation counts for a user, overall and since a time."""
        search_body = {
            'size': 0,
            'query': {
                'term': {
                    'user_id': user_id
                }
            },
            'aggs': {
                'conversations': {
                    'cardinality': {
                        'field': 'conversation_id'
                    }
                },
                'recent': {
                    'filter': {
                        'range': {
                            'created_at': {
                                'gte': to_iso(since)
                            }
                        }
                    },
                    'aggs': {
                        'conversations': {
                            'cardinality': {
                                'field': 'conversation_id'
                            }
                        }
                    }
                }
            }
        }
        response = self._search('message', search_body, 'message aggregation')
        total = response['hits']['total']
        aggs = response['aggregations']
        return {
            'total_messages': int(total['value'] if isinstance(total, dict) else total),
            'total_conversations': int(aggs['conversations']['value']),
            'messages_last_7_days': int(aggs['recent']['doc_count']),
            'conversations_last_7_days': int(aggs['recent']['conversations']['value'])
        }

    # ==================== Preferences ====================

    def get_preferences(self, user_id: str) -> UserPreferences:
        """User preferences, or defaults when none are stored."""
        try:
            response = self.client.get(index=self.index_for('preference'), id=user_id)
        except NotFoundError:
            return UserPreferences()
        except OpenSearchException as e:
            logger.error(f'Error getting preferences for user {user_id}: {e}')
            raise OpenSearchError(f'Failed to get preferences: {e}')

        source = dict(response.get('_source') or {})
        source.pop('user_id', None)
        known = UserPreferences.__dataclass_fields__
        return UserPreferences(**{k: v for k, v in source.items() if k in known})

    def save_preferences(self, user_id: str, preferences: UserPreferences) -> UserPreferences:
        """Store a user's full preferences document."""
        document = {'user_id': user_id, **preferences.__dict__}
        try:
            self.client.index(index=self.index_for('preference'), id=user_id, body=document)
            return preferences
        except OpenSearchException as e:
            logger.error(f'Error saving preferences for user {user_id}: {e}')
            raise OpenSearchError(f'Failed to save preferences: {e}')

    # ==================== Locks ====================

    def acquire_lock(self, key: str, token: str, ttl_seconds: int, now: datetime) -> bool:
        """
        Try to take a named lock document.

        A held lock whose expiry has passed is taken over with a sequence-number guarded write,
        so two instances racing for an expired lock cannot both win.

        Returns:
            True if this token now holds the lock
        """
        index = self.index_for('lock')
        expires_at = now.timestamp() + ttl_seconds
        document = {'token': token, 'expires_at': to_iso(from_iso(expires_at))}

        try:
            self.client.create(index=index, id=key, body=document)
            return True
        except ConflictError:
            pass
        except OpenSearchException as e:
            logger.error(f'Error acquiring lock {key}: {e}')
            raise OpenSearchError(f'Failed to acquire lock: {e}')

        try:
            current = self.client.get(index=index, id=key)
        except NotFoundError:
            # Released between our create and get; let the next run take it
            return False

        held_until = from_iso(current['_source'].get('expires_at'))
        if held_until is not None and held_until > now:
            return False

        try:
            self.client.index(index=index,
                              id=key,
                              body=document,
                              if_seq_no=current['_seq_no'],
                              if_primary_term=current['_primary_term'])
            logger.warning(f'Took over expired lock {key}')
            return True
        except ConflictError:
            return False

    def release_lock(self, key: str, token: str) -> bool:
        """Release a lock if it is still held by ``token``."""
        index = self.index_for('lock')
        try:
            current = self.client.get(index=index, id=key)
            if current['_source'].get('token') != token:
                return False
            self.client.delete(index=index,
                               id=key,
                               if_seq_no=current['_seq_no'],
                               if_primary_term=current['_primary_term'])
            return True
        except (NotFoundError, ConflictError):
            return False
        except OpenSearchException as e:
            logger.error(f'Error releasing lock {key}: {e}')
            raise OpenSearchError(f'Failed to release lock: {e}')

    # ==================== Maintenance ====================

    def cleanup(self) -> bool:
        """
        Delete all indices owned by the engine.

        Returns:
            True if cleanup was successful
        """
        try:
            for index_type in ('memory', 'message', 'preference', 'lock'):
                index_name = self.index_for(index_type)
                if self.client.indices.exists(index=index_name):
                    self.client.indices.delete(index=index_name)
                    logger.info(f'Deleted index: {index_name}')
                else:
                    logger.info(f'Index {index_name} does not exist')
            return True

        except OpenSearchException as e:
            logger.error(f'Error during OpenSearch cleanup: {e}')
            raise OpenSearchError(f'Failed to cleanup OpenSearch: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_for('memory'))

            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False

"""Shared fakes for unit tests: an in-memory memory store, entity store, embedder and clock."""

import copy
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from memlife.models.core import Entity, Memory, MemoryType, UserPreferences
from memlife.utils.neptune_client import name_matches
from memlife.utils.opensearch_client import KEYWORD_MATCH_SIMILARITY, StaleMemoryError
from memlife.utils.similarity import cosine_similarity

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeEmbedder:
    """Embeds only texts registered in ``vectors``; everything else is unavailable ([])."""

    def __init__(self, vectors=None):
        self.vectors = dict(vectors or {})
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        return list(self.vectors.get(text, []))


def _matches(memory: Memory,
             user_id=None,
             types=None,
             categories=None,
             min_importance=None,
             importance_gt=None,
             importance_lt=None,
             created_after=None,
             created_before=None,
             max_access_count=None,
             expires_before=None,
             not_expired_at=None,
             metadata_flag=None,
             exclude_metadata_flag=None,
             missing_embedding=False) -> bool:
    metadata = memory.metadata or {}
    checks = [
        user_id is None or memory.user_id == user_id,
        not types or memory.type in [MemoryType(t) for t in types],
        not categories or memory.category in categories,
        min_importance is None or memory.importance >= min_importance,
        importance_gt is None or memory.importance > importance_gt,
        importance_lt is None or memory.importance < importance_lt,
        created_after is None or memory.created_at >= created_after,
        created_before is None or memory.created_at < created_before,
        max_access_count is None or memory.access_count < max_access_count,
        expires_before is None or (memory.expires_at is not None and memory.expires_at < expires_before),
        not_expired_at is None or memory.expires_at is None or memory.expires_at > not_expired_at,
        not metadata_flag or metadata.get(metadata_flag) is True,
        not exclude_metadata_flag or exclude_metadata_flag not in metadata,
        not missing_embedding or not memory.embedding,
    ]
    return all(checks)


class FakeStore:
    """In-memory stand-in for OpenSearchClient with the same method surface used by the services."""

    def __init__(self, clock=None):
        self.clock = clock or FakeClock()
        self.memories = {}
        self.messages = []
        self.preferences = {}
        self.locks = {}
        self._seq = 0

    def _next_seq(self):
        self._seq += 1
        return self._seq

    def _copy(self, memory, similarity=None):
        result = copy.deepcopy(memory)
        result.similarity = similarity
        return result

    # Memory CRUD

    def create_memory(self, memory):
        memory.id = memory.id or uuid.uuid4().hex
        memory.seq_no = self._next_seq()
        memory.primary_term = 1
        self.memories[memory.id] = copy.deepcopy(memory)
        return memory

    def add(self, **fields):
        """Seed a memory directly."""
        fields.setdefault('id', uuid.uuid4().hex)
        fields.setdefault('user_id', 'u1')
        fields.setdefault('type', MemoryType.FACT)
        fields.setdefault('importance', 0.5)
        fields.setdefault('created_at', self.clock())
        fields.setdefault('updated_at', fields['created_at'])
        return self.create_memory(Memory(**fields))

    def get_memory(self, memory_id):
        memory = self.memories.get(memory_id)
        return self._copy(memory) if memory else None

    def update_memory(self, memory_id, changes, if_seq_no=None, if_primary_term=None):
        memory = self.memories.get(memory_id)
        if memory is None:
            return None
        if if_seq_no is not None and if_seq_no != memory.seq_no:
            raise StaleMemoryError(f'Memory {memory_id} changed concurrently')

        changes = dict(changes)
        metadata = changes.pop('metadata', None)
        if 'embedding' in changes and not changes['embedding']:
            del changes['embedding']
        updated = replace(memory, **changes)
        if metadata:
            updated.metadata = dict(memory.metadata or {}, **metadata)
        updated.updated_at = self.clock()
        updated.seq_no = self._next_seq()
        self.memories[memory_id] = updated
        return self._copy(updated)

    def delete_memory(self, memory_id):
        return self.memories.pop(memory_id, None) is not None

    def delete_memories(self, memory_ids):
        return sum(1 for memory_id in memory_ids if self.delete_memory(memory_id))

    # Search

    def vector_search(self, query_vector, user_id, top_k=10, types=None, categories=None, min_similarity=0.0,
                      not_expired_at=None):
        scored = []
        for memory in self.memories.values():
            if not memory.embedding or not _matches(memory, user_id=user_id, types=types, categories=categories,
                                                    not_expired_at=not_expired_at):
                continue
            similarity = cosine_similarity(query_vector, memory.embedding)
            if similarity >= min_similarity:
                scored.append((similarity, memory))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [self._copy(memory, similarity) for similarity, memory in scored[:top_k]]

    def keyword_search(self, query_text, user_id, top_k=10, types=None, categories=None, not_expired_at=None):
        needle = query_text.lower()
        hits = [
            m for m in self.memories.values() if needle in m.content.lower() and
            _matches(m, user_id=user_id, types=types, categories=categories, not_expired_at=not_expired_at)
        ]
        hits.sort(key=lambda m: m.importance, reverse=True)
        return [self._copy(memory, KEYWORD_MATCH_SIMILARITY) for memory in hits[:top_k]]

    def find_memory_by_metadata(self, user_id, memory_type, key, value):
        for memory in self.memories.values():
            if memory.user_id == user_id and memory.type == memory_type and (memory.metadata or {}).get(key) == value:
                return self._copy(memory)
        return None

    def find_exact_memory(self, user_id, memory_type, content):
        for memory in self.memories.values():
            if memory.user_id == user_id and memory.type == memory_type and memory.content == content:
                return self._copy(memory)
        return None

    def query_memories(self, limit=10, offset=0, sort=None, include_embedding=False, **filters):
        hits = [m for m in self.memories.values() if _matches(m, **filters)]
        for field_name, order in reversed(sort or [('importance', 'desc'), ('created_at', 'desc')]):
            hits.sort(key=lambda m: (getattr(m, field_name) is None, getattr(m, field_name) or ''),
                      reverse=order == 'desc')
        return [self._copy(memory) for memory in hits[offset:offset + limit]]

    def scan_memories(self, batch_size=100, max_items=100000, include_embedding=False, **filters):
        hits = sorted((m for m in self.memories.values() if _matches(m, **filters)), key=lambda m: (m.created_at, m.id))
        hits = hits[:max_items]
        for start in range(0, len(hits), batch_size):
            yield [self._copy(memory) for memory in hits[start:start + batch_size]]

    def count_memories(self, **filters):
        return sum(1 for m in self.memories.values() if _matches(m, **filters))

    def memory_type_counts(self, user_id):
        counts = {}
        for memory in self.memories.values():
            if memory.user_id == user_id:
                counts[memory.type.value] = counts.get(memory.type.value, 0) + 1
        return counts

    def average_importance(self, **filters):
        values = [m.importance for m in self.memories.values() if _matches(m, **filters)]
        return sum(values) / len(values) if values else 0.0

    def users_over_count(self, max_count, limit=100):
        counts = {}
        for memory in self.memories.values():
            counts[memory.user_id] = counts.get(memory.user_id, 0) + 1
        return [user_id for user_id, count in counts.items() if count > max_count][:limit]

    def archive_memories(self, importance_lt, created_before, archived_at):
        archived = 0
        for memory in self.memories.values():
            if _matches(memory, importance_lt=importance_lt, created_before=created_before, exclude_metadata_flag='archived'):
                memory.metadata = dict(memory.metadata or {}, archived=True, archived_at=archived_at.isoformat())
                memory.seq_no = self._next_seq()
                archived += 1
        return archived

    def delete_memories_where(self, **filters):
        doomed = [memory_id for memory_id, m in self.memories.items() if _matches(m, **filters)]
        return self.delete_memories(doomed)

    # Messages and preferences

    def add_message(self, message):
        self.messages.append(message)
        return message

    def get_messages(self, conversation_id, limit=50):
        return [m for m in self.messages if m.conversation_id == conversation_id][-limit:]

    def message_stats(self, user_id, since):
        mine = [m for m in self.messages if m.user_id == user_id]
        recent = [m for m in mine if m.created_at >= since]
        return {
            'total_messages': len(mine),
            'total_conversations': len({m.conversation_id for m in mine}),
            'messages_last_7_days': len(recent),
            'conversations_last_7_days': len({m.conversation_id for m in recent})
        }

    def get_preferences(self, user_id):
        return self.preferences.get(user_id) or UserPreferences()

    def save_preferences(self, user_id, preferences):
        self.preferences[user_id] = preferences
        return preferences

    # Locks

    def acquire_lock(self, key, token, ttl_seconds, now):
        held = self.locks.get(key)
        if held is not None and held[1] > now:
            return False
        self.locks[key] = (token, now + timedelta(seconds=ttl_seconds))
        return True

    def release_lock(self, key, token):
        held = self.locks.get(key)
        if held is None or held[0] != token:
            return False
        del self.locks[key]
        return True


class FakeEntityStore:
    """In-memory stand-in for NeptuneClient keyed on (user_id, type, name)."""

    def __init__(self):
        self.entities = {}

    def upsert_entity(self, entity):
        key = (entity.user_id, entity.type, entity.name)
        existing = self.entities.get(key)
        if existing is not None:
            entity = replace(existing,
                             description=entity.description or existing.description,
                             attributes=dict(existing.attributes, **entity.attributes),
                             relations=existing.relations + entity.relations)
        entity.id = entity.id or uuid.uuid4().hex
        self.entities[key] = entity
        return entity

    def get_entities(self, user_id, types=None, limit=50):
        found = [e for e in self.entities.values() if e.user_id == user_id and (not types or e.type in types)]
        return found[:limit]

    def search_entities(self, user_id, query, limit=5):
        return [e for e in self.entities.values() if e.user_id == user_id and name_matches(e, query)][:limit]

    def count_entities(self, user_id):
        return sum(1 for e in self.entities.values() if e.user_id == user_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return FakeStore(clock)


@pytest.fixture
def entity_store():
    return FakeEntityStore()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def make_entity():

    def _make(name, entity_type='SCHOOL', user_id='u1', description=None):
        return Entity(user_id=user_id, type=entity_type, name=name, description=description)

    return _make

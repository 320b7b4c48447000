"""Tests for memory_manager.py: remember/recall pipeline, conversations, context and stats."""

import uuid
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from memlife.models.core import (ConflictStrategy, ConversationSummary, EntityType, ExtractedEntity, ExtractedMemory,
                                 MemoryInput, MemoryTier, MemoryType, Message, RecallOptions, ScoreResult)
from memlife.services.locks import InMemoryLockProvider
from memlife.services.memory_conflict import ConflictResolver
from memlife.services.memory_decay import MemoryDecay
from memlife.services.memory_manager import MemoryManager, MemoryManagerError, input_from_extracted
from memlife.services.memory_scorer import MemoryScorer
from memlife.services.summarizer import Summarizer
from memlife.utils.config import ConflictConfig, DecayConfig, MemoryConfig
from memlife.utils.opensearch_client import OpenSearchError


def _build(store, clock, entity_store=None, embedder=None, **overrides):
    components = {
        'entity_store': entity_store,
        'embedder': embedder,
        'summarizer': Summarizer(),
        'scorer': MemoryScorer(clock=clock),
        'conflict': ConflictResolver(store, embedder=embedder, conflict_config=ConflictConfig(), clock=clock),
        'decay': MemoryDecay(store, lock_provider=InMemoryLockProvider(clock), decay_config=DecayConfig(), clock=clock),
        'memory_config': MemoryConfig(),
        'clock': clock
    }
    components.update(overrides)
    return MemoryManager(store, **components)


@pytest.fixture
def manager(store, entity_store, clock):
    manager = _build(store, clock, entity_store=entity_store)
    yield manager
    manager.close()


def _message(clock, content, conversation_id='c1', role='user', user_id='u1', minutes=0):
    return Message(id=uuid.uuid4().hex,
                   user_id=user_id,
                   conversation_id=conversation_id,
                   role=role,
                   content=content,
                   created_at=clock() + timedelta(minutes=minutes))


class TestRememberMessage:
    """Messages flow through extraction, conflict resolution and scoring into the store."""

    def test_gpa_is_stored_and_then_replaced(self, manager, store):
        first = manager.remember_message('u1', '我的 GPA 是 3.8/4.0', conversation_id='c1')

        assert [m.content for m in first] == ['GPA: 3.80']
        stored = store.get_memory(first[0].id)
        assert stored.category == 'academic'
        assert stored.metadata['rule_key'] == 'user:gpa'
        assert stored.metadata['dedupe_key'] == 'u1:gpa'
        assert stored.metadata['conversation_id'] == 'c1'
        assert stored.metadata['tier'] == 'LONG'
        assert stored.importance == pytest.approx((0.95 + 0.9) / 2)
        assert stored.expires_at is not None

        second = manager.remember_message('u1', '我的 GPA 是 3.9/4.0')

        assert len(store.memories) == 1
        assert second[0].id == first[0].id
        updated = store.get_memory(first[0].id)
        assert updated.content == 'GPA: 3.90'
        assert updated.metadata['previous_content'] == 'GPA: 3.80'

    def test_sat_keeps_the_highest(self, manager, store):
        manager.remember_message('u1', '我的 SAT 考了 1400')

        assert manager.remember_message('u1', '我的 SAT 考了 1350') == []
        assert [m.content for m in store.memories.values()] == ['SAT: 1400']

        manager.remember_message('u1', '我的 SAT 考了 1500')
        assert [m.content for m in store.memories.values()] == ['SAT: 1500']

    def test_users_are_isolated(self, manager, store):
        manager.remember_message('u1', '我的 SAT 考了 1400')
        manager.remember_message('u2', '我的 SAT 考了 1300')
        assert sorted(m.content for m in store.memories.values()) == ['SAT: 1300', 'SAT: 1400']

    def test_rule_entities_are_recorded(self, manager, entity_store):
        manager.remember_message('u1', '我想申请斯坦福大学')
        names = [e.name for e in entity_store.get_entities('u1')]
        assert '斯坦福大学' in names

    def test_input_from_extracted(self, clock):
        extracted = ExtractedMemory(type=MemoryType.FACT,
                                    content='SAT: 1400',
                                    importance=0.9,
                                    confidence=0.95,
                                    source='rule',
                                    category='test_score',
                                    rule_id='sat',
                                    dedupe_key='user:sat',
                                    conflict_strategy=ConflictStrategy.KEEP_HIGHEST,
                                    ttl_days=730)
        memory_input = input_from_extracted(extracted, 'c9', clock)
        assert memory_input.metadata == {
            'source': 'rule',
            'rule_id': 'sat',
            'rule_key': 'user:sat',
            'conflict_strategy': 'KEEP_HIGHEST',
            'conversation_id': 'c9'
        }
        assert memory_input.expires_at == clock() + timedelta(days=730)
        assert memory_input.confidence == 0.95


class TestRemember:

    def test_defaults_and_scoring(self, manager, store):
        memory = manager.remember('u1', MemoryInput(type=MemoryType.FACT, content='Likes Boston'))
        assert memory.importance == pytest.approx((0.8 + 0.5) / 2)
        assert memory.metadata['tier'] in {tier.value for tier in MemoryTier}
        assert 'dedupe_key' not in memory.metadata
        assert store.get_memory(memory.id) is not None

    def test_exact_duplicate_updates_in_place(self, manager, store):
        first = manager.remember('u1', MemoryInput(type=MemoryType.FACT, content='Likes Boston'))
        second = manager.remember('u1', MemoryInput(type=MemoryType.FACT, content='Likes Boston'))
        assert second.id == first.id
        assert len(store.memories) == 1

    def test_skip_conflict_check(self, manager, store):
        manager.remember('u1', MemoryInput(type=MemoryType.FACT, content='Likes Boston'))
        manager.remember('u1', MemoryInput(type=MemoryType.FACT, content='Likes Boston'), skip_conflict_check=True)
        assert len(store.memories) == 2

    def test_ask_user_stores_pending_copy(self, manager, store):
        original = manager.remember('u1', MemoryInput(type=MemoryType.FACT, content='Likes Boston'))
        pending = manager.remember('u1',
                                   MemoryInput(type=MemoryType.FACT, content='Likes Boston'),
                                   strategy_override=ConflictStrategy.ASK_USER)
        assert pending.id != original.id
        assert [m.id for m in manager.get_pending_conflicts('u1')] == [pending.id]
        assert pending.metadata['conflict_with'] == original.id

    def test_merge_updates_existing(self, manager, store):
        first = manager.remember(
            'u1', MemoryInput(type=MemoryType.PREFERENCE, category='school', content='Likes the MIT campus'))
        merged = manager.remember(
            'u1', MemoryInput(type=MemoryType.PREFERENCE, category='school', content='MIT has strong CS'))
        assert merged.id == first.id
        assert merged.content == 'Likes the MIT campus; MIT has strong CS'
        assert merged.metadata['merge_count'] == 1

    def test_low_score_is_dropped(self, store, clock):
        scorer = MagicMock()
        scorer.score.return_value = ScoreResult(total=0.05,
                                                importance=0.05,
                                                freshness=1.0,
                                                confidence=0.1,
                                                access_bonus=0.0,
                                                tier=MemoryTier.ARCHIVE,
                                                should_decay=False,
                                                should_archive=True)
        manager = _build(store, clock, scorer=scorer)
        try:
            assert manager.remember('u1', MemoryInput(type=MemoryType.FEEDBACK, content='meh')) is None
            assert store.memories == {}
        finally:
            manager.close()

    def test_embeds_content(self, store, clock, embedder):
        embedder.vectors['Likes Boston'] = [0.6, 0.8]
        manager = _build(store, clock, embedder=embedder)
        try:
            memory = manager.remember('u1', MemoryInput(type=MemoryType.FACT, content='Likes Boston'))
            assert store.get_memory(memory.id).embedding == [0.6, 0.8]
        finally:
            manager.close()

    def test_forget(self, manager, store):
        memory = manager.remember('u1', MemoryInput(type=MemoryType.FACT, content='Likes Boston'))
        assert manager.forget(memory.id)
        assert not manager.forget(memory.id)


class TestRecall:

    def test_keyword_fallback_without_embedder(self, manager, store):
        store.add(content='Likes Boston', importance=0.7)
        store.add(content='Plays violin')

        memories = manager.recall('u1', RecallOptions(query='boston'))

        assert [m.content for m in memories] == ['Likes Boston']
        assert memories[0].similarity == 0.5

    def test_vector_search(self, store, clock, embedder):
        embedder.vectors['where to study'] = [1.0, 0.0]
        store.add(content='Likes Boston', embedding=[0.9, 0.1])
        store.add(content='Plays violin', embedding=[0.0, 1.0])
        manager = _build(store, clock, embedder=embedder)
        try:
            memories = manager.recall('u1', RecallOptions(query='where to study', min_similarity=0.5))
        finally:
            manager.close()

        assert [m.content for m in memories] == ['Likes Boston']
        assert memories[0].similarity > 0.9

    def test_filters_without_query(self, manager, store):
        store.add(content='Likes Boston', type=MemoryType.PREFERENCE)
        store.add(content='GPA: 3.80', importance=0.9)

        memories = manager.recall('u1', RecallOptions(types=[MemoryType.FACT]))

        assert [m.content for m in memories] == ['GPA: 3.80']

    def test_expired_memories_are_hidden(self, manager, store, clock):
        store.add(content='Old deadline', expires_at=clock() - timedelta(days=1))
        store.add(content='New deadline', expires_at=clock() + timedelta(days=1))

        assert [m.content for m in manager.recall('u1', RecallOptions(query='deadline'))] == ['New deadline']

    def test_access_recorded_in_background(self, manager, store):
        memory = store.add(content='Likes Boston')

        manager.recall('u1', RecallOptions(query='boston'))
        manager.close()

        assert store.get_memory(memory.id).access_count == 1


class TestMessages:

    def test_user_message_extracted_in_background(self, manager, store):
        manager.add_message('u1', 'c1', 'user', '我的 SAT 考了 1400')
        manager.close()

        assert len(store.messages) == 1
        assert [m.content for m in store.memories.values()] == ['SAT: 1400']

    def test_assistant_message_not_extracted(self, manager, store):
        manager.add_message('u1', 'c1', 'assistant', '你的 SAT 考了 1400，很不错')
        manager.close()

        assert store.memories == {}

    def test_extraction_retries(self, manager):
        with patch.object(manager, 'remember_message', side_effect=[OpenSearchError('timeout'), []]) as remember, \
                patch('memlife.services.memory_manager.time.sleep') as sleep:
            assert manager._extract_with_retry('u1', 'hello') == []
        assert remember.call_count == 2
        sleep.assert_called_once_with(1.0)

    def test_extraction_gives_up(self, manager):
        with patch.object(manager, 'remember_message', side_effect=OpenSearchError('timeout')) as remember, \
                patch('memlife.services.memory_manager.time.sleep'):
            with pytest.raises(MemoryManagerError):
                manager._extract_with_retry('u1', 'hello')
        assert remember.call_count == 3


class TestEndConversation:

    def test_short_conversation_not_summarized(self, manager, store, clock):
        store.add_message(_message(clock, 'hi'))
        assert manager.end_conversation('u1', 'c1') is None
        assert store.memories == {}

    def test_long_conversation_stores_summary(self, manager, store, clock):
        for i in range(21):
            store.add_message(_message(clock, f'第 {i} 个关于 GPA 的问题', minutes=i))

        summary = manager.end_conversation('u1', 'c1')

        assert 'GPA' in summary.key_topics
        stored = [m for m in store.memories.values() if m.type == MemoryType.SUMMARY]
        assert len(stored) == 1
        assert stored[0].metadata['conversation_id'] == 'c1'
        assert stored[0].metadata['dedupe_key'] == 'conv:c1:summary'

    def test_facts_and_entities_kept(self, store, entity_store, clock):
        summarizer = MagicMock(spec=Summarizer)
        summarizer.should_summarize.return_value = True
        summarizer.summarize_conversation.return_value = ConversationSummary(
            summary='Discussed early decision plans',
            decisions=['Apply ED to MIT'],
            facts=[MemoryInput(type=MemoryType.FACT, content='Wants to study computer science', importance=0.7)],
            entities=[ExtractedEntity(type=EntityType.SCHOOL, name='MIT', source='llm', relations=['Boston'])])
        manager = _build(store, clock, entity_store=entity_store, summarizer=summarizer)
        try:
            manager.end_conversation('u1', 'c1')
        finally:
            manager.close()

        contents = sorted(m.content for m in store.memories.values())
        assert contents == ['Discussed early decision plans', 'Wants to study computer science']
        fact = [m for m in store.memories.values() if m.type == MemoryType.FACT][0]
        assert fact.metadata['source'] == 'summary'
        entity = entity_store.get_entities('u1')[0]
        assert entity.name == 'MIT'
        assert entity.relations[0].target_name == 'Boston'


class TestRetrievalContext:

    def test_context_and_summary(self, manager, store, entity_store, clock, make_entity):
        store.add(type=MemoryType.PREFERENCE, content='Likes the MIT campus')
        entity_store.upsert_entity(make_entity('MIT'))
        store.add_message(_message(clock, 'hello'))

        context = manager.get_retrieval_context('u1', 'MIT', conversation_id='c1')

        assert [m.content for m in context.relevant_memories] == ['Likes the MIT campus']
        assert [e.name for e in context.entities] == ['MIT']
        assert context.meta == {'conversation_id': 'c1', 'message_count': 1, 'memory_count': 1}

        summary = manager.build_context_summary(context)
        assert '沟通风格: friendly' in summary
        assert '- [PREFERENCE] Likes the MIT campus' in summary
        assert '关注的学校: MIT' in summary

    def test_without_entity_store(self, store, clock):
        manager = _build(store, clock)
        try:
            context = manager.get_retrieval_context('u1', 'anything')
        finally:
            manager.close()
        assert context.entities == []
        assert context.recent_messages == []
        assert manager.record_entity('u1', ExtractedEntity(type=EntityType.SCHOOL, name='MIT', source='rule')) is None


class TestPreferencesAndStats:

    def test_update_preferences_is_partial(self, manager):
        manager.update_preferences('u1', communication_style='formal')
        preferences = manager.get_preferences('u1')
        assert preferences.communication_style == 'formal'
        assert preferences.response_length == 'moderate'

    def test_stats(self, manager, store, entity_store, clock, make_entity):
        store.add(content='GPA: 3.80')
        store.add(type=MemoryType.PREFERENCE, content='Likes Boston')
        store.add_message(_message(clock, 'hi'))
        store.add_message(_message(clock, 'old', conversation_id='c0', minutes=-60 * 24 * 10))
        entity_store.upsert_entity(make_entity('MIT'))

        stats = manager.get_stats('u1')

        assert stats.total_memories == 2
        assert stats.memory_by_type == {'FACT': 1, 'PREFERENCE': 1}
        assert stats.total_messages == 2
        assert stats.total_conversations == 2
        assert stats.messages_last_7_days == 1
        assert stats.conversations_last_7_days == 1
        assert stats.total_entities == 1

    def test_enhanced_stats(self, manager, store):
        store.add(content='GPA: 3.80', importance=0.9)
        store.add(type=MemoryType.DECISION, content='Apply ED', importance=0.9)

        stats = manager.get_enhanced_stats('u1')

        assert stats.decay.total_memories == 2
        assert 0 < stats.scoring['average_score'] <= 1
        assert sum(stats.scoring['tier_distribution'].values()) == 2
        assert stats.to_dict()['scoring'] == stats.scoring


class TestMaintenance:

    def test_cleanup_expired(self, manager, store, clock):
        store.add(content='Old deadline', expires_at=clock() - timedelta(hours=1))
        kept = store.add(content='Permanent fact')

        assert manager.cleanup_expired() == 1
        assert list(store.memories) == [kept.id]

    def test_trigger_compaction_forces(self, store, clock):
        compaction = MagicMock()
        manager = _build(store, clock, compaction=compaction)
        try:
            manager.trigger_compaction('u1')
        finally:
            manager.close()
        compaction.compact_user_memory.assert_called_once_with('u1', force=True)

    def test_trigger_decay(self, manager, store, clock):
        store.add(content='old fact', importance=0.8, created_at=clock() - timedelta(days=100))
        assert manager.trigger_decay().decayed == 1


class TestBackfillEmbeddings:

    def test_only_memories_without_vectors_are_embedded(self, store, clock, embedder):
        embedder.vectors.update({'likes rain': [1.0, 0.0], 'GPA: 3.80': [0.0, 1.0]})
        rain = store.add(content='likes rain')
        gpa = store.add(content='GPA: 3.80', importance=0.9)
        unavailable = store.add(content='likes snow')
        store.add(content='has a vector', embedding=[0.5, 0.5])
        manager = _build(store, clock, embedder=embedder)
        try:
            updated = manager.backfill_embeddings(batch_size=1)
        finally:
            manager.close()

        assert updated == 2
        assert store.get_memory(rain.id).embedding == [1.0, 0.0]
        assert store.get_memory(gpa.id).embedding == [0.0, 1.0]
        assert not store.get_memory(unavailable.id).embedding
        assert 'has a vector' not in embedder.calls

    def test_failed_update_does_not_stop_the_batch(self, store, clock, embedder):
        embedder.vectors.update({'likes rain': [1.0, 0.0], 'likes snow': [0.0, 1.0]})
        store.add(content='likes rain')
        store.add(content='likes snow')
        real_update = store.update_memory
        attempts = []

        def update_memory(memory_id, changes, **kwargs):
            attempts.append(memory_id)
            if len(attempts) == 1:
                raise OpenSearchError('boom')
            return real_update(memory_id, changes, **kwargs)

        manager = _build(store, clock, embedder=embedder)
        try:
            with patch.object(store, 'update_memory', side_effect=update_memory):
                assert manager.backfill_embeddings() == 1
        finally:
            manager.close()
        assert len(attempts) == 2

    def test_scan_failure_is_logged(self, store, clock, embedder):
        manager = _build(store, clock, embedder=embedder)
        try:
            with patch.object(store, 'scan_memories', side_effect=OpenSearchError('down')):
                assert manager.backfill_embeddings() == 0
        finally:
            manager.close()

    def test_without_embedder(self, manager, store):
        store.add(content='likes rain')
        assert manager.backfill_embeddings() == 0

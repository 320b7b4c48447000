"""Tests for memory_compaction.py: dedup, group merge, summarize-or-delete and scheduling guards."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from memlife.models.core import Memory, MemoryType
from memlife.services.locks import InMemoryLockProvider
from memlife.services.memory_compaction import MemoryCompaction, NoopCompaction, select_survivor
from memlife.services.summarizer import Summarizer
from memlife.utils.config import CompactionConfig
from memlife.utils.opensearch_client import OpenSearchError
from memlife.utils.similarity import estimate_tokens

LONG_TEXT = ' '.join(f'word{i}' for i in range(100))


@pytest.fixture
def summarizer():
    summarizer = MagicMock(spec=Summarizer)
    summarizer.summarize_texts.return_value = 'merged note'
    summarizer.summarize_text.return_value = 'short summary'
    return summarizer


@pytest.fixture
def locks(clock):
    return InMemoryLockProvider(clock)


@pytest.fixture
def compaction(store, summarizer, locks, clock):
    return MemoryCompaction(store,
                            summarizer=summarizer,
                            lock_provider=locks,
                            compaction_config=CompactionConfig(),
                            clock=clock)


def _aged(store, clock, days, **fields):
    return store.add(created_at=clock() - timedelta(days=days), **fields)


class TestDeduplicate:

    def test_vector_duplicates_keep_the_more_important(self, compaction, store):
        keep = store.add(content='Target school is Stanford', importance=0.9, embedding=[1.0, 0.0])
        drop = store.add(content='Wants Stanford most', importance=0.6, embedding=[1.0, 0.01])

        result = compaction.compact_user_memory('u1')

        assert result.merged == 1
        assert result.tokens_saved == estimate_tokens(drop.content)
        assert store.get_memory(keep.id) is not None
        assert store.get_memory(drop.id) is None

    def test_lexical_duplicates_keep_the_more_accessed(self, compaction, store):
        store.add(content='likes small classes', importance=0.6)
        popular = store.add(content='likes small classes', importance=0.6, access_count=4)

        compaction.compact_user_memory('u1')

        assert list(store.memories) == [popular.id]

    def test_types_are_not_mixed(self, compaction, store):
        store.add(type=MemoryType.FACT, content='likes small classes', importance=0.6)
        store.add(type=MemoryType.PREFERENCE, content='likes small classes', importance=0.6)

        assert compaction.compact_user_memory('u1').merged == 0
        assert len(store.memories) == 2

    def test_other_users_untouched(self, compaction, store):
        store.add(content='likes small classes', importance=0.6)
        store.add(user_id='u2', content='likes small classes', importance=0.6)

        compaction.compact_user_memory('u1')

        assert len(store.memories) == 2


class TestMergeGroups:

    def test_three_old_low_importance_memories_merge(self, compaction, store, clock, summarizer):
        sources = [
            _aged(store, clock, 10, content=text, category='activity', importance=0.3) for text in (
                'Joined the robotics club in tenth grade and built an autonomous rover',
                'Volunteered at the city library reading program every weekend',
                'Played second violin in the school orchestra for three seasons',
            )
        ]

        result = compaction.compact_user_memory('u1')

        assert result.merged == 1
        assert len(store.memories) == 1
        merged = next(iter(store.memories.values()))
        assert merged.content == 'merged note'
        assert merged.category == 'activity'
        assert merged.importance == pytest.approx(0.4)
        assert merged.metadata == {'merged': True, 'source_ids': [m.id for m in sources]}
        original = sum(estimate_tokens(m.content) for m in sources)
        assert result.tokens_saved == original - estimate_tokens('merged note')
        summarizer.summarize_texts.assert_called_once()

    def test_pairs_are_left_alone(self, compaction, store, clock, summarizer):
        _aged(store, clock, 10, content='Joined the robotics club', category='activity', importance=0.3)
        _aged(store, clock, 10, content='Volunteered at the library', category='activity', importance=0.3)

        assert compaction.compact_user_memory('u1').merged == 0
        summarizer.summarize_texts.assert_not_called()

    def test_recent_memories_are_not_merged(self, compaction, store, clock):
        for text in ('robotics club', 'library volunteer', 'school orchestra'):
            _aged(store, clock, 2, content=text, category='activity', importance=0.3)

        assert compaction.compact_user_memory('u1').merged == 0
        assert len(store.memories) == 3

    def test_merge_rejected_when_not_smaller(self, store, clock, locks):
        compaction = MemoryCompaction(store,
                                      summarizer=Summarizer(),
                                      lock_provider=locks,
                                      compaction_config=CompactionConfig(),
                                      clock=clock)
        for text in ('robotics club captain', 'library volunteer tutor', 'school orchestra violin'):
            _aged(store, clock, 10, content=text, category='activity', importance=0.3)

        result = compaction.compact_user_memory('u1')

        assert result.merged == 0
        assert result.tokens_saved == 0
        assert len(store.memories) == 3

    def test_merged_memory_gets_embedding(self, store, clock, locks, summarizer, embedder):
        embedder.vectors['merged note'] = [0.1, 0.2]
        compaction = MemoryCompaction(store,
                                      summarizer=summarizer,
                                      embedder=embedder,
                                      lock_provider=locks,
                                      compaction_config=CompactionConfig(),
                                      clock=clock)
        for text in ('robotics club captain', 'library volunteer tutor', 'school orchestra violin'):
            _aged(store, clock, 10, content=text, category='activity', importance=0.3)

        compaction.compact_user_memory('u1')

        assert next(iter(store.memories.values())).embedding == [0.1, 0.2]

    @pytest.mark.parametrize('failure', [OpenSearchError('boom'), 0])
    def test_failed_source_delete_rolls_back_replacement(self, compaction, store, clock, failure):
        sources = [
            _aged(store, clock, 10, content=text, category='activity', importance=0.3)
            for text in ('robotics club captain', 'library volunteer tutor', 'school orchestra violin')
        ]
        side_effect = failure if isinstance(failure, Exception) else None
        with patch.object(store, 'delete_memories', side_effect=side_effect, return_value=failure):
            result = compaction.compact_user_memory('u1')

        assert result.merged == 0
        assert result.errors == 1
        assert sorted(store.memories) == sorted(m.id for m in sources)

    def test_one_failed_group_does_not_stop_the_next(self, compaction, store, clock):
        for category in ('activity', 'essay'):
            for text in ('robotics club captain', 'library volunteer tutor', 'school orchestra violin'):
                _aged(store, clock, 10, content=f'{category} {text}', category=category, importance=0.3)
        real_create = store.create_memory
        calls = []

        def create_memory(memory):
            calls.append(memory.category)
            if len(calls) == 1:
                raise OpenSearchError('boom')
            return real_create(memory)

        with patch.object(store, 'create_memory', side_effect=create_memory):
            result = compaction.compact_user_memory('u1')

        assert calls == ['activity', 'essay']
        assert result.merged == 1
        assert result.errors == 1
        assert len(store.memories) == 4


class TestSummarizeOld:

    def test_long_old_memory_is_summarized(self, compaction, store, clock, summarizer):
        memory = _aged(store, clock, 40, content=LONG_TEXT, category='essay', importance=0.2)

        result = compaction.compact_user_memory('u1')

        assert result.summarized == 1
        updated = store.get_memory(memory.id)
        assert updated.content == 'short summary'
        assert updated.metadata['summarized'] is True
        summarizer.summarize_text.assert_called_once_with(LONG_TEXT, 50)

    def test_summary_rejected_when_not_smaller(self, compaction, store, clock, summarizer):
        summarizer.summarize_text.return_value = LONG_TEXT
        memory = _aged(store, clock, 40, content=LONG_TEXT, category='essay', importance=0.2)

        assert compaction.compact_user_memory('u1').summarized == 0
        assert store.get_memory(memory.id).content == LONG_TEXT

    def test_unused_trivial_memory_is_pruned(self, compaction, store, clock):
        doomed = _aged(store, clock, 40, content='said hi', category='chat', importance=0.05)
        accessed = _aged(store, clock, 40, content='asked about MIT', category='misc', importance=0.05,
                         access_count=1)

        result = compaction.compact_user_memory('u1')

        assert result.deleted == 1
        assert store.get_memory(doomed.id) is None
        assert store.get_memory(accessed.id) is not None

    def test_failed_update_does_not_stop_the_rest(self, compaction, store, clock, summarizer):
        first = _aged(store, clock, 40, content=LONG_TEXT, category='essay', importance=0.2)
        second = _aged(store, clock, 40, content=' '.join(f'other{i}' for i in range(100)), category='essay',
                       importance=0.2)
        real_update = store.update_memory
        attempted = []

        def update_memory(memory_id, changes, **kwargs):
            attempted.append(memory_id)
            if len(attempted) == 1:
                raise OpenSearchError('boom')
            return real_update(memory_id, changes, **kwargs)

        with patch.object(store, 'update_memory', side_effect=update_memory):
            result = compaction.compact_user_memory('u1')

        assert sorted(attempted) == sorted([first.id, second.id])
        assert result.summarized == 1
        assert result.errors == 1
        assert compaction._last_run['u1'] == clock()


class TestGuards:

    def test_count_never_grows_and_tokens_saved_non_negative(self, store, clock, locks):
        compaction = MemoryCompaction(store,
                                      summarizer=Summarizer(),
                                      lock_provider=locks,
                                      compaction_config=CompactionConfig(),
                                      clock=clock)
        for days, importance, text in ((1, 0.9, 'GPA: 3.80'), (10, 0.3, 'robotics club'), (10, 0.3, 'robotics club'),
                                       (10, 0.4, 'library volunteer'), (40, 0.05, 'hello'),
                                       (40, 0.2, LONG_TEXT), (400, 0.6, 'SAT: 1500')):
            _aged(store, clock, days, content=text, importance=importance)
        before = len(store.memories)

        result = compaction.compact_user_memory('u1')

        assert len(store.memories) <= before
        assert result.tokens_saved >= 0

    def test_minimum_interval(self, compaction, store, clock):
        store.add(content='likes rain')
        assert compaction.compact_user_memory('u1').processed == 1

        clock.advance(hours=1)
        assert compaction.compact_user_memory('u1').processed == 0
        assert compaction.compact_user_memory('u1', force=True).processed == 1

        clock.advance(hours=25)
        assert compaction.compact_user_memory('u1').processed == 1

    def test_skips_when_lock_held(self, compaction, store, locks):
        store.add(content='likes rain')
        locks.acquire('memory:compaction:u1', 60)

        assert compaction.compact_user_memory('u1').processed == 0

    def test_failed_scan_is_counted_and_lock_released(self, compaction, store, clock, locks):
        memory = _aged(store, clock, 40, content=LONG_TEXT, category='essay', importance=0.2)

        with patch.object(store, 'scan_memories', side_effect=OpenSearchError('timeout')):
            result = compaction.compact_user_memory('u1')

        assert result.errors == 1
        assert result.summarized == 1
        assert store.get_memory(memory.id).content == 'short summary'
        assert not locks.is_held('memory:compaction:u1')

    def test_failed_run_still_counts_toward_interval(self, compaction, store, clock):
        store.add(content='likes rain')
        with patch.object(store, 'scan_memories', side_effect=OpenSearchError('timeout')):
            compaction.compact_user_memory('u1')

        clock.advance(hours=1)
        assert compaction.compact_user_memory('u1').processed == 0

    def test_disabled(self, store, clock):
        store.add(content='likes rain')
        compaction = MemoryCompaction(store, compaction_config=CompactionConfig(enabled=False), clock=clock)
        assert compaction.compact_user_memory('u1', force=True).processed == 0


class TestCompactAll:

    def test_only_users_over_the_ceiling(self, store, clock, locks, summarizer):
        compaction = MemoryCompaction(store,
                                      summarizer=summarizer,
                                      lock_provider=locks,
                                      compaction_config=CompactionConfig(max_memory_count=2),
                                      clock=clock)
        for text in ('a b', 'c d', 'e f'):
            store.add(content=text)
        store.add(user_id='u2', content='g h')

        results = compaction.compact_all()

        assert [r.user_id for r in results] == ['u1']

    def test_failing_user_is_skipped(self, store, clock, locks, summarizer):
        compaction = MemoryCompaction(store,
                                      summarizer=summarizer,
                                      lock_provider=locks,
                                      compaction_config=CompactionConfig(max_memory_count=0),
                                      clock=clock)
        store.add(content='a b')
        store.add(user_id='u2', content='c d')

        with patch.object(compaction, '_deduplicate', side_effect=[OpenSearchError('boom'), (1, 0, 0, 0)]):
            results = compaction.compact_all()

        assert [r.user_id for r in results] == ['u2']
        assert not locks.is_held('memory:compaction:u1')

    def test_store_unavailable(self, compaction, store):
        with patch.object(store, 'users_over_count', side_effect=OpenSearchError('down')):
            assert compaction.compact_all() == []


class TestSelectSurvivor:

    def _memory(self, clock, **fields):
        fields.setdefault('importance', 0.5)
        fields.setdefault('updated_at', clock())
        return Memory(user_id='u1', type=MemoryType.FACT, content='x', **fields)

    def test_importance_gap(self, clock):
        a = self._memory(clock, id='a', importance=0.9)
        b = self._memory(clock, id='b', importance=0.7, access_count=10)
        assert select_survivor(a, b) is a

    def test_access_count_breaks_close_importance(self, clock):
        a = self._memory(clock, id='a', importance=0.55)
        b = self._memory(clock, id='b', importance=0.5, access_count=2)
        assert select_survivor(a, b) is b

    def test_recency_last(self, clock):
        a = self._memory(clock, id='a', updated_at=clock() - timedelta(days=1))
        b = self._memory(clock, id='b')
        assert select_survivor(a, b) is b


class TestNoopCompaction:

    def test_does_nothing(self):
        assert NoopCompaction().compact_user_memory('u1').processed == 0
        assert NoopCompaction().compact_all() == []

"""
Per-user memory compaction: semantic dedup, group merge, and summarize-or-delete.

Compaction only ever deletes, rewrites in place, or replaces a group of three or more
memories with one, so a user's memory count never grows and tokens saved are never negative.
"""

import time
import uuid
from collections import defaultdict
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import CompactionResult, Memory
from ..utils.config import CompactionConfig, config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError
from ..utils.similarity import cosine_similarity, estimate_tokens, jaccard_similarity
from ..utils.timestamp_utils import Clock, utc_now
from .locks import InMemoryLockProvider, LockProvider
from .summarizer import Summarizer

logger = get_logger(__name__)

COMPACTION_LOCK_PREFIX = 'memory:compaction'
COMPACT_ALL_USER_LIMIT = 100

# Merge phase
MERGE_MAX_IMPORTANCE = 0.5
MERGE_MIN_AGE_DAYS = 7
MERGE_MIN_GROUP = 3
MERGE_MAX_RATIO = 0.7
MERGE_IMPORTANCE_BONUS = 0.1

# Summarize-or-delete phase
SUMMARY_MIN_AGE_DAYS = 30
SUMMARY_MAX_IMPORTANCE = 0.3
SUMMARY_MAX_ACCESS = 3
SUMMARY_MIN_TOKENS = 100
SUMMARY_TARGET_TOKENS = 50
SUMMARY_MAX_RATIO = 0.5
PRUNE_MAX_IMPORTANCE = 0.1

# Survivor selection
IMPORTANCE_TIE_MARGIN = 0.1


def memory_similarity(a: Memory, b: Memory) -> float:
    """Cosine similarity when both memories carry vectors, else lexical Jaccard."""
    if a.embedding and b.embedding:
        return cosine_similarity(a.embedding, b.embedding)
    return jaccard_similarity(a.content, b.content)


def select_survivor(a: Memory, b: Memory) -> Memory:
    """Pick which of two near-duplicates to keep.

    Importance wins when the gap exceeds 0.1, then access count, then the more recently updated.
    """
    if abs(a.importance - b.importance) > IMPORTANCE_TIE_MARGIN:
        return a if a.importance > b.importance else b
    if a.access_count != b.access_count:
        return a if a.access_count > b.access_count else b
    return a if a.updated_at > b.updated_at else b


class MemoryCompaction:
    """Bounds per-user memory growth."""

    def __init__(self,
                 store,
                 summarizer: Optional[Summarizer] = None,
                 embedder=None,
                 lock_provider: Optional[LockProvider] = None,
                 compaction_config: Optional[CompactionConfig] = None,
                 clock: Clock = utc_now):
        """
        Initialize the compaction engine.

        Args:
            store: Memory store (OpenSearchClient or compatible)
            summarizer: Text compression collaborator; merges and summaries are rejected without one
            embedder: Embedding collaborator for merged memories; stored without a vector when None
            lock_provider: Per-user lock; an in-process lock when None
            compaction_config: Compaction settings, defaults to the global config
            clock: Time source
        """
        self.store = store
        self.summarizer = summarizer or Summarizer()
        self.embedder = embedder
        self.lock_provider = lock_provider or InMemoryLockProvider(clock)
        self.config = compaction_config or config.compaction
        self.clock = clock
        self._last_run: Dict[str, datetime] = {}

    def compact_user_memory(self, user_id: str, force: bool = False) -> CompactionResult:
        """
        Compact one user's memories.

        Args:
            user_id: Owner
            force: Ignore the minimum interval since the last run

        Returns:
            CompactionResult; empty when skipped
        """
        result = CompactionResult(user_id=user_id)
        if not self.config.enabled:
            logger.debug('Compaction is disabled, skipping')
            return result

        now = self.clock()
        last_run = self._last_run.get(user_id)
        if not force and last_run is not None and now - last_run < timedelta(
                hours=self.config.min_compaction_interval_hours):
            logger.debug(f'Compaction for user {user_id} ran at {last_run}, skipping')
            return result

        lock_key = f'{COMPACTION_LOCK_PREFIX}:{user_id}'
        if not self.lock_provider.acquire(lock_key, self.config.lock_ttl_seconds):
            logger.warning(f'Compaction lock for user {user_id} held by another run, skipping')
            return result

        start = time.time()
        try:
            # Each phase catches its own store failures, so a broken phase never skips the next one
            processed, deduplicated, saved, errors = self._deduplicate(user_id)
            result.processed += processed
            result.merged += deduplicated
            result.tokens_saved += saved
            result.errors += errors

            processed, merged, saved, errors = self._merge_groups(user_id)
            result.processed += processed
            result.merged += merged
            result.tokens_saved += saved
            result.errors += errors

            summarized, deleted, saved, errors = self._summarize_old(user_id)
            result.summarized += summarized
            result.deleted += deleted
            result.tokens_saved += saved
            result.errors += errors

            self._last_run[user_id] = self.clock()
        finally:
            self.lock_provider.release(lock_key)

        result.duration_ms = int((time.time() - start) * 1000)
        logger.info(f'Memory compaction for {user_id}: processed={result.processed}, merged={result.merged}, '
                    f'summarized={result.summarized}, deleted={result.deleted}, tokens_saved={result.tokens_saved}, '
                    f'errors={result.errors}')
        return result

    def compact_all(self) -> List[CompactionResult]:
        """Compact every user over the memory ceiling. A failing user is logged and skipped."""
        results = []
        try:
            users = self.store.users_over_count(self.config.max_memory_count, limit=COMPACT_ALL_USER_LIMIT)
        except OpenSearchError as e:
            logger.error(f'Failed to list users needing compaction: {e}')
            return results

        for user_id in users:
            try:
                results.append(self.compact_user_memory(user_id))
            except OpenSearchError as e:
                logger.error(f'Failed to compact memory for user {user_id}: {e}')

        logger.info(f'Compaction completed for {len(results)} users')
        return results

    # ==================== Phases ====================

    def _deduplicate(self, user_id: str) -> Tuple[int, int, int, int]:
        memories: List[Memory] = []
        try:
            for page in self.store.scan_memories(batch_size=self.config.batch_size,
                                                 max_items=self.config.dedup_scan_limit,
                                                 include_embedding=True,
                                                 user_id=user_id):
                memories.extend(page)
        except OpenSearchError as e:
            logger.error(f'Dedup scan failed for user {user_id}: {e}')
            return 0, 0, 0, 1

        by_type: Dict[str, List[Memory]] = defaultdict(list)
        for memory in memories:
            by_type[memory.type.value].append(memory)

        removed = 0
        tokens_saved = 0
        errors = 0
        for memory_type, group in by_type.items():
            group.sort(key=lambda m: m.created_at, reverse=True)
            losers: List[Memory] = []
            gone = set()

            for i, first in enumerate(group):
                if first.id in gone:
                    continue
                for second in group[i + 1:]:
                    if second.id in gone:
                        continue
                    if memory_similarity(first, second) < self.config.similarity_threshold:
                        continue

                    loser = second if select_survivor(first, second) is first else first
                    gone.add(loser.id)
                    losers.append(loser)
                    if loser is first:
                        break

            if not losers:
                continue
            try:
                self.store.delete_memories([loser.id for loser in losers])
            except OpenSearchError as e:
                logger.error(f'Failed to delete {len(losers)} {memory_type} duplicates for user {user_id}: {e}')
                errors += 1
                continue
            removed += len(losers)
            tokens_saved += sum(estimate_tokens(loser.content) for loser in losers)

        return len(memories), removed, tokens_saved, errors

    def _merge_groups(self, user_id: str) -> Tuple[int, int, int, int]:
        now = self.clock()
        try:
            candidates = self.store.query_memories(user_id=user_id,
                                                   importance_lt=MERGE_MAX_IMPORTANCE,
                                                   created_before=now - timedelta(days=MERGE_MIN_AGE_DAYS),
                                                   sort=[('type', 'asc'), ('category', 'asc'), ('created_at', 'asc')],
                                                   limit=self.config.batch_size)
        except OpenSearchError as e:
            logger.error(f'Merge candidate query failed for user {user_id}: {e}')
            return 0, 0, 0, 1

        groups: Dict[str, List[Memory]] = defaultdict(list)
        for memory in candidates:
            groups[f'{memory.type.value}:{memory.category or "default"}'].append(memory)

        processed = 0
        merged = 0
        tokens_saved = 0
        errors = 0
        for key, group in groups.items():
            if len(group) < MERGE_MIN_GROUP:
                continue

            contents = [memory.content for memory in group]
            merged_content = self.summarizer.summarize_texts(contents)
            original_tokens = sum(estimate_tokens(content) for content in contents)
            new_tokens = estimate_tokens(merged_content)
            if new_tokens >= original_tokens * MERGE_MAX_RATIO:
                logger.debug(f'Rejected merge of {key}: {new_tokens} of {original_tokens} tokens')
                continue

            source_ids = [memory.id for memory in group]
            average = sum(memory.importance for memory in group) / len(group)
            replacement = Memory(id=uuid.uuid4().hex,
                                 user_id=user_id,
                                 type=group[0].type,
                                 category=group[0].category,
                                 content=merged_content,
                                 importance=min(average + MERGE_IMPORTANCE_BONUS, 1.0),
                                 embedding=self.embedder.embed(merged_content) if self.embedder else [],
                                 metadata={
                                     'merged': True,
                                     'source_ids': source_ids
                                 },
                                 created_at=now,
                                 updated_at=now)
            if not self._replace_group(user_id, key, replacement, source_ids):
                errors += 1
                continue

            processed += len(group)
            merged += 1
            tokens_saved += original_tokens - new_tokens
            ratio = (1 - new_tokens / original_tokens) * 100
            logger.info(f'Merged {len(group)} memories of {key} for user {user_id} into {replacement.id} '
                        f'({original_tokens} -> {new_tokens} tokens, {ratio:.1f}% saved)')

        return processed, merged, tokens_saved, errors

    def _replace_group(self, user_id: str, key: str, replacement: Memory, source_ids: List[str]) -> bool:
        """Store the merged memory, then drop its sources. The replacement is removed again if no source goes."""
        try:
            self.store.create_memory(replacement)
        except OpenSearchError as e:
            logger.error(f'Failed to store merged memory of {key} for user {user_id}: {e}')
            return False

        try:
            deleted = self.store.delete_memories(source_ids)
        except OpenSearchError as e:
            logger.error(f'Failed to delete merged sources of {key} for user {user_id}: {e}')
            deleted = 0

        if deleted:
            if deleted < len(source_ids):
                logger.warning(f'Only {deleted} of {len(source_ids)} merged sources of {key} were deleted')
            return True

        try:
            self.store.delete_memory(replacement.id)
        except OpenSearchError as e:
            logger.error(f'Failed to roll back merged memory {replacement.id} for user {user_id}: {e}')
        return False

    def _summarize_old(self, user_id: str) -> Tuple[int, int, int, int]:
        now = self.clock()
        try:
            old = self.store.query_memories(user_id=user_id,
                                            importance_lt=SUMMARY_MAX_IMPORTANCE,
                                            max_access_count=SUMMARY_MAX_ACCESS,
                                            created_before=now - timedelta(days=SUMMARY_MIN_AGE_DAYS),
                                            limit=self.config.batch_size)
        except OpenSearchError as e:
            logger.error(f'Old memory query failed for user {user_id}: {e}')
            return 0, 0, 0, 1

        summarized = 0
        deleted = 0
        tokens_saved = 0
        errors = 0
        for memory in old:
            original_tokens = estimate_tokens(memory.content)

            try:
                if original_tokens > SUMMARY_MIN_TOKENS:
                    summary = self.summarizer.summarize_text(memory.content, SUMMARY_TARGET_TOKENS)
                    new_tokens = estimate_tokens(summary)
                    if new_tokens < original_tokens * SUMMARY_MAX_RATIO:
                        self.store.update_memory(memory.id, {'content': summary, 'metadata': {'summarized': True}})
                        summarized += 1
                        tokens_saved += original_tokens - new_tokens
                elif memory.importance < PRUNE_MAX_IMPORTANCE and memory.access_count == 0:
                    if self.store.delete_memory(memory.id):
                        deleted += 1
                        tokens_saved += original_tokens
            except OpenSearchError as e:
                logger.error(f'Failed to compact memory {memory.id}: {e}')
                errors += 1

        return summarized, deleted, tokens_saved, errors

    def get_config(self) -> Dict[str, Any]:
        return asdict(self.config)

    def update_config(self, **changes) -> Dict[str, Any]:
        self.config = replace(self.config, **changes)
        logger.info(f'Compaction config updated: {changes}')
        return self.get_config()


class NoopCompaction:
    """Compaction engine used when compaction is disabled."""

    def compact_user_memory(self, user_id: str, force: bool = False) -> CompactionResult:
        return CompactionResult(user_id=user_id)

    def compact_all(self) -> List[CompactionResult]:
        return []

"""
Memory decay engine.

The daily job runs three independent phases (decay, archive, delete) under a named lock.
Access reinforcement nudges importance back up whenever a memory is recalled.
"""

import time
from dataclasses import asdict, replace
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..models.core import DecayResult, DecayStats, Memory, MemoryTier
from ..utils.config import DecayConfig, config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError, StaleMemoryError
from ..utils.timestamp_utils import Clock, days_between, from_iso, to_iso, utc_now
from .locks import InMemoryLockProvider, LockProvider
from .memory_scorer import MemoryScorer

logger = get_logger(__name__)

DECAY_LOCK_KEY = 'memory:decay:lock'
MIN_IMPORTANCE_DELTA = 0.001
ACCESS_IMPORTANCE_SCALE = 0.1
ACCESS_RETRIES = 3
FRESHNESS_SAMPLE_SIZE = 1000

# Importance bands used for tier statistics
LONG_TIER_IMPORTANCE = 0.7
SHORT_TIER_IMPORTANCE = 0.3


class MemoryDecay:
    """Ages memory importance over time and reinforces it on access."""

    def __init__(self,
                 store,
                 scorer: Optional[MemoryScorer] = None,
                 lock_provider: Optional[LockProvider] = None,
                 decay_config: Optional[DecayConfig] = None,
                 clock: Clock = utc_now):
        """
        Initialize the decay engine.

        Args:
            store: Memory store (OpenSearchClient or compatible)
            scorer: Scorer providing freshness; a default MemoryScorer when None
            lock_provider: Lock guarding the daily job; an in-process lock when None
            decay_config: Decay settings, defaults to the global config
            clock: Time source
        """
        self.store = store
        self.clock = clock
        self.scorer = scorer or MemoryScorer(clock=clock)
        self.lock_provider = lock_provider or InMemoryLockProvider(clock)
        self.config = decay_config or config.decay

    def run_daily_decay(self) -> DecayResult:
        """
        Run the decay, archive and delete phases.

        Each phase counts its own failures and never stops the others. Returns an empty
        result when decay is disabled or another run holds the lock.
        """
        if not self.config.enabled:
            logger.debug('Decay is disabled, skipping')
            return DecayResult()

        if not self.lock_provider.acquire(DECAY_LOCK_KEY, self.config.lock_ttl_seconds):
            logger.warning('Decay lock held by another run, skipping')
            return DecayResult()

        start = time.time()
        result = DecayResult()
        try:
            logger.info('Starting daily memory decay')

            processed, decayed, errors = self._decay_phase()
            result.processed += processed
            result.decayed += decayed
            result.errors += errors

            archived, errors = self._archive_phase()
            result.archived += archived
            result.errors += errors

            deleted, errors = self._delete_phase()
            result.deleted += deleted
            result.errors += errors

            result.duration_ms = int((time.time() - start) * 1000)
            logger.info(f'Daily decay completed: processed={result.processed}, decayed={result.decayed}, '
                        f'archived={result.archived}, deleted={result.deleted}, errors={result.errors}, '
                        f'duration={result.duration_ms}ms')
            return result
        finally:
            self.lock_provider.release(DECAY_LOCK_KEY)

    def trigger_decay(self) -> DecayResult:
        return self.run_daily_decay()

    def decayed_importance(self, memory: Memory) -> float:
        """Importance after one decay step.

        decay_factor = decay_rate * (1 - freshness), scaled by the fraction of a day since the
        memory was last decayed, so back-to-back runs leave it unchanged.
        """
        now = self.clock()
        freshness = self.scorer.freshness(memory.created_at)
        last_decayed = from_iso((memory.metadata or {}).get('decayed_at'))
        elapsed = 1.0 if last_decayed is None else min(1.0, max(0.0, days_between(last_decayed, now)))

        decay_factor = self.config.decay_rate * (1 - freshness) * elapsed
        return max(self.config.min_importance, memory.importance * (1 - decay_factor))

    def _decay_phase(self):
        processed = 0
        decayed = 0
        errors = 0

        try:
            pages = self.store.scan_memories(batch_size=self.config.batch_size,
                                             max_items=self.config.max_scan,
                                             importance_gt=self.config.min_importance)
            for page in pages:
                for memory in page:
                    processed += 1
                    try:
                        if self._decay_one(memory):
                            decayed += 1
                    except StaleMemoryError:
                        # Reinforced concurrently; the next run decays it
                        logger.debug(f'Skipping decay of {memory.id}, changed concurrently')
                    except OpenSearchError as e:
                        logger.error(f'Failed to decay memory {memory.id}: {e}')
                        errors += 1
        except OpenSearchError as e:
            logger.error(f'Decay scan failed: {e}')
            errors += 1

        return processed, decayed, errors

    def _decay_one(self, memory: Memory) -> bool:
        new_importance = self.decayed_importance(memory)
        if abs(new_importance - memory.importance) <= MIN_IMPORTANCE_DELTA:
            return False

        changes = {'importance': new_importance, 'metadata': {'decayed_at': to_iso(self.clock())}}
        self.store.update_memory(memory.id, changes, if_seq_no=memory.seq_no, if_primary_term=memory.primary_term)
        return True

    def _archive_phase(self):
        now = self.clock()
        try:
            archived = self.store.archive_memories(importance_lt=self.config.archive_threshold,
                                                   created_before=now - timedelta(days=self.config.archive_after_days),
                                                   archived_at=now)
            return archived, 0
        except OpenSearchError as e:
            logger.error(f'Failed to archive memories: {e}')
            return 0, 1

    def _delete_phase(self):
        now = self.clock()
        try:
            deleted = self.store.delete_memories_where(created_before=now - timedelta(days=self.config.delete_after_days),
                                                       importance_lt=self.config.min_importance)
            return deleted, 0
        except OpenSearchError as e:
            logger.error(f'Failed to delete expired memories: {e}')
            return 0, 1

    # ==================== Access reinforcement ====================

    def access_boost(self, access_count: int) -> float:
        return min(access_count * self.config.access_boost, self.config.max_access_boost)

    def record_access(self, memory_id: str) -> bool:
        """
        Count an access and nudge importance upward by the marginal access boost.

        The boost is the difference between the access bonus at count+1 and at count, scaled
        by 0.1, so it stops growing once the bonus reaches max_access_boost.

        Args:
            memory_id: Memory id

        Returns:
            True if recorded, False if the memory is missing or the write kept losing races
        """
        for _ in range(ACCESS_RETRIES):
            try:
                memory = self.store.get_memory(memory_id)
                if memory is None:
                    return False

                delta = self.access_boost(memory.access_count + 1) - self.access_boost(memory.access_count)
                changes = {
                    'access_count': memory.access_count + 1,
                    'last_accessed_at': self.clock(),
                    'importance': min(1.0, memory.importance + delta * ACCESS_IMPORTANCE_SCALE)
                }
                self.store.update_memory(memory_id, changes, if_seq_no=memory.seq_no, if_primary_term=memory.primary_term)
                return True
            except StaleMemoryError:
                logger.debug(f'Access update for {memory_id} lost a race, retrying')
            except OpenSearchError as e:
                logger.error(f'Failed to record access for memory {memory_id}: {e}')
                return False

        logger.warning(f'Gave up recording access for memory {memory_id} after {ACCESS_RETRIES} attempts')
        return False

    def record_access_batch(self, memory_ids: List[str]) -> int:
        """Record access for each id independently. Returns the number recorded."""
        return sum(1 for memory_id in memory_ids if self.record_access(memory_id))

    # ==================== Statistics ====================

    def get_decay_stats(self, user_id: Optional[str] = None) -> DecayStats:
        """
        Summarize importance and freshness, optionally for one user.

        Tiers are counted by importance band; WORKING memories are not persisted and count 0.
        """
        now = self.clock()
        scope: Dict[str, Any] = {'user_id': user_id} if user_id else {}

        by_tier = {
            MemoryTier.WORKING.value: 0,
            MemoryTier.SHORT.value: self.store.count_memories(min_importance=SHORT_TIER_IMPORTANCE,
                                                              importance_lt=LONG_TIER_IMPORTANCE,
                                                              **scope),
            MemoryTier.LONG.value: self.store.count_memories(min_importance=LONG_TIER_IMPORTANCE, **scope),
            MemoryTier.ARCHIVE.value: self.store.count_memories(importance_lt=SHORT_TIER_IMPORTANCE, **scope)
        }

        sample = self.store.query_memories(limit=FRESHNESS_SAMPLE_SIZE, **scope)
        average_freshness = (sum(self.scorer.freshness(m.created_at) for m in sample) / len(sample)) if sample else 0.0

        return DecayStats(total_memories=self.store.count_memories(**scope),
                          by_tier=by_tier,
                          average_importance=self.store.average_importance(**scope),
                          average_freshness=average_freshness,
                          scheduled_for_archive=self.store.count_memories(
                              importance_lt=self.config.archive_threshold,
                              created_before=now - timedelta(days=self.config.archive_after_days),
                              exclude_metadata_flag='archived',
                              **scope),
                          scheduled_for_delete=self.store.count_memories(
                              importance_lt=self.config.min_importance,
                              created_before=now - timedelta(days=self.config.delete_after_days),
                              **scope))

    def get_config(self) -> Dict[str, Any]:
        return asdict(self.config)

    def update_config(self, **changes) -> Dict[str, Any]:
        self.config = replace(self.config, **changes)
        logger.info(f'Decay config updated: {changes}')
        return self.get_config()


class NoopDecay:
    """Decay engine used when decay is disabled: nothing ages and access is not recorded."""

    def run_daily_decay(self) -> DecayResult:
        return DecayResult()

    def trigger_decay(self) -> DecayResult:
        return DecayResult()

    def record_access(self, memory_id: str) -> bool:
        return False

    def record_access_batch(self, memory_ids: List[str]) -> int:
        return 0

    def get_decay_stats(self, user_id: Optional[str] = None) -> Optional[DecayStats]:
        return None

"""
Memory Manager: the orchestrator behind remember/recall and retrieval context assembly.
"""

import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Union

from ..models.core import (CompactionResult, ConflictStrategy, DecayResult, Entity, EntityRelation, EntityType,
                           ExtractedEntity, ExtractedMemory, Memory, MemoryInput, MemoryStats, MemoryTier, MemoryType,
                           Message, RecallOptions, ResolutionAction, RetrievalContext, ScoreInput, ScoreResult,
                           UserPreferences)
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import MemoryConfig, config
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient, NeptuneError
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError, StaleMemoryError
from ..utils.timestamp_utils import Clock, utc_now
from .locks import InMemoryLockProvider, OpenSearchLockProvider
from .memory_compaction import MemoryCompaction, NoopCompaction
from .memory_conflict import ConflictResolver, NoopConflictResolver
from .memory_decay import MemoryDecay, NoopDecay
from .memory_extractor import MemoryExtractor
from .memory_scorer import MemoryScorer, NoopScorer
from .summarizer import Summarizer

logger = get_logger(__name__)

DEFAULT_IMPORTANCE = 0.5
DEFAULT_CONFIDENCE = 0.8
MIN_PERSIST_SCORE = 0.1
SUMMARY_IMPORTANCE = 0.6
END_CONVERSATION_MESSAGE_LIMIT = 100
SCORING_SAMPLE_SIZE = 100
CONTEXT_SUMMARY_MEMORIES = 3
STATS_WINDOW_DAYS = 7


class MemoryManagerError(Exception):
    """Custom exception for memory manager errors."""
    pass


def entity_from_extracted(user_id: str, extracted: ExtractedEntity) -> Entity:
    return Entity(user_id=user_id,
                  type=extracted.type,
                  name=extracted.name,
                  description=extracted.description,
                  attributes=dict(extracted.attributes),
                  relations=[EntityRelation(target_name=name) for name in extracted.relations])


def input_from_extracted(extracted: ExtractedMemory,
                         conversation_id: Optional[str] = None,
                         clock: Clock = utc_now) -> MemoryInput:
    """Convert an extraction candidate into a remember() input.

    The rule's dedupe key and strategy travel in metadata so conflict detection can find the
    memory a later mention of the same fact should replace.
    """
    metadata: Dict[str, Any] = dict(extracted.metadata)
    metadata['source'] = extracted.source
    if extracted.rule_id:
        metadata['rule_id'] = extracted.rule_id
    if extracted.dedupe_key:
        metadata['rule_key'] = extracted.dedupe_key
    if extracted.conflict_strategy:
        metadata['conflict_strategy'] = ConflictStrategy(extracted.conflict_strategy).value
    if conversation_id:
        metadata['conversation_id'] = conversation_id

    expires_at = clock() + timedelta(days=extracted.ttl_days) if extracted.ttl_days else None
    return MemoryInput(type=extracted.type,
                       category=extracted.category,
                       content=extracted.content,
                       importance=extracted.importance,
                       confidence=extracted.confidence,
                       metadata=metadata,
                       expires_at=expires_at)


class MemoryManager:
    """Coordinates extraction, conflict resolution, scoring, storage and maintenance for users' memories."""

    def __init__(self,
                 store,
                 entity_store=None,
                 embedder=None,
                 extractor: Optional[MemoryExtractor] = None,
                 summarizer: Optional[Summarizer] = None,
                 scorer=None,
                 conflict=None,
                 decay=None,
                 compaction=None,
                 memory_config: Optional[MemoryConfig] = None,
                 clock: Clock = utc_now):
        """
        Initialize the memory manager.

        Args:
            store: Memory store (OpenSearchClient or compatible)
            entity_store: Entity store (NeptuneClient or compatible); entities are skipped when None
            embedder: Embedding collaborator; memories are stored without vectors when None
            extractor: Extraction engine for message-driven memories
            summarizer: Conversation summarizer
            scorer: Scorer, NoopScorer when None
            conflict: Conflict resolver, NoopConflictResolver when None
            decay: Decay engine, NoopDecay when None
            compaction: Compaction engine, NoopCompaction when None
            memory_config: Manager settings, defaults to the global config
            clock: Time source
        """
        self.store = store
        self.entity_store = entity_store
        self.embedder = embedder
        self.summarizer = summarizer or Summarizer()
        self.scorer = scorer or NoopScorer()
        # remember() scores every candidate, so the extractor does not
        self.extractor = extractor or MemoryExtractor(summarizer=self.summarizer, clock=clock)
        self.conflict = conflict or NoopConflictResolver()
        self.decay = decay or NoopDecay()
        self.compaction = compaction or NoopCompaction()
        self.config = memory_config or config.memory
        self.clock = clock
        self._executor = ThreadPoolExecutor(max_workers=self.config.background_workers,
                                            thread_name_prefix='memlife-background')

        logger.info('Initialized MemoryManager')

    def close(self, wait: bool = True):
        """Stop accepting background work and optionally wait for running tasks."""
        self._executor.shutdown(wait=wait)

    # ==================== Background work ====================

    def _submit(self, description: str, fn, *args) -> Future:
        future = self._executor.submit(fn, *args)

        def _log_failure(done: Future):
            error = done.exception()
            if error is not None:
                logger.error(f'{description} failed: {error}')

        future.add_done_callback(_log_failure)
        return future

    def _extract_with_retry(self, user_id: str, content: str, conversation_id: Optional[str] = None) -> List[Memory]:
        retries = self.config.extraction_retries
        for attempt in range(retries + 1):
            try:
                return self.remember_message(user_id, content, conversation_id)
            except (OpenSearchError, NeptuneError) as e:
                if attempt >= retries:
                    raise MemoryManagerError(f'Memory extraction failed after {retries + 1} attempts: {e}')
                logger.warning(f'Extraction attempt {attempt + 1} failed, retrying: {e}')
                time.sleep(1.0 * (attempt + 1))
        return []

    # ==================== Remember / recall ====================

    def _score(self, candidate: MemoryInput):
        confidence = candidate.confidence
        if confidence is None:
            confidence = (candidate.metadata or {}).get('confidence', DEFAULT_CONFIDENCE)

        result: ScoreResult = self.scorer.score(
            ScoreInput(type=candidate.type,
                       content=candidate.content,
                       importance=candidate.importance if candidate.importance is not None else DEFAULT_IMPORTANCE,
                       confidence=confidence,
                       created_at=self.clock(),
                       metadata=dict(candidate.metadata or {})))

        metadata = dict(candidate.metadata or {}, score=result.total, tier=result.tier.value)
        return replace(candidate, importance=result.importance, metadata=metadata), result

    def _apply_update(self, candidate: MemoryInput) -> Optional[Memory]:
        scored, _ = self._score(candidate)
        changes: Dict[str, Any] = {
            'content': scored.content,
            'importance': scored.importance,
            'metadata': scored.metadata
        }
        if scored.category:
            changes['category'] = scored.category
        if self.embedder is not None:
            changes['embedding'] = self.embedder.embed(scored.content)

        updated = self.store.update_memory(scored.id, changes)
        if updated is None:
            logger.warning(f'Memory {scored.id} disappeared before it could be updated')
        return updated

    def remember(self,
                 user_id: str,
                 memory_input: MemoryInput,
                 skip_conflict_check: bool = False,
                 strategy_override: Optional[ConflictStrategy] = None) -> Optional[Memory]:
        """
        Store a memory after conflict resolution and scoring.

        Args:
            user_id: Owner
            memory_input: Candidate memory
            skip_conflict_check: Persist without looking for conflicts
            strategy_override: Conflict strategy to use instead of the detected one

        Returns:
            The stored or updated memory, or None when it was skipped or scored too low

        Raises:
            OpenSearchError: If the store fails
        """
        candidate = replace(memory_input,
                            importance=memory_input.importance if memory_input.importance is not None else DEFAULT_IMPORTANCE,
                            metadata=dict(memory_input.metadata or {}))

        if not skip_conflict_check:
            detection = self.conflict.detect_conflict(user_id, candidate)
            resolution = self.conflict.resolve_conflict(candidate, detection, strategy_override)
            logger.debug(f'Memory conflict resolved: {resolution.action.value} - {resolution.reason}')

            if resolution.action == ResolutionAction.SKIP:
                return None
            if resolution.action in (ResolutionAction.UPDATE, ResolutionAction.MERGE) and resolution.memory.id:
                return self._apply_update(resolution.memory)
            # PENDING and CREATE both persist the resolver's copy, which carries the dedupe key and pending flags
            candidate = replace(resolution.memory, id=None)

        scored, result = self._score(candidate)
        logger.debug(f'Memory scored: total={result.total:.2f}, tier={result.tier.value}')
        if result.total < MIN_PERSIST_SCORE and result.tier == MemoryTier.ARCHIVE:
            logger.debug('Memory score too low, skipping')
            return None

        now = self.clock()
        memory = Memory(id=uuid.uuid4().hex,
                        user_id=user_id,
                        type=scored.type,
                        category=scored.category,
                        content=scored.content,
                        importance=scored.importance,
                        embedding=self.embedder.embed(scored.content) if self.embedder is not None else [],
                        metadata=scored.metadata,
                        expires_at=scored.expires_at,
                        created_at=now,
                        updated_at=now)
        return self.store.create_memory(memory)

    def recall(self, user_id: str, options: Optional[RecallOptions] = None) -> List[Memory]:
        """
        Retrieve memories by semantic query or by attribute filters.

        Without a usable query vector the semantic path falls back to a case-insensitive
        substring match, whose results carry similarity 0.5. Access is recorded in the
        background for every returned memory.

        Args:
            user_id: Owner
            options: Recall options

        Returns:
            Matching memories
        """
        options = options or RecallOptions(limit=self.config.recall_limit, min_similarity=self.config.min_similarity)
        now = self.clock()

        if options.query and options.use_semantic_search:
            vector = self.embedder.embed(options.query) if self.embedder is not None else []
            if vector:
                memories = self.store.vector_search(vector,
                                                    user_id,
                                                    top_k=options.limit,
                                                    types=options.types,
                                                    categories=options.categories,
                                                    min_similarity=options.min_similarity,
                                                    not_expired_at=now)
            else:
                logger.warning('No query embedding available, falling back to keyword search')
                memories = self.store.keyword_search(options.query,
                                                     user_id,
                                                     top_k=options.limit,
                                                     types=options.types,
                                                     categories=options.categories,
                                                     not_expired_at=now)
        else:
            memories = self.store.query_memories(user_id=user_id,
                                                 types=options.types,
                                                 categories=options.categories,
                                                 min_importance=options.min_importance,
                                                 created_after=options.created_after,
                                                 created_before=options.created_before,
                                                 not_expired_at=now,
                                                 limit=options.limit)

        if memories:
            self._submit('Recording memory access', self.decay.record_access_batch, [m.id for m in memories])
        return memories

    def forget(self, memory_id: str) -> bool:
        return self.store.delete_memory(memory_id)

    # ==================== Messages and conversations ====================

    def add_message(self, user_id: str, conversation_id: str, role: str, content: str) -> Message:
        """
        Persist a chat message. User messages are mined for memories in the background.

        Returns:
            The stored message
        """
        message = self.store.add_message(
            Message(id=uuid.uuid4().hex,
                    user_id=user_id,
                    conversation_id=conversation_id,
                    role=role,
                    content=content,
                    created_at=self.clock()))

        if role == 'user':
            self._submit('Memory extraction', self._extract_with_retry, user_id, content, conversation_id)
        return message

    def remember_message(self, user_id: str, content: str, conversation_id: Optional[str] = None) -> List[Memory]:
        """
        Extract memories and entities from one message and remember them.

        Returns:
            Memories that were created or updated
        """
        result = self.extractor.extract(content)

        stored = []
        for extracted in result.memories:
            memory = self.remember(user_id, input_from_extracted(extracted, conversation_id, self.clock))
            if memory is not None:
                stored.append(memory)

        for entity in result.entities:
            self.record_entity(user_id, entity)

        logger.debug(f'Remembered {len(stored)} of {len(result.memories)} extracted memories for user {user_id}')
        return stored

    def end_conversation(self, user_id: str, conversation_id: str):
        """
        Summarize a finished conversation when it is long enough and keep its facts.

        Returns:
            The ConversationSummary, or None when the conversation did not warrant one
        """
        messages = self.store.get_messages(conversation_id, limit=END_CONVERSATION_MESSAGE_LIMIT)
        if not self.summarizer.should_summarize(messages):
            return None

        summary = self.summarizer.summarize_conversation(messages)
        if summary.summary:
            self.remember(
                user_id,
                MemoryInput(type=MemoryType.SUMMARY,
                            category='conversation',
                            content=summary.summary,
                            importance=SUMMARY_IMPORTANCE,
                            metadata={
                                'conversation_id': conversation_id,
                                'key_topics': summary.key_topics,
                                'decisions': summary.decisions,
                                'next_steps': summary.next_steps
                            }))

        for fact in summary.facts:
            fact.metadata = dict(fact.metadata or {}, conversation_id=conversation_id, source='summary')
            self.remember(user_id, fact)

        for entity in summary.entities:
            self.record_entity(user_id, entity)

        logger.info(f'Ended conversation {conversation_id}: {len(summary.facts)} facts, {len(summary.entities)} entities')
        return summary

    # ==================== Retrieval context ====================

    def get_retrieval_context(self,
                              user_id: str,
                              current_message: str,
                              conversation_id: Optional[str] = None) -> RetrievalContext:
        recent_messages = self.store.get_messages(conversation_id,
                                                  limit=self.config.context_message_limit) if conversation_id else []
        memories = self.recall(
            user_id,
            RecallOptions(query=current_message,
                          use_semantic_search=True,
                          limit=self.config.context_memory_limit,
                          min_similarity=self.config.min_similarity))
        preferences = self.store.get_preferences(user_id)
        entities = []
        if self.entity_store is not None and current_message:
            entities = self.entity_store.search_entities(user_id, current_message, limit=self.config.context_entity_limit)

        return RetrievalContext(recent_messages=recent_messages,
                                relevant_memories=memories,
                                preferences=preferences,
                                entities=entities,
                                conversation_id=conversation_id)

    @staticmethod
    def build_context_summary(context: RetrievalContext) -> str:
        """Render a retrieval context as prompt-ready text."""
        parts = []
        if context.preferences:
            parts.append(f'沟通风格: {context.preferences.communication_style}')
            parts.append(f'回复详细度: {context.preferences.response_length}')

        if context.relevant_memories:
            parts.append('\n## 相关记忆')
            for memory in context.relevant_memories[:CONTEXT_SUMMARY_MEMORIES]:
                parts.append(f'- [{memory.type.value}] {memory.content}')

        schools = [entity.name for entity in context.entities if entity.type == EntityType.SCHOOL]
        if schools:
            parts.append(f'\n关注的学校: {", ".join(schools)}')

        return '\n'.join(parts)

    # ==================== Entities and preferences ====================

    def record_entity(self, user_id: str, entity: Union[Entity, ExtractedEntity]) -> Optional[Entity]:
        """Upsert an entity keyed on (user_id, type, name). Returns None without an entity store."""
        if self.entity_store is None:
            return None
        if isinstance(entity, ExtractedEntity):
            entity = entity_from_extracted(user_id, entity)
        return self.entity_store.upsert_entity(entity)

    def get_entities(self, user_id: str, types: Optional[Sequence[EntityType]] = None, limit: int = 50) -> List[Entity]:
        if self.entity_store is None:
            return []
        return self.entity_store.get_entities(user_id, types=types, limit=limit)

    def get_preferences(self, user_id: str) -> UserPreferences:
        return self.store.get_preferences(user_id)

    def update_preferences(self, user_id: str, **changes) -> UserPreferences:
        """Partially update preferences, creating them from defaults if missing."""
        preferences = replace(self.store.get_preferences(user_id), **changes)
        return self.store.save_preferences(user_id, preferences)

    # ==================== Statistics and maintenance ====================

    def get_stats(self, user_id: str) -> MemoryStats:
        since = self.clock() - timedelta(days=STATS_WINDOW_DAYS)
        messages = self.store.message_stats(user_id, since)
        return MemoryStats(total_memories=self.store.count_memories(user_id=user_id),
                           total_conversations=messages['total_conversations'],
                           total_messages=messages['total_messages'],
                           total_entities=self.entity_store.count_entities(user_id) if self.entity_store else 0,
                           memory_by_type=self.store.memory_type_counts(user_id),
                           conversations_last_7_days=messages['conversations_last_7_days'],
                           messages_last_7_days=messages['messages_last_7_days'])

    def get_enhanced_stats(self, user_id: str) -> MemoryStats:
        """Basic stats plus decay statistics and the score distribution of recent memories."""
        stats = self.get_stats(user_id)
        stats.decay = self.decay.get_decay_stats(user_id)

        memories = self.store.query_memories(user_id=user_id, limit=SCORING_SAMPLE_SIZE)
        scores = self.scorer.score_batch([
            ScoreInput(type=m.type,
                       content=m.content,
                       importance=m.importance,
                       confidence=DEFAULT_CONFIDENCE,
                       created_at=m.created_at,
                       access_count=m.access_count,
                       last_accessed_at=m.last_accessed_at) for m in memories
        ])

        tier_distribution: Dict[str, int] = {}
        for score in scores:
            tier_distribution[score.tier.value] = tier_distribution.get(score.tier.value, 0) + 1
        stats.scoring = {
            'average_score': sum(s.total for s in scores) / len(scores) if scores else 0.0,
            'tier_distribution': tier_distribution
        }
        return stats

    def cleanup_expired(self) -> int:
        """Delete memories whose expiry has passed. Returns the number deleted."""
        deleted = self.store.delete_memories_where(expires_before=self.clock())
        logger.info(f'Removed {deleted} expired memories')
        return deleted

    def backfill_embeddings(self, batch_size: Optional[int] = None, max_items: Optional[int] = None) -> int:
        """
        Embed memories that were stored without a vector while embeddings were unavailable.

        Args:
            batch_size: Scan page size, defaults to the configured backfill batch size
            max_items: Cap on memories examined in one run

        Returns:
            Number of memories that received a vector
        """
        if self.embedder is None:
            return 0

        updated = 0
        failed = 0
        try:
            for page in self.store.scan_memories(batch_size=batch_size or self.config.backfill_batch_size,
                                                 max_items=max_items or self.config.backfill_max_items,
                                                 missing_embedding=True):
                for memory in page:
                    vector = self.embedder.embed(memory.content)
                    if not vector:
                        failed += 1
                        continue
                    try:
                        self.store.update_memory(memory.id, {'embedding': vector},
                                                 if_seq_no=memory.seq_no,
                                                 if_primary_term=memory.primary_term)
                        updated += 1
                    except StaleMemoryError:
                        logger.debug(f'Memory {memory.id} changed during backfill, skipping')
                    except OpenSearchError as e:
                        logger.error(f'Failed to store backfilled vector for memory {memory.id}: {e}')
                        failed += 1
        except OpenSearchError as e:
            logger.error(f'Embedding backfill scan failed: {e}')

        logger.info(f'Backfilled embeddings for {updated} memories ({failed} still without a vector)')
        return updated

    def trigger_decay(self) -> DecayResult:
        return self.decay.trigger_decay()

    def trigger_compaction(self, user_id: str) -> CompactionResult:
        return self.compaction.compact_user_memory(user_id, force=True)

    def get_pending_conflicts(self, user_id: str) -> List[Memory]:
        return self.conflict.get_pending_conflicts(user_id)


def create_memory_manager() -> MemoryManager:
    """Build a MemoryManager wired to Bedrock, OpenSearch and Neptune from the global config."""
    store = OpenSearchClient(config.opensearch)
    try:
        store.create_indices()
    except OpenSearchError as e:
        logger.warning(f'Failed to create OpenSearch indexes: {e}')

    try:
        entity_store = NeptuneClient(config.neptune)
    except NeptuneError as e:
        logger.warning(f'Neptune unavailable, entities will not be stored: {e}')
        entity_store = None

    embedder = BedrockEmbed(config.bedrock_embed)
    summarizer = Summarizer(BedrockLLM(config.bedrock_llm))

    if config.lock.backend == 'opensearch':
        lock_provider = OpenSearchLockProvider(store)
    else:
        lock_provider = InMemoryLockProvider()

    scorer = MemoryScorer(config.scorer) if config.scorer.enabled else NoopScorer()
    conflict = ConflictResolver(store, embedder, config.conflict) if config.conflict.enabled else NoopConflictResolver()
    decay = MemoryDecay(store, MemoryScorer(config.scorer), lock_provider,
                        config.decay) if config.decay.enabled else NoopDecay()
    compaction = MemoryCompaction(store, summarizer, embedder, lock_provider,
                                  config.compaction) if config.compaction.enabled else NoopCompaction()

    return MemoryManager(store=store,
                         entity_store=entity_store,
                         embedder=embedder,
                         extractor=MemoryExtractor(summarizer=summarizer),
                         summarizer=summarizer,
                         scorer=scorer,
                         conflict=conflict,
                         decay=decay,
                         compaction=compaction)

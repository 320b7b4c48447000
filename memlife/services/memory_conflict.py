"""
Conflict detection and resolution between candidate and stored memories.

Detection order, stopping at the first hit:
    1. Dedupe rule key (conflict-layer rule table, stored as ``metadata.dedupe_key``)
    2. Extraction rule key (``metadata.rule_key``) for rules whose strategy is not KEEP_BOTH
    3. Exact content match
    4. Semantic match above the similarity threshold
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..models.core import (ConflictDetection, ConflictResolution, ConflictStrategy, Memory, MemoryInput, MemoryType,
                           ResolutionAction)
from ..utils.config import ConflictConfig, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import Clock, to_iso, utc_now

logger = get_logger(__name__)

# ==================== Dedupe rules ====================


@dataclass(frozen=True)
class DedupeRule:
    """Conflict-layer dedupe rule.

    A rule applies to candidates of its type (and category, when set). The key is rendered from
    ``key`` with ``{user_id}``, ``{match}`` (lowercased pattern match) and ``{value}`` (the
    metadata field value). Keyed variants are tried in order and the first that applies wins.
    """
    type: MemoryType
    strategy: ConflictStrategy
    description: str
    keys: tuple  # ((pattern or None, key template), ...)
    category: Optional[str] = None
    metadata_field: Optional[str] = None


def _ci(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


DEDUPE_RULES: List[DedupeRule] = [
    DedupeRule(type=MemoryType.FACT,
               category='academic',
               keys=((_ci(r'GPA|绩点'), '{user_id}:gpa'), (_ci(r'排名|rank'), '{user_id}:rank')),
               strategy=ConflictStrategy.KEEP_LATEST,
               description='GPA and class rank keep the latest value'),
    DedupeRule(type=MemoryType.FACT,
               category='test_score',
               keys=((_ci(r'SAT'), '{user_id}:sat'), (_ci(r'ACT'), '{user_id}:act'),
                     (_ci(r'TOEFL|托福'), '{user_id}:toefl'), (_ci(r'IELTS|雅思'), '{user_id}:ielts')),
               strategy=ConflictStrategy.KEEP_HIGHEST,
               description='Standardized test scores keep the highest value'),
    DedupeRule(type=MemoryType.DECISION,
               category='decision',
               keys=((_ci(r'ED|早申|绑定'), '{user_id}:ed_decision'),),
               strategy=ConflictStrategy.KEEP_LATEST,
               description='Early decision choice keeps the latest value'),
    DedupeRule(type=MemoryType.PREFERENCE,
               category='preference',
               keys=((_ci(r'专业|major'), '{user_id}:major_pref'),),
               strategy=ConflictStrategy.KEEP_LATEST,
               description='Major preference keeps the latest value'),
    DedupeRule(type=MemoryType.PREFERENCE,
               category='school',
               keys=((_ci(r'MIT|Stanford|Harvard|Yale|Princeton|Berkeley|UCLA|Columbia|CMU|NYU|Duke'),
                      '{user_id}:school:{match}'),),
               strategy=ConflictStrategy.MERGE,
               description='Preferences about the same school are merged'),
    DedupeRule(type=MemoryType.SUMMARY,
               keys=((None, 'conv:{value}:summary'),),
               metadata_field='conversation_id',
               strategy=ConflictStrategy.KEEP_LATEST,
               description='One summary per conversation, latest wins'),
]


def dedupe_key_for(rule: DedupeRule, user_id: str, candidate: MemoryInput) -> str:
    """Render the first applicable key of a rule for a candidate, or '' when none applies."""
    value = ''
    if rule.metadata_field:
        value = (candidate.metadata or {}).get(rule.metadata_field) or ''
        if not value:
            return ''

    for pattern, template in rule.keys:
        match = ''
        if pattern is not None:
            found = pattern.search(candidate.content)
            if not found:
                continue
            match = found.group(0).lower()
        return template.format(user_id=user_id, match=match, value=value)
    return ''


def find_dedupe_rule(user_id: str, candidate: MemoryInput) -> Optional[DedupeRule]:
    """First dedupe rule matching the candidate's type and category that yields a key."""
    for rule in DEDUPE_RULES:
        if rule.type != candidate.type:
            continue
        if rule.category and rule.category != candidate.category:
            continue
        if dedupe_key_for(rule, user_id, candidate):
            return rule
    return None


# ==================== Value helpers ====================

_SAT_LIKE = re.compile(r'(\d{3,4})\s*(?:分|分数)?')
_GPA_LIKE = re.compile(r'(\d+\.?\d*)\s*(?:/\s*\d+\.?\d*)?')
_ACT_LIKE = re.compile(r'(\d{1,2})\s*(?:分)?')


def extract_numeric_value(content: str) -> float:
    """Comparable score parsed from memory content.

    The scale is guessed from magnitude alone: 400-1600 is SAT-like, 0-5 is GPA-like (x100),
    1-36 is ACT-like (x10). Only the first number of each shape is considered, and content
    with no recognisable score yields 0. TOEFL totals are misread: "TOEFL: 105" falls through to
    the ACT band on its first two digits and compares as 100. IELTS half bands are lost the same
    way: "6.0" and "6.5" both read as 60, so an improved IELTS score is skipped under KEEP_HIGHEST.
    """
    match = _SAT_LIKE.search(content)
    if match and 400 <= int(match.group(1)) <= 1600:
        return float(match.group(1))

    match = _GPA_LIKE.search(content)
    if match:
        gpa = float(match.group(1))
        if 0 <= gpa <= 5:
            return gpa * 100

    match = _ACT_LIKE.search(content)
    if match and 1 <= int(match.group(1)) <= 36:
        return float(match.group(1)) * 10

    return 0.0


def merge_contents(existing: str, new: str) -> str:
    if existing == new or new in existing:
        return existing
    if existing in new:
        return new
    return f'{existing}; {new}'


def memory_as_input(memory: Memory) -> MemoryInput:
    return MemoryInput(id=memory.id,
                       type=memory.type,
                       category=memory.category,
                       content=memory.content,
                       importance=memory.importance,
                       metadata=dict(memory.metadata or {}),
                       expires_at=memory.expires_at)


def _with_metadata(candidate: MemoryInput, **extra) -> MemoryInput:
    metadata: Dict[str, Any] = dict(candidate.metadata or {})
    metadata.update({k: v for k, v in extra.items() if v is not None})
    return MemoryInput(id=candidate.id,
                       type=candidate.type,
                       category=candidate.category,
                       content=candidate.content,
                       importance=candidate.importance,
                       confidence=candidate.confidence,
                       metadata=metadata,
                       expires_at=candidate.expires_at)


# ==================== Resolver ====================


class ConflictResolver:
    """Detects collisions with stored memories and decides how to resolve them."""

    def __init__(self, store, embedder=None, conflict_config: Optional[ConflictConfig] = None, clock: Clock = utc_now):
        """
        Initialize the resolver.

        Args:
            store: Memory store (OpenSearchClient or compatible)
            embedder: Embedding collaborator for semantic matching; skipped when None
            conflict_config: Conflict settings, defaults to the global config
            clock: Time source for audit timestamps
        """
        self.store = store
        self.embedder = embedder
        self.config = conflict_config or config.conflict
        self.clock = clock

    def detect_conflict(self, user_id: str, candidate: MemoryInput) -> ConflictDetection:
        """
        Check a candidate against the user's stored memories.

        Args:
            user_id: Owner
            candidate: Candidate memory

        Returns:
            ConflictDetection; when no conflict is found the dedupe key, if any, is still
            returned so it can be stored with the new memory
        """
        dedupe_key = None
        rule = find_dedupe_rule(user_id, candidate)
        if rule is not None:
            dedupe_key = dedupe_key_for(rule, user_id, candidate)
            existing = self.store.find_memory_by_metadata(user_id, candidate.type, 'dedupe_key', dedupe_key)
            if existing is not None:
                return ConflictDetection(has_conflict=True,
                                         existing=existing,
                                         conflict_type='key',
                                         suggested_strategy=rule.strategy,
                                         dedupe_key=dedupe_key)

        metadata = candidate.metadata or {}
        rule_key = metadata.get('rule_key')
        strategy = ConflictStrategy(metadata.get('conflict_strategy') or ConflictStrategy.KEEP_LATEST)
        if rule_key and strategy != ConflictStrategy.KEEP_BOTH:
            existing = self.store.find_memory_by_metadata(user_id, candidate.type, 'rule_key', rule_key)
            if existing is not None:
                return ConflictDetection(has_conflict=True,
                                         existing=existing,
                                         conflict_type='key',
                                         suggested_strategy=strategy,
                                         dedupe_key=dedupe_key)

        existing = self.store.find_exact_memory(user_id, candidate.type, candidate.content)
        if existing is not None:
            return ConflictDetection(has_conflict=True,
                                     existing=existing,
                                     conflict_type='exact',
                                     similarity=1.0,
                                     suggested_strategy=ConflictStrategy.KEEP_LATEST,
                                     dedupe_key=dedupe_key)

        similar = self._most_similar(user_id, candidate)
        if similar is not None:
            return ConflictDetection(has_conflict=True,
                                     existing=similar,
                                     conflict_type='semantic',
                                     similarity=similar.similarity,
                                     suggested_strategy=ConflictStrategy.MERGE,
                                     dedupe_key=dedupe_key)

        return ConflictDetection(has_conflict=False, suggested_strategy=ConflictStrategy.KEEP_BOTH, dedupe_key=dedupe_key)

    def _most_similar(self, user_id: str, candidate: MemoryInput) -> Optional[Memory]:
        if self.embedder is None:
            return None
        vector = self.embedder.embed(candidate.content)
        if not vector:
            return None
        results = self.store.vector_search(vector,
                                           user_id,
                                           top_k=1,
                                           types=[candidate.type],
                                           min_similarity=self.config.semantic_threshold)
        return results[0] if results else None

    def resolve_conflict(self,
                         candidate: MemoryInput,
                         detection: ConflictDetection,
                         strategy_override: Optional[ConflictStrategy] = None) -> ConflictResolution:
        """
        Decide what to do with a candidate given a detection result.

        Args:
            candidate: Candidate memory
            detection: Result of ``detect_conflict``
            strategy_override: Strategy to use instead of the suggested one

        Returns:
            ConflictResolution; UPDATE and MERGE carry the existing id on ``memory.id``
        """
        strategy = strategy_override or detection.suggested_strategy
        existing = detection.existing

        if existing is None:
            return ConflictResolution(action=ResolutionAction.CREATE,
                                      memory=_with_metadata(candidate, dedupe_key=detection.dedupe_key),
                                      reason='No conflict, creating new memory')

        if strategy == ConflictStrategy.KEEP_LATEST:
            resolution = self._keep_latest(candidate, existing, detection.dedupe_key)
        elif strategy == ConflictStrategy.KEEP_HIGHEST:
            resolution = self._keep_highest(candidate, existing, detection.dedupe_key)
        elif strategy == ConflictStrategy.KEEP_OLDEST:
            resolution = ConflictResolution(action=ResolutionAction.SKIP,
                                            memory=memory_as_input(existing),
                                            reason='Keeping the oldest memory')
        elif strategy == ConflictStrategy.MERGE:
            resolution = self._merge(candidate, existing, detection.dedupe_key)
        elif strategy == ConflictStrategy.ASK_USER:
            resolution = ConflictResolution(action=ResolutionAction.PENDING,
                                            memory=_with_metadata(candidate,
                                                                  dedupe_key=detection.dedupe_key,
                                                                  pending_conflict=True,
                                                                  conflict_with=existing.id),
                                            reason='Waiting for user confirmation',
                                            requires_confirmation=True)
        else:
            resolution = ConflictResolution(action=ResolutionAction.CREATE,
                                            memory=_with_metadata(candidate, dedupe_key=detection.dedupe_key),
                                            reason='Strategy allows keeping both memories')

        logger.debug(f'Conflict resolved with {strategy.value}: {resolution.action.value} ({resolution.reason})')
        return resolution

    def _keep_latest(self, candidate: MemoryInput, existing: Memory, dedupe_key: Optional[str]) -> ConflictResolution:
        memory = _with_metadata(candidate, dedupe_key=dedupe_key, previous_content=existing.content)
        memory.id = existing.id
        return ConflictResolution(action=ResolutionAction.UPDATE,
                                  memory=memory,
                                  reason=f'Keeping latest, replacing "{existing.content[:50]}"')

    def _keep_highest(self, candidate: MemoryInput, existing: Memory, dedupe_key: Optional[str]) -> ConflictResolution:
        new_value = extract_numeric_value(candidate.content)
        old_value = extract_numeric_value(existing.content)
        logger.debug(f'Comparing values: new={new_value}, existing={old_value}')

        if new_value > old_value:
            memory = _with_metadata(candidate, dedupe_key=dedupe_key, previous_value=old_value)
            memory.id = existing.id
            return ConflictResolution(action=ResolutionAction.UPDATE,
                                      memory=memory,
                                      reason=f'New value {new_value:g} > existing {old_value:g}, updating')

        return ConflictResolution(action=ResolutionAction.SKIP,
                                  memory=memory_as_input(existing),
                                  reason=f'Existing value {old_value:g} >= new {new_value:g}, keeping existing')

    def _merge(self, candidate: MemoryInput, existing: Memory, dedupe_key: Optional[str]) -> ConflictResolution:
        metadata = dict(existing.metadata or {})
        metadata.update(candidate.metadata or {})
        if dedupe_key:
            metadata['dedupe_key'] = dedupe_key
        metadata['merged_at'] = to_iso(self.clock())
        metadata['merge_count'] = int((existing.metadata or {}).get('merge_count') or 0) + 1

        candidate_importance = candidate.importance if candidate.importance is not None else 0.5
        merged = MemoryInput(id=existing.id,
                             type=existing.type,
                             category=existing.category or candidate.category,
                             content=merge_contents(existing.content, candidate.content),
                             importance=max(existing.importance, candidate_importance),
                             confidence=candidate.confidence,
                             metadata=metadata,
                             expires_at=existing.expires_at)
        return ConflictResolution(action=ResolutionAction.MERGE,
                                  memory=merged,
                                  reason='Merged both memories',
                                  merged_from=[existing.id, candidate.id or 'new'])

    def get_dedupe_rules(self) -> List[DedupeRule]:
        return list(DEDUPE_RULES)

    def get_pending_conflicts(self, user_id: str, limit: int = 100) -> List[Memory]:
        """Memories stored with an unconfirmed ASK_USER conflict."""
        return self.store.query_memories(user_id=user_id, metadata_flag='pending_conflict', limit=limit)


class NoopConflictResolver:
    """Resolver used when conflict checking is disabled: every candidate is created."""

    def detect_conflict(self, user_id: str, candidate: MemoryInput) -> ConflictDetection:
        return ConflictDetection(has_conflict=False, suggested_strategy=ConflictStrategy.KEEP_BOTH)

    def resolve_conflict(self,
                         candidate: MemoryInput,
                         detection: ConflictDetection,
                         strategy_override: Optional[ConflictStrategy] = None) -> ConflictResolution:
        return ConflictResolution(action=ResolutionAction.CREATE, memory=candidate, reason='Conflict checking disabled')

    def get_dedupe_rules(self) -> List[DedupeRule]:
        return []

    def get_pending_conflicts(self, user_id: str, limit: int = 100) -> List[Memory]:
        return []

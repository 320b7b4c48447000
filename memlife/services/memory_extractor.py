"""
Memory extraction engine.

Rules run first; the LLM is consulted only when rules produce fewer candidates than the
fallback threshold. Candidates from both sources are filtered by confidence, deduplicated
by key, re-scored and returned with per-run statistics.
"""

import time
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models.core import ExtractedEntity, ExtractedMemory, ExtractionResult, ExtractionStats, ScoreInput
from ..utils.config import ExtractionConfig, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import Clock, utc_now
from .extraction_rules import EXTRACTION_RULES, ExtractionRule, RuleMatch, find_matches
from .summarizer import Summarizer

logger = get_logger(__name__)


def candidate_key(memory: Any) -> str:
    """Dedupe key of a candidate or stored memory, falling back to type plus content."""
    key = getattr(memory, 'dedupe_key', None)
    if not key:
        metadata = getattr(memory, 'metadata', None) or {}
        key = metadata.get('rule_key')
    if key:
        return key
    memory_type = getattr(memory.type, 'value', memory.type)
    return f'{memory_type}:{memory.content}'


class MemoryExtractor:
    """Turns a raw message into candidate memories and entities."""

    def __init__(self,
                 scorer=None,
                 summarizer: Optional[Summarizer] = None,
                 extraction_config: Optional[ExtractionConfig] = None,
                 rules: Optional[List[ExtractionRule]] = None,
                 clock: Clock = utc_now):
        """
        Initialize the extractor.

        Args:
            scorer: Scorer used to re-score surviving candidates; skipped when None
            summarizer: LLM extraction collaborator; rule-only extraction when None
            extraction_config: Extraction settings, defaults to the global config
            rules: Rule table, defaults to the built-in rules
            clock: Time source for scoring
        """
        self.scorer = scorer
        self.summarizer = summarizer
        self.config = extraction_config or config.extraction
        self.rules = list(rules) if rules is not None else list(EXTRACTION_RULES)
        self.clock = clock
        logger.info(f'Initialized MemoryExtractor with {len(self.rules)} rules')

    def extract(self,
                content: str,
                existing_memories: Optional[Iterable[Any]] = None,
                skip_llm: bool = False,
                min_confidence: Optional[float] = None) -> ExtractionResult:
        """
        Extract memories and entities from a message.

        Args:
            content: Message text
            existing_memories: Memories already known for the user; their keys count as duplicates
            skip_llm: Never consult the LLM
            min_confidence: Drop candidates below this confidence (default from config)

        Returns:
            ExtractionResult with memories, entities and stats
        """
        start = time.time()
        stats = ExtractionStats()

        rule_memories, rule_entities, failed = self._extract_with_rules(content)
        stats.rule_matches = len(rule_memories)
        stats.validation_failed = failed

        llm_memories: List[ExtractedMemory] = []
        llm_entities: List[ExtractedEntity] = []
        if not skip_llm and self.config.llm_enabled and len(rule_memories) < self.config.llm_fallback_threshold:
            llm_memories, llm_entities = self._extract_with_llm(content)
            stats.llm_extractions = len(llm_memories)

        threshold = self.config.min_confidence if min_confidence is None else min_confidence
        memories, dropped, duplicates = self._process(rule_memories + llm_memories, existing_memories or [], threshold)
        stats.validation_failed += dropped
        stats.duplicates_removed = duplicates

        entities = self._unique_entities(rule_entities + llm_entities)
        stats.total_time_ms = int((time.time() - start) * 1000)

        logger.debug(f'Extraction complete: rules={stats.rule_matches}, llm={stats.llm_extractions}, '
                     f'final={len(memories)}, time={stats.total_time_ms}ms')
        return ExtractionResult(memories=memories, entities=entities, stats=stats)

    def _candidate(self, hit: RuleMatch, content: str) -> ExtractedMemory:
        rule = hit.rule
        metadata: Dict[str, Any] = {'raw_match': hit.match.group(0), 'normalized': hit.validation.normalized}
        metadata.update(hit.validation.metadata)
        return ExtractedMemory(type=rule.type,
                               category=rule.category,
                               content=hit.content,
                               importance=rule.importance_for(content),
                               confidence=self.config.rule_confidence,
                               source='rule',
                               rule_id=rule.id,
                               dedupe_key=hit.dedupe_key,
                               conflict_strategy=rule.conflict_strategy,
                               ttl_days=rule.ttl_days,
                               metadata=metadata)

    def _extract_with_rules(self, content: str) -> Tuple[List[ExtractedMemory], List[ExtractedEntity], int]:
        memories = []
        entities = []
        failed = 0

        for rule in self.rules:
            for hit in find_matches(rule, content):
                if not hit.validation.valid:
                    failed += 1
                    logger.debug(f'Validation failed for rule {rule.id}: {hit.validation.error}')
                    continue

                memories.append(self._candidate(hit, content))
                entity = hit.entity()
                if entity is not None:
                    entities.append(entity)

        return memories, entities, failed

    def _extract_with_llm(self, content: str) -> Tuple[List[ExtractedMemory], List[ExtractedEntity]]:
        if self.summarizer is None:
            return [], []

        memories, entities = self.summarizer.extract_from_message(content)
        candidates = [
            ExtractedMemory(type=memory.type,
                            category=memory.category,
                            content=memory.content,
                            importance=memory.importance if memory.importance is not None else 0.5,
                            confidence=self.config.llm_confidence,
                            source='llm') for memory in memories
        ]
        return candidates, entities

    def _process(self, memories: List[ExtractedMemory], existing: Iterable[Any],
                 min_confidence: float) -> Tuple[List[ExtractedMemory], int, int]:
        dropped = 0
        duplicates = 0
        existing_keys = {candidate_key(memory) for memory in existing}
        seen = set()
        unique = []

        for memory in memories:
            if memory.confidence < min_confidence:
                dropped += 1
                continue

            key = candidate_key(memory)
            if key in seen or key in existing_keys:
                duplicates += 1
                continue
            seen.add(key)
            unique.append(memory)

        if self.scorer is None:
            return unique, dropped, duplicates

        scored = []
        now = self.clock()
        for memory in unique:
            result = self.scorer.score(
                ScoreInput(type=memory.type,
                           content=memory.content,
                           importance=memory.importance,
                           confidence=memory.confidence,
                           created_at=now))
            metadata = dict(memory.metadata, score=result.total, tier=result.tier.value)
            scored.append(replace(memory, importance=result.importance, metadata=metadata))
        return scored, dropped, duplicates

    @staticmethod
    def _unique_entities(entities: List[ExtractedEntity]) -> List[ExtractedEntity]:
        seen = set()
        unique = []
        for entity in entities:
            key = (entity.type, entity.name)
            if key in seen:
                continue
            seen.add(key)
            unique.append(entity)
        return unique

    def get_rules(self) -> List[ExtractionRule]:
        return list(self.rules)

    def test_rule(self, rule_id: str, content: str) -> Dict[str, Any]:
        """
        Run a single rule against content, stopping at its first match.

        Returns:
            Dict with 'matched', plus 'validation' and, when valid, 'result'
        """
        rule = next((r for r in self.rules if r.id == rule_id), None)
        if rule is None:
            return {'matched': False}

        for hit in find_matches(rule, content, first_only=True):
            if not hit.validation.valid:
                return {'matched': True, 'validation': hit.validation}
            return {'matched': True, 'result': self._candidate(hit, content), 'validation': hit.validation}

        return {'matched': False}

"""
Memory scoring service.

Score = importance * W_i + freshness * W_f + confidence * W_c + access bonus, capped at 1.
"""

import math
import re
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models.core import MemoryTier, MemoryType, ScoreInput, ScoreResult, clamp01
from ..utils.config import ScorerConfig, ScoringWeights, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import Clock, days_between, utc_now

logger = get_logger(__name__)


@dataclass(frozen=True)
class ImportanceRule:
    """Base importance for a memory type plus conditional boosts."""
    base: float
    boosts: Tuple[Tuple[str, Callable[[ScoreInput], bool], float], ...]


def _content_matches(pattern: str, flags: int = 0) -> Callable[[ScoreInput], bool]:
    compiled = re.compile(pattern, flags)
    return lambda score_input: bool(compiled.search(score_input.content))


def _long_summary(score_input: ScoreInput) -> bool:
    metadata = score_input.metadata or {}
    return (metadata.get('message_count') or 0) > 20


IMPORTANCE_RULES: Dict[MemoryType, ImportanceRule] = {
    MemoryType.FACT:
    ImportanceRule(base=0.8,
                   boosts=(
                       ('GPA', _content_matches(r'GPA|绩点', re.IGNORECASE), 0.1),
                       ('standardized test', _content_matches(r'SAT|ACT', re.IGNORECASE), 0.1),
                       ('language test', _content_matches(r'TOEFL|IELTS|托福|雅思', re.IGNORECASE), 0.05),
                       ('high test score', _content_matches(r'1[45]\d{2}|1600'), 0.05),
                       ('high GPA', _content_matches(r'3\.[89]|4\.0'), 0.05),
                   )),
    MemoryType.PREFERENCE:
    ImportanceRule(base=0.6,
                   boosts=(
                       ('explicit statement', _content_matches(r'明确|确定|决定'), 0.1),
                       ('early decision', _content_matches(r'ED|早申'), 0.15),
                       ('major', _content_matches(r'专业|major', re.IGNORECASE), 0.1),
                   )),
    MemoryType.DECISION:
    ImportanceRule(base=0.9,
                   boosts=(
                       ('binding decision', _content_matches(r'ED|绑定'), 0.1),
                       ('final decision', _content_matches(r'最终|确定'), 0.05),
                   )),
    MemoryType.SUMMARY:
    ImportanceRule(base=0.6, boosts=(('long conversation', _long_summary, 0.1),)),
    MemoryType.FEEDBACK:
    ImportanceRule(base=0.4, boosts=(('strong feedback', _content_matches(r'非常|特别|很'), 0.1),)),
}


class MemoryScorer:
    """Multi-factor memory scorer with tier assignment."""

    def __init__(self, scorer_config: Optional[ScorerConfig] = None, clock: Clock = utc_now):
        self.config = scorer_config or config.scorer
        self.clock = clock

    def score(self, score_input: ScoreInput) -> ScoreResult:
        """
        Compute the composite score of a memory.

        Args:
            score_input: Memory attributes to score

        Returns:
            ScoreResult with components, tier and decay/archive hints
        """
        importance = self.importance(score_input)
        freshness = self.freshness(score_input.created_at)
        confidence = clamp01(score_input.confidence)
        access_bonus = self.access_bonus(score_input.access_count)

        total = self._combine(importance, freshness, confidence, access_bonus)
        return ScoreResult(total=total,
                           importance=importance,
                           freshness=freshness,
                           confidence=confidence,
                           access_bonus=access_bonus,
                           tier=self.tier_for(total, score_input.type),
                           should_decay=freshness < 0.5 and importance < 0.7,
                           should_archive=freshness < 0.2 and total < 0.3)

    def score_batch(self, inputs: List[ScoreInput]) -> List[ScoreResult]:
        return [self.score(score_input) for score_input in inputs]

    def importance(self, score_input: ScoreInput) -> float:
        """Rule-based importance averaged with the input importance.

        Types without a rule keep the input importance.
        """
        rule = IMPORTANCE_RULES.get(score_input.type)
        if rule is None:
            return clamp01(score_input.importance)

        importance = rule.base
        for description, condition, boost in rule.boosts:
            if condition(score_input):
                importance += boost
                logger.debug(f'Applied boost: {description} (+{boost})')

        return clamp01((importance + score_input.importance) / 2)

    def freshness(self, created_at: datetime) -> float:
        """Exponential freshness exp(-lambda * age in days), in [0, 1]."""
        age_days = max(0.0, days_between(created_at, self.clock()))
        return clamp01(math.exp(-self.config.decay_rate * age_days))

    def access_bonus(self, access_count: int) -> float:
        return min((access_count or 0) * self.config.access_boost_rate, self.config.max_access_bonus)

    @staticmethod
    def tier_for(total: float, memory_type: MemoryType) -> MemoryTier:
        # Decisions are always kept long term
        if memory_type == MemoryType.DECISION:
            return MemoryTier.LONG
        if total >= 0.8:
            return MemoryTier.LONG
        if total >= 0.5:
            return MemoryTier.SHORT
        if total >= 0.2:
            return MemoryTier.WORKING
        return MemoryTier.ARCHIVE

    def predict_future_score(self, score_input: ScoreInput, days_from_now: float) -> float:
        """Projected total score with freshness evaluated ``days_from_now`` days ahead."""
        future_freshness = clamp01(math.exp(-self.config.decay_rate * days_from_now))
        return self._combine(self.importance(score_input), future_freshness, clamp01(score_input.confidence),
                             self.access_bonus(score_input.access_count))

    def _combine(self, importance: float, freshness: float, confidence: float, access_bonus: float) -> float:
        weights = self.config.weights
        return clamp01(importance * weights.importance + freshness * weights.freshness + confidence * weights.confidence +
                       access_bonus)

    def get_config(self) -> Dict[str, Any]:
        return asdict(self.config)

    def update_config(self, **changes) -> Dict[str, Any]:
        """Replace scorer settings; ``weights`` may be a partial dict."""
        weights = changes.pop('weights', None)
        if isinstance(weights, dict):
            weights = replace(self.config.weights, **weights)
        if isinstance(weights, ScoringWeights):
            changes['weights'] = weights
        self.config = replace(self.config, **changes)
        logger.info(f'Scorer config updated: {changes}')
        return self.get_config()


class NoopScorer:
    """Scorer used when scoring is disabled: importance passes through unchanged."""

    def score(self, score_input: ScoreInput) -> ScoreResult:
        importance = clamp01(score_input.importance)
        return ScoreResult(total=importance,
                           importance=importance,
                           freshness=1.0,
                           confidence=clamp01(score_input.confidence),
                           access_bonus=0.0,
                           tier=MemoryTier.LONG if score_input.type == MemoryType.DECISION else MemoryTier.SHORT,
                           should_decay=False,
                           should_archive=False)

    def score_batch(self, inputs: List[ScoreInput]) -> List[ScoreResult]:
        return [self.score(score_input) for score_input in inputs]

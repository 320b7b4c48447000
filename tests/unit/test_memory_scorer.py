"""Tests for memory_scorer.py: composite score, tiers and config."""

import itertools
import math
from datetime import timedelta

import pytest

from memlife.models.core import MemoryTier, MemoryType, ScoreInput
from memlife.services.memory_scorer import MemoryScorer, NoopScorer


def _input(clock, memory_type=MemoryType.FACT, content='likes small classes', importance=0.5, confidence=0.8,
           age_days=0, access_count=0, metadata=None):
    created_at = clock()
    if age_days:
        created_at = created_at - timedelta(days=age_days)
    return ScoreInput(type=memory_type,
                      content=content,
                      importance=importance,
                      confidence=confidence,
                      created_at=created_at,
                      access_count=access_count,
                      metadata=metadata or {})


@pytest.fixture
def scorer(clock):
    return MemoryScorer(clock=clock)


class TestScoreBounds:
    """Every combination of inputs stays inside [0, 1]."""

    def test_total_in_unit_interval(self, scorer, clock):
        grid = itertools.product(list(MemoryType), (0.0, 0.5, 1.0), (0.0, 1.0), (0, 5, 1000), (0, 30, 5000))
        for memory_type, importance, confidence, access_count, age_days in grid:
            result = scorer.score(
                _input(clock, memory_type, 'SAT 1550 GPA 3.9 ED 最终', importance, confidence, age_days, access_count))
            assert 0.0 <= result.total <= 1.0
            for value in result.components.values():
                assert 0.0 <= value <= 1.0

    def test_access_bonus_capped(self, scorer):
        assert scorer.access_bonus(0) == 0
        assert scorer.access_bonus(5) == pytest.approx(0.1)
        assert scorer.access_bonus(1000) == pytest.approx(0.2)


class TestTiers:

    def test_decision_always_long(self, scorer, clock):
        result = scorer.score(_input(clock, MemoryType.DECISION, 'maybe', importance=0.0, confidence=0.0,
                                     age_days=5000))
        assert result.tier == MemoryTier.LONG

    @pytest.mark.parametrize('total, tier', [
        (0.95, MemoryTier.LONG),
        (0.8, MemoryTier.LONG),
        (0.6, MemoryTier.SHORT),
        (0.3, MemoryTier.WORKING),
        (0.1, MemoryTier.ARCHIVE),
    ])
    def test_thresholds(self, total, tier):
        assert MemoryScorer.tier_for(total, MemoryType.FACT) == tier


class TestFreshness:

    def test_strictly_decreasing_with_age(self, scorer, clock):
        values = [scorer.freshness(clock() - timedelta(days=days)) for days in (0, 1, 10, 100, 1000)]
        assert values[0] == pytest.approx(1.0)
        assert all(a > b for a, b in zip(values, values[1:]))

    def test_exponential_shape(self, scorer, clock):
        assert scorer.freshness(clock() - timedelta(days=100)) == pytest.approx(math.exp(-1.0))

    def test_future_dates_are_fresh(self, scorer, clock):
        assert scorer.freshness(clock() + timedelta(days=3)) == pytest.approx(1.0)


class TestImportance:

    def test_gpa_fact_boosted(self, scorer, clock):
        # base 0.8 + GPA 0.1 + high GPA 0.05, averaged with the input 0.9
        importance = scorer.importance(_input(clock, content='GPA: 3.80', importance=0.9))
        assert importance == pytest.approx((0.95 + 0.9) / 2)

    def test_feedback_base(self, scorer, clock):
        assert scorer.importance(_input(clock, MemoryType.FEEDBACK, 'ok', importance=0.4)) == pytest.approx(0.4)

    def test_long_summary_boost(self, scorer, clock):
        short = scorer.importance(_input(clock, MemoryType.SUMMARY, 'chat', metadata={'message_count': 5}))
        long = scorer.importance(_input(clock, MemoryType.SUMMARY, 'chat', metadata={'message_count': 25}))
        assert long == pytest.approx(short + 0.05)


class TestPrediction:

    def test_today_matches_current_score(self, scorer, clock):
        score_input = _input(clock, importance=0.7)
        assert scorer.predict_future_score(score_input, 0) == pytest.approx(scorer.score(score_input).total)

    def test_future_score_declines(self, scorer, clock):
        score_input = _input(clock, importance=0.7)
        assert scorer.predict_future_score(score_input, 90) < scorer.predict_future_score(score_input, 10)


class TestConfig:

    def test_partial_weights_update(self, scorer):
        updated = scorer.update_config(weights={'importance': 0.6}, decay_rate=0.02)
        assert updated['weights']['importance'] == 0.6
        assert updated['weights']['freshness'] == 0.3
        assert updated['decay_rate'] == 0.02
        assert scorer.config.decay_rate == 0.02


class TestNoopScorer:

    def test_passes_importance_through(self, clock):
        result = NoopScorer().score(_input(clock, importance=0.42, age_days=400))
        assert result.total == pytest.approx(0.42)
        assert result.importance == pytest.approx(0.42)
        assert result.tier == MemoryTier.SHORT
        assert not result.should_archive

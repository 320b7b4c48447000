"""Tests for extraction_rules.py: validators, GPA scales and rule matching."""

import pytest

from memlife.services.extraction_rules import (GPA_SCALES, RULES_BY_ID, VALIDATORS, detect_gpa_scale, find_matches,
                                               validate_gpa, validate_ielts)


class TestGPAScale:

    @pytest.mark.parametrize('value, context, scale', [
        (3.8, '3.8/4.0', '4.0制'),
        (4.1, '4.1/4.3', '4.3制'),
        (4.5, '绩点 4.5 满分5.0', '5.0制'),
        (8.7, '', '10分制'),
        (88, '', '100分制'),
        (3.5, '', '4.0制'),
    ])
    def test_detects_scale(self, value, context, scale):
        assert detect_gpa_scale(value, context).name == scale

    def test_four_point_conversion(self):
        assert GPA_SCALES[2].to_four_point(4.5) == pytest.approx(3.6)


class TestValidateGPA:

    def test_four_point_normalized_to_two_decimals(self):
        result = validate_gpa('3.8', 'GPA 是 3.8/4.0')
        assert result.valid
        assert result.normalized == '3.80'
        assert result.metadata['scale'] == '4.0制'
        assert result.metadata['original_value'] == 3.8

    def test_other_scales_report_equivalent(self):
        result = validate_gpa('4.5', '绩点 4.5/5.0')
        assert result.valid
        assert result.normalized == '4.50 (5.0制, 约合 3.60/4.0)'
        assert result.metadata['normalized_value'] == pytest.approx(3.6)

    def test_value_above_declared_scale_rejected(self):
        result = validate_gpa('4.5', '4.5/4.0')
        assert not result.valid
        assert '4.0制' in result.error

    def test_rejects_garbage(self):
        assert not validate_gpa('abc').valid
        assert not validate_gpa('-1').valid
        assert not validate_gpa('250').valid


class TestValidators:

    @pytest.mark.parametrize('name, value, valid', [
        ('sat', '1450', True),
        ('sat', '1700', False),
        ('sat', '300', False),
        ('act', '36', True),
        ('act', '37', False),
        ('toefl', '110', True),
        ('toefl', '121', False),
        ('rank', '0', False),
        ('school', 'M', False),
        ('school', 'Stanford', True),
        ('text', '   ', False),
    ])
    def test_ranges(self, name, value, valid):
        assert VALIDATORS[name](value, value).valid is valid

    def test_ielts_one_decimal(self):
        assert validate_ielts('7').normalized == '7.0'
        assert not validate_ielts('9.5').valid


class TestRules:

    def test_sat_rule_renders_content_and_key(self):
        hits = list(find_matches(RULES_BY_ID['sat'], '我的 SAT 考了 1520'))
        assert hits
        assert hits[0].content == 'SAT: 1520'
        assert hits[0].dedupe_key == 'user:sat'

    def test_invalid_hits_are_still_reported(self):
        hits = list(find_matches(RULES_BY_ID['gpa'], 'GPA: 4.6/4.0'))
        assert hits
        assert not any(hit.validation.valid for hit in hits)

    def test_first_only_stops_after_one_hit(self):
        hits = list(find_matches(RULES_BY_ID['gpa'], '我的 GPA 是 3.8/4.0', first_only=True))
        assert len(hits) == 1

    def test_importance_boosts_are_capped(self):
        rule = RULES_BY_ID['sat']
        assert rule.importance_for('SAT 1550 最高') == pytest.approx(0.97)
        assert rule.importance_for('sat 1200') == pytest.approx(0.9)

    def test_school_rule_emits_entity(self):
        hits = [hit for hit in find_matches(RULES_BY_ID['target_school'], '我想申请斯坦福大学') if hit.validation.valid]
        assert hits
        entity = hits[0].entity()
        assert entity.name == hits[0].value
        assert entity.attributes == {'interest': 'target'}
        assert entity.source == 'rule'

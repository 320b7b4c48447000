"""Tests for neptune_client.py row mapping, name matching and connection retry."""

from unittest.mock import MagicMock, patch

import pytest

from memlife.models.core import Entity, EntityType
from memlife.utils.config import NeptuneConfig
from memlife.utils.neptune_client import NeptuneClient, NeptuneError, entity_from_row, name_matches
from memlife.utils.timestamp_utils import to_iso


@pytest.fixture
def neptune():
    return NeptuneClient(NeptuneConfig(endpoint='neptune.example.com', port=8182, region='us-east-1'), g=MagicMock())


class TestEntityFromRow:

    def test_value_map_is_unwrapped(self, clock):
        row = {
            'props': {
                'id': ['e1'],
                'user_id': ['u1'],
                'type': ['SCHOOL'],
                'name': ['MIT'],
                'description': [''],
                'attributes': ['{"interest": "target"}'],
                'created_at': [to_iso(clock())],
                'updated_at': [to_iso(clock())]
            },
            'relations': [{
                'relation': 'located_in',
                'target_name': 'Boston',
                'target_type': 'TOPIC'
            }, {
                'target_name': 'CS'
            }]
        }

        entity = entity_from_row(row)

        assert entity.id == 'e1'
        assert entity.type == EntityType.SCHOOL
        assert entity.description is None
        assert entity.attributes == {'interest': 'target'}
        assert entity.created_at == clock()
        assert [(r.target_name, r.relation, r.target_type) for r in entity.relations] == [
            ('Boston', 'located_in', EntityType.TOPIC), ('CS', 'related_to', None)
        ]


class TestNameMatches:

    @pytest.mark.parametrize('query, expected', [
        ('mit', True),
        ('我想了解 MIT 的计算机专业', True),
        ('Boston', True),
        ('Stanford', False),
        ('  ', False),
    ])
    def test_both_directions(self, query, expected):
        entity = Entity(user_id='u1', type=EntityType.SCHOOL, name='MIT', description='School in Boston')
        assert name_matches(entity, query) is expected


class TestSearchEntities:

    def test_fixed_similarity_and_limit(self, neptune):
        entities = [Entity(user_id='u1', type=EntityType.SCHOOL, name=name) for name in ('MIT', 'Stanford', 'Tufts')]
        with patch.object(neptune, 'get_entities', return_value=entities):
            matches = neptune.search_entities('u1', '比较 MIT 和 Tufts', limit=1)

        assert [e.name for e in matches] == ['MIT']
        assert matches[0].similarity == 0.5


class TestRetry:

    def test_reconnects_on_closing_transport(self, neptune):
        neptune.g.V.side_effect = [RuntimeError('Cannot write to closing transport'), MagicMock()]
        fresh = MagicMock()
        fresh.V.return_value.has_label.return_value.has.return_value.count.return_value.next.return_value = 3

        def reconnect():
            neptune.g = fresh

        with patch.object(neptune, '_connect', side_effect=reconnect):
            assert neptune.count_entities('u1') == 3

    def test_other_errors_are_wrapped(self, neptune):
        neptune.g.V.side_effect = RuntimeError('boom')
        with pytest.raises(NeptuneError):
            neptune.count_entities('u1')

"""
Tests for delegate response parsing
"""
import pytest

from memory_core.config.settings import Settings
from memory_core.errors import ClassificationError
from memory_core.models.entity import Entity, ImportanceTier
from memory_core.services.llm import (
    create_openai_delegates,
    entity_embedding_text,
    parse_classification,
    parse_json_object,
)


class TestParseJsonObject:

    def test_fenced_response(self):
        raw = '```json\n{"importance": "high"}\n```'
        assert parse_json_object(raw) == {'importance': 'high'}

    def test_prose_around_object(self):
        raw = 'Sure! Here you go: {"a": 1, "b": {"c": 2}} Hope that helps.'
        assert parse_json_object(raw) == {'a': 1, 'b': {'c': 2}}

    @pytest.mark.parametrize('raw', ['', None, 'no json here', '[1, 2, 3]'])
    def test_unusable_responses_raise(self, raw):
        with pytest.raises(ValueError):
            parse_json_object(raw)


class TestParseClassification:

    def test_full_response(self):
        tier, score, rationale = parse_classification(
            '{"importance": "HIGH", "importance_score": 0.85, "reasoning": "close collaborator"}'
        )

        assert tier == ImportanceTier.HIGH
        assert score == pytest.approx(0.85)
        assert rationale == 'close collaborator'

    def test_missing_score_uses_tier_base(self):
        tier, score, _ = parse_classification('{"importance": "low"}')

        assert tier == ImportanceTier.LOW
        assert score == pytest.approx(0.3)

    def test_bad_score_uses_tier_base(self):
        _, score, _ = parse_classification('{"importance": "medium", "importance_score": "lots"}')
        assert score == pytest.approx(0.5)

    def test_score_is_clamped(self):
        _, score, _ = parse_classification('{"importance": "critical", "importance_score": 4}')
        assert score == 1.0

    def test_unknown_tier_raises(self):
        with pytest.raises(ClassificationError):
            parse_classification('{"importance": "enormous"}')

    def test_garbage_raises(self):
        with pytest.raises(ClassificationError):
            parse_classification('I think this one matters a lot')


def test_embedding_text_includes_names_and_context():
    entity = Entity(
        id='', owner_id='o', name='Sarah', aliases=['Sara'], entity_type='person',
        relationship='sister', summary='Lives in Lisbon.',
    )

    text = entity_embedding_text(entity)

    assert text == 'Sarah (also Sara) [person] sister Lives in Lisbon.'


def test_no_api_key_means_no_delegates():
    assert create_openai_delegates(Settings(_env_file=None, openai_api_key='')) == {}

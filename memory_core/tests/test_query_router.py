"""
Tests for intent detection and the specialized read paths
"""
from datetime import datetime, timedelta, timezone

import pytest

from memory_core.models.entity import EntityStatus, EntityType, MemoryType, Sensitivity
from memory_core.models.relationships import Inference
from memory_core.services.query_router import (
    QueryIntent,
    classify_trend,
    detect_intent,
    timeframe_window,
)
from memory_core.services.retrieval import SearchFilters
from memory_core.tests.fakes import add_entity


# ============================================================================
# INTENT DETECTION
# ============================================================================

class TestDetectIntent:
    """First matching pattern wins"""

    @pytest.mark.parametrize('query, intent', [
        ("What do you know about me?", QueryIntent.SELF_SUMMARY),
        ("tell me about myself", QueryIntent.SELF_SUMMARY),
        ("what do you know about Sarah", QueryIntent.ENTITY_SUMMARY),
        ("who knows Marcus", QueryIntent.RELATIONSHIP_QUERY),
        ("how is Ana connected to Dev", QueryIntent.RELATIONSHIP_QUERY),
        ("what happened yesterday", QueryIntent.TEMPORAL),
        ("where did I used to work", QueryIntent.HISTORICAL),
        ("how has my diet changed", QueryIntent.HISTORICAL),
        ("restaurants not italian", QueryIntent.NEGATION),
        ("how do I feel about work", QueryIntent.SENTIMENT_TREND),
        ("what did I decide about the apartment", QueryIntent.DECISIONS),
        ("show my goals", QueryIntent.GOALS),
        ("coffee shops in Lisbon", QueryIntent.STANDARD),
        ("nothing planned", QueryIntent.STANDARD),
    ])
    def test_intents(self, query, intent):
        assert detect_intent(query).intent == intent

    def test_entity_summary_captures_the_name(self):
        assert detect_intent("What do you remember about Sarah Chen").entity == 'sarah chen'

    def test_negation_captures_the_excluded_term(self):
        assert detect_intent("friends except Marcus").exclude == 'marcus'

    @pytest.mark.parametrize('query, key', [
        ("what happened yesterday", 'yesterday'),
        ("notes from last month", 'month'),
        ("who did I see recently", 'recently'),
        ("what did I do this week", 'week'),
    ])
    def test_timeframes(self, query, key):
        assert detect_intent(query).timeframe == key


def test_timeframe_windows():
    now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    start, end = timeframe_window('yesterday', now)
    assert start == datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 1, 23, 59, 59, 999999, tzinfo=timezone.utc)

    assert timeframe_window('month', now) == (now - timedelta(days=30), now)
    assert timeframe_window('recently', now) == (now - timedelta(days=3), now)
    assert timeframe_window('week', now) == (now - timedelta(days=7), now)


@pytest.mark.parametrize('current, previous, trend', [
    (0.6, 0.5, 'improving'),
    (0.4, 0.5, 'declining'),
    (0.52, 0.5, 'stable'),
    (0.5, None, 'stable'),
    (-0.2, -0.5, 'improving'),
])
def test_classify_trend(current, previous, trend):
    assert classify_trend(current, previous)[0] == trend


# ============================================================================
# HANDLERS
# ============================================================================

class TestEntityLookup:

    @pytest.mark.asyncio
    async def test_fuzzy_match_on_names_and_aliases(self, core, store):
        sarah = await add_entity(store, name='Sarah Chen', aliases=['Sara'])
        marcus = await add_entity(store, name='Marcus')

        assert (await core.router.find_entity('owner_1', 'sarah')).id == sarah.id
        assert (await core.router.find_entity('owner_1', 'Marcsu')).id == marcus.id
        assert await core.router.find_entity('owner_1', 'Zebediah') is None

    @pytest.mark.asyncio
    async def test_merged_names_resolve_to_the_keeper(self, core, store):
        robert = await add_entity(store, name='Robert')
        await add_entity(store, name='Bobby', status=EntityStatus.ARCHIVED, superseded_by=robert.id)

        assert (await core.router.find_entity('owner_1', 'Bobby')).id == robert.id


class TestRoutedQueries:

    @pytest.mark.asyncio
    async def test_self_summary(self, core, store):
        empty = await core.query('owner_1', 'what do you know about me')
        assert empty == {'type': 'self_summary', 'found': False}

        await add_entity(store, name='Sarah', entity_type=EntityType.PERSON)
        await add_entity(store, name='Run a marathon', memory_type=MemoryType.GOAL)
        await add_entity(store, name='Oat milk', memory_type=MemoryType.PREFERENCE)

        result = await core.query('owner_1', 'what do you know about me')

        assert result['found']
        assert result['stats']['total_memories'] == 3
        assert result['stats']['top_people'] == ['Sarah']
        assert [g['name'] for g in result['goals']] == ['Run a marathon']
        assert [p['name'] for p in result['preferences']] == ['Oat milk']

    @pytest.mark.asyncio
    async def test_entity_summary_with_sentiment_trend(self, core, clock):
        await core.ingest('owner_1', {
            'entities': [{'name': 'Sarah', 'entity_type': 'person', 'sentiment': 0.4, 'context': 'argued about rent'}],
            'facts': [{'entity_name': 'Sarah', 'predicate': 'lives_in', 'object': 'Lisbon'}],
            'relationships': [{'source': 'Sarah', 'target': 'Marcus', 'relationship_type': 'knows'}],
        })
        clock.advance(days=20)
        await core.ingest('owner_1', {
            'entities': [{'name': 'Sarah', 'sentiment': 0.8, 'context': 'great dinner'}],
        })

        result = await core.query('owner_1', 'what do you know about Sarah')

        assert result['type'] == 'entity_summary'
        assert result['found']
        assert result['entity']['name'] == 'Sarah'
        assert result['facts'][0]['object'] == 'Lisbon'
        assert result['relationships'][0]['entity'] == 'Marcus'
        assert result['recent_context'] == ['argued about rent', 'great dinner']
        assert result['sentiment_trend']['trend'] == 'improving'
        assert result['sentiment_trend']['change_percent'] == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_unknown_entity_summary(self, core):
        result = await core.query('owner_1', 'what do you know about Zebediah')

        assert result == {'type': 'entity_summary', 'found': False, 'entity': 'zebediah'}

    @pytest.mark.asyncio
    async def test_relationship_query_traverses_two_hops(self, core):
        await core.ingest('owner_1', {
            'relationships': [
                {'source': 'Marcus', 'target': 'Sarah', 'relationship_type': 'knows'},
                {'source': 'Sarah', 'target': 'Lena', 'relationship_type': 'sibling_of'},
                {'source': 'Lena', 'target': 'Omar', 'relationship_type': 'knows'},
            ],
        })

        result = await core.query('owner_1', 'who knows Marcus')

        assert result['primary_entity'] == 'Marcus'
        assert [(c['entity'], c['depth']) for c in result['connections']] == [('Sarah', 1), ('Lena', 2)]
        assert result['connections'][1]['path'] == ['Marcus', 'Sarah', 'Lena']
        assert result['connections'][1]['relationships'] == ['knows', 'sibling_of']

    @pytest.mark.asyncio
    async def test_temporal(self, core, store, clock):
        await add_entity(store, name='Recent', updated_at=clock() - timedelta(days=2))
        await add_entity(store, name='Older', updated_at=clock() - timedelta(days=10))

        result = await core.query('owner_1', 'what happened last week')

        assert result['type'] == 'temporal'
        assert [m['name'] for m in result['memories']] == ['Recent']

    @pytest.mark.asyncio
    async def test_historical_splits_current_and_past(self, core, store, embedder):
        embedder.register('work', [1.0, 0.0, 0.0])
        await add_entity(store, name='Acme Corp', is_historical=True, embedding=[1.0, 0.0, 0.0])
        await add_entity(store, name='Globex', embedding=[0.9, 0.1, 0.0])

        result = await core.query('owner_1', 'where did I used to work')

        assert [r['name'] for r in result['current']] == ['Globex']
        assert [r['name'] for r in result['historical']] == ['Acme Corp']

    @pytest.mark.asyncio
    async def test_negation_excludes_the_term(self, core, store, embedder):
        embedder.register('restaurants', [1.0, 0.0, 0.0])
        await add_entity(store, name='Luigi Italian Kitchen', embedding=[1.0, 0.0, 0.0])
        await add_entity(store, name='Sushi Bar', embedding=[0.9, 0.2, 0.0])

        result = await core.query('owner_1', 'restaurants not italian')

        assert result['excluded'] == 'italian'
        assert [r['name'] for r in result['results']] == ['Sushi Bar']

    @pytest.mark.asyncio
    async def test_sentiment_trends_across_people(self, core, clock):
        await core.ingest('owner_1', {'entities': [
            {'name': 'Sarah', 'entity_type': 'person', 'sentiment': 0.5},
            {'name': 'Marcus', 'entity_type': 'person', 'sentiment': 0.5},
            {'name': 'Lena', 'entity_type': 'person'},
        ]})
        clock.advance(days=15)
        await core.ingest('owner_1', {'entities': [
            {'name': 'Sarah', 'sentiment': 0.9},
            {'name': 'Marcus', 'sentiment': 0.1},
        ]})

        result = await core.query('owner_1', 'sentiment overview')

        assert result['type'] == 'sentiment_trend'
        assert result['improving'] == ['Sarah']
        assert result['declining'] == ['Marcus']
        assert 'Lena' not in result['stable']

    @pytest.mark.asyncio
    async def test_decisions_and_goals(self, core, store, clock):
        await add_entity(store, name='Rent the flat', memory_type=MemoryType.DECISION, created_at=clock())
        await add_entity(store, name='Learn Portuguese', memory_type=MemoryType.GOAL,
                         expires_at=clock() + timedelta(days=90))
        await add_entity(store, name='Run 10k', memory_type=MemoryType.GOAL, is_historical=True)

        decisions = await core.query('owner_1', 'what did I decide')
        goals = await core.query('owner_1', 'my goals')

        assert [d['name'] for d in decisions['decisions']] == ['Rent the flat']
        assert [g['name'] for g in goals['active']] == ['Learn Portuguese']
        assert goals['active'][0]['deadline'] is not None
        assert [g['name'] for g in goals['achieved']] == ['Run 10k']

    @pytest.mark.asyncio
    async def test_standard_search(self, core, store, embedder):
        embedder.register('coffee', [1.0, 0.0, 0.0])
        await add_entity(store, name='Fabrica Coffee', embedding=[1.0, 0.0, 0.0])

        result = await core.query('owner_1', 'coffee places')

        assert result['type'] == 'standard'
        assert result['count'] == 1
        assert result['results'][0]['name'] == 'Fabrica Coffee'
        assert not result['degraded']


# ============================================================================
# SENSITIVITY CEILING
# ============================================================================

PRIVATE_NOTE = {
    'entities': [
        {'name': 'Sarah', 'entity_type': 'person', 'sentiment': 0.5},
        {'name': 'Dr Okafor', 'entity_type': 'person', 'relationship': 'therapist',
         'sensitivity': 'private', 'sentiment': 0.3},
        {'name': 'Lena', 'entity_type': 'person'},
    ],
    'facts': [{'entity_name': 'Sarah', 'predicate': 'referred_to', 'object': 'Dr Okafor', 'object_is_entity': True}],
    'relationships': [
        {'source': 'Sarah', 'target': 'Dr Okafor', 'relationship_type': 'knows'},
        {'source': 'Dr Okafor', 'target': 'Lena', 'relationship_type': 'knows'},
    ],
}

NORMAL_ONLY = SearchFilters(sensitivity_ceiling=Sensitivity.NORMAL)
EVERYTHING = SearchFilters(sensitivity_ceiling=Sensitivity.PRIVATE)


def names(items):
    return [i['name'] for i in items]


class TestSensitivityCeiling:
    """A private entity never leaves a handler whose filters stop at normal"""

    @pytest.mark.asyncio
    async def test_self_summary(self, core):
        await core.ingest('owner_1', PRIVATE_NOTE)

        hidden = await core.query('owner_1', 'what do you know about me', NORMAL_ONLY)
        shown = await core.query('owner_1', 'what do you know about me', EVERYTHING)

        assert 'Dr Okafor' not in names(hidden['top_entities'])
        assert hidden['stats']['total_memories'] == 2
        assert 'Dr Okafor' in shown['stats']['top_people']

    @pytest.mark.asyncio
    async def test_entity_summary_of_private_entity(self, core):
        await core.ingest('owner_1', PRIVATE_NOTE)

        hidden = await core.query('owner_1', 'what do you know about Okafor', NORMAL_ONLY)
        shown = await core.query('owner_1', 'what do you know about Okafor', EVERYTHING)

        assert hidden['found'] is False
        assert shown['entity']['relationship'] == 'therapist'

    @pytest.mark.asyncio
    async def test_entity_summary_hides_private_neighbors_and_facts(self, core):
        await core.ingest('owner_1', PRIVATE_NOTE)

        hidden = await core.query('owner_1', 'what do you know about Sarah', NORMAL_ONLY)
        shown = await core.query('owner_1', 'what do you know about Sarah', EVERYTHING)

        assert hidden['relationships'] == []
        assert hidden['facts'] == []
        assert [r['entity'] for r in shown['relationships']] == ['Dr Okafor']
        assert [f['object'] for f in shown['facts']] == ['Dr Okafor']

    @pytest.mark.asyncio
    async def test_merged_name_of_hidden_keeper_is_not_found(self, core, store):
        keeper = await add_entity(store, name='Dr Okafor', sensitivity=Sensitivity.PRIVATE)
        await add_entity(store, name='Okafor', status=EntityStatus.ARCHIVED, superseded_by=keeper.id)

        assert await core.router.find_entity('owner_1', 'Okafor', NORMAL_ONLY) is None
        assert (await core.router.find_entity('owner_1', 'Okafor', EVERYTHING)).id == keeper.id

    @pytest.mark.asyncio
    async def test_relationship_query(self, core):
        await core.ingest('owner_1', PRIVATE_NOTE)

        from_sarah = await core.query('owner_1', 'who knows Sarah', NORMAL_ONLY)
        from_okafor = await core.query('owner_1', 'who knows Dr Okafor', NORMAL_ONLY)
        everything = await core.query('owner_1', 'who knows Sarah', EVERYTHING)

        # Lena is only reachable through the hidden therapist
        assert from_sarah['connections'] == []
        assert from_okafor['found'] is False
        assert [c['entity'] for c in everything['connections']] == ['Dr Okafor', 'Lena']

    @pytest.mark.asyncio
    async def test_temporal(self, core):
        await core.ingest('owner_1', PRIVATE_NOTE)

        result = await core.query('owner_1', 'who did I see recently', NORMAL_ONLY)

        assert sorted(names(result['memories'])) == ['Lena', 'Sarah']

    @pytest.mark.asyncio
    async def test_sentiment_trends(self, core):
        await core.ingest('owner_1', PRIVATE_NOTE)

        hidden = await core.query('owner_1', 'sentiment overview', NORMAL_ONLY)
        shown = await core.query('owner_1', 'sentiment overview', EVERYTHING)

        assert [t['entity'] for t in hidden['trends']] == ['Sarah']
        assert sorted(t['entity'] for t in shown['trends']) == ['Dr Okafor', 'Sarah']

    @pytest.mark.asyncio
    async def test_decisions_and_goals(self, core, store):
        await add_entity(store, name='Start therapy', memory_type=MemoryType.DECISION, sensitivity=Sensitivity.PRIVATE)
        await add_entity(store, name='Rent the flat', memory_type=MemoryType.DECISION)
        await add_entity(store, name='Manage anxiety', memory_type=MemoryType.GOAL, sensitivity=Sensitivity.SENSITIVE)
        await add_entity(store, name='Quit therapy', memory_type=MemoryType.GOAL, is_historical=True,
                         sensitivity=Sensitivity.PRIVATE)

        decisions = await core.query('owner_1', 'what did I decide', NORMAL_ONLY)
        goals = await core.query('owner_1', 'my goals', NORMAL_ONLY)
        all_goals = await core.query('owner_1', 'my goals', EVERYTHING)

        assert names(decisions['decisions']) == ['Rent the flat']
        assert (goals['total_active'], goals['total_achieved']) == (0, 0)
        assert (all_goals['total_active'], all_goals['total_achieved']) == (1, 1)

    @pytest.mark.asyncio
    async def test_default_filters_stop_at_normal(self, core):
        await core.ingest('owner_1', PRIVATE_NOTE)

        result = await core.query('owner_1', 'what do you know about Okafor')

        assert result['found'] is False

    @pytest.mark.asyncio
    async def test_full_context(self, core, store):
        await core.ingest('owner_1', PRIVATE_NOTE)
        await store.inferences.create(Inference(
            id='', owner_id='owner_1', text='Sarah may also see a therapist', confidence=0.7,
            subject_names=['Sarah', 'Dr Okafor'],
        ))
        await store.inferences.create(Inference(
            id='', owner_id='owner_1', text='Sarah and Lena might get along', confidence=0.7,
            subject_names=['Sarah', 'Lena'],
        ))

        hidden = await core.get_full_context('owner_1')
        shown = await core.get_full_context('owner_1', EVERYTHING)

        assert sorted(e.name for e in hidden.entities) == ['Lena', 'Sarah']
        sarah = next(e for e in hidden.entities if e.name == 'Sarah')
        assert hidden.facts[sarah.id] == []
        assert hidden.relationships == []
        assert [i.text for i in hidden.inferences] == ['Sarah and Lena might get along']
        assert 'Dr Okafor' in [e.name for e in shown.entities]
        assert len(shown.inferences) == 2

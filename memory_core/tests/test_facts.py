"""
Tests for fact versioning, contradiction handling and the source cascade
"""
from datetime import timedelta

import pytest

from memory_core.errors import EntityNotFound, VersioningRace
from memory_core.models.entity import EntityStatus
from memory_core.models.fact import Fact, FactStatus, InvalidationReason
from memory_core.services.decay import DecayScheduler
from memory_core.services.facts import FactService, is_in_effect
from memory_core.tests.fakes import RacyFactRepository, add_entity


@pytest.fixture
def facts(store, clock):
    return FactService(store, DecayScheduler(store, clock=clock), clock=clock)


# ============================================================================
# INGEST
# ============================================================================

class TestFactIngest:
    """Create, re-observe, append and supersede"""

    @pytest.mark.asyncio
    async def test_job_change_supersedes_previous_employer(self, facts, store, clock):
        marcus = await add_entity(store, name='Marcus', created_at=clock())
        first_seen = clock()
        google = await facts.ingest('owner_1', marcus.id, 'works_at', 'Google', 0.9)

        changed_at = clock.advance(days=30)
        meta = await facts.ingest('owner_1', marcus.id, 'works_at', 'Meta', 0.9)

        assert google.action == 'created'
        assert meta.action == 'superseded'

        history = await facts.get_fact_history('owner_1', marcus.id, 'works_at')
        assert [f.object for f in history] == ['Meta', 'Google']

        new, old = history
        assert new.version == 2
        assert new.previous_version_id == old.id
        assert old.valid_to == changed_at
        assert old.invalidated_at == changed_at
        assert old.invalidated_by == new.id
        assert old.invalidation_reason == InvalidationReason.CONTRADICTION

        current = await facts.get_current_facts('owner_1', marcus.id)
        assert [f.object for f in current] == ['Meta']

        believed_then = await facts.get_facts_at_time('owner_1', marcus.id, first_seen + timedelta(days=1))
        assert [f.object for f in believed_then] == ['Google']

    @pytest.mark.asyncio
    async def test_same_object_is_a_reobservation(self, facts, store):
        marcus = await add_entity(store, name='Marcus')
        await facts.ingest('owner_1', marcus.id, 'works_at', 'Google', 0.6)

        result = await facts.ingest('owner_1', marcus.id, 'Works At', '  google ', 0.9)

        assert result.action == 'reobserved'
        history = await facts.get_fact_history('owner_1', marcus.id, 'works_at')
        assert len(history) == 1
        assert history[0].mention_count == 2
        assert history[0].confidence == pytest.approx(0.9)
        assert history[0].version == 1

    @pytest.mark.asyncio
    async def test_multi_valued_predicates_append(self, facts, store):
        sarah = await add_entity(store, name='Sarah')
        await facts.ingest('owner_1', sarah.id, 'likes', 'hiking', 0.8)
        result = await facts.ingest('owner_1', sarah.id, 'likes', 'jazz', 0.8)

        assert result.action == 'appended'
        current = await facts.get_current_facts('owner_1', sarah.id)
        assert sorted(f.object for f in current) == ['hiking', 'jazz']

    @pytest.mark.asyncio
    async def test_low_confidence_is_a_no_op(self, facts, store):
        marcus = await add_entity(store, name='Marcus')

        result = await facts.ingest('owner_1', marcus.id, 'works_at', 'Google', 0.2)

        assert result.action == 'rejected'
        assert not result.stored
        assert await store.facts.list_for_entity('owner_1', marcus.id) == []

    @pytest.mark.asyncio
    async def test_unknown_subject_raises(self, facts):
        with pytest.raises(EntityNotFound):
            await facts.ingest('owner_1', 'en_missing0', 'works_at', 'Google', 0.9)

    @pytest.mark.asyncio
    async def test_merged_subject_resolves_to_keeper(self, facts, store):
        keeper = await add_entity(store, name='Sarah')
        loser = await add_entity(store, name='Sara', status=EntityStatus.ARCHIVED, superseded_by=keeper.id)

        result = await facts.ingest('owner_1', loser.id, 'lives_in', 'Lisbon', 0.8)

        assert result.fact.entity_id == keeper.id

    @pytest.mark.asyncio
    async def test_ingest_refreshes_subject(self, facts, store, clock):
        stale = clock() - timedelta(days=60)
        marcus = await add_entity(store, name='Marcus', importance_score=0.2, last_mentioned_at=stale)

        await facts.ingest('owner_1', marcus.id, 'works_at', 'Google', 0.9)

        refreshed = await store.entities.get('owner_1', marcus.id)
        assert refreshed.last_mentioned_at == clock()
        assert refreshed.importance_score == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_ingest_refreshes_object_entity(self, facts, store, clock):
        stale = clock() - timedelta(days=60)
        marcus = await add_entity(store, name='Marcus')
        google = await add_entity(store, name='Google', importance_score=0.2, last_mentioned_at=stale)

        await facts.ingest('owner_1', marcus.id, 'works_at', 'Google', 0.9, object_entity_id=google.id)

        refreshed = await store.entities.get('owner_1', google.id)
        assert refreshed.last_mentioned_at == clock()
        assert refreshed.importance_score == pytest.approx(0.5)


class TestScheduledFacts:
    """valid_from in the future"""

    @pytest.mark.asyncio
    async def test_future_change_takes_over_on_its_date(self, facts, store, clock):
        marcus = await add_entity(store, name='Marcus')
        await facts.ingest('owner_1', marcus.id, 'works_at', 'Google', 0.9)
        await facts.ingest(
            'owner_1', marcus.id, 'works_at', 'Meta', 0.9, valid_from=clock() + timedelta(days=10)
        )

        assert [f.object for f in await facts.get_current_facts('owner_1', marcus.id)] == ['Google']

        clock.advance(days=11)
        assert [f.object for f in await facts.get_current_facts('owner_1', marcus.id)] == ['Meta']

    def test_is_in_effect(self, clock):
        now = clock()
        open_fact = Fact(id='', owner_id='o', entity_id='e', predicate='p', object='x', valid_from=now)
        corrected = Fact(
            id='', owner_id='o', entity_id='e', predicate='p', object='x',
            valid_to=now + timedelta(days=5), invalidated_at=now,
            invalidation_reason=InvalidationReason.USER_CORRECTED,
        )
        deleted = Fact(id='', owner_id='o', entity_id='e', predicate='p', object='x', status=FactStatus.INACTIVE)

        assert is_in_effect(open_fact, now)
        assert not is_in_effect(corrected, now)
        assert not is_in_effect(deleted, now)


# ============================================================================
# RACES
# ============================================================================

class TestVersioningRace:
    """Lost inserts are retried once"""

    @pytest.mark.asyncio
    async def test_single_race_is_retried(self, facts, store):
        store.facts = RacyFactRepository(races=1)
        marcus = await add_entity(store, name='Marcus')

        result = await facts.ingest('owner_1', marcus.id, 'works_at', 'Google', 0.9)

        assert result.action == 'created'
        assert len(await store.facts.open_facts('owner_1', marcus.id)) == 1

    @pytest.mark.asyncio
    async def test_second_race_propagates(self, facts, store):
        store.facts = RacyFactRepository(races=2)
        marcus = await add_entity(store, name='Marcus')

        with pytest.raises(VersioningRace):
            await facts.ingest('owner_1', marcus.id, 'works_at', 'Google', 0.9)

    @pytest.mark.asyncio
    async def test_store_rejects_second_open_single_valued_fact(self, store, clock):
        def fact(obj):
            return Fact(id='', owner_id='owner_1', entity_id='en_aaaaaaaa', predicate='works_at',
                        object=obj, single_valued=True, created_at=clock())

        await store.facts.insert(fact('Google'))

        with pytest.raises(VersioningRace):
            await store.facts.insert(fact('Meta'))


# ============================================================================
# TIMELINE, CORRECTIONS, SOURCE CASCADE
# ============================================================================

class TestTimelineAndCorrections:

    @pytest.mark.asyncio
    async def test_timeline_is_chronological(self, facts, store, clock):
        marcus = await add_entity(store, name='Marcus')
        await facts.ingest('owner_1', marcus.id, 'works_at', 'Google', 0.9)
        clock.advance(days=1)
        await facts.ingest('owner_1', marcus.id, 'works_at', 'Meta', 0.9)

        timeline = await facts.get_entity_timeline('owner_1', marcus.id)

        assert [(e['event'], e['object']) for e in timeline] == [
            ('fact_created', 'Google'),
            ('fact_invalidated', 'Google'),
            ('fact_created', 'Meta'),
        ]
        assert timeline[1]['reason'] == 'contradiction'

    @pytest.mark.asyncio
    async def test_manual_invalidation(self, facts, store):
        marcus = await add_entity(store, name='Marcus')
        result = await facts.ingest('owner_1', marcus.id, 'lives_in', 'Berlin', 0.9)

        assert await facts.invalidate_fact('owner_1', result.fact.id)
        assert not await facts.invalidate_fact('owner_1', result.fact.id)
        assert not await facts.invalidate_fact('owner_1', 'fa_missing0')

        fact = await store.facts.get('owner_1', result.fact.id)
        assert fact.invalidation_reason == InvalidationReason.USER_CORRECTED
        assert await facts.get_current_facts('owner_1', marcus.id) == []


class TestSourceCascade:

    @pytest.mark.asyncio
    async def test_delete_and_restore_source(self, core):
        await core.ingest('owner_1', {
            'entities': [{'name': 'Lena', 'entity_type': 'person'}],
            'facts': [{'entity_name': 'Lena', 'predicate': 'lives_in', 'object': 'Oslo'}],
        }, source_id='note_7')
        lena = (await core.store.entities.find_by_name('owner_1', 'Lena'))[0]

        deleted = await core.delete_source('owner_1', 'note_7')

        assert deleted.counts == {'facts_invalidated': 1, 'entities_archived': 1}
        assert await core.store.entities.find_by_name('owner_1', 'Lena') == []
        fact = (await core.store.facts.list_for_entity('owner_1', lena.id))[0]
        assert fact.status == FactStatus.INACTIVE
        assert fact.invalidation_reason == InvalidationReason.SOURCE_DELETED
        assert fact.valid_to == fact.invalidated_at

        restored = await core.restore_source('owner_1', 'note_7')

        assert restored.counts == {'facts_restored': 1, 'entities_restored': 1}
        assert (await core.store.facts.get('owner_1', fact.id)).valid_to is None
        assert [f.object for f in await core.facts.get_current_facts('owner_1', lena.id)] == ['Oslo']
        assert (await core.store.entities.get('owner_1', lena.id)).is_active

    @pytest.mark.asyncio
    async def test_restore_does_not_reopen_a_replaced_fact(self, core, clock):
        await core.ingest('owner_1', {
            'entities': [{'name': 'Lena'}],
            'facts': [{'entity_name': 'Lena', 'predicate': 'lives_in', 'object': 'Oslo'}],
        }, source_id='note_7')
        await core.delete_source('owner_1', 'note_7')

        clock.advance(days=1)
        await core.ingest('owner_1', {
            'entities': [{'name': 'Lena'}],
            'facts': [{'entity_name': 'Lena', 'predicate': 'lives_in', 'object': 'Bergen'}],
        }, source_id='note_8')

        restored = await core.restore_source('owner_1', 'note_7')

        assert restored.counts.get('facts_conflicting') == 1
        lena = (await core.store.entities.find_by_name('owner_1', 'Lena'))[0]
        assert [f.object for f in await core.facts.get_current_facts('owner_1', lena.id)] == ['Bergen']

    @pytest.mark.asyncio
    async def test_deleted_source_closes_the_validity_window(self, core, store, clock):
        marcus = await add_entity(store, name='Marcus')
        await core.facts.ingest('owner_1', marcus.id, 'works_at', 'Anthropic', 0.9, source_id='note_1')
        clock.advance(days=1)
        await core.delete_source('owner_1', 'note_1')
        deleted_at = clock()

        clock.advance(days=1)
        await core.facts.ingest('owner_1', marcus.id, 'works_at', 'Google', 0.9, source_id='note_2')

        versions = await store.facts.list_for_entity('owner_1', marcus.id)
        assert [f.object for f in versions if f.valid_to is None] == ['Google']
        anthropic = next(f for f in versions if f.object == 'Anthropic')
        assert anthropic.valid_to == anthropic.invalidated_at == deleted_at

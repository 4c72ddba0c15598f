"""
Tests for duplicate detection and entity merges
"""
from datetime import timedelta

import pytest

from memory_core.errors import ConsolidationConflict
from memory_core.models.entity import Entity, EntityStatus, ImportanceTier
from memory_core.models.fact import InvalidationReason
from memory_core.services.consolidation import FORCE, keeper_score, merge_summaries, select_keeper
from memory_core.services.decay import DecayOutcome
from memory_core.tests.fakes import add_entity


@pytest.fixture
def engine(core):
    return core.consolidation


async def seed_sarah_duplicates(core, clock):
    """Sarah (established) and Sara (recent duplicate) plus Marcus"""
    store = core.store
    sarah = await add_entity(
        store, name='Sarah', importance_tier=ImportanceTier.HIGH, importance_score=0.8, mention_count=5,
        created_at=clock() - timedelta(days=400), embedding=[1.0, 0.0, 0.0],
        summary='Sister. Lives in Lisbon.', context_notes=['dinner on friday'],
    )
    sara = await add_entity(
        store, name='Sara', aliases=['S.'], importance_score=0.5, mention_count=1,
        created_at=clock() - timedelta(days=10), embedding=[0.95, 0.1, 0.0],
        summary='Lives in Lisbon. Works at Acme.', context_notes=['called about the move'],
    )
    marcus = await add_entity(store, name='Marcus', embedding=[0.0, 1.0, 0.0], created_at=clock())

    await core.facts.ingest('owner_1', sarah.id, 'lives_in', 'Lisbon', 0.8)
    await core.facts.ingest('owner_1', sara.id, 'lives_in', 'lisbon', 0.9)
    await core.facts.ingest('owner_1', sara.id, 'works_at', 'Acme', 0.9)

    await core.graph.upsert_edge('owner_1', sarah.id, marcus.id, 'knows', strength_boost=0.1)
    await core.graph.upsert_edge('owner_1', sara.id, marcus.id, 'knows', strength_boost=0.3)
    await core.graph.upsert_edge('owner_1', sara.id, sarah.id, 'sibling_of')
    return sarah, sara, marcus


# ============================================================================
# PURE HELPERS
# ============================================================================

class TestKeeperSelection:
    """importance + mentions/100 + age in years"""

    def test_keeper_score(self, clock):
        entity = Entity(id='', owner_id='o', name='A', importance_score=0.6, mention_count=20,
                        created_at=clock() - timedelta(days=365.25))

        assert keeper_score(entity, clock()) == pytest.approx(0.6 + 0.2 + 1.0)

    def test_higher_score_wins(self, clock):
        old = Entity(id='en_zzzzzzzz', owner_id='o', name='A', created_at=clock() - timedelta(days=700))
        new = Entity(id='en_aaaaaaaa', owner_id='o', name='B', created_at=clock())

        assert select_keeper(new, old, clock()) == (old, new)

    def test_ties_go_to_lower_id(self, clock):
        a = Entity(id='en_aaaaaaaa', owner_id='o', name='A', created_at=clock())
        b = Entity(id='en_bbbbbbbb', owner_id='o', name='B', created_at=clock())

        assert select_keeper(b, a, clock()) == (a, b)
        assert select_keeper(a, b, clock()) == (a, b)

    def test_merge_summaries(self):
        assert merge_summaries('Sister. Lives in Lisbon.', 'lives in lisbon. Works at Acme.') == \
            'Sister. Lives in Lisbon. Works at Acme.'
        assert merge_summaries(None, 'Runs marathons') == 'Runs marathons.'
        assert merge_summaries(None, '') is None


# ============================================================================
# CANDIDATES AND PREVIEW
# ============================================================================

class TestCandidates:

    @pytest.mark.asyncio
    async def test_preview_lists_pairs_without_mutating(self, core, engine, clock):
        sarah, sara, _ = await seed_sarah_duplicates(core, clock)

        report = await engine.consolidate('owner_1')

        assert report.mode == 'preview'
        assert len(report.candidates) == 1
        candidate = report.candidates[0]
        assert (candidate.keeper_id, candidate.loser_id) == (sarah.id, sara.id)
        assert candidate.similarity >= 0.85
        assert report.merged == []
        assert (await core.store.entities.get('owner_1', sara.id)).is_active

    @pytest.mark.asyncio
    async def test_threshold_is_respected(self, core, engine, clock):
        await seed_sarah_duplicates(core, clock)

        assert await engine.find_candidates('owner_1', threshold=0.999) == []

    @pytest.mark.asyncio
    async def test_different_dimensions_are_never_compared(self, store, engine):
        await add_entity(store, name='A', embedding=[1.0, 0.0])
        await add_entity(store, name='B', embedding=[1.0, 0.0, 0.0])

        assert await engine.find_candidates('owner_1') == []

    @pytest.mark.asyncio
    async def test_unknown_mode_is_rejected(self, engine):
        with pytest.raises(ValueError):
            await engine.consolidate('owner_1', mode='yolo')


# ============================================================================
# MERGE
# ============================================================================

class TestMerge:
    """Force mode folds the loser into the keeper"""

    @pytest.mark.asyncio
    async def test_duplicate_is_folded_into_keeper(self, core, engine, clock):
        sarah, sara, marcus = await seed_sarah_duplicates(core, clock)

        report = await engine.consolidate('owner_1', mode=FORCE)

        assert report.merged == [(sarah.id, sara.id)]
        assert report.counts == {'candidates': 1, 'merged': 1, 'conflicts': 0, 'failed': 0}

        loser = await core.store.entities.get('owner_1', sara.id)
        assert loser.status == EntityStatus.ARCHIVED
        assert loser.superseded_by == sarah.id

        keeper = await core.store.entities.get('owner_1', sarah.id)
        assert keeper.aliases == ['Sara', 'S.']
        assert keeper.summary == 'Sister. Lives in Lisbon. Works at Acme.'
        assert keeper.mention_count == 6
        assert keeper.version == 2
        assert keeper.importance_tier == ImportanceTier.HIGH
        assert keeper.context_notes == ['dinner on friday', 'called about the move']

    @pytest.mark.asyncio
    async def test_facts_are_repointed_without_duplicates(self, core, engine, clock):
        sarah, sara, _ = await seed_sarah_duplicates(core, clock)

        await engine.consolidate('owner_1', mode=FORCE)

        current = await core.facts.get_current_facts('owner_1', sarah.id)
        assert [(f.predicate, f.object) for f in current] == [('lives_in', 'Lisbon'), ('works_at', 'Acme')]
        assert current[0].mention_count == 2
        assert current[0].confidence == pytest.approx(0.9)

        closed = [f for f in await core.store.facts.list_for_entity('owner_1', sarah.id) if not f.is_open]
        assert len(closed) == 1
        assert closed[0].invalidation_reason == InvalidationReason.MERGED
        assert await core.store.facts.list_for_entity('owner_1', sara.id) == []

    @pytest.mark.asyncio
    async def test_edges_are_repointed(self, core, engine, clock):
        sarah, sara, marcus = await seed_sarah_duplicates(core, clock)

        await engine.consolidate('owner_1', mode=FORCE)

        active = await core.graph.get_relationships('owner_1', sarah.id)
        assert [(e.source_entity_id, e.target_entity_id, e.relationship_type) for e in active] == [
            (sarah.id, marcus.id, 'knows'),
        ]
        assert active[0].strength == pytest.approx(0.8)
        assert await core.graph.get_relationships('owner_1', sara.id) == []

    @pytest.mark.asyncio
    async def test_merge_is_logged(self, core, engine, clock):
        sarah, sara, _ = await seed_sarah_duplicates(core, clock)

        await engine.consolidate('owner_1', mode=FORCE)

        operations = await core.store.journal.list_operations('owner_1', entity_id=sarah.id)
        assert len(operations) == 1
        assert operations[0].operation == 'CONSOLIDATE'
        assert operations[0].merged_entity_ids == [sara.id]
        assert operations[0].old_content == 'Sister. Lives in Lisbon.'

    @pytest.mark.asyncio
    async def test_second_run_finds_nothing(self, core, engine, clock):
        await seed_sarah_duplicates(core, clock)
        await engine.consolidate('owner_1', mode=FORCE)

        again = await engine.consolidate('owner_1', mode=FORCE)

        assert again.candidates == []
        assert again.merged == []

    @pytest.mark.asyncio
    async def test_conflicting_employers_keep_the_newer_one(self, core, engine, store, clock):
        keeper = await add_entity(store, name='Marcus', importance_score=0.9, embedding=[1.0, 0.0])
        loser = await add_entity(store, name='Marc', importance_score=0.3, embedding=[1.0, 0.0])
        google = await core.facts.ingest('owner_1', keeper.id, 'works_at', 'Google', 0.9)
        clock.advance(days=3)
        meta = await core.facts.ingest('owner_1', loser.id, 'works_at', 'Meta', 0.9)

        await engine.merge('owner_1', keeper.id, loser.id)

        current = await core.facts.get_current_facts('owner_1', keeper.id)
        assert [f.object for f in current] == ['Meta']
        newer = await store.facts.get('owner_1', meta.fact.id)
        older = await store.facts.get('owner_1', google.fact.id)
        assert newer.previous_version_id == older.id
        assert newer.version == 2
        assert older.invalidated_by == newer.id
        assert older.invalidation_reason == InvalidationReason.MERGED


class TestConflicts:
    """Pairs whose members were merged already are skipped"""

    @pytest.mark.asyncio
    async def test_merging_an_archived_entity_conflicts(self, core, engine, clock):
        sarah, sara, _ = await seed_sarah_duplicates(core, clock)
        await engine.merge('owner_1', sarah.id, sara.id)

        with pytest.raises(ConsolidationConflict):
            await engine.merge('owner_1', sarah.id, sara.id)

    @pytest.mark.asyncio
    async def test_chained_pairs_count_conflicts(self, store, engine):
        for entity_id, score in (('en_aaaaaaaa', 0.9), ('en_bbbbbbbb', 0.6), ('en_cccccccc', 0.3)):
            await add_entity(store, id=entity_id, name=entity_id, importance_score=score, embedding=[1.0, 1.0])

        report = await engine.consolidate('owner_1', mode=FORCE)

        assert report.merged == [('en_aaaaaaaa', 'en_bbbbbbbb'), ('en_aaaaaaaa', 'en_cccccccc')]
        assert report.conflicts == [('en_bbbbbbbb', 'en_cccccccc')]
        survivors = await store.entities.list('owner_1')
        assert [e.id for e in survivors] == ['en_aaaaaaaa']

    @pytest.mark.asyncio
    async def test_keeper_archived_mid_merge_writes_neither_row(self, core, engine, clock, monkeypatch):
        sarah, sara, _ = await seed_sarah_duplicates(core, clock)
        fold_edges = engine._fold_edges

        async def archive_keeper_then_fold(owner_id, keeper, loser, now):
            await core.store.entities.archive(owner_id, keeper.id, now)
            await fold_edges(owner_id, keeper, loser, now)

        monkeypatch.setattr(engine, '_fold_edges', archive_keeper_then_fold)

        with pytest.raises(ConsolidationConflict):
            await engine.merge('owner_1', sarah.id, sara.id)

        loser = await core.store.entities.get('owner_1', sara.id)
        assert loser.status == EntityStatus.ACTIVE
        assert loser.superseded_by is None
        keeper = await core.store.entities.get('owner_1', sarah.id)
        assert keeper.mention_count == 5
        assert keeper.aliases == []

    @pytest.mark.asyncio
    async def test_rerun_after_journal_failure_does_not_fold_twice(self, core, engine, clock, monkeypatch):
        sarah, _, _ = await seed_sarah_duplicates(core, clock)
        record_operation = core.store.journal.record_operation
        calls = []

        async def flaky_record(operation):
            calls.append(operation)
            if len(calls) == 1:
                raise RuntimeError("journal unavailable")
            return await record_operation(operation)

        monkeypatch.setattr(core.store.journal, 'record_operation', flaky_record)

        first = await engine.consolidate('owner_1', mode=FORCE)
        again = await engine.consolidate('owner_1', mode=FORCE)

        assert list(first.failures.values()) == ['RuntimeError: journal unavailable']
        assert again.candidates == []
        keeper = await core.store.entities.get('owner_1', sarah.id)
        assert keeper.mention_count == 6
        assert keeper.aliases == ['Sara', 'S.']


# ============================================================================
# STALE SNAPSHOTS
# ============================================================================

class TestStaleSnapshots:
    """Writers holding a pre-merge read must not undo the merge"""

    @pytest.mark.asyncio
    async def test_decay_from_a_pre_merge_read(self, core, engine, clock):
        sarah, sara, _ = await seed_sarah_duplicates(core, clock)
        snapshot = await core.store.entities.list('owner_1')

        await engine.consolidate('owner_1', mode=FORCE)
        clock.advance(days=400)
        outcomes = {e.id: await core.decay.decay(e) for e in snapshot}

        assert outcomes[sara.id] == DecayOutcome.INACTIVE
        loser = await core.store.entities.get('owner_1', sara.id)
        assert loser.status == EntityStatus.ARCHIVED
        assert loser.superseded_by == sarah.id

        keeper = await core.store.entities.get('owner_1', sarah.id)
        assert keeper.mention_count == 6
        assert keeper.aliases == ['Sara', 'S.']
        assert keeper.importance_score == pytest.approx(0.8 * 0.95)

    @pytest.mark.asyncio
    async def test_guarded_writes_leave_a_merged_loser_alone(self, core, engine, clock):
        sarah, sara, _ = await seed_sarah_duplicates(core, clock)
        await engine.merge('owner_1', sarah.id, sara.id)
        entities = core.store.entities

        assert not await entities.apply_decay('owner_1', sara.id, 0.01, EntityStatus.ACTIVE, clock())
        assert not await entities.archive('owner_1', sara.id, clock())
        assert not await entities.reactivate('owner_1', sara.id, clock())

        loser = await entities.get('owner_1', sara.id)
        assert loser.status == EntityStatus.ARCHIVED
        assert loser.superseded_by == sarah.id
        assert loser.importance_score == pytest.approx(0.5)

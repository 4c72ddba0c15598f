"""
Tests for relationship edges and bounded traversal
"""
import pytest

from memory_core.errors import EntityNotFound
from memory_core.services.graph import RelationshipGraph
from memory_core.tests.fakes import add_entity


@pytest.fixture
def graph(store, clock):
    return RelationshipGraph(store, clock=clock)


async def people(store, *names):
    return [await add_entity(store, name=name) for name in names]


class TestEdges:
    """Create, reinforce, end"""

    @pytest.mark.asyncio
    async def test_new_edge_starts_at_base_plus_boost(self, graph, store, clock):
        a, b = await people(store, 'Ana', 'Ben')

        edge = await graph.upsert_edge('owner_1', a.id, b.id, 'Works With', strength_boost=0.2)

        assert edge.relationship_type == 'works_with'
        assert edge.strength == pytest.approx(0.7)
        assert edge.started_at == clock()

    @pytest.mark.asyncio
    async def test_restating_reinforces_up_to_one(self, graph, store):
        a, b = await people(store, 'Ana', 'Ben')

        for _ in range(8):
            edge = await graph.upsert_edge('owner_1', a.id, b.id, 'knows')

        assert edge.strength == 1.0
        assert len(await store.relationships.list('owner_1')) == 1

    @pytest.mark.asyncio
    async def test_ending_keeps_history(self, graph, store, clock):
        a, b = await people(store, 'Ana', 'Ben')
        await graph.upsert_edge('owner_1', a.id, b.id, 'dating')

        clock.advance(days=90)
        ended = await graph.end_relationship('owner_1', a.id, b.id, 'dating')

        assert not ended.active
        assert ended.ended_at == clock()
        assert await graph.get_relationships('owner_1', a.id) == []
        assert len(await graph.get_relationships('owner_1', a.id, active_only=False)) == 1

    @pytest.mark.asyncio
    async def test_restating_an_ended_edge_reactivates_it(self, graph, store):
        a, b = await people(store, 'Ana', 'Ben')
        await graph.upsert_edge('owner_1', a.id, b.id, 'dating')
        await graph.end_relationship('owner_1', a.id, b.id, 'dating')

        edge = await graph.upsert_edge('owner_1', a.id, b.id, 'dating')

        assert edge.active
        assert edge.ended_at is None

    @pytest.mark.asyncio
    async def test_unknown_endpoint_raises(self, graph, store):
        (a,) = await people(store, 'Ana')

        with pytest.raises(EntityNotFound):
            await graph.upsert_edge('owner_1', a.id, 'en_missing0', 'knows')

    @pytest.mark.asyncio
    async def test_ending_a_missing_edge_returns_none(self, graph, store):
        a, b = await people(store, 'Ana', 'Ben')

        assert await graph.end_relationship('owner_1', a.id, b.id, 'knows') is None


class TestTraversal:
    """Breadth-first, bounded, cycle-safe"""

    @pytest.mark.asyncio
    async def test_cycle_visits_each_node_once(self, graph, store):
        a, b = await people(store, 'Ana', 'Ben')
        await graph.upsert_edge('owner_1', a.id, b.id, 'knows')
        await graph.upsert_edge('owner_1', b.id, a.id, 'knows')

        nodes = await graph.traverse('owner_1', a.id, max_depth=5, min_strength=0.0)

        assert [n.entity_id for n in nodes] == [b.id]

    @pytest.mark.asyncio
    async def test_depth_bound(self, graph, store):
        a, b, c, d = await people(store, 'Ana', 'Ben', 'Cleo', 'Dev')
        await graph.upsert_edge('owner_1', a.id, b.id, 'knows')
        await graph.upsert_edge('owner_1', b.id, c.id, 'knows')
        await graph.upsert_edge('owner_1', c.id, d.id, 'knows')

        nodes = await graph.traverse('owner_1', a.id, max_depth=2, min_strength=0.2)

        assert [(n.entity_id, n.depth) for n in nodes] == [(b.id, 1), (c.id, 2)]
        assert nodes[1].path == [a.id, b.id, c.id]
        assert nodes[1].path_strength == pytest.approx(0.6 * 0.6)

    @pytest.mark.asyncio
    async def test_weak_edges_are_not_followed(self, graph, store):
        a, b, c = await people(store, 'Ana', 'Ben', 'Cleo')
        await graph.upsert_edge('owner_1', a.id, b.id, 'knows', strength_boost=0.5)
        await graph.upsert_edge('owner_1', a.id, c.id, 'met_once', strength_boost=0.0)

        nodes = await graph.traverse('owner_1', a.id, max_depth=1, min_strength=0.55)

        assert [n.entity_id for n in nodes] == [b.id]

    @pytest.mark.asyncio
    async def test_ended_edges_are_not_followed(self, graph, store):
        a, b = await people(store, 'Ana', 'Ben')
        await graph.upsert_edge('owner_1', a.id, b.id, 'knows')
        await graph.end_relationship('owner_1', a.id, b.id, 'knows')

        assert await graph.traverse('owner_1', a.id, max_depth=2, min_strength=0.0) == []

    @pytest.mark.asyncio
    async def test_zero_depth_returns_nothing(self, graph, store):
        a, b = await people(store, 'Ana', 'Ben')
        await graph.upsert_edge('owner_1', a.id, b.id, 'knows')

        assert await graph.traverse('owner_1', a.id, max_depth=0, min_strength=0.0) == []

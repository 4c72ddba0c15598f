"""
Relationship Graph

Edges between entities of one owner. Re-stating a relationship reinforces
it (+boost, capped at 1.0); ending one keeps the edge for history with
active=False.

Traversal is breadth-first with a visited set: the graph is not acyclic
(A knows B, B knows A), so every node is returned at most once. Depth and
strength floor are required arguments.
"""
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from memory_core.errors import EntityNotFound
from memory_core.models.relationships import (
    BASE_EDGE_STRENGTH,
    MAX_EDGE_STRENGTH,
    RelationshipEdge,
    normalize_relationship_type,
)
from memory_core.repositories.base import MemoryStore
from memory_core.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class TraversalNode:
    """One reachable entity, first reached at `depth` via `path`"""
    entity_id: str
    depth: int
    path: List[str] = field(default_factory=list)  # entity ids from start to here
    relationship_types: List[str] = field(default_factory=list)
    path_strength: float = 1.0


class RelationshipGraph:

    def __init__(self, store: MemoryStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def upsert_edge(
        self,
        owner_id: str,
        source_entity_id: str,
        target_entity_id: str,
        relationship_type: str,
        strength_boost: float = 0.1,
        confidence: float = 0.8,
    ) -> RelationshipEdge:
        """
        Create an edge at base strength + boost, or reinforce the existing one.

        Raises:
            EntityNotFound: either endpoint is unknown for this owner
        """
        for entity_id in (source_entity_id, target_entity_id):
            if await self.store.entities.get(owner_id, entity_id) is None:
                raise EntityNotFound(entity_id)

        now = self.clock()
        relationship_type = normalize_relationship_type(relationship_type)

        edge = await self.store.relationships.find(owner_id, source_entity_id, target_entity_id, relationship_type)
        if edge is None:
            edge = RelationshipEdge(
                id='',
                owner_id=owner_id,
                source_entity_id=source_entity_id,
                target_entity_id=target_entity_id,
                relationship_type=relationship_type,
                strength=min(MAX_EDGE_STRENGTH, BASE_EDGE_STRENGTH + strength_boost),
                confidence=confidence,
                started_at=now,
                created_at=now,
                updated_at=now,
            )
            logger.debug(f"🔗 New edge {source_entity_id} -[{relationship_type}]-> {target_entity_id}")
        else:
            edge.strength = min(MAX_EDGE_STRENGTH, edge.strength + strength_boost)
            edge.confidence = max(edge.confidence, confidence)
            if not edge.active:
                edge.active = True
                edge.ended_at = None
            edge.updated_at = now

        return await self.store.relationships.save(edge)

    async def end_relationship(
        self, owner_id: str, source_entity_id: str, target_entity_id: str, relationship_type: str
    ) -> Optional[RelationshipEdge]:
        """Mark the edge inactive with ended_at=now. Returns None if no such edge."""
        relationship_type = normalize_relationship_type(relationship_type)
        edge = await self.store.relationships.find(owner_id, source_entity_id, target_entity_id, relationship_type)
        if edge is None or not edge.active:
            return edge
        now = self.clock()
        edge.active = False
        edge.ended_at = now
        edge.updated_at = now
        return await self.store.relationships.save(edge)

    async def get_relationships(self, owner_id: str, entity_id: str, active_only: bool = True) -> List[RelationshipEdge]:
        return await self.store.relationships.list_for_entity(owner_id, entity_id, active_only=active_only)

    async def traverse(
        self,
        owner_id: str,
        start_entity_id: str,
        *,
        max_depth: int,
        min_strength: float,
    ) -> List[TraversalNode]:
        """
        Breadth-first walk over active edges in both directions.

        Args:
            owner_id: Owner scope
            start_entity_id: Where to start (not included in the result)
            max_depth: Maximum hop count (>= 1)
            min_strength: Edges weaker than this are not followed

        Returns:
            Reachable nodes, each once, in BFS order
        """
        if max_depth < 1:
            return []

        visited = {start_entity_id}
        queue = deque([TraversalNode(entity_id=start_entity_id, depth=0, path=[start_entity_id])])
        reached: List[TraversalNode] = []
        edge_cache: Dict[str, List[RelationshipEdge]] = {}

        while queue:
            node = queue.popleft()
            if node.depth >= max_depth:
                continue

            if node.entity_id not in edge_cache:
                edge_cache[node.entity_id] = await self.store.relationships.list_for_entity(owner_id, node.entity_id)

            for edge in edge_cache[node.entity_id]:
                if edge.strength < min_strength:
                    continue
                neighbor = edge.other_end(node.entity_id)
                if neighbor is None or neighbor in visited:
                    continue
                visited.add(neighbor)
                nxt = TraversalNode(
                    entity_id=neighbor,
                    depth=node.depth + 1,
                    path=node.path + [neighbor],
                    relationship_types=node.relationship_types + [edge.relationship_type],
                    path_strength=node.path_strength * edge.strength,
                )
                reached.append(nxt)
                queue.append(nxt)

        return reached

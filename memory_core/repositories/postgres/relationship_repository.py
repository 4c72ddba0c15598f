"""
Relationship Repository - PostgreSQL storage for entity-to-entity edges

Storage: PostgreSQL (memory_relationships table)
"""
import logging
from typing import List, Optional

import asyncpg

from memory_core.errors import OwnershipViolation
from memory_core.models.relationships import RelationshipEdge
from memory_core.repositories.base import RelationshipRepository

logger = logging.getLogger(__name__)

EDGE_COLUMNS = """
    id, owner_id, source_entity_id, target_entity_id, relationship_type,
    strength, confidence, active, started_at, ended_at, created_at, updated_at
"""


def row_to_edge(row) -> RelationshipEdge:
    return RelationshipEdge(
        id=row['id'],
        owner_id=row['owner_id'],
        source_entity_id=row['source_entity_id'],
        target_entity_id=row['target_entity_id'],
        relationship_type=row['relationship_type'],
        strength=row['strength'],
        confidence=row['confidence'],
        active=row['active'],
        started_at=row['started_at'],
        ended_at=row['ended_at'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


class PostgresRelationshipRepository(RelationshipRepository):

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def get(self, owner_id: str, edge_id: str) -> Optional[RelationshipEdge]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {EDGE_COLUMNS} FROM memory_relationships WHERE id = $1", edge_id)
        if not row:
            return None
        if row['owner_id'] != owner_id:
            raise OwnershipViolation(edge_id, owner_id)
        return row_to_edge(row)

    async def find(
        self, owner_id: str, source_entity_id: str, target_entity_id: str, relationship_type: str
    ) -> Optional[RelationshipEdge]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT {EDGE_COLUMNS}
                FROM memory_relationships
                WHERE owner_id = $1 AND source_entity_id = $2
                  AND target_entity_id = $3 AND relationship_type = $4
            """, owner_id, source_entity_id, target_entity_id, relationship_type)
        return row_to_edge(row) if row else None

    async def save(self, edge: RelationshipEdge) -> RelationshipEdge:
        async with self.db_pool.acquire() as conn:
            owner = await conn.fetchval("SELECT owner_id FROM memory_relationships WHERE id = $1", edge.id)
            if owner is not None and owner != edge.owner_id:
                raise OwnershipViolation(edge.id, edge.owner_id)

            await conn.execute(f"""
                INSERT INTO memory_relationships ({EDGE_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                        COALESCE($11, NOW()), COALESCE($12, NOW()))
                ON CONFLICT (id) DO UPDATE SET
                    source_entity_id = EXCLUDED.source_entity_id,
                    target_entity_id = EXCLUDED.target_entity_id,
                    relationship_type = EXCLUDED.relationship_type,
                    strength = EXCLUDED.strength,
                    confidence = EXCLUDED.confidence,
                    active = EXCLUDED.active,
                    started_at = EXCLUDED.started_at,
                    ended_at = EXCLUDED.ended_at,
                    updated_at = EXCLUDED.updated_at
            """,
                edge.id, edge.owner_id, edge.source_entity_id, edge.target_entity_id,
                edge.relationship_type, edge.strength, edge.confidence, edge.active,
                edge.started_at, edge.ended_at, edge.created_at, edge.updated_at,
            )
        return edge

    async def list_for_entity(
        self, owner_id: str, entity_id: str, active_only: bool = True
    ) -> List[RelationshipEdge]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {EDGE_COLUMNS}
                FROM memory_relationships
                WHERE owner_id = $1
                  AND (source_entity_id = $2 OR target_entity_id = $2)
                  AND (active OR NOT $3)
                ORDER BY strength DESC, id
            """, owner_id, entity_id, active_only)
        return [row_to_edge(r) for r in rows]

    async def list(self, owner_id: str, active_only: bool = True) -> List[RelationshipEdge]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {EDGE_COLUMNS}
                FROM memory_relationships
                WHERE owner_id = $1 AND (active OR NOT $2)
                ORDER BY strength DESC, id
            """, owner_id, active_only)
        return [row_to_edge(r) for r in rows]

"""
Entity Repository - PostgreSQL storage for entities

Storage: PostgreSQL (memory_entities table)

Background tasks never write a whole row they read earlier: decay, archival
and merges use narrow UPDATEs guarded by status = 'active', so a stale
snapshot cannot resurrect or revert an entity another task changed.
"""
import logging
from datetime import datetime
from typing import List, Optional, Sequence

import asyncpg

from memory_core.errors import ConsolidationConflict, OwnershipViolation
from memory_core.models.entity import Entity, EntityStatus, MemoryType
from memory_core.repositories.base import ACTIVE_ONLY, EntityRepository

logger = logging.getLogger(__name__)

ENTITY_COLUMNS = """
    id, owner_id, name, entity_type, memory_type, aliases, summary, relationship,
    importance_tier, importance_score, classified_at, classification_rationale,
    status, superseded_by, sensitivity, is_historical, effective_from, expires_at,
    version, mention_count, access_count, last_mentioned_at, last_decay_at,
    last_accessed_at, embedding, context_notes, source_id, created_at, updated_at
"""

UPDATE_SQL = """
    UPDATE memory_entities SET
        name = $3, entity_type = $4, memory_type = $5, aliases = $6,
        summary = $7, relationship = $8, importance_tier = $9,
        importance_score = $10, classified_at = $11,
        classification_rationale = $12, status = $13, superseded_by = $14,
        sensitivity = $15, is_historical = $16, effective_from = $17,
        expires_at = $18, version = $19, mention_count = $20,
        access_count = $21, last_mentioned_at = $22, last_decay_at = $23,
        last_accessed_at = $24, embedding = $25, context_notes = $26,
        source_id = $27, created_at = COALESCE($28, created_at),
        updated_at = COALESCE($29, NOW())
    WHERE id = $1 AND owner_id = $2
"""


def row_to_entity(row) -> Entity:
    return Entity(
        id=row['id'],
        owner_id=row['owner_id'],
        name=row['name'],
        entity_type=row['entity_type'],
        memory_type=row['memory_type'],
        aliases=list(row['aliases'] or []),
        summary=row['summary'],
        relationship=row['relationship'],
        importance_tier=row['importance_tier'],
        importance_score=row['importance_score'],
        classified_at=row['classified_at'],
        classification_rationale=row['classification_rationale'],
        status=row['status'],
        superseded_by=row['superseded_by'],
        sensitivity=row['sensitivity'],
        is_historical=row['is_historical'],
        effective_from=row['effective_from'],
        expires_at=row['expires_at'],
        version=row['version'],
        mention_count=row['mention_count'],
        access_count=row['access_count'],
        last_mentioned_at=row['last_mentioned_at'],
        last_decay_at=row['last_decay_at'],
        last_accessed_at=row['last_accessed_at'],
        embedding=list(row['embedding']) if row['embedding'] is not None else None,
        context_notes=list(row['context_notes'] or []),
        source_id=row['source_id'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


def _entity_args(entity: Entity) -> tuple:
    return (
        entity.id, entity.owner_id, entity.name, entity.entity_type.value,
        entity.memory_type.value, entity.aliases, entity.summary, entity.relationship,
        entity.importance_tier.value, max(0.0, min(1.0, entity.importance_score)),
        entity.classified_at, entity.classification_rationale,
        entity.status.value, entity.superseded_by, entity.sensitivity.value,
        entity.is_historical, entity.effective_from, entity.expires_at,
        entity.version, entity.mention_count, entity.access_count,
        entity.last_mentioned_at, entity.last_decay_at, entity.last_accessed_at,
        entity.embedding, entity.context_notes, entity.source_id,
        entity.created_at, entity.updated_at,
    )


class PostgresEntityRepository(EntityRepository):
    """
    Repository for Entity domain model

    Reads always filter on owner_id; a row found under another owner
    raises OwnershipViolation instead of being returned.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    # =========================================================================
    # CREATE / UPDATE OPERATIONS
    # =========================================================================

    async def create(self, entity: Entity) -> Entity:
        async with self.db_pool.acquire() as conn:
            await conn.execute(f"""
                INSERT INTO memory_entities ({ENTITY_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15,
                        $16, $17, $18, $19, $20, $21, $22, $23, $24, $25, $26, $27,
                        COALESCE($28, NOW()), COALESCE($29, NOW()))
            """, *_entity_args(entity))

        logger.debug(f"📦 Entity created: {entity.name} ({entity.entity_type.value}) → {entity.id}")
        return entity

    async def _owner_of(self, conn, entity_id: str) -> Optional[str]:
        return await conn.fetchval("SELECT owner_id FROM memory_entities WHERE id = $1", entity_id)

    async def _guarded(self, owner_id: str, entity_id: str, sql: str, *args) -> bool:
        """Run a single-row conditional UPDATE; True when the row matched"""
        async with self.db_pool.acquire() as conn:
            owner = await self._owner_of(conn, entity_id)
            if owner is None:
                raise KeyError(entity_id)
            if owner != owner_id:
                raise OwnershipViolation(entity_id, owner_id)
            result = await conn.execute(sql, owner_id, entity_id, *args)
        return int(result.split()[-1]) > 0

    async def update(self, entity: Entity) -> Entity:
        async with self.db_pool.acquire() as conn:
            owner = await self._owner_of(conn, entity.id)
            if owner is None:
                raise KeyError(entity.id)
            if owner != entity.owner_id:
                raise OwnershipViolation(entity.id, entity.owner_id)

            await conn.execute(UPDATE_SQL, *_entity_args(entity))
        return entity

    async def apply_decay(
        self,
        owner_id: str,
        entity_id: str,
        importance_score: float,
        status: EntityStatus,
        last_decay_at: datetime,
    ) -> bool:
        return await self._guarded(owner_id, entity_id, """
            UPDATE memory_entities
            SET importance_score = $3, status = $4, last_decay_at = $5
            WHERE owner_id = $1 AND id = $2 AND status = 'active'
        """, max(0.0, min(1.0, importance_score)), EntityStatus(status).value, last_decay_at)

    async def archive(self, owner_id: str, entity_id: str, at: datetime) -> bool:
        return await self._guarded(owner_id, entity_id, """
            UPDATE memory_entities
            SET status = 'archived', updated_at = $3
            WHERE owner_id = $1 AND id = $2 AND status = 'active'
        """, at)

    async def reactivate(self, owner_id: str, entity_id: str, at: datetime) -> bool:
        return await self._guarded(owner_id, entity_id, """
            UPDATE memory_entities
            SET status = 'active', updated_at = $3
            WHERE owner_id = $1 AND id = $2 AND status = 'archived' AND superseded_by IS NULL
        """, at)

    async def merge_entities(self, keeper: Entity, loser_id: str, at: datetime) -> Entity:
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                for entity_id in (keeper.id, loser_id):
                    owner = await self._owner_of(conn, entity_id)
                    if owner is not None and owner != keeper.owner_id:
                        raise OwnershipViolation(entity_id, keeper.owner_id)

                archived = await conn.execute("""
                    UPDATE memory_entities
                    SET status = 'archived', superseded_by = $3, updated_at = $4
                    WHERE owner_id = $1 AND id = $2 AND status = 'active'
                """, keeper.owner_id, loser_id, keeper.id, at)
                if int(archived.split()[-1]) == 0:
                    raise ConsolidationConflict(loser_id)

                updated = await conn.execute(UPDATE_SQL + " AND status = 'active'", *_entity_args(keeper))
                if int(updated.split()[-1]) == 0:
                    raise ConsolidationConflict(keeper.id)

        logger.debug(f"🔀 Entity {loser_id} archived into {keeper.id}")
        return keeper

    async def record_access(self, owner_id: str, entity_ids: Sequence[str], at: datetime) -> int:
        if not entity_ids:
            return 0
        async with self.db_pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE memory_entities
                SET access_count = access_count + 1, last_accessed_at = $3
                WHERE owner_id = $1 AND id = ANY($2::text[])
            """, owner_id, list(entity_ids), at)
        return int(result.split()[-1])

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get(self, owner_id: str, entity_id: str) -> Optional[Entity]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT {ENTITY_COLUMNS}
                FROM memory_entities
                WHERE id = $1
            """, entity_id)

        if not row:
            return None
        if row['owner_id'] != owner_id:
            raise OwnershipViolation(entity_id, owner_id)
        return row_to_entity(row)

    async def get_many(self, owner_id: str, entity_ids: Sequence[str]) -> List[Entity]:
        if not entity_ids:
            return []
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {ENTITY_COLUMNS}
                FROM memory_entities
                WHERE id = ANY($1::text[])
            """, list(entity_ids))

        for row in rows:
            if row['owner_id'] != owner_id:
                raise OwnershipViolation(row['id'], owner_id)
        by_id = {row['id']: row_to_entity(row) for row in rows}
        return [by_id[i] for i in entity_ids if i in by_id]

    async def find_by_name(
        self, owner_id: str, name: str, statuses: Sequence[EntityStatus] = ACTIVE_ONLY
    ) -> List[Entity]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {ENTITY_COLUMNS}
                FROM memory_entities
                WHERE owner_id = $1
                  AND status = ANY($3::text[])
                  AND (lower(name) = lower($2)
                       OR EXISTS (SELECT 1 FROM unnest(aliases) a WHERE lower(trim(a)) = lower($2)))
                ORDER BY importance_score DESC, mention_count DESC, id
            """, owner_id, name.strip(), [s.value for s in statuses])
        return [row_to_entity(r) for r in rows]

    async def list(
        self,
        owner_id: str,
        statuses: Sequence[EntityStatus] = ACTIVE_ONLY,
        memory_types: Optional[Sequence[MemoryType]] = None,
        limit: Optional[int] = None,
    ) -> List[Entity]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {ENTITY_COLUMNS}
                FROM memory_entities
                WHERE owner_id = $1
                  AND status = ANY($2::text[])
                  AND ($3::text[] IS NULL OR memory_type = ANY($3::text[]))
                ORDER BY importance_score DESC, mention_count DESC, id
                LIMIT $4
            """,
                owner_id,
                [s.value for s in statuses],
                [m.value for m in memory_types] if memory_types is not None else None,
                limit,
            )
        return [row_to_entity(r) for r in rows]

    async def list_superseded_by(self, owner_id: str, entity_id: str) -> List[Entity]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {ENTITY_COLUMNS}
                FROM memory_entities
                WHERE owner_id = $1 AND superseded_by = $2
                ORDER BY updated_at DESC
            """, owner_id, entity_id)
        return [row_to_entity(r) for r in rows]

    async def list_by_source(self, owner_id: str, source_id: str) -> List[Entity]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {ENTITY_COLUMNS}
                FROM memory_entities
                WHERE owner_id = $1 AND source_id = $2
            """, owner_id, source_id)
        return [row_to_entity(r) for r in rows]

    async def list_owners(self) -> List[str]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch("SELECT DISTINCT owner_id FROM memory_entities ORDER BY owner_id")
        return [r['owner_id'] for r in rows]

"""
Fact Repository - PostgreSQL storage for versioned facts

Storage: PostgreSQL (memory_facts table)

Version changes run inside one transaction:
1. SELECT ... FOR UPDATE the open facts for (owner, entity, predicate)
2. verify the version being replaced is still the open one
3. close it and insert the new version

The partial unique index uq_memory_facts_single_open backs this up; a
UniqueViolationError from it surfaces as VersioningRace.
"""
import logging
from typing import List, Optional

import asyncpg

from memory_core.errors import OwnershipViolation, VersioningRace
from memory_core.models.fact import Fact
from memory_core.repositories.base import FactRepository

logger = logging.getLogger(__name__)

FACT_COLUMNS = """
    id, owner_id, entity_id, predicate, object, object_entity_id, confidence,
    valid_from, valid_to, invalidated_at, invalidated_by, invalidation_reason,
    version, previous_version_id, single_valued, status, source_id,
    mention_count, created_at, last_mentioned_at
"""

OPEN_CLAUSE = "valid_to IS NULL AND invalidated_at IS NULL AND status = 'active'"


def row_to_fact(row) -> Fact:
    return Fact(
        id=row['id'],
        owner_id=row['owner_id'],
        entity_id=row['entity_id'],
        predicate=row['predicate'],
        object=row['object'],
        object_entity_id=row['object_entity_id'],
        confidence=row['confidence'],
        valid_from=row['valid_from'],
        valid_to=row['valid_to'],
        invalidated_at=row['invalidated_at'],
        invalidated_by=row['invalidated_by'],
        invalidation_reason=row['invalidation_reason'],
        version=row['version'],
        previous_version_id=row['previous_version_id'],
        single_valued=row['single_valued'],
        status=row['status'],
        source_id=row['source_id'],
        mention_count=row['mention_count'],
        created_at=row['created_at'],
        last_mentioned_at=row['last_mentioned_at'],
    )


def _fact_args(fact: Fact) -> tuple:
    return (
        fact.id, fact.owner_id, fact.entity_id, fact.predicate, fact.object,
        fact.object_entity_id, fact.confidence, fact.valid_from, fact.valid_to,
        fact.invalidated_at, fact.invalidated_by,
        fact.invalidation_reason.value if fact.invalidation_reason else None,
        fact.version, fact.previous_version_id, fact.single_valued,
        fact.status.value, fact.source_id, fact.mention_count,
        fact.created_at, fact.last_mentioned_at,
    )


UPDATE_SQL = """
    UPDATE memory_facts SET
        entity_id = $3, predicate = $4, object = $5, object_entity_id = $6,
        confidence = $7, valid_from = $8, valid_to = $9, invalidated_at = $10,
        invalidated_by = $11, invalidation_reason = $12, version = $13,
        previous_version_id = $14, single_valued = $15, status = $16,
        source_id = $17, mention_count = $18,
        created_at = COALESCE($19, created_at), last_mentioned_at = $20
    WHERE id = $1 AND owner_id = $2
"""


class PostgresFactRepository(FactRepository):
    """Repository for Fact domain model"""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    # =========================================================================
    # WRITE OPERATIONS
    # =========================================================================

    async def insert(self, fact: Fact, supersede: Optional[Fact] = None) -> Fact:
        try:
            async with self.db_pool.acquire() as conn:
                async with conn.transaction():
                    open_rows = await conn.fetch(f"""
                        SELECT id, single_valued
                        FROM memory_facts
                        WHERE owner_id = $1 AND entity_id = $2 AND predicate = $3
                          AND {OPEN_CLAUSE}
                        FOR UPDATE
                    """, fact.owner_id, fact.entity_id, fact.predicate)
                    open_ids = {r['id'] for r in open_rows}
                    open_single = [r['id'] for r in open_rows if r['single_valued']]

                    if supersede is not None:
                        if supersede.id not in open_ids:
                            raise VersioningRace(fact.entity_id, fact.predicate)
                        if fact.single_valued and any(i != supersede.id for i in open_single):
                            raise VersioningRace(fact.entity_id, fact.predicate)
                        await conn.execute(UPDATE_SQL, *_fact_args(supersede))
                    elif fact.single_valued and open_single:
                        raise VersioningRace(fact.entity_id, fact.predicate)

                    await conn.execute(f"""
                        INSERT INTO memory_facts ({FACT_COLUMNS})
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13,
                                $14, $15, $16, $17, $18, COALESCE($19, NOW()), $20)
                    """, *_fact_args(fact))
        except asyncpg.UniqueViolationError as e:
            logger.warning(f"⚠️  Unique violation on ({fact.entity_id}, {fact.predicate}): {e}")
            raise VersioningRace(fact.entity_id, fact.predicate) from e

        return fact

    async def update(self, fact: Fact) -> Fact:
        async with self.db_pool.acquire() as conn:
            owner = await conn.fetchval("SELECT owner_id FROM memory_facts WHERE id = $1", fact.id)
            if owner is None:
                raise KeyError(fact.id)
            if owner != fact.owner_id:
                raise OwnershipViolation(fact.id, fact.owner_id)
            try:
                await conn.execute(UPDATE_SQL, *_fact_args(fact))
            except asyncpg.UniqueViolationError as e:
                raise VersioningRace(fact.entity_id, fact.predicate) from e
        return fact

    async def reassign_entity(self, owner_id: str, from_entity_id: str, to_entity_id: str) -> int:
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                subject = await conn.execute("""
                    UPDATE memory_facts SET entity_id = $3
                    WHERE owner_id = $1 AND entity_id = $2
                """, owner_id, from_entity_id, to_entity_id)
                obj = await conn.execute("""
                    UPDATE memory_facts SET object_entity_id = $3
                    WHERE owner_id = $1 AND object_entity_id = $2
                """, owner_id, from_entity_id, to_entity_id)
        return int(subject.split()[-1]) + int(obj.split()[-1])

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get(self, owner_id: str, fact_id: str) -> Optional[Fact]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {FACT_COLUMNS} FROM memory_facts WHERE id = $1", fact_id)
        if not row:
            return None
        if row['owner_id'] != owner_id:
            raise OwnershipViolation(fact_id, owner_id)
        return row_to_fact(row)

    async def open_facts(self, owner_id: str, entity_id: str, predicate: Optional[str] = None) -> List[Fact]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {FACT_COLUMNS}
                FROM memory_facts
                WHERE owner_id = $1 AND entity_id = $2
                  AND ($3::text IS NULL OR predicate = $3)
                  AND {OPEN_CLAUSE}
                ORDER BY created_at, id
            """, owner_id, entity_id, predicate)
        return [row_to_fact(r) for r in rows]

    async def list_for_entity(self, owner_id: str, entity_id: str) -> List[Fact]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {FACT_COLUMNS}
                FROM memory_facts
                WHERE owner_id = $1 AND entity_id = $2
                ORDER BY created_at, version, id
            """, owner_id, entity_id)
        return [row_to_fact(r) for r in rows]

    async def history(self, owner_id: str, entity_id: str, predicate: str) -> List[Fact]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {FACT_COLUMNS}
                FROM memory_facts
                WHERE owner_id = $1 AND entity_id = $2 AND predicate = $3
                ORDER BY version DESC, created_at DESC
            """, owner_id, entity_id, predicate)
        return [row_to_fact(r) for r in rows]

    async def list_by_source(self, owner_id: str, source_id: str) -> List[Fact]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {FACT_COLUMNS}
                FROM memory_facts
                WHERE owner_id = $1 AND source_id = $2
                ORDER BY created_at
            """, owner_id, source_id)
        return [row_to_fact(r) for r in rows]

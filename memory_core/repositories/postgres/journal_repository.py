"""
Journal Repository - merge log, sentiment readings and maintenance runs

Storage: PostgreSQL (memory_operations, memory_sentiment,
memory_maintenance_runs tables)
"""
import json
import logging
from datetime import datetime
from typing import List, Optional

import asyncpg

from memory_core.models.operations import MemoryOperation, SentimentReading, MaintenanceRun
from memory_core.repositories.base import JournalRepository

logger = logging.getLogger(__name__)


class PostgresJournalRepository(JournalRepository):

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    # =========================================================================
    # MEMORY OPERATIONS
    # =========================================================================

    async def record_operation(self, operation: MemoryOperation) -> MemoryOperation:
        async with self.db_pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO memory_operations
                    (id, owner_id, operation, entity_id, merged_entity_ids,
                     old_content, new_content, reasoning, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, COALESCE($9, NOW()))
            """,
                operation.id, operation.owner_id, operation.operation, operation.entity_id,
                operation.merged_entity_ids, operation.old_content, operation.new_content,
                operation.reasoning, operation.created_at,
            )
        return operation

    async def list_operations(self, owner_id: str, entity_id: Optional[str] = None) -> List[MemoryOperation]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT id, owner_id, operation, entity_id, merged_entity_ids,
                       old_content, new_content, reasoning, created_at
                FROM memory_operations
                WHERE owner_id = $1 AND ($2::text IS NULL OR entity_id = $2)
                ORDER BY created_at
            """, owner_id, entity_id)
        return [
            MemoryOperation(
                id=r['id'],
                owner_id=r['owner_id'],
                operation=r['operation'],
                entity_id=r['entity_id'],
                merged_entity_ids=list(r['merged_entity_ids'] or []),
                old_content=r['old_content'],
                new_content=r['new_content'],
                reasoning=r['reasoning'],
                created_at=r['created_at'],
            )
            for r in rows
        ]

    # =========================================================================
    # SENTIMENT
    # =========================================================================

    async def add_sentiment(self, reading: SentimentReading) -> SentimentReading:
        async with self.db_pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO memory_sentiment (id, owner_id, entity_id, sentiment, context, created_at)
                VALUES ($1, $2, $3, $4, $5, COALESCE($6, NOW()))
            """,
                reading.id, reading.owner_id, reading.entity_id,
                reading.sentiment, reading.context, reading.created_at,
            )
        return reading

    async def list_sentiment(
        self,
        owner_id: str,
        entity_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[SentimentReading]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT id, owner_id, entity_id, sentiment, context, created_at
                FROM memory_sentiment
                WHERE owner_id = $1
                  AND ($2::text IS NULL OR entity_id = $2)
                  AND ($3::timestamptz IS NULL OR created_at >= $3)
                  AND ($4::timestamptz IS NULL OR created_at < $4)
                ORDER BY created_at
            """, owner_id, entity_id, since, until)
        return [
            SentimentReading(
                id=r['id'],
                owner_id=r['owner_id'],
                entity_id=r['entity_id'],
                sentiment=r['sentiment'],
                context=r['context'],
                created_at=r['created_at'],
            )
            for r in rows
        ]

    # =========================================================================
    # MAINTENANCE RUN LEDGER
    # =========================================================================

    async def record_run(self, run: MaintenanceRun) -> MaintenanceRun:
        async with self.db_pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO memory_maintenance_runs
                    (id, task_name, owner_id, window_key, status, counts, errors,
                     started_at, finished_at)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9)
            """,
                run.id, run.task_name, run.owner_id, run.window_key, run.status,
                json.dumps(run.counts), json.dumps(run.errors),
                run.started_at, run.finished_at,
            )
        return run

    async def has_completed_run(self, owner_id: str, task_name: str, window_key: str) -> bool:
        async with self.db_pool.acquire() as conn:
            found = await conn.fetchval("""
                SELECT EXISTS (
                    SELECT 1 FROM memory_maintenance_runs
                    WHERE owner_id = $1 AND task_name = $2
                      AND window_key = $3 AND status = 'completed'
                )
            """, owner_id, task_name, window_key)
        return bool(found)

    async def list_runs(
        self, owner_id: Optional[str] = None, task_name: Optional[str] = None, limit: int = 50
    ) -> List[MaintenanceRun]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT id, task_name, owner_id, window_key, status, counts, errors,
                       started_at, finished_at
                FROM memory_maintenance_runs
                WHERE ($1::text IS NULL OR owner_id = $1)
                  AND ($2::text IS NULL OR task_name = $2)
                ORDER BY finished_at DESC NULLS LAST
                LIMIT $3
            """, owner_id, task_name, limit)
        return [
            MaintenanceRun(
                id=r['id'],
                task_name=r['task_name'],
                owner_id=r['owner_id'],
                window_key=r['window_key'],
                status=r['status'],
                counts=json.loads(r['counts']) if isinstance(r['counts'], str) else dict(r['counts']),
                errors=json.loads(r['errors']) if isinstance(r['errors'], str) else list(r['errors']),
                started_at=r['started_at'],
                finished_at=r['finished_at'],
            )
            for r in rows
        ]

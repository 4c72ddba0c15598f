"""
Inference Repository - PostgreSQL storage for derived connections

Storage: PostgreSQL (memory_inferences table)
"""
import logging
from datetime import datetime
from typing import List, Optional

import asyncpg

from memory_core.models.relationships import Inference, InferenceStatus
from memory_core.repositories.base import InferenceRepository

logger = logging.getLogger(__name__)

INFERENCE_COLUMNS = """
    id, owner_id, inference_type, text, subject_names, supporting_evidence,
    confidence, status, expires_at, created_at
"""


def row_to_inference(row) -> Inference:
    return Inference(
        id=row['id'],
        owner_id=row['owner_id'],
        inference_type=row['inference_type'],
        text=row['text'],
        subject_names=list(row['subject_names'] or []),
        supporting_evidence=list(row['supporting_evidence'] or []),
        confidence=row['confidence'],
        status=row['status'],
        expires_at=row['expires_at'],
        created_at=row['created_at'],
    )


class PostgresInferenceRepository(InferenceRepository):

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def create(self, inference: Inference) -> Inference:
        async with self.db_pool.acquire() as conn:
            await conn.execute(f"""
                INSERT INTO memory_inferences ({INFERENCE_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, COALESCE($10, NOW()))
            """,
                inference.id, inference.owner_id, inference.inference_type.value,
                inference.text, inference.subject_names, inference.supporting_evidence,
                inference.confidence, inference.status.value, inference.expires_at,
                inference.created_at,
            )
        return inference

    async def list(self, owner_id: str, status: Optional[InferenceStatus] = None) -> List[Inference]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {INFERENCE_COLUMNS}
                FROM memory_inferences
                WHERE owner_id = $1 AND ($2::text IS NULL OR status = $2)
                ORDER BY confidence DESC, id
            """, owner_id, status.value if status else None)
        return [row_to_inference(r) for r in rows]

    async def find_active_by_text(self, owner_id: str, text: str) -> Optional[Inference]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT {INFERENCE_COLUMNS}
                FROM memory_inferences
                WHERE owner_id = $1 AND status = 'active' AND lower(text) = lower($2)
                LIMIT 1
            """, owner_id, text.strip())
        return row_to_inference(row) if row else None

    async def expire(self, owner_id: str, now: datetime) -> int:
        async with self.db_pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE memory_inferences
                SET status = 'expired'
                WHERE owner_id = $1 AND status = 'active' AND expires_at <= $2
            """, owner_id, now)
        return int(result.split()[-1])

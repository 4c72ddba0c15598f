"""
PostgreSQL backend (asyncpg)
"""
import asyncpg

from memory_core.repositories.base import MemoryStore
from .entity_repository import PostgresEntityRepository
from .fact_repository import PostgresFactRepository
from .relationship_repository import PostgresRelationshipRepository
from .inference_repository import PostgresInferenceRepository
from .journal_repository import PostgresJournalRepository
from .schema import SCHEMA_SQL, apply_schema


def create_postgres_store(db_pool: asyncpg.Pool) -> MemoryStore:
    """Bundle the PostgreSQL repositories around one shared pool"""
    return MemoryStore(
        entities=PostgresEntityRepository(db_pool),
        facts=PostgresFactRepository(db_pool),
        relationships=PostgresRelationshipRepository(db_pool),
        inferences=PostgresInferenceRepository(db_pool),
        journal=PostgresJournalRepository(db_pool),
    )


__all__ = [
    'PostgresEntityRepository',
    'PostgresFactRepository',
    'PostgresRelationshipRepository',
    'PostgresInferenceRepository',
    'PostgresJournalRepository',
    'SCHEMA_SQL',
    'apply_schema',
    'create_postgres_store',
]

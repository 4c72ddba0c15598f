"""
Repository Pattern - Storage abstraction layer

Repositories hide storage details from business logic. Services work with
domain models and a MemoryStore bundle, never with rows.

Backends:
- postgres: asyncpg pool, production (schema in postgres/schema.py)
- memory: in-process, for tests and embedded use
"""
from .base import (
    MemoryStore,
    EntityRepository,
    FactRepository,
    RelationshipRepository,
    InferenceRepository,
    JournalRepository,
)
from .memory import create_memory_store

__all__ = [
    'MemoryStore',
    'EntityRepository',
    'FactRepository',
    'RelationshipRepository',
    'InferenceRepository',
    'JournalRepository',
    'create_memory_store',
]

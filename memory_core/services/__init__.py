"""
Engine services

Each service takes a MemoryStore and an injectable clock; MemoryCore
(memory_core.core) wires them together.
"""
from .consolidation import ConsolidationEngine, ConsolidationReport, MergeCandidate, keeper_score
from .decay import DecayScheduler, DecayOutcome, DECAY_POLICIES
from .facts import FactService, FactIngestResult, is_in_effect
from .graph import RelationshipGraph, TraversalNode
from .importance import ImportanceService, Classification
from .inferences import InferenceService
from .ingestion import IngestionService, IngestionReport
from .maintenance import MaintenanceService, MAINTENANCE_TASKS, UnknownTask
from .query_router import QueryRouter, QueryIntent, detect_intent
from .retrieval import (
    RetrievalRanker,
    SearchFilters,
    SearchResponse,
    RankedResult,
    WeightProfile,
    DEFAULT_PROFILE,
    GRAPH_FIRST_PROFILE,
)

__all__ = [
    'ConsolidationEngine', 'ConsolidationReport', 'MergeCandidate', 'keeper_score',
    'DecayScheduler', 'DecayOutcome', 'DECAY_POLICIES',
    'FactService', 'FactIngestResult', 'is_in_effect',
    'RelationshipGraph', 'TraversalNode',
    'ImportanceService', 'Classification',
    'InferenceService',
    'IngestionService', 'IngestionReport',
    'MaintenanceService', 'MAINTENANCE_TASKS', 'UnknownTask',
    'QueryRouter', 'QueryIntent', 'detect_intent',
    'RetrievalRanker', 'SearchFilters', 'SearchResponse', 'RankedResult',
    'WeightProfile', 'DEFAULT_PROFILE', 'GRAPH_FIRST_PROFILE',
]

"""
Domain models - storage-agnostic dataclasses shared by repositories and services
"""
from .entity import (
    Entity,
    EntityType,
    EntityStatus,
    ImportanceTier,
    MemoryType,
    Sensitivity,
    TIER_BASE_SCORES,
    TIER_RANK,
    SENSITIVITY_RANK,
    clamp_score,
)
from .fact import Fact, FactStatus, InvalidationReason, normalize_object, normalize_predicate
from .relationships import RelationshipEdge, Inference, InferenceType, InferenceStatus
from .operations import MemoryOperation, SentimentReading, MaintenanceRun, BatchReport
from .candidate import (
    AcceptedCandidate,
    RejectedCandidate,
    EntityCandidate,
    FactCandidate,
    RelationshipCandidate,
    InferenceCandidate,
    validate_candidate,
    validate_payload,
)

__all__ = [
    'Entity', 'EntityType', 'EntityStatus', 'ImportanceTier', 'MemoryType', 'Sensitivity',
    'TIER_BASE_SCORES', 'TIER_RANK', 'SENSITIVITY_RANK', 'clamp_score',
    'Fact', 'FactStatus', 'InvalidationReason', 'normalize_object', 'normalize_predicate',
    'RelationshipEdge', 'Inference', 'InferenceType', 'InferenceStatus',
    'MemoryOperation', 'SentimentReading', 'MaintenanceRun', 'BatchReport',
    'AcceptedCandidate', 'RejectedCandidate', 'EntityCandidate', 'FactCandidate',
    'RelationshipCandidate', 'InferenceCandidate', 'validate_candidate', 'validate_payload',
]

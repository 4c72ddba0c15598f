"""
Relationship domain models

Represents connections between entities in the knowledge graph, and
inferred (never stated) connections that expire on their own.

ID format: {prefix}_xxxxxxxx (11 chars)
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from memory_core.utils.id_generator import generate_relationship_id, generate_inference_id


MAX_EDGE_STRENGTH = 1.0
BASE_EDGE_STRENGTH = 0.5


def normalize_relationship_type(value: str) -> str:
    return (value or 'related_to').strip().lower().replace(' ', '_')


@dataclass
class RelationshipEdge:
    """
    Directed edge between two entities of the same owner

    (owner_id, source_entity_id, target_entity_id, relationship_type) is unique.
    Ended relationships stay in the graph with active=False.
    """
    id: str
    owner_id: str
    source_entity_id: str  # en_xxxxxxxx
    target_entity_id: str  # en_xxxxxxxx
    relationship_type: str  # "works_with", "sibling_of", "knows"
    strength: float = BASE_EDGE_STRENGTH
    confidence: float = 0.8
    active: bool = True
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            self.id = generate_relationship_id()
        self.relationship_type = normalize_relationship_type(self.relationship_type)
        self.strength = max(0.0, min(MAX_EDGE_STRENGTH, float(self.strength)))

    @property
    def key(self):
        return (self.source_entity_id, self.target_entity_id, self.relationship_type)

    @property
    def is_self_loop(self) -> bool:
        return self.source_entity_id == self.target_entity_id

    def other_end(self, entity_id: str) -> Optional[str]:
        """The entity on the opposite side of `entity_id`, or None if not incident"""
        if self.source_entity_id == entity_id:
            return self.target_entity_id
        if self.target_entity_id == entity_id:
            return self.source_entity_id
        return None


class InferenceType(str, Enum):
    CONNECTION = "connection"
    PATTERN = "pattern"
    PREDICTION = "prediction"


class InferenceStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass
class Inference:
    """
    Derived connection between entities

    Inferences are not facts: they are never versioned or contradicted,
    they simply expire (default 30 days after creation).
    """
    id: str
    owner_id: str
    text: str
    confidence: float
    inference_type: InferenceType = InferenceType.CONNECTION
    subject_names: List[str] = field(default_factory=list)
    supporting_evidence: List[str] = field(default_factory=list)
    status: InferenceStatus = InferenceStatus.ACTIVE
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            self.id = generate_inference_id()
        self.text = (self.text or '').strip()
        self.inference_type = InferenceType(self.inference_type)
        self.status = InferenceStatus(self.status)

    def is_live(self, now: datetime) -> bool:
        return (
            self.status == InferenceStatus.ACTIVE
            and (self.expires_at is None or self.expires_at > now)
        )

    def mentions_any(self, names: List[str]) -> bool:
        wanted = {n.strip().lower() for n in names if n}
        return any(s.strip().lower() in wanted for s in self.subject_names)

"""
Entity domain model

An entity is anything the owner talks about: a person, place, project,
topic, organization or pet. Entities carry importance (tier + score) that
decays over time, access bookkeeping for ranking, and an optional
`superseded_by` pointer once they lose a merge.

ID format: en_xxxxxxxx (11 chars)
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from memory_core.utils.id_generator import generate_entity_id


class EntityType(str, Enum):
    PERSON = "person"
    PLACE = "place"
    PROJECT = "project"
    TOPIC = "topic"
    ORGANIZATION = "organization"
    PET = "pet"
    OTHER = "other"


class MemoryType(str, Enum):
    ENTITY = "entity"
    PREFERENCE = "preference"
    GOAL = "goal"
    DECISION = "decision"
    EVENT = "event"
    FACT = "fact"


class ImportanceTier(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    TRIVIAL = "trivial"


class EntityStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class Sensitivity(str, Enum):
    NORMAL = "normal"
    SENSITIVE = "sensitive"
    PRIVATE = "private"


TIER_BASE_SCORES = {
    ImportanceTier.CRITICAL: 1.0,
    ImportanceTier.HIGH: 0.8,
    ImportanceTier.MEDIUM: 0.5,
    ImportanceTier.LOW: 0.3,
    ImportanceTier.TRIVIAL: 0.1,
}

# Higher rank = more important
TIER_RANK = {
    ImportanceTier.TRIVIAL: 0,
    ImportanceTier.LOW: 1,
    ImportanceTier.MEDIUM: 2,
    ImportanceTier.HIGH: 3,
    ImportanceTier.CRITICAL: 4,
}

SENSITIVITY_RANK = {
    Sensitivity.NORMAL: 0,
    Sensitivity.SENSITIVE: 1,
    Sensitivity.PRIVATE: 2,
}


def clamp_score(value: Optional[float]) -> float:
    """Clamp an importance score into [0, 1] (None counts as medium)"""
    if value is None:
        return TIER_BASE_SCORES[ImportanceTier.MEDIUM]
    return max(0.0, min(1.0, float(value)))


@dataclass
class Entity:
    """
    Entity domain model - storage-agnostic representation

    Storage: PostgreSQL (memory_entities table) or the in-process store

    Every entity belongs to exactly one owner; no operation reads or writes
    across owners.
    """
    id: str
    owner_id: str
    name: str
    entity_type: EntityType = EntityType.OTHER
    memory_type: MemoryType = MemoryType.ENTITY
    aliases: List[str] = field(default_factory=list)
    summary: Optional[str] = None
    relationship: Optional[str] = None  # relationship to the owner ("sister", "coworker")

    # Importance
    importance_tier: ImportanceTier = ImportanceTier.MEDIUM
    importance_score: float = 0.5
    classified_at: Optional[datetime] = None  # None = classification pending
    classification_rationale: Optional[str] = None

    # Lifecycle
    status: EntityStatus = EntityStatus.ACTIVE
    superseded_by: Optional[str] = None
    sensitivity: Sensitivity = Sensitivity.NORMAL
    is_historical: bool = False
    effective_from: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    version: int = 1

    # Decay / access bookkeeping
    mention_count: int = 1
    access_count: int = 0
    last_mentioned_at: Optional[datetime] = None
    last_decay_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None

    embedding: Optional[List[float]] = None
    context_notes: List[str] = field(default_factory=list)
    source_id: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """Generate ID if needed and normalize enum fields"""
        if not self.id:
            self.id = generate_entity_id()
        self.name = self.name.strip()
        self.entity_type = EntityType(self.entity_type)
        self.memory_type = MemoryType(self.memory_type)
        self.importance_tier = ImportanceTier(self.importance_tier)
        self.status = EntityStatus(self.status)
        self.sensitivity = Sensitivity(self.sensitivity)
        self.importance_score = clamp_score(self.importance_score)

    @property
    def is_active(self) -> bool:
        return self.status == EntityStatus.ACTIVE

    @property
    def is_archived(self) -> bool:
        return self.status == EntityStatus.ARCHIVED

    @property
    def is_critical(self) -> bool:
        return self.importance_tier == ImportanceTier.CRITICAL

    @property
    def is_classified(self) -> bool:
        return self.classified_at is not None

    @property
    def all_names(self) -> List[str]:
        """Name followed by aliases"""
        return [self.name] + [a for a in self.aliases if a]

    def matches_name(self, name: str) -> bool:
        """Case-insensitive match against name and aliases"""
        needle = name.strip().lower()
        return any(n.strip().lower() == needle for n in self.all_names)

    def add_alias(self, alias: str):
        alias = (alias or '').strip()
        if alias and not self.matches_name(alias):
            self.aliases.append(alias)

    def add_context_note(self, note: str, cap: int = 10):
        """Append a recent context snippet, keeping only the last `cap`"""
        note = (note or '').strip()
        if not note:
            return
        if note in self.context_notes:
            self.context_notes.remove(note)
        self.context_notes.append(note)
        if len(self.context_notes) > cap:
            self.context_notes = self.context_notes[-cap:]

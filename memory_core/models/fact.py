"""
Fact domain model

A fact is a (subject entity, predicate, object) triple with bitemporal
bookkeeping:
- valid_from / valid_to: when the fact was true in the world
- created_at / invalidated_at: when we learned it and when we stopped believing it

Contradicted facts are never deleted. They are closed (valid_to set) and
linked forward through invalidated_by and backward through previous_version_id.

ID format: fa_xxxxxxxx (11 chars)
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from memory_core.utils.id_generator import generate_fact_id


class FactStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class InvalidationReason(str, Enum):
    CONTRADICTION = "contradiction"
    SOURCE_DELETED = "source_deleted"
    USER_CORRECTED = "user_corrected"
    MERGED = "merged"
    EXPIRED = "expired"


def normalize_object(value: str) -> str:
    """Comparison key for fact objects: trimmed and case-insensitive"""
    return (value or '').strip().lower()


def normalize_predicate(value: str) -> str:
    return (value or '').strip().lower().replace(' ', '_')


@dataclass
class Fact:
    """
    Fact domain model - storage-agnostic representation

    Storage: PostgreSQL (memory_facts table) or the in-process store
    """
    id: str
    owner_id: str
    entity_id: str  # subject, en_xxxxxxxx
    predicate: str
    object: str
    confidence: float = 0.8
    object_entity_id: Optional[str] = None  # when the object is itself an entity

    # Temporal versioning
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    invalidated_at: Optional[datetime] = None
    invalidated_by: Optional[str] = None
    invalidation_reason: Optional[InvalidationReason] = None
    version: int = 1
    previous_version_id: Optional[str] = None
    single_valued: bool = False

    status: FactStatus = FactStatus.ACTIVE
    source_id: Optional[str] = None
    mention_count: int = 1

    created_at: Optional[datetime] = None
    last_mentioned_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            self.id = generate_fact_id()
        self.predicate = normalize_predicate(self.predicate)
        self.object = (self.object or '').strip()
        self.status = FactStatus(self.status)
        if self.invalidation_reason is not None:
            self.invalidation_reason = InvalidationReason(self.invalidation_reason)
        self.confidence = max(0.0, min(1.0, float(self.confidence)))

    @property
    def object_key(self) -> str:
        return normalize_object(self.object)

    @property
    def is_open(self) -> bool:
        """Still the current version (valid_to not set)"""
        return self.valid_to is None and self.invalidated_at is None

    @property
    def is_current(self) -> bool:
        """Open and not soft-deleted"""
        return self.is_open and self.status == FactStatus.ACTIVE

    def is_effective(self, now: datetime) -> bool:
        """Current and already in effect (valid_from not in the future)"""
        return self.is_current and (self.valid_from is None or self.valid_from <= now)

    def same_object(self, other_object: str) -> bool:
        return self.object_key == normalize_object(other_object)

    def was_known_at(self, as_of: datetime) -> bool:
        """Known by `as_of` and not yet invalidated at that moment"""
        if self.created_at is not None and self.created_at > as_of:
            return False
        if self.invalidated_at is not None and self.invalidated_at <= as_of:
            return False
        return True

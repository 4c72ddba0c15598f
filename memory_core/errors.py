"""
Error taxonomy for the memory core.

Every failure the engine raises on purpose derives from MemoryCoreError so
callers can catch the family in one place. How each one is handled:

- ValidationError: malformed or low-confidence candidate, dropped (debug log)
- ClassificationError: unparseable classifier output, tier falls back to medium
- ConsolidationConflict: pair already merged elsewhere, skipped
- RetrievalDegradation: semantic scoring unavailable, ranker falls back
- VersioningRace: concurrent fact insert lost, retried once by the caller
- OwnershipViolation: record of another owner addressed, always propagates
- EntityNotFound: addressed entity does not exist for the owner
"""
from typing import Optional


class MemoryCoreError(Exception):
    """Base class for all memory core errors"""


class ValidationError(MemoryCoreError):
    """Candidate payload failed boundary validation"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ClassificationError(MemoryCoreError):
    """Importance classifier returned something we cannot use"""


class ConsolidationConflict(MemoryCoreError):
    """Merge candidate is no longer active (merged by another run)"""

    def __init__(self, entity_id: str, message: Optional[str] = None):
        super().__init__(message or f"Entity {entity_id} is no longer active")
        self.entity_id = entity_id


class RetrievalDegradation(MemoryCoreError):
    """Semantic component (embedder or vectors) is unavailable"""


class VersioningRace(MemoryCoreError):
    """Another writer changed the active version of a fact concurrently"""

    def __init__(self, entity_id: str, predicate: str):
        super().__init__(f"Concurrent version change on ({entity_id}, {predicate})")
        self.entity_id = entity_id
        self.predicate = predicate


class OwnershipViolation(MemoryCoreError):
    """A record belonging to another owner was addressed"""

    def __init__(self, record_id: str, owner_id: str):
        super().__init__(f"Record {record_id} does not belong to owner {owner_id}")
        self.record_id = record_id
        self.owner_id = owner_id


class EntityNotFound(MemoryCoreError):
    """Entity does not exist for this owner"""

    def __init__(self, entity_id: str):
        super().__init__(f"Entity not found: {entity_id}")
        self.entity_id = entity_id

"""
Repository interfaces

Services talk to these abstract repositories only. Two backends implement
them with identical semantics:
- repositories.postgres: asyncpg, production
- repositories.memory: in-process dicts guarded by asyncio locks

Every method takes owner_id. Addressing a record that exists under a
different owner raises OwnershipViolation; nothing ever crosses owners.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from memory_core.models.entity import Entity, EntityStatus, MemoryType
from memory_core.models.fact import Fact
from memory_core.models.relationships import RelationshipEdge, Inference, InferenceStatus
from memory_core.models.operations import MemoryOperation, SentimentReading, MaintenanceRun

ACTIVE_ONLY = (EntityStatus.ACTIVE,)
ALL_STATUSES = (EntityStatus.ACTIVE, EntityStatus.ARCHIVED)


class EntityRepository(ABC):

    @abstractmethod
    async def create(self, entity: Entity) -> Entity:
        ...

    @abstractmethod
    async def get(self, owner_id: str, entity_id: str) -> Optional[Entity]:
        ...

    @abstractmethod
    async def get_many(self, owner_id: str, entity_ids: Sequence[str]) -> List[Entity]:
        ...

    @abstractmethod
    async def update(self, entity: Entity) -> Entity:
        """Persist every mutable field of an existing entity"""

    @abstractmethod
    async def apply_decay(
        self,
        owner_id: str,
        entity_id: str,
        importance_score: float,
        status: EntityStatus,
        last_decay_at: datetime,
    ) -> bool:
        """
        Write only the decay fields, and only while the entity is active.

        Returns:
            False when the entity was no longer active (nothing written)
        """

    @abstractmethod
    async def archive(self, owner_id: str, entity_id: str, at: datetime) -> bool:
        """Status-only move from active to archived; False if it was not active"""

    @abstractmethod
    async def reactivate(self, owner_id: str, entity_id: str, at: datetime) -> bool:
        """Archived -> active unless the entity was merged (superseded_by set)"""

    @abstractmethod
    async def merge_entities(self, keeper: Entity, loser_id: str, at: datetime) -> Entity:
        """
        Persist a folded keeper and archive the loser as superseded by it,
        as one unit: either both writes happen or neither does.

        Raises:
            ConsolidationConflict: keeper or loser is missing or no longer active
        """

    @abstractmethod
    async def find_by_name(
        self, owner_id: str, name: str, statuses: Sequence[EntityStatus] = ACTIVE_ONLY
    ) -> List[Entity]:
        """Case-insensitive match on name or any alias"""

    @abstractmethod
    async def list(
        self,
        owner_id: str,
        statuses: Sequence[EntityStatus] = ACTIVE_ONLY,
        memory_types: Optional[Sequence[MemoryType]] = None,
        limit: Optional[int] = None,
    ) -> List[Entity]:
        """Ordered by importance_score desc, mention_count desc, id"""

    @abstractmethod
    async def list_superseded_by(self, owner_id: str, entity_id: str) -> List[Entity]:
        ...

    @abstractmethod
    async def list_by_source(self, owner_id: str, source_id: str) -> List[Entity]:
        ...

    @abstractmethod
    async def record_access(self, owner_id: str, entity_ids: Sequence[str], at: datetime) -> int:
        """Increment access_count and set last_accessed_at on the given entities"""

    @abstractmethod
    async def list_owners(self) -> List[str]:
        ...


class FactRepository(ABC):

    @abstractmethod
    async def get(self, owner_id: str, fact_id: str) -> Optional[Fact]:
        ...

    @abstractmethod
    async def open_facts(self, owner_id: str, entity_id: str, predicate: Optional[str] = None) -> List[Fact]:
        """Active facts with neither valid_to nor invalidated_at set"""

    @abstractmethod
    async def insert(self, fact: Fact, supersede: Optional[Fact] = None) -> Fact:
        """
        Atomically insert a fact, optionally closing the version it replaces.

        `supersede` carries its closing fields (valid_to, invalidated_at,
        invalidated_by, invalidation_reason) already set by the caller.

        Raises:
            VersioningRace: `supersede` is no longer open, or a single-valued
                fact is inserted while another open one exists for the same
                (entity, predicate)
        """

    @abstractmethod
    async def update(self, fact: Fact) -> Fact:
        ...

    @abstractmethod
    async def list_for_entity(self, owner_id: str, entity_id: str) -> List[Fact]:
        """Every version of every fact about the entity, oldest first"""

    @abstractmethod
    async def history(self, owner_id: str, entity_id: str, predicate: str) -> List[Fact]:
        """All versions for (entity, predicate), newest version first"""

    @abstractmethod
    async def list_by_source(self, owner_id: str, source_id: str) -> List[Fact]:
        ...

    @abstractmethod
    async def reassign_entity(self, owner_id: str, from_entity_id: str, to_entity_id: str) -> int:
        """Re-point subject and object references; returns facts touched"""


class RelationshipRepository(ABC):

    @abstractmethod
    async def get(self, owner_id: str, edge_id: str) -> Optional[RelationshipEdge]:
        ...

    @abstractmethod
    async def find(
        self, owner_id: str, source_entity_id: str, target_entity_id: str, relationship_type: str
    ) -> Optional[RelationshipEdge]:
        ...

    @abstractmethod
    async def save(self, edge: RelationshipEdge) -> RelationshipEdge:
        """Insert or update by id"""

    @abstractmethod
    async def list_for_entity(
        self, owner_id: str, entity_id: str, active_only: bool = True
    ) -> List[RelationshipEdge]:
        """Edges where the entity is either source or target"""

    @abstractmethod
    async def list(self, owner_id: str, active_only: bool = True) -> List[RelationshipEdge]:
        ...


class InferenceRepository(ABC):

    @abstractmethod
    async def create(self, inference: Inference) -> Inference:
        ...

    @abstractmethod
    async def list(self, owner_id: str, status: Optional[InferenceStatus] = None) -> List[Inference]:
        """Ordered by confidence desc"""

    @abstractmethod
    async def find_active_by_text(self, owner_id: str, text: str) -> Optional[Inference]:
        ...

    @abstractmethod
    async def expire(self, owner_id: str, now: datetime) -> int:
        """Mark active inferences with expires_at <= now as expired"""


class JournalRepository(ABC):
    """Merge log, sentiment readings and the maintenance run ledger"""

    @abstractmethod
    async def record_operation(self, operation: MemoryOperation) -> MemoryOperation:
        ...

    @abstractmethod
    async def list_operations(self, owner_id: str, entity_id: Optional[str] = None) -> List[MemoryOperation]:
        ...

    @abstractmethod
    async def add_sentiment(self, reading: SentimentReading) -> SentimentReading:
        ...

    @abstractmethod
    async def list_sentiment(
        self,
        owner_id: str,
        entity_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[SentimentReading]:
        """Readings in [since, until), oldest first"""

    @abstractmethod
    async def record_run(self, run: MaintenanceRun) -> MaintenanceRun:
        ...

    @abstractmethod
    async def has_completed_run(self, owner_id: str, task_name: str, window_key: str) -> bool:
        ...

    @abstractmethod
    async def list_runs(
        self, owner_id: Optional[str] = None, task_name: Optional[str] = None, limit: int = 50
    ) -> List[MaintenanceRun]:
        """Newest first"""


@dataclass
class MemoryStore:
    """Bundle of repositories handed to every service"""
    entities: EntityRepository
    facts: FactRepository
    relationships: RelationshipRepository
    inferences: InferenceRepository
    journal: JournalRepository

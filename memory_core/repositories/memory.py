"""
In-process repositories

Same semantics as the PostgreSQL backend, kept in dicts. Records are
deep-copied on the way in and out so callers never share mutable state
with the store (mirrors row semantics). Fact inserts take a per-(entity,
predicate) asyncio lock, the in-process equivalent of SELECT ... FOR UPDATE.

Used by tests and by embedded single-process deployments.
"""
import asyncio
import copy
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from memory_core.errors import ConsolidationConflict, OwnershipViolation, VersioningRace
from memory_core.models.entity import Entity, EntityStatus, MemoryType
from memory_core.models.fact import Fact
from memory_core.models.relationships import RelationshipEdge, Inference, InferenceStatus
from memory_core.models.operations import MemoryOperation, SentimentReading, MaintenanceRun
from memory_core.repositories.base import (
    ACTIVE_ONLY,
    EntityRepository,
    FactRepository,
    RelationshipRepository,
    InferenceRepository,
    JournalRepository,
    MemoryStore,
)

logger = logging.getLogger(__name__)


def _check_owner(record, owner_id: str):
    if record is not None and record.owner_id != owner_id:
        raise OwnershipViolation(record.id, owner_id)


def _entity_sort_key(entity: Entity):
    return (-entity.importance_score, -entity.mention_count, entity.id)


class InMemoryEntityRepository(EntityRepository):

    def __init__(self):
        self._rows: Dict[str, Entity] = {}

    async def create(self, entity: Entity) -> Entity:
        if entity.id in self._rows:
            _check_owner(self._rows[entity.id], entity.owner_id)
            raise ValueError(f"Entity already exists: {entity.id}")
        self._rows[entity.id] = copy.deepcopy(entity)
        return copy.deepcopy(entity)

    async def get(self, owner_id: str, entity_id: str) -> Optional[Entity]:
        row = self._rows.get(entity_id)
        _check_owner(row, owner_id)
        return copy.deepcopy(row)

    async def get_many(self, owner_id: str, entity_ids: Sequence[str]) -> List[Entity]:
        result = []
        for entity_id in entity_ids:
            entity = await self.get(owner_id, entity_id)
            if entity:
                result.append(entity)
        return result

    async def update(self, entity: Entity) -> Entity:
        existing = self._rows.get(entity.id)
        if existing is None:
            raise KeyError(entity.id)
        _check_owner(existing, entity.owner_id)
        entity.importance_score = max(0.0, min(1.0, entity.importance_score))
        self._rows[entity.id] = copy.deepcopy(entity)
        return copy.deepcopy(entity)

    def _owned_row(self, owner_id: str, entity_id: str) -> Entity:
        row = self._rows.get(entity_id)
        if row is None:
            raise KeyError(entity_id)
        _check_owner(row, owner_id)
        return row

    async def apply_decay(
        self,
        owner_id: str,
        entity_id: str,
        importance_score: float,
        status: EntityStatus,
        last_decay_at: datetime,
    ) -> bool:
        row = self._owned_row(owner_id, entity_id)
        if row.status != EntityStatus.ACTIVE:
            return False
        row.importance_score = max(0.0, min(1.0, importance_score))
        row.status = EntityStatus(status)
        row.last_decay_at = last_decay_at
        return True

    async def archive(self, owner_id: str, entity_id: str, at: datetime) -> bool:
        row = self._owned_row(owner_id, entity_id)
        if row.status != EntityStatus.ACTIVE:
            return False
        row.status = EntityStatus.ARCHIVED
        row.updated_at = at
        return True

    async def reactivate(self, owner_id: str, entity_id: str, at: datetime) -> bool:
        row = self._owned_row(owner_id, entity_id)
        if row.status != EntityStatus.ARCHIVED or row.superseded_by:
            return False
        row.status = EntityStatus.ACTIVE
        row.updated_at = at
        return True

    async def merge_entities(self, keeper: Entity, loser_id: str, at: datetime) -> Entity:
        # both rows are checked before either is written
        rows = []
        for entity_id in (keeper.id, loser_id):
            row = self._rows.get(entity_id)
            _check_owner(row, keeper.owner_id)
            if row is None or row.status != EntityStatus.ACTIVE:
                raise ConsolidationConflict(entity_id)
            rows.append(row)

        loser = rows[1]
        loser.status = EntityStatus.ARCHIVED
        loser.superseded_by = keeper.id
        loser.updated_at = at
        keeper.importance_score = max(0.0, min(1.0, keeper.importance_score))
        self._rows[keeper.id] = copy.deepcopy(keeper)
        return copy.deepcopy(keeper)

    async def find_by_name(
        self, owner_id: str, name: str, statuses: Sequence[EntityStatus] = ACTIVE_ONLY
    ) -> List[Entity]:
        return [
            copy.deepcopy(e)
            for e in sorted(self._rows.values(), key=_entity_sort_key)
            if e.owner_id == owner_id and e.status in statuses and e.matches_name(name)
        ]

    async def list(
        self,
        owner_id: str,
        statuses: Sequence[EntityStatus] = ACTIVE_ONLY,
        memory_types: Optional[Sequence[MemoryType]] = None,
        limit: Optional[int] = None,
    ) -> List[Entity]:
        rows = [
            e for e in sorted(self._rows.values(), key=_entity_sort_key)
            if e.owner_id == owner_id
            and e.status in statuses
            and (memory_types is None or e.memory_type in memory_types)
        ]
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def list_superseded_by(self, owner_id: str, entity_id: str) -> List[Entity]:
        return [
            copy.deepcopy(e) for e in self._rows.values()
            if e.owner_id == owner_id and e.superseded_by == entity_id
        ]

    async def list_by_source(self, owner_id: str, source_id: str) -> List[Entity]:
        return [
            copy.deepcopy(e) for e in self._rows.values()
            if e.owner_id == owner_id and e.source_id == source_id
        ]

    async def record_access(self, owner_id: str, entity_ids: Sequence[str], at: datetime) -> int:
        touched = 0
        for entity_id in entity_ids:
            row = self._rows.get(entity_id)
            if row is None or row.owner_id != owner_id:
                continue
            row.access_count += 1
            row.last_accessed_at = at
            touched += 1
        return touched

    async def list_owners(self) -> List[str]:
        return sorted({e.owner_id for e in self._rows.values()})


class InMemoryFactRepository(FactRepository):

    def __init__(self):
        self._rows: Dict[str, Fact] = {}
        self._locks: Dict[Tuple[str, str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, owner_id: str, fact_id: str) -> Optional[Fact]:
        row = self._rows.get(fact_id)
        _check_owner(row, owner_id)
        return copy.deepcopy(row)

    def _open(self, owner_id: str, entity_id: str, predicate: Optional[str]) -> List[Fact]:
        return [
            f for f in self._rows.values()
            if f.owner_id == owner_id
            and f.entity_id == entity_id
            and (predicate is None or f.predicate == predicate)
            and f.is_current
        ]

    async def open_facts(self, owner_id: str, entity_id: str, predicate: Optional[str] = None) -> List[Fact]:
        rows = sorted(self._open(owner_id, entity_id, predicate), key=lambda f: (f.created_at is None, f.created_at, f.id))
        return copy.deepcopy(rows)

    async def insert(self, fact: Fact, supersede: Optional[Fact] = None) -> Fact:
        async with self._locks[(fact.owner_id, fact.entity_id, fact.predicate)]:
            open_now = self._open(fact.owner_id, fact.entity_id, fact.predicate)
            open_ids = {f.id for f in open_now}

            if supersede is not None:
                _check_owner(self._rows.get(supersede.id), fact.owner_id)
                if supersede.id not in open_ids:
                    raise VersioningRace(fact.entity_id, fact.predicate)
                others = [f for f in open_now if f.id != supersede.id and f.single_valued]
                if fact.single_valued and others:
                    raise VersioningRace(fact.entity_id, fact.predicate)
                self._rows[supersede.id] = copy.deepcopy(supersede)
            elif fact.single_valued and any(f.single_valued for f in open_now):
                raise VersioningRace(fact.entity_id, fact.predicate)

            self._rows[fact.id] = copy.deepcopy(fact)
            return copy.deepcopy(fact)

    async def update(self, fact: Fact) -> Fact:
        existing = self._rows.get(fact.id)
        if existing is None:
            raise KeyError(fact.id)
        _check_owner(existing, fact.owner_id)
        self._rows[fact.id] = copy.deepcopy(fact)
        return copy.deepcopy(fact)

    async def list_for_entity(self, owner_id: str, entity_id: str) -> List[Fact]:
        rows = [f for f in self._rows.values() if f.owner_id == owner_id and f.entity_id == entity_id]
        rows.sort(key=lambda f: (f.created_at is None, f.created_at, f.version, f.id))
        return copy.deepcopy(rows)

    async def history(self, owner_id: str, entity_id: str, predicate: str) -> List[Fact]:
        rows = [
            f for f in self._rows.values()
            if f.owner_id == owner_id and f.entity_id == entity_id and f.predicate == predicate
        ]
        rows.sort(key=lambda f: (f.version, f.created_at), reverse=True)
        return copy.deepcopy(rows)

    async def list_by_source(self, owner_id: str, source_id: str) -> List[Fact]:
        return [
            copy.deepcopy(f) for f in self._rows.values()
            if f.owner_id == owner_id and f.source_id == source_id
        ]

    async def reassign_entity(self, owner_id: str, from_entity_id: str, to_entity_id: str) -> int:
        touched = 0
        for row in self._rows.values():
            if row.owner_id != owner_id:
                continue
            changed = False
            if row.entity_id == from_entity_id:
                row.entity_id = to_entity_id
                changed = True
            if row.object_entity_id == from_entity_id:
                row.object_entity_id = to_entity_id
                changed = True
            touched += int(changed)
        return touched


class InMemoryRelationshipRepository(RelationshipRepository):

    def __init__(self):
        self._rows: Dict[str, RelationshipEdge] = {}

    async def get(self, owner_id: str, edge_id: str) -> Optional[RelationshipEdge]:
        row = self._rows.get(edge_id)
        _check_owner(row, owner_id)
        return copy.deepcopy(row)

    async def find(
        self, owner_id: str, source_entity_id: str, target_entity_id: str, relationship_type: str
    ) -> Optional[RelationshipEdge]:
        for row in self._rows.values():
            if row.owner_id == owner_id and row.key == (source_entity_id, target_entity_id, relationship_type):
                return copy.deepcopy(row)
        return None

    async def save(self, edge: RelationshipEdge) -> RelationshipEdge:
        _check_owner(self._rows.get(edge.id), edge.owner_id)
        for row in self._rows.values():
            if row.id != edge.id and row.owner_id == edge.owner_id and row.key == edge.key:
                raise ValueError(f"Duplicate relationship {edge.key}")
        self._rows[edge.id] = copy.deepcopy(edge)
        return copy.deepcopy(edge)

    async def list_for_entity(
        self, owner_id: str, entity_id: str, active_only: bool = True
    ) -> List[RelationshipEdge]:
        rows = [
            e for e in self._rows.values()
            if e.owner_id == owner_id
            and entity_id in (e.source_entity_id, e.target_entity_id)
            and (e.active or not active_only)
        ]
        rows.sort(key=lambda e: (-e.strength, e.id))
        return copy.deepcopy(rows)

    async def list(self, owner_id: str, active_only: bool = True) -> List[RelationshipEdge]:
        rows = [e for e in self._rows.values() if e.owner_id == owner_id and (e.active or not active_only)]
        rows.sort(key=lambda e: (-e.strength, e.id))
        return copy.deepcopy(rows)


class InMemoryInferenceRepository(InferenceRepository):

    def __init__(self):
        self._rows: Dict[str, Inference] = {}

    async def create(self, inference: Inference) -> Inference:
        self._rows[inference.id] = copy.deepcopy(inference)
        return copy.deepcopy(inference)

    async def list(self, owner_id: str, status: Optional[InferenceStatus] = None) -> List[Inference]:
        rows = [
            i for i in self._rows.values()
            if i.owner_id == owner_id and (status is None or i.status == status)
        ]
        rows.sort(key=lambda i: (-i.confidence, i.id))
        return copy.deepcopy(rows)

    async def find_active_by_text(self, owner_id: str, text: str) -> Optional[Inference]:
        needle = text.strip().lower()
        for row in self._rows.values():
            if row.owner_id == owner_id and row.status == InferenceStatus.ACTIVE and row.text.lower() == needle:
                return copy.deepcopy(row)
        return None

    async def expire(self, owner_id: str, now: datetime) -> int:
        expired = 0
        for row in self._rows.values():
            if (row.owner_id == owner_id and row.status == InferenceStatus.ACTIVE
                    and row.expires_at is not None and row.expires_at <= now):
                row.status = InferenceStatus.EXPIRED
                expired += 1
        return expired


class InMemoryJournalRepository(JournalRepository):

    def __init__(self):
        self._operations: List[MemoryOperation] = []
        self._sentiment: List[SentimentReading] = []
        self._runs: List[MaintenanceRun] = []

    async def record_operation(self, operation: MemoryOperation) -> MemoryOperation:
        self._operations.append(copy.deepcopy(operation))
        return operation

    async def list_operations(self, owner_id: str, entity_id: Optional[str] = None) -> List[MemoryOperation]:
        return [
            copy.deepcopy(op) for op in self._operations
            if op.owner_id == owner_id and (entity_id is None or op.entity_id == entity_id)
        ]

    async def add_sentiment(self, reading: SentimentReading) -> SentimentReading:
        self._sentiment.append(copy.deepcopy(reading))
        return reading

    async def list_sentiment(
        self,
        owner_id: str,
        entity_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[SentimentReading]:
        rows = [
            r for r in self._sentiment
            if r.owner_id == owner_id
            and (entity_id is None or r.entity_id == entity_id)
            and (since is None or r.created_at >= since)
            and (until is None or r.created_at < until)
        ]
        rows.sort(key=lambda r: r.created_at)
        return copy.deepcopy(rows)

    async def record_run(self, run: MaintenanceRun) -> MaintenanceRun:
        self._runs.append(copy.deepcopy(run))
        return run

    async def has_completed_run(self, owner_id: str, task_name: str, window_key: str) -> bool:
        return any(
            r.owner_id == owner_id and r.task_name == task_name
            and r.window_key == window_key and r.status == 'completed'
            for r in self._runs
        )

    async def list_runs(
        self, owner_id: Optional[str] = None, task_name: Optional[str] = None, limit: int = 50
    ) -> List[MaintenanceRun]:
        rows = [
            r for r in reversed(self._runs)
            if (owner_id is None or r.owner_id == owner_id)
            and (task_name is None or r.task_name == task_name)
        ]
        return copy.deepcopy(rows[:limit])


def create_memory_store() -> MemoryStore:
    """Fresh, empty in-process store"""
    return MemoryStore(
        entities=InMemoryEntityRepository(),
        facts=InMemoryFactRepository(),
        relationships=InMemoryRelationshipRepository(),
        inferences=InMemoryInferenceRepository(),
        journal=InMemoryJournalRepository(),
    )

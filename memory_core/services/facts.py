"""
Fact Versioning & Contradiction Detection

Ingest rules for (entity, predicate, object):
- confidence below the floor: no-op
- no open fact for (entity, predicate): insert version 1
- open fact with the same object (trimmed, case-insensitive): re-observation,
  bump confidence if higher and mention_count, no new version
- open fact with a different object on a single-valued predicate: close the
  old one (valid_to, invalidated_at, invalidated_by, reason=contradiction)
  and insert version old+1 linked through previous_version_id, atomically
- multi-valued predicates append

Storage races surface as VersioningRace; ingest retries once with a fresh
read and lets a second race propagate.

Also here: history, point-in-time reads, timelines, manual invalidation and
the source-deletion cascade (the only soft-delete path).
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from memory_core.errors import EntityNotFound, VersioningRace
from memory_core.models.entity import Entity, EntityStatus
from memory_core.models.fact import Fact, FactStatus, InvalidationReason, normalize_predicate
from memory_core.models.operations import BatchReport, MemoryOperation
from memory_core.repositories.base import MemoryStore
from memory_core.services.decay import DecayScheduler
from memory_core.utils.datetime_utils import to_utc, utc_now

logger = logging.getLogger(__name__)

DEFAULT_SINGLE_VALUED = frozenset({
    'works_at', 'lives_in', 'job_title', 'reports_to', 'married_to', 'dating',
    'age', 'birthday', 'company', 'role', 'location', 'employer',
})

MAX_SUPERSEDE_HOPS = 16


@dataclass
class FactIngestResult:
    action: str  # rejected | created | appended | reobserved | superseded
    fact: Optional[Fact] = None
    previous: Optional[Fact] = None
    reason: Optional[str] = None

    @property
    def stored(self) -> bool:
        return self.action != 'rejected'


def is_in_effect(fact: Fact, now: datetime) -> bool:
    """
    Whether the fact describes the world right now.

    A version closed by contradiction with a future valid_to stays in effect
    until its successor takes over.
    """
    if fact.status != FactStatus.ACTIVE:
        return False
    if fact.valid_from is not None and fact.valid_from > now:
        return False
    if fact.valid_to is not None:
        return fact.valid_to > now and fact.invalidation_reason == InvalidationReason.CONTRADICTION
    return fact.invalidated_at is None


class FactService:
    """Versioned fact store on top of the repositories"""

    def __init__(
        self,
        store: MemoryStore,
        decay: DecayScheduler,
        clock: Callable[[], datetime] = utc_now,
        single_valued_predicates: Iterable[str] = DEFAULT_SINGLE_VALUED,
        confidence_floor: float = 0.5,
    ):
        self.store = store
        self.decay = decay
        self.clock = clock
        self.single_valued: FrozenSet[str] = frozenset(normalize_predicate(p) for p in single_valued_predicates)
        self.confidence_floor = confidence_floor

    def is_single_valued(self, predicate: str) -> bool:
        return normalize_predicate(predicate) in self.single_valued

    async def resolve_entity(self, owner_id: str, entity_id: str) -> Entity:
        """Load an entity, following superseded_by to the surviving keeper"""
        entity = await self.store.entities.get(owner_id, entity_id)
        hops = 0
        while entity is not None and entity.superseded_by and hops < MAX_SUPERSEDE_HOPS:
            entity = await self.store.entities.get(owner_id, entity.superseded_by)
            hops += 1
        if entity is None:
            raise EntityNotFound(entity_id)
        return entity

    # =========================================================================
    # INGEST
    # =========================================================================

    async def ingest(
        self,
        owner_id: str,
        entity_id: str,
        predicate: str,
        obj: str,
        confidence: float,
        source_id: Optional[str] = None,
        valid_from: Optional[datetime] = None,
        object_entity_id: Optional[str] = None,
    ) -> FactIngestResult:
        """
        Ingest one candidate fact.

        Args:
            owner_id: Owner scope
            entity_id: Subject entity (en_xxxxxxxx); merged entities resolve to their keeper
            predicate: Relation name, normalized to snake_case
            obj: Object text
            confidence: Extraction confidence in [0, 1]
            source_id: Originating note/document, used by the deletion cascade
            valid_from: When the fact became true (future = scheduled)
            object_entity_id: Set when the object is itself an entity

        Returns:
            FactIngestResult describing what was stored

        Raises:
            EntityNotFound: subject does not exist for this owner
            VersioningRace: lost two races in a row
        """
        if confidence is None or confidence < self.confidence_floor:
            logger.debug(f"Dropped {predicate}={obj!r}: confidence {confidence} below floor")
            return FactIngestResult(action='rejected', reason='confidence below floor')

        entity = await self.resolve_entity(owner_id, entity_id)
        valid_from = to_utc(valid_from)

        try:
            result = await self._ingest_once(entity, predicate, obj, confidence, source_id, valid_from, object_entity_id)
        except VersioningRace as e:
            logger.warning(f"⚠️  {e}, retrying with a fresh read")
            result = await self._ingest_once(entity, predicate, obj, confidence, source_id, valid_from, object_entity_id)

        await self.decay.refresh(await self.resolve_entity(owner_id, entity.id))
        if object_entity_id and object_entity_id != entity.id:
            try:
                await self.decay.refresh(await self.resolve_entity(owner_id, object_entity_id))
            except EntityNotFound:
                logger.warning(f"⚠️  Object entity {object_entity_id} of {predicate} no longer exists, not refreshed")
        return result

    async def _ingest_once(
        self,
        entity: Entity,
        predicate: str,
        obj: str,
        confidence: float,
        source_id: Optional[str],
        valid_from: Optional[datetime],
        object_entity_id: Optional[str],
    ) -> FactIngestResult:
        now = self.clock()
        predicate = normalize_predicate(predicate)
        single_valued = self.is_single_valued(predicate)
        open_facts = await self.store.facts.open_facts(entity.owner_id, entity.id, predicate)

        same = next((f for f in open_facts if f.same_object(obj)), None)
        if same is not None:
            same.confidence = max(same.confidence, confidence)
            same.mention_count += 1
            same.last_mentioned_at = now
            if object_entity_id and not same.object_entity_id:
                same.object_entity_id = object_entity_id
            await self.store.facts.update(same)
            return FactIngestResult(action='reobserved', fact=same)

        new_fact = Fact(
            id='',
            owner_id=entity.owner_id,
            entity_id=entity.id,
            predicate=predicate,
            object=obj,
            confidence=confidence,
            object_entity_id=object_entity_id,
            valid_from=valid_from or now,
            single_valued=single_valued,
            source_id=source_id,
            created_at=now,
            last_mentioned_at=now,
        )

        current = [f for f in open_facts if f.single_valued] if single_valued else []
        if current:
            old = max(current, key=lambda f: (f.version, f.created_at or now))
            old.valid_to = valid_from or now
            old.invalidated_at = now
            old.invalidated_by = new_fact.id
            old.invalidation_reason = InvalidationReason.CONTRADICTION

            new_fact.version = old.version + 1
            new_fact.previous_version_id = old.id

            await self.store.facts.insert(new_fact, supersede=old)
            logger.info(
                f"🔄 {entity.name}.{predicate}: {old.object!r} → {obj!r} (v{new_fact.version})"
            )
            return FactIngestResult(action='superseded', fact=new_fact, previous=old)

        await self.store.facts.insert(new_fact)
        return FactIngestResult(action='appended' if open_facts else 'created', fact=new_fact)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_current_facts(self, owner_id: str, entity_id: str) -> List[Fact]:
        """Facts in effect now, most confident and most mentioned first"""
        now = self.clock()
        facts = await self.store.facts.list_for_entity(owner_id, entity_id)
        current = [f for f in facts if is_in_effect(f, now)]
        current.sort(key=lambda f: (-f.confidence, -f.mention_count, f.id))
        return current

    async def get_fact_history(self, owner_id: str, entity_id: str, predicate: str) -> List[Fact]:
        """Every version of (entity, predicate), newest first"""
        return await self.store.facts.history(owner_id, entity_id, normalize_predicate(predicate))

    async def get_facts_at_time(self, owner_id: str, entity_id: str, as_of: datetime) -> List[Fact]:
        """What we believed at `as_of`: known by then and not yet invalidated"""
        as_of = to_utc(as_of)
        facts = await self.store.facts.list_for_entity(owner_id, entity_id)
        return [f for f in facts if f.was_known_at(as_of)]

    async def get_entity_timeline(self, owner_id: str, entity_id: str) -> List[Dict]:
        """Chronological fact_created / fact_invalidated events"""
        events = []
        for fact in await self.store.facts.list_for_entity(owner_id, entity_id):
            events.append({
                'event': 'fact_created',
                'at': fact.created_at,
                'fact_id': fact.id,
                'predicate': fact.predicate,
                'object': fact.object,
                'version': fact.version,
            })
            if fact.invalidated_at is not None:
                events.append({
                    'event': 'fact_invalidated',
                    'at': fact.invalidated_at,
                    'fact_id': fact.id,
                    'predicate': fact.predicate,
                    'object': fact.object,
                    'version': fact.version,
                    'reason': fact.invalidation_reason.value if fact.invalidation_reason else None,
                    'invalidated_by': fact.invalidated_by,
                })
        events.sort(key=lambda e: (e['at'], e['event'] == 'fact_created'))
        return events

    # =========================================================================
    # CORRECTIONS AND SOURCE CASCADE
    # =========================================================================

    async def invalidate_fact(
        self,
        owner_id: str,
        fact_id: str,
        reason: InvalidationReason = InvalidationReason.USER_CORRECTED,
        valid_to: Optional[datetime] = None,
    ) -> bool:
        """
        Manually close a fact.

        Returns:
            False if the fact does not exist or is already closed
        """
        fact = await self.store.facts.get(owner_id, fact_id)
        if fact is None or not fact.is_open:
            return False

        now = self.clock()
        fact.valid_to = to_utc(valid_to) or now
        fact.invalidated_at = now
        fact.invalidation_reason = InvalidationReason(reason)
        await self.store.facts.update(fact)
        logger.info(f"✂️  Fact {fact_id} invalidated ({fact.invalidation_reason.value})")
        return True

    async def cascade_source_deleted(self, owner_id: str, source_id: str) -> BatchReport:
        """
        Soft-delete everything that came from a deleted source.

        Facts are invalidated (reason source_deleted), closed with valid_to
        and marked inactive; entities created from the source are archived.
        """
        now = self.clock()
        report = BatchReport(task='source_deleted')

        for fact in await self.store.facts.list_by_source(owner_id, source_id):
            if fact.status == FactStatus.INACTIVE:
                continue
            try:
                if fact.invalidated_at is None:
                    fact.invalidated_at = now
                    fact.invalidation_reason = InvalidationReason.SOURCE_DELETED
                if fact.valid_to is None:
                    fact.valid_to = now
                fact.status = FactStatus.INACTIVE
                await self.store.facts.update(fact)
                report.bump('facts_invalidated')
            except Exception as e:
                logger.error(f"❌ Cascade failed for fact {fact.id}: {e}", exc_info=True)
                report.fail(fact.id, e)

        archived_ids = []
        for entity in await self.store.entities.list_by_source(owner_id, source_id):
            if entity.status != EntityStatus.ACTIVE:
                continue
            try:
                if await self.store.entities.archive(owner_id, entity.id, now):
                    archived_ids.append(entity.id)
                    report.bump('entities_archived')
            except Exception as e:
                logger.error(f"❌ Cascade failed for entity {entity.id}: {e}", exc_info=True)
                report.fail(entity.id, e)

        await self.store.journal.record_operation(MemoryOperation(
            id='',
            owner_id=owner_id,
            operation='SOURCE_DELETED',
            entity_id=source_id,
            merged_entity_ids=archived_ids,
            reasoning=f"Source {source_id} deleted",
            created_at=now,
        ))
        logger.info(f"🗑️  Source {source_id} cascade: {report.counts}")
        return report

    async def restore_source(self, owner_id: str, source_id: str) -> BatchReport:
        """
        Undo a source-deletion cascade.

        Facts whose only invalidation was the deletion reopen (unless a newer
        single-valued version has taken their place); facts closed for other
        reasons get their status back but keep their closure. Entities the
        cascade archived come back unless they were merged since.
        """
        now = self.clock()
        report = BatchReport(task='source_restored')

        for fact in await self.store.facts.list_by_source(owner_id, source_id):
            if fact.status != FactStatus.INACTIVE:
                continue
            try:
                fact.status = FactStatus.ACTIVE
                if fact.invalidation_reason == InvalidationReason.SOURCE_DELETED:
                    taken = fact.single_valued and any(
                        f.single_valued for f in await self.store.facts.open_facts(owner_id, fact.entity_id, fact.predicate)
                    )
                    if taken:
                        fact.status = FactStatus.INACTIVE
                        report.bump('facts_conflicting')
                        continue
                    if fact.valid_to == fact.invalidated_at:
                        fact.valid_to = None
                    fact.invalidated_at = None
                    fact.invalidation_reason = None
                await self.store.facts.update(fact)
                report.bump('facts_restored')
            except Exception as e:
                logger.error(f"❌ Restore failed for fact {fact.id}: {e}", exc_info=True)
                report.fail(fact.id, e)

        operations = [
            op for op in await self.store.journal.list_operations(owner_id, entity_id=source_id)
            if op.operation == 'SOURCE_DELETED'
        ]
        archived_ids = operations[-1].merged_entity_ids if operations else []
        for entity in await self.store.entities.get_many(owner_id, archived_ids):
            if await self.store.entities.reactivate(owner_id, entity.id, now):
                report.bump('entities_restored')

        logger.info(f"♻️  Source {source_id} restored: {report.counts}")
        return report

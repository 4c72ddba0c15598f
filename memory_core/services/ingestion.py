"""
Ingestion - the single write path for extraction output

Flow per payload:
1. validate_payload() tags every raw candidate accepted / rejected
2. Entities: resolve by name or alias (merged entities resolve to their
   keeper), re-mention existing ones, create new ones with classification
   and embedding pending
3. Facts: through FactService (versioning, contradiction, refresh)
4. Relationships: through RelationshipGraph (create or reinforce)
5. Inferences: through InferenceService (own confidence bar and expiry)

Enrichment (classification, embeddings) is deferred to maintenance; the
caller sees success as soon as the store is updated.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from memory_core.models.candidate import (
    AcceptedCandidate,
    EntityCandidate,
    FactCandidate,
    RejectedCandidate,
    RelationshipCandidate,
    validate_payload,
)
from memory_core.models.entity import Entity, EntityStatus
from memory_core.models.operations import SentimentReading
from memory_core.repositories.base import ALL_STATUSES, MemoryStore
from memory_core.services.decay import DecayScheduler
from memory_core.services.facts import FactService
from memory_core.services.graph import RelationshipGraph
from memory_core.services.inferences import InferenceService
from memory_core.utils.datetime_utils import to_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass
class IngestionReport:
    owner_id: str
    source_id: Optional[str] = None
    counts: Dict[str, int] = field(default_factory=dict)
    entity_ids: Dict[str, str] = field(default_factory=dict)  # mentioned name -> stored entity id
    rejected: List[RejectedCandidate] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    def bump(self, key: str, amount: int = 1):
        self.counts[key] = self.counts.get(key, 0) + amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'owner_id': self.owner_id,
            'source_id': self.source_id,
            'counts': dict(self.counts),
            'entity_ids': dict(self.entity_ids),
            'rejected': [{'kind': r.kind, 'reason': r.reason} for r in self.rejected],
            'failures': dict(self.failures),
        }


class IngestionService:

    def __init__(
        self,
        store: MemoryStore,
        facts: FactService,
        graph: RelationshipGraph,
        inferences: InferenceService,
        decay: DecayScheduler,
        clock: Callable[[], datetime] = utc_now,
        confidence_floor: float = 0.5,
        context_notes_cap: int = 10,
    ):
        self.store = store
        self.facts = facts
        self.graph = graph
        self.inferences = inferences
        self.decay = decay
        self.clock = clock
        self.confidence_floor = confidence_floor
        self.context_notes_cap = context_notes_cap

    async def ingest(self, owner_id: str, payload: Dict[str, Any], source_id: Optional[str] = None) -> IngestionReport:
        """
        Apply one extraction payload to the owner's store.

        Args:
            owner_id: Owner scope
            payload: {"entities": [...], "facts": [...], "relationships": [...], "inferences": [...]}
            source_id: Originating note/document (enables the deletion cascade)

        Returns:
            IngestionReport with per-kind counts, resolved entity ids and rejections

        Raises:
            ValidationError: payload itself is not an object
        """
        report = IngestionReport(owner_id=owner_id, source_id=source_id)
        validated = validate_payload(payload, self.confidence_floor)
        resolved: Dict[str, Entity] = {}

        for kind, results in validated.items():
            for result in results:
                if isinstance(result, RejectedCandidate):
                    report.rejected.append(result)
                    report.bump(f'{kind}_rejected')

        for result in self._accepted(validated['entity']):
            candidate: EntityCandidate = result.candidate
            try:
                entity = await self._upsert_entity(owner_id, candidate, source_id, report)
                resolved[candidate.name.lower()] = entity
                report.entity_ids[candidate.name] = entity.id
            except Exception as e:
                logger.error(f"❌ Entity {candidate.name!r} failed: {e}", exc_info=True)
                report.failures[f"entity:{candidate.name}"] = f"{type(e).__name__}: {e}"

        for result in self._accepted(validated['fact']):
            candidate: FactCandidate = result.candidate
            try:
                subject = await self._resolve_name(owner_id, candidate.entity_name, resolved, source_id, report)
                object_entity_id = None
                if candidate.object_is_entity:
                    obj = await self._resolve_name(owner_id, candidate.object, resolved, source_id, report)
                    object_entity_id = obj.id
                outcome = await self.facts.ingest(
                    owner_id,
                    subject.id,
                    candidate.predicate,
                    candidate.object,
                    candidate.confidence,
                    source_id=source_id,
                    valid_from=candidate.valid_from,
                    object_entity_id=object_entity_id,
                )
                report.bump(f'facts_{outcome.action}')
            except Exception as e:
                logger.error(f"❌ Fact {candidate.entity_name}.{candidate.predicate} failed: {e}", exc_info=True)
                report.failures[f"fact:{candidate.entity_name}.{candidate.predicate}"] = f"{type(e).__name__}: {e}"

        for result in self._accepted(validated['relationship']):
            candidate: RelationshipCandidate = result.candidate
            try:
                source = await self._resolve_name(owner_id, candidate.source, resolved, source_id, report)
                target = await self._resolve_name(owner_id, candidate.target, resolved, source_id, report)
                if source.id == target.id:
                    report.bump('relationships_rejected')
                    continue
                await self.graph.upsert_edge(
                    owner_id,
                    source.id,
                    target.id,
                    candidate.relationship_type,
                    strength_boost=candidate.strength_boost,
                    confidence=candidate.confidence,
                )
                report.bump('relationships_upserted')
            except Exception as e:
                logger.error(f"❌ Relationship {candidate.source}->{candidate.target} failed: {e}", exc_info=True)
                report.failures[f"relationship:{candidate.source}:{candidate.target}"] = f"{type(e).__name__}: {e}"

        inference_candidates = [r.candidate for r in self._accepted(validated['inference'])]
        if inference_candidates:
            outcome = await self.inferences.record(owner_id, inference_candidates)
            for key, value in outcome.counts.items():
                report.bump(f'inferences_{key}', value)

        logger.info(f"📥 Ingested for {owner_id} (source={source_id}): {report.counts}")
        return report

    @staticmethod
    def _accepted(results) -> List[AcceptedCandidate]:
        return [r for r in results if isinstance(r, AcceptedCandidate)]

    # =========================================================================
    # ENTITY RESOLUTION
    # =========================================================================

    async def find_existing(self, owner_id: str, name: str) -> Optional[Entity]:
        """
        Active match on name or alias first; otherwise an archived match,
        resolved through superseded_by to its keeper.
        """
        matches = await self.store.entities.find_by_name(owner_id, name)
        if matches:
            return matches[0]
        for entity in await self.store.entities.find_by_name(owner_id, name, statuses=ALL_STATUSES):
            if entity.superseded_by:
                return await self.facts.resolve_entity(owner_id, entity.id)
            return entity
        return None

    async def _resolve_name(
        self,
        owner_id: str,
        name: str,
        resolved: Dict[str, Entity],
        source_id: Optional[str],
        report: IngestionReport,
    ) -> Entity:
        """Entity for a name referenced by a fact or relationship, created bare if unknown"""
        key = name.strip().lower()
        if key in resolved:
            return resolved[key]
        entity = await self.find_existing(owner_id, name)
        if entity is None:
            entity = await self._create(owner_id, EntityCandidate(name=name), source_id)
            report.bump('entities_created')
        resolved[key] = entity
        report.entity_ids.setdefault(name.strip(), entity.id)
        return entity

    async def _upsert_entity(
        self, owner_id: str, candidate: EntityCandidate, source_id: Optional[str], report: IngestionReport
    ) -> Entity:
        existing = await self.find_existing(owner_id, candidate.name)
        if existing is None:
            entity = await self._create(owner_id, candidate, source_id)
            report.bump('entities_created')
        else:
            entity = await self._remention(existing, candidate)
            report.bump('entities_updated')

        if candidate.sentiment is not None:
            await self.store.journal.add_sentiment(SentimentReading(
                id='',
                owner_id=owner_id,
                entity_id=entity.id,
                sentiment=candidate.sentiment,
                context=candidate.context,
                created_at=self.clock(),
            ))
            report.bump('sentiment_recorded')
        return entity

    async def _create(self, owner_id: str, candidate: EntityCandidate, source_id: Optional[str]) -> Entity:
        now = self.clock()
        entity = Entity(
            id='',
            owner_id=owner_id,
            name=candidate.name,
            entity_type=candidate.entity_type,
            memory_type=candidate.memory_type,
            summary=candidate.summary,
            relationship=candidate.relationship,
            sensitivity=candidate.sensitivity,
            is_historical=candidate.is_historical,
            effective_from=to_utc(candidate.effective_from),
            expires_at=to_utc(candidate.expires_at),
            source_id=source_id,
            last_mentioned_at=now,
            created_at=now,
            updated_at=now,
        )
        for alias in candidate.aliases:
            entity.add_alias(alias)
        entity.add_context_note(candidate.context, cap=self.context_notes_cap)

        created = await self.store.entities.create(entity)
        logger.debug(f"➕ New entity {created.name} ({created.id})")
        return created

    async def _remention(self, entity: Entity, candidate: EntityCandidate) -> Entity:
        """Fold a new mention into an existing entity and refresh it"""
        entity.mention_count += 1
        for alias in [candidate.name] + list(candidate.aliases):
            entity.add_alias(alias)
        entity.add_context_note(candidate.context, cap=self.context_notes_cap)
        if candidate.summary and not entity.summary:
            entity.summary = candidate.summary
        if candidate.relationship and not entity.relationship:
            entity.relationship = candidate.relationship
        if candidate.expires_at is not None:
            entity.expires_at = to_utc(candidate.expires_at)
        if entity.is_archived and not entity.superseded_by:
            # decayed or expired entities come back when mentioned again
            entity.status = EntityStatus.ACTIVE
            entity.last_decay_at = None
        return await self.decay.refresh(entity)

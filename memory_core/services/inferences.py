"""
Inferences - derived, never-stated connections

Lifecycle is separate from facts: no versioning, no contradiction, just
an expiry (30 days by default) after which the maintenance sweep marks
them expired.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Sequence, Union

from memory_core.models.candidate import InferenceCandidate, RejectedCandidate, validate_candidate
from memory_core.models.operations import BatchReport
from memory_core.models.relationships import Inference, InferenceStatus
from memory_core.repositories.base import MemoryStore
from memory_core.services.llm import InferenceGenerator
from memory_core.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

# Entities need this many mentions before the generator looks at them
GENERATION_MIN_MENTIONS = 2
GENERATION_MAX_ENTITIES = 20


class InferenceService:

    def __init__(
        self,
        store: MemoryStore,
        clock: Callable[[], datetime] = utc_now,
        min_confidence: float = 0.6,
        ttl_days: int = 30,
        generator: Optional[InferenceGenerator] = None,
    ):
        self.store = store
        self.clock = clock
        self.min_confidence = min_confidence
        self.ttl = timedelta(days=ttl_days)
        self.generator = generator

    async def record(
        self, owner_id: str, candidates: Sequence[Union[InferenceCandidate, dict]]
    ) -> BatchReport:
        """
        Store inference candidates that clear the confidence bar.

        Raw dicts are validated here; text already held by a live inference
        is skipped.

        Returns:
            BatchReport counting recorded / duplicate / rejected
        """
        now = self.clock()
        report = BatchReport(task='inferences')

        for raw in candidates:
            if isinstance(raw, InferenceCandidate):
                candidate = raw
                if candidate.confidence < self.min_confidence:
                    report.bump('rejected')
                    continue
            else:
                result = validate_candidate('inference', raw, self.min_confidence)
                if isinstance(result, RejectedCandidate):
                    report.bump('rejected')
                    continue
                candidate = result.candidate

            existing = await self.store.inferences.find_active_by_text(owner_id, candidate.text)
            if existing is not None and existing.is_live(now):
                report.bump('duplicate')
                continue

            await self.store.inferences.create(Inference(
                id='',
                owner_id=owner_id,
                text=candidate.text,
                confidence=candidate.confidence,
                inference_type=candidate.inference_type,
                subject_names=list(candidate.subjects),
                supporting_evidence=list(candidate.supporting_evidence),
                expires_at=now + self.ttl,
                created_at=now,
            ))
            report.bump('recorded')

        if report.counts.get('recorded'):
            logger.info(f"💡 Recorded {report.counts['recorded']} inferences for {owner_id}")
        return report

    async def active_for(self, owner_id: str, entity_names: Sequence[str]) -> List[Inference]:
        """Live inferences mentioning any of the names, most confident first"""
        now = self.clock()
        return [
            i for i in await self.store.inferences.list(owner_id, status=InferenceStatus.ACTIVE)
            if i.is_live(now) and i.mentions_any(list(entity_names))
        ]

    async def cleanup_expired(self, owner_id: str) -> int:
        expired = await self.store.inferences.expire(owner_id, self.clock())
        if expired:
            logger.info(f"⏳ Expired {expired} inferences for {owner_id}")
        return expired

    async def generate(self, owner_id: str) -> BatchReport:
        """Ask the generator delegate for new inferences over well-mentioned entities"""
        if self.generator is None:
            report = BatchReport(task='inferences')
            report.bump('skipped')
            return report

        entities = [
            e for e in await self.store.entities.list(owner_id)
            if e.mention_count >= GENERATION_MIN_MENTIONS
        ][:GENERATION_MAX_ENTITIES]
        names = {e.id: e.name for e in entities}
        relationships = [
            (names[r.source_entity_id], r.relationship_type, names[r.target_entity_id])
            for r in await self.store.relationships.list(owner_id)
            if r.source_entity_id in names and r.target_entity_id in names
        ]

        raw: List[Any] = await self.generator.generate(entities, relationships)
        return await self.record(owner_id, raw)

"""
Importance Classifier

Fast heuristics first, delegation only when they do not decide:

1. relationship names family or partner        -> critical 1.0
2. the entity is the owner (me / i / myself)    -> critical 1.0
3. pets                                         -> high 0.8
4. best / close friends                         -> high 0.8
5. mentioned 10+ times                          -> high 0.8
6. mentioned at most once                       -> low 0.3

Anything else goes to the ImportanceDelegate. A missing or unparseable
answer is never fatal: the entity lands on medium/0.5 and is picked up
again on the next batch. Critical is sticky and never reclassified down.

Reclassifying into the tier an entity already holds never raises its
score, so a batch run cannot undo decay.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from memory_core.errors import ClassificationError, EntityNotFound
from memory_core.models.entity import (
    Entity,
    EntityType,
    ImportanceTier,
    TIER_BASE_SCORES,
    clamp_score,
)
from memory_core.models.operations import BatchReport
from memory_core.repositories.base import MemoryStore
from memory_core.services.llm import ImportanceDelegate, parse_classification
from memory_core.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

FAMILY_PATTERN = re.compile(
    r'\b(mom|dad|mother|father|parent|wife|husband|partner|spouse|child|son|daughter)s?\b'
)
PET_PATTERN = re.compile(r'\b(pet|dog|cat)s?\b')
CLOSE_FRIEND_PATTERN = re.compile(r'\b(best friend|close friend|bff)\b')
SELF_NAMES = frozenset({'me', 'i', 'myself'})

FREQUENT_MENTIONS = 10


@dataclass(frozen=True)
class Classification:
    tier: ImportanceTier
    score: float
    rationale: str
    source: str  # heuristic | delegate | default | sticky


def heuristic_classification(entity: Entity) -> Optional[Classification]:
    """Return a classification if a heuristic decides, else None"""
    relationship = (entity.relationship or '').lower()

    if FAMILY_PATTERN.search(relationship):
        return Classification(ImportanceTier.CRITICAL, 1.0, f"Family/partner: {entity.relationship}", 'heuristic')

    if entity.name.strip().lower() in SELF_NAMES:
        return Classification(ImportanceTier.CRITICAL, 1.0, "Self reference", 'heuristic')

    if entity.entity_type == EntityType.PET or PET_PATTERN.search(relationship):
        return Classification(ImportanceTier.HIGH, 0.8, "Pet", 'heuristic')

    if CLOSE_FRIEND_PATTERN.search(relationship):
        return Classification(ImportanceTier.HIGH, 0.8, f"Close friend: {entity.relationship}", 'heuristic')

    if entity.mention_count >= FREQUENT_MENTIONS:
        return Classification(ImportanceTier.HIGH, 0.8, f"Mentioned {entity.mention_count} times", 'heuristic')

    if entity.mention_count <= 1:
        return Classification(ImportanceTier.LOW, 0.3, "Single mention", 'heuristic')

    return None


DEFAULT_CLASSIFICATION = Classification(
    ImportanceTier.MEDIUM, TIER_BASE_SCORES[ImportanceTier.MEDIUM], "Defaulted to medium", 'default'
)


class ImportanceService:

    def __init__(
        self,
        store: MemoryStore,
        delegate: Optional[ImportanceDelegate] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.delegate = delegate
        self.clock = clock

    async def classify(self, entity: Entity) -> Classification:
        """
        Classify one entity (no persistence).

        Returns:
            Classification with tier, clamped score and rationale
        """
        if entity.is_critical:
            return Classification(ImportanceTier.CRITICAL, 1.0, entity.classification_rationale or "Critical", 'sticky')

        decided = heuristic_classification(entity)
        if decided is not None:
            return decided

        if self.delegate is None:
            return DEFAULT_CLASSIFICATION

        try:
            raw = await self.delegate.classify(entity)
            tier, score, rationale = parse_classification(raw)
        except ClassificationError as e:
            logger.warning(f"⚠️  Classification of {entity.name} unusable, defaulting to medium: {e}")
            return DEFAULT_CLASSIFICATION
        except Exception as e:
            logger.warning(f"⚠️  Classifier call failed for {entity.name}, defaulting to medium: {e}")
            return DEFAULT_CLASSIFICATION

        return Classification(tier, clamp_score(score), rationale or "", 'delegate')

    def apply(self, entity: Entity, classification: Classification, now: datetime) -> Entity:
        score = clamp_score(classification.score)
        if entity.is_classified and entity.importance_tier == classification.tier:
            score = min(entity.importance_score, score)
        entity.importance_tier = classification.tier
        entity.importance_score = score
        entity.classification_rationale = classification.rationale
        entity.classified_at = now
        entity.updated_at = now
        return entity

    async def classify_entity(self, owner_id: str, entity_id: str) -> Entity:
        entity = await self.store.entities.get(owner_id, entity_id)
        if entity is None:
            raise EntityNotFound(entity_id)
        classification = await self.classify(entity)
        self.apply(entity, classification, self.clock())
        return await self.store.entities.update(entity)

    async def classify_importance_batch(self, owner_id: str, limit: int = 50) -> BatchReport:
        """
        Classify active entities that were never classified, or whose last
        classification fell back to the medium default.

        Highest mention_count first; each entity is independent and
        failures are collected rather than aborting the batch.
        """
        report = BatchReport(task='classify')
        entities = [
            e for e in await self.store.entities.list(owner_id)
            if not e.is_classified or e.classification_rationale == DEFAULT_CLASSIFICATION.rationale
        ]
        entities.sort(key=lambda e: (-e.mention_count, e.id))

        for entity in entities[:limit]:
            try:
                classification = await self.classify(entity)
                self.apply(entity, classification, self.clock())
                await self.store.entities.update(entity)
                report.bump('classified')
                report.bump(classification.tier.value)
            except Exception as e:
                logger.error(f"❌ Classification failed for {entity.id}: {e}", exc_info=True)
                report.fail(entity.id, e)

        logger.info(f"🏷️  Classified for {owner_id}: {report.counts}")
        return report

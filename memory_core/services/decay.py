"""
Decay Scheduler - importance decay, archival and refresh on mention

Policy per tier:
- critical: never decays
- high:    90 day grace, x0.95 per cycle
- medium:  30 day grace, x0.90 per cycle
- low:     14 day grace, x0.85 per cycle
- trivial:  7 day grace, x0.80 per cycle

One cycle per entity per window (7 days): a second decay() inside the same
window is a no-op, so reruns never double-penalize. Entities read back by
retrieval within the last 7 days are skipped. Falling below the archive
threshold moves the entity to `archived`; nothing is deleted.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from memory_core.models.entity import Entity, EntityStatus, ImportanceTier, TIER_BASE_SCORES, clamp_score
from memory_core.models.operations import BatchReport
from memory_core.repositories.base import MemoryStore
from memory_core.utils.datetime_utils import days_between, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecayPolicy:
    grace_days: Optional[int]  # None = never decays
    weekly_factor: float


DECAY_POLICIES = {
    ImportanceTier.CRITICAL: DecayPolicy(grace_days=None, weekly_factor=1.0),
    ImportanceTier.HIGH: DecayPolicy(grace_days=90, weekly_factor=0.95),
    ImportanceTier.MEDIUM: DecayPolicy(grace_days=30, weekly_factor=0.90),
    ImportanceTier.LOW: DecayPolicy(grace_days=14, weekly_factor=0.85),
    ImportanceTier.TRIVIAL: DecayPolicy(grace_days=7, weekly_factor=0.80),
}


class DecayOutcome(str, Enum):
    EXEMPT = "exempt"        # critical tier
    INACTIVE = "inactive"    # already archived
    SKIPPED = "skipped"      # inside grace period or already decayed this window
    DECAYED = "decayed"
    ARCHIVED = "archived"


class DecayScheduler:
    """
    Applies decay cycles and refreshes.

    Decay only writes score-related fields (importance_score,
    last_decay_at, status) and only to entities that are still active, so
    it can run alongside consolidation over a stale snapshot.
    """

    def __init__(
        self,
        store: MemoryStore,
        clock: Callable[[], datetime] = utc_now,
        window_days: int = 7,
        archive_threshold: float = 0.1,
        access_grace_days: int = 7,
    ):
        self.store = store
        self.clock = clock
        self.window = timedelta(days=window_days)
        self.access_grace = timedelta(days=access_grace_days)
        self.archive_threshold = archive_threshold

    # =========================================================================
    # PURE TRANSITIONS
    # =========================================================================

    def apply_decay(self, entity: Entity, now: datetime) -> DecayOutcome:
        """Mutate `entity` for one decay cycle and report what happened"""
        if entity.status != EntityStatus.ACTIVE:
            return DecayOutcome.INACTIVE

        policy = DECAY_POLICIES[entity.importance_tier]
        if policy.grace_days is None:
            return DecayOutcome.EXEMPT

        if entity.last_decay_at is not None and now - entity.last_decay_at < self.window:
            return DecayOutcome.SKIPPED

        if entity.last_accessed_at is not None and now - entity.last_accessed_at < self.access_grace:
            return DecayOutcome.SKIPPED

        last_seen = entity.last_mentioned_at or entity.created_at
        if days_between(last_seen, now) < policy.grace_days:
            entity.last_decay_at = now
            return DecayOutcome.SKIPPED

        entity.importance_score = clamp_score(entity.importance_score * policy.weekly_factor)
        entity.last_decay_at = now

        if entity.importance_score < self.archive_threshold:
            entity.status = EntityStatus.ARCHIVED
            return DecayOutcome.ARCHIVED
        return DecayOutcome.DECAYED

    @staticmethod
    def apply_refresh(entity: Entity, now: datetime) -> Entity:
        """Reset the mention clock and lift the score back to the tier base"""
        entity.importance_score = clamp_score(
            max(entity.importance_score, TIER_BASE_SCORES[entity.importance_tier])
        )
        entity.last_mentioned_at = now
        entity.updated_at = now
        return entity

    # =========================================================================
    # PERSISTED OPERATIONS
    # =========================================================================

    async def decay(self, entity: Entity) -> DecayOutcome:
        now = self.clock()
        before = (entity.importance_score, entity.status, entity.last_decay_at)
        outcome = self.apply_decay(entity, now)
        if (entity.importance_score, entity.status, entity.last_decay_at) != before:
            written = await self.store.entities.apply_decay(
                entity.owner_id, entity.id, entity.importance_score, entity.status, entity.last_decay_at,
            )
            if not written:
                logger.debug(f"Decay of {entity.id} dropped, no longer active")
                return DecayOutcome.INACTIVE

        if outcome == DecayOutcome.ARCHIVED:
            logger.info(f"📦 Archived {entity.name} ({entity.id}) at score {entity.importance_score:.3f}")
        return outcome

    async def refresh(self, entity: Entity) -> Entity:
        self.apply_refresh(entity, self.clock())
        return await self.store.entities.update(entity)

    async def decay_all(self, owner_id: str) -> BatchReport:
        """
        Run one decay cycle over every active, non-critical entity.

        Returns:
            BatchReport with decayed / archived / skipped / exempt / failed counts
        """
        report = BatchReport(task='decay')
        entities = await self.store.entities.list(owner_id)

        for entity in entities:
            try:
                outcome = await self.decay(entity)
                report.bump(outcome.value)
            except Exception as e:
                logger.error(f"❌ Decay failed for {entity.id}: {e}", exc_info=True)
                report.fail(entity.id, e)

        logger.info(f"⏳ Decay for {owner_id}: {report.counts}")
        return report

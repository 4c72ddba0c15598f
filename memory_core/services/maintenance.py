"""
Maintenance entry points

Every task takes an owner, works item by item and returns a BatchReport
with affected-row counts; one item failing never aborts the run. The
scheduler, the queue worker and the HTTP surface all come through
run_task().
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from memory_core.models.entity import ImportanceTier
from memory_core.models.operations import BatchReport
from memory_core.repositories.base import MemoryStore
from memory_core.services.consolidation import ConsolidationEngine, PREVIEW
from memory_core.services.decay import DecayScheduler
from memory_core.services.importance import ImportanceService
from memory_core.services.inferences import InferenceService
from memory_core.services.llm import Embedder, entity_embedding_text
from memory_core.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

MAINTENANCE_TASKS = ('decay', 'consolidate', 'classify', 'cleanup', 'embed', 'infer')


class UnknownTask(ValueError):
    pass


class MaintenanceService:

    def __init__(
        self,
        store: MemoryStore,
        decay: DecayScheduler,
        consolidation: ConsolidationEngine,
        importance: ImportanceService,
        inferences: InferenceService,
        embedder: Optional[Embedder] = None,
        clock: Callable[[], datetime] = utc_now,
        archive_threshold: float = 0.1,
        stale_access_days: int = 90,
        embed_batch_size: int = 50,
    ):
        self.store = store
        self.decay = decay
        self.consolidation = consolidation
        self.importance = importance
        self.inferences = inferences
        self.embedder = embedder
        self.clock = clock
        self.archive_threshold = archive_threshold
        self.stale_access = timedelta(days=stale_access_days)
        self.embed_batch_size = embed_batch_size

    async def run_task(self, task: str, owner_id: str, **params: Any) -> BatchReport:
        """
        Dispatch one maintenance task for one owner.

        Args:
            task: decay | consolidate | classify | cleanup | embed | infer
            owner_id: Owner scope
            **params: Task options (consolidate: threshold, mode; classify: limit)

        Raises:
            UnknownTask: task name not recognized
        """
        if task == 'decay':
            return await self.decay.decay_all(owner_id)
        if task == 'consolidate':
            result = await self.consolidation.consolidate(
                owner_id, threshold=params.get('threshold'), mode=params.get('mode', PREVIEW)
            )
            return BatchReport(task='consolidate', counts=result.counts, failures=dict(result.failures))
        if task == 'classify':
            return await self.importance.classify_importance_batch(owner_id, limit=int(params.get('limit', 50)))
        if task == 'cleanup':
            return await self.cleanup_expired(owner_id)
        if task == 'embed':
            return await self.embed_pending(owner_id)
        if task == 'infer':
            return await self.inferences.generate(owner_id)
        raise UnknownTask(f"Unknown maintenance task: {task}")

    async def cleanup_expired(self, owner_id: str) -> BatchReport:
        """
        Archive expired entities and stale trivial ones, expire inferences.

        Stale = trivial tier, score below the archive threshold and not
        accessed for 90 days.
        """
        now = self.clock()
        report = BatchReport(task='cleanup')

        for entity in await self.store.entities.list(owner_id):
            try:
                if entity.expires_at is not None and entity.expires_at <= now:
                    key = 'expired_archived'
                elif (
                    entity.importance_tier == ImportanceTier.TRIVIAL
                    and entity.importance_score < self.archive_threshold
                    and (entity.last_accessed_at or entity.created_at or now) <= now - self.stale_access
                ):
                    key = 'stale_archived'
                else:
                    continue
                if await self.store.entities.archive(owner_id, entity.id, now):
                    report.bump(key)
            except Exception as e:
                logger.error(f"❌ Cleanup failed for {entity.id}: {e}", exc_info=True)
                report.fail(entity.id, e)

        try:
            report.bump('inferences_expired', await self.inferences.cleanup_expired(owner_id))
        except Exception as e:
            logger.error(f"❌ Inference expiry failed for {owner_id}: {e}", exc_info=True)
            report.fail('inferences', e)

        logger.info(f"🧹 Cleanup for {owner_id}: {report.counts}")
        return report

    async def embed_pending(self, owner_id: str) -> BatchReport:
        """Embed active entities that have no vector yet, in batches"""
        report = BatchReport(task='embed')
        if self.embedder is None:
            report.bump('skipped')
            return report

        pending = [e for e in await self.store.entities.list(owner_id) if not e.embedding]
        for start in range(0, len(pending), self.embed_batch_size):
            batch = pending[start:start + self.embed_batch_size]
            try:
                vectors = await self.embedder.embed([entity_embedding_text(e) for e in batch])
            except Exception as e:
                logger.warning(f"⚠️  Embedding batch failed for {owner_id}: {e}")
                for entity in batch:
                    report.fail(entity.id, e)
                continue

            for entity, vector in zip(batch, vectors):
                try:
                    entity.embedding = list(vector)
                    await self.store.entities.update(entity)
                    report.bump('embedded')
                except Exception as e:
                    logger.error(f"❌ Storing embedding failed for {entity.id}: {e}", exc_info=True)
                    report.fail(entity.id, e)

        if pending:
            logger.info(f"🧮 Embedded for {owner_id}: {report.counts}")
        return report

    async def run_all(self, owner_id: str) -> Dict[str, BatchReport]:
        """Every task once, in dependency order (embed before consolidate)"""
        reports = {}
        for task in ('cleanup', 'embed', 'classify', 'decay', 'consolidate', 'infer'):
            reports[task] = await self.run_task(task, owner_id)
        return reports

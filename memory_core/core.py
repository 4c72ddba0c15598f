"""
MemoryCore - one object wiring the store, the delegates and every service

    core = MemoryCore.in_memory()
    await core.ingest('owner_1', payload, source_id='note_42')
    results = await core.search_text('owner_1', 'who works at Google')

Production:

    pool = await create_postgres_pool()
    core = MemoryCore.from_pool(pool, get_settings())
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import asyncpg

from memory_core.config.settings import Settings, get_settings
from memory_core.models.operations import BatchReport
from memory_core.repositories.base import MemoryStore
from memory_core.repositories.memory import create_memory_store
from memory_core.repositories.postgres import create_postgres_store
from memory_core.services.consolidation import ConsolidationEngine, ConsolidationReport, PREVIEW
from memory_core.services.decay import DecayScheduler
from memory_core.services.facts import FactService
from memory_core.services.graph import RelationshipGraph
from memory_core.services.importance import ImportanceService
from memory_core.services.inferences import InferenceService
from memory_core.services.ingestion import IngestionReport, IngestionService
from memory_core.services.llm import (
    Embedder,
    ImportanceDelegate,
    InferenceGenerator,
    create_openai_delegates,
)
from memory_core.services.maintenance import MaintenanceService
from memory_core.services.query_router import QueryRouter
from memory_core.services.retrieval import (
    DEFAULT_PROFILE,
    FullContext,
    RetrievalRanker,
    SearchFilters,
    SearchResponse,
    WeightProfile,
)
from memory_core.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)


class MemoryCore:

    def __init__(
        self,
        store: MemoryStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
        classifier: Optional[ImportanceDelegate] = None,
        embedder: Optional[Embedder] = None,
        inference_generator: Optional[InferenceGenerator] = None,
    ):
        settings = settings or Settings()
        self.store = store
        self.settings = settings
        self.clock = clock

        self.decay = DecayScheduler(
            store,
            clock=clock,
            window_days=settings.memory_decay_window_days,
            archive_threshold=settings.memory_archive_threshold,
            access_grace_days=settings.memory_decay_access_grace_days,
        )
        self.facts = FactService(
            store,
            self.decay,
            clock=clock,
            single_valued_predicates=settings.single_valued_predicates,
            confidence_floor=settings.memory_confidence_floor,
        )
        self.graph = RelationshipGraph(store, clock=clock)
        self.importance = ImportanceService(store, delegate=classifier, clock=clock)
        self.consolidation = ConsolidationEngine(
            store,
            clock=clock,
            threshold=settings.memory_consolidation_threshold,
            context_notes_cap=settings.memory_context_notes_cap,
        )
        self.inferences = InferenceService(
            store,
            clock=clock,
            min_confidence=settings.memory_inference_min_confidence,
            ttl_days=settings.memory_inference_ttl_days,
            generator=inference_generator,
        )
        self.ingestion = IngestionService(
            store,
            self.facts,
            self.graph,
            self.inferences,
            self.decay,
            clock=clock,
            confidence_floor=settings.memory_confidence_floor,
            context_notes_cap=settings.memory_context_notes_cap,
        )
        self.ranker = RetrievalRanker(store, embedder=embedder, clock=clock)
        self.default_filters = SearchFilters(
            similarity_threshold=settings.memory_similarity_threshold,
            limit=settings.memory_result_limit,
        )
        self.router = QueryRouter(
            store, self.ranker, self.graph, self.facts, clock=clock, default_filters=self.default_filters,
        )
        self.maintenance = MaintenanceService(
            store,
            self.decay,
            self.consolidation,
            self.importance,
            self.inferences,
            embedder=embedder,
            clock=clock,
            archive_threshold=settings.memory_archive_threshold,
            stale_access_days=settings.memory_stale_access_days,
        )

    @classmethod
    def in_memory(cls, settings: Optional[Settings] = None, **kwargs) -> 'MemoryCore':
        """Core over the in-process store (tests, embedded use)"""
        return cls(create_memory_store(), settings=settings, **kwargs)

    @classmethod
    def from_pool(cls, db_pool: asyncpg.Pool, settings: Optional[Settings] = None, **kwargs) -> 'MemoryCore':
        """
        Core over PostgreSQL. OpenAI delegates are created from settings
        unless passed explicitly.
        """
        settings = settings or get_settings()
        delegates = create_openai_delegates(settings)
        kwargs.setdefault('classifier', delegates.get('classifier'))
        kwargs.setdefault('embedder', delegates.get('embedder'))
        kwargs.setdefault('inference_generator', delegates.get('inference_generator'))
        return cls(create_postgres_store(db_pool), settings=settings, **kwargs)

    # =========================================================================
    # WRITE PATH
    # =========================================================================

    async def ingest(self, owner_id: str, payload: Dict[str, Any], source_id: Optional[str] = None) -> IngestionReport:
        return await self.ingestion.ingest(owner_id, payload, source_id=source_id)

    async def delete_source(self, owner_id: str, source_id: str) -> BatchReport:
        return await self.facts.cascade_source_deleted(owner_id, source_id)

    async def restore_source(self, owner_id: str, source_id: str) -> BatchReport:
        return await self.facts.restore_source(owner_id, source_id)

    # =========================================================================
    # READ PATH
    # =========================================================================

    async def search(
        self,
        owner_id: str,
        query_vector,
        filters: Optional[SearchFilters] = None,
        profile: WeightProfile = DEFAULT_PROFILE,
    ) -> SearchResponse:
        return await self.ranker.search(owner_id, query_vector, filters or self.default_filters, profile)

    async def search_text(
        self,
        owner_id: str,
        text: str,
        filters: Optional[SearchFilters] = None,
        profile: WeightProfile = DEFAULT_PROFILE,
    ) -> SearchResponse:
        return await self.ranker.search_text(owner_id, text, filters or self.default_filters, profile)

    async def query(self, owner_id: str, text: str, filters: Optional[SearchFilters] = None) -> Dict[str, Any]:
        return await self.router.route(owner_id, text, filters)

    async def get_full_context(self, owner_id: str, filters: Optional[SearchFilters] = None) -> FullContext:
        return await self.ranker.get_full_context(owner_id, filters=filters or self.default_filters)

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    async def consolidate(
        self, owner_id: str, threshold: Optional[float] = None, mode: str = PREVIEW
    ) -> ConsolidationReport:
        return await self.consolidation.consolidate(owner_id, threshold=threshold, mode=mode)

    async def decay_all(self, owner_id: str) -> BatchReport:
        return await self.decay.decay_all(owner_id)

    async def classify_importance_batch(self, owner_id: str, limit: int = 50) -> BatchReport:
        return await self.importance.classify_importance_batch(owner_id, limit=limit)

    async def cleanup_expired(self, owner_id: str) -> BatchReport:
        return await self.maintenance.cleanup_expired(owner_id)

    async def run_task(self, task: str, owner_id: str, **params: Any) -> BatchReport:
        return await self.maintenance.run_task(task, owner_id, **params)

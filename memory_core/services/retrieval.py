"""
Retrieval Ranker

Composite score per entity:

    semantic   * cosine(query, entity embedding)
  + importance * importance_score
  + recency    * 0.95 ** weeks_since_update
  + access     * min(1, 0.5 + ln(max(1, access_count)) / 10)

Weights come from an immutable WeightProfile handed to every call. When
no query vector is available (no embedder, embedder failure) the ranker
degrades to importance + recency ordering instead of failing.

Every returned entity gets access_count + 1 and last_accessed_at = now,
which feeds back into the access boost on later searches.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from memory_core.errors import RetrievalDegradation
from memory_core.models.entity import (
    Entity,
    ImportanceTier,
    MemoryType,
    SENSITIVITY_RANK,
    Sensitivity,
    TIER_RANK,
)
from memory_core.models.fact import Fact
from memory_core.models.relationships import Inference, InferenceStatus, RelationshipEdge
from memory_core.repositories.base import ACTIVE_ONLY, ALL_STATUSES, MemoryStore
from memory_core.services.facts import is_in_effect
from memory_core.services.llm import Embedder
from memory_core.utils.datetime_utils import utc_now, weeks_between
from memory_core.utils.vectors import cosine_similarity

logger = logging.getLogger(__name__)

RECENCY_BASE = 0.95


@dataclass(frozen=True)
class WeightProfile:
    name: str
    semantic: float = 0.50
    importance: float = 0.20
    recency: float = 0.15
    access: float = 0.15


DEFAULT_PROFILE = WeightProfile(name='default')
GRAPH_FIRST_PROFILE = WeightProfile(name='graph_first', semantic=0.0, importance=0.45, recency=0.30, access=0.25)
DEGRADED_PROFILE = WeightProfile(name='degraded', semantic=0.0, importance=0.55, recency=0.45, access=0.0)


@dataclass(frozen=True)
class SearchFilters:
    memory_types: Optional[Sequence[MemoryType]] = None
    include_historical: bool = False
    exclude_expired: bool = True
    min_importance: Optional[ImportanceTier] = None
    sensitivity_ceiling: Sensitivity = Sensitivity.NORMAL
    similarity_threshold: float = 0.4
    limit: int = 15


@dataclass
class RankedResult:
    entity: Entity
    score: float
    similarity: Optional[float] = None
    components: Dict[str, float] = field(default_factory=dict)


@dataclass
class SearchResponse:
    results: List[RankedResult]
    profile: str
    degraded: bool = False
    degradation_reason: Optional[str] = None


def recency_boost(entity: Entity, now: datetime) -> float:
    """0.95 ** weeks since the entity was last updated"""
    updated = entity.updated_at or entity.last_mentioned_at or entity.created_at
    if updated is None:
        return 1.0
    return RECENCY_BASE ** weeks_between(updated, now)


def access_boost(access_count: int) -> float:
    return min(1.0, 0.5 + math.log(max(1, access_count or 0)) / 10)


def composite_score(
    similarity: float, importance: float, recency: float, access: float, profile: WeightProfile
) -> float:
    return (
        profile.semantic * similarity
        + profile.importance * importance
        + profile.recency * recency
        + profile.access * access
    )


def passes_filters(entity: Entity, filters: SearchFilters, now: datetime) -> bool:
    """Everything except the similarity threshold"""
    if entity.is_archived and not filters.include_historical:
        return False
    if entity.is_historical and not filters.include_historical:
        return False
    if filters.memory_types is not None and entity.memory_type not in filters.memory_types:
        return False
    if filters.exclude_expired and entity.expires_at is not None and entity.expires_at <= now:
        return False
    if entity.effective_from is not None and entity.effective_from > now:
        return False
    if filters.min_importance is not None:
        if TIER_RANK[entity.importance_tier] < TIER_RANK[ImportanceTier(filters.min_importance)]:
            return False
    if SENSITIVITY_RANK[entity.sensitivity] > SENSITIVITY_RANK[Sensitivity(filters.sensitivity_ceiling)]:
        return False
    return True


@dataclass
class FullContext:
    """Structured snapshot of everything currently known for an owner"""
    owner_id: str
    generated_at: datetime
    entities: List[Entity] = field(default_factory=list)
    facts: Dict[str, List[Fact]] = field(default_factory=dict)  # entity_id -> current facts
    relationships: List[RelationshipEdge] = field(default_factory=list)
    inferences: List[Inference] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        names = {e.id: e.name for e in self.entities}
        return {
            'owner_id': self.owner_id,
            'generated_at': self.generated_at.isoformat(),
            'entities': [
                {
                    'id': e.id,
                    'name': e.name,
                    'entity_type': e.entity_type.value,
                    'memory_type': e.memory_type.value,
                    'summary': e.summary,
                    'relationship': e.relationship,
                    'importance_tier': e.importance_tier.value,
                    'importance_score': e.importance_score,
                    'facts': [
                        {'predicate': f.predicate, 'object': f.object, 'confidence': f.confidence}
                        for f in self.facts.get(e.id, [])
                    ],
                }
                for e in self.entities
            ],
            'relationships': [
                {
                    'source': names.get(r.source_entity_id, r.source_entity_id),
                    'target': names.get(r.target_entity_id, r.target_entity_id),
                    'relationship_type': r.relationship_type,
                    'strength': r.strength,
                }
                for r in self.relationships
            ],
            'inferences': [
                {'text': i.text, 'confidence': i.confidence, 'inference_type': i.inference_type.value}
                for i in self.inferences
            ],
        }


class RetrievalRanker:

    def __init__(
        self,
        store: MemoryStore,
        embedder: Optional[Embedder] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.embedder = embedder
        self.clock = clock

    async def search(
        self,
        owner_id: str,
        query_vector: Optional[Sequence[float]],
        filters: SearchFilters = SearchFilters(),
        profile: WeightProfile = DEFAULT_PROFILE,
        exclude_term: Optional[str] = None,
    ) -> SearchResponse:
        """
        Rank the owner's entities against a query vector.

        Args:
            owner_id: Owner scope
            query_vector: Query embedding, or None for degraded ranking
            filters: Type/history/expiry/importance/sensitivity filters
            profile: Scoring weights
            exclude_term: Drop entities whose name or summary contains this

        Returns:
            SearchResponse with at most filters.limit results, best first
        """
        try:
            if not query_vector:
                raise RetrievalDegradation("no query vector")
            return await self._rank(owner_id, query_vector, filters, profile, exclude_term)
        except RetrievalDegradation as e:
            logger.warning(f"⚠️  Semantic ranking unavailable for {owner_id} ({e}), using importance + recency")
            response = await self._rank(owner_id, None, filters, DEGRADED_PROFILE, exclude_term)
            response.degraded = True
            response.degradation_reason = str(e)
            return response

    async def search_text(
        self,
        owner_id: str,
        text: str,
        filters: SearchFilters = SearchFilters(),
        profile: WeightProfile = DEFAULT_PROFILE,
        exclude_term: Optional[str] = None,
    ) -> SearchResponse:
        """Embed `text` and search; embedder trouble degrades instead of failing"""
        query_vector = None
        reason = None
        try:
            query_vector = await self._embed_query(text)
        except RetrievalDegradation as e:
            reason = str(e)

        response = await self.search(owner_id, query_vector, filters, profile, exclude_term)
        if reason and response.degraded:
            response.degradation_reason = reason
        return response

    async def _embed_query(self, text: str) -> List[float]:
        if self.embedder is None:
            raise RetrievalDegradation("no embedder configured")
        try:
            vectors = await self.embedder.embed([text])
        except Exception as e:
            raise RetrievalDegradation(f"embedder failed: {e}") from e
        if not vectors or not vectors[0]:
            raise RetrievalDegradation("embedder returned no vector")
        return vectors[0]

    async def _rank(
        self,
        owner_id: str,
        query_vector: Optional[Sequence[float]],
        filters: SearchFilters,
        profile: WeightProfile,
        exclude_term: Optional[str],
    ) -> SearchResponse:
        now = self.clock()
        statuses = ALL_STATUSES if filters.include_historical else ACTIVE_ONLY
        entities = await self.store.entities.list(owner_id, statuses=statuses, memory_types=filters.memory_types)

        if query_vector is not None and not any(e.embedding for e in entities):
            if entities:
                raise RetrievalDegradation("no entity embeddings available")

        exclude = exclude_term.lower() if exclude_term else None
        results = []
        for entity in entities:
            if not passes_filters(entity, filters, now):
                continue
            if exclude and (exclude in entity.name.lower() or exclude in (entity.summary or '').lower()):
                continue

            similarity = None
            if query_vector is not None and profile.semantic > 0:
                similarity = cosine_similarity(query_vector, entity.embedding)
                if similarity < filters.similarity_threshold:
                    continue

            components = {
                'semantic': similarity or 0.0,
                'importance': entity.importance_score,
                'recency': recency_boost(entity, now),
                'access': access_boost(entity.access_count),
            }
            score = composite_score(
                components['semantic'], components['importance'],
                components['recency'], components['access'], profile,
            )
            results.append(RankedResult(entity=entity, score=score, similarity=similarity, components=components))

        results.sort(key=lambda r: (-r.score, r.entity.id))
        results = results[:filters.limit]

        if results:
            await self.store.entities.record_access(owner_id, [r.entity.id for r in results], now)
            for r in results:
                r.entity.access_count += 1
                r.entity.last_accessed_at = now

        return SearchResponse(results=results, profile=profile.name)

    async def get_full_context(
        self, owner_id: str, limit: Optional[int] = None, filters: SearchFilters = SearchFilters()
    ) -> FullContext:
        """
        Active entities passing `filters`, by importance, with their current
        facts, the active relationships among them and live inferences that
        do not name a filtered-out entity. No access tracking.
        """
        now = self.clock()
        statuses = ALL_STATUSES if filters.include_historical else ACTIVE_ONLY
        listed = await self.store.entities.list(owner_id, statuses=statuses, memory_types=filters.memory_types)
        visible = [e for e in listed if passes_filters(e, filters, now)]
        entities = visible[:limit] if limit is not None else visible
        context = FullContext(owner_id=owner_id, generated_at=now, entities=entities)

        ids = {e.id for e in entities}
        visible_ids = {e.id for e in visible}
        shown_names = {n.lower() for e in visible for n in e.all_names}
        hidden_names = {n.lower() for e in listed if e.id not in visible_ids for n in e.all_names} - shown_names
        for entity in entities:
            facts = [
                f for f in await self.store.facts.list_for_entity(owner_id, entity.id)
                if is_in_effect(f, now) and (not f.object_entity_id or f.object_entity_id in visible_ids)
            ]
            facts.sort(key=lambda f: (-f.confidence, -f.mention_count, f.id))
            context.facts[entity.id] = facts

        context.relationships = [
            r for r in await self.store.relationships.list(owner_id, active_only=True)
            if r.source_entity_id in ids and r.target_entity_id in ids
        ]
        context.inferences = [
            i for i in await self.store.inferences.list(owner_id, status=InferenceStatus.ACTIVE)
            if i.is_live(now) and not any(n.lower() in hidden_names for n in i.subject_names)
        ]
        return context

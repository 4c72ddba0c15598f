"""
Memory API
==========

Thin FastAPI surface over MemoryCore. Responses are structured data; no
presentation formatting happens here.

Endpoints (all owner-scoped):
- POST /api/memory/{owner_id}/ingest                               - apply an extraction payload
- GET  /api/memory/{owner_id}/search?q=...                         - ranked retrieval
- GET  /api/memory/{owner_id}/query?q=...                          - intent-routed query
- GET  /api/memory/{owner_id}/context                              - full context snapshot
- GET  /api/memory/{owner_id}/entities/{id}/facts                  - current facts
- GET  /api/memory/{owner_id}/entities/{id}/facts/{predicate}/history
- GET  /api/memory/{owner_id}/entities/{id}/timeline
- POST /api/memory/{owner_id}/facts/{fact_id}/invalidate
- POST /api/memory/{owner_id}/sources/{source_id}/delete | restore
- POST /api/memory/{owner_id}/maintenance/{task}
"""
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from memory_core.core import MemoryCore
from memory_core.errors import EntityNotFound, OwnershipViolation, ValidationError
from memory_core.models.entity import Entity, ImportanceTier, MemoryType, Sensitivity
from memory_core.models.fact import Fact, InvalidationReason
from memory_core.models.operations import BatchReport
from memory_core.services.consolidation import PREVIEW
from memory_core.services.maintenance import MAINTENANCE_TASKS
from memory_core.services.retrieval import SearchFilters


router = APIRouter(prefix="/api/memory", tags=["Memory"])


# =============================================================================
# MODELS
# =============================================================================

class IngestRequest(BaseModel):
    """Extraction payload; items are validated inside the core"""
    source_id: Optional[str] = None
    entities: List[Any] = Field(default_factory=list)
    facts: List[Any] = Field(default_factory=list)
    relationships: List[Any] = Field(default_factory=list)
    inferences: List[Any] = Field(default_factory=list)


class RejectedItem(BaseModel):
    kind: str
    reason: str


class IngestResponse(BaseModel):
    owner_id: str
    source_id: Optional[str]
    counts: Dict[str, int]
    entity_ids: Dict[str, str]
    rejected: List[RejectedItem]
    failures: Dict[str, str]


class EntityOut(BaseModel):
    id: str
    name: str
    aliases: List[str]
    entity_type: str
    memory_type: str
    summary: Optional[str]
    relationship: Optional[str]
    importance_tier: str
    importance_score: float
    status: str
    sensitivity: str
    is_historical: bool
    mention_count: int
    access_count: int
    superseded_by: Optional[str]
    updated_at: Optional[datetime]

    @classmethod
    def from_entity(cls, entity: Entity) -> 'EntityOut':
        return cls(
            id=entity.id,
            name=entity.name,
            aliases=list(entity.aliases),
            entity_type=entity.entity_type.value,
            memory_type=entity.memory_type.value,
            summary=entity.summary,
            relationship=entity.relationship,
            importance_tier=entity.importance_tier.value,
            importance_score=entity.importance_score,
            status=entity.status.value,
            sensitivity=entity.sensitivity.value,
            is_historical=entity.is_historical,
            mention_count=entity.mention_count,
            access_count=entity.access_count,
            superseded_by=entity.superseded_by,
            updated_at=entity.updated_at,
        )


class SearchHit(BaseModel):
    entity: EntityOut
    score: float
    similarity: Optional[float]
    components: Dict[str, float]


class SearchResultsResponse(BaseModel):
    query: str
    profile: str
    degraded: bool
    degradation_reason: Optional[str]
    results: List[SearchHit]
    count: int


class FactOut(BaseModel):
    id: str
    entity_id: str
    predicate: str
    object: str
    object_entity_id: Optional[str]
    confidence: float
    version: int
    previous_version_id: Optional[str]
    valid_from: Optional[datetime]
    valid_to: Optional[datetime]
    invalidated_at: Optional[datetime]
    invalidated_by: Optional[str]
    invalidation_reason: Optional[str]
    status: str
    mention_count: int
    source_id: Optional[str]
    created_at: Optional[datetime]

    @classmethod
    def from_fact(cls, fact: Fact) -> 'FactOut':
        return cls(
            id=fact.id,
            entity_id=fact.entity_id,
            predicate=fact.predicate,
            object=fact.object,
            object_entity_id=fact.object_entity_id,
            confidence=fact.confidence,
            version=fact.version,
            previous_version_id=fact.previous_version_id,
            valid_from=fact.valid_from,
            valid_to=fact.valid_to,
            invalidated_at=fact.invalidated_at,
            invalidated_by=fact.invalidated_by,
            invalidation_reason=fact.invalidation_reason.value if fact.invalidation_reason else None,
            status=fact.status.value,
            mention_count=fact.mention_count,
            source_id=fact.source_id,
            created_at=fact.created_at,
        )


class InvalidateRequest(BaseModel):
    reason: InvalidationReason = InvalidationReason.USER_CORRECTED
    valid_to: Optional[datetime] = None


class InvalidateResponse(BaseModel):
    fact_id: str
    invalidated: bool


class BatchReportResponse(BaseModel):
    task: str
    counts: Dict[str, int]
    failures: Dict[str, str]
    candidates: Optional[List[Dict[str, Any]]] = None


# =============================================================================
# HELPERS
# =============================================================================

def get_core(request: Request) -> MemoryCore:
    core = getattr(request.app.state, 'memory_core', None)
    if core is None:
        raise HTTPException(status_code=503, detail="Memory core not initialized")
    return core


def _raise_http(error: Exception):
    if isinstance(error, EntityNotFound):
        raise HTTPException(status_code=404, detail=str(error))
    if isinstance(error, OwnershipViolation):
        raise HTTPException(status_code=403, detail="Record belongs to another owner")
    if isinstance(error, ValidationError):
        raise HTTPException(status_code=422, detail=str(error))
    raise error


def _report_response(report: BatchReport) -> BatchReportResponse:
    return BatchReportResponse(task=report.task, counts=report.counts, failures=report.failures)


# =============================================================================
# WRITE
# =============================================================================

@router.post("/{owner_id}/ingest", response_model=IngestResponse)
async def ingest(owner_id: str, body: IngestRequest, request: Request):
    """
    Apply one extraction payload.

    Invalid items are rejected individually and listed in the response;
    the rest of the payload is still applied.
    """
    core = get_core(request)
    payload = body.model_dump(exclude={'source_id'})
    try:
        report = await core.ingest(owner_id, payload, source_id=body.source_id)
    except (ValidationError, OwnershipViolation) as e:
        _raise_http(e)
    return IngestResponse(**report.to_dict())


@router.post("/{owner_id}/facts/{fact_id}/invalidate", response_model=InvalidateResponse)
async def invalidate_fact(owner_id: str, fact_id: str, body: InvalidateRequest, request: Request):
    core = get_core(request)
    try:
        invalidated = await core.facts.invalidate_fact(owner_id, fact_id, reason=body.reason, valid_to=body.valid_to)
    except OwnershipViolation as e:
        _raise_http(e)
    return InvalidateResponse(fact_id=fact_id, invalidated=invalidated)


@router.post("/{owner_id}/sources/{source_id}/delete", response_model=BatchReportResponse)
async def delete_source(owner_id: str, source_id: str, request: Request):
    """Soft-delete cascade: invalidate the source's facts, archive its entities"""
    core = get_core(request)
    return _report_response(await core.delete_source(owner_id, source_id))


@router.post("/{owner_id}/sources/{source_id}/restore", response_model=BatchReportResponse)
async def restore_source(owner_id: str, source_id: str, request: Request):
    core = get_core(request)
    return _report_response(await core.restore_source(owner_id, source_id))


# =============================================================================
# READ
# =============================================================================

@router.get("/{owner_id}/search", response_model=SearchResultsResponse)
async def search(
    owner_id: str,
    request: Request,
    q: str = Query(..., min_length=1),
    limit: int = Query(15, ge=1, le=100),
    threshold: Optional[float] = Query(None, ge=0.0, le=1.0),
    include_historical: bool = False,
    exclude_expired: bool = True,
    min_importance: Optional[ImportanceTier] = None,
    sensitivity: Sensitivity = Sensitivity.NORMAL,
    memory_types: Optional[List[MemoryType]] = Query(None),
):
    """
    Ranked retrieval.

    Args:
        q: Query text (embedded when an embedder is configured)
        limit: Max results
        threshold: Similarity threshold (default from settings)
        include_historical: Include archived / historical entities
        exclude_expired: Drop entities past expires_at
        min_importance: Minimum importance tier
        sensitivity: Sensitivity ceiling (normal < sensitive < private)
        memory_types: Memory type allowlist
    """
    core = get_core(request)
    filters = SearchFilters(
        memory_types=memory_types,
        include_historical=include_historical,
        exclude_expired=exclude_expired,
        min_importance=min_importance,
        sensitivity_ceiling=sensitivity,
        similarity_threshold=core.default_filters.similarity_threshold if threshold is None else threshold,
        limit=limit,
    )
    response = await core.search_text(owner_id, q, filters)
    return SearchResultsResponse(
        query=q,
        profile=response.profile,
        degraded=response.degraded,
        degradation_reason=response.degradation_reason,
        results=[
            SearchHit(
                entity=EntityOut.from_entity(r.entity),
                score=r.score,
                similarity=r.similarity,
                components=r.components,
            )
            for r in response.results
        ],
        count=len(response.results),
    )


@router.get("/{owner_id}/query")
async def query(
    owner_id: str,
    request: Request,
    q: str = Query(..., min_length=1),
    sensitivity: Sensitivity = Sensitivity.NORMAL,
):
    """Intent-routed query (self summary, entity summary, relationships, ...)"""
    core = get_core(request)
    filters = replace(core.default_filters, sensitivity_ceiling=sensitivity)
    return await core.query(owner_id, q, filters)


@router.get("/{owner_id}/context")
async def full_context(owner_id: str, request: Request, sensitivity: Sensitivity = Sensitivity.NORMAL):
    core = get_core(request)
    context = await core.get_full_context(owner_id, replace(core.default_filters, sensitivity_ceiling=sensitivity))
    return context.to_dict()


@router.get("/{owner_id}/entities/{entity_id}/facts", response_model=List[FactOut])
async def current_facts(owner_id: str, entity_id: str, request: Request):
    core = get_core(request)
    try:
        await core.facts.resolve_entity(owner_id, entity_id)
        facts = await core.facts.get_current_facts(owner_id, entity_id)
    except (EntityNotFound, OwnershipViolation) as e:
        _raise_http(e)
    return [FactOut.from_fact(f) for f in facts]


@router.get("/{owner_id}/entities/{entity_id}/facts/{predicate}/history", response_model=List[FactOut])
async def fact_history(owner_id: str, entity_id: str, predicate: str, request: Request):
    core = get_core(request)
    try:
        facts = await core.facts.get_fact_history(owner_id, entity_id, predicate)
    except OwnershipViolation as e:
        _raise_http(e)
    return [FactOut.from_fact(f) for f in facts]


@router.get("/{owner_id}/entities/{entity_id}/timeline")
async def entity_timeline(owner_id: str, entity_id: str, request: Request):
    core = get_core(request)
    try:
        events = await core.facts.get_entity_timeline(owner_id, entity_id)
    except OwnershipViolation as e:
        _raise_http(e)
    return {
        'entity_id': entity_id,
        'events': [dict(e, at=e['at'].isoformat() if e['at'] else None) for e in events],
    }


# =============================================================================
# MAINTENANCE
# =============================================================================

@router.post("/{owner_id}/maintenance/{task}", response_model=BatchReportResponse)
async def run_maintenance(owner_id: str, task: str, request: Request, params: Optional[Dict[str, Any]] = None):
    """
    Run one maintenance task synchronously.

    consolidate takes {"mode": "preview" | "force", "threshold": 0.85};
    the preview returns candidate pairs without touching anything.
    """
    if task not in MAINTENANCE_TASKS:
        raise HTTPException(status_code=400, detail=f"Unknown task: {task}")

    core = get_core(request)
    params = params or {}

    if task == 'consolidate':
        mode = params.get('mode', PREVIEW)
        if mode not in ('preview', 'force'):
            raise HTTPException(status_code=400, detail=f"Unknown consolidation mode: {mode}")
        report = await core.consolidate(owner_id, threshold=params.get('threshold'), mode=mode)
        return BatchReportResponse(
            task='consolidate',
            counts=report.counts,
            failures=report.failures,
            candidates=[
                {
                    'entity_a_id': c.entity_a_id,
                    'entity_b_id': c.entity_b_id,
                    'entity_a_name': c.entity_a_name,
                    'entity_b_name': c.entity_b_name,
                    'similarity': c.similarity,
                    'keeper_id': c.keeper_id,
                    'loser_id': c.loser_id,
                }
                for c in report.candidates
            ],
        )

    return _report_response(await core.run_task(task, owner_id, **params))

"""
Boundary validation for extraction payloads.

The extraction collaborator is untrusted: everything it returns is parsed
into pydantic models here and tagged as AcceptedCandidate or
RejectedCandidate before any service sees it. Internal code only ever
handles the accepted, typed variant.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, BeforeValidator, Field, ValidationError as PydanticValidationError, field_validator

from memory_core.errors import ValidationError
from memory_core.models.entity import EntityType, MemoryType, Sensitivity
from memory_core.models.relationships import InferenceType

logger = logging.getLogger(__name__)

CandidateKind = Literal['entity', 'fact', 'relationship', 'inference']

DEFAULT_CANDIDATE_CONFIDENCE = 0.8


def _clean_name(v):
    if not isinstance(v, str) or not v.strip():
        raise ValueError("must be a non-empty string")
    return v.strip()


NonEmptyStr = Annotated[str, BeforeValidator(_clean_name)]


class EntityCandidate(BaseModel):
    """Entity mention proposed by extraction"""
    name: NonEmptyStr
    entity_type: EntityType = EntityType.OTHER
    memory_type: MemoryType = MemoryType.ENTITY
    summary: Optional[str] = None
    relationship: Optional[str] = None
    aliases: List[str] = Field(default_factory=list)
    sensitivity: Sensitivity = Sensitivity.NORMAL
    is_historical: bool = False
    effective_from: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    context: Optional[str] = None
    sentiment: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    confidence: float = Field(default=DEFAULT_CANDIDATE_CONFIDENCE, ge=0.0, le=1.0)

    @field_validator('entity_type', mode='before')
    @classmethod
    def coerce_type(cls, v):
        """Unknown types fall back to 'other' rather than rejecting the mention"""
        if v is None:
            return EntityType.OTHER
        value = str(v).strip().lower()
        return value if value in {t.value for t in EntityType} else EntityType.OTHER


class FactCandidate(BaseModel):
    """(entity, predicate, object) triple proposed by extraction"""
    entity_name: NonEmptyStr
    predicate: NonEmptyStr
    object: NonEmptyStr
    object_is_entity: bool = False
    confidence: float = Field(default=DEFAULT_CANDIDATE_CONFIDENCE, ge=0.0, le=1.0)
    valid_from: Optional[datetime] = None


class RelationshipCandidate(BaseModel):
    source: NonEmptyStr
    target: NonEmptyStr
    relationship_type: NonEmptyStr = 'related_to'
    confidence: float = Field(default=DEFAULT_CANDIDATE_CONFIDENCE, ge=0.0, le=1.0)
    strength_boost: float = Field(default=0.1, ge=0.0, le=1.0)


class InferenceCandidate(BaseModel):
    text: NonEmptyStr
    inference_type: InferenceType = InferenceType.CONNECTION
    subjects: List[str] = Field(default_factory=list)
    supporting_evidence: List[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)


CANDIDATE_MODELS = {
    'entity': EntityCandidate,
    'fact': FactCandidate,
    'relationship': RelationshipCandidate,
    'inference': InferenceCandidate,
}


@dataclass(frozen=True)
class AcceptedCandidate:
    kind: str
    candidate: BaseModel

    accepted = True


@dataclass(frozen=True)
class RejectedCandidate:
    kind: str
    raw: Any
    reason: str

    accepted = False


CandidateResult = Union[AcceptedCandidate, RejectedCandidate]


def parse_candidate(kind: CandidateKind, raw: Any, confidence_floor: float) -> BaseModel:
    """
    Parse one raw candidate or raise ValidationError.

    Args:
        kind: 'entity', 'fact', 'relationship' or 'inference'
        raw: untyped payload from extraction
        confidence_floor: candidates below this are rejected

    Returns:
        Typed candidate model
    """
    model = CANDIDATE_MODELS.get(kind)
    if model is None:
        raise ValidationError(f"Unknown candidate kind: {kind}")
    if not isinstance(raw, dict):
        raise ValidationError(f"{kind} candidate must be an object, got {type(raw).__name__}")

    try:
        candidate = model.model_validate(raw)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = '.'.join(str(p) for p in first.get('loc', ()))
        raise ValidationError(f"{field}: {first.get('msg')}", field=field or None) from e

    if candidate.confidence < confidence_floor:
        raise ValidationError(
            f"confidence {candidate.confidence:.2f} below floor {confidence_floor:.2f}",
            field='confidence',
        )
    return candidate


def validate_candidate(kind: CandidateKind, raw: Any, confidence_floor: float = 0.5) -> CandidateResult:
    """Tag a raw candidate as accepted or rejected. Never raises."""
    try:
        return AcceptedCandidate(kind=kind, candidate=parse_candidate(kind, raw, confidence_floor))
    except ValidationError as e:
        logger.debug(f"Rejected {kind} candidate: {e}")
        return RejectedCandidate(kind=kind, raw=raw, reason=str(e))


def validate_payload(payload: Dict[str, Any], confidence_floor: float = 0.5) -> Dict[str, List[CandidateResult]]:
    """
    Validate a whole extraction payload.

    Expected shape (every key optional):
        {"entities": [...], "facts": [...], "relationships": [...], "inferences": [...]}

    Returns:
        {kind: [AcceptedCandidate | RejectedCandidate, ...]}
    """
    if not isinstance(payload, dict):
        raise ValidationError("extraction payload must be an object")

    sections = {
        'entity': payload.get('entities') or [],
        'fact': payload.get('facts') or [],
        'relationship': payload.get('relationships') or [],
        'inference': payload.get('inferences') or [],
    }
    results = {}
    for kind, items in sections.items():
        if not isinstance(items, list):
            results[kind] = [RejectedCandidate(kind=kind, raw=items, reason="section must be a list")]
            continue
        results[kind] = [validate_candidate(kind, item, confidence_floor) for item in items]
    return results

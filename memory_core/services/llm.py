"""
LLM delegates

The engine never calls a model directly. It talks to three small delegate
protocols so tests can substitute fakes and deployments can swap providers:

- ImportanceDelegate: returns the raw classifier response for one entity
- Embedder: turns texts into vectors
- InferenceGenerator: proposes derived connections between entities

OpenAI-backed implementations live here (AsyncOpenAI, gpt-4o-mini and
text-embedding-3-small by default). Every call carries a timeout.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol, Tuple

from openai import AsyncOpenAI

from memory_core.errors import ClassificationError
from memory_core.models.entity import Entity, ImportanceTier, TIER_BASE_SCORES, clamp_score

logger = logging.getLogger(__name__)

JSON_OBJECT = re.compile(r'\{[\s\S]*\}')


class ImportanceDelegate(Protocol):
    async def classify(self, entity: Entity) -> str:
        ...


class Embedder(Protocol):
    async def embed(self, texts: List[str]) -> List[List[float]]:
        ...


class InferenceGenerator(Protocol):
    async def generate(self, entities: List[Entity], relationships: List[Tuple[str, str, str]]) -> List[Dict[str, Any]]:
        ...


# =============================================================================
# RESPONSE PARSING
# =============================================================================

def parse_json_object(raw: str) -> dict:
    """
    Extract the first JSON object from a model response.

    Tolerates markdown fences and prose around the object.

    Raises:
        ValueError: no JSON object could be decoded
    """
    if not raw or not isinstance(raw, str):
        raise ValueError("empty response")
    match = JSON_OBJECT.search(raw)
    data = json.loads(match.group(0) if match else raw)
    if not isinstance(data, dict):
        raise ValueError(f"expected JSON object, got {type(data).__name__}")
    return data


def parse_classification(raw: str) -> Tuple[ImportanceTier, float, Optional[str]]:
    """
    Parse an importance classifier response.

    Expected:
        {"importance": "high", "importance_score": 0.8, "reasoning": "..."}

    Returns:
        (tier, clamped score, rationale)

    Raises:
        ClassificationError: response missing, not JSON, or tier unknown
    """
    try:
        data = parse_json_object(raw)
    except (ValueError, json.JSONDecodeError) as e:
        raise ClassificationError(f"Unparseable classifier response: {e}") from e

    tier_value = str(data.get('importance', '')).strip().lower()
    try:
        tier = ImportanceTier(tier_value)
    except ValueError as e:
        raise ClassificationError(f"Unknown importance tier: {tier_value!r}") from e

    score = data.get('importance_score')
    try:
        score = clamp_score(float(score)) if score is not None else None
    except (TypeError, ValueError):
        score = None
    if score is None:
        score = TIER_BASE_SCORES[tier]

    return tier, score, data.get('reasoning')


def entity_embedding_text(entity: Entity) -> str:
    """Text that represents an entity in vector space"""
    parts = [entity.name]
    if entity.aliases:
        parts.append(f"(also {', '.join(entity.aliases)})")
    parts.append(f"[{entity.entity_type.value}]")
    if entity.relationship:
        parts.append(entity.relationship)
    if entity.summary:
        parts.append(entity.summary)
    return ' '.join(parts)


# =============================================================================
# OPENAI IMPLEMENTATIONS
# =============================================================================

IMPORTANCE_PROMPT = """Classify the importance of this entity to the user based on available context.

Entity: {name}
Type: {entity_type}
Relationship: {relationship}
Mentioned: {mention_count} times
Context: {context}

Importance levels:
- critical: Immediate family, partners, best friends, self, critical work relationships
- high: Close friends, important colleagues, significant projects, pets
- medium: Regular contacts, ongoing projects, recurring topics
- low: Acquaintances, one-time mentions, background people
- trivial: Random names, places mentioned in passing, unlikely to matter again

Return JSON only:
{{
  "importance": "critical|high|medium|low|trivial",
  "importance_score": 0.0-1.0,
  "reasoning": "brief explanation"
}}"""


INFERENCE_PROMPT = """Analyze these entities from a user's personal notes and infer any connections or patterns that aren't explicitly stated.

Entities:
{entities}
{relationships}

Look for:
1. Implicit connections (two people who might know each other based on context)
2. Shared attributes (both work in tech, both mentioned in work contexts)
3. Patterns (user mentions this person when stressed)
4. Predictions (these two might be introduced soon based on context)

Return JSON only:
{{
  "inferences": [
    {{
      "type": "connection|pattern|prediction",
      "entities": ["entity1", "entity2"],
      "inference": "clear statement of what you inferred",
      "confidence": 0.0-1.0,
      "reasoning": "brief explanation"
    }}
  ]
}}

Only include high-confidence (>0.6) inferences. Be conservative."""


class OpenAIImportanceClassifier:
    """Importance classification through chat completions"""

    def __init__(self, client: AsyncOpenAI, model: str = "gpt-4o-mini", timeout: float = 30.0):
        self.client = client
        self.model = model
        self.timeout = timeout

    async def classify(self, entity: Entity) -> str:
        prompt = IMPORTANCE_PROMPT.format(
            name=entity.name,
            entity_type=entity.entity_type.value,
            relationship=entity.relationship or 'unknown',
            mention_count=entity.mention_count,
            context=' | '.join(entity.context_notes[-3:]),
        )
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            response_format={"type": "json_object"},
            temperature=0.1,
            timeout=self.timeout,
        )
        return response.choices[0].message.content


class OpenAIEmbedder:
    """Embeddings through text-embedding-3-small"""

    def __init__(self, client: AsyncOpenAI, model: str = "text-embedding-3-small", timeout: float = 30.0):
        self.client = client
        self.model = model
        self.timeout = timeout

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        response = await self.client.embeddings.create(
            model=self.model,
            input=texts,
            timeout=self.timeout,
        )
        return [d.embedding for d in response.data]


class OpenAIInferenceGenerator:
    """Proposes inferences; returns raw candidates for boundary validation"""

    def __init__(self, client: AsyncOpenAI, model: str = "gpt-4o-mini", timeout: float = 30.0):
        self.client = client
        self.model = model
        self.timeout = timeout

    async def generate(self, entities: List[Entity], relationships: List[Tuple[str, str, str]]) -> List[Dict[str, Any]]:
        if len(entities) < 2:
            return []

        entity_lines = '\n'.join(
            f"- {e.name} ({e.entity_type.value}){': ' + e.summary if e.summary else ''}"
            for e in entities
        )
        rel_lines = ''
        if relationships:
            rel_lines = "\nKnown relationships:\n" + '\n'.join(f"- {s} {p} {o}" for s, p, o in relationships)

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": INFERENCE_PROMPT.format(entities=entity_lines, relationships=rel_lines)}],
            response_format={"type": "json_object"},
            temperature=0.2,
            timeout=self.timeout,
        )

        try:
            data = parse_json_object(response.choices[0].message.content)
        except (ValueError, json.JSONDecodeError) as e:
            logger.warning(f"⚠️  Inference response unparseable: {e}")
            return []

        return [
            {
                'text': item.get('inference'),
                'inference_type': item.get('type', 'connection'),
                'subjects': item.get('entities') or [],
                'supporting_evidence': [item['reasoning']] if item.get('reasoning') else [],
                'confidence': item.get('confidence', 0.0),
            }
            for item in data.get('inferences', [])
            if isinstance(item, dict)
        ]


def create_openai_delegates(settings) -> Dict[str, Any]:
    """
    Build the OpenAI delegates from settings.

    Returns an empty dict when no API key is configured; the engine then
    runs without classification delegation, embeddings or inference
    generation (heuristics and degraded ranking still work).
    """
    if not settings.openai_api_key:
        logger.warning("⚠️  OPENAI_API_KEY not set, LLM delegates disabled")
        return {}

    client = AsyncOpenAI(api_key=settings.openai_api_key, timeout=settings.openai_timeout_seconds)
    return {
        'classifier': OpenAIImportanceClassifier(client, settings.openai_chat_model, settings.openai_timeout_seconds),
        'embedder': OpenAIEmbedder(client, settings.openai_embedding_model, settings.openai_timeout_seconds),
        'inference_generator': OpenAIInferenceGenerator(client, settings.openai_chat_model, settings.openai_timeout_seconds),
    }
